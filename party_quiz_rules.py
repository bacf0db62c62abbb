"""Pure phase and scoring rules for the party quiz.

Nothing in here touches storage. The service reads rows, hands plain values to
these helpers, and writes back whatever they decide.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Iterable, Mapping, Sequence, TypeVar

T = TypeVar("T")

STATUS_WAITING = "waiting"
STATUS_PLAYING = "playing"
STATUS_FINISHED = "finished"
STATUSES = (STATUS_WAITING, STATUS_PLAYING, STATUS_FINISHED)

PHASE_LOBBY = "lobby"
PHASE_ASKING = "asking"
PHASE_SHOWING_ANSWERS = "showing_answers"
PHASE_QUIZ = "quiz"
PHASE_QUIZ_QUESTION = "quiz_question"
PHASE_QUIZ_RESULTS = "quiz_results"
PHASE_GAME_OVER = "game_over"
PHASES = (
    PHASE_LOBBY,
    PHASE_ASKING,
    PHASE_SHOWING_ANSWERS,
    PHASE_QUIZ,
    PHASE_QUIZ_QUESTION,
    PHASE_QUIZ_RESULTS,
    PHASE_GAME_OVER,
)

# Self-loops cover "next_question" inside the same phase (asking -> asking).
PHASE_TRANSITIONS = {
    PHASE_LOBBY: {PHASE_ASKING},
    PHASE_ASKING: {PHASE_ASKING, PHASE_SHOWING_ANSWERS, PHASE_QUIZ},
    PHASE_SHOWING_ANSWERS: {PHASE_ASKING, PHASE_QUIZ},
    PHASE_QUIZ: {PHASE_QUIZ_QUESTION},
    PHASE_QUIZ_QUESTION: {PHASE_QUIZ_RESULTS},
    PHASE_QUIZ_RESULTS: {PHASE_QUIZ_QUESTION, PHASE_GAME_OVER},
    PHASE_GAME_OVER: set(),
}

ACTION_SHOW_ANSWERS = "show_answers"
ACTION_SHOW_RESULTS = "show_results"
ACTION_NEXT_QUESTION = "next_question"

ICEBREAKER_ACTION_PHASES = {
    ACTION_SHOW_ANSWERS: {PHASE_ASKING},
    ACTION_NEXT_QUESTION: {PHASE_ASKING, PHASE_SHOWING_ANSWERS},
}
QUIZ_ACTION_PHASES = {
    ACTION_SHOW_RESULTS: {PHASE_QUIZ_QUESTION},
    ACTION_NEXT_QUESTION: {PHASE_QUIZ_RESULTS},
}

OPTION_LABELS = ("A", "B", "C", "D")
ICEBREAKER_QUESTION_COUNT = 3
QUIZ_QUESTIONS_PER_PLAYER = 2
QUESTION_SECONDS = 20

ABOUT_CORRECT_POINTS = 2
ABOUT_MISS_POINTS = -1
GUESS_CORRECT_POINTS = 1
TIMEOUT_PENALTY_POINTS = -1


def can_transition(current_phase: str, next_phase: str) -> bool:
    return next_phase in PHASE_TRANSITIONS.get(current_phase, set())


def action_allowed(action_phases: Mapping[str, set], action: str, phase: str) -> bool:
    return phase in action_phases.get(action, set())


@dataclass(frozen=True)
class OrdinalStep:
    finished: bool
    ordinal: int


def step_ordinal(current: int, total: int) -> OrdinalStep:
    """Advance a 1-based question pointer, clamping to ``total`` at the end."""
    next_ordinal = int(current or 0) + 1
    if next_ordinal > total:
        return OrdinalStep(finished=True, ordinal=total)
    return OrdinalStep(finished=False, ordinal=next_ordinal)


@dataclass(frozen=True)
class ScoreChange:
    player_id: str
    change: int
    reason: str

    def to_dict(self) -> dict:
        return {"player_id": self.player_id, "change": self.change, "reason": self.reason}


def score_quiz_round(
    *,
    roster_ids: Sequence[str],
    answers: Mapping[str, bool],
    about_player_id: str,
) -> list[ScoreChange]:
    """Return one change per roster player for a revealed quiz question.

    ``answers`` maps player id to correctness for the players who answered.
    Only the host-less roster is scored; answers from ids outside the roster
    are ignored.
    """
    roster = list(roster_ids)
    answered = {player_id: bool(answers[player_id]) for player_id in roster if player_id in answers}

    if not answered:
        changes = []
        for player_id in roster:
            if player_id == about_player_id:
                changes.append(
                    ScoreChange(player_id, TIMEOUT_PENALTY_POINTS, "Everyone ran out of time")
                )
            else:
                changes.append(ScoreChange(player_id, 0, "Everyone ran out of time"))
        return changes

    changes = []
    for player_id in roster:
        is_correct = answered.get(player_id)
        if player_id == about_player_id:
            if is_correct is None:
                changes.append(
                    ScoreChange(player_id, ABOUT_MISS_POINTS, "Ran out of time on your own question")
                )
            elif is_correct:
                changes.append(
                    ScoreChange(player_id, ABOUT_CORRECT_POINTS, "Correctly answered about yourself")
                )
            else:
                changes.append(
                    ScoreChange(player_id, ABOUT_MISS_POINTS, "Incorrectly answered about yourself")
                )
        elif is_correct is None:
            changes.append(ScoreChange(player_id, 0, "Ran out of time"))
        elif is_correct:
            changes.append(ScoreChange(player_id, GUESS_CORRECT_POINTS, "Correct guess"))
        else:
            changes.append(ScoreChange(player_id, 0, "Wrong guess"))
    return changes


def apply_score_change(current_score: int, change: int) -> int:
    return max(0, int(current_score or 0) + int(change))


def interleave_by_round(per_player: Iterable[Sequence[T]]) -> list[T]:
    """Merge per-player lists by index: round 0 of everyone, then round 1, ..."""
    lists = [list(items) for items in per_player]
    rounds = max((len(items) for items in lists), default=0)
    merged = []
    for round_index in range(rounds):
        for items in lists:
            if round_index < len(items):
                merged.append(items[round_index])
    return merged


def seconds_remaining(deadline_ms: int, now_ms: int) -> int:
    if not deadline_ms:
        return 0
    return max(0, -(-(int(deadline_ms) - int(now_ms)) // 1000))
