import json
import logging
import os
import re

import requests
from dotenv import load_dotenv

from party_quiz_rules import (
    ICEBREAKER_QUESTION_COUNT,
    OPTION_LABELS,
    QUIZ_QUESTIONS_PER_PLAYER,
    interleave_by_round,
)

load_dotenv()

logger = logging.getLogger(__name__)

FALLBACK_ICEBREAKERS = [
    "If you could master any hobby instantly, what would it be?",
    "What movie or show have you rewatched the most times?",
    "What's a hobby you've always wanted to try but haven't yet?",
]
FALLBACK_DISTRACTORS = [
    "Something else entirely",
    "None of these",
    "I don't know",
    "Can't remember",
    "Nothing at all",
    "It depends",
]
FALLBACK_QUESTION_TEMPLATES = [
    '{name} was asked: "{question}" What did they answer?',
    'Which of these did {name} say when asked "{question}"?',
]


class AI:
    OPENROUTER_URL = "https://openrouter.ai/api/v1/chat/completions"
    DEFAULT_MODEL = "openai/gpt-4o-mini"

    def __init__(self, *, api_key=None, model=None, timeout=None, metrics_hook=None):
        self.OPENROUTER_KEY = (
            api_key if api_key is not None else os.getenv("OPENROUTER_KEY", "")
        ).strip()
        self.model = (model or os.getenv("OPENROUTER_MODEL", "") or self.DEFAULT_MODEL).strip()
        try:
            self.timeout = float(timeout if timeout is not None else os.getenv("AI_TIMEOUT_SECONDS", "30"))
        except (TypeError, ValueError):
            self.timeout = 30.0
        self.can_generate = bool(self.OPENROUTER_KEY)
        self.metrics_hook = metrics_hook
        if not self.can_generate:
            logger.warning(
                "OPENROUTER_KEY not set; quiz content will use the fallback question sets."
            )

    def _record(self, name: str) -> None:
        if self.metrics_hook is not None:
            self.metrics_hook(name)

    # ------------------------
    # Icebreakers
    # ------------------------

    def build_icebreaker_messages(self):
        system = f"""
You are a fun party game host. Generate exactly {ICEBREAKER_QUESTION_COUNT} creative, engaging
questions that help players learn each other's entertainment preferences and hobbies.

Questions should be:
- Fun and lighthearted (not too personal)
- About entertainment, hobbies, pop culture, or leisure activities
- Open-ended but answerable in a few words
- Varied (no two questions on the same topic)

Examples of good questions:
- "If you could only watch one TV show for the rest of your life, what would it be?"
- "What's your guilty pleasure hobby that you don't tell many people about?"

You are working as an API. Return ONLY a JSON array of exactly {ICEBREAKER_QUESTION_COUNT} question strings.
"""
        return [
            {"role": "system", "content": system.strip()},
            {
                "role": "user",
                "content": f"Generate {ICEBREAKER_QUESTION_COUNT} fun icebreaker questions about entertainment and hobbies.",
            },
        ]

    def generate_icebreaker_questions(self) -> list[str]:
        try:
            content = self._chat(
                self.build_icebreaker_messages(),
                temperature=0.9,
                max_tokens=500,
                title="Party Quiz Icebreakers",
            )
            return self.parse_icebreaker_response(content)
        except Exception as exc:
            logger.warning("Icebreaker generation failed (%s); using fallback questions.", exc)
            self._record("ai_fallbacks")
            return list(FALLBACK_ICEBREAKERS)

    def parse_icebreaker_response(self, text) -> list[str]:
        parsed = self.extract_json_from_response(text)
        if not isinstance(parsed, list) or len(parsed) != ICEBREAKER_QUESTION_COUNT:
            raise ValueError(
                f"Expected a JSON array of {ICEBREAKER_QUESTION_COUNT} questions."
            )
        questions = [re.sub(r"\s+", " ", str(item or "")).strip() for item in parsed]
        if not all(questions) or not all(isinstance(item, str) for item in parsed):
            raise ValueError("Icebreaker questions must be non-empty strings.")
        return questions

    # ------------------------
    # Quiz questions
    # ------------------------

    def build_quiz_messages(self, player: dict):
        name = player["name"]
        answer_lines = "\n\n".join(
            f'Q{index}: "{item["question"]}"\n{name}\'s answer: "{item["answer"]}"'
            for index, item in enumerate(player["answers"], start=1)
        )
        prompt = f"""
You are creating trivia questions for a party game. {name} answered some icebreaker
questions about their interests. Write TRIVIA questions about the things they mentioned.

{name}'s answers:
{answer_lines}

Rules:
1. Create exactly {QUIZ_QUESTIONS_PER_PLAYER} questions.
2. Ask trivia ABOUT the subject they mentioned, not what they answered.
3. {name} should have an advantage because they know their favourite things.
4. Keep the difficulty casual. Nothing obscure.
5. Mention who the question is about, e.g. "{name} said they love X. <trivia question>?"
6. Give three plausible but wrong options and one correct option.
7. Randomise which of A, B, C or D is correct.

Return ONLY a JSON array with exactly {QUIZ_QUESTIONS_PER_PLAYER} objects shaped like:
[
  {{
    "questionText": "...",
    "correctAnswer": "B",
    "optionA": "...",
    "optionB": "...",
    "optionC": "...",
    "optionD": "..."
  }}
]
"""
        return [
            {
                "role": "system",
                "content": (
                    "You are a fun trivia game host. Questions test knowledge ABOUT a topic. "
                    "Return ONLY valid JSON, no markdown or explanation."
                ),
            },
            {"role": "user", "content": prompt.strip()},
        ]

    def generate_quiz_questions(self, players: list[dict]) -> list[dict]:
        """Generate questions for every player and interleave them round-robin."""
        per_player = []
        for player in players:
            per_player.append(self.generate_quiz_questions_for_player(player, players))
        return interleave_by_round(per_player)

    def generate_quiz_questions_for_player(self, player: dict, all_players: list[dict]) -> list[dict]:
        questions: list[dict] = []
        try:
            content = self._chat(
                self.build_quiz_messages(player),
                temperature=0.8,
                max_tokens=2000,
                title="Party Quiz Trivia",
            )
            questions = self.parse_quiz_response(content)[:QUIZ_QUESTIONS_PER_PLAYER]
        except Exception as exc:
            logger.warning(
                "Quiz generation failed for %s (%s); using fallback questions.",
                player.get("name"),
                exc,
            )

        if len(questions) < QUIZ_QUESTIONS_PER_PLAYER:
            self._record("ai_fallbacks")
            questions.extend(
                self.build_fallback_quiz_questions(
                    player,
                    all_players,
                    start_slot=len(questions),
                )
            )

        return [
            {**question, "about_player_id": player["player_id"], "about_player_name": player["name"]}
            for question in questions
        ]

    def parse_quiz_response(self, text) -> list[dict]:
        parsed = self.extract_json_from_response(text)
        if isinstance(parsed, dict):
            parsed = parsed.get("questions", [])
        if not isinstance(parsed, list):
            raise ValueError("Expected a JSON array of quiz questions.")

        questions = []
        for item in parsed:
            normalized = self._normalize_quiz_item(item)
            if normalized:
                questions.append(normalized)
        if not questions:
            raise ValueError("AI response held no usable quiz questions.")
        return questions

    @staticmethod
    def _normalize_quiz_item(item) -> dict | None:
        if not isinstance(item, dict):
            return None

        def _pick(*keys) -> str:
            for key in keys:
                value = item.get(key)
                if value is not None and str(value).strip():
                    return re.sub(r"\s+", " ", str(value)).strip()
            return ""

        question_text = _pick("questionText", "question_text", "question")
        correct = _pick("correctAnswer", "correct_answer").upper()[:1]
        options = {
            label: _pick(f"option{label}", f"option_{label.lower()}")
            for label in OPTION_LABELS
        }
        if not question_text or correct not in OPTION_LABELS or not all(options.values()):
            return None
        return {
            "question_text": question_text,
            "correct_answer": correct,
            "option_a": options["A"],
            "option_b": options["B"],
            "option_c": options["C"],
            "option_d": options["D"],
        }

    def build_fallback_quiz_questions(
        self, player: dict, all_players: list[dict], *, start_slot: int = 0
    ) -> list[dict]:
        answers = player.get("answers") or []
        if not answers:
            return []

        # Distractors never repeat the player's own answers, compared case-insensitively.
        seen = {str(item["answer"]).strip().lower() for item in answers}
        other_answers = []
        for other in all_players:
            if other["player_id"] == player["player_id"]:
                continue
            for item in other.get("answers") or []:
                text = str(item["answer"]).strip()
                if text and text.lower() not in seen:
                    seen.add(text.lower())
                    other_answers.append(text)
        filler = []
        for text in FALLBACK_DISTRACTORS:
            if text.lower() not in seen:
                seen.add(text.lower())
                filler.append(text)

        questions = []
        for slot in range(start_slot, QUIZ_QUESTIONS_PER_PLAYER):
            source = answers[slot % len(answers)]
            template = FALLBACK_QUESTION_TEMPLATES[
                (slot // len(answers)) % len(FALLBACK_QUESTION_TEMPLATES)
            ]
            distractors = (other_answers[slot:] + other_answers[:slot] + filler)[:3]
            correct_label = OPTION_LABELS[slot % len(OPTION_LABELS)]
            options = list(distractors)
            options.insert(OPTION_LABELS.index(correct_label), str(source["answer"]).strip())
            questions.append(
                {
                    "question_text": template.format(
                        name=player["name"], question=source["question"]
                    ),
                    "correct_answer": correct_label,
                    "option_a": options[0],
                    "option_b": options[1],
                    "option_c": options[2],
                    "option_d": options[3],
                }
            )
        return questions

    # ------------------------
    # Transport + parsing
    # ------------------------

    def _chat(self, messages, *, temperature: float, max_tokens: int, title: str) -> str:
        if not self.can_generate:
            raise RuntimeError("OPENROUTER_KEY not set; AI generation disabled.")

        headers = {
            "Authorization": f"Bearer {self.OPENROUTER_KEY}",
            "Content-Type": "application/json",
            "X-Title": title,
        }
        payload = {
            "model": self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }

        self._record("ai_requests")
        logger.debug("Requesting %s from OpenRouter (%s).", title, self.model)
        response = requests.post(
            self.OPENROUTER_URL, headers=headers, json=payload, timeout=self.timeout
        )
        response.raise_for_status()

        answer = response.json()["choices"][0]["message"]["content"]
        if not answer:
            raise ValueError("OpenRouter returned an empty response.")
        return answer

    def extract_json_from_response(self, text):
        """
        Handles:
        - raw JSON
        - ```json [ ... ] ```
        - prose wrapped around a single JSON array
        """

        text = str(text or "").strip()

        if text.startswith("```"):
            text = re.sub(r"^```(?:json)?", "", text, flags=re.IGNORECASE).strip()
            text = re.sub(r"```$", "", text).strip()

        try:
            return json.loads(text)
        except json.JSONDecodeError:
            match = re.search(r"\[[\s\S]*\]", text)
            if not match:
                raise
            return json.loads(match.group(0))
