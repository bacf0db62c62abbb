import sqlite3
import time

import pytest

from party_quiz import PartyQuizError


def _play_icebreakers(quiz_service, code, host_id, player_ids):
    quiz_service.start_session(code, host_id)
    questions = quiz_service.generate_questions(code, host_id)["questions"]
    for question in questions:
        for index, player_id in enumerate(player_ids):
            quiz_service.submit_answer(question["id"], player_id, f"Answer {index}")
    for _ in questions:
        quiz_service.advance_icebreaker(code, host_id, "next_question")
    return questions


def _start_quiz(quiz_service, room, *names):
    code, host_id, player_ids = room(*names)
    _play_icebreakers(quiz_service, code, host_id, player_ids)
    quiz = quiz_service.generate_quiz(code, host_id)
    return code, host_id, player_ids, quiz["quiz_questions"]


def _scores(quiz_service, code):
    state = quiz_service.get_state(code)
    return {player["id"]: player["score"] for player in state["players"]}


def test_icebreaker_answer_upsert_keeps_last_write(quiz_service, room):
    code, host_id, (alice_id,) = room("Alice")
    quiz_service.start_session(code, host_id)
    question = quiz_service.generate_questions(code, host_id)["questions"][0]

    first = quiz_service.submit_answer(question["id"], alice_id, "  Pizza  ")
    second = quiz_service.submit_answer(question["id"], alice_id, "Tacos")

    assert first["updated"] is False
    assert second["updated"] is True
    assert first["answer"]["id"] == second["answer"]["id"]
    listed = quiz_service.list_answers(question["id"])["answers"]
    assert len(listed) == 1
    assert listed[0]["answer_text"] == "Tacos"
    assert listed[0]["player"] == {
        "id": alice_id,
        "name": "Alice",
        "avatar_color": "#8b5cf6",
        "is_projector": False,
    }


@pytest.mark.parametrize(
    "text,status",
    [("", 400), ("   ", 400), ("x" * 501, 400)],
)
def test_icebreaker_answer_validation(quiz_service, room, text, status):
    code, host_id, (alice_id,) = room("Alice", start=True)
    question = quiz_service.generate_questions(code, host_id)["questions"][0]

    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.submit_answer(question["id"], alice_id, text)
    assert exc_info.value.status_code == status


def test_icebreaker_answer_requires_same_session(quiz_service, room):
    code, host_id, _ = room("Alice", start=True)
    question = quiz_service.generate_questions(code, host_id)["questions"][0]
    _, _, (outsider_id,) = room("Mallory")

    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.submit_answer(question["id"], outsider_id, "Sneaky")
    assert exc_info.value.status_code == 404
    assert "not part of this session" in str(exc_info.value)

    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.submit_answer(999_999, outsider_id, "Nothing")
    assert exc_info.value.status_code == 404


def test_icebreaker_advance_guards(quiz_service, room):
    code, host_id, _ = room("Alice", start=True)

    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.advance_icebreaker(code, host_id, "next_question")
    assert exc_info.value.status_code == 404

    quiz_service.generate_questions(code, host_id)
    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.advance_icebreaker(code, host_id, "dance")
    assert exc_info.value.status_code == 400

    quiz_service.advance_icebreaker(code, host_id, "show_answers")
    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.advance_icebreaker(code, host_id, "show_answers")
    assert exc_info.value.status_code == 409


def test_generate_questions_outside_lobby_conflicts(quiz_service, room):
    code, host_id, _ = room("Alice", start=True)
    quiz_service.generate_questions(code, host_id)

    # Clearing the questions leaves the session in "asking" with nothing to return.
    with sqlite3.connect(quiz_service.db_path) as conn:
        conn.execute("DELETE FROM pq_questions WHERE session_code = ?", (code,))

    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.generate_questions(code, host_id)
    assert exc_info.value.status_code == 409


def test_generate_quiz_preconditions(quiz_service, room):
    code, host_id, player_ids = room()
    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.generate_quiz(code, host_id)
    assert exc_info.value.status_code == 412

    code, host_id, (alice_id,) = room("Alice", start=True)
    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.generate_quiz(code, host_id)
    assert exc_info.value.status_code == 412
    assert "icebreaker questions" in str(exc_info.value)

    quiz_service.generate_questions(code, host_id)
    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.generate_quiz(code, host_id)
    assert exc_info.value.status_code == 412
    assert "answers" in str(exc_info.value)

    question = quiz_service.list_questions(code)["questions"][0]
    quiz_service.submit_answer(question["id"], alice_id, "Board games")
    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.generate_quiz(code, host_id)
    assert exc_info.value.status_code == 409


def test_generate_quiz_skips_players_without_answers(quiz_service, room, ai_worker):
    code, host_id, (alice_id, bob_id) = room("Alice", "Bob", start=True)
    questions = quiz_service.generate_questions(code, host_id)["questions"]
    quiz_service.submit_answer(questions[0]["id"], alice_id, "Chess")
    for _ in questions:
        quiz_service.advance_icebreaker(code, host_id, "next_question")

    quiz = quiz_service.generate_quiz(code, host_id)
    again = quiz_service.generate_quiz(code, host_id)

    assert {item["about_player_id"] for item in quiz["quiz_questions"]} == {alice_id}
    assert len(quiz["quiz_questions"]) == 2
    assert again["generated"] is False
    assert [item["id"] for item in again["quiz_questions"]] == [
        item["id"] for item in quiz["quiz_questions"]
    ]
    assert ai_worker.quiz_calls == 1


def test_duplicate_quiz_answer_conflicts_without_mutation(quiz_service, room):
    code, host_id, (alice_id, _bob_id), quiz_questions = _start_quiz(
        quiz_service, room, "Alice", "Bob"
    )
    first = quiz_service.submit_quiz_answer(quiz_questions[0]["id"], alice_id, "B")
    assert first["is_correct"] is False

    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.submit_quiz_answer(quiz_questions[0]["id"], alice_id, "A")
    assert exc_info.value.status_code == 409
    assert exc_info.value.details["answer"]["selected_option"] == "B"

    answers = quiz_service.list_quiz_answers(quiz_questions[0]["id"])["answers"]
    assert len(answers) == 1
    assert answers[0]["selected_option"] == "B"
    assert answers[0]["is_correct"] is False


def test_quiz_answer_only_accepted_for_open_question(quiz_service, room):
    code, host_id, (alice_id,), quiz_questions = _start_quiz(quiz_service, room, "Alice")

    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.submit_quiz_answer(quiz_questions[1]["id"], alice_id, "A")
    assert exc_info.value.status_code == 409

    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.submit_quiz_answer(quiz_questions[0]["id"], alice_id, "E")
    assert exc_info.value.status_code == 400

    quiz_service.advance_quiz(code, host_id, "show_results")
    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.submit_quiz_answer(quiz_questions[0]["id"], alice_id, "A")
    assert exc_info.value.status_code == 409


def test_show_results_scores_once(quiz_service, room):
    code, host_id, (alice_id, bob_id), quiz_questions = _start_quiz(
        quiz_service, room, "Alice", "Bob"
    )
    quiz_service.submit_quiz_answer(quiz_questions[0]["id"], alice_id, "A")
    quiz_service.submit_quiz_answer(quiz_questions[0]["id"], bob_id, "A")

    results = quiz_service.advance_quiz(code, host_id, "show_results")
    changes = {item["player_id"]: item for item in results["score_changes"]}
    assert changes[alice_id]["change"] == 2
    assert changes[bob_id]["change"] == 1
    assert changes[bob_id]["previous_score"] == 0
    assert changes[bob_id]["name"] == "Bob"

    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.advance_quiz(code, host_id, "show_results")
    assert exc_info.value.status_code == 409
    assert _scores(quiz_service, code) == {host_id: 0, alice_id: 2, bob_id: 1}


def test_everyone_timing_out_penalises_about_player_only(quiz_service, room):
    code, host_id, (alice_id, bob_id), _ = _start_quiz(quiz_service, room, "Alice", "Bob")
    quiz_service.submit_quiz_answer(
        quiz_service.get_state(code)["current_quiz_question"]["id"], alice_id, "A"
    )
    quiz_service.advance_quiz(code, host_id, "show_results")
    assert _scores(quiz_service, code)[alice_id] == 2

    quiz_service.advance_quiz(code, host_id, "next_question")
    results = quiz_service.advance_quiz(code, host_id, "show_results")
    reasons = {item["player_id"]: item["reason"] for item in results["score_changes"]}
    assert set(reasons.values()) == {"Everyone ran out of time"}
    changes = {item["player_id"]: item["change"] for item in results["score_changes"]}
    assert changes == {alice_id: 0, bob_id: -1}
    assert _scores(quiz_service, code)[bob_id] == 0


def test_quiz_advance_requires_results_before_next(quiz_service, room):
    code, host_id, _, quiz_questions = _start_quiz(quiz_service, room, "Alice")

    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.advance_quiz(code, host_id, "next_question")
    assert exc_info.value.status_code == 409

    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.advance_quiz(code, host_id, "show_answers")
    assert exc_info.value.status_code == 400

    for _ in quiz_questions:
        quiz_service.advance_quiz(code, host_id, "show_results")
        step = quiz_service.advance_quiz(code, host_id, "next_question")

    assert step["finished"] is True
    assert step["session"]["phase"] == "game_over"
    assert step["session"]["question_deadline"] is None
    assert step["session"]["current_quiz_question_number"] == len(quiz_questions)


def test_stale_sessions_cascade_on_cleanup(quiz_service, room):
    code, host_id, (alice_id,) = room("Alice", start=True)
    question = quiz_service.generate_questions(code, host_id)["questions"][0]
    quiz_service.submit_answer(question["id"], alice_id, "Hiking")

    stale_ts = int(time.time()) - quiz_service.STALE_SESSION_SECONDS - 60
    with sqlite3.connect(quiz_service.db_path) as conn:
        conn.execute("UPDATE pq_sessions SET updated_at = ? WHERE code = ?", (stale_ts, code))

    quiz_service.create_session("Next host")

    with sqlite3.connect(quiz_service.db_path) as conn:
        for table, column in (
            ("pq_sessions", "code"),
            ("pq_players", "session_code"),
            ("pq_questions", "session_code"),
            ("pq_events", "session_code"),
        ):
            count = conn.execute(
                f"SELECT COUNT(*) FROM {table} WHERE {column} = ?", (code,)
            ).fetchone()[0]
            assert count == 0, table
        assert conn.execute("SELECT COUNT(*) FROM pq_answers").fetchone()[0] == 0


def test_only_one_projector_per_session(quiz_service, room):
    code, _, _ = room()
    with sqlite3.connect(quiz_service.db_path) as conn:
        with pytest.raises(sqlite3.IntegrityError):
            conn.execute(
                """
                INSERT INTO pq_players
                (player_id, session_code, name, is_projector, score, avatar_color, seat, joined_at)
                VALUES ('second-host', ?, 'Other', 1, 0, '#000000', 9, 0)
                """,
                (code,),
            )


def test_purge_stale_sessions_honours_max_age(quiz_service, room):
    old_code, _, _ = room("Alice")
    fresh_code, _, _ = room("Bob")

    with sqlite3.connect(quiz_service.db_path) as conn:
        conn.execute(
            "UPDATE pq_sessions SET updated_at = ? WHERE code = ?",
            (int(time.time()) - 3600, old_code),
        )

    assert quiz_service.purge_stale_sessions(max_age_seconds=1800) == 1
    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.get_state(old_code)
    assert exc_info.value.status_code == 404
    assert quiz_service.get_state(fresh_code)["session"]["code"] == fresh_code

    with pytest.raises(PartyQuizError):
        quiz_service.purge_stale_sessions(max_age_seconds=-1)


def test_join_code_with_extra_characters_is_not_found(quiz_service, room):
    code, _, _ = room()

    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.join_session(code + "X", "Eve")
    assert exc_info.value.status_code == 404

    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.get_state(code + "X")
    assert exc_info.value.status_code == 404

    joined = quiz_service.join_session(f" {code.lower()} ", "Eve")
    assert joined["session"]["code"] == code


def test_round_scores_build_on_previous_scores(quiz_service, room):
    code, host_id, (alice_id, bob_id, cara_id), quiz_questions = _start_quiz(
        quiz_service, room, "Alice", "Bob", "Cara"
    )
    assert [item["about_player_id"] for item in quiz_questions[:2]] == [alice_id, bob_id]

    quiz_service.submit_quiz_answer(quiz_questions[0]["id"], alice_id, "A")
    quiz_service.submit_quiz_answer(quiz_questions[0]["id"], bob_id, "A")
    quiz_service.submit_quiz_answer(quiz_questions[0]["id"], cara_id, "B")
    quiz_service.advance_quiz(code, host_id, "show_results")
    assert _scores(quiz_service, code) == {host_id: 0, alice_id: 2, bob_id: 1, cara_id: 0}

    quiz_service.advance_quiz(code, host_id, "next_question")
    quiz_service.submit_quiz_answer(quiz_questions[1]["id"], bob_id, "C")
    quiz_service.submit_quiz_answer(quiz_questions[1]["id"], alice_id, "A")
    quiz_service.submit_quiz_answer(quiz_questions[1]["id"], cara_id, "D")
    results = quiz_service.advance_quiz(code, host_id, "show_results")

    changes = {item["player_id"]: item for item in results["score_changes"]}
    assert {player_id: item["change"] for player_id, item in changes.items()} == {
        alice_id: 1,
        bob_id: -1,
        cara_id: 0,
    }
    assert {player_id: item["previous_score"] for player_id, item in changes.items()} == {
        alice_id: 2,
        bob_id: 1,
        cara_id: 0,
    }
    for item in changes.values():
        assert item["score"] == item["previous_score"] + item["change"]
    assert _scores(quiz_service, code) == {host_id: 0, alice_id: 3, bob_id: 0, cara_id: 0}


def test_questions_require_a_started_game(quiz_service, room, ai_worker):
    code, host_id, _ = room("Alice")

    with pytest.raises(PartyQuizError) as exc_info:
        quiz_service.generate_questions(code, host_id)
    assert exc_info.value.status_code == 409
    assert ai_worker.icebreaker_calls == 0

    # Lobby stays open to joins until the host starts.
    quiz_service.join_session(code, "Bob")
    quiz_service.start_session(code, host_id)
    assert len(quiz_service.generate_questions(code, host_id)["questions"]) == 3
