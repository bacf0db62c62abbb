from __future__ import annotations

import logging
import sqlite3
import time

import party_quiz_rules as rules
from change_feed import EVENT_INSERT, EVENT_UPDATE
from multiplayer_service_core import MultiplayerServiceCore

logger = logging.getLogger(__name__)


class PartyQuizError(Exception):
    def __init__(self, message: str, status_code: int = 400, details=None):
        super().__init__(message)
        self.status_code = status_code
        self.details = details


class PartyQuizService(MultiplayerServiceCore):
    GAME_NAME = "Party Quiz"
    MAX_PLAYERS = 4
    MIN_PLAYERS = 1
    MAX_ANSWER_LENGTH = 500

    SESSION_TABLE = "pq_sessions"
    PLAYER_TABLE = "pq_players"
    ERROR_CLASS = PartyQuizError

    def __init__(self, *, db_path: str, ai_worker, change_feed=None, metrics_hook=None):
        super().__init__(db_path=db_path, change_feed=change_feed)
        self.ai_worker = ai_worker
        self.metrics_hook = metrics_hook
        self.ensure_schema()

    # ------------------------
    # Public API helpers
    # ------------------------

    def bootstrap(self) -> dict:
        return {
            "game_name": self.GAME_NAME,
            "min_players": self.MIN_PLAYERS,
            "max_players": self.MAX_PLAYERS,
            "code_length": self.SESSION_CODE_LENGTH,
            "icebreaker_question_count": rules.ICEBREAKER_QUESTION_COUNT,
            "quiz_questions_per_player": rules.QUIZ_QUESTIONS_PER_PLAYER,
            "question_seconds": rules.QUESTION_SECONDS,
            "option_labels": list(rules.OPTION_LABELS),
            "statuses": list(rules.STATUSES),
            "phases": list(rules.PHASES),
            "ai_enabled": bool(getattr(self.ai_worker, "can_generate", False)),
        }

    def create_session(self, player_name: str) -> dict:
        def _insert_session(conn: sqlite3.Connection, code: str, now_ts: int) -> None:
            conn.execute(
                """
                INSERT INTO pq_sessions
                (code, status, phase, current_question_number, current_quiz_question_number,
                 created_at, updated_at)
                VALUES (?, ?, ?, 0, 0, ?, ?)
                """,
                (code, rules.STATUS_WAITING, rules.PHASE_LOBBY, now_ts, now_ts),
            )
            self._publish(
                conn,
                session_code=code,
                table="sessions",
                event_type=EVENT_INSERT,
                row_key=code,
                row=self._session_to_dict(self._get_session(conn, code)),
            )

        code, host = self._create_session_identity(
            player_name=player_name,
            insert_session=_insert_session,
        )
        self._record("sessions_created")
        logger.info("Party quiz session %s created by %s.", code, host["name"])

        with self._connect() as conn:
            session = self._require_session(conn, code)
        return {
            "session": self._session_to_dict(session),
            "player": self._player_to_dict(host),
            "is_projector": True,
        }

    def join_session(
        self, session_code: str, player_name: str, player_id: str | None = None
    ) -> dict:
        code, player, session, rejoined = self._join_session_identity(
            session_code=session_code,
            player_name=player_name,
            player_id=player_id,
            waiting_status=rules.STATUS_WAITING,
            started_message="Game has already started.",
            session_full_message=f"Game is full ({self.MAX_PLAYERS} players max).",
        )
        if not rejoined:
            self._record("players_joined")
            logger.info("Player %s joined party quiz %s.", player["name"], code)

        return {
            "session": self._session_to_dict(session),
            "player": self._player_to_dict(player),
            "is_projector": bool(player["is_projector"]),
        }

    def get_state(self, session_code: str, player_id: str | None = None) -> dict:
        code = self._normalize_code(session_code)
        if not code:
            self._raise_error("Session code is required.", 400)
        viewer_id = self._normalize_player_id(player_id)
        now_ms = self._now_ms()

        with self._connect() as conn:
            session = self._require_session(conn, code)
            players = self._list_players(conn, code)
            viewer = next((row for row in players if row["player_id"] == viewer_id), None)

            current_question = None
            if session["current_question_id"]:
                row = self._get_question(conn, session["current_question_id"])
                if row:
                    current_question = self._question_to_dict(row)
                    current_question["answer_count"] = self._count_rows(
                        conn, "pq_answers", "question_id", row["id"]
                    )
                    if viewer:
                        mine = conn.execute(
                            "SELECT answer_text FROM pq_answers WHERE question_id = ? AND player_id = ?",
                            (row["id"], viewer["player_id"]),
                        ).fetchone()
                        current_question["my_answer"] = mine["answer_text"] if mine else None

            current_quiz_question = None
            if session["current_quiz_question_id"]:
                row = self._get_quiz_question(conn, session["current_quiz_question_id"])
                if row:
                    current_quiz_question = self._quiz_question_to_dict(
                        row, reveal=self._can_reveal(session, row["id"])
                    )
                    current_quiz_question["answer_count"] = self._count_rows(
                        conn, "pq_quiz_answers", "quiz_question_id", row["id"]
                    )
                    if viewer:
                        mine = self._get_quiz_answer(conn, row["id"], viewer["player_id"])
                        current_quiz_question["my_answer"] = (
                            self._quiz_answer_to_dict(mine) if mine else None
                        )

            total_questions = self._count_rows(conn, "pq_questions", "session_code", code)
            total_quiz_questions = self._count_rows(
                conn, "pq_quiz_questions", "session_code", code
            )

        deadline = int(session["question_deadline"] or 0)
        return {
            "session": self._session_to_dict(session),
            "players": [self._player_to_dict(row) for row in players],
            "viewer": self._player_to_dict(viewer) if viewer else None,
            "is_projector": bool(viewer["is_projector"]) if viewer else False,
            "current_question": current_question,
            "current_quiz_question": current_quiz_question,
            "total_questions": total_questions,
            "total_quiz_questions": total_quiz_questions,
            "question_deadline": deadline or None,
            "seconds_remaining": rules.seconds_remaining(deadline, now_ms),
            "server_time": now_ms,
        }

    def get_events(self, session_code: str, *, since=0, tables=None) -> dict:
        code = self._normalize_code(session_code)
        with self._connect() as conn:
            self._require_session(conn, code)
        if self.change_feed is None:
            return {"events": [], "cursor": int(since or 0)}
        return self.change_feed.poll(code, since=since, tables=tables)

    def start_session(self, session_code: str, player_id: str) -> dict:
        code = self._normalize_code(session_code)
        with self._connect() as conn:
            session = self._require_session(conn, code)
            self._require_host(conn, session, player_id, "Only the host can start the game.")
            if session["status"] != rules.STATUS_WAITING:
                self._raise_error("Game has already started.", 409)

            conn.execute(
                "UPDATE pq_sessions SET status = ?, updated_at = ? WHERE code = ?",
                (rules.STATUS_PLAYING, int(time.time()), code),
            )
            session = self._publish_session(conn, code)

        logger.info("Party quiz %s started.", code)
        return {"session": self._session_to_dict(session)}

    # ------------------------
    # Icebreaker round
    # ------------------------

    def generate_questions(self, session_code: str, player_id: str) -> dict:
        code = self._normalize_code(session_code)
        with self._connect() as conn:
            session = self._require_session(conn, code)
            self._require_host(conn, session, player_id, "Only the host can generate questions.")
            existing = self._list_question_rows(conn, code)
            if existing:
                return self._questions_payload(session, existing, generated=False)
            if session["status"] != rules.STATUS_PLAYING:
                self._raise_error("Start the game before generating questions.", 409)
            if session["phase"] != rules.PHASE_LOBBY:
                self._raise_error("Questions can only be generated from the lobby.", 409)

        # Network call stays outside any open transaction.
        texts = list(self.ai_worker.generate_icebreaker_questions())
        if len(texts) != rules.ICEBREAKER_QUESTION_COUNT:
            self._raise_error("Question generator returned an unexpected count.", 500)

        now_ts = int(time.time())
        with self._connect() as conn:
            session = self._require_session(conn, code)
            existing = self._list_question_rows(conn, code)
            if existing:
                return self._questions_payload(session, existing, generated=False)

            try:
                for number, text in enumerate(texts, start=1):
                    conn.execute(
                        """
                        INSERT INTO pq_questions
                        (session_code, question_number, question_text, created_at)
                        VALUES (?, ?, ?, ?)
                        """,
                        (code, number, text, now_ts),
                    )
            except sqlite3.IntegrityError:
                conn.rollback()
                return self._questions_payload(
                    session, self._list_question_rows(conn, code), generated=False
                )

            rows = self._list_question_rows(conn, code)
            for row in rows:
                self._publish(
                    conn,
                    session_code=code,
                    table="questions",
                    event_type=EVENT_INSERT,
                    row_key=row["id"],
                    row=self._question_to_dict(row),
                )

            self._transition(
                conn,
                session,
                rules.PHASE_ASKING,
                current_question_id=rows[0]["id"],
                current_question_number=1,
            )
            session = self._publish_session(conn, code)

        logger.info("Generated %s icebreaker questions for %s.", len(rows), code)
        return self._questions_payload(session, rows, generated=True)

    def list_questions(self, session_code: str) -> dict:
        code = self._normalize_code(session_code)
        with self._connect() as conn:
            session = self._require_session(conn, code)
            rows = self._list_question_rows(conn, code)
        return self._questions_payload(session, rows, generated=False)

    def submit_answer(self, question_id, player_id: str, answer_text: str) -> dict:
        text = str(answer_text or "").strip()
        if not text:
            self._raise_error("Answer text is required.", 400)
        if len(text) > self.MAX_ANSWER_LENGTH:
            self._raise_error(
                f"Answers are limited to {self.MAX_ANSWER_LENGTH} characters.", 400
            )
        question_id = self._parse_row_id(question_id, "question_id")
        now_ts = int(time.time())

        with self._connect() as conn:
            question = self._get_question(conn, question_id)
            if not question:
                self._raise_error("Question not found.", 404)
            player = self._require_member(conn, player_id, question["session_code"])

            previous = conn.execute(
                "SELECT id FROM pq_answers WHERE question_id = ? AND player_id = ?",
                (question_id, player["player_id"]),
            ).fetchone()
            conn.execute(
                """
                INSERT INTO pq_answers
                (question_id, player_id, answer_text, created_at, updated_at)
                VALUES (?, ?, ?, ?, ?)
                ON CONFLICT(question_id, player_id) DO UPDATE SET
                    answer_text = excluded.answer_text,
                    updated_at = excluded.updated_at
                """,
                (question_id, player["player_id"], text, now_ts, now_ts),
            )
            row = conn.execute(
                """
                SELECT id, question_id, player_id, answer_text, created_at, updated_at
                FROM pq_answers
                WHERE question_id = ? AND player_id = ?
                """,
                (question_id, player["player_id"]),
            ).fetchone()
            answer = self._answer_to_dict(row)
            self._publish(
                conn,
                session_code=question["session_code"],
                table="answers",
                event_type=EVENT_UPDATE if previous else EVENT_INSERT,
                row_key=row["id"],
                row=answer,
            )
            self._touch_session(conn, question["session_code"], now_ts)

        return {"answer": answer, "updated": bool(previous)}

    def list_answers(self, question_id) -> dict:
        question_id = self._parse_row_id(question_id, "question_id")
        with self._connect() as conn:
            if not self._get_question(conn, question_id):
                self._raise_error("Question not found.", 404)
            rows = conn.execute(
                """
                SELECT a.id, a.question_id, a.player_id, a.answer_text, a.created_at, a.updated_at,
                       p.name, p.avatar_color, p.is_projector
                FROM pq_answers a
                JOIN pq_players p ON p.player_id = a.player_id
                WHERE a.question_id = ?
                ORDER BY a.created_at ASC, a.id ASC
                """,
                (question_id,),
            ).fetchall()

        answers = []
        for row in rows:
            item = self._answer_to_dict(row)
            item["player"] = self._player_brief(row, include_projector=True)
            answers.append(item)
        return {"question_id": question_id, "answers": answers}

    def advance_icebreaker(self, session_code: str, player_id: str, action: str) -> dict:
        code = self._normalize_code(session_code)
        action = str(action or "").strip()
        if action not in rules.ICEBREAKER_ACTION_PHASES:
            self._raise_error("Invalid action.", 400)

        with self._connect() as conn:
            session = self._require_session(conn, code)
            self._require_host(conn, session, player_id, "Only the host can advance the game.")
            rows = self._list_question_rows(conn, code)
            if not rows:
                self._raise_error("No questions found for this game.", 404)
            if not rules.action_allowed(rules.ICEBREAKER_ACTION_PHASES, action, session["phase"]):
                self._raise_error(
                    f"Cannot {action.replace('_', ' ')} during {session['phase']}.", 409
                )

            if action == rules.ACTION_SHOW_ANSWERS:
                self._transition(conn, session, rules.PHASE_SHOWING_ANSWERS)
                session = self._publish_session(conn, code)
                return {"session": self._session_to_dict(session), "action": action}

            total = len(rows)
            step = rules.step_ordinal(session["current_question_number"], total)
            target = rows[step.ordinal - 1]
            if step.finished:
                self._transition(
                    conn,
                    session,
                    rules.PHASE_QUIZ,
                    current_question_id=target["id"],
                    current_question_number=step.ordinal,
                )
                session = self._publish_session(conn, code)
                logger.info("Icebreakers finished for %s; moving to quiz.", code)
                return {
                    "session": self._session_to_dict(session),
                    "action": "quiz_start",
                    "finished": True,
                }

            self._transition(
                conn,
                session,
                rules.PHASE_ASKING,
                current_question_id=target["id"],
                current_question_number=step.ordinal,
            )
            session = self._publish_session(conn, code)

        return {
            "session": self._session_to_dict(session),
            "action": rules.ACTION_NEXT_QUESTION,
            "finished": False,
            "question_number": step.ordinal,
            "total_questions": total,
            "question": self._question_to_dict(target),
        }

    # ------------------------
    # Quiz round
    # ------------------------

    def generate_quiz(self, session_code: str, player_id: str) -> dict:
        code = self._normalize_code(session_code)
        with self._connect() as conn:
            session = self._require_session(conn, code)
            self._require_host(conn, session, player_id, "Only the host can generate the quiz.")
            existing = self._list_quiz_rows(conn, code)
            if existing:
                return self._quiz_payload(session, existing, generated=False)

            roster = self._list_players(conn, code, include_host=False)
            if not roster:
                self._raise_error("Need at least one player besides the host.", 412)
            questions = self._list_question_rows(conn, code)
            if not questions:
                self._raise_error("No icebreaker questions exist for this game.", 412)
            answer_rows = conn.execute(
                """
                SELECT a.player_id, q.question_text, a.answer_text
                FROM pq_answers a
                JOIN pq_questions q ON q.id = a.question_id
                WHERE q.session_code = ?
                ORDER BY q.question_number ASC, a.id ASC
                """,
                (code,),
            ).fetchall()
            if not answer_rows:
                self._raise_error("No icebreaker answers have been submitted yet.", 412)

            players = []
            for row in roster:
                pairs = [
                    {"question": item["question_text"], "answer": item["answer_text"]}
                    for item in answer_rows
                    if item["player_id"] == row["player_id"]
                ]
                if pairs:
                    players.append(
                        {"player_id": row["player_id"], "name": row["name"], "answers": pairs}
                    )
            if not players:
                self._raise_error("No players have answered the icebreaker questions.", 412)
            if session["phase"] != rules.PHASE_QUIZ:
                self._raise_error("The quiz can only be generated after the icebreakers.", 409)

        generated = list(self.ai_worker.generate_quiz_questions(players))
        roster_ids = {player["player_id"] for player in players}
        generated = [item for item in generated if item.get("about_player_id") in roster_ids]
        if not generated:
            self._raise_error("Quiz generation produced no questions.", 500)

        now_ts = int(time.time())
        now_ms = self._now_ms()
        with self._connect() as conn:
            session = self._require_session(conn, code)
            existing = self._list_quiz_rows(conn, code)
            if existing:
                return self._quiz_payload(session, existing, generated=False)

            try:
                for order, item in enumerate(generated, start=1):
                    conn.execute(
                        """
                        INSERT INTO pq_quiz_questions
                        (session_code, about_player_id, question_text, correct_answer,
                         option_a, option_b, option_c, option_d, question_order, created_at)
                        VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
                        """,
                        (
                            code,
                            item["about_player_id"],
                            item["question_text"],
                            item["correct_answer"],
                            item["option_a"],
                            item["option_b"],
                            item["option_c"],
                            item["option_d"],
                            order,
                            now_ts,
                        ),
                    )
            except sqlite3.IntegrityError:
                conn.rollback()
                return self._quiz_payload(
                    session, self._list_quiz_rows(conn, code), generated=False
                )

            rows = self._list_quiz_rows(conn, code)
            for row in rows:
                self._publish(
                    conn,
                    session_code=code,
                    table="quiz_questions",
                    event_type=EVENT_INSERT,
                    row_key=row["id"],
                    row=self._quiz_question_to_dict(row, reveal=False),
                )

            self._transition(
                conn,
                session,
                rules.PHASE_QUIZ_QUESTION,
                current_quiz_question_id=rows[0]["id"],
                current_quiz_question_number=1,
                quiz_started_at=now_ms,
                question_deadline=now_ms + rules.QUESTION_SECONDS * 1000,
            )
            session = self._publish_session(conn, code)

        logger.info("Generated %s quiz questions for %s.", len(rows), code)
        return self._quiz_payload(session, rows, generated=True)

    def list_quiz_questions(self, session_code: str) -> dict:
        code = self._normalize_code(session_code)
        with self._connect() as conn:
            session = self._require_session(conn, code)
            rows = self._list_quiz_rows(conn, code)
        return self._quiz_payload(session, rows, generated=False)

    def submit_quiz_answer(self, quiz_question_id, player_id: str, selected_option: str) -> dict:
        option = str(selected_option or "").strip().upper()
        if option not in rules.OPTION_LABELS:
            self._raise_error("Selected answer must be one of A, B, C or D.", 400)
        quiz_question_id = self._parse_row_id(quiz_question_id, "quiz_question_id")

        with self._connect() as conn:
            question = self._get_quiz_question(conn, quiz_question_id)
            if not question:
                self._raise_error("Quiz question not found.", 404)
            player = self._require_member(conn, player_id, question["session_code"])
            session = self._require_session(conn, question["session_code"])
            if (
                session["phase"] != rules.PHASE_QUIZ_QUESTION
                or session["current_quiz_question_id"] != question["id"]
            ):
                self._raise_error("Answering is not open for this question.", 409)

            existing = self._get_quiz_answer(conn, question["id"], player["player_id"])
            if existing:
                self._raise_duplicate_quiz_answer(existing)

            is_correct = option == question["correct_answer"]
            try:
                conn.execute(
                    """
                    INSERT INTO pq_quiz_answers
                    (quiz_question_id, player_id, selected_option, is_correct, created_at)
                    VALUES (?, ?, ?, ?, ?)
                    """,
                    (question["id"], player["player_id"], option, int(is_correct), self._now_ms()),
                )
            except sqlite3.IntegrityError:
                existing = self._get_quiz_answer(conn, question["id"], player["player_id"])
                self._raise_duplicate_quiz_answer(existing)

            row = self._get_quiz_answer(conn, question["id"], player["player_id"])
            answer = self._quiz_answer_to_dict(row)
            self._publish(
                conn,
                session_code=question["session_code"],
                table="quiz_answers",
                event_type=EVENT_INSERT,
                row_key=row["id"],
                row=answer,
            )
            self._touch_session(conn, question["session_code"])

        return {
            "answer": answer,
            "is_correct": is_correct,
            "correct_answer": question["correct_answer"],
        }

    def list_quiz_answers(self, quiz_question_id) -> dict:
        quiz_question_id = self._parse_row_id(quiz_question_id, "quiz_question_id")
        with self._connect() as conn:
            if not self._get_quiz_question(conn, quiz_question_id):
                self._raise_error("Quiz question not found.", 404)
            rows = conn.execute(
                """
                SELECT a.id, a.quiz_question_id, a.player_id, a.selected_option, a.is_correct,
                       a.created_at, p.name, p.avatar_color, p.is_projector
                FROM pq_quiz_answers a
                JOIN pq_players p ON p.player_id = a.player_id
                WHERE a.quiz_question_id = ?
                ORDER BY a.created_at ASC, a.id ASC
                """,
                (quiz_question_id,),
            ).fetchall()

        answers = []
        for row in rows:
            item = self._quiz_answer_to_dict(row)
            item["player"] = self._player_brief(row, include_projector=True)
            answers.append(item)
        return {"quiz_question_id": quiz_question_id, "answers": answers}

    def advance_quiz(self, session_code: str, player_id: str, action: str) -> dict:
        code = self._normalize_code(session_code)
        action = str(action or "").strip()
        if action not in rules.QUIZ_ACTION_PHASES:
            self._raise_error("Invalid action.", 400)

        with self._connect() as conn:
            session = self._require_session(conn, code)
            self._require_host(conn, session, player_id, "Only the host can advance the game.")
            rows = self._list_quiz_rows(conn, code)
            if not rows:
                self._raise_error("No quiz questions found for this game.", 404)
            if not rules.action_allowed(rules.QUIZ_ACTION_PHASES, action, session["phase"]):
                self._raise_error(
                    f"Cannot {action.replace('_', ' ')} during {session['phase']}.", 409
                )

            if action == rules.ACTION_SHOW_RESULTS:
                return self._show_results(conn, session, rows)

            total = len(rows)
            step = rules.step_ordinal(session["current_quiz_question_number"], total)
            target = rows[step.ordinal - 1]
            if step.finished:
                self._transition(
                    conn,
                    session,
                    rules.PHASE_GAME_OVER,
                    status=rules.STATUS_FINISHED,
                    current_quiz_question_id=target["id"],
                    current_quiz_question_number=step.ordinal,
                    question_deadline=None,
                )
                session = self._publish_session(conn, code)
                leaderboard = self._list_players(conn, code, include_host=False)
                logger.info("Party quiz %s finished.", code)
                return {
                    "session": self._session_to_dict(session),
                    "action": rules.PHASE_GAME_OVER,
                    "finished": True,
                    "leaderboard": [
                        self._player_to_dict(row)
                        for row in sorted(leaderboard, key=lambda row: -int(row["score"]))
                    ],
                }

            deadline = self._now_ms() + rules.QUESTION_SECONDS * 1000
            self._transition(
                conn,
                session,
                rules.PHASE_QUIZ_QUESTION,
                current_quiz_question_id=target["id"],
                current_quiz_question_number=step.ordinal,
                question_deadline=deadline,
            )
            session = self._publish_session(conn, code)

        return {
            "session": self._session_to_dict(session),
            "action": rules.ACTION_NEXT_QUESTION,
            "finished": False,
            "question_number": step.ordinal,
            "total_questions": total,
            "deadline": deadline,
        }

    def purge_stale_sessions(self, max_age_seconds: int | None = None) -> int:
        if max_age_seconds is not None and int(max_age_seconds) < 0:
            self._raise_error("max_age_seconds must be 0 or greater.", 400)
        deleted = self._cleanup_stale_sessions(max_age_seconds)
        if deleted:
            logger.info("Purged %s stale party quiz sessions.", deleted)
        return deleted

    def check_connection(self) -> dict:
        database_ok = True
        try:
            with self._connect() as conn:
                conn.execute("SELECT 1").fetchone()
        except sqlite3.Error as exc:
            logger.error("Database connection check failed: %s", exc)
            database_ok = False

        ai_configured = bool(getattr(self.ai_worker, "can_generate", False))
        return {
            "status": "ok" if database_ok else "error",
            "database": database_ok,
            "ai_configured": ai_configured,
            "model": getattr(self.ai_worker, "model", None),
        }

    # ------------------------
    # Internal helpers
    # ------------------------

    def _show_results(self, conn: sqlite3.Connection, session: sqlite3.Row, rows) -> dict:
        code = session["code"]
        question = next(
            (row for row in rows if row["id"] == session["current_quiz_question_id"]), None
        )
        if not question:
            self._raise_error("Current quiz question not found.", 404)

        # Claim the phase first so a repeated reveal cannot score twice.
        self._transition(conn, session, rules.PHASE_QUIZ_RESULTS)

        roster = self._list_players(conn, code, include_host=False)
        answer_rows = conn.execute(
            "SELECT player_id, is_correct FROM pq_quiz_answers WHERE quiz_question_id = ?",
            (question["id"],),
        ).fetchall()
        changes = rules.score_quiz_round(
            roster_ids=[row["player_id"] for row in roster],
            answers={row["player_id"]: bool(row["is_correct"]) for row in answer_rows},
            about_player_id=question["about_player_id"],
        )

        by_id = {row["player_id"]: row for row in roster}
        score_changes = []
        for change in changes:
            player = by_id[change.player_id]
            previous_score = int(player["score"] or 0)
            if change.change:
                conn.execute(
                    "UPDATE pq_players SET score = MAX(0, score + ?) WHERE player_id = ?",
                    (change.change, change.player_id),
                )
                updated = self._get_player(conn, change.player_id)
                self._publish(
                    conn,
                    session_code=code,
                    table="players",
                    event_type=EVENT_UPDATE,
                    row_key=change.player_id,
                    row=self._player_to_dict(updated),
                )
            score_changes.append(
                {
                    **change.to_dict(),
                    "name": player["name"],
                    "previous_score": previous_score,
                    "score": rules.apply_score_change(previous_score, change.change),
                }
            )

        session = self._publish_session(conn, code)
        self._record("quiz_rounds_scored")
        logger.info(
            "Scored quiz question %s for %s (%s players).",
            question["question_order"],
            code,
            len(score_changes),
        )
        return {
            "session": self._session_to_dict(session),
            "action": rules.ACTION_SHOW_RESULTS,
            "score_changes": score_changes,
            "correct_answer": question["correct_answer"],
        }

    def _transition(
        self, conn: sqlite3.Connection, session: sqlite3.Row, next_phase: str, **fields
    ) -> None:
        """Move ``session`` to ``next_phase`` only if nobody moved it first."""
        if not rules.can_transition(session["phase"], next_phase):
            self._raise_error(
                f"Cannot move from {session['phase']} to {next_phase}.", 409
            )
        assignments = ["phase = ?", "updated_at = ?"]
        params: list = [next_phase, int(time.time())]
        for column, value in fields.items():
            assignments.append(f"{column} = ?")
            params.append(value)
        params.extend([session["code"], session["phase"]])

        cursor = conn.execute(
            f"UPDATE pq_sessions SET {', '.join(assignments)} WHERE code = ? AND phase = ?",
            params,
        )
        if cursor.rowcount != 1:
            self._raise_error("Game state changed. Refresh and try again.", 409)
        logger.debug("Session %s: %s -> %s", session["code"], session["phase"], next_phase)

    def _publish_session(self, conn: sqlite3.Connection, code: str) -> sqlite3.Row:
        session = self._require_session(conn, code)
        self._publish(
            conn,
            session_code=code,
            table="sessions",
            event_type=EVENT_UPDATE,
            row_key=code,
            row=self._session_to_dict(session),
        )
        return session

    def _raise_duplicate_quiz_answer(self, existing: sqlite3.Row) -> None:
        self._raise_error(
            "You have already answered this question.",
            409,
            {"answer": self._quiz_answer_to_dict(existing)},
        )

    def _require_member(
        self, conn: sqlite3.Connection, player_id: str, session_code: str
    ) -> sqlite3.Row:
        normalized = self._normalize_player_id(player_id)
        if not normalized:
            self._raise_error("player_id is required.", 400)
        player = self._get_player(conn, normalized)
        if not player:
            self._raise_error("Player not found.", 404)
        if player["session_code"] != session_code:
            self._raise_error("Player is not part of this session.", 404)
        return player

    def _record(self, name: str) -> None:
        if self.metrics_hook is not None:
            self.metrics_hook(name)

    def _can_reveal(self, session: sqlite3.Row, quiz_question_id: int) -> bool:
        return not (
            session["phase"] == rules.PHASE_QUIZ_QUESTION
            and session["current_quiz_question_id"] == quiz_question_id
        )

    def _questions_payload(self, session: sqlite3.Row, rows, *, generated: bool) -> dict:
        return {
            "session": self._session_to_dict(session),
            "questions": [self._question_to_dict(row) for row in rows],
            "generated": generated,
        }

    def _quiz_payload(self, session: sqlite3.Row, rows, *, generated: bool) -> dict:
        return {
            "session": self._session_to_dict(session),
            "quiz_questions": [
                self._quiz_question_to_dict(row, reveal=self._can_reveal(session, row["id"]))
                for row in rows
            ],
            "generated": generated,
        }

    @staticmethod
    def _parse_row_id(value, label: str) -> int:
        try:
            parsed = int(value)
        except (TypeError, ValueError):
            parsed = 0
        if parsed <= 0:
            raise PartyQuizError(f"{label} must be a positive integer.", 400)
        return parsed

    @staticmethod
    def _now_ms() -> int:
        return int(time.time() * 1000)

    @staticmethod
    def _count_rows(conn: sqlite3.Connection, table: str, column: str, value) -> int:
        row = conn.execute(
            f"SELECT COUNT(*) AS total FROM {table} WHERE {column} = ?", (value,)
        ).fetchone()
        return int(row["total"] or 0)

    def _get_session(self, conn: sqlite3.Connection, session_code: str):
        return conn.execute(
            """
            SELECT code, status, phase, current_question_id, current_question_number,
                   current_quiz_question_id, current_quiz_question_number,
                   quiz_started_at, question_deadline, created_at, updated_at
            FROM pq_sessions
            WHERE code = ?
            """,
            (session_code,),
        ).fetchone()

    @staticmethod
    def _get_question(conn: sqlite3.Connection, question_id: int):
        return conn.execute(
            """
            SELECT id, session_code, question_number, question_text, created_at
            FROM pq_questions
            WHERE id = ?
            """,
            (question_id,),
        ).fetchone()

    @staticmethod
    def _list_question_rows(conn: sqlite3.Connection, session_code: str):
        return conn.execute(
            """
            SELECT id, session_code, question_number, question_text, created_at
            FROM pq_questions
            WHERE session_code = ?
            ORDER BY question_number ASC
            """,
            (session_code,),
        ).fetchall()

    _QUIZ_QUESTION_COLUMNS = """
        q.id, q.session_code, q.about_player_id, q.question_text, q.correct_answer,
        q.option_a, q.option_b, q.option_c, q.option_d, q.question_order, q.created_at,
        p.name AS about_name, p.avatar_color AS about_avatar_color
    """

    def _get_quiz_question(self, conn: sqlite3.Connection, quiz_question_id: int):
        return conn.execute(
            f"""
            SELECT {self._QUIZ_QUESTION_COLUMNS}
            FROM pq_quiz_questions q
            LEFT JOIN pq_players p ON p.player_id = q.about_player_id
            WHERE q.id = ?
            """,
            (quiz_question_id,),
        ).fetchone()

    def _list_quiz_rows(self, conn: sqlite3.Connection, session_code: str):
        return conn.execute(
            f"""
            SELECT {self._QUIZ_QUESTION_COLUMNS}
            FROM pq_quiz_questions q
            LEFT JOIN pq_players p ON p.player_id = q.about_player_id
            WHERE q.session_code = ?
            ORDER BY q.question_order ASC
            """,
            (session_code,),
        ).fetchall()

    @staticmethod
    def _get_quiz_answer(conn: sqlite3.Connection, quiz_question_id: int, player_id: str):
        return conn.execute(
            """
            SELECT id, quiz_question_id, player_id, selected_option, is_correct, created_at
            FROM pq_quiz_answers
            WHERE quiz_question_id = ? AND player_id = ?
            """,
            (quiz_question_id, player_id),
        ).fetchone()

    @staticmethod
    def _session_to_dict(row) -> dict:
        if row is None:
            return {}
        return {
            "code": row["code"],
            "status": row["status"],
            "phase": row["phase"],
            "current_question_id": row["current_question_id"],
            "current_question_number": int(row["current_question_number"] or 0),
            "current_quiz_question_id": row["current_quiz_question_id"],
            "current_quiz_question_number": int(row["current_quiz_question_number"] or 0),
            "quiz_started_at": row["quiz_started_at"],
            "question_deadline": row["question_deadline"],
            "created_at": int(row["created_at"] or 0),
            "updated_at": int(row["updated_at"] or 0),
        }

    @staticmethod
    def _question_to_dict(row) -> dict:
        return {
            "id": int(row["id"]),
            "session_code": row["session_code"],
            "question_number": int(row["question_number"]),
            "question_text": row["question_text"],
            "created_at": int(row["created_at"] or 0),
        }

    @staticmethod
    def _answer_to_dict(row) -> dict:
        return {
            "id": int(row["id"]),
            "question_id": int(row["question_id"]),
            "player_id": row["player_id"],
            "answer_text": row["answer_text"],
            "created_at": int(row["created_at"] or 0),
            "updated_at": int(row["updated_at"] or 0),
        }

    @staticmethod
    def _quiz_question_to_dict(row, *, reveal: bool = True) -> dict:
        return {
            "id": int(row["id"]),
            "session_code": row["session_code"],
            "about_player_id": row["about_player_id"],
            "about_player": {
                "id": row["about_player_id"],
                "name": row["about_name"],
                "avatar_color": row["about_avatar_color"],
            },
            "question_text": row["question_text"],
            "correct_answer": row["correct_answer"] if reveal else None,
            "option_a": row["option_a"],
            "option_b": row["option_b"],
            "option_c": row["option_c"],
            "option_d": row["option_d"],
            "question_order": int(row["question_order"]),
            "created_at": int(row["created_at"] or 0),
        }

    @staticmethod
    def _quiz_answer_to_dict(row) -> dict:
        return {
            "id": int(row["id"]),
            "quiz_question_id": int(row["quiz_question_id"]),
            "player_id": row["player_id"],
            "selected_option": row["selected_option"],
            "is_correct": bool(row["is_correct"]),
            "created_at": int(row["created_at"] or 0),
        }

    @staticmethod
    def _player_brief(row, *, include_projector: bool = False) -> dict:
        brief = {
            "id": row["player_id"],
            "name": row["name"],
            "avatar_color": row["avatar_color"],
        }
        if include_projector:
            brief["is_projector"] = bool(row["is_projector"])
        return brief

    def ensure_schema(self) -> None:
        with self._connect() as conn:
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pq_sessions (
                    code TEXT PRIMARY KEY,
                    status TEXT NOT NULL DEFAULT 'waiting'
                        CHECK (status IN ('waiting', 'playing', 'finished')),
                    phase TEXT NOT NULL DEFAULT 'lobby'
                        CHECK (phase IN ('lobby', 'asking', 'showing_answers', 'quiz',
                                         'quiz_question', 'quiz_results', 'game_over')),
                    current_question_id INTEGER,
                    current_question_number INTEGER NOT NULL DEFAULT 0,
                    current_quiz_question_id INTEGER,
                    current_quiz_question_number INTEGER NOT NULL DEFAULT 0,
                    quiz_started_at INTEGER,
                    question_deadline INTEGER,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pq_players (
                    player_id TEXT PRIMARY KEY,
                    session_code TEXT NOT NULL,
                    name TEXT NOT NULL,
                    is_projector INTEGER NOT NULL DEFAULT 0,
                    score INTEGER NOT NULL DEFAULT 0 CHECK (score >= 0),
                    avatar_color TEXT NOT NULL,
                    seat INTEGER NOT NULL DEFAULT 0,
                    joined_at INTEGER NOT NULL,
                    FOREIGN KEY (session_code) REFERENCES pq_sessions(code) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """
                CREATE UNIQUE INDEX IF NOT EXISTS idx_pq_players_one_projector
                ON pq_players(session_code) WHERE is_projector = 1
                """
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_pq_players_session ON pq_players(session_code, seat)"
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pq_questions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_code TEXT NOT NULL,
                    question_number INTEGER NOT NULL,
                    question_text TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    UNIQUE (session_code, question_number),
                    FOREIGN KEY (session_code) REFERENCES pq_sessions(code) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pq_answers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    question_id INTEGER NOT NULL,
                    player_id TEXT NOT NULL,
                    answer_text TEXT NOT NULL,
                    created_at INTEGER NOT NULL,
                    updated_at INTEGER NOT NULL,
                    UNIQUE (question_id, player_id),
                    FOREIGN KEY (question_id) REFERENCES pq_questions(id) ON DELETE CASCADE,
                    FOREIGN KEY (player_id) REFERENCES pq_players(player_id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pq_quiz_questions (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    session_code TEXT NOT NULL,
                    about_player_id TEXT NOT NULL,
                    question_text TEXT NOT NULL,
                    correct_answer TEXT NOT NULL CHECK (correct_answer IN ('A', 'B', 'C', 'D')),
                    option_a TEXT NOT NULL,
                    option_b TEXT NOT NULL,
                    option_c TEXT NOT NULL,
                    option_d TEXT NOT NULL,
                    question_order INTEGER NOT NULL,
                    created_at INTEGER NOT NULL,
                    UNIQUE (session_code, question_order),
                    FOREIGN KEY (session_code) REFERENCES pq_sessions(code) ON DELETE CASCADE,
                    FOREIGN KEY (about_player_id) REFERENCES pq_players(player_id) ON DELETE CASCADE
                )
                """
            )
            conn.execute(
                """
                CREATE TABLE IF NOT EXISTS pq_quiz_answers (
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    quiz_question_id INTEGER NOT NULL,
                    player_id TEXT NOT NULL,
                    selected_option TEXT NOT NULL CHECK (selected_option IN ('A', 'B', 'C', 'D')),
                    is_correct INTEGER NOT NULL DEFAULT 0,
                    created_at INTEGER NOT NULL,
                    UNIQUE (quiz_question_id, player_id),
                    FOREIGN KEY (quiz_question_id) REFERENCES pq_quiz_questions(id) ON DELETE CASCADE,
                    FOREIGN KEY (player_id) REFERENCES pq_players(player_id) ON DELETE CASCADE
                )
                """
            )
