import sqlite3

from flask import current_app, g, jsonify, request

from api_errors import error_code_for_status, error_response


def register_game_api_routes(bp, context):
    party_quiz_service = context["party_quiz_service"]

    def _api_error(status: int, message: str, details=None):
        return error_response(
            status=status,
            code=error_code_for_status(status),
            message=message,
            details=details,
        )

    def _build_responder(*, log_label: str, unavailable_message: str):
        def _respond(fn):
            try:
                payload = fn()
                return jsonify(payload)
            except sqlite3.Error as exc:
                current_app.logger.error(
                    "%s storage failure [%s]: %s",
                    log_label,
                    g.get("request_id", "-"),
                    exc,
                )
                return _api_error(500, unavailable_message)
            except Exception as exc:
                status_code = int(getattr(exc, "status_code", 500))
                if status_code >= 500:
                    current_app.logger.error(
                        "%s API failure [%s]: %s",
                        log_label,
                        g.get("request_id", "-"),
                        exc,
                        exc_info=(type(exc), exc, exc.__traceback__),
                    )
                    return _api_error(500, unavailable_message)
                return _api_error(status_code, str(exc), getattr(exc, "details", None))

        return _respond

    _party_quiz_response = _build_responder(
        log_label="Party Quiz",
        unavailable_message="Party Quiz is temporarily unavailable.",
    )

    def _json_body() -> dict:
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}

    def _player_id_from(data: dict) -> str:
        return str(data.get("player_id") or data.get("playerId") or "").strip()

    def _bootstrap():
        return _party_quiz_response(party_quiz_service.bootstrap)

    def _create_session():
        data = _json_body()
        player_name = str(data.get("player_name") or data.get("name") or "")
        return _party_quiz_response(lambda: party_quiz_service.create_session(player_name))

    def _join_session(session_code: str):
        data = _json_body()
        player_name = str(data.get("player_name") or data.get("name") or "")
        player_id = _player_id_from(data)
        return _party_quiz_response(
            lambda: party_quiz_service.join_session(
                session_code=session_code,
                player_name=player_name,
                player_id=player_id or None,
            )
        )

    def _session_state(session_code: str):
        player_id = (request.args.get("player_id") or "").strip()
        return _party_quiz_response(
            lambda: party_quiz_service.get_state(
                session_code=session_code,
                player_id=player_id or None,
            )
        )

    def _session_events(session_code: str):
        since = request.args.get("since", default=0, type=int)
        tables = [
            name.strip()
            for name in (request.args.get("tables") or "").split(",")
            if name.strip()
        ]
        return _party_quiz_response(
            lambda: party_quiz_service.get_events(
                session_code, since=since, tables=tables or None
            )
        )

    def _start_session(session_code: str):
        player_id = _player_id_from(_json_body())
        return _party_quiz_response(
            lambda: party_quiz_service.start_session(
                session_code=session_code,
                player_id=player_id,
            )
        )

    def _questions(session_code: str):
        if request.method == "GET":
            return _party_quiz_response(
                lambda: party_quiz_service.list_questions(session_code)
            )
        player_id = _player_id_from(_json_body())
        return _party_quiz_response(
            lambda: party_quiz_service.generate_questions(session_code, player_id)
        )

    def _advance(session_code: str):
        data = _json_body()
        return _party_quiz_response(
            lambda: party_quiz_service.advance_icebreaker(
                session_code,
                _player_id_from(data),
                str(data.get("action") or ""),
            )
        )

    def _quiz(session_code: str):
        if request.method == "GET":
            return _party_quiz_response(
                lambda: party_quiz_service.list_quiz_questions(session_code)
            )
        player_id = _player_id_from(_json_body())
        return _party_quiz_response(
            lambda: party_quiz_service.generate_quiz(session_code, player_id)
        )

    def _quiz_advance(session_code: str):
        data = _json_body()
        return _party_quiz_response(
            lambda: party_quiz_service.advance_quiz(
                session_code,
                _player_id_from(data),
                str(data.get("action") or ""),
            )
        )

    def _question_answers(question_id: int):
        if request.method == "GET":
            return _party_quiz_response(
                lambda: party_quiz_service.list_answers(question_id)
            )
        data = _json_body()
        answer_text = data.get("answer_text", data.get("answer"))
        return _party_quiz_response(
            lambda: party_quiz_service.submit_answer(
                question_id,
                _player_id_from(data),
                answer_text,
            )
        )

    def _quiz_question_answers(quiz_question_id: int):
        if request.method == "GET":
            return _party_quiz_response(
                lambda: party_quiz_service.list_quiz_answers(quiz_question_id)
            )
        data = _json_body()
        selected = data.get("selected_option", data.get("selectedAnswer"))
        return _party_quiz_response(
            lambda: party_quiz_service.submit_quiz_answer(
                quiz_question_id,
                _player_id_from(data),
                selected,
            )
        )

    routes = (
        ("/bootstrap", "bootstrap", _bootstrap, ["GET"]),
        ("/sessions", "create_session", _create_session, ["POST"]),
        ("/sessions/<string:session_code>/join", "join_session", _join_session, ["POST"]),
        ("/sessions/<string:session_code>", "session_state", _session_state, ["GET"]),
        ("/sessions/<string:session_code>/events", "session_events", _session_events, ["GET"]),
        ("/sessions/<string:session_code>/start", "start_session", _start_session, ["POST"]),
        ("/sessions/<string:session_code>/questions", "questions", _questions, ["GET", "POST"]),
        ("/sessions/<string:session_code>/advance", "advance", _advance, ["POST"]),
        ("/sessions/<string:session_code>/quiz", "quiz", _quiz, ["GET", "POST"]),
        ("/sessions/<string:session_code>/quiz/advance", "quiz_advance", _quiz_advance, ["POST"]),
        ("/questions/<int:question_id>/answers", "question_answers", _question_answers, ["GET", "POST"]),
        (
            "/quiz-questions/<int:quiz_question_id>/answers",
            "quiz_question_answers",
            _quiz_question_answers,
            ["GET", "POST"],
        ),
    )
    for path, name, view_func, methods in routes:
        bp.add_url_rule(
            f"/api/party-quiz{path}",
            endpoint=f"api_party_quiz_{name}",
            view_func=view_func,
            methods=methods,
        )
