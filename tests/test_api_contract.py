def test_api_contract_endpoints(client):
    health = client.get("/health")
    assert health.status_code == 200
    assert health.get_json() == {"status": "ok"}

    bootstrap = client.get("/api/party-quiz/bootstrap")
    assert bootstrap.status_code == 200
    payload = bootstrap.get_json()
    assert payload["max_players"] == 4
    assert payload["code_length"] == 4
    assert payload["phases"][0] == "lobby"
    assert payload["phases"][-1] == "game_over"
    assert payload["ai_enabled"] is False

    connection = client.get("/api/test-connection")
    assert connection.status_code == 200
    assert connection.get_json()["database"] is True
    assert connection.get_json()["ai_configured"] is False

    metrics = client.get("/api/ops/metrics")
    assert metrics.status_code == 200
    assert "metrics" in metrics.get_json()


def test_metrics_count_sessions_and_joins(client):
    created = client.post("/api/party-quiz/sessions", json={"player_name": "Host"}).get_json()
    code = created["session"]["code"]
    client.post(f"/api/party-quiz/sessions/{code}/join", json={"player_name": "Alice"})
    player = client.post(
        f"/api/party-quiz/sessions/{code}/join", json={"player_name": "Bob"}
    ).get_json()["player"]
    client.post(
        f"/api/party-quiz/sessions/{code}/join",
        json={"player_name": "Bob", "player_id": player["id"]},
    )

    metrics = client.get("/api/ops/metrics").get_json()["metrics"]
    assert metrics["sessions_created"] == 1
    assert metrics["players_joined"] == 2
    assert metrics["quiz_rounds_scored"] == 0


def test_cors_and_request_id_headers(client):
    response = client.get("/health", headers={"X-Request-ID": "req-123"})
    assert response.headers["Access-Control-Allow-Origin"] == "*"
    assert response.headers["X-Request-ID"] == "req-123"

    preflight = client.options("/api/party-quiz/sessions")
    assert preflight.status_code in (200, 204)


def test_unknown_routes_and_bad_bodies_return_json_errors(client):
    missing = client.get("/api/party-quiz/nope")
    assert missing.status_code == 404
    assert missing.get_json()["code"] == "not_found"

    bad_body = client.post(
        "/api/party-quiz/sessions",
        data="not json",
        content_type="application/json",
    )
    assert bad_body.status_code == 400
    assert bad_body.get_json()["code"] == "bad_request"


def test_quiz_answer_conflict_carries_existing_answer(client, quiz_service, room):
    code, host_id, (alice_id,) = room("Alice", start=True)
    questions = quiz_service.generate_questions(code, host_id)["questions"]
    quiz_service.submit_answer(questions[0]["id"], alice_id, "Films")
    for _ in questions:
        quiz_service.advance_icebreaker(code, host_id, "next_question")
    quiz_question = quiz_service.generate_quiz(code, host_id)["quiz_questions"][0]

    path = f"/api/party-quiz/quiz-questions/{quiz_question['id']}/answers"
    first = client.post(path, json={"player_id": alice_id, "selected_option": "D"})
    assert first.status_code == 200

    second = client.post(path, json={"player_id": alice_id, "selected_option": "A"})
    assert second.status_code == 409
    body = second.get_json()
    assert body["code"] == "conflict"
    assert body["details"]["answer"]["selected_option"] == "D"

    listed = client.get(path).get_json()
    assert [item["selected_option"] for item in listed["answers"]] == ["D"]
    assert listed["answers"][0]["player"]["name"] == "Alice"


def test_storage_failures_map_to_internal(client, quiz_service, monkeypatch):
    import sqlite3

    def broken(*_args, **_kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(quiz_service, "bootstrap", broken)
    response = client.get("/api/party-quiz/bootstrap")
    assert response.status_code == 500
    body = response.get_json()
    assert body["code"] == "internal"
    assert "disk" not in body["message"]
