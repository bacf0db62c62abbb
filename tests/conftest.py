import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from app import create_app
from app_services import AppServiceConfig
from party_quiz_rules import interleave_by_round

ICEBREAKERS = [
    "What show could you rewatch forever?",
    "Which hobby would you pick up tomorrow?",
    "What song do you always sing along to?",
]


class DummyAI:
    can_generate = False
    model = "dummy-model"

    def __init__(self):
        self.icebreaker_calls = 0
        self.quiz_calls = 0

    def generate_icebreaker_questions(self):
        self.icebreaker_calls += 1
        return list(ICEBREAKERS)

    def generate_quiz_questions(self, players):
        self.quiz_calls += 1
        per_player = []
        for player in players:
            per_player.append(
                [
                    {
                        "question_text": f"Round {slot + 1} about {player['name']}?",
                        "correct_answer": "A",
                        "option_a": "Right",
                        "option_b": "Wrong one",
                        "option_c": "Wrong two",
                        "option_d": "Wrong three",
                        "about_player_id": player["player_id"],
                        "about_player_name": player["name"],
                    }
                    for slot in range(2)
                ]
            )
        return interleave_by_round(per_player)


def make_config(db_path, **overrides):
    values = {
        "db_path": str(db_path),
        "openrouter_key": "",
        "openrouter_model": "dummy-model",
        "is_prod": False,
        "ai_timeout_seconds": 5.0,
        "log_file": "",
    }
    values.update(overrides)
    return AppServiceConfig(**values)


@pytest.fixture
def app_ctx(tmp_path):
    ai_worker = DummyAI()
    app = create_app(make_config(tmp_path / "test.db"), ai_worker=ai_worker, testing=True)
    context = app.extensions["party_quiz"]
    return {
        "app": app,
        "services": context["services"],
        "quiz_service": context["service"],
        "change_feed": context["change_feed"],
        "ai_worker": ai_worker,
    }


@pytest.fixture
def app(app_ctx):
    return app_ctx["app"]


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def services(app_ctx):
    return app_ctx["services"]


@pytest.fixture
def quiz_service(app_ctx):
    return app_ctx["quiz_service"]


@pytest.fixture
def ai_worker(app_ctx):
    return app_ctx["ai_worker"]


@pytest.fixture
def room(quiz_service):
    """Create a session with a host and the given player names."""

    def _build(*names, start=False):
        created = quiz_service.create_session("Host")
        code = created["session"]["code"]
        host_id = created["player"]["id"]
        player_ids = [
            quiz_service.join_session(code, name)["player"]["id"] for name in names
        ]
        if start:
            quiz_service.start_session(code, host_id)
        return code, host_id, player_ids

    return _build
