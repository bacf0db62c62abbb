from __future__ import annotations

import logging
import os
import secrets

from dotenv import load_dotenv
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

import ai_helpers
from api_errors import error_code_for_status, error_response
from app_services import AppServiceConfig, AppServices
from blueprints.api import create_api_blueprint
from change_feed import ChangeFeed
from party_quiz import PartyQuizService

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s: %(message)s",
)

# Load the .env file
load_dotenv()


def _env_flag(name: str, default: str = "False") -> bool:
    return os.getenv(name, default).strip().lower() in ("true", "1", "t", "yes")


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, str(default)))
    except ValueError:
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, str(default)))
    except ValueError:
        return default


def load_config_from_env() -> AppServiceConfig:
    return AppServiceConfig(
        db_path=os.getenv("PARTY_QUIZ_DB", "party_quiz.db").strip() or "party_quiz.db",
        openrouter_key=os.getenv("OPENROUTER_KEY", "").strip(),
        openrouter_model=os.getenv("OPENROUTER_MODEL", ai_helpers.AI.DEFAULT_MODEL).strip(),
        is_prod=_env_flag("IS_PROD"),
        ai_timeout_seconds=_env_float("AI_TIMEOUT_SECONDS", 30.0),
        host=os.getenv("HOST", "127.0.0.1"),
        port=_env_int("PORT", 8040),
        cors_origin=os.getenv("CORS_ORIGIN", "*"),
        log_file=os.getenv("LOG_FILE", "app.log").strip(),
        secret_key=os.getenv("SECRET_KEY", "").strip(),
    )


def create_app(config: AppServiceConfig | None = None, *, ai_worker=None, testing: bool = False) -> Flask:
    config = config or load_config_from_env()

    app = Flask(__name__)
    app.config["SECRET_KEY"] = config.secret_key or secrets.token_hex(32)
    app.config["TESTING"] = testing

    services = AppServices(app=app, ai_worker=None, config=config)
    if ai_worker is None:
        ai_worker = ai_helpers.AI(
            api_key=config.openrouter_key,
            model=config.openrouter_model,
            timeout=config.ai_timeout_seconds,
            metrics_hook=services.increment_metric,
        )
    services.ai_worker = ai_worker

    if not testing:
        services.configure_logging()
    services.validate_runtime_config()

    change_feed = ChangeFeed(db_path=config.db_path)
    party_quiz_service = PartyQuizService(
        db_path=config.db_path,
        ai_worker=ai_worker,
        change_feed=change_feed,
        metrics_hook=services.increment_metric,
    )

    app.before_request(services.start_timer)
    app.after_request(services.log_request)
    app.after_request(services.apply_cors_headers)
    app.teardown_request(services.log_exception)

    app.register_blueprint(
        create_api_blueprint(services=services, party_quiz_service=party_quiz_service)
    )

    @app.route("/health")
    def health():
        return jsonify(status="ok")

    @app.errorhandler(HTTPException)
    def handle_http_error(e):
        return error_response(
            status=e.code,
            code=error_code_for_status(e.code),
            message=e.description or e.name,
        )

    @app.errorhandler(Exception)
    def handle_unexpected_error(e):
        app.logger.error(
            "Unhandled exception",
            exc_info=(type(e), e, e.__traceback__),
        )
        return error_response(
            status=500,
            message="The server encountered an internal error and was unable to complete your request.",
        )

    app.extensions["party_quiz"] = {
        "services": services,
        "service": party_quiz_service,
        "change_feed": change_feed,
    }
    return app


if __name__ == "__main__":
    runtime_config = load_config_from_env()
    app = create_app(runtime_config)
    app.run(debug=not runtime_config.is_prod, host=runtime_config.host, port=runtime_config.port)
