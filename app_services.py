from __future__ import annotations

import logging
import os
import secrets
import threading
import time as timelib
from dataclasses import dataclass

from flask import g, request


class MaxSizeFileHandler(logging.FileHandler):
    def __init__(self, filename: str, max_bytes: int, **kwargs):
        self.max_bytes = max_bytes
        super().__init__(filename, **kwargs)

    def emit(self, record):
        try:
            if os.path.exists(self.baseFilename):
                if os.path.getsize(self.baseFilename) >= self.max_bytes:
                    return
            super().emit(record)
        except Exception:
            self.handleError(record)


@dataclass(frozen=True)
class AppServiceConfig:
    db_path: str
    openrouter_key: str
    openrouter_model: str
    is_prod: bool
    ai_timeout_seconds: float = 30.0
    host: str = "127.0.0.1"
    port: int = 8040
    cors_origin: str = "*"
    log_file: str = "app.log"
    secret_key: str = ""


class AppServices:
    LOG_MAX_BYTES = 2 * 1024 * 1024

    def __init__(self, app, ai_worker, config: AppServiceConfig):
        self.app = app
        self.ai_worker = ai_worker
        self.config = config

        self.metrics_lock = threading.Lock()
        self.runtime_metrics: dict[str, int] = {
            "ai_requests": 0,
            "ai_fallbacks": 0,
            "sessions_created": 0,
            "players_joined": 0,
            "quiz_rounds_scored": 0,
            "requests_failed": 0,
        }
        self.started_at = int(timelib.time())

    # ------------------------
    # Runtime validation + metrics
    # ------------------------

    def validate_runtime_config(self) -> list[str]:
        warnings: list[str] = []
        if not self.config.openrouter_key:
            warnings.append(
                "OPENROUTER_KEY is not set; icebreakers and quiz questions will use fallback content."
            )

        if self.config.openrouter_key and not self.config.openrouter_model:
            warnings.append("OPENROUTER_MODEL is empty; the default model will be used.")

        if self.config.ai_timeout_seconds <= 0:
            warnings.append("AI_TIMEOUT_SECONDS should be greater than 0.")

        if not 0 < int(self.config.port) < 65536:
            warnings.append("PORT should be between 1 and 65535.")

        if self.config.is_prod and not self.config.secret_key:
            warnings.append("SECRET_KEY should be set when IS_PROD is true.")

        if self.config.is_prod and self.config.cors_origin.strip() == "*":
            warnings.append("CORS_ORIGIN is '*' in production; restrict it to the client origin.")

        db_dir = os.path.dirname(os.path.abspath(self.config.db_path))
        if not os.path.isdir(db_dir):
            warnings.append(f"PARTY_QUIZ_DB directory does not exist: {db_dir}")

        if warnings:
            for warning in warnings:
                self.app.logger.warning("Config warning: %s", warning)
        else:
            self.app.logger.info("Runtime configuration checks passed.")
        return warnings

    def increment_metric(self, name: str, amount: int = 1) -> None:
        if amount <= 0:
            return
        with self.metrics_lock:
            self.runtime_metrics[name] = self.runtime_metrics.get(name, 0) + amount

    def get_runtime_metrics(self) -> dict:
        with self.metrics_lock:
            snapshot = dict(self.runtime_metrics)
        snapshot["ai_configured"] = bool(getattr(self.ai_worker, "can_generate", False))
        snapshot["ai_model"] = getattr(self.ai_worker, "model", "")
        snapshot["uptime_seconds"] = max(0, int(timelib.time()) - self.started_at)
        return snapshot

    # ------------------------
    # Logging + request hooks
    # ------------------------

    def configure_logging(self) -> None:
        formatter = logging.Formatter("[%(asctime)s] %(levelname)s: %(message)s")
        console_handler = logging.StreamHandler()
        console_handler.setLevel(logging.INFO)
        console_handler.setFormatter(formatter)

        handlers = [console_handler]
        if self.config.log_file:
            file_handler = MaxSizeFileHandler(
                self.config.log_file, max_bytes=self.LOG_MAX_BYTES
            )
            file_handler.setLevel(logging.INFO)
            file_handler.setFormatter(formatter)
            handlers.append(file_handler)

        self.app.logger.handlers.clear()
        self.app.logger.setLevel(logging.INFO)
        self.app.logger.propagate = False
        for handler in handlers:
            self.app.logger.addHandler(handler)

        # Service modules log through their own module loggers.
        for name in ("party_quiz", "ai_helpers", "change_feed"):
            module_logger = logging.getLogger(name)
            module_logger.handlers.clear()
            module_logger.setLevel(logging.INFO)
            module_logger.propagate = False
            for handler in handlers:
                module_logger.addHandler(handler)

        logging.getLogger("werkzeug").setLevel(logging.ERROR)
        self.app.logger.info("Logging initialised")

    @staticmethod
    def start_timer():
        g.start_time = timelib.time()
        g.request_id = request.headers.get("X-Request-ID") or secrets.token_hex(6)

    def log_request(self, response):
        duration = round(timelib.time() - g.get("start_time", timelib.time()), 3)
        if response.status_code >= 500:
            self.increment_metric("requests_failed")
        response.headers["X-Request-ID"] = g.get("request_id", "")
        self.app.logger.info(
            "[%s] %s %s (%s) -> %s [%ss]",
            g.get("request_id", "-"),
            request.method,
            request.path,
            request.endpoint,
            response.status_code,
            duration,
        )
        return response

    def log_exception(self, exception):
        if exception:
            self.app.logger.warning(
                "Unhandled exception on %s %s: %s",
                request.method,
                request.path,
                type(exception).__name__,
            )

    def apply_cors_headers(self, response):
        response.headers["Access-Control-Allow-Origin"] = self.config.cors_origin or "*"
        response.headers["Access-Control-Allow-Headers"] = "Content-Type"
        response.headers["Access-Control-Allow-Methods"] = "GET, POST, OPTIONS"
        return response
