"""Application and access logging setup.

Two loggers are configured: ``app`` for orchestration events (runs, replies,
escalations) and ``uvicorn.access`` for one structured line per HTTP request.
Both write to daily rotated files under ``LOG_DIR``.

Employee message text never reaches the access log: request bodies are only
recorded when ``LOG_REQUEST_BODIES=true`` and even then message fields are
masked together with credentials.

Environment variables: LOG_DIR, LOG_LEVEL, LOG_JSON, LOG_REQUEST_BODIES,
LOG_RETENTION_DAYS, LOG_ROTATE_UTC.
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass
from logging.handlers import TimedRotatingFileHandler
from typing import Any, cast
from uuid import uuid4

from fastapi import FastAPI, Request
from starlette.responses import Response

APP_LOGGER = "app"
ACCESS_LOGGER = "uvicorn.access"
UNLOGGED_PATHS = frozenset({"/api/health", "/api/metrics"})

# ``extra=`` keys that the orchestrator attaches to its log records.
CONTEXT_FIELDS = (
    "company_id",
    "instance_id",
    "run_id",
    "conversation_id",
    "employee_id",
    "category",
    "reason",
    "attempt",
)

SENSITIVE_FIELDS = frozenset(
    {
        "authorization",
        "cookie",
        "set-cookie",
        "password",
        "token",
        "access_token",
        "refresh_token",
        "content",
        "message_content",
    }
)


def _env_flag(name: str) -> bool:
    return os.getenv(name, "false").strip().lower() == "true"


@dataclass(frozen=True)
class LogSettings:
    directory: str = "logs"
    level: int = logging.INFO
    as_json: bool = False
    retention_days: int = 7
    rotate_utc: bool = False
    request_bodies: bool = False

    @classmethod
    def from_env(cls) -> "LogSettings":
        level_name = os.getenv("LOG_LEVEL", "INFO").strip().upper()
        return cls(
            directory=os.getenv("LOG_DIR", "logs"),
            level=getattr(logging, level_name, logging.INFO),
            as_json=_env_flag("LOG_JSON"),
            retention_days=int(os.getenv("LOG_RETENTION_DAYS", "7")),
            rotate_utc=_env_flag("LOG_ROTATE_UTC"),
            request_bodies=_env_flag("LOG_REQUEST_BODIES"),
        )


class JsonFormatter(logging.Formatter):
    """One JSON object per record, carrying any orchestration context fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload: dict[str, Any] = {
            "level": record.levelname,
            "time": self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (name, getattr(record, name))
            for name in CONTEXT_FIELDS
            if getattr(record, name, None) is not None
        )
        if record.exc_info:
            payload["exc_info"] = self.formatException(record.exc_info)
        return json.dumps(payload, default=str)


def _formatter(settings: LogSettings) -> logging.Formatter:
    if settings.as_json:
        return JsonFormatter()
    return logging.Formatter("[%(asctime)s] %(levelname)s in %(name)s: %(message)s")


def _scrub(data: object) -> object:
    """Mask credentials and message text in nested dictionaries and lists."""

    if isinstance(data, dict):
        return {
            key: "***" if str(key).lower() in SENSITIVE_FIELDS else _scrub(value)
            for key, value in data.items()
        }
    if isinstance(data, list):
        return [_scrub(item) for item in data]
    return data


def _attach_file_handler(
    logger: logging.Logger, filename: str, settings: LogSettings, formatter: logging.Formatter
) -> None:
    handler = TimedRotatingFileHandler(
        os.path.join(settings.directory, filename),
        when="midnight",
        backupCount=settings.retention_days,
        utc=settings.rotate_utc,
    )
    handler.setFormatter(formatter)
    logger.addHandler(handler)
    logger.setLevel(settings.level)


def _describe_body(raw: bytes) -> object:
    try:
        return _scrub(json.loads(raw))
    except ValueError:
        return "<non-json body>"


def _access_entry(
    request: Request, response: Response, request_id: str, started: float
) -> dict[str, Any]:
    client_ip = request.headers.get("X-Forwarded-For")
    if not client_ip and request.client is not None:
        client_ip = request.client.host
    return {
        "request_id": request_id,
        "method": request.method,
        "path": request.url.path,
        "status": response.status_code,
        "latency_ms": round((time.perf_counter() - started) * 1000, 2),
        "client_ip": client_ip,
        "company_id": getattr(request.state, "company_id", None),
        "headers": _scrub(dict(request.headers)),
    }


def _install_access_logging(app: FastAPI) -> None:
    """Log one JSON line per request and echo ``X-Request-Id`` back."""

    capture_bodies = LogSettings.from_env().request_bodies
    access_logger = logging.getLogger(ACCESS_LOGGER)

    @app.middleware("http")
    async def log_requests(request: Request, call_next):
        if request.url.path in UNLOGGED_PATHS:
            return await call_next(request)

        request_id = request.headers.get("X-Request-Id") or uuid4().hex
        request.state.request_id = request_id
        started = time.perf_counter()

        body = None
        if capture_bodies:
            raw = await request.body()

            async def replay() -> dict:
                return {"type": "http.request", "body": raw, "more_body": False}

            request._receive = replay  # type: ignore[attr-defined]
            if raw:
                body = _describe_body(raw)

        response = await call_next(request)

        entry = _access_entry(request, response, request_id, started)
        if body is not None:
            entry["body"] = body
        response.headers["X-Request-Id"] = request_id
        access_logger.info(json.dumps(entry, default=str))
        return response


def init_logging(app: FastAPI | None = None) -> None:
    """Initialise application and access loggers.

    The ``app`` logger keeps handlers it already has; the access logger is
    always rebuilt so uvicorn's default console handler is replaced.
    """

    settings = LogSettings.from_env()
    os.makedirs(settings.directory, exist_ok=True)
    formatter = _formatter(settings)

    app_logger = logging.getLogger(APP_LOGGER)
    if app_logger.handlers:
        app_logger.setLevel(settings.level)
    else:
        _attach_file_handler(app_logger, "app.log", settings, formatter)

    access_logger = logging.getLogger(ACCESS_LOGGER)
    access_logger.handlers.clear()
    _attach_file_handler(access_logger, "access.log", settings, formatter)

    if app is not None:
        cast(Any, app).logger = app_logger
        _install_access_logging(app)
