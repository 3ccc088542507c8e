import json
import logging
import tempfile
from logging.handlers import TimedRotatingFileHandler
from pathlib import Path

import pytest
from starlette.testclient import TestClient

from app.app_logging import JsonFormatter, init_logging


def _clear_handlers(name: str) -> logging.Logger:
    logger = logging.getLogger(name)
    logger.handlers.clear()
    return logger


@pytest.fixture
def log_dir(monkeypatch):
    with tempfile.TemporaryDirectory() as tmpdir:
        monkeypatch.setenv("LOG_DIR", tmpdir)
        yield Path(tmpdir)


def test_timed_rotating_handler_configuration(log_dir, monkeypatch):
    monkeypatch.setenv("LOG_RETENTION_DAYS", "5")
    app_logger = _clear_handlers("app")
    access_logger = _clear_handlers("uvicorn.access")

    init_logging()

    for logger in (app_logger, access_logger):
        handler = next(h for h in logger.handlers if isinstance(h, TimedRotatingFileHandler))
        assert handler.when == "MIDNIGHT"
        assert handler.backupCount == 5

    app_logger.handlers.clear()
    access_logger.handlers.clear()


def test_json_formatter_includes_context_fields():
    record = logging.LogRecord(
        "app.conversations.orchestrator", logging.WARNING, __file__, 1,
        "Escalated conversation %s", ("c-1",), None,
    )
    record.conversation_id = "c-1"
    record.category = "safety"
    record.unrelated = "ignored"

    data = json.loads(JsonFormatter().format(record))

    assert data["level"] == "WARNING"
    assert data["logger"] == "app.conversations.orchestrator"
    assert data["message"] == "Escalated conversation c-1"
    assert data["conversation_id"] == "c-1"
    assert data["category"] == "safety"
    assert "unrelated" not in data
    assert "run_id" not in data


def test_log_files_and_redaction(log_dir, app_factory, monkeypatch):
    monkeypatch.setenv("LOG_JSON", "true")
    _clear_handlers("app")
    _clear_handlers("uvicorn.access")
    app = app_factory(log_dir, log_request_bodies=True)

    app_logger = logging.getLogger("app")
    app_logger.info("run finished", extra={"run_id": "r-1"})

    with TestClient(app) as client:
        resp = client.post(
            "/echo",
            json={"message_content": "private", "value": 1},
            headers={"Authorization": "Bearer secret"},
        )
        assert resp.status_code == 200

    for logger in (app_logger, logging.getLogger("uvicorn.access")):
        for handler in logger.handlers:
            handler.flush()

    app_line = json.loads((log_dir / "app.log").read_text().splitlines()[-1])
    assert app_line["message"] == "run finished"
    assert app_line["run_id"] == "r-1"

    access_line = json.loads((log_dir / "access.log").read_text().splitlines()[-1])
    data = json.loads(access_line["message"])
    assert data["headers"]["authorization"] == "***"
    assert data["body"] == {"message_content": "***", "value": 1}

    app_logger.handlers.clear()
    logging.getLogger("uvicorn.access").handlers.clear()
