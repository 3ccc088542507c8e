import json
import logging

from fastapi import FastAPI, Request
from starlette.testclient import TestClient

from app.app_logging import _install_access_logging


def _create_app() -> FastAPI:
    app = FastAPI()

    @app.post("/api/conversations/{conversation_id}/messages")
    async def post_message(conversation_id: str, request: Request):
        return {"rid": request.state.request_id, "conversation_id": conversation_id}

    @app.post("/raw")
    async def raw(request: Request):
        return {"size": len(await request.body())}

    @app.get("/api/health")
    async def health():  # pragma: no cover - simple
        return {"status": "ok"}

    _install_access_logging(app)
    return app


def test_access_logging_request_id_and_scrubbing(caplog, monkeypatch):
    monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
    app = _create_app()

    with (
        TestClient(app) as client,
        caplog.at_level(logging.INFO, logger="uvicorn.access"),
    ):
        resp = client.post(
            "/api/conversations/c-1/messages",
            json={"content": "I feel unsafe", "token": "secret", "meta": [{"password": "x"}]},
            headers={"X-Request-Id": "abc", "Authorization": "Bearer secret"},
        )

        assert resp.status_code == 200
        assert resp.headers["X-Request-Id"] == "abc"
        assert resp.json() == {"rid": "abc", "conversation_id": "c-1"}

        data = json.loads(caplog.records[0].getMessage())
        assert data["request_id"] == "abc"
        assert data["status"] == 200
        assert data["headers"]["authorization"] == "***"
        assert data["body"] == {"content": "***", "token": "***", "meta": [{"password": "***"}]}
        assert "I feel unsafe" not in caplog.text

        caplog.clear()
        client.get("/api/health")
        assert len(caplog.records) == 0


def test_non_json_body_is_not_logged(caplog, monkeypatch):
    monkeypatch.setenv("LOG_REQUEST_BODIES", "true")
    app = _create_app()

    with TestClient(app) as client, caplog.at_level(logging.INFO, logger="uvicorn.access"):
        resp = client.post("/raw", content=b"plain text")

    assert resp.json() == {"size": 10}
    data = json.loads(caplog.records[0].getMessage())
    assert data["body"] == "<non-json body>"
    assert data["request_id"] == resp.headers["X-Request-Id"]


def test_bodies_skipped_by_default(caplog, monkeypatch):
    monkeypatch.delenv("LOG_REQUEST_BODIES", raising=False)
    app = _create_app()

    with TestClient(app) as client, caplog.at_level(logging.INFO, logger="uvicorn.access"):
        client.post("/api/conversations/c-1/messages", json={"content": "hello"})

    data = json.loads(caplog.records[0].getMessage())
    assert "body" not in data
