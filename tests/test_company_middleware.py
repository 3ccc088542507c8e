"""Integration tests for the company context middleware."""

from __future__ import annotations

import time
from collections.abc import Callable
from typing import Any

import jwt
import pytest
from app.core.company_context import get_current_auth, get_current_company_id
from app.core.company_middleware import CompanyContextMiddleware
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse
from fastapi.testclient import TestClient


def _create_app() -> FastAPI:
    app = FastAPI()
    app.add_middleware(CompanyContextMiddleware)

    @app.get("/context")
    async def read_context(request: Request) -> JSONResponse:
        """Return the company context captured by the middleware."""

        auth = get_current_auth()
        return JSONResponse(
            {
                "company_id": request.state.company_id,
                "user_id": request.state.user_id,
                "context_company": get_current_company_id(),
                "is_admin": auth.is_admin if auth else None,
            }
        )

    @app.get("/api/health")
    async def health() -> JSONResponse:
        return JSONResponse({"status": "ok"})

    @app.get("/api/version")
    async def version() -> JSONResponse:
        return JSONResponse({"version": "1.0.0"})

    return app


@pytest.fixture
def client(token_env: None) -> TestClient:
    with TestClient(_create_app(), raise_server_exceptions=False) as test_client:
        yield test_client


@pytest.fixture
def issue_token() -> Callable[..., str]:
    def _issue_token(
        *,
        company_id: str = "acme",
        user_id: str = "user-1",
        role: str = "employee",
        expires_in: int = 300,
    ) -> str:
        payload: dict[str, Any] = {
            "company_id": company_id,
            "user_id": user_id,
            "role": role,
            "aud": "people-ops",
            "iss": "auth.people-ops",
            "exp": int(time.time()) + expires_in,
            "type": "access",
        }
        return str(jwt.encode(payload, "secret-key", algorithm="HS256"))

    return _issue_token


def test_middleware_sets_state_and_context(client: TestClient, issue_token) -> None:
    token = issue_token(role="hr_manager")

    response = client.get("/context", headers={"Authorization": f"Bearer {token}"})

    assert response.status_code == 200
    assert response.json() == {
        "company_id": "acme",
        "user_id": "user-1",
        "context_company": "acme",
        "is_admin": True,
    }
    assert get_current_company_id() is None


def test_missing_token_returns_unauthorized(client: TestClient) -> None:
    response = client.get("/context")

    assert response.status_code == 401
    assert response.headers["WWW-Authenticate"] == "Bearer"
    assert get_current_company_id() is None


def test_invalid_token_returns_unauthorized(client: TestClient, issue_token) -> None:
    invalid_token = issue_token(company_id="globex")[:-1] + "x"

    response = client.get("/context", headers={"Authorization": f"Bearer {invalid_token}"})

    assert response.status_code == 401


def test_expired_token_returns_unauthorized(client: TestClient, issue_token) -> None:
    response = client.get(
        "/context", headers={"Authorization": f"Bearer {issue_token(expires_in=-60)}"}
    )

    assert response.status_code == 401
    assert "expired" in response.json()["detail"]


def test_public_endpoints_bypass_auth(client: TestClient) -> None:
    assert client.get("/api/health").json() == {"status": "ok"}
    assert client.get("/api/version").json() == {"version": "1.0.0"}
    assert client.options("/context").status_code != 401


def test_middleware_inactive_without_token_settings(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv("AUTH_TOKEN_SECRET", raising=False)
    with TestClient(_create_app(), raise_server_exceptions=False) as client:
        response = client.get("/api/health")

    assert response.status_code == 200
