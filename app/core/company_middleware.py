"""Middleware responsible for wiring the caller's company into each request."""

from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable

from fastapi import HTTPException, Request, status
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import Response

from .auth import get_auth_context
from .company_context import reset_company_context, set_company_context

__all__ = ["CompanyContextMiddleware"]

logger = logging.getLogger(__name__)

_PUBLIC_ENDPOINTS = frozenset({"/api/health", "/api/version", "/api/metrics"})


class CompanyContextMiddleware(BaseHTTPMiddleware):
    """Populate request state and the company context variable."""

    async def dispatch(
        self, request: Request, call_next: Callable[[Request], Awaitable[Response]]
    ) -> Response:  # type: ignore[override]
        if not self._is_configured() or self._should_bypass(request):
            return await call_next(request)

        try:
            auth = await get_auth_context(request)
        except HTTPException as exc:
            headers = dict(exc.headers or {})
            if exc.status_code == status.HTTP_401_UNAUTHORIZED:
                headers.setdefault("WWW-Authenticate", "Bearer")
            return JSONResponse(
                status_code=exc.status_code,
                content={"detail": exc.detail},
                headers=headers or None,
            )

        request.state.company_id = auth.company_id
        request.state.user_id = auth.user_id

        context_token = set_company_context(auth)
        try:
            return await call_next(request)
        finally:
            reset_company_context(context_token)

    @staticmethod
    def _is_configured() -> bool:
        required = (
            os.getenv("AUTH_TOKEN_SECRET"),
            os.getenv("AUTH_TOKEN_AUDIENCE"),
            os.getenv("AUTH_TOKEN_ISSUER"),
        )
        return all(required)

    @staticmethod
    def _should_bypass(request: Request) -> bool:
        if request.method.upper() == "OPTIONS":
            return True
        return request.url.path in _PUBLIC_ENDPOINTS
