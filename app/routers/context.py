"""Shared request plumbing for the API routers."""

from __future__ import annotations

import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager

from fastapi import HTTPException, Request, status
from slowapi import Limiter

from ..core.errors import (
    ConversationClosedError,
    ConversationEscalatedError,
    InstanceNotActiveError,
    InvalidTransitionError,
    NotFoundError,
    OrchestratorError,
    PermissionDeniedError,
    StorageError,
    ValidationError,
)
from ..runtime import Services, get_runtime

logger = logging.getLogger(__name__)

REPLY_RATE_LIMIT = os.getenv("REPLY_RATE_LIMIT", "60/minute")

_STATUS_BY_ERROR: tuple[tuple[type[OrchestratorError], int], ...] = (
    (ValidationError, status.HTTP_400_BAD_REQUEST),
    (PermissionDeniedError, status.HTTP_403_FORBIDDEN),
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (InstanceNotActiveError, status.HTTP_409_CONFLICT),
    (ConversationClosedError, status.HTTP_409_CONFLICT),
    (ConversationEscalatedError, status.HTTP_409_CONFLICT),
    (InvalidTransitionError, status.HTTP_409_CONFLICT),
    (StorageError, status.HTTP_500_INTERNAL_SERVER_ERROR),
)


def get_client_ip(request: Request) -> str:
    """Extract a best-effort client IP for rate limiting.

    Prefer ``X-Forwarded-For`` (first hop) if present, otherwise use the
    socket peer address.
    """
    forwarded = request.headers.get("X-Forwarded-For")
    if forwarded:
        return forwarded.split(",")[0].strip()
    return request.client.host if request.client else "unknown"


limiter = Limiter(key_func=get_client_ip)


def status_for(exc: OrchestratorError) -> int:
    for error_type, code in _STATUS_BY_ERROR:
        if isinstance(exc, error_type):
            return code
    return status.HTTP_500_INTERNAL_SERVER_ERROR


@contextmanager
def service_context() -> Iterator[Services]:
    """Yield request services and translate domain errors into HTTP errors."""

    try:
        with get_runtime().open_services() as services:
            yield services
    except OrchestratorError as exc:
        code = status_for(exc)
        if code >= 500:
            logger.error("Request failed: %s", exc)
        raise HTTPException(status_code=code, detail=str(exc)) from exc
    except TimeoutError as exc:
        logger.warning("Lock wait expired: %s", exc)
        raise HTTPException(
            status_code=status.HTTP_503_SERVICE_UNAVAILABLE,
            detail="Conversation is busy, retry shortly.",
        ) from exc
