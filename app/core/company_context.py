"""Runtime helpers for storing the caller's company during a request.

This module exposes a small API around a :class:`contextvars.ContextVar`
that keeps track of the authenticated caller while a request is served. The
``CompanyContextMiddleware`` populates the context by calling
``set_company_context`` and obtains a token that must be passed back to
``reset_company_context`` once the response has been sent. Repositories and
services call ``get_current_company_id`` / ``get_current_auth`` to discover
which company is being served without access to the HTTP request object.
"""

from __future__ import annotations

from contextvars import ContextVar, Token

from .auth import AuthContext

__all__ = [
    "get_current_auth",
    "get_current_company_id",
    "reset_company_context",
    "set_company_context",
]


_company_context: ContextVar[AuthContext | None] = ContextVar(
    "company_runtime_context", default=None
)


def set_company_context(auth: AuthContext) -> Token[AuthContext | None]:
    """Persist the caller in the request-scoped context variable.

    Args:
        auth: Identity resolved from the bearer token.

    Returns:
        ``Token`` returned by :meth:`contextvars.ContextVar.set`. Callers must
        later pass it to :func:`reset_company_context` (the middleware does
        this automatically).
    """

    return _company_context.set(auth)


def reset_company_context(token: Token[AuthContext | None]) -> None:
    """Restore the context to the state prior to ``set_company_context``."""

    _company_context.reset(token)


def get_current_auth() -> AuthContext | None:
    """Return the caller for the current execution context, if any."""

    return _company_context.get()


def get_current_company_id() -> str | None:
    """Return the company identifier for the current execution context.

    ``None`` is returned when the middleware has not populated the context.
    """

    context = _company_context.get()
    if context is None:
        return None
    return context.company_id
