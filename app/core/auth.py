"""Boundary contract with the authentication collaborator.

The orchestrator never verifies credentials itself beyond decoding the signed
bearer token issued by the identity service. The decoded claims become an
:class:`AuthContext` which services trust for ``is_admin`` checks and
participant identity comparisons.
"""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import TypedDict, cast

import jwt
from fastapi import HTTPException, Request, status
from jwt import ExpiredSignatureError, InvalidTokenError

__all__ = [
    "ADMIN_ROLES",
    "AuthContext",
    "AuthTokenConfigurationError",
    "AuthTokenPayload",
    "AuthTokenValidationError",
    "decode_auth_token",
    "get_auth_context",
]

ADMIN_ROLES = frozenset({"owner", "admin", "hr_manager"})


class AuthTokenConfigurationError(RuntimeError):
    """Raised when token configuration is invalid."""


class AuthTokenValidationError(ValueError):
    """Raised when the provided token cannot be validated."""


class _AuthTokenRequiredClaims(TypedDict):
    company_id: str
    user_id: str


class AuthTokenPayload(_AuthTokenRequiredClaims, total=False):
    """Decoded JWT payload issued by the identity service."""

    aud: str | list[str]
    email: str
    exp: int
    iat: int
    iss: str
    name: str
    role: str
    type: str


@dataclass(frozen=True, slots=True)
class AuthContext:
    """Identity of the caller for a single request."""

    user_id: str
    company_id: str
    role: str = "employee"
    is_admin: bool = False

    @classmethod
    def from_payload(cls, payload: AuthTokenPayload) -> "AuthContext":
        role = str(payload.get("role") or "employee").lower()
        return cls(
            user_id=str(payload["user_id"]),
            company_id=str(payload["company_id"]),
            role=role,
            is_admin=role in ADMIN_ROLES,
        )


def _get_env(name: str, *, required: bool = True, default: str | None = None) -> str:
    """Fetch an environment variable with optional requirement enforcement.

    Raises:
        AuthTokenConfigurationError: If ``required`` is ``True`` and the
            variable is missing or blank.
    """

    value = os.getenv(name, default)
    if required and (value is None or not value.strip()):
        raise AuthTokenConfigurationError(
            f"Environment variable '{name}' must be set for token validation.",
        )
    if value is None:
        return ""
    return value.strip()


def decode_auth_token(token: str) -> AuthTokenPayload:
    """Decode and validate an access token.

    Args:
        token: Encoded JWT token string from the ``Authorization`` header.

    Returns:
        AuthTokenPayload: Parsed payload containing company and user identifiers.

    Raises:
        AuthTokenConfigurationError: If mandatory environment configuration is missing.
        AuthTokenValidationError: If token signature, claims, or expiry are invalid.
    """

    secret_key = _get_env("AUTH_TOKEN_SECRET")
    audience = _get_env("AUTH_TOKEN_AUDIENCE")
    issuer = _get_env("AUTH_TOKEN_ISSUER")
    algorithm = _get_env("AUTH_TOKEN_ALGORITHM", required=False, default="HS256")

    try:
        payload = jwt.decode(
            token,
            secret_key,
            algorithms=[algorithm],
            audience=audience,
            issuer=issuer,
            options={"require": ["exp", "aud", "iss"]},
        )
    except ExpiredSignatureError as exc:
        raise AuthTokenValidationError("Access token has expired.") from exc
    except InvalidTokenError as exc:
        raise AuthTokenValidationError("Access token is invalid.") from exc

    if "company_id" not in payload or "user_id" not in payload:
        raise AuthTokenValidationError(
            "Access token payload must include 'company_id' and 'user_id'.",
        )
    type_claim = payload.get("type")
    if type_claim and type_claim != "access":
        raise AuthTokenValidationError("Token must be an access token.")

    return cast(AuthTokenPayload, payload)


async def get_auth_context(request: Request) -> AuthContext:
    """Resolve the caller from the request.

    The middleware stores the context on ``request.state``; when it did not run
    (e.g. in routers mounted without it) the ``Authorization`` header is
    decoded here.

    Raises:
        HTTPException: ``401`` when the header is missing or invalid, ``500``
            when token configuration is incorrect.
    """

    cached = getattr(request.state, "auth", None)
    if isinstance(cached, AuthContext):
        return cached

    authorization = request.headers.get("Authorization")
    if not authorization:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Missing Authorization header.",
        )

    scheme, _, credentials = authorization.partition(" ")
    if not credentials or scheme.lower() != "bearer":
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authorization header must use Bearer scheme.",
        )

    try:
        payload = decode_auth_token(credentials)
    except AuthTokenConfigurationError as exc:
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=str(exc),
        ) from exc
    except AuthTokenValidationError as exc:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail=str(exc),
        ) from exc

    auth = AuthContext.from_payload(payload)
    request.state.auth = auth
    return auth
