"""Helpers for issuing access tokens accepted by :mod:`app.core.auth`.

The identity service normally issues these; the helpers exist for local
runs, scripts and tests that need a signed bearer token.
"""

from __future__ import annotations

import dataclasses
import datetime as dt
import os
from functools import lru_cache
from typing import Any

import jwt

DEFAULT_ACCESS_TTL_SECONDS = 15 * 60


@dataclasses.dataclass(frozen=True)
class JWTSettings:
    """Signing parameters shared with :func:`app.core.auth.decode_auth_token`."""

    secret: str
    issuer: str
    audience: str
    algorithm: str = "HS256"
    access_token_ttl_seconds: int = DEFAULT_ACCESS_TTL_SECONDS

    @classmethod
    def from_env(cls) -> "JWTSettings":
        values = {
            field: os.getenv(f"AUTH_TOKEN_{field.upper()}", "").strip()
            for field in ("secret", "issuer", "audience")
        }
        missing = sorted(f"AUTH_TOKEN_{name.upper()}" for name, value in values.items() if not value)
        if missing:
            raise RuntimeError(f"{', '.join(missing)} must be set to issue access tokens.")
        return cls(
            **values,
            algorithm=os.getenv("AUTH_TOKEN_ALGORITHM", "HS256"),
            access_token_ttl_seconds=int(
                os.getenv("ACCESS_TOKEN_TTL_SECONDS", str(DEFAULT_ACCESS_TTL_SECONDS))
            ),
        )


@lru_cache(maxsize=1)
def get_jwt_settings() -> JWTSettings:
    """Return the cached ``AUTH_TOKEN_*`` configuration."""

    return JWTSettings.from_env()


def reset_jwt_settings_cache() -> None:
    """Forget cached settings; tests call this after changing the environment."""

    get_jwt_settings.cache_clear()


def create_access_token(
    user_id: str,
    company_id: str,
    role: str = "employee",
    *,
    name: str | None = None,
    settings: JWTSettings | None = None,
) -> tuple[str, dt.datetime]:
    """Sign an access token for a company member and return it with its expiry."""

    settings = settings or get_jwt_settings()
    issued_at = dt.datetime.now(dt.timezone.utc)
    expires_at = issued_at + dt.timedelta(seconds=settings.access_token_ttl_seconds)
    claims: dict[str, Any] = {
        "type": "access",
        "user_id": str(user_id),
        "company_id": str(company_id),
        "role": role,
        "iss": settings.issuer,
        "aud": settings.audience,
        "iat": int(issued_at.timestamp()),
        "exp": int(expires_at.timestamp()),
    }
    if name:
        claims["name"] = name
    return str(jwt.encode(claims, settings.secret, algorithm=settings.algorithm)), expires_at
