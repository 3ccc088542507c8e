"""Authentication dependencies for FastAPI routers."""

from __future__ import annotations

from fastapi import Depends, HTTPException, status

from app.core.auth import AuthContext, get_auth_context


async def get_current_actor(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Return the authenticated caller for the request."""

    return auth


async def require_admin(auth: AuthContext = Depends(get_auth_context)) -> AuthContext:
    """Dependency ensuring the caller holds an admin-equivalent role."""

    if not auth.is_admin:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail="Insufficient role.",
        )
    return auth


__all__ = [
    "get_current_actor",
    "require_admin",
]
