"""Security utilities exposed for convenience."""

from .auth import get_current_actor, require_admin
from .tokens import (
    JWTSettings,
    create_access_token,
    get_jwt_settings,
    reset_jwt_settings_cache,
)

__all__ = [
    "JWTSettings",
    "create_access_token",
    "get_current_actor",
    "get_jwt_settings",
    "require_admin",
    "reset_jwt_settings_cache",
]
