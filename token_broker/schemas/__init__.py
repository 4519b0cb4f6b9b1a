"""Public schema exports."""

from .auth import (
    AccessTokenResponse,
    AuthStatusResponse,
    ErrorResponse,
    GoogleProfile,
    RefreshTokenResponse,
    StoreRequest,
)

__all__ = [
    "AccessTokenResponse",
    "AuthStatusResponse",
    "ErrorResponse",
    "GoogleProfile",
    "RefreshTokenResponse",
    "StoreRequest",
]
