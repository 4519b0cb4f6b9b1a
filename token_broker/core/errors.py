"""
Failure taxonomy for token acquisition.

Every error carries a stable ``code`` and the HTTP status the routing layer
should answer with, so callers can tell an outage from a tenant that simply
needs to re-authenticate.
"""

from __future__ import annotations

from http import HTTPStatus


class TokenBrokerError(Exception):
    """Base class for classified token acquisition failures."""

    code = "TOKEN_BROKER_ERROR"
    status_code = HTTPStatus.INTERNAL_SERVER_ERROR

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code

    def to_payload(self) -> dict:
        return {"error": self.message, "code": self.code, "status": int(self.status_code)}


class TokenRevokedError(TokenBrokerError):
    """Google rejected the stored refresh token; the store must log in again."""

    code = "TOKEN_REVOKED"
    status_code = HTTPStatus.UNAUTHORIZED


class MisconfiguredClientError(TokenBrokerError):
    """Google rejected our OAuth client credentials."""

    code = "INVALID_CLIENT"
    status_code = HTTPStatus.INTERNAL_SERVER_ERROR


class RefreshFailedError(TokenBrokerError):
    """Any other failure while refreshing against Google."""

    code = "REFRESH_FAILED"
    status_code = HTTPStatus.BAD_GATEWAY


class LockTimeoutError(TokenBrokerError):
    """Another instance held the refresh lock past our single bounded wait."""

    code = "LOCK_TIMEOUT"
    status_code = HTTPStatus.SERVICE_UNAVAILABLE


class BackendUnreachableError(TokenBrokerError):
    """The store backend could not be reached at all."""

    code = "BACKEND_UNREACHABLE"
    status_code = HTTPStatus.SERVICE_UNAVAILABLE


class BackendResponseError(TokenBrokerError):
    """The store backend answered with a non-success status or bad payload."""

    code = "BACKEND_ERROR"
    status_code = HTTPStatus.BAD_GATEWAY


class CacheUnavailableError(TokenBrokerError):
    """Redis failed while reading or writing cache and lock keys."""

    code = "CACHE_UNAVAILABLE"
    status_code = HTTPStatus.SERVICE_UNAVAILABLE


NOT_AUTHENTICATED_CODE = "NO_REFRESH_TOKEN"


__all__ = [
    "BackendResponseError",
    "BackendUnreachableError",
    "CacheUnavailableError",
    "LockTimeoutError",
    "MisconfiguredClientError",
    "NOT_AUTHENTICATED_CODE",
    "RefreshFailedError",
    "TokenBrokerError",
    "TokenRevokedError",
]
