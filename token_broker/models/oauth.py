"""
Domain models for brokered OAuth tokens.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


def now_ms() -> int:
    return int(time.time() * 1000)


class CachedToken(BaseModel):
    """Short-lived access token record kept in Redis."""

    model_config = ConfigDict(populate_by_name=True)

    access_token: str = Field(..., alias="accessToken")
    expires_at: int = Field(
        ..., alias="expiresAt", description="Provider expiry, epoch milliseconds."
    )

    def seconds_remaining(self, at_ms: int | None = None) -> int:
        reference = now_ms() if at_ms is None else at_ms
        return (self.expires_at - reference) // 1000


class StoredCredentials(BaseModel):
    """Tokens persisted for a store by the Linksun backend."""

    access_token: Optional[str] = None
    refresh_token: Optional[str] = None


class RefreshedCredentials(BaseModel):
    """Outcome of a successful refresh-token exchange with Google."""

    access_token: str
    refresh_token: Optional[str] = Field(
        None, description="Only present when Google rotates the refresh token."
    )
    expires_at: datetime

    @property
    def expires_at_ms(self) -> int:
        return int(self.expires_at.timestamp() * 1000)

    def seconds_remaining(self, at: datetime | None = None) -> int:
        reference = at or datetime.now(timezone.utc)
        return int((self.expires_at - reference).total_seconds())


class AccessTokenGrant(BaseModel):
    """A usable access token as handed back to callers."""

    access_token: str
    expires_at: int
    from_cache: bool = False

    @property
    def expires_in(self) -> int:
        return max((self.expires_at - now_ms()) // 1000, 0)


__all__ = [
    "AccessTokenGrant",
    "CachedToken",
    "RefreshedCredentials",
    "StoredCredentials",
    "now_ms",
]
