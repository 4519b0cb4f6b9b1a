"""
Distributed per-tenant refresh lock.

The lock is a Redis key created with ``SET NX EX``: whoever creates it owns the
refresh, and a holder that dies without releasing is forgotten once the TTL
runs out.
"""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import AsyncIterator

import redis.asyncio as redis

from token_broker.core.errors import CacheUnavailableError
from token_broker.models.tenant import TenantKey

logger = logging.getLogger(__name__)

DEFAULT_LOCK_TTL_SECONDS = 30


class RefreshLock:
    """Acquire and release refresh locks keyed by tenant."""

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "") -> None:
        self.redis = redis_client
        self.key_prefix = key_prefix

    def _key(self, tenant: TenantKey) -> str:
        return f"{self.key_prefix}{tenant.lock_key}"

    async def acquire(self, tenant: TenantKey, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS) -> bool:
        """Return True iff this call created the lock."""
        try:
            result = await self.redis.set(self._key(tenant), "1", nx=True, ex=ttl_seconds)
        except redis.RedisError as exc:
            # Never report "acquired" when we could not ask.
            raise CacheUnavailableError(f"Refresh lock acquire failed: {exc}") from exc
        return bool(result)

    async def release(self, tenant: TenantKey) -> None:
        try:
            await self.redis.delete(self._key(tenant))
        except redis.RedisError as exc:
            raise CacheUnavailableError(f"Refresh lock release failed: {exc}") from exc

    @asynccontextmanager
    async def held(
        self, tenant: TenantKey, ttl_seconds: int = DEFAULT_LOCK_TTL_SECONDS
    ) -> AsyncIterator[bool]:
        """
        Try to take the lock for the duration of the block.

        Yields whether the lock was acquired; it is released on every exit path
        only in that case. A failed release is logged and left to the TTL.
        """
        acquired = await self.acquire(tenant, ttl_seconds)
        try:
            yield acquired
        finally:
            if acquired:
                try:
                    await self.release(tenant)
                except CacheUnavailableError:
                    logger.exception(
                        "Could not release refresh lock for %s; it expires in %ss",
                        tenant,
                        ttl_seconds,
                    )


__all__ = ["DEFAULT_LOCK_TTL_SECONDS", "RefreshLock"]
