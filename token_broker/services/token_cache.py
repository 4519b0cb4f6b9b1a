"""
Redis-backed cache of short-lived access tokens.

Cache Structure:
- <prefix>token:{env}:{sigla}:{store_id} → {"accessToken", "expiresAt"} JSON (TTL: lifetime minus margin)
"""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as redis
from pydantic import ValidationError

from token_broker.core.errors import CacheUnavailableError
from token_broker.models.oauth import CachedToken
from token_broker.models.tenant import TenantKey

logger = logging.getLogger(__name__)


class TokenCache:
    """Get, set and clear cached access tokens for a tenant."""

    def __init__(self, redis_client: redis.Redis, key_prefix: str = "") -> None:
        self.redis = redis_client
        self.key_prefix = key_prefix

    def _key(self, tenant: TenantKey) -> str:
        return f"{self.key_prefix}{tenant.cache_key}"

    async def get(self, tenant: TenantKey) -> Optional[CachedToken]:
        """
        Return the cached token, or None when absent.

        A payload that cannot be decoded or parsed counts as absent.
        """
        try:
            data = await self.redis.get(self._key(tenant))
        except redis.RedisError as exc:
            raise CacheUnavailableError(f"Token cache read failed: {exc}") from exc
        except UnicodeDecodeError as exc:
            logger.warning("Discarding undecodable cached token for %s: %s", tenant, exc)
            return None

        if not data:
            return None

        try:
            return CachedToken.model_validate_json(data)
        except ValidationError as exc:
            logger.warning("Discarding malformed cached token for %s: %s", tenant, exc)
            return None

    async def set(self, tenant: TenantKey, token: CachedToken, ttl_seconds: int) -> bool:
        """Upsert ``token`` with an expiry; skipped when the ttl is not positive."""
        if ttl_seconds <= 0:
            logger.debug("Not caching token for %s; ttl %ss is already stale", tenant, ttl_seconds)
            return False

        try:
            await self.redis.set(
                self._key(tenant), token.model_dump_json(by_alias=True), ex=int(ttl_seconds)
            )
        except redis.RedisError as exc:
            raise CacheUnavailableError(f"Token cache write failed: {exc}") from exc
        return True

    async def clear(self, tenant: TenantKey) -> None:
        try:
            await self.redis.delete(self._key(tenant))
        except redis.RedisError as exc:
            raise CacheUnavailableError(f"Token cache delete failed: {exc}") from exc


__all__ = ["TokenCache"]
