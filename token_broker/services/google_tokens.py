"""
Acquisition of valid Google access tokens per store.

A cache hit is answered straight from Redis. On a miss, one refresh runs per
store: callers in this process share a single in-flight task, and the Redis
refresh lock keeps other instances from refreshing at the same time. An
instance that loses the lock waits once and re-reads the cache rather than
spinning.
"""

from __future__ import annotations

import asyncio
import logging
import time
from http import HTTPStatus
from typing import Awaitable, Callable, Dict, Optional

from google.oauth2.credentials import Credentials

from token_broker.clients.google_auth import GoogleOAuthClient
from token_broker.clients.store_backend import StoreBackendClient
from token_broker.core.config import BrokerSettings
from token_broker.core.errors import (
    CacheUnavailableError,
    LockTimeoutError,
    RefreshFailedError,
    TokenBrokerError,
    TokenRevokedError,
)
from token_broker.models.oauth import AccessTokenGrant, CachedToken, now_ms
from token_broker.models.tenant import TenantKey
from token_broker.services.metrics import TokenMetrics, get_metrics
from token_broker.services.refresh_lock import RefreshLock
from token_broker.services.token_cache import TokenCache

logger = logging.getLogger(__name__)


class GoogleTokenService:
    """Hands out valid access tokens, refreshing at most once per store at a time."""

    def __init__(
        self,
        cache: TokenCache,
        lock: RefreshLock,
        oauth_client: GoogleOAuthClient,
        backend: StoreBackendClient,
        broker_settings: BrokerSettings,
        metrics: Optional[TokenMetrics] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        self._cache = cache
        self._lock = lock
        self._oauth = oauth_client
        self._backend = backend
        self._settings = broker_settings
        self._metrics = metrics or get_metrics()
        self._sleep = sleep
        self._inflight: Dict[TenantKey, asyncio.Task] = {}

    async def obtain_valid_access_token(self, tenant: TenantKey) -> Optional[str]:
        """Return a usable access token, or None when the store must log in again."""
        grant = await self.acquire(tenant)
        return grant.access_token if grant else None

    async def acquire(self, tenant: TenantKey) -> Optional[AccessTokenGrant]:
        """Like ``obtain_valid_access_token`` but keeps expiry and cache provenance."""
        cached = await self._usable_cached_token(tenant)
        if cached is not None:
            self._metrics.cache_hit(tenant)
            self._metrics.token_expires_at(tenant, cached.expires_at)
            return AccessTokenGrant(
                access_token=cached.access_token,
                expires_at=cached.expires_at,
                from_cache=True,
            )
        self._metrics.cache_miss(tenant)

        task = self._inflight.get(tenant)
        if task is None:
            task = asyncio.ensure_future(self._refresh_exclusively(tenant))
            self._inflight[tenant] = task
            task.add_done_callback(lambda done: self._forget(tenant, done))
        # Shielded so a cancelled caller leaves the shared refresh running.
        return await asyncio.shield(task)

    async def get_credentials(self, tenant: TenantKey) -> Optional[Credentials]:
        """Wrap the current access token for googleapiclient consumers."""
        access_token = await self.obtain_valid_access_token(tenant)
        if access_token is None:
            return None
        return Credentials(token=access_token)

    async def invalidate(self, tenant: TenantKey) -> None:
        """Drop the cached token so the next call re-validates with Google."""
        await self._cache.clear(tenant)

    async def link_store(
        self, tenant: TenantKey, *, access_token: str, refresh_token: str, expires_in: int
    ) -> None:
        """Persist freshly granted tokens and seed the cache with the access token."""
        await self._backend.write_tokens(
            tenant, access_token=access_token, refresh_token=refresh_token
        )
        expires_at = now_ms() + expires_in * 1000
        await self._cache.set(
            tenant,
            CachedToken(access_token=access_token, expires_at=expires_at),
            expires_in - self._settings.cache_margin_seconds,
        )
        self._metrics.token_expires_at(tenant, expires_at)
        logger.info("Linked Google account for %s", tenant)

    async def unlink_store(self, tenant: TenantKey) -> None:
        """Forget every token held for the store."""
        await self._cache.clear(tenant)
        await self._backend.delete_tokens(tenant)
        logger.info("Unlinked Google account for %s", tenant)

    async def _usable_cached_token(self, tenant: TenantKey) -> Optional[CachedToken]:
        cached = await self._cache.get(tenant)
        if cached is None:
            return None
        if cached.seconds_remaining() <= self._settings.cache_margin_seconds:
            return None
        return cached

    def _forget(self, tenant: TenantKey, task: asyncio.Task) -> None:
        if self._inflight.get(tenant) is task:
            del self._inflight[tenant]
        if not task.cancelled():
            # Mark the outcome as observed even if every waiter went away.
            task.exception()

    async def _refresh_exclusively(self, tenant: TenantKey) -> Optional[AccessTokenGrant]:
        async with self._lock.held(tenant, self._settings.lock_ttl_seconds) as acquired:
            if acquired:
                # Another instance may have finished between our miss and the lock.
                cached = await self._usable_cached_token(tenant)
                if cached is not None:
                    return AccessTokenGrant(
                        access_token=cached.access_token,
                        expires_at=cached.expires_at,
                        from_cache=True,
                    )
                return await self._refresh_within_deadline(tenant)

        logger.info("Refresh for %s in progress elsewhere; waiting once", tenant)
        await self._sleep(self._settings.lock_wait_seconds)
        cached = await self._usable_cached_token(tenant)
        if cached is None:
            raise LockTimeoutError(f"Timed out waiting for the token refresh of {tenant}.")
        return AccessTokenGrant(
            access_token=cached.access_token, expires_at=cached.expires_at, from_cache=True
        )

    async def _refresh_within_deadline(self, tenant: TenantKey) -> Optional[AccessTokenGrant]:
        # The lock expires on its own; the holder must be done before it does.
        deadline = self._settings.refresh_deadline_seconds
        try:
            return await asyncio.wait_for(self._refresh(tenant), timeout=deadline)
        except asyncio.TimeoutError as exc:
            self._metrics.refresh_failed(tenant, RefreshFailedError.code)
            logger.error("Token refresh for %s overran its %ss deadline", tenant, deadline)
            raise RefreshFailedError(
                f"Token refresh did not finish within {deadline}s.",
                status_code=HTTPStatus.GATEWAY_TIMEOUT,
            ) from exc

    async def _refresh(self, tenant: TenantKey) -> Optional[AccessTokenGrant]:
        self._metrics.refresh_started(tenant)
        try:
            stored = await self._backend.obtain_store(tenant)
            if stored is None or not stored.refresh_token:
                self._metrics.refresh_failed(tenant, "no_refresh_token")
                logger.warning("No refresh token on record for %s", tenant)
                return None

            started = time.perf_counter()
            try:
                refreshed = await self._oauth.refresh_access_token(stored.refresh_token)
            finally:
                self._metrics.observe_google_request(
                    "oauth_refresh", time.perf_counter() - started
                )

            # Google usually omits the refresh token; keep the one on record.
            refresh_token = refreshed.refresh_token or stored.refresh_token
            await self._backend.write_tokens(
                tenant, access_token=refreshed.access_token, refresh_token=refresh_token
            )

            ttl = refreshed.seconds_remaining() - self._settings.cache_margin_seconds
            await self._cache.set(
                tenant,
                CachedToken(
                    access_token=refreshed.access_token, expires_at=refreshed.expires_at_ms
                ),
                ttl,
            )
            self._metrics.token_expires_at(tenant, refreshed.expires_at_ms)
            logger.info("Refreshed Google token for %s (cached for %ss)", tenant, max(ttl, 0))
            return AccessTokenGrant(
                access_token=refreshed.access_token, expires_at=refreshed.expires_at_ms
            )
        except TokenRevokedError as exc:
            self._metrics.refresh_failed(tenant, exc.code)
            logger.warning("Google refresh token revoked for %s", tenant)
            try:
                await self._cache.clear(tenant)
            except CacheUnavailableError:
                logger.exception("Could not clear cached token for %s", tenant)
            raise
        except TokenBrokerError as exc:
            self._metrics.refresh_failed(tenant, exc.code)
            logger.error("Token refresh failed for %s: %s (%s)", tenant, exc.message, exc.code)
            raise
        except Exception as exc:
            self._metrics.refresh_failed(tenant, type(exc).__name__)
            logger.exception("Unexpected error refreshing token for %s", tenant)
            raise


__all__ = ["GoogleTokenService"]
