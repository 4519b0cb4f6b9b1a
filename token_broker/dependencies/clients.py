"""
Factory functions to provide shared clients and services as FastAPI dependencies.
"""

from __future__ import annotations

import asyncio
from functools import lru_cache
from typing import Optional

import redis.asyncio as redis
from fastapi import Depends

from token_broker.clients import (
    ConsentStateSigner,
    GoogleDriveClient,
    GoogleOAuthClient,
    RedisClient,
    StoreBackendClient,
)
from token_broker.core.config import get_settings
from token_broker.services import (
    GoogleTokenService,
    RefreshLock,
    TokenCache,
    TokenMetrics,
    get_metrics,
)

_token_service: Optional[GoogleTokenService] = None
_token_service_lock = asyncio.Lock()


@lru_cache()
def _settings():
    """Internal helper to cache settings for client factories."""
    return get_settings()


@lru_cache()
def get_consent_state_signer() -> ConsentStateSigner:
    """Sign consent state with the Google client secret."""
    settings = _settings()
    return ConsentStateSigner(
        secret_key=settings.google.client_secret,
        ttl_seconds=settings.oauth.state_ttl_seconds,
    )


@lru_cache()
def get_google_oauth_client() -> GoogleOAuthClient:
    """Create a singleton Google OAuth client."""
    settings = _settings()
    return GoogleOAuthClient(settings.google, settings.oauth)


@lru_cache()
def get_store_backend_client() -> StoreBackendClient:
    """Provide the Linksun backend client."""
    return StoreBackendClient(_settings().backend)


def get_token_metrics() -> TokenMetrics:
    """Provide the process-wide metrics recorder."""
    return get_metrics()


async def get_redis() -> redis.Redis:
    """Provide the shared async Redis client."""
    return await RedisClient.get_client(_settings().redis)


async def get_google_token_service() -> GoogleTokenService:
    """
    Provide the token coordinator.

    One instance per process so concurrent requests share in-flight refreshes.
    """
    global _token_service
    if _token_service is not None:
        return _token_service
    async with _token_service_lock:
        if _token_service is None:
            settings = _settings()
            client = await get_redis()
            _token_service = GoogleTokenService(
                cache=TokenCache(client, key_prefix=settings.redis.key_prefix),
                lock=RefreshLock(client, key_prefix=settings.redis.key_prefix),
                oauth_client=get_google_oauth_client(),
                backend=get_store_backend_client(),
                broker_settings=settings.broker,
                metrics=get_token_metrics(),
            )
    return _token_service


async def get_drive_client(
    token_service: GoogleTokenService = Depends(get_google_token_service),
) -> GoogleDriveClient:
    """Provide a Drive client bound to the token coordinator."""
    return GoogleDriveClient(token_service)


async def shutdown_clients() -> None:
    """Drop the coordinator and close Redis on application shutdown."""
    global _token_service
    _token_service = None
    await RedisClient.close()


__all__ = [
    "get_consent_state_signer",
    "get_drive_client",
    "get_google_oauth_client",
    "get_google_token_service",
    "get_redis",
    "get_store_backend_client",
    "get_token_metrics",
    "shutdown_clients",
]
