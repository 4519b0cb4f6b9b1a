"""
Redis connection shared by the token cache and the refresh locks.
"""

from __future__ import annotations

import logging
from typing import Optional

import redis.asyncio as redis

from token_broker.core.config import RedisSettings

logger = logging.getLogger(__name__)


class RedisClient:
    """Process-wide async Redis client built from ``RedisSettings``."""

    _instance: Optional[redis.Redis] = None

    @classmethod
    async def get_client(cls, settings: RedisSettings) -> redis.Redis:
        """Get or create the Redis client instance."""
        if cls._instance is None:
            redis_kwargs = {
                "host": settings.host,
                "port": settings.port,
                "db": settings.db,
                "decode_responses": True,
                "socket_connect_timeout": settings.connect_timeout_seconds,
                "socket_timeout": settings.socket_timeout_seconds,
            }
            # Only pass password if it's set (not empty string)
            if settings.password:
                redis_kwargs["password"] = settings.password

            client = redis.Redis(**redis_kwargs)
            try:
                await client.ping()
            except redis.RedisError as exc:
                logger.error(
                    "Redis connection failed (%s:%s): %s", settings.host, settings.port, exc
                )
                await client.aclose()
                raise
            logger.info("Redis connected: %s:%s (DB %s)", settings.host, settings.port, settings.db)
            cls._instance = client

        return cls._instance

    @classmethod
    async def close(cls) -> None:
        """Close the Redis connection."""
        if cls._instance is not None:
            await cls._instance.aclose()
            cls._instance = None
            logger.info("Redis connection closed")


__all__ = ["RedisClient"]
