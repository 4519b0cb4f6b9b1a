"""
Application configuration models and helpers.

Settings are grouped per collaborator (Google, Redis, the store backend and the
refresh coordinator) and composed into a single ``AppSettings`` object that the
FastAPI dependencies share.
"""

from functools import lru_cache
from pathlib import Path
from typing import Annotated, Optional

import os

from pydantic import Field, HttpUrl, field_validator, model_validator
from pydantic_settings import BaseSettings, NoDecode, SettingsConfigDict


def _load_env_file(path: str = ".env") -> None:
    """Best-effort load key=value pairs from a .env file without extra deps."""
    env_path = Path(path)
    if not env_path.exists():
        return
    for raw_line in env_path.read_text().splitlines():
        line = raw_line.strip()
        if not line or line.startswith("#"):
            continue
        key, sep, value = line.partition("=")
        if not sep:
            continue
        key = key.strip()
        if not key or key in os.environ:
            continue
        cleaned = value.strip().strip('"').strip("'")
        os.environ[key] = cleaned


_load_env_file()


def _split_csv(value: str | tuple[str, ...] | list[str]) -> tuple[str, ...]:
    if isinstance(value, tuple):
        return value
    if isinstance(value, list):
        return tuple(value)
    return tuple(item.strip() for item in value.split(",") if item.strip())


class GoogleSettings(BaseSettings):
    """Configuration required for interacting with Google's OAuth endpoints."""

    client_id: str = Field(..., validation_alias="GOOGLE_CLIENT_ID")
    client_secret: str = Field(..., validation_alias="GOOGLE_CLIENT_SECRET")
    callback_url: Optional[HttpUrl] = Field(
        None,
        validation_alias="GOOGLE_CALLBACK_URL",
        description="Redirect URI registered for the consent popup flow.",
    )
    request_timeout_seconds: float = Field(10.0, validation_alias="GOOGLE_TOKEN_TIMEOUT")


class OAuthSettings(BaseSettings):
    """OAuth consent flow configuration."""

    state_ttl_seconds: int = Field(900, validation_alias="OAUTH_STATE_TTL")
    scopes: Annotated[tuple[str, ...], NoDecode] = Field(
        (
            "profile",
            "email",
            "https://www.googleapis.com/auth/drive",
            "https://www.googleapis.com/auth/documents",
        ),
        validation_alias="OAUTH_SCOPES",
    )

    @field_validator("scopes", mode="before")
    @classmethod
    def _split_scopes(
        cls, value: str | tuple[str, ...] | list[str]
    ) -> tuple[str, ...]:
        """Support providing scopes as a comma-separated string."""
        return _split_csv(value)


class RedisSettings(BaseSettings):
    """Connection settings for the shared token cache and refresh locks."""

    host: str = Field("redis", validation_alias="REDIS_HOST")
    port: int = Field(6379, validation_alias="REDIS_PORT")
    db: int = Field(0, validation_alias="REDIS_DB")
    password: Optional[str] = Field(None, validation_alias="REDIS_PASSWORD")
    key_prefix: str = Field(
        "google-auth:",
        validation_alias="REDIS_KEY_PREFIX",
        description="Namespace applied to every cache and lock key.",
    )
    socket_timeout_seconds: float = Field(5.0, validation_alias="REDIS_SOCKET_TIMEOUT")
    connect_timeout_seconds: float = Field(5.0, validation_alias="REDIS_CONNECT_TIMEOUT")


class BackendSettings(BaseSettings):
    """Endpoints of the Linksun backend that owns each store's stored tokens."""

    prod_url: str = Field(
        "https://linksun.inf.br/back-end/index.php",
        validation_alias="LINKSUN_BACKEND_URL",
    )
    hom_url: str = Field(
        "https://linksun.inf.br/back-end-hom/index.php",
        validation_alias="LINKSUN_BACKEND_URL_HOM",
    )
    dev_url: str = Field(
        "http://host.docker.internal:8000/NovoLinksun/back-end/index.php",
        validation_alias="LINKSUN_BACKEND_URL_DEV",
    )
    timeout_seconds: float = Field(10.0, validation_alias="LINKSUN_BACKEND_TIMEOUT")

    def url_for(self, environment: str) -> str:
        """Return the backend base URL serving ``environment``."""
        if environment == "prod":
            return self.prod_url
        if environment == "hom":
            return self.hom_url
        return self.dev_url


class BrokerSettings(BaseSettings):
    """Tuning knobs for the refresh coordinator."""

    cache_margin_seconds: int = Field(
        120,
        validation_alias="BROKER_CACHE_MARGIN_SECONDS",
        description="Seconds subtracted from a token's lifetime before caching it.",
    )
    lock_ttl_seconds: int = Field(30, validation_alias="BROKER_LOCK_TTL_SECONDS")
    lock_wait_seconds: float = Field(
        0.5,
        validation_alias="BROKER_LOCK_WAIT_SECONDS",
        description="Single pause before re-probing the cache when another instance refreshes.",
    )
    refresh_deadline_seconds: Optional[float] = Field(
        None,
        validation_alias="BROKER_REFRESH_DEADLINE_SECONDS",
        description="Wall-clock cap on a refresh under the lock; defaults to 80% of the lock TTL.",
    )

    @field_validator("lock_ttl_seconds")
    @classmethod
    def _positive_ttl(cls, value: int) -> int:
        if value <= 0:
            raise ValueError("lock TTL must be positive")
        return value

    @model_validator(mode="after")
    def _deadline_within_lock_ttl(self) -> "BrokerSettings":
        if self.refresh_deadline_seconds is None:
            self.refresh_deadline_seconds = self.lock_ttl_seconds * 0.8
        elif not 0 < self.refresh_deadline_seconds < self.lock_ttl_seconds:
            raise ValueError(
                "BROKER_REFRESH_DEADLINE_SECONDS must be positive and shorter than "
                "BROKER_LOCK_TTL_SECONDS"
            )
        return self


class AppSettings(BaseSettings):
    """Root settings object for the FastAPI application."""

    log_level: str = Field("INFO", validation_alias="APP_LOG_LEVEL")
    allowed_origins: Annotated[tuple[str, ...], NoDecode] = Field(
        (), validation_alias="ALLOWED_ORIGINS"
    )
    oauth: OAuthSettings = Field(default_factory=OAuthSettings)
    google: GoogleSettings = Field(default_factory=GoogleSettings)
    redis: RedisSettings = Field(default_factory=RedisSettings)
    backend: BackendSettings = Field(default_factory=BackendSettings)
    broker: BrokerSettings = Field(default_factory=BrokerSettings)

    model_config = SettingsConfigDict(
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
    )

    @field_validator("allowed_origins", mode="before")
    @classmethod
    def _split_origins(
        cls, value: str | tuple[str, ...] | list[str]
    ) -> tuple[str, ...]:
        return _split_csv(value)

    @model_validator(mode="after")
    def _timeout_within_refresh_deadline(self) -> "AppSettings":
        """Each Google request phase must fit inside the refresh deadline."""
        if self.google.request_timeout_seconds >= self.broker.refresh_deadline_seconds:
            raise ValueError(
                "GOOGLE_TOKEN_TIMEOUT must be shorter than the refresh deadline "
                "(BROKER_REFRESH_DEADLINE_SECONDS)"
            )
        return self


@lru_cache()
def get_settings() -> AppSettings:
    """Return a cached settings object."""
    return AppSettings()  # type: ignore[call-arg]


__all__ = [
    "AppSettings",
    "BackendSettings",
    "BrokerSettings",
    "GoogleSettings",
    "OAuthSettings",
    "RedisSettings",
    "get_settings",
]
