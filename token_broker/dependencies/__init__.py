"""Expose dependency helpers for FastAPI routers."""

from .clients import (
    get_consent_state_signer,
    get_drive_client,
    get_google_oauth_client,
    get_google_token_service,
    get_redis,
    get_store_backend_client,
    get_token_metrics,
    shutdown_clients,
)
from .config import get_app_settings
from .tenant import get_tenant

__all__ = [
    "get_app_settings",
    "get_consent_state_signer",
    "get_drive_client",
    "get_google_oauth_client",
    "get_google_token_service",
    "get_redis",
    "get_store_backend_client",
    "get_tenant",
    "get_token_metrics",
    "shutdown_clients",
]
