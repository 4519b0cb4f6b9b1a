"""Expose constructed client wrappers."""

from .google_auth import ConsentStateSigner, GoogleOAuthClient
from .google_drive import GoogleDriveClient
from .redis_store import RedisClient
from .store_backend import StoreBackendClient

__all__ = [
    "ConsentStateSigner",
    "GoogleDriveClient",
    "GoogleOAuthClient",
    "RedisClient",
    "StoreBackendClient",
]
