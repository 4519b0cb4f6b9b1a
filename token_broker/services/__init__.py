"""Service layer exports."""

from .google_tokens import GoogleTokenService
from .metrics import TokenMetrics, get_metrics
from .refresh_lock import RefreshLock
from .token_cache import TokenCache

__all__ = [
    "GoogleTokenService",
    "RefreshLock",
    "TokenCache",
    "TokenMetrics",
    "get_metrics",
]
