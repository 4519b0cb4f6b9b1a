"""
FastAPI dependencies exposing configuration to routes.
"""

from token_broker.core.config import AppSettings, get_settings


def get_app_settings() -> AppSettings:
    """FastAPI dependency returning application settings; override it in tests."""
    return get_settings()


__all__ = ["get_app_settings"]
