"""Schemas for the token and consent endpoints."""

from __future__ import annotations

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field

from token_broker.models.tenant import TenantKey


class _CamelModel(BaseModel):
    model_config = ConfigDict(populate_by_name=True)


class StoreRequest(_CamelModel):
    """Identifies the store a request acts on."""

    store_id: str = Field(..., alias="lojaId", min_length=1)
    sigla: str = Field(..., min_length=1)
    env: str = Field(..., min_length=1)

    def tenant(self) -> TenantKey:
        return TenantKey(environment=self.env, sigla=self.sigla, store_id=self.store_id)


class AccessTokenResponse(_CamelModel):
    access_token: str = Field(..., alias="accessToken")


class RefreshTokenResponse(_CamelModel):
    """Token plus expiry details returned by the explicit refresh endpoint."""

    access_token: str = Field(..., alias="accessToken")
    expires_in: int = Field(..., alias="expiresIn", description="Seconds until expiry.")
    expires_at: int = Field(..., alias="expiresAt", description="Epoch milliseconds.")
    from_cache: bool = Field(..., alias="fromCache")


class GoogleProfile(BaseModel):
    id: Optional[str] = None
    name: Optional[str] = None
    email: Optional[str] = None
    picture: Optional[str] = None


class AuthStatusResponse(BaseModel):
    connected: bool
    profile: Optional[GoogleProfile] = None


class ErrorResponse(BaseModel):
    error: str
    code: str
    status: int


__all__ = [
    "AccessTokenResponse",
    "AuthStatusResponse",
    "ErrorResponse",
    "GoogleProfile",
    "RefreshTokenResponse",
    "StoreRequest",
]
