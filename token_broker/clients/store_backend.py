"""
HTTP client for the Linksun backend, the system of record for store tokens.

The backend is a PHP front controller addressed by ``action``/``class`` query
parameters; each environment (prod, hom, dev) has its own base URL.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from token_broker.core.config import BackendSettings
from token_broker.core.errors import BackendResponseError, BackendUnreachableError
from token_broker.models.oauth import StoredCredentials
from token_broker.models.tenant import TenantKey

logger = logging.getLogger(__name__)


class StoreBackendClient:
    """Read, write and delete a store's Google tokens."""

    STORE_CLASS = "Lojas"
    READ_ACTION = "obterLoja"
    WRITE_ACTION = "gravarTokenGoogleAuth"
    DELETE_ACTION = "deletarTokenGoogleAuth"

    def __init__(
        self,
        settings: BackendSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._settings = settings
        self._transport = transport

    async def _request(
        self,
        tenant: TenantKey,
        method: str,
        params: Dict[str, str],
        json_body: Optional[Dict[str, Any]] = None,
    ) -> httpx.Response:
        backend_url = self._settings.url_for(tenant.environment)
        try:
            async with httpx.AsyncClient(
                timeout=self._settings.timeout_seconds, transport=self._transport
            ) as client:
                response = await client.request(
                    method,
                    backend_url,
                    params={"class": self.STORE_CLASS, **params},
                    json=json_body,
                    headers={"Content-Type": "application/json"},
                )
        except httpx.TransportError as exc:
            logger.error("Store backend unreachable at %s: %s", backend_url, exc)
            raise BackendUnreachableError(
                f"Could not connect to the store backend at {backend_url}."
            ) from exc

        if response.is_error:
            raise BackendResponseError(
                f"Store backend answered HTTP {response.status_code}.",
                status_code=502,
            )
        return response

    async def obtain_store(self, tenant: TenantKey) -> Optional[StoredCredentials]:
        """Return the stored tokens, or None when the backend has no such store."""
        response = await self._request(
            tenant,
            "GET",
            {"action": self.READ_ACTION, "id_loja": tenant.store_id, "sigla": tenant.sigla},
        )
        try:
            data = response.json()
        except ValueError as exc:
            raise BackendResponseError("Store backend returned invalid JSON.") from exc

        body = data.get("body") if isinstance(data, dict) else None
        if not body or not isinstance(body, dict):
            return None
        return StoredCredentials(
            access_token=body.get("accessTokenGoogle_loja") or None,
            refresh_token=body.get("refreshTokenGoogle_loja") or None,
        )

    async def write_tokens(
        self, tenant: TenantKey, *, access_token: str, refresh_token: str
    ) -> None:
        logger.info("Updating stored tokens for %s", tenant)
        await self._request(
            tenant,
            "POST",
            {"action": self.WRITE_ACTION, "sigla": tenant.sigla},
            {
                "lojaId": tenant.store_id,
                "accessTokenGoogle_loja": access_token,
                "refreshTokenGoogle_loja": refresh_token,
            },
        )

    async def delete_tokens(self, tenant: TenantKey) -> None:
        await self._request(
            tenant,
            "POST",
            {"action": self.DELETE_ACTION, "sigla": tenant.sigla},
            {"lojaId": tenant.store_id},
        )
        logger.info("Removed stored tokens for %s", tenant)


__all__ = ["StoreBackendClient"]
