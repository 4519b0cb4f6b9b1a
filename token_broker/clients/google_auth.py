"""
Google OAuth utilities.

These helpers drive the consent popup flow and the refresh-token exchange that
keeps every store's access token alive.
"""

from __future__ import annotations

import base64
import hmac
import json
import logging
import secrets
import time
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from hashlib import sha256
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode

import httpx

from fastapi import status

from token_broker.core.config import GoogleSettings, OAuthSettings
from token_broker.core.errors import (
    MisconfiguredClientError,
    RefreshFailedError,
    TokenBrokerError,
    TokenRevokedError,
)
from token_broker.models.oauth import RefreshedCredentials
from token_broker.models.tenant import TenantKey

logger = logging.getLogger(__name__)

_SIGNATURE_BYTES = 32


class InvalidConsentStateError(ValueError):
    """The OAuth ``state`` was forged, expired or does not name a store."""


@dataclass(frozen=True)
class ConsentState:
    tenant: TenantKey
    origin: str


class ConsentStateSigner:
    """Carry the store and the opener origin through Google inside a signed ``state``."""

    def __init__(self, secret_key: str, ttl_seconds: int = 600) -> None:
        self._key = secret_key.encode("utf-8")
        self._ttl_seconds = ttl_seconds

    def _digest(self, body: bytes) -> bytes:
        return hmac.new(self._key, body, sha256).digest()

    def sign(self, tenant: TenantKey, origin: str, *, issued_at: Optional[float] = None) -> str:
        body = json.dumps(
            {
                "env": tenant.environment,
                "sigla": tenant.sigla,
                "lojaId": tenant.store_id,
                "origin": origin,
                "iat": int(time.time() if issued_at is None else issued_at),
                "nonce": secrets.token_hex(8),
            },
            separators=(",", ":"),
        ).encode("utf-8")
        return base64.urlsafe_b64encode(self._digest(body) + body).decode("ascii")

    def verify(self, token: str, *, now: Optional[float] = None) -> ConsentState:
        try:
            raw = base64.urlsafe_b64decode(token.encode("ascii"))
        except ValueError as exc:
            raise InvalidConsentStateError("Malformed OAuth state.") from exc

        signature, body = raw[:_SIGNATURE_BYTES], raw[_SIGNATURE_BYTES:]
        if not hmac.compare_digest(signature, self._digest(body)):
            raise InvalidConsentStateError("Invalid OAuth state signature.")

        data = json.loads(body)
        issued_at = data.get("iat")
        current = time.time() if now is None else now
        if not isinstance(issued_at, (int, float)) or current - issued_at > self._ttl_seconds:
            raise InvalidConsentStateError("OAuth state has expired.")

        try:
            return ConsentState(
                tenant=TenantKey(
                    environment=data["env"], sigla=data["sigla"], store_id=str(data["lojaId"])
                ),
                origin=data["origin"],
            )
        except KeyError as exc:
            raise InvalidConsentStateError("OAuth state does not identify a store.") from exc


class CodeExchangeError(Exception):
    """Raised when Google will not trade an authorization code for tokens."""


class AccessTokenRejectedError(Exception):
    """Google answered 401 to a request made with a brokered access token."""


def classify_token_error(response: httpx.Response) -> TokenBrokerError:
    """Map an error response from the token endpoint onto the failure taxonomy."""
    try:
        body = response.json()
    except ValueError:
        body = {}
    if not isinstance(body, dict):
        body = {}

    error = body.get("error")
    description = str(body.get("error_description") or "")

    if error == "invalid_grant" or "revoked" in description.lower():
        return TokenRevokedError("Token revoked or expired; a new login is required.")
    if error == "invalid_client":
        return MisconfiguredClientError("OAuth client configuration rejected by Google.")
    return RefreshFailedError(
        f"Token refresh failed ({error or 'unknown error'}).",
        status_code=response.status_code,
    )


class GoogleOAuthClient:
    """Talks to Google's OAuth endpoints on behalf of the broker's client id."""

    AUTH_BASE_URL = "https://accounts.google.com/o/oauth2/v2/auth"
    TOKEN_URL = "https://oauth2.googleapis.com/token"
    USERINFO_URL = "https://www.googleapis.com/oauth2/v2/userinfo"

    def __init__(
        self,
        google_settings: GoogleSettings,
        oauth_settings: OAuthSettings,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self._google = google_settings
        self._oauth = oauth_settings
        self._transport = transport

    def _client(self) -> httpx.AsyncClient:
        return httpx.AsyncClient(
            timeout=self._google.request_timeout_seconds, transport=self._transport
        )

    @property
    def _redirect_uri(self) -> str:
        return str(self._google.callback_url or "")

    async def _post_token_form(self, grant_type: str, **fields: str) -> httpx.Response:
        form = {
            "client_id": self._google.client_id,
            "client_secret": self._google.client_secret,
            "grant_type": grant_type,
            **fields,
        }
        async with self._client() as client:
            return await client.post(self.TOKEN_URL, data=form)

    def build_authorization_url(self, state: str) -> str:
        """Consent URL asking for offline access so Google issues a refresh token."""
        query = urlencode(
            {
                "client_id": self._google.client_id,
                "redirect_uri": self._redirect_uri,
                "response_type": "code",
                "scope": " ".join(self._oauth.scopes),
                "access_type": "offline",
                "include_granted_scopes": "true",
                "prompt": "consent",
                "state": state,
            }
        )
        return f"{self.AUTH_BASE_URL}?{query}"

    async def exchange_authorization_code(self, code: str) -> Tuple[str, str, int]:
        """
        Trade the code from the consent callback for tokens.

        Returns ``(access_token, refresh_token, expires_in_seconds)``. A grant
        without a refresh token is useless to the broker and is rejected.
        """
        try:
            response = await self._post_token_form(
                "authorization_code", code=code, redirect_uri=self._redirect_uri
            )
        except httpx.HTTPError as exc:
            raise CodeExchangeError(f"Token endpoint unreachable: {exc}") from exc

        if response.status_code != status.HTTP_200_OK:
            raise CodeExchangeError(f"HTTP {response.status_code}: {response.text}")

        grant = response.json()
        missing = [
            field
            for field in ("access_token", "refresh_token", "expires_in")
            if not grant.get(field)
        ]
        if missing:
            raise CodeExchangeError(f"Google grant is missing {', '.join(missing)}.")
        return grant["access_token"], grant["refresh_token"], int(grant["expires_in"])

    async def refresh_access_token(self, refresh_token: str) -> RefreshedCredentials:
        """
        Exchange a stored refresh token for a new access token.

        Raises ``TokenRevokedError``, ``MisconfiguredClientError`` or
        ``RefreshFailedError`` depending on how Google answers.
        """
        requested_at = datetime.now(timezone.utc)
        try:
            response = await self._post_token_form("refresh_token", refresh_token=refresh_token)
        except httpx.TimeoutException as exc:
            raise RefreshFailedError(
                "Timed out waiting for Google token endpoint.",
                status_code=status.HTTP_504_GATEWAY_TIMEOUT,
            ) from exc
        except httpx.HTTPError as exc:
            raise RefreshFailedError(f"Google token endpoint unreachable: {exc}") from exc

        if response.status_code != status.HTTP_200_OK:
            raise classify_token_error(response)

        try:
            grant = response.json()
        except ValueError as exc:
            raise RefreshFailedError("Google returned a non-JSON refresh payload.") from exc

        if not isinstance(grant, dict):
            raise RefreshFailedError("Google returned a refresh payload that is not an object.")

        access_token = grant.get("access_token")
        if not access_token or not isinstance(access_token, str):
            raise RefreshFailedError("Incomplete refresh payload returned from Google.")
        try:
            expires_in = int(grant.get("expires_in"))
        except (TypeError, ValueError) as exc:
            raise RefreshFailedError("Google returned an unusable expires_in.") from exc
        if expires_in <= 0:
            raise RefreshFailedError("Google returned an unusable expires_in.")

        # Expiry is measured from when we asked, never from when the reply landed.
        return RefreshedCredentials(
            access_token=access_token,
            refresh_token=grant.get("refresh_token") or None,
            expires_at=requested_at + timedelta(seconds=expires_in),
        )

    async def get_user_info(self, access_token: str) -> Optional[Dict[str, Any]]:
        """
        Return the Google profile behind ``access_token``, or None if unavailable.

        Raises ``AccessTokenRejectedError`` when Google no longer accepts the token.
        """
        async with self._client() as client:
            response = await client.get(
                self.USERINFO_URL, headers={"Authorization": f"Bearer {access_token}"}
            )
        if response.status_code == status.HTTP_401_UNAUTHORIZED:
            raise AccessTokenRejectedError("Userinfo rejected the access token.")
        if response.status_code != status.HTTP_200_OK:
            logger.info("Userinfo lookup rejected with HTTP %s", response.status_code)
            return None
        return response.json()


__all__ = [
    "AccessTokenRejectedError",
    "CodeExchangeError",
    "ConsentState",
    "ConsentStateSigner",
    "GoogleOAuthClient",
    "InvalidConsentStateError",
    "classify_token_error",
]
