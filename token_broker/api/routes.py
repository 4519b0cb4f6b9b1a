"""
FastAPI routes for the Google token broker.
"""

from __future__ import annotations

import json
import logging
from http import HTTPStatus
from typing import Annotated, Any

from fastapi import APIRouter, Depends, HTTPException, Query
from fastapi.responses import HTMLResponse, JSONResponse, RedirectResponse

from token_broker.clients.google_auth import (
    AccessTokenRejectedError,
    CodeExchangeError,
    InvalidConsentStateError,
)
from token_broker.core.errors import NOT_AUTHENTICATED_CODE, TokenBrokerError
from token_broker.dependencies import (
    get_app_settings,
    get_consent_state_signer,
    get_drive_client,
    get_google_oauth_client,
    get_google_token_service,
    get_tenant,
    get_token_metrics,
)
from token_broker.models.tenant import TenantKey
from token_broker.schemas import (
    AccessTokenResponse,
    AuthStatusResponse,
    ErrorResponse,
    GoogleProfile,
    RefreshTokenResponse,
    StoreRequest,
)

router = APIRouter()
logger = logging.getLogger(__name__)

# Classified failures share one body shape: {error, code, status}.
TOKEN_ERROR_RESPONSES = {
    status: {"model": ErrorResponse} for status in (401, 500, 502, 503, 504)
}


def _not_authenticated(message: str = "Not authenticated with Google.") -> JSONResponse:
    return JSONResponse(
        status_code=HTTPStatus.UNAUTHORIZED,
        content={"error": message, "code": NOT_AUTHENTICATED_CODE, "status": 401},
    )


def _error_response(exc: TokenBrokerError) -> JSONResponse:
    return JSONResponse(status_code=int(exc.status_code), content=exc.to_payload())


def _popup_response(message_type: str, origin: str) -> HTMLResponse:
    """Notify the opener window and close the consent popup."""
    message = json.dumps({"type": message_type})
    target = json.dumps(origin)
    return HTMLResponse(
        "<script>\n"
        f"  window.opener && window.opener.postMessage({message}, {target});\n"
        "  window.close();\n"
        "</script>"
    )


@router.get("/health", status_code=HTTPStatus.OK)
async def healthcheck() -> dict:
    """Simple health endpoint for monitoring."""
    return {"status": "ok"}


@router.get("/metrics", status_code=HTTPStatus.OK)
async def metrics_snapshot(metrics: Annotated[Any, Depends(get_token_metrics)]) -> dict:
    """Current counters, gauges and latency summaries."""
    return metrics.snapshot()


@router.get(
    "/internal/google/token",
    response_model=AccessTokenResponse,
    responses=TOKEN_ERROR_RESPONSES,
)
async def internal_access_token(
    tenant: Annotated[TenantKey, Depends(get_tenant)],
    token_service: Annotated[Any, Depends(get_google_token_service)],
):
    """Return a valid access token for the gateway."""
    try:
        access_token = await token_service.obtain_valid_access_token(tenant)
    except TokenBrokerError as exc:
        return _error_response(exc)

    if access_token is None:
        return _not_authenticated()
    return AccessTokenResponse(access_token=access_token)


@router.post(
    "/auth/refresh-token",
    response_model=RefreshTokenResponse,
    responses=TOKEN_ERROR_RESPONSES,
)
async def refresh_access_token(
    payload: StoreRequest,
    token_service: Annotated[Any, Depends(get_google_token_service)],
    metrics: Annotated[Any, Depends(get_token_metrics)],
):
    """Return a valid access token together with its expiry."""
    tenant = payload.tenant()
    metrics.store_seen(tenant)
    logger.info("Token refresh requested for %s", tenant)
    try:
        grant = await token_service.acquire(tenant)
    except TokenBrokerError as exc:
        return _error_response(exc)

    if grant is None:
        return _not_authenticated("No Google token stored for this store.")
    return RefreshTokenResponse(
        access_token=grant.access_token,
        expires_in=grant.expires_in,
        expires_at=grant.expires_at,
        from_cache=grant.from_cache,
    )


@router.get("/auth/status", response_model=AuthStatusResponse)
async def google_auth_status(
    tenant: Annotated[TenantKey, Depends(get_tenant)],
    token_service: Annotated[Any, Depends(get_google_token_service)],
    oauth_client: Annotated[Any, Depends(get_google_oauth_client)],
) -> AuthStatusResponse:
    """Report whether the store has a working Google connection."""
    try:
        access_token = await token_service.obtain_valid_access_token(tenant)
        if access_token is None:
            return AuthStatusResponse(connected=False)
        profile = await oauth_client.get_user_info(access_token)
    except AccessTokenRejectedError:
        logger.info("Google rejected the cached token for %s; invalidating it", tenant)
        try:
            await token_service.invalidate(tenant)
        except TokenBrokerError:
            logger.exception("Could not invalidate cached token for %s", tenant)
        return AuthStatusResponse(connected=False)
    except Exception:
        logger.exception("Status check failed for %s", tenant)
        return AuthStatusResponse(connected=False)

    if profile is None:
        return AuthStatusResponse(connected=False)
    return AuthStatusResponse(connected=True, profile=GoogleProfile(**profile))


@router.get("/auth/google", status_code=HTTPStatus.TEMPORARY_REDIRECT)
async def start_google_oauth_flow(
    tenant: Annotated[TenantKey, Depends(get_tenant)],
    oauth_client: Annotated[Any, Depends(get_google_oauth_client)],
    state_signer: Annotated[Any, Depends(get_consent_state_signer)],
    settings: Annotated[Any, Depends(get_app_settings)],
    origin: str = Query(..., description="Origin of the window that opened the popup."),
) -> RedirectResponse:
    """Send the consent popup to Google with a signed state naming the store."""
    if settings.allowed_origins and origin not in settings.allowed_origins:
        raise HTTPException(status_code=HTTPStatus.BAD_REQUEST, detail="Origin not allowed.")

    authorization_url = oauth_client.build_authorization_url(
        state=state_signer.sign(tenant, origin)
    )
    return RedirectResponse(url=authorization_url, status_code=HTTPStatus.TEMPORARY_REDIRECT)


@router.get("/auth/google/callback", response_class=HTMLResponse)
async def handle_google_oauth_callback(
    oauth_client: Annotated[Any, Depends(get_google_oauth_client)],
    state_signer: Annotated[Any, Depends(get_consent_state_signer)],
    token_service: Annotated[Any, Depends(get_google_token_service)],
    state: str = Query(..., description="Signed state issued by /auth/google."),
    code: str = Query(..., description="Authorization code returned by Google."),
) -> HTMLResponse:
    """Complete the consent flow, store the grant and notify the opener."""
    try:
        consent = state_signer.verify(state)
    except InvalidConsentStateError as exc:
        raise HTTPException(status_code=HTTPStatus.BAD_REQUEST, detail=str(exc)) from exc
    tenant = consent.tenant

    try:
        access_token, refresh_token, expires_in = await oauth_client.exchange_authorization_code(
            code
        )
    except CodeExchangeError as exc:
        logger.warning("Authorization code exchange failed for %s: %s", tenant, exc)
        raise HTTPException(
            status_code=HTTPStatus.BAD_REQUEST,
            detail="Failed to exchange authorization code.",
        ) from exc

    try:
        await token_service.link_store(
            tenant,
            access_token=access_token,
            refresh_token=refresh_token,
            expires_in=expires_in,
        )
    except TokenBrokerError as exc:
        logger.error("Could not save Google grant for %s: %s", tenant, exc.message)
        return HTMLResponse(
            "Failed to save authentication.", status_code=HTTPStatus.INTERNAL_SERVER_ERROR
        )

    return _popup_response("google-auth-success", consent.origin)


@router.post("/auth/logout")
async def logout_store(
    payload: StoreRequest,
    token_service: Annotated[Any, Depends(get_google_token_service)],
):
    """Disconnect the store's Google account."""
    try:
        await token_service.unlink_store(payload.tenant())
    except TokenBrokerError as exc:
        return _error_response(exc)
    return {"ok": True}


@router.get("/auth/drive/list")
async def list_drive_folder(
    tenant: Annotated[TenantKey, Depends(get_tenant)],
    drive_client: Annotated[Any, Depends(get_drive_client)],
    folder_id: str = Query(
        default="root",
        alias="folderId",
        description="Folder to list, or 'sharedWithMe'.",
    ),
):
    """List folders and Google Docs in a store's Drive folder."""
    try:
        files = await drive_client.list_folder(tenant=tenant, folder_id=folder_id)
    except TokenBrokerError as exc:
        return _error_response(exc)
    except Exception:
        logger.exception("Drive listing failed for %s", tenant)
        return JSONResponse(
            status_code=HTTPStatus.INTERNAL_SERVER_ERROR,
            content={"error": "Could not access Google Drive."},
        )

    if files is None:
        return _not_authenticated("Not authenticated with Google.")
    return {"files": files}


__all__ = ["router"]
