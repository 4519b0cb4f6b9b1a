"""Google Drive browsing with brokered store credentials."""

from __future__ import annotations

import asyncio
import logging
from typing import TYPE_CHECKING, Optional

from googleapiclient.discovery import build
from googleapiclient.errors import HttpError

from token_broker.models.tenant import TenantKey

logger = logging.getLogger(__name__)

if TYPE_CHECKING:  # pragma: no cover - type hints only
    from token_broker.services.google_tokens import GoogleTokenService

FOLDER_MIME = "application/vnd.google-apps.folder"
DOC_MIME = "application/vnd.google-apps.document"
SHORTCUT_MIME = "application/vnd.google-apps.shortcut"

SHARED_WITH_ME = "sharedWithMe"


def _resolve_shortcut(item: dict) -> dict:
    is_shortcut = item.get("mimeType") == SHORTCUT_MIME
    details = item.get("shortcutDetails") or {}
    return {
        **item,
        "isShortcut": is_shortcut,
        "effectiveId": details.get("targetId") if is_shortcut else item.get("id"),
        "effectiveMimeType": details.get("targetMimeType") if is_shortcut else item.get("mimeType"),
    }


class GoogleDriveClient:
    """List a store's Drive folders and Google Docs."""

    def __init__(self, token_service: "GoogleTokenService") -> None:
        self._token_service = token_service

    async def list_folder(self, *, tenant: TenantKey, folder_id: str = "root") -> Optional[list[dict]]:
        """
        Return folders followed by Google Docs inside ``folder_id``.

        ``sharedWithMe`` lists items shared with the account instead. Returns
        None when the store has no usable Google grant.
        """
        credentials = await self._token_service.get_credentials(tenant)
        if credentials is None:
            return None

        if folder_id == SHARED_WITH_ME:
            query = "sharedWithMe = true and trashed = false"
        else:
            escaped = folder_id.replace("'", "\\'")
            query = f"'{escaped}' in parents and trashed = false"

        def _execute_list() -> list[dict]:
            service = build("drive", "v3", credentials=credentials, cache_discovery=False)
            result = (
                service.files()
                .list(
                    q=query,
                    fields=(
                        "files(id, name, mimeType, iconLink, modifiedTime, "
                        "owners(displayName), shortcutDetails)"
                    ),
                    orderBy="name",
                    includeItemsFromAllDrives=True,
                    supportsAllDrives=True,
                )
                .execute()
            )
            return result.get("files", [])

        try:
            listed = await asyncio.to_thread(_execute_list)
        except HttpError as exc:
            if exc.resp.status == 401:
                # Force the next acquisition to re-validate with Google.
                logger.info("Drive rejected the cached token for %s; invalidating it", tenant)
                await self._token_service.invalidate(tenant)
            raise

        files = [_resolve_shortcut(item) for item in listed]
        folders = [item for item in files if item["effectiveMimeType"] == FOLDER_MIME]
        docs = [item for item in files if item["effectiveMimeType"] == DOC_MIME]
        return folders + docs


__all__ = ["GoogleDriveClient"]
