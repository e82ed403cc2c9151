from __future__ import annotations

import asyncio
import base64
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional, Sequence

import httpx
from sqlalchemy.orm import Session

from app.config import settings
from app.models_sqlalchemy.models import EmailAccount
from app.services.jobs.errors import AuthError, ProviderHTTPError, retry_async
from app.services.providers.base import (
    FetchResult,
    HistoryResult,
    MessagePage,
    ProviderClient,
    ProviderFolder,
    ProviderMessage,
)
from app.services.providers.mime import parse_date_header
from app.utils.datetime_utils import ensure_utc, utc_now
from app.utils.logger import logger


GOOGLE_TOKEN_ENDPOINT = "https://oauth2.googleapis.com/token"
GMAIL_API_BASE = "https://gmail.googleapis.com/gmail/v1/users/me"

# How many seconds before expiry we proactively refresh the access token.
_TOKEN_REFRESH_MARGIN_SECONDS = 60


def _decode_base64url(data: str) -> bytes:
    """Decode a base64url-encoded string from the Gmail API.

    Gmail uses URL-safe base64 without padding; this helper restores padding
    and decodes to raw bytes.
    """

    data = data.replace("-", "+").replace("_", "/")
    padding = "=" * (-len(data) % 4)
    return base64.b64decode(data + padding)


def _header_map(payload: Dict[str, Any]) -> Dict[str, str]:
    out: Dict[str, str] = {}
    for h in payload.get("headers") or []:
        name = (h.get("name") or "").strip()
        if not name:
            continue
        out[name.lower()] = (h.get("value") or "").strip()
    return out


def _walk_parts(payload: Dict[str, Any]):
    yield payload
    for child in payload.get("parts") or []:
        if isinstance(child, dict):
            yield from _walk_parts(child)


def normalize_gmail_message(data: Dict[str, Any]) -> ProviderMessage:
    """Turn a ``format=full`` Gmail message resource into a ProviderMessage.

    Labels map onto flags: no ``UNREAD`` means read, ``IMPORTANT`` and
    ``SPAM`` map directly, a message outside ``INBOX`` is archived and one in
    ``TRASH`` is deleted.
    """

    payload = data.get("payload") or {}
    headers = _header_map(payload)
    labels: List[str] = list(data.get("labelIds") or [])

    body_text: Optional[str] = None
    body_html: Optional[str] = None
    has_attachments = False
    for part in _walk_parts(payload):
        if part.get("filename"):
            has_attachments = True
            continue
        mime_type = part.get("mimeType") or ""
        data_field = (part.get("body") or {}).get("data")
        if not isinstance(data_field, str) or not data_field:
            continue
        decoded = _decode_base64url(data_field).decode("utf-8", errors="replace")
        # Prefer the first part of each type.
        if mime_type == "text/plain" and body_text is None:
            body_text = decoded
        elif mime_type == "text/html" and body_html is None:
            body_html = decoded

    sent_at: Optional[datetime] = None
    internal_date = data.get("internalDate")
    if internal_date:
        sent_at = datetime.fromtimestamp(int(internal_date) / 1000, tz=timezone.utc)
    else:
        sent_at = parse_date_header(headers.get("date"))

    provider_id = data["id"]
    return ProviderMessage(
        provider_id=provider_id,
        message_id=headers.get("message-id") or provider_id,
        thread_id=data.get("threadId"),
        subject=headers.get("subject"),
        from_address=headers.get("from") or "",
        to_addresses=headers.get("to") or "",
        cc_addresses=headers.get("cc") or None,
        bcc_addresses=headers.get("bcc") or None,
        reply_to=headers.get("reply-to") or None,
        date=sent_at,
        text_content=body_text,
        html_content=body_html,
        labels=labels,
        size=data.get("sizeEstimate"),
        has_attachments=has_attachments,
        is_read="UNREAD" not in labels,
        is_important="IMPORTANT" in labels,
        is_spam="SPAM" in labels,
        is_archived="INBOX" not in labels,
        is_deleted="TRASH" in labels,
    )


class GmailClient(ProviderClient):
    """Gmail REST API client for a single email account.

    Handles token refresh (when a refresh_token is available), retries
    transient request failures in place and exposes the provider capability
    set used by the sync engine. History and deletion are supported.
    """

    provider_name = "gmail"
    supports_history = True
    supports_delete = True

    def __init__(
        self,
        account: EmailAccount,
        *,
        db: Optional[Session] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.account = account
        self.db = db
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(
            timeout=httpx.Timeout(settings.PROVIDER_TIMEOUT_SECONDS, connect=10.0)
        )

    # ------------------------------------------------------------------
    # Token management
    # ------------------------------------------------------------------

    async def refresh_access_token_if_needed(self, *, force: bool = False) -> None:
        """Refresh access_token via refresh_token when close to expiry.

        Without a refresh_token this is a no-op and eventual 401s surface as
        auth failures. A rejected refresh raises :class:`AuthError`.
        """

        now = utc_now()
        expires_at = ensure_utc(self.account.token_expires_at)
        margin = timedelta(seconds=_TOKEN_REFRESH_MARGIN_SECONDS)
        if not force and self.account.access_token and (expires_at is None or expires_at > now + margin):
            return

        refresh_token = self.account.refresh_token
        if not refresh_token:
            logger.warning(
                "[gmail] account_id=%s has no refresh_token; cannot refresh access token",
                self.account.id,
            )
            return

        if not settings.GMAIL_CLIENT_ID or not settings.GMAIL_CLIENT_SECRET:
            raise AuthError("Gmail OAuth client is not configured")

        data = {
            "client_id": settings.GMAIL_CLIENT_ID,
            "client_secret": settings.GMAIL_CLIENT_SECRET,
            "refresh_token": refresh_token,
            "grant_type": "refresh_token",
        }
        logger.info("[gmail] Refreshing access token for account_id=%s", self.account.id)
        resp = await self._client.post(GOOGLE_TOKEN_ENDPOINT, data=data)

        if resp.status_code in (400, 401):
            logger.error("[gmail] Token refresh rejected: status=%s body=%s", resp.status_code, resp.text)
            raise AuthError(f"Gmail token refresh rejected: {resp.text[:200]}")
        if resp.status_code != 200:
            raise ProviderHTTPError(resp.status_code, resp.text, operation="token_refresh")

        payload = resp.json()
        access_token = payload.get("access_token")
        if not access_token:
            raise AuthError("Gmail token refresh response missing access_token")

        self.account.access_token = access_token
        expires_in = payload.get("expires_in")
        if isinstance(expires_in, (int, float)):
            self.account.token_expires_at = now + timedelta(seconds=int(expires_in))
        if self.db is not None:
            self.db.commit()

    def _auth_headers(self) -> Dict[str, str]:
        token = self.account.access_token
        if not token:
            raise AuthError("Gmail access token missing")
        return {"Authorization": f"Bearer {token}"}

    async def _send(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        await self.refresh_access_token_if_needed()
        url = f"{GMAIL_API_BASE}{path}"
        resp = await self._client.request(method, url, headers=self._auth_headers(), params=params)
        if resp.status_code == 401 and self.account.refresh_token:
            # Token revoked or expired early; refresh once and retry.
            await self.refresh_access_token_if_needed(force=True)
            resp = await self._client.request(method, url, headers=self._auth_headers(), params=params)
        if resp.status_code >= 400:
            raise ProviderHTTPError(resp.status_code, resp.text, operation=operation)
        if not resp.content:
            return {}
        return resp.json()

    async def _request(
        self,
        method: str,
        path: str,
        *,
        operation: str,
        params: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        return await retry_async(
            lambda: self._send(method, path, operation=operation, params=params),
            operation=f"gmail {operation}",
        )

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    async def list_folders(self) -> List[ProviderFolder]:
        data = await self._request("GET", "/labels", operation="labels")
        return [
            ProviderFolder(name=item["name"], path=item["name"], provider_folder_id=item.get("id"))
            for item in data.get("labels") or []
            if item.get("name")
        ]

    async def list_messages(
        self,
        *,
        page_size: int,
        page_token: Optional[str] = None,
        folder_id: Optional[str] = None,
    ) -> MessagePage:
        params: Dict[str, Any] = {"maxResults": page_size}
        if page_token:
            params["pageToken"] = page_token
        if folder_id:
            params["labelIds"] = folder_id
        data = await self._request("GET", "/messages", operation="list", params=params)
        ids = [item["id"] for item in data.get("messages") or [] if item.get("id")]
        return MessagePage(message_ids=ids, next_page_token=data.get("nextPageToken"))

    async def get_message(self, provider_id: str) -> Optional[ProviderMessage]:
        try:
            data = await self._request(
                "GET", f"/messages/{provider_id}", operation="get", params={"format": "full"}
            )
        except ProviderHTTPError as exc:
            if exc.status_code == 404:
                logger.info("[gmail] message %s no longer exists", provider_id)
                return None
            raise
        return normalize_gmail_message(data)

    async def get_messages_batch(self, provider_ids: Sequence[str]) -> List[FetchResult]:
        semaphore = asyncio.Semaphore(settings.GMAIL_FETCH_CONCURRENCY)

        async def _fetch(provider_id: str) -> FetchResult:
            async with semaphore:
                try:
                    return FetchResult(provider_id, message=await self.get_message(provider_id))
                except Exception as exc:
                    return FetchResult(provider_id, error=exc)

        return list(await asyncio.gather(*(_fetch(pid) for pid in provider_ids)))

    async def get_raw_message(self, provider_id: str, *, folder_path: Optional[str] = None) -> bytes:
        data = await self._request(
            "GET", f"/messages/{provider_id}", operation="get_raw", params={"format": "raw"}
        )
        return _decode_base64url(data.get("raw") or "")

    async def get_current_cursor(self) -> Optional[str]:
        data = await self._request("GET", "/profile", operation="profile")
        history_id = data.get("historyId")
        return str(history_id) if history_id is not None else None

    async def get_history_since(self, cursor: str) -> HistoryResult:
        result = HistoryResult(history_id=cursor)
        page_token: Optional[str] = None
        while True:
            params: Dict[str, Any] = {"startHistoryId": cursor}
            if page_token:
                params["pageToken"] = page_token
            data = await self._request("GET", "/history", operation="history", params=params)

            for record in data.get("history") or []:
                for item in record.get("messagesAdded") or []:
                    result.messages_added.append(item["message"]["id"])
                for item in record.get("messagesDeleted") or []:
                    result.messages_deleted.append(item["message"]["id"])
                for item in record.get("labelsAdded") or []:
                    result.labels_added.setdefault(item["message"]["id"], []).extend(item.get("labelIds") or [])
                for item in record.get("labelsRemoved") or []:
                    result.labels_removed.setdefault(item["message"]["id"], []).extend(item.get("labelIds") or [])

            if data.get("historyId"):
                result.history_id = str(data["historyId"])
            page_token = data.get("nextPageToken")
            if not page_token:
                break
        return result

    async def delete_message(self, provider_id: str, *, folder_path: Optional[str] = None) -> None:
        await self._request("POST", f"/messages/{provider_id}/trash", operation="trash")

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()
