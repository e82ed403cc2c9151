"""Generic IMAP provider on top of the blocking stdlib ``imaplib``.

Each blocking IMAP round-trip runs in a worker thread via
``asyncio.to_thread`` so the event loop stays responsive. Message ids are
folder-relative UIDs, so folder-scoped calls take a ``folder_path``.
"""

from __future__ import annotations

import asyncio
import imaplib
import re
from datetime import datetime
from typing import List, Optional, Tuple

from app.config import settings
from app.models_sqlalchemy.models import EmailAccount
from app.services.jobs.errors import AuthError, PermanentError
from app.services.providers.base import FetchResult, ProviderClient, ProviderFolder, ProviderMessage
from app.services.providers.mime import parse_rfc822
from app.utils.logger import logger


_LIST_LINE = re.compile(r'^\((?P<flags>[^)]*)\) (?P<delimiter>"[^"]*"|NIL) (?P<name>.+)$')
_FLAGS = re.compile(rb"FLAGS \(([^)]*)\)")
DEFAULT_FOLDER = "INBOX"


def _quote_folder(name: str) -> str:
    escaped = name.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def parse_list_line(line: bytes) -> Optional[Tuple[List[str], str]]:
    """Parse one LIST response line into ``(flags, folder name)``."""

    text = line.decode("utf-8", errors="replace") if isinstance(line, bytes) else str(line)
    match = _LIST_LINE.match(text.strip())
    if not match:
        return None
    name = match.group("name").strip()
    if name.startswith('"') and name.endswith('"'):
        name = name[1:-1].replace('\\"', '"').replace("\\\\", "\\")
    return match.group("flags").split(), name


def _parse_fetch(data) -> Optional[Tuple[List[str], bytes]]:
    for item in data or []:
        if isinstance(item, tuple) and len(item) >= 2:
            header, raw = item[0], item[1]
            match = _FLAGS.search(header or b"")
            flags = match.group(1).decode().split() if match else []
            return flags, raw
    return None


class ImapClient(ProviderClient):
    """IMAP provider: folder listing, UID-based fetch and move-to-trash delete.

    There is no history API; incremental sync walks folders by UID instead.
    """

    provider_name = "imap"
    supports_history = False
    supports_delete = True

    def __init__(self, account: EmailAccount) -> None:
        self.account = account
        self._conn: Optional[imaplib.IMAP4] = None

    # ------------------------------------------------------------------
    # Blocking helpers (run in a thread)
    # ------------------------------------------------------------------

    def _connect(self) -> imaplib.IMAP4:
        if self._conn is not None:
            return self._conn
        host = self.account.imap_host
        if not host:
            raise PermanentError(f"IMAP host not configured for account {self.account.id}")
        port = self.account.imap_port or (993 if self.account.imap_secure else 143)
        timeout = settings.PROVIDER_TIMEOUT_SECONDS
        if self.account.imap_secure:
            conn = imaplib.IMAP4_SSL(host, port, timeout=timeout)
        else:
            conn = imaplib.IMAP4(host, port, timeout=timeout)
        try:
            conn.login(self.account.imap_user or self.account.email, self.account.imap_password or "")
        except imaplib.IMAP4.error as exc:
            raise AuthError(f"IMAP login failed for {self.account.email}: {exc}") from exc
        logger.info("[imap] connected account_id=%s host=%s", self.account.id, host)
        self._conn = conn
        return conn

    def _select(self, conn: imaplib.IMAP4, folder_path: str, *, readonly: bool) -> None:
        status, _ = conn.select(_quote_folder(folder_path), readonly=readonly)
        if status != "OK":
            raise PermanentError(f"IMAP folder {folder_path!r} could not be selected")

    def _list_folders_sync(self) -> List[Tuple[List[str], str]]:
        conn = self._connect()
        status, lines = conn.list()
        if status != "OK":
            raise imaplib.IMAP4.error("IMAP LIST failed")
        return [parsed for parsed in (parse_list_line(line) for line in lines or []) if parsed]

    def _search_uids(
        self,
        conn: imaplib.IMAP4,
        *,
        since_uid: Optional[int],
        since: Optional[datetime],
    ) -> List[int]:
        if since_uid is not None:
            criteria = f"UID {since_uid + 1}:*"
        elif since is not None:
            criteria = f"SINCE {since.strftime('%d-%b-%Y')}"
        else:
            criteria = "ALL"
        status, data = conn.uid("SEARCH", None, criteria)
        if status != "OK" or not data or not data[0]:
            return []
        uids = sorted(int(uid) for uid in data[0].split())
        if since_uid is not None:
            # "n:*" always matches the highest UID even when it is below n.
            uids = [uid for uid in uids if uid > since_uid]
        return uids

    def _fetch_uid(self, conn: imaplib.IMAP4, uid: int) -> Tuple[List[str], bytes]:
        status, data = conn.uid("FETCH", str(uid), "(UID FLAGS BODY.PEEK[])")
        parsed = _parse_fetch(data) if status == "OK" else None
        if parsed is None:
            raise PermanentError(f"IMAP message UID {uid} could not be fetched")
        return parsed

    def _list_folder_messages_sync(
        self,
        folder_path: str,
        since_uid: Optional[int],
        since: Optional[datetime],
        limit: int,
    ) -> List[FetchResult]:
        conn = self._connect()
        self._select(conn, folder_path, readonly=True)
        # Oldest first so a UID cursor only ever moves forward.
        uids = self._search_uids(conn, since_uid=since_uid, since=since)[:limit]
        results: List[FetchResult] = []
        for uid in uids:
            try:
                flags, raw = self._fetch_uid(conn, uid)
                results.append(FetchResult(str(uid), message=parse_rfc822(raw, provider_id=str(uid), flags=flags)))
            except (PermanentError, ValueError) as exc:
                results.append(FetchResult(str(uid), error=exc))
        return results

    def _get_raw_sync(self, uid: str, folder_path: str) -> bytes:
        conn = self._connect()
        self._select(conn, folder_path, readonly=True)
        _, raw = self._fetch_uid(conn, int(uid))
        return raw

    def _trash_folder(self) -> Optional[str]:
        folders = self._list_folders_sync()
        for flags, name in folders:
            if "\\Trash" in flags:
                return name
        for _, name in folders:
            if name.lower() in ("trash", "deleted items", "deleted messages"):
                return name
        return None

    def _delete_sync(self, uid: str, folder_path: str) -> None:
        trash = self._trash_folder()
        conn = self._connect()
        self._select(conn, folder_path, readonly=False)
        if trash and trash != folder_path:
            status, _ = conn.uid("COPY", uid, _quote_folder(trash))
            if status != "OK":
                raise imaplib.IMAP4.error(f"IMAP COPY of UID {uid} to {trash} failed")
        conn.uid("STORE", uid, "+FLAGS", "(\\Deleted)")
        conn.expunge()

    def _close_sync(self) -> None:
        if self._conn is None:
            return
        try:
            self._conn.logout()
        except (imaplib.IMAP4.error, OSError) as exc:
            logger.warning("[imap] logout failed for account_id=%s: %s", self.account.id, exc)
        finally:
            self._conn = None

    # ------------------------------------------------------------------
    # Capabilities
    # ------------------------------------------------------------------

    async def list_folders(self) -> List[ProviderFolder]:
        folders = await asyncio.to_thread(self._list_folders_sync)
        return [
            ProviderFolder(name=name.rsplit("/", 1)[-1], path=name)
            for flags, name in folders
            if "\\Noselect" not in flags
        ]

    async def list_folder_messages(
        self,
        folder_path: str,
        *,
        since_uid: Optional[int] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[FetchResult]:
        return await asyncio.to_thread(self._list_folder_messages_sync, folder_path, since_uid, since, limit)

    async def get_message(self, provider_id: str) -> Optional[ProviderMessage]:
        raw = await self.get_raw_message(provider_id)
        return parse_rfc822(raw, provider_id=provider_id)

    async def get_raw_message(self, provider_id: str, *, folder_path: Optional[str] = None) -> bytes:
        return await asyncio.to_thread(self._get_raw_sync, provider_id, folder_path or DEFAULT_FOLDER)

    async def delete_message(self, provider_id: str, *, folder_path: Optional[str] = None) -> None:
        await asyncio.to_thread(self._delete_sync, provider_id, folder_path or DEFAULT_FOLDER)

    async def close(self) -> None:
        await asyncio.to_thread(self._close_sync)
