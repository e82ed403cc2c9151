from __future__ import annotations

import abc
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, List, Optional, Sequence

from app.services.jobs.errors import ProviderNotSupportedError


@dataclass
class ProviderFolder:
    name: str
    path: str
    provider_folder_id: Optional[str] = None


@dataclass
class ProviderAttachment:
    filename: str
    content_type: str
    content: bytes

    @property
    def size(self) -> int:
        return len(self.content)


@dataclass
class ProviderMessage:
    """Provider-neutral message metadata used by the sync engine."""

    provider_id: str
    message_id: str
    thread_id: Optional[str] = None
    subject: Optional[str] = None
    from_address: Optional[str] = None
    to_addresses: Optional[str] = None
    cc_addresses: Optional[str] = None
    bcc_addresses: Optional[str] = None
    reply_to: Optional[str] = None
    date: Optional[datetime] = None
    text_content: Optional[str] = None
    html_content: Optional[str] = None
    labels: List[str] = field(default_factory=list)
    size: Optional[int] = None
    has_attachments: bool = False
    attachments: List[ProviderAttachment] = field(default_factory=list)
    is_read: bool = False
    is_important: bool = False
    is_spam: bool = False
    is_archived: bool = False
    is_deleted: bool = False
    # Raw RFC822 source when the transport already returned it (IMAP, mbox).
    raw: Optional[bytes] = field(default=None, repr=False)


@dataclass
class MessagePage:
    message_ids: List[str]
    next_page_token: Optional[str] = None


@dataclass
class FetchResult:
    """Outcome of fetching one message inside a batch."""

    provider_id: str
    message: Optional[ProviderMessage] = None
    error: Optional[BaseException] = None


@dataclass
class HistoryResult:
    history_id: str
    messages_added: List[str] = field(default_factory=list)
    messages_deleted: List[str] = field(default_factory=list)
    # provider message id -> labels added/removed by the change
    labels_added: Dict[str, List[str]] = field(default_factory=dict)
    labels_removed: Dict[str, List[str]] = field(default_factory=dict)


class ProviderClient(abc.ABC):
    """Capabilities the sync engine needs from a mail provider.

    Optional capabilities (history, delete, paged listing, folder listing)
    raise :class:`ProviderNotSupportedError` unless the implementation
    overrides them; check ``supports_history`` / ``supports_delete`` first.
    """

    provider_name: str = "unknown"
    supports_history: bool = False
    supports_delete: bool = False

    @abc.abstractmethod
    async def list_folders(self) -> List[ProviderFolder]:
        ...

    @abc.abstractmethod
    async def get_message(self, provider_id: str) -> Optional[ProviderMessage]:
        ...

    @abc.abstractmethod
    async def get_raw_message(self, provider_id: str, *, folder_path: Optional[str] = None) -> bytes:
        ...

    async def list_messages(
        self,
        *,
        page_size: int,
        page_token: Optional[str] = None,
        folder_id: Optional[str] = None,
    ) -> MessagePage:
        raise ProviderNotSupportedError(f"{self.provider_name} does not support paged message listing")

    async def get_messages_batch(self, provider_ids: Sequence[str]) -> List[FetchResult]:
        results: List[FetchResult] = []
        for provider_id in provider_ids:
            try:
                results.append(FetchResult(provider_id, message=await self.get_message(provider_id)))
            except Exception as exc:
                results.append(FetchResult(provider_id, error=exc))
        return results

    async def get_current_cursor(self) -> Optional[str]:
        return None

    async def get_history_since(self, cursor: str) -> HistoryResult:
        raise ProviderNotSupportedError(f"{self.provider_name} does not support history sync")

    async def list_folder_messages(
        self,
        folder_path: str,
        *,
        since_uid: Optional[int] = None,
        since: Optional[datetime] = None,
        limit: int = 100,
    ) -> List[FetchResult]:
        raise ProviderNotSupportedError(f"{self.provider_name} does not support folder listing")

    async def delete_message(self, provider_id: str, *, folder_path: Optional[str] = None) -> None:
        raise ProviderNotSupportedError(f"Deletion is not supported for {self.provider_name} accounts")

    async def close(self) -> None:
        return None
