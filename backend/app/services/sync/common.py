from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import List, Optional

from sqlalchemy.orm import Session

from app.services.jobs.errors import is_transient
from app.services.providers.base import FetchResult, ProviderClient
from app.services.storage.blob import BlobStorage
from app.services.storage.message_store import (
    message_exists,
    record_failed_message,
    store_message_if_new,
)


class IngestOutcome(str, Enum):
    STORED = "stored"
    EXISTING = "existing"
    FAILED = "failed"
    MISSING = "missing"


@dataclass
class SyncCounters:
    processed: int = 0
    stored: int = 0
    failed: int = 0

    def add(self, outcome: IngestOutcome) -> None:
        if outcome is IngestOutcome.FAILED:
            self.failed += 1
            return
        if outcome is IngestOutcome.MISSING:
            return
        self.processed += 1
        if outcome is IngestOutcome.STORED:
            self.stored += 1


async def ingest_fetch_result(
    db: Session,
    client: Optional[ProviderClient],
    storage: Optional[BlobStorage],
    account_id: str,
    result: FetchResult,
    *,
    folder_id: Optional[str] = None,
    folder_path: Optional[str] = None,
    errors: Optional[List[str]] = None,
) -> IngestOutcome:
    """Persist one fetched message, recording non-retryable failures.

    Transient failures (rate limit, timeout, 5xx) are re-raised so the job is
    retried as a whole; anything else only fails this message.
    """

    if result.error is not None:
        if is_transient(result.error):
            raise result.error
        record_failed_message(db, account_id, result.provider_id, str(result.error))
        if errors is not None:
            errors.append(f"{result.provider_id}: {result.error}")
        return IngestOutcome.FAILED

    message = result.message
    if message is None:
        # Removed at the provider between listing and fetching.
        return IngestOutcome.MISSING

    if message_exists(db, account_id, message.message_id):
        return IngestOutcome.EXISTING

    try:
        raw = message.raw
        if raw is None and client is not None:
            raw = await client.get_raw_message(message.provider_id, folder_path=folder_path)
        stored = store_message_if_new(db, storage, account_id, message, raw=raw, folder_id=folder_id)
    except Exception as exc:
        if is_transient(exc):
            raise
        record_failed_message(db, account_id, message.message_id, str(exc))
        if errors is not None:
            errors.append(f"{message.message_id}: {exc}")
        return IngestOutcome.FAILED
    return IngestOutcome.STORED if stored else IngestOutcome.EXISTING
