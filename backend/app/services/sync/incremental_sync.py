from __future__ import annotations

from datetime import timedelta
from typing import Dict, List, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.models.jobs import SyncRunMetadata
from app.models_sqlalchemy.models import EmailAccount
from app.services.jobs.errors import ErrorClass, HistoryGapError, ProviderHTTPError, classify_error
from app.services.providers.base import FetchResult, HistoryResult, ProviderClient
from app.services.storage.blob import BlobStorage
from app.services.storage.message_store import (
    apply_flag_updates,
    apply_label_changes,
    mark_deleted,
    message_exists,
    message_exists_by_provider_id,
)
from app.services.sync.common import IngestOutcome, SyncCounters, ingest_fetch_result
from app.services.sync.sync_state import get_sync_cursor, list_folders, set_folder_high_water_mark, set_sync_cursor
from app.utils.datetime_utils import utc_now
from app.utils.logger import logger


async def run_incremental_sync(
    db: Session,
    client: Optional[ProviderClient],
    account: EmailAccount,
    *,
    storage: Optional[BlobStorage] = None,
    history_id: Optional[str] = None,
) -> SyncRunMetadata:
    """Apply remote changes since the last sync.

    Returns ``requires_full_sync=True`` when there is no cursor to start from.
    Raises :class:`HistoryGapError` when the provider no longer has history
    for the stored cursor.
    """

    provider = (account.provider or "").lower()
    if provider == "mbox" or client is None:
        return SyncRunMetadata(provider=provider, skipped=True, reason="mbox accounts have no remote mailbox")

    if client.supports_history:
        return await _run_history_sync(db, client, account, storage=storage, history_id=history_id)
    return await _run_imap_incremental_sync(db, client, account, storage=storage)


async def _fetch_history(client: ProviderClient, cursor: str) -> HistoryResult:
    try:
        return await client.get_history_since(cursor)
    except ProviderHTTPError as exc:
        if classify_error(exc) is ErrorClass.HISTORY_GAP:
            raise HistoryGapError(f"History cursor {cursor} is no longer available") from exc
        raise


def _unique(ids: List[str]) -> List[str]:
    return list(dict.fromkeys(ids))


async def _run_history_sync(
    db: Session,
    client: ProviderClient,
    account: EmailAccount,
    *,
    storage: Optional[BlobStorage],
    history_id: Optional[str],
) -> SyncRunMetadata:
    cursor = get_sync_cursor(db, account.id) or history_id
    if not cursor:
        logger.info("[incremental-sync] account=%s has no history cursor; full sync required", account.id)
        return SyncRunMetadata(provider=client.provider_name, requires_full_sync=True, emails_processed=0)

    history = await _fetch_history(client, cursor)
    counters = SyncCounters()

    deleted_ids = set(history.messages_deleted)
    to_fetch = [
        pid
        for pid in _unique(history.messages_added)
        if pid not in deleted_ids and not message_exists_by_provider_id(db, account.id, pid)
    ]
    if to_fetch:
        for fetched in await client.get_messages_batch(to_fetch):
            outcome = await ingest_fetch_result(db, client, storage, account.id, fetched)
            if outcome is IngestOutcome.STORED:
                counters.stored += 1
            elif outcome is IngestOutcome.FAILED:
                counters.failed += 1

    deleted = mark_deleted(db, account.id, deleted_ids)

    label_changes = 0
    changed_ids: Dict[str, None] = dict.fromkeys(list(history.labels_added) + list(history.labels_removed))
    for pid in changed_ids:
        if pid in deleted_ids:
            continue
        if apply_label_changes(
            db,
            account.id,
            pid,
            added=history.labels_added.get(pid),
            removed=history.labels_removed.get(pid),
        ):
            label_changes += 1

    set_sync_cursor(db, account.id, history.history_id)
    counters.processed = counters.stored + deleted + label_changes

    logger.info(
        "[incremental-sync] account=%s added=%s deleted=%s label_changes=%s failed=%s cursor=%s",
        account.id,
        counters.stored,
        deleted,
        label_changes,
        counters.failed,
        history.history_id,
    )
    return SyncRunMetadata(
        provider=client.provider_name,
        emails_processed=counters.processed,
        emails_failed=counters.failed,
        history_id=history.history_id,
    )


def _flag_updates(fetched: FetchResult) -> Dict[str, bool]:
    message = fetched.message
    return {
        "is_read": message.is_read,
        "is_important": message.is_important,
        "is_deleted": message.is_deleted,
    }


async def _run_imap_incremental_sync(
    db: Session,
    client: ProviderClient,
    account: EmailAccount,
    *,
    storage: Optional[BlobStorage],
) -> SyncRunMetadata:
    folders = list_folders(db, account.id)
    if not folders or get_sync_cursor(db, account.id) is None:
        logger.info("[incremental-sync] account=%s has not completed a full sync", account.id)
        return SyncRunMetadata(provider=client.provider_name, requires_full_sync=True, emails_processed=0)

    since = utc_now() - timedelta(days=settings.IMAP_INCREMENTAL_SYNC_DAYS)
    counters = SyncCounters()
    flag_updates = 0

    for folder in folders:
        since_uid: Optional[int] = None
        while True:
            results = await client.list_folder_messages(
                folder.path,
                since_uid=since_uid,
                since=since if since_uid is None else None,
                limit=settings.IMAP_BATCH_SIZE,
            )
            if not results:
                break
            for fetched in results:
                if fetched.message is not None and message_exists(db, account.id, fetched.message.message_id):
                    apply_flag_updates(db, account.id, _flag_updates(fetched), message_id=fetched.message.message_id)
                    flag_updates += 1
                    continue
                outcome = await ingest_fetch_result(
                    db,
                    client,
                    storage,
                    account.id,
                    fetched,
                    folder_id=folder.id,
                    folder_path=folder.path,
                )
                if outcome is IngestOutcome.STORED:
                    counters.stored += 1
                elif outcome is IngestOutcome.FAILED:
                    counters.failed += 1
            since_uid = max(int(r.provider_id) for r in results)
            set_folder_high_water_mark(db, folder, since_uid)
            if len(results) < settings.IMAP_BATCH_SIZE:
                break

    set_sync_cursor(db, account.id, utc_now().isoformat())
    counters.processed = counters.stored
    logger.info(
        "[incremental-sync] IMAP account=%s folders=%s new=%s flag_updates=%s failed=%s",
        account.id,
        len(folders),
        counters.stored,
        flag_updates,
        counters.failed,
    )
    return SyncRunMetadata(
        provider=client.provider_name,
        emails_processed=counters.processed,
        emails_failed=counters.failed,
        folders_synced=len(folders),
    )
