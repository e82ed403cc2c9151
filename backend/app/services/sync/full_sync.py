"""Full mailbox sync with checkpoint/resume.

Gmail pages through the whole mailbox and checkpoints the next page token
into the ``full_sync`` ledger row, so a retried job continues where the last
attempt stopped instead of starting over. IMAP walks the standard folders by
UID; each folder's high-water mark doubles as its resume point.
"""

from __future__ import annotations

from datetime import timedelta
from typing import List, Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.models.jobs import FullSyncMetadata, JobType, SyncCheckpoint, SyncRunMetadata
from app.models_sqlalchemy.models import EmailAccount, Folder
from app.services.jobs import status
from app.services.providers.base import ProviderClient
from app.services.storage.blob import BlobStorage
from app.services.sync.common import SyncCounters, ingest_fetch_result
from app.services.sync.sync_state import set_folder_high_water_mark, set_sync_cursor, upsert_folders
from app.utils.datetime_utils import utc_now
from app.utils.logger import logger


IMAP_FULL_SYNC_FOLDERS = ("inbox", "sent", "drafts")


async def run_full_sync(
    db: Session,
    client: Optional[ProviderClient],
    account: EmailAccount,
    *,
    storage: Optional[BlobStorage] = None,
) -> SyncRunMetadata:
    provider = (account.provider or "").lower()
    if provider == "mbox" or client is None:
        logger.info("[full-sync] account %s has no remote mailbox; skipping", account.id)
        return SyncRunMetadata(provider=provider, skipped=True, reason="mbox accounts have no remote mailbox")

    # Does not touch metadata, so an existing checkpoint survives.
    status.record_start(db, account.id, JobType.FULL_SYNC)

    if client.supports_history:
        result = await _run_paged_full_sync(db, client, account, storage=storage)
    else:
        result = await _run_imap_full_sync(db, client, account, storage=storage)

    status.record_success(
        db,
        account.id,
        JobType.FULL_SYNC,
        FullSyncMetadata(completed_at=utc_now(), emails_processed=result.emails_processed),
    )
    return result


async def _run_paged_full_sync(
    db: Session,
    client: ProviderClient,
    account: EmailAccount,
    *,
    storage: Optional[BlobStorage],
) -> SyncRunMetadata:
    checkpoint = status.get_checkpoint(db, account.id)
    if checkpoint is not None:
        logger.info(
            "[full-sync] resuming account=%s from checkpoint processed=%s",
            account.id,
            checkpoint.processed_count,
        )
    else:
        checkpoint = SyncCheckpoint(started_at=utc_now())

    # Capture the cursor before paginating so changes made during the sync
    # are replayed by the first incremental sync.
    if checkpoint.history_id is None:
        checkpoint.history_id = await client.get_current_cursor()

    folders = upsert_folders(db, account.id, await client.list_folders())

    counters = SyncCounters(processed=checkpoint.processed_count)
    page_token = checkpoint.page_token
    since_checkpoint = 0

    while True:
        page = await client.list_messages(page_size=settings.GMAIL_BATCH_SIZE, page_token=page_token)
        if page.message_ids:
            for fetched in await client.get_messages_batch(page.message_ids):
                counters.add(await ingest_fetch_result(db, client, storage, account.id, fetched))
                since_checkpoint += 1
                checkpoint.last_processed_message_id = fetched.provider_id

        page_token = page.next_page_token
        if not page_token:
            break
        if since_checkpoint >= settings.SYNC_CHECKPOINT_INTERVAL:
            checkpoint.page_token = page_token
            checkpoint.processed_count = counters.processed
            status.save_checkpoint(db, account.id, checkpoint)
            since_checkpoint = 0

    status.clear_checkpoint(db, account.id)
    if checkpoint.history_id:
        set_sync_cursor(db, account.id, checkpoint.history_id)

    logger.info(
        "[full-sync] completed account=%s processed=%s stored=%s failed=%s",
        account.id,
        counters.processed,
        counters.stored,
        counters.failed,
    )
    return SyncRunMetadata(
        provider=client.provider_name,
        emails_processed=counters.processed,
        emails_failed=counters.failed,
        folders_synced=len(folders),
        history_id=checkpoint.history_id,
    )


def _imap_full_sync_targets(folders: List[Folder]) -> List[Folder]:
    return [f for f in folders if f.name.lower() in IMAP_FULL_SYNC_FOLDERS or f.path.lower() in IMAP_FULL_SYNC_FOLDERS]


async def sync_imap_folder(
    db: Session,
    client: ProviderClient,
    account_id: str,
    folder: Folder,
    *,
    storage: Optional[BlobStorage],
    counters: SyncCounters,
    since_days: Optional[int] = None,
    max_batches: Optional[int] = None,
) -> None:
    """Fetch messages above the folder's UID high-water mark in batches.

    Without a stored high-water mark the first batch is limited to the last
    ``since_days`` days.
    """

    since = utc_now() - timedelta(days=since_days) if since_days else None
    batches = 0
    while max_batches is None or batches < max_batches:
        since_uid = int(folder.last_sync_id) if folder.last_sync_id and folder.last_sync_id.isdigit() else None
        results = await client.list_folder_messages(
            folder.path,
            since_uid=since_uid,
            since=since if since_uid is None else None,
            limit=settings.IMAP_BATCH_SIZE,
        )
        if not results:
            break
        for fetched in results:
            counters.add(
                await ingest_fetch_result(
                    db,
                    client,
                    storage,
                    account_id,
                    fetched,
                    folder_id=folder.id,
                    folder_path=folder.path,
                )
            )
        set_folder_high_water_mark(db, folder, max(int(r.provider_id) for r in results))
        batches += 1
        if len(results) < settings.IMAP_BATCH_SIZE:
            break


async def _run_imap_full_sync(
    db: Session,
    client: ProviderClient,
    account: EmailAccount,
    *,
    storage: Optional[BlobStorage],
) -> SyncRunMetadata:
    folders = upsert_folders(db, account.id, await client.list_folders())
    targets = _imap_full_sync_targets(folders)
    counters = SyncCounters()

    for folder in targets:
        logger.info("[full-sync] account=%s syncing folder %s", account.id, folder.path)
        await sync_imap_folder(
            db,
            client,
            account.id,
            folder,
            storage=storage,
            counters=counters,
            since_days=settings.IMAP_DEFAULT_SYNC_DAYS,
        )

    completed_at = utc_now().isoformat()
    set_sync_cursor(db, account.id, completed_at)
    logger.info(
        "[full-sync] completed IMAP account=%s folders=%s processed=%s failed=%s",
        account.id,
        len(targets),
        counters.processed,
        counters.failed,
    )
    return SyncRunMetadata(
        provider=client.provider_name,
        emails_processed=counters.processed,
        emails_failed=counters.failed,
        folders_synced=len(targets),
    )
