from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Session

from app.config import settings
from app.models.jobs import SyncRunMetadata
from app.models_sqlalchemy.models import EmailAccount
from app.services.jobs.errors import PermanentError
from app.services.providers.base import ProviderClient
from app.services.storage.blob import BlobStorage
from app.services.sync.common import SyncCounters, ingest_fetch_result
from app.services.sync.full_sync import sync_imap_folder
from app.services.sync.sync_state import get_folder
from app.utils.logger import logger


async def run_folder_sync(
    db: Session,
    client: Optional[ProviderClient],
    account: EmailAccount,
    folder_id: str,
    folder_path: str,
    *,
    storage: Optional[BlobStorage] = None,
) -> SyncRunMetadata:
    """Sync a single folder: one page of a Gmail label, or one UID batch on IMAP."""

    if client is None:
        return SyncRunMetadata(folder_path=folder_path, skipped=True, reason="mbox accounts have no remote mailbox")

    folder = get_folder(db, account.id, folder_id)
    if folder is None:
        raise PermanentError(f"Folder {folder_id} ({folder_path}) not found for account {account.id}")

    counters = SyncCounters()
    if client.supports_history:
        page = await client.list_messages(
            page_size=settings.GMAIL_BATCH_SIZE,
            folder_id=folder.provider_folder_id or folder.path,
        )
        if page.message_ids:
            for fetched in await client.get_messages_batch(page.message_ids):
                counters.add(await ingest_fetch_result(db, client, storage, account.id, fetched, folder_id=folder.id))
    else:
        await sync_imap_folder(
            db,
            client,
            account.id,
            folder,
            storage=storage,
            counters=counters,
            since_days=settings.IMAP_DEFAULT_SYNC_DAYS,
            max_batches=1,
        )

    logger.info(
        "[folder-sync] account=%s folder=%s processed=%s stored=%s failed=%s",
        account.id,
        folder.path,
        counters.processed,
        counters.stored,
        counters.failed,
    )
    return SyncRunMetadata(
        provider=client.provider_name,
        folder_path=folder.path,
        emails_processed=counters.processed,
        emails_failed=counters.failed,
        folders_synced=1,
    )
