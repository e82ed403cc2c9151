from __future__ import annotations

import os
from collections import deque
from typing import Deque, Optional

from sqlalchemy.orm import Session

from app.models.jobs import MboxImportMetadata
from app.models_sqlalchemy.models import EmailAccount
from app.services.jobs.errors import PermanentError
from app.services.providers.mbox_parser import MboxParser
from app.services.storage.blob import BlobStorage
from app.services.sync.common import IngestOutcome, ingest_fetch_result
from app.utils.logger import logger


MAX_REPORTED_ERRORS = 10


async def run_mbox_import(
    db: Session,
    account: EmailAccount,
    file_path: str,
    *,
    storage: Optional[BlobStorage] = None,
) -> MboxImportMetadata:
    """Import every message of a local mbox file into ``account``.

    Already stored messages are skipped, so re-running an import is safe.
    The source file is removed only when at least one message was imported;
    a file that yielded nothing is kept for inspection.
    """

    if not os.path.exists(file_path):
        raise PermanentError(f"mbox file not found: {file_path}")
    parser = MboxParser(file_path)
    parser.validate()

    processed = failed = skipped = 0
    errors: Deque[str] = deque(maxlen=MAX_REPORTED_ERRORS)
    collected: list = []

    for fetched in parser.iter_messages():
        collected.clear()
        outcome = await ingest_fetch_result(db, None, storage, account.id, fetched, errors=collected)
        if outcome is IngestOutcome.STORED:
            processed += 1
        elif outcome is IngestOutcome.EXISTING:
            skipped += 1
        elif outcome is IngestOutcome.FAILED:
            failed += 1
            errors.extend(collected)

        if (processed + skipped + failed) % 500 == 0:
            logger.info(
                "[mbox] account=%s progress processed=%s skipped=%s failed=%s",
                account.id,
                processed,
                skipped,
                failed,
            )

    file_deleted = False
    # Already-archived messages count as handled; only an all-failed file is kept.
    if processed + skipped >= 1:
        os.remove(file_path)
        file_deleted = True

    logger.info(
        "[mbox] import finished account=%s file=%s processed=%s skipped=%s failed=%s deleted=%s",
        account.id,
        file_path,
        processed,
        skipped,
        failed,
        file_deleted,
    )
    return MboxImportMetadata(
        file_path=file_path,
        processed=processed,
        failed=failed,
        skipped_existing=skipped,
        errors=list(errors),
        file_deleted=file_deleted,
    )
