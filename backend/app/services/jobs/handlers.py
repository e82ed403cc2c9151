from __future__ import annotations

from datetime import timedelta
from typing import Dict, cast

from sqlalchemy.orm import Session

from app.config import settings
from app.models.jobs import (
    AutoDeleteRunMetadata,
    FolderSyncPayload,
    IncrementalSyncPayload,
    MboxImportMetadata,
    MboxImportPayload,
    RunMetadata,
    SyncRunMetadata,
    TaskType,
)
from app.services.auto_delete import run_auto_delete
from app.services.jobs.base_handler import Handler, HandlerDeps, JobContext, run_job_handler
from app.services.jobs.errors import HistoryGapError, PermanentError
from app.services.jobs.queue import JobRecord
from app.services.jobs.scheduler import (
    next_sync_delay,
    schedule_auto_delete,
    schedule_full_sync,
    schedule_incremental_sync,
)
from app.services.mbox_import import run_mbox_import
from app.services.sync import run_folder_sync, run_full_sync, run_incremental_sync
from app.utils.logger import logger


async def handle_full_sync(ctx: JobContext) -> SyncRunMetadata:
    result = await run_full_sync(ctx.db, ctx.provider(), ctx.account, storage=ctx.storage)
    if not result.skipped:
        schedule_incremental_sync(
            ctx.db,
            ctx.queue,
            ctx.account.id,
            delay=timedelta(seconds=settings.FULL_SYNC_FOLLOWUP_DELAY_SECONDS),
            history_id=result.history_id,
        )
    return result


def _request_full_sync(ctx: JobContext, result: SyncRunMetadata) -> SyncRunMetadata:
    result.requires_full_sync = True
    if ctx.queue.find_leased(ctx.account.id, [TaskType.FULL_SYNC]):
        logger.info("[incremental-sync] full sync already running for account %s", ctx.account.id)
        result.full_sync_scheduled = False
        return result
    schedule_full_sync(ctx.queue, ctx.account.id)
    result.full_sync_scheduled = True
    return result


async def handle_incremental_sync(ctx: JobContext) -> SyncRunMetadata:
    payload = cast(IncrementalSyncPayload, ctx.payload)
    try:
        result = await run_incremental_sync(
            ctx.db,
            ctx.provider(),
            ctx.account,
            storage=ctx.storage,
            history_id=payload.history_id,
        )
    except HistoryGapError as exc:
        logger.warning("[incremental-sync] account %s: %s; falling back to full sync", ctx.account.id, exc)
        result = SyncRunMetadata(provider=ctx.account.provider, reason=str(exc), emails_processed=0)
        return _request_full_sync(ctx, result)

    if result.requires_full_sync:
        # The full sync schedules the next incremental sync when it completes.
        return _request_full_sync(ctx, result)
    if result.skipped:
        return result

    delay = next_sync_delay(result.emails_processed or 0)
    if schedule_incremental_sync(ctx.db, ctx.queue, ctx.account.id, delay=delay, history_id=result.history_id):
        result.next_sync_delay_seconds = int(delay.total_seconds())
    schedule_auto_delete(ctx.db, ctx.queue, ctx.account.id)
    return result


async def handle_folder_sync(ctx: JobContext) -> SyncRunMetadata:
    payload = cast(FolderSyncPayload, ctx.payload)
    return await run_folder_sync(
        ctx.db,
        ctx.provider(),
        ctx.account,
        payload.folder_id,
        payload.folder_path,
        storage=ctx.storage,
    )


async def handle_auto_delete(ctx: JobContext) -> AutoDeleteRunMetadata:
    return await run_auto_delete(ctx.db, ctx.account, client=ctx.provider())


async def handle_mbox_import(ctx: JobContext) -> MboxImportMetadata:
    payload = cast(MboxImportPayload, ctx.payload)
    return await run_mbox_import(ctx.db, ctx.account, payload.file_path, storage=ctx.storage)


TASK_HANDLERS: Dict[TaskType, Handler] = {
    TaskType.FULL_SYNC: handle_full_sync,
    TaskType.INCREMENTAL_SYNC: handle_incremental_sync,
    TaskType.FOLDER_SYNC: handle_folder_sync,
    TaskType.AUTO_DELETE: handle_auto_delete,
    TaskType.MBOX_IMPORT: handle_mbox_import,
}

_unhandled = set(TaskType) - set(TASK_HANDLERS)
if _unhandled:
    raise RuntimeError(f"task types without a handler: {sorted(t.value for t in _unhandled)}")


async def execute_job(db: Session, job: JobRecord, deps: HandlerDeps) -> RunMetadata:
    """Dispatch a leased job to its handler through the shared wrapper."""

    try:
        task_type = TaskType(job.task_type)
    except ValueError as exc:
        raise PermanentError(f"Unknown task type {job.task_type!r}") from exc
    return await run_job_handler(TASK_HANDLERS[task_type], db=db, job=job, deps=deps)
