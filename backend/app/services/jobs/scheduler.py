"""Scheduling helpers: the only place that decides task keys, priorities,
run times and attempt limits for each task type.

Every helper takes the queue explicitly; none of them reach for a global
queue client.
"""

from __future__ import annotations

from datetime import datetime, timedelta, timezone
from typing import Dict, Optional

from apscheduler.triggers.cron import CronTrigger
from sqlalchemy.orm import Session

from app.config import settings
from app.models.jobs import (
    AutoDeleteMode,
    AutoDeletePayload,
    FolderSyncPayload,
    FullSyncPayload,
    IncrementalSyncPayload,
    MboxImportPayload,
    TaskType,
)
from app.services.account_settings import get_or_create_settings
from app.services.jobs.queue import JobQueue, JobRecord
from app.utils.datetime_utils import utc_now
from app.utils.logger import logger


# Higher value runs first.
TASK_PRIORITIES: Dict[TaskType, int] = {
    TaskType.FULL_SYNC: 10,
    TaskType.MBOX_IMPORT: 5,
    TaskType.INCREMENTAL_SYNC: 0,
    TaskType.FOLDER_SYNC: 0,
    TaskType.AUTO_DELETE: -1,
}

TASK_MAX_ATTEMPTS: Dict[TaskType, int] = {
    TaskType.FULL_SYNC: 3,
    TaskType.INCREMENTAL_SYNC: 5,
    TaskType.FOLDER_SYNC: 3,
    TaskType.AUTO_DELETE: 3,
    TaskType.MBOX_IMPORT: 3,
}

MANUAL_SYNC_FREQUENCY = "manual"
MIN_CRON_DELAY = timedelta(minutes=1)


def job_key(task_type: TaskType, account_id: str, suffix: Optional[str] = None) -> str:
    """Dedup key: ``email:<task_type>:<account_id>[:<suffix>]``."""

    parts = [f"email:{TaskType(task_type).value}", account_id]
    if suffix:
        parts.append(suffix)
    return ":".join(parts)


def cron_delay(sync_frequency: Optional[str], *, now: Optional[datetime] = None) -> Optional[timedelta]:
    """Time until the next fire of a crontab expression, at least one minute.

    Returns None for a missing, ``manual`` or unparsable expression.
    """

    if not sync_frequency or sync_frequency == MANUAL_SYNC_FREQUENCY:
        return None
    now = now or utc_now()
    try:
        trigger = CronTrigger.from_crontab(sync_frequency, timezone=timezone.utc)
    except ValueError as exc:
        logger.error("[scheduler] invalid cron expression %r: %s", sync_frequency, exc)
        return None
    next_fire = trigger.get_next_fire_time(None, now)
    if next_fire is None:
        return None
    return max(next_fire - now, MIN_CRON_DELAY)


def next_sync_delay(emails_processed: int) -> timedelta:
    """Adaptive incremental polling: busy mailboxes are polled sooner."""

    if emails_processed > settings.ACTIVE_SYNC_THRESHOLD:
        return timedelta(seconds=settings.MIN_SYNC_DELAY_SECONDS)
    if emails_processed > 0:
        return timedelta(seconds=settings.DEFAULT_SYNC_DELAY_SECONDS)
    return timedelta(seconds=settings.MAX_SYNC_DELAY_SECONDS)


def schedule_full_sync(
    queue: JobQueue,
    account_id: str,
    *,
    run_at: Optional[datetime] = None,
    priority: Optional[int] = None,
) -> JobRecord:
    return queue.enqueue(
        TaskType.FULL_SYNC,
        FullSyncPayload(account_id=account_id).model_dump(),
        run_at=run_at or utc_now(),
        priority=TASK_PRIORITIES[TaskType.FULL_SYNC] if priority is None else priority,
        key=job_key(TaskType.FULL_SYNC, account_id),
        max_attempts=TASK_MAX_ATTEMPTS[TaskType.FULL_SYNC],
    )


def schedule_incremental_sync(
    db: Session,
    queue: JobQueue,
    account_id: str,
    *,
    delay: Optional[timedelta] = None,
    history_id: Optional[str] = None,
    now: Optional[datetime] = None,
    force: bool = False,
) -> Optional[JobRecord]:
    """Enqueue the next incremental sync unless syncing is paused or manual.

    Without an explicit ``delay`` the account's cron frequency decides when
    it runs, falling back to the default polling delay. ``force`` is for
    user-requested syncs and ignores pause and manual mode.
    """

    account_settings = get_or_create_settings(db, account_id)
    if not force and (account_settings.sync_paused or account_settings.sync_frequency == MANUAL_SYNC_FREQUENCY):
        logger.info(
            "[scheduler] not scheduling incremental sync for account %s: %s",
            account_id,
            "paused" if account_settings.sync_paused else "manual",
        )
        return None

    now = now or utc_now()
    if delay is None:
        delay = cron_delay(account_settings.sync_frequency, now=now) or timedelta(
            seconds=settings.DEFAULT_SYNC_DELAY_SECONDS
        )
    payload = IncrementalSyncPayload(
        account_id=account_id,
        history_id=history_id,
        last_sync_at=now.isoformat(),
    )
    return queue.enqueue(
        TaskType.INCREMENTAL_SYNC,
        payload.model_dump(),
        run_at=now + delay,
        priority=TASK_PRIORITIES[TaskType.INCREMENTAL_SYNC],
        key=job_key(TaskType.INCREMENTAL_SYNC, account_id),
        max_attempts=TASK_MAX_ATTEMPTS[TaskType.INCREMENTAL_SYNC],
    )


def schedule_folder_sync(
    queue: JobQueue,
    account_id: str,
    folder_id: str,
    folder_path: str,
    *,
    run_at: Optional[datetime] = None,
) -> JobRecord:
    payload = FolderSyncPayload(account_id=account_id, folder_id=folder_id, folder_path=folder_path)
    return queue.enqueue(
        TaskType.FOLDER_SYNC,
        payload.model_dump(),
        run_at=run_at or utc_now(),
        priority=TASK_PRIORITIES[TaskType.FOLDER_SYNC],
        key=job_key(TaskType.FOLDER_SYNC, account_id, folder_id),
        max_attempts=TASK_MAX_ATTEMPTS[TaskType.FOLDER_SYNC],
    )


def schedule_auto_delete(
    db: Session,
    queue: JobQueue,
    account_id: str,
    *,
    run_at: Optional[datetime] = None,
) -> Optional[JobRecord]:
    """Enqueue an auto-delete evaluation when the account's mode is not off."""

    account_settings = get_or_create_settings(db, account_id)
    if account_settings.auto_delete_mode == AutoDeleteMode.OFF.value:
        return None

    return queue.enqueue(
        TaskType.AUTO_DELETE,
        AutoDeletePayload(account_id=account_id).model_dump(),
        run_at=run_at or utc_now() + timedelta(seconds=settings.AUTO_DELETE_DELAY_SECONDS),
        priority=TASK_PRIORITIES[TaskType.AUTO_DELETE],
        key=job_key(TaskType.AUTO_DELETE, account_id),
        max_attempts=TASK_MAX_ATTEMPTS[TaskType.AUTO_DELETE],
    )


def schedule_mbox_import(queue: JobQueue, account_id: str, file_path: str) -> JobRecord:
    return queue.enqueue(
        TaskType.MBOX_IMPORT,
        MboxImportPayload(account_id=account_id, file_path=file_path).model_dump(),
        run_at=utc_now(),
        priority=TASK_PRIORITIES[TaskType.MBOX_IMPORT],
        key=job_key(TaskType.MBOX_IMPORT, account_id),
        max_attempts=TASK_MAX_ATTEMPTS[TaskType.MBOX_IMPORT],
    )
