from datetime import datetime, timedelta, timezone

import pytest

from app.models.jobs import TaskType
from app.services.account_settings import get_or_create_settings
from app.services.jobs.scheduler import (
    TASK_PRIORITIES,
    cron_delay,
    job_key,
    next_sync_delay,
    schedule_auto_delete,
    schedule_full_sync,
    schedule_incremental_sync,
)


NOW = datetime(2026, 5, 4, 12, 30, tzinfo=timezone.utc)


def test_job_key_format():
    assert job_key(TaskType.INCREMENTAL_SYNC, "abc") == "email:incremental_sync:abc"
    assert job_key(TaskType.FOLDER_SYNC, "abc", "f1") == "email:folder_sync:abc:f1"


@pytest.mark.parametrize(
    "processed, expected_seconds",
    [
        (0, 30 * 60),
        (1, 15 * 60),
        (10, 15 * 60),
        (11, 5 * 60),
        (5000, 5 * 60),
    ],
)
def test_next_sync_delay_adapts_to_activity(processed, expected_seconds):
    assert next_sync_delay(processed) == timedelta(seconds=expected_seconds)


def test_cron_delay_until_next_fire():
    assert cron_delay("0 * * * *", now=NOW) == timedelta(minutes=30)
    assert cron_delay("*/15 * * * *", now=NOW + timedelta(minutes=1)) == timedelta(minutes=14)


def test_cron_delay_has_a_one_minute_floor():
    assert cron_delay("* * * * *", now=NOW + timedelta(seconds=30)) == timedelta(minutes=1)


@pytest.mark.parametrize("expression", [None, "", "manual", "not a cron"])
def test_cron_delay_without_schedule(expression):
    assert cron_delay(expression, now=NOW) is None


def test_incremental_sync_uses_cron_frequency(db, memory_queue, gmail_account):
    job = schedule_incremental_sync(db, memory_queue, gmail_account.id, history_id="77", now=NOW)

    assert job.run_at == NOW + timedelta(minutes=30)
    assert job.key == f"email:incremental_sync:{gmail_account.id}"
    assert job.payload["history_id"] == "77"
    assert job.priority == TASK_PRIORITIES[TaskType.INCREMENTAL_SYNC]


def test_incremental_sync_skipped_when_paused_or_manual(db, memory_queue, gmail_account):
    row = get_or_create_settings(db, gmail_account.id)
    row.sync_paused = True
    db.commit()
    assert schedule_incremental_sync(db, memory_queue, gmail_account.id, now=NOW) is None

    row.sync_paused = False
    row.sync_frequency = "manual"
    db.commit()
    assert schedule_incremental_sync(db, memory_queue, gmail_account.id, now=NOW) is None

    forced = schedule_incremental_sync(db, memory_queue, gmail_account.id, delay=timedelta(0), now=NOW, force=True)
    assert forced is not None
    assert forced.run_at == NOW


def test_rescheduling_incremental_sync_keeps_one_pending_job(db, memory_queue, gmail_account):
    schedule_incremental_sync(db, memory_queue, gmail_account.id, delay=timedelta(minutes=5), now=NOW)
    schedule_incremental_sync(db, memory_queue, gmail_account.id, delay=timedelta(minutes=30), now=NOW)

    pending = memory_queue.list_pending()
    assert len(pending) == 1
    assert pending[0].run_at == NOW + timedelta(minutes=30)


def test_full_sync_outranks_incremental(memory_queue):
    job = schedule_full_sync(memory_queue, "acct")

    assert job.priority > TASK_PRIORITIES[TaskType.INCREMENTAL_SYNC]
    assert job.key == "email:full_sync:acct"


def test_auto_delete_only_scheduled_when_enabled(db, memory_queue, gmail_account):
    assert schedule_auto_delete(db, memory_queue, gmail_account.id) is None

    row = get_or_create_settings(db, gmail_account.id)
    row.auto_delete_mode = "dry-run"
    db.commit()

    job = schedule_auto_delete(db, memory_queue, gmail_account.id, run_at=NOW)
    assert job.task_type is TaskType.AUTO_DELETE
    assert job.run_at == NOW
    assert job.priority < 0
