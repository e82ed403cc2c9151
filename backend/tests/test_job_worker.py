import asyncio
from datetime import timedelta

import pytest

from app.models.jobs import TaskType
from app.services.jobs.errors import TransientError
from app.services.jobs.queue import LEASE_EXPIRED_MESSAGE
from app.services.jobs.scheduler import schedule_full_sync, schedule_mbox_import
from app.utils.datetime_utils import utc_now
from app.workers import job_worker
from app.workers.job_worker import JobWorker, get_worker_heartbeat

from fakes import FakeGmailClient


def _worker(memory_queue, session_factory, storage, client=None, **kwargs):
    client = client or FakeGmailClient()
    return JobWorker(
        memory_queue,
        session_factory=session_factory,
        provider_factory=lambda db, account: client,
        storage=storage,
        concurrency=2,
        poll_interval=0.01,
        worker_id="test-worker",
        **kwargs,
    )


@pytest.mark.asyncio
async def test_run_once_completes_jobs_and_records_heartbeat(db, memory_queue, session_factory, storage, gmail_account):
    memory_queue.enqueue(TaskType.AUTO_DELETE, {"account_id": gmail_account.id})
    worker = _worker(memory_queue, session_factory, storage)

    ran = await worker.run_once()

    assert ran == 1
    assert memory_queue.list_pending() == []
    assert memory_queue.list_failed() == []
    heartbeat = get_worker_heartbeat(db)
    assert heartbeat["last_status"] == "ok"
    assert heartbeat["runs_ok_in_row"] == 1
    assert heartbeat["last_started_at"] is not None


@pytest.mark.asyncio
async def test_run_once_returns_zero_when_idle(memory_queue, session_factory, storage):
    worker = _worker(memory_queue, session_factory, storage)

    assert await worker.run_once() == 0


@pytest.mark.asyncio
async def test_permanent_failure_is_not_retried(db, memory_queue, session_factory, storage, mbox_account, tmp_path):
    job = schedule_mbox_import(memory_queue, mbox_account.id, str(tmp_path / "missing.mbox"))
    worker = _worker(memory_queue, session_factory, storage)

    await worker.run_once()

    failed = memory_queue.list_failed()
    assert [j.id for j in failed] == [job.id]
    assert "not found" in failed[0].last_error
    heartbeat = get_worker_heartbeat(db)
    assert heartbeat["last_status"] == "error"
    assert heartbeat["runs_error_in_row"] == 1


@pytest.mark.asyncio
async def test_transient_failure_is_retried_with_backoff(memory_queue, session_factory, storage, gmail_account):
    client = FakeGmailClient(cursor_error=TransientError("ETIMEDOUT fetching profile"))
    job = schedule_full_sync(memory_queue, gmail_account.id)
    worker = _worker(memory_queue, session_factory, storage, client=client)

    before = utc_now()
    await worker.run_once()

    retried = memory_queue.get(job.id)
    assert retried.attempts == 1
    assert retried.locked_at is None
    assert retried.failed_at is None
    assert retried.run_at >= before + timedelta(seconds=60)
    assert "ETIMEDOUT" in retried.last_error


@pytest.mark.asyncio
async def test_task_type_filter(memory_queue, session_factory, storage, gmail_account, db):
    full_sync_job = schedule_full_sync(memory_queue, gmail_account.id)
    memory_queue.enqueue(TaskType.AUTO_DELETE, {"account_id": gmail_account.id})
    worker = _worker(memory_queue, session_factory, storage, task_types=[TaskType.AUTO_DELETE])

    assert await worker.run_once() == 1

    pending = memory_queue.list_pending()
    assert [j.id for j in pending] == [full_sync_job.id]


def test_maintain_reaps_stale_leases(memory_queue, session_factory, storage, gmail_account):
    job = schedule_full_sync(memory_queue, gmail_account.id)
    memory_queue.lease_next("lost-worker")
    worker = _worker(memory_queue, session_factory, storage)
    later = utc_now() + timedelta(hours=1)

    reaped = worker.maintain(now=later, force=True)

    assert reaped == 1
    assert memory_queue.get(job.id).last_error == LEASE_EXPIRED_MESSAGE
    # Not due again until the reap interval has passed.
    assert worker.maintain(now=later + timedelta(seconds=1)) == 0


@pytest.mark.asyncio
async def test_running_job_keeps_its_lease(monkeypatch, memory_queue, session_factory, storage, gmail_account):
    job = schedule_full_sync(memory_queue, gmail_account.id)
    worker = _worker(memory_queue, session_factory, storage, lease_renew_interval=0.01)
    leased = memory_queue.lease_next(worker.worker_id)
    seen = {}

    async def slow_job(db, job, deps):
        await asyncio.sleep(0.1)
        seen["record"] = memory_queue.get(job.id)

    monkeypatch.setattr(job_worker, "execute_job", slow_job)

    assert await worker.run_job(leased) is True

    assert seen["record"].locked_by == worker.worker_id
    assert seen["record"].locked_at > leased.locked_at
    assert memory_queue.get(job.id) is None


@pytest.mark.asyncio
async def test_reclaimed_job_is_left_to_its_new_holder(
    monkeypatch, memory_queue, session_factory, storage, gmail_account
):
    job = schedule_full_sync(memory_queue, gmail_account.id)
    worker = _worker(memory_queue, session_factory, storage)
    leased = memory_queue.lease_next(worker.worker_id)

    async def outlived_lease(db, job, deps):
        memory_queue.lease_next("other-worker", now=utc_now() + timedelta(hours=1))

    monkeypatch.setattr(job_worker, "execute_job", outlived_lease)

    await worker.run_job(leased)

    record = memory_queue.get(job.id)
    assert record is not None
    assert record.locked_by == "other-worker"
    assert record.last_error == LEASE_EXPIRED_MESSAGE
