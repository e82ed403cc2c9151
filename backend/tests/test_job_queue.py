from datetime import datetime, timedelta, timezone

from app.models.jobs import TaskType
from app.services.jobs.queue import CANCELLED_MESSAGE, LEASE_EXPIRED_MESSAGE


T0 = datetime(2026, 3, 1, 12, 0, tzinfo=timezone.utc)


def _payload(account_id="acct-1", **extra):
    return {"account_id": account_id, **extra}


def test_enqueue_with_same_key_replaces_pending_job(queue):
    first = queue.enqueue(TaskType.INCREMENTAL_SYNC, _payload(), run_at=T0, key="email:incremental_sync:acct-1")
    second = queue.enqueue(
        TaskType.INCREMENTAL_SYNC,
        _payload(history_id="42"),
        run_at=T0 + timedelta(minutes=5),
        key="email:incremental_sync:acct-1",
    )

    assert second.id == first.id
    pending = queue.list_pending()
    assert len(pending) == 1
    assert pending[0].payload["history_id"] == "42"
    assert pending[0].run_at == T0 + timedelta(minutes=5)


def test_enqueue_revives_permanently_failed_job_with_same_key(queue):
    job = queue.enqueue(TaskType.FULL_SYNC, _payload(), run_at=T0, key="k-full")
    queue.fail(job.id, "boom", permanent=True)
    assert [j.id for j in queue.list_failed()] == [job.id]

    revived = queue.enqueue(TaskType.FULL_SYNC, _payload(), run_at=T0, key="k-full")

    assert revived.id == job.id
    assert revived.attempts == 0
    assert revived.failed_at is None
    assert queue.list_failed() == []


def test_key_moves_off_a_leased_job(queue):
    queue.enqueue(TaskType.INCREMENTAL_SYNC, _payload(), run_at=T0, key="k-inc")
    leased = queue.lease_next("worker-1", now=T0)

    successor = queue.enqueue(TaskType.INCREMENTAL_SYNC, _payload(), run_at=T0 + timedelta(minutes=15), key="k-inc")

    assert successor.id != leased.id
    assert successor.key == "k-inc"
    assert queue.get(leased.id).key is None
    assert queue.get(leased.id).locked_by == "worker-1"


def test_lease_order_is_priority_then_run_at(queue):
    low = queue.enqueue(TaskType.AUTO_DELETE, _payload(), run_at=T0 - timedelta(minutes=10), priority=-1)
    late = queue.enqueue(TaskType.INCREMENTAL_SYNC, _payload("b"), run_at=T0 - timedelta(minutes=1))
    early = queue.enqueue(TaskType.INCREMENTAL_SYNC, _payload("c"), run_at=T0 - timedelta(minutes=5))
    high = queue.enqueue(TaskType.FULL_SYNC, _payload("d"), run_at=T0, priority=10)

    order = [queue.lease_next("w", now=T0).id for _ in range(4)]

    assert order == [high.id, early.id, late.id, low.id]
    assert queue.lease_next("w", now=T0) is None


def test_future_jobs_are_not_leased(queue):
    queue.enqueue(TaskType.INCREMENTAL_SYNC, _payload(), run_at=T0 + timedelta(hours=1))

    assert queue.lease_next("w", now=T0) is None
    assert queue.lease_next("w", now=T0 + timedelta(hours=1)) is not None


def test_lease_filters_by_task_type(queue):
    queue.enqueue(TaskType.FULL_SYNC, _payload(), run_at=T0, priority=10)
    mbox = queue.enqueue(TaskType.MBOX_IMPORT, _payload(file_path="/tmp/a.mbox"), run_at=T0)

    leased = queue.lease_next("w", [TaskType.MBOX_IMPORT], now=T0)

    assert leased.id == mbox.id


def test_failures_back_off_until_max_attempts(queue):
    job = queue.enqueue(TaskType.FULL_SYNC, _payload(), run_at=T0, max_attempts=3)
    now = T0

    for attempt in range(1, 4):
        leased = queue.lease_next("w", now=now)
        assert leased.id == job.id
        assert leased.attempts == attempt - 1
        failed = queue.fail(job.id, f"boom {attempt}", now=now)
        assert failed.attempts == attempt
        assert failed.locked_at is None
        if attempt < 3:
            assert failed.run_at > now
            assert queue.lease_next("w", now=now) is None
        now = now + timedelta(days=1)

    assert queue.lease_next("w", now=now) is None
    failed_jobs = queue.list_failed()
    assert [j.id for j in failed_jobs] == [job.id]
    assert failed_jobs[0].failed_at is not None
    assert failed_jobs[0].last_error == "boom 3"
    assert queue.list_pending() == []


def test_permanent_failure_skips_remaining_attempts(queue):
    job = queue.enqueue(TaskType.MBOX_IMPORT, _payload(file_path="/missing"), run_at=T0, max_attempts=3)
    queue.lease_next("w", now=T0)

    failed = queue.fail(job.id, "mbox file not found", permanent=True, now=T0)

    assert failed.attempts == 3
    assert failed.failed_at is not None


def test_complete_removes_the_job(queue):
    job = queue.enqueue(TaskType.FOLDER_SYNC, _payload(folder_id="f1", folder_path="INBOX"), run_at=T0)
    queue.lease_next("w", now=T0)

    queue.complete(job.id)

    assert queue.get(job.id) is None
    assert queue.list_active() == []


def test_stale_leases_are_reaped_as_failed_attempts(queue):
    job = queue.enqueue(TaskType.INCREMENTAL_SYNC, _payload(), run_at=T0)
    queue.lease_next("dead-worker", now=T0)

    assert queue.reap_stale_leases(now=T0 + timedelta(minutes=5)) == 0
    reaped = queue.reap_stale_leases(now=T0 + queue.lease_timeout + timedelta(seconds=1))

    assert reaped == 1
    record = queue.get(job.id)
    assert record.locked_at is None
    assert record.attempts == 1
    assert record.last_error == LEASE_EXPIRED_MESSAGE
    again = queue.lease_next("live-worker", now=T0 + queue.lease_timeout + timedelta(seconds=2))
    assert again.id == job.id


def test_renewed_lease_is_never_leased_twice(queue):
    job = queue.enqueue(TaskType.FULL_SYNC, _payload(), run_at=T0)
    first = queue.lease_next("worker-a", now=T0)
    renew_every = queue.lease_timeout / 3

    now = T0
    for _ in range(6):
        now += renew_every
        assert queue.extend_lease(job.id, "worker-a", now=now) is True
        assert queue.lease_next("worker-b", now=now + timedelta(seconds=1)) is None

    record = queue.get(job.id)
    assert first.id == job.id
    assert record.locked_by == "worker-a"
    assert record.attempts == 0
    assert queue.find_leased("acct-1", [TaskType.FULL_SYNC], now=now)[0].id == job.id


def test_extend_lease_requires_the_current_holder(queue):
    job = queue.enqueue(TaskType.FULL_SYNC, _payload(), run_at=T0)
    queue.lease_next("worker-a", now=T0)

    assert queue.extend_lease(job.id, "worker-b", now=T0 + timedelta(minutes=1)) is False
    assert queue.extend_lease("missing", "worker-a", now=T0) is False
    assert queue.get(job.id).locked_at == T0


def test_reclaimed_job_cannot_be_settled_by_its_old_worker(queue):
    job = queue.enqueue(TaskType.FULL_SYNC, _payload(), run_at=T0)
    queue.lease_next("worker-a", now=T0)
    later = T0 + queue.lease_timeout + timedelta(minutes=1)
    assert queue.lease_next("worker-b", now=later).id == job.id

    assert queue.complete(job.id, worker_id="worker-a") is False
    assert queue.fail(job.id, "late failure", worker_id="worker-a", now=later) is None
    assert queue.extend_lease(job.id, "worker-a", now=later) is False

    record = queue.get(job.id)
    assert record.locked_by == "worker-b"
    assert record.attempts == 1
    assert record.last_error == LEASE_EXPIRED_MESSAGE
    assert queue.complete(job.id, worker_id="worker-b") is True
    assert queue.get(job.id) is None


def test_find_leased_ignores_stale_leases(queue):
    queue.enqueue(TaskType.FULL_SYNC, _payload(), run_at=T0)
    queue.enqueue(TaskType.INCREMENTAL_SYNC, _payload("other"), run_at=T0)
    queue.lease_next("w", now=T0)
    queue.lease_next("w", now=T0)

    live = queue.find_leased("acct-1", [TaskType.FULL_SYNC], now=T0 + timedelta(minutes=1))
    stale = queue.find_leased("acct-1", [TaskType.FULL_SYNC], now=T0 + queue.lease_timeout + timedelta(minutes=1))

    assert len(live) == 1
    assert live[0].task_type == TaskType.FULL_SYNC
    assert stale == []
    assert queue.find_leased("acct-1", [TaskType.INCREMENTAL_SYNC], now=T0) == []


def test_cancel_pending_running_and_missing_jobs(queue):
    pending = queue.enqueue(TaskType.AUTO_DELETE, _payload(), run_at=T0 + timedelta(hours=1))
    running = queue.enqueue(TaskType.FULL_SYNC, _payload("b"), run_at=T0)
    queue.lease_next("w", now=T0)

    assert queue.cancel(pending.id) is True
    assert queue.cancel(running.id) is False
    assert queue.cancel("does-not-exist") is True

    cancelled = queue.get(pending.id)
    assert cancelled.attempts == cancelled.max_attempts
    assert cancelled.last_error == CANCELLED_MESSAGE
    assert queue.get(running.id).locked_at is not None


def test_reschedule_resets_failed_job_but_not_running_job(queue):
    failed = queue.enqueue(TaskType.FULL_SYNC, _payload(), run_at=T0)
    queue.fail(failed.id, "boom", permanent=True)
    running = queue.enqueue(TaskType.INCREMENTAL_SYNC, _payload("b"), run_at=T0)
    queue.lease_next("w", now=T0)

    retried = queue.reschedule(failed.id, now=T0)
    untouched = queue.reschedule(running.id, now=T0)

    assert retried.attempts == 0
    assert retried.failed_at is None
    assert retried.last_error is None
    assert [j.id for j in queue.list_pending()] == [failed.id]
    assert untouched.locked_at is not None
    assert queue.reschedule("missing") is None
