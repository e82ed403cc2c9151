from __future__ import annotations

import threading
from dataclasses import replace
from datetime import datetime, timedelta
from typing import Any, Dict, Iterable, List, Optional, Sequence
from uuid import uuid4

from app.models.jobs import TaskType
from app.services.jobs.errors import ErrorClass, compute_backoff
from app.services.jobs.queue import (
    CANCELLED_MESSAGE,
    DEFAULT_MAX_ATTEMPTS,
    LEASE_EXPIRED_MESSAGE,
    JobQueue,
    JobRecord,
    _truncate_error,
)
from app.utils.datetime_utils import utc_now


class InMemoryJobQueue(JobQueue):
    """Process-local queue with the same contract as :class:`SqlJobQueue`.

    Intended for tests and single-process tooling. The mutex only serializes
    callers inside this process, so it is not a substitute for the row
    locking the SQL queue relies on across workers.
    """

    def __init__(self, *, lease_timeout: Optional[timedelta] = None) -> None:
        super().__init__(lease_timeout=lease_timeout)
        self._jobs: Dict[str, JobRecord] = {}
        self._seq: Dict[str, int] = {}
        self._counter = 0
        self._lock = threading.Lock()

    def _snapshot(self, job: JobRecord) -> JobRecord:
        return replace(job, payload=dict(job.payload))

    def _by_key(self, key: str) -> Optional[JobRecord]:
        for job in self._jobs.values():
            if job.key == key:
                return job
        return None

    def _order(self, job: JobRecord):
        return (-job.priority, job.run_at, self._seq[job.id])

    def enqueue(
        self,
        task_type: TaskType,
        payload: Dict[str, Any],
        *,
        run_at: Optional[datetime] = None,
        priority: int = 0,
        key: Optional[str] = None,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
    ) -> JobRecord:
        task_type = TaskType(task_type)
        now = utc_now()
        with self._lock:
            existing = self._by_key(key) if key is not None else None
            if existing is not None and existing.is_locked:
                existing.key = None
                existing = None

            if existing is not None:
                existing.task_type = task_type
                existing.payload = dict(payload)
                existing.account_id = payload.get("account_id")
                existing.run_at = run_at or now
                existing.priority = priority
                existing.attempts = 0
                existing.max_attempts = max_attempts
                existing.last_error = None
                existing.failed_at = None
                existing.updated_at = now
                return self._snapshot(existing)

            job = JobRecord(
                id=str(uuid4()),
                task_type=task_type,
                payload=dict(payload),
                run_at=run_at or now,
                priority=priority,
                attempts=0,
                max_attempts=max_attempts,
                key=key,
                account_id=payload.get("account_id"),
                created_at=now,
                updated_at=now,
            )
            self._counter += 1
            self._seq[job.id] = self._counter
            self._jobs[job.id] = job
            return self._snapshot(job)

    def lease_next(
        self,
        worker_id: str,
        task_types: Optional[Sequence[TaskType]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[JobRecord]:
        now = now or utc_now()
        self.reap_stale_leases(now=now)
        wanted = {TaskType(t) for t in task_types} if task_types else None
        with self._lock:
            eligible = [
                job
                for job in self._jobs.values()
                if not job.is_locked
                and job.run_at <= now
                and job.attempts < job.max_attempts
                and (wanted is None or job.task_type in wanted)
            ]
            if not eligible:
                return None
            job = min(eligible, key=self._order)
            job.locked_at = now
            job.locked_by = worker_id
            job.updated_at = now
            return self._snapshot(job)

    def extend_lease(self, job_id: str, worker_id: str, *, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or not job.is_locked or job.locked_by != worker_id:
                return False
            job.locked_at = now
            job.updated_at = now
            return True

    def complete(self, job_id: str, *, worker_id: Optional[str] = None) -> bool:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or (worker_id is not None and job.locked_by != worker_id):
                return False
            del self._jobs[job_id]
            self._seq.pop(job_id, None)
            return True

    def fail(
        self,
        job_id: str,
        error: str,
        *,
        permanent: bool = False,
        error_class: ErrorClass = ErrorClass.TRANSIENT,
        now: Optional[datetime] = None,
        worker_id: Optional[str] = None,
    ) -> Optional[JobRecord]:
        now = now or utc_now()
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None or (worker_id is not None and job.locked_by != worker_id):
                return None
            job.attempts += 1
            job.last_error = _truncate_error(error)
            job.locked_at = None
            job.locked_by = None
            job.updated_at = now
            if permanent or job.attempts >= job.max_attempts:
                job.attempts = max(job.attempts, job.max_attempts)
                job.failed_at = now
            else:
                job.run_at = now + compute_backoff(job.attempts, error_class)
            return self._snapshot(job)

    def reschedule(self, job_id: str, *, now: Optional[datetime] = None) -> Optional[JobRecord]:
        now = now or utc_now()
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return None
            if not job.is_locked:
                job.attempts = 0
                job.run_at = now
                job.last_error = None
                job.failed_at = None
                job.updated_at = now
            return self._snapshot(job)

    def cancel(self, job_id: str, *, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return True
            if job.is_locked:
                return False
            if job.is_permanently_failed:
                return True
            job.attempts = job.max_attempts
            job.last_error = CANCELLED_MESSAGE
            job.failed_at = now
            job.updated_at = now
            return True

    def get(self, job_id: str) -> Optional[JobRecord]:
        with self._lock:
            job = self._jobs.get(job_id)
            return self._snapshot(job) if job else None

    def find_leased(
        self,
        account_id: str,
        task_types: Iterable[TaskType],
        *,
        now: Optional[datetime] = None,
    ) -> List[JobRecord]:
        now = now or utc_now()
        cutoff = now - self.lease_timeout
        wanted = {TaskType(t) for t in task_types}
        with self._lock:
            leased = [
                job
                for job in self._jobs.values()
                if job.account_id == account_id
                and job.task_type in wanted
                and job.locked_at is not None
                and job.locked_at >= cutoff
            ]
            leased.sort(key=lambda j: j.locked_at, reverse=True)
            return [self._snapshot(j) for j in leased]

    def list_active(self, limit: int = 50) -> List[JobRecord]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if j.is_locked]
            jobs.sort(key=lambda j: j.locked_at, reverse=True)
            return [self._snapshot(j) for j in jobs[:limit]]

    def list_pending(self, limit: int = 50) -> List[JobRecord]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if not j.is_locked and not j.is_permanently_failed]
            jobs.sort(key=self._order)
            return [self._snapshot(j) for j in jobs[:limit]]

    def list_failed(self, limit: int = 50) -> List[JobRecord]:
        with self._lock:
            jobs = [j for j in self._jobs.values() if j.is_permanently_failed]
            jobs.sort(key=lambda j: j.failed_at or j.updated_at or j.run_at, reverse=True)
            return [self._snapshot(j) for j in jobs[:limit]]

    def reap_stale_leases(self, *, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        cutoff = now - self.lease_timeout
        reaped = 0
        with self._lock:
            for job in self._jobs.values():
                if job.locked_at is None or job.locked_at >= cutoff:
                    continue
                job.attempts += 1
                job.last_error = LEASE_EXPIRED_MESSAGE
                job.locked_at = None
                job.locked_by = None
                job.updated_at = now
                if job.attempts >= job.max_attempts:
                    job.failed_at = now
                else:
                    job.run_at = now
                reaped += 1
        return reaped
