"""Durable job queue.

The queue is an explicit object handed to every call site (worker runtime,
handlers, scheduler helpers, HTTP routes). :class:`SqlJobQueue` is the
production implementation on top of the ``jobs`` table; tests can swap in
:class:`app.services.jobs.memory_queue.InMemoryJobQueue`.

Semantics shared by all implementations:

- ``priority``: higher value runs first, ties broken by ``run_at`` then by
  creation order.
- ``key``: at most one unresolved job per dedup key. Enqueueing with a key
  that is held by a pending or permanently failed job replaces that job in
  place; if the holder is currently leased, the key moves to a fresh pending
  job and the running one finishes undisturbed.
- Completed jobs are deleted. Permanently failed jobs keep
  ``attempts >= max_attempts`` and a ``failed_at`` timestamp.
- Leases older than the lease timeout are reclaimed before every lease and
  count as a failed attempt. A worker keeps a long job's lease alive with
  ``extend_lease``; ``complete``/``fail`` called with a ``worker_id`` are
  ignored once that worker no longer holds the lease.
"""

from __future__ import annotations

import abc
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence
from uuid import uuid4

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.config import settings
from app.models.jobs import TaskType
from app.models_sqlalchemy import SessionLocal
from app.models_sqlalchemy.jobs import Job
from app.services.jobs.errors import ErrorClass, compute_backoff
from app.utils.datetime_utils import ensure_utc, utc_now
from app.utils.logger import logger


DEFAULT_MAX_ATTEMPTS = 3
CANCELLED_MESSAGE = "Cancelled by user"
LEASE_EXPIRED_MESSAGE = "Lease expired (worker lost)"
MAX_ERROR_LENGTH = 4000


@dataclass
class JobRecord:
    """Queue-agnostic snapshot of a job row."""

    id: str
    task_type: TaskType
    payload: Dict[str, Any]
    run_at: datetime
    priority: int = 0
    attempts: int = 0
    max_attempts: int = DEFAULT_MAX_ATTEMPTS
    key: Optional[str] = None
    account_id: Optional[str] = None
    locked_at: Optional[datetime] = None
    locked_by: Optional[str] = None
    last_error: Optional[str] = None
    failed_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def is_locked(self) -> bool:
        return self.locked_at is not None

    @property
    def is_permanently_failed(self) -> bool:
        return self.attempts >= self.max_attempts

    @classmethod
    def from_row(cls, row: Job) -> "JobRecord":
        return cls(
            id=row.id,
            task_type=TaskType(row.task_type),
            payload=dict(row.payload or {}),
            run_at=ensure_utc(row.run_at),
            priority=row.priority,
            attempts=row.attempts,
            max_attempts=row.max_attempts,
            key=row.key,
            account_id=row.account_id,
            locked_at=ensure_utc(row.locked_at),
            locked_by=row.locked_by,
            last_error=row.last_error,
            failed_at=ensure_utc(row.failed_at),
            created_at=ensure_utc(row.created_at),
            updated_at=ensure_utc(row.updated_at),
        )


def _truncate_error(error: Optional[str]) -> Optional[str]:
    if error is None:
        return None
    return error[:MAX_ERROR_LENGTH]


class JobQueue(abc.ABC):
    """Contract of the durable job queue."""

    def __init__(self, *, lease_timeout: Optional[timedelta] = None) -> None:
        self.lease_timeout = lease_timeout or timedelta(seconds=settings.JOB_LEASE_TIMEOUT_SECONDS)

    @abc.abstractmethod
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
        """Insert a job, or replace the unresolved job holding ``key``."""

    @abc.abstractmethod
    def lease_next(
        self,
        worker_id: str,
        task_types: Optional[Sequence[TaskType]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[JobRecord]:
        """Lock and return the next eligible job, or None."""

    @abc.abstractmethod
    def extend_lease(self, job_id: str, worker_id: str, *, now: Optional[datetime] = None) -> bool:
        """Refresh ``locked_at`` if ``worker_id`` still holds the lease."""

    @abc.abstractmethod
    def complete(self, job_id: str, *, worker_id: Optional[str] = None) -> bool:
        """Delete a finished job; False if it is gone or held by another worker."""

    @abc.abstractmethod
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
        """Record a failed attempt; retry later or fail permanently.

        Returns None when the job is gone or, with ``worker_id``, when the
        lease has since passed to another worker.
        """

    @abc.abstractmethod
    def reschedule(self, job_id: str, *, now: Optional[datetime] = None) -> Optional[JobRecord]:
        """Operator retry: reset attempts and make the job due now.

        A job that is currently leased is returned unchanged.
        """

    @abc.abstractmethod
    def cancel(self, job_id: str, *, now: Optional[datetime] = None) -> bool:
        """Permanently fail a pending job.

        Returns True when the job is resolved afterwards (including when it
        was already resolved or no longer exists), False when it is leased
        and therefore cannot be cancelled.
        """

    @abc.abstractmethod
    def get(self, job_id: str) -> Optional[JobRecord]:
        ...

    @abc.abstractmethod
    def find_leased(
        self,
        account_id: str,
        task_types: Iterable[TaskType],
        *,
        now: Optional[datetime] = None,
    ) -> List[JobRecord]:
        """Jobs of this account currently held by a live (non-stale) lease."""

    @abc.abstractmethod
    def list_active(self, limit: int = 50) -> List[JobRecord]:
        ...

    @abc.abstractmethod
    def list_pending(self, limit: int = 50) -> List[JobRecord]:
        ...

    @abc.abstractmethod
    def list_failed(self, limit: int = 50) -> List[JobRecord]:
        ...

    @abc.abstractmethod
    def reap_stale_leases(self, *, now: Optional[datetime] = None) -> int:
        """Release jobs whose lease outlived ``lease_timeout``; returns how many."""


class SqlJobQueue(JobQueue):
    """Job queue backed by the ``jobs`` table.

    Every method runs in its own short transaction. Leasing uses
    ``SELECT ... FOR UPDATE SKIP LOCKED`` on Postgres so concurrent workers
    (in this or other processes) never lease the same row.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = SessionLocal,
        *,
        lease_timeout: Optional[timedelta] = None,
    ) -> None:
        super().__init__(lease_timeout=lease_timeout)
        self._session_factory = session_factory

    def _insert(self, db: Session):
        dialect = db.get_bind().dialect.name
        if dialect == "postgresql":
            return postgresql.insert(Job)
        if dialect == "sqlite":
            return sqlite.insert(Job)
        raise RuntimeError(f"Unsupported database dialect for job queue: {dialect}")

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
        run_at = run_at or now
        account_id = payload.get("account_id")

        db = self._session_factory()
        try:
            if key is None:
                job = Job(
                    id=str(uuid4()),
                    task_type=task_type.value,
                    payload=payload,
                    account_id=account_id,
                    run_at=run_at,
                    priority=priority,
                    attempts=0,
                    max_attempts=max_attempts,
                    created_at=now,
                    updated_at=now,
                )
                db.add(job)
                db.commit()
                db.refresh(job)
                logger.info("[jobs] enqueued %s id=%s run_at=%s", task_type.value, job.id, run_at.isoformat())
                return JobRecord.from_row(job)

            # A running job keeps executing but gives up its key, so it can
            # schedule its own successor under the same key.
            db.query(Job).filter(Job.key == key, Job.locked_at.isnot(None)).update(
                {Job.key: None}, synchronize_session=False
            )

            stmt = self._insert(db).values(
                id=str(uuid4()),
                task_type=task_type.value,
                payload=payload,
                account_id=account_id,
                run_at=run_at,
                priority=priority,
                attempts=0,
                max_attempts=max_attempts,
                key=key,
                created_at=now,
                updated_at=now,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=[Job.key],
                set_={
                    "task_type": stmt.excluded.task_type,
                    "payload": stmt.excluded.payload,
                    "account_id": stmt.excluded.account_id,
                    "run_at": stmt.excluded.run_at,
                    "priority": stmt.excluded.priority,
                    "attempts": 0,
                    "max_attempts": stmt.excluded.max_attempts,
                    "last_error": None,
                    "failed_at": None,
                    "updated_at": now,
                },
                # Leased in the meantime by another worker: leave it alone.
                where=Job.locked_at.is_(None),
            )
            db.execute(stmt)
            db.commit()

            job = db.query(Job).filter(Job.key == key).one()
            if job.locked_at is not None:
                logger.info("[jobs] key=%s was leased concurrently; enqueue folded into running job %s", key, job.id)
            else:
                logger.info(
                    "[jobs] enqueued %s id=%s key=%s run_at=%s priority=%s",
                    task_type.value,
                    job.id,
                    key,
                    run_at.isoformat(),
                    priority,
                )
            return JobRecord.from_row(job)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def lease_next(
        self,
        worker_id: str,
        task_types: Optional[Sequence[TaskType]] = None,
        *,
        now: Optional[datetime] = None,
    ) -> Optional[JobRecord]:
        now = now or utc_now()
        self.reap_stale_leases(now=now)

        db = self._session_factory()
        try:
            query = db.query(Job).filter(
                Job.locked_at.is_(None),
                Job.run_at <= now,
                Job.attempts < Job.max_attempts,
            )
            if task_types:
                query = query.filter(Job.task_type.in_([TaskType(t).value for t in task_types]))
            job = (
                query.order_by(Job.priority.desc(), Job.run_at.asc(), Job.created_at.asc(), Job.id.asc())
                .with_for_update(skip_locked=True)
                .first()
            )
            if job is None:
                db.rollback()
                return None

            job.locked_at = now
            job.locked_by = worker_id
            job.updated_at = now
            db.commit()
            db.refresh(job)
            return JobRecord.from_row(job)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def extend_lease(self, job_id: str, worker_id: str, *, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        db = self._session_factory()
        try:
            updated = (
                db.query(Job)
                .filter(Job.id == job_id, Job.locked_by == worker_id, Job.locked_at.isnot(None))
                .update({Job.locked_at: now, Job.updated_at: now}, synchronize_session=False)
            )
            db.commit()
            if not updated:
                logger.warning("[jobs] extend_lease: %s no longer holds job %s", worker_id, job_id)
            return bool(updated)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def complete(self, job_id: str, *, worker_id: Optional[str] = None) -> bool:
        db = self._session_factory()
        try:
            query = db.query(Job).filter(Job.id == job_id)
            if worker_id is not None:
                query = query.filter(Job.locked_by == worker_id)
            deleted = query.delete(synchronize_session=False)
            db.commit()
            if not deleted:
                logger.warning("[jobs] complete: job %s no longer exists or was reclaimed", job_id)
            return bool(deleted)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

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
        db = self._session_factory()
        try:
            job: Optional[Job] = db.query(Job).filter(Job.id == job_id).with_for_update().one_or_none()
            if job is None:
                logger.warning("[jobs] fail: job %s no longer exists", job_id)
                db.rollback()
                return None
            if worker_id is not None and job.locked_by != worker_id:
                logger.warning(
                    "[jobs] fail: job %s was reclaimed from %s (now locked_by=%s)",
                    job_id,
                    worker_id,
                    job.locked_by,
                )
                db.rollback()
                return None

            job.attempts = job.attempts + 1
            job.last_error = _truncate_error(error)
            job.locked_at = None
            job.locked_by = None
            job.updated_at = now
            if permanent or job.attempts >= job.max_attempts:
                job.attempts = max(job.attempts, job.max_attempts)
                job.failed_at = now
                logger.error(
                    "[jobs] %s id=%s permanently failed after %s attempt(s): %s",
                    job.task_type,
                    job.id,
                    job.attempts,
                    error,
                )
            else:
                job.run_at = now + compute_backoff(job.attempts, error_class)
                logger.warning(
                    "[jobs] %s id=%s failed (attempt %s/%s, %s), retry at %s: %s",
                    job.task_type,
                    job.id,
                    job.attempts,
                    job.max_attempts,
                    error_class.value,
                    job.run_at.isoformat(),
                    error,
                )
            db.commit()
            db.refresh(job)
            return JobRecord.from_row(job)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def reschedule(self, job_id: str, *, now: Optional[datetime] = None) -> Optional[JobRecord]:
        now = now or utc_now()
        db = self._session_factory()
        try:
            job: Optional[Job] = db.query(Job).filter(Job.id == job_id).with_for_update().one_or_none()
            if job is None:
                db.rollback()
                return None
            if job.locked_at is not None:
                db.rollback()
                return JobRecord.from_row(job)

            job.attempts = 0
            job.run_at = now
            job.last_error = None
            job.failed_at = None
            job.updated_at = now
            db.commit()
            db.refresh(job)
            logger.info("[jobs] rescheduled %s id=%s", job.task_type, job.id)
            return JobRecord.from_row(job)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def cancel(self, job_id: str, *, now: Optional[datetime] = None) -> bool:
        now = now or utc_now()
        db = self._session_factory()
        try:
            job: Optional[Job] = db.query(Job).filter(Job.id == job_id).with_for_update().one_or_none()
            if job is None:
                db.rollback()
                return True
            if job.locked_at is not None:
                db.rollback()
                logger.info("[jobs] cancel refused: %s id=%s is running", job.task_type, job.id)
                return False
            if job.attempts >= job.max_attempts:
                db.rollback()
                return True

            job.attempts = job.max_attempts
            job.last_error = CANCELLED_MESSAGE
            job.failed_at = now
            job.updated_at = now
            db.commit()
            logger.info("[jobs] cancelled %s id=%s", job.task_type, job_id)
            return True
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def get(self, job_id: str) -> Optional[JobRecord]:
        db = self._session_factory()
        try:
            job = db.query(Job).filter(Job.id == job_id).one_or_none()
            return JobRecord.from_row(job) if job else None
        finally:
            db.close()

    def find_leased(
        self,
        account_id: str,
        task_types: Iterable[TaskType],
        *,
        now: Optional[datetime] = None,
    ) -> List[JobRecord]:
        now = now or utc_now()
        cutoff = now - self.lease_timeout
        db = self._session_factory()
        try:
            rows = (
                db.query(Job)
                .filter(
                    Job.account_id == account_id,
                    Job.task_type.in_([TaskType(t).value for t in task_types]),
                    Job.locked_at.isnot(None),
                    Job.locked_at >= cutoff,
                )
                .order_by(Job.locked_at.desc())
                .all()
            )
            return [JobRecord.from_row(r) for r in rows]
        finally:
            db.close()

    def _list(self, *criteria, order_by, limit: int) -> List[JobRecord]:
        db = self._session_factory()
        try:
            rows = db.query(Job).filter(*criteria).order_by(*order_by).limit(limit).all()
            return [JobRecord.from_row(r) for r in rows]
        finally:
            db.close()

    def list_active(self, limit: int = 50) -> List[JobRecord]:
        return self._list(Job.locked_at.isnot(None), order_by=[Job.locked_at.desc()], limit=limit)

    def list_pending(self, limit: int = 50) -> List[JobRecord]:
        return self._list(
            Job.locked_at.is_(None),
            Job.attempts < Job.max_attempts,
            order_by=[Job.priority.desc(), Job.run_at.asc(), Job.created_at.asc()],
            limit=limit,
        )

    def list_failed(self, limit: int = 50) -> List[JobRecord]:
        return self._list(
            Job.attempts >= Job.max_attempts,
            order_by=[Job.failed_at.desc(), Job.updated_at.desc()],
            limit=limit,
        )

    def reap_stale_leases(self, *, now: Optional[datetime] = None) -> int:
        now = now or utc_now()
        cutoff = now - self.lease_timeout
        db = self._session_factory()
        try:
            stale: List[Job] = (
                db.query(Job)
                .filter(Job.locked_at.isnot(None), Job.locked_at < cutoff)
                .with_for_update(skip_locked=True)
                .all()
            )
            for job in stale:
                logger.warning(
                    "[jobs] reclaiming stale lease on %s id=%s (locked_by=%s since %s)",
                    job.task_type,
                    job.id,
                    job.locked_by,
                    job.locked_at,
                )
                job.attempts = job.attempts + 1
                job.last_error = LEASE_EXPIRED_MESSAGE
                job.locked_at = None
                job.locked_by = None
                job.updated_at = now
                if job.attempts >= job.max_attempts:
                    job.failed_at = now
                else:
                    job.run_at = now
            db.commit()
            return len(stale)
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()
