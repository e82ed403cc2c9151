"""Job queue worker runtime.

Leases due jobs from an explicitly injected :class:`JobQueue` and runs each
through its task handler, up to ``WORKER_CONCURRENCY`` at a time. Stale
leases are reaped periodically, leases of running jobs are renewed at a
third of the lease timeout, and a heartbeat is kept in the
BackgroundWorker table with worker_name="job_worker" so the API can show
when the worker last ran and whether it appears stale.

Run standalone with ``python -m app.workers.job_worker``.
"""

from __future__ import annotations

import asyncio
import os
import signal
import socket
from datetime import datetime, timedelta
from typing import Callable, Optional, Sequence, Set

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from app.config import settings
from app.models.jobs import TaskType
from app.models_sqlalchemy import SessionLocal
from app.models_sqlalchemy.jobs import BackgroundWorker
from app.services.jobs.base_handler import HandlerDeps
from app.services.jobs.errors import ErrorClass, JobError
from app.services.jobs.handlers import execute_job
from app.services.jobs.queue import JobQueue, JobRecord, SqlJobQueue
from app.services.providers.factory import ProviderFactory, get_provider_client
from app.services.storage.blob import BlobStorage
from app.utils.datetime_utils import ensure_utc, utc_now
from app.utils.logger import logger


WORKER_NAME = "job_worker"


class JobWorker:
    def __init__(
        self,
        queue: JobQueue,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        provider_factory: ProviderFactory = get_provider_client,
        storage: Optional[BlobStorage] = None,
        concurrency: Optional[int] = None,
        poll_interval: Optional[float] = None,
        reap_interval: Optional[float] = None,
        lease_renew_interval: Optional[float] = None,
        task_types: Optional[Sequence[TaskType]] = None,
        worker_id: Optional[str] = None,
        worker_name: str = WORKER_NAME,
    ) -> None:
        self.queue = queue
        self.session_factory = session_factory
        self.deps = HandlerDeps(queue=queue, provider_factory=provider_factory, storage=storage or BlobStorage())
        self.concurrency = concurrency or settings.WORKER_CONCURRENCY
        self.poll_interval = (
            poll_interval if poll_interval is not None else settings.WORKER_POLL_INTERVAL_MS / 1000.0
        )
        self.reap_interval = timedelta(
            seconds=reap_interval if reap_interval is not None else settings.WORKER_REAP_INTERVAL_SECONDS
        )
        self.lease_renew_interval = (
            lease_renew_interval
            if lease_renew_interval is not None
            else queue.lease_timeout.total_seconds() / 3
        )
        self.task_types = list(task_types) if task_types else None
        self.worker_id = worker_id or f"{socket.gethostname()}:{os.getpid()}"
        self.worker_name = worker_name

        self._semaphore = asyncio.Semaphore(self.concurrency)
        self._stop = asyncio.Event()
        self._tasks: Set[asyncio.Task] = set()
        self._last_reap_at: Optional[datetime] = None

    # ------------------------------------------------------------------
    # Job execution
    # ------------------------------------------------------------------

    async def run_job(self, job: JobRecord) -> bool:
        """Run one leased job and settle it in the queue; True on success."""

        logger.info(
            "[worker] %s running job %s (%s) attempt %s/%s",
            self.worker_id,
            job.id,
            job.task_type.value,
            job.attempts + 1,
            job.max_attempts,
        )
        db = self.session_factory()
        renewer = asyncio.create_task(self._keep_lease(job))
        try:
            await execute_job(db, job, self.deps)
        except JobError as exc:
            self.queue.fail(
                job.id,
                str(exc),
                permanent=not exc.retryable,
                error_class=exc.error_class,
                worker_id=self.worker_id,
            )
            self._record_job_outcome(ok=False, error=str(exc))
            return False
        except Exception as exc:
            logger.error("[worker] job %s crashed: %s", job.id, exc, exc_info=True)
            self.queue.fail(job.id, str(exc), error_class=ErrorClass.TRANSIENT, worker_id=self.worker_id)
            self._record_job_outcome(ok=False, error=str(exc))
            return False
        finally:
            renewer.cancel()
            await asyncio.gather(renewer, return_exceptions=True)
            db.close()

        if not self.queue.complete(job.id, worker_id=self.worker_id):
            logger.warning("[worker] job %s finished after its lease was lost; left to its new holder", job.id)
        self._record_job_outcome(ok=True)
        logger.info("[worker] job %s (%s) completed", job.id, job.task_type.value)
        return True

    async def _keep_lease(self, job: JobRecord) -> None:
        while True:
            await asyncio.sleep(self.lease_renew_interval)
            if not self.queue.extend_lease(job.id, self.worker_id):
                logger.warning("[worker] lost lease on job %s (%s)", job.id, job.task_type.value)
                return

    async def _run_and_release(self, job: JobRecord) -> None:
        try:
            await self.run_job(job)
        finally:
            self._semaphore.release()

    async def _lease_slot(self) -> Optional[JobRecord]:
        await self._semaphore.acquire()
        job = self.queue.lease_next(self.worker_id, self.task_types)
        if job is None:
            self._semaphore.release()
        return job

    # ------------------------------------------------------------------
    # Loop control
    # ------------------------------------------------------------------

    def maintain(self, *, now: Optional[datetime] = None, force: bool = False) -> int:
        """Reap stale leases and refresh the heartbeat when due."""

        now = now or utc_now()
        if not force and self._last_reap_at is not None and now - self._last_reap_at < self.reap_interval:
            return 0
        self._last_reap_at = now
        reaped = self.queue.reap_stale_leases(now=now)
        self._touch_heartbeat(now)
        return reaped

    async def run_once(self) -> int:
        """Lease up to the free slot count, run those jobs to completion.

        Returns the number of jobs that were run.
        """

        self.maintain()
        jobs = []
        while len(jobs) < self.concurrency:
            job = await self._lease_slot()
            if job is None:
                break
            jobs.append(job)
        await asyncio.gather(*(self._run_and_release(job) for job in jobs))
        return len(jobs)

    async def run_forever(self) -> None:
        logger.info(
            "[worker] %s started (concurrency=%s poll=%.2fs)",
            self.worker_id,
            self.concurrency,
            self.poll_interval,
        )
        self.maintain(force=True)
        while not self._stop.is_set():
            self.maintain()
            job = await self._lease_slot()
            if job is None:
                await self._sleep(self.poll_interval)
                continue
            task = asyncio.create_task(self._run_and_release(job))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)

        if self._tasks:
            logger.info("[worker] waiting for %s running jobs to finish", len(self._tasks))
            await asyncio.gather(*self._tasks, return_exceptions=True)
        logger.info("[worker] %s stopped", self.worker_id)

    def stop(self) -> None:
        self._stop.set()

    async def _sleep(self, seconds: float) -> None:
        try:
            await asyncio.wait_for(self._stop.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    # ------------------------------------------------------------------
    # Heartbeat
    # ------------------------------------------------------------------

    def _get_or_create_worker_row(self, db: Session) -> BackgroundWorker:
        worker = (
            db.query(BackgroundWorker)
            .filter(BackgroundWorker.worker_name == self.worker_name)
            .one_or_none()
        )
        if worker is None:
            worker = BackgroundWorker(
                worker_name=self.worker_name,
                interval_seconds=int(self.reap_interval.total_seconds()),
                runs_ok_in_row=0,
                runs_error_in_row=0,
            )
            db.add(worker)
            db.flush()
        return worker

    def _touch_heartbeat(self, now: datetime) -> None:
        db = self.session_factory()
        try:
            worker = self._get_or_create_worker_row(db)
            worker.last_started_at = now
            worker.last_status = "running"
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("[worker] failed to update heartbeat: %s", exc)
        finally:
            db.close()

    def _record_job_outcome(self, *, ok: bool, error: Optional[str] = None) -> None:
        db = self.session_factory()
        try:
            worker = self._get_or_create_worker_row(db)
            worker.last_finished_at = utc_now()
            if ok:
                worker.last_status = "ok"
                worker.runs_ok_in_row = (worker.runs_ok_in_row or 0) + 1
                worker.runs_error_in_row = 0
            else:
                worker.last_status = "error"
                worker.last_error_message = (error or "")[:2000]
                worker.runs_error_in_row = (worker.runs_error_in_row or 0) + 1
                worker.runs_ok_in_row = 0
            db.commit()
        except SQLAlchemyError as exc:
            db.rollback()
            logger.error("[worker] failed to record job outcome: %s", exc)
        finally:
            db.close()


def get_worker_heartbeat(db: Session, worker_name: str = WORKER_NAME) -> Optional[dict]:
    row = db.query(BackgroundWorker).filter(BackgroundWorker.worker_name == worker_name).one_or_none()
    if row is None:
        return None
    return {
        "worker_name": row.worker_name,
        "last_started_at": ensure_utc(row.last_started_at),
        "last_finished_at": ensure_utc(row.last_finished_at),
        "last_status": row.last_status,
        "last_error_message": row.last_error_message,
        "runs_ok_in_row": row.runs_ok_in_row,
        "runs_error_in_row": row.runs_error_in_row,
    }


async def _main() -> None:
    worker = JobWorker(SqlJobQueue())
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, worker.stop)
        except NotImplementedError:  # pragma: no cover - Windows
            pass
    await worker.run_forever()


if __name__ == "__main__":
    asyncio.run(_main())
