from uuid import uuid4

from sqlalchemy import Column, String, Boolean, DateTime, Integer, Text, UniqueConstraint, Index
from sqlalchemy.sql import func, expression

from app.models_sqlalchemy import Base, JSONType


def _uuid() -> str:
    return str(uuid4())


class Job(Base):
    """A unit of deferred work in the durable job queue.

    Completed jobs are deleted. Permanently failed jobs stay behind with
    ``attempts >= max_attempts`` (and ``failed_at`` set) so they show up in
    the failed view until an operator retries them or a new enqueue with the
    same key revives them.
    """

    __tablename__ = "jobs"
    __table_args__ = (
        Index("ix_jobs_eligible", "locked_at", "priority", "run_at"),
        Index("ix_jobs_account_task", "account_id", "task_type"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    # full_sync, incremental_sync, folder_sync, auto_delete, mbox_import
    task_type = Column(String(32), nullable=False, index=True)
    payload = Column(JSONType, nullable=False)
    # Copied out of the payload so the status view can join on it.
    account_id = Column(String(36), nullable=True)

    run_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    # Higher value runs first.
    priority = Column(Integer, nullable=False, default=0, server_default="0")

    attempts = Column(Integer, nullable=False, default=0, server_default="0")
    max_attempts = Column(Integer, nullable=False, default=3, server_default="3")

    # Dedup key, e.g. "email:incremental_sync:<account_id>".
    key = Column(String(255), nullable=True, unique=True)

    locked_at = Column(DateTime(timezone=True), nullable=True)
    locked_by = Column(String(128), nullable=True)

    last_error = Column(Text, nullable=True)
    failed_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class JobStatus(Base):
    """Last known outcome per (account, logical job type).

    Written at job start (optimistically ``success=False``) and again at job
    end. Whether a job is *currently* running is never stored here; it is
    derived from the jobs table at read time.
    """

    __tablename__ = "job_status"
    __table_args__ = (
        UniqueConstraint("account_id", "job_type", name="uq_job_status_account_type"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    account_id = Column(String(36), nullable=False, index=True)
    # sync, full_sync, incremental_sync, folder_sync, auto_delete, mbox_import
    job_type = Column(String(32), nullable=False)

    last_run_at = Column(DateTime(timezone=True), nullable=True)
    success = Column(Boolean, nullable=False, default=False, server_default=expression.false())
    error = Column(Text, nullable=True)
    meta = Column("metadata", JSONType, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class BackgroundWorker(Base):
    """Heartbeat + status row for long-running worker processes."""

    __tablename__ = "background_workers"

    id = Column(String(36), primary_key=True, default=_uuid)

    worker_name = Column(String(128), nullable=False, unique=True, index=True)
    interval_seconds = Column(Integer, nullable=True)

    last_started_at = Column(DateTime(timezone=True), nullable=True)
    last_finished_at = Column(DateTime(timezone=True), nullable=True)
    last_status = Column(String(32), nullable=True)
    last_error_message = Column(Text, nullable=True)

    runs_ok_in_row = Column(Integer, nullable=False, default=0, server_default="0")
    runs_error_in_row = Column(Integer, nullable=False, default=0, server_default="0")

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())
