from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional, Union, cast
from uuid import uuid4

from pydantic import BaseModel
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.models.jobs import (
    JOB_TYPE_TASKS,
    CurrentStatus,
    CurrentStatusCode,
    FullSyncMetadata,
    JobType,
    RunMetadata,
    SyncCheckpoint,
    parse_metadata,
)
from app.models_sqlalchemy.jobs import JobStatus
from app.services.jobs.queue import JobQueue
from app.utils.datetime_utils import ensure_utc, utc_now
from app.utils.logger import logger


MetadataLike = Union[BaseModel, Dict[str, Any], None]


def _dump(metadata: MetadataLike, *, partial: bool = False) -> Dict[str, Any]:
    if metadata is None:
        return {}
    if isinstance(metadata, BaseModel):
        if partial:
            # Keys explicitly set to None must survive so they clear the stored value.
            return metadata.model_dump(mode="json", exclude_unset=True)
        return metadata.model_dump(mode="json", exclude_none=True)
    return dict(metadata)


def _locked_row(db: Session, account_id: str, job_type: JobType) -> JobStatus:
    """Return the ledger row for (account, job type), creating it if needed.

    The insert is an ``ON CONFLICT DO NOTHING`` upsert and the row is then
    read ``FOR UPDATE``, so concurrent writers for the same account serialize
    on the row instead of racing on the unique constraint.
    """

    dialect = db.get_bind().dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    now = utc_now()
    stmt = (
        insert(JobStatus)
        .values(
            id=str(uuid4()),
            account_id=account_id,
            job_type=job_type.value,
            success=False,
            created_at=now,
            updated_at=now,
        )
        .on_conflict_do_nothing(index_elements=["account_id", "job_type"])
    )
    db.execute(stmt)
    return (
        db.query(JobStatus)
        .filter(JobStatus.account_id == account_id, JobStatus.job_type == job_type.value)
        .with_for_update()
        .populate_existing()
        .one()
    )


def get_status_record(db: Session, account_id: str, job_type: JobType) -> Optional[JobStatus]:
    return (
        db.query(JobStatus)
        .filter(JobStatus.account_id == account_id, JobStatus.job_type == JobType(job_type).value)
        .one_or_none()
    )


def record_start(db: Session, account_id: str, job_type: JobType, *, now: Optional[datetime] = None) -> None:
    """Mark a run as started.

    ``success`` is set to False up front: a process that dies mid-run leaves
    the record looking failed until the next successful run.
    """

    job_type = JobType(job_type)
    row = _locked_row(db, account_id, job_type)
    row.last_run_at = now or utc_now()
    row.success = False
    row.error = None
    row.updated_at = row.last_run_at
    db.commit()


def record_success(
    db: Session,
    account_id: str,
    job_type: JobType,
    metadata: MetadataLike = None,
    *,
    now: Optional[datetime] = None,
) -> None:
    job_type = JobType(job_type)
    row = _locked_row(db, account_id, job_type)
    row.last_run_at = now or utc_now()
    row.success = True
    row.error = None
    row.meta = _dump(metadata)
    row.updated_at = row.last_run_at
    db.commit()


def record_failure(
    db: Session,
    account_id: str,
    job_type: JobType,
    error: str,
    metadata: MetadataLike = None,
    *,
    now: Optional[datetime] = None,
) -> None:
    job_type = JobType(job_type)
    row = _locked_row(db, account_id, job_type)
    row.last_run_at = now or utc_now()
    row.success = False
    row.error = error
    row.meta = _dump(metadata)
    row.updated_at = row.last_run_at
    db.commit()
    logger.info("[job-status] account=%s job_type=%s recorded failure: %s", account_id, job_type.value, error)


def update_metadata(db: Session, account_id: str, job_type: JobType, partial: MetadataLike) -> Dict[str, Any]:
    """Shallow-merge ``partial`` into the stored metadata.

    Leaves ``success``, ``error`` and ``last_run_at`` untouched. Returns the
    merged metadata.
    """

    job_type = JobType(job_type)
    row = _locked_row(db, account_id, job_type)
    merged = dict(row.meta or {})
    merged.update(_dump(partial, partial=True))
    # Assign a new dict so the JSON column is flagged dirty.
    row.meta = merged
    db.commit()
    return merged


def get_metadata(db: Session, account_id: str, job_type: JobType) -> RunMetadata:
    job_type = JobType(job_type)
    row = get_status_record(db, account_id, job_type)
    return parse_metadata(job_type, row.meta if row else None)


def get_current_status(
    db: Session,
    queue: JobQueue,
    account_id: str,
    job_type: JobType,
    *,
    now: Optional[datetime] = None,
) -> CurrentStatus:
    """Derive the live status of (account, job type).

    Joins the ledger row with the queue's live leases on every call; the
    result is never stored.
    """

    job_type = JobType(job_type)
    leased = queue.find_leased(account_id, JOB_TYPE_TASKS[job_type], now=now)
    row = get_status_record(db, account_id, job_type)

    base: Dict[str, Any] = {"account_id": account_id, "job_type": job_type}
    if row is not None:
        base.update(
            last_run_at=ensure_utc(row.last_run_at),
            success=row.success,
            error=row.error,
            metadata=dict(row.meta or {}),
        )

    if leased:
        job = leased[0]
        return CurrentStatus(
            status=CurrentStatusCode.RUNNING,
            job_id=job.id,
            # attempts counts finished attempts; the running one is the next.
            attempt=job.attempts + 1,
            max_attempts=job.max_attempts,
            started_at=job.locked_at,
            **base,
        )
    if row is None:
        return CurrentStatus(status=CurrentStatusCode.NEVER_RUN, **base)
    if row.success:
        return CurrentStatus(status=CurrentStatusCode.IDLE, **base)
    return CurrentStatus(status=CurrentStatusCode.ERROR, **base)


# ---------------------------------------------------------------------------
# Full sync checkpoint helpers (stored in the full_sync row)
# ---------------------------------------------------------------------------

def get_checkpoint(db: Session, account_id: str) -> Optional[SyncCheckpoint]:
    metadata = cast(FullSyncMetadata, get_metadata(db, account_id, JobType.FULL_SYNC))
    return metadata.checkpoint


def save_checkpoint(db: Session, account_id: str, checkpoint: SyncCheckpoint) -> None:
    checkpoint.last_checkpoint_at = utc_now()
    update_metadata(db, account_id, JobType.FULL_SYNC, {"checkpoint": checkpoint.model_dump(mode="json")})
    logger.info(
        "[full-sync] checkpoint saved account=%s processed=%s",
        account_id,
        checkpoint.processed_count,
    )


def clear_checkpoint(db: Session, account_id: str) -> None:
    update_metadata(db, account_id, JobType.FULL_SYNC, {"checkpoint": None})


def has_completed_full_sync(db: Session, account_id: str) -> bool:
    row = get_status_record(db, account_id, JobType.FULL_SYNC)
    if row is None:
        return False
    return bool((row.meta or {}).get("completed_at"))
