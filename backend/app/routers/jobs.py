from __future__ import annotations

from datetime import timedelta
from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, Query, status
from sqlalchemy.orm import Session

from app.models.jobs import (
    CurrentStatus,
    EnqueuedJobResponse,
    JobListResponse,
    JobResponse,
    JobType,
    SyncRequest,
)
from app.models_sqlalchemy import get_db
from app.routers.deps import get_queue
from app.services.accounts import get_account
from app.services.jobs.queue import JobQueue
from app.services.jobs.scheduler import schedule_full_sync, schedule_incremental_sync
from app.services.jobs.status import get_current_status
from app.utils.logger import logger


router = APIRouter(prefix="/api/jobs", tags=["jobs"])


@router.get("", response_model=JobListResponse)
async def list_jobs(
    view: Literal["active", "pending", "failed"] = Query("active"),
    limit: int = Query(50, ge=1, le=500),
    queue: JobQueue = Depends(get_queue),
):
    if view == "active":
        jobs = queue.list_active(limit)
    elif view == "pending":
        jobs = queue.list_pending(limit)
    else:
        jobs = queue.list_failed(limit)
    return JobListResponse(view=view, jobs=[JobResponse.model_validate(job) for job in jobs])


@router.get("/status", response_model=CurrentStatus)
async def job_status(
    account_id: str,
    job_type: JobType = JobType.SYNC,
    db: Session = Depends(get_db),
    queue: JobQueue = Depends(get_queue),
):
    return get_current_status(db, queue, account_id, job_type)


@router.post("/sync", response_model=EnqueuedJobResponse)
async def trigger_sync(
    request: SyncRequest,
    db: Session = Depends(get_db),
    queue: JobQueue = Depends(get_queue),
):
    account = get_account(db, request.account_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    if request.type not in ("full", "incremental"):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="type must be 'full' or 'incremental'")

    if request.type == "full":
        job = schedule_full_sync(queue, account.id)
    else:
        # Paused or manual accounts still sync when asked explicitly.
        job = schedule_incremental_sync(db, queue, account.id, delay=timedelta(0), force=True)

    logger.info("[jobs] %s sync requested for account %s -> job %s", request.type, account.id, job.id)
    return EnqueuedJobResponse(scheduled=True, job_id=job.id)


@router.post("/{job_id}/retry", response_model=JobResponse)
async def retry_job(job_id: str, queue: JobQueue = Depends(get_queue)):
    job = queue.reschedule(job_id)
    if job is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Job not found")
    return JobResponse.model_validate(job)


@router.delete("/{job_id}")
async def cancel_job(job_id: str, queue: JobQueue = Depends(get_queue)):
    if not queue.cancel(job_id):
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Job is running and cannot be cancelled")
    return {"cancelled": True, "job_id": job_id}
