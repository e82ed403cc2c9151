from __future__ import annotations

import os

from fastapi import APIRouter, Depends, HTTPException, status
from sqlalchemy.orm import Session

from app.models.accounts import (
    AccountSettingsResponse,
    AccountSettingsUpdate,
    DryRunStatusResponse,
    MboxImportRequest,
)
from app.models.jobs import EnqueuedJobResponse
from app.models_sqlalchemy import get_db
from app.models_sqlalchemy.models import EmailAccount
from app.routers.deps import get_queue
from app.services.account_settings import get_or_create_settings
from app.services.accounts import apply_settings_update, get_account
from app.services.auto_delete import get_dry_run_status
from app.services.jobs.queue import JobQueue
from app.services.jobs.scheduler import schedule_mbox_import
from app.utils.logger import logger


router = APIRouter(prefix="/api/accounts", tags=["accounts"])


def _require_account(db: Session, account_id: str) -> EmailAccount:
    account = get_account(db, account_id)
    if account is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Account not found")
    return account


@router.get("/{account_id}/settings", response_model=AccountSettingsResponse)
async def read_settings(account_id: str, db: Session = Depends(get_db)):
    _require_account(db, account_id)
    return get_or_create_settings(db, account_id)


@router.put("/{account_id}/settings", response_model=AccountSettingsResponse)
async def update_settings(
    account_id: str,
    update: AccountSettingsUpdate,
    db: Session = Depends(get_db),
    queue: JobQueue = Depends(get_queue),
):
    _require_account(db, account_id)
    return apply_settings_update(db, queue, account_id, update)


@router.post("/{account_id}/mbox-import", response_model=EnqueuedJobResponse)
async def start_mbox_import(
    account_id: str,
    request: MboxImportRequest,
    db: Session = Depends(get_db),
    queue: JobQueue = Depends(get_queue),
):
    _require_account(db, account_id)
    if not os.path.isfile(request.file_path):
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="mbox file not found")
    job = schedule_mbox_import(queue, account_id, request.file_path)
    logger.info("[accounts] mbox import of %s scheduled for account %s", request.file_path, account_id)
    return EnqueuedJobResponse(scheduled=True, job_id=job.id)


@router.get("/{account_id}/dry-run-status", response_model=DryRunStatusResponse)
async def dry_run_status(account_id: str, db: Session = Depends(get_db)):
    _require_account(db, account_id)
    return get_dry_run_status(db, account_id)
