"""
Job queue schemas: task types, per-task payloads and per-job-type run metadata.

Payloads are what a job carries in the queue; metadata is what a run leaves
behind in the job status ledger. Both are typed per task/job type so a handler
cannot silently read another task's fields.
"""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Type, Tuple

from pydantic import BaseModel, ConfigDict, Field


# ============================================================================
# ENUMS
# ============================================================================

class TaskType(str, Enum):
    """Closed set of task types the worker runtime knows how to execute."""
    FULL_SYNC = "full_sync"
    INCREMENTAL_SYNC = "incremental_sync"
    FOLDER_SYNC = "folder_sync"
    AUTO_DELETE = "auto_delete"
    MBOX_IMPORT = "mbox_import"


class JobType(str, Enum):
    """Logical job types tracked by the job status ledger."""
    SYNC = "sync"
    FULL_SYNC = "full_sync"
    INCREMENTAL_SYNC = "incremental_sync"
    FOLDER_SYNC = "folder_sync"
    AUTO_DELETE = "auto_delete"
    MBOX_IMPORT = "mbox_import"


class CurrentStatusCode(str, Enum):
    RUNNING = "running"
    IDLE = "idle"
    ERROR = "error"
    NEVER_RUN = "never_run"


class AutoDeleteMode(str, Enum):
    OFF = "off"
    DRY_RUN = "dry-run"
    ON = "on"


# Which queued task types count as "this job type is running".
JOB_TYPE_TASKS: Dict[JobType, Tuple[TaskType, ...]] = {
    JobType.SYNC: (TaskType.FULL_SYNC, TaskType.INCREMENTAL_SYNC, TaskType.FOLDER_SYNC),
    JobType.FULL_SYNC: (TaskType.FULL_SYNC,),
    JobType.INCREMENTAL_SYNC: (TaskType.INCREMENTAL_SYNC,),
    JobType.FOLDER_SYNC: (TaskType.FOLDER_SYNC,),
    JobType.AUTO_DELETE: (TaskType.AUTO_DELETE,),
    JobType.MBOX_IMPORT: (TaskType.MBOX_IMPORT,),
}

# Ledger row each task type reports its run outcome to.
TASK_LEDGER_JOB_TYPE: Dict[TaskType, JobType] = {
    TaskType.FULL_SYNC: JobType.SYNC,
    TaskType.INCREMENTAL_SYNC: JobType.SYNC,
    TaskType.FOLDER_SYNC: JobType.SYNC,
    TaskType.AUTO_DELETE: JobType.AUTO_DELETE,
    TaskType.MBOX_IMPORT: JobType.MBOX_IMPORT,
}


# ============================================================================
# PAYLOADS
# ============================================================================

class SyncJobPayload(BaseModel):
    account_id: str


class FullSyncPayload(SyncJobPayload):
    pass


class IncrementalSyncPayload(SyncJobPayload):
    history_id: Optional[str] = None
    last_sync_at: Optional[str] = None


class FolderSyncPayload(SyncJobPayload):
    folder_id: str
    folder_path: str


class AutoDeletePayload(SyncJobPayload):
    pass


class MboxImportPayload(SyncJobPayload):
    file_path: str


TASK_PAYLOADS: Dict[TaskType, Type[SyncJobPayload]] = {
    TaskType.FULL_SYNC: FullSyncPayload,
    TaskType.INCREMENTAL_SYNC: IncrementalSyncPayload,
    TaskType.FOLDER_SYNC: FolderSyncPayload,
    TaskType.AUTO_DELETE: AutoDeletePayload,
    TaskType.MBOX_IMPORT: MboxImportPayload,
}


def parse_payload(task_type: TaskType, payload: Dict[str, Any]) -> SyncJobPayload:
    return TASK_PAYLOADS[task_type].model_validate(payload)


# ============================================================================
# LEDGER METADATA
# ============================================================================

class RunMetadata(BaseModel):
    """Fields shared by every run record.

    ``extra="allow"`` keeps keys written by older runs (or by a partial
    update) instead of dropping them on the next read.
    """
    model_config = ConfigDict(extra="allow")

    task_type: Optional[TaskType] = None
    skipped: Optional[bool] = None
    reason: Optional[str] = None
    attempt: Optional[int] = None
    max_attempts: Optional[int] = None
    is_final: Optional[bool] = None
    error_class: Optional[str] = None


class SyncCheckpoint(BaseModel):
    """Pagination state of an in-flight full sync."""
    page_token: Optional[str] = None
    processed_count: int = 0
    # Change cursor captured before the first page, reused on resume.
    history_id: Optional[str] = None
    last_processed_message_id: Optional[str] = None
    started_at: datetime
    last_checkpoint_at: Optional[datetime] = None


class SyncRunMetadata(RunMetadata):
    provider: Optional[str] = None
    emails_processed: Optional[int] = None
    emails_failed: Optional[int] = None
    folders_synced: Optional[int] = None
    folder_path: Optional[str] = None
    history_id: Optional[str] = None
    requires_full_sync: Optional[bool] = None
    full_sync_scheduled: Optional[bool] = None
    next_sync_delay_seconds: Optional[int] = None


class FullSyncMetadata(RunMetadata):
    checkpoint: Optional[SyncCheckpoint] = None
    completed_at: Optional[datetime] = None
    emails_processed: Optional[int] = None


class AutoDeleteRunMetadata(RunMetadata):
    mode: Optional[AutoDeleteMode] = None
    matched: Optional[int] = None
    marked: Optional[int] = None
    deleted: Optional[int] = None
    failed: Optional[int] = None
    cleared: Optional[int] = None
    message: Optional[str] = None


class MboxImportMetadata(RunMetadata):
    file_path: Optional[str] = None
    processed: Optional[int] = None
    failed: Optional[int] = None
    skipped_existing: Optional[int] = None
    errors: List[str] = Field(default_factory=list)
    file_deleted: Optional[bool] = None


JOB_METADATA_MODELS: Dict[JobType, Type[RunMetadata]] = {
    JobType.SYNC: SyncRunMetadata,
    JobType.FULL_SYNC: FullSyncMetadata,
    JobType.INCREMENTAL_SYNC: SyncRunMetadata,
    JobType.FOLDER_SYNC: SyncRunMetadata,
    JobType.AUTO_DELETE: AutoDeleteRunMetadata,
    JobType.MBOX_IMPORT: MboxImportMetadata,
}


def parse_metadata(job_type: JobType, raw: Optional[Dict[str, Any]]) -> RunMetadata:
    return JOB_METADATA_MODELS[job_type].model_validate(raw or {})


# ============================================================================
# API RESPONSES
# ============================================================================

class CurrentStatus(BaseModel):
    account_id: str
    job_type: JobType
    status: CurrentStatusCode
    last_run_at: Optional[datetime] = None
    success: Optional[bool] = None
    error: Optional[str] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)
    # Only set while running
    job_id: Optional[str] = None
    attempt: Optional[int] = None
    max_attempts: Optional[int] = None
    started_at: Optional[datetime] = None


class JobResponse(BaseModel):
    id: str
    task_type: TaskType
    account_id: Optional[str]
    payload: Dict[str, Any]
    run_at: datetime
    priority: int
    attempts: int
    max_attempts: int
    key: Optional[str]
    locked_at: Optional[datetime]
    locked_by: Optional[str]
    last_error: Optional[str]
    failed_at: Optional[datetime]
    created_at: Optional[datetime]

    class Config:
        from_attributes = True


class JobListResponse(BaseModel):
    view: str
    jobs: List[JobResponse]


class SyncRequest(BaseModel):
    account_id: str
    type: str = "incremental"  # "full" or "incremental"


class EnqueuedJobResponse(BaseModel):
    scheduled: bool
    job_id: Optional[str] = None
    reason: Optional[str] = None
