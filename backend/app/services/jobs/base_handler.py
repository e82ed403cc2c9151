"""Shared wrapper around every task handler.

Owns the ledger bookkeeping (start, success, failure), the account checks
and the single point where handler exceptions are classified, so handlers
only contain their task logic.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

from pydantic import ValidationError
from sqlalchemy.orm import Session

from app.models.jobs import (
    TASK_LEDGER_JOB_TYPE,
    RunMetadata,
    SyncJobPayload,
    TaskType,
    parse_payload,
)
from app.models_sqlalchemy.models import EmailAccount
from app.services.accounts import get_account
from app.services.jobs import status
from app.services.jobs.errors import (
    RETRYABLE_CLASSES,
    ErrorClass,
    JobError,
    PermanentError,
    classify_error,
)
from app.services.jobs.queue import JobQueue, JobRecord
from app.services.providers.base import ProviderClient
from app.services.providers.factory import ProviderFactory, get_provider_client
from app.services.storage.blob import BlobStorage
from app.utils.logger import logger


ACCOUNT_INACTIVE_REASON = "Account inactive"


@dataclass
class HandlerDeps:
    """Collaborators handed to every handler run."""

    queue: JobQueue
    provider_factory: ProviderFactory = get_provider_client
    storage: Optional[BlobStorage] = None


@dataclass
class JobContext:
    db: Session
    queue: JobQueue
    job: JobRecord
    task_type: TaskType
    payload: SyncJobPayload
    account: EmailAccount
    provider_factory: ProviderFactory
    storage: Optional[BlobStorage] = None
    _client: Optional[ProviderClient] = field(default=None, repr=False)

    def provider(self) -> Optional[ProviderClient]:
        """Provider client for the account, built on first use; None for mbox accounts."""

        if (self.account.provider or "").lower() == "mbox":
            return None
        if self._client is None:
            self._client = self.provider_factory(self.db, self.account)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.close()
            self._client = None


Handler = Callable[[JobContext], Awaitable[RunMetadata]]


def _deactivate_account(db: Session, account_id: str) -> None:
    account = get_account(db, account_id)
    if account is None or not account.is_active:
        return
    account.is_active = False
    db.commit()
    logger.warning("[jobs] account %s deactivated after authentication failure", account_id)


async def run_job_handler(handler: Handler, *, db: Session, job: JobRecord, deps: HandlerDeps) -> RunMetadata:
    """Run ``handler`` for a leased job and record the outcome in the ledger.

    Any failure is re-raised as a :class:`JobError` whose ``error_class``
    tells the runtime whether and how to retry.
    """

    task_type = TaskType(job.task_type)
    ledger_type = TASK_LEDGER_JOB_TYPE[task_type]
    try:
        payload = parse_payload(task_type, job.payload)
    except ValidationError as exc:
        raise PermanentError(f"Invalid {task_type.value} payload: {exc}") from exc
    account_id = payload.account_id

    status.record_start(db, account_id, ledger_type)
    try:
        account = get_account(db, account_id)
        if account is None:
            raise PermanentError(f"Account {account_id} not found")
        if not account.is_active:
            logger.info("[jobs] skipping %s for inactive account %s", task_type.value, account_id)
            metadata = RunMetadata(task_type=task_type, skipped=True, reason=ACCOUNT_INACTIVE_REASON)
            status.record_success(db, account_id, ledger_type, metadata)
            return metadata

        ctx = JobContext(
            db=db,
            queue=deps.queue,
            job=job,
            task_type=task_type,
            payload=payload,
            account=account,
            provider_factory=deps.provider_factory,
            storage=deps.storage,
        )
        try:
            metadata = await handler(ctx)
        finally:
            await ctx.close()

        metadata.task_type = task_type
        status.record_success(db, account_id, ledger_type, metadata)
        return metadata
    except Exception as exc:
        db.rollback()
        error_class = classify_error(exc)
        attempt = job.attempts + 1
        is_final = error_class not in RETRYABLE_CLASSES or attempt >= job.max_attempts
        logger.error(
            "[jobs] %s failed for account %s (attempt %s/%s, %s): %s",
            task_type.value,
            account_id,
            attempt,
            job.max_attempts,
            error_class.value,
            exc,
            exc_info=not isinstance(exc, JobError),
        )
        status.record_failure(
            db,
            account_id,
            ledger_type,
            str(exc),
            RunMetadata(
                task_type=task_type,
                attempt=attempt,
                max_attempts=job.max_attempts,
                is_final=is_final,
                error_class=error_class.value,
            ),
        )
        if is_final and task_type is TaskType.FULL_SYNC:
            # The next full sync starts from scratch rather than from a stale page token.
            status.clear_checkpoint(db, account_id)
            logger.info("[jobs] cleared full sync checkpoint for account %s", account_id)
        if error_class is ErrorClass.AUTH:
            _deactivate_account(db, account_id)
        if isinstance(exc, JobError):
            raise
        raise JobError(str(exc), error_class=error_class) from exc
