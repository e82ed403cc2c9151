"""Per-account auto-delete rules.

A stored message matches when any configured rule holds (older than
``delete_delay_hours`` since it was synced, or a ``date`` older than
``delete_age_months`` calendar months), narrowed to archived messages when
``delete_only_archived`` is set. Each run handles at most
``AUTO_DELETE_BATCH_SIZE`` messages.
"""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Optional

from dateutil.relativedelta import relativedelta
from sqlalchemy import or_
from sqlalchemy.orm import Query, Session

from app.config import settings
from app.models.accounts import DryRunStatusResponse, MarkedMessage
from app.models.jobs import AutoDeleteMode, AutoDeleteRunMetadata
from app.models_sqlalchemy.models import AccountSettings, Email, EmailAccount, Folder
from app.services.account_settings import get_or_create_settings
from app.services.jobs.errors import is_transient
from app.services.providers.base import ProviderClient
from app.utils.datetime_utils import ensure_utc, utc_now
from app.utils.logger import logger


NO_RULES_MESSAGE = "No deletion rules configured"
DISABLED_MESSAGE = "Auto-delete is disabled"


def has_rules(account_settings: AccountSettings) -> bool:
    return bool(account_settings.delete_delay_hours) or bool(account_settings.delete_age_months)


def matching_query(db: Session, account_settings: AccountSettings, *, now: datetime) -> Query:
    """Messages of the account that match the configured deletion rules."""

    conditions = []
    if account_settings.delete_delay_hours:
        conditions.append(Email.synced_at < now - timedelta(hours=account_settings.delete_delay_hours))
    if account_settings.delete_age_months:
        conditions.append(Email.date < now - relativedelta(months=account_settings.delete_age_months))

    query = db.query(Email).filter(
        Email.account_id == account_settings.account_id,
        Email.is_deleted.is_(False),
        or_(*conditions),
    )
    if account_settings.delete_only_archived:
        query = query.filter(Email.is_archived.is_(True))
    return query.order_by(Email.date, Email.id)


def clear_marks(db: Session, account_id: str) -> int:
    """Drop every deletion mark of the account; returns how many were cleared."""

    cleared = (
        db.query(Email)
        .filter(Email.account_id == account_id, Email.marked_for_deletion.is_(True))
        .update(
            {Email.marked_for_deletion: False, Email.marked_for_deletion_at: None},
            synchronize_session=False,
        )
    )
    db.commit()
    if cleared:
        logger.info("[auto-delete] cleared %s deletion marks for account %s", cleared, account_id)
    return cleared


def _run_dry_run(db: Session, account_settings: AccountSettings, *, now: datetime) -> AutoDeleteRunMetadata:
    query = matching_query(db, account_settings, now=now)
    matched = query.count()
    # Already-flagged messages keep their original mark timestamp.
    batch = query.filter(Email.marked_for_deletion.is_(False)).limit(settings.AUTO_DELETE_BATCH_SIZE).all()
    for email in batch:
        email.marked_for_deletion = True
        email.marked_for_deletion_at = now
    db.commit()
    logger.info(
        "[auto-delete] dry-run account=%s matched=%s newly_marked=%s",
        account_settings.account_id,
        matched,
        len(batch),
    )
    return AutoDeleteRunMetadata(mode=AutoDeleteMode.DRY_RUN, matched=matched, marked=len(batch))


async def _run_live(
    db: Session,
    account_settings: AccountSettings,
    client: ProviderClient,
    *,
    now: datetime,
) -> AutoDeleteRunMetadata:
    batch = matching_query(db, account_settings, now=now).limit(settings.AUTO_DELETE_BATCH_SIZE).all()
    for email in batch:
        if not email.marked_for_deletion:
            email.marked_for_deletion = True
            email.marked_for_deletion_at = now
    db.commit()

    deleted = failed = 0
    for email in batch:
        folder_path = None
        if email.folder_id is not None:
            folder = db.get(Folder, email.folder_id)
            folder_path = folder.path if folder is not None else None
        try:
            await client.delete_message(email.provider_id or email.message_id, folder_path=folder_path)
        except Exception as exc:
            if is_transient(exc) and deleted == 0 and failed == 0:
                # Nothing done yet; let the job retry with backoff.
                raise
            failed += 1
            logger.warning(
                "[auto-delete] failed to delete message %s for account %s: %s",
                email.id,
                account_settings.account_id,
                exc,
            )
            continue
        email.is_deleted = True
        email.marked_for_deletion = False
        email.marked_for_deletion_at = None
        db.commit()
        deleted += 1

    logger.info(
        "[auto-delete] account=%s matched=%s deleted=%s failed=%s",
        account_settings.account_id,
        len(batch),
        deleted,
        failed,
    )
    return AutoDeleteRunMetadata(mode=AutoDeleteMode.ON, matched=len(batch), deleted=deleted, failed=failed)


async def run_auto_delete(
    db: Session,
    account: EmailAccount,
    *,
    client: Optional[ProviderClient] = None,
    now: Optional[datetime] = None,
) -> AutoDeleteRunMetadata:
    now = now or utc_now()
    account_settings = get_or_create_settings(db, account.id)
    mode = AutoDeleteMode(account_settings.auto_delete_mode)

    if mode is AutoDeleteMode.OFF:
        cleared = clear_marks(db, account.id)
        return AutoDeleteRunMetadata(mode=mode, cleared=cleared, skipped=True, message=DISABLED_MESSAGE)

    if not has_rules(account_settings):
        logger.info("[auto-delete] account %s has no deletion rules", account.id)
        return AutoDeleteRunMetadata(mode=mode, skipped=True, message=NO_RULES_MESSAGE)

    if mode is AutoDeleteMode.DRY_RUN:
        return _run_dry_run(db, account_settings, now=now)

    if client is None or not client.supports_delete:
        provider = client.provider_name if client is not None else account.provider
        message = f"Deletion is not supported for {provider} accounts"
        logger.info("[auto-delete] account=%s: %s", account.id, message)
        return AutoDeleteRunMetadata(mode=mode, skipped=True, message=message)

    return await _run_live(db, account_settings, client, now=now)


def get_dry_run_status(db: Session, account_id: str, *, sample_size: int = 20) -> DryRunStatusResponse:
    account_settings = get_or_create_settings(db, account_id)
    marked = db.query(Email).filter(Email.account_id == account_id, Email.marked_for_deletion.is_(True))
    oldest = marked.order_by(Email.marked_for_deletion_at).first()
    sample = marked.order_by(Email.date, Email.id).limit(sample_size).all()
    return DryRunStatusResponse(
        account_id=account_id,
        auto_delete_mode=AutoDeleteMode(account_settings.auto_delete_mode),
        marked_count=marked.count(),
        oldest_marked_at=ensure_utc(oldest.marked_for_deletion_at) if oldest is not None else None,
        sample=[MarkedMessage.model_validate(email) for email in sample],
    )
