from __future__ import annotations

from typing import Optional

from sqlalchemy.orm import Session

from app.models.accounts import AccountSettingsUpdate
from app.models.jobs import AutoDeleteMode
from app.models_sqlalchemy.models import AccountSettings, EmailAccount
from app.services.account_settings import get_or_create_settings
from app.services.auto_delete import clear_marks
from app.services.jobs.queue import JobQueue
from app.services.jobs.scheduler import schedule_auto_delete
from app.utils.logger import logger


def get_account(db: Session, account_id: str) -> Optional[EmailAccount]:
    return db.query(EmailAccount).filter(EmailAccount.id == account_id).one_or_none()


def apply_settings_update(
    db: Session,
    queue: JobQueue,
    account_id: str,
    update: AccountSettingsUpdate,
) -> AccountSettings:
    """Persist a settings change and react to auto-delete mode transitions.

    Entering ``dry-run`` schedules an evaluation; switching to ``off``
    clears existing deletion marks right away.
    """

    row = get_or_create_settings(db, account_id)
    previous_mode = AutoDeleteMode(row.auto_delete_mode)

    changes = update.model_dump(exclude_unset=True)
    for field, value in changes.items():
        if isinstance(value, AutoDeleteMode):
            value = value.value
        setattr(row, field, value)
    db.commit()
    db.refresh(row)

    new_mode = AutoDeleteMode(row.auto_delete_mode)
    if new_mode != previous_mode:
        logger.info(
            "[accounts] account=%s auto_delete_mode %s -> %s",
            account_id,
            previous_mode.value,
            new_mode.value,
        )
        if new_mode is AutoDeleteMode.DRY_RUN:
            schedule_auto_delete(db, queue, account_id)
        elif new_mode is AutoDeleteMode.OFF:
            clear_marks(db, account_id)
    return row
