from __future__ import annotations

from uuid import uuid4

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models_sqlalchemy.models import AccountSettings


def get_or_create_settings(db: Session, account_id: str) -> AccountSettings:
    """Return the settings row for an account, creating it with defaults.

    Defaults: hourly sync (``"0 * * * *"``), not paused, auto-delete off,
    only archived messages eligible for deletion.
    """

    row = db.query(AccountSettings).filter(AccountSettings.account_id == account_id).one_or_none()
    if row is not None:
        return row

    row = AccountSettings(
        id=str(uuid4()),
        account_id=account_id,
        sync_frequency="0 * * * *",
        sync_paused=False,
        auto_delete_mode="off",
        delete_delay_hours=None,
        delete_age_months=None,
        delete_only_archived=True,
    )
    db.add(row)
    try:
        db.commit()
    except IntegrityError:
        # Created concurrently by another worker.
        db.rollback()
        return db.query(AccountSettings).filter(AccountSettings.account_id == account_id).one()
    db.refresh(row)
    return row
