"""Per-account sync cursor and folder bookkeeping.

The provider change cursor lives in a reserved folder row whose path is
``_SYNC_STATE``; real folders keep their own UID high-water mark in
``last_sync_id``.
"""

from __future__ import annotations

from typing import Iterable, List, Optional

from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from app.models_sqlalchemy.models import SYNC_STATE_FOLDER_PATH, Folder
from app.services.providers.base import ProviderFolder
from app.utils.datetime_utils import utc_now


def _upsert_folder(
    db: Session,
    account_id: str,
    *,
    name: str,
    path: str,
    provider_folder_id: Optional[str] = None,
) -> None:
    dialect = db.get_bind().dialect.name
    insert = postgresql.insert if dialect == "postgresql" else sqlite.insert
    stmt = insert(Folder).values(
        account_id=account_id,
        name=name,
        path=path,
        provider_folder_id=provider_folder_id,
    )
    stmt = stmt.on_conflict_do_update(
        index_elements=["account_id", "path"],
        set_={
            "name": stmt.excluded.name,
            "provider_folder_id": stmt.excluded.provider_folder_id,
            "updated_at": utc_now(),
        },
    )
    db.execute(stmt)


def upsert_folders(db: Session, account_id: str, folders: Iterable[ProviderFolder]) -> List[Folder]:
    """Insert or refresh provider folders by (account_id, path)."""

    for folder in folders:
        if folder.path == SYNC_STATE_FOLDER_PATH:
            continue
        _upsert_folder(
            db,
            account_id,
            name=folder.name,
            path=folder.path,
            provider_folder_id=folder.provider_folder_id,
        )
    db.commit()
    return list_folders(db, account_id)


def list_folders(db: Session, account_id: str) -> List[Folder]:
    return (
        db.query(Folder)
        .filter(Folder.account_id == account_id, Folder.path != SYNC_STATE_FOLDER_PATH)
        .order_by(Folder.path)
        .all()
    )


def get_folder(db: Session, account_id: str, folder_id: str) -> Optional[Folder]:
    return db.query(Folder).filter(Folder.account_id == account_id, Folder.id == folder_id).one_or_none()


def get_sync_cursor(db: Session, account_id: str) -> Optional[str]:
    row = (
        db.query(Folder)
        .filter(Folder.account_id == account_id, Folder.path == SYNC_STATE_FOLDER_PATH)
        .one_or_none()
    )
    return row.last_sync_id if row is not None else None


def set_sync_cursor(db: Session, account_id: str, cursor: Optional[str]) -> None:
    _upsert_folder(db, account_id, name=SYNC_STATE_FOLDER_PATH, path=SYNC_STATE_FOLDER_PATH)
    db.query(Folder).filter(
        Folder.account_id == account_id, Folder.path == SYNC_STATE_FOLDER_PATH
    ).update({Folder.last_sync_id: cursor, Folder.updated_at: utc_now()}, synchronize_session=False)
    db.commit()


def set_folder_high_water_mark(db: Session, folder: Folder, uid: int) -> None:
    """Advance a folder's UID cursor; it never moves backwards."""

    current = int(folder.last_sync_id) if folder.last_sync_id and folder.last_sync_id.isdigit() else 0
    if uid > current:
        folder.last_sync_id = str(uid)
        db.commit()
