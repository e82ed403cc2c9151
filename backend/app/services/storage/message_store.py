"""Idempotent persistence of synced messages.

Every sync path funnels through :func:`store_message_if_new`, so a message is
stored at most once per account no matter how often a page is replayed after
a crash or retry.
"""

from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from app.models_sqlalchemy.models import Attachment, Email, FailedSyncMessage
from app.services.providers.base import ProviderMessage
from app.services.storage.blob import BlobStorage
from app.utils.datetime_utils import utc_now
from app.utils.logger import logger


# Gmail label -> (Email column, value while the label is present)
LABEL_FLAGS: Dict[str, tuple] = {
    "UNREAD": ("is_read", False),
    "IMPORTANT": ("is_important", True),
    "SPAM": ("is_spam", True),
    "TRASH": ("is_deleted", True),
    "INBOX": ("is_archived", False),
}

_UPDATABLE_FLAGS = frozenset({"is_read", "is_important", "is_spam", "is_archived", "is_deleted"})


def message_exists(db: Session, account_id: str, message_id: str) -> bool:
    return (
        db.query(Email.id)
        .filter(Email.account_id == account_id, Email.message_id == message_id)
        .first()
        is not None
    )


def message_exists_by_provider_id(db: Session, account_id: str, provider_id: str) -> bool:
    return (
        db.query(Email.id)
        .filter(Email.account_id == account_id, Email.provider_id == provider_id)
        .first()
        is not None
    )


def store_message_if_new(
    db: Session,
    storage: Optional[BlobStorage],
    account_id: str,
    message: ProviderMessage,
    *,
    raw: Optional[bytes] = None,
    folder_id: Optional[str] = None,
) -> bool:
    """Insert ``message`` unless (account_id, message_id) is already stored.

    Returns True only when a new row was created. A concurrent insert of the
    same message loses on the unique constraint and is reported as existing.
    """

    if message_exists(db, account_id, message.message_id):
        return False

    email = Email(
        account_id=account_id,
        folder_id=folder_id,
        message_id=message.message_id,
        provider_id=message.provider_id,
        thread_id=message.thread_id,
        subject=message.subject,
        from_address=message.from_address,
        to_addresses=message.to_addresses,
        cc_addresses=message.cc_addresses,
        bcc_addresses=message.bcc_addresses,
        reply_to=message.reply_to,
        date=message.date,
        text_content=message.text_content,
        html_content=message.html_content,
        labels=list(message.labels),
        size=message.size,
        has_attachments=message.has_attachments,
        is_read=message.is_read,
        is_important=message.is_important,
        is_spam=message.is_spam,
        is_archived=message.is_archived,
        is_deleted=message.is_deleted,
        synced_at=utc_now(),
    )
    db.add(email)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        logger.info("[store] message %s for account %s stored concurrently", message.message_id, account_id)
        return False

    raw = raw if raw is not None else message.raw
    try:
        if storage is not None:
            if raw is not None:
                email.eml_path = storage.store_message(account_id, message.message_id, raw)
            for attachment in message.attachments:
                email.attachments.append(
                    Attachment(
                        filename=attachment.filename,
                        content_type=attachment.content_type,
                        size=attachment.size,
                        file_path=storage.store_attachment(account_id, message.message_id, attachment),
                    )
                )
        db.commit()
    except Exception:
        db.rollback()
        raise
    return True


def record_failed_message(db: Session, account_id: str, message_id: str, reason: str) -> None:
    logger.warning("[store] failed to sync message %s for account %s: %s", message_id, account_id, reason)
    db.add(FailedSyncMessage(account_id=account_id, message_id=message_id, failure_reason=reason[:2000]))
    db.commit()


def label_flag_updates(added: Iterable[str], removed: Iterable[str]) -> Dict[str, bool]:
    """Translate Gmail label additions/removals into Email flag updates."""

    updates: Dict[str, bool] = {}
    for label in added:
        if label in LABEL_FLAGS:
            column, present_value = LABEL_FLAGS[label]
            updates[column] = present_value
    for label in removed:
        if label in LABEL_FLAGS:
            column, present_value = LABEL_FLAGS[label]
            updates[column] = not present_value
    return updates


def _find_email(
    db: Session,
    account_id: str,
    *,
    provider_id: Optional[str] = None,
    message_id: Optional[str] = None,
) -> Optional[Email]:
    query = db.query(Email).filter(Email.account_id == account_id)
    if message_id is not None:
        return query.filter(Email.message_id == message_id).one_or_none()
    if provider_id is not None:
        return query.filter(Email.provider_id == provider_id).first()
    return None


def apply_flag_updates(
    db: Session,
    account_id: str,
    updates: Dict[str, Any],
    *,
    provider_id: Optional[str] = None,
    message_id: Optional[str] = None,
) -> bool:
    """Set flag columns on a stored message; False when it is not stored."""

    email = _find_email(db, account_id, provider_id=provider_id, message_id=message_id)
    if email is None:
        return False
    changed = False
    for column, value in updates.items():
        if column not in _UPDATABLE_FLAGS:
            raise ValueError(f"unsupported flag column {column!r}")
        if getattr(email, column) != value:
            setattr(email, column, value)
            changed = True
    if changed:
        db.commit()
    return True


def apply_label_changes(
    db: Session,
    account_id: str,
    provider_id: str,
    *,
    added: Optional[List[str]] = None,
    removed: Optional[List[str]] = None,
) -> bool:
    email = _find_email(db, account_id, provider_id=provider_id)
    if email is None:
        return False
    labels = [label for label in (email.labels or []) if label not in set(removed or [])]
    for label in added or []:
        if label not in labels:
            labels.append(label)
    email.labels = labels
    db.commit()
    return apply_flag_updates(
        db,
        account_id,
        label_flag_updates(added or [], removed or []),
        provider_id=provider_id,
    )


def mark_deleted(db: Session, account_id: str, provider_ids: Iterable[str]) -> int:
    """Soft-delete messages removed at the provider; rows are never dropped."""

    ids = list(provider_ids)
    if not ids:
        return 0
    count = (
        db.query(Email)
        .filter(Email.account_id == account_id, Email.provider_id.in_(ids), Email.is_deleted.is_(False))
        .update({Email.is_deleted: True}, synchronize_session=False)
    )
    db.commit()
    return count
