import os

from app.models_sqlalchemy.models import Attachment, Email, FailedSyncMessage
from app.services.providers.base import ProviderAttachment
from app.services.storage.blob import sanitize_filename
from app.services.storage.message_store import (
    apply_flag_updates,
    label_flag_updates,
    mark_deleted,
    record_failed_message,
    store_message_if_new,
)

from fakes import make_message


def test_store_is_idempotent_per_account(db, gmail_account, imap_account, storage):
    message = make_message("abc")
    message.raw = b"Message-ID: <abc@example.com>\r\n\r\nhello"

    assert store_message_if_new(db, storage, gmail_account.id, message) is True
    assert store_message_if_new(db, storage, gmail_account.id, message) is False
    # The same Message-ID in another account is a different archive entry.
    assert store_message_if_new(db, storage, imap_account.id, message) is True

    rows = db.query(Email).filter(Email.message_id == "<abc@example.com>").all()
    assert len(rows) == 2
    stored = next(r for r in rows if r.account_id == gmail_account.id)
    assert os.path.exists(stored.eml_path)
    assert stored.labels == ["INBOX"]
    assert stored.synced_at is not None


def test_attachments_are_written_next_to_the_message(db, gmail_account, storage):
    message = make_message("with-file")
    message.has_attachments = True
    message.attachments = [ProviderAttachment("../report 2026.pdf", "application/pdf", b"%PDF-1.7")]

    store_message_if_new(db, storage, gmail_account.id, message)

    attachment = db.query(Attachment).one()
    assert attachment.filename == "../report 2026.pdf"
    assert attachment.size == len(b"%PDF-1.7")
    assert os.path.basename(attachment.file_path) == "report_2026.pdf"
    with open(attachment.file_path, "rb") as fh:
        assert fh.read() == b"%PDF-1.7"


def test_sanitize_filename():
    assert sanitize_filename("../../etc/passwd") == "passwd"
    assert sanitize_filename("") == "attachment"
    assert sanitize_filename("Q3 results (final).xlsx") == "Q3_results_final_.xlsx"


def test_label_flag_updates():
    assert label_flag_updates(["TRASH", "IMPORTANT"], ["UNREAD"]) == {
        "is_deleted": True,
        "is_important": True,
        "is_read": True,
    }
    assert label_flag_updates(["UNREAD", "INBOX"], []) == {"is_read": False, "is_archived": False}
    assert label_flag_updates(["Label_12"], ["CATEGORY_PROMOTIONS"]) == {}


def test_apply_flag_updates_reports_unknown_messages(db, gmail_account, storage):
    store_message_if_new(db, storage, gmail_account.id, make_message("m1"))

    assert apply_flag_updates(db, gmail_account.id, {"is_spam": True}, provider_id="m1") is True
    assert apply_flag_updates(db, gmail_account.id, {"is_spam": True}, provider_id="nope") is False
    assert db.query(Email).filter(Email.provider_id == "m1").one().is_spam is True


def test_mark_deleted_is_a_soft_delete(db, gmail_account, storage):
    for pid in ("m1", "m2"):
        store_message_if_new(db, storage, gmail_account.id, make_message(pid))

    assert mark_deleted(db, gmail_account.id, ["m1", "missing"]) == 1
    assert mark_deleted(db, gmail_account.id, ["m1"]) == 0
    assert db.query(Email).filter(Email.account_id == gmail_account.id).count() == 2


def test_failed_messages_are_recorded(db, gmail_account):
    record_failed_message(db, gmail_account.id, "<broken@example.com>", "x" * 5000)

    row = db.query(FailedSyncMessage).one()
    assert row.message_id == "<broken@example.com>"
    assert len(row.failure_reason) == 2000
