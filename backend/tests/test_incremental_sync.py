import pytest

from app.models_sqlalchemy.models import Email
from app.services.jobs.errors import HistoryGapError, ProviderHTTPError
from app.services.providers.base import HistoryResult
from app.services.storage.message_store import store_message_if_new
from app.services.sync.full_sync import run_full_sync
from app.services.sync.incremental_sync import run_incremental_sync
from app.services.sync.sync_state import get_sync_cursor, set_sync_cursor

from fakes import FakeGmailClient, FakeImapClient, make_message


def _email(db, account_id, provider_id):
    return db.query(Email).filter(Email.account_id == account_id, Email.provider_id == provider_id).one()


@pytest.mark.asyncio
async def test_history_sync_applies_adds_deletes_and_label_changes(db, gmail_account, storage):
    store_message_if_new(db, storage, gmail_account.id, make_message("m1"))
    store_message_if_new(db, storage, gmail_account.id, make_message("m2", labels=("INBOX", "UNREAD")))
    set_sync_cursor(db, gmail_account.id, "50")
    client = FakeGmailClient(
        messages={"m9": make_message("m9")},
        history=HistoryResult(
            history_id="60",
            messages_added=["m9", "m9"],
            messages_deleted=["m1"],
            labels_removed={"m2": ["UNREAD", "INBOX"]},
        ),
    )

    result = await run_incremental_sync(db, client, gmail_account, storage=storage)

    assert result.emails_processed == 3
    assert result.history_id == "60"
    assert get_sync_cursor(db, gmail_account.id) == "60"
    assert _email(db, gmail_account.id, "m9") is not None
    assert _email(db, gmail_account.id, "m1").is_deleted is True
    m2 = _email(db, gmail_account.id, "m2")
    assert m2.is_read is True
    assert m2.is_archived is True
    assert m2.labels == []


@pytest.mark.asyncio
async def test_history_sync_without_cursor_requires_full_sync(db, gmail_account, storage):
    result = await run_incremental_sync(db, FakeGmailClient(), gmail_account, storage=storage)

    assert result.requires_full_sync is True
    assert result.emails_processed == 0


@pytest.mark.asyncio
async def test_payload_history_id_is_used_when_no_cursor_is_stored(db, gmail_account, storage):
    client = FakeGmailClient(history=HistoryResult(history_id="81"))

    result = await run_incremental_sync(db, client, gmail_account, storage=storage, history_id="80")

    assert result.requires_full_sync is None
    assert get_sync_cursor(db, gmail_account.id) == "81"


@pytest.mark.asyncio
async def test_expired_history_cursor_raises_history_gap(db, gmail_account, storage):
    set_sync_cursor(db, gmail_account.id, "1")
    client = FakeGmailClient(
        history_error=ProviderHTTPError(404, "Requested entity was not found.", operation="history"),
    )

    with pytest.raises(HistoryGapError):
        await run_incremental_sync(db, client, gmail_account, storage=storage)
    assert get_sync_cursor(db, gmail_account.id) == "1"


@pytest.mark.asyncio
async def test_imap_incremental_needs_completed_full_sync(db, imap_account, storage):
    client = FakeImapClient({"INBOX": [make_message("1")]})

    result = await run_incremental_sync(db, client, imap_account, storage=storage)

    assert result.requires_full_sync is True


@pytest.mark.asyncio
async def test_imap_incremental_stores_new_and_refreshes_flags(db, imap_account, storage):
    inbox = [make_message("1", labels=("INBOX", "UNREAD")), make_message("2")]
    client = FakeImapClient({"INBOX": inbox})
    await run_full_sync(db, client, imap_account, storage=storage)
    assert _email(db, imap_account.id, "1").is_read is False

    inbox[0].is_read = True
    inbox.append(make_message("3"))
    result = await run_incremental_sync(db, client, imap_account, storage=storage)

    assert result.emails_processed == 1
    assert _email(db, imap_account.id, "3") is not None
    assert _email(db, imap_account.id, "1").is_read is True
