import base64
from datetime import datetime, timedelta, timezone
from email.message import EmailMessage as MimeMessage

import httpx
import pytest

from app.config import settings
from app.models_sqlalchemy.models import EmailAccount
from app.services.jobs.errors import AuthError, ProviderNotSupportedError
from app.services.providers.factory import get_provider_client
from app.services.providers.gmail_client import GmailClient, normalize_gmail_message
from app.services.providers.imap_client import ImapClient, parse_list_line
from app.services.providers.mime import parse_date_header, parse_rfc822


def _b64url(text: str) -> str:
    return base64.urlsafe_b64encode(text.encode()).decode().rstrip("=")


# ---------------------------------------------------------------------------
# Gmail
# ---------------------------------------------------------------------------

def test_normalize_gmail_message_maps_labels_to_flags():
    data = {
        "id": "18c1",
        "threadId": "t-1",
        "labelIds": ["UNREAD", "IMPORTANT", "CATEGORY_UPDATES"],
        "internalDate": "1700000000000",
        "sizeEstimate": 2048,
        "payload": {
            "mimeType": "multipart/alternative",
            "headers": [
                {"name": "Message-ID", "value": "<abc@mail.example.com>"},
                {"name": "Subject", "value": "Quarterly report"},
                {"name": "From", "value": "Alice <alice@example.com>"},
                {"name": "To", "value": "bob@example.com"},
            ],
            "parts": [
                {"mimeType": "text/plain", "body": {"data": _b64url("plain body")}},
                {"mimeType": "text/html", "body": {"data": _b64url("<p>html body</p>")}},
                {"mimeType": "application/pdf", "filename": "q3.pdf", "body": {"attachmentId": "att-1"}},
            ],
        },
    }

    message = normalize_gmail_message(data)

    assert message.provider_id == "18c1"
    assert message.message_id == "<abc@mail.example.com>"
    assert message.thread_id == "t-1"
    assert message.subject == "Quarterly report"
    assert message.text_content == "plain body"
    assert message.html_content == "<p>html body</p>"
    assert message.has_attachments is True
    assert message.date == datetime.fromtimestamp(1700000000, tz=timezone.utc)
    assert message.is_read is False
    assert message.is_important is True
    assert message.is_spam is False
    # Not in INBOX means archived.
    assert message.is_archived is True
    assert message.is_deleted is False


def test_normalize_gmail_message_falls_back_to_provider_id():
    message = normalize_gmail_message({"id": "x1", "labelIds": ["INBOX", "TRASH", "SPAM"], "payload": {}})

    assert message.message_id == "x1"
    assert message.is_read is True
    assert message.is_archived is False
    assert message.is_deleted is True
    assert message.is_spam is True


def _gmail_account(**overrides):
    values = dict(
        id="acct-gmail",
        email="archive@example.com",
        provider="gmail",
        access_token="old-token",
        refresh_token="refresh-token",
        token_expires_at=datetime.now(timezone.utc) + timedelta(hours=1),
    )
    values.update(overrides)
    return EmailAccount(**values)


@pytest.fixture
def gmail_oauth(monkeypatch):
    monkeypatch.setattr(settings, "GMAIL_CLIENT_ID", "client-id")
    monkeypatch.setattr(settings, "GMAIL_CLIENT_SECRET", "client-secret")


@pytest.mark.asyncio
async def test_gmail_client_refreshes_token_once_on_401(gmail_oauth):
    seen_tokens = []

    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.host == "oauth2.googleapis.com":
            return httpx.Response(200, json={"access_token": "new-token", "expires_in": 3600})
        seen_tokens.append(request.headers["Authorization"])
        if request.headers["Authorization"] == "Bearer old-token":
            return httpx.Response(401, json={"error": "invalid_token"})
        return httpx.Response(200, json={"messages": [{"id": "a"}, {"id": "b"}], "nextPageToken": "next"})

    account = _gmail_account()
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        client = GmailClient(account, http_client=http)
        page = await client.list_messages(page_size=2)

    assert page.message_ids == ["a", "b"]
    assert page.next_page_token == "next"
    assert seen_tokens == ["Bearer old-token", "Bearer new-token"]
    assert account.access_token == "new-token"


@pytest.mark.asyncio
async def test_gmail_client_rejected_refresh_is_an_auth_error(gmail_oauth):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(400, json={"error": "invalid_grant"})

    account = _gmail_account(token_expires_at=datetime.now(timezone.utc) - timedelta(minutes=5))
    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        client = GmailClient(account, http_client=http)
        with pytest.raises(AuthError):
            await client.list_folders()


@pytest.mark.asyncio
async def test_gmail_history_is_collected_across_pages(gmail_oauth):
    pages = {
        None: {
            "history": [
                {"messagesAdded": [{"message": {"id": "m1"}}]},
                {"labelsRemoved": [{"message": {"id": "m0"}, "labelIds": ["UNREAD"]}]},
            ],
            "nextPageToken": "h2",
            "historyId": "205",
        },
        "h2": {
            "history": [{"messagesDeleted": [{"message": {"id": "m7"}}]}],
            "historyId": "210",
        },
    }

    def handler(request: httpx.Request) -> httpx.Response:
        assert request.url.params["startHistoryId"] == "200"
        return httpx.Response(200, json=pages[request.url.params.get("pageToken")])

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        client = GmailClient(_gmail_account(), http_client=http)
        history = await client.get_history_since("200")

    assert history.history_id == "210"
    assert history.messages_added == ["m1"]
    assert history.messages_deleted == ["m7"]
    assert history.labels_removed == {"m0": ["UNREAD"]}


@pytest.mark.asyncio
async def test_gmail_missing_message_returns_none(gmail_oauth):
    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(404, json={"error": {"message": "Requested entity was not found."}})

    async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as http:
        client = GmailClient(_gmail_account(), http_client=http)
        assert await client.get_message("gone") is None


# ---------------------------------------------------------------------------
# IMAP
# ---------------------------------------------------------------------------

def test_parse_list_line():
    assert parse_list_line(b'(\\HasNoChildren \\Trash) "/" "Deleted Items"') == (
        ["\\HasNoChildren", "\\Trash"],
        "Deleted Items",
    )
    assert parse_list_line(b'(\\HasNoChildren) "." INBOX') == (["\\HasNoChildren"], "INBOX")
    assert parse_list_line(b"garbage") is None


class FakeImapConnection:
    def __init__(self, messages):
        # uid -> (flags, raw)
        self.messages = messages
        self.commands = []

    def select(self, mailbox, readonly=False):
        self.commands.append(("SELECT", mailbox, readonly))
        return "OK", [str(len(self.messages)).encode()]

    def list(self):
        return "OK", [
            b'(\\HasNoChildren) "/" "INBOX"',
            b'(\\HasNoChildren \\Trash) "/" "Trash"',
            b'(\\Noselect \\HasChildren) "/" "[Gmail]"',
        ]

    def uid(self, command, *args):
        self.commands.append((command,) + args)
        if command == "SEARCH":
            return "OK", [b" ".join(str(uid).encode() for uid in sorted(self.messages))]
        if command == "FETCH":
            uid = int(args[0])
            flags, raw = self.messages[uid]
            header = f"{uid} (UID {uid} FLAGS ({flags}) BODY[] {{{len(raw)}}}".encode()
            return "OK", [(header, raw), b")"]
        return "OK", [None]

    def expunge(self):
        self.commands.append(("EXPUNGE",))
        return "OK", [None]

    def logout(self):
        return "BYE", [b"logging out"]


def _raw(uid):
    return (
        f"Message-ID: <uid-{uid}@example.com>\r\n"
        f"Subject: Message {uid}\r\n"
        "From: alice@example.com\r\n"
        "To: bob@example.com\r\n"
        "Date: Tue, 05 May 2026 10:00:00 +0200\r\n"
        "\r\n"
        "Hello\r\n"
    ).encode()


def _imap_client(messages):
    account = EmailAccount(id="acct-imap", email="imap@example.com", provider="imap", imap_host="imap.example.com")
    client = ImapClient(account)
    conn = FakeImapConnection(messages)
    client._conn = conn
    return client, conn


@pytest.mark.asyncio
async def test_imap_lists_messages_above_uid_oldest_first():
    client, conn = _imap_client({1: ("", _raw(1)), 2: ("\\Seen", _raw(2)), 3: ("\\Seen \\Flagged", _raw(3))})

    results = await client.list_folder_messages("INBOX", since_uid=1, limit=10)

    assert [r.provider_id for r in results] == ["2", "3"]
    assert results[0].message.message_id == "<uid-2@example.com>"
    assert results[0].message.is_read is True
    assert results[1].message.is_important is True
    assert ("SEARCH", None, "UID 2:*") in conn.commands
    assert results[0].message.date == datetime(2026, 5, 5, 8, 0, tzinfo=timezone.utc)


@pytest.mark.asyncio
async def test_imap_list_folders_skips_noselect():
    client, _ = _imap_client({})

    folders = await client.list_folders()

    assert [f.path for f in folders] == ["INBOX", "Trash"]


@pytest.mark.asyncio
async def test_imap_delete_moves_to_trash_and_expunges():
    client, conn = _imap_client({7: ("", _raw(7))})

    await client.delete_message("7", folder_path="INBOX")

    assert ("COPY", "7", '"Trash"') in conn.commands
    assert ("STORE", "7", "+FLAGS", "(\\Deleted)") in conn.commands
    assert conn.commands[-1] == ("EXPUNGE",)


# ---------------------------------------------------------------------------
# RFC822
# ---------------------------------------------------------------------------

def test_parse_rfc822_extracts_bodies_attachments_and_flags():
    mime = MimeMessage()
    mime["Message-ID"] = "<report@example.com>"
    mime["Subject"] = "Report"
    mime["From"] = "alice@example.com"
    mime["To"] = "bob@example.com"
    mime["Date"] = "Mon, 02 Mar 2026 09:30:00 +0000"
    mime.set_content("Hello Bob")
    mime.add_attachment(b"%PDF-1.7", maintype="application", subtype="pdf", filename="report.pdf")

    message = parse_rfc822(mime.as_bytes(), provider_id="42", flags=["\\Seen"])

    assert message.provider_id == "42"
    assert message.message_id == "<report@example.com>"
    assert "Hello Bob" in message.text_content
    assert message.has_attachments is True
    assert message.attachments[0].filename == "report.pdf"
    assert message.attachments[0].content == b"%PDF-1.7"
    assert message.is_read is True
    assert message.is_important is False
    assert message.date == datetime(2026, 3, 2, 9, 30, tzinfo=timezone.utc)


def test_parse_rfc822_requires_some_identifier():
    with pytest.raises(ValueError):
        parse_rfc822(b"Subject: no id\r\n\r\nbody")


def test_parse_date_header_tolerates_garbage():
    assert parse_date_header("not a date") is None
    assert parse_date_header(None) is None


def test_provider_factory(db):
    assert isinstance(get_provider_client(db, EmailAccount(id="i", provider="imap", email="x@example.com")), ImapClient)
    with pytest.raises(ProviderNotSupportedError):
        get_provider_client(db, EmailAccount(id="m", provider="mbox", email="x@example.com"))
