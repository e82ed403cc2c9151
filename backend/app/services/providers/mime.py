"""RFC822 parsing shared by the IMAP client and the mbox parser."""

from __future__ import annotations

from datetime import datetime, timezone
from email import policy
from email.message import EmailMessage as MimeMessage
from email.parser import BytesParser
from email.utils import parsedate_to_datetime
from typing import List, Optional, Tuple

from app.services.providers.base import ProviderAttachment, ProviderMessage


def parse_date_header(value: Optional[str]) -> Optional[datetime]:
    """Parse RFC2822 Date headers into timezone-aware UTC datetimes."""

    if not value:
        return None
    try:
        dt = parsedate_to_datetime(value)
    except (TypeError, ValueError, IndexError):
        return None
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def _header(msg: MimeMessage, name: str) -> Optional[str]:
    value = msg.get(name)
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _extract_bodies(msg: MimeMessage) -> Tuple[Optional[str], Optional[str], List[ProviderAttachment]]:
    text_parts: List[str] = []
    html_parts: List[str] = []
    attachments: List[ProviderAttachment] = []

    for part in msg.walk():
        if part.is_multipart():
            continue
        filename = part.get_filename()
        disposition = part.get_content_disposition()
        content_type = part.get_content_type()

        if filename or disposition == "attachment":
            payload = part.get_payload(decode=True) or b""
            attachments.append(
                ProviderAttachment(
                    filename=filename or "unknown",
                    content_type=content_type or "application/octet-stream",
                    content=payload,
                )
            )
            continue

        if content_type not in ("text/plain", "text/html"):
            continue
        try:
            content = part.get_content()
        except (LookupError, UnicodeDecodeError):
            raw = part.get_payload(decode=True) or b""
            content = raw.decode("utf-8", errors="replace")
        if content_type == "text/plain":
            text_parts.append(content)
        else:
            html_parts.append(content)

    return ("".join(text_parts) or None, "".join(html_parts) or None, attachments)


def parse_rfc822(
    raw: bytes,
    *,
    provider_id: Optional[str] = None,
    flags: Optional[List[str]] = None,
) -> ProviderMessage:
    """Build a :class:`ProviderMessage` from raw RFC822 bytes.

    IMAP flags map to ``is_read`` (``\\Seen``), ``is_important``
    (``\\Flagged``) and ``is_deleted`` (``\\Deleted``).
    """

    msg = BytesParser(policy=policy.default).parsebytes(raw)
    flags = flags or []
    text_content, html_content, attachments = _extract_bodies(msg)

    references = _header(msg, "References")
    thread_id = references.split()[0] if references else None

    message_id = _header(msg, "Message-ID") or provider_id
    if not message_id:
        raise ValueError("message has neither a Message-ID header nor a provider id")

    return ProviderMessage(
        provider_id=provider_id or message_id,
        message_id=message_id,
        thread_id=thread_id,
        subject=_header(msg, "Subject"),
        from_address=_header(msg, "From") or "",
        to_addresses=_header(msg, "To") or "",
        cc_addresses=_header(msg, "Cc"),
        bcc_addresses=_header(msg, "Bcc"),
        reply_to=_header(msg, "Reply-To"),
        date=parse_date_header(_header(msg, "Date")),
        text_content=text_content,
        html_content=html_content,
        labels=list(flags),
        size=len(raw),
        has_attachments=bool(attachments),
        attachments=attachments,
        is_read="\\Seen" in flags,
        is_important="\\Flagged" in flags,
        is_deleted="\\Deleted" in flags,
        raw=raw,
    )
