from __future__ import annotations

import hashlib
import os
import re
from pathlib import Path
from typing import Optional

from app.config import settings
from app.services.providers.base import ProviderAttachment


_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]+")


def _message_dir_name(message_key: str) -> str:
    # Message-IDs contain "<", ">", "@" and may exceed filename limits.
    return hashlib.sha256(message_key.encode("utf-8")).hexdigest()


def sanitize_filename(filename: str) -> str:
    name = os.path.basename(filename or "").strip()
    name = _UNSAFE_CHARS.sub("_", name).strip("._")
    return name[:200] or "attachment"


class BlobStorage:
    """Filesystem content store for raw .eml files and attachments.

    Paths are deterministic per (account, message), so writing the same
    message twice overwrites rather than duplicates.
    """

    def __init__(self, email_root: Optional[str] = None, attachment_root: Optional[str] = None) -> None:
        self.email_root = Path(email_root or settings.EMAIL_STORAGE_PATH)
        self.attachment_root = Path(attachment_root or settings.ATTACHMENT_STORAGE_PATH)

    def store_message(self, account_id: str, message_key: str, raw: bytes) -> str:
        path = self.email_root / account_id / f"{_message_dir_name(message_key)}.eml"
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_bytes(raw)
        return str(path)

    def store_attachment(self, account_id: str, message_key: str, attachment: ProviderAttachment) -> str:
        directory = self.attachment_root / account_id / _message_dir_name(message_key)
        directory.mkdir(parents=True, exist_ok=True)
        path = directory / sanitize_filename(attachment.filename)
        path.write_bytes(attachment.content)
        return str(path)

