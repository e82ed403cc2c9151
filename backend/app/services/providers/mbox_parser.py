from __future__ import annotations

import hashlib
import mailbox
import os
from typing import Iterator, Union

from app.services.jobs.errors import PermanentError
from app.services.providers.base import FetchResult
from app.services.providers.mime import parse_rfc822


class MboxParser:
    """Lazy reader for a local mbox file.

    Messages are yielded one at a time; iteration can be restarted from the
    start by calling :meth:`iter_messages` again. Messages without a
    Message-ID header get a content hash id so re-imports stay idempotent.
    """

    def __init__(self, file_path: Union[str, os.PathLike]) -> None:
        self.file_path = os.fspath(file_path)

    def validate(self) -> None:
        if not os.path.isfile(self.file_path):
            raise PermanentError(f"mbox file not found: {self.file_path}")
        with open(self.file_path, "rb") as fh:
            head = fh.read(5)
        # An mbox starts with a "From " separator line; empty files are allowed.
        if head and head != b"From ":
            raise PermanentError(f"not an mbox file: {self.file_path}")

    def iter_messages(self) -> Iterator[FetchResult]:
        box = mailbox.mbox(self.file_path, create=False)
        try:
            for index, key in enumerate(box.iterkeys()):
                provider_id = f"mbox:{index}"
                try:
                    raw = box.get_bytes(key)
                    provider_id = "mbox:" + hashlib.sha256(raw).hexdigest()[:32]
                    yield FetchResult(provider_id, message=parse_rfc822(raw, provider_id=provider_id))
                except (ValueError, LookupError) as exc:
                    yield FetchResult(provider_id, error=exc)
        finally:
            box.close()
