from __future__ import annotations

from typing import Callable

from sqlalchemy.orm import Session

from app.models_sqlalchemy.models import EmailAccount
from app.services.jobs.errors import ProviderNotSupportedError
from app.services.providers.base import ProviderClient
from app.services.providers.gmail_client import GmailClient
from app.services.providers.imap_client import ImapClient


ProviderFactory = Callable[[Session, EmailAccount], ProviderClient]


def get_provider_client(db: Session, account: EmailAccount) -> ProviderClient:
    """Build the provider client for an account based on ``account.provider``."""

    provider = (account.provider or "").lower()
    if provider == "gmail":
        return GmailClient(account, db=db)
    if provider == "imap":
        return ImapClient(account)
    raise ProviderNotSupportedError(f"Unsupported provider {account.provider!r} for account {account.id}")
