from uuid import uuid4

from sqlalchemy import (
    Column,
    String,
    Boolean,
    DateTime,
    Integer,
    BigInteger,
    ForeignKey,
    Text,
    UniqueConstraint,
    Index,
)
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func, expression

from app.models_sqlalchemy import Base, JSONType


# Reserved folder path used to persist the per-account provider change cursor
# (Gmail historyId, or the last IMAP sync timestamp).
SYNC_STATE_FOLDER_PATH = "_SYNC_STATE"


def _uuid() -> str:
    return str(uuid4())


class EmailAccount(Base):
    """A connected mailbox (Gmail via OAuth, IMAP, or an imported mbox archive)."""

    __tablename__ = "email_accounts"

    id = Column(String(36), primary_key=True, default=_uuid)
    email = Column(String(320), nullable=False, index=True)
    display_name = Column(String(255), nullable=True)
    # "gmail", "imap" or "mbox"
    provider = Column(String(32), nullable=False, index=True)
    is_active = Column(Boolean, nullable=False, default=True, server_default=expression.true())

    # Gmail OAuth
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)

    # IMAP
    imap_host = Column(String(255), nullable=True)
    imap_port = Column(Integer, nullable=True)
    imap_secure = Column(Boolean, nullable=True)
    imap_user = Column(String(320), nullable=True)
    imap_password = Column(Text, nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    settings = relationship("AccountSettings", back_populates="account", uselist=False)


class AccountSettings(Base):
    """Per-account scheduling and auto-delete preferences.

    Read by every scheduling decision; only changed through an explicit
    settings update.
    """

    __tablename__ = "account_settings"

    id = Column(String(36), primary_key=True, default=_uuid)
    account_id = Column(
        String(36),
        ForeignKey("email_accounts.id", ondelete="CASCADE"),
        nullable=False,
        unique=True,
        index=True,
    )

    # Cron expression, or the literal "manual".
    sync_frequency = Column(String(64), nullable=False, default="0 * * * *", server_default="0 * * * *")
    sync_paused = Column(Boolean, nullable=False, default=False, server_default=expression.false())

    # "off", "dry-run" or "on"
    auto_delete_mode = Column(String(16), nullable=False, default="off", server_default="off")
    delete_delay_hours = Column(Integer, nullable=True)
    delete_age_months = Column(Integer, nullable=True)
    delete_only_archived = Column(Boolean, nullable=False, default=True, server_default=expression.true())

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    account = relationship("EmailAccount", back_populates="settings")


class Folder(Base):
    """Mailbox / label of an account.

    The row with ``path == SYNC_STATE_FOLDER_PATH`` is not a real folder; its
    ``last_sync_id`` carries the account's incremental sync cursor.
    """

    __tablename__ = "folders"
    __table_args__ = (
        UniqueConstraint("account_id", "path", name="uq_folders_account_path"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    account_id = Column(String(36), ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    name = Column(String(255), nullable=False)
    path = Column(String(512), nullable=False)
    provider_folder_id = Column(String(255), nullable=True)  # Gmail label id
    # IMAP UID high-water mark, or the history cursor for the sentinel row.
    last_sync_id = Column(String(255), nullable=True)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())


class Email(Base):
    """Archived message metadata. The raw RFC822 source lives at ``eml_path``."""

    __tablename__ = "emails"
    __table_args__ = (
        UniqueConstraint("account_id", "message_id", name="uq_emails_account_message"),
        Index("ix_emails_account_provider_id", "account_id", "provider_id"),
        Index("ix_emails_account_marked", "account_id", "marked_for_deletion"),
    )

    id = Column(String(36), primary_key=True, default=_uuid)
    account_id = Column(String(36), ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    folder_id = Column(String(36), ForeignKey("folders.id", ondelete="SET NULL"), nullable=True)

    # RFC822 Message-ID (falls back to the provider id when the header is missing)
    message_id = Column(String(998), nullable=False)
    # Gmail message id / IMAP UID
    provider_id = Column(String(255), nullable=True)
    thread_id = Column(String(255), nullable=True)

    subject = Column(Text, nullable=True)
    from_address = Column(Text, nullable=True)
    to_addresses = Column(Text, nullable=True)
    cc_addresses = Column(Text, nullable=True)
    bcc_addresses = Column(Text, nullable=True)
    reply_to = Column(Text, nullable=True)
    date = Column(DateTime(timezone=True), nullable=True, index=True)

    text_content = Column(Text, nullable=True)
    html_content = Column(Text, nullable=True)
    labels = Column(JSONType, nullable=True)
    size = Column(BigInteger, nullable=True)
    has_attachments = Column(Boolean, nullable=False, default=False, server_default=expression.false())
    eml_path = Column(Text, nullable=True)

    is_read = Column(Boolean, nullable=False, default=False, server_default=expression.false())
    is_important = Column(Boolean, nullable=False, default=False, server_default=expression.false())
    is_spam = Column(Boolean, nullable=False, default=False, server_default=expression.false())
    is_archived = Column(Boolean, nullable=False, default=False, server_default=expression.false())
    is_deleted = Column(Boolean, nullable=False, default=False, server_default=expression.false())

    marked_for_deletion = Column(Boolean, nullable=False, default=False, server_default=expression.false())
    marked_for_deletion_at = Column(DateTime(timezone=True), nullable=True)

    synced_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now(), onupdate=func.now())

    attachments = relationship("Attachment", back_populates="email", cascade="all, delete-orphan")


class Attachment(Base):
    __tablename__ = "attachments"

    id = Column(String(36), primary_key=True, default=_uuid)
    email_id = Column(String(36), ForeignKey("emails.id", ondelete="CASCADE"), nullable=False, index=True)
    filename = Column(String(512), nullable=False)
    content_type = Column(String(255), nullable=False)
    size = Column(BigInteger, nullable=False, default=0)
    file_path = Column(Text, nullable=False)
    # "unscanned", "clean", "infected" or "error"
    scan_status = Column(String(16), nullable=False, default="unscanned", server_default="unscanned")

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())

    email = relationship("Email", back_populates="attachments")


class FailedSyncMessage(Base):
    """A single message that could not be fetched or stored during a sync.

    The surrounding run keeps going; these rows are the permanent trail of
    what was skipped.
    """

    __tablename__ = "failed_sync_messages"

    id = Column(String(36), primary_key=True, default=_uuid)
    account_id = Column(String(36), ForeignKey("email_accounts.id", ondelete="CASCADE"), nullable=False, index=True)
    message_id = Column(String(998), nullable=False)
    failure_reason = Column(Text, nullable=False)

    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
