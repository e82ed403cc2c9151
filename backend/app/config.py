from pydantic_settings import BaseSettings
from typing import Optional
import os
from dotenv import load_dotenv

load_dotenv()


class Settings(BaseSettings):
    DEBUG: bool = False

    # SQLite is fine for local runs and tests; production points this at
    # Postgres so the job queue can use FOR UPDATE SKIP LOCKED.
    DATABASE_URL: str = os.getenv("DATABASE_URL", "sqlite:///./mail_archiver.db")

    # Gmail OAuth client used to refresh access tokens of connected accounts.
    GMAIL_CLIENT_ID: Optional[str] = None
    GMAIL_CLIENT_SECRET: Optional[str] = None

    # Raw .eml files and attachments are written below these directories,
    # one sub-directory per account.
    EMAIL_STORAGE_PATH: str = "./storage/emails"
    ATTACHMENT_STORAGE_PATH: str = "./storage/attachments"

    # Worker runtime
    WORKER_CONCURRENCY: int = 5
    WORKER_POLL_INTERVAL_MS: int = 1000
    # A job locked for longer than this is considered abandoned by a dead
    # worker and is handed back to the queue.
    JOB_LEASE_TIMEOUT_SECONDS: int = 15 * 60
    WORKER_REAP_INTERVAL_SECONDS: int = 60

    # Sync tuning
    SYNC_CHECKPOINT_INTERVAL: int = 500
    GMAIL_BATCH_SIZE: int = 500
    GMAIL_FETCH_CONCURRENCY: int = 10
    IMAP_BATCH_SIZE: int = 100
    IMAP_DEFAULT_SYNC_DAYS: int = 30
    IMAP_INCREMENTAL_SYNC_DAYS: int = 7
    FULL_SYNC_FOLLOWUP_DELAY_SECONDS: int = 5 * 60

    # Adaptive incremental polling (seconds)
    MIN_SYNC_DELAY_SECONDS: int = 5 * 60
    DEFAULT_SYNC_DELAY_SECONDS: int = 15 * 60
    MAX_SYNC_DELAY_SECONDS: int = 30 * 60
    ACTIVE_SYNC_THRESHOLD: int = 10

    AUTO_DELETE_BATCH_SIZE: int = 1000
    AUTO_DELETE_DELAY_SECONDS: int = 60

    # Request-level timeout applied to every provider call.
    PROVIDER_TIMEOUT_SECONDS: float = 30.0

    ALLOWED_ORIGINS: str = "http://localhost:5173,http://localhost:3000"

    class Config:
        env_file = None
        env_file_encoding = "utf-8"
        extra = "ignore"


settings = Settings()
