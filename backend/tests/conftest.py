import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from app.models_sqlalchemy import Base
from app.models_sqlalchemy import jobs as _jobs_models  # noqa: F401
from app.models_sqlalchemy.models import EmailAccount
from app.services.jobs.memory_queue import InMemoryJobQueue
from app.services.jobs.queue import SqlJobQueue
from app.services.storage.blob import BlobStorage


@pytest.fixture
def engine():
    """Fresh in-memory SQLite database shared by every session of a test."""
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield engine
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(params=["sql", "memory"])
def queue(request, session_factory):
    if request.param == "sql":
        return SqlJobQueue(session_factory)
    return InMemoryJobQueue()


@pytest.fixture
def memory_queue():
    return InMemoryJobQueue()


@pytest.fixture
def storage(tmp_path):
    return BlobStorage(str(tmp_path / "emails"), str(tmp_path / "attachments"))


def _make_account(db, provider: str, email: str) -> EmailAccount:
    account = EmailAccount(
        email=email,
        provider=provider,
        is_active=True,
        access_token="token" if provider == "gmail" else None,
    )
    db.add(account)
    db.commit()
    db.refresh(account)
    return account


@pytest.fixture
def gmail_account(db):
    return _make_account(db, "gmail", "archive@example.com")


@pytest.fixture
def imap_account(db):
    return _make_account(db, "imap", "imap@example.com")


@pytest.fixture
def mbox_account(db):
    return _make_account(db, "mbox", "mbox@example.com")
