"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any app module is imported,
so the cached settings and the SQLAlchemy engine are built from them.
"""

import os

import pytest

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_whatsapp.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_SECRET", "test-app-secret")
os.environ.setdefault("WHATSAPP_VERIFY_TOKEN", "test-verify-token")
os.environ.setdefault("WHATSAPP_PHONE_ID", "106540352242922")
os.environ["WHATSAPP_MARK_AS_READ"] = "false"
os.environ["RECONCILE_RETRY_BACKOFF"] = "0"

# Clear settings cache before any app imports to ensure test env vars are used
from app.config import get_settings  # noqa: E402
get_settings.cache_clear()

from app.events import notifier  # noqa: E402
from app.storage import Base, SessionLocal, MessageStore, engine  # noqa: E402


@pytest.fixture
def db_tables():
    """Create tables for one test and drop them afterwards."""
    from app.models import WhatsAppMessage  # noqa: F401

    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(db_tables):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def store(db):
    return MessageStore(db)


@pytest.fixture
def other_store(db_tables):
    """A second, independent session: stands in for another worker process."""
    session = SessionLocal()
    try:
        yield MessageStore(session)
    finally:
        session.close()


@pytest.fixture(autouse=True)
def reset_notifier():
    yield
    notifier.clear()


def fetch_record(wa_message_id: str):
    """Read a record through a fresh session, as a later worker would see it."""
    from app.models import WhatsAppMessage

    with SessionLocal() as session:
        record = (
            session.query(WhatsAppMessage)
            .filter(WhatsAppMessage.wa_message_id == wa_message_id)
            .first()
        )
        if record is not None:
            session.expunge(record)
        return record


@pytest.fixture
def fetch():
    return fetch_record
