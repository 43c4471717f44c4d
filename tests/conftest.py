"""
Pytest configuration and shared fixtures.

Environment variables are seeded here before any chatsync import so the
cached settings and the module-level engine pick up the test database.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_chatsync.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")

import pytest

# Clear settings cache before any app imports to ensure test env vars are used
from chatsync.config import get_settings
get_settings.cache_clear()

from chatsync import models  # noqa: E402,F401  register tables
from chatsync.ingest import MessageIngestor
from chatsync.storage import Base, SessionLocal, engine, ensure_session

from tests.fakes import FakeProvider, RecordingNotifier


@pytest.fixture
def db_tables():
    """Fresh tables for each test."""
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
def make_session(db_tables):
    """Create a session row directly in the store."""

    def _make(name: str, status: str = "CONNECTED", owner_id: str = None):
        with SessionLocal() as session:
            return ensure_session(session, name, owner_id, status).id

    return _make


@pytest.fixture
def ingestor(db_tables):
    return MessageIngestor(SessionLocal)


@pytest.fixture
def notifier():
    return RecordingNotifier()


@pytest.fixture
def provider():
    return FakeProvider()
