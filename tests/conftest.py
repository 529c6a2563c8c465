"""Shared pytest fixtures for CampusConnect."""

from __future__ import annotations

import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from campusconnect import database, storage
from campusconnect.activity import ActivityLogger
from campusconnect.docstore import DocumentStore
from campusconnect.entities import UserRef
from campusconnect.models import Base
from campusconnect.repository import EventRepository

NOW = datetime(2026, 3, 1, 12, 0, 0)


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    session_factory = scoped_session(
        sessionmaker(
            bind=engine,
            autoflush=False,
            autocommit=False,
            future=True,
            expire_on_commit=False,
        )
    )
    database.engine = engine
    database.SessionLocal = session_factory
    storage.engine = engine
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield


@pytest.fixture()
def store() -> DocumentStore:
    return DocumentStore()


@pytest.fixture()
def now() -> datetime:
    return NOW


@pytest.fixture()
def clock():
    return lambda: NOW


@pytest.fixture()
def repo(store, clock) -> EventRepository:
    return EventRepository(store, activity=ActivityLogger(store, clock=clock), clock=clock)


@pytest.fixture()
def organizer() -> UserRef:
    return UserRef("org-1", "Olive Organizer", "https://img.example/olive.png")


@pytest.fixture()
def make_event(repo, organizer):
    """Create an event through the repository and return it."""

    def _make(**fields):
        fields.setdefault("title", "Hack Night")
        fields.setdefault("event_date", NOW + timedelta(days=7))
        result = repo.create(fields, organizer)
        assert result.success, result.message
        return result.data

    return _make
