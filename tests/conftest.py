"""Shared test fixtures for the ContextVC test suite.

All tests run against an in-memory SQLite database. Tables are created
before and dropped after every test, so each test starts empty.
"""

import os

# Use the in-memory database and plain-text logs before any package imports.
os.environ["DATABASE_URL"] = "sqlite://"
os.environ["LOG_FORMAT"] = "text"
os.environ["ENVIRONMENT"] = "development"

from datetime import datetime, timedelta, timezone

import pytest
from fastapi.testclient import TestClient

from contextvc.database import Base, SessionLocal, engine as db_engine, get_db
from contextvc.main import app
from contextvc.repositories.snapshot_store import SqlSnapshotStore
from contextvc.services.version_control import VersionControlEngine

T0 = datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


class FakeClock:
    """Deterministic clock; time only moves when a test advances it."""

    def __init__(self, start: datetime = T0):
        self.now = start

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now

    def set(self, value: datetime) -> None:
        self.now = value


@pytest.fixture(autouse=True)
def _tables():
    """Fresh schema for every test."""
    from contextvc import models  # noqa: F401
    Base.metadata.create_all(bind=db_engine)
    yield
    Base.metadata.drop_all(bind=db_engine)


@pytest.fixture()
def db():
    """Per-test database session."""
    session = SessionLocal()
    yield session
    session.close()


@pytest.fixture()
def clock():
    return FakeClock()


@pytest.fixture()
def store(db):
    return SqlSnapshotStore(db)


@pytest.fixture()
def engine(store, clock):
    """Version control engine on the test session with a steppable clock."""
    return VersionControlEngine(store, clock=clock)


@pytest.fixture()
def client(db):
    """FastAPI TestClient with the DB dependency overridden to use the test session."""

    def _override_get_db():
        yield db

    app.dependency_overrides[get_db] = _override_get_db
    with TestClient(app) as c:
        yield c
    app.dependency_overrides.clear()


def field(name: str, value, field_type: str = "text", source: str = "manual") -> dict:
    """Factory for field update payloads."""
    return {
        "field_name": name,
        "field_value": value,
        "field_type": field_type,
        "source": source,
    }
