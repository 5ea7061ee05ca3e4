"""Shared pytest fixtures for the music scheduler."""

from __future__ import annotations

import os
import sys
from pathlib import Path

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import scoped_session, sessionmaker
from sqlalchemy.pool import StaticPool

PROJECT_ROOT = Path(__file__).resolve().parents[1]
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

# Settings are read at import time.
os.environ.setdefault("MUSICSCHEDULER_PASSWORD_HASH_ROUNDS", "4")
os.environ.setdefault("MUSICSCHEDULER_ENABLE_SCHEDULER", "false")
os.environ.setdefault("MUSICSCHEDULER_DISPATCH_TIMEOUT_SECONDS", "2")

from musicscheduler import api, database, maintenance, storage
from musicscheduler.crud import create_church, create_user
from musicscheduler.dispatch import DispatchError, SendingRestricted
from musicscheduler.models import Base


@pytest.fixture(scope="session", autouse=True)
def configure_in_memory_db():
    """Reuse a single in-memory SQLite database for fast, isolated tests."""

    engine = create_engine(
        "sqlite+pysqlite:///:memory:",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    database.enable_sqlite_foreign_keys(engine)
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
    maintenance.engine = engine
    api.SessionLocal = session_factory
    Base.metadata.create_all(bind=engine)
    yield
    session_factory.remove()


@pytest.fixture(autouse=True)
def clean_database():
    """Reset all tables between tests to guarantee isolation."""

    database.SessionLocal.remove()
    Base.metadata.drop_all(bind=database.engine)
    Base.metadata.create_all(bind=database.engine)
    yield
    database.SessionLocal.remove()


@pytest.fixture()
def session():
    db = database.SessionLocal()
    try:
        yield db
    finally:
        db.rollback()
        db.close()


@pytest.fixture()
def church(session):
    church = create_church(session, name="Grace Chapel", timezone_offset_minutes=-360)
    session.commit()
    return church


@pytest.fixture()
def director(session, church):
    user = create_user(
        session,
        church=church,
        email="director@grace.example.org",
        first_name="Dana",
        last_name="Director",
        role="DIRECTOR",
    )
    session.commit()
    return user


@pytest.fixture()
def musicians(session, church):
    people = [
        create_user(
            session,
            church=church,
            email=f"{first.lower()}@grace.example.org",
            first_name=first,
            last_name=last,
        )
        for first, last in [
            ("Avery", "Adams"),
            ("Blake", "Brooks"),
            ("Casey", "Chen"),
            ("Devon", "Diaz"),
        ]
    ]
    session.commit()
    return people


class RecordingDispatcher:
    """Collects invitation messages instead of emailing them."""

    def __init__(self, *, fail_with: Exception | None = None, fail_for: set[str] | None = None):
        self.sent = []
        self.fail_with = fail_with
        self.fail_for = fail_for

    def send_invitation(self, message):
        if self.fail_with is not None and (
            self.fail_for is None or message.to in self.fail_for
        ):
            raise self.fail_with
        self.sent.append(message)
        return f"msg-{len(self.sent)}"

    @property
    def recipients(self) -> list[str]:
        return [message.to for message in self.sent]


@pytest.fixture()
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture()
def failing_dispatcher():
    return RecordingDispatcher(fail_with=DispatchError("provider returned 500"))


@pytest.fixture()
def restricted_dispatcher():
    return RecordingDispatcher(
        fail_with=SendingRestricted("You can only send testing emails to your own address")
    )


@pytest.fixture()
def client(monkeypatch, dispatcher):
    """FastAPI test client with the scheduler disabled and email captured."""

    from fastapi.testclient import TestClient

    monkeypatch.setattr(api, "start_scheduler", lambda: None)
    monkeypatch.setattr(api, "stop_scheduler", lambda: None)
    api.app.dependency_overrides[api.get_dispatcher] = lambda: dispatcher
    try:
        with TestClient(api.app) as test_client:
            yield test_client
    finally:
        api.app.dependency_overrides.clear()
