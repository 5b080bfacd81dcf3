"""
Pytest configuration and shared fixtures.
"""

import logging
from datetime import datetime, timedelta, timezone

import pytest
from cryptography.hazmat.primitives.asymmetric import rsa
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from activation_server.config import Settings
from activation_server.database import migrate
from activation_server.main import create_app
from activation_server.store import SqlLicenseStore
from activation_server.utils.crypto import ResponseSigner

T0 = datetime(2026, 10, 19, 12, 0, tzinfo=timezone.utc)


class FakeClock:
    """Controllable replacement for the server's UTC clock."""

    def __init__(self, now: datetime = T0):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


@pytest.fixture(autouse=True)
def restore_logging():
    """Undo dictConfig calls made by the CLI and logging tests."""
    root = logging.getLogger()
    handlers, level = root.handlers[:], root.level
    loggers = {name: logging.getLogger(name).level for name in ("sqlalchemy.engine", "uvicorn.access")}
    yield
    for handler in root.handlers[:]:
        if handler not in handlers:
            root.removeHandler(handler)
    root.setLevel(level)
    for name, saved in loggers.items():
        logging.getLogger(name).setLevel(saved)


@pytest.fixture
def engine():
    """In-memory SQLite shared by every connection of the test."""
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
        future=True,
    )
    yield eng
    eng.dispose()


@pytest.fixture
def store(engine):
    """SQL store over a migrated, empty schema."""
    migrate(engine)
    return SqlLicenseStore(engine, owns_engine=False)


@pytest.fixture(scope="session")
def private_key():
    return rsa.generate_private_key(public_exponent=65537, key_size=2048)


@pytest.fixture
def public_key(private_key):
    return private_key.public_key()


@pytest.fixture
def signer(private_key):
    return ResponseSigner(private_key)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def settings():
    return Settings(trial_prefix="TRIAL-", trial_duration_minutes=10)


@pytest.fixture
def app(settings, store, signer, clock):
    return create_app(settings=settings, store=store, signer=signer, clock=clock)


@pytest.fixture
def client(app):
    with TestClient(app) as c:
        yield c
