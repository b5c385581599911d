"""
Pytest configuration and shared fixtures.

Test environment variables are set here, before any application import,
so settings are built with them. Values already present in the
environment win.
"""

import os

os.environ.setdefault("API_KEY", "test-api-key")
os.environ.setdefault("DATABASE_URL", "sqlite:///./test_sms_gateway.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("EVENT_SEND_TIMEOUT_SECONDS", "2")

import pytest
from fastapi.testclient import TestClient

from sms_gateway.config import settings
from sms_gateway.main import app
from sms_gateway.models import Message  # noqa: F401  registers the table
from sms_gateway.storage import Base, SessionLocal, engine, insert_message
from sms_gateway.stream import events_app


@pytest.fixture(scope="function")
def client():
    """Create test client with fresh database for each test."""
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as test_client:
        yield test_client

    app.dependency_overrides.clear()
    # Cleanup - drop all tables after test
    Base.metadata.drop_all(bind=engine)


@pytest.fixture(scope="function")
def events_client():
    """Test client for the event channel application."""
    with TestClient(events_app) as test_client:
        yield test_client


@pytest.fixture
def auth_headers() -> dict:
    return {"X-API-Key": settings.API_KEY}


@pytest.fixture
def seed_message(client):
    """Insert a message directly into the store and return its id."""
    def _seed(address: str, body: str = "hello", read: bool = False, date: int = None, kind: str = "inbox") -> str:
        with SessionLocal() as db:
            message = insert_message(db, address=address, body=body, kind=kind, read=read, date=date)
            return str(message.id)
    return _seed
