"""
Pytest configuration and shared fixtures.

Test settings are put in the environment before any crm_inbox import so the
cached Settings instance is built from them.
"""

import os

os.environ.setdefault("DATABASE_URL", "sqlite:///./test_crm_inbox.db")
os.environ.setdefault("LOG_LEVEL", "WARNING")
os.environ.setdefault("WEBHOOK_SECRET", "test-webhook-secret")

import pytest  # noqa: E402

from crm_inbox.config import get_settings  # noqa: E402

get_settings.cache_clear()

from crm_inbox import storage  # noqa: E402
from crm_inbox.storage import Base, SessionLocal, engine  # noqa: E402


ADMIN = {"X-User-Id": "admin-1", "X-User-Role": "admin"}
BOOKER = {"X-User-Id": "booker-1", "X-User-Role": "booker"}


@pytest.fixture
def tables():
    """Fresh tables for each test."""
    from crm_inbox import models  # noqa: F401

    Base.metadata.create_all(bind=engine)
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def db(tables):
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def client(tables):
    from fastapi.testclient import TestClient

    from crm_inbox.main import app

    with TestClient(app) as test_client:
        yield test_client


def history_entry(action: str, timestamp: str, body: str = None, read=None, **details) -> dict:
    """Build a booking_history entry the way the legacy writer stored them."""
    entry_details = dict(details)
    if body is not None:
        entry_details["body"] = body
    if read is not None:
        entry_details["read"] = read
    channel = "sms" if action.startswith("SMS") else "email" if action.startswith("EMAIL") else None
    if channel:
        entry_details.setdefault("channel", channel)
    return {
        "action": action,
        "timestamp": timestamp,
        "performed_by": None,
        "performed_by_name": "Lead",
        "details": entry_details,
    }


def add_lead(db, lead_id: str, booker_id: str = "booker-1", history: list = None, **fields):
    fields.setdefault("name", f"Lead {lead_id}")
    fields.setdefault("phone", "+447700900000")
    fields.setdefault("status", "New")
    return storage.create_entity(db, id=lead_id, booker_id=booker_id, history=history, **fields)


def add_message(db, message_id: str, entity_id, content: str, sent_at: str, channel: str = "sms", **fields) -> str:
    fields.setdefault("created_at", sent_at)
    success, duplicate = storage.create_message(
        db,
        id=message_id,
        entity_id=entity_id,
        channel=channel,
        content=content,
        sent_at=sent_at,
        **fields,
    )
    assert success and not duplicate
    return message_id
