"""
SQLAlchemy ORM models for the inbox tables.

For Pydantic request/response schemas, see schemas.py.
"""

import uuid

from sqlalchemy import Boolean, Column, String, Text, UniqueConstraint

from crm_inbox.storage import Base


def _new_id() -> str:
    return str(uuid.uuid4())


class Lead(Base):
    """
    The entity messages are about.

    booking_history holds the legacy embedded event log as a JSON array
    serialized to text. Older rows may hold corrupt JSON.
    """
    __tablename__ = "leads"

    id = Column(String, primary_key=True, default=_new_id)
    name = Column(String, nullable=True)
    phone = Column(String, nullable=True)
    email = Column(String, nullable=True)
    status = Column(String, nullable=True)
    booker_id = Column(String, nullable=True, index=True)
    booking_history = Column(Text, nullable=True)
    updated_at = Column(String, nullable=True)  # ISO-8601 UTC


class Message(Base):
    """
    Canonical flat message record.

    Table: messages
    Unique: (channel, provider_message_id) so a redelivered provider
    webhook never inserts a second row.
    """
    __tablename__ = "messages"
    __table_args__ = (
        UniqueConstraint("channel", "provider_message_id", name="uq_messages_channel_provider_id"),
    )

    id = Column(String, primary_key=True, default=_new_id)
    # No foreign key: rows whose lead is gone are kept for audit
    entity_id = Column(String, nullable=True, index=True)
    channel = Column(String, nullable=False, index=True)  # sms | email
    sent_by = Column(String, nullable=True)
    sent_by_name = Column(String, nullable=True)
    content = Column(Text, nullable=True)
    sms_body = Column(Text, nullable=True)
    email_body = Column(Text, nullable=True)
    subject = Column(Text, nullable=True)
    sent_at = Column(String, nullable=True)  # ISO-8601 UTC, real event time
    created_at = Column(String, nullable=False)  # Server time ISO-8601
    read_status = Column(Boolean, nullable=True)
    read_at = Column(String, nullable=True)
    provider_message_id = Column(String, nullable=True)
