"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import uuid

from sqlalchemy import Column, String, Text

from msgsync.storage import Base


# Received message statuses
STATUS_UNREAD = "unread"
STATUS_READ = "read"

# Sent message statuses
STATUS_SENT = "sent"
STATUS_DELIVERED = "delivered"
STATUS_FAILED = "failed"


def new_id() -> str:
    return str(uuid.uuid4())


class ReceivedMessage(Base):
    """
    Message pulled from the provider inbox (or recorded manually).

    Table: received_messages
    Only `status` is ever updated after insertion.
    """
    __tablename__ = "received_messages"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, nullable=False, index=True)
    sender = Column(String, nullable=False, index=True)
    message = Column(Text, nullable=False)
    status = Column(String, nullable=False, default=STATUS_UNREAD)
    ts = Column(String, nullable=False, index=True)  # ISO-8601 UTC string
    created_at = Column(String, nullable=False)  # Server time ISO-8601


class SentMessage(Base):
    """
    Outbound message sent through the provider.

    Table: sent_messages
    """
    __tablename__ = "sent_messages"

    id = Column(String, primary_key=True, default=new_id)
    user_id = Column(String, nullable=False, index=True)
    recipient = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    status = Column(String, nullable=False, default=STATUS_SENT)
    ts = Column(String, nullable=False, index=True)
    created_at = Column(String, nullable=False)


class ProviderSettings(Base):
    """Single-row table with the provider token and originating number."""
    __tablename__ = "provider_settings"

    id = Column(String, primary_key=True, default=new_id)
    token = Column(String, nullable=True)
    phone_number = Column(String, nullable=True)
    updated_at = Column(String, nullable=False)
