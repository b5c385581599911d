"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

import enum

from sqlalchemy import BigInteger, Boolean, Column, Integer, String, Text

from sms_gateway.storage import Base


class MessageKind(str, enum.Enum):
    """Folder a message lives in."""
    INBOX = "inbox"
    SENT = "sent"
    DRAFT = "draft"
    OUTBOX = "outbox"
    FAILED = "failed"


class Message(Base):
    """
    SQLAlchemy model for stored text messages.

    Table: messages
    Primary Key: id (store-assigned, exposed to clients as an opaque string)
    """
    __tablename__ = "messages"

    id = Column(Integer, primary_key=True, autoincrement=True)
    thread_id = Column(Integer, nullable=False, index=True)
    address = Column(String, nullable=False, index=True)
    body = Column(Text, nullable=False, default="")
    date = Column(BigInteger, nullable=False, index=True)  # epoch milliseconds
    read = Column(Boolean, nullable=False, default=False)
    kind = Column("type", String, nullable=False, index=True, default=MessageKind.INBOX.value)
