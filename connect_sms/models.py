"""
SQLAlchemy ORM models for database tables.

Each table stands in for one family of documents in the church data store.
Messages from every collection share a single table; the ``collection``
column holds the document collection path (``messages``,
``churches/{id}/messages``, ``users/{id}/messages``...), so a message copied
into three collections is three rows.

For Pydantic request/response schemas, see schemas.py.
"""

from datetime import datetime, timezone
from uuid import uuid4

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    DateTime,
    Index,
    String,
    Text,
    text,
)

from connect_sms.collections import GLOBAL_MESSAGES
from connect_sms.storage import Base


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_document_id() -> str:
    return uuid4().hex


class Church(Base):
    """A tenant. Enumerated by creation order during identity resolution."""
    __tablename__ = "churches"

    id = Column(String, primary_key=True, default=new_document_id)
    name = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow, index=True)


class Member(Base):
    """
    A church member. Lives in the global ``users`` collection and is scoped
    to a church through ``church_id``. ``phone`` is stored without the +1
    country prefix.
    """
    __tablename__ = "users"
    __table_args__ = (
        Index("ix_users_phone_church", "phone", "church_id"),
    )

    id = Column(String, primary_key=True, default=new_document_id)
    church_id = Column(String, nullable=False, index=True)
    phone = Column(String, nullable=True)
    name = Column(String, nullable=True)


class Visitor(Base):
    """A visitor record under ``visitors/{church_id}/visitors``."""
    __tablename__ = "visitors"
    __table_args__ = (
        Index("ix_visitors_church_phone", "church_id", "phone"),
    )

    id = Column(String, primary_key=True, default=new_document_id)
    church_id = Column(String, nullable=False)
    phone = Column(String, nullable=True)
    name = Column(String, nullable=True)


class Message(Base):
    """
    One SMS exchange, inbound or outbound, as stored in one collection.

    Table: messages
    - twilio_sid is unique within the global collection only
    - member_id and visitor_id are never both set
    """
    __tablename__ = "messages"
    __table_args__ = (
        Index(
            "ux_messages_global_twilio_sid",
            "twilio_sid",
            unique=True,
            sqlite_where=text(f"collection = '{GLOBAL_MESSAGES}'"),
            postgresql_where=text(f"collection = '{GLOBAL_MESSAGES}'"),
        ),
        Index("ix_messages_collection_ts", "collection", "timestamp"),
        CheckConstraint(
            "member_id IS NULL OR visitor_id IS NULL",
            name="ck_messages_single_identity",
        ),
    )

    # Document ids are unique within a collection, as in the document store
    collection = Column(String, primary_key=True)
    id = Column(String, primary_key=True, default=new_document_id)

    from_phone = Column(String, nullable=True)
    to_phone = Column(String, nullable=True, index=True)
    # Same text under both names; older readers use "message", newer "body"
    body = Column(Text, nullable=True)
    message = Column(Text, nullable=True)

    direction = Column(String, nullable=False)
    status = Column(String, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
    timestamp = Column(DateTime(timezone=True), nullable=False, default=utcnow)

    church_id = Column(String, nullable=True, index=True)
    member_id = Column(String, nullable=True)
    visitor_id = Column(String, nullable=True)
    sender_id = Column(String, nullable=True)
    sent_by = Column(String, nullable=True)
    member_name = Column(String, nullable=True)
    visitor_name = Column(String, nullable=True)
    sender_name = Column(String, nullable=True)
    client_message_id = Column(String, nullable=True)

    twilio_sid = Column(String, nullable=True)
    twilio_message_id = Column(String, nullable=True)
    source = Column(String, nullable=True)
    is_read = Column(Boolean, nullable=False, default=False)


class UnreadCounter(Base):
    """
    Unread counter map for one church and one audience.

    Document: churches/{church_id}/adminConnect/{audience}
    counts: identity id -> unread count
    """
    __tablename__ = "admin_connect"

    church_id = Column(String, primary_key=True)
    audience = Column(String, primary_key=True)
    counts = Column(JSON, nullable=False, default=dict)
