"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from enum import Enum

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)

from social_sync.storage import Base


class ConnectionStatus(str, Enum):
    PENDING = "pending"
    ACTIVE = "active"
    EXPIRED = "expired"
    REVOKED = "revoked"


class Direction(str, Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"


class DeliveryState(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"
    RECEIVED = "received"


class Connection(Base):
    """
    One authorized binding to an external account (e.g. a Facebook Page).

    Table: connections
    At most one active row per (platform, external_account_id).
    """
    __tablename__ = "connections"

    connection_id = Column(String, primary_key=True)
    platform = Column(String, nullable=False, index=True)
    external_account_id = Column(String, nullable=True)
    display_name = Column(String, nullable=True)
    access_token = Column(Text, nullable=True)
    refresh_token = Column(Text, nullable=True)
    token_expires_at = Column(DateTime(timezone=True), nullable=True)
    status = Column(String, nullable=False, default=ConnectionStatus.PENDING.value)
    poll_cursor = Column(Text, nullable=True)
    last_synced_at = Column(DateTime(timezone=True), nullable=True)
    # Pending rows only: sha256 of the OAuth state handed to the browser
    oauth_state_hash = Column(String, nullable=True, unique=True)
    oauth_state_expires_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        Index(
            "uq_connections_active_account",
            "platform",
            "external_account_id",
            unique=True,
            sqlite_where=text("status = 'active'"),
            postgresql_where=text("status = 'active'"),
        ),
    )


class Conversation(Base):
    """
    A unified thread: one per external thread per connection.

    Table: conversations
    Unique: (connection_id, external_thread_id)
    """
    __tablename__ = "conversations"

    conversation_id = Column(String, primary_key=True)
    connection_id = Column(String, ForeignKey("connections.connection_id"), nullable=False, index=True)
    external_thread_id = Column(String, nullable=False)
    participants = Column(JSON, nullable=False, default=list)
    snippet = Column(Text, nullable=True)
    last_message_at = Column(DateTime(timezone=True), nullable=True, index=True)
    unread_count = Column(Integer, nullable=False, default=0)
    read_only = Column(Boolean, nullable=False, default=False)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("connection_id", "external_thread_id", name="uq_conversations_thread"),
    )


class Message(Base):
    """
    One unified message within a conversation.

    Table: messages
    Unique: (conversation_id, external_message_id) once the platform id is known.
    Locally sent messages carry a provisional_id until the platform confirms them.
    """
    __tablename__ = "messages"

    message_id = Column(String, primary_key=True)
    conversation_id = Column(String, ForeignKey("conversations.conversation_id"), nullable=False, index=True)
    external_message_id = Column(String, nullable=True)
    provisional_id = Column(String, nullable=True, unique=True)
    direction = Column(String, nullable=False)
    sender_id = Column(String, nullable=True)
    body = Column(Text, nullable=True)
    # [{"type": ..., "url": ...}]; None for text-only messages
    attachments = Column(JSON, nullable=True)
    sent_at = Column(DateTime(timezone=True), nullable=False, index=True)
    delivery_state = Column(String, nullable=False)
    error = Column(Text, nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint("conversation_id", "external_message_id", name="uq_messages_external"),
    )
