"""
SQLAlchemy ORM models for database tables.

This module contains database table definitions using SQLAlchemy.
For Pydantic request/response schemas, see schemas.py.
"""

from sqlalchemy import JSON, Column, ForeignKey, Integer, String, Text, UniqueConstraint
from sqlalchemy.orm import relationship

from chatsync.storage import Base


class SessionRecord(Base):
    """
    One paired messaging account.

    Table: sessions
    Unique: name (human-assigned)
    """
    __tablename__ = "sessions"

    id = Column(Integer, primary_key=True, autoincrement=True)
    name = Column(String, nullable=False, unique=True, index=True)
    owner_id = Column(String, nullable=True)
    status = Column(String, nullable=False)
    pairing_payload = Column(Text, nullable=True)
    created_at = Column(String, nullable=False)  # Server time ISO-8601

    # Deleting a session removes its conversation history
    contacts = relationship("Contact", cascade="all, delete-orphan", passive_deletes=True)
    messages = relationship("Message", cascade="all, delete-orphan", passive_deletes=True)


class Contact(Base):
    """
    A counterparty phone number within one session.

    Table: contacts
    Unique: (session_id, phone_number)
    """
    __tablename__ = "contacts"
    __table_args__ = (UniqueConstraint("session_id", "phone_number", name="uq_contacts_session_phone"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    phone_number = Column(String, nullable=False)
    display_name = Column(String, nullable=True)
    email = Column(String, nullable=True)
    notes = Column(Text, nullable=True)
    tags = Column(JSON, nullable=False, default=list)


class Message(Base):
    """
    A one-to-one text message mirrored from the messaging network.

    Table: messages
    Primary Key: external_id (protocol message id, ensures idempotency)
    """
    __tablename__ = "messages"

    external_id = Column(String, primary_key=True, index=True)
    session_id = Column(Integer, ForeignKey("sessions.id", ondelete="CASCADE"), nullable=False, index=True)
    contact_id = Column(Integer, ForeignKey("contacts.id", ondelete="CASCADE"), nullable=False, index=True)
    direction = Column(String, nullable=False)  # inbound / outbound
    type = Column(String, nullable=False)
    body = Column(Text, nullable=True)
    timestamp = Column(Integer, nullable=False, index=True)  # protocol clock, seconds
    created_at = Column(String, nullable=False)  # Server time ISO-8601


class QuickReply(Base):
    """Canned reply template shown in the dashboard composer."""
    __tablename__ = "quick_replies"

    id = Column(Integer, primary_key=True, autoincrement=True)
    title = Column(String, nullable=False)
    message = Column(Text, nullable=False)
    created_at = Column(String, nullable=False)
