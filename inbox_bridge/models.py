"""
SQLAlchemy ORM models for database tables.

Two schemas live here:
- main database (Base): the companies registry, one row per tenant
- tenant databases (TenantBase): channels, chats, clients, staff users,
  responsibility assignments and messages, one database per company

For Pydantic request/response schemas, see schemas.py.
"""

import enum
import uuid
from datetime import datetime, timezone

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, String, Text
from sqlalchemy.types import LargeBinary, TypeDecorator

from inbox_bridge.identifiers import uuid_from_bytes, uuid_to_bytes
from inbox_bridge.storage import Base, TenantBase


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# =============================================================================
# Column Types
# =============================================================================

class BinaryUUID(TypeDecorator):
    """UUID stored as 16 raw bytes; tolerates legacy 8-byte and empty values on read."""

    impl = LargeBinary(16)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if not isinstance(value, uuid.UUID):
            value = uuid.UUID(str(value))
        return uuid_to_bytes(value)

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return uuid_from_bytes(value)


class Role(str, enum.Enum):
    ADMIN = "admin"
    MANAGER = "manager"
    BOT = "bot"
    QUALITY_CONTROL = "quality_control"

    @classmethod
    def parse(cls, value: str) -> "Role":
        # Older tenant databases carry a misspelled role
        if value == "quality_controll":
            return cls.QUALITY_CONTROL
        return cls(value)

    @property
    def takes_fallback_chats(self) -> bool:
        return self not in (Role.BOT, Role.QUALITY_CONTROL)


class RoleType(TypeDecorator):
    impl = String(32)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        return Role.parse(value).value

    def process_result_value(self, value, dialect):
        if value is None:
            return None
        return Role.parse(value)


class MessageDirection(str, enum.Enum):
    INBOUND = "inbound"
    OUTBOUND = "outbound"
    UNKNOWN = "unknown"


# =============================================================================
# Main Database
# =============================================================================

class Company(Base):
    """
    A tenant.

    Table: companies
    database_name is the logical name handed to the tenant connection pool.
    """
    __tablename__ = "companies"

    id = Column(BinaryUUID, primary_key=True)
    name = Column(String(255), nullable=False)
    database_name = Column(String(255), nullable=False, unique=True)
    api_key = Column(String(255), nullable=False)
    is_active = Column(Boolean, nullable=True, default=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


# =============================================================================
# Tenant Database
# =============================================================================

class Channel(TenantBase):
    __tablename__ = "channels"

    id = Column(BinaryUUID, primary_key=True)
    type = Column(String(64), nullable=False)


class Client(TenantBase):
    """
    An end customer of the tenant.

    email is unique, so placeholder addresses are synthesized when the
    provider does not supply one.
    """
    __tablename__ = "clients"

    id = Column(BinaryUUID, primary_key=True, default=uuid.uuid4)
    full_name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    phone = Column(String(32), nullable=True, index=True)
    chat_ref = Column(String(255), nullable=True, index=True)
    external_id = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Chat(TenantBase):
    __tablename__ = "chats"

    id = Column(BinaryUUID, primary_key=True)
    channel_id = Column(BinaryUUID, ForeignKey("channels.id"), nullable=False, index=True)
    client_id = Column(BinaryUUID, ForeignKey("clients.id"), nullable=True, index=True)
    name = Column(String(255), nullable=False)
    external_id = Column(String(255), nullable=False)  # raw provider chat id


class User(TenantBase):
    """Staff member or automated responder. Bots carry a callback hook URL."""
    __tablename__ = "users"

    id = Column(BinaryUUID, primary_key=True, default=uuid.uuid4)
    name = Column(String(255), nullable=False)
    email = Column(String(255), nullable=False, unique=True)
    role = Column(RoleType, nullable=False, default=Role.MANAGER)
    hook = Column(String(500), nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)


class Responsibility(TenantBase):
    """Current responsible assignee of a client. One row per client."""
    __tablename__ = "responsibilities"

    client_id = Column(BinaryUUID, ForeignKey("clients.id"), primary_key=True)
    user_id = Column(BinaryUUID, ForeignKey("users.id"), nullable=False, index=True)
    assigned_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)


class Message(TenantBase):
    """
    Stored once per provider message id, never updated.

    Table: messages
    Primary Key: id (normalized provider message id, ensures idempotency)
    content holds the canonical JSON list of content parts.
    """
    __tablename__ = "messages"

    id = Column(BinaryUUID, primary_key=True)
    external_id = Column(String(255), nullable=False)
    chat_id = Column(BinaryUUID, ForeignKey("chats.id"), nullable=False, index=True)
    type = Column(String(64), nullable=False)
    content = Column(Text, nullable=False)
    direction = Column(String(16), nullable=False)
    is_echo = Column(Boolean, nullable=True)
    author_user_id = Column(BinaryUUID, nullable=True)
    author_name = Column(String(255), nullable=True)
    created_at = Column(DateTime(timezone=True), nullable=False, default=utcnow)
