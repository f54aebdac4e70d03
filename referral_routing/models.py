from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import (
    Boolean,
    Column,
    DateTime,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.ext.mutable import MutableList
from sqlalchemy.orm import declarative_base

from sqlalchemy.types import JSON

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class User(Base):
    __tablename__ = "users"

    id: int = Column(Integer, primary_key=True, index=True)
    email: str = Column(String(255), unique=True, nullable=False, index=True)
    full_name: str | None = Column(String(255), nullable=True)
    is_site_admin: bool = Column(Boolean, default=False, nullable=False)
    created_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class Provider(Base):
    __tablename__ = "providers"

    id: int = Column(Integer, primary_key=True, index=True)
    name: str = Column(String(255), nullable=False)
    created_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class ProviderContact(Base):
    __tablename__ = "provider_contacts"
    __table_args__ = (
        UniqueConstraint("provider_id", "user_id", name="uq_provider_contacts_provider_user"),
    )

    id: int = Column(Integer, primary_key=True, index=True)
    provider_id: int = Column(
        Integer,
        ForeignKey("providers.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    user_id: int = Column(
        Integer,
        ForeignKey("users.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    is_default_referral_handler: bool = Column(Boolean, default=False, nullable=False)
    provider_role: str = Column(String(32), nullable=False, default="user")


class Ticket(Base):
    __tablename__ = "tickets"

    id: int = Column(Integer, primary_key=True, index=True)
    site_id: str | None = Column(String(64), nullable=True, index=True)
    client_name: str | None = Column(String(255), nullable=True)
    description: str | None = Column(Text, nullable=True)
    provider_id: int | None = Column(
        Integer,
        ForeignKey("providers.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    assigned_to: int | None = Column(
        Integer,
        ForeignKey("users.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    assigned_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    status: str = Column(String(64), nullable=False, default="pending", index=True)
    forwarded_from_provider_id: int | None = Column(
        Integer,
        ForeignKey("providers.id", ondelete="SET NULL"),
        nullable=True,
    )
    reassignment_count: int = Column(Integer, nullable=False, default=0, server_default=text("0"))
    last_reassigned_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    version: int = Column(Integer, nullable=False, default=0, server_default=text("0"))
    created_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class TicketEvent(Base):
    """Append-only audit record of one ticket lifecycle transition."""

    __tablename__ = "ticket_events"
    __table_args__ = (
        UniqueConstraint("ticket_id", "sequence", name="uq_ticket_events_ticket_sequence"),
    )

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    ticket_id: int = Column(
        Integer,
        ForeignKey("tickets.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    sequence: int = Column(Integer, nullable=False)
    event_type: str = Column(String(32), nullable=False, index=True)
    actor_id: int | None = Column(Integer, nullable=True)
    actor_type: str | None = Column(String(32), nullable=True)
    previous_state: dict | None = Column(JSON, nullable=True)
    new_state: dict | None = Column(JSON, nullable=True)
    reason: str | None = Column(String(64), nullable=True)
    notes: str | None = Column(Text, nullable=True)
    metadata_: dict = Column("metadata", JSON, nullable=False, default=dict)
    created_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class WebhookEndpoint(Base):
    __tablename__ = "webhook_endpoints"

    id: int = Column(Integer, primary_key=True, index=True)
    site_id: str = Column(String(64), nullable=False, index=True)
    url: str = Column(String(2048), nullable=False)
    secret: str = Column(String(255), nullable=False)
    events: list[str] = Column(
        MutableList.as_mutable(JSON),
        nullable=False,
        default=list,
        server_default=text("'[]'"),
    )
    is_active: bool = Column(Boolean, nullable=False, default=True)
    last_delivery_at: datetime | None = Column(DateTime(timezone=True), nullable=True)
    last_error: str | None = Column(Text, nullable=True)
    created_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class WebhookDelivery(Base):
    __tablename__ = "webhook_deliveries"

    id: int = Column(Integer, primary_key=True, index=True)
    webhook_id: int = Column(
        Integer,
        ForeignKey("webhook_endpoints.id", ondelete="CASCADE"),
        nullable=False,
        index=True,
    )
    event_type: str = Column(String(64), nullable=False, index=True)
    delivery_id: str | None = Column(String(64), nullable=True, index=True)
    request_payload: dict | list | str | int | float | bool | None = Column(
        JSON, nullable=True
    )
    status_code: int | None = Column(Integer, nullable=True)
    success: bool = Column(Boolean, nullable=False, default=False)
    duration_ms: int = Column(Integer, nullable=False, default=0)
    response_body: str | None = Column(Text, nullable=True)
    error_message: str | None = Column(Text, nullable=True)
    created_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )


class OutboxEntry(Base):
    """Pending side effect written in the same unit of work as a ticket mutation."""

    __tablename__ = "side_effect_outbox"

    id: int = Column(Integer, primary_key=True, autoincrement=True)
    ticket_id: int | None = Column(
        Integer,
        ForeignKey("tickets.id", ondelete="SET NULL"),
        nullable=True,
        index=True,
    )
    kind: str = Column(String(32), nullable=False, index=True)
    payload: dict = Column(JSON, nullable=False, default=dict)
    status: str = Column(String(32), nullable=False, default="pending", index=True)
    attempts: int = Column(Integer, nullable=False, default=0)
    max_attempts: int = Column(Integer, nullable=False, default=5)
    next_attempt_at: datetime | None = Column(DateTime(timezone=True), nullable=True, index=True)
    last_error: str | None = Column(Text, nullable=True)
    created_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
    updated_at: datetime = Column(
        DateTime(timezone=True),
        nullable=False,
        default=utcnow,
        onupdate=utcnow,
        server_default=text("CURRENT_TIMESTAMP"),
    )
