"""
Database models for MailSense.

Tables: messages, message_participants, message_analyses, thread_summaries,
contacts, users.

Column types are portable (JSONB and native UUID on PostgreSQL, JSON and
CHAR(32) elsewhere) so the same models run against SQLite in tests.
"""

from __future__ import annotations

import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
    func,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

from mailsense.domain_models.analysis import AnalysisStatus

JSONType = JSON().with_variant(JSONB(), "postgresql")
FK_MESSAGE_ID = "messages.id"


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Base(DeclarativeBase):
    """Base class for all models."""

    pass


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )


class MessageRecord(TimestampMixin, Base):
    """
    A stored email message.

    Analysis writes only touch the denormalized sentiment/escalation columns,
    `signals` and `analysis_status`.
    """

    __tablename__ = "messages"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    thread_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True, index=True)
    provider_message_id: Mapped[str | None] = mapped_column(String(512), nullable=True)
    subject: Mapped[str] = mapped_column(Text, nullable=False, default="")
    body: Mapped[str] = mapped_column(Text, nullable=False, default="")
    signature: Mapped[str | None] = mapped_column(Text, nullable=True)
    from_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    from_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    to_addresses: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    cc_addresses: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    bcc_addresses: Mapped[list[dict[str, Any]]] = mapped_column(
        JSONType, nullable=False, default=list
    )
    received_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    analysis_status: Mapped[int] = mapped_column(
        Integer, nullable=False, default=AnalysisStatus.PENDING.value
    )
    sentiment: Mapped[str | None] = mapped_column(String(16), nullable=True)
    sentiment_score: Mapped[float | None] = mapped_column(Float, nullable=True)
    escalation_detected: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False
    )
    signals: Mapped[list[int]] = mapped_column(JSONType, nullable=False, default=list)

    __table_args__ = (
        Index("ix_messages_tenant_thread", "tenant_id", "thread_id"),
    )

    def __repr__(self) -> str:
        return (
            f"<MessageRecord(id='{self.id}', tenant_id='{self.tenant_id}', "
            f"thread_id='{self.thread_id}', analysis_status={self.analysis_status})>"
        )


class MessageParticipant(TimestampMixin, Base):
    """Link between a message and one of its sender/recipient addresses."""

    __tablename__ = "message_participants"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    message_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey(FK_MESSAGE_ID, ondelete="CASCADE"), nullable=False, index=True
    )
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    direction: Mapped[str] = mapped_column(String(8), nullable=False)
    user_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    contact_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    customer_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    __table_args__ = (
        UniqueConstraint(
            "message_id", "email", "direction", name="uq_message_participants_addr"
        ),
    )

    def __repr__(self) -> str:
        return (
            f"<MessageParticipant(message_id='{self.message_id}', "
            f"direction='{self.direction}', email='[REDACTED]')>"
        )


class MessageAnalysis(TimestampMixin, Base):
    """Persisted result of one analysis kind for one message."""

    __tablename__ = "message_analyses"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    message_id: Mapped[uuid.UUID] = mapped_column(
        Uuid, ForeignKey(FK_MESSAGE_ID, ondelete="CASCADE"), nullable=False
    )
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    result: Mapped[dict[str, Any]] = mapped_column(JSONType, nullable=False)

    confidence: Mapped[float | None] = mapped_column(Float, nullable=True)
    detected: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    risk_level: Mapped[str | None] = mapped_column(String(16), nullable=True)
    urgency: Mapped[str | None] = mapped_column(String(16), nullable=True)
    sentiment_value: Mapped[str | None] = mapped_column(String(16), nullable=True)

    model_used: Mapped[str] = mapped_column(String(128), nullable=False)
    reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    prompt_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completion_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("message_id", "kind", name="uq_message_analyses_message_kind"),
        Index("ix_message_analyses_tenant_kind", "tenant_id", "kind"),
    )

    def __repr__(self) -> str:
        return f"<MessageAnalysis(message_id='{self.message_id}', kind='{self.kind}')>"


class ThreadSummary(TimestampMixin, Base):
    """Running summary of one thread for one analysis kind."""

    __tablename__ = "thread_summaries"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    thread_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    summary: Mapped[str] = mapped_column(Text, nullable=False)
    last_analyzed_message_id: Mapped[uuid.UUID] = mapped_column(Uuid, nullable=False)
    last_analyzed_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    model_used: Mapped[str] = mapped_column(String(128), nullable=False)
    summary_metadata: Mapped[dict[str, Any]] = mapped_column(
        "metadata", JSONType, nullable=False, default=dict
    )
    summary_version: Mapped[str] = mapped_column(String(16), nullable=False)
    prompt_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    completion_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)
    total_tokens: Mapped[int | None] = mapped_column(Integer, nullable=True)

    __table_args__ = (
        UniqueConstraint("thread_id", "kind", name="uq_thread_summaries_thread_kind"),
    )

    def __repr__(self) -> str:
        return (
            f"<ThreadSummary(thread_id='{self.thread_id}', kind='{self.kind}', "
            f"model_used='{self.model_used}')>"
        )


class Contact(TimestampMixin, Base):
    """External contact (customer-side participant)."""

    __tablename__ = "contacts"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    title: Mapped[str | None] = mapped_column(String(256), nullable=True)
    company: Mapped[str | None] = mapped_column(String(256), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    mobile: Mapped[str | None] = mapped_column(String(64), nullable=True)
    address: Mapped[str | None] = mapped_column(Text, nullable=True)
    website: Mapped[str | None] = mapped_column(String(512), nullable=True)
    linkedin: Mapped[str | None] = mapped_column(String(512), nullable=True)
    twitter: Mapped[str | None] = mapped_column(String(256), nullable=True)
    customer_id: Mapped[str | None] = mapped_column(String(64), nullable=True, index=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "email", name="uq_contacts_tenant_email"),
    )

    def __repr__(self) -> str:
        return f"<Contact(id='{self.id}', tenant_id='{self.tenant_id}', email='[REDACTED]')>"


class User(TimestampMixin, Base):
    """System user: a mailbox on one of the tenant's own domains."""

    __tablename__ = "users"

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    tenant_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    name: Mapped[str | None] = mapped_column(String(256), nullable=True)

    __table_args__ = (
        UniqueConstraint("tenant_id", "email", name="uq_users_tenant_email"),
    )

    def __repr__(self) -> str:
        return f"<User(id='{self.id}', tenant_id='{self.tenant_id}', email='[REDACTED]')>"
