"""
Repositories for the persistence phase.

Reads take a plain AsyncSession. Writes take a UnitOfWork and refuse to
run once it is no longer active, so nothing can be written outside the
commit-phase transaction.
"""

from __future__ import annotations

import logging
import uuid
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from mailsense.common.exceptions import TransactionError
from mailsense.db.models import (
    Base,
    Contact,
    MessageAnalysis,
    MessageParticipant,
    MessageRecord,
    ThreadSummary,
    User,
    utcnow,
)
from mailsense.db.session import UnitOfWork
from mailsense.domain_models.analysis import AnalysisResult, AnalysisStatus
from mailsense.domain_models.message import EmailAddress, Message, ParticipantDirection
from sqlalchemy import func, select, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

SIGNATURE_FIELDS = (
    "name",
    "title",
    "company",
    "phone",
    "mobile",
    "address",
    "website",
    "linkedin",
    "twitter",
)
# Placeholder strings models emit instead of leaving a field out
PLACEHOLDER_VALUES = {"", "string", "null", "undefined"}


def _dialect_insert(session: AsyncSession, model: type[Base]):
    dialect = session.get_bind().dialect.name
    if dialect == "postgresql":
        return postgresql.insert(model.__table__)
    if dialect == "sqlite":
        return sqlite.insert(model.__table__)
    raise TransactionError(
        f"Upsert not supported for dialect {dialect}",
        error_code="UPSERT_UNSUPPORTED",
    )


async def upsert(
    session: AsyncSession,
    model: type[Base],
    values: Mapping[str, Any],
    conflict: Sequence[str],
    update_fields: Iterable[str] | None = None,
) -> None:
    """
    INSERT ... ON CONFLICT for PostgreSQL and SQLite.

    Keys are mapped attribute names. With no ``update_fields`` the
    conflicting row is left untouched.
    """
    columns = model.__mapper__.columns
    stmt = _dialect_insert(session, model).values(
        {columns[key]: value for key, value in values.items()}
    )
    index_elements = [columns[key] for key in conflict]
    if update_fields is None:
        stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    else:
        set_ = {columns[key]: values[key] for key in update_fields}
        if "updated_at" in columns:
            set_[columns["updated_at"]] = utcnow()
        stmt = stmt.on_conflict_do_update(index_elements=index_elements, set_=set_)
    await session.execute(stmt)


def _address_dicts(addresses: Sequence[EmailAddress]) -> list[dict[str, Any]]:
    return [addr.model_dump(exclude_none=True) for addr in addresses]


def _to_domain(row: MessageRecord) -> Message:
    return Message(
        message_id=row.id,
        tenant_id=row.tenant_id,
        thread_id=row.thread_id,
        provider_message_id=row.provider_message_id,
        subject=row.subject,
        body=row.body,
        from_address=(
            EmailAddress(email=row.from_email, name=row.from_name)
            if row.from_email
            else None
        ),
        to=[EmailAddress(**a) for a in row.to_addresses or []],
        cc=[EmailAddress(**a) for a in row.cc_addresses or []],
        bcc=[EmailAddress(**a) for a in row.bcc_addresses or []],
        received_at=row.received_at,
        signature=row.signature,
    )


# -----------------------------------------------------------------------------
# Messages
# -----------------------------------------------------------------------------


@dataclass
class ParticipantLink:
    """Resolved identity for one participant address."""

    email: str
    name: str | None
    direction: ParticipantDirection
    user_id: uuid.UUID | None = None
    contact_id: str | None = None
    customer_id: str | None = None


def collect_participants(
    message: Message,
) -> dict[str, tuple[ParticipantDirection, EmailAddress]]:
    """Participants keyed by lower-cased address; the first direction seen wins."""
    participants: dict[str, tuple[ParticipantDirection, EmailAddress]] = {}
    for direction, address in message.addresses():
        key = address.normalized
        if key and key not in participants:
            participants[key] = (direction, address)
    return participants


class MessageRepository:
    async def get(self, session: AsyncSession, message_id: uuid.UUID) -> Message | None:
        row = await session.get(MessageRecord, message_id)
        return _to_domain(row) if row is not None else None

    async def get_status(
        self, session: AsyncSession, message_id: uuid.UUID
    ) -> AnalysisStatus | None:
        status = await session.scalar(
            select(MessageRecord.analysis_status).where(MessageRecord.id == message_id)
        )
        return AnalysisStatus(status) if status is not None else None

    async def get_thread_messages(
        self, session: AsyncSession, thread_id: uuid.UUID
    ) -> list[Message]:
        rows = await session.scalars(
            select(MessageRecord)
            .where(MessageRecord.thread_id == thread_id)
            .order_by(MessageRecord.received_at)
        )
        return [_to_domain(row) for row in rows]

    async def add(self, uow: UnitOfWork, message: Message) -> None:
        session = uow.require_active()
        session.add(
            MessageRecord(
                id=message.message_id,
                tenant_id=message.tenant_id,
                thread_id=message.thread_id,
                provider_message_id=message.provider_message_id,
                subject=message.subject,
                body=message.body,
                signature=message.signature,
                from_email=message.from_address.email if message.from_address else None,
                from_name=message.from_address.name if message.from_address else None,
                to_addresses=_address_dicts(message.to),
                cc_addresses=_address_dicts(message.cc),
                bcc_addresses=_address_dicts(message.bcc),
                received_at=message.received_at,
            )
        )
        await session.flush()

    async def set_status(
        self, uow: UnitOfWork, message_id: uuid.UUID, status: AnalysisStatus
    ) -> None:
        session = uow.require_active()
        await session.execute(
            update(MessageRecord)
            .where(MessageRecord.id == message_id)
            .values(analysis_status=status.value, updated_at=utcnow())
        )

    async def update_sentiment(
        self, uow: UnitOfWork, message_id: uuid.UUID, value: str | None, score: float | None
    ) -> None:
        session = uow.require_active()
        await session.execute(
            update(MessageRecord)
            .where(MessageRecord.id == message_id)
            .values(sentiment=value, sentiment_score=score, updated_at=utcnow())
        )

    async def update_escalation(
        self, uow: UnitOfWork, message_id: uuid.UUID, detected: bool
    ) -> None:
        session = uow.require_active()
        await session.execute(
            update(MessageRecord)
            .where(MessageRecord.id == message_id)
            .values(escalation_detected=detected, updated_at=utcnow())
        )

    async def update_signals(
        self, uow: UnitOfWork, message_id: uuid.UUID, signals: list[int]
    ) -> None:
        session = uow.require_active()
        await session.execute(
            update(MessageRecord)
            .where(MessageRecord.id == message_id)
            .values(signals=signals, updated_at=utcnow())
        )

    async def create_participants(
        self,
        uow: UnitOfWork,
        tenant_id: str,
        message_id: uuid.UUID,
        links: Sequence[ParticipantLink],
    ) -> int:
        session = uow.require_active()
        for link in links:
            await upsert(
                session,
                MessageParticipant,
                {
                    "id": uuid.uuid4(),
                    "tenant_id": tenant_id,
                    "message_id": message_id,
                    "email": link.email,
                    "name": link.name,
                    "direction": link.direction,
                    "user_id": link.user_id,
                    "contact_id": link.contact_id,
                    "customer_id": link.customer_id,
                },
                conflict=("message_id", "email", "direction"),
                update_fields=("name", "user_id", "contact_id", "customer_id"),
            )
        return len(links)

    async def get_participants(
        self, session: AsyncSession, message_id: uuid.UUID
    ) -> list[MessageParticipant]:
        rows = await session.scalars(
            select(MessageParticipant)
            .where(MessageParticipant.message_id == message_id)
            .order_by(MessageParticipant.created_at)
        )
        return list(rows)


# -----------------------------------------------------------------------------
# Analyses
# -----------------------------------------------------------------------------


class AnalysisRepository:
    async def upsert_result(
        self,
        uow: UnitOfWork,
        tenant_id: str,
        message_id: uuid.UUID,
        result: AnalysisResult,
        fields: Mapping[str, Any],
    ) -> None:
        """Insert or replace the record for (message_id, kind)."""
        session = uow.require_active()
        usage = result.usage
        values = {
            "id": uuid.uuid4(),
            "tenant_id": tenant_id,
            "message_id": message_id,
            "kind": result.kind,
            "result": result.result,
            "model_used": result.model_used,
            "reasoning": result.reasoning,
            "prompt_tokens": usage.prompt_tokens if usage else None,
            "completion_tokens": usage.completion_tokens if usage else None,
            "total_tokens": usage.total_tokens if usage else None,
            **fields,
        }
        await upsert(
            session,
            MessageAnalysis,
            values,
            conflict=("message_id", "kind"),
            update_fields=[k for k in values if k not in ("id", "tenant_id", "message_id", "kind")],
        )

    async def list_for_message(
        self, session: AsyncSession, message_id: uuid.UUID
    ) -> list[MessageAnalysis]:
        rows = await session.scalars(
            select(MessageAnalysis)
            .where(MessageAnalysis.message_id == message_id)
            .order_by(MessageAnalysis.kind)
        )
        return list(rows)


# -----------------------------------------------------------------------------
# Thread summaries
# -----------------------------------------------------------------------------


class ThreadSummaryRepository:
    async def list_for_thread(
        self, session: AsyncSession, thread_id: uuid.UUID
    ) -> list[ThreadSummary]:
        rows = await session.scalars(
            select(ThreadSummary)
            .where(ThreadSummary.thread_id == thread_id)
            .order_by(ThreadSummary.kind)
        )
        return list(rows)

    async def get(
        self, session: AsyncSession, thread_id: uuid.UUID, kind: str
    ) -> ThreadSummary | None:
        return await session.scalar(
            select(ThreadSummary).where(
                ThreadSummary.thread_id == thread_id, ThreadSummary.kind == kind
            )
        )

    async def upsert(self, uow: UnitOfWork, values: Mapping[str, Any]) -> None:
        """Last writer wins on (thread_id, kind)."""
        session = uow.require_active()
        values = {"id": uuid.uuid4(), **values}
        await upsert(
            session,
            ThreadSummary,
            values,
            conflict=("thread_id", "kind"),
            update_fields=[k for k in values if k not in ("id", "thread_id", "kind")],
        )


# -----------------------------------------------------------------------------
# Contacts and users
# -----------------------------------------------------------------------------


@dataclass
class ContactRef:
    """Contact identity as seen by the participant linker."""

    id: str
    email: str
    name: str | None = None
    customer_id: str | None = None


def merge_contacts(
    collaborator: Sequence[ContactRef], ensured: Sequence[ContactRef]
) -> list[ContactRef]:
    """Collaborator contacts first; ensured contacts only for addresses it did not return."""
    merged = list(collaborator)
    seen = {c.email.lower() for c in collaborator}
    merged.extend(c for c in ensured if c.email.lower() not in seen)
    return merged


def _clean(value: Any) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    if text.lower() in PLACEHOLDER_VALUES:
        return None
    return text


class ContactRepository:
    async def find_by_emails(
        self, session: AsyncSession, tenant_id: str, emails: Iterable[str]
    ) -> dict[str, Contact]:
        emails = [e.lower() for e in emails]
        if not emails:
            return {}
        rows = await session.scalars(
            select(Contact).where(
                Contact.tenant_id == tenant_id, func.lower(Contact.email).in_(emails)
            )
        )
        return {row.email.lower(): row for row in rows}

    async def ensure_contacts(
        self,
        uow: UnitOfWork,
        tenant_id: str,
        addresses: Sequence[EmailAddress],
    ) -> list[ContactRef]:
        """Create missing contacts; returns refs for every address."""
        session = uow.require_active()
        for address in addresses:
            await upsert(
                session,
                Contact,
                {
                    "id": uuid.uuid4(),
                    "tenant_id": tenant_id,
                    "email": address.normalized,
                    "name": address.name,
                },
                conflict=("tenant_id", "email"),
            )
        found = await self.find_by_emails(
            session, tenant_id, [a.normalized for a in addresses]
        )
        return [
            ContactRef(
                id=str(row.id),
                email=row.email,
                name=row.name,
                customer_id=row.customer_id,
            )
            for row in found.values()
        ]

    async def link_customers(
        self, uow: UnitOfWork, tenant_id: str, contacts: Sequence[ContactRef]
    ) -> None:
        """Copy collaborator customer ids onto local contacts that have none."""
        session = uow.require_active()
        for ref in contacts:
            if not ref.customer_id:
                continue
            await session.execute(
                update(Contact)
                .where(
                    Contact.tenant_id == tenant_id,
                    Contact.email == ref.email.lower(),
                    Contact.customer_id.is_(None),
                )
                .values(customer_id=ref.customer_id, updated_at=utcnow())
            )

    async def enrich_from_signature(
        self,
        uow: UnitOfWork,
        tenant_id: str,
        email: str,
        signature: Mapping[str, Any],
    ) -> bool:
        """
        Fill empty fields on the sender's contact from an extracted signature.

        Existing values are never overwritten. Returns True when something
        was written.
        """
        session = uow.require_active()
        data = {key: _clean(signature.get(key)) for key in SIGNATURE_FIELDS}
        data = {key: value for key, value in data.items() if value}
        if not set(data) - {"company"}:
            logger.debug("Signature carries nothing beyond email/company; skipping")
            return False

        contact = await session.scalar(
            select(Contact).where(
                Contact.tenant_id == tenant_id, Contact.email == email.lower()
            )
        )
        if contact is None:
            return False

        changes = {
            key: value for key, value in data.items() if not getattr(contact, key)
        }
        if not changes:
            return False
        for key, value in changes.items():
            setattr(contact, key, value)
        contact.updated_at = utcnow()
        await session.flush()
        logger.info(
            "Enriched contact %s from signature: %s", contact.id, sorted(changes)
        )
        return True


class UserRepository:
    async def find_by_emails(
        self, session: AsyncSession, tenant_id: str, emails: Iterable[str]
    ) -> dict[str, User]:
        emails = [e.lower() for e in emails]
        if not emails:
            return {}
        rows = await session.scalars(
            select(User).where(
                User.tenant_id == tenant_id, func.lower(User.email).in_(emails)
            )
        )
        return {row.email.lower(): row for row in rows}

    async def ensure_users(
        self,
        uow: UnitOfWork,
        tenant_id: str,
        addresses: Sequence[EmailAddress],
        tenant_domains: Iterable[str],
    ) -> int:
        """Create a user for every address on one of the tenant's own domains."""
        session = uow.require_active()
        domains = {d.lower().lstrip("@") for d in tenant_domains if d}
        internal = [a for a in addresses if a.domain in domains]
        for address in internal:
            await upsert(
                session,
                User,
                {
                    "id": uuid.uuid4(),
                    "tenant_id": tenant_id,
                    "email": address.normalized,
                    "name": address.name,
                },
                conflict=("tenant_id", "email"),
            )
        return len(internal)


def resolve_participant_links(
    participants: Mapping[str, tuple[ParticipantDirection, EmailAddress]],
    users: Mapping[str, User],
    db_contacts: Mapping[str, Contact],
    contacts: Sequence[ContactRef],
) -> list[ParticipantLink]:
    """
    Attach user/contact/customer ids to each participant.

    Users still pick up a contact's customer id so mail with internal
    users counts towards that customer. Addresses with neither a user nor
    a contact are dropped.
    """
    by_email = {c.email.lower(): c for c in contacts}
    links: list[ParticipantLink] = []
    for email, (direction, address) in participants.items():
        user = users.get(email)
        ref = by_email.get(email)
        db_contact = db_contacts.get(email)
        customer_id = (ref.customer_id if ref else None) or (
            db_contact.customer_id if db_contact else None
        )
        if user is not None:
            links.append(
                ParticipantLink(
                    email=email,
                    name=address.name or user.name,
                    direction=direction,
                    user_id=user.id,
                    customer_id=customer_id,
                )
            )
            continue
        contact_id = ref.id if ref else (str(db_contact.id) if db_contact else None)
        if contact_id is None:
            continue
        links.append(
            ParticipantLink(
                email=email,
                name=address.name or (db_contact.name if db_contact else None),
                direction=direction,
                contact_id=contact_id,
                customer_id=customer_id,
            )
        )
    return links


def summary_values(
    tenant_id: str,
    thread_id: uuid.UUID,
    kind: str,
    summary: str,
    message_id: uuid.UUID,
    analyzed_at: datetime,
    model_used: str,
    metadata: Mapping[str, Any],
    usage: Mapping[str, int] | None = None,
    summary_version: str = "v1.0",
) -> dict[str, Any]:
    usage = usage or {}
    return {
        "tenant_id": tenant_id,
        "thread_id": thread_id,
        "kind": kind,
        "summary": summary,
        "last_analyzed_message_id": message_id,
        "last_analyzed_at": analyzed_at,
        "model_used": model_used,
        "summary_metadata": dict(metadata),
        "summary_version": summary_version,
        "prompt_tokens": usage.get("prompt_tokens"),
        "completion_tokens": usage.get("completion_tokens"),
        "total_tokens": usage.get("total_tokens"),
    }
