"""
Message domain models.

The email being analyzed. Read-only input to the analysis core.
"""

from __future__ import annotations

from datetime import datetime
from typing import ClassVar, Literal
from uuid import UUID

from mailsense.common.models import SecureBaseModel
from pydantic import Field, field_validator

ParticipantDirection = Literal["from", "to", "cc", "bcc"]


class EmailAddress(SecureBaseModel):
    """A mailbox address with optional display name."""

    _PII_FIELDS: ClassVar[set[str]] = {"email", "name"}

    email: str
    name: str | None = None

    @field_validator("email")
    @classmethod
    def strip_email(cls, value: str) -> str:
        return value.strip()

    @property
    def normalized(self) -> str:
        return self.email.lower()

    @property
    def domain(self) -> str:
        return self.normalized.rpartition("@")[2]


class Message(SecureBaseModel):
    """Single email message."""

    _PII_FIELDS: ClassVar[set[str]] = {
        "subject",
        "body",
        "signature",
        "from_address",
        "to",
        "cc",
        "bcc",
    }

    message_id: UUID
    tenant_id: str
    thread_id: UUID | None = None
    provider_message_id: str | None = None
    subject: str = ""
    body: str = ""
    from_address: EmailAddress | None = None
    to: list[EmailAddress] = Field(default_factory=list)
    cc: list[EmailAddress] = Field(default_factory=list)
    bcc: list[EmailAddress] = Field(default_factory=list)
    received_at: datetime | None = None
    signature: str | None = None

    def addresses(self) -> list[tuple[ParticipantDirection, EmailAddress]]:
        """All participants with their direction, sender first."""
        pairs: list[tuple[ParticipantDirection, EmailAddress]] = []
        if self.from_address is not None:
            pairs.append(("from", self.from_address))
        pairs.extend(("to", addr) for addr in self.to)
        pairs.extend(("cc", addr) for addr in self.cc)
        pairs.extend(("bcc", addr) for addr in self.bcc)
        return pairs
