"""
Output schemas for each analysis kind.

Every model response is validated against one of these before it is
accepted. Unknown keys returned by the model are dropped.
"""

from __future__ import annotations

import re
from typing import Annotated, Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

_EMAIL_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")

Confidence = Annotated[float, Field(ge=0.0, le=1.0)]
Severity = Literal["low", "medium", "high", "critical"]


class _AnalysisOutput(BaseModel):
    model_config = ConfigDict(extra="ignore")


class SentimentOutput(_AnalysisOutput):
    value: Literal["positive", "negative", "neutral"]
    confidence: Confidence


class EscalationOutput(_AnalysisOutput):
    detected: bool
    confidence: Confidence
    reason: str | None = None
    urgency: Severity | None = None


class UpsellOutput(_AnalysisOutput):
    detected: bool
    confidence: Confidence
    opportunity: str | None = None
    product: str | None = None


class ChurnOutput(_AnalysisOutput):
    risk_level: Severity = Field(alias="riskLevel")
    confidence: Confidence
    indicators: list[str]
    reason: str | None = None

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class KudosOutput(_AnalysisOutput):
    detected: bool
    confidence: Confidence
    message: str | None = None
    category: Literal["product", "service", "team", "other"] | None = None


class CompetitorOutput(_AnalysisOutput):
    detected: bool
    confidence: Confidence
    competitors: list[str] | None = None
    context: str | None = None


class SignatureOutput(_AnalysisOutput):
    name: str | None = None
    title: str | None = None
    company: str | None = None
    email: str | None = None
    phone: str | None = None
    mobile: str | None = None
    address: str | None = None
    website: str | None = None
    linkedin: str | None = None
    twitter: str | None = None

    @field_validator("email")
    @classmethod
    def validate_email(cls, value: str | None) -> str | None:
        if value is None:
            return None
        value = value.strip()
        if not _EMAIL_RE.match(value):
            raise ValueError("must be a valid email address")
        return value


class ExtractedDomain(_AnalysisOutput):
    domain: str


class DomainExtractionOutput(_AnalysisOutput):
    domains: list[ExtractedDomain]


class ExtractedContact(_AnalysisOutput):
    id: str
    email: str
    name: str | None = None
    company_id: str | None = Field(default=None, alias="companyId")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class ContactExtractionOutput(_AnalysisOutput):
    contacts: list[ExtractedContact]
