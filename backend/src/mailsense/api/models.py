"""
API Request/Response Models.
"""

from __future__ import annotations

from typing import Any

from mailsense.domain_models.analysis import AnalysisConfigOverrides, TokenUsage
from mailsense.domain_models.message import Message
from pydantic import BaseModel, ConfigDict, Field


# -----------------------------------------------------------------------------
# Analyze
# -----------------------------------------------------------------------------
class AnalyzeRequest(BaseModel):
    """Run analyses against a message supplied in the request body."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    tenant_id: str = Field(..., alias="tenantId", min_length=1)
    message: Message
    thread_context: str | None = Field(default=None, alias="threadContext")
    analysis_kinds: list[str] | None = Field(default=None, alias="analysisKinds")
    config: AnalysisConfigOverrides | None = None


class AnalyzeResponse(BaseModel):
    correlation_id: str | None = None
    success: bool = True
    results: dict[str, Any] = Field(default_factory=dict)


class SignatureExtractRequest(BaseModel):
    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    tenant_id: str = Field(..., alias="tenantId", min_length=1)
    message: Message


class SignatureExtractResponse(BaseModel):
    correlation_id: str | None = None
    success: bool = True
    signature: dict[str, Any] | None = None


# -----------------------------------------------------------------------------
# Stored message analysis
# -----------------------------------------------------------------------------
class MessageAnalyzeRequest(BaseModel):
    """Pipeline run for a message that is already stored."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    persist: bool = Field(default=True, description="Write results in one transaction")
    analysis_kinds: list[str] | None = Field(default=None, alias="analysisKinds")
    config: AnalysisConfigOverrides | None = None
    use_thread_summaries: bool = Field(default=True, alias="useThreadSummaries")


class MessageAnalyzeResponse(BaseModel):
    correlation_id: str | None = None
    success: bool = True
    message_id: str
    thread_id: str | None = None
    results: dict[str, Any] = Field(default_factory=dict)
    companies_created: int = 0
    contacts_created: int = 0
    analyses_saved: int = 0


# -----------------------------------------------------------------------------
# Summarize
# -----------------------------------------------------------------------------
class SummarizeRequest(BaseModel):
    """Fold one analysis result into a running thread summary."""

    model_config = ConfigDict(extra="forbid", populate_by_name=True)

    tenant_id: str = Field(..., alias="tenantId", min_length=1)
    kind: str = Field(..., min_length=1)
    message: Message
    result: dict[str, Any]
    reasoning: str | None = None
    existing_summary: str | None = Field(default=None, alias="existingSummary")
    metadata: dict[str, Any] | None = None


class SummarizeResponse(BaseModel):
    model_config = ConfigDict(protected_namespaces=())

    correlation_id: str | None = None
    summary: str
    model_used: str
    usage: TokenUsage | None = None
