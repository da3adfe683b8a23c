"""
Analysis domain models.

Kinds, definitions, per-tenant configuration and the results produced by
the executor.
"""

from __future__ import annotations

from collections.abc import Callable
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import TYPE_CHECKING, Any

from pydantic import BaseModel, ConfigDict, Field

if TYPE_CHECKING:
    from mailsense.domain_models.message import Message


class AnalysisKind(str, Enum):
    SENTIMENT = "sentiment"
    ESCALATION = "escalation"
    UPSELL = "upsell"
    CHURN = "churn"
    KUDOS = "kudos"
    COMPETITOR = "competitor"
    SIGNATURE_EXTRACTION = "signature-extraction"
    DOMAIN_EXTRACTION = "domain-extraction"
    CONTACT_EXTRACTION = "contact-extraction"


class AnalysisStatus(IntEnum):
    """Value of ``messages.analysis_status``."""

    PENDING = 1
    PROCESSING = 2
    COMPLETED = 3
    FAILED = 4


class Signal(IntEnum):
    """Compact signal codes stored on the message for filtering."""

    SENTIMENT_POSITIVE = 1
    SENTIMENT_NEGATIVE = 2
    SENTIMENT_NEUTRAL = 3
    ESCALATION = 10
    UPSELL = 20
    CHURN_LOW = 30
    CHURN_MEDIUM = 31
    CHURN_HIGH = 32
    CHURN_CRITICAL = 33
    KUDOS = 40
    COMPETITOR = 50


# -----------------------------------------------------------------------------
# Definitions
# -----------------------------------------------------------------------------


class ModelConfig(BaseModel):
    """Primary model id and optional fallback."""

    primary: str
    fallback: str | None = None

    model_config = ConfigDict(extra="forbid", frozen=True)


class AnalysisSettings(BaseModel):
    """Execution settings for one analysis kind."""

    requires_thread_context: bool = False
    timeout_ms: int | None = Field(default=None, ge=1)
    max_retries: int | None = Field(default=None, ge=0)
    priority: int | None = None
    always_run: bool = False
    min_confidence_threshold: float | None = Field(default=None, ge=0.0, le=1.0)

    model_config = ConfigDict(extra="forbid", frozen=True)


PromptBuilderFn = Callable[["Message", "ThreadContext | None"], str]


@dataclass(frozen=True)
class AnalysisModule:
    """Prompt contract for one kind: instructions plus output schema."""

    name: str
    description: str
    instructions: str
    output_schema: type[BaseModel]
    version: str | None = None


@dataclass(frozen=True)
class AnalysisDefinition:
    """Catalog entry binding a kind to its prompt, schema, model and settings."""

    kind: str
    display_name: str
    module: AnalysisModule
    models: ModelConfig
    settings: AnalysisSettings = field(default_factory=AnalysisSettings)
    dependencies: tuple[str, ...] = ()
    build_prompt: PromptBuilderFn | None = None

    @property
    def sort_priority(self) -> int:
        return self.settings.priority or 0


# -----------------------------------------------------------------------------
# Per-tenant configuration
# -----------------------------------------------------------------------------


class TenantAnalysisConfig(BaseModel):
    """Effective analysis configuration for one tenant."""

    tenant_id: str = "default"
    enabled: dict[str, bool] = Field(default_factory=dict)
    models: dict[str, ModelConfig] = Field(default_factory=dict)
    settings: dict[str, AnalysisSettings] = Field(default_factory=dict)
    prompt_versions: dict[str, str] = Field(default_factory=dict)

    model_config = ConfigDict(extra="forbid")


class AnalysisConfigOverrides(BaseModel):
    """Partial configuration supplied by a caller; merged over the defaults."""

    tenant_id: str | None = None
    enabled: dict[str, bool] | None = None
    models: dict[str, ModelConfig] | None = None
    settings: dict[str, AnalysisSettings] | None = None
    prompt_versions: dict[str, str] | None = None

    model_config = ConfigDict(extra="forbid")


# -----------------------------------------------------------------------------
# Results
# -----------------------------------------------------------------------------


class TokenUsage(BaseModel):
    prompt_tokens: int = 0
    completion_tokens: int = 0
    total_tokens: int = 0


class AnalysisResult(BaseModel):
    """Outcome of running one kind against one message."""

    kind: str
    result: dict[str, Any] | None = None
    model_used: str
    reasoning: str | None = None
    usage: TokenUsage | None = None
    error: str | None = None

    model_config = ConfigDict(protected_namespaces=())

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.result is not None


BatchAnalysisResult = dict[str, AnalysisResult]


class ThreadContext(BaseModel):
    """Formatted context supplied to analyses that use thread history."""

    text: str
    previous_result: dict[str, Any] | None = None
