"""
Model-id to provider routing.

Routing is data: an ordered prefix table with one default provider for
model ids nobody has added to the table yet.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from enum import Enum

logger = logging.getLogger(__name__)

DEFAULT_TEMPERATURE = 0.7
DEFAULT_MAX_TOKENS = 4000


class ModelProvider(str, Enum):
    OPENAI = "openai"
    ANTHROPIC = "anthropic"
    GOOGLE = "google"
    XAI = "xai"


PROVIDER_PREFIXES: tuple[tuple[str, ModelProvider], ...] = (
    ("gpt-", ModelProvider.OPENAI),
    ("o1-", ModelProvider.OPENAI),
    ("o3-", ModelProvider.OPENAI),
    ("claude-", ModelProvider.ANTHROPIC),
    ("sonnet-", ModelProvider.ANTHROPIC),
    ("opus-", ModelProvider.ANTHROPIC),
    ("haiku-", ModelProvider.ANTHROPIC),
    ("gemini-", ModelProvider.GOOGLE),
    ("grok-", ModelProvider.XAI),
)

DEFAULT_PROVIDER = ModelProvider.GOOGLE


@dataclass(frozen=True)
class ModelSpec:
    provider: ModelProvider
    model: str
    temperature: float = DEFAULT_TEMPERATURE
    max_tokens: int = DEFAULT_MAX_TOKENS

    @property
    def label(self) -> str:
        return f"{self.provider.value}/{self.model}"


def classify_model(model_id: str) -> ModelProvider:
    for prefix, provider in PROVIDER_PREFIXES:
        if model_id.startswith(prefix):
            return provider
    logger.warning(
        "Unrecognized model id %r; routing to default provider %s",
        model_id,
        DEFAULT_PROVIDER.value,
    )
    return DEFAULT_PROVIDER


def resolve_model(
    model_id: str,
    temperature: float = DEFAULT_TEMPERATURE,
    max_tokens: int = DEFAULT_MAX_TOKENS,
) -> ModelSpec:
    return ModelSpec(
        provider=classify_model(model_id),
        model=model_id,
        temperature=temperature,
        max_tokens=max_tokens,
    )
