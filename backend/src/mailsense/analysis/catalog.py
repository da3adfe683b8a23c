"""
Analysis catalog.

Static definitions for every analysis kind and the default per-tenant
configuration that request-level overrides are merged into.
"""

from __future__ import annotations

from mailsense.analysis.modules import (
    CHURN_MODULE,
    COMPETITOR_MODULE,
    CONTACT_EXTRACTION_MODULE,
    DOMAIN_EXTRACTION_MODULE,
    ESCALATION_MODULE,
    KUDOS_MODULE,
    SENTIMENT_MODULE,
    SIGNATURE_MODULE,
    UPSELL_MODULE,
)
from mailsense.analysis.prompt_builder import build_signature_prompt
from mailsense.config.models import AnalysisConfig
from mailsense.domain_models.analysis import (
    AnalysisDefinition,
    AnalysisKind,
    AnalysisSettings,
    ModelConfig,
    TenantAnalysisConfig,
)

K = AnalysisKind

DISPLAY_NAMES: dict[str, str] = {
    K.SENTIMENT.value: "Sentiment Analysis",
    K.ESCALATION.value: "Escalation Detection",
    K.UPSELL.value: "Upsell Detection",
    K.CHURN.value: "Churn Risk Assessment",
    K.KUDOS.value: "Kudos Detection",
    K.COMPETITOR.value: "Competitor Detection",
    K.SIGNATURE_EXTRACTION.value: "Signature Extraction",
    K.DOMAIN_EXTRACTION.value: "Domain Extraction",
    K.CONTACT_EXTRACTION.value: "Contact Extraction",
}

DEFAULT_ENABLED: dict[str, bool] = {
    K.DOMAIN_EXTRACTION.value: True,
    K.CONTACT_EXTRACTION.value: True,
    K.SIGNATURE_EXTRACTION.value: True,
    K.SENTIMENT.value: True,
    K.ESCALATION.value: True,
    K.UPSELL.value: False,
    K.CHURN.value: False,
    K.KUDOS.value: False,
    K.COMPETITOR.value: False,
}

DEFAULT_SETTINGS: dict[str, AnalysisSettings] = {
    K.DOMAIN_EXTRACTION.value: AnalysisSettings(always_run=True, priority=100),
    K.CONTACT_EXTRACTION.value: AnalysisSettings(always_run=True, priority=90),
    K.SIGNATURE_EXTRACTION.value: AnalysisSettings(),
    K.SENTIMENT.value: AnalysisSettings(),
    K.ESCALATION.value: AnalysisSettings(
        requires_thread_context=True, min_confidence_threshold=0.7
    ),
    K.UPSELL.value: AnalysisSettings(min_confidence_threshold=0.6),
    K.CHURN.value: AnalysisSettings(
        requires_thread_context=True, min_confidence_threshold=0.7
    ),
    K.KUDOS.value: AnalysisSettings(min_confidence_threshold=0.6),
    K.COMPETITOR.value: AnalysisSettings(min_confidence_threshold=0.6),
}

_MODULES = {
    K.SENTIMENT.value: SENTIMENT_MODULE,
    K.ESCALATION.value: ESCALATION_MODULE,
    K.UPSELL.value: UPSELL_MODULE,
    K.CHURN.value: CHURN_MODULE,
    K.KUDOS.value: KUDOS_MODULE,
    K.COMPETITOR.value: COMPETITOR_MODULE,
    K.SIGNATURE_EXTRACTION.value: SIGNATURE_MODULE,
    K.DOMAIN_EXTRACTION.value: DOMAIN_EXTRACTION_MODULE,
    K.CONTACT_EXTRACTION.value: CONTACT_EXTRACTION_MODULE,
}

_DEPENDENCIES: dict[str, tuple[str, ...]] = {
    K.CONTACT_EXTRACTION.value: (K.DOMAIN_EXTRACTION.value,),
}


def default_model_config(config: AnalysisConfig | None = None) -> ModelConfig:
    config = config or AnalysisConfig()
    return ModelConfig(primary=config.primary_model, fallback=config.fallback_model)


def build_default_catalog(
    config: AnalysisConfig | None = None,
) -> list[AnalysisDefinition]:
    """One definition per kind, ordered by priority (highest first)."""
    models = default_model_config(config)
    definitions = [
        AnalysisDefinition(
            kind=kind,
            display_name=DISPLAY_NAMES[kind],
            module=module,
            models=models,
            settings=DEFAULT_SETTINGS[kind],
            dependencies=_DEPENDENCIES.get(kind, ()),
            build_prompt=(
                build_signature_prompt if kind == K.SIGNATURE_EXTRACTION.value else None
            ),
        )
        for kind, module in _MODULES.items()
    ]
    return sorted(definitions, key=lambda d: d.sort_priority, reverse=True)


def default_tenant_config(
    config: AnalysisConfig | None = None, tenant_id: str = "default"
) -> TenantAnalysisConfig:
    models = default_model_config(config)
    return TenantAnalysisConfig(
        tenant_id=tenant_id,
        enabled=dict(DEFAULT_ENABLED),
        models={kind: models for kind in _MODULES},
        settings=dict(DEFAULT_SETTINGS),
        prompt_versions={
            kind: module.version or "v1.0" for kind, module in _MODULES.items()
        },
    )
