"""
Per-tenant analysis configuration.

Request-level overrides are shallow-merged over the catalog defaults, one
map at a time: a key present in the override replaces the default entry.
"""

from __future__ import annotations

from mailsense.analysis.catalog import default_tenant_config
from mailsense.analysis.registry import AnalysisRegistry
from mailsense.config.models import AnalysisConfig
from mailsense.domain_models.analysis import (
    AnalysisConfigOverrides,
    TenantAnalysisConfig,
)


def merge_with_defaults(
    overrides: AnalysisConfigOverrides | None,
    defaults: TenantAnalysisConfig | None = None,
    analysis_config: AnalysisConfig | None = None,
) -> TenantAnalysisConfig:
    base = defaults or default_tenant_config(analysis_config)
    if overrides is None:
        return base.model_copy(deep=True)

    return TenantAnalysisConfig(
        tenant_id=overrides.tenant_id or base.tenant_id,
        enabled={**base.enabled, **(overrides.enabled or {})},
        models={**base.models, **(overrides.models or {})},
        settings={**base.settings, **(overrides.settings or {})},
        prompt_versions={**base.prompt_versions, **(overrides.prompt_versions or {})},
    )


def get_enabled_kinds(config: TenantAnalysisConfig) -> list[str]:
    return [kind for kind, enabled in config.enabled.items() if enabled]


def is_always_run(
    kind: str, config: TenantAnalysisConfig, registry: AnalysisRegistry
) -> bool:
    """Always-run kinds go to the extraction service, never to the model."""
    settings = config.settings.get(kind)
    if settings is None:
        definition = registry.get(kind)
        settings = definition.settings if definition else None
    return settings is not None and settings.always_run


def get_requested_kinds(
    config: TenantAnalysisConfig, registry: AnalysisRegistry
) -> list[str]:
    """Enabled kinds that go to the model, i.e. excluding always-run extractions."""
    return [
        kind
        for kind in get_enabled_kinds(config)
        if not is_always_run(kind, config, registry)
    ]
