import logging

import pytest
from mailsense.analysis.catalog import (
    DEFAULT_ENABLED,
    build_default_catalog,
    default_tenant_config,
)
from mailsense.analysis.config_loader import (
    get_enabled_kinds,
    get_requested_kinds,
    merge_with_defaults,
)
from mailsense.analysis.registry import AnalysisRegistry, init_registry
from mailsense.config.models import AnalysisConfig
from mailsense.domain_models.analysis import (
    AnalysisConfigOverrides,
    AnalysisKind,
    AnalysisSettings,
    ModelConfig,
)


@pytest.fixture
def catalog():
    return build_default_catalog(
        AnalysisConfig(primary_model="gpt-4o-mini", fallback_model="gpt-4o")
    )


@pytest.fixture
def registry(catalog):
    return init_registry(catalog)


class TestCatalog:
    def test_every_kind_has_a_definition(self, catalog):
        assert {d.kind for d in catalog} == {k.value for k in AnalysisKind}

    def test_sorted_by_priority(self, catalog):
        assert [d.kind for d in catalog[:2]] == ["domain-extraction", "contact-extraction"]
        priorities = [d.sort_priority for d in catalog]
        assert priorities == sorted(priorities, reverse=True)

    def test_models_come_from_config(self, catalog):
        for definition in catalog:
            assert definition.models == ModelConfig(primary="gpt-4o-mini", fallback="gpt-4o")

    def test_contact_extraction_depends_on_domains(self, catalog):
        contact = next(d for d in catalog if d.kind == "contact-extraction")
        assert contact.dependencies == ("domain-extraction",)

    def test_only_signature_has_custom_prompt(self, catalog):
        custom = [d.kind for d in catalog if d.build_prompt is not None]
        assert custom == ["signature-extraction"]

    def test_default_tenant_config(self):
        config = default_tenant_config(tenant_id="tenant-9")
        assert config.tenant_id == "tenant-9"
        assert config.enabled == DEFAULT_ENABLED
        assert config.enabled["sentiment"] is True
        assert config.enabled["churn"] is False
        assert config.settings["escalation"].requires_thread_context is True


class TestRegistry:
    def test_register_and_lookup(self, catalog):
        registry = AnalysisRegistry()
        registry.register(catalog[0])
        assert registry.has(catalog[0].kind)
        assert catalog[0].kind in registry
        assert registry.get("unknown") is None
        assert len(registry) == registry.size() == 1

    def test_register_overwrites_with_warning(self, catalog, caplog):
        registry = AnalysisRegistry()
        registry.register(catalog[0])
        with caplog.at_level(logging.WARNING):
            registry.register(catalog[0])
        assert "already registered" in caplog.text
        assert registry.size() == 1

    def test_get_enabled_analyses_drops_unknown_kinds(self, registry, caplog):
        with caplog.at_level(logging.WARNING):
            definitions = registry.get_enabled_analyses(["escalation", "telepathy", "sentiment"])
        assert [d.kind for d in definitions] == ["escalation", "sentiment"]
        assert "telepathy" in caplog.text

    def test_clear(self, registry):
        registry.clear()
        assert registry.size() == 0
        assert registry.get_all() == []


class TestConfigLoader:
    def test_no_overrides_returns_copy_of_defaults(self):
        defaults = default_tenant_config()
        merged = merge_with_defaults(None, defaults)
        assert merged == defaults
        assert merged is not defaults

    def test_override_replaces_only_named_keys(self):
        overrides = AnalysisConfigOverrides(
            tenant_id="tenant-2",
            enabled={"churn": True, "sentiment": False},
            models={"churn": ModelConfig(primary="claude-3-5-haiku")},
            settings={"churn": AnalysisSettings(priority=5)},
        )
        merged = merge_with_defaults(overrides)

        assert merged.tenant_id == "tenant-2"
        assert merged.enabled["churn"] is True
        assert merged.enabled["sentiment"] is False
        assert merged.enabled["escalation"] is True
        assert merged.models["churn"].primary == "claude-3-5-haiku"
        assert merged.models["churn"].fallback is None
        assert merged.settings["churn"].priority == 5
        # Shallow merge: the override replaces the whole settings entry
        assert merged.settings["churn"].requires_thread_context is False

    def test_enabled_kinds(self):
        kinds = get_enabled_kinds(default_tenant_config())
        assert set(kinds) == {
            "domain-extraction",
            "contact-extraction",
            "signature-extraction",
            "sentiment",
            "escalation",
        }

    def test_requested_kinds_exclude_always_run(self, registry):
        kinds = get_requested_kinds(default_tenant_config(), registry)
        assert "domain-extraction" not in kinds
        assert "contact-extraction" not in kinds
        assert set(kinds) == {"signature-extraction", "sentiment", "escalation"}
