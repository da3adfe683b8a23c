import os
from unittest.mock import patch

import pytest
from mailsense.common.exceptions import ConfigurationError
from mailsense.config.loader import (
    MailSenseConfig,
    get_config,
    reset_config,
    set_config,
)
from mailsense.config.models import (
    AnalysisConfig,
    CollaboratorConfig,
    CoreConfig,
    DatabaseConfig,
    DurableConfig,
    RedisConfig,
    RetryConfig,
)
from pydantic import ValidationError


def test_retry_config_api_max_retries():
    """Test that RetryConfig correctly retrieves the API max retries value."""
    with patch.dict(os.environ, {"MAILSENSE_API_MAX_RETRIES": "5"}):
        config = RetryConfig()
        assert config.max_retries == 5


def test_prefixed_key_wins_over_bare_key():
    with patch.dict(
        os.environ,
        {"MAILSENSE_ANALYSIS_PRIMARY_MODEL": "gpt-4o", "ANALYSIS_PRIMARY_MODEL": "grok-2"},
    ):
        assert AnalysisConfig().primary_model == "gpt-4o"


def test_bare_key_fallback():
    with patch.dict(os.environ, {"DURABLE_MAX_RETRIES": "4"}):
        os.environ.pop("MAILSENSE_DURABLE_MAX_RETRIES", None)
        assert DurableConfig().max_retries == 4


def test_invalid_int_names_the_key():
    with patch.dict(os.environ, {"MAILSENSE_DURABLE_MAX_RETRIES": "many"}):
        with pytest.raises(ValueError, match="MAILSENSE_DURABLE_MAX_RETRIES"):
            DurableConfig()


def test_tenant_domains_list():
    with patch.dict(os.environ, {"MAILSENSE_TENANT_DOMAINS": "ourco.com, ourco.io ,"}):
        assert AnalysisConfig().tenant_domains == ["ourco.com", "ourco.io"]


def test_durable_defaults():
    config = DurableConfig(
        max_retries=9,
        initial_delay_seconds=60,
        max_delay_seconds=1800,
        idempotency_ttl_seconds=86400,
    )
    assert config.max_retries == 9
    assert config.initial_delay_seconds == 60.0


def test_core_env_normalized():
    assert CoreConfig(env="Production").env == "prod"
    with pytest.raises(ValidationError):
        CoreConfig(env="qa")


@pytest.mark.parametrize(
    "raw,expected",
    [
        ("postgres://u:p@db/mail", "postgresql+asyncpg://u:p@db/mail"),
        ("postgresql://u:p@db/mail", "postgresql+asyncpg://u:p@db/mail"),
        ("sqlite+aiosqlite:///:memory:", "sqlite+aiosqlite:///:memory:"),
        ("  ", None),
    ],
)
def test_database_url_normalized(raw, expected):
    assert DatabaseConfig(url=raw).url == expected


def test_redis_password_required_for_remote_hosts():
    with pytest.raises(ValidationError):
        RedisConfig(url="redis://cache.internal:6379", password=None)
    assert RedisConfig(url="redis://cache.internal:6379", password="pw").password is not None
    assert RedisConfig(url="redis://localhost:6379", password=None).url.host == "localhost"


def test_default_config_builds():
    with patch.dict(os.environ):
        for key in ("MAILSENSE_REDIS_URL", "REDIS_URL", "MAILSENSE_REDIS_PASSWORD", "REDIS_PASSWORD"):
            os.environ.pop(key, None)
        config = MailSenseConfig()
    assert config.redis.url.host == "localhost"
    assert config.redis.password is None


def test_redis_url_from_environment_is_validated():
    with patch.dict(
        os.environ,
        {"MAILSENSE_REDIS_URL": "redis://cache.internal:6379", "MAILSENSE_REDIS_PASSWORD": "pw"},
    ):
        config = RedisConfig()
    assert config.url.host == "cache.internal"
    assert config.password.get_secret_value() == "pw"

    with patch.dict(os.environ, {"MAILSENSE_REDIS_URL": "redis://cache.internal:6379"}):
        os.environ.pop("MAILSENSE_REDIS_PASSWORD", None)
        os.environ.pop("REDIS_PASSWORD", None)
        with pytest.raises(ValidationError):
            RedisConfig()


def test_environment_defaults_are_validated():
    with patch.dict(
        os.environ,
        {
            "MAILSENSE_EXTRACTION_API_KEY": "key-1",
            "MAILSENSE_ENV": "Production",
            "MAILSENSE_DB_URL": "postgres://u:p@db/mail",
        },
    ):
        assert CollaboratorConfig().api_key.get_secret_value() == "key-1"
        assert CoreConfig().env == "prod"
        assert DatabaseConfig().url == "postgresql+asyncpg://u:p@db/mail"


def test_extra_keys_forbidden():
    with pytest.raises(ValidationError):
        MailSenseConfig.model_validate({"unknown": {}})


def test_load_from_json_file(tmp_path):
    path = tmp_path / "config.json"
    path.write_text('{"analysis": {"primary_model": "claude-3-5-haiku"}}')
    config = MailSenseConfig.load(path)
    assert config.analysis.primary_model == "claude-3-5-haiku"


def test_load_invalid_json_raises_configuration_error(tmp_path):
    path = tmp_path / "config.json"
    path.write_text("{not json")
    with pytest.raises(ConfigurationError) as exc_info:
        MailSenseConfig.load(path)
    assert exc_info.value.error_code == "CONFIG_INVALID_JSON"


def test_set_and_reset_config():
    custom = MailSenseConfig(core=CoreConfig(env="dev", service_name="custom"))
    set_config(custom)
    try:
        assert get_config() is custom
    finally:
        reset_config()
    assert get_config() is not custom
    reset_config()
