"""
Configuration loader for MailSense.
"""

from __future__ import annotations

import json
import logging
import threading
from pathlib import Path
from typing import Any

from dotenv import load_dotenv
from mailsense.common.exceptions import ConfigurationError
from pydantic import BaseModel, Field

from .models import (
    AnalysisConfig,
    CollaboratorConfig,
    CoreConfig,
    DatabaseConfig,
    DurableConfig,
    LLMConfig,
    RedisConfig,
    RetryConfig,
    SystemConfig,
)

load_dotenv()


logger = logging.getLogger(__name__)


class MailSenseConfig(BaseModel):
    """
    Centralized configuration for MailSense.

    All sub-configs are Pydantic models with validation.
    """

    core: CoreConfig = Field(default_factory=CoreConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)
    redis: RedisConfig = Field(default_factory=RedisConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    analysis: AnalysisConfig = Field(default_factory=AnalysisConfig)
    collaborators: CollaboratorConfig = Field(default_factory=CollaboratorConfig)
    durable: DurableConfig = Field(default_factory=DurableConfig)
    system: SystemConfig = Field(default_factory=SystemConfig)

    model_config = {"extra": "forbid"}

    def to_dict(self) -> dict[str, Any]:
        return self.model_dump()

    @classmethod
    def load(cls, path: Path | None = None) -> MailSenseConfig:
        """
        Load the configuration.

        If path is None, creates config from environment variables.
        If path is provided, loads from JSON file; missing keys fall back to
        environment/defaults.
        """
        try:
            if path is None or not path.exists():
                return cls()
            with path.open("r") as f:
                data = json.load(f)
            return cls.model_validate(data)
        except json.JSONDecodeError as e:
            raise ConfigurationError(
                f"Configuration file {path} is not valid JSON: {e}",
                error_code="CONFIG_INVALID_JSON",
            ) from e
        except Exception as e:
            raise ConfigurationError(
                f"Configuration error: {e}\n\n"
                "Please ensure all required environment variables are set in your .env file."
            ) from e


_config: MailSenseConfig | None = None
_config_lock = threading.RLock()


def get_config() -> MailSenseConfig:
    """
    Get the global configuration instance (thread-safe singleton pattern).

    Uses double-checked locking so the fast path needs no lock.
    """
    global _config

    if _config is not None:
        return _config

    with _config_lock:
        if _config is None:
            _config = MailSenseConfig.load()
        return _config


def get_default_config() -> MailSenseConfig:
    """Get a new MailSenseConfig instance with default values."""
    return MailSenseConfig()


def reset_config() -> None:
    """Reset the global configuration instance (mainly for testing)."""
    global _config
    with _config_lock:
        _config = None


def set_config(config: MailSenseConfig) -> None:
    """Set the global configuration instance (mainly for testing)."""
    global _config
    with _config_lock:
        _config = config
