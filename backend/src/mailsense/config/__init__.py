from mailsense.config.loader import (
    MailSenseConfig,
    get_config,
    get_default_config,
    reset_config,
    set_config,
)

__all__ = [
    "MailSenseConfig",
    "get_config",
    "get_default_config",
    "reset_config",
    "set_config",
]
