"""MailSense: AI analysis pipeline for tenant email."""

__version__ = "0.1.0"
