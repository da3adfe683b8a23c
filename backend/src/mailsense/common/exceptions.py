"""
MailSenseError hierarchy.

Provides specific, actionable exception types with context preservation
and programmatic error handling support.
"""

from __future__ import annotations

from typing import Any

SENSITIVE_CONTEXT_KEYS = {"raw_output", "prompt", "body", "api_key"}
REDACTED_VALUE = "[REDACTED]"


def _redact_context(context: dict[str, Any]) -> dict[str, Any]:
    redacted: dict[str, Any] = {}
    for key, value in context.items():
        if isinstance(key, str) and key.lower() in SENSITIVE_CONTEXT_KEYS:
            redacted[key] = REDACTED_VALUE
        else:
            redacted[key] = value
    return redacted


def _pop_duplicate_kwargs(kwargs: dict[str, Any], keys: tuple[str, ...]) -> None:
    for key in keys:
        kwargs.pop(key, None)


class MailSenseError(Exception):
    """
    Base class for all application errors.

    Attributes:
        message: Human-readable error description
        error_code: Machine-readable error code (e.g., "UNKNOWN_ANALYSIS_KIND")
        context: Additional context dict for debugging
    """

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        context: dict[str, Any] | None = None,
        **kwargs: Any,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.error_code = error_code
        self.context = dict(context) if context is not None else {}
        if kwargs:
            self.context.update(kwargs)

    def to_dict(self) -> dict[str, Any]:
        """Serialize exception for logging/reporting."""
        safe_context = _redact_context(dict(self.context)) if self.context else {}
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "error_code": self.error_code,
            "context": safe_context,
        }


class ConfigurationError(MailSenseError):
    """Configuration issues: missing/invalid settings."""


class ValidationError(MailSenseError):
    """
    Input validation failures.
    """

    def __init__(
        self,
        message: str,
        field: str | None = None,
        rule: str | None = None,
        **kwargs: Any,
    ) -> None:
        _pop_duplicate_kwargs(kwargs, ("field", "rule"))
        super().__init__(message, field=field, rule=rule, **kwargs)
        self.field = field
        self.rule = rule


class UnknownAnalysisKindError(MailSenseError):
    """An analysis kind was requested that is not in the registry."""

    def __init__(self, kind: str, **kwargs: Any) -> None:
        _pop_duplicate_kwargs(kwargs, ("kind",))
        kwargs.setdefault("error_code", "UNKNOWN_ANALYSIS_KIND")
        super().__init__(f"Unknown analysis kind: {kind}", kind=kind, **kwargs)
        self.kind = kind


class SchemaValidationError(MailSenseError):
    """
    Model output did not match the expected schema.

    Raised once the retry-with-feedback budget for a single model is spent.
    """

    def __init__(
        self,
        message: str,
        schema_name: str | None = None,
        raw_output: str | None = None,
        attempts: int = 0,
        **kwargs: Any,
    ) -> None:
        _pop_duplicate_kwargs(kwargs, ("schema_name", "raw_output", "attempts"))
        super().__init__(
            message,
            schema_name=schema_name,
            raw_output=raw_output,
            attempts=attempts,
            **kwargs,
        )
        self.schema_name = schema_name
        self.raw_output = raw_output
        self.attempts = attempts


class ProviderError(MailSenseError):
    """
    External model provider operation failures.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        retryable: bool = False,
        **kwargs: Any,
    ) -> None:
        _pop_duplicate_kwargs(kwargs, ("provider", "retryable"))
        super().__init__(message, provider=provider, retryable=retryable, **kwargs)
        self.provider = provider
        self.retryable = retryable


class RateLimitError(ProviderError):
    """
    Provider rate limit exceeded.
    """

    def __init__(
        self,
        message: str,
        provider: str | None = None,
        retry_after: float | None = None,
        **kwargs: Any,
    ) -> None:
        _pop_duplicate_kwargs(kwargs, ("retry_after", "retryable"))
        super().__init__(
            message, provider=provider, retryable=True, retry_after=retry_after, **kwargs
        )
        self.retry_after = retry_after


class ModelCallError(ProviderError):
    """
    A model invocation failed after primary and fallback attempts.

    Wraps provider errors and exhausted schema-validation budgets.
    """

    def __init__(
        self,
        message: str,
        model: str | None = None,
        provider: str | None = None,
        retryable: bool = True,
        **kwargs: Any,
    ) -> None:
        _pop_duplicate_kwargs(kwargs, ("model",))
        super().__init__(
            message, provider=provider, retryable=retryable, model=model, **kwargs
        )
        self.model = model


class CollaboratorError(MailSenseError):
    """Extraction collaborator (domain/contact service) failures."""

    def __init__(
        self,
        message: str,
        endpoint: str | None = None,
        retryable: bool = False,
        **kwargs: Any,
    ) -> None:
        _pop_duplicate_kwargs(kwargs, ("endpoint", "retryable"))
        super().__init__(message, endpoint=endpoint, retryable=retryable, **kwargs)
        self.endpoint = endpoint
        self.retryable = retryable


class TransactionError(MailSenseError):
    """
    Transaction operation failures (commit, rollback, inactive unit of work).
    """

    def __init__(
        self,
        message: str,
        transaction_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        _pop_duplicate_kwargs(kwargs, ("transaction_id",))
        super().__init__(message, transaction_id=transaction_id, **kwargs)
        self.transaction_id = transaction_id


class NotFoundError(MailSenseError):
    """A requested record does not exist."""

    def __init__(
        self,
        message: str,
        resource: str | None = None,
        resource_id: str | None = None,
        **kwargs: Any,
    ) -> None:
        _pop_duplicate_kwargs(kwargs, ("resource", "resource_id"))
        super().__init__(message, resource=resource, resource_id=resource_id, **kwargs)
        self.resource = resource
        self.resource_id = resource_id


__all__ = [
    "MailSenseError",
    "CollaboratorError",
    "ConfigurationError",
    "ModelCallError",
    "NotFoundError",
    "ProviderError",
    "RateLimitError",
    "SchemaValidationError",
    "TransactionError",
    "UnknownAnalysisKindError",
    "ValidationError",
]
