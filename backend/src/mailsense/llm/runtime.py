"""
Async model runtime.

- Chat completions against each provider's OpenAI-compatible endpoint
  (one lazily created `openai.AsyncOpenAI` client per provider).
- Transport resilience: per-provider circuit breaker and tenacity retries
  for transient provider errors.
- Structured output: JSON extraction, pydantic validation and
  retry-with-feedback when the answer does not match the schema.
"""

from __future__ import annotations

import json
import logging
import re
import threading
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass
from typing import Any, Generic, TypeVar

import openai
from mailsense.common.exceptions import (
    ProviderError,
    RateLimitError,
    SchemaValidationError,
    ValidationError,
)
from mailsense.config.loader import get_config
from mailsense.config.models import LLMConfig, RetryConfig
from mailsense.domain_models.analysis import TokenUsage
from mailsense.llm.providers import ModelProvider, ModelSpec
from mailsense.observability import record_metric
from mailsense.prompts import SYSTEM_JSON_OUTPUT, VALIDATION_FEEDBACK
from pydantic import BaseModel
from pydantic import ValidationError as PydanticValidationError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

T = TypeVar("T", bound=BaseModel)

Messages = Sequence[dict[str, Any]]
ClientFactory = Callable[[ModelProvider], Any]


@dataclass
class Completion:
    text: str
    usage: TokenUsage
    reasoning: str | None = None


@dataclass
class StructuredOutput(Generic[T]):
    object: T
    usage: TokenUsage
    reasoning: str | None = None
    attempts: int = 1


# =============================================================================
# Circuit breaker
# =============================================================================
class CircuitBreaker:
    """
    Closed / open / half-open breaker for one provider.

    Opens after `failure_threshold` consecutive transport failures and lets
    one probe through once `reset_seconds` have passed.
    """

    def __init__(self, failure_threshold: int, reset_seconds: float) -> None:
        self._lock = threading.RLock()
        self.failure_threshold = failure_threshold
        self.reset_seconds = reset_seconds
        self.failures = 0
        self.last_failure_time = 0.0
        self.state = "closed"

    def check(self, provider: str) -> None:
        with self._lock:
            if self.state != "open":
                return
            elapsed = time.time() - self.last_failure_time
            if elapsed > self.reset_seconds:
                self.state = "half-open"
                logger.info("Circuit breaker for %s probing (half-open).", provider)
                return
            raise ProviderError(
                f"Circuit open for {provider}. Retry in {self.reset_seconds - elapsed:.1f}s",
                provider=provider,
                retryable=False,
                error_code="CIRCUIT_OPEN",
            )

    def record(self, success: bool) -> None:
        with self._lock:
            if success:
                if self.state != "closed":
                    logger.info("Circuit breaker recovered (closed).")
                self.state = "closed"
                self.failures = 0
                return
            self.failures += 1
            self.last_failure_time = time.time()
            if self.failures >= self.failure_threshold:
                if self.state != "open":
                    logger.warning(
                        "Circuit breaker tripped after %d failures.", self.failures
                    )
                self.state = "open"


def _is_transient(exc: BaseException) -> bool:
    return isinstance(exc, ProviderError) and exc.retryable


def _map_openai_error(exc: Exception, provider: str) -> ProviderError:
    if isinstance(exc, openai.RateLimitError):
        retry_after = None
        headers = getattr(getattr(exc, "response", None), "headers", None) or {}
        if headers.get("retry-after"):
            try:
                retry_after = float(headers["retry-after"])
            except ValueError:
                retry_after = None
        return RateLimitError(str(exc), provider=provider, retry_after=retry_after)
    if isinstance(exc, (openai.APITimeoutError, openai.APIConnectionError)):
        return ProviderError(str(exc), provider=provider, retryable=True)
    if isinstance(exc, openai.APIStatusError):
        return ProviderError(
            str(exc),
            provider=provider,
            retryable=exc.status_code >= 500,
            status_code=exc.status_code,
        )
    return ProviderError(f"Model call failed: {exc}", provider=provider, retryable=False)


def format_validation_errors(error: PydanticValidationError) -> str:
    """`loc: msg` pairs joined with `; `."""
    parts = []
    for item in error.errors():
        loc = ".".join(str(p) for p in item.get("loc", ())) or "(root)"
        parts.append(f"{loc}: {item.get('msg', 'invalid')}")
    return "; ".join(parts)


# =============================================================================
# Runtime
# =============================================================================
class AsyncLLMRuntime:
    """Async model access shared by the executor and the summary engine."""

    def __init__(
        self,
        llm_config: LLMConfig | None = None,
        retry_config: RetryConfig | None = None,
        client_factory: ClientFactory | None = None,
    ) -> None:
        if llm_config is None or retry_config is None:
            config = get_config()
            llm_config = llm_config or config.llm
            retry_config = retry_config or config.retry
        self.llm_config = llm_config
        self.retry_config = retry_config
        self._client_factory = client_factory or self._default_client
        self._clients: dict[ModelProvider, Any] = {}
        self._breakers: dict[ModelProvider, CircuitBreaker] = {}
        self._lock = threading.RLock()

    def _default_client(self, provider: ModelProvider) -> Any:
        endpoint = getattr(self.llm_config, provider.value)
        api_key = endpoint.api_key.get_secret_value() if endpoint.api_key else None
        logger.info("Initializing %s client at %s", provider.value, endpoint.base_url)
        return openai.AsyncOpenAI(
            base_url=str(endpoint.base_url),
            api_key=api_key or "EMPTY",
            timeout=self.llm_config.request_timeout_seconds,
            max_retries=0,
        )

    def client(self, provider: ModelProvider) -> Any:
        with self._lock:
            if provider not in self._clients:
                self._clients[provider] = self._client_factory(provider)
            return self._clients[provider]

    def breaker(self, provider: ModelProvider) -> CircuitBreaker:
        with self._lock:
            if provider not in self._breakers:
                self._breakers[provider] = CircuitBreaker(
                    self.retry_config.circuit_failure_threshold,
                    self.retry_config.circuit_reset_seconds,
                )
            return self._breakers[provider]

    async def _create_completion(
        self,
        spec: ModelSpec,
        messages: Messages,
        timeout: float | None,
        response_format: dict[str, Any] | None,
    ) -> Completion:
        breaker = self.breaker(spec.provider)
        breaker.check(spec.provider.value)
        request: dict[str, Any] = {
            "model": spec.model,
            "messages": list(messages),
            "temperature": spec.temperature,
            "max_tokens": spec.max_tokens,
            "timeout": timeout or self.llm_config.request_timeout_seconds,
        }
        if response_format is not None:
            request["response_format"] = response_format
        try:
            resp = await self.client(spec.provider).chat.completions.create(**request)
        except openai.OpenAIError as e:
            mapped = _map_openai_error(e, spec.provider.value)
            if mapped.retryable:
                breaker.record(success=False)
            raise mapped from e
        breaker.record(success=True)

        if not resp.choices:
            raise ProviderError(
                "No choices in completion response", provider=spec.provider.value
            )
        msg = resp.choices[0].message
        content = getattr(msg, "content", None) or ""
        reasoning = getattr(msg, "reasoning_content", None) or getattr(
            msg, "reasoning", None
        )
        usage = TokenUsage()
        if getattr(resp, "usage", None) is not None:
            usage = TokenUsage(
                prompt_tokens=resp.usage.prompt_tokens or 0,
                completion_tokens=resp.usage.completion_tokens or 0,
                total_tokens=resp.usage.total_tokens or 0,
            )
        return Completion(
            text=content if isinstance(content, str) else str(content),
            usage=usage,
            reasoning=reasoning.strip() if isinstance(reasoning, str) and reasoning.strip() else None,
        )

    async def complete_messages(
        self,
        spec: ModelSpec,
        messages: Messages,
        timeout: float | None = None,
        response_format: dict[str, Any] | None = None,
    ) -> Completion:
        """One chat completion, retried on transient provider errors."""
        if not messages:
            raise ValidationError("`messages` cannot be empty", field="messages", rule="required")

        started = time.perf_counter()
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_transient),
            wait=wait_exponential(
                multiplier=1,
                min=self.retry_config.initial_backoff_seconds,
                max=self.retry_config.max_backoff_seconds,
            ),
            stop=stop_after_attempt(self.retry_config.max_retries + 1),
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        ):
            with attempt:
                completion = await self._create_completion(
                    spec, messages, timeout, response_format
                )
        record_metric(
            "llm_completion_latency",
            (time.perf_counter() - started) * 1000,
            {"provider": spec.provider.value, "model": spec.model},
            metric_type="histogram",
        )
        return completion

    async def generate_text(
        self, spec: ModelSpec, messages: Messages, timeout: float | None = None
    ) -> Completion:
        return await self.complete_messages(spec, messages, timeout=timeout)

    async def generate_structured(
        self,
        spec: ModelSpec,
        messages: Messages,
        schema: type[T],
        max_retries: int = 1,
        timeout: float | None = None,
    ) -> StructuredOutput[T]:
        """
        Ask for a JSON object matching `schema`.

        Up to `max_retries + 1` attempts. After a parse or validation failure
        the errors are sent back to the model so it can correct itself.
        Provider errors are not retried here; they propagate to the caller.
        """
        if not any(str(m.get("content") or "").strip() for m in messages):
            raise ValidationError("prompt must be a non-empty string", field="prompt", rule="required")

        system = {
            "role": "system",
            "content": SYSTEM_JSON_OUTPUT.format(
                schema_json=json.dumps(schema.model_json_schema(by_alias=True), indent=2)
            ),
        }
        usage = TokenUsage()
        feedback: str | None = None
        raw_output: str | None = None

        for attempt in range(max_retries + 1):
            request = [system, *messages]
            if feedback:
                request.append(
                    {"role": "user", "content": VALIDATION_FEEDBACK.format(errors=feedback)}
                )
            completion = await self.complete_messages(
                spec, request, timeout=timeout, response_format={"type": "json_object"}
            )
            raw_output = completion.text
            usage = TokenUsage(
                prompt_tokens=usage.prompt_tokens + completion.usage.prompt_tokens,
                completion_tokens=usage.completion_tokens + completion.usage.completion_tokens,
                total_tokens=usage.total_tokens + completion.usage.total_tokens,
            )
            try:
                parsed = schema.model_validate(_try_load_json(raw_output))
            except PydanticValidationError as e:
                feedback = format_validation_errors(e)
            except ValueError as e:
                feedback = str(e)
            else:
                return StructuredOutput(
                    object=parsed,
                    usage=usage,
                    reasoning=completion.reasoning,
                    attempts=attempt + 1,
                )
            logger.warning(
                "Structured output from %s failed validation (attempt %d/%d): %s",
                spec.label,
                attempt + 1,
                max_retries + 1,
                feedback,
            )

        raise SchemaValidationError(
            f"Output did not match {schema.__name__} after {max_retries + 1} attempts: {feedback}",
            schema_name=schema.__name__,
            raw_output=raw_output[:1000] if raw_output else None,
            attempts=max_retries + 1,
            error_code="SCHEMA_VALIDATION_FAILED",
        )


# =============================================================================
# JSON helpers
# =============================================================================
def _extract_first_balanced_json_object(s: object) -> str | None:
    """
    Finds the first balanced JSON object (from '{' to '}') in a string.
    Handles nested braces, braces inside strings, and escaped characters.
    """
    if not isinstance(s, str) or "{" not in s:
        return None

    first_brace = s.find("{")
    balance = 0
    in_string = False
    escape_next = False

    for i, char in enumerate(s[first_brace:]):
        if escape_next:
            escape_next = False
            continue
        if char == "\\":
            escape_next = True
            continue
        if char == '"':
            in_string = not in_string
        if not in_string:
            if char == "{":
                balance += 1
            elif char == "}":
                balance -= 1
            if balance == 0 and i > 0:
                return s[first_brace : first_brace + i + 1]
    return None


def _try_load_json(data: Any) -> dict[str, Any]:
    """
    Parse a JSON object from model output.

    Accepts dicts, bytes or strings; strips <think> traces and markdown fences.
    """
    if isinstance(data, dict):
        return data
    if not data:
        raise ValueError("Empty data for JSON parsing")

    s = data.decode("utf-8") if isinstance(data, bytes) else str(data)
    s = re.sub(r"<think>.*?</think>", "", s.strip(), flags=re.DOTALL | re.IGNORECASE).strip()

    try:
        obj = json.loads(s)
        if isinstance(obj, dict):
            return obj
    except json.JSONDecodeError:
        pass

    for m in re.finditer(r"```(?:json|json5)?\s*([\s\S]*?)\s*```", s, flags=re.IGNORECASE):
        block = _extract_first_balanced_json_object(m.group(1))
        if block:
            try:
                obj = json.loads(block)
                if isinstance(obj, dict):
                    return obj
            except json.JSONDecodeError:
                pass

    block = _extract_first_balanced_json_object(s)
    if block:
        try:
            obj = json.loads(block)
            if isinstance(obj, dict):
                return obj
        except json.JSONDecodeError:
            pass

    raise ValueError(f"Failed to parse JSON from output: {s[:200]!r} (Total len: {len(s)})")
