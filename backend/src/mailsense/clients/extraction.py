"""
Client for the domain/contact extraction collaborator.

Both calls are load-bearing for the gather phase: any failure surfaces as
CollaboratorError so the durable wrapper can retry the whole run later.
"""

from __future__ import annotations

import logging
from typing import Any

import httpx
from mailsense.common.exceptions import CollaboratorError
from mailsense.config.models import CollaboratorConfig, RetryConfig
from mailsense.domain_models.message import Message
from mailsense.observability import record_metric, trace_operation
from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError
from tenacity import (
    AsyncRetrying,
    before_sleep_log,
    retry_if_exception,
    stop_after_attempt,
    wait_exponential,
)

logger = logging.getLogger(__name__)

DOMAIN_EXTRACT_PATH = "/domain-extract"
CONTACT_EXTRACT_PATH = "/contact-extract"


class ExtractedCompany(BaseModel):
    id: str
    domains: list[str] = Field(default_factory=list)

    model_config = ConfigDict(extra="ignore")


class ExtractedContact(BaseModel):
    id: str
    email: str
    name: str | None = None
    company_id: str | None = Field(default=None, alias="companyId")
    customer_id: str | None = Field(default=None, alias="customerId")

    model_config = ConfigDict(extra="ignore", populate_by_name=True)


class _Envelope(BaseModel):
    success: bool
    data: dict[str, Any] | None = None
    error: Any = None


def _is_retryable(exc: BaseException) -> bool:
    return isinstance(exc, CollaboratorError) and exc.retryable


class ExtractionClient:
    """Async HTTP client; one instance is shared for the process lifetime."""

    def __init__(
        self,
        config: CollaboratorConfig | None = None,
        retry_config: RetryConfig | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.config = config or CollaboratorConfig()
        self.retry_config = retry_config or RetryConfig()
        headers = {"Content-Type": "application/json"}
        if self.config.api_key is not None:
            headers["Authorization"] = f"Bearer {self.config.api_key.get_secret_value()}"
        self._client = httpx.AsyncClient(
            base_url=self.config.base_url.rstrip("/"),
            headers=headers,
            timeout=self.config.timeout_seconds,
            transport=transport,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _post_once(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        try:
            response = await self._client.post(path, json=payload)
        except httpx.TransportError as e:
            raise CollaboratorError(
                f"Request to {path} failed: {e}", endpoint=path, retryable=True
            ) from e

        if response.status_code == 429 or response.status_code >= 500:
            raise CollaboratorError(
                f"{path} returned HTTP {response.status_code}",
                endpoint=path,
                retryable=True,
                status_code=response.status_code,
            )

        try:
            envelope = _Envelope.model_validate(response.json())
        except (ValueError, PydanticValidationError) as e:
            raise CollaboratorError(
                f"{path} returned an unreadable response",
                endpoint=path,
                status_code=response.status_code,
            ) from e

        if not envelope.success or envelope.data is None:
            message = "extraction failed"
            if isinstance(envelope.error, dict):
                message = envelope.error.get("message", message)
            elif envelope.error:
                message = str(envelope.error)
            raise CollaboratorError(
                f"{path}: {message}", endpoint=path, status_code=response.status_code
            )
        return envelope.data

    async def _post(self, path: str, payload: dict[str, Any]) -> dict[str, Any]:
        async for attempt in AsyncRetrying(
            retry=retry_if_exception(_is_retryable),
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
                data = await self._post_once(path, payload)
        return data

    @trace_operation("extraction_domains")
    async def extract_domains(
        self, tenant_id: str, message: Message
    ) -> list[ExtractedCompany]:
        data = await self._post(
            DOMAIN_EXTRACT_PATH,
            {"tenantId": tenant_id, "email": message.model_dump(mode="json")},
        )
        companies = [ExtractedCompany.model_validate(c) for c in data.get("companies") or []]
        record_metric("extraction_companies", len(companies), {"tenant_id": tenant_id})
        return companies

    @trace_operation("extraction_contacts")
    async def extract_contacts(
        self,
        tenant_id: str,
        message: Message,
        companies: list[ExtractedCompany] | None = None,
    ) -> list[ExtractedContact]:
        data = await self._post(
            CONTACT_EXTRACT_PATH,
            {
                "tenantId": tenant_id,
                "email": message.model_dump(mode="json"),
                "companies": [c.model_dump() for c in companies or []],
            },
        )
        contacts = [ExtractedContact.model_validate(c) for c in data.get("contacts") or []]
        record_metric("extraction_contacts", len(contacts), {"tenant_id": tenant_id})
        return contacts
