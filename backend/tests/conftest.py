import json
import uuid
from datetime import datetime, timezone
from types import SimpleNamespace
from typing import Any, AsyncGenerator, Callable

import httpx
import pytest
from mailsense.clients.extraction import ExtractionClient
from mailsense.config.loader import MailSenseConfig
from mailsense.config.models import AnalysisConfig, CollaboratorConfig, RetryConfig
from mailsense.db.models import Base
from mailsense.db.repositories import MessageRepository
from mailsense.db.session import (
    create_engine_from_config,
    create_session_factory,
    unit_of_work,
)
from mailsense.domain_models.message import EmailAddress, Message
from mailsense.llm.runtime import AsyncLLMRuntime
from mailsense.services import build_services
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

# Use an in-memory SQLite database for testing
ASYNC_TEST_DB_URL = "sqlite+aiosqlite:///:memory:"

PRIMARY_MODEL = "gpt-4o-mini"
FALLBACK_MODEL = "gpt-4o"
SUMMARY_TEXT = "Merged thread summary."

CANNED_PAYLOADS: dict[str, dict[str, Any]] = {
    "sentiment": {"value": "negative", "confidence": 0.9},
    "escalation": {
        "detected": True,
        "confidence": 0.85,
        "urgency": "high",
        "reason": "Production outage reported",
    },
    "churn": {"riskLevel": "medium", "confidence": 0.6, "indicators": ["outage"]},
    "upsell": {"detected": False, "confidence": 0.8},
    "kudos": {"detected": False, "confidence": 0.9},
    "competitor": {"detected": False, "confidence": 0.9},
    "signature-extraction": {
        "name": "Jane Doe",
        "title": "VP Engineering",
        "company": "Acme Corp",
        "phone": "+1 555 0100",
    },
}

SCHEMA_TITLES = {
    "SentimentOutput": "sentiment",
    "EscalationOutput": "escalation",
    "ChurnOutput": "churn",
    "UpsellOutput": "upsell",
    "KudosOutput": "kudos",
    "CompetitorOutput": "competitor",
    "SignatureOutput": "signature-extraction",
}


# -----------------------------------------------------------------------------
# Fake model provider
# -----------------------------------------------------------------------------


def is_structured(request: dict[str, Any]) -> bool:
    return "response_format" in request


def system_text(request: dict[str, Any]) -> str:
    return request["messages"][0]["content"]


def is_batched(request: dict[str, Any]) -> bool:
    return is_structured(request) and '"title": "BatchedAnalysisOutput"' in system_text(request)


def batched_kinds(request: dict[str, Any]) -> list[str]:
    text = system_text(request)
    return [kind for kind in CANNED_PAYLOADS if f'"{kind}": {{' in text]


def single_kind(request: dict[str, Any]) -> str | None:
    text = system_text(request)
    for title, kind in SCHEMA_TITLES.items():
        if f'"title": "{title}"' in text:
            return kind
    return None


def default_reply(request: dict[str, Any]) -> Any:
    if not is_structured(request):
        return SUMMARY_TEXT
    if is_batched(request):
        return {kind: CANNED_PAYLOADS[kind] for kind in batched_kinds(request)}
    return CANNED_PAYLOADS[single_kind(request)]


class FakeLLM:
    """
    Stands in for `openai.AsyncOpenAI`.

    `handler(request)` returns a str, a dict (sent as JSON) or an exception
    to raise. Every request is recorded in `calls`.
    """

    def __init__(self, handler: Callable[[dict[str, Any]], Any] | None = None) -> None:
        self.handler = handler or default_reply
        self.calls: list[dict[str, Any]] = []
        self.chat = SimpleNamespace(completions=self)

    def client_factory(self, provider):
        return self

    async def create(self, **request: Any) -> Any:
        self.calls.append(request)
        reply = self.handler(request)
        if isinstance(reply, Exception):
            raise reply
        content = reply if isinstance(reply, str) else json.dumps(reply)
        return SimpleNamespace(
            choices=[SimpleNamespace(message=SimpleNamespace(content=content))],
            usage=SimpleNamespace(prompt_tokens=100, completion_tokens=50, total_tokens=150),
        )

    @property
    def structured_calls(self) -> list[dict[str, Any]]:
        return [c for c in self.calls if is_structured(c)]

    @property
    def text_calls(self) -> list[dict[str, Any]]:
        return [c for c in self.calls if not is_structured(c)]


# -----------------------------------------------------------------------------
# Fake extraction collaborator
# -----------------------------------------------------------------------------

COLLABORATOR_COMPANIES = [{"id": "co-1", "domains": ["acme.com"]}]
COLLABORATOR_CONTACTS = [
    {"id": "ct-1", "email": "jane@acme.com", "name": "Jane Doe", "companyId": "co-1"}
]


def collaborator_handler(request: httpx.Request) -> httpx.Response:
    if request.url.path.endswith("/domain-extract"):
        return httpx.Response(
            200, json={"success": True, "data": {"companies": COLLABORATOR_COMPANIES}}
        )
    if request.url.path.endswith("/contact-extract"):
        return httpx.Response(
            200, json={"success": True, "data": {"contacts": COLLABORATOR_CONTACTS}}
        )
    return httpx.Response(404, json={"success": False, "error": "not found"})


def make_extraction_client(handler=collaborator_handler) -> ExtractionClient:
    return ExtractionClient(
        CollaboratorConfig(base_url="http://extraction.test/api/analysis"),
        RetryConfig(max_retries=0, initial_backoff_seconds=0, max_backoff_seconds=0),
        transport=httpx.MockTransport(handler),
    )


# -----------------------------------------------------------------------------
# Messages
# -----------------------------------------------------------------------------


def make_message(
    thread_id: uuid.UUID | None = None,
    subject: str = "Urgent: Production Issue",
    body: str = "Our production system has been down for two hours. We need a fix today.",
    signature: str | None = "Jane Doe\nVP Engineering\nAcme Corp\n+1 555 0100",
    received_at: datetime | None = None,
    tenant_id: str = "tenant-1",
) -> Message:
    return Message(
        message_id=uuid.uuid4(),
        tenant_id=tenant_id,
        thread_id=thread_id,
        subject=subject,
        body=body,
        signature=signature,
        from_address=EmailAddress(email="Jane@Acme.com", name="Jane Doe"),
        to=[EmailAddress(email="support@ourco.com", name="Support")],
        cc=[EmailAddress(email="ops@acme.com")],
        received_at=received_at or datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc),
    )


async def store_message(session_factory, message: Message) -> None:
    async with unit_of_work(session_factory, message.tenant_id) as uow:
        await MessageRepository().add(uow, message)


# -----------------------------------------------------------------------------
# Fixtures
# -----------------------------------------------------------------------------


@pytest.fixture
def retry_config() -> RetryConfig:
    return RetryConfig(
        max_retries=0, initial_backoff_seconds=0, max_backoff_seconds=0
    )


@pytest.fixture
def analysis_config() -> AnalysisConfig:
    return AnalysisConfig(
        primary_model=PRIMARY_MODEL,
        fallback_model=FALLBACK_MODEL,
        validation_retries=1,
        use_thread_summaries=True,
        tenant_domains=["ourco.com"],
    )


@pytest.fixture
def config(analysis_config, retry_config) -> MailSenseConfig:
    return MailSenseConfig(analysis=analysis_config, retry=retry_config)


@pytest.fixture
def fake_llm() -> FakeLLM:
    return FakeLLM()


@pytest.fixture
def runtime(config, fake_llm) -> AsyncLLMRuntime:
    return AsyncLLMRuntime(config.llm, config.retry, fake_llm.client_factory)


@pytest.fixture
async def engine() -> AsyncGenerator[AsyncEngine, None]:
    """Fresh in-memory database per test."""
    engine = create_engine_from_config(url=ASYNC_TEST_DB_URL)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine) -> async_sessionmaker[AsyncSession]:
    return create_session_factory(engine)


@pytest.fixture
async def extraction_client() -> AsyncGenerator[ExtractionClient, None]:
    client = make_extraction_client()
    yield client
    await client.aclose()


@pytest.fixture
def services(config, fake_llm, extraction_client, session_factory):
    return build_services(
        config,
        client_factory=fake_llm.client_factory,
        extraction=extraction_client,
        session_factory=session_factory,
    )
