import uuid

import httpx
import pytest
from conftest import SUMMARY_TEXT, FakeLLM, make_message, store_message
from fastapi.testclient import TestClient
from main import create_app
from mailsense.services import build_services

TENANT = "tenant-1"


def analyze_payload(message, **extra):
    payload = {"tenantId": TENANT, "message": message.model_dump(mode="json")}
    payload.update(extra)
    return payload


@pytest.fixture
async def client(config, services):
    app = create_app(config, services)
    transport = httpx.ASGITransport(app=app)
    async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
        yield http


class TestSystemEndpoints:
    async def test_health(self, client):
        response = await client.get("/health")
        assert response.status_code == 200
        body = response.json()
        assert body["status"] == "healthy"
        assert body["database"] is True

    async def test_version(self, client):
        body = (await client.get("/version")).json()
        assert body["api_version"] == "v1"
        assert body["name"] == "MailSense Analysis Service"

    async def test_correlation_id_is_echoed(self, client):
        response = await client.post(
            "/api/v1/analyze",
            json=analyze_payload(make_message(), analysisKinds=["sentiment"]),
            headers={"X-Correlation-ID": "req-123"},
        )
        assert response.headers["X-Correlation-ID"] == "req-123"
        assert response.json()["correlation_id"] == "req-123"

    async def test_services_not_ready(self, config):
        # No lifespan runs under ASGITransport, so nothing builds services
        transport = httpx.ASGITransport(app=create_app(config))
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            response = await http.post(
                "/api/v1/analyze", json=analyze_payload(make_message())
            )
        assert response.status_code == 503
        assert response.json()["error"]["error_code"] == "SERVICES_NOT_READY"


class TestAnalyzeEndpoint:
    async def test_analyze_selected_kinds(self, client, fake_llm):
        response = await client.post(
            "/api/v1/analyze",
            json=analyze_payload(make_message(), analysisKinds=["sentiment", "escalation"]),
        )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is True
        assert body["results"]["sentiment"] == {"value": "negative", "confidence": 0.9}
        assert body["results"]["escalation"]["detected"] is True
        assert len(fake_llm.calls) == 1

    async def test_thread_context_reaches_the_model(self, client, fake_llm):
        await client.post(
            "/api/v1/analyze",
            json=analyze_payload(
                make_message(),
                analysisKinds=["sentiment"],
                threadContext="Customer threatened to cancel last week",
            ),
        )
        contents = [m["content"] for m in fake_llm.calls[0]["messages"]]
        assert any("threatened to cancel" in c for c in contents)

    async def test_failed_kind_is_reported_inline(self, config, extraction_client, session_factory):
        fake = FakeLLM(lambda request: RuntimeError("provider down"))
        services = build_services(
            config,
            client_factory=fake.client_factory,
            extraction=extraction_client,
            session_factory=session_factory,
        )
        transport = httpx.ASGITransport(app=create_app(config, services))
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            response = await http.post(
                "/api/v1/analyze",
                json=analyze_payload(make_message(), analysisKinds=["sentiment"]),
            )

        assert response.status_code == 200
        body = response.json()
        assert body["success"] is False
        assert "error" in body["results"]["sentiment"]

    async def test_unknown_fields_rejected(self, client):
        payload = analyze_payload(make_message())
        payload["unexpected"] = True
        response = await client.post("/api/v1/analyze", json=payload)
        assert response.status_code == 422


class TestSignatureExtract:
    async def test_extracts_signature(self, client):
        response = await client.post(
            "/api/v1/signature-extract", json=analyze_payload(make_message())
        )
        body = response.json()
        assert body["success"] is True
        assert body["signature"]["name"] == "Jane Doe"
        assert body["signature"]["title"] == "VP Engineering"

    async def test_no_signature(self, client, fake_llm):
        response = await client.post(
            "/api/v1/signature-extract",
            json=analyze_payload(make_message(signature=None)),
        )
        body = response.json()
        assert body["success"] is False
        assert body["signature"] is None
        assert fake_llm.calls == []

    async def test_model_failure_maps_to_503(self, config, extraction_client, session_factory):
        fake = FakeLLM(lambda request: RuntimeError("provider down"))
        services = build_services(
            config,
            client_factory=fake.client_factory,
            extraction=extraction_client,
            session_factory=session_factory,
        )
        transport = httpx.ASGITransport(app=create_app(config, services))
        async with httpx.AsyncClient(transport=transport, base_url="http://test") as http:
            response = await http.post(
                "/api/v1/signature-extract", json=analyze_payload(make_message())
            )

        assert response.status_code == 503
        error = response.json()["error"]
        assert error["type"] == "ModelCallError"
        assert error["correlation_id"] == response.headers["X-Correlation-ID"]


class TestSummarizeEndpoint:
    def payload(self, **extra):
        payload = analyze_payload(
            make_message(),
            kind="sentiment",
            result={"value": "negative", "confidence": 0.9},
        )
        payload.update(extra)
        return payload

    async def test_first_summary_is_formatted_directly(self, client, fake_llm):
        response = await client.post("/api/v1/summarize", json=self.payload())

        body = response.json()
        assert response.status_code == 200
        assert body["model_used"] == "direct-format"
        assert body["usage"] is None
        assert "negative" in body["summary"]
        assert fake_llm.calls == []

    async def test_existing_summary_is_merged(self, client, fake_llm):
        response = await client.post(
            "/api/v1/summarize",
            json=self.payload(
                existingSummary="Customer was frustrated about latency.",
                metadata={"current_email_sentiment": "neutral"},
            ),
        )

        body = response.json()
        assert body["summary"] == SUMMARY_TEXT
        assert body["model_used"] == "gpt-4o-mini"
        assert body["usage"]["total_tokens"] == 150
        assert len(fake_llm.text_calls) == 1


class TestStoredMessageAnalysis:
    async def test_invalid_message_id(self, client):
        response = await client.post("/api/v1/messages/not-a-uuid/analyze", json={})
        assert response.status_code == 400
        assert response.json()["error"]["type"] == "ValidationError"

    async def test_missing_message(self, client):
        response = await client.post(f"/api/v1/messages/{uuid.uuid4()}/analyze", json={})
        assert response.status_code == 404
        assert response.json()["error"]["type"] == "NotFoundError"

    async def test_runs_pipeline_and_persists(self, client, session_factory):
        message = make_message(thread_id=uuid.uuid4())
        await store_message(session_factory, message)

        response = await client.post(f"/api/v1/messages/{message.message_id}/analyze", json={})

        assert response.status_code == 200
        body = response.json()
        assert body["message_id"] == str(message.message_id)
        assert body["thread_id"] == str(message.thread_id)
        assert body["analyses_saved"] == 3
        assert body["companies_created"] == 1
        assert set(body["results"]) == {"signature-extraction", "sentiment", "escalation"}

    async def test_dry_run(self, client, session_factory):
        message = make_message()
        await store_message(session_factory, message)

        response = await client.post(
            f"/api/v1/messages/{message.message_id}/analyze",
            json={"persist": False, "analysisKinds": ["churn"]},
        )

        body = response.json()
        assert body["analyses_saved"] == 0
        assert body["results"]["churn"]["riskLevel"] == "medium"


def test_health_without_services(config):
    # TestClient outside a `with` block skips the lifespan
    client = TestClient(create_app(config))
    response = client.get("/health")
    assert response.status_code == 200
    assert response.json()["database"] is False
    assert "X-Correlation-ID" in response.headers
