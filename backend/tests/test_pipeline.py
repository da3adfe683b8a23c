import uuid
from datetime import datetime, timezone

import httpx
import pytest
from conftest import (
    FakeLLM,
    batched_kinds,
    make_extraction_client,
    make_message,
    store_message,
)
from mailsense.common.exceptions import CollaboratorError, ConfigurationError
from mailsense.db.models import Contact, MessageRecord
from mailsense.db.repositories import (
    AnalysisRepository,
    MessageRepository,
    ThreadSummaryRepository,
    UserRepository,
)
from mailsense.domain_models.analysis import (
    AnalysisConfigOverrides,
    AnalysisStatus,
    Signal,
)
from mailsense.pipeline import PipelineOptions
from mailsense.services import build_services
from mailsense.threads.summaries import DIRECT_FORMAT_MODEL
from sqlalchemy import select

TENANT = "tenant-1"


async def load(session_factory, message_id):
    async with session_factory() as session:
        record = await session.get(MessageRecord, message_id)
        analyses = await AnalysisRepository().list_for_message(session, message_id)
        participants = await MessageRepository().get_participants(session, message_id)
    return record, analyses, participants


class TestPersistedRun:
    async def test_first_message_in_thread(self, services, session_factory, fake_llm):
        thread_id = uuid.uuid4()
        message = make_message(thread_id=thread_id)
        await store_message(session_factory, message)

        result = await services.pipeline.execute(
            PipelineOptions(tenant_id=TENANT, message=message, persist=True)
        )

        assert result.success
        assert set(result.results) == {"signature-extraction", "sentiment", "escalation"}
        assert result.analyses_saved == 3
        assert result.companies_created == 1
        assert result.contacts_created == 1

        # One batched structured call, no summary merges
        assert len(fake_llm.structured_calls) == 1
        assert set(batched_kinds(fake_llm.calls[0])) == set(result.results)
        assert fake_llm.text_calls == []

        record, analyses, participants = await load(session_factory, message.message_id)
        assert record.analysis_status == AnalysisStatus.COMPLETED
        assert record.sentiment == "negative"
        assert record.sentiment_score == 0.9
        assert record.escalation_detected is True
        assert record.signals == [Signal.SENTIMENT_NEGATIVE, Signal.ESCALATION]
        assert sorted(a.kind for a in analyses) == ["escalation", "sentiment", "signature-extraction"]

        by_email = {p.email: p for p in participants}
        assert set(by_email) == {"jane@acme.com", "support@ourco.com", "ops@acme.com"}
        assert by_email["jane@acme.com"].direction == "from"
        assert by_email["jane@acme.com"].contact_id == "ct-1"
        assert by_email["jane@acme.com"].customer_id == "co-1"
        assert by_email["support@ourco.com"].user_id is not None
        assert by_email["support@ourco.com"].contact_id is None
        assert by_email["ops@acme.com"].contact_id is not None

        async with session_factory() as session:
            jane = await session.scalar(select(Contact).where(Contact.email == "jane@acme.com"))
            users = await UserRepository().find_by_emails(session, TENANT, ["support@ourco.com"])
            summaries = await ThreadSummaryRepository().list_for_thread(session, thread_id)
        assert jane.title == "VP Engineering"
        assert jane.company == "Acme Corp"
        assert jane.phone == "+1 555 0100"
        assert jane.customer_id == "co-1"
        assert list(users) == ["support@ourco.com"]
        assert len(summaries) == 3
        assert {s.model_used for s in summaries} == {DIRECT_FORMAT_MODEL}

    async def test_second_message_uses_and_merges_summaries(
        self, services, session_factory, fake_llm
    ):
        thread_id = uuid.uuid4()
        first = make_message(thread_id=thread_id)
        second = make_message(
            thread_id=thread_id,
            subject="Re: Urgent: Production Issue",
            body="Still broken.",
            received_at=datetime(2024, 5, 2, 8, 0, tzinfo=timezone.utc),
        )
        for message in (first, second):
            await store_message(session_factory, message)
            await services.pipeline.execute(
                PipelineOptions(tenant_id=TENANT, message=message, persist=True)
            )

        # Stored summaries became the thread context of the second run
        second_batch = fake_llm.structured_calls[1]
        assert any(
            "[SENTIMENT Summary]" in m["content"] for m in second_batch["messages"]
        )
        assert len(fake_llm.text_calls) == 3

        async with session_factory() as session:
            summaries = await ThreadSummaryRepository().list_for_thread(session, thread_id)
        assert {s.last_analyzed_message_id for s in summaries} == {second.message_id}
        assert {s.model_used for s in summaries} == {"gpt-4o-mini"}

    async def test_extraction_failure_aborts_run(self, config, fake_llm, session_factory):
        extraction = make_extraction_client(lambda request: httpx.Response(503))
        services = build_services(
            config,
            client_factory=fake_llm.client_factory,
            extraction=extraction,
            session_factory=session_factory,
        )
        message = make_message(thread_id=uuid.uuid4())
        await store_message(session_factory, message)

        with pytest.raises(CollaboratorError):
            await services.pipeline.execute(
                PipelineOptions(tenant_id=TENANT, message=message, persist=True)
            )
        await extraction.aclose()

        record, analyses, participants = await load(session_factory, message.message_id)
        assert record.analysis_status == AnalysisStatus.PENDING
        assert analyses == []
        assert participants == []
        assert fake_llm.calls == []

    async def test_analysis_failure_still_commits(self, config, session_factory, extraction_client):
        fake = FakeLLM(lambda request: RuntimeError("all models down"))
        services = build_services(
            config,
            client_factory=fake.client_factory,
            extraction=extraction_client,
            session_factory=session_factory,
        )
        message = make_message()
        await store_message(session_factory, message)

        result = await services.pipeline.execute(
            PipelineOptions(tenant_id=TENANT, message=message, persist=True)
        )

        assert result.analyses_saved == 0
        assert all(not r.succeeded for r in result.results.values())
        record, analyses, participants = await load(session_factory, message.message_id)
        assert record.analysis_status == AnalysisStatus.COMPLETED
        assert analyses == []
        assert len(participants) == 3


class TestDryRun:
    async def test_no_writes_without_persist(self, services, session_factory, fake_llm):
        message = make_message(thread_id=uuid.uuid4())
        await store_message(session_factory, message)

        result = await services.pipeline.execute(
            PipelineOptions(
                tenant_id=TENANT,
                message=message,
                analysis_kinds=["sentiment", "churn"],
            )
        )

        assert set(result.results) == {"sentiment", "churn"}
        assert result.analyses_saved == 0
        record, analyses, _ = await load(session_factory, message.message_id)
        assert record.analysis_status == AnalysisStatus.PENDING
        assert analyses == []

    async def test_signature_skipped_without_signature(self, services):
        message = make_message(signature=None)
        result = await services.pipeline.execute(PipelineOptions(tenant_id=TENANT, message=message))
        assert "signature-extraction" not in result.results

    async def test_caller_thread_context_wins(self, services, fake_llm):
        await services.pipeline.execute(
            PipelineOptions(
                tenant_id=TENANT,
                message=make_message(thread_id=uuid.uuid4()),
                thread_context="Caller supplied history",
                analysis_kinds=["sentiment"],
            )
        )
        contents = [m["content"] for m in fake_llm.calls[0]["messages"]]
        assert any("Caller supplied history" in c for c in contents)

    async def test_raw_thread_messages_used_without_summaries(self, services, fake_llm):
        thread_id = uuid.uuid4()
        earlier = make_message(thread_id=thread_id, subject="Initial report")
        current = make_message(
            thread_id=thread_id,
            received_at=datetime(2024, 5, 2, tzinfo=timezone.utc),
        )
        await services.pipeline.execute(
            PipelineOptions(
                tenant_id=TENANT,
                message=current,
                thread_messages=[earlier, current],
                analysis_kinds=["sentiment"],
            )
        )
        contents = "\n".join(m["content"] for m in fake_llm.calls[0]["messages"])
        assert "Thread History (2 messages):" in contents
        assert "Subject: Initial report" in contents
        assert "[CURRENT]" in contents

    async def test_request_overrides_select_kinds(self, services, fake_llm):
        result = await services.pipeline.execute(
            PipelineOptions(
                tenant_id=TENANT,
                message=make_message(),
                config=AnalysisConfigOverrides(
                    enabled={"kudos": True, "sentiment": False, "escalation": False}
                ),
            )
        )
        assert set(result.results) == {"signature-extraction", "kudos"}

    async def test_explicit_kinds_drop_always_run_extractions(self, services, fake_llm):
        result = await services.pipeline.execute(
            PipelineOptions(
                tenant_id=TENANT,
                message=make_message(),
                analysis_kinds=["sentiment", "domain-extraction", "contact-extraction"],
            )
        )
        assert set(result.results) == {"sentiment"}
        assert len(fake_llm.calls) == 1

    async def test_later_thread_messages_excluded_from_context(self, services, fake_llm):
        thread_id = uuid.uuid4()
        earlier = make_message(
            thread_id=thread_id,
            subject="Initial report",
            received_at=datetime(2024, 4, 30, tzinfo=timezone.utc),
        )
        current = make_message(
            thread_id=thread_id,
            received_at=datetime(2024, 5, 1, tzinfo=timezone.utc),
        )
        later = [
            make_message(
                thread_id=thread_id,
                subject=f"Later {i}",
                received_at=datetime(2024, 5, 2 + i, tzinfo=timezone.utc),
            )
            for i in range(5)
        ]
        await services.pipeline.execute(
            PipelineOptions(
                tenant_id=TENANT,
                message=current,
                thread_messages=[earlier, current, *later],
                analysis_kinds=["sentiment"],
            )
        )
        contents = "\n".join(m["content"] for m in fake_llm.calls[0]["messages"])
        assert "[CURRENT]" in contents
        assert "Subject: Initial report" in contents
        assert "Later" not in contents


async def test_persist_requires_database(config, fake_llm, extraction_client):
    services = build_services(
        config.model_copy(update={"database": config.database.model_copy(update={"url": None})}),
        client_factory=fake_llm.client_factory,
        extraction=extraction_client,
    )
    with pytest.raises(ConfigurationError) as exc_info:
        await services.pipeline.execute(
            PipelineOptions(tenant_id=TENANT, message=make_message(), persist=True)
        )
    assert exc_info.value.error_code == "DB_NOT_CONFIGURED"
