import uuid
from datetime import datetime, timezone

import pytest
from conftest import PRIMARY_MODEL, SUMMARY_TEXT, FakeLLM, make_message
from mailsense.db.models import ThreadSummary
from mailsense.db.repositories import ThreadSummaryRepository
from mailsense.db.session import unit_of_work
from mailsense.domain_models.analysis import AnalysisResult
from mailsense.llm.runtime import AsyncLLMRuntime
from mailsense.threads.summaries import (
    DIRECT_FORMAT_MODEL,
    FALLBACK_MODEL,
    NO_THREAD_HISTORY,
    ThreadSummaryService,
    format_result,
    kind_title,
    sentiment_score,
)

SECOND_DAY = datetime(2024, 5, 2, 14, 0, tzinfo=timezone.utc)


def sentiment_result(value="negative", confidence=0.9):
    return AnalysisResult(
        kind="sentiment",
        result={"value": value, "confidence": confidence},
        model_used=PRIMARY_MODEL,
    )


@pytest.fixture
def summary_service(config, runtime):
    return ThreadSummaryService(runtime, config.llm)


async def run_update(service, session_factory, thread_id, message, results):
    async with unit_of_work(session_factory, message.tenant_id) as uow:
        return await service.update_thread_summaries(
            uow, message.tenant_id, thread_id, message.message_id, message, results
        )


async def stored(session_factory, thread_id, kind="sentiment"):
    async with session_factory() as session:
        return await ThreadSummaryRepository().get(session, thread_id, kind)


def test_helpers():
    assert kind_title("signature-extraction") == "Signature Extraction"
    assert sentiment_score({"value": "positive", "score": 0.4, "confidence": 0.9}) == 0.4
    assert sentiment_score({"value": "positive", "confidence": 0.9}) == 0.9
    assert format_result("sentiment", {}) == "No analysis result available."
    assert format_result("churn", {"indicators": ["x" * 600]}).endswith("...")


class TestInitialSummary:
    async def test_first_message_needs_no_model_call(
        self, summary_service, session_factory, fake_llm
    ):
        thread_id = uuid.uuid4()
        message = make_message(thread_id=thread_id)
        written = await run_update(
            summary_service, session_factory, thread_id, message, {"sentiment": sentiment_result()}
        )

        assert written == 1
        assert fake_llm.calls == []
        row = await stored(session_factory, thread_id)
        assert row.model_used == DIRECT_FORMAT_MODEL
        assert row.summary.startswith(
            "Thread sentiment analysis started on 2024-05-01. "
            "First email sentiment: negative (score: 0.9)."
        )
        assert row.last_analyzed_message_id == message.message_id
        assert row.summary_metadata["current_email_sentiment"] == "negative"
        assert row.summary_metadata["current_email_sentiment_score"] == 0.9
        assert "previous_sentiment" not in row.summary_metadata

    def test_other_kinds_embed_json(self, summary_service):
        result = AnalysisResult(
            kind="escalation",
            result={"detected": True, "confidence": 0.8},
            model_used=PRIMARY_MODEL,
        )
        draft = summary_service.initial_summary("escalation", make_message(), result)
        assert draft.summary.startswith("Thread Escalation analysis started on 2024-05-01.")
        assert '"detected": true' in draft.summary

    async def test_failed_results_are_skipped(self, summary_service, session_factory):
        thread_id = uuid.uuid4()
        message = make_message(thread_id=thread_id)
        failed = AnalysisResult(kind="churn", model_used="unknown", error="boom")
        written = await run_update(
            summary_service,
            session_factory,
            thread_id,
            message,
            {"sentiment": sentiment_result(), "churn": failed},
        )
        assert written == 1
        assert await stored(session_factory, thread_id, "churn") is None


class TestMergeSummary:
    async def test_second_message_merges_with_one_call(
        self, summary_service, session_factory, fake_llm
    ):
        thread_id = uuid.uuid4()
        first = make_message(thread_id=thread_id)
        await run_update(
            summary_service, session_factory, thread_id, first, {"sentiment": sentiment_result()}
        )

        second = make_message(thread_id=thread_id, received_at=SECOND_DAY)
        await run_update(
            summary_service,
            session_factory,
            thread_id,
            second,
            {"sentiment": sentiment_result("positive", 0.7)},
        )

        assert len(fake_llm.text_calls) == 1
        call = fake_llm.text_calls[0]
        assert call["model"] == PRIMARY_MODEL
        system, user = call["messages"]
        assert system["role"] == "system"
        assert "Previous sentiment in this thread: negative (score: 0.9)" in user["content"]
        assert "Thread sentiment analysis started on 2024-05-01" in user["content"]

        row = await stored(session_factory, thread_id)
        assert row.summary == SUMMARY_TEXT
        assert row.model_used == PRIMARY_MODEL
        assert row.last_analyzed_message_id == second.message_id
        assert row.total_tokens == 150
        assert row.summary_metadata["current_email_sentiment"] == "positive"
        assert row.summary_metadata["previous_sentiment"] == "negative"

    async def test_model_failure_appends_dated_note(self, config, session_factory):
        fake = FakeLLM(lambda request: RuntimeError("summary model down"))
        service = ThreadSummaryService(
            AsyncLLMRuntime(config.llm, config.retry, fake.client_factory), config.llm
        )
        thread_id = uuid.uuid4()
        await run_update(
            service,
            session_factory,
            thread_id,
            make_message(thread_id=thread_id),
            {"sentiment": sentiment_result()},
        )
        await run_update(
            service,
            session_factory,
            thread_id,
            make_message(thread_id=thread_id, received_at=SECOND_DAY),
            {"sentiment": sentiment_result("neutral", 0.5)},
        )

        row = await stored(session_factory, thread_id)
        assert row.model_used == FALLBACK_MODEL
        assert row.summary.startswith("Thread sentiment analysis started on 2024-05-01")
        assert "Update (2024-05-02): New email analyzed." in row.summary


class TestContext:
    def test_empty(self):
        assert ThreadSummaryService.build_context_text([]) == NO_THREAD_HISTORY

    def test_sentiment_context(self):
        summaries = [
            ThreadSummary(
                kind="sentiment",
                summary="Customer has grown frustrated.",
                summary_metadata={
                    "current_email_sentiment": "negative",
                    "current_email_sentiment_score": 0.8,
                },
                last_analyzed_at=SECOND_DAY,
            ),
            ThreadSummary(
                kind="signature-extraction",
                summary="Jane Doe, VP Engineering.",
                summary_metadata={},
                last_analyzed_at=SECOND_DAY,
            ),
        ]
        text = ThreadSummaryService.build_context_text(summaries, for_kind="sentiment")
        assert text.startswith("Thread Sentiment History (Conversation Memory):")
        assert "[SENTIMENT Summary]" in text
        assert "Last Email Sentiment: negative (score: 0.8)" in text
        assert "[SIGNATURE EXTRACTION Summary]" in text
        assert f"(Last updated: {SECOND_DAY.isoformat()})" in text

    async def test_thread_context_puts_requested_kind_first(
        self, summary_service, session_factory
    ):
        thread_id = uuid.uuid4()
        message = make_message(thread_id=thread_id)
        churn = AnalysisResult(
            kind="churn",
            result={"riskLevel": "low", "confidence": 0.7, "indicators": []},
            model_used=PRIMARY_MODEL,
        )
        await run_update(
            summary_service,
            session_factory,
            thread_id,
            message,
            {"sentiment": sentiment_result(), "churn": churn},
        )

        async with session_factory() as session:
            context = await summary_service.get_thread_context(session, thread_id, "sentiment")

        assert [s.kind for s in context.summaries] == ["sentiment", "churn"]
        thread_context = context.to_thread_context()
        assert thread_context.previous_result["current_email_sentiment"] == "negative"
        assert thread_context.text.startswith("Thread Sentiment History")
