import pytest
from conftest import (
    CANNED_PAYLOADS,
    FALLBACK_MODEL,
    PRIMARY_MODEL,
    FakeLLM,
    batched_kinds,
    default_reply,
    is_batched,
    make_message,
    single_kind,
)
from mailsense.analysis.catalog import build_default_catalog
from mailsense.analysis.config_loader import merge_with_defaults
from mailsense.analysis.executor import UNKNOWN_MODEL, AnalysisExecutor
from mailsense.analysis.registry import init_registry
from mailsense.common.exceptions import ModelCallError, UnknownAnalysisKindError
from mailsense.domain_models.analysis import (
    AnalysisConfigOverrides,
    ModelConfig,
    ThreadContext,
)
from mailsense.llm.runtime import AsyncLLMRuntime


@pytest.fixture
def executor(config, runtime):
    registry = init_registry(build_default_catalog(config.analysis))
    return AnalysisExecutor(registry, runtime, config.analysis)


def _executor_with(handler, config):
    fake = FakeLLM(handler)
    runtime = AsyncLLMRuntime(config.llm, config.retry, fake.client_factory)
    registry = init_registry(build_default_catalog(config.analysis))
    return AnalysisExecutor(registry, runtime, config.analysis), fake


class TestBatchExecution:
    async def test_batch_is_one_call_with_shared_usage(self, executor, fake_llm):
        message = make_message()
        results = await executor.execute_batch(["sentiment", "escalation"], message, "tenant-1")

        assert len(fake_llm.calls) == 1
        assert is_batched(fake_llm.calls[0])
        assert set(batched_kinds(fake_llm.calls[0])) == {"sentiment", "escalation"}
        assert results["sentiment"].result == CANNED_PAYLOADS["sentiment"]
        assert results["escalation"].result["urgency"] == "high"
        assert results["sentiment"].usage == results["escalation"].usage
        assert results["sentiment"].usage.total_tokens == 150
        assert {r.model_used for r in results.values()} == {PRIMARY_MODEL}

    async def test_email_is_sent_in_user_role(self, executor, fake_llm):
        await executor.execute_batch(["sentiment", "escalation"], make_message(), "tenant-1")
        messages = fake_llm.calls[0]["messages"]
        assert messages[-1]["role"] == "user"
        assert "Email Subject: Urgent: Production Issue" in messages[-1]["content"]

    async def test_batch_failure_falls_back_to_individual_calls(self, config):
        def handler(request):
            if is_batched(request):
                return {"sentiment": {"value": "angry"}}
            return default_reply(request)

        executor, fake = _executor_with(handler, config)
        results = await executor.execute_batch(
            ["sentiment", "escalation", "churn"], make_message(), "tenant-1"
        )

        assert all(r.succeeded for r in results.values())
        assert results["churn"].result["riskLevel"] == "medium"
        individual = [c for c in fake.calls if not is_batched(c)]
        assert sorted(single_kind(c) for c in individual) == ["churn", "escalation", "sentiment"]

    async def test_partial_failure_is_isolated(self, config):
        def handler(request):
            if is_batched(request):
                return RuntimeError("batch unavailable")
            if single_kind(request) == "churn":
                return {"riskLevel": "unknown"}
            return default_reply(request)

        executor, _ = _executor_with(handler, config)
        results = await executor.execute_batch(["sentiment", "churn"], make_message(), "tenant-1")

        assert results["sentiment"].succeeded
        churn = results["churn"]
        assert not churn.succeeded
        assert churn.result is None
        assert churn.model_used == UNKNOWN_MODEL
        assert churn.error

    async def test_single_kind_skips_batching(self, executor, fake_llm):
        results = await executor.execute_batch(["kudos"], make_message(), "tenant-1")
        assert list(results) == ["kudos"]
        assert not is_batched(fake_llm.calls[0])

    async def test_unknown_kinds_are_dropped(self, executor, fake_llm):
        results = await executor.execute_batch(["telepathy"], make_message(), "tenant-1")
        assert results == {}
        assert fake_llm.calls == []

    async def test_batch_uses_first_definitions_models(self, executor, fake_llm):
        overrides = merge_with_defaults(
            AnalysisConfigOverrides(models={"escalation": ModelConfig(primary="gpt-4.1")})
        )
        # Priorities are equal, so request order decides which definition is first
        results = await executor.execute_batch(
            ["sentiment", "escalation"], make_message(), "tenant-1", config=overrides
        )
        assert fake_llm.calls[0]["model"] == PRIMARY_MODEL
        assert results["escalation"].model_used == PRIMARY_MODEL


class TestSingleExecution:
    async def test_unknown_kind_raises(self, executor):
        with pytest.raises(UnknownAnalysisKindError):
            await executor.execute_single("telepathy", make_message(), "tenant-1")

    async def test_signature_uses_signature_prompt(self, executor, fake_llm):
        result = await executor.execute_single("signature-extraction", make_message(), "tenant-1")
        assert result.result["title"] == "VP Engineering"
        user_prompt = fake_llm.calls[0]["messages"][-1]["content"]
        assert "Email Signature:\nJane Doe" in user_prompt
        assert "Email Body" not in user_prompt

    async def test_thread_context_reaches_prompt(self, executor, fake_llm):
        await executor.execute_single(
            "escalation",
            make_message(),
            "tenant-1",
            thread_context=ThreadContext(text="Customer threatened to cancel last week"),
        )
        messages = fake_llm.calls[0]["messages"]
        history = [m for m in messages if "Customer threatened" in m["content"]]
        assert [m["role"] for m in history] == ["system"]

    async def test_fallback_model_used_when_primary_fails(self, config):
        def handler(request):
            if request["model"] == PRIMARY_MODEL:
                return RuntimeError("primary down")
            return default_reply(request)

        executor, fake = _executor_with(handler, config)
        result = await executor.execute_single("sentiment", make_message(), "tenant-1")

        assert result.model_used == FALLBACK_MODEL
        assert [c["model"] for c in fake.calls] == [PRIMARY_MODEL, FALLBACK_MODEL]

    async def test_both_models_failing_raises(self, config):
        executor, _ = _executor_with(lambda request: RuntimeError("down"), config)
        with pytest.raises(ModelCallError) as exc_info:
            await executor.execute_single("sentiment", make_message(), "tenant-1")
        assert exc_info.value.model == FALLBACK_MODEL

    async def test_validation_retry_budget(self, config):
        # validation_retries=1: two attempts on the primary, two on the fallback
        executor, fake = _executor_with(lambda request: {"value": "meh"}, config)
        with pytest.raises(ModelCallError):
            await executor.execute_single("sentiment", make_message(), "tenant-1")
        assert [c["model"] for c in fake.calls] == [PRIMARY_MODEL] * 2 + [FALLBACK_MODEL] * 2


def test_batched_schema_requires_every_kind(executor):
    definitions = executor.registry.get_enabled_analyses(["sentiment", "signature-extraction"])
    schema = executor.build_batched_schema(definitions)
    title = schema.model_json_schema(by_alias=True)
    assert title["title"] == "BatchedAnalysisOutput"
    assert set(title["required"]) == {"sentiment", "signature-extraction"}
