"""
Analysis executor.

Turns "run these kinds against this message" into model calls. Several
kinds are first tried as one batched call with a combined schema; if that
fails every kind is run on its own, in parallel, with per-kind isolation.
"""

from __future__ import annotations

import asyncio
import logging
import re
from collections.abc import Sequence
from typing import Any

from mailsense.analysis.prompt_builder import prompt_builder_for
from mailsense.analysis.registry import AnalysisRegistry
from mailsense.common.exceptions import ModelCallError, UnknownAnalysisKindError
from mailsense.config.models import AnalysisConfig
from mailsense.domain_models.analysis import (
    AnalysisDefinition,
    AnalysisResult,
    BatchAnalysisResult,
    ModelConfig,
    TenantAnalysisConfig,
    ThreadContext,
)
from mailsense.domain_models.message import Message
from mailsense.llm.providers import resolve_model
from mailsense.llm.runtime import AsyncLLMRuntime, StructuredOutput
from mailsense.observability import record_metric, trace_operation
from pydantic import BaseModel, ConfigDict, Field, create_model

logger = logging.getLogger(__name__)

UNKNOWN_MODEL = "unknown"

Messages = list[dict[str, Any]]


def _field_name(module_name: str) -> str:
    return re.sub(r"\W", "_", module_name)


def _dump(payload: BaseModel) -> dict[str, Any]:
    return payload.model_dump(mode="json", by_alias=True, exclude_none=True)


class AnalysisExecutor:
    def __init__(
        self,
        registry: AnalysisRegistry,
        runtime: AsyncLLMRuntime,
        analysis_config: AnalysisConfig | None = None,
    ) -> None:
        self.registry = registry
        self.runtime = runtime
        self.analysis_config = analysis_config or AnalysisConfig()

    # ------------------------------------------------------------------ helpers
    def resolve_models(
        self, definition: AnalysisDefinition, config: TenantAnalysisConfig | None
    ) -> ModelConfig:
        """Request-level override first, then the definition default."""
        if config is not None and definition.kind in config.models:
            return config.models[definition.kind]
        return definition.models

    def _max_retries(self, definition: AnalysisDefinition, config: TenantAnalysisConfig | None) -> int:
        settings = config.settings.get(definition.kind) if config else None
        settings = settings or definition.settings
        if settings.max_retries is not None:
            return settings.max_retries
        return self.analysis_config.validation_retries

    def _timeout(self, definition: AnalysisDefinition, config: TenantAnalysisConfig | None) -> float | None:
        settings = config.settings.get(definition.kind) if config else None
        settings = settings or definition.settings
        return settings.timeout_ms / 1000 if settings.timeout_ms else None

    def _prompt_messages(
        self,
        definitions: Sequence[AnalysisDefinition],
        message: Message,
        thread_context: ThreadContext | None,
    ) -> Messages:
        if len(definitions) == 1 and definitions[0].build_prompt is not None:
            return [
                {"role": "user", "content": definitions[0].build_prompt(message, thread_context)}
            ]
        return prompt_builder_for(definitions, message, thread_context).build_messages()

    async def _call_with_fallback(
        self,
        models: ModelConfig,
        messages: Messages,
        schema: type[BaseModel],
        max_retries: int,
        timeout: float | None,
    ) -> tuple[StructuredOutput, str]:
        """Primary model with its full attempt budget, then the fallback once."""
        try:
            output = await self.runtime.generate_structured(
                resolve_model(models.primary), messages, schema, max_retries, timeout
            )
            return output, models.primary
        except Exception as primary_error:
            if not models.fallback:
                raise ModelCallError(
                    f"Model {models.primary} failed: {primary_error}",
                    model=models.primary,
                ) from primary_error
            logger.warning(
                "Primary model %s failed (%s); retrying with fallback %s",
                models.primary,
                primary_error,
                models.fallback,
            )
            record_metric("analysis_model_fallback", 1, {"model": models.primary})

        try:
            output = await self.runtime.generate_structured(
                resolve_model(models.fallback), messages, schema, max_retries, timeout
            )
            return output, models.fallback
        except Exception as fallback_error:
            raise ModelCallError(
                f"Fallback model {models.fallback} failed: {fallback_error}",
                model=models.fallback,
            ) from fallback_error

    # --------------------------------------------------------------- operations
    @trace_operation("analysis_execute_single")
    async def execute_single(
        self,
        kind: str,
        message: Message,
        tenant_id: str,
        config: TenantAnalysisConfig | None = None,
        thread_context: ThreadContext | None = None,
    ) -> AnalysisResult:
        definition = self.registry.get(kind)
        if definition is None:
            raise UnknownAnalysisKindError(kind, tenant_id=tenant_id)

        output, model_used = await self._call_with_fallback(
            self.resolve_models(definition, config),
            self._prompt_messages([definition], message, thread_context),
            definition.module.output_schema,
            self._max_retries(definition, config),
            self._timeout(definition, config),
        )
        return AnalysisResult(
            kind=kind,
            result=_dump(output.object),
            model_used=model_used,
            reasoning=output.reasoning,
            usage=output.usage,
        )

    def build_batched_schema(
        self, definitions: Sequence[AnalysisDefinition]
    ) -> type[BaseModel]:
        """One required field per module name, each validated by that module's schema."""
        fields: dict[str, Any] = {
            _field_name(d.module.name): (
                d.module.output_schema,
                Field(..., alias=d.module.name),
            )
            for d in definitions
        }
        return create_model(
            "BatchedAnalysisOutput",
            __config__=ConfigDict(populate_by_name=True, extra="ignore"),
            **fields,
        )

    def build_batched_prompt(
        self,
        definitions: Sequence[AnalysisDefinition],
        message: Message,
        thread_context: ThreadContext | None = None,
    ) -> str:
        return prompt_builder_for(definitions, message, thread_context).build()

    @trace_operation("analysis_execute_batch_call")
    async def execute_batch_call(
        self,
        definitions: Sequence[AnalysisDefinition],
        message: Message,
        tenant_id: str,
        config: TenantAnalysisConfig | None = None,
        thread_context: ThreadContext | None = None,
    ) -> BatchAnalysisResult:
        """Exactly one model call for all definitions, using the first definition's models."""
        first = definitions[0]
        models = self.resolve_models(first, config)
        differing = {
            self.resolve_models(d, config).primary for d in definitions[1:]
        } - {models.primary}
        if differing:
            logger.warning(
                "Batched kinds prefer different models %s; using %s from %s for all",
                sorted(differing),
                models.primary,
                first.kind,
            )

        schema = self.build_batched_schema(definitions)
        output, model_used = await self._call_with_fallback(
            models,
            self._prompt_messages(definitions, message, thread_context),
            schema,
            min(self._max_retries(d, config) for d in definitions),
            self._timeout(first, config),
        )

        results: BatchAnalysisResult = {}
        for definition in definitions:
            payload = getattr(output.object, _field_name(definition.module.name), None)
            if payload is None:
                continue
            results[definition.kind] = AnalysisResult(
                kind=definition.kind,
                result=_dump(payload),
                model_used=model_used,
                reasoning=output.reasoning,
                usage=output.usage,
            )
        return results

    async def execute_individual_calls(
        self,
        definitions: Sequence[AnalysisDefinition],
        message: Message,
        tenant_id: str,
        config: TenantAnalysisConfig | None = None,
        thread_context: ThreadContext | None = None,
    ) -> BatchAnalysisResult:
        async def _run(definition: AnalysisDefinition) -> AnalysisResult:
            try:
                return await self.execute_single(
                    definition.kind, message, tenant_id, config, thread_context
                )
            except Exception as e:
                logger.error(
                    "Analysis %s failed for message %s: %s",
                    definition.kind,
                    message.message_id,
                    e,
                )
                record_metric("analysis_failures", 1, {"kind": definition.kind})
                return AnalysisResult(
                    kind=definition.kind,
                    result=None,
                    model_used=UNKNOWN_MODEL,
                    error=str(e),
                )

        outcomes = await asyncio.gather(*(_run(d) for d in definitions))
        return {result.kind: result for result in outcomes}

    @trace_operation("analysis_execute_batch")
    async def execute_batch(
        self,
        kinds: Sequence[str],
        message: Message,
        tenant_id: str,
        config: TenantAnalysisConfig | None = None,
        thread_context: ThreadContext | None = None,
    ) -> BatchAnalysisResult:
        definitions = sorted(
            self.registry.get_enabled_analyses(kinds),
            key=lambda d: d.sort_priority,
            reverse=True,
        )
        if not definitions:
            logger.warning("No valid analysis kinds in %s; nothing to run", list(kinds))
            return {}

        if len(definitions) > 1:
            try:
                results = await self.execute_batch_call(
                    definitions, message, tenant_id, config, thread_context
                )
                record_metric("analysis_batch_calls", 1, {"outcome": "success"})
                return results
            except Exception as e:
                logger.warning(
                    "Batched analysis of %s failed (%s); falling back to individual calls",
                    [d.kind for d in definitions],
                    e,
                )
                record_metric("analysis_batch_calls", 1, {"outcome": "fallback"})

        return await self.execute_individual_calls(
            definitions, message, tenant_id, config, thread_context
        )
