"""
Thread summarization.

Keeps one running summary per (thread, analysis kind). The first message of
a thread is summarized by formatting its result directly; later messages are
merged into the existing summary with a single model call, falling back to
appending a dated note when that call fails.

Reading and model calls (`prepare_summary_updates`) are kept apart from the
writes (`apply_summary_updates`) so the merge calls can run before the
commit-phase transaction is opened.
"""

from __future__ import annotations

import json
import logging
import uuid
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any

from mailsense.config.models import LLMConfig
from mailsense.db.models import ThreadSummary
from mailsense.db.repositories import ThreadSummaryRepository, summary_values
from mailsense.db.session import UnitOfWork, savepoint
from mailsense.domain_models.analysis import AnalysisKind, AnalysisResult, ThreadContext
from mailsense.domain_models.message import Message
from mailsense.llm.providers import resolve_model
from mailsense.llm.runtime import AsyncLLMRuntime
from mailsense.observability import record_metric, trace_operation
from mailsense.prompts import (
    SENTIMENT_TREND_INSTRUCTION,
    SYSTEM_THREAD_SUMMARY,
    USER_THREAD_SUMMARY,
    construct_prompt_messages,
)
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

NO_THREAD_HISTORY = "No thread history available"
SUMMARY_VERSION = "v1.0"
SUMMARY_MAX_WORDS = 300
DIRECT_FORMAT_MODEL = "direct-format"
FALLBACK_MODEL = "fallback"
MERGE_BODY_CHARS = 1000

SENTIMENT = AnalysisKind.SENTIMENT.value


def kind_title(kind: str) -> str:
    """'signature-extraction' -> 'Signature Extraction'."""
    return kind.replace("-", " ").title()


def sentiment_score(payload: Mapping[str, Any]) -> float | None:
    """Explicit score when the model gave one, otherwise its confidence."""
    score = payload.get("score")
    if score is None:
        score = payload.get("confidence")
    return score


def _date(value: datetime | None) -> str:
    return value.date().isoformat() if value else "Unknown"


def _iso(value: datetime | None) -> str:
    return value.isoformat() if value else "Unknown"


def _score_suffix(score: Any) -> str:
    return f" (score: {score})" if score is not None else ""


def format_result(kind: str, payload: Mapping[str, Any] | None, reasoning: str | None = None) -> str:
    if not payload:
        return "No analysis result available."
    if kind == SENTIMENT:
        text = f"Sentiment: {payload.get('value', 'unknown')}{_score_suffix(sentiment_score(payload))}."
        if reasoning:
            text += f" Reasoning: {reasoning[:200]}"
        return text
    formatted = json.dumps(payload, indent=2, default=str)
    return formatted[:500] + "..." if len(formatted) > 500 else formatted


class SummaryDraft(BaseModel):
    """A summary ready to be written."""

    kind: str
    summary: str
    model_used: str
    metadata: dict[str, Any] = Field(default_factory=dict)
    usage: dict[str, int] | None = None

    model_config = ConfigDict(protected_namespaces=())


class PreparedSummaryUpdate(BaseModel):
    tenant_id: str
    thread_id: uuid.UUID
    message_id: uuid.UUID
    draft: SummaryDraft
    analyzed_at: datetime

    def values(self) -> dict[str, Any]:
        return summary_values(
            tenant_id=self.tenant_id,
            thread_id=self.thread_id,
            kind=self.draft.kind,
            summary=self.draft.summary,
            message_id=self.message_id,
            analyzed_at=self.analyzed_at,
            model_used=self.draft.model_used,
            metadata=self.draft.metadata,
            usage=self.draft.usage,
            summary_version=SUMMARY_VERSION,
        )


@dataclass
class ThreadSummaryContext:
    summaries: list[ThreadSummary]
    text: str

    def to_thread_context(self) -> ThreadContext:
        previous = next(
            (s.summary_metadata for s in self.summaries if s.kind == SENTIMENT), None
        )
        return ThreadContext(text=self.text, previous_result=previous or None)


class ThreadSummaryService:
    def __init__(
        self,
        runtime: AsyncLLMRuntime,
        llm_config: LLMConfig | None = None,
        repository: ThreadSummaryRepository | None = None,
    ) -> None:
        self.runtime = runtime
        self.llm_config = llm_config or LLMConfig()
        self.repository = repository or ThreadSummaryRepository()

    # ------------------------------------------------------------------ context
    @staticmethod
    def build_context_text(
        summaries: Sequence[ThreadSummary], for_kind: str | None = None
    ) -> str:
        if not summaries:
            return NO_THREAD_HISTORY

        if for_kind == SENTIMENT:
            parts = [
                "Thread Sentiment History (Conversation Memory):\n",
                "Use this context to understand the sentiment trend and provide "
                "consistent sentiment analysis.\n",
            ]
        else:
            parts = ["Thread Summary (Conversation Memory):\n"]

        for summary in summaries:
            parts.append(f"\n[{summary.kind.upper().replace('-', ' ')} Summary]")
            metadata = summary.summary_metadata or {}
            if summary.kind == SENTIMENT and metadata:
                current = metadata.get("current_email_sentiment")
                score = metadata.get("current_email_sentiment_score")
                if current or score is not None:
                    parts.append(
                        f"Last Email Sentiment: {current or 'unknown'}{_score_suffix(score)}"
                    )
            parts.append(summary.summary)
            parts.append(f"(Last updated: {_iso(summary.last_analyzed_at)})")
            parts.append("---")
        return "\n".join(parts)

    async def get_thread_context(
        self,
        session: AsyncSession,
        thread_id: uuid.UUID,
        for_kind: str | None = None,
    ) -> ThreadSummaryContext:
        """Every stored summary for the thread; the requested kind's own summary first."""
        summaries = await self.repository.list_for_thread(session, thread_id)
        if for_kind is not None:
            summaries.sort(key=lambda s: s.kind != for_kind)
        return ThreadSummaryContext(
            summaries=summaries, text=self.build_context_text(summaries, for_kind)
        )

    # ------------------------------------------------------------------ drafts
    def initial_summary(
        self, kind: str, message: Message, result: AnalysisResult
    ) -> SummaryDraft:
        """First message in the thread for this kind: no model call."""
        payload = result.result or {}
        date = _date(message.received_at)
        formatted = format_result(kind, payload, result.reasoning)
        if kind == SENTIMENT:
            summary = (
                f"Thread sentiment analysis started on {date}. "
                f"First email sentiment: {payload.get('value', 'unknown')}"
                f"{_score_suffix(sentiment_score(payload))}. {formatted}"
            )
        else:
            summary = (
                f"Thread {kind_title(kind)} analysis started on {date}. "
                f"First email analysis: {formatted}"
            )
        return SummaryDraft(kind=kind, summary=summary, model_used=DIRECT_FORMAT_MODEL)

    def build_merge_messages(
        self,
        kind: str,
        existing: ThreadSummary,
        message: Message,
        result: AnalysisResult,
    ) -> list[dict[str, str]]:
        payload = result.result or {}
        trend_instruction = ""
        if kind == SENTIMENT:
            metadata = existing.summary_metadata or {}
            previous = metadata.get("current_email_sentiment")
            if previous:
                trend_instruction = SENTIMENT_TREND_INSTRUCTION.format(
                    previous_sentiment=previous,
                    previous_score=_score_suffix(
                        metadata.get("current_email_sentiment_score")
                    ),
                )
        sender = message.from_address
        return construct_prompt_messages(
            SYSTEM_THREAD_SUMMARY,
            USER_THREAD_SUMMARY,
            analysis_name=kind_title(kind),
            existing_summary=existing.summary,
            subject=message.subject,
            sender=(sender.name or sender.email) if sender else "Unknown",
            received_at=_iso(message.received_at),
            body=message.body[:MERGE_BODY_CHARS] or "No body",
            result_json=json.dumps(payload, indent=2, default=str),
            trend_instruction=trend_instruction,
            max_words=SUMMARY_MAX_WORDS,
        )

    def fallback_summary(
        self, kind: str, existing: str, message: Message, result: AnalysisResult
    ) -> SummaryDraft:
        note = json.dumps(result.result or {}, default=str)[:200]
        return SummaryDraft(
            kind=kind,
            summary=(
                f"{existing}\n\nUpdate ({_date(message.received_at)}): "
                f"New email analyzed. {note}"
            ),
            model_used=FALLBACK_MODEL,
        )

    async def merge_summary(
        self,
        kind: str,
        existing: ThreadSummary,
        message: Message,
        result: AnalysisResult,
    ) -> SummaryDraft:
        """One model call to fold the new result into the existing summary."""
        messages = self.build_merge_messages(kind, existing, message, result)
        model = self.llm_config.summary_model
        try:
            completion = await self.runtime.generate_text(resolve_model(model), messages)
        except Exception as e:
            logger.warning(
                "Summary merge for %s failed (%s); using fallback summary", kind, e
            )
            record_metric("thread_summary_fallbacks", 1, {"kind": kind})
            return self.fallback_summary(kind, existing.summary, message, result)
        return SummaryDraft(
            kind=kind,
            summary=completion.text.strip(),
            model_used=model,
            usage=completion.usage.model_dump(),
        )

    @staticmethod
    def summary_metadata(
        kind: str,
        message: Message,
        result: AnalysisResult,
        existing: ThreadSummary | None,
    ) -> dict[str, Any]:
        metadata: dict[str, Any] = {
            "email_subject": message.subject,
            "email_received_at": _iso(message.received_at) if message.received_at else None,
        }
        if kind == SENTIMENT and result.result:
            metadata["current_email_sentiment"] = result.result.get("value")
            metadata["current_email_sentiment_score"] = sentiment_score(result.result)
            if existing is not None and existing.summary_metadata:
                metadata["previous_sentiment"] = existing.summary_metadata.get(
                    "current_email_sentiment"
                )
                metadata["previous_sentiment_score"] = existing.summary_metadata.get(
                    "current_email_sentiment_score"
                )
        return metadata

    # ------------------------------------------------------------------ updates
    @trace_operation("thread_summaries_prepare")
    async def prepare_summary_updates(
        self,
        session: AsyncSession,
        tenant_id: str,
        thread_id: uuid.UUID,
        message_id: uuid.UUID,
        message: Message,
        results: Mapping[str, AnalysisResult],
    ) -> list[PreparedSummaryUpdate]:
        """
        Build the new summary for every successful result.

        Reads and model calls only. A kind that fails is logged and left
        out; the others still get prepared.
        """
        updates: list[PreparedSummaryUpdate] = []
        for kind, result in results.items():
            if not result.succeeded:
                continue
            try:
                existing = await self.repository.get(session, thread_id, kind)
                if existing is None:
                    draft = self.initial_summary(kind, message, result)
                    logger.info(
                        "Created initial %s summary for thread %s without a model call",
                        kind,
                        thread_id,
                    )
                else:
                    draft = await self.merge_summary(kind, existing, message, result)
                draft.metadata = self.summary_metadata(kind, message, result, existing)
                updates.append(
                    PreparedSummaryUpdate(
                        tenant_id=tenant_id,
                        thread_id=thread_id,
                        message_id=message_id,
                        draft=draft,
                        analyzed_at=datetime.now(timezone.utc),
                    )
                )
            except Exception as e:
                logger.error(
                    "Failed to prepare %s summary for thread %s: %s", kind, thread_id, e
                )
        return updates

    async def apply_summary_updates(
        self, uow: UnitOfWork, updates: Sequence[PreparedSummaryUpdate]
    ) -> int:
        """Upsert each prepared summary in its own SAVEPOINT."""
        written = 0
        for update in updates:
            async with savepoint(uow, f"thread-summary:{update.draft.kind}"):
                await self.repository.upsert(uow, update.values())
                written += 1
        record_metric("thread_summaries_written", written)
        return written

    async def update_thread_summaries(
        self,
        uow: UnitOfWork,
        tenant_id: str,
        thread_id: uuid.UUID,
        message_id: uuid.UUID,
        message: Message,
        results: Mapping[str, AnalysisResult],
    ) -> int:
        updates = await self.prepare_summary_updates(
            uow.require_active(), tenant_id, thread_id, message_id, message, results
        )
        return await self.apply_summary_updates(uow, updates)
