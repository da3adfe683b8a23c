"""
Durable analysis of newly inserted messages.

The `message/inserted` event carries identifiers only; everything else is
re-read when the job runs. Duplicate events collapse onto one job through
the queue's idempotency key (the message id), and a message already marked
completed is skipped before any model is called.

Producers call `enqueue_message_inserted` once a message has been stored;
the worker runs the resulting job through `AnalyzeMessageFunction`.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any
from uuid import UUID

from mailsense.common.exceptions import NotFoundError
from mailsense.config.models import DurableConfig
from mailsense.db.repositories import MessageRepository
from mailsense.db.session import unit_of_work
from mailsense.domain_models.analysis import AnalysisStatus
from mailsense.domain_models.message import Message
from mailsense.durable.steps import StepRunner
from mailsense.observability import record_metric, trace_operation
from mailsense.pipeline import AnalysisPipeline, GatheredData, PipelineOptions
from mailsense.queue import Job, JobQueue
from mailsense.queue_registry import MESSAGE_INSERTED
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

STEP_FETCH = "fetch-message-and-thread"
STEP_GATHER = "gather-analysis"
STEP_PERSIST = "persist-analysis"

SKIPPED_ALREADY_COMPLETED = {"skipped": True, "reason": "already_completed"}


class MessageInsertedEvent(BaseModel):
    tenant_id: str = Field(alias="tenantId")
    message_id: UUID = Field(alias="messageId")
    thread_id: UUID | None = Field(default=None, alias="threadId")

    model_config = ConfigDict(populate_by_name=True)


def send_event(queue: JobQueue, event: MessageInsertedEvent) -> str:
    """Enqueue the event; repeats for the same message within the TTL are dropped."""
    job_id = queue.enqueue(
        MESSAGE_INSERTED,
        event.model_dump(mode="json", by_alias=True),
        idempotency_key=str(event.message_id),
    )
    logger.info("Queued %s for message %s as job %s", MESSAGE_INSERTED, event.message_id, job_id)
    return job_id


def backoff_schedule(
    attempt: int, initial_delay: float = 60.0, max_delay: float = 1800.0
) -> float:
    """Delay before retry number `attempt` (1-based): 60s, 120s, 240s ... capped at 30 min."""
    return min(initial_delay * 2 ** (max(attempt, 1) - 1), max_delay)


class AnalyzeMessageFunction:
    """Handler for `message/inserted` jobs."""

    def __init__(
        self,
        pipeline: AnalysisPipeline,
        session_factory: async_sessionmaker[AsyncSession],
        durable_config: DurableConfig | None = None,
    ) -> None:
        self.pipeline = pipeline
        self.session_factory = session_factory
        self.durable_config = durable_config or DurableConfig()
        self.messages = MessageRepository()

    def retry_delay(self, attempt: int) -> float:
        return backoff_schedule(
            attempt,
            self.durable_config.initial_delay_seconds,
            self.durable_config.max_delay_seconds,
        )

    async def _status(self, message_id: UUID) -> AnalysisStatus | None:
        async with self.session_factory() as session:
            return await self.messages.get_status(session, message_id)

    async def _set_status(self, event: MessageInsertedEvent, status: AnalysisStatus) -> None:
        async with unit_of_work(self.session_factory, event.tenant_id) as uow:
            await self.messages.set_status(uow, event.message_id, status)

    # ------------------------------------------------------------------- steps
    async def fetch(self, event: MessageInsertedEvent) -> dict[str, Any]:
        async with self.session_factory() as session:
            message = await self.messages.get(session, event.message_id)
            if message is None:
                raise NotFoundError(
                    f"Message {event.message_id} not found",
                    resource="message",
                    resource_id=str(event.message_id),
                )
            thread: list[Message] = []
            if message.thread_id is not None:
                thread = await self.messages.get_thread_messages(session, message.thread_id)
        return {
            "message": message.model_dump(mode="json"),
            "thread_messages": [m.model_dump(mode="json") for m in thread],
        }

    def _options(self, event: MessageInsertedEvent, fetched: dict[str, Any]) -> PipelineOptions:
        return PipelineOptions(
            tenant_id=event.tenant_id,
            message=Message.model_validate(fetched["message"]),
            thread_messages=[Message.model_validate(m) for m in fetched["thread_messages"]],
            persist=True,
            use_thread_summaries=self.pipeline.analysis_config.use_thread_summaries,
        )

    async def gather(
        self, event: MessageInsertedEvent, fetched: dict[str, Any]
    ) -> dict[str, Any]:
        gathered = await self.pipeline.gather(self._options(event, fetched))
        return gathered.model_dump(mode="json")

    async def persist(
        self,
        event: MessageInsertedEvent,
        fetched: dict[str, Any],
        gathered: dict[str, Any],
    ) -> dict[str, Any]:
        result = await self.pipeline.commit(
            self._options(event, fetched), GatheredData.model_validate(gathered)
        )
        return {
            "success": result.success,
            "message_id": str(result.message_id),
            "companies_created": result.companies_created,
            "contacts_created": result.contacts_created,
            "analyses_saved": result.analyses_saved,
            "kinds": sorted(result.results),
        }

    # -------------------------------------------------------------------- entry
    @trace_operation("durable_analyze_message")
    async def __call__(self, job: Job, steps: StepRunner) -> dict[str, Any]:
        event = MessageInsertedEvent.model_validate(job.payload)

        # Always re-read; never memoized
        status = await self._status(event.message_id)
        if status is None:
            raise NotFoundError(
                f"Message {event.message_id} not found",
                resource="message",
                resource_id=str(event.message_id),
            )
        if status == AnalysisStatus.COMPLETED:
            logger.info("Message %s already analyzed; skipping", event.message_id)
            record_metric("durable_skipped", 1, {"reason": "already_completed"})
            return dict(SKIPPED_ALREADY_COMPLETED)

        if status != AnalysisStatus.PROCESSING:
            await self._set_status(event, AnalysisStatus.PROCESSING)

        fetched = await steps.run(STEP_FETCH, self.fetch, event)
        gathered = await steps.run(STEP_GATHER, self.gather, event, fetched)
        return await steps.run(STEP_PERSIST, self.persist, event, fetched, gathered)

    async def on_failure(self, job: Job, error: BaseException) -> None:
        """Retries exhausted: leave the message visibly failed."""
        event = MessageInsertedEvent.model_validate(job.payload)
        logger.error(
            "Analysis of message %s failed permanently after %d attempts: %s",
            event.message_id,
            job.attempts,
            error,
        )
        record_metric("durable_dead_letters", 1)
        try:
            await self._set_status(event, AnalysisStatus.FAILED)
        except Exception as e:
            logger.error("Could not mark message %s failed: %s", event.message_id, e)


async def enqueue_message_inserted(
    queue: JobQueue, tenant_id: str, message_id: UUID, thread_id: UUID | None = None
) -> str:
    """Queue analysis of a stored message; returns the job id."""
    event = MessageInsertedEvent(
        tenant_id=tenant_id, message_id=message_id, thread_id=thread_id
    )
    return await asyncio.to_thread(send_event, queue, event)
