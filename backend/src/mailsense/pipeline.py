"""
Two-phase analysis pipeline.

Gather: resolve thread context, call the extraction collaborator, collect
participants, run the analyses and prepare thread-summary updates. No
local writes happen here, so the phase can be retried freely.

Commit: one transaction that writes contacts, participants, analysis
records, denormalized message fields and thread summaries, then marks the
message completed. Signature enrichment and summary upkeep are non-fatal
and run inside SAVEPOINTs; anything else rolls the whole run back.
"""

from __future__ import annotations

import logging
from uuid import UUID

from mailsense.analysis.config_loader import (
    get_requested_kinds,
    is_always_run,
    merge_with_defaults,
)
from mailsense.analysis.executor import AnalysisExecutor
from mailsense.analysis.records import compute_signals, extract_analysis_fields
from mailsense.analysis.registry import AnalysisRegistry
from mailsense.analysis.thread_context import build_thread_context
from mailsense.clients.extraction import (
    ExtractedCompany,
    ExtractedContact,
    ExtractionClient,
)
from mailsense.common.exceptions import ConfigurationError
from mailsense.config.models import AnalysisConfig
from mailsense.db.repositories import (
    AnalysisRepository,
    ContactRef,
    ContactRepository,
    MessageRepository,
    UserRepository,
    collect_participants,
    merge_contacts,
    resolve_participant_links,
)
from mailsense.db.session import UnitOfWork, savepoint, unit_of_work
from mailsense.domain_models.analysis import (
    AnalysisConfigOverrides,
    AnalysisKind,
    AnalysisResult,
    AnalysisStatus,
    BatchAnalysisResult,
    TenantAnalysisConfig,
    ThreadContext,
)
from mailsense.domain_models.message import EmailAddress, Message
from mailsense.observability import record_metric, trace_operation
from mailsense.threads.summaries import (
    PreparedSummaryUpdate,
    ThreadSummaryService,
    sentiment_score,
)
from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

K = AnalysisKind


class PipelineOptions(BaseModel):
    tenant_id: str
    message: Message
    thread_context: str | None = None
    # Raw thread history, used when the thread has no stored summaries yet
    thread_messages: list[Message] | None = None
    analysis_kinds: list[str] | None = None
    config: AnalysisConfigOverrides | None = None
    persist: bool = False
    use_thread_summaries: bool = True
    tenant_domains: list[str] | None = None


class GatheredData(BaseModel):
    """
    Everything the commit phase needs.

    JSON round-trippable so a durable step can memoize it.
    """

    thread_context: ThreadContext | None = None
    companies: list[ExtractedCompany] = Field(default_factory=list)
    contacts: list[ExtractedContact] = Field(default_factory=list)
    participants: list[EmailAddress] = Field(default_factory=list)
    results: dict[str, AnalysisResult] = Field(default_factory=dict)
    summary_updates: list[PreparedSummaryUpdate] | None = None


class PipelineResult(BaseModel):
    tenant_id: str
    message_id: UUID
    thread_id: UUID | None = None
    success: bool = True
    results: dict[str, AnalysisResult] = Field(default_factory=dict)
    companies_created: int = 0
    contacts_created: int = 0
    analyses_saved: int = 0
    skipped: bool = False

    model_config = ConfigDict(protected_namespaces=())


class AnalysisPipeline:
    def __init__(
        self,
        registry: AnalysisRegistry,
        executor: AnalysisExecutor,
        extraction: ExtractionClient,
        summaries: ThreadSummaryService,
        session_factory: async_sessionmaker[AsyncSession] | None = None,
        analysis_config: AnalysisConfig | None = None,
    ) -> None:
        self.registry = registry
        self.executor = executor
        self.extraction = extraction
        self.summaries = summaries
        self.session_factory = session_factory
        self.analysis_config = analysis_config or AnalysisConfig()
        self.messages = MessageRepository()
        self.analyses = AnalysisRepository()
        self.contacts = ContactRepository()
        self.users = UserRepository()

    def tenant_config(self, options: PipelineOptions) -> TenantAnalysisConfig:
        config = merge_with_defaults(options.config, analysis_config=self.analysis_config)
        return config.model_copy(update={"tenant_id": options.tenant_id})

    def requested_kinds(
        self, options: PipelineOptions, config: TenantAnalysisConfig
    ) -> list[str]:
        if options.analysis_kinds:
            kinds = [
                kind
                for kind in options.analysis_kinds
                if not is_always_run(kind, config, self.registry)
            ]
        else:
            kinds = get_requested_kinds(config, self.registry)
        if K.SIGNATURE_EXTRACTION.value in kinds and not options.message.signature:
            kinds.remove(K.SIGNATURE_EXTRACTION.value)
        return kinds

    def require_sessions(self) -> async_sessionmaker[AsyncSession]:
        if self.session_factory is None:
            raise ConfigurationError(
                "Pipeline persistence requires a database session factory",
                error_code="DB_NOT_CONFIGURED",
            )
        return self.session_factory

    # ------------------------------------------------------------------ gather
    async def resolve_thread_context(
        self, options: PipelineOptions, first_kind: str | None
    ) -> ThreadContext | None:
        """Caller context, then stored summaries, then raw thread messages."""
        if options.thread_context:
            return ThreadContext(text=options.thread_context)

        message = options.message
        if (
            options.use_thread_summaries
            and message.thread_id is not None
            and self.session_factory is not None
        ):
            try:
                async with self.session_factory() as session:
                    context = await self.summaries.get_thread_context(
                        session, message.thread_id, first_kind
                    )
                if context.summaries:
                    return context.to_thread_context()
            except Exception as e:
                logger.warning(
                    "Could not load thread summaries for %s: %s", message.thread_id, e
                )

        # Only messages up to the current one; later replies are not context.
        others = [
            m
            for m in options.thread_messages or []
            if m.message_id != message.message_id
            and (
                m.received_at is None
                or message.received_at is None
                or m.received_at <= message.received_at
            )
        ]
        if others:
            return build_thread_context(
                [*others, message],
                current_message_id=message.message_id,
                max_messages=self.analysis_config.thread_context_max_messages,
                preview_chars=self.analysis_config.thread_context_preview_chars,
            )
        return None

    async def run_analyses(
        self,
        options: PipelineOptions,
        kinds: list[str],
        config: TenantAnalysisConfig,
        thread_context: ThreadContext | None,
    ) -> BatchAnalysisResult:
        if not kinds:
            return {}
        try:
            return await self.executor.execute_batch(
                kinds, options.message, options.tenant_id, config, thread_context
            )
        except Exception as e:
            logger.error(
                "Analyses failed for message %s; continuing without results: %s",
                options.message.message_id,
                e,
            )
            record_metric("pipeline_analysis_failures", 1)
            return {}

    @trace_operation("pipeline_gather")
    async def gather(self, options: PipelineOptions) -> GatheredData:
        message = options.message
        config = self.tenant_config(options)
        kinds = self.requested_kinds(options, config)

        thread_context = await self.resolve_thread_context(
            options, kinds[0] if kinds else None
        )

        # Load-bearing: failures here abort the run
        companies = await self.extraction.extract_domains(options.tenant_id, message)
        contacts = await self.extraction.extract_contacts(
            options.tenant_id, message, companies
        )

        participants = [address for _, address in collect_participants(message).values()]
        results = await self.run_analyses(options, kinds, config, thread_context)

        summary_updates = None
        if (
            options.persist
            and options.use_thread_summaries
            and message.thread_id is not None
            and results
            and self.session_factory is not None
        ):
            try:
                async with self.session_factory() as session:
                    summary_updates = await self.summaries.prepare_summary_updates(
                        session,
                        options.tenant_id,
                        message.thread_id,
                        message.message_id,
                        message,
                        results,
                    )
            except Exception as e:
                logger.warning(
                    "Could not prepare thread summaries for %s: %s", message.thread_id, e
                )

        return GatheredData(
            thread_context=thread_context,
            companies=companies,
            contacts=contacts,
            participants=participants,
            results=results,
            summary_updates=summary_updates,
        )

    # ------------------------------------------------------------------ commit
    async def _ensure_users(self, options: PipelineOptions, gathered: GatheredData) -> None:
        domains = options.tenant_domains or self.analysis_config.tenant_domains
        if not domains or not gathered.participants:
            return
        async with unit_of_work(self.require_sessions(), options.tenant_id) as uow:
            created = await self.users.ensure_users(
                uow, options.tenant_id, gathered.participants, domains
            )
        logger.debug("Ensured %d tenant users", created)

    async def _write_participants(
        self,
        uow: UnitOfWork,
        options: PipelineOptions,
        contacts: list[ContactRef],
    ) -> int:
        message = options.message
        participants = collect_participants(message)
        if not participants:
            return 0
        session = uow.require_active()
        users = await self.users.find_by_emails(session, options.tenant_id, participants)
        db_contacts = await self.contacts.find_by_emails(
            session, options.tenant_id, participants
        )
        links = resolve_participant_links(participants, users, db_contacts, contacts)
        return await self.messages.create_participants(
            uow, options.tenant_id, message.message_id, links
        )

    async def _write_results(
        self,
        uow: UnitOfWork,
        options: PipelineOptions,
        results: dict[str, AnalysisResult],
    ) -> int:
        message_id = options.message.message_id
        saved = 0
        for kind, result in results.items():
            if not result.succeeded:
                continue
            await self.analyses.upsert_result(
                uow,
                options.tenant_id,
                message_id,
                result,
                extract_analysis_fields(kind, result.result),
            )
            saved += 1

        sentiment = results.get(K.SENTIMENT.value)
        if sentiment is not None and sentiment.succeeded:
            await self.messages.update_sentiment(
                uow,
                message_id,
                sentiment.result.get("value"),
                sentiment_score(sentiment.result),
            )
        escalation = results.get(K.ESCALATION.value)
        if escalation is not None and escalation.succeeded:
            await self.messages.update_escalation(
                uow, message_id, bool(escalation.result.get("detected"))
            )
        await self.messages.update_signals(uow, message_id, compute_signals(results))
        return saved

    async def _enrich_from_signature(
        self, uow: UnitOfWork, options: PipelineOptions, results: dict[str, AnalysisResult]
    ) -> None:
        signature = results.get(K.SIGNATURE_EXTRACTION.value)
        sender = options.message.from_address
        if signature is None or not signature.succeeded or sender is None:
            return
        async with savepoint(uow, "signature-enrichment"):
            await self.contacts.enrich_from_signature(
                uow, options.tenant_id, sender.normalized, signature.result
            )

    async def _update_summaries(
        self, uow: UnitOfWork, options: PipelineOptions, gathered: GatheredData
    ) -> None:
        message = options.message
        if not options.use_thread_summaries or message.thread_id is None:
            return
        try:
            if gathered.summary_updates is not None:
                await self.summaries.apply_summary_updates(uow, gathered.summary_updates)
            else:
                await self.summaries.update_thread_summaries(
                    uow,
                    options.tenant_id,
                    message.thread_id,
                    message.message_id,
                    message,
                    gathered.results,
                )
        except Exception as e:
            logger.error(
                "Thread summary update failed for %s: %s", message.thread_id, e
            )

    @trace_operation("pipeline_commit")
    async def commit(
        self, options: PipelineOptions, gathered: GatheredData
    ) -> PipelineResult:
        message = options.message

        # Idempotent, safe to run outside the transaction
        await self._ensure_users(options, gathered)

        collaborator_contacts = [
            ContactRef(
                id=c.id,
                email=c.email.lower(),
                name=c.name,
                customer_id=c.customer_id or c.company_id,
            )
            for c in gathered.contacts
        ]

        analyses_saved = 0
        async with unit_of_work(self.require_sessions(), options.tenant_id) as uow:
            ensured = await self.contacts.ensure_contacts(
                uow, options.tenant_id, gathered.participants
            )
            await self.contacts.link_customers(uow, options.tenant_id, collaborator_contacts)
            contacts = merge_contacts(collaborator_contacts, ensured)

            await self._write_participants(uow, options, contacts)

            if gathered.results:
                analyses_saved = await self._write_results(uow, options, gathered.results)
                await self._enrich_from_signature(uow, options, gathered.results)
                await self._update_summaries(uow, options, gathered)

            await self.messages.set_status(uow, message.message_id, AnalysisStatus.COMPLETED)

        record_metric("pipeline_analyses_saved", analyses_saved)
        logger.info(
            "Committed analysis for message %s (%d analyses saved)",
            message.message_id,
            analyses_saved,
        )
        return self._result(options, gathered, analyses_saved)

    def _result(
        self, options: PipelineOptions, gathered: GatheredData, analyses_saved: int = 0
    ) -> PipelineResult:
        return PipelineResult(
            tenant_id=options.tenant_id,
            message_id=options.message.message_id,
            thread_id=options.message.thread_id,
            results=gathered.results,
            companies_created=len(gathered.companies),
            contacts_created=len(gathered.contacts),
            analyses_saved=analyses_saved,
        )

    @trace_operation("pipeline_execute")
    async def execute(self, options: PipelineOptions) -> PipelineResult:
        gathered = await self.gather(options)
        if not options.persist:
            return self._result(options, gathered)
        return await self.commit(options, gathered)
