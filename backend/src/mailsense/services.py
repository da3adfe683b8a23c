"""
Service container.

Everything the API and the worker need is built once at startup from the
configuration and passed down explicitly.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from mailsense.analysis.catalog import build_default_catalog
from mailsense.analysis.executor import AnalysisExecutor
from mailsense.analysis.registry import AnalysisRegistry, init_registry
from mailsense.clients.extraction import ExtractionClient
from mailsense.config.loader import MailSenseConfig, get_config
from mailsense.db.session import create_engine_from_config, create_session_factory
from mailsense.llm.runtime import AsyncLLMRuntime, ClientFactory
from mailsense.pipeline import AnalysisPipeline
from mailsense.threads.summaries import ThreadSummaryService
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)


@dataclass
class Services:
    config: MailSenseConfig
    registry: AnalysisRegistry
    runtime: AsyncLLMRuntime
    executor: AnalysisExecutor
    summaries: ThreadSummaryService
    extraction: ExtractionClient
    pipeline: AnalysisPipeline
    engine: AsyncEngine | None = None
    session_factory: async_sessionmaker[AsyncSession] | None = None

    async def aclose(self) -> None:
        await self.extraction.aclose()
        if self.engine is not None:
            await self.engine.dispose()


def build_services(
    config: MailSenseConfig | None = None,
    client_factory: ClientFactory | None = None,
    extraction: ExtractionClient | None = None,
    session_factory: async_sessionmaker[AsyncSession] | None = None,
) -> Services:
    config = config or get_config()

    engine = None
    if session_factory is None and config.database.url:
        engine = create_engine_from_config(config.database)
        session_factory = create_session_factory(engine)
    elif session_factory is None:
        logger.warning("No database configured; persistence is disabled")

    registry = init_registry(build_default_catalog(config.analysis))
    runtime = AsyncLLMRuntime(config.llm, config.retry, client_factory)
    executor = AnalysisExecutor(registry, runtime, config.analysis)
    summaries = ThreadSummaryService(runtime, config.llm)
    extraction = extraction or ExtractionClient(config.collaborators, config.retry)
    pipeline = AnalysisPipeline(
        registry=registry,
        executor=executor,
        extraction=extraction,
        summaries=summaries,
        session_factory=session_factory,
        analysis_config=config.analysis,
    )
    return Services(
        config=config,
        registry=registry,
        runtime=runtime,
        executor=executor,
        summaries=summaries,
        extraction=extraction,
        pipeline=pipeline,
        engine=engine,
        session_factory=session_factory,
    )
