"""
Worker for durable functions.

Polls the queue, runs the handler for each job, acks on success and on
failure schedules a delayed retry (60s doubling up to 30 min). A job whose
retries are used up is dead-lettered and its failure handler runs.
"""

from __future__ import annotations

import asyncio
import logging
import signal
from typing import Any

from mailsense.config.models import DurableConfig
from mailsense.durable.functions import AnalyzeMessageFunction
from mailsense.durable.steps import StepRunner
from mailsense.observability import record_metric
from mailsense.queue import Job, JobQueue, JobStatus
from mailsense.queue_registry import MESSAGE_INSERTED

logger = logging.getLogger(__name__)


class DurableWorker:
    """
    Single async worker loop.

    Queue calls are blocking, so they run in a thread.
    """

    def __init__(
        self,
        queue: JobQueue,
        function: AnalyzeMessageFunction,
        durable_config: DurableConfig | None = None,
        job_types: list[str] | None = None,
        error_backoff: float = 5.0,
    ) -> None:
        self.queue = queue
        self.function = function
        self.durable_config = durable_config or DurableConfig()
        self.job_types = job_types or [MESSAGE_INSERTED]
        self.error_backoff = error_backoff
        self._running = True
        self._jobs_processed = 0
        self._jobs_failed = 0

    async def process(self, job: Job) -> str:
        logger.info("Processing job %s of type %s (attempt %d)", job.id, job.type, job.attempts)
        steps = StepRunner(job, self.queue)
        try:
            result = await self.function(job, steps)
        except Exception as e:
            self._jobs_failed += 1
            delay = self.function.retry_delay(job.attempts)
            status = await asyncio.to_thread(self.queue.nack, job.id, str(e), delay)
            if status == JobStatus.DEAD_LETTER:
                await self.function.on_failure(job, e)
            else:
                logger.warning(
                    "Job %s failed (%s); retrying in %.0fs", job.id, e, delay
                )
            record_metric("durable_job_failures", 1, {"status": status})
            return status

        await asyncio.to_thread(self.queue.ack, job.id)
        self._jobs_processed += 1
        logger.info("Job %s completed: %s", job.id, result)
        return JobStatus.COMPLETED

    async def run_once(self, timeout: float = 0.0) -> str | None:
        """Claim and run at most one job. Returns its final status, or None when idle."""
        job = await asyncio.to_thread(self.queue.dequeue, self.job_types, timeout)
        if job is None:
            return None
        return await self.process(job)

    async def run(self) -> None:
        logger.info("Worker started, listening for: %s", self.job_types)
        while self._running:
            try:
                await self.run_once(timeout=self.durable_config.poll_interval_seconds)
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("Worker error: %s", e, exc_info=True)
                await asyncio.sleep(self.error_backoff)
        logger.info(
            "Worker stopped: processed=%d, failed=%d",
            self._jobs_processed,
            self._jobs_failed,
        )

    def stop(self) -> None:
        """Signal worker to stop."""
        self._running = False

    def get_stats(self) -> dict[str, Any]:
        return {
            "jobs_processed": self._jobs_processed,
            "jobs_failed": self._jobs_failed,
            "running": self._running,
        }


async def _serve() -> None:
    from mailsense.config.loader import get_config
    from mailsense.observability import init_observability, shutdown_observability
    from mailsense.queue import get_queue
    from mailsense.services import build_services

    config = get_config()
    init_observability(service_name=f"{config.core.service_name}-worker")
    services = build_services(config)
    if services.session_factory is None:
        raise SystemExit("Worker requires a database (set MAILSENSE_DB_URL)")

    function = AnalyzeMessageFunction(
        services.pipeline, services.session_factory, config.durable
    )
    worker = DurableWorker(get_queue(), function, config.durable)

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, worker.stop)

    try:
        await worker.run()
    finally:
        await services.aclose()
        shutdown_observability()


def main() -> None:
    """Console entry point."""
    asyncio.run(_serve())


if __name__ == "__main__":
    main()
