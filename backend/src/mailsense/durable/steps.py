"""
Memoized steps for durable functions.

A step's output is saved on the job as soon as the step succeeds. When the
job is retried the saved output is replayed instead of running the step
again, so a failure in a later step never repeats earlier model calls.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from mailsense.queue import Job, JobQueue

logger = logging.getLogger(__name__)


class StepRunner:
    def __init__(self, job: Job, queue: JobQueue) -> None:
        self.job = job
        self.queue = queue
        self.steps: dict[str, Any] = dict(job.steps)
        self.executed: list[str] = []

    def completed(self, name: str) -> bool:
        return name in self.steps

    async def run(
        self,
        name: str,
        fn: Callable[..., Awaitable[Any]],
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Run `fn` once per job; its return value must be JSON-serializable."""
        if name in self.steps:
            logger.info("Step %s of job %s already completed; replaying", name, self.job.id)
            return self.steps[name]

        result = await fn(*args, **kwargs)
        self.steps[name] = result
        self.executed.append(name)
        await asyncio.to_thread(self.queue.save_steps, self.job.id, self.steps)
        logger.debug("Step %s of job %s completed", name, self.job.id)
        return result
