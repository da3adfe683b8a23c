"""
Job queue for durable message analysis.

Jobs carry identifiers only. Each job keeps an idempotency key (duplicate
enqueues inside the TTL window collapse onto the first job), a time before
which it must not run (delayed retries) and a `steps` map where completed
step outputs are memoized so a retried job skips work already done.

Two backends: an in-memory queue for development and tests, and a Redis
queue for production.
"""

from __future__ import annotations

import json
import logging
import os
import socket
import threading
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any

import redis
from mailsense.common.exceptions import ConfigurationError

logger = logging.getLogger(__name__)

DEFAULT_IDEMPOTENCY_TTL_SECONDS = 86400


# -----------------------------------------------------------------------------
# Job Status and Data Classes
# -----------------------------------------------------------------------------


class JobStatus:
    """Represents the status of a job."""

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    DEAD_LETTER = "dead_letter"


@dataclass
class Job:
    """Represents a job in the queue."""

    id: str
    type: str
    payload: dict[str, Any]
    priority: int = 0
    status: str = JobStatus.PENDING
    attempts: int = 0
    max_attempts: int = 10
    created_at: float = field(default_factory=time.time)
    available_at: float = field(default_factory=time.time)
    started_at: float | None = None
    completed_at: float | None = None
    error: str | None = None
    idempotency_key: str | None = None
    steps: dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> dict[str, Any]:
        """Convert job to dictionary."""
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload,
            "priority": self.priority,
            "status": self.status,
            "attempts": self.attempts,
            "max_attempts": self.max_attempts,
            "created_at": self.created_at,
            "available_at": self.available_at,
            "started_at": self.started_at,
            "completed_at": self.completed_at,
            "error": self.error,
            "idempotency_key": self.idempotency_key,
            "steps": dict(self.steps),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Job:
        """Create job from dictionary."""
        now = time.time()
        return cls(
            id=data["id"],
            type=data["type"],
            payload=data.get("payload", {}),
            priority=data.get("priority", 0),
            status=data.get("status", JobStatus.PENDING),
            attempts=data.get("attempts", 0),
            max_attempts=data.get("max_attempts", 10),
            created_at=data.get("created_at", now),
            available_at=data.get("available_at", now),
            started_at=data.get("started_at"),
            completed_at=data.get("completed_at"),
            error=data.get("error"),
            idempotency_key=data.get("idempotency_key"),
            steps=dict(data.get("steps") or {}),
        )

    @property
    def exhausted(self) -> bool:
        return self.attempts >= self.max_attempts


# -----------------------------------------------------------------------------
# Abstract Base Class
# -----------------------------------------------------------------------------


class JobQueue(ABC):
    """Abstract base class for job queues."""

    @abstractmethod
    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        priority: int = 0,
        idempotency_key: str | None = None,
        max_attempts: int | None = None,
    ) -> str:
        """
        Enqueue a job.

        Args:
            job_type: Type of job (e.g., 'message/inserted')
            payload: Job payload data
            priority: Job priority (higher = more urgent)
            idempotency_key: Jobs sharing a key within the TTL window are
                deduplicated; the existing job id is returned
            max_attempts: Total attempts before the job is dead-lettered

        Returns:
            Job ID
        """

    @abstractmethod
    def dequeue(self, job_types: list[str], timeout: float = 10) -> Job | None:
        """
        Claim the next runnable job of one of `job_types`.

        Waits up to `timeout` seconds; returns None when nothing is ready.
        """

    @abstractmethod
    def ack(self, job_id: str) -> None:
        """Mark a job completed."""

    @abstractmethod
    def nack(
        self, job_id: str, error: str | None = None, retry_delay: float = 0.0
    ) -> str:
        """
        Fail the current attempt.

        The job runs again after `retry_delay` seconds, or moves to the dead
        letter set once its attempts are used up. Returns the new status.
        """

    @abstractmethod
    def save_steps(self, job_id: str, steps: dict[str, Any]) -> None:
        """Persist memoized step outputs for a job."""

    @abstractmethod
    def get_job(self, job_id: str) -> Job | None:
        """Return the job, or None."""

    def get_job_status(self, job_id: str) -> dict[str, Any] | None:
        job = self.get_job(job_id)
        return job.to_dict() if job else None

    @abstractmethod
    def get_queue_stats(self) -> dict[str, int]:
        """Count jobs per status."""


def _empty_stats() -> dict[str, int]:
    return {
        JobStatus.PENDING: 0,
        JobStatus.PROCESSING: 0,
        JobStatus.COMPLETED: 0,
        JobStatus.FAILED: 0,
        JobStatus.DEAD_LETTER: 0,
    }


# -----------------------------------------------------------------------------
# In-Memory Queue (Development/Testing)
# -----------------------------------------------------------------------------


class InMemoryQueue(JobQueue):
    """Simple in-memory queue for development/testing."""

    def __init__(
        self,
        idempotency_ttl_seconds: float = DEFAULT_IDEMPOTENCY_TTL_SECONDS,
        default_max_attempts: int = 10,
    ):
        self._jobs: dict[str, Job] = {}
        self._idempotency: dict[str, tuple[str, float]] = {}
        self._lock = threading.Lock()
        self._idempotency_ttl = idempotency_ttl_seconds
        self._default_max_attempts = default_max_attempts

    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        priority: int = 0,
        idempotency_key: str | None = None,
        max_attempts: int | None = None,
    ) -> str:
        now = time.time()
        with self._lock:
            if idempotency_key is not None:
                existing = self._idempotency.get(idempotency_key)
                if existing is not None and existing[1] > now:
                    logger.info(
                        "Duplicate enqueue for key %s; returning job %s",
                        idempotency_key,
                        existing[0],
                    )
                    return existing[0]

            job = Job(
                id=str(uuid.uuid4()),
                type=job_type,
                payload=payload,
                priority=priority,
                max_attempts=max_attempts or self._default_max_attempts,
                idempotency_key=idempotency_key,
                created_at=now,
                available_at=now,
            )
            self._jobs[job.id] = job
            if idempotency_key is not None:
                self._idempotency[idempotency_key] = (job.id, now + self._idempotency_ttl)
        logger.debug("Enqueued job %s of type %s", job.id, job_type)
        return job.id

    def _next_ready(self, job_types: list[str], now: float) -> Job | None:
        ready = [
            job
            for job in self._jobs.values()
            if job.status == JobStatus.PENDING
            and job.type in job_types
            and job.available_at <= now
        ]
        if not ready:
            return None
        return min(ready, key=lambda j: (-j.priority, j.available_at, j.created_at))

    def dequeue(self, job_types: list[str], timeout: float = 10) -> Job | None:
        deadline = time.time() + timeout
        while True:
            now = time.time()
            with self._lock:
                job = self._next_ready(job_types, now)
                if job is not None:
                    job.status = JobStatus.PROCESSING
                    job.started_at = now
                    job.attempts += 1
                    return Job.from_dict(job.to_dict())
            if now >= deadline:
                return None
            # Avoid busy-waiting if the queue is empty
            time.sleep(min(0.1, max(deadline - now, 0.0)))

    def ack(self, job_id: str) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                job.status = JobStatus.COMPLETED
                job.completed_at = time.time()
                logger.debug("Acknowledged job %s", job_id)

    def nack(
        self, job_id: str, error: str | None = None, retry_delay: float = 0.0
    ) -> str:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                return JobStatus.FAILED
            job.error = error
            if job.exhausted:
                job.status = JobStatus.DEAD_LETTER
                logger.warning(
                    "Job %s moved to dead letter after %d attempts", job_id, job.attempts
                )
            else:
                job.status = JobStatus.PENDING
                job.available_at = time.time() + retry_delay
                logger.debug(
                    "Job %s requeued (attempt %d, delay %.0fs)",
                    job_id,
                    job.attempts,
                    retry_delay,
                )
            return job.status

    def save_steps(self, job_id: str, steps: dict[str, Any]) -> None:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None:
                job.steps = dict(steps)

    def get_job(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._jobs.get(job_id)
            return Job.from_dict(job.to_dict()) if job else None

    def get_queue_stats(self) -> dict[str, int]:
        with self._lock:
            stats = _empty_stats()
            for job in self._jobs.values():
                stats[job.status] = stats.get(job.status, 0) + 1
            return stats


# -----------------------------------------------------------------------------
# Redis Queue (Production)
# -----------------------------------------------------------------------------


class RedisQueue(JobQueue):
    """
    Redis-backed job queue.

    * One sorted set per job type, scored by the time the job becomes runnable
    * Job records stored as JSON strings
    * A processing set, scored by visibility deadline, so jobs of a crashed
      worker are reclaimed
    * SET NX keys for idempotency
    """

    KEY_PREFIX = "mailsense:"
    JOB_PREFIX = "mailsense:job:"
    QUEUE_PREFIX = "mailsense:queue:"
    IDEMPOTENCY_PREFIX = "mailsense:idempotency:"
    PROCESSING_KEY = "mailsense:processing"
    DEAD_LETTER_KEY = "mailsense:dead_letter"

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        password: str | None = None,
        idempotency_ttl_seconds: int = DEFAULT_IDEMPOTENCY_TTL_SECONDS,
        default_max_attempts: int = 10,
        visibility_timeout: int = 900,
        client: redis.Redis | None = None,
    ):
        self._redis = client or redis.Redis.from_url(
            redis_url, password=password, decode_responses=True
        )
        self._idempotency_ttl = idempotency_ttl_seconds
        self._default_max_attempts = default_max_attempts
        self._visibility_timeout = visibility_timeout
        self._consumer_name = f"{socket.gethostname()}-{os.getpid()}"
        logger.info("RedisQueue initialized with consumer: %s", self._consumer_name)

    def _queue_key(self, job_type: str) -> str:
        return f"{self.QUEUE_PREFIX}{job_type}"

    def _store(self, job: Job) -> None:
        self._redis.set(f"{self.JOB_PREFIX}{job.id}", json.dumps(job.to_dict()))

    def get_job(self, job_id: str) -> Job | None:
        raw = self._redis.get(f"{self.JOB_PREFIX}{job_id}")
        return Job.from_dict(json.loads(raw)) if raw else None

    def enqueue(
        self,
        job_type: str,
        payload: dict[str, Any],
        priority: int = 0,
        idempotency_key: str | None = None,
        max_attempts: int | None = None,
    ) -> str:
        now = time.time()
        job = Job(
            id=str(uuid.uuid4()),
            type=job_type,
            payload=payload,
            priority=priority,
            max_attempts=max_attempts or self._default_max_attempts,
            idempotency_key=idempotency_key,
            created_at=now,
            available_at=now,
        )
        if idempotency_key is not None:
            claimed = self._redis.set(
                f"{self.IDEMPOTENCY_PREFIX}{idempotency_key}",
                job.id,
                nx=True,
                ex=self._idempotency_ttl,
            )
            if not claimed:
                existing = self._redis.get(f"{self.IDEMPOTENCY_PREFIX}{idempotency_key}")
                logger.info(
                    "Duplicate enqueue for key %s; returning job %s",
                    idempotency_key,
                    existing,
                )
                return existing or job.id

        self._store(job)
        self._redis.zadd(self._queue_key(job_type), {job.id: job.available_at})
        logger.debug("Enqueued job %s of type %s", job.id, job_type)
        return job.id

    def _reclaim_stale(self, now: float) -> None:
        for job_id in self._redis.zrangebyscore(self.PROCESSING_KEY, "-inf", now):
            if not self._redis.zrem(self.PROCESSING_KEY, job_id):
                continue
            job = self.get_job(job_id)
            if job is None:
                continue
            logger.warning("Reclaiming stale job %s from a lost worker", job_id)
            job.status = JobStatus.PENDING
            job.available_at = now
            self._store(job)
            self._redis.zadd(self._queue_key(job.type), {job.id: now})

    def _claim(self, job_types: list[str], now: float) -> Job | None:
        for job_type in job_types:
            for job_id in self._redis.zrangebyscore(
                self._queue_key(job_type), "-inf", now, start=0, num=1
            ):
                # Only the worker whose ZREM succeeds owns the job
                if not self._redis.zrem(self._queue_key(job_type), job_id):
                    continue
                job = self.get_job(job_id)
                if job is None:
                    continue
                job.status = JobStatus.PROCESSING
                job.started_at = now
                job.attempts += 1
                self._store(job)
                self._redis.zadd(
                    self.PROCESSING_KEY, {job.id: now + self._visibility_timeout}
                )
                return job
        return None

    def dequeue(self, job_types: list[str], timeout: float = 10) -> Job | None:
        deadline = time.time() + timeout
        while True:
            now = time.time()
            self._reclaim_stale(now)
            job = self._claim(job_types, now)
            if job is not None:
                return job
            if now >= deadline:
                return None
            time.sleep(min(0.5, max(deadline - now, 0.0)))

    def ack(self, job_id: str) -> None:
        job = self.get_job(job_id)
        self._redis.zrem(self.PROCESSING_KEY, job_id)
        if job is None:
            return
        job.status = JobStatus.COMPLETED
        job.completed_at = time.time()
        self._store(job)
        logger.debug("Acknowledged job %s", job_id)

    def nack(
        self, job_id: str, error: str | None = None, retry_delay: float = 0.0
    ) -> str:
        self._redis.zrem(self.PROCESSING_KEY, job_id)
        job = self.get_job(job_id)
        if job is None:
            return JobStatus.FAILED
        job.error = error
        if job.exhausted:
            job.status = JobStatus.DEAD_LETTER
            self._store(job)
            self._redis.rpush(self.DEAD_LETTER_KEY, job_id)
            logger.warning(
                "Job %s moved to dead letter after %d attempts", job_id, job.attempts
            )
        else:
            job.status = JobStatus.PENDING
            job.available_at = time.time() + retry_delay
            self._store(job)
            self._redis.zadd(self._queue_key(job.type), {job.id: job.available_at})
        return job.status

    def save_steps(self, job_id: str, steps: dict[str, Any]) -> None:
        job = self.get_job(job_id)
        if job is None:
            return
        job.steps = dict(steps)
        self._store(job)

    def get_queue_stats(self) -> dict[str, int]:
        stats = _empty_stats()
        for key in self._redis.scan_iter(match=f"{self.JOB_PREFIX}*"):
            raw = self._redis.get(key)
            if not raw:
                continue
            status = json.loads(raw).get("status", JobStatus.PENDING)
            stats[status] = stats.get(status, 0) + 1
        return stats


# -----------------------------------------------------------------------------
# Factory
# -----------------------------------------------------------------------------

_queue_instance: JobQueue | None = None
_queue_lock = threading.Lock()


def get_queue() -> JobQueue:
    """
    Get the configured queue instance.

    `system.queue_type` selects the backend:
    - 'memory': InMemoryQueue (default for dev)
    - 'redis': RedisQueue (production)
    """
    global _queue_instance

    with _queue_lock:
        if _queue_instance is None:
            from mailsense.config.loader import get_config

            config = get_config()
            queue_type = config.system.queue_type
            max_attempts = config.durable.max_retries + 1
            ttl = config.durable.idempotency_ttl_seconds

            if queue_type == "redis":
                password = config.redis.password
                try:
                    _queue_instance = RedisQueue(
                        redis_url=str(config.redis.url),
                        password=password.get_secret_value() if password else None,
                        idempotency_ttl_seconds=ttl,
                        default_max_attempts=max_attempts,
                    )
                except redis.RedisError as e:
                    raise ConfigurationError(
                        f"Failed to initialize Redis queue: {e}",
                        error_code="QUEUE_UNAVAILABLE",
                    ) from e
                logger.info("Initialized Redis queue")
            else:
                _queue_instance = InMemoryQueue(
                    idempotency_ttl_seconds=ttl, default_max_attempts=max_attempts
                )
                logger.info("Initialized InMemory queue (development mode)")

    return _queue_instance


def set_queue(queue: JobQueue) -> None:
    global _queue_instance
    with _queue_lock:
        _queue_instance = queue


def reset_queue() -> None:
    """Reset the queue instance (useful for testing)."""
    global _queue_instance
    with _queue_lock:
        _queue_instance = None
