"""
Message Queue — Wake-up jobs for flow executions, on Redis or in process.

Queues:
  engagement:dispatch  — jobs to hand to a consumer now
  engagement:delayed   — jobs parked until their scheduled time (a wait step,
                         a closed business-hours window, a crash retry)
  engagement:dlq       — jobs whose handler kept crashing

A job is only a pointer: it names the execution and why it should be looked
at. Consumers always reload the execution, so a duplicate or early wake-up
finds nothing to do and returns.

Backends implement storage primitives only (_push, _park, _take_due and the
read side); routing, retry and logging live on MessageQueue.
"""
from __future__ import annotations

import asyncio
import json
import uuid
import structlog
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from config.settings import QueueConfig
from models.schemas import utcnow

logger = structlog.get_logger()

JobHandler = Callable[["QueueJob"], Awaitable[Any]]


class Queues:
    DISPATCH = "engagement:dispatch"
    DELAYED = "engagement:delayed"
    DLQ = "engagement:dlq"


@dataclass
class QueueJob:
    """Wake-up call for one execution."""
    execution_id: str
    reason: str = "start"                  # start | resume | cancel | recover | retry
    attempt: int = 0
    max_attempts: int = 3
    scheduled_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    metadata: dict[str, Any] = field(default_factory=dict)
    job_id: str = ""

    def __post_init__(self):
        self.job_id = self.job_id or f"job_{uuid.uuid4().hex[:12]}"
        self.created_at = self.created_at or utcnow()
        self.scheduled_at = self.scheduled_at or self.created_at

    @classmethod
    def at(cls, execution_id: str, when: datetime, reason: str = "resume", **kwargs) -> QueueJob:
        return cls(execution_id=execution_id, reason=reason, scheduled_at=when, **kwargs)

    @property
    def scheduled_for(self) -> datetime:
        return self.scheduled_at

    def is_due(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) >= self.scheduled_at

    # Redis stream fields must be flat strings.
    def to_dict(self) -> dict[str, str]:
        return {
            "job_id": self.job_id,
            "execution_id": self.execution_id,
            "reason": self.reason,
            "attempt": str(self.attempt),
            "max_attempts": str(self.max_attempts),
            "scheduled_at": self.scheduled_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "metadata": json.dumps(self.metadata),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueJob:
        known = {f.name for f in fields(cls)}
        values = {k: v for k, v in data.items() if k in known}
        for key in ("scheduled_at", "created_at"):
            if isinstance(values.get(key), str):
                values[key] = datetime.fromisoformat(values[key])
        if isinstance(values.get("metadata"), str):
            values["metadata"] = json.loads(values["metadata"])
        values["attempt"] = int(values.get("attempt", 0))
        values["max_attempts"] = int(values.get("max_attempts", 3))
        return cls(**values)

    def next_retry_job(self, backoff_seconds: int = 60) -> QueueJob:
        """Same job one attempt later, delayed by exponential backoff."""
        now = utcnow()
        return QueueJob(
            execution_id=self.execution_id,
            reason="retry",
            attempt=self.attempt + 1,
            max_attempts=self.max_attempts,
            scheduled_at=now + timedelta(seconds=backoff_seconds * 2 ** self.attempt),
            created_at=self.created_at,
            metadata={**self.metadata, "last_failure_at": now.isoformat()},
            job_id=self.job_id,
        )


# ──────────────────────────────────────────────────────────────
#  Base queue
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):

    def __init__(self, retry_backoff_base: int = 60):
        self.retry_backoff_base = retry_backoff_base
        self._running = False

    # ── backend primitives ──

    @abstractmethod
    async def connect(self): ...

    @abstractmethod
    async def close(self): ...

    @abstractmethod
    async def _push(self, queue: str, job: QueueJob):
        """Append to a FIFO queue (dispatch or DLQ)."""

    @abstractmethod
    async def _park(self, job: QueueJob):
        """Hold on the delayed queue, ordered by scheduled time."""

    @abstractmethod
    async def _take_due(self, cutoff: datetime) -> list[QueueJob]:
        """Remove and return delayed jobs scheduled at or before cutoff."""

    @abstractmethod
    async def consume(
        self,
        queue: str,
        handler: JobHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        """Call handler for each job until stop(). Blocks."""

    @abstractmethod
    async def queue_length(self, queue: str) -> int: ...

    @abstractmethod
    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]: ...

    # ── routing ──

    async def publish(self, queue: str, job: QueueJob):
        await self._push(queue, job)
        logger.info("job_published",
                    queue=queue,
                    job_id=job.job_id,
                    execution_id=job.execution_id,
                    reason=job.reason)

    async def publish_delayed(self, job: QueueJob):
        await self._park(job)
        logger.info("delayed_job_published",
                    job_id=job.job_id,
                    execution_id=job.execution_id,
                    scheduled_at=job.scheduled_at.isoformat())

    async def enqueue(self, job: QueueJob, now: Optional[datetime] = None):
        """Dispatch now if due, else park until scheduled_at."""
        if job.is_due(now):
            await self.publish(Queues.DISPATCH, job)
        else:
            await self.publish_delayed(job)

    async def promote_delayed(self, now: Optional[datetime] = None) -> int:
        ready = await self._take_due(now or utcnow())
        for job in ready:
            await self.publish(Queues.DISPATCH, job)
        if ready:
            logger.info("delayed_jobs_promoted", count=len(ready))
        return len(ready)

    async def nack(self, queue: str, job: QueueJob, consumer_group: str = "default"):
        """A handler crashed on job: retry with backoff, or dead-letter it."""
        if job.attempt + 1 >= job.max_attempts:
            job.metadata["dlq_reason"] = f"Exceeded {job.max_attempts} attempts"
            await self.publish(Queues.DLQ, job)
            logger.warning("job_moved_to_dlq",
                           job_id=job.job_id,
                           execution_id=job.execution_id,
                           attempts=job.attempt + 1)
            return
        retry_job = job.next_retry_job(self.retry_backoff_base)
        await self.publish_delayed(retry_job)
        logger.info("job_scheduled_for_retry",
                    job_id=job.job_id,
                    attempt=retry_job.attempt,
                    scheduled_at=retry_job.scheduled_at.isoformat())

    async def _handle(self, queue: str, job: QueueJob, handler: JobHandler, consumer_group: str):
        try:
            await handler(job)
        except Exception as e:
            logger.error("job_handler_error", job_id=job.job_id, error=str(e))
            await self.nack(queue, job, consumer_group)

    def stop(self):
        self._running = False


# ──────────────────────────────────────────────────────────────
#  Redis: stream for dispatch/DLQ, sorted set for delayed
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):
    """
    Production backend. Dispatch is a Redis Stream read through a consumer
    group, so several workers share it; delayed jobs sit in a sorted set
    scored by their scheduled timestamp.
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", retry_backoff_base: int = 60):
        super().__init__(retry_backoff_base)
        self._redis_url = redis_url
        self._redis = None

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True, max_connections=20)
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url)

    async def close(self):
        self.stop()
        if self._redis:
            await self._redis.aclose()

    async def _push(self, queue: str, job: QueueJob):
        await self._redis.xadd(queue, job.to_dict())

    async def _park(self, job: QueueJob):
        await self._redis.zadd(Queues.DELAYED, {json.dumps(job.to_dict()): job.scheduled_at.timestamp()})

    async def _take_due(self, cutoff: datetime) -> list[QueueJob]:
        payloads = await self._redis.zrangebyscore(Queues.DELAYED, "-inf", cutoff.timestamp())
        taken = []
        for payload in payloads:
            # ZREM is the claim: with several promoters only one removes it
            if await self._redis.zrem(Queues.DELAYED, payload):
                taken.append(QueueJob.from_dict(json.loads(payload)))
        return taken

    async def _ensure_group(self, queue: str, group: str):
        from redis.exceptions import ResponseError
        try:
            await self._redis.xgroup_create(queue, group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def consume(
        self,
        queue: str,
        handler: JobHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        consumer_name = consumer_name or f"worker_{uuid.uuid4().hex[:8]}"
        await self._ensure_group(queue, consumer_group)
        self._running = True
        logger.info("consumer_started", queue=queue, group=consumer_group, consumer=consumer_name)

        while self._running:
            try:
                batches = await self._redis.xreadgroup(
                    groupname=consumer_group,
                    consumername=consumer_name,
                    streams={queue: ">"},
                    count=batch_size,
                    block=2000,
                )
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("consumer_error", queue=queue, error=str(e))
                await asyncio.sleep(1)
                continue

            for _, entries in batches or []:
                for entry_id, data in entries:
                    await self._handle(queue, QueueJob.from_dict(data), handler, consumer_group)
                    await self._redis.xack(queue, consumer_group, entry_id)

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DELAYED:
            return await self._redis.zcard(queue)
        return await self._redis.xlen(queue)

    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        if queue == Queues.DELAYED:
            return [QueueJob.from_dict(json.loads(p))
                    for p in await self._redis.zrange(queue, 0, count - 1)]
        return [QueueJob.from_dict(data) for _, data in await self._redis.xrange(queue, count=count)]


# ──────────────────────────────────────────────────────────────
#  In-process backend
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Single-process backend for development and tests. Nothing survives a
    restart; ExecutionOrchestrator.recover() re-enqueues from the store.
    """

    def __init__(self, retry_backoff_base: int = 60):
        super().__init__(retry_backoff_base)
        self._fifo: dict[str, asyncio.Queue] = {}
        self._delayed: list[QueueJob] = []
        self._dlq: list[QueueJob] = []

    def _fifo_for(self, name: str) -> asyncio.Queue:
        return self._fifo.setdefault(name, asyncio.Queue())

    async def connect(self):
        logger.info("inmemory_queue_connected")

    async def close(self):
        self.stop()

    async def _push(self, queue: str, job: QueueJob):
        if queue == Queues.DLQ:
            self._dlq.append(job)
        else:
            self._fifo_for(queue).put_nowait(job)

    async def _park(self, job: QueueJob):
        self._delayed.append(job)
        self._delayed.sort(key=lambda j: j.scheduled_at)

    async def _take_due(self, cutoff: datetime) -> list[QueueJob]:
        due = [j for j in self._delayed if j.scheduled_at <= cutoff]
        self._delayed = [j for j in self._delayed if j.scheduled_at > cutoff]
        return due

    async def consume(
        self,
        queue: str,
        handler: JobHandler,
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        fifo = self._fifo_for(queue)
        self._running = True
        logger.info("consumer_started", queue=queue)
        while self._running:
            try:
                job = await asyncio.wait_for(fifo.get(), timeout=0.5)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break
            await self._handle(queue, job, handler, consumer_group)

    async def queue_length(self, queue: str) -> int:
        if queue == Queues.DELAYED:
            return len(self._delayed)
        if queue == Queues.DLQ:
            return len(self._dlq)
        return self._fifo_for(queue).qsize()

    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        if queue == Queues.DELAYED:
            return self._delayed[:count]
        if queue == Queues.DLQ:
            return self._dlq[:count]
        # asyncio.Queue keeps its items in a deque; read it without consuming
        return list(self._fifo_for(queue)._queue)[:count]


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

_instance: Optional[MessageQueue] = None


def create_message_queue(config: Optional[QueueConfig] = None) -> MessageQueue:
    """Build the configured backend once; later calls return the same queue."""
    global _instance
    if _instance is not None:
        return _instance

    config = config or QueueConfig()
    if config.backend == "redis":
        _instance = RedisMessageQueue(config.redis_url, retry_backoff_base=config.retry_backoff_base)
    else:
        _instance = InMemoryMessageQueue(retry_backoff_base=config.retry_backoff_base)
    logger.info("message_queue_created", backend=config.backend)
    return _instance


def get_message_queue() -> MessageQueue:
    return _instance or create_message_queue()


def reset_message_queue() -> None:
    global _instance
    _instance = None
