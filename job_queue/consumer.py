"""
Queue Consumer — Pulls execution jobs from the queue and drives the orchestrator.

Runs as async tasks inside the application process. Each job only names an
execution; the orchestrator reloads it, so redelivery is harmless.

Topology:
  ┌──────────────┐        ┌──────────────────┐       ┌────────────┐
  │ Orchestrator │──pub──▶│ dispatch queue   │──────▶│  Consumer  │
  │ (start,      │        │ (Redis Stream)   │       │  Worker(s) │
  │  cancel)     │        └──────────────────┘       └─────┬──────┘
  └──────┬───────┘                 ▲                       │
         │ waits, gate             │ promote               │ handler crash
         ▼                         │                       ▼
  ┌──────────────────┐             │              ┌─────────────────┐
  │ delayed (sorted  │─────────────┘              │ retry → DLQ     │
  │  set / promoter) │                            └─────────────────┘
  └──────────────────┘
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Optional

from job_queue.message_queue import MessageQueue, QueueJob, Queues, get_message_queue

logger = structlog.get_logger()


class ExecutionConsumer:
    """
    Consumes jobs from the dispatch queue and advances executions.

    Distinct executions run as independent tasks, bounded by a semaphore.

    Usage:
        consumer = ExecutionConsumer(orchestrator, queue)
        await consumer.start_background()  # returns immediately, runs as task
        await consumer.stop()
    """

    def __init__(
        self,
        orchestrator,  # core.orchestrator.ExecutionOrchestrator, not imported (cycle)
        queue: MessageQueue = None,
        consumer_group: str = "engagement-workers",
        consumer_name: str = "",
        concurrency: int = 5,
    ):
        self.orchestrator = orchestrator
        self.queue = queue or get_message_queue()
        self.consumer_group = consumer_group
        self.consumer_name = consumer_name
        self.concurrency = concurrency
        self._semaphore = asyncio.Semaphore(concurrency)
        self._consume_task: Optional[asyncio.Task] = None
        self._inflight: set[asyncio.Task] = set()

    async def start(self):
        """Start consuming — blocks until stop() is called."""
        logger.info("execution_consumer_starting",
                    group=self.consumer_group,
                    concurrency=self.concurrency)
        await self.queue.consume(
            queue=Queues.DISPATCH,
            handler=self._handle_job,
            consumer_group=self.consumer_group,
            consumer_name=self.consumer_name,
        )

    async def start_background(self) -> asyncio.Task:
        """Start consuming in a background task. Returns the task handle."""
        self._consume_task = asyncio.create_task(self.start())
        return self._consume_task

    async def stop(self):
        """Stop pulling jobs and wait for in-flight executions to settle."""
        self.queue.stop()
        if self._consume_task:
            self._consume_task.cancel()
            try:
                await self._consume_task
            except asyncio.CancelledError:
                pass
            self._consume_task = None
        if self._inflight:
            await asyncio.gather(*self._inflight, return_exceptions=True)
        logger.info("execution_consumer_stopped")

    async def _handle_job(self, job: QueueJob):
        """Hand the job to its own task once a concurrency slot is free."""
        await self._semaphore.acquire()
        task = asyncio.create_task(self._run(job))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def _run(self, job: QueueJob):
        try:
            logger.info("processing_job",
                        job_id=job.job_id,
                        execution_id=job.execution_id,
                        reason=job.reason,
                        attempt=job.attempt)
            await self.orchestrator.process_job(job)
        except Exception as e:
            logger.error("job_processing_error",
                         job_id=job.job_id,
                         execution_id=job.execution_id,
                         error=str(e),
                         exc_info=True)
            await self.queue.nack(Queues.DISPATCH, job, self.consumer_group)
        finally:
            self._semaphore.release()


# ──────────────────────────────────────────────────────────────
#  Delayed Job Promoter
# ──────────────────────────────────────────────────────────────

class DelayedJobPromoter:
    """
    Wakes suspended executions: every ``interval_seconds`` it moves delayed
    jobs that have come due onto the dispatch queue. Wait steps and
    business-hours deferrals therefore resume within one interval of their
    due time, on either queue backend.
    """

    def __init__(self, queue: MessageQueue = None, interval_seconds: float = 5):
        self.queue = queue or get_message_queue()
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def _run(self):
        logger.info("delayed_promoter_started", interval=self.interval)
        while True:
            try:
                await self.queue.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("delayed_promote_error", error=str(e))
            await asyncio.sleep(self.interval)
