"""
Queue Consumers — pull jobs from the queue fabric and drive dispatch.

Runs as async tasks inside the application process. For horizontal
scaling, deploy multiple processes with the same consumer_group; Redis
Streams delivers each job to exactly one consumer.

Topology:
  ┌──────────────┐       ┌──────────────────┐       ┌──────────────┐
  │ JourneyEngine│──pub──▶│ step queues       │──────▶│ StepWorker   │
  │  (admit)     │       │ (one per type)    │◀─pub──│ (dispatcher) │
  └──────────────┘       └──────────────────┘       └──────┬───────┘
                                  ▲                        │
                                  │ promote      timers /  │
                         ┌────────┴────────┐     retries   │
                         │ delayed (sorted  │◀──────────────┘
                         │  set / promoter) │
                         └─────────────────┘
                         ┌─────────────────┐       ┌──────────────────────┐
                         │ webhook-dispatch │──────▶│ WebhookDispatchWorker │
                         └─────────────────┘       └──────────────────────┘
                         ┌─────────────────┐
                         │  DLQ            │◀── exhausted / unrecoverable
                         └─────────────────┘
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Optional

import httpx
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_exponential

from channels.rendering import render_tags
from job_queue.message_queue import MessageQueue, QueueJob, Queues
from journeys.telemetry import TelemetrySink, record_safely
from models.schemas import TelemetryEvent, TelemetryEventType, WebhookData

logger = structlog.get_logger()


class _ConsumerGroup:
    """N consume loops over one or more queues, started and stopped together."""

    def __init__(self, queue: MessageQueue, consumer_group: str):
        self.queue = queue
        self.consumer_group = consumer_group
        self._tasks: list[asyncio.Task] = []

    def _spawn(self, queue_name: str, handler, concurrency: int):
        for i in range(concurrency):
            self._tasks.append(asyncio.create_task(self.queue.consume(
                queue=queue_name,
                handler=handler,
                consumer_group=self.consumer_group,
                consumer_name=f"{queue_name}-{i}",
            )))

    async def stop(self):
        self.queue._running = False
        for task in self._tasks:
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks.clear()

    @property
    def running(self) -> int:
        return sum(1 for t in self._tasks if not t.done())


class StepWorker(_ConsumerGroup):
    """
    Consumes every step queue with its configured concurrency and hands
    each job to the dispatcher.

    Usage:
        worker = StepWorker(queue, dispatcher, {"message": 4, "exit": 1})
        await worker.start_background()
        await worker.stop()
    """

    def __init__(
        self,
        queue: MessageQueue,
        dispatcher,  # type: journeys.dispatcher.StepDispatcher
        concurrency: dict[str, int] = None,
        consumer_group: str = "journey-workers",
    ):
        super().__init__(queue, consumer_group)
        self.dispatcher = dispatcher
        self.concurrency = concurrency or {}

    async def start_background(self) -> list[asyncio.Task]:
        for name in Queues.STEP_QUEUES:
            self._spawn(name, self._handle_job, self.concurrency.get(name, 1))
        logger.info("step_workers_started",
                    group=self.consumer_group,
                    consumers=len(self._tasks))
        return list(self._tasks)

    async def _handle_job(self, job: QueueJob):
        logger.info("processing_job",
                    job_id=job.job_id,
                    queue=job.queue,
                    attempt=job.attempt,
                    **job.metadata)
        try:
            await self.dispatcher.handle_queue_job(job)
        except Exception as e:
            logger.error("job_processing_error",
                         job_id=job.job_id,
                         queue=job.queue,
                         error=str(e),
                         exc_info=True)
            raise  # route to nack / DLQ


class WebhookDispatchWorker(_ConsumerGroup):
    """Performs the HTTP calls behind webhook templates."""

    def __init__(
        self,
        queue: MessageQueue,
        client: httpx.AsyncClient,
        telemetry: Optional[TelemetrySink] = None,
        concurrency: int = 1,
        consumer_group: str = "journey-workers",
        backoff_multiplier: float = 1.0,
    ):
        super().__init__(queue, consumer_group)
        self.client = client
        self.telemetry = telemetry
        self.concurrency = concurrency
        self.backoff_multiplier = backoff_multiplier

    async def start_background(self) -> list[asyncio.Task]:
        self._spawn(Queues.WEBHOOK_DISPATCH, self.handle_job, self.concurrency)
        return list(self._tasks)

    async def handle_job(self, job: QueueJob):
        payload = job.payload
        webhook = WebhookData.model_validate(payload["webhook"])
        tags: dict[str, Any] = payload.get("tags") or {}

        try:
            response = await self._deliver(webhook, tags)
        except httpx.HTTPError as e:
            logger.warning("webhook_delivery_failed",
                           job_id=job.job_id,
                           url=webhook.url,
                           error=str(e))
            await self._record(payload, job.job_id, TelemetryEventType.FAILED, {"error": str(e)})
            raise

        logger.info("webhook_delivered",
                    job_id=job.job_id,
                    url=webhook.url,
                    status_code=response.status_code)
        await self._record(payload, job.job_id, TelemetryEventType.DELIVERED,
                           {"status_code": response.status_code})

    async def _deliver(self, webhook: WebhookData, tags: dict[str, Any]) -> httpx.Response:
        url = render_tags(webhook.url, tags)
        headers = {k: render_tags(v, tags) for k, v in webhook.headers.items()}
        body = render_tags(webhook.body, tags)

        async for attempt in AsyncRetrying(
            stop=stop_after_attempt(max(webhook.retries, 1)),
            wait=wait_exponential(multiplier=self.backoff_multiplier, max=10),
            retry=retry_if_exception_type(httpx.HTTPError),
            reraise=True,
        ):
            with attempt:
                response = await self.client.request(
                    webhook.method.upper(), url, headers=headers, content=body or None,
                )
                response.raise_for_status()
        return response

    async def _record(self, payload: dict[str, Any], message_id: str, event: TelemetryEventType, detail: dict):
        if self.telemetry is None:
            return
        await record_safely(self.telemetry, TelemetryEvent(
            step_id=payload.get("step_id", ""),
            customer_id=payload.get("customer_id", ""),
            template_id=payload.get("template_id", ""),
            event=event,
            message_id=message_id,
            provider="webhook",
            detail=detail,
        ))


# ──────────────────────────────────────────────────────────────
#  Delayed Job Promoter
# ──────────────────────────────────────────────────────────────

class DelayedJobPromoter:
    """
    Background task that periodically moves delayed jobs (timers, requeues
    and retries) whose scheduled_at has arrived into their step queue.

    For Redis: runs ZRANGEBYSCORE + XADD.
    For in-memory: the queue also promotes on its own; running both is harmless.
    """

    def __init__(self, queue: MessageQueue, interval_seconds: int = 5):
        self.queue = queue
        self.interval = interval_seconds
        self._task: Optional[asyncio.Task] = None

    async def start_background(self) -> asyncio.Task:
        self._task = asyncio.create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass

    async def _run(self):
        logger.info("delayed_promoter_started", interval=self.interval)
        while True:
            try:
                await self.queue.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("promoter_error", error=str(e))
            await asyncio.sleep(self.interval)
