"""
Message Queue — Abstract interface with Redis Streams and in-memory backends.

Queue Topology:
  start | message | time-delay | time-window | wait-until |
  multisplit | experiment | loop | exit
                       — one stream per step type, consumed by step workers
  webhook-dispatch     — asynchronous webhook sends
  queue:delayed        — jobs with a future execution time (sorted set in Redis),
                         promoted into their target queue when due
  queue:dlq            — dead-letter queue for failed / unrecoverable jobs

Message Schema:
  {
      "job_id":       unique job identifier (stable across retries),
      "queue":        target queue name,
      "name":         job name (step type, or "whapicall" for webhooks),
      "payload":      JSON-encoded job body,
      "attempt":      current attempt number (for retries),
      "max_attempts": ceiling before DLQ,
      "scheduled_at": ISO timestamp when the job should execute,
      "created_at":   ISO timestamp when the job was enqueued,
      "metadata":     arbitrary extra data,
  }
"""
from __future__ import annotations

import asyncio
import json
import uuid
import structlog
from abc import ABC, abstractmethod
from collections import deque
from datetime import datetime, timedelta, timezone
from dataclasses import dataclass, field, asdict
from typing import Any, Callable, Optional

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class UnrecoverableError(Exception):
    """Raised by a handler when retrying the job can never help."""


# ──────────────────────────────────────────────────────────────
#  Job Model
# ──────────────────────────────────────────────────────────────

@dataclass
class QueueJob:
    """A unit of work on the queue."""
    queue: str
    name: str = ""
    payload: dict[str, Any] = field(default_factory=dict)
    attempt: int = 0
    max_attempts: int = 3
    scheduled_at: str = ""
    created_at: str = ""
    metadata: dict[str, Any] = field(default_factory=dict)
    job_id: str = ""

    def __post_init__(self):
        if not self.job_id:
            self.job_id = f"job_{uuid.uuid4().hex[:12]}"
        if not self.created_at:
            self.created_at = _utcnow().isoformat()
        if not self.scheduled_at:
            self.scheduled_at = self.created_at

    def to_dict(self) -> dict[str, Any]:
        d = asdict(self)
        d["payload"] = json.dumps(d["payload"])
        d["metadata"] = json.dumps(d["metadata"])
        d["attempt"] = str(d["attempt"])
        d["max_attempts"] = str(d["max_attempts"])
        return d

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueJob:
        data = dict(data)  # copy
        if isinstance(data.get("payload"), str):
            data["payload"] = json.loads(data["payload"])
        if isinstance(data.get("metadata"), str):
            data["metadata"] = json.loads(data["metadata"])
        data["attempt"] = int(data.get("attempt", 0))
        data["max_attempts"] = int(data.get("max_attempts", 3))
        return cls(**{k: v for k, v in data.items() if k in cls.__dataclass_fields__})

    @property
    def scheduled_time(self) -> datetime:
        target = datetime.fromisoformat(self.scheduled_at)
        if target.tzinfo is None:
            target = target.replace(tzinfo=timezone.utc)
        return target

    def is_due(self, now: Optional[datetime] = None) -> bool:
        try:
            return (now or _utcnow()) >= self.scheduled_time
        except ValueError:
            return True

    def next_retry_job(self, backoff_seconds: int = 60, now: Optional[datetime] = None) -> QueueJob:
        """Create a copy with incremented attempt and backoff delay."""
        now = now or _utcnow()
        retry_at = now + timedelta(
            seconds=backoff_seconds * (2 ** self.attempt)  # exponential backoff
        )
        return QueueJob(
            queue=self.queue,
            name=self.name,
            payload=self.payload,
            attempt=self.attempt + 1,
            max_attempts=self.max_attempts,
            scheduled_at=retry_at.isoformat(),
            created_at=self.created_at,
            metadata={**self.metadata, "last_failure_at": now.isoformat()},
            job_id=self.job_id,  # same job_id across retries for tracing
        )


# ──────────────────────────────────────────────────────────────
#  Queue Names
# ──────────────────────────────────────────────────────────────

class Queues:
    START = "start"
    MESSAGE = "message"
    TIME_DELAY = "time-delay"
    TIME_WINDOW = "time-window"
    WAIT_UNTIL = "wait-until"
    MULTISPLIT = "multisplit"
    EXPERIMENT = "experiment"
    LOOP = "loop"
    EXIT = "exit"
    WEBHOOK_DISPATCH = "webhook-dispatch"
    DELAYED = "queue:delayed"
    DLQ = "queue:dlq"

    STEP_QUEUES = (START, MESSAGE, TIME_DELAY, TIME_WINDOW, WAIT_UNTIL,
                   MULTISPLIT, EXPERIMENT, LOOP, EXIT)


# ──────────────────────────────────────────────────────────────
#  Abstract Interface
# ──────────────────────────────────────────────────────────────

class MessageQueue(ABC):
    """Abstract message queue interface."""

    def __init__(self, retry_backoff_base: int = 60, remove_on_complete: int = 0):
        self.retry_backoff_base = retry_backoff_base
        self.remove_on_complete = remove_on_complete
        self._running = False

    @abstractmethod
    async def connect(self):
        """Establish connection to the queue backend."""
        ...

    @abstractmethod
    async def close(self):
        """Gracefully shut down."""
        ...

    @abstractmethod
    async def publish(self, queue: str, job: QueueJob):
        """Publish a job to a queue."""
        ...

    @abstractmethod
    async def publish_delayed(self, job: QueueJob):
        """Publish a job that should execute in job.queue at job.scheduled_at."""
        ...

    @abstractmethod
    async def consume(
        self,
        queue: str,
        handler: Callable[[QueueJob], Any],
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        """
        Start consuming from a queue. Blocks and calls handler for each job.
        Supports consumer groups for horizontal scaling.
        """
        ...

    @abstractmethod
    async def nack(self, queue: str, job: QueueJob, consumer_group: str = "default"):
        """Negative-acknowledge — route to retry or DLQ."""
        ...

    @abstractmethod
    async def dead_letter(self, job: QueueJob, reason: str):
        """Move a job straight to the DLQ, skipping retries."""
        ...

    @abstractmethod
    async def queue_length(self, queue: str) -> int:
        """Return the number of pending jobs in a queue."""
        ...

    @abstractmethod
    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        """Peek at jobs without consuming them."""
        ...

    @abstractmethod
    async def promote_delayed(self, now: Optional[datetime] = None) -> int:
        """Move delayed jobs whose scheduled_at has arrived to their target queue."""
        ...

    async def _run_handler(self, queue: str, job: QueueJob, handler, consumer_group: str) -> bool:
        """Run one job. True when it completed and can be acknowledged as done."""
        try:
            await handler(job)
            return True
        except UnrecoverableError as e:
            logger.error("job_unrecoverable",
                         queue=queue,
                         job_id=job.job_id,
                         error=str(e))
            await self.dead_letter(job, str(e))
        except Exception as e:
            logger.error("job_handler_error",
                         queue=queue,
                         job_id=job.job_id,
                         error=str(e))
            await self.nack(queue, job, consumer_group)
        return False


# ──────────────────────────────────────────────────────────────
#  Redis Streams Implementation
# ──────────────────────────────────────────────────────────────

class RedisMessageQueue(MessageQueue):
    """
    Production queue backed by Redis Streams + Sorted Sets.

    - Step queues use Redis Streams with consumer groups
    - Delayed queue uses a Redis Sorted Set (ZRANGEBYSCORE for promotion)
    - Pending entries idle longer than stalled_interval_ms are re-claimed
      (XAUTOCLAIM) and re-delivered to a live consumer
    - Completed jobs are removed from the stream; the last
      remove_on_complete ids are kept in a capped list per queue
    - DLQ uses a Redis Stream for inspection
    """

    def __init__(
        self,
        redis_url: str = "redis://localhost:6379",
        stalled_interval_ms: int = 600000,
        retry_backoff_base: int = 60,
        remove_on_complete: int = 0,
    ):
        super().__init__(retry_backoff_base, remove_on_complete)
        self._redis_url = redis_url
        self._redis = None
        self.stalled_interval_ms = stalled_interval_ms

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(
            self._redis_url,
            decode_responses=True,
            max_connections=50,
        )
        await self._redis.ping()
        logger.info("redis_queue_connected", url=self._redis_url)

    async def close(self):
        self._running = False
        if self._redis:
            await self._redis.close()

    async def _ensure_group(self, queue: str, group: str):
        """Create consumer group if it doesn't exist."""
        from redis.exceptions import ResponseError
        try:
            await self._redis.xgroup_create(queue, group, id="0", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def publish(self, queue: str, job: QueueJob):
        job.queue = queue
        await self._redis.xadd(queue, job.to_dict())
        logger.info("job_published",
                    queue=queue,
                    job_id=job.job_id,
                    name=job.name)

    async def publish_delayed(self, job: QueueJob):
        score = job.scheduled_time.timestamp()
        payload = json.dumps(job.to_dict())
        await self._redis.zadd(Queues.DELAYED, {payload: score})
        logger.info("delayed_job_published",
                    queue=job.queue,
                    job_id=job.job_id,
                    scheduled_at=job.scheduled_at)

    async def _complete(self, queue: str, group: str, message_id: str, job: QueueJob):
        pipe = self._redis.pipeline()
        pipe.xack(queue, group, message_id)
        pipe.xdel(queue, message_id)
        if self.remove_on_complete > 0:
            key = f"{queue}:completed"
            pipe.lpush(key, job.job_id)
            pipe.ltrim(key, 0, self.remove_on_complete - 1)
        await pipe.execute()

    async def _process(self, queue, group, message_id, fields, handler):
        job = QueueJob.from_dict(fields)
        await self._run_handler(queue, job, handler, group)
        # Failures were re-published (retry or DLQ), so the entry is done either way
        await self._complete(queue, group, message_id, job)
        logger.debug("job_acked", job_id=job.job_id, message_id=message_id)

    async def reclaim_stalled(self, queue: str, group: str, consumer: str, count: int = 10):
        """Take over entries another consumer read but never acknowledged."""
        _, claimed, *_ = await self._redis.xautoclaim(
            queue, group, consumer,
            min_idle_time=self.stalled_interval_ms,
            start_id="0-0",
            count=count,
        )
        if claimed:
            logger.warning("stalled_jobs_reclaimed", queue=queue, count=len(claimed))
        return claimed

    async def consume(
        self,
        queue: str,
        handler: Callable[[QueueJob], Any],
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        if not consumer_name:
            consumer_name = f"worker_{uuid.uuid4().hex[:8]}"

        await self._ensure_group(queue, consumer_group)
        self._running = True
        logger.info("consumer_started",
                    queue=queue,
                    group=consumer_group,
                    consumer=consumer_name)
        loop = asyncio.get_running_loop()
        next_reclaim = loop.time()

        while self._running:
            try:
                if loop.time() >= next_reclaim:
                    next_reclaim = loop.time() + self.stalled_interval_ms / 1000
                    for message_id, fields in await self.reclaim_stalled(queue, consumer_group, consumer_name):
                        await self._process(queue, consumer_group, message_id, fields, handler)

                messages = await self._redis.xreadgroup(
                    groupname=consumer_group,
                    consumername=consumer_name,
                    streams={queue: ">"},
                    count=batch_size,
                    block=2000,  # block 2s waiting for messages
                )

                if not messages:
                    continue

                for _stream, stream_messages in messages:
                    for message_id, fields in stream_messages:
                        await self._process(queue, consumer_group, message_id, fields, handler)

            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("consumer_error", queue=queue, error=str(e))
                await asyncio.sleep(1)

    async def nack(self, queue: str, job: QueueJob, consumer_group: str = "default"):
        if job.attempt + 1 >= job.max_attempts:
            await self.dead_letter(job, f"Exceeded {job.max_attempts} attempts")
        else:
            retry_job = job.next_retry_job(self.retry_backoff_base)
            await self.publish_delayed(retry_job)
            logger.info("job_scheduled_for_retry",
                        job_id=job.job_id,
                        attempt=retry_job.attempt,
                        scheduled_at=retry_job.scheduled_at)

    async def dead_letter(self, job: QueueJob, reason: str):
        job.metadata["dlq_reason"] = reason
        await self._redis.xadd(Queues.DLQ, job.to_dict())
        logger.warning("job_moved_to_dlq",
                       job_id=job.job_id,
                       queue=job.queue,
                       attempts=job.attempt + 1,
                       reason=reason)

    async def queue_length(self, queue: str) -> int:
        return await self._redis.xlen(queue)

    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        messages = await self._redis.xrange(queue, count=count)
        return [QueueJob.from_dict(fields) for _, fields in messages]

    async def promote_delayed(self, now: Optional[datetime] = None) -> int:
        """Move jobs whose scheduled_at <= now from sorted set to their stream."""
        cutoff = (now or _utcnow()).timestamp()
        ready = await self._redis.zrangebyscore(Queues.DELAYED, "-inf", cutoff)

        if not ready:
            return 0

        promoted = 0
        for payload in ready:
            # ZREM first so two promoters never publish the same job
            if not await self._redis.zrem(Queues.DELAYED, payload):
                continue
            job = QueueJob.from_dict(json.loads(payload))
            await self._redis.xadd(job.queue, job.to_dict())
            promoted += 1

        logger.info("delayed_jobs_promoted", count=promoted)
        return promoted


# ──────────────────────────────────────────────────────────────
#  In-Memory Implementation (Development)
# ──────────────────────────────────────────────────────────────

class InMemoryMessageQueue(MessageQueue):
    """
    Development/test queue backed by asyncio primitives.
    Single-process only — no consumer groups or persistence.
    """

    def __init__(self, retry_backoff_base: int = 60, remove_on_complete: int = 0,
                 promote_interval: float = 5.0):
        super().__init__(retry_backoff_base, remove_on_complete)
        self._queues: dict[str, asyncio.Queue] = {}
        self._delayed: list[tuple[float, QueueJob]] = []  # (timestamp, job)
        self._dlq: list[QueueJob] = []
        self._completed: dict[str, deque] = {}
        self._promote_interval = promote_interval
        self._delayed_promoter_task: Optional[asyncio.Task] = None

    def _get_queue(self, name: str) -> asyncio.Queue:
        if name not in self._queues:
            self._queues[name] = asyncio.Queue()
        return self._queues[name]

    async def connect(self):
        self._running = True
        self._delayed_promoter_task = asyncio.create_task(self._promote_loop())
        logger.info("inmemory_queue_connected")

    async def close(self):
        self._running = False
        if self._delayed_promoter_task:
            self._delayed_promoter_task.cancel()
            try:
                await self._delayed_promoter_task
            except asyncio.CancelledError:
                pass

    async def publish(self, queue: str, job: QueueJob):
        job.queue = queue
        await self._get_queue(queue).put(job)
        logger.info("job_published",
                    queue=queue,
                    job_id=job.job_id,
                    name=job.name)

    async def publish_delayed(self, job: QueueJob):
        score = job.scheduled_time.timestamp()
        self._delayed.append((score, job))
        self._delayed.sort(key=lambda x: x[0])
        logger.info("delayed_job_published",
                    queue=job.queue,
                    job_id=job.job_id,
                    scheduled_at=job.scheduled_at)

    def _record_completed(self, queue: str, job: QueueJob):
        if self.remove_on_complete > 0:
            done = self._completed.setdefault(queue, deque(maxlen=self.remove_on_complete))
            done.append(job.job_id)

    async def consume(
        self,
        queue: str,
        handler: Callable[[QueueJob], Any],
        consumer_group: str = "default",
        consumer_name: str = "",
        batch_size: int = 10,
    ):
        q = self._get_queue(queue)
        self._running = True
        logger.info("consumer_started", queue=queue, consumer=consumer_name)

        while self._running:
            try:
                job = await asyncio.wait_for(q.get(), timeout=2.0)
                if await self._run_handler(queue, job, handler, consumer_group):
                    self._record_completed(queue, job)
            except asyncio.TimeoutError:
                continue
            except asyncio.CancelledError:
                break

    async def nack(self, queue: str, job: QueueJob, consumer_group: str = "default"):
        if job.attempt + 1 >= job.max_attempts:
            await self.dead_letter(job, f"Exceeded {job.max_attempts} attempts")
        else:
            retry_job = job.next_retry_job(self.retry_backoff_base)
            await self.publish_delayed(retry_job)

    async def dead_letter(self, job: QueueJob, reason: str):
        job.metadata["dlq_reason"] = reason
        self._dlq.append(job)
        logger.warning("job_moved_to_dlq",
                       job_id=job.job_id,
                       queue=job.queue,
                       attempts=job.attempt + 1,
                       reason=reason)

    async def queue_length(self, queue: str) -> int:
        return self._get_queue(queue).qsize()

    async def peek(self, queue: str, count: int = 10) -> list[QueueJob]:
        q = self._get_queue(queue)
        items = []
        # asyncio.Queue doesn't support peek natively — drain and re-add
        while not q.empty() and len(items) < count:
            items.append(q.get_nowait())
        rest = []
        while not q.empty():
            rest.append(q.get_nowait())
        for item in items + rest:
            q.put_nowait(item)
        return items

    def take(self, queue: str) -> Optional[QueueJob]:
        """Pop the next ready job without a consumer loop."""
        q = self._get_queue(queue)
        return None if q.empty() else q.get_nowait()

    @property
    def delayed(self) -> list[QueueJob]:
        return [job for _, job in self._delayed]

    @property
    def dead_letters(self) -> list[QueueJob]:
        return list(self._dlq)

    def completed(self, queue: str) -> list[str]:
        return list(self._completed.get(queue, ()))

    async def promote_delayed(self, now: Optional[datetime] = None) -> int:
        cutoff = (now or _utcnow()).timestamp()
        ready = [(ts, job) for ts, job in self._delayed if ts <= cutoff]
        self._delayed = [(ts, job) for ts, job in self._delayed if ts > cutoff]

        for _, job in ready:
            await self.publish(job.queue, job)

        if ready:
            logger.info("delayed_jobs_promoted", count=len(ready))
        return len(ready)

    async def _promote_loop(self):
        """Background loop to promote delayed jobs."""
        while self._running:
            try:
                await self.promote_delayed()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("delayed_promote_error", error=str(e))
            await asyncio.sleep(self._promote_interval)


# ──────────────────────────────────────────────────────────────
#  Factory
# ──────────────────────────────────────────────────────────────

def create_message_queue(queue_config: dict[str, Any] = None) -> MessageQueue:
    """Factory: create the appropriate queue backend."""
    config = queue_config or {}
    backend = config.get("backend", "memory")
    backoff = config.get("retry_backoff_base", 60)
    retention = config.get("remove_on_complete", 0)

    if backend == "redis":
        return RedisMessageQueue(
            redis_url=config.get("redis_url", "redis://localhost:6379"),
            stalled_interval_ms=config.get("stalled_interval_ms", 600000),
            retry_backoff_base=backoff,
            remove_on_complete=retention,
        )
    return InMemoryMessageQueue(
        retry_backoff_base=backoff,
        remove_on_complete=retention,
        promote_interval=config.get("delayed_promote_interval", 5),
    )
