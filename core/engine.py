"""
Journey Engine — wires the stores, queues and workers together and exposes
the operations the outside world calls: admit, resume, pause, unpause, stop.

    engine = JourneyEngine.build(settings, steps=..., templates=..., journeys=...)
    await engine.start()
    await engine.admit(customer, owner, journey_id, start_step_id)
    ...
    await engine.shutdown()
"""
from __future__ import annotations

import random
import structlog
from dataclasses import asdict
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx

from channels.base import MessageSender
from channels.email_adapter import EmailAdapter
from channels.push_adapter import PushAdapter
from channels.sms_adapter import SMSAdapter
from channels.webhook_adapter import WebhookAdapter
from config.settings import Settings, get_settings
from database.location_store import SqlLocationStore
from database.session import close_db, create_session_factory, init_db
from job_queue.consumer import DelayedJobPromoter, StepWorker, WebhookDispatchWorker
from job_queue.fabric import QueueFabric
from job_queue.message_queue import MessageQueue, Queues, create_message_queue
from journeys.context import EngineContext
from journeys.dispatcher import StepDispatcher
from journeys.errors import JourneyInactiveError, LocationNotFoundError, StepConfigurationError
from journeys.jobs import StepJob
from journeys.locations import InMemoryLocationStore, JourneyLocationTracker, LocationStore, LockReaper
from journeys.rate_limit import RateLimiter, RedisRateLimitStore, create_rate_limit_store
from journeys.send_gate import SendGate
from journeys.stores import (
    CachedStepStore, CachedTemplateStore, JourneyStore, StepStore, TemplateStore,
)
from journeys.telemetry import StructlogTelemetrySink, TelemetrySink
from models.schemas import Account, Customer, Journey, JourneyLocation

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def default_sender(queue: MessageQueue, max_attempts: int = 3) -> MessageSender:
    sender = MessageSender()
    sender.register(EmailAdapter())
    sender.register(SMSAdapter())
    sender.register(PushAdapter("ios"))
    sender.register(PushAdapter("android"))
    sender.register(WebhookAdapter(queue, max_attempts=max_attempts))
    return sender


class JourneyEngine:

    def __init__(
        self,
        settings: Settings,
        queue: MessageQueue,
        ctx: EngineContext,
        session_factory=None,
    ):
        self.settings = settings
        self.queue = queue
        self.ctx = ctx
        self.dispatcher = StepDispatcher(ctx)
        self._session_factory = session_factory
        self._workers: Optional[StepWorker] = None
        self._webhooks: Optional[WebhookDispatchWorker] = None
        self._promoter: Optional[DelayedJobPromoter] = None
        self._reaper: Optional[LockReaper] = None

    @classmethod
    def build(
        cls,
        settings: Settings = None,
        *,
        steps: StepStore,
        templates: TemplateStore,
        journeys: JourneyStore,
        telemetry: TelemetrySink = None,
        sender: MessageSender = None,
        queue: MessageQueue = None,
        location_store: LocationStore = None,
        clock: Callable[[], datetime] = _utcnow,
        rng: random.Random = None,
    ) -> JourneyEngine:
        settings = settings or get_settings()
        queue = queue or create_message_queue(asdict(settings.queue))

        session_factory = None
        if location_store is None:
            if settings.locks.backend == "sql":
                session_factory = create_session_factory(settings.database.url, settings.database.echo)
                location_store = SqlLocationStore(session_factory)
            else:
                location_store = InMemoryLocationStore()

        rate_store = create_rate_limit_store(asdict(settings.rate_limits))
        cache = settings.cache
        ctx = EngineContext(
            fabric=QueueFabric(queue, max_attempts=settings.queue.max_attempts),
            tracker=JourneyLocationTracker(location_store, settings.locks.max_hold_seconds, clock),
            gate=SendGate(RateLimiter(rate_store), mock_send=settings.mock_send.enabled),
            steps=CachedStepStore(steps, cache.ttl_seconds, cache.max_size),
            templates=CachedTemplateStore(templates, cache.ttl_seconds, cache.max_size),
            journeys=journeys,
            sender=sender or default_sender(queue, settings.queue.max_attempts),
            telemetry=telemetry or StructlogTelemetrySink(),
            mock_ping_url=settings.mock_send.ping_url,
            http=httpx.AsyncClient(timeout=10.0),
            clock=clock,
            rng=rng or random.Random(),
        )
        return cls(settings, queue, ctx, session_factory)

    # ── Lifecycle ─────────────────────────────────────────────

    async def start(self, run_workers: bool = True):
        await self.queue.connect()
        store = self.ctx.gate.rate_limiter.store
        if isinstance(store, RedisRateLimitStore):
            await store.connect()
        if self._session_factory is not None:
            await init_db(self._session_factory)

        if not run_workers:
            return

        qcfg = self.settings.queue
        self._workers = StepWorker(self.queue, self.dispatcher, qcfg.concurrency, qcfg.consumer_group)
        await self._workers.start_background()
        self._webhooks = WebhookDispatchWorker(
            self.queue, self.ctx.http, self.ctx.telemetry,
            concurrency=qcfg.concurrency_for(Queues.WEBHOOK_DISPATCH),
            consumer_group=qcfg.consumer_group,
        )
        await self._webhooks.start_background()
        self._promoter = DelayedJobPromoter(self.queue, qcfg.delayed_promote_interval)
        await self._promoter.start_background()
        self._reaper = LockReaper(self.ctx.tracker, self.settings.locks.reaper_interval)
        await self._reaper.start_background()
        logger.info("journey_engine_started", queue_backend=qcfg.backend)

    async def shutdown(self):
        for component in (self._workers, self._webhooks, self._promoter, self._reaper):
            if component is not None:
                await component.stop()
        await self.queue.close()
        await self.ctx.gate.rate_limiter.store.close()
        if self.ctx.http is not None:
            await self.ctx.http.aclose()
        if self._session_factory is not None:
            await close_db(self._session_factory)
        logger.info("journey_engine_stopped")

    # ── Operations ────────────────────────────────────────────

    async def _journey(self, journey_id: str) -> Journey:
        journey = await self.ctx.journeys.get_by_id(journey_id)
        if journey is None:
            raise JourneyInactiveError(journey_id, "not found")
        return journey

    async def admit(
        self,
        customer: Customer,
        owner: Account,
        journey_id: str,
        starting_step_id: str,
        event: Optional[dict[str, Any]] = None,
    ) -> Optional[JourneyLocation]:
        """
        Put a customer on a journey at its entry step. Returns None when the
        customer is already active in the journey.
        """
        journey = await self._journey(journey_id)
        if not journey.accepts_admissions:
            reason = "stopped" if journey.is_stopped else "paused" if journey.is_paused else "inactive"
            raise JourneyInactiveError(journey_id, reason)

        step = await self.ctx.steps.get_by_id(starting_step_id)
        if step is None:
            raise StepConfigurationError(f"Starting step {starting_step_id} not found", starting_step_id)

        location = await self.ctx.tracker.admit(customer.id, journey.id, step.id, owner.id)
        if location is None:
            return None

        job = StepJob(step=step, owner=owner, journey=journey, customer=customer,
                      location=location, event=event)
        try:
            await self.ctx.fabric.enqueue(job)
        except Exception:
            # Leave no half-admitted row behind so the admission can be retried
            await self.ctx.tracker.store.finalize(customer.id, journey.id, self.ctx.clock())
            logger.error("customer_admission_failed",
                         customer_id=customer.id, journey_id=journey.id, step_id=step.id)
            raise
        logger.info("customer_admitted",
                    customer_id=customer.id,
                    journey_id=journey.id,
                    step_id=step.id)
        return location

    async def resume(
        self,
        customer: Customer,
        owner: Account,
        journey_id: str,
        step_id: str,
        event: Optional[dict[str, Any]] = None,
    ) -> bool:
        """
        Re-run the step a customer is resting at (held by a rate limit, or
        waiting on an event). False when the customer has already moved on.
        """
        journey = await self._journey(journey_id)
        location = await self.ctx.tracker.store.get(customer.id, journey_id)
        if location is None or location.is_finalized:
            raise LocationNotFoundError(customer.id, journey_id, step_id)
        if location.current_step_id != step_id:
            logger.info("resume_step_mismatch",
                        customer_id=customer.id,
                        journey_id=journey_id,
                        step_id=step_id,
                        current_step_id=location.current_step_id)
            return False

        step = await self.ctx.steps.get_by_id(step_id)
        if step is None:
            raise StepConfigurationError(f"Step {step_id} not found", step_id)

        # Never hand a lock we do not own to the resumed job
        snapshot = location.model_copy(update={"locked": False, "lock_token": None, "locked_at": None})
        await self.ctx.fabric.enqueue(StepJob(
            step=step, owner=owner, journey=journey, customer=customer,
            location=snapshot, event=event,
        ))
        return True

    async def pause(self, journey_id: str) -> Journey:
        return await self._set_flags(journey_id, is_paused=True)

    async def unpause(self, journey_id: str) -> Journey:
        return await self._set_flags(journey_id, is_paused=False)

    async def stop(self, journey_id: str) -> Journey:
        """Stop for good. Queued jobs of the journey finalize their customer when picked up."""
        return await self._set_flags(journey_id, is_stopped=True, is_active=False)

    async def _set_flags(self, journey_id: str, **flags: bool) -> Journey:
        journey = await self.ctx.journeys.update_flags(journey_id, **flags)
        if journey is None:
            raise JourneyInactiveError(journey_id, "not found")
        return journey
