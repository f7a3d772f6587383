"""
Step Dispatcher — the state machine that moves one customer one step.

Every job is handled under the customer's location lock (see
JourneyLocationTracker.advancement). A handler does its step's work, then
hands the customer to the next step through _advance():

    next step is a timer (TimeDelay, TimeWindow, WaitUntilBranch)
        → park there (lock released) and schedule the wake-up job
    any other next step
        → move with the lock still held, enqueue its job carrying the token
    no destination
        → release the lock; the customer rests where they are
    destination that does not exist
        → release the lock and fail the job as misconfigured

Message steps run the Send Gate before any side effect.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Any, Awaitable, Callable, Optional, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from channels.base import ChannelError
from channels.push_adapter import platforms_for
from channels.rendering import clean_tags_for_sending, render_template
from job_queue.fabric import queue_for
from job_queue.message_queue import QueueJob
from journeys.context import EngineContext
from journeys.errors import QuotaExceededError, StepConfigurationError, StepNotImplementedError
from journeys.jobs import StepJob
from journeys.locations import Advancement
from journeys.send_gate import GateDecision
from journeys.telemetry import record_safely
from journeys.timers import delay_due_at, next_window_instant, wait_until_deadline
from models.schemas import (
    BranchingMetadata, DeliveryResult, DestinationMetadata, MessageMetadata,
    RESERVED_STEP_TYPES, SendDecision, Step, StepType, Template, TemplateType,
    TelemetryEvent, TelemetryEventType, TimeDelayMetadata, TimeWindowMetadata,
)
from utils.conditions import branch_matches

logger = structlog.get_logger()

M = TypeVar("M", bound=BaseModel)
Handler = Callable[[StepJob, Advancement], Awaitable[None]]

DELIVERED_STATUSES = ("sent", "queued")


def parse_metadata(step: Step, model: type[M]) -> M:
    try:
        return model.model_validate(step.metadata)
    except ValidationError as e:
        raise StepConfigurationError(
            f"Invalid {step.type.value} metadata on step {step.id}: {e.errors()[0]['msg']}", step.id,
        ) from e


class StepDispatcher:

    def __init__(self, ctx: EngineContext):
        self.ctx = ctx
        self._handlers: dict[StepType, Handler] = {
            StepType.START: self._handle_start,
            StepType.MESSAGE: self._handle_message,
            StepType.TIME_DELAY: self._handle_time_delay,
            StepType.TIME_WINDOW: self._handle_time_window,
            StepType.WAIT_UNTIL_BRANCH: self._handle_wait_until,
            StepType.MULTISPLIT: self._handle_multisplit,
            StepType.EXPERIMENT: self._handle_experiment,
            StepType.LOOP: self._handle_loop,
            StepType.EXIT: self._handle_exit,
        }
        for step_type in RESERVED_STEP_TYPES:
            self._handlers[step_type] = self._handle_reserved
        missing = [t.value for t in StepType if t not in self._handlers]
        if missing:
            raise RuntimeError(f"No handler for step types: {', '.join(missing)}")

    # ── Entry points ──────────────────────────────────────────

    async def handle_queue_job(self, queued: QueueJob) -> None:
        await self.process(StepJob.from_queue_job(queued))

    async def process(self, job: StepJob) -> None:
        customer_id, step = job.customer.id, job.step
        journey = await self.ctx.journeys.get_by_id(job.journey.id) or job.journey
        job = job.model_copy(update={"journey": journey})

        async with self.ctx.tracker.advancement(
            customer_id, journey.id, step.id, job.lock_token,
        ) as adv:
            if adv is None:
                return
            if journey.is_stopped:
                await adv.finalize()
                logger.info("stopped_journey_job_dropped",
                            journey_id=journey.id, customer_id=customer_id, step_id=step.id)
                return

            structlog.contextvars.bind_contextvars(
                journey_id=journey.id, customer_id=customer_id, step_id=step.id,
            )
            try:
                await self._handlers[step.type](job, adv)
            finally:
                structlog.contextvars.unbind_contextvars("journey_id", "customer_id", "step_id")

    # ── Next-step resolution ──────────────────────────────────

    async def _advance(self, job: StepJob, adv: Advancement, destination: Optional[str]) -> None:
        if not destination:
            await adv.release()
            logger.info("journey_path_ended", step_id=job.step.id)
            return

        next_step = await self.ctx.steps.get_by_id(destination)
        if next_step is None:
            await adv.release()
            raise StepConfigurationError(
                f"Destination step {destination} of step {job.step.id} does not exist", job.step.id,
            )
        queue_for(next_step.type, next_step.id)  # reserved types fail before the lock moves

        if next_step.is_timer:
            wake_at = self._wake_time(next_step, self.ctx.clock())
            location = await adv.park(next_step.id)
            if wake_at is not None:
                await self.ctx.fabric.enqueue_at(job.for_step(next_step, location), wake_at)
            logger.info("customer_parked",
                        next_step_id=next_step.id,
                        next_step_type=next_step.type.value,
                        wake_at=wake_at.isoformat() if wake_at else None)
            return

        location = await adv.hand_off(next_step.id)
        try:
            await self.ctx.fabric.enqueue(job.for_step(next_step, location))
        except Exception:
            await adv.revert()
            raise

    def _wake_time(self, step: Step, entered_at: datetime) -> Optional[datetime]:
        """When the timer job for a customer entering `step` at entered_at should run."""
        if step.type == StepType.TIME_DELAY:
            return delay_due_at(parse_metadata(step, TimeDelayMetadata), entered_at)
        if step.type == StepType.TIME_WINDOW:
            return next_window_instant(parse_metadata(step, TimeWindowMetadata), entered_at, step.id)
        return wait_until_deadline(parse_metadata(step, BranchingMetadata), entered_at)

    async def _reschedule(self, job: StepJob, adv: Advancement, when: datetime) -> None:
        """Release the lock and run this same step again at `when`."""
        location = await adv.park(job.step.id)
        await self.ctx.fabric.enqueue_at(job.for_step(job.step, location), when)

    # ── Handlers ──────────────────────────────────────────────

    async def _handle_reserved(self, job: StepJob, adv: Advancement) -> None:
        raise StepNotImplementedError(job.step.type.value, job.step.id)

    async def _handle_start(self, job: StepJob, adv: Advancement) -> None:
        meta = parse_metadata(job.step, DestinationMetadata)
        await self._advance(job, adv, meta.destination)

    async def _handle_loop(self, job: StepJob, adv: Advancement) -> None:
        meta = parse_metadata(job.step, DestinationMetadata)
        await self._advance(job, adv, meta.destination)

    async def _handle_exit(self, job: StepJob, adv: Advancement) -> None:
        await adv.finalize()
        logger.info("customer_exited_journey")

    async def _handle_time_delay(self, job: StepJob, adv: Advancement) -> None:
        meta = parse_metadata(job.step, TimeDelayMetadata)
        due = delay_due_at(meta, adv.location.step_entered_at)
        if self.ctx.clock() < due:
            await self._reschedule(job, adv, due)
            return
        await self._advance(job, adv, meta.destination)

    async def _handle_time_window(self, job: StepJob, adv: Advancement) -> None:
        meta = parse_metadata(job.step, TimeWindowMetadata)
        now = self.ctx.clock()
        opens = next_window_instant(meta, now, job.step.id)
        if opens > now:
            await self._reschedule(job, adv, opens)
            return
        await self._advance(job, adv, meta.destination)

    def _branch_data(self, job: StepJob) -> dict[str, Any]:
        return {
            **clean_tags_for_sending(job.customer),
            "customer": clean_tags_for_sending(job.customer),
            "event": job.event or {},
        }

    async def _handle_wait_until(self, job: StepJob, adv: Advancement) -> None:
        meta = parse_metadata(job.step, BranchingMetadata)
        event_name = (job.event or {}).get("event")
        data = self._branch_data(job)
        for index, branch in enumerate(meta.branches):
            if branch_matches(branch, data, event_name):
                logger.info("wait_until_branch_matched", branch=index, event_name=event_name)
                await self._advance(job.model_copy(update={"branch": index}), adv, branch.destination)
                return

        deadline = wait_until_deadline(meta, adv.location.step_entered_at)
        if deadline is not None and self.ctx.clock() >= deadline:
            logger.info("wait_until_timed_out")
            await self._advance(job, adv, meta.timeout_destination)
            return

        if deadline is not None and job.event is None:
            # Timer job delivered before its deadline
            await self._reschedule(job, adv, deadline)
            return
        await adv.release()

    async def _handle_multisplit(self, job: StepJob, adv: Advancement) -> None:
        meta = parse_metadata(job.step, BranchingMetadata)
        data = self._branch_data(job)
        for index, branch in enumerate(meta.branches):
            if branch_matches(branch, data):
                await self._advance(job.model_copy(update={"branch": index}), adv, branch.destination)
                return
        await self._advance(job, adv, meta.all_others_destination)

    async def _handle_experiment(self, job: StepJob, adv: Advancement) -> None:
        meta = parse_metadata(job.step, BranchingMetadata)
        weights = [max(b.ratio, 0.0) for b in meta.branches]
        if not weights or sum(weights) <= 0:
            raise StepConfigurationError(f"Experiment step {job.step.id} has no weighted branches", job.step.id)
        index = self.ctx.rng.choices(range(len(weights)), weights=weights)[0]
        logger.info("experiment_branch_assigned", branch=index)
        await self._advance(job.model_copy(update={"branch": index}), adv, meta.branches[index].destination)

    # ── Message ───────────────────────────────────────────────

    async def _handle_message(self, job: StepJob, adv: Advancement) -> None:
        meta = parse_metadata(job.step, MessageMetadata)

        if adv.location.message_sent:
            logger.info("message_already_sent")
            await self._advance(job, adv, meta.destination)
            return

        template = await self.ctx.templates.get_by_id(meta.template)
        if template is None:
            raise StepConfigurationError(f"Template {meta.template} not found", job.step.id)

        now = self.ctx.clock()
        gate = self.ctx.gate
        decision = await gate.evaluate(job.journey, job.customer.id, template, now)

        if decision.sends:
            journey = await self.ctx.journeys.get_by_id(job.journey.id)
            if journey is not None and journey.is_stopped:
                await adv.finalize()
                logger.info("stopped_journey_send_dropped")
                return
            decision = await gate.commit(decision, job.journey, job.customer.id, now)

        logger.info("send_gate_decision", decision=decision.decision.value)

        if decision.decision == SendDecision.SEND:
            try:
                results = await self._send(job, meta, template)
            except QuotaExceededError as e:
                await gate.release(decision)
                logger.warning("message_quota_exceeded", account_id=e.account_id)
                await self._record(job, meta, TelemetryEventType.ABORTED, detail={"reason": "quota_exceeded"})
                await self._advance(job, adv, meta.destination)
                return
            except Exception:
                await gate.release(decision)
                raise
            await adv.mark_message_sent()
            for result in results:
                await self._record_delivery(job, template, result)
            await self._advance(job, adv, meta.destination)

        elif decision.decision == SendDecision.MOCK_SEND:
            await self._mock_ping()
            await adv.mark_message_sent()
            await self._record(job, meta, TelemetryEventType.SENT)
            await self._advance(job, adv, meta.destination)

        elif decision.decision == SendDecision.QUIET_ABORT:
            await self._record(job, meta, TelemetryEventType.ABORTED, detail={"reason": "quiet_hours"})
            await self._advance(job, adv, meta.destination)

        elif decision.decision == SendDecision.LIMIT_HOLD:
            await self._record(job, meta, TelemetryEventType.HELD)
            await adv.release()

        else:
            await self._requeue(job, adv, meta, decision)

    async def _requeue(self, job: StepJob, adv: Advancement, meta: MessageMetadata, decision: GateDecision):
        await self._reschedule(job, adv, decision.requeue_time)
        await self._record(job, meta, TelemetryEventType.REQUEUED, detail={
            "reason": decision.decision.value,
            "requeue_time": decision.requeue_time.isoformat(),
        })

    async def _send(self, job: StepJob, meta: MessageMetadata, template: Template) -> list[DeliveryResult]:
        tags = clean_tags_for_sending(job.customer)
        content = render_template(template, tags)
        metadata = {
            "step_id": job.step.id,
            "customer_id": job.customer.id,
            "account_id": job.owner.id,
            "template_id": template.id,
            "session": job.session,
            "provider": job.owner.email_provider,
            "from": job.owner.sms_from,
        }

        if template.type == TemplateType.PUSH:
            targets = [(p, job.customer.address_for(p)) for p in platforms_for(meta.selected_platform)]
        elif template.type == TemplateType.WEBHOOK:
            if template.webhook_data is None:
                logger.warning("webhook_template_without_payload", template_id=template.id)
                return []
            targets = [(TemplateType.WEBHOOK.value, template.webhook_data.url)]
        else:
            targets = [(template.type.value, job.customer.address_for(template.type.value))]

        results = []
        for channel, destination in targets:
            try:
                results.append(await self.ctx.sender.send(
                    channel, content, destination, account=job.owner, metadata=metadata,
                ))
            except ChannelError as e:
                if e.retryable:
                    raise
                logger.warning("message_channel_rejected", channel=channel, error=str(e))
                results.append(DeliveryResult(status="failed", channel=channel,
                                              destination=destination, error=str(e)))
        return results

    async def _mock_ping(self) -> None:
        if not self.ctx.mock_ping_url or self.ctx.http is None:
            return
        try:
            await self.ctx.http.get(self.ctx.mock_ping_url)
        except httpx.HTTPError as e:
            logger.error("mock_send_ping_failed", url=self.ctx.mock_ping_url, error=str(e))

    # ── Telemetry ─────────────────────────────────────────────

    async def _record(
        self, job: StepJob, meta: MessageMetadata, event: TelemetryEventType,
        detail: dict[str, Any] = None,
    ) -> None:
        await record_safely(self.ctx.telemetry, TelemetryEvent(
            step_id=job.step.id,
            customer_id=job.customer.id,
            event=event,
            template_id=meta.template,
            message_id=meta.human_readable_name,
            workspace_id=job.owner.workspace_id,
            session=job.session,
            detail=detail or {},
        ))

    async def _record_delivery(self, job: StepJob, template: Template, result: DeliveryResult) -> None:
        event = TelemetryEventType.SENT if result.status in DELIVERED_STATUSES else TelemetryEventType.FAILED
        await record_safely(self.ctx.telemetry, TelemetryEvent(
            step_id=job.step.id,
            customer_id=job.customer.id,
            event=event,
            template_id=template.id,
            message_id=result.message_id,
            workspace_id=job.owner.workspace_id,
            provider=result.provider or result.channel,
            session=job.session,
            detail={"channel": result.channel, "error": result.error} if result.error else {"channel": result.channel},
        ))
