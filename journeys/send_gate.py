"""
Send Gate — decides what a Message step does with one customer right now.

Guards run in a fixed order and each only runs while the decision is still
SEND:

    1. quiet hours           → QUIET_REQUEUE | QUIET_ABORT
    2. customers messaged    → LIMIT_HOLD
    3. sends per minute      → LIMIT_REQUEUE (start of the next minute)
    4. mock mode             → MOCK_SEND (templates without a webhook payload)

evaluate() only looks. Once the caller is ready to send it calls commit(),
which takes the rate-limit counters atomically; losing that race turns the
decision into the matching LIMIT_* outcome.
"""
from __future__ import annotations

import structlog
from dataclasses import dataclass, replace
from datetime import datetime, timedelta
from typing import Optional

from journeys.quiet_hours import evaluate_quiet_hours
from journeys.rate_limit import RateLimiter, RateLimitReservation
from models.schemas import Journey, RateLimitKind, SendDecision, Template

logger = structlog.get_logger()

SENDING_DECISIONS = frozenset({SendDecision.SEND, SendDecision.MOCK_SEND})


def next_minute(now: datetime) -> datetime:
    return now.replace(second=0, microsecond=0) + timedelta(minutes=1)


@dataclass(frozen=True)
class GateDecision:
    decision: SendDecision
    requeue_time: Optional[datetime] = None
    reservation: Optional[RateLimitReservation] = None

    @property
    def sends(self) -> bool:
        return self.decision in SENDING_DECISIONS


class SendGate:

    def __init__(self, rate_limiter: RateLimiter, mock_send: bool = False):
        self.rate_limiter = rate_limiter
        self.mock_send = mock_send

    async def evaluate(
        self, journey: Journey, customer_id: str, template: Optional[Template], now: datetime,
    ) -> GateDecision:
        quiet = evaluate_quiet_hours(journey.journey_settings.quiet_hours, now)
        if quiet.suppressed:
            return GateDecision(quiet.decision, quiet.requeue_time)

        if await self.rate_limiter.customers_messaged_exceeded(journey, customer_id, now):
            return GateDecision(SendDecision.LIMIT_HOLD)

        if await self.rate_limiter.per_minute_exceeded(journey, now):
            return GateDecision(SendDecision.LIMIT_REQUEUE, next_minute(now))

        if self.mock_send and template is not None and template.webhook_data is None:
            return GateDecision(SendDecision.MOCK_SEND)

        return GateDecision(SendDecision.SEND)

    async def commit(
        self, decision: GateDecision, journey: Journey, customer_id: str, now: datetime,
    ) -> GateDecision:
        """Take the rate-limit counters for a sending decision."""
        if not decision.sends:
            return decision

        reservation = await self.rate_limiter.reserve(journey, customer_id, now)
        if reservation.granted:
            return replace(decision, reservation=reservation)

        logger.info("rate_limit_race_lost",
                    journey_id=journey.id,
                    customer_id=customer_id,
                    limit=reservation.denied.value)
        if reservation.denied == RateLimitKind.CUSTOMERS_MESSAGED:
            return GateDecision(SendDecision.LIMIT_HOLD)
        return GateDecision(SendDecision.LIMIT_REQUEUE, next_minute(now))

    async def release(self, decision: GateDecision) -> None:
        """Hand back counters for a send that did not happen."""
        if decision.reservation is not None:
            await self.rate_limiter.release(decision.reservation)
