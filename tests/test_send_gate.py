"""Tests for the send gate decision order and its rate-limit commit."""
from datetime import datetime, timezone

import pytest

from journeys.rate_limit import InMemoryRateLimitStore, RateLimiter
from journeys.send_gate import SendGate, next_minute
from models.schemas import (
    Journey, JourneySettings, QuietFallbackBehavior, QuietHoursSettings, RateLimitKind,
    RateLimitSettings, SendDecision, Template, TemplateType, WebhookData,
)

NIGHT = datetime(2024, 3, 5, 23, 30, 15, tzinfo=timezone.utc)
NOON = datetime(2024, 3, 5, 12, 0, 30, tzinfo=timezone.utc)

EMAIL = Template(id="t-email", type=TemplateType.EMAIL, text="hi")
HOOK = Template(id="t-hook", type=TemplateType.WEBHOOK, webhook_data=WebhookData(url="https://example.com/hook"))


def journey(quiet=False, fallback=None, per_minute=None, customers=None) -> Journey:
    settings = JourneySettings()
    if quiet:
        settings.quiet_hours = QuietHoursSettings(enabled=True, start_time="22:00", end_time="06:00",
                                                  fallback_behavior=fallback)
    if per_minute is not None:
        settings.max_message_sends = RateLimitSettings(enabled=True, max=per_minute)
    if customers is not None:
        settings.max_customers_messaged = RateLimitSettings(enabled=True, max=customers)
    return Journey(id="j1", journey_settings=settings)


@pytest.fixture
def store():
    return InMemoryRateLimitStore()


@pytest.fixture
def gate(store):
    return SendGate(RateLimiter(store))


class TestNextMinute:
    def test_truncates_and_rolls(self):
        assert next_minute(NOON) == datetime(2024, 3, 5, 12, 1, tzinfo=timezone.utc)
        assert next_minute(datetime(2024, 3, 5, 23, 59, 59, tzinfo=timezone.utc)) == \
            datetime(2024, 3, 6, 0, 0, tzinfo=timezone.utc)


class TestEvaluate:
    @pytest.mark.asyncio
    async def test_unrestricted_sends(self, gate):
        decision = await gate.evaluate(journey(), "c1", EMAIL, NOON)
        assert decision.decision == SendDecision.SEND
        assert decision.sends

    @pytest.mark.asyncio
    async def test_quiet_requeue(self, gate):
        decision = await gate.evaluate(journey(quiet=True), "c1", EMAIL, NIGHT)
        assert decision.decision == SendDecision.QUIET_REQUEUE
        assert decision.requeue_time == datetime(2024, 3, 6, 6, 0, tzinfo=timezone.utc)
        assert not decision.sends

    @pytest.mark.asyncio
    async def test_quiet_abort(self, gate):
        decision = await gate.evaluate(journey(quiet=True, fallback=QuietFallbackBehavior.ABORT), "c1", EMAIL, NIGHT)
        assert decision.decision == SendDecision.QUIET_ABORT

    @pytest.mark.asyncio
    async def test_quiet_hours_checked_before_limits(self, gate, store):
        j = journey(quiet=True, per_minute=1, customers=1)
        await RateLimiter(store).reserve(j, "c0", NIGHT)
        decision = await gate.evaluate(j, "c1", EMAIL, NIGHT)
        assert decision.decision == SendDecision.QUIET_REQUEUE

    @pytest.mark.asyncio
    async def test_customers_cap_holds(self, gate, store):
        j = journey(customers=1, per_minute=1)
        await RateLimiter(store).reserve(j, "c0", NOON)
        decision = await gate.evaluate(j, "c1", EMAIL, NOON)
        assert decision.decision == SendDecision.LIMIT_HOLD
        assert decision.requeue_time is None

    @pytest.mark.asyncio
    async def test_per_minute_cap_requeues_next_minute(self, gate, store):
        j = journey(per_minute=1)
        await RateLimiter(store).reserve(j, "c0", NOON)
        decision = await gate.evaluate(j, "c1", EMAIL, NOON)
        assert decision.decision == SendDecision.LIMIT_REQUEUE
        assert decision.requeue_time == datetime(2024, 3, 5, 12, 1, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_evaluate_never_counts(self, gate, store):
        j = journey(per_minute=1, customers=1)
        for _ in range(3):
            await gate.evaluate(j, "c1", EMAIL, NOON)
        assert store.count("j1", RateLimitKind.PER_MINUTE, NOON) == 0

    @pytest.mark.asyncio
    async def test_mock_mode(self, store):
        gate = SendGate(RateLimiter(store), mock_send=True)
        assert (await gate.evaluate(journey(), "c1", EMAIL, NOON)).decision == SendDecision.MOCK_SEND
        assert (await gate.evaluate(journey(), "c1", HOOK, NOON)).decision == SendDecision.SEND

    @pytest.mark.asyncio
    async def test_mock_mode_still_honours_quiet_hours(self, store):
        gate = SendGate(RateLimiter(store), mock_send=True)
        decision = await gate.evaluate(journey(quiet=True), "c1", EMAIL, NIGHT)
        assert decision.decision == SendDecision.QUIET_REQUEUE


class TestCommit:
    @pytest.mark.asyncio
    async def test_commit_takes_counters(self, gate, store):
        j = journey(per_minute=2, customers=2)
        decision = await gate.commit(await gate.evaluate(j, "c1", EMAIL, NOON), j, "c1", NOON)
        assert decision.decision == SendDecision.SEND
        assert decision.reservation is not None and decision.reservation.granted
        assert store.count("j1", RateLimitKind.PER_MINUTE, NOON) == 1
        assert store.count("j1", RateLimitKind.CUSTOMERS_MESSAGED, NOON) == 1

    @pytest.mark.asyncio
    async def test_race_loser_becomes_limit_decision(self, gate):
        j = journey(per_minute=1)
        first = await gate.evaluate(j, "c1", EMAIL, NOON)
        second = await gate.evaluate(j, "c2", EMAIL, NOON)
        assert first.sends and second.sends
        assert (await gate.commit(first, j, "c1", NOON)).decision == SendDecision.SEND
        lost = await gate.commit(second, j, "c2", NOON)
        assert lost.decision == SendDecision.LIMIT_REQUEUE
        assert lost.requeue_time == next_minute(NOON)

    @pytest.mark.asyncio
    async def test_race_on_customer_cap_holds(self, gate):
        j = journey(customers=1)
        first = await gate.evaluate(j, "c1", EMAIL, NOON)
        second = await gate.evaluate(j, "c2", EMAIL, NOON)
        await gate.commit(first, j, "c1", NOON)
        assert (await gate.commit(second, j, "c2", NOON)).decision == SendDecision.LIMIT_HOLD

    @pytest.mark.asyncio
    async def test_non_sending_decision_passes_through(self, gate, store):
        j = journey(quiet=True, per_minute=1)
        decision = await gate.evaluate(j, "c1", EMAIL, NIGHT)
        assert await gate.commit(decision, j, "c1", NIGHT) is decision
        assert store.count("j1", RateLimitKind.PER_MINUTE, NIGHT) == 0

    @pytest.mark.asyncio
    async def test_release_returns_counters(self, gate, store):
        j = journey(per_minute=1)
        decision = await gate.commit(await gate.evaluate(j, "c1", EMAIL, NOON), j, "c1", NOON)
        await gate.release(decision)
        assert store.count("j1", RateLimitKind.PER_MINUTE, NOON) == 0
        assert (await gate.evaluate(j, "c2", EMAIL, NOON)).decision == SendDecision.SEND
