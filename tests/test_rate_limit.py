"""Tests for the journey rate limiter and its in-memory store."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from journeys.rate_limit import InMemoryRateLimitStore, RateLimiter, create_rate_limit_store, minute_bucket
from models.schemas import Journey, JourneySettings, RateLimitKind, RateLimitSettings

NOW = datetime(2024, 3, 5, 12, 0, 30, tzinfo=timezone.utc)


def limited_journey(per_minute=None, customers=None, window=None) -> Journey:
    settings = JourneySettings()
    if per_minute is not None:
        settings.max_message_sends = RateLimitSettings(enabled=True, max=per_minute)
    if customers is not None:
        settings.max_customers_messaged = RateLimitSettings(enabled=True, max=customers, window_seconds=window)
    return Journey(id="j1", journey_settings=settings)


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_check_does_not_count(self):
        store = InMemoryRateLimitStore()
        for _ in range(3):
            result = await store.check("j1", RateLimitKind.PER_MINUTE, 1, NOW)
            assert result.allowed
        assert store.count("j1", RateLimitKind.PER_MINUTE, NOW) == 0

    @pytest.mark.asyncio
    async def test_per_minute_cap(self):
        store = InMemoryRateLimitStore()
        first = await store.check_and_increment("j1", RateLimitKind.PER_MINUTE, 2, NOW)
        second = await store.check_and_increment("j1", RateLimitKind.PER_MINUTE, 2, NOW)
        third = await store.check_and_increment("j1", RateLimitKind.PER_MINUTE, 2, NOW)
        assert (first.allowed, second.allowed, third.allowed) == (True, True, False)
        assert third.count == 2

    @pytest.mark.asyncio
    async def test_per_minute_resets_next_minute(self):
        store = InMemoryRateLimitStore()
        await store.check_and_increment("j1", RateLimitKind.PER_MINUTE, 1, NOW)
        later = NOW + timedelta(seconds=30)
        assert minute_bucket(later) != minute_bucket(NOW)
        assert (await store.check_and_increment("j1", RateLimitKind.PER_MINUTE, 1, later)).allowed

    @pytest.mark.asyncio
    async def test_journeys_are_independent(self):
        store = InMemoryRateLimitStore()
        await store.check_and_increment("j1", RateLimitKind.PER_MINUTE, 1, NOW)
        assert (await store.check_and_increment("j2", RateLimitKind.PER_MINUTE, 1, NOW)).allowed

    @pytest.mark.asyncio
    async def test_known_customer_not_recounted(self):
        store = InMemoryRateLimitStore()
        kind = RateLimitKind.CUSTOMERS_MESSAGED
        assert (await store.check_and_increment("j1", kind, 1, NOW, customer_id="a")).added
        again = await store.check_and_increment("j1", kind, 1, NOW, customer_id="a")
        assert again.allowed and not again.added
        assert not (await store.check("j1", kind, 1, NOW, customer_id="b")).allowed

    @pytest.mark.asyncio
    async def test_customer_window_slides(self):
        store = InMemoryRateLimitStore()
        kind = RateLimitKind.CUSTOMERS_MESSAGED
        await store.check_and_increment("j1", kind, 1, NOW, customer_id="a", window_seconds=60)
        assert not (await store.check("j1", kind, 1, NOW, customer_id="b", window_seconds=60)).allowed
        later = NOW + timedelta(seconds=61)
        assert (await store.check("j1", kind, 1, later, customer_id="b", window_seconds=60)).allowed

    @pytest.mark.asyncio
    async def test_concurrent_increments_never_exceed_cap(self):
        store = InMemoryRateLimitStore()
        results = await asyncio.gather(*[
            store.check_and_increment("j1", RateLimitKind.PER_MINUTE, 10, NOW) for _ in range(50)
        ])
        assert sum(1 for r in results if r.allowed) == 10
        assert store.count("j1", RateLimitKind.PER_MINUTE, NOW) == 10

    def test_factory_defaults_to_memory(self):
        assert isinstance(create_rate_limit_store(), InMemoryRateLimitStore)
        assert isinstance(create_rate_limit_store({"backend": "memory"}), InMemoryRateLimitStore)


class TestRateLimiter:
    @pytest.mark.asyncio
    async def test_disabled_limits_never_block(self):
        limiter = RateLimiter(InMemoryRateLimitStore())
        journey = limited_journey()
        assert not await limiter.customers_messaged_exceeded(journey, "a", NOW)
        assert not await limiter.per_minute_exceeded(journey, NOW)
        assert (await limiter.reserve(journey, "a", NOW)).granted

    @pytest.mark.asyncio
    async def test_reserve_then_exceeded(self):
        limiter = RateLimiter(InMemoryRateLimitStore())
        journey = limited_journey(per_minute=1, customers=1)
        reservation = await limiter.reserve(journey, "a", NOW)
        assert reservation.granted
        assert reservation.customer_added and reservation.minute_counted
        assert await limiter.per_minute_exceeded(journey, NOW)
        assert await limiter.customers_messaged_exceeded(journey, "b", NOW)
        assert not await limiter.customers_messaged_exceeded(journey, "a", NOW)

    @pytest.mark.asyncio
    async def test_release_hands_counters_back(self):
        store = InMemoryRateLimitStore()
        limiter = RateLimiter(store)
        journey = limited_journey(per_minute=1, customers=1)
        reservation = await limiter.reserve(journey, "a", NOW)
        await limiter.release(reservation)
        assert store.count("j1", RateLimitKind.PER_MINUTE, NOW) == 0
        assert store.count("j1", RateLimitKind.CUSTOMERS_MESSAGED, NOW) == 0
        assert (await limiter.reserve(journey, "b", NOW)).granted

    @pytest.mark.asyncio
    async def test_denied_minute_rolls_back_customer(self):
        store = InMemoryRateLimitStore()
        limiter = RateLimiter(store)
        journey = limited_journey(per_minute=1, customers=5)
        assert (await limiter.reserve(journey, "a", NOW)).granted
        denied = await limiter.reserve(journey, "b", NOW)
        assert denied.denied == RateLimitKind.PER_MINUTE
        assert store.count("j1", RateLimitKind.CUSTOMERS_MESSAGED, NOW) == 1

    @pytest.mark.asyncio
    async def test_concurrent_reservations_respect_customer_cap(self):
        limiter = RateLimiter(InMemoryRateLimitStore())
        journey = limited_journey(customers=3)
        reservations = await asyncio.gather(*[
            limiter.reserve(journey, f"c{i}", NOW) for i in range(20)
        ])
        assert sum(1 for r in reservations if r.granted) == 3
