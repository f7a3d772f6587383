"""
Rate Limiter — per-journey send caps shared by every worker.

Two independent counters per journey:
  per_minute          — messages sent in the current clock minute
  customers_messaged  — distinct customers messaged, optionally within a
                        sliding window

The gate looks first (check) and only commits once it has decided the send
proceeds (check_and_increment). The commit is a single atomic operation in
every backend, so racing workers cannot push a journey past its cap. A
commit that is not followed by a send is handed back with release().

Backends:
  InMemoryRateLimitStore — asyncio.Lock around dicts, single process
  RedisRateLimitStore    — Lua scripts, shared across processes
"""
from __future__ import annotations

import asyncio
import structlog
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional

from models.schemas import Journey, RateLimitKind

logger = structlog.get_logger()


def minute_bucket(now: datetime) -> int:
    return int(now.timestamp()) // 60


@dataclass(frozen=True)
class RateLimitResult:
    allowed: bool
    count: int = 0
    limit: int = 0
    added: bool = False                       # customers_messaged: this call added the customer


# ──────────────────────────────────────────────────────────────
#  Abstract store
# ──────────────────────────────────────────────────────────────

class RateLimitStore(ABC):

    @abstractmethod
    async def check(
        self, journey_id: str, kind: RateLimitKind, limit: int, now: datetime,
        customer_id: str = "", window_seconds: Optional[int] = None,
    ) -> RateLimitResult:
        """Would one more send be allowed? Does not modify counters."""
        ...

    @abstractmethod
    async def check_and_increment(
        self, journey_id: str, kind: RateLimitKind, limit: int, now: datetime,
        customer_id: str = "", window_seconds: Optional[int] = None,
    ) -> RateLimitResult:
        """Atomically count one send if, and only if, it stays within limit."""
        ...

    @abstractmethod
    async def release(
        self, journey_id: str, kind: RateLimitKind, now: datetime, customer_id: str = "",
    ) -> None:
        """Undo a counted send that never happened."""
        ...

    async def close(self) -> None:
        pass


# ──────────────────────────────────────────────────────────────
#  In-memory store
# ──────────────────────────────────────────────────────────────

class InMemoryRateLimitStore(RateLimitStore):

    def __init__(self):
        self._lock = asyncio.Lock()
        self._minutes: dict[tuple[str, int], int] = {}
        self._customers: dict[str, dict[str, float]] = {}   # journey_id → customer_id → ts

    def _prune(self, journey_id: str, now: datetime, window_seconds: Optional[int]) -> dict[str, float]:
        members = self._customers.setdefault(journey_id, {})
        if window_seconds:
            cutoff = now.timestamp() - window_seconds
            for cid in [c for c, ts in members.items() if ts <= cutoff]:
                del members[cid]
        return members

    def _evaluate(self, journey_id, kind, limit, now, customer_id, window_seconds, commit):
        if kind == RateLimitKind.PER_MINUTE:
            key = (journey_id, minute_bucket(now))
            count = self._minutes.get(key, 0)
            if count >= limit:
                return RateLimitResult(False, count, limit)
            if commit:
                count += 1
                self._minutes[key] = count
                # Drop buckets older than the previous minute
                for stale in [k for k in self._minutes if k[0] == journey_id and k[1] < key[1] - 1]:
                    del self._minutes[stale]
            return RateLimitResult(True, count, limit)

        members = self._prune(journey_id, now, window_seconds)
        known = customer_id in members
        count = len(members)
        if not known and count >= limit:
            return RateLimitResult(False, count, limit)
        added = False
        if commit:
            if not known:
                added = True
                count += 1
            members[customer_id] = now.timestamp()
        return RateLimitResult(True, count, limit, added=added)

    async def check(self, journey_id, kind, limit, now, customer_id="", window_seconds=None):
        async with self._lock:
            return self._evaluate(journey_id, kind, limit, now, customer_id, window_seconds, False)

    async def check_and_increment(self, journey_id, kind, limit, now, customer_id="", window_seconds=None):
        async with self._lock:
            return self._evaluate(journey_id, kind, limit, now, customer_id, window_seconds, True)

    async def release(self, journey_id, kind, now, customer_id=""):
        async with self._lock:
            if kind == RateLimitKind.PER_MINUTE:
                key = (journey_id, minute_bucket(now))
                if self._minutes.get(key, 0) > 0:
                    self._minutes[key] -= 1
            else:
                self._customers.get(journey_id, {}).pop(customer_id, None)

    def count(self, journey_id: str, kind: RateLimitKind, now: datetime) -> int:
        if kind == RateLimitKind.PER_MINUTE:
            return self._minutes.get((journey_id, minute_bucket(now)), 0)
        return len(self._customers.get(journey_id, {}))


# ──────────────────────────────────────────────────────────────
#  Redis store
# ──────────────────────────────────────────────────────────────

_PER_MINUTE_SCRIPT = """
local current = tonumber(redis.call('GET', KEYS[1]) or '0')
local limit = tonumber(ARGV[1])
if current >= limit then
  return {0, current}
end
if ARGV[3] == '1' then
  current = redis.call('INCR', KEYS[1])
  redis.call('EXPIRE', KEYS[1], tonumber(ARGV[2]))
end
return {1, current}
"""

_CUSTOMERS_SCRIPT = """
local key = KEYS[1]
local member = ARGV[1]
local limit = tonumber(ARGV[2])
local now = tonumber(ARGV[3])
local window = tonumber(ARGV[4])
if window > 0 then
  redis.call('ZREMRANGEBYSCORE', key, '-inf', now - window)
end
local known = redis.call('ZSCORE', key, member)
local count = redis.call('ZCARD', key)
if (not known) and count >= limit then
  return {0, count, 0}
end
local added = 0
if ARGV[5] == '1' then
  if not known then
    added = 1
    count = count + 1
  end
  redis.call('ZADD', key, now, member)
end
return {1, count, added}
"""


class RedisRateLimitStore(RateLimitStore):
    """
    Counters in Redis, mutated only inside Lua scripts so check and
    increment happen in one server-side step.

    Keys:
      ratelimit:{journey}:minute:{epoch_minute}  — INCR counter, expires after 2 minutes
      ratelimit:{journey}:customers              — sorted set, score = last message ts
    """

    def __init__(self, redis_url: str = "redis://localhost:6379", prefix: str = "ratelimit"):
        self._redis_url = redis_url
        self._prefix = prefix
        self._redis = None
        self._per_minute = None
        self._customers = None

    async def connect(self):
        import redis.asyncio as aioredis
        self._redis = aioredis.from_url(self._redis_url, decode_responses=True)
        await self._redis.ping()
        self._per_minute = self._redis.register_script(_PER_MINUTE_SCRIPT)
        self._customers = self._redis.register_script(_CUSTOMERS_SCRIPT)
        logger.info("redis_rate_limit_connected", url=self._redis_url)

    async def close(self):
        if self._redis:
            await self._redis.close()

    def _minute_key(self, journey_id: str, now: datetime) -> str:
        return f"{self._prefix}:{journey_id}:minute:{minute_bucket(now)}"

    def _customers_key(self, journey_id: str) -> str:
        return f"{self._prefix}:{journey_id}:customers"

    async def _run(self, journey_id, kind, limit, now, customer_id, window_seconds, commit) -> RateLimitResult:
        flag = "1" if commit else "0"
        if kind == RateLimitKind.PER_MINUTE:
            allowed, count = await self._per_minute(
                keys=[self._minute_key(journey_id, now)], args=[limit, 120, flag],
            )
            return RateLimitResult(bool(allowed), int(count), limit)
        allowed, count, added = await self._customers(
            keys=[self._customers_key(journey_id)],
            args=[customer_id, limit, now.timestamp(), window_seconds or 0, flag],
        )
        return RateLimitResult(bool(allowed), int(count), limit, added=bool(added))

    async def check(self, journey_id, kind, limit, now, customer_id="", window_seconds=None):
        return await self._run(journey_id, kind, limit, now, customer_id, window_seconds, False)

    async def check_and_increment(self, journey_id, kind, limit, now, customer_id="", window_seconds=None):
        return await self._run(journey_id, kind, limit, now, customer_id, window_seconds, True)

    async def release(self, journey_id, kind, now, customer_id=""):
        if kind == RateLimitKind.PER_MINUTE:
            await self._redis.decr(self._minute_key(journey_id, now))
        else:
            await self._redis.zrem(self._customers_key(journey_id), customer_id)


# ──────────────────────────────────────────────────────────────
#  Journey-level limiter
# ──────────────────────────────────────────────────────────────

@dataclass
class RateLimitReservation:
    """Counters taken for one send. Hand back with RateLimiter.release()."""
    journey_id: str
    customer_id: str
    at: datetime
    denied: Optional[RateLimitKind] = None
    customer_added: bool = False
    minute_counted: bool = False

    @property
    def granted(self) -> bool:
        return self.denied is None


class RateLimiter:
    """Applies a journey's rate-limit settings against a RateLimitStore."""

    def __init__(self, store: RateLimitStore):
        self.store = store

    async def customers_messaged_exceeded(self, journey: Journey, customer_id: str, now: datetime) -> bool:
        cfg = journey.journey_settings.max_customers_messaged
        if not cfg.enabled:
            return False
        result = await self.store.check(
            journey.id, RateLimitKind.CUSTOMERS_MESSAGED, cfg.max, now,
            customer_id=customer_id, window_seconds=cfg.window_seconds,
        )
        return not result.allowed

    async def per_minute_exceeded(self, journey: Journey, now: datetime) -> bool:
        cfg = journey.journey_settings.max_message_sends
        if not cfg.enabled:
            return False
        result = await self.store.check(journey.id, RateLimitKind.PER_MINUTE, cfg.max, now)
        return not result.allowed

    async def reserve(self, journey: Journey, customer_id: str, now: datetime) -> RateLimitReservation:
        """Commit both counters for one send, in gate order. All or nothing."""
        reservation = RateLimitReservation(journey_id=journey.id, customer_id=customer_id, at=now)
        settings = journey.journey_settings

        if settings.max_customers_messaged.enabled:
            cfg = settings.max_customers_messaged
            result = await self.store.check_and_increment(
                journey.id, RateLimitKind.CUSTOMERS_MESSAGED, cfg.max, now,
                customer_id=customer_id, window_seconds=cfg.window_seconds,
            )
            if not result.allowed:
                reservation.denied = RateLimitKind.CUSTOMERS_MESSAGED
                return reservation
            reservation.customer_added = result.added

        if settings.max_message_sends.enabled:
            result = await self.store.check_and_increment(
                journey.id, RateLimitKind.PER_MINUTE, settings.max_message_sends.max, now,
            )
            if not result.allowed:
                reservation.denied = RateLimitKind.PER_MINUTE
                await self.release(reservation)
                return reservation
            reservation.minute_counted = True

        return reservation

    async def release(self, reservation: RateLimitReservation) -> None:
        if reservation.customer_added:
            await self.store.release(
                reservation.journey_id, RateLimitKind.CUSTOMERS_MESSAGED,
                reservation.at, customer_id=reservation.customer_id,
            )
            reservation.customer_added = False
        if reservation.minute_counted:
            await self.store.release(reservation.journey_id, RateLimitKind.PER_MINUTE, reservation.at)
            reservation.minute_counted = False
        logger.debug("rate_limit_reservation_released",
                     journey_id=reservation.journey_id,
                     customer_id=reservation.customer_id)


def create_rate_limit_store(config: dict[str, Any] = None) -> RateLimitStore:
    """Factory: memory (default) or redis."""
    config = config or {}
    backend = config.get("backend", "memory")
    if backend == "redis":
        return RedisRateLimitStore(redis_url=config.get("redis_url", "redis://localhost:6379"))
    return InMemoryRateLimitStore()
