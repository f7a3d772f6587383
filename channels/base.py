"""
Channel Adapters — base infrastructure shared by every delivery channel.

Provides:
- ChannelError: structured error hierarchy (retryable vs. definitive)
- CircuitBreaker: failure-counting breaker with half-open probe
- ChannelMetrics: per-channel send/fail/latency tracking
- FreeEmailQuota: the free-tier email allowance of an account
- ChannelAdapter: abstract base wrapping every send with breaker and metrics
- MessageSender: channel lookup and the single send() entry point
"""
from __future__ import annotations

import abc
import asyncio
import time
import uuid
import structlog
from typing import Any, Optional

from journeys.errors import QuotaExceededError
from models.schemas import Account, DeliveryResult, TemplateType

logger = structlog.get_logger()

FREE_TIER_PROVIDER = "free3"


# ══════════════════════════════════════════════════════════════
#  ERRORS
# ══════════════════════════════════════════════════════════════

class ChannelError(Exception):
    """Base exception for all channel operations."""

    def __init__(self, message: str, channel: str = "", retryable: bool = False):
        self.channel = channel
        self.retryable = retryable
        super().__init__(message)


class CircuitOpenError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"Circuit breaker open for {channel}", channel, retryable=True)


class ChannelNotConfiguredError(ChannelError):
    def __init__(self, channel: str = ""):
        super().__init__(f"No adapter registered for {channel}", channel, retryable=False)


# ══════════════════════════════════════════════════════════════
#  CIRCUIT BREAKER
# ══════════════════════════════════════════════════════════════

class CircuitBreaker:
    """
    Failure-counting circuit breaker.

    closed → open (after threshold failures) → half_open (after timeout) →
    closed (on success) or open (on failure).
    """

    def __init__(self, failure_threshold: int = 5, recovery_timeout: float = 60.0):
        self.failure_threshold = failure_threshold
        self.recovery_timeout = recovery_timeout
        self._state = "closed"
        self._failure_count = 0
        self._opened_at: float = 0.0
        self._total_failures = 0
        self._total_successes = 0

    @property
    def state(self) -> str:
        if self._state == "open":
            if time.monotonic() - self._opened_at >= self.recovery_timeout:
                return "half_open"
        return self._state

    @property
    def is_open(self) -> bool:
        return self.state == "open"

    def record_failure(self):
        self._total_failures += 1
        self._failure_count += 1
        if self.state == "half_open" or self._failure_count >= self.failure_threshold:
            self._open()

    def record_success(self):
        self._total_successes += 1
        if self.state == "half_open":
            self._close()
        else:
            self._failure_count = 0

    def _open(self):
        self._state = "open"
        self._opened_at = time.monotonic()
        logger.warning("circuit_opened", failures=self._failure_count)

    def _close(self):
        self._state = "closed"
        self._failure_count = 0

    def reset(self):
        self._close()

    @property
    def stats(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "failure_count": self._failure_count,
            "total_failures": self._total_failures,
            "total_successes": self._total_successes,
        }


# ══════════════════════════════════════════════════════════════
#  CHANNEL METRICS
# ══════════════════════════════════════════════════════════════

class ChannelMetrics:
    """Tracks per-channel send, failure and latency metrics."""

    def __init__(self, channel: str):
        self.channel = channel
        self.messages_sent: int = 0
        self.messages_failed: int = 0
        self._latencies: list[float] = []
        self._errors: list[str] = []

    def record_send(self, latency_ms: float = 0.0):
        self.messages_sent += 1
        if latency_ms > 0:
            self._latencies.append(latency_ms)

    def record_failure(self, error: str = ""):
        self.messages_failed += 1
        if error:
            self._errors.append(error)

    @property
    def avg_latency_ms(self) -> float:
        return sum(self._latencies) / len(self._latencies) if self._latencies else 0.0

    @property
    def failure_rate(self) -> float:
        total = self.messages_sent + self.messages_failed
        return self.messages_failed / total if total > 0 else 0.0

    def to_dict(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "sent": self.messages_sent,
            "failed": self.messages_failed,
            "avg_latency_ms": round(self.avg_latency_ms, 1),
            "failure_rate": round(self.failure_rate, 4),
            "recent_errors": self._errors[-10:],
        }


# ══════════════════════════════════════════════════════════════
#  FREE-TIER QUOTA
# ══════════════════════════════════════════════════════════════

class FreeEmailQuota:
    """
    Remaining free emails per account, seeded from the account snapshot the
    first time the account is seen. Accounts on a paid provider are unlimited.
    """

    def __init__(self):
        self._remaining: dict[str, int] = {}
        self._lock = asyncio.Lock()

    async def consume(self, account: Account) -> None:
        if account.email_provider != FREE_TIER_PROVIDER or account.free_emails_remaining is None:
            return
        async with self._lock:
            remaining = self._remaining.setdefault(account.id, account.free_emails_remaining)
            if remaining <= 0:
                raise QuotaExceededError("Free email allowance exhausted", account_id=account.id)
            self._remaining[account.id] = remaining - 1

    async def refund(self, account: Account) -> None:
        if account.id in self._remaining:
            async with self._lock:
                self._remaining[account.id] += 1

    def remaining(self, account_id: str) -> Optional[int]:
        return self._remaining.get(account_id)


# ══════════════════════════════════════════════════════════════
#  CHANNEL ADAPTER — Abstract Base
# ══════════════════════════════════════════════════════════════

class ChannelAdapter(abc.ABC):
    """
    Base class for all channel adapters.

    Subclasses implement _do_send. The base class wraps every send with the
    circuit breaker and metrics and normalizes the outcome to a DeliveryResult.
    Exceptions from the provider become retryable ChannelErrors so the job
    goes back through the queue's retry policy.
    """

    channel: str

    def __init__(self):
        self._initialized = False
        self._config: dict[str, Any] = {}
        self._breaker = CircuitBreaker()
        self._metrics = ChannelMetrics(self.channel)

    # ── Abstract hooks ────────────────────────────────────────

    @abc.abstractmethod
    async def _do_send(self, destination: str, content: dict[str, Any], metadata: dict[str, Any]) -> dict[str, Any]:
        ...

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._initialized = True

    # ── Public send ───────────────────────────────────────────

    async def send(self, destination: str, content: dict[str, Any], metadata: dict[str, Any] = None) -> DeliveryResult:
        metadata = metadata or {}
        message_id = metadata.get("message_id") or uuid.uuid4().hex

        if self._breaker.is_open:
            self._metrics.record_failure("circuit_open")
            raise CircuitOpenError(self.channel)

        start = time.monotonic()
        try:
            result = await self._do_send(destination, content, metadata)
        except ChannelError as e:
            self._breaker.record_failure()
            self._metrics.record_failure(str(e))
            raise
        except Exception as e:
            self._breaker.record_failure()
            self._metrics.record_failure(str(e))
            raise ChannelError(str(e), self.channel, retryable=True) from e

        latency = (time.monotonic() - start) * 1000
        status = result.get("status", "sent")
        if status == "failed":
            # Definitive rejection by the provider (bad address, opted out)
            self._metrics.record_failure(result.get("error", ""))
        else:
            self._breaker.record_success()
            self._metrics.record_send(latency)

        return DeliveryResult(
            status=status,
            channel=self.channel,
            provider=result.get("provider", ""),
            message_id=result.get("channel_message_id", message_id),
            destination=destination,
            error=result.get("error", ""),
            metadata={k: v for k, v in result.items()
                      if k not in ("status", "provider", "channel_message_id", "error")},
        )

    # ── Health ────────────────────────────────────────────────

    async def health_check(self) -> dict[str, Any]:
        return {
            "channel": self.channel,
            "initialized": self._initialized,
            "circuit_breaker": self._breaker.stats,
            "metrics": self._metrics.to_dict(),
        }

    async def shutdown(self) -> None:
        pass


# ══════════════════════════════════════════════════════════════
#  MESSAGE SENDER
# ══════════════════════════════════════════════════════════════

class MessageSender:
    """
    Looks up the adapter for a channel and sends through it.

    Channels are template types plus the two push platforms ("ios",
    "android"). Email sends from a free-tier account draw from its
    FreeEmailQuota first.
    """

    def __init__(self, quota: FreeEmailQuota = None):
        self._adapters: dict[str, ChannelAdapter] = {}
        self.quota = quota or FreeEmailQuota()

    def register(self, adapter: ChannelAdapter):
        self._adapters[adapter.channel] = adapter

    def get(self, channel: str) -> Optional[ChannelAdapter]:
        return self._adapters.get(channel)

    def get_available(self) -> list[str]:
        return list(self._adapters.keys())

    async def send(
        self,
        channel: str,
        rendered_content: dict[str, Any],
        destination: str,
        *,
        account: Optional[Account] = None,
        metadata: dict[str, Any] = None,
    ) -> DeliveryResult:
        adapter = self._adapters.get(channel)
        if adapter is None:
            raise ChannelNotConfiguredError(channel)

        charged = False
        if channel == TemplateType.EMAIL.value and account is not None:
            await self.quota.consume(account)
            charged = True

        try:
            result = await adapter.send(destination, rendered_content, metadata)
        except ChannelError:
            if charged:
                await self.quota.refund(account)
            raise

        logger.info("message_delivered",
                    channel=channel,
                    status=result.status,
                    message_id=result.message_id)
        return result

    async def health_check_all(self) -> dict[str, Any]:
        return {ch: await a.health_check() for ch, a in self._adapters.items()}

    async def initialize_all(self, configs: dict[str, Any]):
        for ch, adapter in self._adapters.items():
            try:
                await adapter.initialize(configs.get(ch, {}))
            except Exception as e:
                logger.error("channel_init_failed", channel=ch, error=str(e))

    async def shutdown_all(self):
        for ch, adapter in self._adapters.items():
            try:
                await adapter.shutdown()
            except Exception as e:
                logger.warning("channel_shutdown_failed", channel=ch, error=str(e))
