"""
Journey Location Tracker — where each customer currently is, and who is
allowed to move them.

Every (customer, journey) pair has one JourneyLocation row carrying a lock.
A worker may only advance a customer while holding that lock, and the lock
is identified by a token so it can be handed from one job to the next
without ever being free in between:

    admit()          → location created locked, token travels in the Start job
    advancement()    → claim the job's token (swapped for a fresh one), or take a fresh lock
      .hand_off()    → move to the next step, keep the lock (token stays in the next job)
      .park()        → move to a resting step and unlock
      .release()     → unlock where we are
      .finalize()    → customer left the journey
      .revert()      → undo a hand-off whose next job was never queued

advancement() is the only way handlers touch the lock: whatever path the
body takes, including exceptions, a lock that was not handed off is
released on exit.
"""
from __future__ import annotations

import asyncio
import uuid
import structlog
from abc import ABC, abstractmethod
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from typing import AsyncIterator, Callable, Optional

from models.schemas import JourneyLocation

logger = structlog.get_logger()


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_lock_token() -> str:
    return uuid.uuid4().hex


# ──────────────────────────────────────────────────────────────
#  Abstract store
# ──────────────────────────────────────────────────────────────

class LocationStore(ABC):
    """Persistence for journey locations. All mutations are conditional."""

    @abstractmethod
    async def create(self, location: JourneyLocation) -> bool:
        """Insert a location. False if the customer is already active in the journey."""
        ...

    @abstractmethod
    async def get(self, customer_id: str, journey_id: str) -> Optional[JourneyLocation]:
        ...

    @abstractmethod
    async def try_lock(
        self, customer_id: str, journey_id: str, token: str,
        now: datetime, stale_before: Optional[datetime] = None,
    ) -> bool:
        """Lock if unlocked (or locked before stale_before). Finalized rows never lock."""
        ...

    @abstractmethod
    async def unlock(
        self, customer_id: str, journey_id: str, token: Optional[str],
        step_id: Optional[str] = None, now: Optional[datetime] = None,
    ) -> bool:
        """Release a lock held with token (None forces). Optionally move to step_id."""
        ...

    @abstractmethod
    async def move(
        self, customer_id: str, journey_id: str, token: str, step_id: str, now: datetime,
    ) -> bool:
        """Move to step_id while keeping the lock held with token."""
        ...

    @abstractmethod
    async def claim(
        self, customer_id: str, journey_id: str, token: str, new_token: str, now: datetime,
    ) -> bool:
        """Swap a held lock's token for new_token. Only one caller holding token can win."""
        ...

    @abstractmethod
    async def restore(
        self, customer_id: str, journey_id: str, token: str, snapshot: JourneyLocation,
    ) -> bool:
        """Put the row back at snapshot's step (entry time, sent flag) and release the lock."""
        ...

    @abstractmethod
    async def set_message_sent(
        self, customer_id: str, journey_id: str, token: str, sent: bool = True,
    ) -> bool:
        """Flag the current step as sent, only while the lock is held with token."""
        ...

    @abstractmethod
    async def finalize(self, customer_id: str, journey_id: str, now: datetime) -> None:
        ...

    @abstractmethod
    async def stale_locks(self, locked_before: datetime) -> list[JourneyLocation]:
        ...


# ──────────────────────────────────────────────────────────────
#  In-memory store
# ──────────────────────────────────────────────────────────────

class InMemoryLocationStore(LocationStore):
    """Dict-backed store for development and tests. Single event loop only."""

    def __init__(self):
        self._rows: dict[tuple[str, str], JourneyLocation] = {}
        self._lock = asyncio.Lock()

    async def create(self, location: JourneyLocation) -> bool:
        async with self._lock:
            existing = self._rows.get(location.key)
            if existing and not existing.is_finalized:
                return False
            self._rows[location.key] = location.model_copy(deep=True)
            return True

    async def get(self, customer_id: str, journey_id: str) -> Optional[JourneyLocation]:
        row = self._rows.get((customer_id, journey_id))
        return row.model_copy(deep=True) if row else None

    async def try_lock(self, customer_id, journey_id, token, now, stale_before=None) -> bool:
        async with self._lock:
            row = self._rows.get((customer_id, journey_id))
            if row is None or row.is_finalized:
                return False
            if row.locked:
                expired = (
                    stale_before is not None
                    and row.locked_at is not None
                    and row.locked_at < stale_before
                )
                if not expired:
                    return False
                logger.warning("location_lock_expired",
                               customer_id=customer_id,
                               journey_id=journey_id,
                               locked_at=row.locked_at.isoformat())
            row.locked = True
            row.lock_token = token
            row.locked_at = now
            return True

    async def unlock(self, customer_id, journey_id, token, step_id=None, now=None) -> bool:
        async with self._lock:
            row = self._rows.get((customer_id, journey_id))
            if row is None or not row.locked:
                return False
            if token is not None and row.lock_token != token:
                return False
            if step_id and step_id != row.current_step_id:
                row.current_step_id = step_id
                row.step_entered_at = now or _utcnow()
                row.message_sent = False
            row.locked = False
            row.lock_token = None
            row.locked_at = None
            return True

    async def move(self, customer_id, journey_id, token, step_id, now) -> bool:
        async with self._lock:
            row = self._rows.get((customer_id, journey_id))
            if row is None or not row.locked or row.lock_token != token:
                return False
            row.current_step_id = step_id
            row.step_entered_at = now
            row.message_sent = False
            row.locked_at = now
            return True

    async def claim(self, customer_id, journey_id, token, new_token, now) -> bool:
        async with self._lock:
            row = self._rows.get((customer_id, journey_id))
            if row is None or row.is_finalized or not row.locked or row.lock_token != token:
                return False
            row.lock_token = new_token
            row.locked_at = now
            return True

    async def restore(self, customer_id, journey_id, token, snapshot) -> bool:
        async with self._lock:
            row = self._rows.get((customer_id, journey_id))
            if row is None or not row.locked or row.lock_token != token:
                return False
            row.current_step_id = snapshot.current_step_id
            row.step_entered_at = snapshot.step_entered_at
            row.message_sent = snapshot.message_sent
            row.locked = False
            row.lock_token = None
            row.locked_at = None
            return True

    async def set_message_sent(self, customer_id, journey_id, token, sent=True) -> bool:
        async with self._lock:
            row = self._rows.get((customer_id, journey_id))
            if row is None or not row.locked or row.lock_token != token:
                return False
            row.message_sent = sent
            return True

    async def finalize(self, customer_id, journey_id, now) -> None:
        async with self._lock:
            row = self._rows.get((customer_id, journey_id))
            if row:
                row.finalized_at = now
                row.locked = False
                row.lock_token = None
                row.locked_at = None

    async def stale_locks(self, locked_before: datetime) -> list[JourneyLocation]:
        return [
            row.model_copy(deep=True) for row in self._rows.values()
            if row.locked and row.locked_at is not None and row.locked_at < locked_before
        ]


# ──────────────────────────────────────────────────────────────
#  Advancement — one scoped hold of a location lock
# ──────────────────────────────────────────────────────────────

class Advancement:
    """A held lock for one advancement attempt. Settled exactly once."""

    def __init__(self, tracker: JourneyLocationTracker, location: JourneyLocation, token: str):
        self._tracker = tracker
        self.location = location
        self.token = token
        self.outcome: Optional[str] = None      # handed_off | parked | released | finalized | reverted
        self._before: Optional[JourneyLocation] = None

    @property
    def settled(self) -> bool:
        return self.outcome is not None

    @property
    def store(self) -> LocationStore:
        return self._tracker.store

    def _settle(self, outcome: str):
        if self.settled:
            raise RuntimeError(f"Advancement already settled ({self.outcome})")
        self.outcome = outcome

    async def mark_message_sent(self):
        if not await self.store.set_message_sent(
            self.location.customer_id, self.location.journey_id, self.token, True,
        ):
            logger.warning("location_message_sent_lost_lock",
                           customer_id=self.location.customer_id,
                           journey_id=self.location.journey_id,
                           step_id=self.location.current_step_id)
        self.location.message_sent = True

    async def hand_off(self, step_id: str) -> JourneyLocation:
        """Move to step_id with the lock still held; the caller enqueues the next job."""
        self._settle("handed_off")
        now = self._tracker.clock()
        moved = await self.store.move(
            self.location.customer_id, self.location.journey_id, self.token, step_id, now,
        )
        if not moved:
            logger.warning("location_hand_off_lost_lock",
                           customer_id=self.location.customer_id,
                           journey_id=self.location.journey_id,
                           step_id=step_id)
        self._before = self.location
        self.location = self.location.model_copy(update={
            "current_step_id": step_id, "step_entered_at": now,
            "message_sent": False, "locked_at": now,
        })
        return self.location

    async def park(self, step_id: str) -> JourneyLocation:
        """Move to a resting step and release the lock."""
        self._settle("parked")
        now = self._tracker.clock()
        await self.store.unlock(
            self.location.customer_id, self.location.journey_id, self.token, step_id=step_id, now=now,
        )
        changed = step_id != self.location.current_step_id
        self.location = self.location.model_copy(update={
            "current_step_id": step_id,
            "step_entered_at": now if changed else self.location.step_entered_at,
            "message_sent": False if changed else self.location.message_sent,
            "locked": False, "lock_token": None, "locked_at": None,
        })
        return self.location

    async def revert(self):
        """Undo a hand-off whose next job never made it onto a queue, and unlock."""
        if self.outcome != "handed_off" or self._before is None:
            raise RuntimeError(f"Nothing to revert ({self.outcome})")
        self.outcome = "reverted"
        await self.store.restore(
            self.location.customer_id, self.location.journey_id, self.token, self._before,
        )
        logger.warning("location_hand_off_reverted",
                       customer_id=self.location.customer_id,
                       journey_id=self.location.journey_id,
                       step_id=self._before.current_step_id,
                       abandoned_step_id=self.location.current_step_id)
        self.location = self._before.model_copy(update={
            "locked": False, "lock_token": None, "locked_at": None,
        })

    async def release(self):
        self._settle("released")
        await self.store.unlock(self.location.customer_id, self.location.journey_id, self.token)

    async def finalize(self):
        self._settle("finalized")
        await self.store.finalize(
            self.location.customer_id, self.location.journey_id, self._tracker.clock(),
        )


# ──────────────────────────────────────────────────────────────
#  Tracker
# ──────────────────────────────────────────────────────────────

class JourneyLocationTracker:

    def __init__(
        self,
        store: LocationStore,
        max_hold_seconds: float = 600.0,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.store = store
        self.max_hold = timedelta(seconds=max_hold_seconds)
        self.clock = clock

    async def admit(
        self, customer_id: str, journey_id: str, step_id: str, owner_id: str = "",
    ) -> Optional[JourneyLocation]:
        """Create a location already locked for the admission's first hop."""
        now = self.clock()
        location = JourneyLocation(
            customer_id=customer_id,
            journey_id=journey_id,
            owner_id=owner_id,
            current_step_id=step_id,
            step_entered_at=now,
            locked=True,
            lock_token=new_lock_token(),
            locked_at=now,
        )
        if not await self.store.create(location):
            logger.info("customer_already_in_journey",
                        customer_id=customer_id, journey_id=journey_id)
            return None
        return location

    async def _acquire(
        self, customer_id: str, journey_id: str, step_id: str, job_token: Optional[str],
    ) -> Optional[Advancement]:
        location = await self.store.get(customer_id, journey_id)
        if location is None or location.is_finalized:
            logger.info("location_inactive_job_dropped",
                        customer_id=customer_id, journey_id=journey_id, step_id=step_id)
            return None
        if location.current_step_id != step_id:
            logger.info("stale_job_dropped",
                        customer_id=customer_id,
                        journey_id=journey_id,
                        job_step_id=step_id,
                        current_step_id=location.current_step_id)
            return None

        token = new_lock_token()
        now = self.clock()
        if location.locked and job_token and location.lock_token == job_token:
            # Copies of one job share a token; only the first claim proceeds
            if not await self.store.claim(customer_id, journey_id, job_token, token, now):
                logger.info("duplicate_delivery_dropped",
                            customer_id=customer_id, journey_id=journey_id, step_id=step_id)
                return None
            location = await self.store.get(customer_id, journey_id)
            return Advancement(self, location, token)

        if not await self.store.try_lock(
            customer_id, journey_id, token, now, stale_before=now - self.max_hold,
        ):
            logger.info("advancement_in_progress",
                        customer_id=customer_id, journey_id=journey_id, step_id=step_id)
            return None
        location = await self.store.get(customer_id, journey_id)
        return Advancement(self, location, token)

    @asynccontextmanager
    async def advancement(
        self, customer_id: str, journey_id: str, step_id: str, job_token: Optional[str] = None,
    ) -> AsyncIterator[Optional[Advancement]]:
        """Hold the location lock for one advancement. Yields None if it cannot be held."""
        adv = await self._acquire(customer_id, journey_id, step_id, job_token)
        if adv is None:
            yield None
            return
        try:
            yield adv
        finally:
            if not adv.settled:
                await adv.release()

    async def force_release_stale(self) -> int:
        """Unlock every location held longer than max_hold. Returns how many."""
        cutoff = self.clock() - self.max_hold
        released = 0
        for location in await self.store.stale_locks(cutoff):
            if await self.store.unlock(location.customer_id, location.journey_id, None):
                released += 1
                logger.warning("location_lock_force_released",
                               customer_id=location.customer_id,
                               journey_id=location.journey_id,
                               step_id=location.current_step_id,
                               locked_at=location.locked_at.isoformat() if location.locked_at else None)
        return released


class LockReaper:
    """Background task that periodically force-releases leaked locks."""

    def __init__(self, tracker: JourneyLocationTracker, interval_seconds: float = 60.0):
        self.tracker = tracker
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
        logger.info("lock_reaper_started", interval=self.interval)
        while True:
            try:
                await self.tracker.force_release_stale()
            except asyncio.CancelledError:
                break
            except Exception as e:
                logger.error("lock_reaper_error", error=str(e))
            await asyncio.sleep(self.interval)
