"""Tests for journey locations, the advancement lock and both location stores."""
import asyncio
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from journeys.locations import InMemoryLocationStore, JourneyLocationTracker, LockReaper
from models.schemas import JourneyLocation

T0 = datetime(2024, 3, 5, 12, 0, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now):
        self.now = now

    def __call__(self):
        return self.now


@pytest.fixture
def clock():
    return Clock(T0)


@pytest.fixture
def tracker(clock):
    return JourneyLocationTracker(InMemoryLocationStore(), max_hold_seconds=600, clock=clock)


class TestAdmission:
    @pytest.mark.asyncio
    async def test_admit_creates_locked_location(self, tracker):
        location = await tracker.admit("c1", "j1", "start", owner_id="acct-1")
        assert location.locked and location.lock_token
        stored = await tracker.store.get("c1", "j1")
        assert stored.current_step_id == "start"
        assert stored.lock_token == location.lock_token
        assert stored.step_entered_at == T0

    @pytest.mark.asyncio
    async def test_second_admission_refused(self, tracker):
        assert await tracker.admit("c1", "j1", "start") is not None
        assert await tracker.admit("c1", "j1", "start") is None

    @pytest.mark.asyncio
    async def test_readmission_after_finalize(self, tracker):
        await tracker.admit("c1", "j1", "start")
        await tracker.store.finalize("c1", "j1", T0)
        assert await tracker.admit("c1", "j1", "start") is not None


class TestAdvancement:
    @pytest.mark.asyncio
    async def test_claims_lock_from_job_token(self, tracker):
        location = await tracker.admit("c1", "j1", "start")
        async with tracker.advancement("c1", "j1", "start", location.lock_token) as adv:
            assert adv is not None
            assert adv.token != location.lock_token
            stored = await tracker.store.get("c1", "j1")
            assert stored.locked and stored.lock_token == adv.token
            assert adv.location.lock_token == adv.token

    @pytest.mark.asyncio
    async def test_second_copy_of_a_job_is_refused(self, tracker):
        location = await tracker.admit("c1", "j1", "start")
        async with tracker.advancement("c1", "j1", "start", location.lock_token) as first:
            async with tracker.advancement("c1", "j1", "start", location.lock_token) as second:
                assert first is not None
                assert second is None
            assert (await tracker.store.get("c1", "j1")).lock_token == first.token

    @pytest.mark.asyncio
    async def test_concurrent_copies_only_one_proceeds(self, tracker):
        location = await tracker.admit("c1", "j1", "start")
        entered = []

        async def run_copy(name):
            async with tracker.advancement("c1", "j1", "start", location.lock_token) as adv:
                if adv is not None:
                    entered.append(name)
                    await asyncio.sleep(0.01)
                    await adv.hand_off("msg")

        await asyncio.gather(run_copy("a"), run_copy("b"))
        assert len(entered) == 1
        assert (await tracker.store.get("c1", "j1")).current_step_id == "msg"

    @pytest.mark.asyncio
    async def test_foreign_holder_blocks(self, tracker):
        await tracker.admit("c1", "j1", "start")
        async with tracker.advancement("c1", "j1", "start", "someone-else") as adv:
            assert adv is None
        assert (await tracker.store.get("c1", "j1")).locked

    @pytest.mark.asyncio
    async def test_stale_job_dropped(self, tracker):
        location = await tracker.admit("c1", "j1", "start")
        async with tracker.advancement("c1", "j1", "msg", location.lock_token) as adv:
            assert adv is None

    @pytest.mark.asyncio
    async def test_unsettled_advancement_releases(self, tracker):
        location = await tracker.admit("c1", "j1", "start")
        async with tracker.advancement("c1", "j1", "start", location.lock_token) as adv:
            assert adv is not None
        stored = await tracker.store.get("c1", "j1")
        assert not stored.locked and stored.lock_token is None

    @pytest.mark.asyncio
    async def test_exception_releases(self, tracker):
        location = await tracker.admit("c1", "j1", "start")
        with pytest.raises(RuntimeError):
            async with tracker.advancement("c1", "j1", "start", location.lock_token):
                raise RuntimeError("boom")
        assert not (await tracker.store.get("c1", "j1")).locked

    @pytest.mark.asyncio
    async def test_hand_off_keeps_lock(self, tracker, clock):
        location = await tracker.admit("c1", "j1", "start")
        clock.now = T0 + timedelta(seconds=5)
        async with tracker.advancement("c1", "j1", "start", location.lock_token) as adv:
            moved = await adv.hand_off("msg")
        stored = await tracker.store.get("c1", "j1")
        assert stored.current_step_id == "msg"
        assert stored.locked and stored.lock_token == adv.token
        assert stored.step_entered_at == clock.now
        assert moved.lock_token == adv.token

    @pytest.mark.asyncio
    async def test_park_moves_and_unlocks(self, tracker):
        location = await tracker.admit("c1", "j1", "start")
        async with tracker.advancement("c1", "j1", "start", location.lock_token) as adv:
            parked = await adv.park("delay")
        stored = await tracker.store.get("c1", "j1")
        assert stored.current_step_id == "delay" and not stored.locked
        assert parked.lock_token is None

    @pytest.mark.asyncio
    async def test_message_sent_cleared_on_move(self, tracker):
        location = await tracker.admit("c1", "j1", "msg")
        async with tracker.advancement("c1", "j1", "msg", location.lock_token) as adv:
            await adv.mark_message_sent()
            assert (await tracker.store.get("c1", "j1")).message_sent
            await adv.hand_off("next")
        assert not (await tracker.store.get("c1", "j1")).message_sent

    @pytest.mark.asyncio
    async def test_settle_twice_is_an_error(self, tracker):
        location = await tracker.admit("c1", "j1", "start")
        async with tracker.advancement("c1", "j1", "start", location.lock_token) as adv:
            await adv.release()
            with pytest.raises(RuntimeError):
                await adv.release()

    @pytest.mark.asyncio
    async def test_revert_restores_step_and_unlocks(self, tracker, clock):
        location = await tracker.admit("c1", "j1", "msg")
        clock.now = T0 + timedelta(seconds=5)
        async with tracker.advancement("c1", "j1", "msg", location.lock_token) as adv:
            await adv.mark_message_sent()
            await adv.hand_off("next")
            await adv.revert()
        stored = await tracker.store.get("c1", "j1")
        assert stored.current_step_id == "msg"
        assert stored.step_entered_at == T0
        assert stored.message_sent
        assert not stored.locked and stored.lock_token is None

    @pytest.mark.asyncio
    async def test_revert_needs_a_hand_off(self, tracker):
        location = await tracker.admit("c1", "j1", "start")
        async with tracker.advancement("c1", "j1", "start", location.lock_token) as adv:
            with pytest.raises(RuntimeError):
                await adv.revert()

    @pytest.mark.asyncio
    async def test_message_sent_requires_lock_token(self, tracker):
        location = await tracker.admit("c1", "j1", "msg")
        assert not await tracker.store.set_message_sent("c1", "j1", "someone-else")
        assert not (await tracker.store.get("c1", "j1")).message_sent
        assert await tracker.store.set_message_sent("c1", "j1", location.lock_token)
        assert (await tracker.store.get("c1", "j1")).message_sent

    @pytest.mark.asyncio
    async def test_finalized_location_drops_jobs(self, tracker):
        location = await tracker.admit("c1", "j1", "exit")
        async with tracker.advancement("c1", "j1", "exit", location.lock_token) as adv:
            await adv.finalize()
        async with tracker.advancement("c1", "j1", "exit") as adv:
            assert adv is None

    @pytest.mark.asyncio
    async def test_fresh_lock_when_unlocked(self, tracker):
        location = await tracker.admit("c1", "j1", "delay")
        await tracker.store.unlock("c1", "j1", location.lock_token)
        async with tracker.advancement("c1", "j1", "delay", None) as adv:
            assert adv is not None
            assert adv.token != location.lock_token


class TestLockExpiry:
    @pytest.mark.asyncio
    async def test_expired_lock_is_taken_over(self, tracker, clock):
        await tracker.admit("c1", "j1", "start")
        clock.now = T0 + timedelta(seconds=601)
        async with tracker.advancement("c1", "j1", "start", None) as adv:
            assert adv is not None

    @pytest.mark.asyncio
    async def test_force_release_stale(self, tracker, clock):
        await tracker.admit("c1", "j1", "start")
        await tracker.admit("c2", "j1", "start")
        clock.now = T0 + timedelta(seconds=300)
        assert await tracker.force_release_stale() == 0
        clock.now = T0 + timedelta(seconds=601)
        assert await tracker.force_release_stale() == 2
        assert not (await tracker.store.get("c1", "j1")).locked

    @pytest.mark.asyncio
    async def test_reaper_stops_cleanly(self, tracker):
        reaper = LockReaper(tracker, interval_seconds=0.01)
        await reaper.start_background()
        await reaper.stop()
        assert reaper._task.done()


# ──────────────────────────────────────────────────────────────
#  SQL store (SQLite via aiosqlite)
# ──────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def sql_store(tmp_path):
    from database import SqlLocationStore, close_db, create_session_factory, init_db
    factory = create_session_factory(f"sqlite:///{tmp_path}/locations.db")
    await init_db(factory)
    yield SqlLocationStore(factory)
    await close_db(factory)


def _location(**overrides) -> JourneyLocation:
    values = dict(customer_id="c1", journey_id="j1", current_step_id="start",
                  step_entered_at=T0, locked=True, lock_token="tok-1", locked_at=T0)
    values.update(overrides)
    return JourneyLocation(**values)


class TestSqlLocationStore:
    @pytest.mark.asyncio
    async def test_create_and_get(self, sql_store):
        assert await sql_store.create(_location())
        stored = await sql_store.get("c1", "j1")
        assert stored.current_step_id == "start"
        assert stored.locked and stored.lock_token == "tok-1"
        assert stored.step_entered_at == T0

    @pytest.mark.asyncio
    async def test_duplicate_create_refused(self, sql_store):
        assert await sql_store.create(_location())
        assert not await sql_store.create(_location(lock_token="tok-2"))

    @pytest.mark.asyncio
    async def test_try_lock_is_exclusive(self, sql_store):
        await sql_store.create(_location(locked=False, lock_token=None, locked_at=None))
        assert await sql_store.try_lock("c1", "j1", "a", T0)
        assert not await sql_store.try_lock("c1", "j1", "b", T0)
        stale_before = T0 + timedelta(seconds=1)
        assert await sql_store.try_lock("c1", "j1", "b", T0 + timedelta(seconds=2), stale_before=stale_before)
        assert (await sql_store.get("c1", "j1")).lock_token == "b"

    @pytest.mark.asyncio
    async def test_unlock_requires_token(self, sql_store):
        await sql_store.create(_location())
        assert not await sql_store.unlock("c1", "j1", "wrong")
        assert await sql_store.unlock("c1", "j1", "tok-1", step_id="delay", now=T0 + timedelta(minutes=1))
        stored = await sql_store.get("c1", "j1")
        assert not stored.locked
        assert stored.current_step_id == "delay"
        assert stored.step_entered_at == T0 + timedelta(minutes=1)

    @pytest.mark.asyncio
    async def test_move_keeps_lock(self, sql_store):
        await sql_store.create(_location(message_sent=True))
        later = T0 + timedelta(seconds=3)
        assert await sql_store.move("c1", "j1", "tok-1", "msg", later)
        assert not await sql_store.move("c1", "j1", "other", "exit", later)
        stored = await sql_store.get("c1", "j1")
        assert stored.current_step_id == "msg"
        assert stored.locked and not stored.message_sent

    @pytest.mark.asyncio
    async def test_claim_swaps_token_once(self, sql_store):
        await sql_store.create(_location())
        later = T0 + timedelta(seconds=1)
        assert await sql_store.claim("c1", "j1", "tok-1", "tok-a", later)
        assert not await sql_store.claim("c1", "j1", "tok-1", "tok-b", later)
        stored = await sql_store.get("c1", "j1")
        assert stored.lock_token == "tok-a"
        assert stored.locked_at == later

    @pytest.mark.asyncio
    async def test_claim_refuses_unlocked_row(self, sql_store):
        await sql_store.create(_location(locked=False, lock_token=None, locked_at=None))
        assert not await sql_store.claim("c1", "j1", "tok-1", "tok-2", T0)

    @pytest.mark.asyncio
    async def test_restore_rewinds_and_unlocks(self, sql_store):
        snapshot = _location(current_step_id="msg", message_sent=True)
        await sql_store.create(snapshot)
        await sql_store.move("c1", "j1", "tok-1", "next", T0 + timedelta(seconds=5))
        assert not await sql_store.restore("c1", "j1", "other", snapshot)
        assert await sql_store.restore("c1", "j1", "tok-1", snapshot)
        stored = await sql_store.get("c1", "j1")
        assert stored.current_step_id == "msg"
        assert stored.step_entered_at == T0
        assert stored.message_sent and not stored.locked

    @pytest.mark.asyncio
    async def test_message_sent_requires_token(self, sql_store):
        await sql_store.create(_location())
        assert not await sql_store.set_message_sent("c1", "j1", "other")
        assert not (await sql_store.get("c1", "j1")).message_sent
        assert await sql_store.set_message_sent("c1", "j1", "tok-1")
        assert (await sql_store.get("c1", "j1")).message_sent

    @pytest.mark.asyncio
    async def test_finalize_blocks_locking(self, sql_store):
        await sql_store.create(_location())
        await sql_store.finalize("c1", "j1", T0)
        stored = await sql_store.get("c1", "j1")
        assert stored.is_finalized and not stored.locked
        assert not await sql_store.try_lock("c1", "j1", "x", T0)
        assert await sql_store.create(_location(lock_token="tok-9"))

    @pytest.mark.asyncio
    async def test_stale_locks(self, sql_store):
        await sql_store.create(_location())
        await sql_store.create(_location(customer_id="c2", locked_at=T0 + timedelta(minutes=20)))
        stale = await sql_store.stale_locks(T0 + timedelta(minutes=10))
        assert [loc.customer_id for loc in stale] == ["c1"]

    @pytest.mark.asyncio
    async def test_tracker_over_sql(self, sql_store, clock):
        tracker = JourneyLocationTracker(sql_store, clock=clock)
        location = await tracker.admit("c1", "j1", "start")
        async with tracker.advancement("c1", "j1", "start", location.lock_token) as adv:
            moved = await adv.hand_off("msg")
        async with tracker.advancement("c1", "j1", "msg", moved.lock_token) as adv:
            await adv.mark_message_sent()
            await adv.park("delay")
        stored = await sql_store.get("c1", "j1")
        assert stored.current_step_id == "delay"
        assert not stored.locked and not stored.message_sent
