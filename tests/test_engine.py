"""Engine wiring and full runs with live workers."""
import asyncio

import pytest

from config.settings import DatabaseConfig, LockConfig, QueueConfig, Settings
from core.engine import JourneyEngine, default_sender
from database.location_store import SqlLocationStore
from job_queue.message_queue import InMemoryMessageQueue
from journeys.locations import InMemoryLocationStore
from journeys.stores import CachedStepStore, InMemoryJourneyStore, InMemoryStepStore, InMemoryTemplateStore
from journeys.telemetry import InMemoryTelemetrySink
from models.schemas import TelemetryEventType


async def wait_for_step(engine, customer_id, step_id, timeout=3.0):
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while loop.time() < deadline:
        location = await engine.ctx.tracker.store.get(customer_id, "j1")
        if location is not None and location.current_step_id == step_id and not location.locked:
            return location
        await asyncio.sleep(0.01)
    raise AssertionError(f"{customer_id} never reached {step_id}")


class TestBuild:
    def test_defaults(self, settings, step_store, template_store, journey_store):
        engine = JourneyEngine.build(settings, steps=step_store, templates=template_store, journeys=journey_store)
        assert isinstance(engine.queue, InMemoryMessageQueue)
        assert isinstance(engine.ctx.tracker.store, InMemoryLocationStore)
        assert isinstance(engine.ctx.steps, CachedStepStore)
        assert engine.ctx.steps.inner is step_store
        assert not engine.ctx.gate.mock_send

    def test_sql_lock_backend(self, tmp_path, step_store, template_store, journey_store):
        settings = Settings(
            locks=LockConfig(backend="sql"),
            database=DatabaseConfig(url=f"sqlite:///{tmp_path}/engine.db"),
        )
        engine = JourneyEngine.build(settings, steps=step_store, templates=template_store, journeys=journey_store)
        assert isinstance(engine.ctx.tracker.store, SqlLocationStore)

    def test_default_sender_channels(self):
        sender = default_sender(InMemoryMessageQueue())
        assert set(sender.get_available()) == {"email", "sms", "ios", "android", "webhook"}


class TestLiveRun:
    @pytest.mark.asyncio
    async def test_workers_carry_customer_to_the_timer(self, onboarding_steps, welcome_template, journey, customer, owner):
        telemetry = InMemoryTelemetrySink()
        settings = Settings(queue=QueueConfig(delayed_promote_interval=1))
        engine = JourneyEngine.build(
            settings,
            steps=InMemoryStepStore(onboarding_steps),
            templates=InMemoryTemplateStore([welcome_template]),
            journeys=InMemoryJourneyStore([journey]),
            telemetry=telemetry,
        )
        await engine.start()
        try:
            await engine.admit(customer, owner, "j1", "start")
            await wait_for_step(engine, "c1", "delay")
        finally:
            await engine.shutdown()

        assert len(telemetry.of_type(TelemetryEventType.SENT)) == 1
        assert [job.queue for job in engine.queue.delayed] == ["time-delay"]

    @pytest.mark.asyncio
    async def test_sql_backed_run(self, tmp_path, onboarding_steps, welcome_template, journey, customer, owner):
        settings = Settings(
            locks=LockConfig(backend="sql"),
            database=DatabaseConfig(url=f"sqlite:///{tmp_path}/run.db"),
        )
        engine = JourneyEngine.build(
            settings,
            steps=InMemoryStepStore(onboarding_steps),
            templates=InMemoryTemplateStore([welcome_template]),
            journeys=InMemoryJourneyStore([journey]),
        )
        await engine.start()
        try:
            await engine.admit(customer, owner, "j1", "start")
            location = await wait_for_step(engine, "c1", "delay")
        finally:
            await engine.shutdown()
        assert not location.message_sent
