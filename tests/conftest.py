"""Shared test fixtures for the journey engine."""
import random
from datetime import datetime, timedelta, timezone

import pytest
import pytest_asyncio

from config.settings import Settings
from core.engine import JourneyEngine
from job_queue.message_queue import InMemoryMessageQueue, Queues
from journeys.stores import InMemoryJourneyStore, InMemoryStepStore, InMemoryTemplateStore
from journeys.telemetry import InMemoryTelemetrySink
from models.schemas import (
    Account, Customer, Journey, JourneySettings, Step, StepType, Template, TemplateType,
)


class FakeClock:
    """Settable clock shared by the engine, the tracker and the tests."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def advance(self, **kwargs) -> datetime:
        self.now = self.now + timedelta(**kwargs)
        return self.now


# Tuesday, 12:00:30 UTC
T0 = datetime(2024, 3, 5, 12, 0, 30, tzinfo=timezone.utc)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock(T0)


@pytest.fixture
def owner() -> Account:
    return Account(id="acct-1", email="owner@example.com", workspace_id="ws-1",
                   email_provider="mailgun")


@pytest.fixture
def customer() -> Customer:
    return Customer(id="c1", email="ada@example.com", phone="+15550001111",
                    ios_device_token="ios-tok", android_device_token="and-tok",
                    attributes={"first_name": "Ada", "plan": "pro"})


@pytest.fixture
def other_customer() -> Customer:
    return Customer(id="c2", email="grace@example.com", attributes={"first_name": "Grace", "plan": "free"})


@pytest.fixture
def journey() -> Journey:
    return Journey(id="j1", owner_id="acct-1", name="Onboarding")


@pytest.fixture
def welcome_template() -> Template:
    return Template(id="tpl-welcome", name="Welcome", type=TemplateType.EMAIL,
                    subject="Welcome {{ first_name }}", text="Hi {{ first_name }}, thanks for joining.")


@pytest.fixture
def onboarding_steps() -> list[Step]:
    """start → message → time delay (1 day) → exit"""
    return [
        Step(id="start", journey_id="j1", type=StepType.START, metadata={"destination": "msg"}),
        Step(id="msg", journey_id="j1", type=StepType.MESSAGE, metadata={
            "template": "tpl-welcome", "destination": "delay", "human_readable_name": "Welcome email",
        }),
        Step(id="delay", journey_id="j1", type=StepType.TIME_DELAY, metadata={
            "delay": {"days": 1}, "destination": "exit",
        }),
        Step(id="exit", journey_id="j1", type=StepType.EXIT),
    ]


@pytest.fixture
def step_store(onboarding_steps) -> InMemoryStepStore:
    return InMemoryStepStore(onboarding_steps)


@pytest.fixture
def template_store(welcome_template) -> InMemoryTemplateStore:
    return InMemoryTemplateStore([welcome_template])


@pytest.fixture
def journey_store(journey) -> InMemoryJourneyStore:
    return InMemoryJourneyStore([journey])


@pytest.fixture
def telemetry() -> InMemoryTelemetrySink:
    return InMemoryTelemetrySink()


@pytest.fixture
def settings() -> Settings:
    return Settings()


@pytest.fixture
def queue() -> InMemoryMessageQueue:
    # Not connected: no background promotion, tests promote explicitly
    return InMemoryMessageQueue()


@pytest_asyncio.fixture
async def engine(settings, step_store, template_store, journey_store, telemetry, queue, clock):
    eng = JourneyEngine.build(
        settings,
        steps=step_store,
        templates=template_store,
        journeys=journey_store,
        telemetry=telemetry,
        queue=queue,
        clock=clock,
        rng=random.Random(7),
    )
    yield eng
    await eng.ctx.http.aclose()


@pytest.fixture
def run_queues(engine, queue):
    """Process ready step jobs until every step queue is empty. Returns how many ran."""

    async def _run(limit: int = 100) -> int:
        processed = 0
        while processed < limit:
            progressed = False
            for name in Queues.STEP_QUEUES:
                job = queue.take(name)
                if job is None:
                    continue
                await engine.dispatcher.handle_queue_job(job)
                processed += 1
                progressed = True
            if not progressed:
                break
        return processed

    return _run
