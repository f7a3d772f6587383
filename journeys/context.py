"""
EngineContext — everything a step handler may touch, passed in explicitly.
"""
from __future__ import annotations

import random
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Callable, Optional

import httpx

from channels.base import MessageSender
from job_queue.fabric import QueueFabric
from journeys.locations import JourneyLocationTracker
from journeys.send_gate import SendGate
from journeys.stores import JourneyStore, StepStore, TemplateStore
from journeys.telemetry import TelemetrySink


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class EngineContext:
    fabric: QueueFabric
    tracker: JourneyLocationTracker
    gate: SendGate
    steps: StepStore
    templates: TemplateStore
    journeys: JourneyStore
    sender: MessageSender
    telemetry: TelemetrySink
    mock_ping_url: str = ""
    http: Optional[httpx.AsyncClient] = None
    clock: Callable[[], datetime] = _utcnow
    rng: random.Random = field(default_factory=random.Random)
