"""
Telemetry sinks — delivery, abort and synthetic "sent" events.

Recording is fire-and-forget from the engine's point of view: a sink
failure is logged and never fails the advancement that produced it.
"""
from __future__ import annotations

import structlog
from abc import ABC, abstractmethod

from models.schemas import TelemetryEvent, TelemetryEventType

logger = structlog.get_logger()


class TelemetrySink(ABC):
    @abstractmethod
    async def record(self, event: TelemetryEvent) -> None:
        ...


class StructlogTelemetrySink(TelemetrySink):
    """Emits each event as a structured log line."""

    async def record(self, event: TelemetryEvent) -> None:
        fields = event.model_dump(mode="json", exclude={"event"})
        logger.info("telemetry_event", event_type=event.event.value, **fields)


class InMemoryTelemetrySink(TelemetrySink):
    def __init__(self):
        self.events: list[TelemetryEvent] = []

    async def record(self, event: TelemetryEvent) -> None:
        self.events.append(event)

    def of_type(self, event_type: TelemetryEventType) -> list[TelemetryEvent]:
        return [e for e in self.events if e.event == event_type]


async def record_safely(sink: TelemetrySink, event: TelemetryEvent) -> None:
    try:
        await sink.record(event)
    except Exception as e:
        logger.error("telemetry_record_failed",
                     event_type=event.event.value,
                     step_id=event.step_id,
                     customer_id=event.customer_id,
                     error=str(e))
