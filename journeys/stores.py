"""
Entity stores consumed by the engine.

Journey graphs, steps and templates are authored and persisted elsewhere;
the engine only reads them by id. Steps and templates are hot and immutable
while a journey runs, so lookups go through a TTL cache. Journeys are read
uncached so that pause/stop flags take effect on the next job.
"""
from __future__ import annotations

import time
import structlog
from abc import ABC, abstractmethod
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Generic, Optional, TypeVar

from models.schemas import Journey, Step, Template

logger = structlog.get_logger()

T = TypeVar("T")


class TTLCache(Generic[T]):
    """Bounded id → entity cache with per-entry expiry. Loader errors are not cached."""

    def __init__(self, ttl_seconds: float = 60.0, max_size: int = 5000):
        self.ttl = ttl_seconds
        self.max_size = max_size
        self._entries: OrderedDict[str, tuple[float, T]] = OrderedDict()

    async def get_or_load(self, key: str, loader: Callable[[str], Awaitable[Optional[T]]]) -> Optional[T]:
        hit = self._entries.get(key)
        now = time.monotonic()
        if hit and hit[0] > now:
            self._entries.move_to_end(key)
            return hit[1]
        value = await loader(key)
        if value is not None:
            self._entries[key] = (now + self.ttl, value)
            self._entries.move_to_end(key)
            while len(self._entries) > self.max_size:
                self._entries.popitem(last=False)
        return value

    def invalidate(self, key: str):
        self._entries.pop(key, None)

    def clear(self):
        self._entries.clear()

    def __len__(self) -> int:
        return len(self._entries)


# ──────────────────────────────────────────────────────────────
#  Interfaces
# ──────────────────────────────────────────────────────────────

class StepStore(ABC):
    @abstractmethod
    async def get_by_id(self, step_id: str) -> Optional[Step]:
        ...


class TemplateStore(ABC):
    @abstractmethod
    async def get_by_id(self, template_id: str) -> Optional[Template]:
        ...


class JourneyStore(ABC):
    @abstractmethod
    async def get_by_id(self, journey_id: str) -> Optional[Journey]:
        ...

    @abstractmethod
    async def update_flags(self, journey_id: str, **flags: bool) -> Optional[Journey]:
        """Set lifecycle flags (is_paused, is_stopped, is_active)."""
        ...


# ──────────────────────────────────────────────────────────────
#  Caching wrappers
# ──────────────────────────────────────────────────────────────

class CachedStepStore(StepStore):
    def __init__(self, inner: StepStore, ttl_seconds: float = 60.0, max_size: int = 5000):
        self.inner = inner
        self.cache: TTLCache[Step] = TTLCache(ttl_seconds, max_size)

    async def get_by_id(self, step_id: str) -> Optional[Step]:
        return await self.cache.get_or_load(step_id, self.inner.get_by_id)


class CachedTemplateStore(TemplateStore):
    def __init__(self, inner: TemplateStore, ttl_seconds: float = 60.0, max_size: int = 5000):
        self.inner = inner
        self.cache: TTLCache[Template] = TTLCache(ttl_seconds, max_size)

    async def get_by_id(self, template_id: str) -> Optional[Template]:
        return await self.cache.get_or_load(template_id, self.inner.get_by_id)


# ──────────────────────────────────────────────────────────────
#  In-memory implementations
# ──────────────────────────────────────────────────────────────

class InMemoryStepStore(StepStore):
    def __init__(self, steps: list[Step] = None):
        self._steps: dict[str, Step] = {s.id: s for s in (steps or [])}

    def add(self, step: Step) -> Step:
        self._steps[step.id] = step
        return step

    async def get_by_id(self, step_id: str) -> Optional[Step]:
        return self._steps.get(step_id)


class InMemoryTemplateStore(TemplateStore):
    def __init__(self, templates: list[Template] = None):
        self._templates: dict[str, Template] = {t.id: t for t in (templates or [])}

    def add(self, template: Template) -> Template:
        self._templates[template.id] = template
        return template

    async def get_by_id(self, template_id: str) -> Optional[Template]:
        return self._templates.get(template_id)


class InMemoryJourneyStore(JourneyStore):
    def __init__(self, journeys: list[Journey] = None):
        self._journeys: dict[str, Journey] = {j.id: j for j in (journeys or [])}

    def add(self, journey: Journey) -> Journey:
        self._journeys[journey.id] = journey
        return journey

    async def get_by_id(self, journey_id: str) -> Optional[Journey]:
        return self._journeys.get(journey_id)

    async def update_flags(self, journey_id: str, **flags: Any) -> Optional[Journey]:
        journey = self._journeys.get(journey_id)
        if journey is None:
            return None
        journey = journey.model_copy(update=flags)
        self._journeys[journey_id] = journey
        logger.info("journey_flags_updated", journey_id=journey_id, **flags)
        return journey
