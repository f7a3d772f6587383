"""
FastAPI Application — thin HTTP surface over the journey engine.

Provides:
- Journey definition loading (journey, steps, templates) into the in-process stores
- Admission and resume of customers
- Journey pause / unpause / stop
- Health and queue diagnostics
"""
from __future__ import annotations

import structlog
from datetime import datetime, timezone
from typing import Any, Optional
from contextlib import asynccontextmanager

# Load .env before any config is read
from dotenv import load_dotenv
load_dotenv()

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel

from config.logging import configure_logging
from config.settings import get_settings
from core.engine import JourneyEngine
from job_queue.message_queue import Queues
from journeys.errors import JourneyInactiveError, LocationNotFoundError, StepConfigurationError
from journeys.stores import InMemoryJourneyStore, InMemoryStepStore, InMemoryTemplateStore
from models.schemas import Account, Customer, Journey, Step, Template

logger = structlog.get_logger()

# ──────────────────────────────────────────────────────────────
#  Bootstrap
# ──────────────────────────────────────────────────────────────

_settings_boot = get_settings()
configure_logging(debug=_settings_boot.debug)

journey_store = InMemoryJourneyStore()
step_store = InMemoryStepStore()
template_store = InMemoryTemplateStore()

engine = JourneyEngine.build(
    _settings_boot,
    steps=step_store,
    templates=template_store,
    journeys=journey_store,
)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await engine.start()
    logger.info("journey_api_started", queue_backend=type(engine.queue).__name__)
    yield
    await engine.shutdown()
    logger.info("journey_api_stopped")


# ──────────────────────────────────────────────────────────────
#  App
# ──────────────────────────────────────────────────────────────

app = FastAPI(
    title="Journey Engine API",
    description="Customer journey step-advancement engine",
    version="1.0.0",
    lifespan=lifespan,
)


# ──────────────────────────────────────────────────────────────
#  Request/Response Models
# ──────────────────────────────────────────────────────────────

class JourneyDefinitionRequest(BaseModel):
    journey: Journey
    steps: list[Step] = []
    templates: list[Template] = []


class AdmitRequest(BaseModel):
    customer: Customer
    owner: Account
    starting_step_id: str
    event: Optional[dict[str, Any]] = None


class ResumeRequest(BaseModel):
    customer: Customer
    owner: Account
    step_id: str
    event: Optional[dict[str, Any]] = None


def _http_error(e: Exception) -> HTTPException:
    if isinstance(e, LocationNotFoundError):
        return HTTPException(status_code=404, detail=str(e))
    if isinstance(e, JourneyInactiveError):
        status = 404 if e.reason == "not found" else 409
        return HTTPException(status_code=status, detail=str(e))
    return HTTPException(status_code=422, detail=str(e))


# ══════════════════════════════════════════════════════════════
#  HEALTH & DIAGNOSTICS
# ══════════════════════════════════════════════════════════════

@app.get("/health")
async def health():
    return {
        "status": "healthy",
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "channels": engine.ctx.sender.get_available(),
    }


@app.get("/queues/stats")
async def queue_stats():
    names = list(Queues.STEP_QUEUES) + [Queues.WEBHOOK_DISPATCH]
    return {name: await engine.queue.queue_length(name) for name in names}


# ══════════════════════════════════════════════════════════════
#  JOURNEYS
# ══════════════════════════════════════════════════════════════

@app.post("/journeys")
async def load_journey(req: JourneyDefinitionRequest):
    journey_store.add(req.journey)
    for step in req.steps:
        step_store.add(step.model_copy(update={"journey_id": req.journey.id}))
    for template in req.templates:
        template_store.add(template)
    return {"journey_id": req.journey.id, "steps": len(req.steps), "templates": len(req.templates)}


@app.post("/journeys/{journey_id}/admit")
async def admit_customer(journey_id: str, req: AdmitRequest):
    try:
        location = await engine.admit(req.customer, req.owner, journey_id, req.starting_step_id, req.event)
    except (JourneyInactiveError, StepConfigurationError) as e:
        raise _http_error(e)
    if location is None:
        return {"admitted": False, "reason": "already_in_journey"}
    return {"admitted": True, "step_id": location.current_step_id}


@app.post("/journeys/{journey_id}/resume")
async def resume_customer(journey_id: str, req: ResumeRequest):
    try:
        resumed = await engine.resume(req.customer, req.owner, journey_id, req.step_id, req.event)
    except (JourneyInactiveError, LocationNotFoundError, StepConfigurationError) as e:
        raise _http_error(e)
    return {"resumed": resumed}


@app.post("/journeys/{journey_id}/pause")
async def pause_journey(journey_id: str):
    try:
        journey = await engine.pause(journey_id)
    except JourneyInactiveError as e:
        raise _http_error(e)
    return {"journey_id": journey.id, "is_paused": journey.is_paused}


@app.post("/journeys/{journey_id}/unpause")
async def unpause_journey(journey_id: str):
    try:
        journey = await engine.unpause(journey_id)
    except JourneyInactiveError as e:
        raise _http_error(e)
    return {"journey_id": journey.id, "is_paused": journey.is_paused}


@app.post("/journeys/{journey_id}/stop")
async def stop_journey(journey_id: str):
    try:
        journey = await engine.stop(journey_id)
    except JourneyInactiveError as e:
        raise _http_error(e)
    return {"journey_id": journey.id, "is_stopped": journey.is_stopped}
