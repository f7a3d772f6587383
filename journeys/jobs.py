"""
StepJob — the context snapshot carried by every step-advancement job.

The snapshot travels inside QueueJob.payload. The lock token of the
location travels with it, which is how a held lock is handed from one job
to the next.
"""
from __future__ import annotations

import uuid
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from job_queue.message_queue import QueueJob
from models.schemas import Account, Customer, Journey, JourneyLocation, Step


class StepJob(BaseModel):
    step: Step
    owner: Account
    journey: Journey
    customer: Customer
    location: JourneyLocation
    session: str = Field(default_factory=lambda: uuid.uuid4().hex)
    event: Optional[dict[str, Any]] = None
    branch: Optional[int] = None

    @property
    def lock_token(self) -> Optional[str]:
        return self.location.lock_token if self.location.locked else None

    def for_step(self, step: Step, location: JourneyLocation) -> StepJob:
        """Same context, next step."""
        return self.model_copy(update={"step": step, "location": location, "branch": None})

    def to_queue_job(
        self, queue: str, scheduled_at: Optional[datetime] = None, max_attempts: int = 3,
    ) -> QueueJob:
        return QueueJob(
            queue=queue,
            name=self.step.type.value,
            payload=self.model_dump(mode="json"),
            max_attempts=max_attempts,
            scheduled_at=scheduled_at.isoformat() if scheduled_at else "",
            metadata={
                "customer_id": self.customer.id,
                "journey_id": self.journey.id,
                "step_id": self.step.id,
            },
        )

    @classmethod
    def from_queue_job(cls, job: QueueJob) -> StepJob:
        return cls.model_validate(job.payload)
