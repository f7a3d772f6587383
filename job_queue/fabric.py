"""
Queue Fabric — routes step jobs to the queue that serves their step type.
"""
from __future__ import annotations

import structlog
from datetime import datetime
from typing import Optional

from job_queue.message_queue import MessageQueue, QueueJob, Queues
from journeys.errors import StepNotImplementedError
from journeys.jobs import StepJob
from models.schemas import StepType

logger = structlog.get_logger()

QUEUE_FOR_STEP: dict[StepType, str] = {
    StepType.START: Queues.START,
    StepType.MESSAGE: Queues.MESSAGE,
    StepType.TIME_DELAY: Queues.TIME_DELAY,
    StepType.TIME_WINDOW: Queues.TIME_WINDOW,
    StepType.WAIT_UNTIL_BRANCH: Queues.WAIT_UNTIL,
    StepType.MULTISPLIT: Queues.MULTISPLIT,
    StepType.EXPERIMENT: Queues.EXPERIMENT,
    StepType.LOOP: Queues.LOOP,
    StepType.EXIT: Queues.EXIT,
}


def queue_for(step_type: StepType, step_id: str = "") -> str:
    try:
        return QUEUE_FOR_STEP[step_type]
    except KeyError:
        raise StepNotImplementedError(step_type.value, step_id) from None


class QueueFabric:

    def __init__(self, queue: MessageQueue, max_attempts: int = 3):
        self.queue = queue
        self.max_attempts = max_attempts

    async def enqueue(self, job: StepJob) -> QueueJob:
        name = queue_for(job.step.type, job.step.id)
        queued = job.to_queue_job(name, max_attempts=self.max_attempts)
        await self.queue.publish(name, queued)
        return queued

    async def enqueue_at(self, job: StepJob, when: datetime) -> QueueJob:
        """Schedule the job to become visible on its step queue at `when`."""
        name = queue_for(job.step.type, job.step.id)
        queued = job.to_queue_job(name, scheduled_at=when, max_attempts=self.max_attempts)
        await self.queue.publish_delayed(queued)
        logger.info("step_job_scheduled",
                    queue=name,
                    step_id=job.step.id,
                    customer_id=job.customer.id,
                    run_at=when.isoformat())
        return queued

    async def publish(self, queue: str, job: QueueJob, when: Optional[datetime] = None):
        """Raw publish for non-step queues such as webhook-dispatch."""
        job.queue = queue
        if when is None:
            await self.queue.publish(queue, job)
        else:
            job.scheduled_at = when.isoformat()
            await self.queue.publish_delayed(job)
