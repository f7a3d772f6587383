"""
Webhook Channel Adapter — hands webhook templates to the webhook-dispatch queue.

The HTTP call happens later in WebhookDispatchWorker so a slow endpoint
never holds a customer's location lock.
"""
from __future__ import annotations

import structlog
from typing import Any

from channels.base import ChannelAdapter
from job_queue.message_queue import MessageQueue, QueueJob, Queues
from models.schemas import TemplateType

logger = structlog.get_logger()

WEBHOOK_JOB_NAME = "whapicall"


class WebhookAdapter(ChannelAdapter):

    channel = TemplateType.WEBHOOK.value

    def __init__(self, queue: MessageQueue, max_attempts: int = 3):
        super().__init__()
        self.queue = queue
        self.max_attempts = max_attempts

    async def _do_send(self, destination: str, content: dict[str, Any], metadata: dict[str, Any]) -> dict[str, Any]:
        job = QueueJob(
            queue=Queues.WEBHOOK_DISPATCH,
            name=WEBHOOK_JOB_NAME,
            payload={
                "webhook": content.get("webhook") or {},
                "tags": content.get("tags") or {},
                "step_id": metadata.get("step_id", ""),
                "customer_id": metadata.get("customer_id", ""),
                "account_id": metadata.get("account_id", ""),
                "template_id": metadata.get("template_id", ""),
            },
            max_attempts=self.max_attempts,
        )
        await self.queue.publish(Queues.WEBHOOK_DISPATCH, job)
        return {
            "status": "queued",
            "provider": "webhook",
            "channel_message_id": job.job_id,
        }
