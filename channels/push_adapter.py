"""
Push Channel Adapter — one instance per platform ("ios", "android").
"""
from __future__ import annotations

import uuid
import structlog
from typing import Any

from channels.base import ChannelAdapter

logger = structlog.get_logger()

PUSH_PLATFORMS = ("ios", "android")

# selected_platform on a Message step → platforms to send to
PLATFORM_SELECTION: dict[str, tuple[str, ...]] = {
    "All": PUSH_PLATFORMS,
    "iOS": ("ios",),
    "Android": ("android",),
}


def platforms_for(selected_platform: str) -> tuple[str, ...]:
    return PLATFORM_SELECTION.get(selected_platform, ())


class PushAdapter(ChannelAdapter):

    def __init__(self, platform: str):
        if platform not in PUSH_PLATFORMS:
            raise ValueError(f"Unknown push platform '{platform}'")
        self.channel = platform
        super().__init__()

    async def _do_send(self, destination: str, content: dict[str, Any], metadata: dict[str, Any]) -> dict[str, Any]:
        if not destination:
            return {"status": "failed", "error": f"No {self.channel} device token"}

        message_id = uuid.uuid4().hex
        # Production: FCM / APNs request here
        logger.info("push_sent",
                    platform=self.channel,
                    title=content.get("title", ""),
                    message_id=message_id)
        return {
            "status": "sent",
            "provider": "fcm",
            "channel_message_id": message_id,
        }
