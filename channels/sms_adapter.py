"""
SMS Channel Adapter — Twilio-style SMS messaging.

Provides:
- GSM-7 vs Unicode detection for accurate segment counting
- Automatic message truncation to max segment limit
- Opt-out list honoured before every send
"""
from __future__ import annotations

import re
import uuid
import structlog
from typing import Any

from channels.base import ChannelAdapter
from models.schemas import TemplateType

logger = structlog.get_logger()


# ══════════════════════════════════════════════════════════════
#  GSM-7 CHARACTER SET & SEGMENT COUNTING
# ══════════════════════════════════════════════════════════════

_GSM7_CHARS = set(
    "@£$¥èéùìòÇ\nØø\rÅåΔ_ΦΓΛΩΠΨΣΘΞÆæßÉ !\"#¤%&'()*+,-./0123456789:;<=>?"
    "¡ABCDEFGHIJKLMNOPQRSTUVWXYZÄÖÑÜ§¿abcdefghijklmnopqrstuvwxyzäöñüà"
)

# Extended GSM-7 (takes 2 bytes each): ^{}[~]|\€
_GSM7_EXTENDED = set("^{}[]~|\\€")


def is_gsm7(text: str) -> bool:
    return all(c in _GSM7_CHARS or c in _GSM7_EXTENDED for c in text)


def segment_count(text: str) -> int:
    """
    GSM-7: 160 chars single / 153 chars per segment.
    Unicode: 70 chars single / 67 chars per segment.
    """
    if not text:
        return 0
    if is_gsm7(text):
        char_count = sum(2 if c in _GSM7_EXTENDED else 1 for c in text)
        if char_count <= 160:
            return 1
        return (char_count + 152) // 153
    if len(text) <= 70:
        return 1
    return (len(text) + 66) // 67


def normalize_number(phone: str) -> str:
    return re.sub(r"[^\d]", "", phone)


class SMSAdapter(ChannelAdapter):

    channel = TemplateType.SMS.value

    def __init__(self):
        super().__init__()
        self._from_number: str = ""
        self._max_segments: int = 3
        self._opt_out_list: set[str] = set()

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._from_number = config.get("from_number", "")
        self._max_segments = config.get("max_segments", 3)
        self._initialized = True

    def opt_out(self, phone: str):
        self._opt_out_list.add(normalize_number(phone))

    async def _do_send(self, destination: str, content: dict[str, Any], metadata: dict[str, Any]) -> dict[str, Any]:
        if not destination:
            return {"status": "failed", "error": "No SMS number"}
        if normalize_number(destination) in self._opt_out_list:
            return {"status": "failed", "error": "opted_out"}

        text = self._truncate_to_segments(content.get("text", ""), self._max_segments)
        segments = segment_count(text)
        msg_sid = f"SM{uuid.uuid4().hex[:32]}"

        # Production: Twilio client.messages.create()
        logger.info("sms_sent", to=destination, segments=segments, msg_sid=msg_sid)
        return {
            "status": "sent",
            "provider": "twilio",
            "channel_message_id": msg_sid,
            "segments": segments,
            "from": metadata.get("from") or self._from_number,
        }

    def _truncate_to_segments(self, content: str, max_segments: int) -> str:
        if segment_count(content) <= max_segments:
            return content
        if is_gsm7(content):
            max_chars = 153 * max_segments - 3  # space for "..."
        else:
            max_chars = 67 * max_segments - 3
        return content[:max_chars] + "..."
