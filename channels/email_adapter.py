"""
Email Channel Adapter — provider-routed email delivery.

Provides:
- Provider selection per account (mailgun, sendgrid, resend, free tier)
- Suppression list (bounces, complaints, unsubscribes)
- RFC 5322 Message-ID generation for tracking

The transport call itself is the provider's HTTP API; this adapter stops
at the point where that request would be made.
"""
from __future__ import annotations

import uuid
import structlog
from typing import Any

from channels.base import ChannelAdapter, FREE_TIER_PROVIDER
from models.schemas import TemplateType

logger = structlog.get_logger()

SUPPORTED_PROVIDERS = ("mailgun", "sendgrid", "resend", FREE_TIER_PROVIDER)


class EmailAdapter(ChannelAdapter):
    """
    Email adapter with suppression handling.

    Free-tier accounts are sent through the shared test domain instead of
    their own sending domain.
    """

    channel = TemplateType.EMAIL.value

    def __init__(self):
        super().__init__()
        self._suppressed: set[str] = set()
        self._domain: str = "example.com"
        self._test_domain: str = "sandbox.example.com"
        self._default_provider: str = "mailgun"

    async def initialize(self, config: dict[str, Any]) -> None:
        self._config = config
        self._domain = config.get("domain", self._domain)
        self._test_domain = config.get("test_domain", self._test_domain)
        self._default_provider = config.get("provider", self._default_provider)
        self._initialized = True

    def suppress(self, email: str):
        self._suppressed.add(email.strip().lower())

    def is_suppressed(self, email: str) -> bool:
        return email.strip().lower() in self._suppressed

    async def _do_send(self, destination: str, content: dict[str, Any], metadata: dict[str, Any]) -> dict[str, Any]:
        if not destination:
            return {"status": "failed", "error": "No email address"}
        if self.is_suppressed(destination):
            return {"status": "failed", "error": f"Suppressed: {destination}"}

        provider = metadata.get("provider") or self._default_provider
        if provider not in SUPPORTED_PROVIDERS:
            return {"status": "failed", "error": f"Unknown email provider '{provider}'"}
        domain = self._test_domain if provider == FREE_TIER_PROVIDER else self._domain

        message_id = f"<{uuid.uuid4().hex}@{domain}>"

        # Production: provider HTTP API call here
        logger.info("email_sent",
                    to=destination,
                    provider=provider,
                    subject=content.get("subject", ""),
                    cc=len(content.get("cc") or []),
                    message_id=message_id)
        return {
            "status": "sent",
            "provider": provider,
            "channel_message_id": message_id,
            "domain": domain,
        }
