"""Channel adapters for every message template type."""
from channels.base import (
    ChannelAdapter,
    ChannelError,
    ChannelMetrics,
    ChannelNotConfiguredError,
    CircuitBreaker,
    CircuitOpenError,
    FreeEmailQuota,
    MessageSender,
)
from channels.email_adapter import EmailAdapter
from channels.sms_adapter import SMSAdapter
from channels.push_adapter import PushAdapter, platforms_for
from channels.webhook_adapter import WebhookAdapter

__all__ = [
    "ChannelAdapter", "ChannelError", "ChannelMetrics", "ChannelNotConfiguredError",
    "CircuitBreaker", "CircuitOpenError", "FreeEmailQuota", "MessageSender",
    "EmailAdapter", "SMSAdapter", "PushAdapter", "WebhookAdapter", "platforms_for",
]
