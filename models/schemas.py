"""
Core data models for the journey engine.
These are the universal types shared across all modules.
"""
from __future__ import annotations

import uuid
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class StepType(str, Enum):
    START = "start"
    MESSAGE = "message"
    TIME_DELAY = "time_delay"
    TIME_WINDOW = "time_window"
    WAIT_UNTIL_BRANCH = "wait_until_branch"
    MULTISPLIT = "multisplit"
    EXPERIMENT = "experiment"
    LOOP = "loop"
    EXIT = "exit"
    # Reserved, no handler yet
    AB_TEST = "ab_test"
    RANDOM_COHORT_BRANCH = "random_cohort_branch"
    TRACKER = "tracker"
    ATTRIBUTE_BRANCH = "attribute_branch"


# Steps where a customer comes to rest waiting on a clock or an event
TIMER_STEP_TYPES = frozenset({
    StepType.TIME_DELAY,
    StepType.TIME_WINDOW,
    StepType.WAIT_UNTIL_BRANCH,
})

RESERVED_STEP_TYPES = frozenset({
    StepType.AB_TEST,
    StepType.RANDOM_COHORT_BRANCH,
    StepType.TRACKER,
    StepType.ATTRIBUTE_BRANCH,
})


class TemplateType(str, Enum):
    EMAIL = "email"
    SMS = "sms"
    PUSH = "push"
    WEBHOOK = "webhook"
    SLACK = "slack"


class QuietFallbackBehavior(str, Enum):
    NEXT_AVAILABLE_TIME = "RequeueAtNextAvailableTime"
    ABORT = "Abort"


class SendDecision(str, Enum):
    SEND = "SEND"
    QUIET_REQUEUE = "QUIET_REQUEUE"
    QUIET_ABORT = "QUIET_ABORT"
    LIMIT_REQUEUE = "LIMIT_REQUEUE"
    LIMIT_HOLD = "LIMIT_HOLD"
    MOCK_SEND = "MOCK_SEND"


class TelemetryEventType(str, Enum):
    SENT = "sent"
    ABORTED = "aborted"
    DELIVERED = "delivered"
    FAILED = "failed"
    HELD = "held"
    REQUEUED = "requeued"


class RateLimitKind(str, Enum):
    PER_MINUTE = "per_minute"
    CUSTOMERS_MESSAGED = "customers_messaged"


# ──────────────────────────────────────────────────────────────
#  Accounts & Customers
# ──────────────────────────────────────────────────────────────

class Account(BaseModel):
    """The workspace owner a journey belongs to."""
    id: str
    email: str = ""
    workspace_id: str = ""
    timezone_offset_minutes: int = 0
    email_provider: str = ""                  # mailgun | sendgrid | resend | free3
    free_emails_remaining: Optional[int] = None
    sms_from: str = ""


class Customer(BaseModel):
    """A person being moved through journeys."""
    id: str
    email: str = ""
    phone: str = ""
    ios_device_token: str = ""
    android_device_token: str = ""
    attributes: dict[str, Any] = {}

    def address_for(self, channel: str) -> str:
        if channel == TemplateType.EMAIL.value:
            return self.email
        if channel == TemplateType.SMS.value:
            return self.phone
        if channel == "ios":
            return self.ios_device_token
        if channel == "android":
            return self.android_device_token
        return ""


# ──────────────────────────────────────────────────────────────
#  Journey settings
# ──────────────────────────────────────────────────────────────

class QuietHoursSettings(BaseModel):
    enabled: bool = False
    start_time: str = "00:00"                 # local "HH:MM"
    end_time: str = "00:00"
    timezone_offset_minutes: int = 0          # local = UTC + offset
    fallback_behavior: Optional[QuietFallbackBehavior] = None


class RateLimitSettings(BaseModel):
    enabled: bool = False
    max: int = 0
    window_seconds: Optional[int] = None      # distinct-customer window; None = journey lifetime


class JourneySettings(BaseModel):
    quiet_hours: QuietHoursSettings = Field(default_factory=QuietHoursSettings)
    max_message_sends: RateLimitSettings = Field(default_factory=RateLimitSettings)
    max_customers_messaged: RateLimitSettings = Field(default_factory=RateLimitSettings)


class Journey(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    owner_id: str = ""
    name: str = ""
    journey_settings: JourneySettings = Field(default_factory=JourneySettings)
    is_active: bool = True
    is_paused: bool = False
    is_stopped: bool = False

    @property
    def accepts_admissions(self) -> bool:
        return self.is_active and not self.is_paused and not self.is_stopped


# ──────────────────────────────────────────────────────────────
#  Steps & metadata
# ──────────────────────────────────────────────────────────────

class Step(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    journey_id: str = ""
    type: StepType
    metadata: dict[str, Any] = {}

    @property
    def is_timer(self) -> bool:
        return self.type in TIMER_STEP_TYPES


class DestinationMetadata(BaseModel):
    """Start, Loop and any step that has a single outgoing edge."""
    destination: Optional[str] = None


class MessageMetadata(BaseModel):
    template: str
    destination: Optional[str] = None
    human_readable_name: str = ""
    selected_platform: str = "All"            # push only: All | iOS | Android


class DelayDuration(BaseModel):
    days: int = 0
    hours: int = 0
    minutes: int = 0
    seconds: int = 0

    def to_timedelta(self) -> timedelta:
        return timedelta(days=self.days, hours=self.hours,
                         minutes=self.minutes, seconds=self.seconds)


class TimeDelayMetadata(BaseModel):
    delay: DelayDuration = Field(default_factory=DelayDuration)
    destination: Optional[str] = None


class TimeWindowMetadata(BaseModel):
    from_time: str = "00:00"                  # local "HH:MM"
    to_time: str = "00:00"
    days_of_week: list[int] = []              # 0 = Monday; empty = every day
    timezone_offset_minutes: int = 0
    destination: Optional[str] = None


class BranchCondition(BaseModel):
    field: str
    operator: str                             # eq | neq | gt | gte | lt | lte | in | contains | regex | exists
    value: Any = None


class Branch(BaseModel):
    conditions: list[BranchCondition] = []
    relation: str = "all"                     # all | any
    event: Optional[str] = None               # WaitUntil: event name that satisfies the branch
    ratio: float = 0.0                        # Experiment: relative weight
    destination: Optional[str] = None


class BranchingMetadata(BaseModel):
    """WaitUntilBranch, Multisplit and Experiment."""
    branches: list[Branch] = []
    timeout_seconds: Optional[int] = None
    timeout_destination: Optional[str] = None
    all_others_destination: Optional[str] = None


# ──────────────────────────────────────────────────────────────
#  Templates
# ──────────────────────────────────────────────────────────────

class WebhookData(BaseModel):
    url: str
    method: str = "POST"
    headers: dict[str, str] = {}
    body: str = ""
    retries: int = 3


class Template(BaseModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    name: str = ""
    type: TemplateType
    subject: str = ""
    text: str = ""
    cc: list[str] = []
    sms_text: str = ""
    push_title: str = ""
    push_text: str = ""
    slack_message: str = ""
    webhook_data: Optional[WebhookData] = None


# ──────────────────────────────────────────────────────────────
#  Journey location — where a customer currently is
# ──────────────────────────────────────────────────────────────

class JourneyLocation(BaseModel):
    customer_id: str
    journey_id: str
    owner_id: str = ""
    current_step_id: str
    step_entered_at: datetime = Field(default_factory=_utcnow)
    locked: bool = False
    lock_token: Optional[str] = None
    locked_at: Optional[datetime] = None
    message_sent: bool = False
    finalized_at: Optional[datetime] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.customer_id, self.journey_id)

    @property
    def is_finalized(self) -> bool:
        return self.finalized_at is not None


# ──────────────────────────────────────────────────────────────
#  Delivery & telemetry
# ──────────────────────────────────────────────────────────────

class DeliveryResult(BaseModel):
    status: str = "sent"                      # sent | queued | failed
    channel: str = ""
    provider: str = ""
    message_id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    destination: str = ""
    error: str = ""
    metadata: dict[str, Any] = {}


class TelemetryEvent(BaseModel):
    step_id: str
    customer_id: str
    event: TelemetryEventType
    template_id: str = ""
    message_id: str = ""
    workspace_id: str = ""
    provider: str = "tracker"
    session: str = ""
    processed: bool = True
    detail: dict[str, Any] = {}
    created_at: datetime = Field(default_factory=_utcnow)
