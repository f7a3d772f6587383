"""
Engine error hierarchy.

UnrecoverableJobError subclasses are configuration faults: the worker moves
the job straight to the dead-letter queue instead of retrying it. Anything
else that escapes a handler is treated as transient and retried with backoff.
"""
from __future__ import annotations

from typing import Optional

from job_queue.message_queue import UnrecoverableError


class JourneyEngineError(Exception):
    """Base exception for all engine operations."""

    def __init__(self, message: str, retryable: bool = False):
        self.retryable = retryable
        super().__init__(message)


class UnrecoverableJobError(JourneyEngineError, UnrecoverableError):
    """The job can never succeed as configured. Never retried."""

    def __init__(self, message: str):
        super().__init__(message, retryable=False)


class StepNotImplementedError(UnrecoverableJobError):
    def __init__(self, step_type: str, step_id: str = ""):
        self.step_type = step_type
        self.step_id = step_id
        super().__init__(f"Step type '{step_type}' is not implemented (step {step_id or '?'})")


class StepConfigurationError(UnrecoverableJobError):
    def __init__(self, message: str, step_id: str = ""):
        self.step_id = step_id
        super().__init__(message)


class QuietHoursConfigurationError(UnrecoverableJobError):
    pass


class QuotaExceededError(JourneyEngineError):
    """Messaging quota exhausted for the account (payment required)."""

    def __init__(self, message: str = "Messaging quota exhausted", account_id: str = ""):
        self.account_id = account_id
        super().__init__(message, retryable=False)


class JourneyInactiveError(JourneyEngineError):
    """Admission refused because the journey is paused or stopped."""

    def __init__(self, journey_id: str, reason: str):
        self.journey_id = journey_id
        self.reason = reason
        super().__init__(f"Journey {journey_id} does not accept customers: {reason}")


class LocationNotFoundError(JourneyEngineError):
    def __init__(self, customer_id: str, journey_id: str, step_id: Optional[str] = None):
        self.customer_id = customer_id
        self.journey_id = journey_id
        self.step_id = step_id
        super().__init__(f"No location for customer {customer_id} in journey {journey_id}")
