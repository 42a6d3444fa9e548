"""
Tagged step results.

The coordinator branches on the tag instead of on exception types, keeping
the saga state machine explicit:

    Success(output) | RetryableFailure(error) | FatalFailure(error)

``RetryableFailure`` is a failure whose cause was retryable but whose
attempts were exhausted; ``FatalFailure`` was classified non-retryable (or
is a cancellation). Both are terminal for the step.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

from durasaga.core.types import Event, EventType


@dataclass(frozen=True)
class Success:
    output: Any = None

    ok = True


@dataclass(frozen=True)
class RetryableFailure:
    error: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0

    ok = False

    @property
    def message(self) -> str:
        return self.error.get("message", "")


@dataclass(frozen=True)
class FatalFailure:
    error: dict[str, Any] = field(default_factory=dict)
    attempts: int = 0

    ok = False

    @property
    def message(self) -> str:
        return self.error.get("message", "")


StepResult = Success | RetryableFailure | FatalFailure


def result_from_event(event: Event) -> StepResult:
    """Rebuild the tagged result recorded by a terminal activity event."""
    if event.event_type in (EventType.ACTIVITY_COMPLETED, EventType.COMPENSATION_COMPLETED):
        return Success(event.attributes.get("result"))

    error = event.attributes.get("error") or {}
    attempts = event.attributes.get("attempt", 0)
    if error.get("retryable", True):
        return RetryableFailure(error=error, attempts=attempts)
    return FatalFailure(error=error, attempts=attempts)
