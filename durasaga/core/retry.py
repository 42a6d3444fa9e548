"""
Retry Policy Evaluator.

A pure function that decides whether a failed attempt is retried and after
which delay:

    nextDelay = min(initial_interval * backoff_coefficient ** (attempt - 1), max_interval)

Usage:
    >>> policy = RetryPolicy(max_attempts=3, initial_interval=2.0, backoff_coefficient=2.0)
    >>> evaluate_retry(1, policy, retryable=True)
    RetryDecision(retry=True, delay=2.0, attempt=1)
    >>> evaluate_retry(3, policy, retryable=True).exhausted
    True
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any


@dataclass(frozen=True)
class RetryPolicy:
    """
    Immutable retry configuration attached to an activity invocation.

    Attributes:
        max_attempts: Total attempts allowed, including the first one
        initial_interval: Delay in seconds before the second attempt
        backoff_coefficient: Multiplier applied per subsequent attempt
        max_interval: Upper bound for any delay (defaults to 100x initial)
    """

    max_attempts: int = 3
    initial_interval: float = 2.0
    backoff_coefficient: float = 2.0
    max_interval: float | None = None

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            msg = f"max_attempts must be >= 1, got {self.max_attempts}"
            raise ValueError(msg)
        if self.initial_interval < 0:
            msg = f"initial_interval must be >= 0, got {self.initial_interval}"
            raise ValueError(msg)
        if self.backoff_coefficient < 1:
            msg = f"backoff_coefficient must be >= 1, got {self.backoff_coefficient}"
            raise ValueError(msg)
        if self.max_interval is not None and self.max_interval < self.initial_interval:
            msg = "max_interval must be >= initial_interval"
            raise ValueError(msg)

    @property
    def effective_max_interval(self) -> float:
        if self.max_interval is not None:
            return self.max_interval
        return self.initial_interval * 100

    def delay_for(self, attempt: int) -> float:
        """Delay between ``attempt`` and ``attempt + 1``."""
        raw = self.initial_interval * self.backoff_coefficient ** (attempt - 1)
        return min(raw, self.effective_max_interval)

    def to_dict(self) -> dict[str, Any]:
        return {
            "max_attempts": self.max_attempts,
            "initial_interval": self.initial_interval,
            "backoff_coefficient": self.backoff_coefficient,
            "max_interval": self.max_interval,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> RetryPolicy:
        return cls(
            max_attempts=int(data.get("max_attempts", 3)),
            initial_interval=float(data.get("initial_interval", 2.0)),
            backoff_coefficient=float(data.get("backoff_coefficient", 2.0)),
            max_interval=(
                float(data["max_interval"]) if data.get("max_interval") is not None else None
            ),
        )


@dataclass(frozen=True)
class RetryDecision:
    """Outcome of evaluating a failed attempt."""

    retry: bool
    delay: float
    attempt: int

    @property
    def exhausted(self) -> bool:
        return not self.retry

    @property
    def next_attempt(self) -> int | None:
        return self.attempt + 1 if self.retry else None


def evaluate_retry(attempt: int, policy: RetryPolicy, retryable: bool = True) -> RetryDecision:
    """
    Decide what happens after ``attempt`` failed.

    Non-retryable failures bypass backoff and are exhausted immediately.
    """
    if attempt < 1:
        msg = f"attempt is 1-based, got {attempt}"
        raise ValueError(msg)

    if not retryable or attempt >= policy.max_attempts:
        return RetryDecision(retry=False, delay=0.0, attempt=attempt)

    return RetryDecision(retry=True, delay=policy.delay_for(attempt), attempt=attempt)
