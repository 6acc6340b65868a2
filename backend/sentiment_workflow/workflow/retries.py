"""Retry and timeout configuration for workflow activities."""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from typing import Any, Mapping, Union

from .models import (
    AGGREGATE_AND_STORE,
    FETCH_REVIEWS,
    REGISTER_PRODUCT,
    SCORE_SENTIMENT,
    ActivityFailure,
)


@dataclass(frozen=True)
class RetryPolicy:
    """Retry configuration for an activity invocation.

    `maximum_attempts` counts the first attempt, so 3 permits two retries.
    Zero means unlimited, bounded only by `maximum_elapsed` when set.
    """

    initial_interval: float = 1.0
    maximum_interval: float = 60.0
    backoff_coefficient: float = 2.0
    maximum_attempts: int = 3
    maximum_elapsed: float | None = None
    non_retryable_error_types: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.initial_interval < 0:
            raise ValueError("initial_interval must be >= 0")
        if self.backoff_coefficient < 1:
            raise ValueError("backoff_coefficient must be >= 1")
        if self.maximum_interval < self.initial_interval:
            raise ValueError("maximum_interval must be >= initial_interval")
        if self.maximum_attempts < 0:
            raise ValueError("maximum_attempts must be >= 0")

    def delay_for(self, attempt: int) -> float:
        """Backoff before the attempt that follows `attempt` (1-indexed)."""
        exponent = max(attempt - 1, 0)
        return min(
            self.initial_interval * (self.backoff_coefficient**exponent),
            self.maximum_interval,
        )

    def allows(self, attempt: int) -> bool:
        """Return True if another attempt is allowed after attempt_number."""
        return not self.maximum_attempts or attempt < self.maximum_attempts

    def to_payload(self) -> dict[str, Any]:
        return {
            "initial_interval": self.initial_interval,
            "maximum_interval": self.maximum_interval,
            "backoff_coefficient": self.backoff_coefficient,
            "maximum_attempts": self.maximum_attempts,
            "maximum_elapsed": self.maximum_elapsed,
            "non_retryable_error_types": list(self.non_retryable_error_types),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "RetryPolicy":
        return cls(
            initial_interval=float(payload.get("initial_interval", 1.0)),
            maximum_interval=float(payload.get("maximum_interval", 60.0)),
            backoff_coefficient=float(payload.get("backoff_coefficient", 2.0)),
            maximum_attempts=int(payload.get("maximum_attempts", 3)),
            maximum_elapsed=payload.get("maximum_elapsed"),
            non_retryable_error_types=tuple(payload.get("non_retryable_error_types") or ()),
        )


DEFAULT_RETRY_POLICY = RetryPolicy()


@dataclass(frozen=True)
class Retry:
    delay: float


@dataclass(frozen=True)
class GiveUp:
    failure: ActivityFailure


RetryDecision = Union[Retry, GiveUp]


def next_action(
    attempt: int,
    failure: ActivityFailure,
    policy: RetryPolicy,
    elapsed: float = 0.0,
) -> RetryDecision:
    """Decide what follows a failed attempt.

    Terminal failures and non-retryable error types give up at once, whatever
    budget is left.
    """
    final = failure.with_attempt(attempt)
    if failure.terminal or failure.error_type in policy.non_retryable_error_types:
        return GiveUp(final)
    if not policy.allows(attempt):
        return GiveUp(final)
    delay = policy.delay_for(attempt)
    if policy.maximum_elapsed is not None and elapsed + delay > policy.maximum_elapsed:
        return GiveUp(final)
    return Retry(delay)


@dataclass(frozen=True)
class ActivityOptions:
    """Timeouts and retry policy applied to every attempt of an activity."""

    start_to_close_timeout: float = 600.0
    schedule_to_close_timeout: float | None = None
    heartbeat_timeout: float | None = None
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)

    @property
    def heartbeat_interval(self) -> float | None:
        if not self.heartbeat_timeout:
            return None
        return self.heartbeat_timeout * 0.8

    def to_payload(self) -> dict[str, Any]:
        return {
            "start_to_close_timeout": self.start_to_close_timeout,
            "schedule_to_close_timeout": self.schedule_to_close_timeout,
            "heartbeat_timeout": self.heartbeat_timeout,
            "retry_policy": self.retry_policy.to_payload(),
        }

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any] | None) -> "ActivityOptions":
        if not payload:
            return cls()
        return cls(
            start_to_close_timeout=float(payload.get("start_to_close_timeout", 600.0)),
            schedule_to_close_timeout=payload.get("schedule_to_close_timeout"),
            heartbeat_timeout=payload.get("heartbeat_timeout"),
            retry_policy=RetryPolicy.from_payload(payload.get("retry_policy") or {}),
        )


# Activities absent here run with the configured default policy unchanged.
ACTIVITY_RETRY_RULES: dict[str, dict[str, Any]] = {
    SCORE_SENTIMENT: {"maximum_attempts": 5},
}


def policy_for_activity(
    activity: str, default: RetryPolicy | None = None
) -> RetryPolicy:
    """Return the retry policy for the given activity."""
    base = default or DEFAULT_RETRY_POLICY
    overrides = ACTIVITY_RETRY_RULES.get(activity)
    if not overrides:
        return base
    return replace(base, **overrides)


def build_activity_options(
    *,
    start_to_close_timeout: float = 600.0,
    schedule_to_close_timeout: float | None = None,
    heartbeat_timeout: float | None = None,
    default_policy: RetryPolicy | None = None,
) -> dict[str, ActivityOptions]:
    """Options for each pipeline activity; only scoring heartbeats."""
    options: dict[str, ActivityOptions] = {}
    for activity in (REGISTER_PRODUCT, FETCH_REVIEWS, SCORE_SENTIMENT, AGGREGATE_AND_STORE):
        options[activity] = ActivityOptions(
            start_to_close_timeout=start_to_close_timeout,
            schedule_to_close_timeout=schedule_to_close_timeout,
            heartbeat_timeout=heartbeat_timeout if activity == SCORE_SENTIMENT else None,
            retry_policy=policy_for_activity(activity, default_policy),
        )
    return options
