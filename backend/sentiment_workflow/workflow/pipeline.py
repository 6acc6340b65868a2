"""Deterministic decision logic for the product sentiment pipeline.

`decide` interprets a projected history and returns what must happen next:
register the product, fetch its reviews, score every review concurrently,
then aggregate and persist. It never reads the clock, randomness or external
I/O; everything it needs is in the projection, so replaying the same events
always yields the same commands.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Sequence, Union

from .models import (
    AGGREGATE_AND_STORE,
    FETCH_REVIEWS,
    REGISTER_PRODUCT,
    SCORE_SENTIMENT,
    ActivityFailure,
    StepState,
    StepStatus,
    WorkflowInstance,
    WorkflowStatus,
    score_step_key,
)


@dataclass(frozen=True)
class ScheduleActivity:
    step: str
    activity: str
    args: tuple[Any, ...]


@dataclass(frozen=True)
class CompleteWorkflow:
    result: dict[str, Any]


@dataclass(frozen=True)
class FailWorkflow:
    step: str
    failure: ActivityFailure


Command = Union[ScheduleActivity, CompleteWorkflow, FailWorkflow]


@dataclass(frozen=True)
class FanOutBarrier:
    """Join barrier over the N scoring invocations of one workflow.

    Built from the projection, so its state is as durable as the history.
    """

    step_keys: tuple[str, ...]
    outcomes: tuple[StepState | None, ...]

    @classmethod
    def for_instance(cls, instance: WorkflowInstance, expected: int) -> "FanOutBarrier":
        keys = tuple(score_step_key(index) for index in range(expected))
        return cls(step_keys=keys, outcomes=tuple(instance.step(key) for key in keys))

    @property
    def expected(self) -> int:
        return len(self.step_keys)

    def unscheduled(self) -> list[int]:
        return [index for index, state in enumerate(self.outcomes) if state is None]

    @property
    def outstanding(self) -> int:
        return sum(1 for state in self.outcomes if state is None or not state.is_terminal)

    @property
    def closed(self) -> bool:
        """True once every invocation has a terminal outcome."""
        return self.outstanding == 0

    def first_failure(self) -> tuple[str, ActivityFailure] | None:
        for key, state in zip(self.step_keys, self.outcomes):
            if state is not None and state.status is StepStatus.FAILED and state.failure:
                return key, state.failure
        return None

    def results(self) -> list[float]:
        """Scores in review order; only meaningful once closed without failures."""
        return [float(state.result) for state in self.outcomes if state is not None]


def review_text(review: Any) -> str:
    if isinstance(review, dict):
        return str(review.get("text") or "")
    return str(review)


def _step_outcome(
    instance: WorkflowInstance, step: str, activity: str, args: Sequence[Any]
) -> tuple[StepState | None, list[Command]]:
    """Return the completed step, or the commands to issue while it is not."""
    state = instance.step(step)
    if state is None:
        return None, [ScheduleActivity(step, activity, tuple(args))]
    if state.status is StepStatus.FAILED and state.failure is not None:
        return None, [FailWorkflow(step, state.failure)]
    if state.status is not StepStatus.COMPLETED:
        return None, []
    return state, []


def decide(instance: WorkflowInstance) -> list[Command]:
    """Return the commands that follow from the history replayed so far."""
    if instance.status is not WorkflowStatus.RUNNING:
        return []

    register, commands = _step_outcome(
        instance, REGISTER_PRODUCT, REGISTER_PRODUCT, (instance.product_name,)
    )
    if register is None:
        return commands
    product_id = register.result

    fetch, commands = _step_outcome(
        instance, FETCH_REVIEWS, FETCH_REVIEWS, (instance.product_name,)
    )
    if fetch is None:
        return commands
    reviews = list(fetch.result or [])

    barrier = FanOutBarrier.for_instance(instance, len(reviews))
    missing = barrier.unscheduled()
    if missing:
        return [
            ScheduleActivity(
                score_step_key(index), SCORE_SENTIMENT, (review_text(reviews[index]),)
            )
            for index in missing
        ]
    if not barrier.closed:
        return []
    failed = barrier.first_failure()
    if failed is not None:
        step, failure = failed
        return [FailWorkflow(step, failure)]

    aggregate, commands = _step_outcome(
        instance,
        AGGREGATE_AND_STORE,
        AGGREGATE_AND_STORE,
        (product_id, barrier.results()),
    )
    if aggregate is None:
        return commands
    return [CompleteWorkflow(dict(aggregate.result or {}))]
