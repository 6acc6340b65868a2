"""Workflow history primitives and the projection rebuilt from them."""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

from ..schemas import iso_timestamp


WORKFLOW_TYPE = "product_sentiment"

REGISTER_PRODUCT = "register_product"
FETCH_REVIEWS = "fetch_reviews"
SCORE_SENTIMENT = "score_sentiment"
AGGREGATE_AND_STORE = "aggregate_and_store"

ACTIVITY_NAMES: tuple[str, ...] = (
    REGISTER_PRODUCT,
    FETCH_REVIEWS,
    SCORE_SENTIMENT,
    AGGREGATE_AND_STORE,
)


def score_step_key(index: int) -> str:
    """Step key of the index-th fan-out scoring invocation."""
    return f"{SCORE_SENTIMENT}:{index}"


class WorkflowStatus(str, Enum):
    """Lifecycle of a workflow instance; the last four values are absorbing."""

    CREATED = "created"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    CANCELLED = "cancelled"


TERMINAL_STATUSES: frozenset[WorkflowStatus] = frozenset(
    {
        WorkflowStatus.COMPLETED,
        WorkflowStatus.FAILED,
        WorkflowStatus.TIMED_OUT,
        WorkflowStatus.CANCELLED,
    }
)


class EventKind(str, Enum):
    """Kinds of events recorded in a workflow history."""

    WORKFLOW_STARTED = "WorkflowStarted"
    ACTIVITY_SCHEDULED = "ActivityScheduled"
    ACTIVITY_COMPLETED = "ActivityCompleted"
    ACTIVITY_FAILED = "ActivityFailed"
    ACTIVITY_RETRYING = "ActivityRetrying"
    WORKFLOW_COMPLETED = "WorkflowCompleted"
    WORKFLOW_FAILED = "WorkflowFailed"
    WORKFLOW_CANCELLED = "WorkflowCancelled"
    WORKFLOW_TIMED_OUT = "WorkflowTimedOut"


class ErrorClassification(str, Enum):
    """Whether a failure may be retried."""

    TRANSIENT = "transient"
    TERMINAL = "terminal"


class ActivityFailure(BaseModel):
    """Tagged description of one failed activity attempt."""

    model_config = ConfigDict(extra="forbid")

    classification: ErrorClassification
    error_type: str
    message: str = ""
    attempt: int | None = None

    @property
    def terminal(self) -> bool:
        return self.classification is ErrorClassification.TERMINAL

    def with_attempt(self, attempt: int) -> "ActivityFailure":
        return self.model_copy(update={"attempt": attempt})


class HistoryEvent(BaseModel):
    """Durable history entry; `sequence` totally orders one workflow's events."""

    model_config = ConfigDict(extra="forbid")

    id: str
    workflow_id: str
    sequence: int = Field(default=0)
    ts: str
    kind: EventKind
    payload: dict[str, Any] = Field(default_factory=dict)


def new_history_event(
    workflow_id: str, kind: EventKind, payload: dict[str, Any] | None = None
) -> HistoryEvent:
    """Create an event; the history store assigns the sequence on append."""
    return HistoryEvent(
        id=str(uuid4()),
        workflow_id=workflow_id,
        sequence=0,
        ts=iso_timestamp(),
        kind=kind,
        payload=dict(payload or {}),
    )


class HistoryGapError(ValueError):
    """Raised when events are applied out of sequence order."""


class StepStatus(str, Enum):
    SCHEDULED = "scheduled"
    RETRYING = "retrying"
    COMPLETED = "completed"
    FAILED = "failed"


class StepState(BaseModel):
    """Projected state of one logical pipeline step."""

    model_config = ConfigDict(extra="forbid")

    step: str
    activity: str
    args: list[Any] = Field(default_factory=list)
    attempt: int = 1
    status: StepStatus = StepStatus.SCHEDULED
    result: Any = None
    failure: ActivityFailure | None = None
    scheduled_at: float = 0.0
    # When the current attempt became runnable; its start-to-close clock starts here.
    due_at: float = 0.0
    options: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.status in {StepStatus.COMPLETED, StepStatus.FAILED}


class WorkflowInstance(BaseModel):
    """In-memory projection of a workflow history.

    Never mutated except through `apply`, so any instance can be discarded and
    rebuilt from the durable history at any time.
    """

    model_config = ConfigDict(extra="forbid")

    id: str
    workflow_type: str = WORKFLOW_TYPE
    input: dict[str, Any] = Field(default_factory=dict)
    status: WorkflowStatus = WorkflowStatus.CREATED
    steps: dict[str, StepState] = Field(default_factory=dict)
    result: dict[str, Any] | None = None
    failure: dict[str, Any] | None = None
    last_sequence: int = 0
    started_at: str | None = None
    started_at_epoch: float | None = None
    closed_at: str | None = None

    @property
    def product_name(self) -> str:
        return str(self.input.get("product_name") or "")

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def step(self, key: str) -> StepState | None:
        return self.steps.get(key)

    def pending_steps(self) -> list[StepState]:
        """Steps that were scheduled but have no terminal outcome yet."""
        return [state for state in self.steps.values() if not state.is_terminal]

    @classmethod
    def replay(cls, workflow_id: str, events: Iterable[HistoryEvent]) -> "WorkflowInstance":
        instance = cls(id=workflow_id)
        for event in events:
            instance.apply(event)
        return instance

    def apply(self, event: HistoryEvent) -> None:
        """Fold one event into the projection."""
        if event.sequence != self.last_sequence + 1:
            msg = (
                f"history gap for {self.id}: expected sequence "
                f"{self.last_sequence + 1}, got {event.sequence}"
            )
            raise HistoryGapError(msg)
        self.last_sequence = event.sequence
        payload = event.payload
        kind = event.kind

        if kind is EventKind.WORKFLOW_STARTED:
            self.workflow_type = payload.get("workflow_type", WORKFLOW_TYPE)
            self.input = dict(payload.get("input") or {})
            self.started_at = event.ts
            self.started_at_epoch = payload.get("started_at")
            self.status = WorkflowStatus.RUNNING
            return

        if kind is EventKind.ACTIVITY_SCHEDULED:
            self.steps[payload["step"]] = StepState(
                step=payload["step"],
                activity=payload["activity"],
                args=list(payload.get("args") or []),
                attempt=int(payload.get("attempt") or 1),
                scheduled_at=float(payload.get("scheduled_at") or 0.0),
                due_at=float(payload.get("scheduled_at") or 0.0),
                options=dict(payload.get("options") or {}),
            )
            return

        if kind in {
            EventKind.ACTIVITY_COMPLETED,
            EventKind.ACTIVITY_FAILED,
            EventKind.ACTIVITY_RETRYING,
        }:
            state = self.steps.get(payload.get("step", ""))
            if state is None:
                msg = f"outcome for unscheduled step {payload.get('step')!r} in {self.id}"
                raise HistoryGapError(msg)
            if kind is EventKind.ACTIVITY_COMPLETED:
                state.status = StepStatus.COMPLETED
                state.result = payload.get("result")
                state.attempt = int(payload.get("attempt") or state.attempt)
            elif kind is EventKind.ACTIVITY_FAILED:
                state.status = StepStatus.FAILED
                state.failure = ActivityFailure.model_validate(payload["failure"])
                state.attempt = int(payload.get("attempt") or state.attempt)
            else:
                state.status = StepStatus.RETRYING
                state.failure = ActivityFailure.model_validate(payload["failure"])
                state.attempt = int(payload["next_attempt"])
                state.due_at = float(payload.get("due_at") or state.due_at)
            return

        if self.is_terminal:
            return
        self.closed_at = event.ts
        if kind is EventKind.WORKFLOW_COMPLETED:
            self.status = WorkflowStatus.COMPLETED
            self.result = dict(payload.get("result") or {})
        elif kind is EventKind.WORKFLOW_FAILED:
            self.status = WorkflowStatus.FAILED
            self.failure = dict(payload.get("failure") or {})
            self.failure["step"] = payload.get("step")
        elif kind is EventKind.WORKFLOW_CANCELLED:
            self.status = WorkflowStatus.CANCELLED
            self.failure = {
                "error_type": "cancelled",
                "message": payload.get("reason") or "cancelled",
            }
        elif kind is EventKind.WORKFLOW_TIMED_OUT:
            self.status = WorkflowStatus.TIMED_OUT
            self.failure = {
                "error_type": "workflow_timed_out",
                "message": f"workflow exceeded {payload.get('timeout_seconds')}s",
            }
