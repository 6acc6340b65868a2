"""Workflow-specific exception types shared across modules."""

from __future__ import annotations

from typing import Any, Literal

from .models import ActivityFailure, ErrorClassification


class WorkflowEngineError(Exception):
    """Base class for workflow-related failures."""


class InputValidationError(WorkflowEngineError):
    """Business input rejected before a workflow is created. Never retried."""

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class WorkflowNotFound(WorkflowEngineError):
    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"workflow {workflow_id} not found")


class WorkflowAlreadyStarted(WorkflowEngineError):
    """Two starts produced the same workflow id (same product, same millisecond)."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"workflow {workflow_id} already exists")


class HistoryConflictError(WorkflowEngineError):
    """Raised when an append does not extend the history the writer last saw."""

    def __init__(self, workflow_id: str, expected: int, actual: int):
        self.workflow_id = workflow_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"history conflict for {workflow_id}: expected sequence {expected}, found {actual}"
        )


class LeaseUnavailable(WorkflowEngineError):
    """Another process currently owns the history of this workflow."""

    def __init__(self, workflow_id: str):
        self.workflow_id = workflow_id
        super().__init__(f"history lease for {workflow_id} is held elsewhere")


class WorkflowFailed(WorkflowEngineError):
    """Surfaced to callers waiting on a workflow that did not complete."""

    def __init__(self, workflow_id: str, status: str, failure: dict[str, Any] | None):
        self.workflow_id = workflow_id
        self.status = status
        self.failure = dict(failure or {})
        reason = self.failure.get("message") or self.failure.get("error_type") or status
        super().__init__(f"workflow {workflow_id} {status}: {reason}")


class ActivityError(WorkflowEngineError):
    """Failure raised by an activity, classified for the retry policy."""

    classification: ErrorClassification = ErrorClassification.TRANSIENT

    def __init__(self, message: str, error_type: str | None = None):
        self.failure = ActivityFailure(
            classification=self.classification,
            error_type=error_type or self.default_error_type(),
            message=message,
        )
        super().__init__(message)

    @classmethod
    def default_error_type(cls) -> str:
        return "activity_error"


class TransientActivityError(ActivityError):
    """Network, timeout or backend-unavailable failures; retried per policy."""

    classification = ErrorClassification.TRANSIENT

    @classmethod
    def default_error_type(cls) -> str:
        return "transient_error"


class TerminalActivityError(ActivityError):
    """Failures that cannot succeed on retry, e.g. a malformed backend response."""

    classification = ErrorClassification.TERMINAL

    @classmethod
    def default_error_type(cls) -> str:
        return "terminal_error"


DeadlineScope = Literal["attempt", "invocation"]


class DeadlineExceeded(ActivityError):
    """Wall-clock bound exceeded.

    The attempt (start-to-close) bound is transient; the invocation
    (schedule-to-close) bound covers all retries and is terminal.
    """

    def __init__(self, scope: DeadlineScope, timeout_seconds: float, error_type: str | None = None):
        self.scope = scope
        self.timeout_seconds = timeout_seconds
        self.classification = (
            ErrorClassification.TERMINAL
            if scope == "invocation"
            else ErrorClassification.TRANSIENT
        )
        label = "schedule_to_close" if scope == "invocation" else "start_to_close"
        super().__init__(
            f"{label} timeout of {timeout_seconds:g}s exceeded",
            error_type or f"{label}_timeout",
        )


class HeartbeatTimeout(DeadlineExceeded):
    """The attempt stopped signalling liveness and is treated as dead."""

    def __init__(self, timeout_seconds: float):
        super().__init__("attempt", timeout_seconds, error_type="heartbeat_timeout")
        self.failure = self.failure.model_copy(
            update={"message": f"no heartbeat within {timeout_seconds:g}s"}
        )
