"""Durable workflow engine for the product sentiment pipeline."""

from .activities import build_activity_map
from .context import ActivityContext
from .engine import WorkflowEngine, WorkflowTaskResult
from .exceptions import InputValidationError, WorkflowFailed, WorkflowNotFound
from .models import EventKind, HistoryEvent, WorkflowInstance, WorkflowStatus
from .retries import ACTIVITY_RETRY_RULES, ActivityOptions, RetryPolicy, build_activity_options
from .store import FileHistoryStore, HistoryStore, InMemoryHistoryStore

__all__ = [
    "ActivityContext",
    "ActivityOptions",
    "ACTIVITY_RETRY_RULES",
    "EventKind",
    "FileHistoryStore",
    "HistoryEvent",
    "HistoryStore",
    "InMemoryHistoryStore",
    "InputValidationError",
    "RetryPolicy",
    "WorkflowEngine",
    "WorkflowFailed",
    "WorkflowInstance",
    "WorkflowNotFound",
    "WorkflowStatus",
    "WorkflowTaskResult",
    "build_activity_map",
    "build_activity_options",
]
