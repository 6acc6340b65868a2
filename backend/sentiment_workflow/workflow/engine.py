"""Durable workflow engine implementation.

The history store is the source of truth. Every state change is an appended
event; the `WorkflowInstance` projection is rebuilt from those events and
`pipeline.decide` turns a projection into commands. Appends for one workflow
happen only while holding its owner lock and lease, and carry the sequence the
writer last saw, so a second writer surfaces as `HistoryConflictError` rather
than an interleaved history.
"""

from __future__ import annotations

import asyncio
import logging
import time
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, AsyncIterator, Callable, Mapping
from uuid import uuid4

from ..kv_store import InMemoryKeyValueStore, KeyValueStore
from ..lease import NoopWorkflowLease, WorkflowLease
from ..task_queue import (
    ATTEMPT_CHECK_REASON,
    TIMEOUT_REASON,
    ActivityTask,
    TaskQueue,
    WorkflowTask,
)
from .exceptions import (
    DeadlineExceeded,
    HeartbeatTimeout,
    HistoryConflictError,
    InputValidationError,
    LeaseUnavailable,
    WorkflowAlreadyStarted,
    WorkflowFailed,
    WorkflowNotFound,
)
from .models import (
    WORKFLOW_TYPE,
    ActivityFailure,
    EventKind,
    HistoryEvent,
    HistoryGapError,
    StepState,
    WorkflowInstance,
    WorkflowStatus,
    new_history_event,
)
from .pipeline import CompleteWorkflow, FailWorkflow, ScheduleActivity, decide
from .retries import ActivityOptions, Retry, next_action, policy_for_activity
from .store import HistoryStore

if TYPE_CHECKING:
    from ..executor import ActivityInfo, ActivityOutcome

logger = logging.getLogger(__name__)


@dataclass
class WorkflowTaskResult:
    """Outcome of one decision task, returned to the worker for its cache."""

    instance: WorkflowInstance
    replayed_events: int
    used_cache: bool


class WorkflowEngine:
    """Drives product sentiment workflows from their durable histories."""

    def __init__(
        self,
        history_store: HistoryStore,
        task_queue: TaskQueue,
        *,
        activity_options: Mapping[str, ActivityOptions] | None = None,
        lease: WorkflowLease | None = None,
        namespace: str = "default",
        task_queue_name: str = "sentiment-analysis",
        execution_timeout: float | None = None,
        liveness: KeyValueStore | None = None,
        attempt_check_grace: float = 1.0,
        clock: Callable[[], float] = time.time,
    ):
        self.history_store = history_store
        self.task_queue = task_queue
        self.activity_options = dict(activity_options or {})
        self.lease = lease or NoopWorkflowLease()
        self.namespace = namespace
        self.task_queue_name = task_queue_name
        self.execution_timeout = execution_timeout
        # Heartbeats of running attempts, shared by every worker.
        self.liveness = liveness or InMemoryKeyValueStore()
        self.attempt_check_grace = max(attempt_check_grace, 0.0)
        self._clock = clock
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}
        self._closed_signals: dict[str, set[asyncio.Event]] = {}

    @staticmethod
    def _lease_key(workflow_id: str) -> str:
        return f"workflow:{workflow_id}"

    @asynccontextmanager
    async def _owner(self, workflow_id: str) -> AsyncIterator[None]:
        """Exclusive right to append to one workflow's history."""
        lock = self._locks.setdefault(workflow_id, asyncio.Lock())
        self._lock_users[workflow_id] = self._lock_users.get(workflow_id, 0) + 1
        try:
            async with lock:
                key = self._lease_key(workflow_id)
                if not await self.lease.acquire(key):
                    raise LeaseUnavailable(workflow_id)
                try:
                    yield
                finally:
                    await self.lease.release(key)
        finally:
            users = self._lock_users[workflow_id] - 1
            if users:
                self._lock_users[workflow_id] = users
            else:
                del self._lock_users[workflow_id]
                self._locks.pop(workflow_id, None)

    def options_for(self, activity: str) -> ActivityOptions:
        options = self.activity_options.get(activity)
        if options is None:
            options = ActivityOptions(retry_policy=policy_for_activity(activity))
        return options

    def _append(
        self, instance: WorkflowInstance, kind: EventKind, payload: dict[str, Any]
    ) -> HistoryEvent:
        event = new_history_event(instance.id, kind, payload)
        stored = self.history_store.append(event, expected_sequence=instance.last_sequence)
        instance.apply(stored)
        return stored

    def _replay(self, workflow_id: str) -> WorkflowInstance:
        return WorkflowInstance.replay(workflow_id, self.history_store.read(workflow_id))

    def _load(
        self, workflow_id: str, cached: WorkflowInstance | None
    ) -> tuple[WorkflowInstance, int, bool]:
        if cached is not None and cached.id == workflow_id:
            events = self.history_store.read(workflow_id, after_sequence=cached.last_sequence)
            try:
                for event in events:
                    cached.apply(event)
            except HistoryGapError:
                logger.warning(
                    "cached projection out of step with history; replaying",
                    extra={"workflow_id": workflow_id},
                )
            else:
                return cached, len(events), True
        events = self.history_store.read(workflow_id)
        return WorkflowInstance.replay(workflow_id, events), len(events), False

    def _notify_closed(self, workflow_id: str) -> None:
        for signal in self._closed_signals.pop(workflow_id, ()):
            signal.set()

    def _timeout_remaining(self, instance: WorkflowInstance) -> float | None:
        if not self.execution_timeout or instance.started_at_epoch is None:
            return None
        return self.execution_timeout - (self._clock() - instance.started_at_epoch)

    def _execution_timed_out(self, instance: WorkflowInstance) -> bool:
        remaining = self._timeout_remaining(instance)
        return remaining is not None and remaining <= 0

    async def _arm_timeout(self, workflow_id: str, delay: float) -> None:
        await self.task_queue.put_workflow_task(
            WorkflowTask(workflow_id=workflow_id, reason=TIMEOUT_REASON),
            delay=max(delay, 0.001),
        )

    def _attempt_window(self, options: ActivityOptions) -> float:
        window = options.start_to_close_timeout
        if options.heartbeat_timeout:
            window = min(window, options.heartbeat_timeout)
        return window

    async def _arm_attempt_check(
        self, workflow_id: str, step: str, attempt: int, delay: float
    ) -> None:
        await self.task_queue.put_workflow_task(
            WorkflowTask(
                workflow_id=workflow_id,
                reason=ATTEMPT_CHECK_REASON,
                step=step,
                attempt=attempt,
            ),
            delay=max(delay, 0.001),
        )

    async def _dispatch(self, task: ActivityTask, *, delay: float = 0.0) -> None:
        """Queue one attempt together with the check that notices if it goes missing."""
        await self.task_queue.put_activity_task(task, delay=delay)
        window = self._attempt_window(ActivityOptions.from_payload(task.options))
        await self._arm_attempt_check(
            task.workflow_id,
            task.step,
            task.attempt,
            delay + window + self.attempt_check_grace,
        )

    async def start_workflow(self, product_name: str | None) -> str:
        """Validate input, record `WorkflowStarted` and queue the first decision."""
        name = (product_name or "").strip()
        if not name:
            raise InputValidationError("Product name is required", field="productName")
        now = self._clock()
        workflow_id = f"sentiment-analysis-{name}-{int(now * 1000)}"
        async with self._owner(workflow_id):
            if self.history_store.exists(workflow_id):
                raise WorkflowAlreadyStarted(workflow_id)
            event = new_history_event(
                workflow_id,
                EventKind.WORKFLOW_STARTED,
                {
                    "workflow_type": WORKFLOW_TYPE,
                    "input": {"product_name": name},
                    "namespace": self.namespace,
                    "task_queue": self.task_queue_name,
                    "started_at": now,
                },
            )
            try:
                self.history_store.append(event, expected_sequence=0)
            except HistoryConflictError as exc:
                raise WorkflowAlreadyStarted(workflow_id) from exc
        await self.task_queue.put_workflow_task(
            WorkflowTask(workflow_id=workflow_id, reason="start")
        )
        if self.execution_timeout:
            await self._arm_timeout(workflow_id, self.execution_timeout)
        logger.info(
            "workflow started product_name=%s",
            name,
            extra={"workflow_id": workflow_id},
        )
        return workflow_id

    def get_history(self, workflow_id: str) -> list[HistoryEvent]:
        events = self.history_store.read(workflow_id)
        if not events:
            raise WorkflowNotFound(workflow_id)
        return events

    def describe(self, workflow_id: str) -> WorkflowInstance:
        return WorkflowInstance.replay(workflow_id, self.get_history(workflow_id))

    async def wait_for_result(
        self,
        workflow_id: str,
        timeout: float | None = None,
        *,
        poll_interval: float = 0.5,
    ) -> dict[str, Any]:
        """Block until the workflow closes.

        Completion in this process wakes the waiter at once; completions
        recorded by other processes are picked up by polling the history.
        """
        loop = asyncio.get_running_loop()
        deadline = None if timeout is None else loop.time() + timeout
        while True:
            instance = self.describe(workflow_id)
            if instance.status is WorkflowStatus.COMPLETED:
                return dict(instance.result or {})
            if instance.is_terminal:
                raise WorkflowFailed(workflow_id, instance.status.value, instance.failure)
            wait = poll_interval
            if deadline is not None:
                remaining = deadline - loop.time()
                if remaining <= 0:
                    raise asyncio.TimeoutError(
                        f"workflow {workflow_id} still {instance.status.value}"
                    )
                wait = min(wait, remaining)
            signal = asyncio.Event()
            waiters = self._closed_signals.setdefault(workflow_id, set())
            waiters.add(signal)
            try:
                await asyncio.wait_for(signal.wait(), wait)
            except asyncio.TimeoutError:
                continue
            finally:
                waiters.discard(signal)
                if not waiters and self._closed_signals.get(workflow_id) is waiters:
                    del self._closed_signals[workflow_id]

    async def cancel(self, workflow_id: str, reason: str = "cancelled by request") -> bool:
        """Request cancellation; already-closed workflows are left untouched."""
        async with self._owner(workflow_id):
            instance = self.describe(workflow_id)
            if instance.is_terminal:
                return False
            self._append(instance, EventKind.WORKFLOW_CANCELLED, {"reason": reason})
        self._notify_closed(workflow_id)
        await self.task_queue.put_workflow_task(
            WorkflowTask(workflow_id=workflow_id, reason="cancelled")
        )
        logger.info("workflow cancelled reason=%s", reason, extra={"workflow_id": workflow_id})
        return True

    async def process_workflow_task(
        self, task: WorkflowTask, cached: WorkflowInstance | None = None
    ) -> WorkflowTaskResult:
        """Advance a workflow as far as its history allows."""
        workflow_id = task.workflow_id
        dispatch: list[ActivityTask] = []
        rearm: float | None = None
        try:
            async with self._owner(workflow_id):
                instance, replayed, used_cache = self._load(workflow_id, cached)
                result = WorkflowTaskResult(instance, replayed, used_cache)
                if instance.status is WorkflowStatus.CREATED:
                    logger.warning(
                        "workflow task for unknown workflow reason=%s",
                        task.reason,
                        extra={"workflow_id": workflow_id},
                    )
                    return result
                if instance.is_terminal:
                    return result
                if self._execution_timed_out(instance):
                    self._append(
                        instance,
                        EventKind.WORKFLOW_TIMED_OUT,
                        {"timeout_seconds": self.execution_timeout},
                    )
                else:
                    self._apply_commands(instance, dispatch)
                    if task.reason == TIMEOUT_REASON and not instance.is_terminal:
                        # Queue delay and the wall clock can disagree slightly.
                        rearm = self._timeout_remaining(instance)
        finally:
            # Scheduled events already appended must reach the queue even if
            # a later append failed.
            for activity_task in dispatch:
                await self._dispatch(activity_task)
        if rearm is not None:
            await self._arm_timeout(workflow_id, rearm)
        if instance.is_terminal:
            self._log_closed(instance)
            self._notify_closed(workflow_id)
        return result

    def _apply_commands(self, instance: WorkflowInstance, dispatch: list[ActivityTask]) -> None:
        for command in decide(instance):
            if isinstance(command, ScheduleActivity):
                options = self.options_for(command.activity).to_payload()
                scheduled_at = self._clock()
                self._append(
                    instance,
                    EventKind.ACTIVITY_SCHEDULED,
                    {
                        "step": command.step,
                        "activity": command.activity,
                        "args": list(command.args),
                        "attempt": 1,
                        "scheduled_at": scheduled_at,
                        "options": options,
                    },
                )
                dispatch.append(
                    ActivityTask(
                        workflow_id=instance.id,
                        step=command.step,
                        activity=command.activity,
                        args=list(command.args),
                        attempt=1,
                        options=options,
                        first_scheduled_at=scheduled_at,
                    )
                )
            elif isinstance(command, CompleteWorkflow):
                self._append(instance, EventKind.WORKFLOW_COMPLETED, {"result": command.result})
            elif isinstance(command, FailWorkflow):
                self._append(
                    instance,
                    EventKind.WORKFLOW_FAILED,
                    {"step": command.step, "failure": command.failure.model_dump(mode="json")},
                )
            if instance.is_terminal:
                break
        if dispatch:
            logger.info(
                "activities scheduled steps=%s",
                ",".join(task.step for task in dispatch),
                extra={"workflow_id": instance.id},
            )

    def _log_closed(self, instance: WorkflowInstance) -> None:
        if instance.status is WorkflowStatus.COMPLETED:
            logger.info(
                "workflow completed result=%s",
                instance.result,
                extra={"workflow_id": instance.id},
            )
            return
        logger.error(
            "workflow closed status=%s failure=%s",
            instance.status.value,
            instance.failure,
            extra={"workflow_id": instance.id},
        )

    async def complete_activity_task(self, task: ActivityTask, outcome: ActivityOutcome) -> bool:
        """Record the outcome of one attempt; returns False when it was dropped."""
        return await self._record_outcome(task, outcome.ok, outcome.value, outcome.failure)

    async def _record_outcome(
        self,
        task: ActivityTask,
        ok: bool,
        value: Any,
        failure: ActivityFailure | None,
    ) -> bool:
        workflow_id = task.workflow_id
        follow_up = False
        retry_delay: float | None = None
        async with self._owner(workflow_id):
            instance = self._replay(workflow_id)
            state = instance.step(task.step)
            if state is None:
                logger.warning(
                    "outcome for unscheduled step=%s dropped",
                    task.step,
                    extra={"workflow_id": workflow_id},
                )
                return False
            if state.is_terminal or task.attempt != state.attempt:
                logger.info(
                    "duplicate or stale outcome dropped step=%s attempt=%s current_attempt=%s",
                    task.step,
                    task.attempt,
                    state.attempt,
                    extra={"workflow_id": workflow_id},
                )
                return False

            base = {"step": task.step, "activity": task.activity, "attempt": task.attempt}
            if ok:
                self._append(
                    instance,
                    EventKind.ACTIVITY_COMPLETED,
                    {**base, "result": value},
                )
                follow_up = not instance.is_terminal
            else:
                failure = _attempt_failure(task, failure)
                decision = None
                if not instance.is_terminal and not failure.terminal:
                    options = ActivityOptions.from_payload(state.options)
                    elapsed = self._clock() - state.scheduled_at
                    decision = next_action(task.attempt, failure, options.retry_policy, elapsed)
                    if isinstance(decision, Retry) and options.schedule_to_close_timeout is not None:
                        if elapsed + decision.delay >= options.schedule_to_close_timeout:
                            decision = None
                            failure = DeadlineExceeded(
                                "invocation", options.schedule_to_close_timeout
                            ).failure.with_attempt(task.attempt)
                if isinstance(decision, Retry):
                    self._append(
                        instance,
                        EventKind.ACTIVITY_RETRYING,
                        {
                            **base,
                            "next_attempt": task.attempt + 1,
                            "delay_seconds": decision.delay,
                            "due_at": self._clock() + decision.delay,
                            "failure": failure.model_dump(mode="json"),
                        },
                    )
                    retry_delay = decision.delay
                    logger.warning(
                        "activity retry scheduled step=%s attempt=%s delay=%s error_type=%s",
                        task.step,
                        task.attempt + 1,
                        decision.delay,
                        failure.error_type,
                        extra={"workflow_id": workflow_id},
                    )
                else:
                    self._append(
                        instance,
                        EventKind.ACTIVITY_FAILED,
                        {**base, "failure": failure.model_dump(mode="json")},
                    )
                    follow_up = not instance.is_terminal
                    logger.error(
                        "activity failed step=%s attempt=%s error_type=%s classification=%s",
                        task.step,
                        task.attempt,
                        failure.error_type,
                        failure.classification.value,
                        extra={"workflow_id": workflow_id},
                    )

        if retry_delay is not None:
            retry = task.model_copy(update={"task_id": str(uuid4()), "attempt": task.attempt + 1})
            await self._dispatch(retry, delay=retry_delay)
        if follow_up:
            await self.task_queue.put_workflow_task(
                WorkflowTask(workflow_id=workflow_id, reason="activity_closed")
            )
        return True

    @staticmethod
    def _heartbeat_key(workflow_id: str, step: str, attempt: int) -> str:
        return f"heartbeat:{workflow_id}:{step}:{attempt}"

    async def record_heartbeat(self, info: ActivityInfo, details: Any) -> None:
        """Persist the last sign of life of a running attempt."""
        options = self.options_for(info.activity)
        await self.liveness.set(
            self._heartbeat_key(info.workflow_id, info.step, info.attempt),
            str(self._clock()),
            ttl_seconds=options.start_to_close_timeout + self.attempt_check_grace,
        )
        logger.debug(
            "activity heartbeat step=%s attempt=%s details=%s",
            info.step,
            info.attempt,
            details,
            extra={"workflow_id": info.workflow_id},
        )

    async def _last_heartbeat(self, workflow_id: str, step: str, attempt: int) -> float | None:
        raw = await self.liveness.get(self._heartbeat_key(workflow_id, step, attempt))
        return None if raw is None else float(raw)

    async def check_attempt(self, task: WorkflowTask) -> bool:
        """Fail the watched attempt if it outlived its deadline or went silent.

        This is how an attempt lost with its worker gets retried. Returns True
        when a failure was recorded; otherwise the check re-arms itself until
        the attempt closes.
        """
        workflow_id = task.workflow_id
        instance = self._replay(workflow_id)
        state = instance.step(task.step or "")
        if (
            instance.is_terminal
            or state is None
            or state.is_terminal
            or state.attempt != task.attempt
        ):
            return False

        options = ActivityOptions.from_payload(state.options)
        grace = self.attempt_check_grace
        now = self._clock()
        deadline = (state.due_at or state.scheduled_at) + options.start_to_close_timeout
        error: DeadlineExceeded | None = None
        if now >= deadline + grace:
            error = DeadlineExceeded("attempt", options.start_to_close_timeout)
        elif options.heartbeat_timeout:
            last_beat = await self._last_heartbeat(workflow_id, state.step, state.attempt)
            if last_beat is None:
                # Not started yet; only start-to-close applies until it does.
                deadline = min(deadline, now + options.heartbeat_timeout)
            elif now >= last_beat + options.heartbeat_timeout + grace:
                error = HeartbeatTimeout(options.heartbeat_timeout)
            else:
                deadline = min(deadline, last_beat + options.heartbeat_timeout)

        if error is None:
            await self._arm_attempt_check(
                workflow_id, state.step, state.attempt, deadline + grace - now
            )
            return False
        logger.warning(
            "attempt abandoned step=%s attempt=%s error_type=%s",
            state.step,
            state.attempt,
            error.failure.error_type,
            extra={"workflow_id": workflow_id},
        )
        return await self._record_outcome(
            _task_for_step(workflow_id, state), False, None, error.failure
        )

    async def recover(self) -> int:
        """Re-dispatch work for every running workflow after a restart.

        Activity execution is at-least-once; the owner drops the outcome of
        any duplicate attempt.
        """
        recovered = 0
        for workflow_id in self.history_store.list_workflow_ids():
            try:
                instance = self._replay(workflow_id)
            except HistoryGapError:
                logger.exception(
                    "history could not be replayed; skipping recovery",
                    extra={"workflow_id": workflow_id},
                )
                continue
            if instance.status is not WorkflowStatus.RUNNING:
                continue
            await self.task_queue.put_workflow_task(
                WorkflowTask(workflow_id=workflow_id, reason="recover")
            )
            remaining = self._timeout_remaining(instance)
            if remaining is not None:
                await self._arm_timeout(workflow_id, remaining)
            pending = instance.pending_steps()
            for state in pending:
                await self._dispatch(_task_for_step(workflow_id, state))
            logger.info(
                "workflow recovered pending_steps=%s",
                len(pending),
                extra={"workflow_id": workflow_id},
            )
            recovered += 1
        return recovered


def _attempt_failure(task: ActivityTask, failure: ActivityFailure | None) -> ActivityFailure:
    if failure is None:
        failure = ActivityFailure(
            classification="transient",
            error_type="missing_failure",
            message="activity reported failure without details",
        )
    return failure.with_attempt(task.attempt)


def _task_for_step(workflow_id: str, state: StepState) -> ActivityTask:
    """Activity task for the current attempt of a step, rebuilt from history."""
    return ActivityTask(
        workflow_id=workflow_id,
        step=state.step,
        activity=state.activity,
        args=list(state.args),
        attempt=state.attempt,
        options=dict(state.options),
        first_scheduled_at=state.scheduled_at,
    )
