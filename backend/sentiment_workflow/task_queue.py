"""Task queue primitives.

Workers poll two logical queues: workflow tasks (decide what to schedule next
for one workflow) and activity tasks (run one attempt of one activity).

Workflow tasks for a workflow whose projection is cached by a worker are routed
to that worker's sticky queue. A sticky task not pulled within the
schedule-to-start timeout moves back to the shared queue and the affinity is
dropped, so any worker may pick it up after a full history replay.
"""

from __future__ import annotations

import asyncio
import heapq
import itertools
import logging
import time
from collections import deque
from typing import Any, Callable, Protocol, Union
from uuid import uuid4

from pydantic import BaseModel, ConfigDict, Field

logger = logging.getLogger(__name__)


class WorkflowTask(BaseModel):
    """Request to advance one workflow by running its decision function."""

    model_config = ConfigDict(extra="forbid")

    task_id: str = Field(default_factory=lambda: str(uuid4()))
    workflow_id: str
    reason: str = "decide"
    # Set on attempt checks: the attempt being watched.
    step: str | None = None
    attempt: int | None = None


class ActivityTask(BaseModel):
    """One attempt of one activity invocation."""

    model_config = ConfigDict(extra="forbid")

    task_id: str = Field(default_factory=lambda: str(uuid4()))
    workflow_id: str
    step: str
    activity: str
    args: list[Any] = Field(default_factory=list)
    attempt: int = 1
    options: dict[str, Any] = Field(default_factory=dict)
    first_scheduled_at: float = 0.0


Task = Union[WorkflowTask, ActivityTask]

TIMEOUT_REASON = "timeout"
ATTEMPT_CHECK_REASON = "attempt_check"

# Timer tasks are never coalesced into, nor stand in for, a pending decision task.
TIMER_REASONS: frozenset[str] = frozenset({TIMEOUT_REASON, ATTEMPT_CHECK_REASON})


class TaskQueue(Protocol):
    async def put_workflow_task(self, task: WorkflowTask, *, delay: float = 0.0) -> None:
        """Enqueue a decision task, honouring sticky affinity."""

    async def put_activity_task(self, task: ActivityTask, *, delay: float = 0.0) -> None:
        """Enqueue an activity attempt, optionally after a backoff delay."""

    async def poll_workflow_task(
        self, worker_id: str, timeout: float | None = None
    ) -> WorkflowTask | None:
        """Pull the next decision task for `worker_id`, sticky queue first."""

    async def poll_activity_task(
        self, worker_id: str, timeout: float | None = None
    ) -> ActivityTask | None:
        """Pull the next due activity task."""

    async def set_sticky(self, workflow_id: str, worker_id: str) -> None:
        """Route future decision tasks of `workflow_id` to `worker_id`."""

    async def release_sticky(self, workflow_id: str) -> None:
        """Drop affinity so any worker may claim the workflow."""

    async def release_worker(self, worker_id: str) -> None:
        """Drop every affinity held by a worker and requeue its sticky tasks."""

    async def close(self) -> None:
        """Release resources held by the queue."""


class InMemoryTaskQueue:
    """Process-local task queue with sticky routing and delayed tasks."""

    def __init__(
        self,
        *,
        sticky_schedule_to_start_timeout: float = 10.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.sticky_schedule_to_start_timeout = max(sticky_schedule_to_start_timeout, 0.0)
        self._clock = clock
        self._shared_workflow: deque[WorkflowTask] = deque()
        self._sticky: dict[str, deque[tuple[float, WorkflowTask]]] = {}
        self._affinity: dict[str, str] = {}
        self._pending_workflows: set[str] = set()
        self._activity: deque[ActivityTask] = deque()
        self._delayed: list[tuple[float, int, Task]] = []
        self._counter = itertools.count()
        self._condition = asyncio.Condition()

    def affinity_for(self, workflow_id: str) -> str | None:
        return self._affinity.get(workflow_id)

    def stats(self) -> dict[str, int]:
        return {
            "workflow_shared": len(self._shared_workflow),
            "workflow_sticky": sum(len(queue) for queue in self._sticky.values()),
            "activity": len(self._activity),
            "delayed": len(self._delayed),
            "sticky_affinities": len(self._affinity),
        }

    async def put_workflow_task(self, task: WorkflowTask, *, delay: float = 0.0) -> None:
        async with self._condition:
            if delay > 0:
                self._push_delayed(delay, task)
            else:
                self._route_workflow_task(task)
            self._condition.notify_all()

    async def put_activity_task(self, task: ActivityTask, *, delay: float = 0.0) -> None:
        async with self._condition:
            if delay > 0:
                self._push_delayed(delay, task)
            else:
                self._activity.append(task)
            self._condition.notify_all()

    async def poll_workflow_task(
        self, worker_id: str, timeout: float | None = None
    ) -> WorkflowTask | None:
        return await self._poll(lambda: self._take_workflow_task(worker_id), timeout)

    async def poll_activity_task(
        self, worker_id: str, timeout: float | None = None  # noqa: ARG002
    ) -> ActivityTask | None:
        return await self._poll(self._take_activity_task, timeout)

    async def set_sticky(self, workflow_id: str, worker_id: str) -> None:
        async with self._condition:
            self._affinity[workflow_id] = worker_id

    async def release_sticky(self, workflow_id: str) -> None:
        async with self._condition:
            self._affinity.pop(workflow_id, None)

    async def release_worker(self, worker_id: str) -> None:
        async with self._condition:
            for workflow_id in [wf for wf, owner in self._affinity.items() if owner == worker_id]:
                self._affinity.pop(workflow_id, None)
            queue = self._sticky.pop(worker_id, None)
            if queue:
                self._shared_workflow.extend(task for _, task in queue)
            self._condition.notify_all()

    async def close(self) -> None:
        async with self._condition:
            self._shared_workflow.clear()
            self._sticky.clear()
            self._affinity.clear()
            self._pending_workflows.clear()
            self._activity.clear()
            self._delayed.clear()

    def _push_delayed(self, delay: float, task: Task) -> None:
        heapq.heappush(self._delayed, (self._clock() + delay, next(self._counter), task))

    def _route_workflow_task(self, task: WorkflowTask) -> None:
        if task.reason not in TIMER_REASONS:
            # A queued decision task already covers every event appended so far.
            if task.workflow_id in self._pending_workflows:
                return
            self._pending_workflows.add(task.workflow_id)
        worker_id = self._affinity.get(task.workflow_id)
        if worker_id is None:
            self._shared_workflow.append(task)
            return
        self._sticky.setdefault(worker_id, deque()).append((self._clock(), task))

    def _promote_due(self) -> None:
        now = self._clock()
        while self._delayed and self._delayed[0][0] <= now:
            _, _, task = heapq.heappop(self._delayed)
            if isinstance(task, WorkflowTask):
                self._route_workflow_task(task)
            else:
                self._activity.append(task)

    def _expire_sticky(self) -> None:
        now = self._clock()
        timeout = self.sticky_schedule_to_start_timeout
        for worker_id, queue in self._sticky.items():
            while queue and now - queue[0][0] >= timeout:
                _, task = queue.popleft()
                if self._affinity.get(task.workflow_id) == worker_id:
                    self._affinity.pop(task.workflow_id, None)
                self._shared_workflow.append(task)
                logger.info(
                    "sticky schedule-to-start timeout; affinity released worker=%s",
                    worker_id,
                    extra={"workflow_id": task.workflow_id},
                )

    def _take_workflow_task(self, worker_id: str) -> WorkflowTask | None:
        self._promote_due()
        self._expire_sticky()
        sticky = self._sticky.get(worker_id)
        if sticky:
            _, task = sticky.popleft()
        elif self._shared_workflow:
            task = self._shared_workflow.popleft()
        else:
            return None
        if task.reason not in TIMER_REASONS:
            self._pending_workflows.discard(task.workflow_id)
        return task

    def _take_activity_task(self) -> ActivityTask | None:
        self._promote_due()
        if self._activity:
            return self._activity.popleft()
        return None

    def _next_wakeup(self, deadline: float | None) -> float | None:
        now = self._clock()
        candidates: list[float] = []
        if deadline is not None:
            candidates.append(deadline - now)
        if self._delayed:
            candidates.append(self._delayed[0][0] - now)
        for queue in self._sticky.values():
            if queue:
                candidates.append(queue[0][0] + self.sticky_schedule_to_start_timeout - now)
        if not candidates:
            return None
        return max(min(candidates), 0.0)

    async def _poll(self, take: Callable[[], Any], timeout: float | None) -> Any:
        deadline = None if timeout is None else self._clock() + timeout
        async with self._condition:
            while True:
                task = take()
                if task is not None:
                    return task
                if deadline is not None and self._clock() >= deadline:
                    return None
                wait = self._next_wakeup(deadline)
                try:
                    await asyncio.wait_for(self._condition.wait(), wait)
                except asyncio.TimeoutError:
                    continue
