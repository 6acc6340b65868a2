"""Worker that polls workflow and activity tasks under bounded slots.

Each poll loop acquires a slot before polling, so a worker at capacity stops
pulling work of that kind until a slot frees. Projections of running
workflows stay in an LRU cache; the worker claims sticky affinity for them so
the next decision task can skip the full history replay.
"""

from __future__ import annotations

import asyncio
import logging
from collections import OrderedDict
from dataclasses import dataclass
from typing import Awaitable, Callable
from uuid import uuid4

from ..executor import ActivityExecutor, ActivityInfo, ActivityOutcome
from ..limits.slots import TaskSlots
from ..task_queue import ATTEMPT_CHECK_REASON, ActivityTask, TaskQueue, WorkflowTask
from ..workflow.engine import WorkflowEngine
from ..workflow.exceptions import HistoryConflictError, LeaseUnavailable
from ..workflow.models import WorkflowInstance, WorkflowStatus
from ..workflow.retries import ActivityOptions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WorkerOptions:
    max_concurrent_activity_task_executions: int = 100
    max_concurrent_workflow_task_executions: int = 40
    max_cached_workflows: int = 500
    poll_timeout: float = 1.0
    lease_retry_delay: float = 1.0
    report_attempts: int = 5
    report_backoff: float = 0.2
    max_retry_delay: float = 30.0
    shutdown_grace_seconds: float | None = 30.0


class Worker:
    """Runs decision tasks through the engine and activity attempts through the executor."""

    def __init__(
        self,
        engine: WorkflowEngine,
        task_queue: TaskQueue,
        executor: ActivityExecutor,
        *,
        options: WorkerOptions | None = None,
        worker_id: str | None = None,
    ):
        self.engine = engine
        self.task_queue = task_queue
        self.executor = executor
        self.options = options or WorkerOptions()
        self.worker_id = worker_id or f"worker-{uuid4()}"
        self.workflow_slots = TaskSlots(self.options.max_concurrent_workflow_task_executions)
        self.activity_slots = TaskSlots(self.options.max_concurrent_activity_task_executions)
        self._cache: OrderedDict[str, WorkflowInstance] = OrderedDict()
        self._task_failures: dict[str, int] = {}
        self._inflight: set[asyncio.Task[None]] = set()
        self._loops: list[asyncio.Task[None]] = []
        self._stopping = False
        self.workflow_tasks_processed = 0
        self.activity_tasks_processed = 0
        self.cache_hits = 0

    @property
    def running(self) -> bool:
        return bool(self._loops)

    def cached_workflow_ids(self) -> list[str]:
        return list(self._cache)

    async def start(self) -> None:
        if self._loops:
            return
        self._stopping = False
        self._loops = [
            asyncio.create_task(
                self._poll_loop(
                    self.workflow_slots, self.task_queue.poll_workflow_task, self._run_workflow_task
                ),
                name=f"{self.worker_id}-workflow-poller",
            ),
            asyncio.create_task(
                self._poll_loop(
                    self.activity_slots, self.task_queue.poll_activity_task, self._run_activity_task
                ),
                name=f"{self.worker_id}-activity-poller",
            ),
        ]
        logger.info(
            "worker started worker_id=%s workflow_slots=%s activity_slots=%s",
            self.worker_id,
            self.workflow_slots.limit,
            self.activity_slots.limit,
        )

    async def shutdown(self) -> None:
        """Stop polling, let in-flight tasks finish, then release sticky affinity."""
        self._stopping = True
        for loop_task in self._loops:
            loop_task.cancel()
        for loop_task in self._loops:
            try:
                await loop_task
            except asyncio.CancelledError:
                pass
        self._loops = []

        if self._inflight:
            pending = list(self._inflight)
            _, still_running = await asyncio.wait(
                pending, timeout=self.options.shutdown_grace_seconds
            )
            for task in still_running:
                task.cancel()
            if still_running:
                await asyncio.gather(*still_running, return_exceptions=True)
                logger.warning(
                    "worker shutdown cancelled in-flight tasks count=%s", len(still_running)
                )

        self._cache.clear()
        await self.task_queue.release_worker(self.worker_id)
        logger.info("worker stopped worker_id=%s", self.worker_id)

    async def _poll_loop(
        self,
        slots: TaskSlots,
        poll: Callable[..., Awaitable[WorkflowTask | ActivityTask | None]],
        handler: Callable[..., Awaitable[None]],
    ) -> None:
        while not self._stopping:
            await slots.acquire()
            try:
                task = await poll(self.worker_id, self.options.poll_timeout)
            except asyncio.CancelledError:
                slots.release()
                raise
            except Exception:
                slots.release()
                logger.exception("task poll failed worker_id=%s", self.worker_id)
                await asyncio.sleep(self.options.poll_timeout)
                continue
            if task is None:
                slots.release()
                continue
            handle = asyncio.create_task(self._guarded(slots, handler, task))
            self._inflight.add(handle)
            handle.add_done_callback(self._inflight.discard)

    async def _guarded(
        self,
        slots: TaskSlots,
        handler: Callable[..., Awaitable[None]],
        task: WorkflowTask | ActivityTask,
    ) -> None:
        try:
            await handler(task)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception(
                "task handler crashed task_id=%s",
                task.task_id,
                extra={"workflow_id": task.workflow_id},
            )
        finally:
            slots.release()

    def _backoff(self, base: float, failures: int) -> float:
        return min(base * 2 ** (failures - 1), self.options.max_retry_delay)

    async def _run_workflow_task(self, task: WorkflowTask) -> None:
        workflow_id = task.workflow_id
        try:
            if task.reason == ATTEMPT_CHECK_REASON:
                await self.engine.check_attempt(task)
                self._task_failures.pop(workflow_id, None)
                return
            result = await self.engine.process_workflow_task(task, self._cache.get(workflow_id))
        except (LeaseUnavailable, HistoryConflictError) as exc:
            # Another writer owns the history right now; retry with a fresh replay.
            await self._evict(workflow_id)
            logger.info(
                "workflow task deferred reason=%s",
                type(exc).__name__,
                extra={"workflow_id": workflow_id},
            )
            await self.task_queue.put_workflow_task(
                task, delay=self.options.lease_retry_delay
            )
            return
        except Exception:
            await self._evict(workflow_id)
            failures = self._task_failures.get(workflow_id, 0) + 1
            self._task_failures[workflow_id] = failures
            delay = self._backoff(self.options.lease_retry_delay, failures)
            logger.exception(
                "workflow task failed; requeued reason=%s failures=%s delay=%s",
                task.reason,
                failures,
                delay,
                extra={"workflow_id": workflow_id},
            )
            await self.task_queue.put_workflow_task(task, delay=delay)
            return

        self._task_failures.pop(workflow_id, None)
        self.workflow_tasks_processed += 1
        if result.used_cache:
            self.cache_hits += 1
        instance = result.instance
        if instance.is_terminal or instance.status is WorkflowStatus.CREATED:
            await self._evict(workflow_id)
            return
        await self._remember(instance)

    async def _remember(self, instance: WorkflowInstance) -> None:
        self._cache[instance.id] = instance
        self._cache.move_to_end(instance.id)
        await self.task_queue.set_sticky(instance.id, self.worker_id)
        while len(self._cache) > max(self.options.max_cached_workflows, 0):
            evicted, _ = self._cache.popitem(last=False)
            await self.task_queue.release_sticky(evicted)

    async def _evict(self, workflow_id: str) -> None:
        self._cache.pop(workflow_id, None)
        await self.task_queue.release_sticky(workflow_id)

    async def _run_activity_task(self, task: ActivityTask) -> None:
        info = ActivityInfo(
            workflow_id=task.workflow_id,
            step=task.step,
            activity=task.activity,
            attempt=task.attempt,
            first_scheduled_at=task.first_scheduled_at,
        )
        outcome = await self.executor.execute(
            task.activity,
            task.args,
            info=info,
            options=ActivityOptions.from_payload(task.options),
        )
        self.activity_tasks_processed += 1
        await self._report(task, outcome)

    async def _report(self, task: ActivityTask, outcome: ActivityOutcome) -> None:
        """Hand the outcome to the engine, retrying until it is recorded or the worker stops."""
        failures = 0
        while True:
            try:
                await self.engine.complete_activity_task(task, outcome)
                return
            except Exception:
                failures += 1
                if self._stopping:
                    # The engine's attempt check retries the attempt instead.
                    logger.exception(
                        "activity outcome not recorded before shutdown step=%s attempt=%s",
                        task.step,
                        task.attempt,
                        extra={"workflow_id": task.workflow_id},
                    )
                    return
                logger.log(
                    logging.WARNING if failures < self.options.report_attempts else logging.ERROR,
                    "activity outcome report failed; retrying step=%s attempt=%s failures=%s",
                    task.step,
                    task.attempt,
                    failures,
                    exc_info=True,
                    extra={"workflow_id": task.workflow_id},
                )
                await asyncio.sleep(self._backoff(self.options.report_backoff, failures))
