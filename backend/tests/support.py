"""Shared builders and fakes for the test suite."""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import Any

from sentiment_workflow.executor import ActivityExecutor, ActivityInfo
from sentiment_workflow.kv_store import InMemoryKeyValueStore, ProductRepository
from sentiment_workflow.reviews import Review
from sentiment_workflow.settings import (
    ActivitySettings,
    RuntimeSettings,
    ScoringSettings,
    Settings,
    WorkerSettings,
)
from sentiment_workflow.task_queue import ATTEMPT_CHECK_REASON, InMemoryTaskQueue
from sentiment_workflow.worker.runner import Worker, WorkerOptions
from sentiment_workflow.workflow import (
    ActivityContext,
    ActivityOptions,
    InMemoryHistoryStore,
    RetryPolicy,
    WorkflowEngine,
    build_activity_map,
    build_activity_options,
)

FAST_POLICY = RetryPolicy(initial_interval=0.01, maximum_interval=0.05, maximum_attempts=3)


class FakeClock:
    def __init__(self, now: float = 1_000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FixedReviewSource:
    """Returns `count` reviews whose texts are `review 0`, `review 1`, ..."""

    def __init__(self, count: int = 3):
        self.count = count
        self.calls = 0

    async def fetch(self, product_name: str) -> list[Review]:
        self.calls += 1
        return [
            Review(
                id=index + 1,
                rating=4,
                date=f"2024-01-{index + 1:02d}T00:00:00+00:00",
                author="Usertest00",
                text=f"review {index}",
                purchase_date="2023-12-01T00:00:00+00:00",
            )
            for index in range(self.count)
        ]


class ScriptedScorer:
    """Pops one scripted reply per call; exceptions are raised, numbers returned."""

    def __init__(self, replies: list[Any] | None = None, default: float = 7.0):
        self.replies = list(replies or [])
        self.default = default
        self.calls = 0
        self.texts: list[str] = []

    async def score(self, text: str) -> float:
        self.calls += 1
        self.texts.append(text)
        if self.replies:
            reply = self.replies.pop(0)
            if isinstance(reply, BaseException):
                raise reply
            return float(reply)
        return self.default


class IndexScorer:
    """Scores `review <i>` as float(i % 11)."""

    async def score(self, text: str) -> float:
        return float(int(text.rsplit(" ", 1)[-1]) % 11)


class BlockingScorer:
    """Blocks every call until `release` is set; tracks concurrency."""

    def __init__(self, value: float = 6.0):
        self.value = value
        self.release = asyncio.Event()
        self.started = asyncio.Event()
        self.active = 0
        self.max_active = 0
        self.calls = 0

    async def score(self, text: str) -> float:
        self.calls += 1
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        self.started.set()
        try:
            await self.release.wait()
        finally:
            self.active -= 1
        return self.value


@dataclass
class Harness:
    engine: WorkflowEngine
    queue: InMemoryTaskQueue
    store: InMemoryHistoryStore
    kv: InMemoryKeyValueStore
    products: ProductRepository
    executor: ActivityExecutor
    worker: Worker


def fast_activity_options(
    *,
    start_to_close_timeout: float = 5.0,
    schedule_to_close_timeout: float | None = None,
    heartbeat_timeout: float | None = None,
    policy: RetryPolicy = FAST_POLICY,
) -> dict[str, ActivityOptions]:
    return build_activity_options(
        start_to_close_timeout=start_to_close_timeout,
        schedule_to_close_timeout=schedule_to_close_timeout,
        heartbeat_timeout=heartbeat_timeout,
        default_policy=policy,
    )


def make_harness(
    *,
    scorer: Any = None,
    review_source: Any = None,
    store: Any = None,
    activity_options: dict[str, ActivityOptions] | None = None,
    worker_options: WorkerOptions | None = None,
    execution_timeout: float | None = None,
    clock: Any = None,
    lease: Any = None,
    attempt_check_grace: float = 0.05,
) -> Harness:
    store = store if store is not None else InMemoryHistoryStore()
    queue = InMemoryTaskQueue(sticky_schedule_to_start_timeout=10.0)
    kv = InMemoryKeyValueStore()
    products = ProductRepository(kv)
    engine_kwargs: dict[str, Any] = {}
    if clock is not None:
        engine_kwargs["clock"] = clock
    engine = WorkflowEngine(
        store,
        queue,
        activity_options=activity_options or fast_activity_options(),
        execution_timeout=execution_timeout,
        lease=lease,
        liveness=kv,
        attempt_check_grace=attempt_check_grace,
        **engine_kwargs,
    )
    context = ActivityContext(
        products,
        review_source or FixedReviewSource(3),
        scorer or ScriptedScorer(),
    )
    executor = ActivityExecutor(build_activity_map(context), heartbeat_sink=engine.record_heartbeat)
    worker = Worker(
        engine,
        queue,
        executor,
        options=worker_options
        or WorkerOptions(
            poll_timeout=0.05,
            lease_retry_delay=0.01,
            report_backoff=0.01,
            shutdown_grace_seconds=0.5,
        ),
        worker_id="test-worker",
    )
    return Harness(engine, queue, store, kv, products, executor, worker)


def all_closed(harness: Harness) -> bool:
    return all(
        harness.engine.describe(workflow_id).is_terminal
        for workflow_id in harness.store.list_workflow_ids()
    )


async def drive(harness: Harness, *, max_rounds: int = 1_000) -> None:
    """Run queued tasks inline until nothing is queued or every workflow closed."""
    queue = harness.queue
    for _ in range(max_rounds):
        workflow_task = await queue.poll_workflow_task("driver", timeout=0)
        if workflow_task is not None:
            if workflow_task.reason == ATTEMPT_CHECK_REASON:
                await harness.engine.check_attempt(workflow_task)
            else:
                await harness.engine.process_workflow_task(workflow_task)
            continue
        activity_task = await queue.poll_activity_task("driver", timeout=0)
        if activity_task is not None:
            outcome = await harness.executor.execute(
                activity_task.activity,
                activity_task.args,
                info=ActivityInfo(
                    workflow_id=activity_task.workflow_id,
                    step=activity_task.step,
                    activity=activity_task.activity,
                    attempt=activity_task.attempt,
                    first_scheduled_at=activity_task.first_scheduled_at,
                ),
                options=ActivityOptions.from_payload(activity_task.options),
            )
            await harness.engine.complete_activity_task(activity_task, outcome)
            continue
        if queue.stats()["delayed"] and not all_closed(harness):
            await asyncio.sleep(0.01)
            continue
        return
    raise AssertionError("workflow did not settle")


async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() >= deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


def make_settings(
    *,
    history_dir: str | None = None,
    review_fetch_delay: float = 0.0,
    execution_timeout: float | None = None,
) -> Settings:
    return Settings(
        runtime=RuntimeSettings(
            mode="single_process",
            redis_url="redis://localhost:6379",
            namespace="default",
            task_queue="sentiment-analysis",
            history_dir=history_dir,
            lease_ttl_seconds=30,
            workflow_execution_timeout=execution_timeout,
            run_embedded_worker=True,
        ),
        worker=WorkerSettings(
            max_concurrent_activity_task_executions=100,
            max_concurrent_workflow_task_executions=40,
            sticky_queue_schedule_to_start_timeout=10.0,
            max_cached_workflows=500,
            poll_timeout=0.05,
        ),
        activities=ActivitySettings(
            start_to_close_timeout=5.0,
            schedule_to_close_timeout=None,
            heartbeat_timeout=5.0,
            retry_initial_interval=0.01,
            retry_maximum_interval=0.05,
            retry_backoff_coefficient=2.0,
            retry_maximum_attempts=3,
        ),
        scoring=ScoringSettings(
            backend="heuristic",
            api_url="http://localhost:11434/api/generate",
            model="llama3.2",
            request_timeout=None,
            review_count=5,
            review_fetch_delay=review_fetch_delay,
        ),
    )
