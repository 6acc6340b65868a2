"""Explicit dependency container for runtime wiring.

This module is side-effect free on import. It provides functions to build and
lifecycle-manage the dependency graph shared by the API and the worker.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING
from uuid import uuid4

if TYPE_CHECKING:
    from .executor import ActivityExecutor
    from .kv_store import KeyValueStore, ProductRepository
    from .lease import WorkflowLease
    from .reviews import ReviewSource
    from .scoring import SentimentScorer
    from .settings import Settings
    from .task_queue import TaskQueue
    from .worker.runner import Worker
    from .workflow import ActivityContext, HistoryStore, WorkflowEngine


@dataclass
class BackendContainer:
    """Holds the constructed runtime dependencies."""

    settings: Settings
    instance_id: str

    history_store: HistoryStore
    kv_store: KeyValueStore
    products: ProductRepository
    review_source: ReviewSource
    scorer: SentimentScorer
    task_queue: TaskQueue
    lease: WorkflowLease

    activity_context: ActivityContext
    executor: ActivityExecutor
    workflow_engine: WorkflowEngine
    worker: Worker | None


def build_container(
    *,
    settings: "Settings" | None = None,
    run_worker: bool | None = None,
    scorer: "SentimentScorer" | None = None,
    review_source: "ReviewSource" | None = None,
) -> BackendContainer:
    """Construct the dependency graph without starting background work."""

    # Local imports keep this module side-effect-free on import.
    from .executor import ActivityExecutor
    from .kv_store import InMemoryKeyValueStore, ProductRepository
    from .lease import NoopWorkflowLease
    from .reviews import SyntheticReviewSource
    from .scoring import build_scorer
    from .settings import get_settings
    from .task_queue import InMemoryTaskQueue
    from .worker.runner import Worker, WorkerOptions
    from .workflow import (
        ActivityContext,
        FileHistoryStore,
        InMemoryHistoryStore,
        RetryPolicy,
        WorkflowEngine,
        build_activity_map,
        build_activity_options,
    )

    settings = settings or get_settings()
    runtime = settings.runtime
    if run_worker is None:
        run_worker = runtime.run_embedded_worker

    instance_id = str(uuid4())

    if runtime.history_dir:
        history_store = FileHistoryStore(runtime.history_dir, ensure_dirs=False)
    else:
        history_store = InMemoryHistoryStore()
    kv_store = InMemoryKeyValueStore()
    task_queue = InMemoryTaskQueue(
        sticky_schedule_to_start_timeout=settings.worker.sticky_queue_schedule_to_start_timeout
    )
    lease = NoopWorkflowLease()

    if runtime.mode == "distributed":
        if not runtime.redis_url:
            msg = "BACKEND_MODE=distributed requires REDIS_URL"
            raise ValueError(msg)
        from .distributed.redis_lease import RedisLeaseConfig, RedisWorkflowLease
        from .distributed.redis_stores import (
            RedisHistoryStore,
            RedisKeyValueStore,
            RedisStoreConfig,
        )
        from .distributed.redis_task_queue import RedisTaskQueue, RedisTaskQueueConfig

        history_store = RedisHistoryStore(
            RedisStoreConfig(url=runtime.redis_url, key_prefix=f"{runtime.namespace}:")
        )
        kv_store = RedisKeyValueStore(runtime.redis_url)
        task_queue = RedisTaskQueue(
            RedisTaskQueueConfig(
                url=runtime.redis_url,
                task_queue=runtime.task_queue,
                key_prefix=f"{runtime.namespace}:queue:",
                sticky_schedule_to_start_timeout=settings.worker.sticky_queue_schedule_to_start_timeout,
            )
        )
        lease = RedisWorkflowLease(
            RedisLeaseConfig(
                url=runtime.redis_url,
                owner_id=instance_id,
                ttl_seconds=runtime.lease_ttl_seconds,
                key_prefix=f"{runtime.namespace}:lease:",
            )
        )

    products = ProductRepository(kv_store)
    review_source = review_source or SyntheticReviewSource(
        settings.scoring.review_count,
        delay_seconds=settings.scoring.review_fetch_delay,
    )
    scorer = scorer or build_scorer(
        settings.scoring.backend,
        api_url=settings.scoring.api_url,
        model=settings.scoring.model,
        request_timeout=settings.scoring.request_timeout,
    )

    activities = settings.activities
    activity_options = build_activity_options(
        start_to_close_timeout=activities.start_to_close_timeout,
        schedule_to_close_timeout=activities.schedule_to_close_timeout,
        heartbeat_timeout=activities.heartbeat_timeout,
        default_policy=RetryPolicy(
            initial_interval=activities.retry_initial_interval,
            maximum_interval=activities.retry_maximum_interval,
            backoff_coefficient=activities.retry_backoff_coefficient,
            maximum_attempts=activities.retry_maximum_attempts,
        ),
    )

    workflow_engine = WorkflowEngine(
        history_store,
        task_queue,
        activity_options=activity_options,
        lease=lease,
        namespace=runtime.namespace,
        task_queue_name=runtime.task_queue,
        execution_timeout=runtime.workflow_execution_timeout,
        liveness=kv_store,
    )
    activity_context = ActivityContext(products, review_source, scorer)
    executor = ActivityExecutor(
        build_activity_map(activity_context),
        heartbeat_sink=workflow_engine.record_heartbeat,
    )

    worker = None
    if run_worker:
        worker = Worker(
            workflow_engine,
            task_queue,
            executor,
            options=WorkerOptions(
                max_concurrent_activity_task_executions=settings.worker.max_concurrent_activity_task_executions,
                max_concurrent_workflow_task_executions=settings.worker.max_concurrent_workflow_task_executions,
                max_cached_workflows=settings.worker.max_cached_workflows,
                poll_timeout=settings.worker.poll_timeout,
            ),
            worker_id=f"{runtime.task_queue}-{instance_id}",
        )

    return BackendContainer(
        settings=settings,
        instance_id=instance_id,
        history_store=history_store,
        kv_store=kv_store,
        products=products,
        review_source=review_source,
        scorer=scorer,
        task_queue=task_queue,
        lease=lease,
        activity_context=activity_context,
        executor=executor,
        workflow_engine=workflow_engine,
        worker=worker,
    )


async def startup(
    container: BackendContainer,
    *,
    start_worker: bool = True,
    recover: bool = True,
) -> None:
    """Perform IO-heavy or side-effectful initialization for the container."""

    container.history_store.ensure_base_dir()
    connect = getattr(container.scorer, "connect", None)
    if connect is not None:
        await connect()
    if container.worker is None or not start_worker:
        return
    if recover:
        await container.workflow_engine.recover()
    await container.worker.start()


async def shutdown(container: BackendContainer) -> None:
    """Stop the worker and release clients owned by the container."""

    if container.worker is not None:
        await container.worker.shutdown()
    close = getattr(container.scorer, "close", None)
    if close is not None:
        await close()
    await container.kv_store.close()
    await container.task_queue.close()
    await container.lease.close()
