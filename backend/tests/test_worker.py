"""Worker poll loops, slots, sticky cache and lease deferral."""

import asyncio

import pytest

from support import BlockingScorer, FixedReviewSource, ScriptedScorer, make_harness, wait_until

from sentiment_workflow.lease import NoopWorkflowLease
from sentiment_workflow.workflow import InMemoryHistoryStore
from sentiment_workflow.worker.runner import WorkerOptions


def _options(**overrides):
    values = {
        "poll_timeout": 0.05,
        "lease_retry_delay": 0.01,
        "report_backoff": 0.01,
        "shutdown_grace_seconds": 0.5,
    }
    values.update(overrides)
    return WorkerOptions(**values)


class FlakyHistoryStore(InMemoryHistoryStore):
    """Fails the next `failures` reads with a connection error."""

    def __init__(self):
        super().__init__()
        self.failures = 0
        self.failed = 0

    def read(self, workflow_id, after_sequence=0):
        if self.failures:
            self.failures -= 1
            self.failed += 1
            raise ConnectionError("history store unreachable")
        return super().read(workflow_id, after_sequence)


class DenyingLease(NoopWorkflowLease):
    """Refuses the first `denials` acquisitions once armed."""

    def __init__(self, denials: int):
        self.denials = denials
        self.armed = False
        self.refused = 0

    async def acquire(self, key: str) -> bool:
        if self.armed and self.refused < self.denials:
            self.refused += 1
            return False
        return True


@pytest.mark.asyncio
async def test_worker_runs_workflow_to_completion():
    harness = make_harness(scorer=ScriptedScorer(default=8.0), review_source=FixedReviewSource(5))
    await harness.worker.start()
    try:
        workflow_id = await harness.engine.start_workflow("Widget")
        result = await harness.engine.wait_for_result(workflow_id, timeout=5, poll_interval=0.05)
    finally:
        await harness.worker.shutdown()

    assert result["average_score"] == 8.0
    assert result["total_reviews"] == 5
    worker = harness.worker
    assert worker.activity_tasks_processed == 1 + 1 + 5 + 1
    assert worker.workflow_tasks_processed >= 4
    assert worker.cache_hits >= 1
    assert worker.cached_workflow_ids() == []
    assert harness.queue.affinity_for(workflow_id) is None


@pytest.mark.asyncio
async def test_running_workflow_is_cached_and_sticky():
    scorer = BlockingScorer()
    harness = make_harness(scorer=scorer, review_source=FixedReviewSource(2))
    await harness.worker.start()
    try:
        workflow_id = await harness.engine.start_workflow("Widget")
        await asyncio.wait_for(scorer.started.wait(), 3)
        await wait_until(lambda: workflow_id in harness.worker.cached_workflow_ids())

        assert harness.queue.affinity_for(workflow_id) == harness.worker.worker_id
    finally:
        scorer.release.set()
        await harness.worker.shutdown()

    assert not harness.worker.running
    assert harness.worker.cached_workflow_ids() == []
    assert harness.queue.affinity_for(workflow_id) is None


@pytest.mark.asyncio
async def test_activity_slots_bound_concurrency():
    scorer = BlockingScorer(value=4.0)
    harness = make_harness(
        scorer=scorer,
        review_source=FixedReviewSource(6),
        worker_options=_options(max_concurrent_activity_task_executions=2),
    )
    await harness.worker.start()
    try:
        workflow_id = await harness.engine.start_workflow("Widget")
        await wait_until(lambda: scorer.active == 2)
        await asyncio.sleep(0.1)

        assert scorer.max_active == 2
        assert harness.queue.stats()["activity"] == 4
        assert harness.worker.activity_slots.available == 0

        scorer.release.set()
        result = await harness.engine.wait_for_result(workflow_id, timeout=5, poll_interval=0.05)
    finally:
        scorer.release.set()
        await harness.worker.shutdown()

    assert result["average_score"] == 4.0
    assert scorer.max_active == 2
    assert harness.worker.activity_slots.peak == 2


@pytest.mark.asyncio
async def test_cache_is_bounded():
    scorer = BlockingScorer()
    harness = make_harness(
        scorer=scorer,
        review_source=FixedReviewSource(1),
        worker_options=_options(max_cached_workflows=1),
    )
    await harness.worker.start()
    try:
        ids = [await harness.engine.start_workflow(name) for name in ("A", "B", "C")]
        await wait_until(lambda: scorer.active == 3)

        assert len(harness.worker.cached_workflow_ids()) <= 1

        scorer.release.set()
        for workflow_id in ids:
            await harness.engine.wait_for_result(workflow_id, timeout=5, poll_interval=0.05)
    finally:
        scorer.release.set()
        await harness.worker.shutdown()


@pytest.mark.asyncio
async def test_lease_held_elsewhere_defers_the_task():
    lease = DenyingLease(denials=3)
    harness = make_harness(lease=lease, review_source=FixedReviewSource(1))
    workflow_id = await harness.engine.start_workflow("Widget")
    lease.armed = True

    await harness.worker.start()
    try:
        result = await harness.engine.wait_for_result(workflow_id, timeout=5, poll_interval=0.05)
    finally:
        await harness.worker.shutdown()

    assert lease.refused == 3
    assert result["total_reviews"] == 1


@pytest.mark.asyncio
async def test_shutdown_is_idempotent_with_nothing_running():
    harness = make_harness()

    await harness.worker.start()
    await harness.worker.start()
    assert harness.worker.running

    await harness.worker.shutdown()
    await harness.worker.shutdown()
    assert not harness.worker.running


@pytest.mark.asyncio
async def test_failed_workflow_task_is_requeued():
    store = FlakyHistoryStore()
    harness = make_harness(store=store, review_source=FixedReviewSource(1))
    workflow_id = await harness.engine.start_workflow("Widget")
    store.failures = 1

    await harness.worker.start()
    try:
        await wait_until(lambda: store.failed == 1)
        result = await harness.engine.wait_for_result(workflow_id, timeout=1.5, poll_interval=0.05)
    finally:
        await harness.worker.shutdown()

    assert store.failed == 1
    assert result["total_reviews"] == 1
    assert harness.worker._task_failures == {}


@pytest.mark.asyncio
async def test_outcome_report_is_retried_past_report_attempts():
    harness = make_harness(
        review_source=FixedReviewSource(1),
        worker_options=_options(report_attempts=1),
    )
    complete = harness.engine.complete_activity_task
    refused = []

    async def flaky_complete(task, outcome):
        if len(refused) < 3:
            refused.append(task.step)
            raise ConnectionError("history store unreachable")
        return await complete(task, outcome)

    harness.engine.complete_activity_task = flaky_complete
    workflow_id = await harness.engine.start_workflow("Widget")

    await harness.worker.start()
    try:
        result = await harness.engine.wait_for_result(workflow_id, timeout=3, poll_interval=0.05)
    finally:
        await harness.worker.shutdown()

    assert refused == ["register_product"] * 3
    assert result["total_reviews"] == 1
    assert [
        event.kind.value
        for event in harness.engine.get_history(workflow_id)
        if event.payload.get("step") == "register_product"
    ] == ["ActivityScheduled", "ActivityCompleted"]
