"""Activity executor: deadlines, heartbeats and error classification."""

import asyncio
import time

import pytest

from sentiment_workflow.executor import ActivityExecutor, ActivityInfo, classify_error
from sentiment_workflow.workflow.exceptions import InputValidationError, TransientActivityError
from sentiment_workflow.workflow.models import ErrorClassification
from sentiment_workflow.workflow.retries import ActivityOptions


def _info(first_scheduled_at=0.0, attempt=1):
    return ActivityInfo(
        workflow_id="wf-1",
        step="score_sentiment:0",
        activity="score_sentiment",
        attempt=attempt,
        first_scheduled_at=first_scheduled_at,
    )


async def _sleepy(execution, seconds):
    await asyncio.sleep(seconds)
    return "done"


async def _heartbeat_then_stall(execution):
    execution.heartbeat("started")
    await asyncio.sleep(5)


async def _steady_heartbeats(execution, beats):
    for index in range(beats):
        execution.heartbeat({"beat": index})
        await asyncio.sleep(0.02)
    return beats


async def _flaky(execution):
    raise TransientActivityError("backend busy", "backend_unavailable")


async def _refused(execution):
    raise ConnectionRefusedError("Connection refused")


@pytest.fixture
def sink():
    return []


@pytest.fixture
def executor(sink):
    async def record(info, details):
        sink.append((info.step, details))

    return ActivityExecutor(
        {
            "sleepy": _sleepy,
            "stall": _heartbeat_then_stall,
            "steady": _steady_heartbeats,
            "flaky": _flaky,
            "refused": _refused,
        },
        heartbeat_sink=record,
    )


@pytest.mark.asyncio
async def test_successful_attempt(executor):
    outcome = await executor.execute("sleepy", [0], info=_info())

    assert outcome.ok
    assert outcome.value == "done"
    assert outcome.failure is None


@pytest.mark.asyncio
async def test_start_to_close_timeout_is_transient(executor):
    options = ActivityOptions(start_to_close_timeout=0.05)

    outcome = await executor.execute("sleepy", [5], info=_info(attempt=2), options=options)

    assert not outcome.ok
    assert outcome.failure.error_type == "start_to_close_timeout"
    assert outcome.failure.classification is ErrorClassification.TRANSIENT
    assert outcome.failure.attempt == 2


@pytest.mark.asyncio
async def test_exhausted_schedule_to_close_is_terminal_without_running(executor):
    options = ActivityOptions(schedule_to_close_timeout=5.0)

    outcome = await executor.execute(
        "sleepy", [0], info=_info(first_scheduled_at=time.time() - 10), options=options
    )

    assert outcome.failure.error_type == "schedule_to_close_timeout"
    assert outcome.failure.terminal


@pytest.mark.asyncio
async def test_schedule_to_close_clips_the_attempt(executor):
    options = ActivityOptions(start_to_close_timeout=5.0, schedule_to_close_timeout=0.1)

    started = time.monotonic()
    outcome = await executor.execute(
        "sleepy", [5], info=_info(first_scheduled_at=time.time()), options=options
    )

    assert time.monotonic() - started < 2
    assert outcome.failure.error_type == "schedule_to_close_timeout"
    assert outcome.failure.terminal


@pytest.mark.asyncio
async def test_missing_heartbeat_fails_attempt(executor):
    options = ActivityOptions(start_to_close_timeout=5.0, heartbeat_timeout=0.1)

    started = time.monotonic()
    outcome = await executor.execute("stall", [], info=_info(), options=options)

    assert time.monotonic() - started < 2
    assert outcome.failure.error_type == "heartbeat_timeout"
    assert outcome.failure.classification is ErrorClassification.TRANSIENT


@pytest.mark.asyncio
async def test_heartbeats_keep_attempt_alive_and_reach_sink(executor, sink):
    options = ActivityOptions(start_to_close_timeout=5.0, heartbeat_timeout=0.1)

    outcome = await executor.execute("steady", [15], info=_info(), options=options)

    assert outcome.ok
    assert outcome.value == 15
    assert sink
    assert all(step == "score_sentiment:0" for step, _ in sink)


@pytest.mark.asyncio
async def test_heartbeating_attempt_reports_its_start(executor, sink):
    options = ActivityOptions(start_to_close_timeout=5.0, heartbeat_timeout=1.0)

    outcome = await executor.execute("sleepy", [0], info=_info(), options=options)

    assert outcome.ok
    assert sink == [("score_sentiment:0", None)]


@pytest.mark.asyncio
async def test_unreachable_sink_does_not_fail_the_attempt():
    async def broken(info, details):
        raise ConnectionError("liveness store down")

    executor = ActivityExecutor({"steady": _steady_heartbeats}, heartbeat_sink=broken)
    options = ActivityOptions(start_to_close_timeout=5.0, heartbeat_timeout=0.1)

    outcome = await executor.execute("steady", [10], info=_info(), options=options)

    assert outcome.ok
    assert outcome.value == 10


@pytest.mark.asyncio
async def test_activity_errors_keep_their_classification(executor):
    outcome = await executor.execute("flaky", [], info=_info())

    assert outcome.failure.error_type == "backend_unavailable"
    assert outcome.failure.classification is ErrorClassification.TRANSIENT


@pytest.mark.asyncio
async def test_connection_refused_is_transient(executor):
    outcome = await executor.execute("refused", [], info=_info())

    assert outcome.failure.error_type == "connection_error"
    assert not outcome.failure.terminal


@pytest.mark.asyncio
async def test_unknown_activity_is_terminal(executor):
    outcome = await executor.execute("missing", [], info=_info())

    assert outcome.failure.error_type == "unknown_activity"
    assert outcome.failure.terminal


def test_classify_error():
    assert classify_error(InputValidationError("bad")).terminal
    assert classify_error(TimeoutError()).error_type == "timeout"
    assert classify_error(OSError("reset")).error_type == "connection_error"
    unknown = classify_error(KeyError("x"))
    assert unknown.error_type == "KeyError"
    assert not unknown.terminal
