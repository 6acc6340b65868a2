"""Activity executor: runs one attempt of an activity under its deadlines."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Mapping, Sequence

from .workflow.exceptions import (
    ActivityError,
    DeadlineExceeded,
    HeartbeatTimeout,
    InputValidationError,
)
from .workflow.models import ActivityFailure, ErrorClassification
from .workflow.retries import ActivityOptions

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ActivityInfo:
    """Identity of the attempt being executed."""

    workflow_id: str
    step: str
    activity: str
    attempt: int = 1
    first_scheduled_at: float = 0.0


HeartbeatSink = Callable[[ActivityInfo, Any], Awaitable[None]]


class ActivityExecution:
    """Handle passed to a running activity so it can signal liveness."""

    def __init__(self, info: ActivityInfo, *, clock: Callable[[], float] = time.monotonic):
        self.info = info
        self._clock = clock
        self.last_heartbeat = clock()
        self.heartbeat_count = 0
        self.details: Any = None
        self._unsent = False

    def heartbeat(self, details: Any = None) -> None:
        self.last_heartbeat = self._clock()
        self.heartbeat_count += 1
        self.details = details
        self._unsent = True

    def take_unsent(self) -> tuple[bool, Any]:
        unsent, self._unsent = self._unsent, False
        return unsent, self.details


ActivityFunc = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class ActivityOutcome:
    """Result of one attempt: a value or a classified failure, never both."""

    ok: bool
    value: Any = None
    failure: ActivityFailure | None = None

    @classmethod
    def success(cls, value: Any) -> "ActivityOutcome":
        return cls(ok=True, value=value)

    @classmethod
    def failed(cls, failure: ActivityFailure) -> "ActivityOutcome":
        return cls(ok=False, failure=failure)


def classify_error(exc: BaseException) -> ActivityFailure:
    """Map an exception escaping an activity onto the retry taxonomy."""
    if isinstance(exc, ActivityError):
        return exc.failure
    if isinstance(exc, InputValidationError):
        return ActivityFailure(
            classification=ErrorClassification.TERMINAL,
            error_type="validation_error",
            message=str(exc),
        )
    if isinstance(exc, (asyncio.TimeoutError, TimeoutError)):
        error_type = "timeout"
    elif isinstance(exc, (ConnectionError, OSError)):
        error_type = "connection_error"
    else:
        error_type = type(exc).__name__
    return ActivityFailure(
        classification=ErrorClassification.TRANSIENT,
        error_type=error_type,
        message=str(exc) or type(exc).__name__,
    )


class ActivityExecutor:
    """Runs registered activity functions exactly once per call.

    Retries are the engine's business; the executor only enforces the attempt
    deadline, the remaining schedule-to-close budget and heartbeat liveness.
    """

    def __init__(
        self,
        activities: Mapping[str, ActivityFunc],
        *,
        heartbeat_sink: HeartbeatSink | None = None,
        wall_clock: Callable[[], float] = time.time,
    ):
        self.activities = dict(activities)
        self.heartbeat_sink = heartbeat_sink
        self._wall_clock = wall_clock

    async def execute(
        self,
        activity: str,
        args: Sequence[Any],
        *,
        info: ActivityInfo,
        options: ActivityOptions | None = None,
    ) -> ActivityOutcome:
        options = options or ActivityOptions()
        func = self.activities.get(activity)
        if func is None:
            return ActivityOutcome.failed(
                ActivityFailure(
                    classification=ErrorClassification.TERMINAL,
                    error_type="unknown_activity",
                    message=f"no activity registered as {activity!r}",
                    attempt=info.attempt,
                )
            )

        timeout = options.start_to_close_timeout
        scope = "attempt"
        if options.schedule_to_close_timeout is not None and info.first_scheduled_at:
            elapsed = self._wall_clock() - info.first_scheduled_at
            remaining = options.schedule_to_close_timeout - elapsed
            if remaining <= 0:
                exc = DeadlineExceeded("invocation", options.schedule_to_close_timeout)
                return ActivityOutcome.failed(exc.failure.with_attempt(info.attempt))
            if remaining < timeout:
                timeout = remaining
                scope = "invocation"

        execution = ActivityExecution(info)
        started = time.monotonic()
        try:
            value = await self._run(func, args, execution, options, timeout, scope)
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            failure = classify_error(exc).with_attempt(info.attempt)
            logger.warning(
                "activity attempt failed step=%s attempt=%s error_type=%s classification=%s",
                info.step,
                info.attempt,
                failure.error_type,
                failure.classification.value,
                extra={"workflow_id": info.workflow_id},
            )
            return ActivityOutcome.failed(failure)
        logger.info(
            "activity attempt completed step=%s attempt=%s duration_ms=%s",
            info.step,
            info.attempt,
            int((time.monotonic() - started) * 1000),
            extra={"workflow_id": info.workflow_id},
        )
        return ActivityOutcome.success(value)

    async def _run(
        self,
        func: ActivityFunc,
        args: Sequence[Any],
        execution: ActivityExecution,
        options: ActivityOptions,
        timeout: float,
        scope: str,
    ) -> Any:
        heartbeat_timeout = options.heartbeat_timeout
        interval = options.heartbeat_interval
        check_every = None
        if heartbeat_timeout:
            check_every = max(min(heartbeat_timeout / 4, interval or heartbeat_timeout), 0.005)

        if heartbeat_timeout:
            # The first beat marks the attempt as started.
            await self._forward_heartbeat(execution, force=True)
        work = asyncio.create_task(
            func(execution, *args),
            name=f"activity-{execution.info.workflow_id}-{execution.info.step}",
        )
        started = time.monotonic()
        last_forwarded = started
        try:
            while True:
                wait = timeout - (time.monotonic() - started)
                if check_every is not None:
                    wait = min(wait, check_every)
                done, _ = await asyncio.wait({work}, timeout=max(wait, 0.0))
                if work in done:
                    return work.result()
                now = time.monotonic()
                if now - started >= timeout:
                    budget = (
                        options.schedule_to_close_timeout
                        if scope == "invocation"
                        else options.start_to_close_timeout
                    )
                    raise DeadlineExceeded(scope, budget or timeout)
                if heartbeat_timeout and now - execution.last_heartbeat >= heartbeat_timeout:
                    raise HeartbeatTimeout(heartbeat_timeout)
                if interval and now - last_forwarded >= interval:
                    await self._forward_heartbeat(execution)
                    last_forwarded = now
        finally:
            if not work.done():
                work.cancel()
                try:
                    await work
                except asyncio.CancelledError:
                    pass
                except Exception:
                    logger.debug(
                        "activity raised while being cancelled",
                        exc_info=True,
                        extra={"workflow_id": execution.info.workflow_id},
                    )

    async def _forward_heartbeat(self, execution: ActivityExecution, *, force: bool = False) -> None:
        unsent, details = execution.take_unsent()
        if self.heartbeat_sink is None or not (unsent or force):
            return
        try:
            await self.heartbeat_sink(execution.info, details)
        except Exception:
            # The attempt keeps running; a missed beat only risks an early retry.
            logger.warning(
                "heartbeat not recorded step=%s attempt=%s",
                execution.info.step,
                execution.info.attempt,
                exc_info=True,
                extra={"workflow_id": execution.info.workflow_id},
            )
