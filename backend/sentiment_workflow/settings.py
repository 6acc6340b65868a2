"""Application-wide settings built from environment variables."""

from __future__ import annotations

import os
from dataclasses import dataclass
from typing import Literal


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip().lower()
    return normalized in {"1", "true", "yes", "on"}


def _env_int(name: str, default: int) -> int:
    value = os.getenv(name)
    if value is None:
        return default
    try:
        return int(value)
    except ValueError:
        return default


def _env_float(name: str, default: float | None) -> float | None:
    value = os.getenv(name)
    if value is None or not value.strip():
        return default
    try:
        return float(value)
    except ValueError:
        return default


def _env_str(name: str, default: str | None = None) -> str | None:
    value = os.getenv(name)
    if value is None:
        return default
    normalized = value.strip()
    return normalized or default


RuntimeMode = Literal["single_process", "distributed"]
ScoringBackend = Literal["ollama", "heuristic"]


@dataclass(frozen=True)
class RuntimeSettings:
    """Runtime configuration for single vs distributed deployments."""

    mode: RuntimeMode
    redis_url: str
    namespace: str
    task_queue: str
    history_dir: str | None
    lease_ttl_seconds: int
    workflow_execution_timeout: float | None
    run_embedded_worker: bool

    @classmethod
    def from_env(cls) -> "RuntimeSettings":
        raw_mode = (_env_str("BACKEND_MODE", "single_process") or "single_process").lower()
        mode: RuntimeMode = "distributed" if raw_mode == "distributed" else "single_process"
        return cls(
            mode=mode,
            redis_url=_env_str("REDIS_URL", "redis://localhost:6379") or "redis://localhost:6379",
            namespace=_env_str("WORKFLOW_NAMESPACE", _env_str("TEMPORAL_NAMESPACE", "default"))
            or "default",
            task_queue=_env_str(
                "WORKFLOW_TASK_QUEUE", _env_str("TEMPORAL_TASKQ", "sentiment-analysis")
            )
            or "sentiment-analysis",
            history_dir=_env_str("WORKFLOW_HISTORY_DIR"),
            lease_ttl_seconds=max(5, _env_int("WORKFLOW_LEASE_TTL_SECONDS", 30)),
            workflow_execution_timeout=_env_float("WORKFLOW_EXECUTION_TIMEOUT_SECONDS", None),
            run_embedded_worker=_env_bool("RUN_EMBEDDED_WORKER", mode == "single_process"),
        )


@dataclass(frozen=True)
class WorkerSettings:
    """Slot counts, sticky cache and polling for task workers."""

    max_concurrent_activity_task_executions: int
    max_concurrent_workflow_task_executions: int
    sticky_queue_schedule_to_start_timeout: float
    max_cached_workflows: int
    poll_timeout: float

    @classmethod
    def from_env(cls) -> "WorkerSettings":
        return cls(
            max_concurrent_activity_task_executions=max(
                1, _env_int("MAX_CONCURRENT_ACTIVITY_TASK_EXECUTIONS", 100)
            ),
            max_concurrent_workflow_task_executions=max(
                1, _env_int("MAX_CONCURRENT_WORKFLOW_TASK_EXECUTIONS", 40)
            ),
            sticky_queue_schedule_to_start_timeout=_env_float(
                "STICKY_QUEUE_SCHEDULE_TO_START_TIMEOUT_SECONDS", 10.0
            )
            or 10.0,
            max_cached_workflows=max(0, _env_int("MAX_CACHED_WORKFLOWS", 500)),
            poll_timeout=_env_float("WORKER_POLL_TIMEOUT_SECONDS", 1.0) or 1.0,
        )


@dataclass(frozen=True)
class ActivitySettings:
    """Timeouts and the default retry policy applied to activities."""

    start_to_close_timeout: float
    schedule_to_close_timeout: float | None
    heartbeat_timeout: float | None
    retry_initial_interval: float
    retry_maximum_interval: float
    retry_backoff_coefficient: float
    retry_maximum_attempts: int

    @classmethod
    def from_env(cls) -> "ActivitySettings":
        return cls(
            start_to_close_timeout=_env_float("ACTIVITY_START_TO_CLOSE_TIMEOUT_SECONDS", 600.0)
            or 600.0,
            schedule_to_close_timeout=_env_float(
                "ACTIVITY_SCHEDULE_TO_CLOSE_TIMEOUT_SECONDS", None
            ),
            heartbeat_timeout=_env_float("ACTIVITY_HEARTBEAT_TIMEOUT_SECONDS", 30.0) or None,
            retry_initial_interval=_env_float("RETRY_INITIAL_INTERVAL_SECONDS", 1.0) or 1.0,
            retry_maximum_interval=_env_float("RETRY_MAXIMUM_INTERVAL_SECONDS", 60.0) or 60.0,
            retry_backoff_coefficient=_env_float("RETRY_BACKOFF_COEFFICIENT", 2.0) or 2.0,
            retry_maximum_attempts=max(0, _env_int("RETRY_MAXIMUM_ATTEMPTS", 3)),
        )


@dataclass(frozen=True)
class ScoringSettings:
    """Sentiment scorer and review source configuration."""

    backend: ScoringBackend
    api_url: str
    model: str
    request_timeout: float | None
    review_count: int
    review_fetch_delay: float

    @classmethod
    def from_env(cls) -> "ScoringSettings":
        raw_backend = (_env_str("SCORING_BACKEND", "ollama") or "ollama").lower()
        backend: ScoringBackend = "heuristic" if raw_backend == "heuristic" else "ollama"
        return cls(
            backend=backend,
            api_url=_env_str("OLLAMA_API_URL", "http://localhost:11434/api/generate")
            or "http://localhost:11434/api/generate",
            model=_env_str("OLLAMA_MODEL", "llama3.2") or "llama3.2",
            request_timeout=_env_float("OLLAMA_REQUEST_TIMEOUT_SECONDS", None),
            review_count=max(0, _env_int("REVIEW_COUNT", 5)),
            review_fetch_delay=max(0.0, _env_float("REVIEW_FETCH_DELAY_SECONDS", 0.5) or 0.0),
        )


class Settings:
    """Container for application settings."""

    def __init__(
        self,
        *,
        runtime: RuntimeSettings,
        worker: WorkerSettings,
        activities: ActivitySettings,
        scoring: ScoringSettings,
        log_level: str = "INFO",
    ) -> None:
        self.runtime = runtime
        self.worker = worker
        self.activities = activities
        self.scoring = scoring
        self.log_level = log_level

    @classmethod
    def from_env(cls) -> "Settings":
        return cls(
            runtime=RuntimeSettings.from_env(),
            worker=WorkerSettings.from_env(),
            activities=ActivitySettings.from_env(),
            scoring=ScoringSettings.from_env(),
            log_level=(_env_str("LOG_LEVEL", "INFO") or "INFO").upper(),
        )


_SETTINGS: Settings | None = None


def get_settings() -> Settings:
    """Return a cached Settings instance built from the current environment."""

    global _SETTINGS
    if _SETTINGS is None:
        _SETTINGS = Settings.from_env()
    return _SETTINGS


def reset_settings() -> None:
    """Drop the cached settings so the next access re-reads the environment."""

    global _SETTINGS
    _SETTINGS = None
