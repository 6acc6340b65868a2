"""Workflow worker process.

Polls the configured task queue for decision and activity tasks. In
`distributed` mode several of these processes share one Redis-backed queue;
the API process only starts workflows and reads results.
"""

from __future__ import annotations

import asyncio
import logging
import signal

from ..container import (
    build_container,
    shutdown as shutdown_container,
    startup as startup_container,
)
from ..env import load_dotenv_if_present
from ..run_logging import configure_logging
from ..settings import get_settings

logger = logging.getLogger(__name__)


async def run_workflow_worker(stop: asyncio.Event | None = None) -> None:
    load_dotenv_if_present()
    settings = get_settings()
    configure_logging(settings.log_level)
    if settings.runtime.mode != "distributed":
        raise RuntimeError("workflow worker requires BACKEND_MODE=distributed")

    container = build_container(settings=settings, run_worker=True)
    stop = stop or asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:  # pragma: no cover - Windows event loops
            pass

    await startup_container(container)
    logger.info(
        "workflow worker started task_queue=%s namespace=%s",
        settings.runtime.task_queue,
        settings.runtime.namespace,
    )
    try:
        await stop.wait()
    finally:
        logger.info("workflow worker stopping")
        await shutdown_container(container)


def main() -> None:
    asyncio.run(run_workflow_worker())


if __name__ == "__main__":  # pragma: no cover
    main()
