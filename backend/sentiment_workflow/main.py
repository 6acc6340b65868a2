"""FastAPI application bootstrap for the sentiment workflow service."""

from __future__ import annotations

import logging
import os

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from .api import get_router
from .container import (
    BackendContainer,
    build_container,
    shutdown as shutdown_container,
    startup as startup_container,
)
from .env import load_dotenv_if_present
from .run_logging import configure_logging

logger = logging.getLogger(__name__)


def create_app(container: BackendContainer | None = None) -> FastAPI:
    """Construct the FastAPI application."""
    if container is None:
        load_dotenv_if_present()
        from .settings import get_settings

        settings = get_settings()
        configure_logging(settings.log_level)
        container = build_container(settings=settings)

    app = FastAPI(title="Product sentiment workflows")
    app.state.container = container
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.include_router(get_router(container))

    @app.on_event("startup")
    async def _startup() -> None:
        await startup_container(container)
        logger.info(
            "sentiment api ready mode=%s embedded_worker=%s",
            container.settings.runtime.mode,
            container.worker is not None,
        )

    @app.on_event("shutdown")
    async def _shutdown() -> None:
        await shutdown_container(container)

    @app.get("/health")
    async def health() -> dict[str, str]:
        return {"status": "ok"}

    return app


_APP: FastAPI | None = None


def get_app() -> FastAPI:
    """Accessor for ASGI servers expecting an `app` variable."""

    global _APP
    if _APP is None:
        _APP = create_app()
    return _APP


def run() -> None:
    """Console entrypoint serving the API with uvicorn."""
    import uvicorn

    uvicorn.run(
        create_app(),
        host=os.getenv("HOST", "0.0.0.0"),
        port=int(os.getenv("PORT", "3000")),
    )


def __getattr__(name: str):  # pragma: no cover
    if name == "app":
        return get_app()
    raise AttributeError(name)
