"""FastAPI application factory.

Creates and configures the ASGI application, wiring the correlation
engine and metrics exporter into the routes.  The engine is started and
stopped with the application lifespan.
"""

from __future__ import annotations

import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI

from taskwire import __version__
from taskwire.api import routes
from taskwire.config import Settings, build_engine
from taskwire.core.engine import CorrelationEngine
from taskwire.observability import CorrelationMetrics
from taskwire.observability.logging import configure_logging


def create_app(
    engine: CorrelationEngine | None = None, settings: Settings | None = None
) -> FastAPI:
    """Build the configured FastAPI instance."""
    if engine is None:
        settings = settings or Settings.from_env()
        configure_logging(log_level=settings.log_level, json_format=settings.log_json)
        engine = build_engine(settings)

    metrics = CorrelationMetrics(table=engine.table)
    metrics.attach(engine.event_bus)
    routes.configure(engine, metrics)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        await engine.start()
        try:
            yield
        finally:
            await engine.stop()

    app = FastAPI(
        title="Taskwire — Task Correlation Service",
        description=(
            "Dispatches task request legs to workers and reconciles their "
            "response legs by correlation id, with deadlines, cancellation "
            "and at-most-once delivery of each outcome."
        ),
        version=__version__,
        docs_url="/docs",
        redoc_url="/redoc",
        lifespan=lifespan,
    )
    app.state.engine = engine
    app.state.metrics = metrics
    app.include_router(routes.router)
    return app


def main() -> None:
    """Entry-point for ``taskwire`` CLI."""
    uvicorn.run(
        "taskwire.api.app:create_app",
        factory=True,
        host=os.environ.get("TASKWIRE_HOST", "0.0.0.0"),
        port=int(os.environ.get("TASKWIRE_PORT", "8000")),
    )


if __name__ == "__main__":
    main()
