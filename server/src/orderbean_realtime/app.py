"""FastAPI application factory for OrderBean realtime."""
from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator

from fastapi import FastAPI

from orderbean_realtime import __version__
from orderbean_realtime.api.routes_orders import router as orders_router
from orderbean_realtime.api.routes_sse import router as sse_router
from orderbean_realtime.api.routes_system import router as system_router
from orderbean_realtime.config import Settings
from orderbean_realtime.streaming.registry import ConnectionRegistry

logger = logging.getLogger(__name__)


def create_app(config: Settings, registry: ConnectionRegistry | None = None) -> FastAPI:
    """Create and configure the FastAPI application.

    Args:
        config: Loaded settings.
        registry: Registry of open streams; a fresh one is created if omitted.

    Returns:
        Configured FastAPI application instance. The database and event log
        dependencies must still be provided through ``dependency_overrides``.
    """
    start_time = time.time()
    connections = registry if registry is not None else ConnectionRegistry()

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
        app.state.start_time = start_time
        yield
        # Streams never end on their own; close them so shutdown can finish.
        await connections.close_all()

    app = FastAPI(
        title=config.server.name,
        version=__version__,
        lifespan=lifespan,
    )

    # Store state directly for access outside lifespan
    app.state.start_time = start_time
    app.state.config = config
    app.state.connections = connections

    app.include_router(system_router)
    app.include_router(orders_router)
    app.include_router(sse_router)

    return app
