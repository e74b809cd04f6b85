"""OrderBean realtime -- entry point.

Usage::

    python -m orderbean_realtime [--config PATH] [--host HOST] [--port PORT]

Startup sequence:
    1. Parse CLI arguments
    2. Load configuration from YAML (or defaults) and env overrides
    3. Open SQLite database and run migrations
    4. Open the event log backend (SQLite file or Redis Streams)
    5. Create the FastAPI application with dependency injection
    6. Start the uvicorn server
    7. On shutdown signal: close open streams, close the log, close database
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Any

import uvicorn

from orderbean_realtime.app import create_app
from orderbean_realtime.config import Settings
from orderbean_realtime.events.log import EventLog
from orderbean_realtime.streaming.registry import ConnectionRegistry

logger = logging.getLogger("orderbean_realtime")

# Upper bound on how long uvicorn waits for open streams during shutdown
SHUTDOWN_GRACE_SECONDS = 5


# ---------------------------------------------------------------------------
# Integration seams -- thin wrappers around real subsystem constructors.
# These are module-level names so tests can patch them individually.
# ---------------------------------------------------------------------------


def load_config(config_path: str | None) -> Settings:
    """Load settings from a YAML file or the built-in defaults."""
    from orderbean_realtime.config import load_settings

    path = Path(config_path) if config_path else None
    return load_settings(config_path=path)


async def open_db(db_path: Path) -> Any:
    """Open the SQLite database."""
    import aiosqlite

    db_path.parent.mkdir(parents=True, exist_ok=True)
    db = await aiosqlite.connect(str(db_path))
    db.row_factory = aiosqlite.Row
    await db.execute("PRAGMA journal_mode=WAL")
    await db.execute("PRAGMA busy_timeout=5000")
    return db


async def run_migrations(db: Any) -> None:
    """Apply pending database migrations."""
    from orderbean_realtime.db.migrations import apply_migrations

    await apply_migrations(db)


async def open_event_log(config: Settings) -> EventLog:
    """Open the configured event log backend."""
    if config.log.backend == "redis":
        from orderbean_realtime.events.redis_log import RedisStreamLog

        logger.info("Event log: Redis Streams at %s", config.log.redis_url)
        return RedisStreamLog.from_url(config.log.redis_url, max_len=config.log.max_len)

    from orderbean_realtime.events.sqlite_log import SQLiteEventLog

    # Own connection so stream polls never share a transaction with order writes
    logger.info("Event log: SQLite at %s", config.sqlite_path)
    return await SQLiteEventLog.open(config.sqlite_path, max_len=config.log.max_len)


# ---------------------------------------------------------------------------


def parse_args(argv: list[str] | None = None) -> argparse.Namespace:
    """Parse command-line arguments.

    Parameters
    ----------
    argv:
        Argument list.  Defaults to ``sys.argv[1:]`` when ``None``.
    """
    parser = argparse.ArgumentParser(
        prog="orderbean_realtime",
        description="OrderBean real-time order event server",
    )
    parser.add_argument(
        "--config",
        type=str,
        default=None,
        help="Path to YAML configuration file",
    )
    parser.add_argument(
        "--host",
        type=str,
        default=None,
        help="Interface to bind (default: server.host from config)",
    )
    parser.add_argument(
        "--port",
        type=int,
        default=None,
        help="Port for the API server (default: server.port from config)",
    )
    return parser.parse_args(argv)


# ---------------------------------------------------------------------------
# Main run coroutine
# ---------------------------------------------------------------------------


async def run_server(
    config_path: str | None = None,
    host: str | None = None,
    port: int | None = None,
) -> None:
    """Start the server and run until cancelled.

    This is the top-level coroutine that wires all subsystems together.
    It is designed to be called from ``main()`` or directly in tests.
    """
    # 1. Load config, CLI flags win over file and env
    config = load_config(config_path)
    if host is not None:
        config.server.host = host
    if port is not None:
        config.server.port = port

    # 2. Open database and run migrations
    db = await open_db(config.sqlite_path)
    await run_migrations(db)

    # 3. Open the event log
    event_log = await open_event_log(config)

    # 4. Create FastAPI app
    registry = ConnectionRegistry()
    app = create_app(config=config, registry=registry)

    # 4b. Wire up dependency overrides for production
    from orderbean_realtime.api.deps import (
        get_config as _get_config_dep,
        get_db as _get_db_dep,
        get_event_log as _get_event_log_dep,
    )

    async def _prod_get_db():
        return db

    async def _prod_get_config():
        return config

    async def _prod_get_event_log():
        return event_log

    app.dependency_overrides[_get_db_dep] = _prod_get_db
    app.dependency_overrides[_get_config_dep] = _prod_get_config
    app.dependency_overrides[_get_event_log_dep] = _prod_get_event_log

    # 5. Configure and start uvicorn
    uvicorn_config = uvicorn.Config(
        app=app,
        host=config.server.host,
        port=config.server.port,
        log_level="info",
        timeout_graceful_shutdown=SHUTDOWN_GRACE_SECONDS,
    )
    server = uvicorn.Server(uvicorn_config)

    try:
        await server.serve()
    except asyncio.CancelledError:
        logger.info("Shutdown signal received -- stopping server")
    finally:
        logger.info("Closing open streams...")
        await registry.close_all()

        logger.info("Closing event log...")
        await event_log.close()

        logger.info("Closing database...")
        await db.close()

        logger.info("Server shutdown complete")


# ---------------------------------------------------------------------------
# Script entry point
# ---------------------------------------------------------------------------


def main() -> None:
    """Parse CLI args and run the server."""
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
    )

    args = parse_args()

    try:
        asyncio.run(
            run_server(
                config_path=args.config,
                host=args.host,
                port=args.port,
            )
        )
    except KeyboardInterrupt:
        logger.info("Interrupted by user")
        sys.exit(0)


if __name__ == "__main__":
    main()
