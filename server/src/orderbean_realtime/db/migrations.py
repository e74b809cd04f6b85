"""Schema version tracking and migration runner.

Checks the current schema version in the database and applies any pending
migrations in order. Version 0 means no schema exists yet.
"""

from __future__ import annotations

from datetime import datetime, timezone

import aiosqlite

from orderbean_realtime.db.schema import SCHEMA_V1_SQL, SCHEMA_VERSION


async def _get_current_version(db: aiosqlite.Connection) -> int:
    """Return the current schema version, or 0 if the table does not exist."""
    if not await _table_exists(db, "schema_version"):
        return 0
    cursor = await db.execute("SELECT MAX(version) FROM schema_version")
    row = await cursor.fetchone()
    return row[0] if row and row[0] is not None else 0


async def _table_exists(db: aiosqlite.Connection, table: str) -> bool:
    """Check whether a table already exists in the database."""
    cursor = await db.execute(
        "SELECT name FROM sqlite_master WHERE type='table' AND name=?",
        (table,),
    )
    return await cursor.fetchone() is not None


async def _column_exists(db: aiosqlite.Connection, table: str, column: str) -> bool:
    """Check whether a column already exists in a table."""
    cursor = await db.execute(f"PRAGMA table_info({table})")
    rows = await cursor.fetchall()
    return any(row[1] == column for row in rows)


async def _record_version(db: aiosqlite.Connection, version: int) -> None:
    now = datetime.now(timezone.utc).isoformat()
    await db.execute(
        "INSERT OR IGNORE INTO schema_version (version, applied_at) VALUES (?, ?)",
        (version, now),
    )
    await db.commit()


async def _apply_v1(db: aiosqlite.Connection) -> None:
    """Apply schema version 1: stream log, sessions, products, orders."""
    await db.executescript(SCHEMA_V1_SQL)
    await _record_version(db, 1)


async def _apply_v2(db: aiosqlite.Connection) -> None:
    """V2: per-product stock tracking switch (untracked products never alert)."""
    if not await _column_exists(db, "products", "stock_enabled"):
        await db.execute(
            "ALTER TABLE products ADD COLUMN stock_enabled INTEGER NOT NULL DEFAULT 1"
        )
    await _record_version(db, 2)


_MIGRATIONS = [
    (1, _apply_v1),
    (2, _apply_v2),
]


async def apply_migrations(db: aiosqlite.Connection) -> None:
    """Apply all pending migrations to bring the database to the current version.

    Safe to call multiple times -- skips already-applied migrations.
    """
    current = await _get_current_version(db)

    if current >= SCHEMA_VERSION:
        return

    for target_version, migrate_fn in _MIGRATIONS:
        if current < target_version:
            await migrate_fn(db)
            current = target_version
