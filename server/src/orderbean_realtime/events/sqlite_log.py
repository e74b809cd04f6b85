"""Durable event log backed by SQLite.

Every topic lives in the ``stream_entries`` table. Entry ids follow the
Redis stream ``<ms>-<seq>`` convention and are allocated inside the same
statement that inserts the row, so several server processes sharing one
database file (WAL mode) never hand out the same id. Tailing reads that ask
to block are served by re-querying until the block window closes.
"""

from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
import time
from pathlib import Path
from typing import Callable, Mapping, Sequence

import aiosqlite

from orderbean_realtime.db.migrations import apply_migrations
from orderbean_realtime.db.queries import write_lock
from orderbean_realtime.events.log import (
    EntryId,
    EventEntry,
    EventLogError,
    check_cursor_arity,
)

logger = logging.getLogger(__name__)

# Seconds between re-queries while emulating a blocking read
BLOCK_POLL_INTERVAL = 0.05

_APPEND_SQL = """
INSERT INTO stream_entries (topic, ms, seq, fields)
SELECT :topic,
       CASE WHEN last.ms IS NULL OR :now > last.ms THEN :now ELSE last.ms END,
       CASE WHEN last.ms IS NULL OR :now > last.ms THEN 0 ELSE last.seq + 1 END,
       :fields
FROM (SELECT 1) AS seed
LEFT JOIN (
    SELECT ms, seq FROM stream_entries
    WHERE topic = :topic
    ORDER BY ms DESC, seq DESC
    LIMIT 1
) AS last ON 1
"""

_TRIM_SQL = """
DELETE FROM stream_entries
WHERE topic = :topic AND id IN (
    SELECT id FROM stream_entries
    WHERE topic = :topic
    ORDER BY ms DESC, seq DESC
    LIMIT -1 OFFSET :keep
)
"""


def _now_ms() -> int:
    return time.time_ns() // 1_000_000


def _row_to_entry(row) -> EventEntry:
    # Columns: topic(0), ms(1), seq(2), fields(3)
    return EventEntry(
        topic=row[0],
        entry_id=EntryId(row[1], row[2]),
        fields=json.loads(row[3]),
    )


class SQLiteEventLog:
    """Append-only, multi-topic stream log stored in SQLite.

    Parameters
    ----------
    db:
        An open ``aiosqlite.Connection`` with the schema already applied.
    max_len:
        Keep at most this many entries per topic (0 keeps everything).
    clock:
        Millisecond wall clock used for new entry ids.
    """

    def __init__(
        self,
        db: aiosqlite.Connection,
        *,
        max_len: int = 0,
        clock: Callable[[], int] = _now_ms,
        owns_connection: bool = False,
    ) -> None:
        self._db = db
        self._max_len = max_len
        self._clock = clock
        self._owns_connection = owns_connection

    @classmethod
    async def open(cls, path: Path | str, *, max_len: int = 0) -> SQLiteEventLog:
        """Open a dedicated connection to the log database file."""
        db = await aiosqlite.connect(str(path))
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute("PRAGMA busy_timeout=5000")
        await apply_migrations(db)
        return cls(db, max_len=max_len, owns_connection=True)

    async def append(self, topic: str, fields: Mapping[str, str]) -> EntryId:
        """Append an entry to *topic* and return its id."""
        params = {
            "topic": topic,
            "now": self._clock(),
            "fields": json.dumps(dict(fields)),
        }
        # A borrowed connection may carry another caller's open transaction.
        async with write_lock(self._db):
            try:
                cursor = await self._db.execute(_APPEND_SQL, params)
                cursor = await self._db.execute(
                    "SELECT ms, seq FROM stream_entries WHERE id = ?",
                    (cursor.lastrowid,),
                )
                row = await cursor.fetchone()
                if self._max_len > 0:
                    await self._db.execute(
                        _TRIM_SQL, {"topic": topic, "keep": self._max_len}
                    )
                await self._db.commit()
            except sqlite3.Error as exc:
                await self._rollback_quietly()
                raise EventLogError(f"append to {topic} failed: {exc}") from exc
        return EntryId(row[0], row[1])

    async def read_range(
        self,
        topic: str,
        from_id: EntryId | None = None,
        to_id: EntryId | None = None,
        limit: int | None = None,
        reverse: bool = False,
    ) -> list[EventEntry]:
        """Inclusive range read, ascending unless *reverse* is set."""
        clauses = ["topic = ?"]
        params: list = [topic]
        if from_id is not None:
            clauses.append("(ms > ? OR (ms = ? AND seq >= ?))")
            params += [from_id.ms, from_id.ms, from_id.seq]
        if to_id is not None:
            clauses.append("(ms < ? OR (ms = ? AND seq <= ?))")
            params += [to_id.ms, to_id.ms, to_id.seq]
        order = "DESC" if reverse else "ASC"
        params.append(limit if limit is not None else -1)
        sql = (
            "SELECT topic, ms, seq, fields FROM stream_entries "
            f"WHERE {' AND '.join(clauses)} "
            f"ORDER BY ms {order}, seq {order} LIMIT ?"
        )
        return await self._select(sql, tuple(params), topic)

    async def read_latest(self, topic: str) -> EventEntry | None:
        entries = await self.read_range(topic, limit=1, reverse=True)
        return entries[0] if entries else None

    async def read_since(
        self,
        topics: Sequence[str],
        cursors: Sequence[EntryId],
        limit: int | None = None,
        block_ms: int = 0,
    ) -> dict[str, list[EventEntry]]:
        """Return entries after each cursor, waiting up to *block_ms* for any."""
        check_cursor_arity(topics, cursors)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + max(block_ms, 0) / 1000

        while True:
            result: dict[str, list[EventEntry]] = {}
            for topic, cursor in zip(topics, cursors):
                entries = await self._read_after(topic, cursor, limit)
                if entries:
                    result[topic] = entries
            remaining = deadline - loop.time()
            if result or remaining <= 0:
                return result
            await asyncio.sleep(min(BLOCK_POLL_INTERVAL, remaining))

    async def ping(self) -> bool:
        try:
            await self._db.execute("SELECT 1")
        except (sqlite3.Error, ValueError):
            return False
        return True

    async def close(self) -> None:
        if self._owns_connection:
            await self._db.close()

    # -- internals ---------------------------------------------------------

    async def _read_after(
        self, topic: str, cursor: EntryId, limit: int | None
    ) -> list[EventEntry]:
        return await self._select(
            "SELECT topic, ms, seq, fields FROM stream_entries "
            "WHERE topic = ? AND (ms > ? OR (ms = ? AND seq > ?)) "
            "ORDER BY ms ASC, seq ASC LIMIT ?",
            (topic, cursor.ms, cursor.ms, cursor.seq, limit if limit is not None else -1),
            topic,
        )

    async def _select(self, sql: str, params: tuple, topic: str) -> list[EventEntry]:
        try:
            cursor = await self._db.execute(sql, params)
            rows = await cursor.fetchall()
        except sqlite3.Error as exc:
            raise EventLogError(f"read from {topic} failed: {exc}") from exc
        return [_row_to_entry(row) for row in rows]

    async def _rollback_quietly(self) -> None:
        try:
            await self._db.rollback()
        except sqlite3.Error:
            logger.debug("Rollback after failed append also failed", exc_info=True)
