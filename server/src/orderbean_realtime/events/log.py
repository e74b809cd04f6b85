"""Durable event log capability.

The log is an append-only, multi-topic store. Each topic is an independently
ordered sequence of entries addressed by a monotonically increasing
``EntryId``. Publishers append; every open SSE connection tails the log from
its own cursor. Nothing in the serving process is shared between publisher
and dispatcher except this log, so any backend that satisfies ``EventLog``
(a SQLite file, a Redis stream) gives cross-instance fan-out.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from typing import ClassVar, Mapping, Protocol, Sequence

_ENTRY_ID_RE = re.compile(r"^(\d+)-(\d+)$")


class EventLogError(Exception):
    """The log backend could not complete an operation (transport failure)."""


@dataclass(frozen=True, order=True)
class EntryId:
    """Stream entry identifier in ``<ms>-<seq>`` form, ordered by (ms, seq)."""

    ms: int
    seq: int

    MIN: ClassVar[EntryId]

    @classmethod
    def parse(cls, raw: str | bytes) -> EntryId:
        """Parse ``"1700000000000-0"`` into an ``EntryId``.

        Raises ``ValueError`` for anything else.
        """
        if isinstance(raw, bytes):
            raw = raw.decode()
        match = _ENTRY_ID_RE.match(raw.strip())
        if match is None:
            raise ValueError(f"Invalid stream entry id: {raw!r}")
        return cls(int(match.group(1)), int(match.group(2)))

    def __str__(self) -> str:
        return f"{self.ms}-{self.seq}"


# Smaller than any entry a backend will ever produce.
EntryId.MIN = EntryId(0, 0)


@dataclass(frozen=True)
class EventEntry:
    """An immutable record appended to exactly one topic."""

    topic: str
    entry_id: EntryId
    fields: Mapping[str, str]


class EventLog(Protocol):
    """Capability interface implemented by every log backend."""

    async def append(self, topic: str, fields: Mapping[str, str]) -> EntryId:
        """Append one entry to *topic* and return its id."""
        ...

    async def read_range(
        self,
        topic: str,
        from_id: EntryId | None = None,
        to_id: EntryId | None = None,
        limit: int | None = None,
        reverse: bool = False,
    ) -> list[EventEntry]:
        """Inclusive range read. ``None`` bounds mean open-ended."""
        ...

    async def read_latest(self, topic: str) -> EventEntry | None:
        """Return the newest entry of *topic*, or ``None`` if it is empty."""
        ...

    async def read_since(
        self,
        topics: Sequence[str],
        cursors: Sequence[EntryId],
        limit: int | None = None,
        block_ms: int = 0,
    ) -> dict[str, list[EventEntry]]:
        """Return entries strictly after each topic's cursor.

        Topics with nothing new are omitted. When nothing is available the
        call may wait up to *block_ms* milliseconds, never longer.
        """
        ...

    async def ping(self) -> bool:
        """Return True when the backend is reachable."""
        ...

    async def close(self) -> None:
        ...


def check_cursor_arity(topics: Sequence[str], cursors: Sequence[EntryId]) -> None:
    if len(topics) != len(cursors):
        raise ValueError(
            f"read_since needs one cursor per topic "
            f"(got {len(topics)} topics, {len(cursors)} cursors)"
        )
