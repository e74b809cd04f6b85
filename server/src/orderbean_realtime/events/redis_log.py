"""Durable event log backed by Redis Streams.

One Redis stream per topic. Ids are the server-assigned ``<ms>-<seq>``
stream ids, so cursors taken from the SQLite log and from this one share a
format. Every server instance talks to the same Redis, which is what gives
cross-instance fan-out when the serving tier is scaled horizontally.
"""

from __future__ import annotations

from typing import Any, Mapping, Sequence

import redis.asyncio as aioredis
from redis.exceptions import RedisError

from orderbean_realtime.events.log import (
    EntryId,
    EventEntry,
    EventLogError,
    check_cursor_arity,
)


def _to_entries(topic: str, messages: Sequence[Any]) -> list[EventEntry]:
    return [
        EventEntry(topic=topic, entry_id=EntryId.parse(message_id), fields=dict(fields))
        for message_id, fields in messages
    ]


def _normalize_xread(reply: Any) -> dict[str, list[EventEntry]]:
    """Flatten an XREAD reply (RESP2 list or RESP3 dict) into topic -> entries."""
    if not reply:
        return {}
    if isinstance(reply, dict):
        items = [
            (stream, value[0] if value and isinstance(value[0], list) else value)
            for stream, value in reply.items()
        ]
    else:
        items = [(stream, messages) for stream, messages in reply]

    result: dict[str, list[EventEntry]] = {}
    for stream, messages in items:
        topic = stream.decode() if isinstance(stream, bytes) else stream
        entries = _to_entries(topic, messages)
        if entries:
            result[topic] = entries
    return result


class RedisStreamLog:
    """Stream log on a Redis server.

    Parameters
    ----------
    client:
        A ``redis.asyncio.Redis`` created with ``decode_responses=True``.
    max_len:
        Approximate per-topic cap applied on every append (0 = no cap).
    """

    def __init__(self, client: aioredis.Redis, *, max_len: int = 0) -> None:
        self._client = client
        self._max_len = max_len

    @classmethod
    def from_url(cls, url: str, *, max_len: int = 0, **kwargs: Any) -> RedisStreamLog:
        client = aioredis.from_url(url, decode_responses=True, **kwargs)
        return cls(client, max_len=max_len)

    async def append(self, topic: str, fields: Mapping[str, str]) -> EntryId:
        kwargs: dict[str, Any] = {}
        if self._max_len > 0:
            kwargs = {"maxlen": self._max_len, "approximate": True}
        try:
            message_id = await self._client.xadd(topic, dict(fields), **kwargs)
        except RedisError as exc:
            raise EventLogError(f"XADD {topic} failed: {exc}") from exc
        return EntryId.parse(message_id)

    async def read_range(
        self,
        topic: str,
        from_id: EntryId | None = None,
        to_id: EntryId | None = None,
        limit: int | None = None,
        reverse: bool = False,
    ) -> list[EventEntry]:
        low = str(from_id) if from_id is not None else "-"
        high = str(to_id) if to_id is not None else "+"
        try:
            if reverse:
                messages = await self._client.xrevrange(topic, max=high, min=low, count=limit)
            else:
                messages = await self._client.xrange(topic, min=low, max=high, count=limit)
        except RedisError as exc:
            raise EventLogError(f"range read of {topic} failed: {exc}") from exc
        return _to_entries(topic, messages)

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
        check_cursor_arity(topics, cursors)
        streams = {topic: str(cursor) for topic, cursor in zip(topics, cursors)}
        # BLOCK 0 means "forever" to Redis; never send it.
        block = block_ms if block_ms > 0 else None
        try:
            reply = await self._client.xread(streams, count=limit, block=block)
        except RedisError as exc:
            raise EventLogError(f"XREAD {', '.join(topics)} failed: {exc}") from exc
        return _normalize_xread(reply)

    async def ping(self) -> bool:
        try:
            return bool(await self._client.ping())
        except RedisError:
            return False

    async def close(self) -> None:
        await self._client.aclose()
