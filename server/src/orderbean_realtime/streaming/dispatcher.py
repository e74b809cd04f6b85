"""Per-connection event dispatcher.

One ``EventDispatcher`` drives one open SSE connection. It tails the event
log from its subscription's cursors on a fixed poll interval, writes every
matching entry as a data frame, and writes a keepalive comment frame on an
independent timer. Both timers write through a single lock so the
connection never sees two interleaved frames.

State machine::

    CONNECTING --start()--> STREAMING --close()--> CLOSED
    CONNECTING --close()--> CLOSED

``close()`` is synchronous and idempotent: it is called from the
transport's disconnect path, from a failed write, from the optional
lifetime deadline and from application shutdown, in any combination.
"""

from __future__ import annotations

import asyncio
import logging
from enum import Enum
from typing import Callable, Protocol
from uuid import uuid4

from orderbean_realtime.events.log import EventLog, EventLogError
from orderbean_realtime.streaming.frames import (
    KEEPALIVE,
    connected_payload,
    entry_payload,
    format_event,
)
from orderbean_realtime.streaming.subscription import Subscription

logger = logging.getLogger(__name__)


class ConnectionState(str, Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    CLOSED = "closed"


class ConnectionClosedError(Exception):
    """A frame was written to a connection that is already gone."""


class FrameSink(Protocol):
    """Where a dispatcher writes encoded frames."""

    async def send(self, frame: str) -> None:
        """Write one frame; raise ``ConnectionClosedError`` if the peer is gone."""
        ...

    def close(self) -> None:
        ...


class QueueSink:
    """Frame sink backed by an ``asyncio.Queue``.

    The HTTP response body iterates the sink; iteration ends once the sink
    is closed and every queued frame has been consumed.
    """

    def __init__(self) -> None:
        self._queue: asyncio.Queue[str | None] = asyncio.Queue()
        self._closed = False
        self._drained = False

    @property
    def closed(self) -> bool:
        return self._closed

    async def send(self, frame: str) -> None:
        if self._closed:
            raise ConnectionClosedError("sink is closed")
        await self._queue.put(frame)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(None)

    def __aiter__(self) -> QueueSink:
        return self

    async def __anext__(self) -> str:
        if self._drained:
            raise StopAsyncIteration
        frame = await self._queue.get()
        if frame is None:
            self._drained = True
            raise StopAsyncIteration
        return frame


class EventDispatcher:
    """Streams new, relevant log entries to one connection.

    Parameters
    ----------
    log:
        The shared event log.
    subscription:
        Topics, filter and cursors owned by this connection alone.
    sink:
        Output for encoded frames.
    poll_interval:
        Seconds between poll cycles.
    keepalive_interval:
        Seconds between keepalive frames; ``0`` disables them.
    block_ms:
        Passed to ``read_since``; a poll waits at most this long for entries.
    batch_size:
        Maximum entries read per topic per cycle. A full batch triggers an
        immediate follow-up cycle.
    max_duration:
        Close the connection after this many seconds; ``0`` means never.
    retry_ms:
        Reconnect hint sent with the ``connected`` frame.
    on_close:
        Called once with this dispatcher when it closes.
    """

    def __init__(
        self,
        log: EventLog,
        subscription: Subscription,
        sink: FrameSink,
        *,
        poll_interval: float = 2.0,
        keepalive_interval: float = 30.0,
        block_ms: int = 0,
        batch_size: int = 10,
        max_duration: float = 0.0,
        retry_ms: int | None = None,
        connection_id: str | None = None,
        on_close: Callable[[EventDispatcher], None] | None = None,
    ) -> None:
        self._log = log
        self.subscription = subscription
        self._sink = sink
        self._poll_interval = poll_interval
        self._keepalive_interval = keepalive_interval
        self._block_ms = block_ms
        self._batch_size = batch_size
        self._max_duration = max_duration
        self._retry_ms = retry_ms
        self._on_close = on_close
        self.connection_id = connection_id or uuid4().hex[:12]
        self.state = ConnectionState.CONNECTING
        self.delivered = 0
        self._write_lock = asyncio.Lock()
        self._tasks: list[asyncio.Task] = []
        self._batch_was_full = False

    # -- lifecycle -----------------------------------------------------------

    async def start(self) -> None:
        """Seed cursors, send the ``connected`` frame and start the timers."""
        if self.state is not ConnectionState.CONNECTING:
            return
        await self._seed()
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.STREAMING

        frame = format_event(
            connected_payload(self.subscription.scope, self.connection_id),
            event_id=self.subscription.cursor_token() or None,
            retry=self._retry_ms,
        )
        try:
            await self._write(frame)
        except ConnectionClosedError:
            self.close()
            return

        self._tasks.append(
            asyncio.create_task(self._poll_loop(), name=f"sse-poll-{self.connection_id}")
        )
        if self._keepalive_interval > 0:
            self._tasks.append(
                asyncio.create_task(
                    self._keepalive_loop(), name=f"sse-keepalive-{self.connection_id}"
                )
            )
        if self._max_duration > 0:
            self._tasks.append(
                asyncio.create_task(
                    self._deadline(), name=f"sse-deadline-{self.connection_id}"
                )
            )
        logger.info(
            "Connection %s streaming %s",
            self.connection_id,
            ", ".join(self.subscription.topics),
        )

    def close(self) -> None:
        """Stop all timers and release the sink. Safe to call repeatedly."""
        if self.state is ConnectionState.CLOSED:
            return
        self.state = ConnectionState.CLOSED

        try:
            current = asyncio.current_task()
        except RuntimeError:
            current = None
        for task in self._tasks:
            if task is not current and not task.done():
                task.cancel()

        self._sink.close()
        callback, self._on_close = self._on_close, None
        if callback is not None:
            callback(self)
        logger.debug(
            "Connection %s closed after %d frames", self.connection_id, self.delivered
        )

    async def wait_closed(self) -> None:
        """Wait for the background tasks to finish after ``close()``."""
        current = asyncio.current_task()
        pending = [task for task in self._tasks if task is not current]
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    @property
    def closed(self) -> bool:
        return self.state is ConnectionState.CLOSED

    # -- poll cycle ----------------------------------------------------------

    async def poll_once(self) -> int:
        """Run one poll cycle and return the number of frames written.

        A failed read counts as "nothing new"; the cursors stay where they
        are and the next cycle retries from there.
        """
        if not self.subscription.is_seeded:
            await self._seed()
        topics, cursors = self.subscription.seeded_topics()
        if not topics:
            return 0

        try:
            batches = await self._log.read_since(
                topics, cursors, limit=self._batch_size, block_ms=self._block_ms
            )
        except EventLogError as exc:
            logger.warning("Poll failed for connection %s: %s", self.connection_id, exc)
            self._batch_was_full = False
            return 0
        except Exception:
            logger.exception("Unexpected poll error for connection %s", self.connection_id)
            self._batch_was_full = False
            return 0

        self._batch_was_full = any(
            len(entries) >= self._batch_size for entries in batches.values()
        )

        written = 0
        for topic in topics:
            for entry in batches.get(topic, ()):
                if self.subscription.has_seen(entry):
                    continue
                self.subscription.advance(topic, entry.entry_id)
                if not self.subscription.accepts(entry):
                    continue
                await self._write(
                    format_event(
                        entry_payload(entry), event_id=self.subscription.cursor_token()
                    )
                )
                written += 1
        self.delivered += written
        return written

    async def _poll_loop(self) -> None:
        try:
            while self.state is ConnectionState.STREAMING:
                await self.poll_once()
                if not self._batch_was_full:
                    await asyncio.sleep(self._poll_interval)
        except ConnectionClosedError:
            logger.debug("Connection %s went away during poll", self.connection_id)
            self.close()

    async def _seed(self) -> None:
        try:
            await self.subscription.seed(self._log)
        except EventLogError as exc:
            logger.warning(
                "Could not seed cursors for connection %s: %s", self.connection_id, exc
            )

    # -- keepalive and deadline ---------------------------------------------

    async def _keepalive_loop(self) -> None:
        while self.state is ConnectionState.STREAMING:
            await asyncio.sleep(self._keepalive_interval)
            try:
                await self._write(KEEPALIVE)
            except ConnectionClosedError:
                logger.debug("Keepalive found connection %s gone", self.connection_id)
                self.close()
                return

    async def _deadline(self) -> None:
        await asyncio.sleep(self._max_duration)
        logger.debug(
            "Connection %s reached its %.0fs lifetime", self.connection_id, self._max_duration
        )
        self.close()

    async def _write(self, frame: str) -> None:
        async with self._write_lock:
            if self.state is ConnectionState.CLOSED:
                raise ConnectionClosedError(self.connection_id)
            await self._sink.send(frame)
