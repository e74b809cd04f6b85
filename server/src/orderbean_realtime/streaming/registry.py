"""Per-process registry of live SSE connections."""

from __future__ import annotations

import logging
from typing import Iterator

from orderbean_realtime.streaming.dispatcher import EventDispatcher

logger = logging.getLogger(__name__)


class ConnectionRegistry:
    """Tracks open dispatchers so shutdown can close them all."""

    def __init__(self) -> None:
        self._dispatchers: dict[str, EventDispatcher] = {}

    def add(self, dispatcher: EventDispatcher) -> None:
        self._dispatchers[dispatcher.connection_id] = dispatcher

    def discard(self, dispatcher: EventDispatcher) -> None:
        self._dispatchers.pop(dispatcher.connection_id, None)

    def get(self, connection_id: str) -> EventDispatcher | None:
        return self._dispatchers.get(connection_id)

    def active(self) -> list[EventDispatcher]:
        return list(self._dispatchers.values())

    def __len__(self) -> int:
        return len(self._dispatchers)

    def __iter__(self) -> Iterator[EventDispatcher]:
        return iter(self.active())

    async def close_all(self) -> int:
        """Close every open connection and wait for their timers to stop."""
        dispatchers = self.active()
        for dispatcher in dispatchers:
            dispatcher.close()
        for dispatcher in dispatchers:
            await dispatcher.wait_closed()
        self._dispatchers.clear()
        if dispatchers:
            logger.info("Closed %d open stream(s)", len(dispatchers))
        return len(dispatchers)
