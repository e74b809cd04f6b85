"""Reconnecting SSE consumer over httpx.

``ReconnectingStreamConsumer`` keeps one subscription to a stream endpoint
alive: it reconnects with exponential backoff after any transport error or
server-side close and hands each parsed message to the handlers registered
for its ``type``. Every reconnect is a fresh subscription unless ``resume``
is set, in which case the last ``id:`` seen is sent back as
``Last-Event-ID``. 401 and 403 responses are final.
"""

from __future__ import annotations

import asyncio
import inspect
import json
import logging
from enum import Enum
from typing import Any, Awaitable, Callable

import httpx

from orderbean_realtime.client.sse import ServerSentEvent, SSEParser
from orderbean_realtime.config import ClientConfig

logger = logging.getLogger(__name__)

Message = dict[str, Any]
MessageHandler = Callable[[Message], Awaitable[None] | None]
StatusCallback = Callable[["ConnectionStatus"], None]

# Any message type
WILDCARD = "*"


class ConnectionStatus(str, Enum):
    CONNECTING = "connecting"
    OPEN = "open"
    CLOSED = "closed"


class StreamRejectedError(Exception):
    """The server refused the subscription (401/403); retrying will not help."""

    def __init__(self, status_code: int) -> None:
        super().__init__(f"Stream rejected with HTTP {status_code}")
        self.status_code = status_code


class ReconnectingStreamConsumer:
    """Maintains a live subscription to one SSE endpoint.

    Parameters
    ----------
    url:
        Stream URL, absolute or relative to the client's ``base_url``.
    client:
        httpx client to use. One is created (and closed on disconnect) when
        omitted.
    headers:
        Extra request headers, e.g. ``Authorization``.
    initial_retry_delay, max_retry_delay, backoff_factor:
        Reconnect delay starts at ``initial`` and is multiplied by ``factor``
        for every further failed attempt, capped at ``max``. A successful
        open resets it.
        A ``retry:`` hint from the server replaces the initial delay.
    max_reconnects:
        Give up after this many reconnects; ``None`` retries forever.
    resume:
        Send ``Last-Event-ID`` on reconnect.
    read_timeout:
        Seconds without any bytes (keepalives included) before the
        connection is considered dead.
    """

    def __init__(
        self,
        url: str,
        *,
        client: httpx.AsyncClient | None = None,
        headers: dict[str, str] | None = None,
        initial_retry_delay: float = 1.0,
        max_retry_delay: float = 30.0,
        backoff_factor: float = 2.0,
        max_reconnects: int | None = None,
        resume: bool = False,
        read_timeout: float | None = 90.0,
    ) -> None:
        self.url = url
        self._owns_client = client is None
        self._client = client or httpx.AsyncClient(
            timeout=httpx.Timeout(10.0, read=read_timeout)
        )
        self._headers = dict(headers or {})
        self._initial_retry_delay = initial_retry_delay
        self._max_retry_delay = max_retry_delay
        self._backoff_factor = backoff_factor
        self._max_reconnects = max_reconnects
        self._resume = resume

        self._handlers: dict[str, list[MessageHandler]] = {}
        self._status_callbacks: list[StatusCallback] = []
        self._status = ConnectionStatus.CLOSED
        self._task: asyncio.Task | None = None
        self._stopped = False
        self._opened = False

        self.last_event_id: str | None = None
        self.reconnects = 0
        self.rejected_status: int | None = None

    @classmethod
    def from_config(
        cls, url: str, config: ClientConfig, **kwargs: Any
    ) -> ReconnectingStreamConsumer:
        return cls(
            url,
            initial_retry_delay=config.initial_retry_delay,
            max_retry_delay=config.max_retry_delay,
            backoff_factor=config.backoff_factor,
            **kwargs,
        )

    # -- registration --------------------------------------------------------

    def on(self, message_type: str, handler: MessageHandler) -> None:
        """Call *handler* for every message of *message_type* (``"*"`` for all)."""
        self._handlers.setdefault(message_type, []).append(handler)

    def on_status(self, callback: StatusCallback) -> None:
        self._status_callbacks.append(callback)

    @property
    def status(self) -> ConnectionStatus:
        return self._status

    def _set_status(self, status: ConnectionStatus) -> None:
        if status is self._status:
            return
        self._status = status
        for callback in list(self._status_callbacks):
            try:
                callback(status)
            except Exception:
                logger.exception("Status callback failed for %s", self.url)

    # -- lifecycle -----------------------------------------------------------

    async def connect(self) -> ReconnectingStreamConsumer:
        """Start the background subscription and return this consumer as the handle."""
        if self._task is not None and not self._task.done():
            return self
        self._stopped = False
        self._set_status(ConnectionStatus.CONNECTING)
        self._task = asyncio.create_task(self._run(), name=f"sse-consumer-{self.url}")
        return self

    async def disconnect(self) -> None:
        """Tear the subscription down. Safe to call more than once."""
        self._stopped = True
        task, self._task = self._task, None
        if task is not None and not task.done():
            task.cancel()
            try:
                await task
            except asyncio.CancelledError:
                pass
        if self._owns_client and not self._client.is_closed:
            await self._client.aclose()
        self._set_status(ConnectionStatus.CLOSED)

    async def wait_closed(self) -> None:
        """Wait until the consumer stops on its own (rejected or out of retries)."""
        if self._task is not None:
            await asyncio.gather(self._task, return_exceptions=True)

    # -- connection loop -----------------------------------------------------

    def _backoff_delay(self, failures: int) -> float:
        delay = self._initial_retry_delay * (self._backoff_factor ** max(failures - 1, 0))
        return min(delay, self._max_retry_delay)

    async def _run(self) -> None:
        failures = 0
        try:
            while not self._stopped:
                self._set_status(ConnectionStatus.CONNECTING)
                self._opened = False
                try:
                    await self._stream_once()
                    logger.info("Stream %s ended by server", self.url)
                except StreamRejectedError as exc:
                    self.rejected_status = exc.status_code
                    logger.warning("Stream %s rejected (HTTP %d); not reconnecting",
                                   self.url, exc.status_code)
                    return
                except httpx.HTTPError as exc:
                    logger.warning("Stream %s failed: %s", self.url, exc)

                failures = 0 if self._opened else failures + 1
                if self._max_reconnects is not None and self.reconnects >= self._max_reconnects:
                    logger.info("Stream %s: giving up after %d reconnects",
                                self.url, self.reconnects)
                    return

                self._set_status(ConnectionStatus.CONNECTING)
                await asyncio.sleep(self._backoff_delay(failures))
                self.reconnects += 1
        finally:
            self._set_status(ConnectionStatus.CLOSED)

    async def _stream_once(self) -> None:
        headers = {
            **self._headers,
            "Accept": "text/event-stream",
            "Cache-Control": "no-cache",
        }
        if self._resume and self.last_event_id:
            headers["Last-Event-ID"] = self.last_event_id

        async with self._client.stream("GET", self.url, headers=headers) as response:
            if response.status_code in (401, 403):
                raise StreamRejectedError(response.status_code)
            response.raise_for_status()

            self._opened = True
            self._set_status(ConnectionStatus.OPEN)
            logger.info("Connected to %s", self.url)

            parser = SSEParser()
            async for line in response.aiter_lines():
                event = parser.feed_line(line)
                if parser.retry is not None:
                    self._initial_retry_delay = parser.retry / 1000
                if parser.last_event_id is not None:
                    self.last_event_id = parser.last_event_id
                if event is not None:
                    await self._dispatch(event)

    async def _dispatch(self, event: ServerSentEvent) -> None:
        try:
            message = json.loads(event.data)
        except json.JSONDecodeError:
            logger.warning("Dropping malformed frame from %s: %r", self.url, event.data[:200])
            return
        if not isinstance(message, dict) or not isinstance(message.get("type"), str):
            logger.warning("Dropping frame without a type from %s: %r", self.url, event.data[:200])
            return

        message_type = message["type"]
        handlers = self._handlers.get(message_type, []) + self._handlers.get(WILDCARD, [])
        for handler in handlers:
            try:
                result = handler(message)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("Handler for %s failed", message_type)
