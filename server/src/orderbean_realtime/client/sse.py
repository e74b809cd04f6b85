"""Incremental ``text/event-stream`` parser.

Follows the EventSource processing rules: ``field: value`` lines build up an
event, a blank line dispatches it, lines starting with ``:`` are comments,
and unknown fields are ignored. The last seen ``id`` persists across events.
"""

from __future__ import annotations

from dataclasses import dataclass


@dataclass
class ServerSentEvent:
    event: str = "message"
    data: str = ""
    id: str | None = None
    retry: int | None = None


class SSEParser:
    """Turns lines (or raw text chunks) into ``ServerSentEvent`` objects."""

    def __init__(self) -> None:
        self.last_event_id: str | None = None
        self.retry: int | None = None
        self._buffer = ""
        self._reset()

    def _reset(self) -> None:
        self._event = ""
        self._data: list[str] = []
        self._retry: int | None = None

    def feed(self, chunk: str) -> list[ServerSentEvent]:
        """Parse a raw chunk that may hold partial lines."""
        self._buffer += chunk.replace("\r\n", "\n").replace("\r", "\n")
        *lines, self._buffer = self._buffer.split("\n")
        events = []
        for line in lines:
            event = self.feed_line(line)
            if event is not None:
                events.append(event)
        return events

    def feed_line(self, line: str) -> ServerSentEvent | None:
        """Process one line (without its terminator); return an event on dispatch."""
        if line == "":
            return self._dispatch()
        if line.startswith(":"):
            return None

        name, sep, value = line.partition(":")
        if sep and value.startswith(" "):
            value = value[1:]

        if name == "data":
            self._data.append(value)
        elif name == "event":
            self._event = value
        elif name == "id":
            if "\0" not in value:
                self.last_event_id = value
        elif name == "retry":
            if value.isdigit():
                self._retry = int(value)
                self.retry = self._retry
        return None

    def _dispatch(self) -> ServerSentEvent | None:
        if not self._data:
            # A frame with only id/retry still updates state but delivers nothing
            self._reset()
            return None
        event = ServerSentEvent(
            event=self._event or "message",
            data="\n".join(self._data),
            id=self.last_event_id,
            retry=self._retry,
        )
        self._reset()
        return event
