"""Server-Sent Events wire encoding."""

from __future__ import annotations

import json
from typing import Any, Mapping

from orderbean_realtime.events.log import EventEntry
from orderbean_realtime.events.types import MessageType, message_type_for

# Comment frame; ignored by EventSource but keeps proxies from idling out.
KEEPALIVE = ": keepalive\n\n"

# Fields published as strings that clients expect as numbers
_INT_FIELDS = ("timestamp", "stockQuantity", "lowStockThreshold")


def format_event(
    data: Mapping[str, Any],
    event_id: str | None = None,
    retry: int | None = None,
) -> str:
    """Encode one ``data:`` frame, optionally with ``id:`` and ``retry:`` lines."""
    lines = []
    if retry is not None:
        lines.append(f"retry: {int(retry)}")
    if event_id:
        lines.append(f"id: {event_id}")
    payload = json.dumps(dict(data), separators=(",", ":"))
    lines.append(f"data: {payload}")
    return "\n".join(lines) + "\n\n"


def entry_payload(entry: EventEntry) -> dict[str, Any]:
    """Build the outbound JSON object for a log entry."""
    payload: dict[str, Any] = {"type": message_type_for(entry.topic)}
    for key, value in entry.fields.items():
        if key in _INT_FIELDS:
            try:
                payload[key] = int(value)
                continue
            except (TypeError, ValueError):
                pass
        payload[key] = value
    return payload


def connected_payload(scope: Mapping[str, str], connection_id: str) -> dict[str, Any]:
    return {
        "type": MessageType.CONNECTED,
        "connectionId": connection_id,
        **scope,
    }
