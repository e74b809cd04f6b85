"""Topic and message type constants for the order event log.

Topics name the durable streams publishers append to. Message types are the
``type`` discriminator clients see on the wire.
"""

from __future__ import annotations


class Topic:
    """Namespace for stream topic names."""

    ORDER_CREATED = "orderbean:order:created"
    ORDER_STATUS_CHANGED = "orderbean:order:status_changed"
    LOW_STOCK_ALERT = "orderbean:inventory:low_stock_alert"


class MessageType:
    """Namespace for outbound message ``type`` values."""

    CONNECTED = "connected"
    ORDER_CREATED = "order_created"
    ORDER_UPDATED = "order_updated"
    LOW_STOCK_ALERT = "low_stock_alert"


_MESSAGE_TYPE_BY_TOPIC: dict[str, str] = {
    Topic.ORDER_CREATED: MessageType.ORDER_CREATED,
    Topic.ORDER_STATUS_CHANGED: MessageType.ORDER_UPDATED,
    Topic.LOW_STOCK_ALERT: MessageType.LOW_STOCK_ALERT,
}


def message_type_for(topic: str) -> str:
    """Return the wire message type for entries read from *topic*."""
    try:
        return _MESSAGE_TYPE_BY_TOPIC[topic]
    except KeyError:
        raise ValueError(f"No message type for topic {topic!r}") from None
