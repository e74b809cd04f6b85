"""Client-side order notifications.

``OrderNotifier`` turns ``order_updated`` and ``order_created`` messages into
user-facing notifications. It remembers the last status seen for each order
and only notifies when a new status differs from a known previous one, so
repeated frames, and frames replayed after a reconnect, never produce
duplicate notifications. The memory outlives reconnects.
"""

from __future__ import annotations

import logging
import time
from dataclasses import dataclass, field
from typing import Any
from uuid import uuid4

from orderbean_realtime.client.consumer import ReconnectingStreamConsumer
from orderbean_realtime.events.types import MessageType

logger = logging.getLogger(__name__)

MAX_NOTIFICATIONS = 50

# Statuses worth telling the customer about; PENDING is announced by order_created
STATUS_MESSAGES: dict[str, tuple[str, str]] = {
    "PREPARING": ("Order in Progress", "Your order is being prepared!"),
    "READY": ("Order Ready", "Your order is ready for pickup!"),
    "COMPLETED": ("Order Completed", "Thank you for your order!"),
    "CANCELLED": ("Order Cancelled", "Your order has been cancelled."),
}


@dataclass
class Notification:
    title: str
    message: str
    type: str
    order_id: str | None = None
    user_id: str | None = None
    read: bool = False
    id: str = field(default_factory=lambda: uuid4().hex)
    timestamp: int = field(default_factory=lambda: int(time.time() * 1000))


class NotificationCenter:
    """Newest-first notification list for the signed-in user."""

    def __init__(self, user_id: str | None = None) -> None:
        self._user_id = user_id
        self._items: list[Notification] = []

    @property
    def current_user(self) -> str | None:
        return self._user_id

    def set_current_user(self, user_id: str | None) -> None:
        """Switch users; another user's notifications are never shown."""
        if user_id != self._user_id:
            logger.debug("Notification user changed: %s -> %s", self._user_id, user_id)
            self._items = []
        self._user_id = user_id

    @property
    def notifications(self) -> list[Notification]:
        return list(self._items)

    @property
    def unread_count(self) -> int:
        return sum(1 for item in self._items if not item.read)

    def add(
        self,
        title: str,
        message: str,
        type: str,
        order_id: str | None = None,
    ) -> Notification | None:
        if self._user_id is None:
            logger.warning("Cannot add notification %r: no user signed in", title)
            return None
        notification = Notification(
            title=title,
            message=message,
            type=type,
            order_id=order_id,
            user_id=self._user_id,
        )
        self._items.insert(0, notification)
        del self._items[MAX_NOTIFICATIONS:]
        return notification

    def mark_read(self, notification_id: str) -> bool:
        for item in self._items:
            if item.id == notification_id:
                item.read = True
                return True
        return False

    def mark_all_read(self) -> None:
        for item in self._items:
            item.read = True

    def remove(self, notification_id: str) -> bool:
        before = len(self._items)
        self._items = [item for item in self._items if item.id != notification_id]
        return len(self._items) != before

    def clear(self) -> None:
        self._items = []


class OrderNotifier:
    """Raises notifications for order lifecycle messages."""

    def __init__(self, center: NotificationCenter) -> None:
        self._center = center
        self._last_status: dict[str, str] = {}

    def attach(self, consumer: ReconnectingStreamConsumer) -> None:
        consumer.on(MessageType.ORDER_UPDATED, self.handle_order_updated)
        consumer.on(MessageType.ORDER_CREATED, self.handle_order_created)

    def reset(self) -> None:
        """Forget every remembered status, e.g. when the signed-in user changes."""
        self._last_status.clear()

    def last_status(self, order_id: str) -> str | None:
        return self._last_status.get(order_id)

    def handle_order_updated(self, message: dict[str, Any]) -> Notification | None:
        order_id = message.get("orderId")
        status = message.get("status")
        if not order_id or not status:
            return None

        # Unknown orders fall back to the status the server says they left.
        previous = self._last_status.get(order_id) or message.get("previousStatus")
        self._last_status[order_id] = status
        if not previous or previous == status:
            return None

        text = STATUS_MESSAGES.get(status)
        if text is None:
            return None
        title, body = text
        return self._center.add(title, body, "order_update", order_id)

    def handle_order_created(self, message: dict[str, Any]) -> Notification | None:
        order_id = message.get("orderId")
        if not order_id:
            return None
        status = message.get("status")
        if status:
            self._last_status.setdefault(order_id, status)
        return self._center.add(
            "Order Placed", "Your order has been placed successfully!", "payment", order_id
        )
