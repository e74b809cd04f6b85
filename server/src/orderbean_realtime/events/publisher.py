"""Event publisher -- turns committed order/inventory mutations into log entries.

Callers invoke the publisher only after their own transaction has
committed. Each publish is exactly one ``append``. A failed append surfaces
as ``PublishError``; the caller logs it and keeps the committed mutation,
so a client may miss that change (best-effort delivery).
"""

from __future__ import annotations

import logging
import time
from typing import Any, Mapping

from orderbean_realtime.events.log import EntryId, EventLog, EventLogError
from orderbean_realtime.events.types import Topic

logger = logging.getLogger(__name__)


class PublishError(Exception):
    """An event could not be appended to its topic."""

    def __init__(self, topic: str, message: str) -> None:
        super().__init__(message)
        self.topic = topic


def _now_ms() -> int:
    return int(time.time() * 1000)


def _stringify(fields: Mapping[str, Any]) -> dict[str, str]:
    """Stream entries are flat string maps; drop unset values."""
    return {key: str(value) for key, value in fields.items() if value is not None}


class EventPublisher:
    """Appends order lifecycle and inventory events to the event log."""

    def __init__(self, event_log: EventLog) -> None:
        self._log = event_log

    async def publish_order_created(
        self,
        order_id: str,
        user_id: str,
        status: str,
        timestamp: int | None = None,
    ) -> EntryId:
        return await self._append(
            Topic.ORDER_CREATED,
            {
                "orderId": order_id,
                "userId": user_id,
                "status": status,
                "timestamp": timestamp if timestamp is not None else _now_ms(),
            },
        )

    async def publish_order_status_changed(
        self,
        order_id: str,
        user_id: str,
        old_status: str | None,
        new_status: str,
        timestamp: int | None = None,
    ) -> EntryId:
        return await self._append(
            Topic.ORDER_STATUS_CHANGED,
            {
                "orderId": order_id,
                "userId": user_id,
                "status": new_status,
                "previousStatus": old_status,
                "timestamp": timestamp if timestamp is not None else _now_ms(),
            },
        )

    async def publish_low_stock_alert(
        self,
        product_id: str,
        product_name: str,
        stock_quantity: int,
        threshold: int,
        timestamp: int | None = None,
    ) -> EntryId:
        return await self._append(
            Topic.LOW_STOCK_ALERT,
            {
                "productId": product_id,
                "productName": product_name,
                "stockQuantity": stock_quantity,
                "lowStockThreshold": threshold,
                "timestamp": timestamp if timestamp is not None else _now_ms(),
            },
        )

    async def _append(self, topic: str, fields: Mapping[str, Any]) -> EntryId:
        try:
            entry_id = await self._log.append(topic, _stringify(fields))
        except EventLogError as exc:
            raise PublishError(topic, f"Failed to publish to {topic}: {exc}") from exc
        logger.debug("Published %s to %s", entry_id, topic)
        return entry_id
