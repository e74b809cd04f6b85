"""Order mutations that feed the event log.

``OrderService`` commits every change to SQLite first and only then calls
the publisher, so a published event always describes persisted state.
Requests share one connection, so each mutation holds the connection's
write lock from its first statement until commit or rollback. A
publish failure is logged and swallowed: the order stays committed and
clients pick the change up on their next refresh.
"""

from __future__ import annotations

import logging
import sqlite3
from dataclasses import dataclass
from typing import Any
from uuid import uuid4

import aiosqlite

from orderbean_realtime.db import queries
from orderbean_realtime.events.publisher import EventPublisher, PublishError
from orderbean_realtime.models import OrderStatus

logger = logging.getLogger(__name__)


class OrderError(Exception):
    """Base class for order mutation failures."""


class OrderNotFoundError(OrderError):
    def __init__(self, order_id: str) -> None:
        super().__init__(f"Order {order_id} not found")
        self.order_id = order_id


class ProductNotFoundError(OrderError):
    def __init__(self, product_id: str) -> None:
        super().__init__(f"Product {product_id} not found")
        self.product_id = product_id


class InsufficientStockError(OrderError):
    def __init__(self, product_id: str, requested: int, available: int) -> None:
        super().__init__(
            f"Only {available} of product {product_id} left ({requested} requested)"
        )
        self.product_id = product_id
        self.requested = requested
        self.available = available


class InvalidStatusError(OrderError):
    def __init__(self, status: str) -> None:
        allowed = ", ".join(s.value for s in OrderStatus)
        super().__init__(f"Invalid status {status!r}; expected one of {allowed}")
        self.status = status


@dataclass(frozen=True)
class StockChange:
    product_id: str
    name: str
    before: int
    after: int
    threshold: int

    @property
    def crossed_threshold(self) -> bool:
        """True when this change took the product from above to at/below threshold."""
        return self.before > self.threshold >= self.after


class OrderService:
    """Places orders and moves them through their lifecycle.

    Parameters
    ----------
    db:
        Connection to the order/product database.
    publisher:
        Publisher for the order and inventory topics.
    """

    def __init__(self, db: aiosqlite.Connection, publisher: EventPublisher) -> None:
        self._db = db
        self._publisher = publisher

    async def place_order(
        self, user_id: str, items: list[dict[str, Any]]
    ) -> dict[str, Any]:
        """Create a PENDING order for *user_id*.

        *items* is a list of ``{"product_id": ..., "quantity": ...}``.
        Publishes ``order_created`` and, for every product pushed to or
        below its low-stock threshold by this order, a low-stock alert.
        """
        quantities = _merge_quantities(items)
        order_id = uuid4().hex

        async with queries.write_lock(self._db):
            try:
                lines, changes = await self._reserve_stock(quantities)
                total = sum(line["quantity"] * line["unit_price_cents"] for line in lines)
                await queries.insert_order(
                    self._db,
                    order_id=order_id,
                    user_id=user_id,
                    status=OrderStatus.PENDING.value,
                    total_cents=total,
                    items=lines,
                )
                await self._db.commit()
            except (OrderError, sqlite3.Error):
                await self._db.rollback()
                raise
            order = await queries.get_order(self._db, order_id)

        if order is None:
            raise OrderNotFoundError(order_id)
        logger.info("Order %s placed by %s (%d items)", order_id, user_id, len(lines))

        try:
            await self._publisher.publish_order_created(
                order_id, user_id, OrderStatus.PENDING.value
            )
        except PublishError:
            logger.exception("Failed to publish order_created for order %s", order_id)

        for change in changes:
            if change.crossed_threshold:
                await self._publish_low_stock(change)

        return order

    async def update_status(self, order_id: str, new_status: str) -> dict[str, Any]:
        """Move an order to *new_status* and publish ``order_updated``."""
        try:
            status = OrderStatus(new_status)
        except ValueError:
            raise InvalidStatusError(new_status) from None

        async with queries.write_lock(self._db):
            order = await queries.get_order(self._db, order_id)
            if order is None:
                raise OrderNotFoundError(order_id)
            previous = order["status"]

            try:
                await queries.update_order_status(self._db, order_id, status.value)
                await self._db.commit()
            except sqlite3.Error:
                await self._db.rollback()
                raise
            updated = await queries.get_order(self._db, order_id)

        if updated is None:
            raise OrderNotFoundError(order_id)
        logger.info("Order %s: %s -> %s", order_id, previous, status.value)

        try:
            await self._publisher.publish_order_status_changed(
                order_id, order["user_id"], previous, status.value
            )
        except PublishError:
            logger.exception("Failed to publish order_updated for order %s", order_id)

        return updated

    # -- internals ---------------------------------------------------------

    async def _reserve_stock(
        self, quantities: dict[str, int]
    ) -> tuple[list[dict[str, Any]], list[StockChange]]:
        lines: list[dict[str, Any]] = []
        changes: list[StockChange] = []
        for product_id, quantity in quantities.items():
            product = await queries.get_product(self._db, product_id)
            if product is None:
                raise ProductNotFoundError(product_id)
            lines.append({
                "product_id": product_id,
                "quantity": quantity,
                "unit_price_cents": product["price_cents"],
            })
            if not product["stock_enabled"]:
                continue
            if not await queries.decrement_stock(self._db, product_id, quantity):
                raise InsufficientStockError(
                    product_id, quantity, product["stock_quantity"]
                )
            changes.append(StockChange(
                product_id=product_id,
                name=product["name"],
                before=product["stock_quantity"],
                after=product["stock_quantity"] - quantity,
                threshold=product["low_stock_threshold"],
            ))
        return lines, changes

    async def _publish_low_stock(self, change: StockChange) -> None:
        try:
            await self._publisher.publish_low_stock_alert(
                change.product_id, change.name, change.after, change.threshold
            )
        except PublishError:
            logger.exception(
                "Failed to publish low_stock_alert for product %s", change.product_id
            )
        else:
            logger.info(
                "Product %s at %d (threshold %d)",
                change.product_id,
                change.after,
                change.threshold,
            )


def _merge_quantities(items: list[dict[str, Any]]) -> dict[str, int]:
    """Combine repeated products into one line each, keeping first-seen order."""
    quantities: dict[str, int] = {}
    for item in items:
        quantity = int(item["quantity"])
        if quantity <= 0:
            raise ValueError(f"Quantity must be positive (got {quantity})")
        product_id = str(item["product_id"])
        quantities[product_id] = quantities.get(product_id, 0) + quantity
    return quantities
