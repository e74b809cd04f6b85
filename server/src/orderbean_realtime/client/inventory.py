"""Low-stock product list kept fresh by ``low_stock_alert`` messages."""

from __future__ import annotations

import logging
from typing import Any

import httpx

from orderbean_realtime.client.consumer import ReconnectingStreamConsumer
from orderbean_realtime.events.types import MessageType

logger = logging.getLogger(__name__)

LOW_STOCK_PATH = "/api/owner/inventory/low-stock"


class LowStockWatcher:
    """Fetches the low-stock list on start and again on every alert.

    Parameters
    ----------
    client:
        httpx client carrying the base URL and owner credentials.
    path:
        Low-stock list endpoint.
    """

    def __init__(self, client: httpx.AsyncClient, path: str = LOW_STOCK_PATH) -> None:
        self._client = client
        self._path = path
        self.products: list[dict[str, Any]] = []
        self.refresh_count = 0

    async def start(self, consumer: ReconnectingStreamConsumer | None = None) -> None:
        if consumer is not None:
            consumer.on(MessageType.LOW_STOCK_ALERT, self.handle_alert)
        await self.refresh()

    async def handle_alert(self, message: dict[str, Any]) -> None:
        logger.info(
            "Low stock: %s at %s",
            message.get("productName", message.get("productId")),
            message.get("stockQuantity"),
        )
        await self.refresh()

    async def refresh(self) -> list[dict[str, Any]]:
        """Re-fetch the list; on failure keep the previous one."""
        self.refresh_count += 1
        try:
            response = await self._client.get(self._path)
            response.raise_for_status()
            data = response.json()
        except (httpx.HTTPError, ValueError) as exc:
            logger.warning("Could not fetch low-stock products: %s", exc)
            return self.products
        self.products = list(data.get("products", []))
        return self.products
