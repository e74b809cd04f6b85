"""Tests for the low-stock watcher."""
import httpx
import pytest

from orderbean_realtime.client.consumer import ReconnectingStreamConsumer
from orderbean_realtime.client.inventory import LOW_STOCK_PATH, LowStockWatcher

BASE = "http://shop.test"
LOW_STOCK_URL = f"{BASE}{LOW_STOCK_PATH}"

LATTE = {"id": "p1", "name": "Latte", "category": "coffee",
         "stock_quantity": 3, "low_stock_threshold": 5}


@pytest.fixture
async def client():
    async with httpx.AsyncClient(base_url=BASE) as c:
        yield c


class TestLowStockWatcher:
    async def test_start_fetches_list(self, httpx_mock, client):
        httpx_mock.add_response(url=LOW_STOCK_URL, json={"products": [LATTE], "total": 1})
        watcher = LowStockWatcher(client)

        await watcher.start()

        assert watcher.refresh_count == 1
        assert watcher.products == [LATTE]

    async def test_alert_triggers_refetch(self, httpx_mock, client):
        httpx_mock.add_response(url=LOW_STOCK_URL, json={"products": [], "total": 0})
        httpx_mock.add_response(url=LOW_STOCK_URL, json={"products": [LATTE], "total": 1})
        watcher = LowStockWatcher(client)
        await watcher.start()

        await watcher.handle_alert(
            {"type": "low_stock_alert", "productId": "p1", "productName": "Latte",
             "stockQuantity": 3, "lowStockThreshold": 5}
        )

        assert watcher.refresh_count == 2
        assert watcher.products == [LATTE]
        assert len(httpx_mock.get_requests()) == 2

    async def test_failed_refetch_keeps_previous_list(self, httpx_mock, client):
        httpx_mock.add_response(url=LOW_STOCK_URL, json={"products": [LATTE], "total": 1})
        httpx_mock.add_response(url=LOW_STOCK_URL, status_code=503)
        watcher = LowStockWatcher(client)
        await watcher.start()

        await watcher.refresh()

        assert watcher.refresh_count == 2
        assert watcher.products == [LATTE]

    async def test_transport_error_keeps_previous_list(self, httpx_mock, client):
        httpx_mock.add_exception(httpx.ConnectError("refused"), url=LOW_STOCK_URL)
        watcher = LowStockWatcher(client)

        assert await watcher.refresh() == []

    async def test_start_registers_alert_handler(self, httpx_mock, client):
        httpx_mock.add_response(url=LOW_STOCK_URL, json={"products": [], "total": 0})
        consumer = ReconnectingStreamConsumer("/api/sse/owner/orders", client=client)
        watcher = LowStockWatcher(client)

        await watcher.start(consumer)

        assert consumer._handlers["low_stock_alert"] == [watcher.handle_alert]
