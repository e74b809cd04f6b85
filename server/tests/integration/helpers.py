"""Seed and streaming helpers shared by the integration tests."""

import asyncio
import json

from orderbean_realtime.client.sse import SSEParser
from orderbean_realtime.db import queries
from orderbean_realtime.streaming.dispatcher import ConnectionState


# ---------------------------------------------------------------------------
# Seed helpers
# ---------------------------------------------------------------------------

async def seed_products(db):
    """Insert a small menu. Returns the product ids."""
    await queries.insert_product(
        db, product_id="p1", name="Latte", price_cents=450,
        stock_quantity=7, low_stock_threshold=5,
    )
    await queries.insert_product(
        db, product_id="p2", name="Croissant", category="pastry", price_cents=300,
        stock_quantity=20, low_stock_threshold=5,
    )
    await queries.insert_product(
        db, product_id="p3", name="Drip Coffee", price_cents=250,
        stock_quantity=0, low_stock_threshold=5, stock_enabled=False,
    )
    return ["p1", "p2", "p3"]


async def seed_order(db, order_id: str, user_id: str, status: str = "PENDING"):
    await queries.insert_order(
        db, order_id=order_id, user_id=user_id, status=status, total_cents=0, items=[],
    )
    await db.commit()


# ---------------------------------------------------------------------------
# Stream helpers
# ---------------------------------------------------------------------------

async def wait_until(predicate, timeout: float = 3.0, interval: float = 0.01) -> None:
    """Poll *predicate* until it returns true or fail after *timeout* seconds."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


async def open_stream(http, app, path: str, headers: dict | None = None):
    """Start a streaming GET and return (response_task, dispatcher).

    ASGITransport only returns once the body is complete, so the request
    runs as a task and the test closes the dispatcher when it is done.
    """
    registry = app.state.connections
    known = {d.connection_id for d in registry}
    task = asyncio.create_task(http.get(path, headers=headers or {}))
    found = []

    def _streaming() -> bool:
        if task.done():
            return True
        for dispatcher in registry:
            if (
                dispatcher.connection_id not in known
                and dispatcher.state is ConnectionState.STREAMING
            ):
                found.append(dispatcher)
                return True
        return False

    await wait_until(_streaming)
    if not found:
        response = task.result()
        raise AssertionError(f"stream did not open: {response.status_code} {response.text}")
    return task, found[0]


async def finish_stream(task, dispatcher):
    """Close the server side and return the complete response."""
    dispatcher.close()
    return await asyncio.wait_for(task, timeout=3.0)


def parse_messages(body: str) -> list[dict]:
    """Decode every data frame of an SSE body into its JSON message."""
    parser = SSEParser()
    return [json.loads(event.data) for event in parser.feed(body)]


def cursor_reached(dispatcher, topic: str, entry_id) -> bool:
    cursor = dispatcher.subscription.cursors.get(topic)
    return cursor is not None and cursor >= entry_id
