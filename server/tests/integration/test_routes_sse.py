"""Integration tests for the SSE endpoints: authorization, filtering, resume."""

import asyncio

import httpx
import pytest

from helpers import (
    cursor_reached,
    finish_stream,
    open_stream,
    parse_messages,
    seed_order,
    seed_products,
    wait_until,
)
from orderbean_realtime.client.inventory import LowStockWatcher
from orderbean_realtime.events.publisher import EventPublisher
from orderbean_realtime.events.types import Topic


@pytest.fixture
def publisher(event_log):
    return EventPublisher(event_log)


class TestStreamAuthentication:
    """Every stream rejects unauthenticated callers with 401 before streaming."""

    @pytest.mark.parametrize("path", [
        "/api/sse/orders/user/u1",
        "/api/sse/orders/o1",
        "/api/sse/staff/orders",
        "/api/sse/owner/orders",
        "/api/sse/inventory/alerts",
    ])
    async def test_missing_token_is_401(self, http, path):
        response = await http.get(path)
        assert response.status_code == 401
        assert response.headers["www-authenticate"] == "Bearer"

    async def test_unknown_token_is_401(self, http):
        response = await http.get(
            "/api/sse/orders/user/u1", headers={"Authorization": "Bearer nope"}
        )
        assert response.status_code == 401

    async def test_expired_session_is_401(self, http, make_session):
        headers = await make_session("u1", expired=True)
        response = await http.get("/api/sse/orders/user/u1", headers=headers)
        assert response.status_code == 401

    async def test_rejection_sends_no_stream(self, http, app):
        response = await http.get("/api/sse/orders/user/u1")
        assert "text/event-stream" not in response.headers.get("content-type", "")
        assert len(app.state.connections) == 0


class TestStreamAuthorization:
    """Identity and role checks run once, at connection time."""

    async def test_other_users_stream_is_forbidden(self, http, make_session):
        headers = await make_session("v1")
        response = await http.get("/api/sse/orders/user/u1", headers=headers)
        assert response.status_code == 403

    @pytest.mark.parametrize("user_id,role", [
        ("u1", "CUSTOMER"),
        ("staff-1", "STAFF"),
        ("owner-1", "OWNER"),
    ])
    async def test_user_stream_accepted(self, http, app, make_session, user_id, role):
        headers = await make_session(user_id, role)
        task, dispatcher = await open_stream(http, app, "/api/sse/orders/user/u1", headers)
        response = await finish_stream(task, dispatcher)
        assert response.status_code == 200
        assert response.headers["content-type"].startswith("text/event-stream")
        assert parse_messages(response.text)[0]["type"] == "connected"

    async def test_customer_cannot_open_staff_stream(self, http, make_session):
        headers = await make_session("u1")
        response = await http.get("/api/sse/staff/orders", headers=headers)
        assert response.status_code == 403

    async def test_staff_cannot_open_owner_stream(self, http, make_session):
        headers = await make_session("staff-1", "STAFF")
        response = await http.get("/api/sse/owner/orders", headers=headers)
        assert response.status_code == 403

    async def test_customer_cannot_open_inventory_alerts(self, http, make_session):
        headers = await make_session("u1")
        response = await http.get("/api/sse/inventory/alerts", headers=headers)
        assert response.status_code == 403

    async def test_order_stream_for_owner_of_order(self, http, app, db, make_session):
        await seed_order(db, "o1", "u1")
        headers = await make_session("u1")
        task, dispatcher = await open_stream(http, app, "/api/sse/orders/o1", headers)
        response = await finish_stream(task, dispatcher)
        assert response.status_code == 200
        connected = parse_messages(response.text)[0]
        assert connected == {
            "type": "connected",
            "connectionId": dispatcher.connection_id,
            "orderId": "o1",
        }

    async def test_order_stream_forbidden_for_other_customer(self, http, db, make_session):
        await seed_order(db, "o1", "u1")
        headers = await make_session("u2")
        response = await http.get("/api/sse/orders/o1", headers=headers)
        assert response.status_code == 403

    async def test_unknown_order_is_403_for_customer(self, http, make_session):
        headers = await make_session("u1")
        response = await http.get("/api/sse/orders/missing", headers=headers)
        assert response.status_code == 403

    async def test_unknown_order_is_404_for_staff(self, http, make_session):
        headers = await make_session("staff-1", "STAFF")
        response = await http.get("/api/sse/orders/missing", headers=headers)
        assert response.status_code == 404

    async def test_session_cookie_is_accepted(self, http, app, make_session):
        await make_session("u1")
        task, dispatcher = await open_stream(
            http, app, "/api/sse/orders/user/u1", {"Cookie": "session=tok-u1-customer"}
        )
        response = await finish_stream(task, dispatcher)
        assert response.status_code == 200


class TestStreamHeaders:
    async def test_streaming_headers(self, http, app, make_session):
        headers = await make_session("u1")
        task, dispatcher = await open_stream(http, app, "/api/sse/orders/user/u1", headers)
        response = await finish_stream(task, dispatcher)
        assert response.headers["cache-control"] == "no-cache, no-transform"
        assert response.headers["x-accel-buffering"] == "no"

    async def test_connected_frame_carries_retry_hint(self, http, app, make_session):
        headers = await make_session("u1")
        task, dispatcher = await open_stream(http, app, "/api/sse/orders/user/u1", headers)
        response = await finish_stream(task, dispatcher)
        assert response.text.startswith("retry: 1000\n")

    async def test_stream_leaves_registry_when_closed(self, http, app, make_session):
        headers = await make_session("u1")
        task, dispatcher = await open_stream(http, app, "/api/sse/orders/user/u1", headers)
        assert len(app.state.connections) == 1
        await finish_stream(task, dispatcher)
        assert len(app.state.connections) == 0


class TestEndToEndScenario:
    """Two customers connect, then u1's order moves PENDING -> PREPARING."""

    async def test_user_scoped_delivery(self, http, app, make_session, publisher):
        u1_task, u1_stream = await open_stream(
            http, app, "/api/sse/orders/user/u1", await make_session("u1")
        )
        u2_task, u2_stream = await open_stream(
            http, app, "/api/sse/orders/user/u2", await make_session("u2")
        )

        await publisher.publish_order_status_changed("o1", "u1", None, "PENDING")
        last = await publisher.publish_order_status_changed("o1", "u1", "PENDING", "PREPARING")

        topic = Topic.ORDER_STATUS_CHANGED
        await wait_until(lambda: cursor_reached(u1_stream, topic, last))
        await wait_until(lambda: cursor_reached(u2_stream, topic, last))

        u1_messages = parse_messages((await finish_stream(u1_task, u1_stream)).text)
        u2_messages = parse_messages((await finish_stream(u2_task, u2_stream)).text)

        updates = [m for m in u1_messages if m["type"] == "order_updated"]
        assert [(m["orderId"], m["status"]) for m in updates] == [
            ("o1", "PENDING"),
            ("o1", "PREPARING"),
        ]
        assert updates[1]["previousStatus"] == "PENDING"
        assert isinstance(updates[1]["timestamp"], int)
        assert [m["type"] for m in u2_messages] == ["connected"]

    async def test_history_is_not_replayed(self, http, app, make_session, publisher):
        await publisher.publish_order_created("o0", "u1", "PENDING")
        task, stream = await open_stream(
            http, app, "/api/sse/orders/user/u1", await make_session("u1")
        )
        last = await publisher.publish_order_created("o1", "u1", "PENDING")
        await wait_until(lambda: cursor_reached(stream, Topic.ORDER_CREATED, last))

        messages = parse_messages((await finish_stream(task, stream)).text)
        assert [m.get("orderId") for m in messages if m["type"] == "order_created"] == ["o1"]

    async def test_staff_stream_sees_every_user(self, http, app, make_session, publisher):
        task, stream = await open_stream(
            http, app, "/api/sse/staff/orders", await make_session("staff-1", "STAFF")
        )
        await publisher.publish_order_created("o1", "u1", "PENDING")
        last = await publisher.publish_order_created("o2", "u2", "PENDING")
        await wait_until(lambda: cursor_reached(stream, Topic.ORDER_CREATED, last))

        messages = parse_messages((await finish_stream(task, stream)).text)
        created = [m["userId"] for m in messages if m["type"] == "order_created"]
        assert created == ["u1", "u2"]

    async def test_single_order_stream_filters_other_orders(
        self, http, app, db, make_session, publisher
    ):
        await seed_order(db, "o1", "u1")
        task, stream = await open_stream(
            http, app, "/api/sse/orders/o1", await make_session("u1")
        )
        await publisher.publish_order_status_changed("o2", "u1", "PENDING", "READY")
        last = await publisher.publish_order_status_changed("o1", "u1", "PENDING", "READY")
        await wait_until(lambda: cursor_reached(stream, Topic.ORDER_STATUS_CHANGED, last))

        messages = parse_messages((await finish_stream(task, stream)).text)
        updates = [m["orderId"] for m in messages if m["type"] == "order_updated"]
        assert updates == ["o1"]


class TestResume:
    async def test_last_event_id_resumes_after_token(self, http, app, make_session, publisher):
        headers = await make_session("u1")
        task, stream = await open_stream(http, app, "/api/sse/orders/user/u1", headers)
        first = await publisher.publish_order_created("o1", "u1", "PENDING")
        await wait_until(lambda: cursor_reached(stream, Topic.ORDER_CREATED, first))
        response = await finish_stream(task, stream)

        token = response.text.split("id: ")[-1].split("\n", 1)[0]

        # Published while the client was away
        missed = await publisher.publish_order_created("o2", "u1", "PENDING")

        task, stream = await open_stream(
            http, app, "/api/sse/orders/user/u1", {**headers, "Last-Event-ID": token}
        )
        await wait_until(lambda: cursor_reached(stream, Topic.ORDER_CREATED, missed))
        messages = parse_messages((await finish_stream(task, stream)).text)
        created = [m["orderId"] for m in messages if m["type"] == "order_created"]
        assert created == ["o2"]


class TestLowStockScenario:
    async def test_alert_reaches_privileged_streams_and_triggers_refetch(
        self, http, app, db, make_session, publisher
    ):
        await seed_products(db)
        owner_headers = await make_session("owner-1", "OWNER")
        staff_headers = await make_session("staff-1", "STAFF")

        owner_task, owner_stream = await open_stream(
            http, app, "/api/sse/owner/orders", owner_headers
        )
        staff_task, staff_stream = await open_stream(
            http, app, "/api/sse/inventory/alerts", staff_headers
        )

        owner_client = httpx.AsyncClient(
            transport=httpx.ASGITransport(app=app),
            base_url="http://test",
            headers=owner_headers,
        )
        watcher = LowStockWatcher(owner_client)
        await watcher.start()
        assert watcher.refresh_count == 1
        assert watcher.products == []

        await db.execute("UPDATE products SET stock_quantity = 3 WHERE id = 'p1'")
        await db.commit()
        last = await publisher.publish_low_stock_alert("p1", "Latte", 3, 5)

        topic = Topic.LOW_STOCK_ALERT
        await wait_until(lambda: cursor_reached(owner_stream, topic, last))
        await wait_until(lambda: cursor_reached(staff_stream, topic, last))

        owner_messages = parse_messages((await finish_stream(owner_task, owner_stream)).text)
        staff_messages = parse_messages((await finish_stream(staff_task, staff_stream)).text)

        for messages in (owner_messages, staff_messages):
            alerts = [m for m in messages if m["type"] == "low_stock_alert"]
            assert len(alerts) == 1
            assert alerts[0]["productId"] == "p1"
            assert alerts[0]["stockQuantity"] == 3
            assert alerts[0]["lowStockThreshold"] == 5

        await watcher.handle_alert(alerts[0])
        assert watcher.refresh_count == 2
        assert [p["id"] for p in watcher.products] == ["p1"]
        await owner_client.aclose()


class TestShutdown:
    async def test_close_all_ends_open_streams(self, http, app, make_session):
        headers = await make_session("u1")
        task, _stream = await open_stream(http, app, "/api/sse/orders/user/u1", headers)

        closed = await app.state.connections.close_all()
        response = await asyncio.wait_for(task, timeout=3.0)

        assert closed == 1
        assert response.status_code == 200
