"""Server-Sent Events endpoints for live order and inventory updates.

Every endpoint authorizes once, before any stream bytes are sent, then
hands the connection to an ``EventDispatcher`` that tails the event log.
Browsers' EventSource cannot set headers, so the session may come from the
``session`` cookie. A ``Last-Event-ID`` header resumes from the cursors it
encodes; without it the stream starts at the current tail.
"""
from __future__ import annotations

import logging
from typing import AsyncIterator

import aiosqlite
from fastapi import APIRouter, Depends, Header
from fastapi.responses import StreamingResponse

from orderbean_realtime.api.auth import authorize_order_stream, authorize_user_stream
from orderbean_realtime.api.deps import (
    get_config,
    get_connection_registry,
    get_db,
    get_event_log,
    require_owner,
    require_session,
    require_staff,
)
from orderbean_realtime.config import Settings
from orderbean_realtime.events.log import EventLog
from orderbean_realtime.models import Session
from orderbean_realtime.streaming.dispatcher import EventDispatcher, QueueSink
from orderbean_realtime.streaming.registry import ConnectionRegistry
from orderbean_realtime.streaming.subscription import Subscription

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/sse", tags=["sse"])

SSE_HEADERS = {
    "Cache-Control": "no-cache, no-transform",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


async def _frames(
    dispatcher: EventDispatcher,
    sink: QueueSink,
    registry: ConnectionRegistry,
) -> AsyncIterator[str]:
    registry.add(dispatcher)
    try:
        await dispatcher.start()
        async for frame in sink:
            yield frame
    finally:
        # Runs on normal end and when the server cancels us on disconnect.
        dispatcher.close()
        registry.discard(dispatcher)


def _open_stream(
    subscription: Subscription,
    session: Session,
    event_log: EventLog,
    config: Settings,
    registry: ConnectionRegistry,
    last_event_id: str | None,
) -> StreamingResponse:
    if last_event_id:
        subscription.resume(last_event_id)

    sink = QueueSink()
    stream = config.stream
    dispatcher = EventDispatcher(
        event_log,
        subscription,
        sink,
        poll_interval=stream.poll_interval,
        keepalive_interval=stream.keepalive_interval,
        block_ms=stream.block_ms,
        batch_size=stream.batch_size,
        max_duration=stream.max_duration_seconds,
        retry_ms=stream.retry_ms,
        on_close=registry.discard,
    )
    logger.info(
        "Opening stream %s for %s (%s), scope=%s",
        dispatcher.connection_id,
        session.user_id,
        session.role.value,
        subscription.scope,
    )
    return StreamingResponse(
        _frames(dispatcher, sink, registry),
        media_type="text/event-stream",
        headers=SSE_HEADERS,
    )


@router.get("/orders/user/{user_id}")
async def stream_user_orders(
    user_id: str,
    session: Session = Depends(require_session),
    event_log: EventLog = Depends(get_event_log),
    config: Settings = Depends(get_config),
    registry: ConnectionRegistry = Depends(get_connection_registry),
    last_event_id: str | None = Header(default=None),
) -> StreamingResponse:
    """Created and status-changed events for one user's orders."""
    authorize_user_stream(session, user_id)
    return _open_stream(
        Subscription.for_user(user_id), session, event_log, config, registry, last_event_id
    )


@router.get("/orders/{order_id}")
async def stream_order(
    order_id: str,
    session: Session = Depends(require_session),
    db: aiosqlite.Connection = Depends(get_db),
    event_log: EventLog = Depends(get_event_log),
    config: Settings = Depends(get_config),
    registry: ConnectionRegistry = Depends(get_connection_registry),
    last_event_id: str | None = Header(default=None),
) -> StreamingResponse:
    """Status changes of a single order."""
    await authorize_order_stream(db, session, order_id)
    return _open_stream(
        Subscription.for_order(order_id), session, event_log, config, registry, last_event_id
    )


@router.get("/staff/orders")
async def stream_staff_orders(
    session: Session = Depends(require_staff),
    event_log: EventLog = Depends(get_event_log),
    config: Settings = Depends(get_config),
    registry: ConnectionRegistry = Depends(get_connection_registry),
    last_event_id: str | None = Header(default=None),
) -> StreamingResponse:
    """Every order's created and status-changed events."""
    return _open_stream(
        Subscription.for_all_orders(session.role),
        session, event_log, config, registry, last_event_id,
    )


@router.get("/owner/orders")
async def stream_owner_dashboard(
    session: Session = Depends(require_owner),
    event_log: EventLog = Depends(get_event_log),
    config: Settings = Depends(get_config),
    registry: ConnectionRegistry = Depends(get_connection_registry),
    last_event_id: str | None = Header(default=None),
) -> StreamingResponse:
    """Every order event plus low-stock alerts."""
    return _open_stream(
        Subscription.for_owner_dashboard(session.role),
        session, event_log, config, registry, last_event_id,
    )


@router.get("/inventory/alerts")
async def stream_low_stock_alerts(
    session: Session = Depends(require_staff),
    event_log: EventLog = Depends(get_event_log),
    config: Settings = Depends(get_config),
    registry: ConnectionRegistry = Depends(get_connection_registry),
    last_event_id: str | None = Header(default=None),
) -> StreamingResponse:
    return _open_stream(
        Subscription.for_low_stock(session.role),
        session, event_log, config, registry, last_event_id,
    )
