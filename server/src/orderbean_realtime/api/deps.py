"""FastAPI dependency injection providers."""
from __future__ import annotations

import aiosqlite
from fastapi import Depends, HTTPException, Request, status

from orderbean_realtime.config import Settings
from orderbean_realtime.db import queries
from orderbean_realtime.events.log import EventLog
from orderbean_realtime.events.publisher import EventPublisher
from orderbean_realtime.models import Role, Session
from orderbean_realtime.orders.service import OrderService
from orderbean_realtime.streaming.registry import ConnectionRegistry

SESSION_COOKIE = "session"


async def get_db() -> aiosqlite.Connection:
    """Return the order/session database connection.

    In production, opened by ``__main__`` and wired in via
    dependency_overrides. In tests, overridden with an in-memory connection.
    """
    raise NotImplementedError("Must be overridden via dependency_overrides")


async def get_event_log() -> EventLog:
    """Return the shared event log backend.

    In production, created at startup. In tests, overridden.
    """
    raise NotImplementedError("Must be overridden via dependency_overrides")


async def get_config() -> Settings:
    """Return the loaded settings.

    In production, loaded at startup. In tests, overridden.
    """
    raise NotImplementedError("Must be overridden via dependency_overrides")


async def get_publisher(
    event_log: EventLog = Depends(get_event_log),
) -> EventPublisher:
    return EventPublisher(event_log)


async def get_order_service(
    db: aiosqlite.Connection = Depends(get_db),
    publisher: EventPublisher = Depends(get_publisher),
) -> OrderService:
    return OrderService(db, publisher)


def get_connection_registry(request: Request) -> ConnectionRegistry:
    return request.app.state.connections


def _extract_token(request: Request) -> str | None:
    """Bearer header first, then the session cookie (EventSource cannot set headers)."""
    auth_header = request.headers.get("authorization", "")
    if auth_header.lower().startswith("bearer "):
        token = auth_header[7:].strip()
        if token:
            return token
    return request.cookies.get(SESSION_COOKIE) or None


async def require_session(
    request: Request,
    db: aiosqlite.Connection = Depends(get_db),
) -> Session:
    """Resolve the caller's identity or reject with 401."""
    token = _extract_token(request)
    row = await queries.get_session(db, token) if token else None
    if row is None:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication required",
            headers={"WWW-Authenticate": "Bearer"},
        )
    return Session(user_id=row["user_id"], role=Role(row["role"]))


def require_role(*roles: Role):
    """Build a dependency that admits only sessions holding one of *roles*."""

    async def _check(session: Session = Depends(require_session)) -> Session:
        if session.role not in roles:
            raise HTTPException(
                status_code=status.HTTP_403_FORBIDDEN,
                detail="Insufficient role",
            )
        return session

    return _check


require_staff = require_role(Role.STAFF, Role.OWNER)
require_owner = require_role(Role.OWNER)
