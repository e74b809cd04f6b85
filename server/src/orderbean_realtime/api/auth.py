"""Stream authorization checks.

Each check runs once, before a stream is opened, and raises
``HTTPException`` so the request is rejected without any stream bytes.
Entries are never re-checked once streaming.
"""
from __future__ import annotations

import aiosqlite
from fastapi import HTTPException, status

from orderbean_realtime.db import queries
from orderbean_realtime.models import Session


def _forbidden(detail: str) -> HTTPException:
    return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=detail)


def authorize_user_stream(session: Session, user_id: str) -> None:
    """A user's order stream is open to that user and to staff/owner."""
    if session.user_id != user_id and not session.role.is_privileged:
        raise _forbidden("Cannot subscribe to another user's orders")


async def authorize_order_stream(
    db: aiosqlite.Connection, session: Session, order_id: str
) -> None:
    """A single-order stream is open to the order's owner and to staff/owner.

    Unknown orders look forbidden to customers so order ids cannot be
    probed; privileged callers get a 404.
    """
    owner = await queries.get_order_owner(db, order_id)
    if owner is None:
        if session.role.is_privileged:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND,
                detail=f"Order {order_id} not found",
            )
        raise _forbidden("Cannot subscribe to this order")
    if owner != session.user_id and not session.role.is_privileged:
        raise _forbidden("Cannot subscribe to this order")
