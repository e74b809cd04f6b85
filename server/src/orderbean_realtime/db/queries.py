"""Typed async query helpers for the session, product and order tables.

Every function takes an ``aiosqlite.Connection`` as its first argument and
returns plain dicts or scalar values. Session and product helpers commit
their own writes; order mutation helpers leave the transaction open so
``OrderService`` can commit an order, its items and the stock changes
together before anything is published. Callers holding a transaction open
across awaits take ``write_lock(db)`` first.
"""

from __future__ import annotations

import asyncio
import hashlib
import weakref
from datetime import datetime, timezone
from typing import Any

import aiosqlite

_write_locks: weakref.WeakKeyDictionary[aiosqlite.Connection, asyncio.Lock] = (
    weakref.WeakKeyDictionary()
)


def write_lock(db: aiosqlite.Connection) -> asyncio.Lock:
    """Return the lock serializing multi-statement writes on *db*.

    A connection has one open transaction at a time; whoever commits or
    rolls back ends it for every coroutine sharing the connection. Hold
    this lock from the first write until commit or rollback.
    """
    lock = _write_locks.get(db)
    if lock is None:
        lock = _write_locks[db] = asyncio.Lock()
    return lock


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

async def _fetchone(
    db: aiosqlite.Connection, sql: str, params: tuple = ()
) -> dict[str, Any] | None:
    cursor = await db.execute(sql, params)
    row = await cursor.fetchone()
    if row is None:
        return None
    columns = [desc[0] for desc in cursor.description]
    return dict(zip(columns, row))


async def _fetchall(
    db: aiosqlite.Connection, sql: str, params: tuple = ()
) -> list[dict[str, Any]]:
    cursor = await db.execute(sql, params)
    rows = await cursor.fetchall()
    if not rows:
        return []
    columns = [desc[0] for desc in cursor.description]
    return [dict(zip(columns, row)) for row in rows]


def _utcnow() -> str:
    return datetime.now(timezone.utc).isoformat()


def hash_token(token: str) -> str:
    """Session tokens are stored as their SHA-256 hex digest."""
    return hashlib.sha256(token.encode()).hexdigest()


# ---------------------------------------------------------------------------
# Session queries
# ---------------------------------------------------------------------------

async def insert_session(
    db: aiosqlite.Connection,
    *,
    token: str,
    user_id: str,
    role: str,
    expires_at: str | None = None,
) -> None:
    await db.execute(
        """INSERT OR REPLACE INTO sessions
           (token_hash, user_id, role, created_at, expires_at)
           VALUES (?, ?, ?, ?, ?)""",
        (hash_token(token), user_id, role, _utcnow(), expires_at),
    )
    await db.commit()


async def get_session(db: aiosqlite.Connection, token: str) -> dict[str, Any] | None:
    """Return the live session for *token*, or None if unknown or expired."""
    row = await _fetchone(
        db,
        "SELECT user_id, role, expires_at FROM sessions WHERE token_hash = ?",
        (hash_token(token),),
    )
    if row is None:
        return None
    if row["expires_at"] is not None:
        expires_at = datetime.fromisoformat(row["expires_at"])
        if expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=timezone.utc)
        if expires_at <= datetime.now(timezone.utc):
            return None
    return row


async def delete_session(db: aiosqlite.Connection, token: str) -> bool:
    cursor = await db.execute(
        "DELETE FROM sessions WHERE token_hash = ?", (hash_token(token),)
    )
    await db.commit()
    return cursor.rowcount > 0


# ---------------------------------------------------------------------------
# Product queries
# ---------------------------------------------------------------------------

async def insert_product(
    db: aiosqlite.Connection,
    *,
    product_id: str,
    name: str,
    category: str = "coffee",
    price_cents: int = 0,
    stock_quantity: int = 0,
    low_stock_threshold: int = 5,
    stock_enabled: bool = True,
) -> None:
    await db.execute(
        """INSERT INTO products
           (id, name, category, price_cents, stock_quantity,
            low_stock_threshold, stock_enabled)
           VALUES (?, ?, ?, ?, ?, ?, ?)""",
        (product_id, name, category, price_cents, stock_quantity,
         low_stock_threshold, 1 if stock_enabled else 0),
    )
    await db.commit()


async def get_product(db: aiosqlite.Connection, product_id: str) -> dict[str, Any] | None:
    return await _fetchone(db, "SELECT * FROM products WHERE id = ?", (product_id,))


async def list_low_stock_products(db: aiosqlite.Connection) -> list[dict[str, Any]]:
    """Products with stock tracking on whose quantity is at or below threshold."""
    return await _fetchall(
        db,
        """SELECT id, name, category, stock_quantity, low_stock_threshold
           FROM products
           WHERE stock_enabled = 1 AND stock_quantity <= low_stock_threshold
           ORDER BY stock_quantity ASC, name ASC""",
    )


async def decrement_stock(
    db: aiosqlite.Connection, product_id: str, quantity: int
) -> bool:
    """Take *quantity* units off a product. Does not commit.

    Returns False when the product does not have enough stock; the guard
    is part of the UPDATE so concurrent orders cannot oversell.
    """
    cursor = await db.execute(
        """UPDATE products SET stock_quantity = stock_quantity - ?
           WHERE id = ? AND stock_quantity >= ?""",
        (quantity, product_id, quantity),
    )
    return cursor.rowcount > 0


# ---------------------------------------------------------------------------
# Order queries
# ---------------------------------------------------------------------------

async def insert_order(
    db: aiosqlite.Connection,
    *,
    order_id: str,
    user_id: str,
    status: str,
    total_cents: int,
    items: list[dict[str, Any]],
) -> str:
    """Insert an order and its items. Does not commit; returns created_at."""
    now = _utcnow()
    await db.execute(
        """INSERT INTO orders (id, user_id, status, total_cents, created_at, updated_at)
           VALUES (?, ?, ?, ?, ?, ?)""",
        (order_id, user_id, status, total_cents, now, now),
    )
    await db.executemany(
        """INSERT INTO order_items (order_id, product_id, quantity, unit_price_cents)
           VALUES (?, ?, ?, ?)""",
        [
            (order_id, item["product_id"], item["quantity"], item["unit_price_cents"])
            for item in items
        ],
    )
    return now


async def get_order(db: aiosqlite.Connection, order_id: str) -> dict[str, Any] | None:
    order = await _fetchone(db, "SELECT * FROM orders WHERE id = ?", (order_id,))
    if order is None:
        return None
    order["items"] = await _fetchall(
        db,
        """SELECT product_id, quantity, unit_price_cents
           FROM order_items WHERE order_id = ? ORDER BY id""",
        (order_id,),
    )
    return order


async def get_order_owner(db: aiosqlite.Connection, order_id: str) -> str | None:
    cursor = await db.execute("SELECT user_id FROM orders WHERE id = ?", (order_id,))
    row = await cursor.fetchone()
    return row[0] if row else None


async def update_order_status(
    db: aiosqlite.Connection, order_id: str, status: str
) -> None:
    """Set an order's status. Does not commit."""
    await db.execute(
        "UPDATE orders SET status = ?, updated_at = ? WHERE id = ?",
        (status, _utcnow(), order_id),
    )
