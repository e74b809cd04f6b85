"""SQLite schema definitions for OrderBean realtime.

Holds the durable stream log used by ``SQLiteEventLog`` plus the small set of
order, product and session tables the producers and the authorization
checks read from.
"""

from __future__ import annotations

# Current schema version -- increment when adding migrations
SCHEMA_VERSION = 2

_TABLE_NAMES: list[str] = [
    "stream_entries",
    "sessions",
    "products",
    "orders",
    "order_items",
    "schema_version",
]


def get_all_table_names() -> list[str]:
    """Return the list of all table names managed by this schema."""
    return list(_TABLE_NAMES)


# ---------------------------------------------------------------------------
# SQL statements for schema version 1
# ---------------------------------------------------------------------------

SCHEMA_V1_SQL = """
-- Append-only stream log, one row per entry, every topic in one table.
-- (topic, ms, seq) is the entry id; id only preserves physical order.
CREATE TABLE IF NOT EXISTS stream_entries (
    id INTEGER PRIMARY KEY AUTOINCREMENT,
    topic TEXT NOT NULL,
    ms INTEGER NOT NULL,
    seq INTEGER NOT NULL,
    fields TEXT NOT NULL,
    created_at TEXT NOT NULL DEFAULT (strftime('%Y-%m-%dT%H:%M:%fZ', 'now')),
    UNIQUE (topic, ms, seq)
);

-- Opaque session tokens (stored hashed) -> identity
CREATE TABLE IF NOT EXISTS sessions (
    token_hash TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    role TEXT NOT NULL CHECK(role IN ('CUSTOMER', 'STAFF', 'OWNER')),
    created_at TEXT NOT NULL,
    expires_at TEXT
);
CREATE INDEX IF NOT EXISTS idx_sessions_user ON sessions(user_id);

-- Menu products with stock tracking
CREATE TABLE IF NOT EXISTS products (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    category TEXT NOT NULL DEFAULT 'coffee',
    price_cents INTEGER NOT NULL DEFAULT 0,
    stock_quantity INTEGER NOT NULL DEFAULT 0,
    low_stock_threshold INTEGER NOT NULL DEFAULT 5
);

-- Orders
CREATE TABLE IF NOT EXISTS orders (
    id TEXT PRIMARY KEY,
    user_id TEXT NOT NULL,
    status TEXT NOT NULL CHECK(status IN ('PENDING', 'PREPARING', 'READY', 'COMPLETED', 'CANCELLED')),
    total_cents INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);
CREATE INDEX IF NOT EXISTS idx_orders_user ON orders(user_id);
CREATE INDEX IF NOT EXISTS idx_orders_status ON orders(status);

CREATE TABLE IF NOT EXISTS order_items (
    id INTEGER PRIMARY KEY,
    order_id TEXT NOT NULL REFERENCES orders(id),
    product_id TEXT NOT NULL REFERENCES products(id),
    quantity INTEGER NOT NULL CHECK(quantity > 0),
    unit_price_cents INTEGER NOT NULL DEFAULT 0
);
CREATE INDEX IF NOT EXISTS idx_order_items_order ON order_items(order_id);

-- Schema version tracking
CREATE TABLE IF NOT EXISTS schema_version (
    version INTEGER PRIMARY KEY,
    applied_at TEXT NOT NULL
);
"""
