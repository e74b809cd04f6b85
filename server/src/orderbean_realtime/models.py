"""Pydantic domain models for OrderBean realtime.

Identities, orders and products as seen by the event core: the session
identity used for stream authorization, plus the order and product shapes
the producer routes return.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, ConfigDict


# ---------------------------------------------------------------------------
# Enums
# ---------------------------------------------------------------------------

class Role(str, Enum):
    CUSTOMER = "CUSTOMER"
    STAFF = "STAFF"
    OWNER = "OWNER"

    @property
    def is_privileged(self) -> bool:
        return self in (Role.STAFF, Role.OWNER)


class OrderStatus(str, Enum):
    PENDING = "PENDING"
    PREPARING = "PREPARING"
    READY = "READY"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"


# ---------------------------------------------------------------------------
# Models
# ---------------------------------------------------------------------------

class Session(BaseModel):
    """Authenticated caller identity."""

    model_config = ConfigDict(frozen=True)

    user_id: str
    role: Role


class OrderItem(BaseModel):
    product_id: str
    quantity: int
    unit_price_cents: int = 0


class Order(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    status: OrderStatus
    total_cents: int = 0
    created_at: str
    updated_at: str
    items: list[OrderItem] = []


class LowStockProduct(BaseModel):
    id: str
    name: str
    category: str
    stock_quantity: int
    low_stock_threshold: int
