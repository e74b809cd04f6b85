"""Order routes: place an order, change its status, list low-stock products.

These are the producers for the event streams. Each mutation is committed
by ``OrderService`` before its event is published.
"""
from __future__ import annotations

import aiosqlite
from fastapi import APIRouter, Depends, HTTPException, status
from pydantic import BaseModel, Field

from orderbean_realtime.api.deps import (
    get_db,
    get_order_service,
    require_owner,
    require_session,
    require_staff,
)
from orderbean_realtime.db import queries
from orderbean_realtime.models import LowStockProduct, Order, OrderStatus, Session
from orderbean_realtime.orders.service import (
    InsufficientStockError,
    InvalidStatusError,
    OrderError,
    OrderNotFoundError,
    OrderService,
    ProductNotFoundError,
)

router = APIRouter(prefix="/api", tags=["orders"])


# ---------- Request/Response models ----------

class OrderLine(BaseModel):
    product_id: str
    quantity: int = Field(gt=0)


class PlaceOrderRequest(BaseModel):
    items: list[OrderLine] = Field(min_length=1)


class StatusUpdateRequest(BaseModel):
    status: OrderStatus


class LowStockResponse(BaseModel):
    products: list[LowStockProduct]
    total: int


# ---------- Error mapping ----------

_ERROR_STATUS = {
    OrderNotFoundError: status.HTTP_404_NOT_FOUND,
    ProductNotFoundError: status.HTTP_404_NOT_FOUND,
    InsufficientStockError: status.HTTP_409_CONFLICT,
    InvalidStatusError: status.HTTP_400_BAD_REQUEST,
}


def _to_http(exc: OrderError) -> HTTPException:
    code = _ERROR_STATUS.get(type(exc), status.HTTP_400_BAD_REQUEST)
    return HTTPException(status_code=code, detail=str(exc))


# ---------- Routes ----------

@router.post("/orders", response_model=Order, status_code=status.HTTP_201_CREATED)
async def place_order(
    body: PlaceOrderRequest,
    session: Session = Depends(require_session),
    service: OrderService = Depends(get_order_service),
):
    """Place an order for the calling user."""
    try:
        order = await service.place_order(
            session.user_id, [line.model_dump() for line in body.items]
        )
    except OrderError as exc:
        raise _to_http(exc) from exc
    return Order(**order)


@router.patch("/staff/orders/{order_id}", response_model=Order)
async def update_order_status(
    order_id: str,
    body: StatusUpdateRequest,
    _session: Session = Depends(require_staff),
    service: OrderService = Depends(get_order_service),
):
    """Move an order to a new status. Staff and owner only."""
    try:
        order = await service.update_status(order_id, body.status.value)
    except OrderError as exc:
        raise _to_http(exc) from exc
    return Order(**order)


@router.get("/owner/inventory/low-stock", response_model=LowStockResponse)
async def list_low_stock(
    db: aiosqlite.Connection = Depends(get_db),
    _session: Session = Depends(require_owner),
):
    """Products at or below their low-stock threshold."""
    rows = await queries.list_low_stock_products(db)
    return LowStockResponse(
        products=[LowStockProduct(**row) for row in rows],
        total=len(rows),
    )
