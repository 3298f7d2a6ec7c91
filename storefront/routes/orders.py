from __future__ import annotations
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query
from motor.motor_asyncio import AsyncIOMotorDatabase

from ..auth import CurrentUser, get_current_user, require_admin
from ..config import Settings, get_settings
from ..database import get_db
from ..errors import StorefrontError
from ..orders import OrderService
from ..schemas import CancelPayment, NotesUpdate, OrderCreate, PaymentStatusUpdate, StatusUpdate, TrackingUpdate
from . import ok

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/orders", tags=["orders"])


def get_order_service(
    db: AsyncIOMotorDatabase = Depends(get_db),
    settings: Settings = Depends(get_settings),
) -> OrderService:
    return OrderService(db, settings)


@router.post("")
async def create_order(
    payload: OrderCreate,
    user: CurrentUser = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    try:
        order = await service.create_order(user, payload)
    except StorefrontError:
        raise
    except Exception:
        logger.exception("Order creation error")
        raise StorefrontError("Failed to create order")
    return ok({"order": order, "message": "Order created successfully"})


@router.get("")
async def list_orders(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    status: Optional[str] = Query(None),
    search: Optional[str] = Query(None),
    admin: CurrentUser = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    orders, total = await service.list_orders(page, limit, status or "", search or "")
    return ok(orders, pagination={"page": page, "limit": limit, "total": total})


@router.get("/my-orders")
async def my_orders(
    user: CurrentUser = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    return ok(await service.list_user_orders(user))


@router.get("/track")
async def track_order(
    order_id: Optional[str] = Query(None, alias="orderId"),
    service: OrderService = Depends(get_order_service),
):
    return ok(await service.track(order_id))


@router.get("/{order_id}")
async def get_order(
    order_id: str,
    user: CurrentUser = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    return ok(await service.get_order_for_user(order_id, user))


@router.patch("/{order_id}/status")
async def update_order_status(
    order_id: str,
    payload: StatusUpdate,
    admin: CurrentUser = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    order = await service.update_status(order_id, payload)
    return ok(order, message="Order status updated successfully")


@router.patch("/{order_id}/payment-status")
async def update_payment_status(
    order_id: str,
    payload: PaymentStatusUpdate,
    admin: CurrentUser = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    return ok(await service.update_payment_status(order_id, payload.payment_status))


@router.patch("/{order_id}/tracking")
async def update_tracking(
    order_id: str,
    payload: TrackingUpdate,
    admin: CurrentUser = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    return ok(await service.update_tracking(order_id, payload.tracking_number))


@router.patch("/{order_id}/notes")
async def update_notes(
    order_id: str,
    payload: NotesUpdate,
    admin: CurrentUser = Depends(require_admin),
    service: OrderService = Depends(get_order_service),
):
    return ok(await service.update_notes(order_id, payload.notes))


@router.post("/{order_id}/cancel-payment")
async def cancel_payment(
    order_id: str,
    payload: Optional[CancelPayment] = None,
    user: CurrentUser = Depends(get_current_user),
    service: OrderService = Depends(get_order_service),
):
    reason = payload.reason if payload else CancelPayment().reason
    order = await service.cancel_payment(order_id, user, reason)
    return ok({"order": order, "message": "Order cancelled successfully"})
