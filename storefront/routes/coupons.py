from __future__ import annotations
from typing import Optional

from fastapi import APIRouter, Depends, Query
from motor.motor_asyncio import AsyncIOMotorDatabase

from ..auth import CurrentUser, require_admin
from ..coupons import CouponService
from ..database import get_db
from ..schemas import Coupon, CouponValidateRequest
from . import ok

router = APIRouter(prefix="/coupons", tags=["coupons"])


def get_coupon_service(db: AsyncIOMotorDatabase = Depends(get_db)) -> CouponService:
    return CouponService(db)


@router.post("/validate")
async def validate_coupon(payload: CouponValidateRequest, service: CouponService = Depends(get_coupon_service)):
    quote = await service.validate(payload.code, payload.subtotal)
    return ok(quote.to_dict())


@router.get("")
async def list_coupons(
    page: int = Query(1, ge=1),
    limit: int = Query(50, ge=1, le=200),
    search: Optional[str] = Query(None),
    admin: CurrentUser = Depends(require_admin),
    service: CouponService = Depends(get_coupon_service),
):
    return ok(await service.list_coupons(search or "", page, limit))


@router.post("")
async def create_coupon(
    payload: Coupon,
    admin: CurrentUser = Depends(require_admin),
    service: CouponService = Depends(get_coupon_service),
):
    coupon = await service.create_coupon(payload)
    return ok(coupon, message="Coupon created successfully")


@router.get("/{coupon_id}")
async def get_coupon(
    coupon_id: str,
    admin: CurrentUser = Depends(require_admin),
    service: CouponService = Depends(get_coupon_service),
):
    return ok(await service.get_coupon(coupon_id))


@router.put("/{coupon_id}")
async def update_coupon(
    coupon_id: str,
    payload: Coupon,
    admin: CurrentUser = Depends(require_admin),
    service: CouponService = Depends(get_coupon_service),
):
    coupon = await service.update_coupon(coupon_id, payload)
    return ok(coupon, message="Coupon updated successfully")


@router.delete("/{coupon_id}")
async def delete_coupon(
    coupon_id: str,
    admin: CurrentUser = Depends(require_admin),
    service: CouponService = Depends(get_coupon_service),
):
    await service.delete_coupon(coupon_id)
    return ok({"message": "Coupon deleted successfully"})
