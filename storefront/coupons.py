from __future__ import annotations
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase
from pymongo.errors import DuplicateKeyError

from .database import (
    as_naive_utc,
    create_document,
    get_documents,
    to_object_id,
    update_document,
    utcnow,
)
from .errors import ConflictError, CouponError, NotFoundError
from .schemas import Coupon, CouponType

logger = logging.getLogger(__name__)


def normalize_code(code: str) -> str:
    return code.strip().upper()


def format_amount(value: float) -> str:
    value = float(value)
    return str(int(value)) if value.is_integer() else f"{value:.2f}"


def compute_discount(coupon: dict[str, Any], subtotal: float) -> tuple[float, bool]:
    """Return ``(discount, free_shipping)`` for a coupon applied to ``subtotal``."""
    ctype = coupon.get("type")
    value = float(coupon.get("value") or 0)
    if ctype == CouponType.PERCENTAGE.value:
        discount = subtotal * value / 100
        cap = coupon.get("maxDiscount")
        if cap:
            discount = min(discount, float(cap))
    elif ctype == CouponType.FIXED.value:
        discount = min(value, subtotal)
    elif ctype == CouponType.SHIPPING.value:
        return 0.0, True
    else:
        raise CouponError(f"Unsupported coupon type: {ctype}")
    return round(discount, 2), False


@dataclass
class CouponQuote:
    coupon: dict[str, Any] = field(repr=False)
    discount: float
    free_shipping: bool

    @property
    def code(self) -> str:
        return self.coupon["code"]

    @property
    def coupon_id(self) -> ObjectId:
        return self.coupon["_id"]

    def to_dict(self) -> dict[str, Any]:
        return {
            "code": self.code,
            "type": self.coupon.get("type"),
            "discount": self.discount,
            "freeShipping": self.free_shipping,
            "description": self.coupon.get("description", ""),
        }


class CouponStore:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db["coupons"]

    async def find_active_by_code(self, code: str) -> Optional[dict[str, Any]]:
        now = utcnow()
        return await self.collection.find_one({
            "code": normalize_code(code),
            "isActive": True,
            "validFrom": {"$lte": now},
            "$or": [{"validUntil": None}, {"validUntil": {"$gte": now}}],
        })

    async def find_by_id(self, coupon_id: Any) -> Optional[dict[str, Any]]:
        return await self.collection.find_one({"_id": to_object_id(coupon_id)})

    async def find_by_code(self, code: str) -> Optional[dict[str, Any]]:
        return await self.collection.find_one({"code": normalize_code(code)})

    async def find_all(self, search: str = "", page: int = 1, limit: int = 50) -> list[dict[str, Any]]:
        filt: dict[str, Any] = {}
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            filt["$or"] = [{"code": pattern}, {"description": pattern}]
        return await get_documents(
            self.db, "coupons", filt, limit=limit, skip=(page - 1) * limit, sort=[("createdAt", -1)]
        )

    async def insert(self, data: dict[str, Any]) -> dict[str, Any]:
        return await create_document(self.db, "coupons", data)

    async def update(self, coupon_id: Any, fields: dict[str, Any]) -> bool:
        return await update_document(self.db, "coupons", coupon_id, fields)

    async def delete(self, coupon_id: Any) -> bool:
        result = await self.collection.delete_one({"_id": to_object_id(coupon_id)})
        return result.deleted_count > 0

    async def redeem(self, coupon_id: ObjectId, usage_limit: Optional[int]) -> bool:
        """Count one use, unless that would pass ``usage_limit``."""
        filt: dict[str, Any] = {"_id": coupon_id}
        if usage_limit is not None:
            filt["usedCount"] = {"$lt": usage_limit}
        result = await self.collection.update_one(filt, {"$inc": {"usedCount": 1}, "$set": {"updatedAt": utcnow()}})
        return result.matched_count == 1

    async def release(self, coupon_id: ObjectId) -> bool:
        result = await self.collection.update_one(
            {"_id": coupon_id, "usedCount": {"$gt": 0}},
            {"$inc": {"usedCount": -1}, "$set": {"updatedAt": utcnow()}},
        )
        return result.matched_count == 1


class CouponService:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.coupons = CouponStore(db)

    async def validate(self, code: Optional[str], subtotal: Optional[float]) -> CouponQuote:
        """Check a code against a subtotal. Does not count a use."""
        if not code or not subtotal:
            raise CouponError("Coupon code and subtotal are required")

        coupon = await self.coupons.find_active_by_code(code)
        if not coupon:
            raise CouponError("Invalid coupon code")

        min_amount = float(coupon.get("minAmount") or 0)
        if subtotal < min_amount:
            raise CouponError(f"Minimum order amount is {format_amount(min_amount)}")

        max_amount = coupon.get("maxAmount")
        if max_amount and subtotal > float(max_amount):
            raise CouponError(f"Maximum order amount is {format_amount(max_amount)}")

        usage_limit = coupon.get("usageLimit")
        if usage_limit is not None and coupon.get("usedCount", 0) >= usage_limit:
            raise CouponError("Coupon usage limit exceeded")

        discount, free_shipping = compute_discount(coupon, subtotal)
        return CouponQuote(coupon=coupon, discount=discount, free_shipping=free_shipping)

    async def redeem(self, quote: CouponQuote) -> None:
        if not await self.coupons.redeem(quote.coupon_id, quote.coupon.get("usageLimit")):
            logger.warning("Coupon %s hit its usage limit during checkout", quote.code)
            raise CouponError("Coupon usage limit exceeded")

    async def release(self, code: str) -> None:
        coupon = await self.coupons.find_by_code(code)
        if coupon is None or not await self.coupons.release(coupon["_id"]):
            logger.warning("Could not release a use of coupon %s", code)

    # Admin CRUD

    async def get_coupon(self, coupon_id: str) -> dict[str, Any]:
        coupon = await self.coupons.find_by_id(coupon_id)
        if not coupon:
            raise NotFoundError("Coupon not found")
        return coupon

    async def list_coupons(self, search: str = "", page: int = 1, limit: int = 50) -> list[dict[str, Any]]:
        return await self.coupons.find_all(search, page, limit)

    async def create_coupon(self, payload: Coupon) -> dict[str, Any]:
        data = self._prepare(payload)
        if await self.coupons.find_by_code(data["code"]):
            raise ConflictError("Coupon with this code already exists")
        data["usedCount"] = 0
        try:
            return await self.coupons.insert(data)
        except DuplicateKeyError:
            raise ConflictError("Coupon with this code already exists")

    async def update_coupon(self, coupon_id: str, payload: Coupon) -> dict[str, Any]:
        existing = await self.get_coupon(coupon_id)
        data = self._prepare(payload)
        other = await self.coupons.find_by_code(data["code"])
        if other and other["_id"] != existing["_id"]:
            raise ConflictError("Coupon code already exists")
        await self.coupons.update(existing["_id"], data)
        return await self.get_coupon(coupon_id)

    async def delete_coupon(self, coupon_id: str) -> None:
        if not await self.coupons.delete(coupon_id):
            raise NotFoundError("Coupon not found")

    @staticmethod
    def _prepare(payload: Coupon) -> dict[str, Any]:
        data = payload.to_document()
        data["code"] = normalize_code(data["code"])
        data["validFrom"] = as_naive_utc(data.get("validFrom")) or utcnow()
        data["validUntil"] = as_naive_utc(data.get("validUntil"))
        return data
