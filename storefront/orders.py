"""Order ledger and checkout orchestration.

``OrderService.create_order`` turns a cart into a persisted order. With the
default ``reserve`` inventory policy, stock is taken before the order is
written and a short line rejects the whole checkout. With ``best_effort``,
the order is written first and stock is decremented afterwards. Lines that
fail are recorded for reconciliation instead of failing the request.
"""
from __future__ import annotations
import logging
import random
import re
import string
import time
from dataclasses import dataclass
from datetime import timedelta
from typing import Any, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from .auth import CurrentUser
from .config import Settings, get_settings
from .coupons import CouponQuote, CouponService
from .database import as_naive_utc, create_document, get_documents, to_object_id, update_document, utcnow
from .errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from .inventory import InventoryService, ProductStore, StockLine
from .schemas import OrderCreate, OrderStatus, PaymentStatus, StatusUpdate

logger = logging.getLogger(__name__)

# Same-status writes are always allowed; `force` skips this table.
ORDER_STATUS_TRANSITIONS: dict[str, set[str]] = {
    OrderStatus.PENDING.value: {OrderStatus.CONFIRMED.value, OrderStatus.PROCESSING.value, OrderStatus.CANCELLED.value},
    OrderStatus.CONFIRMED.value: {OrderStatus.PROCESSING.value, OrderStatus.CANCELLED.value},
    OrderStatus.PROCESSING.value: {OrderStatus.SHIPPED.value, OrderStatus.CANCELLED.value},
    OrderStatus.SHIPPED.value: {OrderStatus.DELIVERED.value},
    OrderStatus.DELIVERED.value: set(),
    OrderStatus.CANCELLED.value: set(),
}

# Statuses a customer may still cancel from.
CANCELLABLE_STATUSES = [s for s, allowed in ORDER_STATUS_TRANSITIONS.items() if OrderStatus.CANCELLED.value in allowed]

ESTIMATED_DELIVERY_DAYS = 6


def can_transition(current: str, requested: str) -> bool:
    return current == requested or requested in ORDER_STATUS_TRANSITIONS.get(current, set())


def generate_order_id() -> str:
    suffix = "".join(random.choices(string.ascii_uppercase + string.digits, k=9))
    return f"ORD-{int(time.time() * 1000)}-{suffix}"


def unit_price(product: dict[str, Any], variant_id: Optional[str] = None) -> float:
    if variant_id:
        for variant in product.get("variants") or []:
            if variant.get("id") == variant_id:
                if variant.get("offerPrice"):
                    return float(variant["offerPrice"])
                if variant.get("price") is not None:
                    return float(variant["price"])
                break
    if product.get("offerPrice"):
        return float(product["offerPrice"])
    return float(product.get("price", 0))


def stock_line(item: dict[str, Any]) -> Optional[StockLine]:
    """Only lines that name a size take part in stock bookkeeping."""
    if not (item.get("size") and item.get("quantity")):
        return None
    return StockLine(str(item["productId"]), item["size"], int(item["quantity"]), item.get("name", ""))


def stock_lines(items: list[dict[str, Any]]) -> list[StockLine]:
    return [line for line in map(stock_line, items) if line is not None]


def taken_lines(items: list[dict[str, Any]]) -> list[StockLine]:
    """The units each line actually holds, which is what a cancellation puts
    back. Lines without ``stockTaken`` hold their full quantity."""
    lines = []
    for item in items:
        line = stock_line(item)
        if line is None:
            continue
        line.quantity = int(item.get("stockTaken", line.quantity))
        if line.quantity > 0:
            lines.append(line)
    return lines


@dataclass
class Totals:
    subtotal: float
    shipping: float
    discount: float
    total: float

    def to_document(self) -> dict[str, float]:
        return {
            "subtotal": round(self.subtotal, 2),
            "shippingCost": round(self.shipping, 2),
            "discount": round(self.discount, 2),
            "total": round(self.total, 2),
        }


class OrderStore:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db["orders"]

    async def insert(self, data: dict[str, Any]) -> dict[str, Any]:
        return await create_document(self.db, "orders", data)

    async def find_by_id(self, order_id: Any) -> Optional[dict[str, Any]]:
        return await self.collection.find_one({"_id": to_object_id(order_id)})

    async def find_by_order_id(self, order_id: str) -> Optional[dict[str, Any]]:
        return await self.collection.find_one({"orderId": order_id})

    async def find_for_user(self, user_id: ObjectId) -> list[dict[str, Any]]:
        return await get_documents(self.db, "orders", {"userId": user_id}, limit=0, sort=[("createdAt", -1)])

    async def find_page(self, filt: dict[str, Any], page: int, limit: int) -> tuple[list[dict[str, Any]], int]:
        total = await self.collection.count_documents(filt)
        docs = await get_documents(
            self.db, "orders", filt, limit=limit, skip=(page - 1) * limit, sort=[("createdAt", -1)]
        )
        return docs, total

    async def update_fields(self, order_id: Any, fields: dict[str, Any]) -> bool:
        return await update_document(self.db, "orders", order_id, fields)

    async def update_status(
        self, order_id: Any, status: str, expected: Optional[str] = None, extra: Optional[dict[str, Any]] = None
    ) -> bool:
        """Set the order status, optionally only if it is still ``expected``."""
        filt: dict[str, Any] = {"_id": to_object_id(order_id)}
        if expected is not None:
            filt["orderStatus"] = expected
        result = await self.collection.update_one(
            filt, {"$set": {**(extra or {}), "orderStatus": status, "updatedAt": utcnow()}}
        )
        return result.matched_count == 1

    async def update_payment_status(self, order_id: Any, status: str, extra: Optional[dict[str, Any]] = None) -> bool:
        return await self.update_fields(order_id, {**(extra or {}), "paymentStatus": status})

    async def mark_paid(self, order_id: Any, extra: Optional[dict[str, Any]] = None) -> bool:
        """Flip a live order from pending to paid. False once it was paid,
        failed or cancelled."""
        result = await self.collection.update_one(
            {
                "_id": to_object_id(order_id),
                "paymentStatus": PaymentStatus.PENDING.value,
                "orderStatus": {"$ne": OrderStatus.CANCELLED.value},
            },
            {"$set": {**(extra or {}), "paymentStatus": PaymentStatus.PAID.value, "updatedAt": utcnow()}},
        )
        return result.matched_count == 1

    async def update_tracking(self, order_id: Any, tracking_number: str) -> bool:
        return await self.update_fields(order_id, {"trackingNumber": tracking_number})

    async def update_notes(self, order_id: Any, notes: str) -> bool:
        return await self.update_fields(order_id, {"notes": notes})


class OrderService:
    def __init__(self, db: AsyncIOMotorDatabase, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()
        self.orders = OrderStore(db)
        self.products = ProductStore(db)
        self.inventory = InventoryService(db, self.settings)
        self.coupons = CouponService(db)

    # Checkout

    async def create_order(self, user: CurrentUser, payload: OrderCreate) -> dict[str, Any]:
        if not payload.items:
            raise ValidationError("Items are required")
        if payload.shipping_address is None:
            raise ValidationError("Shipping address is required")
        user_oid = to_object_id(user.user_id)

        if self.settings.TRUST_CLIENT_TOTALS:
            items, totals, quote = await self._client_priced(payload)
        else:
            items, totals, quote = await self._server_priced(payload)

        order_data = {
            "orderId": generate_order_id(),
            "userId": user_oid,
            "items": items,
            "shippingAddress": payload.shipping_address.to_document(),
            "paymentMethod": payload.payment_method,
            # Online payments are confirmed later by payment verification.
            "paymentStatus": PaymentStatus.PENDING.value,
            "orderStatus": OrderStatus.PENDING.value,
            **totals.to_document(),
            "couponCode": quote.code if quote else None,
            "fulfillmentAtRisk": False,
        }

        lines = stock_lines(items)
        reserve = self.settings.INVENTORY_POLICY == "reserve"
        if reserve:
            await self.inventory.reserve_all(lines)
        for item in items:
            if stock_line(item) is not None:
                item["stockTaken"] = item["quantity"] if reserve else 0

        redeemed = False
        try:
            if quote:
                await self.coupons.redeem(quote)
                redeemed = True
            order = await self.orders.insert(order_data)
        except Exception:
            if reserve:
                await self.inventory.release_all(lines)
            if redeemed:
                await self.coupons.release(quote.code)
            raise

        if not reserve:
            await self._decrement_best_effort(order)

        logger.info("Order %s created for user %s, total %s", order["orderId"], user.user_id, order["total"])
        return order

    async def _server_priced(self, payload: OrderCreate) -> tuple[list[dict], Totals, Optional[CouponQuote]]:
        products = await self.products.find_many([item.product_id for item in payload.items])
        items = []
        for item in payload.items:
            product = products.get(str(to_object_id(item.product_id)))
            if product is None or not product.get("isActive", True):
                raise ValidationError(f"Invalid product {item.product_id}")
            line = item.to_document()
            line["productId"] = product["_id"]
            line["price"] = unit_price(product, item.variant_id)
            line["name"] = item.name or product.get("name", "")
            line["image"] = item.image or next(iter(product.get("images") or []), "")
            items.append(line)

        subtotal = round(sum(line["price"] * line["quantity"] for line in items), 2)
        quote = await self.coupons.validate(payload.coupon_code, subtotal) if payload.coupon_code else None
        discount = quote.discount if quote else 0.0
        shipping = self._shipping_for(subtotal, free_shipping=bool(quote and quote.free_shipping))
        total = round(max(0.0, subtotal + shipping - discount), 2)

        if payload.total is not None and abs(payload.total - total) > self.settings.TOTAL_TOLERANCE:
            logger.warning("Rejected checkout: client total %s, computed %s", payload.total, total)
            raise ValidationError("Order total mismatch")
        return items, Totals(subtotal, shipping, discount, total), quote

    async def _client_priced(self, payload: OrderCreate) -> tuple[list[dict], Totals, Optional[CouponQuote]]:
        items = []
        for item in payload.items:
            line = item.to_document()
            line["productId"] = to_object_id(item.product_id)
            items.append(line)

        calculated = sum(line["price"] * line["quantity"] for line in items)
        subtotal = payload.subtotal or calculated
        quote = await self.coupons.validate(payload.coupon_code, subtotal) if payload.coupon_code else None
        shipping = payload.shipping if payload.shipping is not None else self._shipping_for(subtotal)
        discount = payload.discount or 0
        total = payload.total or (subtotal + shipping - discount)
        return items, Totals(subtotal, shipping, discount, total), quote

    def _shipping_for(self, subtotal: float, free_shipping: bool = False) -> float:
        if free_shipping or subtotal > self.settings.FREE_SHIPPING_THRESHOLD:
            return 0.0
        return float(self.settings.SHIPPING_FEE)

    async def _decrement_best_effort(self, order: dict[str, Any]) -> None:
        failed = []
        fields: dict[str, Any] = {}
        for index, item in enumerate(order["items"]):
            line = stock_line(item)
            if line is None:
                continue
            try:
                shortfall = await self.inventory.decrement(line)
            except Exception as exc:
                logger.exception("Error reducing stock for product %s, size %s", line.product_id, line.size)
                failed.append((line, str(exc)))
                continue
            item["stockTaken"] = line.quantity - shortfall
            fields[f"items.{index}.stockTaken"] = item["stockTaken"]
            if shortfall:
                logger.warning("Order %s oversold product %s size %s by %s",
                               order["orderId"], line.product_id, line.size, shortfall)
                failed.append((line, f"oversold by {shortfall}"))

        if failed:
            # The order stands; flag it and leave a record for reconciliation.
            order["fulfillmentAtRisk"] = True
            fields["fulfillmentAtRisk"] = True
        try:
            if fields:
                await self.orders.update_fields(order["_id"], fields)
            for line, reason in failed:
                await self.inventory.record_adjustment(order["orderId"], line, reason)
        except Exception:
            logger.exception("Could not record stock taken for order %s", order["orderId"])

    # Reads

    async def get_order(self, order_id: str) -> dict[str, Any]:
        order = await self.orders.find_by_id(order_id)
        if not order:
            raise NotFoundError("Order not found")
        return order

    async def get_order_for_user(self, order_id: str, user: CurrentUser) -> dict[str, Any]:
        order = await self.get_order(order_id)
        if not user.is_admin and str(order.get("userId")) != user.user_id:
            raise PermissionDeniedError("Access denied")
        return (await self._with_details([order]))[0]

    async def list_user_orders(self, user: CurrentUser) -> list[dict[str, Any]]:
        orders = await self.orders.find_for_user(to_object_id(user.user_id))
        return await self._with_details(orders)

    async def list_orders(
        self, page: int = 1, limit: int = 50, status: str = "", search: str = ""
    ) -> tuple[list[dict[str, Any]], int]:
        filt: dict[str, Any] = {}
        if status:
            filt["orderStatus"] = status
        if search:
            pattern = {"$regex": re.escape(search), "$options": "i"}
            filt["$or"] = [
                {"orderId": pattern},
                {"shippingAddress.name": pattern},
                {"shippingAddress.phone": pattern},
            ]
        orders, total = await self.orders.find_page(filt, page, limit)
        return await self._with_details(orders, include_user=True), total

    async def _with_details(self, orders: list[dict[str, Any]], include_user: bool = False) -> list[dict[str, Any]]:
        """Fill missing item name/image from the product and attach the buyer."""
        product_ids = {item["productId"] for order in orders for item in order.get("items", []) if item.get("productId")}
        products = await self.products.find_many(list(product_ids))

        users: dict[str, dict[str, Any]] = {}
        if include_user:
            user_ids = list({order["userId"] for order in orders if isinstance(order.get("userId"), ObjectId)})
            if user_ids:
                docs = await get_documents(self.db, "users", {"_id": {"$in": user_ids}}, limit=0)
                users = {str(u["_id"]): {"id": str(u["_id"]), "name": u.get("name"), "email": u.get("email")} for u in docs}

        detailed = []
        for order in orders:
            items = []
            for item in order.get("items", []):
                product = products.get(str(item.get("productId")), {})
                items.append({
                    **item,
                    "name": item.get("name") or product.get("name") or "Unknown Product",
                    "image": item.get("image") or next(iter(product.get("images") or []), ""),
                })
            enriched = {**order, "items": items}
            if include_user:
                enriched["user"] = users.get(str(order.get("userId")))
            detailed.append(enriched)
        return detailed

    # Admin mutators

    async def update_status(self, order_id: str, update: StatusUpdate) -> dict[str, Any]:
        if not update.status:
            raise ValidationError("Status is required")
        order = await self.get_order(order_id)
        current = order.get("orderStatus", OrderStatus.PENDING.value)
        if not can_transition(current, update.status):
            if not update.force:
                raise InvalidTransitionError(current, update.status)
            logger.warning("Forcing order %s from %s to %s", order["orderId"], current, update.status)

        extra: dict[str, Any] = {}
        if update.tracking_number:
            extra["trackingNumber"] = update.tracking_number
        if update.notes:
            extra["notes"] = update.notes
        if update.estimated_delivery:
            extra["estimatedDelivery"] = as_naive_utc(update.estimated_delivery)

        if not await self.orders.update_status(order["_id"], update.status, expected=current, extra=extra):
            raise ConflictError("Order status changed concurrently, reload and retry")
        return await self.get_order(order_id)

    async def update_payment_status(self, order_id: str, status: Optional[str]) -> dict[str, Any]:
        if not status:
            raise ValidationError("Payment status is required")
        if not await self.orders.update_payment_status(order_id, status):
            raise NotFoundError("Order not found")
        return await self.get_order(order_id)

    async def update_tracking(self, order_id: str, tracking_number: Optional[str]) -> dict[str, Any]:
        if not tracking_number or not tracking_number.strip():
            raise ValidationError("Valid tracking number is required")
        if not await self.orders.update_tracking(order_id, tracking_number.strip()):
            raise NotFoundError("Order not found")
        return await self.get_order(order_id)

    async def update_notes(self, order_id: str, notes: Optional[str]) -> dict[str, Any]:
        if notes is None:
            raise ValidationError("Valid notes string is required")
        if not await self.orders.update_notes(order_id, notes):
            raise NotFoundError("Order not found")
        return await self.get_order(order_id)

    # Customer actions

    async def cancel_payment(self, order_id: str, user: CurrentUser, reason: str = "Payment failed") -> dict[str, Any]:
        """Cancel an order whose payment never completed and put its stock back."""
        order = await self.get_order(order_id)
        if str(order.get("userId")) != user.user_id:
            raise PermissionDeniedError("Unauthorized")
        if (order.get("paymentStatus") != PaymentStatus.PENDING.value
                or order.get("orderStatus", OrderStatus.PENDING.value) not in CANCELLABLE_STATUSES):
            raise ValidationError("Order cannot be cancelled")

        # Guarded so two cancels can't both restore stock, and a shipment
        # that lands in between wins.
        result = await self.orders.collection.update_one(
            {
                "_id": order["_id"],
                "paymentStatus": PaymentStatus.PENDING.value,
                "orderStatus": {"$in": CANCELLABLE_STATUSES},
            },
            {"$set": {
                "orderStatus": OrderStatus.CANCELLED.value,
                "paymentStatus": PaymentStatus.FAILED.value,
                "cancelReason": reason,
                "cancelledAt": utcnow(),
                "updatedAt": utcnow(),
            }},
        )
        if result.matched_count != 1:
            raise ValidationError("Order cannot be cancelled")

        # Shortfalls recorded at checkout no longer need fixing once the order is gone.
        await self.inventory.resolve_adjustments(order["orderId"], "order cancelled")
        for line in await self.inventory.release_all(taken_lines(order.get("items", []))):
            await self.inventory.record_adjustment(order["orderId"], line, "stock restore failed on cancellation")
        if order.get("couponCode"):
            await self.coupons.release(order["couponCode"])

        logger.info("Order %s cancelled: %s", order["orderId"], reason)
        return await self.get_order(order_id)

    async def track(self, order_id: Optional[str]) -> dict[str, Any]:
        if not order_id:
            raise ValidationError("Order ID is required")
        order = await self.orders.find_by_order_id(order_id)
        if not order:
            raise NotFoundError("Order not found")
        return tracking_info(order)


def tracking_info(order: dict[str, Any], now=None) -> dict[str, Any]:
    """Derive a customer facing timeline from order age and payment state."""
    now = now or utcnow()
    created = as_naive_utc(order["createdAt"])
    days = (now - created).days
    estimated = order.get("estimatedDelivery") or created + timedelta(days=ESTIMATED_DELIVERY_DAYS)

    payment_status = order.get("paymentStatus")
    cancelled = payment_status == PaymentStatus.FAILED.value or order.get("orderStatus") == OrderStatus.CANCELLED.value
    status, location = "pending", None
    if cancelled:
        status = "cancelled"
    elif payment_status == PaymentStatus.PAID.value:
        if days >= 5:
            status, location = "delivered", "Delivered to your address"
        elif days >= 3:
            status, location = "out for delivery", "Local delivery hub"
        elif days >= 1:
            status, location = "shipped", "In transit"
        else:
            status, location = "processing", "Fulfillment center"

    timeline = [{
        "status": "Order Placed",
        "description": "Your order has been received and is being processed",
        "timestamp": created,
        "completed": True,
    }]
    if cancelled:
        timeline.append({
            "status": "Cancelled",
            "description": "Order was cancelled",
            "timestamp": order.get("cancelledAt") or created + timedelta(hours=1),
            "completed": True,
        })
    elif payment_status == PaymentStatus.PAID.value:
        # (days since order before the step shows, label, description, offset)
        steps = [
            (0, "Payment Confirmed", "Payment has been successfully processed", timedelta(minutes=5)),
            (0, "Processing", "Your order is being prepared for shipment", timedelta(hours=2)),
            (1, "Shipped", "Your order has been dispatched and is on its way", timedelta(days=1)),
            (3, "Out for Delivery", "Your order is out for delivery and will arrive soon", timedelta(days=3)),
            (5, "Delivered", "Your order has been successfully delivered", timedelta(days=5)),
        ]
        for min_days, label, description, offset in steps:
            if days < min_days:
                break
            timeline.append({
                "status": label,
                "description": description,
                "timestamp": created + offset,
                # processing only completes once the parcel has shipped
                "completed": days >= 1 if label == "Processing" else True,
            })

    return {
        "orderId": order["orderId"],
        "status": status,
        "estimatedDelivery": estimated,
        "currentLocation": location,
        "trackingNumber": order.get("trackingNumber") if payment_status == PaymentStatus.PAID.value else None,
        "timeline": timeline,
    }
