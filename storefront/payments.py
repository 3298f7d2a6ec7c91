from __future__ import annotations
import hashlib
import hmac
import logging
from typing import Any

from motor.motor_asyncio import AsyncIOMotorDatabase

from .auth import CurrentUser
from .config import Settings, get_settings
from .errors import ConflictError, NotFoundError, PermissionDeniedError, ValidationError
from .orders import OrderStore
from .schemas import PaymentStatus, PaymentVerification

logger = logging.getLogger(__name__)


def sign_payment(secret: str, gateway_order_id: str, payment_id: str) -> str:
    message = f"{gateway_order_id}|{payment_id}"
    return hmac.new(secret.encode(), message.encode(), hashlib.sha256).hexdigest()


def verify_payment_signature(secret: str, gateway_order_id: str, payment_id: str, signature: str) -> bool:
    if not secret:
        logger.error("PAYMENT_KEY_SECRET is not configured, rejecting payment signature")
        return False
    expected = sign_payment(secret, gateway_order_id, payment_id)
    return hmac.compare_digest(expected, signature)


class PaymentService:
    """Confirms online payments reported back by the payment gateway."""

    def __init__(self, db: AsyncIOMotorDatabase, settings: Settings | None = None):
        self.settings = settings or get_settings()
        self.orders = OrderStore(db)

    async def verify(self, user: CurrentUser, payload: PaymentVerification) -> dict[str, Any]:
        if not (payload.order_id and payload.gateway_order_id and payload.payment_id and payload.signature):
            raise ValidationError("Missing required payment verification data")

        if not verify_payment_signature(
            self.settings.PAYMENT_KEY_SECRET, payload.gateway_order_id, payload.payment_id, payload.signature
        ):
            logger.warning("Invalid payment signature for order %s", payload.order_id)
            raise ValidationError("Invalid payment signature")

        order = await self.orders.find_by_id(payload.order_id)
        if not order:
            raise NotFoundError("Order not found")
        if not user.is_admin and str(order.get("userId")) != user.user_id:
            raise PermissionDeniedError("Access denied")

        reference = {"gatewayOrderId": payload.gateway_order_id, "paymentId": payload.payment_id}
        result = {"message": "Payment verified successfully", "paymentId": payload.payment_id}
        if await self.orders.mark_paid(order["_id"], extra={"paymentReference": reference}):
            logger.info("Payment %s verified for order %s", payload.payment_id, order["orderId"])
            return result

        latest = await self.orders.find_by_id(order["_id"]) or order
        if (latest.get("paymentStatus") == PaymentStatus.PAID.value
                and (latest.get("paymentReference") or {}).get("paymentId") == payload.payment_id):
            # Gateway callback replayed for a payment we already recorded.
            return result

        # Money was captured for an order that was cancelled or already settled.
        logger.error("Payment %s arrived for order %s in state %s/%s, refund required",
                     payload.payment_id, order["orderId"], latest.get("orderStatus"), latest.get("paymentStatus"))
        await self.orders.update_fields(order["_id"], {"refundRequired": True, "latePaymentReference": reference})
        raise ConflictError("Order is no longer awaiting payment")

