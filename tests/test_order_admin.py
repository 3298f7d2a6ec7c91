"""Tests for order reads, admin mutators, cancellation and tracking."""

from datetime import timedelta

import pytest

from storefront.auth import CurrentUser
from storefront.coupons import CouponStore
from storefront.database import utcnow
from storefront.errors import (
    ConflictError,
    InvalidTransitionError,
    NotFoundError,
    PermissionDeniedError,
    ValidationError,
)
from storefront.inventory import InventoryService, ProductStore
from storefront.orders import OrderService, tracking_info
from storefront.schemas import OrderCreate, StatusUpdate


@pytest.fixture
def service(db, settings):
    return OrderService(db, settings)


@pytest.fixture
async def order(service, customer, make_product, order_payload):
    product = await make_product()
    return await service.create_order(customer, OrderCreate.model_validate(order_payload(product, 2)))


class TestStatusUpdates:
    async def test_forward_transition(self, service, order):
        updated = await service.update_status(str(order["_id"]), StatusUpdate(status="confirmed"))
        assert updated["orderStatus"] == "confirmed"
        assert updated["updatedAt"] >= order["updatedAt"]

    async def test_same_status_is_allowed(self, service, order):
        updated = await service.update_status(str(order["_id"]), StatusUpdate(status="pending"))
        assert updated["orderStatus"] == "pending"

    async def test_skipping_ahead_is_rejected(self, service, order):
        with pytest.raises(InvalidTransitionError) as exc_info:
            await service.update_status(str(order["_id"]), StatusUpdate(status="delivered"))
        assert exc_info.value.message == "Cannot change order status from pending to delivered"
        assert (await service.get_order(str(order["_id"])))["orderStatus"] == "pending"

    async def test_force_overrides_transition_table(self, service, order):
        order_id = str(order["_id"])
        await service.update_status(order_id, StatusUpdate(status="delivered", force=True))
        reopened = await service.update_status(order_id, StatusUpdate(status="processing", force=True))
        assert reopened["orderStatus"] == "processing"

    async def test_terminal_states(self, service, order):
        order_id = str(order["_id"])
        await service.update_status(order_id, StatusUpdate(status="cancelled"))
        with pytest.raises(InvalidTransitionError):
            await service.update_status(order_id, StatusUpdate(status="confirmed"))

    async def test_optional_fields_ride_along(self, service, order):
        eta = (utcnow() + timedelta(days=4)).replace(microsecond=0)
        updated = await service.update_status(
            str(order["_id"]),
            StatusUpdate(status="processing", tracking_number="AWB123", notes="gift wrap", estimated_delivery=eta),
        )
        assert updated["trackingNumber"] == "AWB123"
        assert updated["notes"] == "gift wrap"
        assert updated["estimatedDelivery"] == eta

    async def test_status_required(self, service, order):
        with pytest.raises(ValidationError, match="Status is required"):
            await service.update_status(str(order["_id"]), StatusUpdate())

    async def test_lost_race_is_a_conflict(self, service, order, monkeypatch):
        async def stale_write(*args, **kwargs):
            return False

        monkeypatch.setattr(service.orders, "update_status", stale_write)
        with pytest.raises(ConflictError, match="changed concurrently"):
            await service.update_status(str(order["_id"]), StatusUpdate(status="confirmed"))

    async def test_missing_order(self, service):
        with pytest.raises(NotFoundError, match="Order not found"):
            await service.update_status("0" * 24, StatusUpdate(status="confirmed"))


class TestFieldUpdates:
    async def test_payment_status(self, service, order):
        updated = await service.update_payment_status(str(order["_id"]), "paid")
        assert updated["paymentStatus"] == "paid"
        assert updated["orderStatus"] == "pending"

    async def test_tracking_only_touches_tracking_number(self, service, order):
        updated = await service.update_tracking(str(order["_id"]), "  AWB999 ")
        assert updated["trackingNumber"] == "AWB999"
        assert updated["orderStatus"] == order["orderStatus"]
        assert updated["paymentStatus"] == order["paymentStatus"]

    async def test_tracking_requires_value(self, service, order):
        with pytest.raises(ValidationError, match="Valid tracking number is required"):
            await service.update_tracking(str(order["_id"]), "   ")

    async def test_notes_can_be_cleared(self, service, order):
        order_id = str(order["_id"])
        await service.update_notes(order_id, "call before delivery")
        assert (await service.update_notes(order_id, ""))["notes"] == ""

    async def test_notes_require_a_string(self, service, order):
        with pytest.raises(ValidationError, match="Valid notes string is required"):
            await service.update_notes(str(order["_id"]), None)

    async def test_update_on_missing_order(self, service):
        with pytest.raises(NotFoundError):
            await service.update_tracking("0" * 24, "AWB1")


class TestReads:
    async def test_owner_and_admin_can_read(self, service, order, customer):
        admin = CurrentUser(user_id="0" * 24, role="admin")
        assert (await service.get_order_for_user(str(order["_id"]), customer))["orderId"] == order["orderId"]
        assert (await service.get_order_for_user(str(order["_id"]), admin))["orderId"] == order["orderId"]

    async def test_other_customer_is_denied(self, service, order, other_customer):
        with pytest.raises(PermissionDeniedError, match="Access denied"):
            await service.get_order_for_user(str(order["_id"]), other_customer)

    async def test_my_orders_fill_in_missing_item_details(self, db, service, order, customer):
        await db["orders"].update_one({"_id": order["_id"]}, {"$set": {"items.0.name": "", "items.0.image": ""}})
        orders = await service.list_user_orders(customer)
        assert len(orders) == 1
        assert orders[0]["items"][0]["name"] == "Oxford Shirt"
        assert orders[0]["items"][0]["image"] == "shirt.jpg"

    async def test_deleted_product_shows_placeholder(self, db, service, order, customer):
        await db["orders"].update_one({"_id": order["_id"]}, {"$set": {"items.0.name": ""}})
        await db["products"].delete_many({})
        orders = await service.list_user_orders(customer)
        assert orders[0]["items"][0]["name"] == "Unknown Product"

    async def test_admin_list_filters_and_joins_user(self, db, service, order, customer):
        await db["users"].insert_one({"_id": order["userId"], "name": "Asha", "email": customer.email})
        orders, total = await service.list_orders(search="asha")
        assert total == 1
        assert orders[0]["user"]["email"] == customer.email

        orders, total = await service.list_orders(status="shipped")
        assert (orders, total) == ([], 0)


class TestCancelPayment:
    async def test_cancel_restores_stock_and_coupon(
        self, db, service, customer, make_product, make_coupon, order_payload
    ):
        product = await make_product()
        coupon = await make_coupon()
        order = await service.create_order(
            customer, OrderCreate.model_validate(order_payload(product, 2, paymentMethod="online", couponCode="SAVE10"))
        )

        cancelled = await service.cancel_payment(str(order["_id"]), customer, "User closed payment window")

        assert cancelled["orderStatus"] == "cancelled"
        assert cancelled["paymentStatus"] == "failed"
        assert cancelled["cancelReason"] == "User closed payment window"
        assert cancelled["cancelledAt"] is not None
        assert (await ProductStore(db).find_by_id(product["_id"]))["sizeStocks"] == [{"size": "M", "stock": 5}]
        assert (await CouponStore(db).find_by_id(coupon["_id"]))["usedCount"] == 0

    async def test_cancel_twice_restores_once(self, db, service, order, customer):
        await service.cancel_payment(str(order["_id"]), customer)
        with pytest.raises(ValidationError, match="Order cannot be cancelled"):
            await service.cancel_payment(str(order["_id"]), customer)
        product = await db["products"].find_one({})
        assert product["stock"] == 5

    async def test_paid_order_cannot_be_cancelled(self, service, order, customer):
        await service.update_payment_status(str(order["_id"]), "paid")
        with pytest.raises(ValidationError, match="Order cannot be cancelled"):
            await service.cancel_payment(str(order["_id"]), customer)

    async def test_only_owner_can_cancel(self, service, order, other_customer):
        with pytest.raises(PermissionDeniedError, match="Unauthorized"):
            await service.cancel_payment(str(order["_id"]), other_customer)

    @pytest.mark.parametrize("final_status", ["shipped", "delivered"])
    async def test_dispatched_cod_order_cannot_be_cancelled(self, db, service, order, customer, final_status):
        order_id = str(order["_id"])
        for status in ["confirmed", "processing", "shipped", "delivered"]:
            await service.update_status(order_id, StatusUpdate(status=status))
            if status == final_status:
                break

        with pytest.raises(ValidationError, match="Order cannot be cancelled"):
            await service.cancel_payment(order_id, customer)

        stored = await service.get_order(order_id)
        assert stored["orderStatus"] == final_status
        assert stored["paymentStatus"] == "pending"
        assert (await db["products"].find_one({}))["stock"] == 3

    async def test_status_change_between_read_and_write_wins(self, db, service, order, customer, monkeypatch):
        real_get_order = service.get_order

        async def shipped_meanwhile(order_id):
            current = await real_get_order(order_id)
            await db["orders"].update_one({"_id": current["_id"]}, {"$set": {"orderStatus": "shipped"}})
            return current

        monkeypatch.setattr(service, "get_order", shipped_meanwhile)
        with pytest.raises(ValidationError, match="Order cannot be cancelled"):
            await service.cancel_payment(str(order["_id"]), customer)
        assert (await db["products"].find_one({}))["stock"] == 3


class TestCancelBestEffort:
    @pytest.fixture(autouse=True)
    def best_effort(self, settings):
        settings.INVENTORY_POLICY = "best_effort"

    async def test_cancel_releases_only_units_taken(
        self, db, settings, service, customer, other_customer, make_product, order_payload
    ):
        product = await make_product(sizeStocks=[{"size": "M", "stock": 1}])
        first = await service.create_order(customer, OrderCreate.model_validate(order_payload(product, 1)))
        second = await service.create_order(other_customer, OrderCreate.model_validate(order_payload(product, 3)))

        assert first["items"][0]["stockTaken"] == 1
        assert second["items"][0]["stockTaken"] == 0
        assert second["fulfillmentAtRisk"] is True
        stored = await db["orders"].find_one({"_id": second["_id"]})
        assert stored["items"][0]["stockTaken"] == 0

        await service.cancel_payment(str(second["_id"]), other_customer)
        assert (await ProductStore(db).find_by_id(product["_id"]))["stock"] == 0

        inventory = InventoryService(db, settings)
        assert await inventory.list_adjustments() == []
        resolved = await inventory.list_adjustments(status="resolved")
        assert [r["orderId"] for r in resolved] == [second["orderId"]]
        assert resolved[0]["resolution"] == "order cancelled"

        await service.cancel_payment(str(first["_id"]), customer)
        updated = await ProductStore(db).find_by_id(product["_id"])
        assert updated["sizeStocks"] == [{"size": "M", "stock": 1}]
        assert updated["stock"] == 1

    async def test_partial_shortfall_restores_what_was_taken(self, db, service, customer, make_product, order_payload):
        product = await make_product(sizeStocks=[{"size": "M", "stock": 2}])
        order = await service.create_order(customer, OrderCreate.model_validate(order_payload(product, 3)))
        assert order["items"][0]["stockTaken"] == 2

        await service.cancel_payment(str(order["_id"]), customer)
        assert (await ProductStore(db).find_by_id(product["_id"]))["sizeStocks"] == [{"size": "M", "stock": 2}]


class TestTracking:
    def make_order(self, days_old, payment_status="paid", **extra):
        created = utcnow() - timedelta(days=days_old)
        return {"orderId": "ORD-1", "createdAt": created, "paymentStatus": payment_status,
                "orderStatus": "pending", **extra}

    def test_unpaid_order_is_pending(self):
        info = tracking_info(self.make_order(2, "pending", trackingNumber="AWB1"))
        assert info["status"] == "pending"
        assert info["currentLocation"] is None
        assert info["trackingNumber"] is None
        assert [s["status"] for s in info["timeline"]] == ["Order Placed"]

    @pytest.mark.parametrize("days,status", [(0, "processing"), (1, "shipped"), (3, "out for delivery"), (6, "delivered")])
    def test_paid_order_progresses_with_age(self, days, status):
        assert tracking_info(self.make_order(days))["status"] == status

    def test_paid_timeline(self):
        info = tracking_info(self.make_order(3, trackingNumber="AWB1"))
        assert [s["status"] for s in info["timeline"]] == [
            "Order Placed", "Payment Confirmed", "Processing", "Shipped", "Out for Delivery",
        ]
        assert all(s["completed"] for s in info["timeline"])
        assert info["trackingNumber"] == "AWB1"

    def test_processing_incomplete_on_day_zero(self):
        steps = {s["status"]: s for s in tracking_info(self.make_order(0))["timeline"]}
        assert steps["Processing"]["completed"] is False

    def test_estimated_delivery(self):
        order = self.make_order(0)
        assert tracking_info(order)["estimatedDelivery"] == order["createdAt"] + timedelta(days=6)

    def test_cancelled(self):
        info = tracking_info(self.make_order(1, "failed"))
        assert info["status"] == "cancelled"
        assert [s["status"] for s in info["timeline"]] == ["Order Placed", "Cancelled"]

    async def test_track_by_public_order_id(self, service, order):
        info = await service.track(order["orderId"])
        assert info["orderId"] == order["orderId"]
        assert info["status"] == "pending"

    async def test_track_requires_id(self, service):
        with pytest.raises(ValidationError, match="Order ID is required"):
            await service.track(None)
        with pytest.raises(NotFoundError):
            await service.track("ORD-missing")
