"""Product stock bookkeeping.

A product tracks stock either as a flat ``stock`` counter or as a list of
``sizeStocks`` buckets. When buckets exist, ``stock`` is always written as
their sum.

Every write is guarded against concurrent writers:
- flat decrements use a single conditional ``$inc``
- bucket changes compare-and-swap the whole ``sizeStocks`` array and retry
  when another writer got there first
"""
from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Optional

from bson import ObjectId
from motor.motor_asyncio import AsyncIOMotorDatabase

from .config import Settings, get_settings
from .database import create_document, get_documents, to_object_id, update_document, utcnow
from .errors import InsufficientStockError, NotFoundError, StockConflictError

logger = logging.getLogger(__name__)

RESERVE = "reserve"
RELEASE = "release"
SATURATE = "saturate"


@dataclass
class StockLine:
    product_id: str
    size: str
    quantity: int
    name: str = ""


def total_stock(size_stocks: list[dict[str, Any]]) -> int:
    return sum(int(b.get("stock", 0)) for b in size_stocks)


class ProductStore:
    def __init__(self, db: AsyncIOMotorDatabase):
        self.db = db
        self.collection = db["products"]

    async def find_by_id(self, product_id: Any) -> Optional[dict[str, Any]]:
        return await self.collection.find_one({"_id": to_object_id(product_id)})

    async def find_many(self, product_ids: list[Any]) -> dict[str, dict[str, Any]]:
        oids = list({to_object_id(p) for p in product_ids})
        if not oids:
            return {}
        docs = await get_documents(self.db, "products", {"_id": {"$in": oids}}, limit=0)
        return {str(d["_id"]): d for d in docs}

    async def update(self, product_id: Any, fields: dict[str, Any]) -> bool:
        return await update_document(self.db, "products", product_id, fields)

    async def create(self, data: dict[str, Any]) -> dict[str, Any]:
        if data.get("sizeStocks"):
            data = {**data, "stock": total_stock(data["sizeStocks"])}
        return await create_document(self.db, "products", data)

    async def decrement_flat_if_available(self, oid: ObjectId, quantity: int) -> bool:
        result = await self.collection.update_one(
            {"_id": oid, "stock": {"$gte": quantity}},
            {"$inc": {"stock": -quantity}, "$set": {"updatedAt": utcnow()}},
        )
        return result.matched_count == 1

    async def increment_flat(self, oid: ObjectId, quantity: int) -> bool:
        result = await self.collection.update_one(
            {"_id": oid},
            {"$inc": {"stock": quantity}, "$set": {"updatedAt": utcnow()}},
        )
        return result.matched_count == 1

    async def swap_flat_stock(self, oid: ObjectId, expected: int, new_value: int) -> bool:
        result = await self.collection.update_one(
            {"_id": oid, "stock": expected},
            {"$set": {"stock": new_value, "updatedAt": utcnow()}},
        )
        return result.matched_count == 1

    async def swap_size_stocks(self, oid: ObjectId, expected: list[dict], new_stocks: list[dict]) -> bool:
        result = await self.collection.update_one(
            {"_id": oid, "sizeStocks": expected},
            {"$set": {"sizeStocks": new_stocks, "stock": total_stock(new_stocks), "updatedAt": utcnow()}},
        )
        return result.matched_count == 1


class InventoryService:
    def __init__(self, db: AsyncIOMotorDatabase, settings: Settings | None = None):
        self.db = db
        self.settings = settings or get_settings()
        self.products = ProductStore(db)

    async def reserve(self, line: StockLine) -> None:
        """Take ``line.quantity`` units, or raise without changing anything."""
        await self._adjust(line, RESERVE)

    async def release(self, line: StockLine) -> None:
        """Put units back, the inverse of a reservation. Never clamps."""
        await self._adjust(line, RELEASE)

    async def decrement(self, line: StockLine) -> int:
        """Take units, saturating at zero instead of failing on a shortfall.
        Returns how many of the requested units were not there."""
        return await self._adjust(line, SATURATE)

    async def reserve_all(self, lines: list[StockLine]) -> None:
        reserved: list[StockLine] = []
        try:
            for line in lines:
                await self.reserve(line)
                reserved.append(line)
        except Exception:
            await self.release_all(reserved)
            raise

    async def release_all(self, lines: list[StockLine]) -> list[StockLine]:
        failed = []
        for line in lines:
            try:
                await self.release(line)
            except Exception:
                logger.exception("Error restoring stock for product %s, size %s", line.product_id, line.size)
                failed.append(line)
        return failed

    async def record_adjustment(self, order_id: str, line: StockLine, reason: str) -> dict[str, Any]:
        """Write an outbox record so a failed stock change can be reconciled."""
        return await create_document(self.db, "stock_adjustments", {
            "orderId": order_id,
            "productId": line.product_id,
            "size": line.size,
            "quantity": line.quantity,
            "reason": reason,
            "status": "open",
        })

    async def resolve_adjustments(self, order_id: str, resolution: str) -> int:
        result = await self.db["stock_adjustments"].update_many(
            {"orderId": order_id, "status": "open"},
            {"$set": {"status": "resolved", "resolution": resolution, "updatedAt": utcnow()}},
        )
        if result.modified_count:
            logger.info("Resolved %s stock adjustments for order %s: %s", result.modified_count, order_id, resolution)
        return result.modified_count

    async def list_adjustments(self, status: str = "open", limit: int = 100) -> list[dict[str, Any]]:
        return await get_documents(
            self.db, "stock_adjustments", {"status": status}, limit=limit, sort=[("createdAt", -1)]
        )

    async def _adjust(self, line: StockLine, mode: str) -> int:
        attempts = max(1, self.settings.STOCK_UPDATE_RETRIES)
        for attempt in range(1, attempts + 1):
            product = await self.products.find_by_id(line.product_id)
            if product is None:
                raise NotFoundError(f"Product not found: {line.product_id}")

            size_stocks = product.get("sizeStocks") or []
            if size_stocks:
                shortfall = await self._adjust_bucket(product, size_stocks, line, mode)
            else:
                shortfall = await self._adjust_flat(product, line, mode)
            if shortfall is not None:
                logger.debug("Stock %s: product %s size %s qty %s", mode, line.product_id, line.size, line.quantity)
                return shortfall
            logger.debug("Stock for product %s changed concurrently (attempt %s)", line.product_id, attempt)
        raise StockConflictError(line.product_id, attempts)

    # Both helpers return None when a concurrent writer won, otherwise the
    # number of units a saturating decrement could not take.

    async def _adjust_bucket(self, product: dict, size_stocks: list[dict], line: StockLine, mode: str) -> Optional[int]:
        name = product.get("name") or line.name
        index = next((i for i, b in enumerate(size_stocks) if b.get("size") == line.size), None)
        if index is None:
            if mode == RESERVE:
                raise InsufficientStockError(name, line.size)
            if mode == RELEASE:
                logger.warning("Size %s not stocked for product %s, nothing to restore", line.size, line.product_id)
                return 0
            raise NotFoundError(f"Size {line.size} not stocked for product {line.product_id}")

        current = int(size_stocks[index].get("stock", 0))
        if mode == RESERVE and current < line.quantity:
            raise InsufficientStockError(name, line.size, current)
        if mode == RELEASE:
            new_value, shortfall = current + line.quantity, 0
        else:
            new_value, shortfall = max(0, current - line.quantity), max(0, line.quantity - current)

        updated = [dict(b) for b in size_stocks]
        updated[index]["stock"] = new_value
        if not await self.products.swap_size_stocks(product["_id"], size_stocks, updated):
            return None
        return shortfall

    async def _adjust_flat(self, product: dict, line: StockLine, mode: str) -> Optional[int]:
        oid = product["_id"]
        if mode == RESERVE:
            if await self.products.decrement_flat_if_available(oid, line.quantity):
                return 0
            latest = await self.products.find_by_id(oid)
            if latest is None:
                raise NotFoundError(f"Product not found: {line.product_id}")
            if latest.get("sizeStocks"):
                # Buckets appeared since the first read; go round again.
                return None
            raise InsufficientStockError(product.get("name") or line.name, line.size, int(latest.get("stock", 0)))
        if mode == RELEASE:
            return 0 if await self.products.increment_flat(oid, line.quantity) else None
        current = int(product.get("stock", 0))
        if not await self.products.swap_flat_stock(oid, current, max(0, current - line.quantity)):
            return None
        return max(0, line.quantity - current)
