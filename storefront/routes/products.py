from __future__ import annotations
import re
from typing import Optional

from fastapi import APIRouter, Depends, Query
from motor.motor_asyncio import AsyncIOMotorDatabase

from ..auth import CurrentUser, require_admin
from ..database import get_db, get_documents
from ..errors import NotFoundError
from ..inventory import ProductStore
from ..schemas import Product
from . import ok

router = APIRouter(prefix="/products", tags=["products"])


def product_to_client(doc: dict) -> dict:
    return {
        "id": str(doc.get("_id")),
        "name": doc.get("name"),
        "description": doc.get("description", ""),
        "price": float(doc.get("price", 0)),
        "offerPrice": doc.get("offerPrice"),
        "images": doc.get("images", []),
        "sizes": doc.get("sizes", []),
        "stock": int(doc.get("stock", 0)),
        "sizeStocks": doc.get("sizeStocks", []),
        "variants": doc.get("variants", []),
        "isActive": doc.get("isActive", True),
    }


@router.get("")
async def list_products(
    q: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=500),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    filter_dict: dict = {"isActive": True}
    if q:
        # Simple case-insensitive name search
        filter_dict["name"] = {"$regex": re.escape(q), "$options": "i"}
    docs = await get_documents(db, "products", filter_dict, limit=limit)
    return ok([product_to_client(d) for d in docs])


@router.get("/{product_id}")
async def get_product(product_id: str, db: AsyncIOMotorDatabase = Depends(get_db)):
    product = await ProductStore(db).find_by_id(product_id)
    if not product:
        raise NotFoundError("Product not found")
    return ok(product_to_client(product))


@router.post("")
async def create_product(
    payload: Product,
    admin: CurrentUser = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_db),
):
    product = await ProductStore(db).create(payload.to_document())
    return ok(product_to_client(product), message="Product created successfully")
