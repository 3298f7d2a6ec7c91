from __future__ import annotations
import logging
import os
from contextlib import asynccontextmanager

from fastapi import Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel
from pymongo.errors import PyMongoError
from starlette.exceptions import HTTPException as StarletteHTTPException

from .config import get_settings, setup_logging
from .database import close_db, ensure_indexes, get_db
from .errors import StorefrontError
from .inventory import ProductStore
from .routes import coupons, inventory, orders, payments, products

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    setup_logging()
    try:
        await ensure_indexes(await get_db())
    except PyMongoError:
        logger.exception("Could not create indexes, continuing without them")
    yield
    close_db()


app = FastAPI(title="Storefront API", lifespan=lifespan)

app.add_middleware(
    CORSMiddleware,
    allow_origins=get_settings().CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(products.router)
app.include_router(orders.router)
app.include_router(coupons.router)
app.include_router(payments.router)
app.include_router(inventory.router)


def error_response(status_code: int, message: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"success": False, "error": message})


@app.exception_handler(StorefrontError)
async def storefront_error_handler(request: Request, exc: StorefrontError):
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc.message)
    return error_response(exc.status_code, exc.message)


@app.exception_handler(StarletteHTTPException)
async def http_error_handler(request: Request, exc: StarletteHTTPException):
    return error_response(exc.status_code, str(exc.detail))


@app.exception_handler(RequestValidationError)
async def request_validation_handler(request: Request, exc: RequestValidationError):
    errors = exc.errors()
    if not errors:
        return error_response(400, "Invalid request body")
    first = errors[0]
    field = ".".join(str(part) for part in first.get("loc", ()) if part != "body")
    message = f"{field}: {first.get('msg')}" if field else str(first.get("msg"))
    return error_response(400, message)


@app.exception_handler(Exception)
async def unhandled_error_handler(request: Request, exc: Exception):
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    return error_response(500, "Internal server error")


# Demo catalogue
SEED_PRODUCTS: list[dict] = [
    {"name": "Classic Oxford Shirt", "description": "Crisp cotton oxford with a button-down collar.", "price": 1499.0, "offerPrice": 1299.0, "images": ["https://images.unsplash.com/photo-1596755094514-f87e34085b2c?q=80&w=1200&auto=format&fit=crop"], "sizes": ["S", "M", "L", "XL"], "sizeStocks": [{"size": "S", "stock": 10}, {"size": "M", "stock": 15}, {"size": "L", "stock": 12}, {"size": "XL", "stock": 6}]},
    {"name": "Slim Fit Chinos", "description": "Stretch twill chinos in a tapered cut.", "price": 1999.0, "images": ["https://images.unsplash.com/photo-1473966968600-fa801b869a1a?q=80&w=1200&auto=format&fit=crop"], "sizes": ["30", "32", "34", "36"], "sizeStocks": [{"size": "30", "stock": 8}, {"size": "32", "stock": 14}, {"size": "34", "stock": 11}, {"size": "36", "stock": 5}]},
    {"name": "Everyday Crew Tee", "description": "Heavyweight jersey tee.", "price": 599.0, "images": ["https://images.unsplash.com/photo-1521572163474-6864f9cf17ab?q=80&w=1200&auto=format&fit=crop"], "sizes": ["S", "M", "L"], "sizeStocks": [{"size": "S", "stock": 25}, {"size": "M", "stock": 30}, {"size": "L", "stock": 20}]},
    {"name": "Canvas Tote Bag", "description": "Waxed canvas tote with leather handles.", "price": 899.0, "images": ["https://images.unsplash.com/photo-1544816155-12df9643f363?q=80&w=1200&auto=format&fit=crop"], "stock": 40},
]


class SeedResponse(BaseModel):
    inserted: int


@app.post("/seed", response_model=SeedResponse)
async def seed_products(db: AsyncIOMotorDatabase = Depends(get_db)):
    # Insert only if products collection is empty
    count = await db["products"].count_documents({})
    if count == 0:
        store = ProductStore(db)
        for p in SEED_PRODUCTS:
            await store.create({**p, "isActive": True})
        return SeedResponse(inserted=len(SEED_PRODUCTS))
    return SeedResponse(inserted=0)


@app.get("/")
async def root():
    return {"message": "Storefront Backend Running"}


@app.get("/test")
async def test(db: AsyncIOMotorDatabase = Depends(get_db)):
    info = {
        "backend": "running",
        "database": "unavailable",
        "database_name": db.name,
        "collections": [],
    }
    try:
        info["collections"] = await db.list_collection_names()
        info["database"] = "connected"
    except PyMongoError as e:
        info["database"] = f"error: {str(e)[:80]}"
    return info


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("storefront.main:app", host="0.0.0.0", port=int(os.getenv("PORT", 8000)))
