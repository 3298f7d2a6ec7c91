from fastapi import APIRouter, Depends, Query
from motor.motor_asyncio import AsyncIOMotorDatabase

from ..auth import CurrentUser, require_admin
from ..config import Settings, get_settings
from ..database import get_db
from ..inventory import InventoryService
from . import ok

router = APIRouter(prefix="/inventory", tags=["inventory"])


@router.get("/adjustments")
async def list_stock_adjustments(
    status: str = Query("open"),
    limit: int = Query(100, ge=1, le=500),
    admin: CurrentUser = Depends(require_admin),
    db: AsyncIOMotorDatabase = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    """Stock changes that failed and still need a manual fix."""
    return ok(await InventoryService(db, settings).list_adjustments(status, limit))
