from fastapi import APIRouter, Depends
from motor.motor_asyncio import AsyncIOMotorDatabase

from ..auth import CurrentUser, get_current_user
from ..config import Settings, get_settings
from ..database import get_db
from ..payments import PaymentService
from ..schemas import PaymentVerification
from . import ok

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post("/verify")
async def verify_payment(
    payload: PaymentVerification,
    user: CurrentUser = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
    settings: Settings = Depends(get_settings),
):
    return ok(await PaymentService(db, settings).verify(user, payload))
