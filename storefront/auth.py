"""Bearer-token authentication for the API.

Tokens are HS256 JWTs carrying ``userId``, ``email`` and ``role``. They are
read from the ``Authorization`` header first and from the auth cookies second.
"""
from __future__ import annotations
import logging
from datetime import timedelta
from typing import Any, Optional

import bcrypt
import jwt
from fastapi import Depends, Request
from motor.motor_asyncio import AsyncIOMotorDatabase
from pydantic import BaseModel

from .config import Settings, get_settings
from .database import create_document, get_db, to_object_id, utcnow
from .errors import AuthenticationError, ConflictError, InvalidIdError, PermissionDeniedError

logger = logging.getLogger(__name__)

ADMIN_ROLES = {"admin", "super_admin"}


class CurrentUser(BaseModel):
    user_id: str
    email: str = ""
    role: str = "customer"

    @property
    def is_admin(self) -> bool:
        return has_admin_role(self.role)


def has_admin_role(role: Optional[str]) -> bool:
    return role in ADMIN_ROLES


def hash_password(password: str, rounds: int = 12) -> str:
    return bcrypt.hashpw(password.encode(), bcrypt.gensalt(rounds=rounds)).decode()


def verify_password(password: str, hashed: str) -> bool:
    try:
        return bcrypt.checkpw(password.encode(), hashed.encode())
    except ValueError:
        return False


def create_access_token(user_id: str, email: str, role: str, settings: Settings | None = None) -> str:
    settings = settings or get_settings()
    payload = {
        "userId": user_id,
        "email": email,
        "role": role,
        "exp": utcnow() + timedelta(days=settings.JWT_EXPIRES_DAYS),
    }
    return jwt.encode(payload, settings.JWT_SECRET, algorithm=settings.JWT_ALGORITHM)


def decode_token(token: str, settings: Settings | None = None) -> Optional[CurrentUser]:
    settings = settings or get_settings()
    try:
        payload = jwt.decode(token, settings.JWT_SECRET, algorithms=[settings.JWT_ALGORITHM])
    except jwt.PyJWTError:
        return None
    if not payload.get("userId"):
        return None
    return CurrentUser(
        user_id=str(payload["userId"]),
        email=payload.get("email", ""),
        role=payload.get("role", "customer"),
    )


def extract_token(request: Request, settings: Settings | None = None) -> Optional[str]:
    settings = settings or get_settings()
    header = request.headers.get("authorization")
    if header and header.startswith("Bearer "):
        return header[len("Bearer "):].strip() or None
    for name in settings.AUTH_COOKIE_NAMES:
        value = request.cookies.get(name)
        if value:
            return value
    return None


async def get_current_user(request: Request, settings: Settings = Depends(get_settings)) -> CurrentUser:
    token = extract_token(request, settings)
    if not token:
        raise AuthenticationError("Authentication required")
    user = decode_token(token, settings)
    if user is None:
        raise AuthenticationError("Invalid token")
    return user


async def is_admin_account(db: AsyncIOMotorDatabase, user_id: str) -> bool:
    """The token's role is not enough: the account must still exist with an
    admin role."""
    try:
        oid = to_object_id(user_id)
    except InvalidIdError:
        return False
    for collection in ("admins", "users"):
        account = await db[collection].find_one({"_id": oid}, {"role": 1})
        if account and has_admin_role(account.get("role")):
            return True
    return False


async def require_admin(
    user: CurrentUser = Depends(get_current_user),
    db: AsyncIOMotorDatabase = Depends(get_db),
) -> CurrentUser:
    if not user.is_admin:
        raise PermissionDeniedError("Admin access required")
    if not await is_admin_account(db, user.user_id):
        logger.warning("Admin token for %s no longer maps to an admin account", user.user_id)
        raise PermissionDeniedError("Admin access revoked")
    return user


async def create_admin_account(
    db: AsyncIOMotorDatabase,
    name: str,
    email: str,
    password: str,
    role: str = "admin",
    settings: Settings | None = None,
) -> dict[str, Any]:
    settings = settings or get_settings()
    if role not in ADMIN_ROLES:
        raise ValueError(f"Not an admin role: {role}")
    email = email.strip().lower()
    if await db["admins"].find_one({"email": email}):
        raise ConflictError(f"Admin {email} already exists")
    admin = await create_document(db, "admins", {
        "name": name,
        "email": email,
        "password": hash_password(password, rounds=settings.BCRYPT_ROUNDS),
        "role": role,
        "isActive": True,
    })
    logger.info("Created %s account %s", role, email)
    return admin
