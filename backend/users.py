from __future__ import annotations
from datetime import timedelta
from typing import Any, Optional

import structlog
from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from jose import JWTError, jwt

from config import get_settings
from database import create_document, get_db, to_object_id, utcnow
from errors import Forbidden, InvalidInput, NotFound, Unauthorized
from schemas import Address, Profile, User, UserRole

logger = structlog.get_logger(__name__)

ALGORITHM = "HS256"

bearer_scheme = HTTPBearer(auto_error=False)


def create_access_token(user: dict[str, Any], expires_delta: Optional[timedelta] = None) -> str:
    settings = get_settings()
    expire = utcnow() + (expires_delta or timedelta(minutes=settings.ACCESS_TOKEN_EXPIRE_MINUTES))
    to_encode = {
        "sub": str(user["_id"]),
        "email": user.get("email"),
        "username": user.get("username"),
        "role": user.get("role"),
        "exp": expire,
    }
    return jwt.encode(to_encode, settings.ACCESS_TOKEN_SECRET, algorithm=ALGORITHM)


async def get_current_user(
    request: Request,
    credentials: Optional[HTTPAuthorizationCredentials] = Depends(bearer_scheme),
) -> dict[str, Any]:
    token = credentials.credentials if credentials else request.cookies.get("accessToken")
    if not token:
        raise Unauthorized()

    try:
        payload = jwt.decode(token, get_settings().ACCESS_TOKEN_SECRET, algorithms=[ALGORITHM])
        user_id = to_object_id(payload.get("sub"), "access token")
    except (JWTError, InvalidInput):
        raise Unauthorized("Invalid access token")

    db = await get_db()
    user = await db["user"].find_one({"_id": user_id})
    if not user:
        raise Unauthorized("Invalid access token")
    return user


async def require_admin(user: dict[str, Any] = Depends(get_current_user)) -> dict[str, Any]:
    if user.get("role") != UserRole.ADMIN.value:
        raise Forbidden()
    return user


async def provision_user(user_id) -> None:
    """
    Create the per-user side records (cart, profile).

    Called by create_user right after the user row is written. Both writes
    are upserts, so running it again for the same user changes nothing.
    """
    db = await get_db()
    now = utcnow()
    await db["cart"].update_one(
        {"owner": user_id},
        {"$setOnInsert": {"items": [], "coupon": None, "created_at": now, "updated_at": now}},
        upsert=True,
    )
    await db["profile"].update_one(
        {"owner": user_id},
        {"$setOnInsert": {**Profile().model_dump(), "created_at": now, "updated_at": now}},
        upsert=True,
    )


async def create_user(username: str, email: str, role: UserRole = UserRole.USER) -> dict[str, Any]:
    user = User(username=username, email=email, role=role)
    db = await get_db()
    if await db["user"].find_one({"$or": [{"username": user.username}, {"email": user.email}]}):
        raise InvalidInput("User with email or username already exists")

    created = await create_document("user", user.model_dump(mode="json"))
    user_id = to_object_id(created["id"])
    await provision_user(user_id)
    logger.info("user_provisioned", user_id=created["id"])
    return await db["user"].find_one({"_id": user_id})


async def get_user_address(address_id: str, owner) -> dict[str, Any]:
    db = await get_db()
    address = await db["address"].find_one({"_id": to_object_id(address_id, "address id"), "owner": owner})
    if not address:
        raise NotFound("Address does not exist")
    return Address(**address).model_dump()
