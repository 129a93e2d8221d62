"""
services/user/router.py
Account registration, self-service profile and admin account moderation.
"""

import math
from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.exceptions import AlreadyExists, Forbidden, InvalidOperation, NotFound
from shared.middleware.auth import get_current_user, require_admin
from shared.models.models import AccountStatus, User, UserRole
from shared.schemas.schemas import (
    PaginatedResponse,
    UserRegisterRequest,
    UserResponse,
    UserStatusUpdateRequest,
    UserUpdateRequest,
)

router = APIRouter(prefix="/users", tags=["Users"])

ROLE_ONLY_FIELDS = {
    "expertise": UserRole.GUIDE,
    "daily_rate": UserRole.GUIDE,
    "travel_preferences": UserRole.TOURIST,
}


@router.post("/register", response_model=UserResponse, status_code=status.HTTP_201_CREATED)
async def register(
    data: UserRegisterRequest,
    db: AsyncSession = Depends(get_db),
):
    """
    Create a TOURIST or GUIDE account. The returned id is the subject the
    auth service puts in the user's access tokens.
    """
    existing = await db.scalar(select(User.id).where(User.email == data.email))
    if existing:
        raise AlreadyExists("An account with this email already exists")

    user = User(
        email=data.email,
        name=data.name,
        role=UserRole(data.role),
        account_status=AccountStatus.ACTIVE,
        phone=data.phone,
        address=data.address,
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        raise AlreadyExists("An account with this email already exists")
    await db.refresh(user)
    return UserResponse.model_validate(user)


@router.get("/me", response_model=UserResponse)
async def get_me(current_user: User = Depends(get_current_user)):
    """Return the currently authenticated user's profile."""
    return UserResponse.model_validate(current_user)


@router.patch("/me", response_model=UserResponse)
async def update_me(
    data: UserUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """
    Update profile fields. Only non-None fields in the request body are updated.
    Guides own expertise/daily_rate, tourists own travel_preferences.
    """
    updates = data.model_dump(exclude_none=True)
    if not updates:
        return UserResponse.model_validate(current_user)

    for field, role in ROLE_ONLY_FIELDS.items():
        if field in updates and current_user.role != role:
            raise InvalidOperation(f"'{field}' can only be set by a {role.value.lower()}")

    for field, value in updates.items():
        setattr(current_user, field, value)

    await db.commit()
    await db.refresh(current_user)
    return UserResponse.model_validate(current_user)


# ── Admin ─────────────────────────────────────────────────────

@router.get("", response_model=PaginatedResponse)
async def list_users(
    role: Optional[UserRole] = Query(None),
    account_status: Optional[AccountStatus] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Admin: all accounts, optionally filtered by role and status."""
    query = select(User)
    if role:
        query = query.where(User.role == role)
    if account_status:
        query = query.where(User.account_status == account_status)

    total = await db.scalar(select(func.count()).select_from(query.subquery())) or 0
    result = await db.execute(
        query.order_by(User.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return PaginatedResponse(
        items=[UserResponse.model_validate(u) for u in result.scalars()],
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size),
    )


@router.patch("/{user_id}/status", response_model=UserResponse)
async def update_user_status(
    user_id: UUID,
    data: UserStatusUpdateRequest,
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Admin: block, deactivate, restore or delete an account. Admin accounts are off limits."""
    user = await db.get(User, user_id)
    if not user:
        raise NotFound("User not found")
    if user.role == UserRole.ADMIN:
        raise Forbidden("Admin accounts cannot be moderated")

    user.account_status = AccountStatus(data.account_status)
    await db.commit()
    await db.refresh(user)
    return UserResponse.model_validate(user)
