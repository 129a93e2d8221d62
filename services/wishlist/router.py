"""
services/wishlist/router.py
Tourist wishlist: saved tours with their summaries.
"""

from uuid import UUID

from fastapi import APIRouter, Depends, status
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from shared.exceptions import AlreadyExists, NotFound
from shared.middleware.auth import get_current_user
from shared.models.models import Tour, TourStatus, User, WishlistItem
from shared.repository import get_tour_or_404
from shared.schemas.schemas import (
    MessageResponse,
    TourSummary,
    WishlistAddRequest,
    WishlistItemResponse,
    WishlistStatusResponse,
)

router = APIRouter(prefix="/wishlist", tags=["Wishlist"])


async def _get_item(user_id: UUID, tour_id: UUID, db: AsyncSession):
    result = await db.execute(
        select(WishlistItem).where(
            WishlistItem.user_id == user_id,
            WishlistItem.tour_id == tour_id,
        )
    )
    return result.scalar_one_or_none()


@router.get("", response_model=list[WishlistItemResponse])
async def get_wishlist(
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Saved tours, newest first. Tours deleted since saving are left out."""
    result = await db.execute(
        select(WishlistItem, Tour)
        .join(Tour, Tour.id == WishlistItem.tour_id)
        .where(
            WishlistItem.user_id == current_user.id,
            Tour.status != TourStatus.DELETED,
        )
        .order_by(WishlistItem.created_at.desc())
    )
    return [
        WishlistItemResponse.model_validate(item).model_copy(
            update={"tour": TourSummary.model_validate(tour)}
        )
        for item, tour in result.all()
    ]


@router.post("", response_model=WishlistItemResponse, status_code=status.HTTP_201_CREATED)
async def add_to_wishlist(
    data: WishlistAddRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Save a tour. Saving the same tour twice is a conflict."""
    tour = await get_tour_or_404(data.tour_id, db)
    if await _get_item(current_user.id, tour.id, db):
        raise AlreadyExists("Tour is already in your wishlist")

    item = WishlistItem(user_id=current_user.id, tour_id=tour.id)
    db.add(item)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise AlreadyExists("Tour is already in your wishlist")
    await db.commit()

    return WishlistItemResponse.model_validate(item).model_copy(
        update={"tour": TourSummary.model_validate(tour)}
    )


@router.delete("/{tour_id}", response_model=MessageResponse)
async def remove_from_wishlist(
    tour_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    item = await _get_item(current_user.id, tour_id, db)
    if not item:
        raise NotFound("Tour is not in your wishlist")

    await db.delete(item)
    await db.commit()
    return MessageResponse(message="Removed from wishlist")


@router.get("/{tour_id}/status", response_model=WishlistStatusResponse)
async def get_wishlist_status(
    tour_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    item = await _get_item(current_user.id, tour_id, db)
    return WishlistStatusResponse(tour_id=tour_id, in_wishlist=item is not None)
