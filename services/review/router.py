"""
services/review/router.py
Tour reviews. Every create/update/delete recomputes the tour's rating
and review count in the same transaction (services/review/rating.py).
"""

import math
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from services.review.rating import recompute_tour_rating
from shared.exceptions import AlreadyExists, Forbidden, InvalidOperation, NotFound
from shared.middleware.auth import get_current_user, require_admin, require_tourist
from shared.models.models import BookingStatus, Review, Tour, User, UserRole
from shared.repository import get_booking_or_404, get_tour_or_404, users_by_id
from shared.schemas.schemas import (
    MessageResponse,
    PaginatedResponse,
    ReviewCreateRequest,
    ReviewResponse,
    ReviewUpdateRequest,
    UserSummary,
)

router = APIRouter(prefix="/reviews", tags=["Reviews"])


# ── Helpers ───────────────────────────────────────────────────

async def _get_review_or_404(review_id: UUID, db: AsyncSession) -> Review:
    result = await db.execute(select(Review).where(Review.id == review_id))
    review = result.scalar_one_or_none()
    if not review:
        raise NotFound("Review not found")
    return review


async def _with_authors(reviews, db: AsyncSession) -> list[ReviewResponse]:
    authors = await users_by_id((r.tourist_id for r in reviews), db)
    return [
        ReviewResponse.model_validate(r).model_copy(update={
            "tourist": UserSummary.model_validate(authors[r.tourist_id])
            if r.tourist_id in authors else None
        })
        for r in reviews
    ]


async def _invalidate_tour_views(db: AsyncSession, redis, tour_id: UUID) -> None:
    """Rating changes show up on the tour detail, the listing and the review list."""
    cache = RedisCache(redis)
    slug = await db.scalar(select(Tour.slug).where(Tour.id == tour_id))
    await cache.bump_version("tour-reviews", tour_id)
    await cache.bump_version("tours", "all")
    if slug:
        await cache.bump_version("tour", slug)


def _paged(query, page: int, page_size: int):
    return query.order_by(Review.created_at.desc()).offset((page - 1) * page_size).limit(page_size)


# ── Write Endpoints ───────────────────────────────────────────

@router.post("", response_model=ReviewResponse, status_code=status.HTTP_201_CREATED)
async def create_review(
    data: ReviewCreateRequest,
    current_user: User = Depends(require_tourist),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Submit a review for a completed booking.
    - Booking must be in COMPLETED status
    - Only the tourist who made the booking can review
    - One review per booking (checked here, unique constraint as backstop)
    """
    booking = await get_booking_or_404(data.booking_id, db)
    if booking.tourist_id != current_user.id:
        raise Forbidden("You can only review your own bookings")
    if booking.status != BookingStatus.COMPLETED:
        raise InvalidOperation("Booking must be completed before reviewing")

    existing = await db.execute(select(Review.id).where(Review.booking_id == booking.id))
    if existing.scalar_one_or_none():
        raise AlreadyExists("You have already reviewed this booking")

    review = Review(
        booking_id=booking.id,
        tourist_id=current_user.id,
        tour_id=booking.tour_id,
        guide_id=booking.guide_id,
        rating=data.rating,
        comment=data.comment,
    )
    db.add(review)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise AlreadyExists("You have already reviewed this booking")

    await recompute_tour_rating(db, booking.tour_id)
    await db.commit()

    await _invalidate_tour_views(db, redis, booking.tour_id)
    return (await _with_authors([review], db))[0]


@router.patch("/{review_id}", response_model=ReviewResponse)
async def update_review(
    review_id: UUID,
    data: ReviewUpdateRequest,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Author edits rating and/or comment."""
    review = await _get_review_or_404(review_id, db)
    if review.tourist_id != current_user.id:
        raise Forbidden("You can only edit your own reviews")

    updates = data.model_dump(exclude_unset=True)
    if updates.get("rating") is None:
        updates.pop("rating", None)
    for field, value in updates.items():
        setattr(review, field, value)
    await db.flush()

    await recompute_tour_rating(db, review.tour_id)
    await db.commit()
    await db.refresh(review)

    await _invalidate_tour_views(db, redis, review.tour_id)
    return (await _with_authors([review], db))[0]


@router.delete("/{review_id}", response_model=MessageResponse)
async def delete_review(
    review_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Author or admin removes a review; the tour rating is recomputed without it."""
    review = await _get_review_or_404(review_id, db)
    if current_user.role != UserRole.ADMIN and review.tourist_id != current_user.id:
        raise Forbidden("You can only delete your own reviews")

    tour_id = review.tour_id
    await db.delete(review)
    await db.flush()

    await recompute_tour_rating(db, tour_id)
    await db.commit()

    await _invalidate_tour_views(db, redis, tour_id)
    return MessageResponse(message="Review deleted successfully")


@router.post("/{review_id}/helpful", response_model=ReviewResponse)
async def mark_review_helpful(
    review_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Increment the helpful counter. Authors cannot upvote themselves."""
    review = await _get_review_or_404(review_id, db)
    if review.tourist_id == current_user.id:
        raise InvalidOperation("You cannot mark your own review as helpful")

    await db.execute(
        update(Review)
        .where(Review.id == review.id)
        .values(helpful=Review.helpful + 1)
        .execution_options(synchronize_session=False)
    )
    await db.commit()
    await db.refresh(review)

    await RedisCache(redis).bump_version("tour-reviews", review.tour_id)
    return (await _with_authors([review], db))[0]


# ── Read Endpoints ────────────────────────────────────────────

@router.get("/tour/{tour_id}", response_model=list[ReviewResponse])
async def get_tour_reviews(
    tour_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Public: reviews for a tour, newest first."""
    cache = RedisCache(redis)
    cache_key = await cache.versioned_key("tour-reviews", tour_id, f"{page}:{page_size}")
    cached = await cache.get(cache_key)
    if cached is not None:
        return cached

    await get_tour_or_404(tour_id, db)
    result = await db.execute(_paged(select(Review).where(Review.tour_id == tour_id), page, page_size))
    reviews = await _with_authors(result.scalars().all(), db)

    await cache.set(cache_key, [r.model_dump(mode="json") for r in reviews])
    return reviews


@router.get("/guide/{guide_id}", response_model=list[ReviewResponse])
async def get_guide_reviews(
    guide_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Public: reviews across all of a guide's tours."""
    result = await db.execute(_paged(select(Review).where(Review.guide_id == guide_id), page, page_size))
    return await _with_authors(result.scalars().all(), db)


@router.get("/me", response_model=list[ReviewResponse])
async def get_my_reviews(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Reviews written by the current user."""
    result = await db.execute(
        _paged(select(Review).where(Review.tourist_id == current_user.id), page, page_size)
    )
    return await _with_authors(result.scalars().all(), db)


@router.get("/user/{user_id}", response_model=list[ReviewResponse])
async def get_user_reviews(
    user_id: UUID,
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
):
    """Public: reviews a tourist has written."""
    result = await db.execute(_paged(select(Review).where(Review.tourist_id == user_id), page, page_size))
    return await _with_authors(result.scalars().all(), db)


# ── Admin ─────────────────────────────────────────────────────

@router.get("/admin/all", response_model=PaginatedResponse)
async def list_all_reviews(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    _: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Admin: every review on the platform, newest first, for moderation."""
    total = await db.scalar(select(func.count()).select_from(Review)) or 0
    result = await db.execute(_paged(select(Review), page, page_size))
    return PaginatedResponse(
        items=await _with_authors(result.scalars().all(), db),
        total=total,
        page=page,
        page_size=page_size,
        pages=math.ceil(total / page_size),
    )
