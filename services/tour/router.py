"""
services/tour/router.py
Tour listings: guide-owned CRUD, public search and detail.
Public reads are cached under versioned keys; writes bump the versions.
"""

import math
from decimal import Decimal
from typing import Optional
from urllib.parse import urlencode
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import String, cast, func, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from shared.exceptions import AlreadyExists, Forbidden
from shared.middleware.auth import require_guide
from shared.models.models import Tour, TourCategory, TourStatus, User, UserRole
from shared.repository import (
    get_tour_by_slug_or_404,
    get_tour_or_404,
    hydrate_tours,
    select_visible_tours,
)
from shared.schemas.schemas import (
    MessageResponse,
    TourCreateRequest,
    TourListResponse,
    TourResponse,
    TourUpdateRequest,
)
from shared.utils.slug import create_slug

router = APIRouter(prefix="/tours", tags=["Tours"])

SORT_COLUMNS = {
    "price": Tour.tour_fee,
    "rating": Tour.rating,
    "duration": Tour.max_duration,
    "created_at": Tour.created_at,
}

# Nested models are stored in JSON columns and need JSON-safe values.
JSON_FIELDS = {"itinerary", "available_dates"}


# ── Helpers ───────────────────────────────────────────────────

def _column_values(data, **dump_options) -> dict:
    values = data.model_dump(exclude=JSON_FIELDS, **dump_options)
    values.update(data.model_dump(mode="json", include=JSON_FIELDS, **dump_options))
    return values


def _contains(text: str) -> str:
    """ILIKE pattern matching `text` literally; pair with escape="\\"."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


async def _ensure_slug_free(slug: str, db: AsyncSession, exclude_id: Optional[UUID] = None) -> None:
    query = select(Tour.id).where(Tour.slug == slug)
    if exclude_id:
        query = query.where(Tour.id != exclude_id)
    if await db.scalar(query):
        raise AlreadyExists("A tour with this title already exists")


def _check_owner(tour: Tour, user: User) -> None:
    if user.role != UserRole.ADMIN and tour.guide_id != user.id:
        raise Forbidden("You can only manage your own tours")


async def _invalidate(cache: RedisCache, *slugs: str) -> None:
    await cache.bump_version("tours", "all")
    for slug in set(slugs):
        await cache.bump_version("tour", slug)


# ── Guide Endpoints ───────────────────────────────────────────

@router.post("", response_model=TourResponse, status_code=status.HTTP_201_CREATED)
async def create_tour(
    data: TourCreateRequest,
    current_user: User = Depends(require_guide),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Create a tour listing. The slug is derived from the title and must be unique."""
    slug = create_slug(data.title)
    await _ensure_slug_free(slug, db)

    tour = Tour(
        guide_id=current_user.id,
        slug=slug,
        status=TourStatus.ACTIVE,
        **_column_values(data),
    )
    db.add(tour)
    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise AlreadyExists("A tour with this title already exists")
    await db.commit()

    await _invalidate(RedisCache(redis), slug)
    return (await hydrate_tours([tour], db))[0]


@router.get("/me/listings", response_model=list[TourResponse])
async def list_my_tours(
    current_user: User = Depends(require_guide),
    db: AsyncSession = Depends(get_db),
):
    """Guide's own tours, including inactive ones."""
    result = await db.execute(
        select_visible_tours()
        .where(Tour.guide_id == current_user.id)
        .order_by(Tour.created_at.desc())
    )
    return await hydrate_tours(result.scalars().all(), db)


@router.patch("/{tour_id}", response_model=TourResponse)
async def update_tour(
    tour_id: UUID,
    data: TourUpdateRequest,
    current_user: User = Depends(require_guide),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Owner or admin updates a tour. A new title regenerates the slug."""
    tour = await get_tour_or_404(tour_id, db)
    _check_owner(tour, current_user)

    old_slug = tour.slug
    updates = _column_values(data, exclude_unset=True, exclude_none=True)
    if "title" in updates and updates["title"] != tour.title:
        new_slug = create_slug(updates["title"])
        await _ensure_slug_free(new_slug, db, exclude_id=tour.id)
        tour.slug = new_slug

    for field, value in updates.items():
        setattr(tour, field, value)

    try:
        await db.flush()
    except IntegrityError:
        await db.rollback()
        raise AlreadyExists("A tour with this title already exists")
    await db.commit()
    await db.refresh(tour)

    await _invalidate(RedisCache(redis), old_slug, tour.slug)
    return (await hydrate_tours([tour], db))[0]


@router.delete("/{tour_id}", response_model=MessageResponse)
async def delete_tour(
    tour_id: UUID,
    current_user: User = Depends(require_guide),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Soft delete: the tour keeps its bookings and reviews but disappears from every listing."""
    tour = await get_tour_or_404(tour_id, db)
    _check_owner(tour, current_user)

    tour.status = TourStatus.DELETED
    await db.commit()

    await _invalidate(RedisCache(redis), tour.slug)
    return MessageResponse(message="Tour deleted successfully")


# ── Public Endpoints ──────────────────────────────────────────

@router.get("", response_model=TourListResponse)
async def search_tours(
    category: Optional[TourCategory] = Query(None),
    location: Optional[str] = Query(None, max_length=100),
    min_price: Optional[Decimal] = Query(None, ge=0),
    max_price: Optional[Decimal] = Query(None, ge=0),
    rating: Optional[float] = Query(None, ge=0, le=5),
    max_duration: Optional[Decimal] = Query(None, gt=0),
    date: Optional[str] = Query(None, pattern=r"^\d{4}-\d{2}-\d{2}$"),
    search: Optional[str] = Query(None, max_length=100),
    sort_by: str = Query("created_at", pattern="^(price|rating|duration|created_at)$"),
    sort_order: str = Query("desc", pattern="^(asc|desc)$"),
    page: int = Query(1, ge=1),
    page_size: int = Query(12, ge=1, le=50),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Search active tours with filters, sorting and pagination."""
    params = {
        k: v for k, v in {
            "category": category.value if category else None,
            "location": location,
            "min_price": min_price,
            "max_price": max_price,
            "rating": rating,
            "max_duration": max_duration,
            "date": date,
            "search": search,
            "sort_by": sort_by,
            "sort_order": sort_order,
            "page": page,
            "page_size": page_size,
        }.items() if v is not None
    }
    cache = RedisCache(redis)
    cache_key = await cache.versioned_key("tours", "all", urlencode(sorted(params.items())))
    cached = await cache.get(cache_key)
    if cached is not None:
        return cached

    query = select(Tour).where(Tour.status == TourStatus.ACTIVE)
    if category:
        query = query.where(Tour.category == category)
    if location:
        query = query.where(Tour.location.ilike(_contains(location), escape="\\"))
    if min_price is not None:
        query = query.where(Tour.tour_fee >= min_price)
    if max_price is not None:
        query = query.where(Tour.tour_fee <= max_price)
    if rating is not None:
        query = query.where(Tour.rating >= rating)
    if max_duration is not None:
        query = query.where(Tour.max_duration <= max_duration)
    if date:
        query = query.where(cast(Tour.available_dates, String).like(f'%"{date}"%'))
    if search:
        term = _contains(search)
        query = query.where(or_(
            Tour.title.ilike(term, escape="\\"),
            Tour.description.ilike(term, escape="\\"),
            Tour.location.ilike(term, escape="\\"),
        ))

    total = await db.scalar(select(func.count()).select_from(query.subquery()))

    column = SORT_COLUMNS[sort_by]
    query = query.order_by(column.asc() if sort_order == "asc" else column.desc(), Tour.id)
    result = await db.execute(query.offset((page - 1) * page_size).limit(page_size))
    items = await hydrate_tours(result.scalars().all(), db)

    response = TourListResponse(
        items=items,
        total=total or 0,
        page=page,
        page_size=page_size,
        pages=math.ceil((total or 0) / page_size),
    )
    await cache.set(cache_key, response.model_dump(mode="json"))
    return response


@router.get("/{slug}", response_model=TourResponse)
async def get_tour(
    slug: str,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Public tour detail by slug."""
    cache = RedisCache(redis)
    cache_key = await cache.versioned_key("tour", slug)
    cached = await cache.get(cache_key)
    if cached is not None:
        return cached

    tour = await get_tour_by_slug_or_404(slug, db)
    if tour.status != TourStatus.ACTIVE:
        raise Forbidden("This tour is not currently available")
    response = (await hydrate_tours([tour], db))[0]

    await cache.set(cache_key, response.model_dump(mode="json"))
    return response
