"""
services/booking/router.py
Booking endpoints: creation, role-scoped listings, guide/admin status
transitions, and tourist checkout once a tour is completed.
State rules live in services/booking/lifecycle.py.
"""

from typing import Optional
from uuid import UUID

from fastapi import APIRouter, Depends, Query, status
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from services.booking import lifecycle
from services.payment.gateway import SSLCommerzGateway, get_payment_gateway
from shared.exceptions import Forbidden
from shared.middleware.auth import (
    get_current_user,
    require_admin,
    require_guide,
    require_tourist,
)
from shared.models.models import Booking, BookingStatus, Tour, User, UserRole
from shared.repository import get_booking_or_404, hydrate_booking, hydrate_bookings
from shared.schemas.schemas import (
    BookingCreateRequest,
    BookingResponse,
    BookingStatusUpdateRequest,
    PaymentInitiateResponse,
)

router = APIRouter(prefix="/bookings", tags=["Bookings"])


# ── Helpers ───────────────────────────────────────────────────

async def _invalidate_booking_views(cache: RedisCache, booking: Booking) -> None:
    """Both sides of a booking see it under GET /bookings/me."""
    await cache.bump_version("bookings", booking.tourist_id)
    await cache.bump_version("bookings", booking.guide_id)


async def _invalidate_tour_views(db: AsyncSession, cache: RedisCache, tour_id: UUID) -> None:
    slug = await db.scalar(select(Tour.slug).where(Tour.id == tour_id))
    await cache.bump_version("tours", "all")
    if slug:
        await cache.bump_version("tour", slug)


def _paginate(query, page: int, page_size: int):
    return query.order_by(Booking.created_at.desc()).offset((page - 1) * page_size).limit(page_size)


# ── Creation ──────────────────────────────────────────────────

@router.post("", response_model=BookingResponse, status_code=status.HTTP_201_CREATED)
async def create_booking(
    data: BookingCreateRequest,
    current_user: User = Depends(require_tourist),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Book a tour. The booking starts PENDING; no payment exists until the
    guide marks the tour COMPLETED.
    """
    booking = await lifecycle.create_booking(db, current_user, data)
    await db.commit()

    cache = RedisCache(redis)
    await _invalidate_booking_views(cache, booking)
    await _invalidate_tour_views(db, cache, booking.tour_id)
    return await hydrate_booking(booking, db)


# ── Read Endpoints ────────────────────────────────────────────

@router.get("/me", response_model=list[BookingResponse])
async def list_my_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(10, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """Tourists see their own bookings; guides see bookings on their tours."""
    cache = RedisCache(redis)
    variant = f"{status_filter.value if status_filter else 'all'}:{page}:{page_size}"
    cache_key = await cache.versioned_key("bookings", current_user.id, variant)
    cached = await cache.get(cache_key)
    if cached is not None:
        return cached

    if current_user.role == UserRole.GUIDE:
        query = select(Booking).where(Booking.guide_id == current_user.id)
    else:
        query = select(Booking).where(Booking.tourist_id == current_user.id)
    if status_filter:
        query = query.where(Booking.status == status_filter)

    result = await db.execute(_paginate(query, page, page_size))
    bookings = await hydrate_bookings(result.scalars().all(), db)

    await cache.set(cache_key, [b.model_dump(mode="json") for b in bookings])
    return bookings


@router.get("/pending", response_model=list[BookingResponse])
async def list_pending_bookings(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(require_guide),
    db: AsyncSession = Depends(get_db),
):
    """Guide's queue of bookings awaiting confirmation. Admins see every guide's queue."""
    query = select(Booking).where(Booking.status == BookingStatus.PENDING)
    if current_user.role != UserRole.ADMIN:
        query = query.where(Booking.guide_id == current_user.id)
    result = await db.execute(_paginate(query, page, page_size))
    return await hydrate_bookings(result.scalars().all(), db)


@router.get("", response_model=list[BookingResponse])
async def list_all_bookings(
    status_filter: Optional[BookingStatus] = Query(None, alias="status"),
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=100),
    current_user: User = Depends(require_admin),
    db: AsyncSession = Depends(get_db),
):
    """Admin: every booking on the platform."""
    query = select(Booking)
    if status_filter:
        query = query.where(Booking.status == status_filter)
    result = await db.execute(_paginate(query, page, page_size))
    return await hydrate_bookings(result.scalars().all(), db)


@router.get("/{booking_id}", response_model=BookingResponse)
async def get_booking(
    booking_id: UUID,
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Booking details for the tourist, the owning guide, or an admin."""
    booking = await get_booking_or_404(booking_id, db)
    if current_user.role != UserRole.ADMIN and current_user.id not in (
        booking.tourist_id,
        booking.guide_id,
    ):
        raise Forbidden("Not authorized to view this booking")
    return await hydrate_booking(booking, db)


# ── Status Transitions ────────────────────────────────────────

@router.patch("/{booking_id}/status", response_model=BookingResponse)
async def update_booking_status(
    booking_id: UUID,
    data: BookingStatusUpdateRequest,
    current_user: User = Depends(require_guide),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    """
    Guide (tour owner) or admin moves a booking along
    PENDING → CONFIRMED → COMPLETED, or cancels it.
    Completing a booking opens its UNPAID payment.
    """
    booking = await lifecycle.transition_booking(
        db, booking_id, BookingStatus(data.status), current_user, data.reason
    )
    await db.commit()

    await _invalidate_booking_views(RedisCache(redis), booking)
    return await hydrate_booking(booking, db)


# ── Checkout ──────────────────────────────────────────────────

@router.post("/{booking_id}/payment", response_model=PaymentInitiateResponse)
async def initiate_payment(
    booking_id: UUID,
    current_user: User = Depends(require_tourist),
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
    gateway: SSLCommerzGateway = Depends(get_payment_gateway),
):
    """
    Start gateway checkout for a COMPLETED booking. The tourist is sent to
    payment_url; the gateway reports back on /payments/success|fail|cancel.
    """
    payment_url, booking = await lifecycle.initiate_payment(db, booking_id, current_user, gateway)
    await db.commit()

    await _invalidate_booking_views(RedisCache(redis), booking)
    return PaymentInitiateResponse(
        payment_url=payment_url,
        booking=await hydrate_booking(booking, db),
    )
