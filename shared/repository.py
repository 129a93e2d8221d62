"""
shared/repository.py
Explicit fetch-and-assemble helpers shared by the service routers.

Soft-deleted tours and users are excluded at this boundary: callers that
go through these helpers never see a DELETED row.
"""

import uuid
from typing import Iterable, Optional, Sequence

from sqlalchemy import Select, select
from sqlalchemy.ext.asyncio import AsyncSession

from shared.exceptions import NotFound
from shared.models.models import (
    AccountStatus,
    Booking,
    Payment,
    Tour,
    TourStatus,
    User,
)
from shared.schemas.schemas import (
    BookingResponse,
    PaymentResponse,
    TourResponse,
    TourSummary,
    UserSummary,
)


# ── Selects ───────────────────────────────────────────────────

def select_visible_tours() -> Select:
    return select(Tour).where(Tour.status != TourStatus.DELETED)


def select_active_users() -> Select:
    return select(User).where(User.account_status != AccountStatus.DELETED)


# ── Single-row lookups ────────────────────────────────────────

async def get_user_or_404(user_id: uuid.UUID, db: AsyncSession) -> User:
    result = await db.execute(select_active_users().where(User.id == user_id))
    user = result.scalar_one_or_none()
    if not user:
        raise NotFound("User not found")
    return user


async def get_tour_or_404(tour_id: uuid.UUID, db: AsyncSession) -> Tour:
    result = await db.execute(select_visible_tours().where(Tour.id == tour_id))
    tour = result.scalar_one_or_none()
    if not tour:
        raise NotFound("Tour not found")
    return tour


async def get_tour_by_slug_or_404(slug: str, db: AsyncSession) -> Tour:
    result = await db.execute(select_visible_tours().where(Tour.slug == slug))
    tour = result.scalar_one_or_none()
    if not tour:
        raise NotFound("Tour not found")
    return tour


async def get_booking_or_404(booking_id: uuid.UUID, db: AsyncSession) -> Booking:
    result = await db.execute(select(Booking).where(Booking.id == booking_id))
    booking = result.scalar_one_or_none()
    if not booking:
        raise NotFound("Booking not found")
    return booking


async def get_payment_for_booking(booking_id: uuid.UUID, db: AsyncSession) -> Optional[Payment]:
    result = await db.execute(select(Payment).where(Payment.booking_id == booking_id))
    return result.scalar_one_or_none()


async def get_payment_by_transaction_or_404(transaction_id: str, db: AsyncSession) -> Payment:
    result = await db.execute(select(Payment).where(Payment.transaction_id == transaction_id))
    payment = result.scalar_one_or_none()
    if not payment:
        raise NotFound("Payment not found")
    return payment


# ── Batch lookups ─────────────────────────────────────────────

async def users_by_id(ids: Iterable[uuid.UUID], db: AsyncSession) -> dict[uuid.UUID, User]:
    ids = set(ids)
    if not ids:
        return {}
    result = await db.execute(select(User).where(User.id.in_(ids)))
    return {u.id: u for u in result.scalars()}


async def tours_by_id(ids: Iterable[uuid.UUID], db: AsyncSession) -> dict[uuid.UUID, Tour]:
    ids = set(ids)
    if not ids:
        return {}
    result = await db.execute(select(Tour).where(Tour.id.in_(ids)))
    return {t.id: t for t in result.scalars()}


# ── Hydration ─────────────────────────────────────────────────

def _summary(user: Optional[User]) -> Optional[UserSummary]:
    return UserSummary.model_validate(user) if user else None


async def hydrate_tours(tours: Sequence[Tour], db: AsyncSession) -> list[TourResponse]:
    """Attach guide summaries to tours."""
    guides = await users_by_id((t.guide_id for t in tours), db)
    return [
        TourResponse.model_validate(t).model_copy(update={"guide": _summary(guides.get(t.guide_id))})
        for t in tours
    ]


async def hydrate_bookings(bookings: Sequence[Booking], db: AsyncSession) -> list[BookingResponse]:
    """Attach tourist, guide, tour and payment to each booking."""
    if not bookings:
        return []
    users = await users_by_id(
        [b.tourist_id for b in bookings] + [b.guide_id for b in bookings], db
    )
    tours = await tours_by_id((b.tour_id for b in bookings), db)
    result = await db.execute(
        select(Payment).where(Payment.booking_id.in_([b.id for b in bookings]))
    )
    payments = {p.booking_id: p for p in result.scalars()}

    hydrated = []
    for b in bookings:
        tour = tours.get(b.tour_id)
        payment = payments.get(b.id)
        hydrated.append(
            BookingResponse.model_validate(b).model_copy(update={
                "tourist": _summary(users.get(b.tourist_id)),
                "guide": _summary(users.get(b.guide_id)),
                "tour": TourSummary.model_validate(tour) if tour else None,
                "payment": PaymentResponse.model_validate(payment) if payment else None,
            })
        )
    return hydrated


async def hydrate_booking(booking: Booking, db: AsyncSession) -> BookingResponse:
    return (await hydrate_bookings([booking], db))[0]
