"""
services/booking/lifecycle.py
Booking state machine.

States: PENDING → CONFIRMED → COMPLETED, with CANCELLED reachable from
PENDING and CONFIRMED. COMPLETED, CANCELLED and FAILED are terminal.

Tours are paid for after they happen: the Payment row is created when a
booking reaches COMPLETED and the tourist checks out from there.

These functions flush but never commit; the router owns the transaction.
"""

import logging
from datetime import date, datetime, timezone
from typing import Optional

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from services.payment.gateway import CheckoutRequest, SSLCommerzGateway
from shared.exceptions import (
    Forbidden,
    InvalidOperation,
    InvalidTransition,
    TerminalStateViolation,
)
from shared.models.models import (
    Booking,
    BookingAuditLog,
    BookingStatus,
    Payment,
    PaymentStatus,
    RetiredTransaction,
    Tour,
    TourStatus,
    User,
    UserRole,
)
from shared.repository import (
    get_booking_or_404,
    get_payment_for_booking,
    get_tour_or_404,
)
from shared.schemas.schemas import BookingCreateRequest
from shared.utils.security import generate_transaction_id

logger = logging.getLogger(__name__)

ALLOWED_TRANSITIONS: dict[BookingStatus, frozenset[BookingStatus]] = {
    BookingStatus.PENDING: frozenset({BookingStatus.CONFIRMED, BookingStatus.CANCELLED}),
    BookingStatus.CONFIRMED: frozenset({BookingStatus.COMPLETED, BookingStatus.CANCELLED}),
}

TERMINAL_STATES = frozenset({
    BookingStatus.COMPLETED,
    BookingStatus.CANCELLED,
    BookingStatus.FAILED,
})


# ── Helpers ───────────────────────────────────────────────────

def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def log_status_change(
    db: AsyncSession,
    booking: Booking,
    from_status: Optional[str],
    to_status: str,
    changed_by: Optional[User],
    reason: Optional[str] = None,
    metadata: Optional[dict] = None,
) -> None:
    """Append an immutable audit log entry for every status change."""
    db.add(BookingAuditLog(
        booking_id=booking.id,
        from_status=from_status,
        to_status=to_status,
        changed_by_id=changed_by.id if changed_by else None,
        reason=reason,
        audit_metadata=metadata,
    ))


def _slot_offered(available_dates: list[dict], booking_date: date, booking_time: str) -> bool:
    day = booking_date.isoformat()
    return any(
        entry.get("date") == day and booking_time in entry.get("times", [])
        for entry in available_dates
    )


def check_transition(current: BookingStatus, target: BookingStatus) -> None:
    """Raise unless current → target is an edge of the booking graph."""
    if current in TERMINAL_STATES:
        raise TerminalStateViolation(
            f"Booking is already {current.value} and cannot be changed"
        )
    if target not in ALLOWED_TRANSITIONS.get(current, frozenset()):
        raise InvalidTransition(
            f"Cannot change booking status from {current.value} to {target.value}"
        )


async def ensure_payment(db: AsyncSession, booking: Booking) -> Payment:
    """Return the booking's payment, creating an UNPAID one if none exists."""
    payment = await get_payment_for_booking(booking.id, db)
    if payment:
        return payment

    payment = Payment(
        booking_id=booking.id,
        transaction_id=generate_transaction_id(),
        amount=booking.total_amount,
        status=PaymentStatus.UNPAID,
    )
    db.add(payment)
    await db.flush()
    logger.info(f"Payment {payment.transaction_id} created for booking {booking.id}")
    return payment


# ── Creation ──────────────────────────────────────────────────

async def create_booking(
    db: AsyncSession,
    tourist: User,
    data: BookingCreateRequest,
) -> Booking:
    """
    Create a PENDING booking:
    1. Tour must exist, be ACTIVE and fit the group
    2. If the tour publishes dates, the requested date/time must be one of them
    3. total_amount = tour_fee × number_of_guests
    4. Tour booking_count is bumped in the same transaction
    """
    tour = await get_tour_or_404(data.tour_id, db)
    if tour.status != TourStatus.ACTIVE:
        raise InvalidOperation("This tour is not accepting bookings")
    if tour.guide_id == tourist.id:
        raise InvalidOperation("You cannot book your own tour")
    if data.number_of_guests > tour.max_group_size:
        raise InvalidOperation(
            f"This tour allows at most {tour.max_group_size} guests"
        )
    if tour.available_dates and not _slot_offered(
        tour.available_dates, data.booking_date, data.booking_time
    ):
        raise InvalidOperation("The selected date and time are not available for this tour")

    booking = Booking(
        tourist_id=tourist.id,
        tour_id=tour.id,
        guide_id=tour.guide_id,
        booking_date=data.booking_date,
        booking_time=data.booking_time,
        number_of_guests=data.number_of_guests,
        total_amount=tour.tour_fee * data.number_of_guests,
        status=BookingStatus.PENDING,
    )
    db.add(booking)
    await db.flush()

    await db.execute(
        update(Tour)
        .where(Tour.id == tour.id)
        .values(booking_count=Tour.booking_count + 1)
        .execution_options(synchronize_session=False)
    )
    log_status_change(db, booking, None, BookingStatus.PENDING.value, tourist)
    logger.info(f"Booking {booking.id} created for tour {tour.id} by {tourist.id}")
    return booking


# ── Transitions ───────────────────────────────────────────────

async def apply_transition(
    db: AsyncSession,
    booking: Booking,
    target: BookingStatus,
    actor: Optional[User],
    reason: Optional[str] = None,
) -> Booking:
    """
    Move `booking` to `target` with a compare-and-set on the status that was
    read. If another request changed the status in between, no row matches
    and the loser gets InvalidTransition instead of overwriting the winner.
    """
    current = booking.status
    check_transition(current, target)

    now = _utcnow()
    values = {"status": target}
    if target == BookingStatus.CONFIRMED:
        values["confirmed_at"] = now
    elif target == BookingStatus.COMPLETED:
        values["completed_at"] = now
    elif target == BookingStatus.CANCELLED:
        values["cancelled_at"] = now
        values["cancellation_reason"] = reason

    result = await db.execute(
        update(Booking)
        .where(Booking.id == booking.id, Booking.status == current)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        logger.info(f"Lost status race on booking {booking.id} ({current.value} -> {target.value})")
        raise InvalidTransition(
            "Booking status was changed by another request. Please reload and try again."
        )

    for field, value in values.items():
        set_committed_value(booking, field, value)

    if target == BookingStatus.COMPLETED:
        await ensure_payment(db, booking)

    log_status_change(db, booking, current.value, target.value, actor, reason)
    await db.flush()
    logger.info(f"Booking {booking.id}: {current.value} -> {target.value}")
    return booking


async def transition_booking(
    db: AsyncSession,
    booking_id,
    target: BookingStatus,
    actor: User,
    reason: Optional[str] = None,
) -> Booking:
    """Guide-owner or admin entry point for the state machine."""
    booking = await get_booking_or_404(booking_id, db)
    if actor.role != UserRole.ADMIN and booking.guide_id != actor.id:
        raise Forbidden("Only the guide who owns this tour can update the booking")
    return await apply_transition(db, booking, target, actor, reason)


# ── Checkout ──────────────────────────────────────────────────

async def initiate_payment(
    db: AsyncSession,
    booking_id,
    tourist: User,
    gateway: SSLCommerzGateway,
) -> tuple[str, Booking]:
    """
    Open a gateway session for a COMPLETED booking. A payment left FAILED
    or CANCELLED by an earlier attempt is re-armed with a new transaction id;
    the old id is kept with its outcome so late callbacks still resolve.
    Returns (gateway_page_url, booking).
    """
    booking = await get_booking_or_404(booking_id, db)
    if booking.tourist_id != tourist.id:
        raise Forbidden("Only the tourist who made this booking can pay for it")
    if booking.status != BookingStatus.COMPLETED:
        raise InvalidOperation("Payment is only available once the tour is completed")

    payment = await get_payment_for_booking(booking.id, db)
    if payment and payment.status == PaymentStatus.PAID:
        raise InvalidOperation("This booking has already been paid")
    if not tourist.phone or not tourist.address:
        raise InvalidOperation("Add a phone number and address to your profile before paying")

    if payment is None:
        payment = await ensure_payment(db, booking)
    elif payment.status in (PaymentStatus.FAILED, PaymentStatus.CANCELLED):
        previous = payment.transaction_id
        db.add(RetiredTransaction(
            payment_id=payment.id, transaction_id=previous, status=payment.status
        ))
        payment.transaction_id = generate_transaction_id()
        payment.status = PaymentStatus.UNPAID
        payment.gateway_data = None
        try:
            await db.flush()
        except IntegrityError:
            # Another checkout already retired this id.
            raise InvalidOperation("A new checkout for this booking is already in progress")
        logger.info(f"Payment re-armed for booking {booking.id}: {previous} -> {payment.transaction_id}")

    session = await gateway.initiate(CheckoutRequest(
        name=tourist.name,
        email=tourist.email,
        phone=tourist.phone,
        address=tourist.address,
        amount=payment.amount,
        transaction_id=payment.transaction_id,
    ))
    return session.gateway_page_url, booking
