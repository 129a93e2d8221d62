"""
services/payment/reconciliation.py
Applies gateway callbacks (success / fail / cancel) to the Payment record.

The booking keeps COMPLETED as its service-completion marker; the money
outcome lives on Payment.status. Each callback also appends a booking audit
entry, in the same transaction as the payment update.

Callbacks are idempotent: a payment that already left UNPAID is never
touched again and the caller gets AlreadyProcessed.
"""

import enum
import logging
from datetime import datetime, timezone
from decimal import Decimal, InvalidOperation as DecimalError
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.attributes import set_committed_value

from services.booking.lifecycle import log_status_change
from shared.exceptions import AlreadyProcessed, InvalidOperation, NotFound
from shared.models.models import Payment, PaymentStatus, RetiredTransaction
from shared.repository import get_booking_or_404, get_payment_by_transaction_or_404

logger = logging.getLogger(__name__)


class CallbackOutcome(str, enum.Enum):
    SUCCESS = "success"
    FAIL = "fail"
    CANCEL = "cancel"


OUTCOME_STATUS = {
    CallbackOutcome.SUCCESS: PaymentStatus.PAID,
    CallbackOutcome.FAIL: PaymentStatus.FAILED,
    CallbackOutcome.CANCEL: PaymentStatus.CANCELLED,
}


def _amount_matches(expected: Decimal, reported: Optional[str]) -> bool:
    if reported is None:
        return True
    try:
        return Decimal(str(reported)) == expected
    except DecimalError:
        return False


async def reconcile_payment(
    db: AsyncSession,
    transaction_id: str,
    outcome: CallbackOutcome,
    amount: Optional[str] = None,
    gateway_data: Optional[dict] = None,
) -> Payment:
    """
    1. Look up the payment by transaction id. An id retired by a re-armed
       checkout → AlreadyProcessed with its recorded outcome; else NotFound
    2. Terminal payment → AlreadyProcessed (nothing is re-applied)
    3. Success with a mismatching amount → InvalidOperation
    4. Conditional UPDATE ... WHERE status = UNPAID; a concurrent duplicate
       matches no row and also gets AlreadyProcessed
    5. Audit entry on the booking, flushed with the payment update
    """
    try:
        payment = await get_payment_by_transaction_or_404(transaction_id, db)
    except NotFound:
        retired = await db.scalar(
            select(RetiredTransaction).where(RetiredTransaction.transaction_id == transaction_id)
        )
        if retired is None:
            raise
        raise AlreadyProcessed(
            f"Payment {transaction_id} was retired as {retired.status.value}", status=retired.status
        )

    if payment.status != PaymentStatus.UNPAID:
        raise AlreadyProcessed(
            f"Payment {transaction_id} is already {payment.status.value}", status=payment.status
        )

    if outcome == CallbackOutcome.SUCCESS and not _amount_matches(payment.amount, amount):
        logger.warning(
            f"Amount mismatch on {transaction_id}: expected {payment.amount}, got {amount}"
        )
        raise InvalidOperation("Paid amount does not match the booking amount")

    target = OUTCOME_STATUS[outcome]
    values = {"status": target, "gateway_data": gateway_data or None}
    if target == PaymentStatus.PAID:
        values["paid_at"] = datetime.now(timezone.utc)

    result = await db.execute(
        update(Payment)
        .where(Payment.id == payment.id, Payment.status == PaymentStatus.UNPAID)
        .values(**values)
        .execution_options(synchronize_session=False)
    )
    if result.rowcount != 1:
        await db.refresh(payment)
        raise AlreadyProcessed(
            f"Payment {transaction_id} is already {payment.status.value}", status=payment.status
        )

    for field, value in values.items():
        set_committed_value(payment, field, value)

    booking = await get_booking_or_404(payment.booking_id, db)
    log_status_change(
        db,
        booking,
        booking.status.value,
        booking.status.value,
        None,
        reason=f"Payment {target.value}",
        metadata={"transaction_id": transaction_id, "outcome": outcome.value},
    )
    await db.flush()
    logger.info(f"Payment {transaction_id} reconciled as {target.value} (booking {booking.id})")
    return payment
