"""
services/payment/router.py
Gateway callback endpoints and payment history.

The gateway redirects the tourist's browser to /payments/success|fail|cancel
with transactionId and amount in the query string. Each callback is
reconciled and the browser is sent on to the matching frontend page.
"""

import logging
from urllib.parse import urlencode

from fastapi import APIRouter, Depends, Query, Request
from fastapi.responses import RedirectResponse
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from config.database import get_db
from config.redis_client import RedisCache, get_redis
from config.settings import settings
from services.payment.reconciliation import CallbackOutcome, reconcile_payment
from shared.exceptions import AlreadyProcessed, InvalidOperation
from shared.middleware.auth import get_current_user
from shared.models.models import Booking, Payment, PaymentStatus, User
from shared.schemas.schemas import PaymentResponse

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/payments", tags=["Payments"])

FRONTEND_REDIRECTS = {
    PaymentStatus.PAID: ("SSL_SUCCESS_FRONTEND_URL", "success"),
    PaymentStatus.FAILED: ("SSL_FAIL_FRONTEND_URL", "fail"),
    PaymentStatus.CANCELLED: ("SSL_CANCEL_FRONTEND_URL", "cancel"),
}


def _frontend_redirect(payment_status: PaymentStatus, transaction_id: str, amount: str) -> RedirectResponse:
    setting_name, label = FRONTEND_REDIRECTS[payment_status]
    query = urlencode({"transactionId": transaction_id, "amount": amount, "status": label})
    return RedirectResponse(f"{getattr(settings, setting_name)}?{query}", status_code=302)


async def _handle_callback(
    outcome: CallbackOutcome,
    request: Request,
    db: AsyncSession,
    redis,
) -> RedirectResponse:
    params = dict(request.query_params)
    transaction_id = params.get("transactionId") or params.get("tran_id")
    amount = params.get("amount", "")
    if not transaction_id:
        raise InvalidOperation("transactionId is required")

    try:
        payment = await reconcile_payment(
            db, transaction_id, outcome, amount or None, gateway_data=params
        )
    except AlreadyProcessed as e:
        # Duplicate delivery: route by the outcome that was already recorded.
        logger.info(f"Ignoring replayed {outcome.value} callback for {transaction_id}")
        return _frontend_redirect(e.status, transaction_id, amount)

    await db.commit()

    booking = await db.get(Booking, payment.booking_id)
    cache = RedisCache(redis)
    await cache.bump_version("bookings", booking.tourist_id)
    await cache.bump_version("bookings", booking.guide_id)
    return _frontend_redirect(payment.status, transaction_id, amount)


# ── Gateway Callbacks ─────────────────────────────────────────

@router.api_route("/success", methods=["GET", "POST"], include_in_schema=False)
async def payment_success(
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    return await _handle_callback(CallbackOutcome.SUCCESS, request, db, redis)


@router.api_route("/fail", methods=["GET", "POST"], include_in_schema=False)
async def payment_fail(
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    return await _handle_callback(CallbackOutcome.FAIL, request, db, redis)


@router.api_route("/cancel", methods=["GET", "POST"], include_in_schema=False)
async def payment_cancel(
    request: Request,
    db: AsyncSession = Depends(get_db),
    redis=Depends(get_redis),
):
    return await _handle_callback(CallbackOutcome.CANCEL, request, db, redis)


# ── History ───────────────────────────────────────────────────

@router.get("/me/history", response_model=list[PaymentResponse])
async def get_payment_history(
    page: int = Query(1, ge=1),
    page_size: int = Query(20, ge=1, le=50),
    current_user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Payments for the current tourist's bookings, newest first."""
    result = await db.execute(
        select(Payment)
        .join(Booking, Booking.id == Payment.booking_id)
        .where(Booking.tourist_id == current_user.id)
        .order_by(Payment.created_at.desc())
        .offset((page - 1) * page_size)
        .limit(page_size)
    )
    return [PaymentResponse.model_validate(p) for p in result.scalars()]
