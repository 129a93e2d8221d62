"""
services/payment/gateway.py
SSLCommerz hosted-checkout client.

initiate() opens a gateway session for one transaction and returns the
page the tourist is redirected to. The gateway later calls back
/payments/success|fail|cancel with the transaction id and amount.
"""

import logging
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional
from urllib.parse import urlencode

import httpx
from pybreaker import CircuitBreaker, CircuitBreakerError
from tenacity import retry, retry_if_exception_type, stop_after_attempt, wait_exponential

from config.settings import settings
from shared.exceptions import GatewayError
from shared.utils.resilience import circuit_breaker_manager

logger = logging.getLogger(__name__)


@dataclass
class CheckoutRequest:
    name: str
    email: str
    phone: str
    address: str
    amount: Decimal
    transaction_id: str


@dataclass
class CheckoutSession:
    gateway_page_url: str
    raw: dict


class SSLCommerzGateway:
    """Session-initiation client. One instance per process is enough."""

    def __init__(
        self,
        client: Optional[httpx.AsyncClient] = None,
        breaker: Optional[CircuitBreaker] = None,
    ):
        self.client = client or httpx.AsyncClient(timeout=settings.GATEWAY_TIMEOUT_SECONDS)
        self.breaker = breaker or circuit_breaker_manager.get_breaker("sslcommerz")

    @staticmethod
    def _callback_url(outcome: str, request: CheckoutRequest) -> str:
        query = urlencode({
            "transactionId": request.transaction_id,
            "amount": str(request.amount),
            "status": outcome,
        })
        return f"{settings.BACKEND_URL}/payments/{outcome}?{query}"

    def build_payload(self, request: CheckoutRequest) -> dict:
        return {
            "store_id": settings.SSLCOMMERZ_STORE_ID,
            "store_passwd": settings.SSLCOMMERZ_STORE_PASSWORD,
            "total_amount": str(request.amount),
            "currency": settings.SSLCOMMERZ_CURRENCY,
            "tran_id": request.transaction_id,
            "success_url": self._callback_url("success", request),
            "fail_url": self._callback_url("fail", request),
            "cancel_url": self._callback_url("cancel", request),
            "shipping_method": "NO",
            "product_name": "Tour Booking",
            "product_category": "Service",
            "product_profile": "general",
            "cus_name": request.name,
            "cus_email": request.email,
            "cus_add1": request.address,
            "cus_city": "N/A",
            "cus_country": "N/A",
            "cus_phone": request.phone,
        }

    @retry(
        retry=retry_if_exception_type(httpx.TransportError),
        stop=stop_after_attempt(3),
        wait=wait_exponential(multiplier=0.2, max=2),
        reraise=True,
    )
    async def _post(self, payload: dict) -> dict:
        response = await self.client.post(settings.SSLCOMMERZ_PAYMENT_API, data=payload)
        response.raise_for_status()
        return response.json()

    async def initiate(self, request: CheckoutRequest) -> CheckoutSession:
        payload = self.build_payload(request)
        try:
            with self.breaker.calling():
                data = await self._post(payload)
        except CircuitBreakerError:
            logger.error("Payment gateway circuit open; refusing new checkout sessions")
            raise GatewayError("Payment gateway temporarily unavailable. Please try again later.")
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"Payment gateway request failed for {request.transaction_id}: {e}")
            raise GatewayError("Could not reach the payment gateway")

        url = data.get("GatewayPageURL")
        if data.get("status") != "SUCCESS" or not url:
            reason = data.get("failedreason") or "Payment session was not created"
            logger.warning(f"Gateway rejected session {request.transaction_id}: {reason}")
            raise GatewayError(reason)

        return CheckoutSession(gateway_page_url=url, raw=data)

    async def aclose(self) -> None:
        await self.client.aclose()


# ── Dependency ────────────────────────────────────────────────

_gateway: Optional[SSLCommerzGateway] = None


def get_payment_gateway() -> SSLCommerzGateway:
    """FastAPI dependency; tests override it with a stub."""
    global _gateway
    if _gateway is None:
        _gateway = SSLCommerzGateway()
    return _gateway


async def close_payment_gateway() -> None:
    global _gateway
    if _gateway is not None:
        await _gateway.aclose()
        _gateway = None
