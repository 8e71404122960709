"""
Razorpay payment provider over the REST API.

Amounts cross the wire in paise (the smallest currency unit). Every gateway
failure, including timeouts and non-2xx responses, surfaces as
PaymentProviderError so callers deal with one exception type.
"""

from decimal import ROUND_HALF_UP, Decimal
from typing import Optional

import httpx

from app.core.config import get_settings
from app.core.exceptions import PaymentProviderError
from app.core.logging import get_logger
from app.services.interfaces.payment import (
    PaymentOrder,
    PaymentProvider,
    PaymentVerification,
    ProviderPaymentStatus,
    RefundReceipt,
)

logger = get_logger(__name__)

MIN_ORDER_AMOUNT = Decimal("1")


def to_paise(amount: Decimal) -> int:
    return int((Decimal(amount) * 100).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def from_paise(value: int) -> Decimal:
    return (Decimal(value) / 100).quantize(Decimal("0.01"))


class RazorpayPaymentProvider(PaymentProvider):
    def __init__(self, client: Optional[httpx.AsyncClient] = None):
        settings = get_settings()
        if client is None:
            if not settings.RAZORPAY_KEY_ID or not settings.RAZORPAY_KEY_SECRET:
                raise PaymentProviderError("Razorpay credentials not configured")
            client = httpx.AsyncClient(
                base_url=settings.RAZORPAY_BASE_URL,
                auth=(settings.RAZORPAY_KEY_ID, settings.RAZORPAY_KEY_SECRET),
                timeout=settings.PAYMENT_TIMEOUT_SECONDS,
            )
        self.client = client

    async def _request(self, method: str, path: str, **kwargs) -> dict:
        try:
            response = await self.client.request(method, path, **kwargs)
            response.raise_for_status()
        except httpx.HTTPStatusError as e:
            try:
                description = e.response.json().get("error", {}).get("description")
            except ValueError:
                description = None
            logger.error("razorpay_request_failed", path=path, status=e.response.status_code, error=description)
            raise PaymentProviderError(
                f"Payment gateway rejected the request: {description or e.response.status_code}"
            ) from e
        except httpx.HTTPError as e:
            logger.error("razorpay_unreachable", path=path, error=str(e))
            raise PaymentProviderError("Payment gateway unreachable") from e
        return response.json()

    async def initiate(self, amount: Decimal, currency: str, metadata: dict) -> PaymentOrder:
        if Decimal(amount) < MIN_ORDER_AMOUNT:
            raise PaymentProviderError("Invalid amount. Minimum payment is 1.00")

        receipt = "_".join(str(v) for v in metadata.values())[:40] or None
        body = await self._request(
            "POST",
            "/orders",
            json={
                "amount": to_paise(amount),
                "currency": currency,
                "receipt": receipt,
                "notes": {**{k: str(v) for k, v in metadata.items()}, "purpose": "event_registration"},
            },
        )
        logger.info("razorpay_order_created", order_ref=body["id"], amount=str(amount))
        return PaymentOrder(
            order_ref=body["id"],
            amount=from_paise(body["amount"]),
            currency=body["currency"],
            metadata=dict(metadata),
        )

    async def verify(self, order_ref: str) -> PaymentVerification:
        body = await self._request("GET", f"/orders/{order_ref}/payments")
        payments = body.get("items", [])

        captured = next((p for p in payments if p.get("status") == "captured"), None)
        if captured is not None:
            return PaymentVerification(
                order_ref=order_ref,
                status=ProviderPaymentStatus.COMPLETED,
                payment_ref=captured["id"],
                amount=from_paise(captured["amount"]),
            )
        if payments and all(p.get("status") == "failed" for p in payments):
            return PaymentVerification(order_ref=order_ref, status=ProviderPaymentStatus.FAILED)
        return PaymentVerification(order_ref=order_ref, status=ProviderPaymentStatus.PENDING)

    async def refund(
        self,
        payment_ref: str,
        amount: Decimal,
        idempotency_key: str,
        notes: Optional[dict] = None,
    ) -> RefundReceipt:
        body = await self._request(
            "POST",
            f"/payments/{payment_ref}/refund",
            json={
                "amount": to_paise(amount),
                "receipt": idempotency_key[:40],
                "notes": notes or {},
            },
            headers={"X-Refund-Idempotency": idempotency_key},
        )
        logger.info("razorpay_refund_processed", refund_ref=body["id"], payment_ref=payment_ref)
        return RefundReceipt(
            refund_ref=body["id"],
            amount=from_paise(body["amount"]),
            status=body.get("status", "processed"),
        )

    async def aclose(self) -> None:
        await self.client.aclose()
