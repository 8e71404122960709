"""
Offline payment provider - in-process ledger.
Used in development and tests; payments are settled explicitly via `settle`.
"""

import uuid
from decimal import Decimal
from typing import Optional

from app.core.exceptions import PaymentProviderError
from app.services.interfaces.payment import (
    PaymentOrder,
    PaymentProvider,
    PaymentVerification,
    ProviderPaymentStatus,
    RefundReceipt,
)


class OfflinePaymentProvider(PaymentProvider):
    """
    No external gateway. Orders live in memory until the process exits.

    Use when:
    - Running locally without gateway credentials
    - Testing the registration lifecycle deterministically
    """

    def __init__(self):
        self.orders: dict[str, PaymentOrder] = {}
        self.statuses: dict[str, str] = {}
        self.refunds: dict[str, RefundReceipt] = {}

    async def initiate(self, amount: Decimal, currency: str, metadata: dict) -> PaymentOrder:
        order = PaymentOrder(
            order_ref=f"order_{uuid.uuid4().hex[:14]}",
            amount=Decimal(amount),
            currency=currency,
            metadata=dict(metadata),
        )
        self.orders[order.order_ref] = order
        self.statuses[order.order_ref] = ProviderPaymentStatus.PENDING
        return order

    def settle(self, order_ref: str, succeeded: bool = True) -> None:
        """Simulate the customer completing (or failing) checkout."""
        if order_ref not in self.orders:
            raise PaymentProviderError(f"Unknown order {order_ref}")
        self.statuses[order_ref] = ProviderPaymentStatus.COMPLETED if succeeded else ProviderPaymentStatus.FAILED

    async def verify(self, order_ref: str) -> PaymentVerification:
        order = self.orders.get(order_ref)
        if order is None:
            return PaymentVerification(order_ref=order_ref, status=ProviderPaymentStatus.FAILED)
        status = self.statuses[order_ref]
        return PaymentVerification(
            order_ref=order_ref,
            status=status,
            payment_ref=f"pay_{order_ref}" if status == ProviderPaymentStatus.COMPLETED else None,
            amount=order.amount,
        )

    async def refund(
        self,
        payment_ref: str,
        amount: Decimal,
        idempotency_key: str,
        notes: Optional[dict] = None,
    ) -> RefundReceipt:
        if idempotency_key in self.refunds:
            return self.refunds[idempotency_key]
        receipt = RefundReceipt(
            refund_ref=f"rfnd_{uuid.uuid4().hex[:14]}",
            amount=Decimal(amount),
            status="processed",
        )
        self.refunds[idempotency_key] = receipt
        return receipt
