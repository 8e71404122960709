"""
Payment provider interface.
Keeps the registration lifecycle independent of the gateway SDK.

Provider calls are treated as at-least-once: callers may call `verify` any
number of times for the same order, and `refund` takes an idempotency key
so a retried refund is not paid out twice.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Optional


class ProviderPaymentStatus:
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


@dataclass(frozen=True)
class PaymentOrder:
    order_ref: str
    amount: Decimal
    currency: str
    metadata: dict = field(default_factory=dict)


@dataclass(frozen=True)
class PaymentVerification:
    order_ref: str
    status: str
    payment_ref: Optional[str] = None
    amount: Optional[Decimal] = None

    @property
    def completed(self) -> bool:
        return self.status == ProviderPaymentStatus.COMPLETED


@dataclass(frozen=True)
class RefundReceipt:
    refund_ref: str
    amount: Decimal
    status: str


class PaymentProvider(ABC):
    """
    Interface for payment gateways.

    Implementations:
    - OfflinePaymentProvider: in-process ledger for development and tests
    - RazorpayPaymentProvider: Razorpay REST API over httpx
    """

    @abstractmethod
    async def initiate(self, amount: Decimal, currency: str, metadata: dict) -> PaymentOrder:
        """
        Create a payment order the client will pay against.

        Args:
            amount: Amount in major currency units
            currency: ISO currency code
            metadata: Opaque context echoed back by the gateway (event, student)
        """
        pass

    @abstractmethod
    async def verify(self, order_ref: str) -> PaymentVerification:
        """
        Look up the settlement state of an order. Safe to call repeatedly.
        """
        pass

    @abstractmethod
    async def refund(
        self,
        payment_ref: str,
        amount: Decimal,
        idempotency_key: str,
        notes: Optional[dict] = None,
    ) -> RefundReceipt:
        """
        Refund part or all of a captured payment.

        Raises:
            PaymentProviderError when the gateway rejects or cannot be reached
        """
        pass
