"""
Service interfaces for dependency inversion.
Allows swapping implementations without changing business logic.
"""

from .payment import PaymentProvider, PaymentOrder, PaymentVerification, RefundReceipt, ProviderPaymentStatus
from .offline_payment import OfflinePaymentProvider

__all__ = [
    'PaymentProvider',
    'PaymentOrder',
    'PaymentVerification',
    'RefundReceipt',
    'ProviderPaymentStatus',
    'OfflinePaymentProvider',
]
