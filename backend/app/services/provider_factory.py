"""
Payment provider factory.
Configures which payment gateway the registration lifecycle talks to.
"""

from typing import Optional

from app.core.config import get_settings
from app.services.interfaces.offline_payment import OfflinePaymentProvider
from app.services.interfaces.payment import PaymentProvider


def build_payment_provider() -> PaymentProvider:
    """
    Build the configured payment provider.

    Provider selection:
    - offline: in-process ledger (development, tests)
    - razorpay: Razorpay REST API

    Override via the PAYMENT_PROVIDER env var.
    """
    provider = get_settings().PAYMENT_PROVIDER

    if provider == "razorpay":
        from app.services.razorpay_provider import RazorpayPaymentProvider

        return RazorpayPaymentProvider()
    return OfflinePaymentProvider()


# Singleton instance
_provider: Optional[PaymentProvider] = None


def get_payment_provider() -> PaymentProvider:
    """Get payment provider singleton. Also used as a FastAPI dependency."""
    global _provider
    if _provider is None:
        _provider = build_payment_provider()
    return _provider


async def close_payment_provider() -> None:
    global _provider
    if _provider is not None and hasattr(_provider, "aclose"):
        await _provider.aclose()
    _provider = None
