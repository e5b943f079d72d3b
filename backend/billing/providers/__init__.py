"""Payment provider adapters keyed by the ``provider`` discriminant."""
from __future__ import annotations

from typing import Dict

from .base import BuyerContext, CheckoutSession, EventType, NormalizedEvent, PaymentProviderAdapter
from .card import CardCheckoutAdapter
from .crypto import CryptoInvoiceAdapter

SUPPORTED_PROVIDERS = (CardCheckoutAdapter.name, CryptoInvoiceAdapter.name)


def build_default_adapters() -> Dict[str, PaymentProviderAdapter]:
    return {
        CardCheckoutAdapter.name: CardCheckoutAdapter(),
        CryptoInvoiceAdapter.name: CryptoInvoiceAdapter(),
    }


__all__ = [
    "BuyerContext",
    "CardCheckoutAdapter",
    "CheckoutSession",
    "CryptoInvoiceAdapter",
    "EventType",
    "NormalizedEvent",
    "PaymentProviderAdapter",
    "SUPPORTED_PROVIDERS",
    "build_default_adapters",
]
