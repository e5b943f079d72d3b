"""Provider-neutral types shared by payment provider adapters."""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone as dt_timezone
from decimal import Decimal, InvalidOperation
from typing import TYPE_CHECKING, Any, Dict, Optional
from urllib.parse import urljoin

from django.conf import settings

if TYPE_CHECKING:
    from billing.models import Plan, Subscription

logger = logging.getLogger(__name__)


class EventType:
    """Provider events normalised to the transitions the reconciler understands."""

    CHECKOUT_COMPLETED = "checkout_completed"
    CHECKOUT_EXPIRED = "checkout_expired"
    INVOICE_PAID = "invoice_paid"
    INVOICE_PARTIALLY_PAID = "invoice_partially_paid"
    INVOICE_EXPIRED = "invoice_expired"
    INVOICE_PAYMENT_FAILED = "invoice_payment_failed"
    SUBSCRIPTION_UPDATED = "subscription_updated"
    SUBSCRIPTION_CANCELED = "subscription_canceled"
    UNHANDLED = "unhandled"

    COMPLETION = (CHECKOUT_COMPLETED, INVOICE_PAID)
    EXPIRY = (CHECKOUT_EXPIRED, INVOICE_EXPIRED)


@dataclass(frozen=True)
class BuyerContext:
    user_id: str
    email: Optional[str]
    transaction_id: str
    payout_address: str
    customer_id: Optional[str] = None
    subscription_id: Optional[str] = None


@dataclass(frozen=True)
class CheckoutSession:
    provider: str
    session_id: str
    redirect_url: str
    pay_address: Optional[str] = None
    pay_amount: Optional[Decimal] = None


@dataclass(frozen=True)
class NormalizedEvent:
    """A verified provider callback reduced to the fields reconciliation needs."""

    provider: str
    type: str
    raw_type: str
    event_id: Optional[str] = None
    session_id: Optional[str] = None
    transaction_id: Optional[str] = None
    subscription_id: Optional[str] = None
    customer_id: Optional[str] = None
    reference: Optional[str] = None
    amount: Optional[Decimal] = None
    paid_amount: Optional[Decimal] = None
    currency: Optional[str] = None
    status: Optional[str] = None
    cancel_at_period_end: Optional[bool] = None
    period_start: Optional[datetime] = None
    period_end: Optional[datetime] = None
    payload: Dict[str, Any] = field(default_factory=dict)

    @property
    def idempotency_key(self) -> str:
        if self.event_id:
            return self.event_id
        return f"{self.session_id or self.reference or self.transaction_id}:{self.type}"


class PaymentProviderAdapter:
    """Interface every payment provider variant implements."""

    name: str = ""
    signature_header: str = ""

    def create_checkout(self, plan: "Plan", buyer: BuyerContext) -> CheckoutSession:
        raise NotImplementedError

    def verify_and_parse(self, raw_body: bytes, signature: Optional[str]) -> NormalizedEvent:
        raise NotImplementedError

    def cancel_subscription(self, subscription: "Subscription") -> None:
        raise NotImplementedError

    def management_url(self, subscription: "Subscription") -> Optional[str]:
        """Long-lived provider hosted management page, or ``None`` when we host one."""
        return None


def build_public_url(path: str) -> str:
    base_url = getattr(settings, "BILLING_PUBLIC_BASE_URL", "")
    if not base_url:
        return ""
    normalized_base = base_url if base_url.endswith("/") else f"{base_url}/"
    return urljoin(normalized_base, path.lstrip("/"))


def coerce_timestamp(value: Any) -> Optional[datetime]:
    if value in (None, ""):
        return None
    try:
        return datetime.fromtimestamp(float(value), tz=dt_timezone.utc)
    except (TypeError, ValueError, OverflowError):
        return None


def coerce_decimal(value: Any) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        return Decimal(str(value))
    except (InvalidOperation, TypeError, ValueError):
        logger.debug("Ignoring non numeric amount %r in provider payload.", value)
        return None
