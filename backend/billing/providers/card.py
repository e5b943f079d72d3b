"""Stripe card checkout adapter."""
from __future__ import annotations

import json
import logging
from decimal import Decimal
from typing import TYPE_CHECKING, Any, Dict, Optional, Tuple

import stripe
from django.conf import settings

from billing.exceptions import (
    MalformedPayloadError,
    ProviderConfigurationError,
    ProviderError,
    ProviderTimeout,
    SignatureError,
)

from .base import (
    BuyerContext,
    CheckoutSession,
    EventType,
    NormalizedEvent,
    PaymentProviderAdapter,
    build_public_url,
    coerce_timestamp,
)

if TYPE_CHECKING:
    from billing.models import Plan, Subscription

logger = logging.getLogger(__name__)

ZERO_DECIMAL_CURRENCIES: set[str] = {
    "bif",
    "clp",
    "djf",
    "gnf",
    "jpy",
    "kmf",
    "krw",
    "mga",
    "pyg",
    "rwf",
    "ugx",
    "vnd",
    "vuv",
    "xaf",
    "xof",
    "xpf",
}

PAID_SESSION_STATUSES = ("paid", "no_payment_required")
_DURATION_INTERVALS = {"d": "day", "m": "month", "y": "year"}


def _configure_stripe() -> None:
    secret_key = getattr(settings, "STRIPE_SECRET_KEY", "")
    if not secret_key:
        raise ProviderConfigurationError("STRIPE_SECRET_KEY is not configured.", provider="stripe")

    stripe.api_key = secret_key
    api_version = getattr(settings, "STRIPE_API_VERSION", None)
    if api_version:
        stripe.api_version = api_version
    timeout = getattr(settings, "BILLING_PROVIDER_TIMEOUT_SECONDS", 10)
    stripe.default_http_client = stripe.RequestsClient(timeout=timeout)


def _to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return int(amount)
    return int((amount * 100).quantize(Decimal("1")))


def _convert_minor_amount(value: Any, currency: Optional[str]) -> Optional[Decimal]:
    if value in (None, ""):
        return None
    try:
        amount = Decimal(str(value))
    except (ArithmeticError, TypeError, ValueError):
        return None
    divisor = Decimal("1") if currency and currency.lower() in ZERO_DECIMAL_CURRENCIES else Decimal("100")
    return (amount / divisor).quantize(Decimal("0.01"))


def _recurring_interval(duration: str) -> Dict[str, Any]:
    unit = (duration or "").strip()[-1:].lower()
    count = (duration or "").strip()[:-1]
    interval = _DURATION_INTERVALS.get(unit)
    if interval is None or not count.isdigit() or int(count) < 1:
        return {"interval": "day", "interval_count": 30}
    return {"interval": interval, "interval_count": int(count)}


def _stringify_metadata(values: Dict[str, Any]) -> Dict[str, str]:
    return {key: "" if value is None else str(value) for key, value in values.items()}


def _subscription_period(obj: Dict[str, Any]) -> Tuple[Any, Any]:
    """Billing window from a subscription, falling back to its first item on newer API versions."""
    start = obj.get("current_period_start")
    end = obj.get("current_period_end")
    if start is None or end is None:
        items = (obj.get("items") or {}).get("data") or []
        if items and isinstance(items[0], dict):
            start = start if start is not None else items[0].get("current_period_start")
            end = end if end is not None else items[0].get("current_period_end")
    return coerce_timestamp(start), coerce_timestamp(end)


def _invoice_subscription_id(invoice: Dict[str, Any]) -> Optional[str]:
    subscription_id = invoice.get("subscription")
    if isinstance(subscription_id, dict):
        subscription_id = subscription_id.get("id")
    if subscription_id:
        return str(subscription_id)
    details = ((invoice.get("parent") or {}).get("subscription_details") or {})
    return details.get("subscription")


def _invoice_period(invoice: Dict[str, Any]) -> Tuple[Any, Any]:
    lines = (invoice.get("lines") or {}).get("data") or []
    for line in lines:
        if not isinstance(line, dict):
            continue
        period = line.get("period") or {}
        if period.get("start") and period.get("end"):
            return coerce_timestamp(period["start"]), coerce_timestamp(period["end"])
    return coerce_timestamp(invoice.get("period_start")), coerce_timestamp(invoice.get("period_end"))


class CardCheckoutAdapter(PaymentProviderAdapter):
    """Card payments through Stripe Checkout sessions."""

    name = "stripe"
    signature_header = "Stripe-Signature"

    def create_checkout(self, plan: "Plan", buyer: BuyerContext) -> CheckoutSession:
        _configure_stripe()

        currency = (plan.currency or "USD").lower()
        mode = "subscription" if plan.is_subscription else "payment"
        if plan.stripe_price_id:
            line_item: Dict[str, Any] = {"price": plan.stripe_price_id, "quantity": 1}
        else:
            price_data: Dict[str, Any] = {
                "currency": currency,
                "unit_amount": _to_minor_units(plan.price, currency),
                "product_data": {"name": plan.name or f"Hashrate plan {plan.pk}"},
            }
            if plan.is_subscription:
                price_data["recurring"] = _recurring_interval(plan.duration)
            line_item = {"price_data": price_data, "quantity": 1}

        metadata = _stringify_metadata({
            "transaction_id": buyer.transaction_id,
            "user_id": buyer.user_id,
            "plan_id": plan.pk,
            "payout_address": buyer.payout_address,
            "subscription_id": buyer.subscription_id,
        })

        success_url = getattr(settings, "STRIPE_SUCCESS_URL", "") or build_public_url("success")
        cancel_url = getattr(settings, "STRIPE_CANCEL_URL", "") or build_public_url("checkout")
        if not success_url or not cancel_url:
            raise ProviderConfigurationError(
                "STRIPE_SUCCESS_URL or BILLING_PUBLIC_BASE_URL must be configured.",
                provider=self.name,
            )

        options: Dict[str, Any] = {
            "mode": mode,
            "line_items": [line_item],
            "success_url": f"{success_url}?session_id={{CHECKOUT_SESSION_ID}}",
            "cancel_url": cancel_url,
            "metadata": metadata,
            "client_reference_id": buyer.transaction_id,
        }
        if mode == "subscription":
            options["subscription_data"] = {"metadata": metadata}
        if buyer.customer_id:
            options["customer"] = buyer.customer_id
        elif buyer.email:
            options["customer_email"] = buyer.email

        try:
            session = stripe.checkout.Session.create(**options)
        except stripe.APIConnectionError as exc:
            logger.warning("Stripe checkout session creation timed out for transaction %s: %s",
                           buyer.transaction_id, exc)
            raise ProviderTimeout(str(exc), provider=self.name) from exc
        except stripe.StripeError as exc:
            raise ProviderError(
                "Stripe checkout session creation failed.",
                provider=self.name,
                raw_status=getattr(exc, "http_status", None),
                details={"error": str(exc)},
            ) from exc

        session_id = session.get("id")
        redirect_url = session.get("url")
        if not session_id or not redirect_url:
            raise ProviderError("Stripe checkout session response is missing id or url.", provider=self.name)
        return CheckoutSession(provider=self.name, session_id=str(session_id), redirect_url=str(redirect_url))

    def verify_and_parse(self, raw_body: bytes, signature: Optional[str]) -> NormalizedEvent:
        if not signature:
            raise SignatureError("Stripe-Signature header is missing.")
        webhook_secret = getattr(settings, "STRIPE_WEBHOOK_SECRET", "")
        if not webhook_secret:
            raise ProviderConfigurationError("STRIPE_WEBHOOK_SECRET is not configured.", provider=self.name)

        try:
            payload = raw_body.decode("utf-8") if isinstance(raw_body, bytes) else raw_body
        except UnicodeDecodeError as exc:
            raise MalformedPayloadError("Stripe webhook payload is not valid UTF-8.") from exc

        try:
            stripe.WebhookSignature.verify_header(
                payload, signature, webhook_secret, tolerance=stripe.Webhook.DEFAULT_TOLERANCE,
            )
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise SignatureError() from exc

        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise MalformedPayloadError("Malformed Stripe webhook payload.") from exc
        obj = ((event.get("data") or {}).get("object")) if isinstance(event, dict) else None
        if not isinstance(obj, dict) or not event.get("type"):
            raise MalformedPayloadError("Stripe webhook payload is missing its event object.")

        return self._normalize(event, obj)

    def _normalize(self, event: Dict[str, Any], obj: Dict[str, Any]) -> NormalizedEvent:
        raw_type = str(event["type"])
        event_id = event.get("id")
        metadata = obj.get("metadata") or {}
        currency = obj.get("currency")
        common = {
            "provider": self.name,
            "raw_type": raw_type,
            "event_id": str(event_id) if event_id else None,
            "currency": currency.upper() if currency else None,
            "customer_id": obj.get("customer") if isinstance(obj.get("customer"), str) else None,
            "transaction_id": metadata.get("transaction_id") or None,
            "payload": event,
        }

        if raw_type.startswith("checkout.session."):
            if raw_type == "checkout.session.completed":
                paid = obj.get("payment_status") in PAID_SESSION_STATUSES
                event_type = EventType.CHECKOUT_COMPLETED if paid else EventType.UNHANDLED
            elif raw_type == "checkout.session.async_payment_succeeded":
                event_type = EventType.CHECKOUT_COMPLETED
            elif raw_type in ("checkout.session.expired", "checkout.session.async_payment_failed"):
                event_type = EventType.CHECKOUT_EXPIRED
            else:
                event_type = EventType.UNHANDLED
            common["transaction_id"] = common["transaction_id"] or obj.get("client_reference_id")
            return NormalizedEvent(
                type=event_type,
                session_id=obj.get("id"),
                subscription_id=obj.get("subscription"),
                reference=obj.get("payment_intent") or obj.get("subscription") or obj.get("id"),
                amount=_convert_minor_amount(obj.get("amount_total"), currency),
                status=obj.get("payment_status"),
                **common,
            )

        if raw_type in ("customer.subscription.updated", "customer.subscription.deleted"):
            period_start, period_end = _subscription_period(obj)
            event_type = (
                EventType.SUBSCRIPTION_UPDATED
                if raw_type == "customer.subscription.updated"
                else EventType.SUBSCRIPTION_CANCELED
            )
            return NormalizedEvent(
                type=event_type,
                subscription_id=obj.get("id"),
                reference=obj.get("id"),
                status=obj.get("status"),
                cancel_at_period_end=bool(obj.get("cancel_at_period_end")),
                period_start=period_start,
                period_end=period_end,
                **common,
            )

        if raw_type in ("invoice.paid", "invoice.payment_failed"):
            period_start, period_end = _invoice_period(obj)
            if raw_type == "invoice.payment_failed":
                event_type = EventType.INVOICE_PAYMENT_FAILED
            elif obj.get("billing_reason") == "subscription_cycle":
                event_type = EventType.INVOICE_PAID
            else:
                # First invoices are settled through checkout.session.completed.
                event_type = EventType.UNHANDLED
            return NormalizedEvent(
                type=event_type,
                subscription_id=_invoice_subscription_id(obj),
                reference=obj.get("id"),
                amount=_convert_minor_amount(obj.get("amount_paid"), currency),
                status=obj.get("status"),
                period_start=period_start,
                period_end=period_end,
                **common,
            )

        return NormalizedEvent(type=EventType.UNHANDLED, reference=obj.get("id"), **common)

    def cancel_subscription(self, subscription: "Subscription") -> None:
        if not subscription.provider_subscription_id:
            return
        _configure_stripe()
        try:
            stripe.Subscription.cancel(subscription.provider_subscription_id)
        except stripe.APIConnectionError as exc:
            raise ProviderTimeout(str(exc), provider=self.name) from exc
        except stripe.StripeError as exc:
            raise ProviderError(
                f"Stripe subscription {subscription.provider_subscription_id} could not be canceled.",
                provider=self.name,
                raw_status=getattr(exc, "http_status", None),
                details={"error": str(exc)},
            ) from exc

    def management_url(self, subscription: "Subscription") -> Optional[str]:
        portal_url = getattr(settings, "STRIPE_CUSTOMER_PORTAL_URL", "")
        if not portal_url:
            raise ProviderConfigurationError("STRIPE_CUSTOMER_PORTAL_URL is not configured.", provider=self.name)
        return portal_url
