"""NOWPayments crypto invoice adapter."""
from __future__ import annotations

import hashlib
import hmac
import json
import logging
from typing import TYPE_CHECKING, Any, Dict, Optional

import requests
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
    coerce_decimal,
)

if TYPE_CHECKING:
    from billing.models import Plan, Subscription

logger = logging.getLogger(__name__)

DEFAULT_API_URL = "https://api.nowpayments.io/v1"

STATUS_EVENT_TYPES = {
    "finished": EventType.INVOICE_PAID,
    "confirmed": EventType.INVOICE_PAID,
    "partially_paid": EventType.INVOICE_PARTIALLY_PAID,
    "expired": EventType.INVOICE_EXPIRED,
    "failed": EventType.INVOICE_EXPIRED,
}


def canonical_ipn_body(data: Dict[str, Any]) -> str:
    """Key-sorted compact JSON that NOWPayments signs."""
    return json.dumps(data, sort_keys=True, separators=(",", ":"), ensure_ascii=False)


def sign_ipn_body(data: Dict[str, Any], secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), canonical_ipn_body(data).encode("utf-8"), hashlib.sha512).hexdigest()


class CryptoInvoiceAdapter(PaymentProviderAdapter):
    """Cryptocurrency payments through hosted NOWPayments invoices."""

    name = "nowpayments"
    signature_header = "x-nowpayments-sig"

    def __init__(self, http: Optional[requests.Session] = None):
        self._http = http or requests.Session()

    @property
    def api_url(self) -> str:
        return (getattr(settings, "NOWPAYMENTS_API_URL", "") or DEFAULT_API_URL).rstrip("/")

    def _api_key(self) -> str:
        api_key = getattr(settings, "NOWPAYMENTS_API_KEY", "")
        if not api_key:
            raise ProviderConfigurationError("NOWPAYMENTS_API_KEY is not configured.", provider=self.name)
        return api_key

    def create_checkout(self, plan: "Plan", buyer: BuyerContext) -> CheckoutSession:
        body = {
            "price_amount": float(plan.price),
            "price_currency": (plan.currency or "USD").lower(),
            "order_id": buyer.transaction_id,
            "order_description": plan.name or f"Hashrate plan {plan.pk}",
            "ipn_callback_url": build_public_url("api/webhooks/nowpayments/"),
            "success_url": build_public_url("payment/success"),
            "cancel_url": build_public_url("payment/cancel"),
        }
        if plan.crypto_item_code:
            body["pay_currency"] = plan.crypto_item_code

        timeout = getattr(settings, "BILLING_PROVIDER_TIMEOUT_SECONDS", 10)
        try:
            response = self._http.post(
                f"{self.api_url}/invoice",
                json=body,
                headers={"x-api-key": self._api_key(), "Content-Type": "application/json"},
                timeout=timeout,
            )
        except requests.Timeout as exc:
            logger.warning("NOWPayments invoice request timed out for transaction %s.", buyer.transaction_id)
            raise ProviderTimeout(str(exc), provider=self.name) from exc
        except requests.RequestException as exc:
            raise ProviderError("NOWPayments invoice request failed.", provider=self.name,
                                details={"error": str(exc)}) from exc

        if not 200 <= response.status_code < 300:
            raise ProviderError(
                "NOWPayments rejected the invoice request.",
                provider=self.name,
                raw_status=response.status_code,
                details={"body": response.text[:500]},
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise ProviderError("NOWPayments returned a non JSON response.", provider=self.name,
                                raw_status=response.status_code) from exc

        invoice_id = data.get("id") if isinstance(data, dict) else None
        invoice_url = data.get("invoice_url") if isinstance(data, dict) else None
        if not invoice_id or not invoice_url:
            raise ProviderError("Missing invoice_url in NOWPayments response.", provider=self.name,
                                raw_status=response.status_code)

        return CheckoutSession(
            provider=self.name,
            session_id=str(invoice_id),
            redirect_url=str(invoice_url),
            pay_address=data.get("pay_address"),
            pay_amount=coerce_decimal(data.get("pay_amount")),
        )

    def verify_and_parse(self, raw_body: bytes, signature: Optional[str]) -> NormalizedEvent:
        if not signature:
            raise SignatureError("x-nowpayments-sig header is missing.")
        secret = getattr(settings, "NOWPAYMENTS_IPN_SECRET", "")
        if not secret:
            raise ProviderConfigurationError("NOWPAYMENTS_IPN_SECRET is not configured.", provider=self.name)

        try:
            data = json.loads(raw_body)
        except ValueError as exc:
            raise MalformedPayloadError("Malformed NOWPayments IPN payload.") from exc
        if not isinstance(data, dict):
            raise MalformedPayloadError("NOWPayments IPN payload must be a JSON object.")

        expected = sign_ipn_body(data, secret)
        if not hmac.compare_digest(expected, signature.strip().lower()):
            logger.warning("NOWPayments IPN signature mismatch for invoice %s.", data.get("invoice_id"))
            raise SignatureError()

        payment_status = str(data.get("payment_status") or "")
        invoice_id = data.get("invoice_id")
        payment_id = data.get("payment_id")
        order_id = data.get("order_id")
        currency = data.get("price_currency")
        return NormalizedEvent(
            provider=self.name,
            type=STATUS_EVENT_TYPES.get(payment_status, EventType.UNHANDLED),
            raw_type=payment_status,
            session_id=str(invoice_id) if invoice_id else None,
            transaction_id=str(order_id) if order_id else None,
            reference=str(payment_id) if payment_id else None,
            amount=coerce_decimal(data.get("price_amount")),
            paid_amount=coerce_decimal(data.get("actually_paid")),
            currency=currency.upper() if currency else None,
            status=payment_status,
            payload=data,
        )

    def cancel_subscription(self, subscription: "Subscription") -> None:
        # Invoices are single-shot; nothing recurs on the provider side.
        logger.info("No provider-side cancellation required for NOWPayments subscription %s.", subscription.pk)
