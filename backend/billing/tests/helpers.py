"""Payload builders and test doubles shared by the billing tests."""
from __future__ import annotations

import hashlib
import hmac
import json
import time
import uuid
from typing import Any, Dict, Optional

from billing.providers import CardCheckoutAdapter, CheckoutSession, CryptoInvoiceAdapter
from billing.providers.crypto import sign_ipn_body

STRIPE_WEBHOOK_SECRET = "whsec_test_secret"
NOWPAYMENTS_IPN_SECRET = "ipn_test_secret"

VALID_P2SH_ADDRESS = "3J98t1WpEZ73CNmQviecrnyiWrnqRhWNLy"


class StubCardAdapter(CardCheckoutAdapter):
    """Stripe adapter with the outbound API calls replaced; signature checks stay real."""

    def __init__(self):
        self.calls = []
        self.canceled = []
        self.error = None

    def create_checkout(self, plan, buyer):
        self.calls.append((plan, buyer))
        if self.error is not None:
            raise self.error
        session_id = f"cs_test_{len(self.calls)}_{buyer.transaction_id[:8]}"
        return CheckoutSession(
            provider=self.name,
            session_id=session_id,
            redirect_url=f"https://checkout.stripe.com/c/pay/{session_id}",
        )

    def cancel_subscription(self, subscription):
        self.canceled.append(subscription.pk)


class StubCryptoAdapter(CryptoInvoiceAdapter):
    def __init__(self):
        super().__init__(http=None)
        self.calls = []
        self.canceled = []
        self.error = None

    def create_checkout(self, plan, buyer):
        self.calls.append((plan, buyer))
        if self.error is not None:
            raise self.error
        invoice_id = str(4500000000 + len(self.calls))
        return CheckoutSession(
            provider=self.name,
            session_id=invoice_id,
            redirect_url=f"https://nowpayments.io/payment/?iid={invoice_id}",
        )

    def cancel_subscription(self, subscription):
        self.canceled.append(subscription.pk)


def stripe_signature(payload: str, secret: str = STRIPE_WEBHOOK_SECRET, timestamp: Optional[int] = None) -> str:
    timestamp = timestamp or int(time.time())
    signed = f"{timestamp}.{payload}".encode("utf-8")
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={timestamp},v1={digest}"


def stripe_event(event_type: str, obj: Dict[str, Any], event_id: Optional[str] = None) -> str:
    return json.dumps({
        "id": event_id or f"evt_{uuid.uuid4().hex[:16]}",
        "object": "event",
        "type": event_type,
        "data": {"object": obj},
    })


def checkout_session_object(session_id: str, transaction_id: str, *, payment_status: str = "paid",
                            subscription: Optional[str] = "sub_test_1", customer: str = "cus_test_1",
                            amount_total: int = 10900) -> Dict[str, Any]:
    return {
        "id": session_id,
        "object": "checkout.session",
        "payment_status": payment_status,
        "client_reference_id": transaction_id,
        "metadata": {"transaction_id": transaction_id},
        "subscription": subscription,
        "customer": customer,
        "payment_intent": None if subscription else "pi_test_1",
        "amount_total": amount_total,
        "currency": "usd",
    }


def nowpayments_ipn(invoice_id: str, order_id: str, status: str, *, payment_id: str = "5077125051",
                    actually_paid: Any = 0.0016, price_amount: Any = 109) -> Dict[str, Any]:
    return {
        "payment_id": payment_id,
        "invoice_id": invoice_id,
        "payment_status": status,
        "pay_address": "bc1qar0srrr7xfkvy5l643lydnw9re59gtzzwf5mdq",
        "price_amount": price_amount,
        "price_currency": "usd",
        "pay_amount": 0.0016,
        "actually_paid": actually_paid,
        "pay_currency": "btc",
        "order_id": order_id,
        "order_description": "S19 hashrate",
    }


def signed_ipn(data: Dict[str, Any], secret: str = NOWPAYMENTS_IPN_SECRET):
    """Return the raw body (keys in arrival order) and its NOWPayments signature."""
    return json.dumps(data).encode("utf-8"), sign_ipn_body(data, secret)
