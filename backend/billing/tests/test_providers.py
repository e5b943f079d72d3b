import json
from decimal import Decimal
from unittest import mock

import pytest
import requests
import stripe

from billing.exceptions import (
    MalformedPayloadError,
    ProviderConfigurationError,
    ProviderError,
    ProviderTimeout,
    SignatureError,
)
from billing.models import Plan
from billing.providers import BuyerContext, CardCheckoutAdapter, CryptoInvoiceAdapter, EventType
from billing.providers.crypto import canonical_ipn_body, sign_ipn_body

from .helpers import (
    NOWPAYMENTS_IPN_SECRET,
    checkout_session_object,
    nowpayments_ipn,
    signed_ipn,
    stripe_event,
    stripe_signature,
)

TRANSACTION_ID = "0b9d2d2c-6a44-4f5e-9a55-0d7c3c1fb0a1"


def _plan(**overrides):
    values = {
        "id": "p1",
        "name": "S19 XP 100 TH/s",
        "price": Decimal("109"),
        "currency": "USD",
        "duration": "1m",
        "is_subscription": True,
    }
    values.update(overrides)
    return Plan(**values)


def _buyer(**overrides):
    values = {
        "user_id": "42",
        "email": "miner@example.com",
        "transaction_id": TRANSACTION_ID,
        "payout_address": "3J98t1WpEZ73CNmQviecrnyiWrnqRhWNLy",
        "subscription_id": "5f0c3d9e-8a1b-4c2d-9e3f-a1b2c3d4e5f6",
    }
    values.update(overrides)
    return BuyerContext(**values)


# Card adapter: session creation


def test_card_checkout_builds_recurring_session():
    with mock.patch("stripe.checkout.Session.create") as create:
        create.return_value = {"id": "cs_test_abc", "url": "https://checkout.stripe.com/c/pay/cs_test_abc"}
        session = CardCheckoutAdapter().create_checkout(_plan(), _buyer())

    assert session.provider == "stripe"
    assert session.session_id == "cs_test_abc"
    assert session.redirect_url == "https://checkout.stripe.com/c/pay/cs_test_abc"

    options = create.call_args.kwargs
    assert options["mode"] == "subscription"
    assert options["client_reference_id"] == TRANSACTION_ID
    assert options["customer_email"] == "miner@example.com"
    assert options["success_url"] == "https://hashrate.example/success?session_id={CHECKOUT_SESSION_ID}"
    price_data = options["line_items"][0]["price_data"]
    assert price_data["unit_amount"] == 10900
    assert price_data["currency"] == "usd"
    assert price_data["recurring"] == {"interval": "month", "interval_count": 1}
    assert options["metadata"]["transaction_id"] == TRANSACTION_ID
    assert options["metadata"]["plan_id"] == "p1"
    assert options["subscription_data"]["metadata"]["payout_address"] == "3J98t1WpEZ73CNmQviecrnyiWrnqRhWNLy"


def test_card_checkout_prefers_catalog_price_and_customer():
    plan = _plan(stripe_price_id="price_123", is_subscription=False)

    with mock.patch("stripe.checkout.Session.create") as create:
        create.return_value = {"id": "cs_test_abc", "url": "https://checkout.stripe.com/x"}
        CardCheckoutAdapter().create_checkout(plan, _buyer(customer_id="cus_123", subscription_id=None))

    options = create.call_args.kwargs
    assert options["mode"] == "payment"
    assert options["line_items"] == [{"price": "price_123", "quantity": 1}]
    assert options["customer"] == "cus_123"
    assert "customer_email" not in options
    assert "subscription_data" not in options
    assert options["metadata"]["subscription_id"] == ""


def test_card_checkout_requires_secret_key(settings):
    settings.STRIPE_SECRET_KEY = ""

    with pytest.raises(ProviderConfigurationError) as exc:
        CardCheckoutAdapter().create_checkout(_plan(), _buyer())

    assert exc.value.retryable is False


def test_card_checkout_maps_stripe_errors():
    error = stripe.InvalidRequestError("No such price: 'price_missing'", "price", http_status=400)

    with mock.patch("stripe.checkout.Session.create", side_effect=error):
        with pytest.raises(ProviderError) as exc:
            CardCheckoutAdapter().create_checkout(_plan(), _buyer())

    assert exc.value.code == "provider_error"
    assert exc.value.raw_status == 400
    assert exc.value.provider == "stripe"


def test_card_checkout_connection_error_is_timeout():
    with mock.patch("stripe.checkout.Session.create", side_effect=stripe.APIConnectionError("timed out")):
        with pytest.raises(ProviderTimeout) as exc:
            CardCheckoutAdapter().create_checkout(_plan(), _buyer())

    assert exc.value.status_code == 504


def test_card_checkout_rejects_incomplete_response():
    with mock.patch("stripe.checkout.Session.create", return_value={"id": "cs_test_abc"}):
        with pytest.raises(ProviderError):
            CardCheckoutAdapter().create_checkout(_plan(), _buyer())


# Card adapter: webhook verification


def test_card_webhook_completed_session_is_normalized():
    payload = stripe_event(
        "checkout.session.completed",
        checkout_session_object("cs_test_abc", TRANSACTION_ID),
        event_id="evt_1",
    )

    event = CardCheckoutAdapter().verify_and_parse(payload.encode(), stripe_signature(payload))

    assert event.type == EventType.CHECKOUT_COMPLETED
    assert event.event_id == "evt_1"
    assert event.idempotency_key == "evt_1"
    assert event.session_id == "cs_test_abc"
    assert event.transaction_id == TRANSACTION_ID
    assert event.subscription_id == "sub_test_1"
    assert event.customer_id == "cus_test_1"
    assert event.amount == Decimal("109.00")
    assert event.currency == "USD"


def test_card_webhook_unpaid_completion_is_unhandled():
    payload = stripe_event(
        "checkout.session.completed",
        checkout_session_object("cs_test_abc", TRANSACTION_ID, payment_status="unpaid"),
    )

    event = CardCheckoutAdapter().verify_and_parse(payload.encode(), stripe_signature(payload))

    assert event.type == EventType.UNHANDLED


def test_card_webhook_expired_session():
    payload = stripe_event("checkout.session.expired", checkout_session_object("cs_test_abc", TRANSACTION_ID))

    event = CardCheckoutAdapter().verify_and_parse(payload.encode(), stripe_signature(payload))

    assert event.type == EventType.CHECKOUT_EXPIRED


def test_card_webhook_rejects_bad_signature():
    payload = stripe_event("checkout.session.completed", checkout_session_object("cs_test_abc", TRANSACTION_ID))

    with pytest.raises(SignatureError):
        CardCheckoutAdapter().verify_and_parse(payload.encode(), stripe_signature(payload, secret="whsec_other"))


def test_card_webhook_requires_signature_header():
    with pytest.raises(SignatureError):
        CardCheckoutAdapter().verify_and_parse(b"{}", None)


def test_card_webhook_requires_configured_secret(settings):
    settings.STRIPE_WEBHOOK_SECRET = ""

    with pytest.raises(ProviderConfigurationError):
        CardCheckoutAdapter().verify_and_parse(b"{}", "t=1,v1=abc")


def test_card_webhook_rejects_payload_without_object():
    payload = json.dumps({"id": "evt_1", "type": "checkout.session.completed", "data": {}})

    with pytest.raises(MalformedPayloadError):
        CardCheckoutAdapter().verify_and_parse(payload.encode(), stripe_signature(payload))


def test_card_webhook_subscription_update_reads_item_period():
    payload = stripe_event(
        "customer.subscription.updated",
        {
            "id": "sub_test_1",
            "object": "subscription",
            "status": "active",
            "customer": "cus_test_1",
            "cancel_at_period_end": True,
            "items": {"data": [{"current_period_start": 1706176800, "current_period_end": 1708855200}]},
        },
    )

    event = CardCheckoutAdapter().verify_and_parse(payload.encode(), stripe_signature(payload))

    assert event.type == EventType.SUBSCRIPTION_UPDATED
    assert event.subscription_id == "sub_test_1"
    assert event.cancel_at_period_end is True
    assert event.period_start.timestamp() == 1706176800
    assert event.period_end.timestamp() == 1708855200


@pytest.mark.parametrize(
    "billing_reason, expected",
    [
        ("subscription_cycle", EventType.INVOICE_PAID),
        ("subscription_create", EventType.UNHANDLED),
    ],
)
def test_card_webhook_only_cycle_invoices_are_renewals(billing_reason, expected):
    payload = stripe_event(
        "invoice.paid",
        {
            "id": "in_test_1",
            "object": "invoice",
            "billing_reason": billing_reason,
            "parent": {"subscription_details": {"subscription": "sub_test_1"}},
            "amount_paid": 10900,
            "currency": "usd",
        },
    )

    event = CardCheckoutAdapter().verify_and_parse(payload.encode(), stripe_signature(payload))

    assert event.type == expected
    assert event.subscription_id == "sub_test_1"
    assert event.reference == "in_test_1"


def test_card_management_url_comes_from_settings(settings):
    assert CardCheckoutAdapter().management_url(None) == "https://billing.stripe.com/p/login/test_portal"

    settings.STRIPE_CUSTOMER_PORTAL_URL = ""
    with pytest.raises(ProviderConfigurationError):
        CardCheckoutAdapter().management_url(None)


# Crypto adapter: invoice creation


def _response(status_code=200, data=None):
    response = mock.Mock()
    response.status_code = status_code
    response.json.return_value = data if data is not None else {}
    response.text = json.dumps(data or {})
    return response


def test_crypto_checkout_posts_invoice():
    http = mock.Mock()
    http.post.return_value = _response(200, {
        "id": "4522625843",
        "invoice_url": "https://nowpayments.io/payment/?iid=4522625843",
    })

    session = CryptoInvoiceAdapter(http=http).create_checkout(_plan(crypto_item_code="btc"), _buyer())

    assert session.provider == "nowpayments"
    assert session.session_id == "4522625843"
    assert session.redirect_url == "https://nowpayments.io/payment/?iid=4522625843"

    args, kwargs = http.post.call_args
    assert args[0] == "https://api.nowpayments.test/v1/invoice"
    assert kwargs["headers"]["x-api-key"] == "np_test_key"
    assert kwargs["timeout"] == 10
    body = kwargs["json"]
    assert body["price_amount"] == 109.0
    assert body["price_currency"] == "usd"
    assert body["order_id"] == TRANSACTION_ID
    assert body["pay_currency"] == "btc"
    assert body["ipn_callback_url"] == "https://hashrate.example/api/webhooks/nowpayments/"


def test_crypto_checkout_rejected_by_provider():
    http = mock.Mock()
    http.post.return_value = _response(400, {"message": "price_amount is too small"})

    with pytest.raises(ProviderError) as exc:
        CryptoInvoiceAdapter(http=http).create_checkout(_plan(), _buyer())

    assert exc.value.raw_status == 400


def test_crypto_checkout_requires_invoice_url():
    http = mock.Mock()
    http.post.return_value = _response(200, {"id": "4522625843"})

    with pytest.raises(ProviderError):
        CryptoInvoiceAdapter(http=http).create_checkout(_plan(), _buyer())


def test_crypto_checkout_timeout():
    http = mock.Mock()
    http.post.side_effect = requests.Timeout("read timed out")

    with pytest.raises(ProviderTimeout):
        CryptoInvoiceAdapter(http=http).create_checkout(_plan(), _buyer())


def test_crypto_checkout_requires_api_key(settings):
    settings.NOWPAYMENTS_API_KEY = ""

    with pytest.raises(ProviderConfigurationError):
        CryptoInvoiceAdapter(http=mock.Mock()).create_checkout(_plan(), _buyer())


# Crypto adapter: IPN verification


@pytest.mark.parametrize(
    "status, expected",
    [
        ("finished", EventType.INVOICE_PAID),
        ("confirmed", EventType.INVOICE_PAID),
        ("partially_paid", EventType.INVOICE_PARTIALLY_PAID),
        ("expired", EventType.INVOICE_EXPIRED),
        ("failed", EventType.INVOICE_EXPIRED),
        ("waiting", EventType.UNHANDLED),
    ],
)
def test_crypto_ipn_status_mapping(status, expected):
    body, signature = signed_ipn(nowpayments_ipn("4522625843", TRANSACTION_ID, status))

    event = CryptoInvoiceAdapter(http=mock.Mock()).verify_and_parse(body, signature)

    assert event.type == expected
    assert event.session_id == "4522625843"
    assert event.transaction_id == TRANSACTION_ID
    assert event.idempotency_key == f"4522625843:{expected}"


def test_crypto_ipn_signature_ignores_key_order():
    data = nowpayments_ipn("4522625843", TRANSACTION_ID, "finished")
    reordered = json.dumps(dict(reversed(list(data.items())))).encode()

    event = CryptoInvoiceAdapter(http=mock.Mock()).verify_and_parse(
        reordered, sign_ipn_body(data, NOWPAYMENTS_IPN_SECRET),
    )

    assert event.paid_amount == Decimal("0.0016")
    assert event.reference == "5077125051"


def test_crypto_ipn_rejects_bad_signature():
    body, _ = signed_ipn(nowpayments_ipn("4522625843", TRANSACTION_ID, "finished"))

    with pytest.raises(SignatureError):
        CryptoInvoiceAdapter(http=mock.Mock()).verify_and_parse(body, "0" * 128)


def test_crypto_ipn_rejects_non_object_payload():
    with pytest.raises(MalformedPayloadError):
        CryptoInvoiceAdapter(http=mock.Mock()).verify_and_parse(b"[1, 2]", "abc")


def test_canonical_ipn_body_is_sorted_and_compact():
    assert canonical_ipn_body({"b": 1, "a": {"d": 2, "c": 3}}) == '{"a":{"c":3,"d":2},"b":1}'
