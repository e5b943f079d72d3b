from datetime import timedelta

import pytest
from django.contrib.auth import get_user_model
from django.utils import timezone
from rest_framework.test import APIClient

from billing.exceptions import ProviderError, ProviderTimeout
from billing.models import Order, PaymentTransaction, Subscription, SubscriptionSession

from .helpers import (
    VALID_P2SH_ADDRESS,
    checkout_session_object,
    nowpayments_ipn,
    signed_ipn,
    stripe_event,
    stripe_signature,
)

CHECKOUT_URL = "/api/checkout/"
CHECKOUT_SESSION_URL = "/api/checkout-session/"
MANAGE_URL = "/api/subscriptions/manage/"
CANCEL_URL = "/api/subscriptions/manage/cancel/"
CRON_URL = "/api/cron/update-order-status/"


def _checkout_body(**overrides):
    body = {"planId": "p1", "cryptoAddress": VALID_P2SH_ADDRESS, "paymentMethod": "stripe"}
    body.update(overrides)
    return body


# Checkout


@pytest.mark.django_db
def test_checkout_requires_authentication(api_client, plan, api_adapters):
    response = api_client.post(CHECKOUT_URL, _checkout_body(), format="json")

    assert response.status_code == 401
    assert response.json()["code"] == "unauthenticated"
    assert not PaymentTransaction.objects.exists()


@pytest.mark.django_db
def test_card_checkout_returns_redirect_url(auth_client, plan, api_adapters):
    response = auth_client.post(CHECKOUT_URL, _checkout_body(), format="json")

    assert response.status_code == 200
    data = response.json()
    payment = PaymentTransaction.objects.get()
    assert data["sessionId"] == payment.provider_session_id
    assert data["transactionId"] == str(payment.pk)
    assert data["subscriptionId"] == str(payment.subscription_id)
    assert data["url"].startswith("https://checkout.stripe.com/")
    assert "invoiceUrl" not in data


@pytest.mark.django_db
def test_crypto_checkout_returns_invoice_url(auth_client, plan, api_adapters):
    response = auth_client.post(CHECKOUT_URL, _checkout_body(paymentMethod="NOWPayments"), format="json")

    assert response.status_code == 200
    data = response.json()
    assert data["invoiceUrl"].startswith("https://nowpayments.io/payment/")
    assert "url" not in data
    assert PaymentTransaction.objects.get().provider == "nowpayments"


@pytest.mark.django_db
@pytest.mark.parametrize(
    "body, status, code",
    [
        (_checkout_body(cryptoAddress="not-an-address"), 400, "invalid_payout_address"),
        (_checkout_body(cryptoAddress=""), 400, "invalid_payout_address"),
        (_checkout_body(planId="missing"), 404, "plan_not_found"),
        (_checkout_body(paymentMethod="paypal"), 400, "unsupported_provider"),
        ({"cryptoAddress": VALID_P2SH_ADDRESS}, 400, "validation_error"),
    ],
)
def test_checkout_rejections_share_error_body(auth_client, plan, api_adapters, body, status, code):
    response = auth_client.post(CHECKOUT_URL, body, format="json")

    assert response.status_code == status
    data = response.json()
    assert data["code"] == code
    assert set(data) == {"code", "message", "details"}
    assert not PaymentTransaction.objects.exists()


@pytest.mark.django_db
@pytest.mark.parametrize(
    "error, status, code",
    [
        (ProviderError("card_declined: upstream detail", provider="stripe", raw_status=402), 500, "provider_error"),
        (ProviderTimeout("read timed out", provider="stripe"), 504, "provider_timeout"),
    ],
)
def test_checkout_provider_failure_is_generic(auth_client, plan, api_adapters, card_adapter, error, status, code):
    card_adapter.error = error

    response = auth_client.post(CHECKOUT_URL, _checkout_body(), format="json")

    assert response.status_code == status
    data = response.json()
    assert data["code"] == code
    assert "upstream detail" not in data["message"]
    assert data["details"] == {"provider": "stripe", "retryable": True}
    assert PaymentTransaction.objects.get().status == PaymentTransaction.Status.PENDING


@pytest.mark.django_db
def test_checkout_session_endpoint_returns_only_session_id(auth_client, plan, api_adapters, card_adapter):
    response = auth_client.post(CHECKOUT_SESSION_URL, {"planId": "p1", "cryptoAddress": VALID_P2SH_ADDRESS},
                                format="json")

    assert response.status_code == 200
    assert response.json() == {"sessionId": PaymentTransaction.objects.get().provider_session_id}
    assert len(card_adapter.calls) == 1


# Webhooks


@pytest.mark.django_db
def test_stripe_webhook_completes_checkout(auth_client, api_client, plan, api_adapters):
    checkout = auth_client.post(CHECKOUT_URL, _checkout_body(), format="json").json()
    payload = stripe_event(
        "checkout.session.completed",
        checkout_session_object(checkout["sessionId"], checkout["transactionId"]),
        event_id="evt_api_complete",
    )

    response = api_client.post(
        "/api/webhooks/stripe/",
        data=payload,
        content_type="application/json",
        HTTP_STRIPE_SIGNATURE=stripe_signature(payload),
    )
    replay = api_client.post(
        "/api/webhooks/stripe/",
        data=payload,
        content_type="application/json",
        HTTP_STRIPE_SIGNATURE=stripe_signature(payload),
    )

    assert response.status_code == 200
    assert response.json()["status"] == "processed"
    assert response.json()["transactionId"] == checkout["transactionId"]
    assert replay.status_code == 200
    assert replay.json()["status"] == "replay"
    assert Order.objects.count() == 1
    assert Subscription.objects.get().status == Subscription.Status.ACTIVE


@pytest.mark.django_db
def test_nowpayments_webhook_uses_ipn_signature(auth_client, api_client, plan, api_adapters):
    checkout = auth_client.post(CHECKOUT_URL, _checkout_body(paymentMethod="nowpayments"), format="json").json()
    body, signature = signed_ipn(nowpayments_ipn(checkout["sessionId"], checkout["transactionId"], "finished"))

    response = api_client.post(
        "/api/webhooks/nowpayments/",
        data=body,
        content_type="application/json",
        HTTP_X_NOWPAYMENTS_SIG=signature,
    )

    assert response.status_code == 200
    assert PaymentTransaction.objects.get().status == PaymentTransaction.Status.COMPLETED


@pytest.mark.django_db
def test_webhook_with_bad_signature_is_rejected(api_client, plan, api_adapters):
    payload = stripe_event("checkout.session.completed", checkout_session_object("cs_x", "tx"))

    response = api_client.post(
        "/api/webhooks/stripe/",
        data=payload,
        content_type="application/json",
        HTTP_STRIPE_SIGNATURE="t=1,v1=deadbeef",
    )

    assert response.status_code == 400
    assert response.json()["code"] == "invalid_signature"


@pytest.mark.django_db
def test_webhook_for_unknown_provider_is_not_found(api_client, api_adapters):
    response = api_client.post("/api/webhooks/paypal/", data="{}", content_type="application/json")

    assert response.status_code == 404
    assert response.json()["code"] == "unknown_provider"


@pytest.mark.django_db
def test_webhook_for_unknown_session_is_bad_request(api_client, api_adapters):
    payload = stripe_event(
        "checkout.session.completed",
        checkout_session_object("cs_unknown", "8d7e4c65-2f0a-4bd1-9d59-4e8ad2f14d0c"),
    )

    response = api_client.post(
        "/api/webhooks/stripe/",
        data=payload,
        content_type="application/json",
        HTTP_STRIPE_SIGNATURE=stripe_signature(payload),
    )

    assert response.status_code == 400
    assert response.json()["code"] == "unknown_reference"


# Cron


@pytest.mark.django_db
def test_cron_runs_reconciler(api_client, user, plan):
    payment = PaymentTransaction.objects.create(
        user=user, plan=plan, amount=plan.price, provider="stripe", status=PaymentTransaction.Status.COMPLETED,
    )
    now = timezone.now()
    Order.objects.create(
        user=user, plan=plan, origin_transaction=payment, transaction=payment,
        status=Order.Status.ACTIVE, start_date=now - timedelta(days=40), end_date=now - timedelta(days=9),
    )

    response = api_client.get(CRON_URL)

    assert response.status_code == 200
    data = response.json()
    assert data["success"] is True
    assert data["ordersProcessed"] == 1
    assert data["details"]["expired"] == 1
    assert "timestamp" in data
    assert Order.objects.get().status == Order.Status.EXPIRED


@pytest.mark.django_db
def test_cron_requires_configured_secret(api_client, settings):
    settings.BILLING_CRON_SECRET = "cron-secret"

    missing = api_client.get(CRON_URL)
    wrong = api_client.get(CRON_URL, HTTP_AUTHORIZATION="Bearer nope")
    right = api_client.get(CRON_URL, HTTP_AUTHORIZATION="Bearer cron-secret")

    assert missing.status_code == 403
    assert wrong.status_code == 403
    assert right.status_code == 200


# Subscription management


def _active_crypto_subscription(user, plan):
    return Subscription.objects.create(
        user=user, plan=plan, provider="nowpayments", status=Subscription.Status.ACTIVE,
    )


@pytest.mark.django_db
def test_manage_link_round_trip(auth_client, api_client, user, plan, api_adapters):
    subscription = _active_crypto_subscription(user, plan)

    issued = auth_client.post(MANAGE_URL, {"subscriptionId": str(subscription.pk)}, format="json")
    assert issued.status_code == 200
    token = issued.json()["token"]
    assert token in issued.json()["url"]
    assert "expiresAt" in issued.json()

    resolved = api_client.get(MANAGE_URL, {"token": token, "subscriptionId": str(subscription.pk)})
    assert resolved.status_code == 200
    assert resolved.json()["subscription"]["id"] == str(subscription.pk)
    assert resolved.json()["subscription"]["plan_id"] == "p1"

    canceled = api_client.post(CANCEL_URL, {"subscriptionId": str(subscription.pk), "token": token}, format="json")
    assert canceled.status_code == 200
    assert canceled.json()["subscription"]["status"] == "canceled"
    assert SubscriptionSession.objects.get(token=token).is_used is True

    reused = api_client.get(MANAGE_URL, {"token": token, "subscriptionId": str(subscription.pk)})
    assert reused.status_code == 403
    assert reused.json()["code"] == "session_invalid"


@pytest.mark.django_db
def test_manage_link_for_card_subscription_is_portal(auth_client, user, plan, api_adapters):
    subscription = Subscription.objects.create(
        user=user, plan=plan, provider="stripe", status=Subscription.Status.ACTIVE,
    )

    response = auth_client.post(MANAGE_URL, {"subscriptionId": str(subscription.pk)}, format="json")

    assert response.status_code == 200
    assert response.json() == {"url": "https://billing.stripe.com/p/login/test_portal"}


@pytest.mark.django_db
def test_manage_requires_authentication_without_token(api_client, user, plan, api_adapters):
    subscription = _active_crypto_subscription(user, plan)

    issue = api_client.post(MANAGE_URL, {"subscriptionId": str(subscription.pk)}, format="json")
    listing = api_client.get(MANAGE_URL)
    cancel = api_client.post(CANCEL_URL, {"subscriptionId": str(subscription.pk)}, format="json")

    assert issue.status_code == 401
    assert listing.status_code == 401
    assert cancel.status_code == 401


@pytest.mark.django_db
def test_manage_lists_callers_subscriptions(auth_client, user, other_user, plan, api_adapters):
    mine = _active_crypto_subscription(user, plan)
    _active_crypto_subscription(other_user, plan)

    response = auth_client.get(MANAGE_URL)

    assert response.status_code == 200
    assert [item["id"] for item in response.json()["subscriptions"]] == [str(mine.pk)]


@pytest.mark.django_db
def test_manage_link_for_foreign_subscription_is_not_found(auth_client, other_user, plan, api_adapters):
    subscription = _active_crypto_subscription(other_user, plan)

    response = auth_client.post(MANAGE_URL, {"subscriptionId": str(subscription.pk)}, format="json")

    assert response.status_code == 404
    assert response.json()["code"] == "subscription_not_found"


# Operational endpoints


def test_health_check(client):
    response = client.get("/health/")

    assert response.status_code == 200
    assert response.content == b"OK"


def test_metrics_endpoint_exposes_billing_counters(client):
    response = client.get("/metrics/billing/")

    assert response.status_code == 200
    assert b"billing_request_total" in response.content


# Orders and transactions


def _paid_order(user, plan, session_id):
    payment = PaymentTransaction.objects.create(
        user=user,
        plan=plan,
        amount=plan.price,
        provider="stripe",
        provider_session_id=session_id,
        status=PaymentTransaction.Status.COMPLETED,
    )
    now = timezone.now()
    return Order.objects.create(
        user=user,
        plan=plan,
        origin_transaction=payment,
        transaction=payment,
        payout_address=VALID_P2SH_ADDRESS,
        status=Order.Status.ACTIVE,
        start_date=now,
        end_date=now + timedelta(days=30),
    )


@pytest.fixture
def staff_client(db):
    staff = get_user_model().objects.create_user(
        username="ops", email="ops@example.com", password="pass1234", is_staff=True,
    )
    client = APIClient()
    client.force_authenticate(user=staff)
    return client


@pytest.mark.django_db
def test_orders_list_only_callers_orders(auth_client, user, other_user, plan):
    mine = _paid_order(user, plan, "cs_test_mine")
    _paid_order(other_user, plan, "cs_test_theirs")

    response = auth_client.get("/api/orders/")

    assert response.status_code == 200
    data = response.json()
    assert [item["id"] for item in data] == [str(mine.pk)]
    assert data[0]["plan_id"] == "p1"
    assert data[0]["session_id"] == "cs_test_mine"
    assert data[0]["status"] == Order.Status.ACTIVE


@pytest.mark.django_db
def test_order_lookup_by_checkout_session(auth_client, user, other_user, plan):
    order = _paid_order(user, plan, "cs_test_success")
    _paid_order(other_user, plan, "cs_test_foreign")

    found = auth_client.get("/api/orders/session/cs_test_success/")
    foreign = auth_client.get("/api/orders/session/cs_test_foreign/")
    detail = auth_client.get(f"/api/orders/{order.pk}/")

    assert found.status_code == 200
    assert found.json()["id"] == str(order.pk)
    assert found.json()["transaction_id"] == str(order.transaction_id)
    assert foreign.status_code == 404
    assert detail.status_code == 200


@pytest.mark.django_db
def test_transactions_list_only_callers_transactions(auth_client, user, other_user, plan):
    _paid_order(user, plan, "cs_test_mine")
    _paid_order(other_user, plan, "cs_test_theirs")

    response = auth_client.get("/api/transactions/")

    assert response.status_code == 200
    assert [item["provider_session_id"] for item in response.json()] == ["cs_test_mine"]


@pytest.mark.django_db
def test_order_and_transaction_reads_require_authentication(api_client):
    assert api_client.get("/api/orders/").status_code == 401
    assert api_client.get("/api/transactions/").status_code == 401


@pytest.mark.django_db
def test_staff_can_refund_pending_transaction_once(staff_client, user, plan):
    payment = PaymentTransaction.objects.create(user=user, plan=plan, amount=plan.price, provider="nowpayments")
    url = f"/api/transactions/{payment.pk}/status/"

    first = staff_client.post(url, {"status": "refunded", "reason": "duplicate invoice"}, format="json")
    second = staff_client.post(url, {"status": "failed"}, format="json")

    assert first.status_code == 200
    assert first.json()["transaction"]["status"] == PaymentTransaction.Status.REFUNDED
    payment.refresh_from_db()
    assert payment.status == PaymentTransaction.Status.REFUNDED
    assert payment.metadata["status_reason"] == "duplicate invoice"
    assert second.status_code == 409
    assert second.json()["code"] == "invalid_transaction_transition"


@pytest.mark.django_db
@pytest.mark.parametrize(
    "body, status, code",
    [
        ({"status": "completed"}, 400, "invalid_transaction_status"),
        ({"reason": "missing status"}, 400, "validation_error"),
    ],
)
def test_staff_status_update_rejects_bad_input(staff_client, user, plan, body, status, code):
    payment = PaymentTransaction.objects.create(user=user, plan=plan, amount=plan.price, provider="stripe")

    response = staff_client.post(f"/api/transactions/{payment.pk}/status/", body, format="json")

    assert response.status_code == status
    assert response.json()["code"] == code
    payment.refresh_from_db()
    assert payment.status == PaymentTransaction.Status.PENDING


@pytest.mark.django_db
def test_status_update_is_staff_only(auth_client, staff_client, user, plan):
    payment = PaymentTransaction.objects.create(user=user, plan=plan, amount=plan.price, provider="stripe")

    forbidden = auth_client.post(f"/api/transactions/{payment.pk}/status/", {"status": "failed"}, format="json")
    missing = staff_client.post(
        "/api/transactions/00000000-0000-0000-0000-000000000000/status/", {"status": "failed"}, format="json",
    )

    assert forbidden.status_code == 403
    assert missing.status_code == 404
    assert missing.json()["code"] == "transaction_not_found"
    payment.refresh_from_db()
    assert payment.status == PaymentTransaction.Status.PENDING
