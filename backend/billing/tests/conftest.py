from datetime import datetime, timezone as dt_timezone
from decimal import Decimal

import pytest
from django.contrib.auth import get_user_model
from rest_framework.test import APIClient

from billing.models import Plan

from .helpers import NOWPAYMENTS_IPN_SECRET, STRIPE_WEBHOOK_SECRET, StubCardAdapter, StubCryptoAdapter

FIXED_NOW = datetime(2024, 1, 15, 10, 0, tzinfo=dt_timezone.utc)


@pytest.fixture(autouse=True)
def billing_settings(settings):
    settings.STRIPE_SECRET_KEY = "sk_test_123"
    settings.STRIPE_WEBHOOK_SECRET = STRIPE_WEBHOOK_SECRET
    settings.STRIPE_CUSTOMER_PORTAL_URL = "https://billing.stripe.com/p/login/test_portal"
    settings.NOWPAYMENTS_API_KEY = "np_test_key"
    settings.NOWPAYMENTS_IPN_SECRET = NOWPAYMENTS_IPN_SECRET
    settings.NOWPAYMENTS_API_URL = "https://api.nowpayments.test/v1"
    settings.BILLING_PUBLIC_BASE_URL = "https://hashrate.example"
    settings.BILLING_CRON_SECRET = ""
    settings.BILLING_BITCOIN_NETWORK = "mainnet"
    settings.BILLING_SUBSCRIPTION_SESSION_TTL_MINUTES = 30
    settings.BILLING_PENDING_TRANSACTION_TIMEOUT_HOURS = 24
    settings.BILLING_RENEWAL_GRACE_HOURS = 24
    return settings


@pytest.fixture
def fixed_now():
    return FIXED_NOW


@pytest.fixture
def user(db):
    return get_user_model().objects.create_user(
        username="miner",
        email="miner@example.com",
        password="pass1234",
    )


@pytest.fixture
def other_user(db):
    return get_user_model().objects.create_user(
        username="other",
        email="other@example.com",
        password="pass1234",
    )


@pytest.fixture
def plan(db):
    return Plan.objects.create(
        id="p1",
        name="S19 XP 100 TH/s",
        hashrate_ths=Decimal("100"),
        price=Decimal("109"),
        currency="USD",
        duration="1m",
        is_subscription=True,
    )


@pytest.fixture
def one_time_plan(db):
    return Plan.objects.create(
        id="p2",
        name="Hosting slot",
        type=Plan.PlanType.HOSTING,
        price=Decimal("250"),
        currency="USD",
        duration="30d",
        is_subscription=False,
    )


@pytest.fixture
def card_adapter():
    return StubCardAdapter()


@pytest.fixture
def crypto_adapter():
    return StubCryptoAdapter()


@pytest.fixture
def adapters(card_adapter, crypto_adapter):
    return {card_adapter.name: card_adapter, crypto_adapter.name: crypto_adapter}


@pytest.fixture
def api_adapters(monkeypatch, adapters):
    """Route every API view to the stub adapters."""
    for module in ("billing.views.checkout", "billing.views.webhooks", "billing.views.subscriptions"):
        monkeypatch.setattr(f"{module}.build_default_adapters", lambda: dict(adapters))
    return adapters


@pytest.fixture
def api_client():
    return APIClient()


@pytest.fixture
def auth_client(user):
    client = APIClient()
    client.force_authenticate(user=user)
    return client
