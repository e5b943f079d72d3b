"""Checkout entry points."""
from __future__ import annotations

import logging

from rest_framework.permissions import AllowAny
from rest_framework.views import APIView

from billing.exceptions import BillingError
from billing.observability.metrics import BILLING_REQUEST_LATENCY, CHECKOUT_REQUEST_COUNT
from billing.providers import CardCheckoutAdapter, CryptoInvoiceAdapter, build_default_adapters
from billing.serializers import CheckoutRequestSerializer, CheckoutSessionRequestSerializer
from billing.services.checkout import CheckoutResult, CheckoutSessionInitiator

from .base import BillingMetricsMixin

logger = logging.getLogger(__name__)


class CheckoutView(BillingMetricsMixin, APIView):
    """Start a checkout with the provider named in ``paymentMethod``."""

    # Identity is checked by the initiator so failures share the billing error body.
    permission_classes = [AllowAny]
    endpoint_label = "checkout"
    serializer_class = CheckoutRequestSerializer

    def get_initiator(self) -> CheckoutSessionInitiator:
        return CheckoutSessionInitiator(adapters=build_default_adapters())

    def _provider(self, data) -> str:
        return (data.get("paymentMethod") or "").strip().lower()

    def post(self, request):
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method="POST").time():
            user = request.user if request.user.is_authenticated else None
            serializer = self.serializer_class(data=request.data)
            if user is not None and not serializer.is_valid():
                return self._validation_error_response(serializer.errors)
            data = serializer.validated_data if user is not None else {}

            provider = self._provider(data)
            try:
                result = self.get_initiator().start(
                    user=user,
                    plan_id=data.get("planId"),
                    payout_address=data.get("cryptoAddress"),
                    provider=provider,
                )
            except BillingError as exc:
                if exc.status_code < 500:
                    CHECKOUT_REQUEST_COUNT.labels(provider=provider or "unknown", outcome=exc.code).inc()
                return self._billing_error_response(exc)

            return self._success_response(
                self.render(result),
                message="checkout_started",
                provider=result.session.provider,
            )

    def render(self, result: CheckoutResult) -> dict:
        payload = {
            "sessionId": result.session.session_id,
            "transactionId": str(result.transaction.pk),
        }
        if result.subscription is not None:
            payload["subscriptionId"] = str(result.subscription.pk)
        if result.session.provider == CryptoInvoiceAdapter.name:
            payload["invoiceUrl"] = result.session.redirect_url
        else:
            payload["url"] = result.session.redirect_url
        return payload


class CheckoutSessionView(CheckoutView):
    """Card checkout shortcut returning only the Stripe session id."""

    endpoint_label = "checkout_session"
    serializer_class = CheckoutSessionRequestSerializer

    def _provider(self, data) -> str:
        return CardCheckoutAdapter.name

    def render(self, result: CheckoutResult) -> dict:
        return {"sessionId": result.session.session_id}
