"""Provider webhook endpoint."""
from __future__ import annotations

import logging

from django.db import DatabaseError
from django.utils.decorators import method_decorator
from django.views.decorators.csrf import csrf_exempt
from rest_framework.views import APIView

from billing.exceptions import BillingError
from billing.observability.metrics import BILLING_REQUEST_LATENCY
from billing.providers import build_default_adapters
from billing.services.webhooks import WebhookReconciler

from .base import BillingMetricsMixin

logger = logging.getLogger(__name__)


@method_decorator(csrf_exempt, name="dispatch")
class PaymentWebhookView(BillingMetricsMixin, APIView):
    """Receive provider callbacks and reconcile them synchronously."""

    authentication_classes = []
    permission_classes = []
    http_method_names = ["post"]
    endpoint_label = "webhook"

    def post(self, request, provider: str):
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method="POST").time():
            adapters = build_default_adapters()
            adapter = adapters.get(provider)
            signature = request.headers.get(adapter.signature_header) if adapter is not None else None
            reconciler = WebhookReconciler(adapters=adapters)
            try:
                result = reconciler.handle(provider, request.body, signature)
            except BillingError as exc:
                return self._billing_error_response(exc)
            except DatabaseError:
                return self._error_response(
                    status=500,
                    code="persistence_error",
                    message="Webhook could not be recorded. Please retry.",
                )
            return self._success_response(result.as_payload())
