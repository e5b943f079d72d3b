"""Scheduler-triggered order reconciliation endpoint."""
from __future__ import annotations

import logging

from django.db import DatabaseError
from django.utils import timezone
from rest_framework.views import APIView

from billing.observability.metrics import BILLING_REQUEST_LATENCY
from billing.permissions import HasCronSecret
from billing.services.order_status import OrderStatusReconciler

from .base import BillingMetricsMixin

logger = logging.getLogger(__name__)


class OrderStatusCronView(BillingMetricsMixin, APIView):
    authentication_classes = []
    permission_classes = [HasCronSecret]
    http_method_names = ["get"]
    endpoint_label = "cron.update_order_status"

    def get(self, request):
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method="GET").time():
            now = timezone.now()
            try:
                stats = OrderStatusReconciler().run(now=now)
            except DatabaseError:
                logger.exception("Order status reconciliation failed.")
                return self._error_response(
                    status=500,
                    code="reconcile_failed",
                    message="Order status reconciliation failed.",
                )
            return self._success_response(
                {
                    "success": True,
                    "ordersProcessed": stats.orders_processed,
                    "timestamp": now.isoformat(),
                    "details": stats.as_dict(),
                },
                message="order_status_reconciled",
            )
