"""Caller transaction history and operator status updates."""
from __future__ import annotations

from rest_framework.permissions import IsAdminUser, IsAuthenticated
from rest_framework.views import APIView
from rest_framework.viewsets import ReadOnlyModelViewSet

from billing.exceptions import BillingError
from billing.models import PaymentTransaction
from billing.observability.metrics import BILLING_REQUEST_LATENCY
from billing.serializers import TransactionSerializer, TransactionStatusUpdateSerializer
from billing.services.transactions import update_transaction_status

from .base import BillingMetricsMixin


class UserTransactionViewSet(ReadOnlyModelViewSet):
    serializer_class = TransactionSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        return (
            PaymentTransaction.objects.select_related("plan")
            .filter(user=self.request.user)
            .order_by("-created_at")
        )


class TransactionStatusView(BillingMetricsMixin, APIView):
    """Staff-only move of a pending transaction to ``failed`` or ``refunded``."""

    permission_classes = [IsAdminUser]
    http_method_names = ["post"]
    endpoint_label = "transactions.status"

    def post(self, request, transaction_id):
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method="POST").time():
            serializer = TransactionStatusUpdateSerializer(data=request.data)
            if not serializer.is_valid():
                return self._validation_error_response(serializer.errors)
            try:
                payment = update_transaction_status(
                    transaction_id,
                    serializer.validated_data["status"],
                    actor=request.user,
                    reason=serializer.validated_data["reason"],
                )
            except BillingError as exc:
                return self._billing_error_response(exc)
            return self._success_response(
                {"transaction": TransactionSerializer(payment).data},
                message="transaction_status_updated",
                provider=payment.provider,
            )
