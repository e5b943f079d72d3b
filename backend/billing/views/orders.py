"""Read-only order endpoints scoped to the caller."""
from __future__ import annotations

from rest_framework.permissions import IsAuthenticated
from rest_framework.viewsets import ReadOnlyModelViewSet

from billing.models import Order
from billing.serializers import OrderSerializer


class UserOrderViewSet(ReadOnlyModelViewSet):
    serializer_class = OrderSerializer
    permission_classes = [IsAuthenticated]

    def get_queryset(self):
        return (
            Order.objects.select_related("plan", "origin_transaction", "transaction")
            .filter(user=self.request.user)
            .order_by("-created_at")
        )


class UserOrderBySessionViewSet(UserOrderViewSet):
    """Success-page lookup of the order created by a checkout session."""

    lookup_field = "origin_transaction__provider_session_id"
    lookup_url_kwarg = "session_id"
