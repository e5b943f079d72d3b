"""Subscription management links, snapshots and cancellation."""
from __future__ import annotations

from rest_framework.permissions import AllowAny
from rest_framework.views import APIView

from billing.exceptions import AuthenticationRequired, BillingError
from billing.observability.metrics import BILLING_REQUEST_LATENCY
from billing.providers import build_default_adapters
from billing.serializers import (
    SubscriptionCancelRequestSerializer,
    SubscriptionManageRequestSerializer,
    SubscriptionSerializer,
)
from billing.services.subscription_sessions import SubscriptionSessionManager

from .base import BillingMetricsMixin


def _caller(request):
    return request.user if request.user.is_authenticated else None


class SubscriptionManageView(BillingMetricsMixin, APIView):
    """POST mints a management link; GET resolves a link token or lists the caller's subscriptions."""

    permission_classes = [AllowAny]
    endpoint_label = "subscriptions.manage"

    def get_manager(self) -> SubscriptionSessionManager:
        return SubscriptionSessionManager(adapters=build_default_adapters())

    def post(self, request):
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method="POST").time():
            user = _caller(request)
            if user is None:
                return self._billing_error_response(AuthenticationRequired())
            serializer = SubscriptionManageRequestSerializer(data=request.data)
            if not serializer.is_valid():
                return self._validation_error_response(serializer.errors)
            try:
                link = self.get_manager().create_session(serializer.validated_data["subscriptionId"], user)
            except BillingError as exc:
                return self._billing_error_response(exc)

            payload = {"url": link.url}
            if link.token:
                payload["token"] = link.token
                payload["expiresAt"] = link.expires_at.isoformat()
            return self._success_response(payload, message="subscription_management_link_issued")

    def get(self, request):
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method="GET").time():
            token = request.query_params.get("token")
            subscription_id = request.query_params.get("subscriptionId")
            manager = self.get_manager()
            try:
                if token:
                    session = manager.validate_session(token, subscription_id)
                    payload = {
                        "subscription": SubscriptionSerializer(session.subscription).data,
                        "expiresAt": session.expires_at.isoformat(),
                    }
                else:
                    subscriptions = manager.list_for_user(_caller(request))
                    payload = {"subscriptions": SubscriptionSerializer(subscriptions, many=True).data}
            except BillingError as exc:
                return self._billing_error_response(exc)
            return self._success_response(payload)


class SubscriptionCancelView(BillingMetricsMixin, APIView):
    permission_classes = [AllowAny]
    endpoint_label = "subscriptions.cancel"

    def get_manager(self) -> SubscriptionSessionManager:
        return SubscriptionSessionManager(adapters=build_default_adapters())

    def post(self, request):
        with BILLING_REQUEST_LATENCY.labels(endpoint=self.endpoint_label, method="POST").time():
            serializer = SubscriptionCancelRequestSerializer(data=request.data)
            if not serializer.is_valid():
                return self._validation_error_response(serializer.errors)
            try:
                subscription = self.get_manager().cancel(
                    serializer.validated_data["subscriptionId"],
                    user=_caller(request),
                    token=serializer.validated_data.get("token") or None,
                )
            except BillingError as exc:
                return self._billing_error_response(exc)
            return self._success_response(
                {"subscription": SubscriptionSerializer(subscription).data},
                message="subscription_canceled",
                provider=subscription.provider,
            )
