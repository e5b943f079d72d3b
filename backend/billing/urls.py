"""URL routes for billing endpoints."""
from django.urls import path

from .views import (
    CheckoutSessionView,
    CheckoutView,
    OrderStatusCronView,
    PaymentWebhookView,
    SubscriptionCancelView,
    SubscriptionManageView,
    TransactionStatusView,
    UserOrderBySessionViewSet,
    UserOrderViewSet,
    UserTransactionViewSet,
)

app_name = "billing"

urlpatterns = [
    path("checkout/", CheckoutView.as_view(), name="checkout"),
    path("checkout-session/", CheckoutSessionView.as_view(), name="checkout-session"),
    path("webhooks/<str:provider>/", PaymentWebhookView.as_view(), name="webhook"),
    path("cron/update-order-status/", OrderStatusCronView.as_view(), name="cron-update-order-status"),
    path("subscriptions/manage/", SubscriptionManageView.as_view(), name="subscriptions-manage"),
    path("subscriptions/manage/cancel/", SubscriptionCancelView.as_view(), name="subscriptions-cancel"),
    path("orders/", UserOrderViewSet.as_view({"get": "list"}), name="orders"),
    path("orders/<uuid:pk>/", UserOrderViewSet.as_view({"get": "retrieve"}), name="order-detail"),
    path(
        "orders/session/<str:session_id>/",
        UserOrderBySessionViewSet.as_view({"get": "retrieve"}),
        name="order-by-session",
    ),
    path("transactions/", UserTransactionViewSet.as_view({"get": "list"}), name="transactions"),
    path(
        "transactions/<uuid:transaction_id>/status/",
        TransactionStatusView.as_view(),
        name="transaction-status",
    ),
]
