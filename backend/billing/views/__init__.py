"""Billing API views."""
from .checkout import CheckoutSessionView, CheckoutView
from .cron import OrderStatusCronView
from .orders import UserOrderBySessionViewSet, UserOrderViewSet
from .subscriptions import SubscriptionCancelView, SubscriptionManageView
from .transactions import TransactionStatusView, UserTransactionViewSet
from .webhooks import PaymentWebhookView

__all__ = [
    "CheckoutSessionView",
    "CheckoutView",
    "OrderStatusCronView",
    "PaymentWebhookView",
    "SubscriptionCancelView",
    "SubscriptionManageView",
    "TransactionStatusView",
    "UserOrderBySessionViewSet",
    "UserOrderViewSet",
    "UserTransactionViewSet",
]
