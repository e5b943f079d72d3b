"""DRF serializers for checkout and subscription management requests."""
from __future__ import annotations

from rest_framework import serializers

from billing.models import Order, PaymentTransaction, Subscription


class CheckoutRequestSerializer(serializers.Serializer):
    """Body of ``POST /checkout``. Address and provider checks happen in the initiator."""

    planId = serializers.CharField(max_length=64)
    cryptoAddress = serializers.CharField(required=False, allow_blank=True, default="", max_length=128)
    paymentMethod = serializers.CharField(required=False, allow_blank=True, default="", max_length=32)


class CheckoutSessionRequestSerializer(serializers.Serializer):
    planId = serializers.CharField(max_length=64)
    cryptoAddress = serializers.CharField(required=False, allow_blank=True, default="", max_length=128)


class SubscriptionManageRequestSerializer(serializers.Serializer):
    subscriptionId = serializers.CharField(max_length=64)


class SubscriptionCancelRequestSerializer(serializers.Serializer):
    subscriptionId = serializers.CharField(max_length=64)
    token = serializers.CharField(required=False, allow_blank=True, default="")


class OrderSummarySerializer(serializers.ModelSerializer):
    class Meta:
        model = Order
        fields = (
            "id",
            "status",
            "start_date",
            "end_date",
            "auto_renew",
            "renewal_count",
            "payout_address",
        )
        read_only_fields = fields


class SubscriptionSerializer(serializers.ModelSerializer):
    plan_id = serializers.CharField(source="plan.pk", read_only=True)
    plan_name = serializers.CharField(source="plan.name", read_only=True)
    price = serializers.DecimalField(source="plan.price", max_digits=12, decimal_places=2, read_only=True)
    currency = serializers.CharField(source="plan.currency", read_only=True)
    duration = serializers.CharField(source="plan.duration", read_only=True)
    orders = OrderSummarySerializer(many=True, read_only=True)

    class Meta:
        model = Subscription
        fields = (
            "id",
            "plan_id",
            "plan_name",
            "price",
            "currency",
            "duration",
            "status",
            "provider",
            "current_period_start",
            "current_period_end",
            "cancel_at_period_end",
            "canceled_at",
            "created_at",
            "orders",
        )
        read_only_fields = fields


class OrderSerializer(OrderSummarySerializer):
    plan_id = serializers.CharField(source="plan.pk", read_only=True)
    plan_name = serializers.CharField(source="plan.name", read_only=True)
    plan_type = serializers.CharField(source="plan.type", read_only=True)
    hashrate_ths = serializers.DecimalField(
        source="plan.hashrate_ths", max_digits=12, decimal_places=2, read_only=True, allow_null=True,
    )
    session_id = serializers.CharField(source="origin_transaction.provider_session_id", read_only=True)
    transaction_id = serializers.UUIDField(source="transaction.pk", read_only=True)
    subscription_id = serializers.UUIDField(read_only=True, allow_null=True)

    class Meta(OrderSummarySerializer.Meta):
        fields = OrderSummarySerializer.Meta.fields + (
            "plan_id",
            "plan_name",
            "plan_type",
            "hashrate_ths",
            "session_id",
            "transaction_id",
            "subscription_id",
            "last_renewed_at",
            "created_at",
        )
        read_only_fields = fields


class TransactionSerializer(serializers.ModelSerializer):
    plan_id = serializers.CharField(source="plan.pk", read_only=True)

    class Meta:
        model = PaymentTransaction
        fields = (
            "id",
            "plan_id",
            "subscription",
            "payment_type",
            "amount",
            "currency",
            "status",
            "provider",
            "provider_session_id",
            "provider_reference",
            "description",
            "completed_at",
            "created_at",
        )
        read_only_fields = fields


class TransactionStatusUpdateSerializer(serializers.Serializer):
    status = serializers.CharField(max_length=20)
    reason = serializers.CharField(required=False, allow_blank=True, default="", max_length=500)
