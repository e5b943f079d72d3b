"""Billing models for plans, payments, subscriptions, orders and webhook logging."""
import uuid

from django.conf import settings
from django.core.exceptions import ValidationError
from django.core.validators import MinValueValidator
from django.db import models
from django.db.models import F, Q
from django.utils import timezone

from billing.exceptions import InvalidTransactionTransition

User = settings.AUTH_USER_MODEL


def _generate_plan_id() -> str:
    return uuid.uuid4().hex


class PaymentProvider(models.TextChoices):
    STRIPE = "stripe", "Stripe"
    NOWPAYMENTS = "nowpayments", "NOWPayments"


class Currency(models.TextChoices):
    USD = "USD", "US Dollar"
    EUR = "EUR", "Euro"
    BTC = "BTC", "Bitcoin"


class Plan(models.Model):
    """Priced hashrate or hosting offering. Treated as a value object once sold."""

    class PlanType(models.TextChoices):
        HASHRATE = "hashrate", "Hashrate"
        HOSTING = "hosting", "Hosting"

    PRICING_FIELDS = ("price", "currency", "duration", "is_subscription", "payout_asset")

    id = models.CharField(primary_key=True, max_length=64, default=_generate_plan_id, editable=False)
    name = models.CharField(max_length=120, blank=True)
    type = models.CharField(max_length=20, choices=PlanType.choices, default=PlanType.HASHRATE)
    hashrate_ths = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        null=True,
        blank=True,
        help_text="Rented hashrate in TH/s (hashrate plans only)",
    )
    price = models.DecimalField(
        max_digits=12,
        decimal_places=2,
        validators=[MinValueValidator(0)],
        help_text="Price charged per billing period",
    )
    currency = models.CharField(max_length=3, choices=Currency.choices, default=Currency.USD)
    duration = models.CharField(
        max_length=16,
        default="1m",
        help_text="Rental period with a trailing unit: d (days), m (months) or y (years)",
    )
    is_subscription = models.BooleanField(default=False)
    payout_asset = models.CharField(
        max_length=10,
        default="BTC",
        help_text="Asset whose address format payout addresses must follow",
    )
    stripe_price_id = models.CharField(max_length=100, blank=True, null=True)
    crypto_item_code = models.CharField(max_length=100, blank=True, null=True)
    is_active = models.BooleanField(default=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_plan"
        verbose_name = "Plan"
        verbose_name_plural = "Plans"
        ordering = ["price", "name"]
        constraints = [
            models.CheckConstraint(condition=Q(price__gt=0), name="plan_price_positive"),
        ]

    def save(self, *args, **kwargs):
        if not self._state.adding and self.transactions.exists():
            stored = Plan.objects.filter(pk=self.pk).values(*self.PRICING_FIELDS).first()
            if stored and any(stored[field] != getattr(self, field) for field in self.PRICING_FIELDS):
                raise ValidationError("Plan pricing cannot change once transactions reference it.")
        return super().save(*args, **kwargs)

    def __str__(self):
        return f"Plan<{self.name or self.pk}:{self.price} {self.currency}/{self.duration}>"


class PaymentTransaction(models.Model):
    """One attempted payment. Status only moves from pending to a terminal state."""

    class PaymentType(models.TextChoices):
        ONE_TIME = "one_time", "One-time"
        SUBSCRIPTION = "subscription", "Subscription"

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        COMPLETED = "completed", "Completed"
        FAILED = "failed", "Failed"
        REFUNDED = "refunded", "Refunded"

    TERMINAL_STATUSES = (Status.COMPLETED, Status.FAILED, Status.REFUNDED)

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(User, on_delete=models.PROTECT, related_name="payment_transactions")
    plan = models.ForeignKey(Plan, on_delete=models.PROTECT, related_name="transactions")
    subscription = models.ForeignKey(
        "Subscription",
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="transactions",
    )
    payment_type = models.CharField(max_length=20, choices=PaymentType.choices, default=PaymentType.ONE_TIME)
    amount = models.DecimalField(max_digits=12, decimal_places=2, validators=[MinValueValidator(0)])
    currency = models.CharField(max_length=3, choices=Currency.choices, default=Currency.USD)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    provider = models.CharField(max_length=20, choices=PaymentProvider.choices)
    provider_session_id = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Checkout session or invoice id issued by the provider",
    )
    provider_reference = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        help_text="Payment intent, invoice or payment id that settled the transaction",
    )
    description = models.TextField(blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    completed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(default=timezone.now, db_index=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_transaction"
        verbose_name = "Transaction"
        verbose_name_plural = "Transactions"
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(
                fields=["provider", "provider_session_id"],
                condition=Q(provider_session_id__isnull=False),
                name="unique_transaction_provider_session",
            ),
            models.UniqueConstraint(
                fields=["provider", "provider_reference"],
                condition=Q(provider_reference__isnull=False),
                name="unique_transaction_provider_reference",
            ),
        ]
        indexes = [
            models.Index(fields=["user", "plan", "status"], name="transaction_user_plan_idx"),
        ]

    @property
    def is_final(self) -> bool:
        return self.status in self.TERMINAL_STATUSES

    def transition_to(self, status: str) -> None:
        """Move a pending transaction to a terminal status."""
        if status not in self.TERMINAL_STATUSES:
            raise InvalidTransactionTransition(f"'{status}' is not a terminal transaction status.")
        if self.status != self.Status.PENDING:
            raise InvalidTransactionTransition(
                f"Transaction {self.pk} is already {self.status}; cannot move to {status}.",
            )
        self.status = status
        if status == self.Status.COMPLETED:
            self.completed_at = timezone.now()

    def save(self, *args, **kwargs):
        if not self._state.adding:
            stored_status = PaymentTransaction.objects.filter(pk=self.pk).values_list("status", flat=True).first()
            if stored_status in self.TERMINAL_STATUSES and stored_status != self.status:
                raise InvalidTransactionTransition(
                    f"Transaction {self.pk} is already {stored_status}; cannot move to {self.status}.",
                )
        return super().save(*args, **kwargs)

    def __str__(self):
        return f"PaymentTransaction<{self.pk}:{self.status}>"


class Subscription(models.Model):
    """Recurring billing agreement for a plan."""

    class Status(models.TextChoices):
        INCOMPLETE = "incomplete", "Incomplete"
        ACTIVE = "active", "Active"
        PAST_DUE = "past_due", "Past Due"
        CANCELED = "canceled", "Canceled"
        UNPAID = "unpaid", "Unpaid"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(User, on_delete=models.PROTECT, related_name="subscriptions")
    plan = models.ForeignKey(Plan, on_delete=models.PROTECT, related_name="subscriptions")
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.INCOMPLETE)
    provider = models.CharField(
        max_length=20,
        choices=PaymentProvider.choices,
        help_text="Payment method kind funding the subscription",
    )
    provider_subscription_id = models.CharField(max_length=255, blank=True, null=True, db_index=True)
    provider_customer_id = models.CharField(max_length=255, blank=True, null=True)
    current_period_start = models.DateTimeField(null=True, blank=True)
    current_period_end = models.DateTimeField(null=True, blank=True)
    cancel_at_period_end = models.BooleanField(default=False)
    canceled_at = models.DateTimeField(null=True, blank=True)
    metadata = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_subscription"
        verbose_name = "Subscription"
        verbose_name_plural = "Subscriptions"
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(
                condition=Q(current_period_start__isnull=True)
                | Q(current_period_end__isnull=True)
                | Q(current_period_end__gte=F("current_period_start")),
                name="subscription_period_ordered",
            ),
        ]

    def clean(self):
        super().clean()
        if (
            self.current_period_start
            and self.current_period_end
            and self.current_period_end < self.current_period_start
        ):
            raise ValidationError("Subscription period end must not precede its start.")

    def save(self, *args, **kwargs):
        self.clean()
        return super().save(*args, **kwargs)

    @property
    def is_active(self):
        return self.status == self.Status.ACTIVE

    def __str__(self):
        return f"Subscription<{self.pk}:{self.status}>"


class Order(models.Model):
    """Customer-facing, time-bounded rental entitlement funded by a transaction."""

    class Status(models.TextChoices):
        PENDING = "pending", "Pending"
        ACTIVE = "active", "Active"
        EXPIRED = "expired", "Expired"
        CANCELED = "canceled", "Canceled"

    id = models.UUIDField(primary_key=True, default=uuid.uuid4, editable=False)
    user = models.ForeignKey(User, on_delete=models.PROTECT, related_name="orders")
    plan = models.ForeignKey(Plan, on_delete=models.PROTECT, related_name="orders")
    origin_transaction = models.OneToOneField(
        PaymentTransaction,
        on_delete=models.PROTECT,
        related_name="originated_order",
        help_text="Transaction whose completion created this order",
    )
    transaction = models.ForeignKey(
        PaymentTransaction,
        on_delete=models.PROTECT,
        related_name="funded_orders",
        help_text="Most recent transaction funding the current window",
    )
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.SET_NULL,
        null=True,
        blank=True,
        related_name="orders",
    )
    payout_address = models.CharField(max_length=128, blank=True, null=True)
    status = models.CharField(max_length=20, choices=Status.choices, default=Status.PENDING)
    start_date = models.DateTimeField()
    end_date = models.DateTimeField()
    auto_renew = models.BooleanField(default=False)
    renewal_count = models.PositiveIntegerField(default=0)
    last_renewed_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)
    updated_at = models.DateTimeField(auto_now=True)

    class Meta:
        db_table = "billing_order"
        verbose_name = "Order"
        verbose_name_plural = "Orders"
        ordering = ["-created_at"]
        constraints = [
            models.CheckConstraint(condition=Q(end_date__gte=F("start_date")), name="order_window_ordered"),
        ]
        indexes = [
            models.Index(fields=["status", "end_date"], name="order_status_end_idx"),
        ]

    def clean(self):
        super().clean()
        if self.start_date and self.end_date and self.end_date < self.start_date:
            raise ValidationError("Order end date must not precede its start date.")

    def save(self, *args, **kwargs):
        self.clean()
        return super().save(*args, **kwargs)

    def __str__(self):
        return f"Order<{self.pk}:{self.status}>"


class SubscriptionSession(models.Model):
    """Short-lived management link for providers without a native customer portal."""

    id = models.BigAutoField(primary_key=True)
    user = models.ForeignKey(User, on_delete=models.CASCADE, related_name="subscription_sessions")
    subscription = models.ForeignKey(Subscription, on_delete=models.CASCADE, related_name="sessions")
    provider = models.CharField(max_length=20, choices=PaymentProvider.choices)
    token = models.CharField(max_length=128, unique=True)
    session_url = models.URLField(max_length=500)
    expires_at = models.DateTimeField()
    is_used = models.BooleanField(default=False)
    used_at = models.DateTimeField(null=True, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_subscription_session"
        verbose_name = "Subscription session"
        verbose_name_plural = "Subscription sessions"
        ordering = ["-created_at"]

    @property
    def is_expired(self) -> bool:
        return self.expires_at <= timezone.now()

    def __str__(self):
        return f"SubscriptionSession<{self.subscription_id}:{'used' if self.is_used else 'open'}>"


class SubscriptionEvent(models.Model):
    """Append-only lifecycle log with a snapshot of the provider payload."""

    class EventType(models.TextChoices):
        CREATED = "created", "Created"
        ACTIVATED = "activated", "Activated"
        RENEWED = "renewed", "Renewed"
        UPDATED = "updated", "Updated"
        CANCELED = "canceled", "Canceled"
        FAILED = "failed", "Failed"
        PARTIALLY_PAID = "partially_paid", "Partially Paid"

    id = models.BigAutoField(primary_key=True)
    subscription = models.ForeignKey(
        Subscription,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="events",
    )
    transaction = models.ForeignKey(
        PaymentTransaction,
        on_delete=models.PROTECT,
        null=True,
        blank=True,
        related_name="events",
    )
    user = models.ForeignKey(User, on_delete=models.PROTECT, null=True, blank=True, related_name="subscription_events")
    event_type = models.CharField(max_length=50, choices=EventType.choices)
    provider = models.CharField(max_length=20, choices=PaymentProvider.choices, blank=True)
    provider_event_id = models.CharField(
        max_length=255,
        blank=True,
        null=True,
        db_index=True,
        help_text="Idempotency key of the provider event that produced this entry",
    )
    status = models.CharField(max_length=20, default="success")
    error_message = models.TextField(blank=True)
    data = models.JSONField(default=dict, blank=True)
    created_at = models.DateTimeField(auto_now_add=True)

    class Meta:
        db_table = "billing_subscription_event"
        verbose_name = "Subscription event"
        verbose_name_plural = "Subscription events"
        ordering = ["-created_at"]

    def save(self, *args, **kwargs):
        if not self._state.adding:
            raise ValidationError("SubscriptionEvent records are immutable.")
        return super().save(*args, **kwargs)

    def delete(self, *args, **kwargs):
        raise ValidationError("SubscriptionEvent records are immutable.")

    def __str__(self):
        return f"SubscriptionEvent<{self.event_type}:{self.subscription_id or self.transaction_id}>"


class WebhookEventLog(models.Model):
    """Keeps track of received provider events to guarantee idempotency."""

    class Status(models.TextChoices):
        RECEIVED = "received", "Received"
        PROCESSED = "processed", "Processed"
        IGNORED = "ignored", "Ignored"
        FAILED = "failed", "Failed"

    id = models.BigAutoField(primary_key=True)
    provider = models.CharField(max_length=20, choices=PaymentProvider.choices)
    idempotency_key = models.CharField(
        max_length=255,
        help_text="Provider event id, or session id and event type for providers without event ids.",
    )
    payload_hash = models.CharField(
        max_length=64,
        blank=True,
        help_text="SHA256 of the raw payload for drift detection.",
    )
    event_type = models.CharField(max_length=255, blank=True)
    status = models.CharField(
        max_length=20,
        choices=Status.choices,
        default=Status.RECEIVED,
    )
    last_error = models.TextField(blank=True)
    handled = models.BooleanField(
        default=False,
        help_text="True once the event has been fully processed.",
    )
    created_at = models.DateTimeField(auto_now_add=True)
    processed_at = models.DateTimeField(null=True, blank=True)

    class Meta:
        db_table = "billing_webhook_event_log"
        verbose_name = "Webhook event log"
        verbose_name_plural = "Webhook event logs"
        ordering = ["-created_at"]
        constraints = [
            models.UniqueConstraint(fields=["provider", "idempotency_key"], name="unique_webhook_event_per_provider"),
        ]
        indexes = [
            models.Index(fields=["status"], name="webhook_event_status_idx"),
            models.Index(fields=["event_type"], name="webhook_event_type_idx"),
        ]

    def __str__(self):
        return f"WebhookEventLog<{self.provider}:{self.idempotency_key}:{self.status}>"
