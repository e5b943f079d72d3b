import billing.models
import django.core.validators
import django.db.models.deletion
import django.utils.timezone
import uuid

from django.conf import settings
from django.db import migrations, models


PROVIDER_CHOICES = [("stripe", "Stripe"), ("nowpayments", "NOWPayments")]
CURRENCY_CHOICES = [("USD", "US Dollar"), ("EUR", "Euro"), ("BTC", "Bitcoin")]


class Migration(migrations.Migration):

    initial = True

    dependencies = [
        migrations.swappable_dependency(settings.AUTH_USER_MODEL),
    ]

    operations = [
        migrations.CreateModel(
            name="Plan",
            fields=[
                (
                    "id",
                    models.CharField(
                        default=billing.models._generate_plan_id,
                        editable=False,
                        max_length=64,
                        primary_key=True,
                        serialize=False,
                    ),
                ),
                ("name", models.CharField(blank=True, max_length=120)),
                (
                    "type",
                    models.CharField(
                        choices=[("hashrate", "Hashrate"), ("hosting", "Hosting")],
                        default="hashrate",
                        max_length=20,
                    ),
                ),
                (
                    "hashrate_ths",
                    models.DecimalField(
                        blank=True,
                        decimal_places=2,
                        help_text="Rented hashrate in TH/s (hashrate plans only)",
                        max_digits=12,
                        null=True,
                    ),
                ),
                (
                    "price",
                    models.DecimalField(
                        decimal_places=2,
                        help_text="Price charged per billing period",
                        max_digits=12,
                        validators=[django.core.validators.MinValueValidator(0)],
                    ),
                ),
                ("currency", models.CharField(choices=CURRENCY_CHOICES, default="USD", max_length=3)),
                (
                    "duration",
                    models.CharField(
                        default="1m",
                        help_text="Rental period with a trailing unit: d (days), m (months) or y (years)",
                        max_length=16,
                    ),
                ),
                ("is_subscription", models.BooleanField(default=False)),
                (
                    "payout_asset",
                    models.CharField(
                        default="BTC",
                        help_text="Asset whose address format payout addresses must follow",
                        max_length=10,
                    ),
                ),
                ("stripe_price_id", models.CharField(blank=True, max_length=100, null=True)),
                ("crypto_item_code", models.CharField(blank=True, max_length=100, null=True)),
                ("is_active", models.BooleanField(default=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
            ],
            options={
                "verbose_name": "Plan",
                "verbose_name_plural": "Plans",
                "db_table": "billing_plan",
                "ordering": ["price", "name"],
                "constraints": [
                    models.CheckConstraint(condition=models.Q(("price__gt", 0)), name="plan_price_positive"),
                ],
            },
        ),
        migrations.CreateModel(
            name="Subscription",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("incomplete", "Incomplete"),
                            ("active", "Active"),
                            ("past_due", "Past Due"),
                            ("canceled", "Canceled"),
                            ("unpaid", "Unpaid"),
                        ],
                        default="incomplete",
                        max_length=20,
                    ),
                ),
                (
                    "provider",
                    models.CharField(
                        choices=PROVIDER_CHOICES,
                        help_text="Payment method kind funding the subscription",
                        max_length=20,
                    ),
                ),
                (
                    "provider_subscription_id",
                    models.CharField(blank=True, db_index=True, max_length=255, null=True),
                ),
                ("provider_customer_id", models.CharField(blank=True, max_length=255, null=True)),
                ("current_period_start", models.DateTimeField(blank=True, null=True)),
                ("current_period_end", models.DateTimeField(blank=True, null=True)),
                ("cancel_at_period_end", models.BooleanField(default=False)),
                ("canceled_at", models.DateTimeField(blank=True, null=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to="billing.plan",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscriptions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription",
                "verbose_name_plural": "Subscriptions",
                "db_table": "billing_subscription",
                "ordering": ["-created_at"],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(
                            ("current_period_start__isnull", True),
                            ("current_period_end__isnull", True),
                            ("current_period_end__gte", models.F("current_period_start")),
                            _connector="OR",
                        ),
                        name="subscription_period_ordered",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="PaymentTransaction",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                (
                    "payment_type",
                    models.CharField(
                        choices=[("one_time", "One-time"), ("subscription", "Subscription")],
                        default="one_time",
                        max_length=20,
                    ),
                ),
                (
                    "amount",
                    models.DecimalField(
                        decimal_places=2,
                        max_digits=12,
                        validators=[django.core.validators.MinValueValidator(0)],
                    ),
                ),
                ("currency", models.CharField(choices=CURRENCY_CHOICES, default="USD", max_length=3)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("completed", "Completed"),
                            ("failed", "Failed"),
                            ("refunded", "Refunded"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("provider", models.CharField(choices=PROVIDER_CHOICES, max_length=20)),
                (
                    "provider_session_id",
                    models.CharField(
                        blank=True,
                        help_text="Checkout session or invoice id issued by the provider",
                        max_length=255,
                        null=True,
                    ),
                ),
                (
                    "provider_reference",
                    models.CharField(
                        blank=True,
                        help_text="Payment intent, invoice or payment id that settled the transaction",
                        max_length=255,
                        null=True,
                    ),
                ),
                ("description", models.TextField(blank=True)),
                ("metadata", models.JSONField(blank=True, default=dict)),
                ("completed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(db_index=True, default=django.utils.timezone.now)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="transactions",
                        to="billing.plan",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="transactions",
                        to="billing.subscription",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="payment_transactions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Transaction",
                "verbose_name_plural": "Transactions",
                "db_table": "billing_transaction",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["user", "plan", "status"], name="transaction_user_plan_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        condition=models.Q(("provider_session_id__isnull", False)),
                        fields=("provider", "provider_session_id"),
                        name="unique_transaction_provider_session",
                    ),
                    models.UniqueConstraint(
                        condition=models.Q(("provider_reference__isnull", False)),
                        fields=("provider", "provider_reference"),
                        name="unique_transaction_provider_reference",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="Order",
            fields=[
                ("id", models.UUIDField(default=uuid.uuid4, editable=False, primary_key=True, serialize=False)),
                ("payout_address", models.CharField(blank=True, max_length=128, null=True)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("pending", "Pending"),
                            ("active", "Active"),
                            ("expired", "Expired"),
                            ("canceled", "Canceled"),
                        ],
                        default="pending",
                        max_length=20,
                    ),
                ),
                ("start_date", models.DateTimeField()),
                ("end_date", models.DateTimeField()),
                ("auto_renew", models.BooleanField(default=False)),
                ("renewal_count", models.PositiveIntegerField(default=0)),
                ("last_renewed_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("updated_at", models.DateTimeField(auto_now=True)),
                (
                    "origin_transaction",
                    models.OneToOneField(
                        help_text="Transaction whose completion created this order",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="originated_order",
                        to="billing.paymenttransaction",
                    ),
                ),
                (
                    "plan",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="orders",
                        to="billing.plan",
                    ),
                ),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.SET_NULL,
                        related_name="orders",
                        to="billing.subscription",
                    ),
                ),
                (
                    "transaction",
                    models.ForeignKey(
                        help_text="Most recent transaction funding the current window",
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="funded_orders",
                        to="billing.paymenttransaction",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="orders",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Order",
                "verbose_name_plural": "Orders",
                "db_table": "billing_order",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status", "end_date"], name="order_status_end_idx"),
                ],
                "constraints": [
                    models.CheckConstraint(
                        condition=models.Q(("end_date__gte", models.F("start_date"))),
                        name="order_window_ordered",
                    ),
                ],
            },
        ),
        migrations.CreateModel(
            name="SubscriptionSession",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("provider", models.CharField(choices=PROVIDER_CHOICES, max_length=20)),
                ("token", models.CharField(max_length=128, unique=True)),
                ("session_url", models.URLField(max_length=500)),
                ("expires_at", models.DateTimeField()),
                ("is_used", models.BooleanField(default=False)),
                ("used_at", models.DateTimeField(blank=True, null=True)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "subscription",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="sessions",
                        to="billing.subscription",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        on_delete=django.db.models.deletion.CASCADE,
                        related_name="subscription_sessions",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription session",
                "verbose_name_plural": "Subscription sessions",
                "db_table": "billing_subscription_session",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="SubscriptionEvent",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                (
                    "event_type",
                    models.CharField(
                        choices=[
                            ("created", "Created"),
                            ("activated", "Activated"),
                            ("renewed", "Renewed"),
                            ("updated", "Updated"),
                            ("canceled", "Canceled"),
                            ("failed", "Failed"),
                            ("partially_paid", "Partially Paid"),
                        ],
                        max_length=50,
                    ),
                ),
                ("provider", models.CharField(blank=True, choices=PROVIDER_CHOICES, max_length=20)),
                (
                    "provider_event_id",
                    models.CharField(
                        blank=True,
                        db_index=True,
                        help_text="Idempotency key of the provider event that produced this entry",
                        max_length=255,
                        null=True,
                    ),
                ),
                ("status", models.CharField(default="success", max_length=20)),
                ("error_message", models.TextField(blank=True)),
                ("data", models.JSONField(blank=True, default=dict)),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                (
                    "subscription",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="events",
                        to="billing.subscription",
                    ),
                ),
                (
                    "transaction",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="events",
                        to="billing.paymenttransaction",
                    ),
                ),
                (
                    "user",
                    models.ForeignKey(
                        blank=True,
                        null=True,
                        on_delete=django.db.models.deletion.PROTECT,
                        related_name="subscription_events",
                        to=settings.AUTH_USER_MODEL,
                    ),
                ),
            ],
            options={
                "verbose_name": "Subscription event",
                "verbose_name_plural": "Subscription events",
                "db_table": "billing_subscription_event",
                "ordering": ["-created_at"],
            },
        ),
        migrations.CreateModel(
            name="WebhookEventLog",
            fields=[
                ("id", models.BigAutoField(primary_key=True, serialize=False)),
                ("provider", models.CharField(choices=PROVIDER_CHOICES, max_length=20)),
                (
                    "idempotency_key",
                    models.CharField(
                        help_text="Provider event id, or session id and event type for providers without event ids.",
                        max_length=255,
                    ),
                ),
                (
                    "payload_hash",
                    models.CharField(
                        blank=True,
                        help_text="SHA256 of the raw payload for drift detection.",
                        max_length=64,
                    ),
                ),
                ("event_type", models.CharField(blank=True, max_length=255)),
                (
                    "status",
                    models.CharField(
                        choices=[
                            ("received", "Received"),
                            ("processed", "Processed"),
                            ("ignored", "Ignored"),
                            ("failed", "Failed"),
                        ],
                        default="received",
                        max_length=20,
                    ),
                ),
                ("last_error", models.TextField(blank=True)),
                (
                    "handled",
                    models.BooleanField(default=False, help_text="True once the event has been fully processed."),
                ),
                ("created_at", models.DateTimeField(auto_now_add=True)),
                ("processed_at", models.DateTimeField(blank=True, null=True)),
            ],
            options={
                "verbose_name": "Webhook event log",
                "verbose_name_plural": "Webhook event logs",
                "db_table": "billing_webhook_event_log",
                "ordering": ["-created_at"],
                "indexes": [
                    models.Index(fields=["status"], name="webhook_event_status_idx"),
                    models.Index(fields=["event_type"], name="webhook_event_type_idx"),
                ],
                "constraints": [
                    models.UniqueConstraint(
                        fields=("provider", "idempotency_key"),
                        name="unique_webhook_event_per_provider",
                    ),
                ],
            },
        ),
    ]
