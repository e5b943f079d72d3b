"""Scheduled order lifecycle reconciliation: activation, renewal and expiry."""
from __future__ import annotations

import logging
from dataclasses import asdict, dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Optional

from django.conf import settings
from django.db import transaction
from django.db.models import F, Q
from django.utils import timezone

from billing.models import Order, PaymentTransaction, Subscription, SubscriptionEvent
from billing.observability.metrics import ORDER_RECONCILE_COUNT
from billing.services.periods import add_duration

logger = logging.getLogger(__name__)

CLOSED_ORDER_STATUSES = (Order.Status.EXPIRED, Order.Status.CANCELED)


@dataclass
class ReconcileStats:
    orders_processed: int = 0
    activated: int = 0
    renewed: int = 0
    expired: int = 0
    deferred: int = 0
    skipped: int = 0
    failed: int = 0
    stale_transactions: int = 0

    def as_dict(self) -> Dict[str, int]:
        return asdict(self)


class OrderStatusReconciler:
    """Moves orders through their time-bounded lifecycle independently of provider callbacks.

    Every per-order write is conditional on the ``end_date`` observed when the order
    was loaded, so overlapping runs never extend the same order twice.
    """

    def __init__(self, clock: Callable = timezone.now):
        self.clock = clock

    @property
    def renewal_grace(self) -> timedelta:
        return timedelta(hours=getattr(settings, "BILLING_RENEWAL_GRACE_HOURS", 24))

    @property
    def pending_timeout(self) -> timedelta:
        return timedelta(hours=getattr(settings, "BILLING_PENDING_TRANSACTION_TIMEOUT_HOURS", 24))

    def run(self, now: Optional[datetime] = None) -> ReconcileStats:
        now = now or self.clock()
        stats = ReconcileStats()
        self._activate_pending(now, stats)
        self._expire_or_renew(now, stats)
        self._sweep_stale_transactions(now, stats)
        logger.info("Order status reconciliation finished at %s: %s", now.isoformat(), stats.as_dict())
        return stats

    def expiry_candidates(self, now: datetime):
        return (
            Order.objects.select_related("plan", "subscription")
            .exclude(status__in=CLOSED_ORDER_STATUSES)
            .filter(end_date__lt=now)
            .order_by("end_date")
        )

    def activation_candidates(self, now: datetime):
        return Order.objects.filter(status=Order.Status.PENDING, start_date__lte=now, end_date__gt=now)

    def stale_transactions(self, now: datetime):
        return PaymentTransaction.objects.filter(
            status=PaymentTransaction.Status.PENDING,
            created_at__lt=now - self.pending_timeout,
        ).select_related("subscription")

    def find_renewal_transaction(self, order: Order) -> Optional[PaymentTransaction]:
        """Completed payment for the same user and plan that no order has consumed yet."""
        return (
            PaymentTransaction.objects.filter(
                user_id=order.user_id,
                plan_id=order.plan_id,
                status=PaymentTransaction.Status.COMPLETED,
                created_at__gt=order.end_date - self.renewal_grace,
            )
            .filter(funded_orders__isnull=True, originated_order__isnull=True)
            .order_by("created_at")
            .first()
        )

    def _activate_pending(self, now: datetime, stats: ReconcileStats) -> None:
        for order in self.activation_candidates(now):
            stats.orders_processed += 1
            try:
                updated = Order.objects.filter(pk=order.pk, status=Order.Status.PENDING).update(
                    status=Order.Status.ACTIVE, updated_at=now,
                )
            except Exception:
                logger.exception("Failed to activate order %s.", order.pk)
                stats.failed += 1
                ORDER_RECONCILE_COUNT.labels(outcome="failed").inc()
                continue
            if updated:
                stats.activated += 1
                ORDER_RECONCILE_COUNT.labels(outcome="activated").inc()
            else:
                stats.skipped += 1

    def _expire_or_renew(self, now: datetime, stats: ReconcileStats) -> None:
        for order in self.expiry_candidates(now):
            stats.orders_processed += 1
            try:
                with transaction.atomic():
                    outcome = self._reconcile_order(order, now)
            except Exception:
                logger.exception("Failed to reconcile order %s (user=%s plan=%s).", order.pk, order.user_id,
                                 order.plan_id)
                stats.failed += 1
                ORDER_RECONCILE_COUNT.labels(outcome="failed").inc()
                continue
            setattr(stats, outcome, getattr(stats, outcome) + 1)
            ORDER_RECONCILE_COUNT.labels(outcome=outcome).inc()

    def awaits_provider_renewal(self, order: Order, now: datetime) -> bool:
        """True while a provider-billed subscription may still collect the next period.

        Card providers charge recurring invoices some time after the period rolls
        over, so such orders stay open until the renewal grace has passed.
        """
        subscription = order.subscription
        if not order.auto_renew or subscription is None or not subscription.provider_subscription_id:
            return False
        if subscription.status == Subscription.Status.CANCELED or subscription.cancel_at_period_end:
            return False
        return now < order.end_date + self.renewal_grace

    def _reconcile_order(self, order: Order, now: datetime) -> str:
        observed_end = order.end_date
        guarded = Order.objects.filter(pk=order.pk, end_date=observed_end).exclude(status__in=CLOSED_ORDER_STATUSES)

        renewal = self.find_renewal_transaction(order)
        if renewal is None:
            if self.awaits_provider_renewal(order, now):
                logger.debug("Order %s ended %s; waiting for the provider renewal.", order.pk,
                             observed_end.isoformat())
                return "deferred"
            if not guarded.update(status=Order.Status.EXPIRED, auto_renew=False, updated_at=now):
                return "skipped"
            self._close_subscription(order, now)
            logger.info("Order %s expired (ended %s).", order.pk, observed_end.isoformat())
            return "expired"

        # A payment collected after the grace window starts a fresh period.
        period_start = observed_end
        if renewal.created_at > observed_end + self.renewal_grace:
            period_start = renewal.created_at
        new_end = add_duration(period_start, order.plan.duration)
        updated = guarded.update(
            end_date=new_end,
            transaction=renewal,
            status=Order.Status.ACTIVE,
            renewal_count=F("renewal_count") + 1,
            last_renewed_at=now,
            updated_at=now,
        )
        if not updated:
            logger.info("Order %s changed since it was read; retrying on the next run.", order.pk)
            return "skipped"

        if order.subscription_id:
            Subscription.objects.filter(pk=order.subscription_id).exclude(
                status=Subscription.Status.CANCELED,
            ).filter(
                Q(current_period_end__isnull=True) | Q(current_period_end__lt=new_end),
            ).update(
                status=Subscription.Status.ACTIVE,
                current_period_start=period_start,
                current_period_end=new_end,
                updated_at=now,
            )
        SubscriptionEvent.objects.create(
            subscription_id=order.subscription_id,
            transaction=renewal,
            user_id=order.user_id,
            event_type=SubscriptionEvent.EventType.RENEWED,
            provider=renewal.provider,
            data={
                "order_id": str(order.pk),
                "previous_end_date": observed_end.isoformat(),
                "end_date": new_end.isoformat(),
            },
        )
        logger.info("Order %s renewed until %s with transaction %s.", order.pk, new_end.isoformat(), renewal.pk)
        return "renewed"

    def _close_subscription(self, order: Order, now: datetime) -> None:
        """Mark the subscription unpaid once its last open order has expired."""
        if not order.subscription_id:
            return
        if Order.objects.filter(subscription_id=order.subscription_id).exclude(
            status__in=CLOSED_ORDER_STATUSES,
        ).exists():
            return
        Subscription.objects.filter(
            pk=order.subscription_id,
            status__in=(Subscription.Status.ACTIVE, Subscription.Status.PAST_DUE),
        ).update(status=Subscription.Status.UNPAID, updated_at=now)

    def _sweep_stale_transactions(self, now: datetime, stats: ReconcileStats) -> None:
        for payment in self.stale_transactions(now):
            try:
                with transaction.atomic():
                    updated = PaymentTransaction.objects.filter(
                        pk=payment.pk, status=PaymentTransaction.Status.PENDING,
                    ).update(
                        status=PaymentTransaction.Status.FAILED,
                        metadata={**payment.metadata, "failure_reason": "pending_timeout"},
                        updated_at=now,
                    )
                    if not updated:
                        continue
                    subscription = payment.subscription
                    if subscription is not None and subscription.status == Subscription.Status.INCOMPLETE:
                        Subscription.objects.filter(pk=subscription.pk, status=Subscription.Status.INCOMPLETE).update(
                            status=Subscription.Status.CANCELED, canceled_at=now, updated_at=now,
                        )
                    SubscriptionEvent.objects.create(
                        subscription=subscription,
                        transaction=payment,
                        user_id=payment.user_id,
                        event_type=SubscriptionEvent.EventType.FAILED,
                        provider=payment.provider,
                        status="failed",
                        error_message="Payment was not completed before the pending timeout.",
                        data={"created_at": payment.created_at.isoformat()},
                    )
            except Exception:
                logger.exception("Failed to expire stale transaction %s.", payment.pk)
                stats.failed += 1
                continue
            stats.stale_transactions += 1
            ORDER_RECONCILE_COUNT.labels(outcome="stale_transaction").inc()
