"""Webhook reconciliation: verified provider events applied exactly once."""
from __future__ import annotations

import hashlib
import logging
import uuid
from dataclasses import dataclass
from typing import Any, Callable, Dict, Mapping, Optional

from django.db import DatabaseError, transaction
from django.utils import timezone

from billing.exceptions import BillingError, UnknownProviderError, UnknownReferenceError
from billing.models import (
    Order,
    PaymentTransaction,
    Subscription,
    SubscriptionEvent,
    WebhookEventLog,
)
from billing.observability.logging import log_billing_event
from billing.observability.metrics import WEBHOOK_EVENT_COUNT
from billing.providers import EventType, NormalizedEvent, PaymentProviderAdapter, build_default_adapters
from billing.services.periods import add_duration

logger = logging.getLogger(__name__)

# Provider subscription statuses that do not map one to one onto ours.
SUBSCRIPTION_STATUS_ALIASES = {
    "trialing": Subscription.Status.ACTIVE,
    "incomplete_expired": Subscription.Status.CANCELED,
    "paused": Subscription.Status.PAST_DUE,
}


@dataclass(frozen=True)
class ReconcileResult:
    PROCESSED = "processed"
    REPLAY = "replay"
    IGNORED = "ignored"
    NOOP = "noop"

    status: str
    event_type: str
    idempotency_key: str
    transaction_id: Optional[str] = None
    subscription_id: Optional[str] = None
    order_id: Optional[str] = None

    def as_payload(self) -> Dict[str, Any]:
        return {
            "received": True,
            "status": self.status,
            "eventType": self.event_type,
            "transactionId": self.transaction_id,
            "subscriptionId": self.subscription_id,
            "orderId": self.order_id,
        }


def _as_uuid(value: Optional[str]) -> Optional[uuid.UUID]:
    if not value:
        return None
    try:
        return uuid.UUID(str(value))
    except (TypeError, ValueError):
        return None


def _map_subscription_status(status: Optional[str], current: str) -> str:
    if not status:
        return current
    if status in Subscription.Status.values:
        return status
    return SUBSCRIPTION_STATUS_ALIASES.get(status, current)


class WebhookReconciler:
    """Verifies provider callbacks and applies the matching state transition."""

    def __init__(self, adapters: Optional[Mapping[str, PaymentProviderAdapter]] = None,
                 clock: Callable = timezone.now):
        self.adapters: Dict[str, PaymentProviderAdapter] = dict(
            adapters if adapters is not None else build_default_adapters()
        )
        self.clock = clock
        self._handlers: Dict[str, Callable[[NormalizedEvent, str], ReconcileResult]] = {
            EventType.CHECKOUT_COMPLETED: self._handle_completion,
            EventType.INVOICE_PAID: self._handle_completion,
            EventType.CHECKOUT_EXPIRED: self._handle_expiry,
            EventType.INVOICE_EXPIRED: self._handle_expiry,
            EventType.INVOICE_PARTIALLY_PAID: self._handle_partial_payment,
            EventType.SUBSCRIPTION_UPDATED: self._handle_subscription_updated,
            EventType.SUBSCRIPTION_CANCELED: self._handle_subscription_canceled,
            EventType.INVOICE_PAYMENT_FAILED: self._handle_invoice_payment_failed,
        }

    def handle(self, provider: str, raw_body: bytes, signature: Optional[str]) -> ReconcileResult:
        adapter = self.adapters.get(provider)
        if adapter is None:
            raise UnknownProviderError(details={"provider": provider})

        try:
            event = adapter.verify_and_parse(raw_body, signature)
        except BillingError as exc:
            WEBHOOK_EVENT_COUNT.labels(provider=provider, event_type="unknown", outcome=exc.code).inc()
            raise

        key = event.idempotency_key
        payload_hash = hashlib.sha256(raw_body).hexdigest()
        try:
            with transaction.atomic():
                log_entry, _ = WebhookEventLog.objects.select_for_update().get_or_create(
                    provider=provider,
                    idempotency_key=key,
                    defaults={"event_type": event.raw_type, "payload_hash": payload_hash},
                )
                if log_entry.handled or SubscriptionEvent.objects.filter(
                    provider=provider, provider_event_id=key,
                ).exists():
                    logger.info("Replay of %s event %s ignored.", provider, key)
                    result = ReconcileResult(status=ReconcileResult.REPLAY, event_type=event.type, idempotency_key=key)
                elif event.type == EventType.UNHANDLED:
                    logger.debug("Ignoring %s event %s of type %s.", provider, key, event.raw_type)
                    result = ReconcileResult(status=ReconcileResult.IGNORED, event_type=event.type, idempotency_key=key)
                else:
                    result = self._handlers[event.type](event, key)

                log_entry.event_type = event.raw_type
                log_entry.payload_hash = payload_hash
                log_entry.status = (
                    WebhookEventLog.Status.IGNORED
                    if result.status == ReconcileResult.IGNORED
                    else WebhookEventLog.Status.PROCESSED
                )
                log_entry.handled = True
                log_entry.last_error = ""
                log_entry.processed_at = self.clock()
                log_entry.save()
        except UnknownReferenceError as exc:
            logger.warning(
                "%s event %s (%s) references unknown records: session=%s transaction=%s subscription=%s",
                provider, key, event.raw_type, event.session_id, event.transaction_id, event.subscription_id,
            )
            self._mark_failed(provider, key, event, payload_hash, exc.message)
            WEBHOOK_EVENT_COUNT.labels(provider=provider, event_type=event.type, outcome="unknown_reference").inc()
            raise
        except DatabaseError:
            logger.exception("Failed to persist %s event %s (%s).", provider, key, event.raw_type)
            WEBHOOK_EVENT_COUNT.labels(provider=provider, event_type=event.type, outcome="error").inc()
            raise

        WEBHOOK_EVENT_COUNT.labels(provider=provider, event_type=event.type, outcome=result.status).inc()
        log_billing_event(
            message="webhook_event_reconciled",
            provider=provider,
            transaction_id=result.transaction_id,
            extra={"event_type": event.type, "idempotency_key": key, "status": result.status},
        )
        return result

    def _mark_failed(self, provider: str, key: str, event: NormalizedEvent, payload_hash: str, error: str) -> None:
        WebhookEventLog.objects.update_or_create(
            provider=provider,
            idempotency_key=key,
            defaults={
                "event_type": event.raw_type,
                "payload_hash": payload_hash,
                "status": WebhookEventLog.Status.FAILED,
                "last_error": error,
                "handled": False,
            },
        )

    # Lookups

    def _find_transaction(self, event: NormalizedEvent) -> Optional[PaymentTransaction]:
        queryset = PaymentTransaction.objects.select_for_update(of=("self",)).select_related(
            "plan", "subscription", "user",
        )
        if event.session_id:
            payment = queryset.filter(provider=event.provider, provider_session_id=event.session_id).first()
            if payment is not None:
                return payment
        transaction_id = _as_uuid(event.transaction_id)
        if transaction_id is not None:
            return queryset.filter(pk=transaction_id, provider=event.provider).first()
        return None

    def _find_subscription(self, event: NormalizedEvent) -> Optional[Subscription]:
        queryset = Subscription.objects.select_for_update(of=("self",)).select_related("plan", "user")
        if event.subscription_id:
            subscription = queryset.filter(
                provider=event.provider, provider_subscription_id=event.subscription_id,
            ).first()
            if subscription is not None:
                return subscription
        transaction_id = _as_uuid(event.transaction_id)
        if transaction_id is not None:
            return queryset.filter(transactions__pk=transaction_id).first()
        return None

    def _record_event(self, event: NormalizedEvent, key: str, event_type: str, *, subscription=None,
                      payment=None, user=None, status: str = "success", error_message: str = "") -> None:
        SubscriptionEvent.objects.create(
            subscription=subscription,
            transaction=payment,
            user=user,
            event_type=event_type,
            provider=event.provider,
            provider_event_id=key,
            status=status,
            error_message=error_message,
            data=event.payload,
        )

    # Handlers

    def _handle_completion(self, event: NormalizedEvent, key: str) -> ReconcileResult:
        payment = self._find_transaction(event)
        if payment is None:
            if event.type == EventType.INVOICE_PAID and event.subscription_id:
                return self._handle_renewal(event, key)
            raise UnknownReferenceError(details={"session_id": event.session_id})

        if payment.status == PaymentTransaction.Status.FAILED:
            return self._flag_late_payment(payment, event, key)
        if payment.status != PaymentTransaction.Status.PENDING:
            logger.info("Transaction %s already %s; %s is a no-op.", payment.pk, payment.status, event.raw_type)
            return ReconcileResult(
                status=ReconcileResult.NOOP,
                event_type=event.type,
                idempotency_key=key,
                transaction_id=str(payment.pk),
            )

        now = self.clock()
        payment.transition_to(PaymentTransaction.Status.COMPLETED)
        payment.completed_at = now
        if event.reference and not payment.provider_reference:
            payment.provider_reference = event.reference
        if event.paid_amount is not None:
            payment.metadata = {**payment.metadata, "paid_amount": str(event.paid_amount)}
        payment.save()

        end_date = add_duration(now, payment.plan.duration)
        subscription = payment.subscription
        order, created = Order.objects.get_or_create(
            origin_transaction=payment,
            defaults={
                "user": payment.user,
                "plan": payment.plan,
                "transaction": payment,
                "subscription": subscription,
                "payout_address": payment.metadata.get("payout_address") or payment.user.payout_address,
                "status": Order.Status.ACTIVE,
                "start_date": now,
                "end_date": end_date,
                "auto_renew": payment.plan.is_subscription,
            },
        )

        if subscription is not None:
            subscription = Subscription.objects.select_for_update().get(pk=subscription.pk)
            subscription.status = Subscription.Status.ACTIVE
            subscription.current_period_start = order.start_date
            subscription.current_period_end = order.end_date
            if event.subscription_id:
                subscription.provider_subscription_id = event.subscription_id
            if event.customer_id:
                subscription.provider_customer_id = event.customer_id
            subscription.save()

        user = payment.user
        if event.customer_id and event.provider == "stripe" and user.stripe_customer_id != event.customer_id:
            user.stripe_customer_id = event.customer_id
            user.save(update_fields=["stripe_customer_id", "updated_at"])

        self._record_event(
            event, key, SubscriptionEvent.EventType.ACTIVATED,
            subscription=subscription, payment=payment, user=user,
        )
        logger.info("Transaction %s completed via %s; order %s %s.", payment.pk, event.raw_type, order.pk,
                    "created" if created else "already existed")
        return ReconcileResult(
            status=ReconcileResult.PROCESSED,
            event_type=event.type,
            idempotency_key=key,
            transaction_id=str(payment.pk),
            subscription_id=str(subscription.pk) if subscription else None,
            order_id=str(order.pk),
        )

    def _flag_late_payment(self, payment: PaymentTransaction, event: NormalizedEvent, key: str) -> ReconcileResult:
        """Payment confirmed for a transaction we already failed; needs manual reconciliation."""
        logger.error(
            "Payment received for failed transaction %s: provider=%s session=%s reference=%s event=%s (%s)",
            payment.pk, event.provider, event.session_id, event.reference, key, event.raw_type,
        )
        self._record_event(
            event, key, SubscriptionEvent.EventType.FAILED,
            subscription=payment.subscription, payment=payment, user=payment.user,
            status="needs_review",
            error_message=(
                f"Provider confirmed payment {event.reference or event.session_id} "
                f"after the transaction was marked {payment.metadata.get('failure_reason') or 'failed'}."
            ),
        )
        return ReconcileResult(
            status=ReconcileResult.NOOP,
            event_type=event.type,
            idempotency_key=key,
            transaction_id=str(payment.pk),
            subscription_id=str(payment.subscription_id) if payment.subscription_id else None,
        )

    def _revive_expired_order(self, subscription: Subscription) -> Optional[Order]:
        """Reopen the subscription's expired order so the next reconciler run extends it."""
        if Order.objects.filter(subscription=subscription).exclude(
            status__in=(Order.Status.EXPIRED, Order.Status.CANCELED),
        ).exists():
            return None
        order = (
            Order.objects.filter(subscription=subscription, status=Order.Status.EXPIRED)
            .order_by("-end_date")
            .first()
        )
        if order is None:
            return None
        Order.objects.filter(pk=order.pk, status=Order.Status.EXPIRED).update(
            status=Order.Status.ACTIVE,
            auto_renew=not subscription.cancel_at_period_end,
            updated_at=self.clock(),
        )
        logger.info("Order %s reopened by renewal of subscription %s.", order.pk, subscription.pk)
        return order

    def _handle_renewal(self, event: NormalizedEvent, key: str) -> ReconcileResult:
        """Record a provider-collected recurring payment as a completed renewal transaction."""
        subscription = self._find_subscription(event)
        if subscription is None:
            raise UnknownReferenceError(details={"subscription_id": event.subscription_id})

        existing = PaymentTransaction.objects.filter(
            provider=event.provider, provider_reference=event.reference,
        ).first() if event.reference else None
        if existing is not None:
            return ReconcileResult(
                status=ReconcileResult.NOOP,
                event_type=event.type,
                idempotency_key=key,
                transaction_id=str(existing.pk),
                subscription_id=str(subscription.pk),
            )

        now = self.clock()
        plan = subscription.plan
        payment = PaymentTransaction.objects.create(
            user=subscription.user,
            plan=plan,
            subscription=subscription,
            payment_type=PaymentTransaction.PaymentType.SUBSCRIPTION,
            amount=event.amount if event.amount is not None else plan.price,
            currency=event.currency or plan.currency,
            status=PaymentTransaction.Status.PENDING,
            provider=event.provider,
            provider_reference=event.reference,
            description=f"Renewal of subscription {subscription.pk}",
            metadata={"renewal": True, "payout_address": subscription.user.payout_address},
            created_at=now,
        )
        payment.transition_to(PaymentTransaction.Status.COMPLETED)
        payment.completed_at = now
        payment.save()

        subscription.status = Subscription.Status.ACTIVE
        if event.period_start and event.period_end:
            subscription.current_period_start = event.period_start
            subscription.current_period_end = event.period_end
        subscription.save()
        revived = self._revive_expired_order(subscription)

        self._record_event(
            event, key, SubscriptionEvent.EventType.RENEWED,
            subscription=subscription, payment=payment, user=subscription.user,
        )
        return ReconcileResult(
            status=ReconcileResult.PROCESSED,
            event_type=event.type,
            idempotency_key=key,
            transaction_id=str(payment.pk),
            subscription_id=str(subscription.pk),
            order_id=str(revived.pk) if revived else None,
        )

    def _handle_expiry(self, event: NormalizedEvent, key: str) -> ReconcileResult:
        payment = self._find_transaction(event)
        if payment is None:
            raise UnknownReferenceError(details={"session_id": event.session_id})
        if payment.status != PaymentTransaction.Status.PENDING:
            return ReconcileResult(
                status=ReconcileResult.NOOP, event_type=event.type, idempotency_key=key,
                transaction_id=str(payment.pk),
            )

        now = self.clock()
        payment.transition_to(PaymentTransaction.Status.FAILED)
        payment.metadata = {**payment.metadata, "failure_reason": event.raw_type}
        payment.save()

        subscription = payment.subscription
        if subscription is not None and subscription.status == Subscription.Status.INCOMPLETE:
            subscription.status = Subscription.Status.CANCELED
            subscription.canceled_at = now
            subscription.save(update_fields=["status", "canceled_at", "updated_at"])

        self._record_event(
            event, key, SubscriptionEvent.EventType.FAILED,
            subscription=subscription, payment=payment, user=payment.user,
            status="failed", error_message=f"Payment {event.raw_type}",
        )
        return ReconcileResult(
            status=ReconcileResult.PROCESSED,
            event_type=event.type,
            idempotency_key=key,
            transaction_id=str(payment.pk),
            subscription_id=str(subscription.pk) if subscription else None,
        )

    def _handle_partial_payment(self, event: NormalizedEvent, key: str) -> ReconcileResult:
        payment = self._find_transaction(event)
        if payment is None:
            raise UnknownReferenceError(details={"session_id": event.session_id})
        if payment.status != PaymentTransaction.Status.PENDING:
            return ReconcileResult(
                status=ReconcileResult.NOOP, event_type=event.type, idempotency_key=key,
                transaction_id=str(payment.pk),
            )

        payment.metadata = {
            **payment.metadata,
            "paid_amount": str(event.paid_amount) if event.paid_amount is not None else None,
            "partial_payment_reference": event.reference,
        }
        payment.save(update_fields=["metadata", "updated_at"])
        self._record_event(
            event, key, SubscriptionEvent.EventType.PARTIALLY_PAID,
            subscription=payment.subscription, payment=payment, user=payment.user, status="pending",
        )
        return ReconcileResult(
            status=ReconcileResult.PROCESSED,
            event_type=event.type,
            idempotency_key=key,
            transaction_id=str(payment.pk),
        )

    def _handle_subscription_updated(self, event: NormalizedEvent, key: str) -> ReconcileResult:
        subscription = self._find_subscription(event)
        if subscription is None:
            raise UnknownReferenceError(details={"subscription_id": event.subscription_id})

        subscription.status = _map_subscription_status(event.status, subscription.status)
        if event.period_start and event.period_end:
            subscription.current_period_start = event.period_start
            subscription.current_period_end = event.period_end
        if event.cancel_at_period_end is not None:
            subscription.cancel_at_period_end = event.cancel_at_period_end
        if event.subscription_id and not subscription.provider_subscription_id:
            subscription.provider_subscription_id = event.subscription_id
        if subscription.status == Subscription.Status.CANCELED and subscription.canceled_at is None:
            subscription.canceled_at = self.clock()
        subscription.save()

        if subscription.cancel_at_period_end or subscription.status == Subscription.Status.CANCELED:
            Order.objects.filter(subscription=subscription).update(auto_renew=False, updated_at=self.clock())

        self._record_event(
            event, key, SubscriptionEvent.EventType.UPDATED,
            subscription=subscription, user=subscription.user,
        )
        return ReconcileResult(
            status=ReconcileResult.PROCESSED,
            event_type=event.type,
            idempotency_key=key,
            subscription_id=str(subscription.pk),
        )

    def _handle_subscription_canceled(self, event: NormalizedEvent, key: str) -> ReconcileResult:
        subscription = self._find_subscription(event)
        if subscription is None:
            raise UnknownReferenceError(details={"subscription_id": event.subscription_id})

        now = self.clock()
        subscription.status = Subscription.Status.CANCELED
        subscription.canceled_at = subscription.canceled_at or now
        subscription.cancel_at_period_end = False
        subscription.save(update_fields=["status", "canceled_at", "cancel_at_period_end", "updated_at"])
        Order.objects.filter(subscription=subscription).update(auto_renew=False, updated_at=now)

        self._record_event(
            event, key, SubscriptionEvent.EventType.CANCELED,
            subscription=subscription, user=subscription.user,
        )
        return ReconcileResult(
            status=ReconcileResult.PROCESSED,
            event_type=event.type,
            idempotency_key=key,
            subscription_id=str(subscription.pk),
        )

    def _handle_invoice_payment_failed(self, event: NormalizedEvent, key: str) -> ReconcileResult:
        subscription = self._find_subscription(event)
        if subscription is None:
            raise UnknownReferenceError(details={"subscription_id": event.subscription_id})

        subscription.status = Subscription.Status.PAST_DUE
        subscription.save(update_fields=["status", "updated_at"])
        self._record_event(
            event, key, SubscriptionEvent.EventType.FAILED,
            subscription=subscription, user=subscription.user,
            status="failed", error_message=f"Invoice {event.reference} payment failed",
        )
        return ReconcileResult(
            status=ReconcileResult.PROCESSED,
            event_type=event.type,
            idempotency_key=key,
            subscription_id=str(subscription.pk),
        )
