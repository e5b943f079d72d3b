"""Operator status updates for payment transactions."""
from __future__ import annotations

import logging
import uuid
from typing import Callable, Optional

from django.db import transaction
from django.utils import timezone

from billing.exceptions import InvalidTransactionStatus, TransactionNotFound
from billing.models import PaymentTransaction, Subscription, SubscriptionEvent
from billing.observability.logging import log_billing_event

logger = logging.getLogger(__name__)

# Completion always goes through the provider webhook so the order gets created.
MANUAL_STATUSES = (PaymentTransaction.Status.FAILED, PaymentTransaction.Status.REFUNDED)


def update_transaction_status(transaction_id, status: str, *, actor=None, reason: str = "",
                              clock: Callable = timezone.now) -> PaymentTransaction:
    """Move a pending transaction to ``failed`` or ``refunded`` on behalf of an operator."""
    if status not in MANUAL_STATUSES:
        raise InvalidTransactionStatus(details={"status": status, "allowed": list(MANUAL_STATUSES)})
    try:
        pk = uuid.UUID(str(transaction_id))
    except (TypeError, ValueError):
        raise TransactionNotFound(details={"transaction_id": transaction_id}) from None

    now = clock()
    with transaction.atomic():
        payment: Optional[PaymentTransaction] = (
            PaymentTransaction.objects.select_for_update(of=("self",))
            .select_related("subscription")
            .filter(pk=pk)
            .first()
        )
        if payment is None:
            raise TransactionNotFound(details={"transaction_id": transaction_id})

        payment.transition_to(status)
        payment.metadata = {
            **payment.metadata,
            "status_reason": reason or f"manual_{status}",
            "updated_by": str(actor.pk) if actor is not None else None,
        }
        payment.save()

        subscription = payment.subscription
        if subscription is not None and subscription.status == Subscription.Status.INCOMPLETE:
            subscription.status = Subscription.Status.CANCELED
            subscription.canceled_at = now
            subscription.save(update_fields=["status", "canceled_at", "updated_at"])

        SubscriptionEvent.objects.create(
            subscription=subscription,
            transaction=payment,
            user_id=payment.user_id,
            event_type=SubscriptionEvent.EventType.FAILED,
            provider=payment.provider,
            status=status,
            error_message=reason,
            data={"updated_by": str(actor.pk) if actor is not None else None},
        )

    logger.info("Transaction %s marked %s by %s.", payment.pk, status, getattr(actor, "pk", None))
    log_billing_event(
        message="transaction_status_updated",
        provider=payment.provider,
        user_id=payment.user_id,
        transaction_id=payment.pk,
        extra={"status": status},
    )
    return payment
