"""Checkout session initiation shared by every checkout entry point."""
from __future__ import annotations

import logging
import time
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional

from django.db import transaction
from django.utils import timezone

from billing.exceptions import (
    AuthenticationRequired,
    CheckoutValidationError,
    PlanNotFound,
    ProviderError,
)
from billing.models import Plan, PaymentTransaction, Subscription, SubscriptionEvent
from billing.observability.logging import log_billing_event
from billing.observability.metrics import (
    CHECKOUT_REQUEST_COUNT,
    PROVIDER_ERROR_COUNT,
    PROVIDER_REQUEST_LATENCY,
)
from billing.providers import (
    SUPPORTED_PROVIDERS,
    BuyerContext,
    CheckoutSession,
    PaymentProviderAdapter,
    build_default_adapters,
)
from billing.validators import is_valid_payout_address

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutResult:
    transaction: PaymentTransaction
    subscription: Optional[Subscription]
    session: CheckoutSession


class CheckoutSessionInitiator:
    """Validates a purchase, records the pending payment and opens a provider session."""

    def __init__(self, adapters: Optional[Mapping[str, PaymentProviderAdapter]] = None,
                 clock: Callable = timezone.now):
        self.adapters: Dict[str, PaymentProviderAdapter] = dict(
            adapters if adapters is not None else build_default_adapters()
        )
        self.clock = clock

    def start(self, user, plan_id, payout_address: Optional[str], provider: Optional[str]) -> CheckoutResult:
        """Run the ordered checks, then persist and open the checkout.

        Checks run in a fixed order (identity, plan, address, provider) and nothing
        is written until all of them pass. The provider call happens outside any
        database transaction; a failure leaves the transaction ``pending`` with the
        error recorded in its metadata.
        """
        if user is None or not getattr(user, "is_authenticated", False):
            raise AuthenticationRequired()

        plan = Plan.objects.filter(pk=str(plan_id), is_active=True).first() if plan_id else None
        if plan is None:
            raise PlanNotFound(details={"plan_id": plan_id})

        address = (payout_address or "").strip()
        if not is_valid_payout_address(address, plan.payout_asset):
            raise CheckoutValidationError(
                f"Payout address is not a valid {plan.payout_asset} address.",
                code="invalid_payout_address",
                details={"asset": plan.payout_asset},
            )

        adapter = self.adapters.get(provider or "")
        if adapter is None:
            raise CheckoutValidationError(
                f"Unsupported payment provider '{provider}'.",
                code="unsupported_provider",
                details={"provider": provider, "supported": list(SUPPORTED_PROVIDERS)},
            )

        payment, subscription = self._record_pending(user, plan, address, adapter.name)
        buyer = BuyerContext(
            user_id=str(user.pk),
            email=getattr(user, "email", None) or None,
            transaction_id=str(payment.pk),
            payout_address=address,
            customer_id=getattr(user, "stripe_customer_id", None) or None,
            subscription_id=str(subscription.pk) if subscription else None,
        )

        started = time.monotonic()
        try:
            session = adapter.create_checkout(plan, buyer)
        except ProviderError as exc:
            self._record_provider_failure(payment, exc)
            raise
        finally:
            PROVIDER_REQUEST_LATENCY.labels(provider=adapter.name, operation="create_checkout").observe(
                time.monotonic() - started
            )

        with transaction.atomic():
            payment.provider_session_id = session.session_id
            payment.metadata = {**payment.metadata, "redirect_url": session.redirect_url}
            if session.pay_address:
                payment.metadata["pay_address"] = session.pay_address
            payment.save(update_fields=["provider_session_id", "metadata", "updated_at"])
            if subscription is not None:
                subscription.metadata = {**subscription.metadata, "checkout_session_id": session.session_id}
                subscription.save(update_fields=["metadata", "updated_at"])
            SubscriptionEvent.objects.create(
                subscription=subscription,
                transaction=payment,
                user=user,
                event_type=SubscriptionEvent.EventType.CREATED,
                provider=adapter.name,
                data={
                    "plan_id": plan.pk,
                    "session_id": session.session_id,
                    "amount": str(payment.amount),
                    "currency": payment.currency,
                },
            )

        CHECKOUT_REQUEST_COUNT.labels(provider=adapter.name, outcome="created").inc()
        log_billing_event(
            message="checkout_session_created",
            provider=adapter.name,
            user_id=user.pk,
            transaction_id=payment.pk,
            extra={"plan_id": plan.pk, "session_id": session.session_id},
        )
        return CheckoutResult(transaction=payment, subscription=subscription, session=session)

    def _record_pending(self, user, plan: Plan, address: str, provider: str):
        with transaction.atomic():
            user.payout_address = address
            user.save(update_fields=["payout_address", "updated_at"])

            subscription = None
            if plan.is_subscription:
                subscription = Subscription.objects.create(
                    user=user,
                    plan=plan,
                    status=Subscription.Status.INCOMPLETE,
                    provider=provider,
                )

            payment = PaymentTransaction.objects.create(
                user=user,
                plan=plan,
                subscription=subscription,
                payment_type=(
                    PaymentTransaction.PaymentType.SUBSCRIPTION
                    if plan.is_subscription
                    else PaymentTransaction.PaymentType.ONE_TIME
                ),
                amount=plan.price,
                currency=plan.currency,
                status=PaymentTransaction.Status.PENDING,
                provider=provider,
                description=plan.name or f"Plan {plan.pk}",
                metadata={"payout_address": address},
                created_at=self.clock(),
            )
        return payment, subscription

    def _record_provider_failure(self, payment: PaymentTransaction, exc: ProviderError) -> None:
        PROVIDER_ERROR_COUNT.labels(
            provider=payment.provider,
            operation="create_checkout",
            reason=exc.code,
        ).inc()
        CHECKOUT_REQUEST_COUNT.labels(provider=payment.provider, outcome="provider_error").inc()
        payment.metadata = {
            **payment.metadata,
            "provider_error": {
                "code": exc.code,
                "message": exc.message,
                "raw_status": exc.raw_status,
                "at": self.clock().isoformat(),
            },
        }
        PaymentTransaction.objects.filter(pk=payment.pk).update(metadata=payment.metadata)
        logger.error(
            "Checkout provider call failed for transaction %s (user=%s provider=%s status=%s): %s",
            payment.pk,
            payment.user_id,
            payment.provider,
            exc.raw_status,
            exc.message,
        )
