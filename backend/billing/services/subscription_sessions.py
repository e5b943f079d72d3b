"""Subscription management links and cancellation."""
from __future__ import annotations

import logging
import secrets
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Callable, Dict, Mapping, Optional, Tuple
from urllib.parse import urlencode

from django.conf import settings
from django.db import transaction
from django.utils import timezone

from billing.exceptions import AuthenticationRequired, SessionInvalid, SubscriptionNotFound
from billing.models import Order, Subscription, SubscriptionEvent, SubscriptionSession
from billing.observability.logging import log_billing_event
from billing.providers import PaymentProviderAdapter, build_default_adapters
from billing.providers.base import build_public_url

logger = logging.getLogger(__name__)

MANAGE_PATH = "dashboard/subscriptions/manage"


@dataclass(frozen=True)
class ManagementLink:
    url: str
    token: Optional[str] = None
    expires_at: Optional[datetime] = None


def _is_authenticated(user) -> bool:
    return user is not None and getattr(user, "is_authenticated", False)


class SubscriptionSessionManager:
    """Issues single-use management links and cancels subscriptions."""

    def __init__(self, adapters: Optional[Mapping[str, PaymentProviderAdapter]] = None,
                 clock: Callable = timezone.now):
        self.adapters: Dict[str, PaymentProviderAdapter] = dict(
            adapters if adapters is not None else build_default_adapters()
        )
        self.clock = clock

    @property
    def session_ttl(self) -> timedelta:
        return timedelta(minutes=getattr(settings, "BILLING_SUBSCRIPTION_SESSION_TTL_MINUTES", 30))

    def list_for_user(self, user):
        if not _is_authenticated(user):
            raise AuthenticationRequired()
        return Subscription.objects.filter(user=user).select_related("plan").order_by("-created_at")

    def _owned_subscription(self, subscription_id, user) -> Subscription:
        if not _is_authenticated(user):
            raise AuthenticationRequired()
        try:
            pk = uuid.UUID(str(subscription_id))
        except (TypeError, ValueError):
            raise SubscriptionNotFound(details={"subscription_id": subscription_id}) from None
        subscription = Subscription.objects.select_related("plan").filter(pk=pk, user=user).first()
        if subscription is None:
            raise SubscriptionNotFound(details={"subscription_id": subscription_id})
        return subscription

    def create_session(self, subscription_id, user) -> ManagementLink:
        """Return a management link for a subscription the caller owns.

        Providers with a hosted customer portal return that portal URL. Otherwise a
        random token is minted, stored with a short expiry and embedded in a link to
        our own management page.
        """
        subscription = self._owned_subscription(subscription_id, user)
        adapter = self.adapters.get(subscription.provider)
        portal_url = adapter.management_url(subscription) if adapter is not None else None
        if portal_url:
            return ManagementLink(url=portal_url)

        token = secrets.token_urlsafe(32)
        expires_at = self.clock() + self.session_ttl
        base_url = build_public_url(MANAGE_PATH) or f"/{MANAGE_PATH}"
        url = f"{base_url}?{urlencode({'token': token, 'subscriptionId': str(subscription.pk)})}"
        SubscriptionSession.objects.create(
            user=subscription.user,
            subscription=subscription,
            provider=subscription.provider,
            token=token,
            session_url=url,
            expires_at=expires_at,
        )
        log_billing_event(
            message="subscription_session_created",
            provider=subscription.provider,
            user_id=subscription.user_id,
            extra={"subscription_id": str(subscription.pk), "expires_at": expires_at.isoformat()},
        )
        return ManagementLink(url=url, token=token, expires_at=expires_at)

    def validate_session(self, token: Optional[str], subscription_id) -> SubscriptionSession:
        if not token:
            raise SessionInvalid(details={"reason": "missing_token"})
        try:
            pk = uuid.UUID(str(subscription_id))
        except (TypeError, ValueError):
            raise SessionInvalid(details={"reason": "unknown_session"}) from None

        session = (
            SubscriptionSession.objects.select_related("subscription", "subscription__plan")
            .filter(token=token, subscription_id=pk)
            .first()
        )
        if session is None:
            raise SessionInvalid(details={"reason": "unknown_session"})
        if session.is_used:
            raise SessionInvalid(details={"reason": "used"})
        if session.expires_at <= self.clock():
            raise SessionInvalid(details={"reason": "expired"})
        return session

    def _authorize(self, subscription_id, user, token) -> Tuple[Subscription, Optional[SubscriptionSession]]:
        if token:
            session = self.validate_session(token, subscription_id)
            return session.subscription, session
        return self._owned_subscription(subscription_id, user), None

    def cancel(self, subscription_id, user=None, token: Optional[str] = None) -> Subscription:
        subscription, session = self._authorize(subscription_id, user, token)
        if subscription.status == Subscription.Status.CANCELED:
            return subscription

        adapter = self.adapters.get(subscription.provider)
        if adapter is not None:
            adapter.cancel_subscription(subscription)

        now = self.clock()
        with transaction.atomic():
            if session is not None:
                consumed = SubscriptionSession.objects.filter(
                    pk=session.pk, is_used=False, expires_at__gt=now,
                ).update(is_used=True, used_at=now)
                if not consumed:
                    raise SessionInvalid(details={"reason": "used"})

            locked = Subscription.objects.select_for_update().get(pk=subscription.pk)
            locked.status = Subscription.Status.CANCELED
            locked.canceled_at = now
            locked.cancel_at_period_end = False
            locked.save(update_fields=["status", "canceled_at", "cancel_at_period_end", "updated_at"])
            Order.objects.filter(subscription=locked).update(auto_renew=False, updated_at=now)
            SubscriptionEvent.objects.create(
                subscription=locked,
                user=locked.user,
                event_type=SubscriptionEvent.EventType.CANCELED,
                provider=locked.provider,
                data={"initiator": "session" if session is not None else "owner"},
            )

        logger.info("Subscription %s canceled by %s.", locked.pk, "session" if session is not None else "owner")
        return locked
