"""Access checks for scheduler-triggered billing endpoints."""
import hmac
import logging

from django.conf import settings
from rest_framework.permissions import BasePermission

logger = logging.getLogger(__name__)


class HasCronSecret(BasePermission):
    """
    Require ``Authorization: Bearer <BILLING_CRON_SECRET>`` when a secret is configured.

    Without a configured secret the endpoint stays open, which is only intended
    for local development.
    """

    message = "Invalid or missing cron credentials."

    def has_permission(self, request, view) -> bool:
        secret = getattr(settings, "BILLING_CRON_SECRET", "")
        if not secret:
            return True

        header = request.headers.get("Authorization", "")
        scheme, _, provided = header.partition(" ")
        if scheme.lower() != "bearer" or not provided:
            logger.warning("Cron request without bearer credentials from %s", request.META.get("REMOTE_ADDR"))
            return False
        return hmac.compare_digest(provided.strip(), secret)
