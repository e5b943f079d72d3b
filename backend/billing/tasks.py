"""Celery tasks for scheduled billing reconciliation."""
from __future__ import annotations

import logging
from typing import Dict

from celery import shared_task
from django.db import DatabaseError

from billing.services.order_status import OrderStatusReconciler

logger = logging.getLogger(__name__)


@shared_task(bind=True, max_retries=3, default_retry_delay=60)
def reconcile_order_statuses(self) -> Dict[str, int]:
    """Activate, renew and expire orders, and fail stale pending transactions."""

    try:
        stats = OrderStatusReconciler().run()
    except DatabaseError as exc:
        logger.exception("Order status reconciliation failed; retrying.")
        raise self.retry(exc=exc)
    return stats.as_dict()
