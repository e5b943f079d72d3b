"""Shared response helpers for billing API views."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from rest_framework.response import Response

from billing.exceptions import BillingError, ProviderError
from billing.observability.logging import log_billing_event
from billing.observability.metrics import BILLING_REQUEST_COUNT

logger = logging.getLogger(__name__)


class BillingMetricsMixin:
    endpoint_label: str = "billing"

    def _record_request(self, status: int) -> None:
        BILLING_REQUEST_COUNT.labels(
            endpoint=self.endpoint_label,
            method=self.request.method,
            status=str(status),
        ).inc()

    def _success_response(self, payload: Dict[str, Any], *, status: int = 200, message: Optional[str] = None,
                          provider: Optional[str] = None):
        self._record_request(status)
        if message:
            user = getattr(self.request, "user", None)
            log_billing_event(
                message=message,
                provider=provider,
                user_id=getattr(user, "pk", None),
            )
        return Response(payload, status=status)

    def _error_response(self, *, status: int, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self._record_request(status)
        payload = {"code": code, "message": message, "details": details or {}}
        return Response(payload, status=status)

    def _billing_error_response(self, exc: BillingError):
        if isinstance(exc, ProviderError):
            logger.warning("%s provider failure (%s): %s", self.endpoint_label, exc.code, exc)
            # Provider internals stay in the logs; callers get a generic error.
            details = {"provider": exc.provider, "retryable": exc.retryable}
            return self._error_response(
                status=exc.status_code, code=exc.code, message=exc.default_message, details=details,
            )
        logger.debug("%s rejected with %s: %s", self.endpoint_label, exc.code, exc.message)
        return self._error_response(
            status=exc.status_code, code=exc.code, message=exc.message, details=exc.details,
        )

    def _validation_error_response(self, errors):
        return self._error_response(
            status=400,
            code="validation_error",
            message="Request body is invalid.",
            details=errors,
        )
