"""Structured logging helper for billing flows."""
from __future__ import annotations

import logging
from typing import Any, Dict, Optional

logger = logging.getLogger("billing")


def log_billing_event(*, message: str, provider: Optional[str] = None, user_id: Optional[Any] = None,
                      transaction_id: Optional[Any] = None, extra: Optional[Dict[str, Any]] = None,
                      level: int = logging.INFO) -> None:
    payload: Dict[str, Any] = {"message": message}
    if provider:
        payload["provider"] = provider
    if user_id:
        payload["user_id"] = str(user_id)
    if transaction_id:
        payload["transaction_id"] = str(transaction_id)
    if extra:
        payload.update(extra)
    logger.log(level, payload)
