"""Exception taxonomy shared by billing services and views."""
from __future__ import annotations

from typing import Any, Dict, Optional


class BillingError(Exception):
    """Base class for errors surfaced to API callers."""

    code = "billing_error"
    status_code = 500
    default_message = "Billing request failed."

    def __init__(self, message: Optional[str] = None, *, code: Optional[str] = None,
                 details: Optional[Dict[str, Any]] = None):
        self.message = message or self.default_message
        if code:
            self.code = code
        self.details = details or {}
        super().__init__(self.message)

    def as_payload(self) -> Dict[str, Any]:
        return {"code": self.code, "message": self.message, "details": self.details}


class CheckoutValidationError(BillingError):
    """Raised when a checkout request fails one of the ordered input checks."""

    code = "validation_error"
    status_code = 400
    default_message = "Invalid checkout request."


class AuthenticationRequired(BillingError):
    code = "unauthenticated"
    status_code = 401
    default_message = "Authentication required."


class PlanNotFound(BillingError):
    code = "plan_not_found"
    status_code = 404
    default_message = "Plan not found."


class SubscriptionNotFound(BillingError):
    code = "subscription_not_found"
    status_code = 404
    default_message = "Subscription not found."


class SessionInvalid(BillingError):
    """Raised when a management token is unknown, expired or already used."""

    code = "session_invalid"
    status_code = 403
    default_message = "Subscription management link is invalid or has expired."


class TransactionNotFound(BillingError):
    code = "transaction_not_found"
    status_code = 404
    default_message = "Transaction not found."


class InvalidTransactionStatus(BillingError):
    code = "invalid_transaction_status"
    status_code = 400
    default_message = "Transactions can only be marked failed or refunded."


class InvalidTransactionTransition(BillingError):
    code = "invalid_transaction_transition"
    status_code = 409
    default_message = "Transaction status cannot change once it is final."


class ProviderError(BillingError):
    """Raised when a payment provider call fails or returns an unusable payload."""

    code = "provider_error"
    status_code = 500
    default_message = "Payment provider request failed. Please try again."
    retryable = True

    def __init__(self, message: Optional[str] = None, *, provider: str = "",
                 raw_status: Optional[int] = None, details: Optional[Dict[str, Any]] = None):
        self.provider = provider
        self.raw_status = raw_status
        super().__init__(message, details=details)

    def __str__(self) -> str:
        return f"{self.provider or 'provider'} error (status={self.raw_status}): {self.message}"


class ProviderTimeout(ProviderError):
    code = "provider_timeout"
    status_code = 504
    default_message = "Payment provider did not respond in time. Please try again."


class ProviderConfigurationError(ProviderError):
    """Raised when mandatory provider credentials are missing."""

    code = "provider_not_configured"
    retryable = False


class SignatureError(BillingError):
    code = "invalid_signature"
    status_code = 400
    default_message = "Webhook signature verification failed."


class MalformedPayloadError(BillingError):
    code = "malformed_payload"
    status_code = 400
    default_message = "Webhook payload could not be parsed."


class UnknownReferenceError(BillingError):
    """Raised when a webhook references a transaction or subscription we never created."""

    code = "unknown_reference"
    status_code = 400
    default_message = "Webhook references an unknown transaction or subscription."


class UnknownProviderError(BillingError):
    code = "unknown_provider"
    status_code = 404
    default_message = "Unknown payment provider."
