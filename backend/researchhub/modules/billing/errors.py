"""Billing error taxonomy.

Ledger invariant violations are programming errors and propagate.
Business-rule failures are caught by the facade and returned as
``OperationResult`` values.
"""

from typing import Optional


class BillingError(Exception):
    """Base exception for the billing module."""

    error_code: str = "billing_error"

    def __init__(self, message: str, error_code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        if error_code:
            self.error_code = error_code


class LedgerValidationError(BillingError, ValueError):
    """A ledger entity was given a value that violates its invariants."""

    error_code = "validation_error"


class InvalidTransitionError(BillingError):
    """A state machine was asked to make a move it does not allow."""

    error_code = "invalid_transition"


class RecordNotFoundError(BillingError):
    """A ledger record could not be found."""

    error_code = "not_found"


class InsufficientCreditsError(BillingError):
    """A credit account does not hold enough available credits."""

    error_code = "insufficient_credits"

    def __init__(self, requested: int, available: int):
        super().__init__(
            f"Not enough credits: requested {requested}, available {available}"
        )
        self.requested = requested
        self.available = available


class PaymentRequestAlreadyProcessedError(BillingError):
    """A manual payment request already reached a terminal state."""

    error_code = "already_processed"

    def __init__(self, request_id: object, status: str):
        super().__init__(
            f"Manual payment request {request_id} is already {status}"
        )
        self.request_id = request_id
        self.status = status


class UsageLimitExceededError(BillingError):
    """The plan limit for a usage type has been reached."""

    error_code = "limit_exceeded"


class ConcurrentModificationError(BillingError):
    """A record changed underneath an optimistic-concurrency write."""

    error_code = "concurrent_modification"


class GatewayError(BillingError):
    """The payment gateway rejected or failed a charge call."""

    error_code = "gateway_error"


class GatewayTimeoutError(GatewayError):
    """The payment gateway did not answer within the configured timeout."""

    error_code = "gateway_timeout"
