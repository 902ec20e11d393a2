"""Payment ledger transitions.

Success, refund, cancellation, webhook event bookkeeping and the
stale-pending sweep. Failure handling lives in ``retry``; fraud review
lives in ``risk``.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from researchhub.core.config import settings
from researchhub.core.logging import log_info, log_warning
from researchhub.modules.billing.errors import (
    InvalidTransitionError,
    LedgerValidationError,
)
from researchhub.modules.billing.models import (
    Payment,
    PaymentStatus,
    utcnow,
)
from researchhub.modules.billing.retry import RetryDecision, on_payment_failed
from researchhub.modules.billing.risk import is_on_fraud_hold

logger = logging.getLogger(__name__)

PENDING_TIMEOUT_CODE = "pending_timeout"


@dataclass
class SuccessOutcome:
    """Result of applying a successful charge to a payment."""
    applied: bool
    duplicate: bool = False


@dataclass
class RefundOutcome:
    """Result of applying a refund to a payment."""
    refund_amount: float
    fully_refunded: bool


def mark_succeeded(
    payment: Payment,
    charge_id: str,
    amount_received: float,
    gateway_fee: float = 0.0,
    application_fee: float = 0.0,
    now: Optional[datetime] = None,
) -> SuccessOutcome:
    """Apply a successful charge.

    Replaying the same charge id is absorbed: the payment is left exactly as
    the first call left it.

    Args:
        payment: Payment to complete
        charge_id: Gateway charge identifier, used as the dedup key
        amount_received: Amount actually captured
        gateway_fee: Fee charged by the gateway
        application_fee: Platform fee

    Returns:
        SuccessOutcome describing whether state changed

    Raises:
        InvalidTransitionError: If the payment is canceled, or was completed
            or refunded under a different charge
    """
    now = now or utcnow()

    if payment.status == PaymentStatus.SUCCEEDED.value:
        if payment.gateway_charge_id == charge_id:
            return SuccessOutcome(applied=False, duplicate=True)
        raise InvalidTransitionError(
            f"Payment {payment.id} already succeeded with charge {payment.gateway_charge_id}"
        )
    if payment.status == PaymentStatus.REFUNDED.value and payment.gateway_charge_id == charge_id:
        return SuccessOutcome(applied=False, duplicate=True)
    if payment.status in (PaymentStatus.CANCELED.value, PaymentStatus.REFUNDED.value):
        raise InvalidTransitionError(
            f"Cannot complete payment {payment.id} in status {payment.status}"
        )
    if amount_received < 0 or gateway_fee < 0 or application_fee < 0:
        raise LedgerValidationError("Charge amounts must be >= 0")

    payment.status = PaymentStatus.SUCCEEDED.value
    payment.gateway_charge_id = charge_id
    payment.amount_received = amount_received
    payment.gateway_fee = gateway_fee
    payment.application_fee = application_fee
    payment.paid_at = now
    payment.next_retry_at = None
    payment.retry_claimed_at = None
    payment.recompute_derived()

    log_info(
        logger,
        "Payment succeeded",
        payment_id=str(payment.id),
        charge_id=charge_id,
        amount_received=amount_received,
        net_amount=payment.net_amount,
    )
    return SuccessOutcome(applied=True)


def process_refund(
    payment: Payment,
    amount: float,
    reason: Optional[str] = None,
    now: Optional[datetime] = None,
) -> RefundOutcome:
    """Add a (possibly partial) refund to a payment.

    The cumulative refund may never exceed the amount received. Once it
    reaches the amount received the payment moves to ``refunded``.
    """
    now = now or utcnow()

    if payment.status not in (PaymentStatus.SUCCEEDED.value, PaymentStatus.REFUNDED.value):
        raise InvalidTransitionError(
            f"Cannot refund payment {payment.id} in status {payment.status}"
        )
    if amount <= 0:
        raise LedgerValidationError(f"Refund amount must be > 0, got {amount}")

    new_total = (payment.refund_amount or 0) + amount
    if new_total > payment.amount_received:
        raise LedgerValidationError(
            f"Refund total {new_total} exceeds amount received {payment.amount_received}"
        )

    payment.refund_amount = new_total
    payment.refund_reason = reason
    if payment.refunded_at is None:
        payment.refunded_at = now

    fully_refunded = new_total >= payment.amount_received
    if fully_refunded:
        payment.status = PaymentStatus.REFUNDED.value
    payment.recompute_derived()

    log_info(
        logger,
        "Payment refunded",
        payment_id=str(payment.id),
        refund_amount=amount,
        total_refunded=new_total,
        fully_refunded=fully_refunded,
    )
    return RefundOutcome(refund_amount=new_total, fully_refunded=fully_refunded)


def cancel_payment(payment: Payment, now: Optional[datetime] = None) -> None:
    """Cancel a payment that has not been attempted at the gateway yet."""
    if payment.status != PaymentStatus.PENDING.value:
        raise InvalidTransitionError(
            f"Only pending payments can be canceled, payment {payment.id} is {payment.status}"
        )
    payment.status = PaymentStatus.CANCELED.value
    payment.canceled_at = now or utcnow()
    payment.next_retry_at = None
    log_info(logger, "Payment canceled", payment_id=str(payment.id))


def add_webhook_event(
    payment: Payment,
    event_type: str,
    event_id: str,
    processed: bool = True,
    payload: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> None:
    """Record a gateway event against a payment.

    Events held back (fraud review) are stored unprocessed with their payload
    so they can be applied once the hold is lifted.
    """
    entry = {
        "event_type": event_type,
        "event_id": event_id,
        "received_at": (now or utcnow()).isoformat(),
        "processed": processed,
    }
    if payload is not None:
        entry["payload"] = payload
    # Reassign so the JSON column is marked dirty.
    payment.webhook_events = [*(payment.webhook_events or []), entry]


def has_processed_event(payment: Payment, event_id: Optional[str]) -> bool:
    return payment.has_processed_event(event_id)


def pending_cutoff(now: Optional[datetime] = None) -> datetime:
    """Pending payments attempted before this moment are stale."""
    return (now or utcnow()) - timedelta(minutes=settings.BILLING_PENDING_TIMEOUT_MINUTES)


def is_stale_pending(payment: Payment, now: Optional[datetime] = None) -> bool:
    return (
        payment.status == PaymentStatus.PENDING.value
        and payment.attempted_at < pending_cutoff(now)
    )


def expire_stale_pending(
    payment: Payment, now: Optional[datetime] = None
) -> Optional[RetryDecision]:
    """Fail a payment stuck in pending so the retry scheduler picks it up.

    Returns None when the payment is not stale or is held for fraud review.
    """
    if not is_stale_pending(payment, now) or is_on_fraud_hold(payment):
        return None
    log_warning(
        logger,
        "Expiring stale pending payment",
        payment_id=str(payment.id),
        attempted_at=payment.attempted_at.isoformat(),
    )
    return on_payment_failed(
        payment,
        PENDING_TIMEOUT_CODE,
        "Payment stayed pending past the timeout",
        now=now,
    )


def held_events(payment: Payment, event_type: str) -> list[dict]:
    """Recorded events of a type that were not applied yet."""
    return [
        e for e in payment.webhook_events or []
        if e.get("event_type") == event_type and not e.get("processed")
    ]


def mark_event_processed(payment: Payment, event_id: str) -> None:
    payment.webhook_events = [
        {**e, "processed": True} if e.get("event_id") == event_id else e
        for e in payment.webhook_events or []
    ]
