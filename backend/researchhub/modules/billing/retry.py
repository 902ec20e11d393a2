"""Failed-payment retry scheduling with exponential backoff."""

import logging
import math
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from researchhub.core.config import settings
from researchhub.core.logging import log_info, log_warning
from researchhub.core.metrics import RETRIES_EXHAUSTED_TOTAL, RETRIES_SCHEDULED_TOTAL
from researchhub.modules.billing.errors import InvalidTransitionError
from researchhub.modules.billing.models import Payment, PaymentStatus, utcnow

logger = logging.getLogger(__name__)


class RetryPolicy:
    """Backoff configuration for failed charges."""

    def __init__(
        self,
        base_hours: float = 1.0,
        backoff_multiplier: float = 2.0,
    ):
        self.base_hours = base_hours
        self.backoff_multiplier = backoff_multiplier

    def calculate_delay(self, retry_attempts: int) -> timedelta:
        """Delay before the next retry, given the attempts made so far.

        Args:
            retry_attempts: Failed attempts so far, counting the one just made.

        Returns:
            base * multiplier^retry_attempts hours (2h, 4h, 8h by default).
        """
        hours = self.base_hours * math.pow(self.backoff_multiplier, retry_attempts)
        return timedelta(hours=hours)


DEFAULT_POLICY = RetryPolicy(base_hours=settings.BILLING_RETRY_BASE_HOURS)

# A claim older than this belongs to a worker that died mid-retry.
RETRY_CLAIM_TIMEOUT = timedelta(minutes=30)

RETRYABLE_FROM = (
    PaymentStatus.PENDING.value,
    PaymentStatus.PROCESSING.value,
    PaymentStatus.FAILED.value,
)


@dataclass
class RetryDecision:
    retry_attempts: int
    next_retry_at: Optional[datetime]
    exhausted: bool


def backoff_delay(retry_attempts: int, policy: RetryPolicy = DEFAULT_POLICY) -> timedelta:
    return policy.calculate_delay(retry_attempts)


def on_payment_failed(
    payment: Payment,
    failure_code: Optional[str],
    failure_message: Optional[str],
    now: Optional[datetime] = None,
    policy: RetryPolicy = DEFAULT_POLICY,
) -> RetryDecision:
    """Record a failed charge attempt and schedule the next one.

    When the attempt count reaches ``max_retry_attempts`` no retry is
    scheduled and the payment needs manual follow-up.

    Raises:
        InvalidTransitionError: If the payment already succeeded, was
            refunded or was canceled
    """
    now = now or utcnow()
    if payment.status not in RETRYABLE_FROM:
        raise InvalidTransitionError(
            f"Cannot fail payment {payment.id} in status {payment.status}"
        )

    payment.status = PaymentStatus.FAILED.value
    payment.failed_at = now
    payment.failure_code = failure_code
    payment.failure_message = failure_message
    payment.retry_history = [
        *(payment.retry_history or []),
        {
            "attempt_number": payment.retry_attempts + 1,
            "attempted_at": now.isoformat(),
            "status": PaymentStatus.FAILED.value,
            "failure_code": failure_code,
            "failure_reason": failure_message,
        },
    ]
    payment.retry_attempts = payment.retry_attempts + 1
    payment.retry_claimed_at = None

    if payment.retry_attempts < payment.max_retry_attempts:
        payment.next_retry_at = now + policy.calculate_delay(payment.retry_attempts)
        RETRIES_SCHEDULED_TOTAL.inc()
        log_info(
            logger,
            "Payment retry scheduled",
            payment_id=str(payment.id),
            retry_attempts=payment.retry_attempts,
            next_retry_at=payment.next_retry_at.isoformat(),
        )
        return RetryDecision(
            retry_attempts=payment.retry_attempts,
            next_retry_at=payment.next_retry_at,
            exhausted=False,
        )

    payment.next_retry_at = None
    RETRIES_EXHAUSTED_TOTAL.inc()
    log_warning(
        logger,
        "Payment retries exhausted",
        payment_id=str(payment.id),
        retry_attempts=payment.retry_attempts,
        failure_code=failure_code,
    )
    return RetryDecision(
        retry_attempts=payment.retry_attempts,
        next_retry_at=None,
        exhausted=True,
    )


def is_retryable(payment: Payment, now: Optional[datetime] = None) -> bool:
    """Whether the retry worker should pick this payment up now."""
    now = now or utcnow()
    return (
        payment.status == PaymentStatus.FAILED.value
        and payment.retry_attempts < payment.max_retry_attempts
        and payment.next_retry_at is not None
        and payment.next_retry_at <= now
        and not is_claimed(payment, now)
    )


def is_claimed(payment: Payment, now: Optional[datetime] = None) -> bool:
    """Whether a live retry worker currently owns this payment."""
    if payment.retry_claimed_at is None:
        return False
    return payment.retry_claimed_at > (now or utcnow()) - RETRY_CLAIM_TIMEOUT


def idempotency_key(payment: Payment) -> str:
    """Key sent with a retry charge; stable for one attempt number."""
    return f"{payment.id}:{payment.retry_attempts}"


def needs_manual_intervention(payment: Payment) -> bool:
    return (
        payment.status == PaymentStatus.FAILED.value
        and payment.retry_attempts >= payment.max_retry_attempts
    )
