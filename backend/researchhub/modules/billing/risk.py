"""Payment risk classification and fraud review."""

import logging

from researchhub.core.logging import log_info, log_warning
from researchhub.core.metrics import FRAUD_FLAGS_TOTAL
from researchhub.modules.billing.errors import InvalidTransitionError
from researchhub.modules.billing.models import (
    DisputeStatus,
    FraudReviewStatus,
    Payment,
    RiskLevel,
    classify_risk_score,
)

logger = logging.getLogger(__name__)

ALERT_RISK_LEVELS = (RiskLevel.HIGH.value, RiskLevel.CRITICAL.value)


class RiskScorer:
    """Classifies payments by risk score and drives the fraud review hold."""

    @staticmethod
    def classify(risk_score: int) -> RiskLevel:
        """Map a 0-100 score to a risk level."""
        return classify_risk_score(risk_score)

    def set_risk_score(self, payment: Payment, risk_score: int) -> RiskLevel:
        """Store a new score; the level is reclassified on assignment."""
        payment.risk_score = risk_score
        payment.recompute_derived()
        return RiskLevel(payment.risk_level)

    def flag_for_fraud(self, payment: Payment, reason: str) -> None:
        """Put a payment on fraud hold. Payment status is left alone."""
        payment.fraud_flagged = True
        payment.fraud_reason = reason
        payment.fraud_review_status = FraudReviewStatus.PENDING.value
        if payment.risk_level in (None, RiskLevel.LOW.value):
            payment.risk_level = RiskLevel.HIGH.value
        payment.recompute_derived()

        FRAUD_FLAGS_TOTAL.labels(review_status=FraudReviewStatus.PENDING.value).inc()
        log_warning(
            logger,
            "Payment flagged for fraud review",
            payment_id=str(payment.id),
            reason=reason,
            risk_level=payment.risk_level,
        )

    def approve_after_review(self, payment: Payment) -> None:
        """Clear the fraud hold.

        A payment that already failed or was canceled stays that way.
        """
        if payment.fraud_review_status != FraudReviewStatus.PENDING.value:
            raise InvalidTransitionError(
                f"Payment {payment.id} has no pending fraud review"
            )
        payment.fraud_review_status = FraudReviewStatus.APPROVED.value
        payment.fraud_flagged = False

        FRAUD_FLAGS_TOTAL.labels(review_status=FraudReviewStatus.APPROVED.value).inc()
        log_info(logger, "Fraud review approved", payment_id=str(payment.id))

    def decline_after_review(self, payment: Payment) -> None:
        """Confirm the fraud suspicion; the payment stays flagged."""
        if payment.fraud_review_status != FraudReviewStatus.PENDING.value:
            raise InvalidTransitionError(
                f"Payment {payment.id} has no pending fraud review"
            )
        payment.fraud_review_status = FraudReviewStatus.DECLINED.value

        FRAUD_FLAGS_TOTAL.labels(review_status=FraudReviewStatus.DECLINED.value).inc()
        log_warning(logger, "Fraud review declined", payment_id=str(payment.id))


def is_on_fraud_hold(payment: Payment) -> bool:
    """Held payments are treated as neither succeeded nor failed."""
    return bool(payment.fraud_flagged) and payment.fraud_review_status in (
        FraudReviewStatus.PENDING.value,
        FraudReviewStatus.DECLINED.value,
    )


def is_fraud_alert(payment: Payment) -> bool:
    return (
        bool(payment.fraud_flagged)
        or payment.risk_level in ALERT_RISK_LEVELS
        or (payment.dispute_status or DisputeStatus.NONE.value) != DisputeStatus.NONE.value
    )
