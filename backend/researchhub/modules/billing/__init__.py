"""Billing module.

Ledger records, usage metering, risk review, payment retries, subscription
lifecycle, the manual credit workflow and the billing facade.
"""

from researchhub.modules.billing.router import router
from researchhub.modules.billing.service import BillingFacade
from researchhub.modules.billing.models import (
    CreditAccount,
    ManualPaymentRequest,
    Payment,
    Subscription,
    PlanTier,
    SubscriptionStatus,
    PaymentStatus,
    UsageLimitType,
    PLAN_FEATURES,
    MANUAL_PLAN_CONFIGS,
)

__all__ = [
    "router",
    "BillingFacade",
    "CreditAccount",
    "ManualPaymentRequest",
    "Payment",
    "Subscription",
    "PlanTier",
    "SubscriptionStatus",
    "PaymentStatus",
    "UsageLimitType",
    "PLAN_FEATURES",
    "MANUAL_PLAN_CONFIGS",
]
