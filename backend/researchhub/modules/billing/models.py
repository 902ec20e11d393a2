"""Billing ledger models.

Payment, Subscription, CreditAccount and ManualPaymentRequest records,
the fixed plan tables, and the single derived-field recompute step that
runs before every persist.
"""

import calendar
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Optional

from sqlalchemy import (
    DateTime, Integer, String, Text, JSON, Boolean, Float, Index, ForeignKey, event,
)
from sqlalchemy.dialects.postgresql import UUID
from sqlalchemy.orm import Mapped, mapped_column, validates
from sqlalchemy.sql import func

from researchhub.core.config import settings
from researchhub.core.database import Base
from researchhub.modules.billing.errors import LedgerValidationError


def utcnow() -> datetime:
    """Timezone-aware current UTC time."""
    return datetime.now(timezone.utc)


class PlanTier(str, Enum):
    """Subscription plan tiers."""
    FREE = "free"
    BASIC = "basic"
    PRO = "pro"
    ENTERPRISE = "enterprise"


class SubscriptionStatus(str, Enum):
    """Subscription status values."""
    TRIALING = "trialing"
    ACTIVE = "active"
    PAST_DUE = "past_due"
    CANCELED = "canceled"
    UNPAID = "unpaid"


class BillingCycle(str, Enum):
    MONTHLY = "monthly"
    YEARLY = "yearly"


class PaymentStatus(str, Enum):
    """Payment status values."""
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"
    CANCELED = "canceled"
    REFUNDED = "refunded"


class PaymentType(str, Enum):
    PAYMENT = "payment"
    SUBSCRIPTION = "subscription"


class RiskLevel(str, Enum):
    """Coarse risk buckets derived from a 0-100 risk score."""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    CRITICAL = "critical"


class FraudReviewStatus(str, Enum):
    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


class DisputeStatus(str, Enum):
    NONE = "none"
    WARNING_NEEDS_RESPONSE = "warning_needs_response"
    WARNING_UNDER_REVIEW = "warning_under_review"
    WARNING_CLOSED = "warning_closed"
    NEEDS_RESPONSE = "needs_response"
    UNDER_REVIEW = "under_review"
    CHARGE_REFUNDED = "charge_refunded"
    WON = "won"
    LOST = "lost"


class UsageLimitType(str, Enum):
    """Metered resources limited by a plan."""
    STUDIES = "studies"
    PARTICIPANTS = "participants"
    RECORDINGS = "recordings"
    STORAGE = "storage"
    COLLABORATORS = "collaborators"
    API_CALLS = "api_calls"


class ManualPaymentStatus(str, Enum):
    PENDING = "pending"
    VERIFIED = "verified"
    REJECTED = "rejected"


class ManualPaymentMethod(str, Enum):
    BANK_TRANSFER = "bank_transfer"
    LOCAL_PAYMENT = "local_payment"
    MANUAL_ADMIN = "manual_admin"


class ManualCurrency(str, Enum):
    SAR = "SAR"
    USD = "USD"


UNLIMITED = -1

# Plan feature table; -1 means unlimited. Storage is in GB.
PLAN_FEATURES = {
    PlanTier.FREE.value: {
        "studies": 1,
        "participants": 50,
        "recordings": 10,
        "storage": 1,
        "collaborators": 1,
        "api_calls": 1000,
        "features": ["basic_analytics", "screen_recording"],
    },
    PlanTier.BASIC.value: {
        "studies": 5,
        "participants": 500,
        "recordings": 100,
        "storage": 10,
        "collaborators": 3,
        "api_calls": 10000,
        "features": ["advanced_analytics", "heatmaps", "screen_recording", "exports"],
    },
    PlanTier.PRO.value: {
        "studies": 25,
        "participants": 2500,
        "recordings": 1000,
        "storage": 100,
        "collaborators": 10,
        "api_calls": 50000,
        "features": ["all_analytics", "white_label", "api_access", "priority_support"],
    },
    PlanTier.ENTERPRISE.value: {
        "studies": UNLIMITED,
        "participants": UNLIMITED,
        "recordings": UNLIMITED,
        "storage": 1000,
        "collaborators": UNLIMITED,
        "api_calls": UNLIMITED,
        "features": ["custom_integrations", "dedicated_support", "sso", "custom_branding"],
    },
}

# Manual (bank transfer) plans. Prices are in SAR.
MANUAL_PLAN_CONFIGS = {
    PlanTier.BASIC.value: {
        "price": 99,
        "currency": ManualCurrency.SAR.value,
        "credits": 1000,
        "features": {
            "max_studies": 5,
            "max_participants": 100,
            "max_recording_minutes": 500,
            "advanced_analytics": False,
            "priority_support": False,
            "custom_branding": False,
        },
    },
    PlanTier.PRO.value: {
        "price": 299,
        "currency": ManualCurrency.SAR.value,
        "credits": 3000,
        "features": {
            "max_studies": 20,
            "max_participants": 500,
            "max_recording_minutes": 2000,
            "advanced_analytics": True,
            "priority_support": True,
            "custom_branding": False,
        },
    },
    PlanTier.ENTERPRISE.value: {
        "price": 999,
        "currency": ManualCurrency.SAR.value,
        "credits": 10000,
        "features": {
            "max_studies": UNLIMITED,
            "max_participants": UNLIMITED,
            "max_recording_minutes": UNLIMITED,
            "advanced_analytics": True,
            "priority_support": True,
            "custom_branding": True,
        },
    },
}


def get_plan_features(plan: str) -> dict:
    """Return the fixed feature table entry for a plan."""
    if plan not in PLAN_FEATURES:
        raise LedgerValidationError(f"Unknown plan: {plan}")
    return PLAN_FEATURES[plan]


def plan_usage_limits(plan: str) -> dict[str, int]:
    """Snapshot of a plan's numeric limits."""
    features = get_plan_features(plan)
    return {limit.value: features[limit.value] for limit in UsageLimitType}


def add_billing_period(start: datetime, billing_cycle: str) -> datetime:
    """Advance a date by one billing cycle, clamping to the month's last day."""
    months = 12 if billing_cycle == BillingCycle.YEARLY.value else 1
    month_index = start.month - 1 + months
    year = start.year + month_index // 12
    month = month_index % 12 + 1
    day = min(start.day, calendar.monthrange(year, month)[1])
    return start.replace(year=year, month=month, day=day)


def empty_usage(now: Optional[datetime] = None) -> dict:
    """Zeroed usage counters."""
    usage = {limit.value: 0 for limit in UsageLimitType}
    usage["last_reset_at"] = (now or utcnow()).isoformat()
    return usage


# Risk score thresholds, highest first.
RISK_THRESHOLDS = [
    (80, RiskLevel.CRITICAL),
    (60, RiskLevel.HIGH),
    (40, RiskLevel.MEDIUM),
]


def classify_risk_score(risk_score: int) -> RiskLevel:
    """Map a 0-100 risk score to its risk level."""
    for threshold, level in RISK_THRESHOLDS:
        if risk_score >= threshold:
            return level
    return RiskLevel.LOW


def _require_non_negative(key: str, value):
    if value is not None and value < 0:
        raise LedgerValidationError(f"{key} must be >= 0, got {value}")
    return value


def _enum_value(enum_cls, key: str, value) -> str:
    try:
        return enum_cls(value).value
    except ValueError:
        raise LedgerValidationError(f"Unknown {key}: {value}")


class Payment(Base):
    """A single charge attempt and everything that happened to it.

    Payments are never deleted; they are the audit trail for money moving in.
    """

    __tablename__ = "payments"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )

    # Ownership
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    subscription_id: Mapped[Optional[uuid.UUID]] = mapped_column(
        UUID(as_uuid=True), ForeignKey("subscriptions.id"), nullable=True, index=True
    )

    # Gateway identifiers
    gateway_payment_intent_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True, index=True
    )
    gateway_charge_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    gateway_customer_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )

    payment_type: Mapped[str] = mapped_column(
        String(50), default=PaymentType.PAYMENT.value, nullable=False
    )
    status: Mapped[str] = mapped_column(
        String(50), default=PaymentStatus.PENDING.value, nullable=False, index=True
    )
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Amounts
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)
    amount_received: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    gateway_fee: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    application_fee: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    net_amount: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)

    # Refunds
    refund_amount: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    refund_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Lifecycle timestamps, each set once by its transition
    attempted_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    refunded_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    # Failure details
    failure_code: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)
    failure_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Retry bookkeeping
    retry_attempts: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    max_retry_attempts: Mapped[int] = mapped_column(Integer, default=3, nullable=False)
    next_retry_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True, index=True
    )
    retry_history: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    retry_claimed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Risk and fraud review
    risk_score: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    risk_level: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)
    fraud_flagged: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    fraud_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    fraud_review_status: Mapped[Optional[str]] = mapped_column(String(20), nullable=True)

    # Disputes
    dispute_status: Mapped[str] = mapped_column(
        String(50), default=DisputeStatus.NONE.value, nullable=False
    )
    dispute_amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    dispute_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Gateway events applied to this payment (replay dedup)
    webhook_events: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    # Optimistic concurrency token
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_payments_user_created", "user_id", "created_at"),
        Index("ix_payments_status_next_retry", "status", "next_retry_at"),
        Index("ix_payments_fraud", "fraud_flagged", "risk_level"),
    )

    def __init__(self, **kwargs):
        kwargs.setdefault("status", PaymentStatus.PENDING.value)
        kwargs.setdefault("payment_type", PaymentType.PAYMENT.value)
        kwargs.setdefault("currency", "USD")
        kwargs.setdefault("amount_received", 0.0)
        kwargs.setdefault("gateway_fee", 0.0)
        kwargs.setdefault("application_fee", 0.0)
        kwargs.setdefault("net_amount", 0.0)
        kwargs.setdefault("refund_amount", 0.0)
        kwargs.setdefault("attempted_at", utcnow())
        kwargs.setdefault("retry_attempts", 0)
        kwargs.setdefault("max_retry_attempts", settings.BILLING_MAX_RETRY_ATTEMPTS)
        kwargs.setdefault("retry_history", [])
        kwargs.setdefault("fraud_flagged", False)
        kwargs.setdefault("dispute_status", DisputeStatus.NONE.value)
        kwargs.setdefault("webhook_events", [])
        kwargs.setdefault("id", uuid.uuid4())
        if "amount" not in kwargs:
            raise LedgerValidationError("Payment amount is required")
        super().__init__(**kwargs)
        self.recompute_derived()

    def __repr__(self) -> str:
        return f"<Payment(id={self.id}, status={self.status}, amount={self.amount})>"

    @validates(
        "amount", "amount_received", "gateway_fee", "application_fee",
        "refund_amount", "retry_attempts", "max_retry_attempts",
    )
    def _validate_non_negative(self, key, value):
        if value is None:
            raise LedgerValidationError(f"{key} is required")
        return _require_non_negative(key, value)

    @validates("attempted_at")
    def _validate_attempted_at(self, key, value):
        if value is None:
            raise LedgerValidationError("attempted_at is required")
        return value

    @validates("status")
    def _validate_status(self, key, value):
        return _enum_value(PaymentStatus, key, value)

    @validates("risk_score")
    def _validate_risk_score(self, key, value):
        if value is None:
            return value
        if not 0 <= value <= 100:
            raise LedgerValidationError(f"risk_score must be within 0..100, got {value}")
        self.risk_level = classify_risk_score(value).value
        if self.fraud_flagged and self.risk_level == RiskLevel.LOW.value:
            self.risk_level = RiskLevel.HIGH.value
        return value

    def recompute_derived(self) -> None:
        """Recompute derived fields and check cross-field invariants."""
        if (self.amount_received or 0) > 0:
            self.net_amount = (
                self.amount_received - (self.gateway_fee or 0) - (self.application_fee or 0)
            )

        if self.risk_score is not None:
            level = classify_risk_score(self.risk_score).value
        else:
            level = self.risk_level
        if self.fraud_flagged and level in (None, RiskLevel.LOW.value):
            level = RiskLevel.HIGH.value
        self.risk_level = level

        if (self.refund_amount or 0) > (self.amount_received or 0):
            raise LedgerValidationError(
                f"refund_amount {self.refund_amount} exceeds amount_received {self.amount_received}"
            )
        if self.paid_at is not None and self.status not in (
            PaymentStatus.SUCCEEDED.value, PaymentStatus.REFUNDED.value,
        ):
            raise LedgerValidationError(
                f"Payment {self.id} has paid_at set but status {self.status}"
            )

    @property
    def is_successful(self) -> bool:
        return self.status == PaymentStatus.SUCCEEDED.value

    @property
    def effective_amount(self) -> float:
        """Amount kept after fees and refunds."""
        return (
            (self.amount_received or 0)
            - (self.gateway_fee or 0)
            - (self.application_fee or 0)
            - (self.refund_amount or 0)
        )

    @property
    def processing_time_seconds(self) -> Optional[int]:
        if not self.paid_at or not self.attempted_at:
            return None
        return int((self.paid_at - self.attempted_at).total_seconds())

    def has_processed_event(self, event_id: Optional[str]) -> bool:
        """Check whether a gateway event was already applied."""
        if not event_id:
            return False
        return any(e.get("event_id") == event_id for e in self.webhook_events or [])


class Subscription(Base):
    """A user's card-billed subscription.

    ``usage_limits`` is a snapshot of the plan table, replaced whenever
    ``plan`` changes. ``current_usage`` is reset only by period rollover.
    """

    __tablename__ = "subscriptions"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, unique=True, index=True
    )

    plan: Mapped[str] = mapped_column(
        String(50), default=PlanTier.FREE.value, nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(
        String(50), default=SubscriptionStatus.ACTIVE.value, nullable=False, index=True
    )

    # Gateway integration
    gateway_customer_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, index=True
    )
    gateway_subscription_id: Mapped[Optional[str]] = mapped_column(
        String(255), nullable=True, unique=True
    )

    # Billing
    billing_cycle: Mapped[str] = mapped_column(
        String(20), default=BillingCycle.MONTHLY.value, nullable=False
    )
    amount: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), default="USD", nullable=False)

    # Timing
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    current_period_start: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False
    )
    current_period_end: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )

    # Trial
    trial_start: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    trial_end: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Usage
    usage_limits: Mapped[dict] = mapped_column(JSON, nullable=False)
    current_usage: Mapped[dict] = mapped_column(JSON, nullable=False)
    usage_history: Mapped[list] = mapped_column(JSON, default=list, nullable=False)

    # Custom feature overrides and add-ons
    features: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    add_ons: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    total_discount: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    renewal_amount: Mapped[float] = mapped_column(Float, default=0.0, nullable=False)
    renewal_date: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )

    # Cancellation
    cancel_at_period_end: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    canceled_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    cancellation_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    # Payment summary
    last_payment_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True), nullable=True
    )
    last_payment_amount: Mapped[Optional[float]] = mapped_column(Float, nullable=True)
    payment_failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        Index("ix_subscriptions_status_plan", "status", "plan"),
    )

    def __init__(self, **kwargs):
        now = utcnow()
        kwargs.setdefault("id", uuid.uuid4())
        kwargs.setdefault("plan", PlanTier.FREE.value)
        kwargs.setdefault("status", SubscriptionStatus.ACTIVE.value)
        kwargs.setdefault("billing_cycle", BillingCycle.MONTHLY.value)
        kwargs.setdefault("amount", 0.0)
        kwargs.setdefault("currency", "USD")
        kwargs.setdefault("start_date", now)
        kwargs.setdefault("current_period_start", kwargs["start_date"])
        kwargs.setdefault(
            "current_period_end",
            add_billing_period(kwargs["current_period_start"], kwargs["billing_cycle"]),
        )
        kwargs.setdefault("current_usage", empty_usage(now))
        kwargs.setdefault("usage_history", [])
        kwargs.setdefault("features", [])
        kwargs.setdefault("add_ons", [])
        kwargs.setdefault("total_discount", 0.0)
        kwargs.setdefault("cancel_at_period_end", False)
        kwargs.setdefault("payment_failure_count", 0)
        limits = kwargs.pop("usage_limits", None)
        super().__init__(**kwargs)
        if limits is not None:
            self.usage_limits = dict(limits)
        self.recompute_derived()

    def __repr__(self) -> str:
        return f"<Subscription(id={self.id}, user={self.user_id}, plan={self.plan})>"

    @validates("plan")
    def _validate_plan(self, key, value):
        # A plan change replaces the limit snapshot wholesale.
        self.usage_limits = plan_usage_limits(value)
        return value

    @validates("status")
    def _validate_status(self, key, value):
        return _enum_value(SubscriptionStatus, key, value)

    @validates("billing_cycle")
    def _validate_billing_cycle(self, key, value):
        return _enum_value(BillingCycle, key, value)

    @validates("amount", "total_discount")
    def _validate_amounts(self, key, value):
        return _require_non_negative(key, value)

    def recompute_derived(self) -> None:
        """Recompute renewal amount/date and check the period invariant."""
        if (
            self.current_period_start is not None
            and self.current_period_end is not None
            and self.current_period_end <= self.current_period_start
        ):
            raise LedgerValidationError(
                "current_period_end must be after current_period_start"
            )
        total = self.amount or 0.0
        for add_on in self.add_ons or []:
            if add_on.get("enabled"):
                total += (add_on.get("amount") or 0) * add_on.get("quantity", 1)
        self.renewal_amount = total - (self.total_discount or 0.0)
        self.renewal_date = self.current_period_end

    def get_plan_features(self) -> dict:
        return PLAN_FEATURES.get(self.plan, PLAN_FEATURES[PlanTier.FREE.value])


class CreditAccount(Base):
    """Credit balance for users on the manual (bank transfer) path.

    ``available_credits`` is always ``max(0, total_credits - used_credits)``.
    """

    __tablename__ = "credit_accounts"

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, unique=True, index=True
    )

    total_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    used_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    available_credits: Mapped[int] = mapped_column(Integer, default=0, nullable=False)

    plan_type: Mapped[str] = mapped_column(String(50), nullable=False)
    plan_start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    plan_end_date: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, index=True
    )
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False, index=True)

    features: Mapped[dict] = mapped_column(JSON, nullable=False)
    payment_history: Mapped[list] = mapped_column(JSON, default=list, nullable=False)
    updated_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __mapper_args__ = {"version_id_col": version}

    def __init__(self, **kwargs):
        kwargs.setdefault("id", uuid.uuid4())
        kwargs.setdefault("total_credits", 0)
        kwargs.setdefault("used_credits", 0)
        kwargs.setdefault("is_active", True)
        kwargs.setdefault("payment_history", [])
        kwargs.pop("available_credits", None)
        super().__init__(**kwargs)
        self.recompute_derived()

    def __repr__(self) -> str:
        return (
            f"<CreditAccount(user={self.user_id}, available={self.available_credits}"
            f"/{self.total_credits})>"
        )

    @validates("total_credits", "used_credits")
    def _validate_credits(self, key, value):
        if value is None:
            raise LedgerValidationError(f"{key} is required")
        return _require_non_negative(key, value)

    def recompute_derived(self) -> None:
        if (
            self.plan_start_date is not None
            and self.plan_end_date is not None
            and self.plan_end_date < self.plan_start_date
        ):
            raise LedgerValidationError("plan_end_date must not precede plan_start_date")
        self.available_credits = max(0, (self.total_credits or 0) - (self.used_credits or 0))

    def is_expired(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) > self.plan_end_date


class ManualPaymentRequest(Base):
    """A user-submitted bank transfer awaiting admin verification."""

    __tablename__ = "manual_payment_requests"

    IMMUTABLE_AFTER_REVIEW = (
        "user_id", "plan_type", "amount", "currency", "payment_method",
        "payment_proof", "reference_number", "bank_details",
        "verified_at", "verified_by", "rejected_at", "rejected_by",
        "rejection_reason", "credits_granted",
    )

    id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), primary_key=True, default=uuid.uuid4
    )
    user_id: Mapped[uuid.UUID] = mapped_column(
        UUID(as_uuid=True), nullable=False, index=True
    )
    plan_type: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    amount: Mapped[float] = mapped_column(Float, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    payment_method: Mapped[str] = mapped_column(String(50), nullable=False)
    payment_proof: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    reference_number: Mapped[str] = mapped_column(
        String(64), nullable=False, unique=True, index=True
    )
    status: Mapped[str] = mapped_column(
        String(20), default=ManualPaymentStatus.PENDING.value, nullable=False, index=True
    )
    bank_details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)
    admin_notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    rejected_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    rejected_by: Mapped[Optional[uuid.UUID]] = mapped_column(UUID(as_uuid=True), nullable=True)
    rejection_reason: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    credits_granted: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)

    version: Mapped[int] = mapped_column(Integer, nullable=False)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now()
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    __mapper_args__ = {"version_id_col": version}

    def __init__(self, **kwargs):
        kwargs.setdefault("id", uuid.uuid4())
        status = kwargs.pop("status", ManualPaymentStatus.PENDING.value)
        super().__init__(status=ManualPaymentStatus.PENDING.value, **kwargs)
        if status != ManualPaymentStatus.PENDING.value:
            self.status = status

    def __repr__(self) -> str:
        return f"<ManualPaymentRequest(ref={self.reference_number}, status={self.status})>"

    @property
    def is_terminal(self) -> bool:
        return self.status in (
            ManualPaymentStatus.VERIFIED.value, ManualPaymentStatus.REJECTED.value,
        )

    @validates(*IMMUTABLE_AFTER_REVIEW)
    def _validate_immutable(self, key, value):
        if self.status is not None and self.is_terminal:
            raise LedgerValidationError(
                f"{key} cannot change after the request was {self.status}"
            )
        if key == "amount":
            if value is None:
                raise LedgerValidationError("amount is required")
            _require_non_negative(key, value)
        if key == "currency":
            return _enum_value(ManualCurrency, key, value)
        if key == "payment_method":
            return _enum_value(ManualPaymentMethod, key, value)
        return value

    @validates("status")
    def _validate_status(self, key, value):
        value = _enum_value(ManualPaymentStatus, key, value)
        if self.status is not None and self.is_terminal and value != self.status:
            raise LedgerValidationError(
                f"Manual payment request already {self.status}"
            )
        return value


def _recompute_before_persist(mapper, connection, target) -> None:
    target.recompute_derived()


for _model in (Payment, Subscription, CreditAccount):
    event.listen(_model, "before_insert", _recompute_before_persist)
    event.listen(_model, "before_update", _recompute_before_persist)
