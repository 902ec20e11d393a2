"""Pydantic schemas for the billing API and normalized gateway events."""

import uuid
from datetime import datetime
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field

from researchhub.modules.billing.errors import BillingError
from researchhub.modules.billing.models import (
    ManualCurrency,
    ManualPaymentMethod,
    PlanTier,
    UsageLimitType,
)


# ==================== Facade results ====================

class OperationResult(BaseModel):
    """Typed outcome of a facade operation.

    Business-rule failures come back as ``ok=False`` with an error code
    instead of an exception.
    """
    ok: bool
    error_code: Optional[str] = None
    message: Optional[str] = None
    data: dict[str, Any] = Field(default_factory=dict)

    @classmethod
    def success(cls, message: Optional[str] = None, **data: Any) -> "OperationResult":
        return cls(ok=True, message=message, data=data)

    @classmethod
    def failure(cls, error: BillingError) -> "OperationResult":
        return cls(ok=False, error_code=error.error_code, message=error.message)


class LimitCheckResponse(BaseModel):
    """Outcome of a usage limit check."""
    allowed: bool
    remaining: int = Field(..., description="Remaining headroom (-1 for unlimited)")
    percentage: int


class EntitlementSummary(BaseModel):
    """Net entitlement state for one user."""
    user_id: uuid.UUID
    plan: str
    source: Literal["subscription", "credits", "free"]
    status: Optional[str] = None
    usage_percentages: dict[str, int] = Field(default_factory=dict)
    days_remaining: int = 0
    is_trial_active: bool = False
    trial_days_remaining: int = 0
    available_credits: Optional[int] = None


class CanPerformResponse(BaseModel):
    user_id: uuid.UUID
    limit_type: UsageLimitType
    allowed: bool


# ==================== Manual payment schemas ====================

class ManualPaymentSubmit(BaseModel):
    """User submission of a bank transfer."""
    user_id: uuid.UUID
    plan_type: PlanTier = Field(..., description="Manual plan being purchased")
    amount: float = Field(..., gt=0)
    currency: ManualCurrency = ManualCurrency.SAR
    payment_method: Literal["bank_transfer", "local_payment"] = (
        ManualPaymentMethod.BANK_TRANSFER.value
    )
    payment_proof: Optional[str] = Field(None, description="Reference to uploaded proof")


class ManualPaymentSubmitResponse(BaseModel):
    request_id: uuid.UUID
    reference_number: str
    status: str
    bank_details: Optional[dict] = None


class ManualPaymentVerifyRequest(BaseModel):
    admin_notes: Optional[str] = None


class ManualPaymentRejectRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class ManualPaymentRequestResponse(BaseModel):
    """Response schema for a manual payment request."""
    id: uuid.UUID
    user_id: uuid.UUID
    plan_type: str
    amount: float
    currency: str
    payment_method: str
    reference_number: str
    status: str
    admin_notes: Optional[str]
    verified_at: Optional[datetime]
    rejected_at: Optional[datetime]
    rejection_reason: Optional[str]
    credits_granted: Optional[int]

    class Config:
        from_attributes = True


# ==================== Credit schemas ====================

class CreditGrantRequest(BaseModel):
    """Admin grant of credits outside a bank transfer."""
    user_id: uuid.UUID
    credits: int = Field(..., gt=0)
    plan_type: PlanTier = PlanTier.BASIC
    reason: Optional[str] = None


class CreditUseRequest(BaseModel):
    amount: int = Field(..., gt=0)


class CreditAccountResponse(BaseModel):
    """Response schema for a credit account."""
    user_id: uuid.UUID
    total_credits: int
    used_credits: int
    available_credits: int
    plan_type: str
    plan_start_date: datetime
    plan_end_date: datetime
    is_active: bool
    features: dict

    class Config:
        from_attributes = True


# ==================== Fraud review schemas ====================

class FraudFlagRequest(BaseModel):
    reason: str = Field(..., min_length=1)


class PaymentResponse(BaseModel):
    """Response schema for a payment."""
    id: uuid.UUID
    user_id: uuid.UUID
    subscription_id: Optional[uuid.UUID]
    status: str
    amount: float
    currency: str
    amount_received: float
    net_amount: float
    refund_amount: float
    retry_attempts: int
    next_retry_at: Optional[datetime]
    risk_score: Optional[int]
    risk_level: Optional[str]
    fraud_flagged: bool
    fraud_review_status: Optional[str]
    dispute_status: str

    class Config:
        from_attributes = True


# ==================== Normalized gateway events ====================

class ChargeSucceededEvent(BaseModel):
    type: Literal["charge.succeeded"]
    event_id: str
    payment_intent_id: str
    charge_id: str
    amount_received: float = Field(..., ge=0)
    fees: float = Field(0.0, ge=0)
    application_fee: float = Field(0.0, ge=0)


class ChargeFailedEvent(BaseModel):
    type: Literal["charge.failed"]
    event_id: str
    payment_intent_id: str
    failure_code: Optional[str] = None
    failure_message: Optional[str] = None


class ChargeRefundedEvent(BaseModel):
    type: Literal["charge.refunded"]
    event_id: str
    payment_intent_id: str
    refund_amount: float = Field(..., gt=0)
    reason: Optional[str] = None


class SubscriptionUpdatedEvent(BaseModel):
    type: Literal["subscription.updated"]
    event_id: str
    subscription_id: str = Field(..., description="Gateway subscription ID")
    status: Optional[str] = None
    current_period_start: Optional[datetime] = None
    current_period_end: Optional[datetime] = None


GatewayEvent = Annotated[
    Union[
        ChargeSucceededEvent,
        ChargeFailedEvent,
        ChargeRefundedEvent,
        SubscriptionUpdatedEvent,
    ],
    Field(discriminator="type"),
]


class UnknownGatewayEvent(BaseModel):
    """Any event type billing does not act on."""
    type: str
    event_id: Optional[str] = None


class WebhookAck(BaseModel):
    received: bool = True
    duplicate: bool = False
    handled: bool = True
    error_code: Optional[str] = None
