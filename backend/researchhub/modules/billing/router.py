"""API Router for the billing engine.

Entitlement checks, manual payment intake and admin review, credit use,
fraud review and the normalized gateway webhook.
"""

import uuid
from typing import Any, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query, status
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from researchhub.core.database import get_session
from researchhub.modules.billing.models import ManualPaymentStatus, UsageLimitType
from researchhub.modules.billing.schemas import (
    CanPerformResponse,
    CreditGrantRequest,
    CreditUseRequest,
    EntitlementSummary,
    FraudFlagRequest,
    LimitCheckResponse,
    ManualPaymentRejectRequest,
    ManualPaymentRequestResponse,
    ManualPaymentSubmit,
    ManualPaymentSubmitResponse,
    ManualPaymentVerifyRequest,
    OperationResult,
    PaymentResponse,
    WebhookAck,
)
from researchhub.modules.billing.service import BillingFacade
from researchhub.modules.billing.webhooks import WebhookDispatcher, parse_event

router = APIRouter(prefix="/billing", tags=["billing"])

ERROR_STATUS_CODES = {
    "not_found": status.HTTP_404_NOT_FOUND,
    "already_processed": status.HTTP_409_CONFLICT,
    "invalid_transition": status.HTTP_409_CONFLICT,
    "concurrent_modification": status.HTTP_409_CONFLICT,
    "insufficient_credits": status.HTTP_402_PAYMENT_REQUIRED,
    "limit_exceeded": status.HTTP_402_PAYMENT_REQUIRED,
    "fraud_hold": status.HTTP_409_CONFLICT,
}


def get_billing_facade(session: AsyncSession = Depends(get_session)) -> BillingFacade:
    return BillingFacade(session)


def _unwrap(result: OperationResult) -> dict[str, Any]:
    """Return the result payload or raise the matching HTTP error."""
    if result.ok:
        return result.data
    raise HTTPException(
        status_code=ERROR_STATUS_CODES.get(result.error_code, status.HTTP_400_BAD_REQUEST),
        detail={"error_code": result.error_code, "message": result.message},
    )


# ==================== Entitlements ====================

@router.get("/entitlements/{user_id}", response_model=EntitlementSummary)
async def get_entitlement_summary(
    user_id: uuid.UUID,
    facade: BillingFacade = Depends(get_billing_facade),
):
    """Plan, usage percentages, days remaining and trial state for a user."""
    return await facade.get_entitlement_summary(user_id)


@router.get("/entitlements/{user_id}/can-perform/{limit_type}", response_model=CanPerformResponse)
async def can_perform(
    user_id: uuid.UUID,
    limit_type: UsageLimitType,
    current: Optional[int] = Query(None, ge=0, description="Caller-owned usage for credit plans"),
    facade: BillingFacade = Depends(get_billing_facade),
):
    allowed = await facade.can_perform(user_id, limit_type, current)
    return CanPerformResponse(user_id=user_id, limit_type=limit_type, allowed=allowed)


@router.get("/entitlements/{user_id}/limits/{limit_type}", response_model=LimitCheckResponse)
async def check_limit(
    user_id: uuid.UUID,
    limit_type: UsageLimitType,
    current: Optional[int] = Query(None, ge=0),
    facade: BillingFacade = Depends(get_billing_facade),
):
    result = await facade.check_limit(user_id, limit_type, current)
    return LimitCheckResponse(
        allowed=result.allowed, remaining=result.remaining, percentage=result.percentage
    )


@router.post("/usage/{user_id}/{limit_type}")
async def increment_usage(
    user_id: uuid.UUID,
    limit_type: UsageLimitType,
    amount: int = Query(1, ge=1),
    enforce: bool = Query(False, description="Reject the increment when the limit is reached"),
    facade: BillingFacade = Depends(get_billing_facade),
):
    return _unwrap(await facade.increment_usage(user_id, limit_type, amount, enforce))


# ==================== Manual payments ====================

@router.post(
    "/manual-payments",
    response_model=ManualPaymentSubmitResponse,
    status_code=status.HTTP_201_CREATED,
)
async def submit_manual_payment(
    data: ManualPaymentSubmit,
    facade: BillingFacade = Depends(get_billing_facade),
):
    """Submit a bank transfer for admin verification."""
    result = _unwrap(
        await facade.submit_manual_payment(
            user_id=data.user_id,
            plan_type=data.plan_type.value,
            amount=data.amount,
            currency=data.currency.value,
            payment_method=data.payment_method,
            payment_proof=data.payment_proof,
        )
    )
    return ManualPaymentSubmitResponse(**result)


@router.get("/admin/manual-payments", response_model=list[ManualPaymentRequestResponse])
async def list_manual_payments(
    request_status: ManualPaymentStatus = Query(ManualPaymentStatus.PENDING, alias="status"),
    limit: int = Query(50, ge=1, le=200),
    offset: int = Query(0, ge=0),
    x_admin_id: uuid.UUID = Header(...),
    facade: BillingFacade = Depends(get_billing_facade),
):
    return await facade.manual_requests.list_by_status(request_status.value, limit, offset)


@router.post("/admin/manual-payments/{request_id}/verify")
async def verify_manual_payment(
    request_id: uuid.UUID,
    data: Optional[ManualPaymentVerifyRequest] = None,
    x_admin_id: uuid.UUID = Header(...),
    facade: BillingFacade = Depends(get_billing_facade),
):
    """Verify a transfer and credit the user's account."""
    notes = data.admin_notes if data else None
    return _unwrap(await facade.admin_verify_manual_payment(request_id, x_admin_id, notes))


@router.post("/admin/manual-payments/{request_id}/reject")
async def reject_manual_payment(
    request_id: uuid.UUID,
    data: ManualPaymentRejectRequest,
    x_admin_id: uuid.UUID = Header(...),
    facade: BillingFacade = Depends(get_billing_facade),
):
    return _unwrap(await facade.admin_reject_manual_payment(request_id, x_admin_id, data.reason))


@router.patch("/admin/manual-payments/{request_id}/notes")
async def update_manual_payment_notes(
    request_id: uuid.UUID,
    data: ManualPaymentVerifyRequest,
    x_admin_id: uuid.UUID = Header(...),
    facade: BillingFacade = Depends(get_billing_facade),
):
    return _unwrap(await facade.admin_update_manual_payment_notes(request_id, data.admin_notes))


# ==================== Credits ====================

@router.post("/admin/credits/grant")
async def grant_credits(
    data: CreditGrantRequest,
    x_admin_id: uuid.UUID = Header(...),
    facade: BillingFacade = Depends(get_billing_facade),
):
    return _unwrap(
        await facade.admin_grant_credits(
            data.user_id, data.credits, data.plan_type.value, x_admin_id, data.reason
        )
    )


@router.post("/credits/{user_id}/use")
async def use_credits(
    user_id: uuid.UUID,
    data: CreditUseRequest,
    facade: BillingFacade = Depends(get_billing_facade),
):
    return _unwrap(await facade.use_credits(user_id, data.amount))


# ==================== Payments and fraud review ====================

@router.post("/payments/{payment_id}/cancel")
async def cancel_payment(
    payment_id: uuid.UUID,
    user_id: uuid.UUID = Query(...),
    facade: BillingFacade = Depends(get_billing_facade),
):
    return _unwrap(await facade.cancel_payment(payment_id, user_id))


@router.get("/admin/fraud-alerts", response_model=list[PaymentResponse])
async def get_fraud_alerts(
    limit: int = Query(100, ge=1, le=500),
    x_admin_id: uuid.UUID = Header(...),
    facade: BillingFacade = Depends(get_billing_facade),
):
    """Flagged, high-risk or disputed payments."""
    return await facade.get_fraud_alerts(limit)


@router.post("/admin/payments/{payment_id}/fraud/flag")
async def flag_payment(
    payment_id: uuid.UUID,
    data: FraudFlagRequest,
    x_admin_id: uuid.UUID = Header(...),
    facade: BillingFacade = Depends(get_billing_facade),
):
    return _unwrap(await facade.flag_payment_for_fraud(payment_id, data.reason))


@router.post("/admin/payments/{payment_id}/fraud/approve")
async def approve_payment(
    payment_id: uuid.UUID,
    x_admin_id: uuid.UUID = Header(...),
    facade: BillingFacade = Depends(get_billing_facade),
):
    return _unwrap(await facade.approve_payment_review(payment_id))


@router.post("/admin/payments/{payment_id}/fraud/decline")
async def decline_payment(
    payment_id: uuid.UUID,
    x_admin_id: uuid.UUID = Header(...),
    facade: BillingFacade = Depends(get_billing_facade),
):
    return _unwrap(await facade.decline_payment_review(payment_id))


# ==================== Gateway webhook ====================

@router.post("/webhooks/gateway", response_model=WebhookAck)
async def gateway_webhook(
    payload: dict[str, Any] = Body(...),
    facade: BillingFacade = Depends(get_billing_facade),
):
    """Normalized gateway events. Always acknowledged so delivery stops."""
    try:
        event = parse_event(payload)
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_422_UNPROCESSABLE_ENTITY,
            detail={"error_code": "invalid_event", "message": str(e)},
        )
    dispatcher = WebhookDispatcher(facade)
    return await dispatcher.dispatch(event)
