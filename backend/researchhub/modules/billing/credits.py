"""Manual bank-transfer payments and credit accounts.

This path never touches the card gateway, retries or fraud review. An admin
verifies the transfer proof and the user's credit account is topped up.
"""

import logging
import math
import secrets
import string
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from researchhub.core.config import settings
from researchhub.core.logging import log_info, log_warning
from researchhub.core.metrics import (
    CREDITS_GRANTED_TOTAL,
    CREDITS_USED_TOTAL,
    MANUAL_PAYMENTS_TOTAL,
)
from researchhub.modules.billing.errors import (
    InsufficientCreditsError,
    LedgerValidationError,
    PaymentRequestAlreadyProcessedError,
)
from researchhub.modules.billing.models import (
    MANUAL_PLAN_CONFIGS,
    CreditAccount,
    ManualCurrency,
    ManualPaymentMethod,
    ManualPaymentRequest,
    ManualPaymentStatus,
    utcnow,
)

logger = logging.getLogger(__name__)

_BASE36_DIGITS = string.digits + string.ascii_uppercase
_REFERENCE_SUFFIX_ALPHABET = string.digits + string.ascii_uppercase

USER_PAYMENT_METHODS = (
    ManualPaymentMethod.BANK_TRANSFER.value,
    ManualPaymentMethod.LOCAL_PAYMENT.value,
)


@dataclass
class VerificationResult:
    request: ManualPaymentRequest
    account: CreditAccount
    credits_added: int


def _to_base36(value: int) -> str:
    if value == 0:
        return "0"
    digits = []
    while value:
        value, remainder = divmod(value, 36)
        digits.append(_BASE36_DIGITS[remainder])
    return "".join(reversed(digits))


def generate_reference_number(now: Optional[datetime] = None) -> str:
    """Build a ``PAY-<base36 ms timestamp>-<6 random chars>`` reference."""
    now = now or utcnow()
    timestamp_ms = int(now.timestamp() * 1000)
    suffix = "".join(secrets.choice(_REFERENCE_SUFFIX_ALPHABET) for _ in range(6))
    return f"PAY-{_to_base36(timestamp_ms)}-{suffix}"


def get_manual_plan_config(plan_type: str) -> dict:
    if plan_type not in MANUAL_PLAN_CONFIGS:
        raise LedgerValidationError(f"Unknown manual plan: {plan_type}")
    return MANUAL_PLAN_CONFIGS[plan_type]


def get_bank_details(currency: str) -> dict:
    return dict(settings.BILLING_BANK_DETAILS.get(currency, {}))


def create_request(
    user_id: uuid.UUID,
    plan_type: str,
    amount: float,
    currency: str,
    payment_method: str,
    payment_proof: Optional[str] = None,
    now: Optional[datetime] = None,
) -> ManualPaymentRequest:
    """Create a pending manual payment request for a user."""
    get_manual_plan_config(plan_type)
    if amount is None or amount <= 0:
        raise LedgerValidationError(f"Manual payment amount must be > 0, got {amount}")
    currency = ManualCurrency(currency).value
    if payment_method not in USER_PAYMENT_METHODS:
        raise LedgerValidationError(f"Unsupported payment method: {payment_method}")

    request = ManualPaymentRequest(
        user_id=user_id,
        plan_type=plan_type,
        amount=amount,
        currency=currency,
        payment_method=payment_method,
        payment_proof=payment_proof,
        reference_number=generate_reference_number(now),
        bank_details=get_bank_details(currency),
    )
    MANUAL_PAYMENTS_TOTAL.labels(status=ManualPaymentStatus.PENDING.value).inc()
    log_info(
        logger,
        "Manual payment submitted",
        user_id=str(user_id),
        reference_number=request.reference_number,
        plan_type=plan_type,
        amount=amount,
        currency=currency,
    )
    return request


def credits_for_request(request: ManualPaymentRequest) -> int:
    """Credits granted for a verified transfer."""
    return int(math.floor(request.amount * settings.BILLING_CREDITS_PER_UNIT))


def _ensure_account_plan(
    account: Optional[CreditAccount],
    user_id: uuid.UUID,
    plan_type: str,
    admin_id: Optional[uuid.UUID],
    now: datetime,
) -> CreditAccount:
    """Create the account if needed and extend its plan window."""
    config = get_manual_plan_config(plan_type)
    plan_days = timedelta(days=settings.BILLING_MANUAL_PLAN_DAYS)

    if account is None:
        return CreditAccount(
            user_id=user_id,
            plan_type=plan_type,
            plan_start_date=now,
            plan_end_date=now + plan_days,
            is_active=True,
            features=dict(config["features"]),
            updated_by=admin_id,
        )

    if account.user_id != user_id:
        raise LedgerValidationError(
            f"Credit account {account.id} does not belong to user {user_id}"
        )
    window_start = max(account.plan_end_date, now) if account.is_active else now
    if not account.is_active or account.plan_end_date < now:
        account.plan_start_date = now
    account.plan_end_date = window_start + plan_days
    account.plan_type = plan_type
    account.features = dict(config["features"])
    account.is_active = True
    account.updated_by = admin_id
    return account


def add_credits(
    account: CreditAccount,
    credits: int,
    payment_request_id: uuid.UUID,
    admin_id: Optional[uuid.UUID],
    now: Optional[datetime] = None,
) -> None:
    """Add credits tied to one manual payment request.

    Raises:
        PaymentRequestAlreadyProcessedError: If the request already credited
            this account
    """
    if credits < 0:
        raise LedgerValidationError(f"Credits to add must be >= 0, got {credits}")
    request_key = str(payment_request_id)
    if any(e.get("payment_request_id") == request_key for e in account.payment_history or []):
        raise PaymentRequestAlreadyProcessedError(payment_request_id, "credited")

    account.total_credits = account.total_credits + credits
    account.payment_history = [
        *(account.payment_history or []),
        {
            "payment_request_id": request_key,
            "credits_added": credits,
            "added_at": (now or utcnow()).isoformat(),
            "added_by": str(admin_id) if admin_id else None,
        },
    ]
    account.updated_by = admin_id
    account.recompute_derived()


def use_credits(account: CreditAccount, amount: int) -> int:
    """Spend credits; nothing changes when the balance is too low.

    Returns:
        Remaining available credits
    """
    if amount <= 0:
        raise LedgerValidationError(f"Credits to use must be > 0, got {amount}")
    account.recompute_derived()
    if account.available_credits < amount:
        raise InsufficientCreditsError(requested=amount, available=account.available_credits)

    account.used_credits = account.used_credits + amount
    account.recompute_derived()
    CREDITS_USED_TOTAL.inc(amount)
    return account.available_credits


class ManualCreditWorkflow:
    """Admin review of manual payment requests."""

    def verify(
        self,
        request: ManualPaymentRequest,
        account: Optional[CreditAccount],
        admin_id: uuid.UUID,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> VerificationResult:
        """Verify a pending request and credit the user's account.

        Args:
            request: The pending request
            account: The user's credit account, or None to create one
            admin_id: Verifying admin
            notes: Optional admin notes

        Raises:
            PaymentRequestAlreadyProcessedError: If the request was already
                verified or rejected
        """
        now = now or utcnow()
        if request.status != ManualPaymentStatus.PENDING.value:
            raise PaymentRequestAlreadyProcessedError(request.id, request.status)

        credits = credits_for_request(request)
        account = _ensure_account_plan(account, request.user_id, request.plan_type, admin_id, now)
        add_credits(account, credits, request.id, admin_id, now)

        request.verified_at = now
        request.verified_by = admin_id
        request.credits_granted = credits
        if notes is not None:
            request.admin_notes = notes
        request.status = ManualPaymentStatus.VERIFIED.value

        CREDITS_GRANTED_TOTAL.labels(source="manual_payment").inc(credits)
        MANUAL_PAYMENTS_TOTAL.labels(status=ManualPaymentStatus.VERIFIED.value).inc()
        log_info(
            logger,
            "Manual payment verified",
            request_id=str(request.id),
            reference_number=request.reference_number,
            admin_id=str(admin_id),
            credits_added=credits,
        )
        return VerificationResult(request=request, account=account, credits_added=credits)

    def reject(
        self,
        request: ManualPaymentRequest,
        admin_id: uuid.UUID,
        reason: str,
        now: Optional[datetime] = None,
    ) -> ManualPaymentRequest:
        if request.status != ManualPaymentStatus.PENDING.value:
            raise PaymentRequestAlreadyProcessedError(request.id, request.status)
        if not reason or not reason.strip():
            raise LedgerValidationError("A rejection reason is required")

        request.rejected_at = now or utcnow()
        request.rejected_by = admin_id
        request.rejection_reason = reason
        request.status = ManualPaymentStatus.REJECTED.value

        MANUAL_PAYMENTS_TOTAL.labels(status=ManualPaymentStatus.REJECTED.value).inc()
        log_info(
            logger,
            "Manual payment rejected",
            request_id=str(request.id),
            admin_id=str(admin_id),
            reason=reason,
        )
        return request

    @staticmethod
    def update_admin_notes(request: ManualPaymentRequest, notes: Optional[str]) -> None:
        request.admin_notes = notes

    def grant_credits(
        self,
        account: Optional[CreditAccount],
        user_id: uuid.UUID,
        credits: int,
        plan_type: str,
        admin_id: uuid.UUID,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> VerificationResult:
        """Grant credits directly, recording a verified zero-amount request."""
        now = now or utcnow()
        if credits <= 0:
            raise LedgerValidationError(f"Credits to grant must be > 0, got {credits}")

        request = ManualPaymentRequest(
            user_id=user_id,
            plan_type=plan_type,
            amount=0,
            currency=ManualCurrency.SAR.value,
            payment_method=ManualPaymentMethod.MANUAL_ADMIN.value,
            reference_number=generate_reference_number(now),
            admin_notes=reason,
        )
        account = _ensure_account_plan(account, user_id, plan_type, admin_id, now)
        add_credits(account, credits, request.id, admin_id, now)

        request.verified_at = now
        request.verified_by = admin_id
        request.credits_granted = credits
        request.status = ManualPaymentStatus.VERIFIED.value

        CREDITS_GRANTED_TOTAL.labels(source="admin_grant").inc(credits)
        log_warning(
            logger,
            "Credits granted by admin",
            user_id=str(user_id),
            admin_id=str(admin_id),
            credits_added=credits,
            reason=reason,
        )
        return VerificationResult(request=request, account=account, credits_added=credits)
