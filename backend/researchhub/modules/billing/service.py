"""Billing facade: the single entry point the rest of the platform calls.

Each mutating operation runs as one unit of work. Records are loaded with a
row lock, changed through the domain modules, and committed together.
Business-rule failures come back as ``OperationResult`` values; ledger
validation errors propagate.
"""

import logging
import uuid
from contextlib import asynccontextmanager
from datetime import datetime
from typing import Optional

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm.exc import StaleDataError

from researchhub.core.config import settings
from researchhub.core.logging import log_error, log_info, log_warning
from researchhub.core.metrics import PAYMENTS_TOTAL, WEBHOOK_REPLAYS_TOTAL
from researchhub.modules.billing import ledger
from researchhub.modules.billing.credits import (
    ManualCreditWorkflow,
    create_request,
    use_credits,
)
from researchhub.modules.billing.errors import (
    ConcurrentModificationError,
    GatewayError,
    GatewayTimeoutError,
    InsufficientCreditsError,
    InvalidTransitionError,
    PaymentRequestAlreadyProcessedError,
    RecordNotFoundError,
    UsageLimitExceededError,
)
from researchhub.modules.billing.gateway import (
    ChargeGateway,
    ChargeRequest,
    ChargeResult,
    HttpChargeGateway,
)
from researchhub.modules.billing.lifecycle import (
    SubscriptionLifecycle,
    can_transition,
    days_remaining,
    is_trial_active,
    trial_days_remaining,
)
from researchhub.modules.billing.metering import (
    LimitCheck,
    UsageMeter,
    check_credit_feature,
    check_limit,
)
from researchhub.modules.billing.models import (
    Payment,
    PaymentStatus,
    PlanTier,
    Subscription,
    SubscriptionStatus,
    UsageLimitType,
    plan_usage_limits,
    utcnow,
)
from researchhub.modules.billing.repository import (
    CreditAccountRepository,
    ManualPaymentRequestRepository,
    PaymentRepository,
    SubscriptionRepository,
)
from researchhub.modules.billing.retry import idempotency_key, on_payment_failed
from researchhub.modules.billing.risk import RiskScorer, is_fraud_alert, is_on_fraud_hold
from researchhub.modules.billing.schemas import EntitlementSummary, OperationResult

logger = logging.getLogger(__name__)

# Expected control flow, returned to callers as failed results.
BUSINESS_ERRORS = (
    InsufficientCreditsError,
    PaymentRequestAlreadyProcessedError,
    UsageLimitExceededError,
    RecordNotFoundError,
    InvalidTransitionError,
    ConcurrentModificationError,
)

# Subscription states whose limits govern entitlement.
ENTITLED_SUBSCRIPTION_STATES = (
    SubscriptionStatus.TRIALING.value,
    SubscriptionStatus.ACTIVE.value,
    SubscriptionStatus.PAST_DUE.value,
)

CHARGE_SUCCEEDED = "charge.succeeded"
CHARGE_FAILED = "charge.failed"
CHARGE_REFUNDED = "charge.refunded"


class BillingFacade:
    """Entry point for entitlement checks and every billing mutation."""

    def __init__(
        self,
        session: AsyncSession,
        payments: Optional[PaymentRepository] = None,
        subscriptions: Optional[SubscriptionRepository] = None,
        credit_accounts: Optional[CreditAccountRepository] = None,
        manual_requests: Optional[ManualPaymentRequestRepository] = None,
        gateway: Optional[ChargeGateway] = None,
    ):
        self.session = session
        self.payments = payments or PaymentRepository(session)
        self.subscriptions = subscriptions or SubscriptionRepository(session)
        self.credit_accounts = credit_accounts or CreditAccountRepository(session)
        self.manual_requests = manual_requests or ManualPaymentRequestRepository(session)
        self.gateway = gateway
        self.meter = UsageMeter()
        self.lifecycle = SubscriptionLifecycle(self.meter)
        self.risk = RiskScorer()
        self.credit_workflow = ManualCreditWorkflow()

    @asynccontextmanager
    async def _unit_of_work(self):
        """Commit on success, roll back on any error."""
        try:
            yield
            await self.session.commit()
        except StaleDataError as e:
            await self.session.rollback()
            raise ConcurrentModificationError(
                "Record was modified concurrently, please retry"
            ) from e
        except Exception:
            await self.session.rollback()
            raise

    async def _get_payment(self, payment_id: uuid.UUID) -> Payment:
        payment = await self.payments.get_by_id(payment_id, for_update=True)
        if payment is None:
            raise RecordNotFoundError(f"Payment {payment_id} not found")
        return payment

    async def _linked_subscription(self, payment: Payment) -> Optional[Subscription]:
        if payment.subscription_id is None:
            return None
        return await self.subscriptions.get_by_id(payment.subscription_id, for_update=True)

    # ==================== Entitlements ====================

    async def _resolve_entitlement(
        self, user_id: uuid.UUID, now: datetime
    ) -> tuple[str, Optional[object]]:
        """Pick the entitlement path that governs a user right now."""
        subscription = await self.subscriptions.get_by_user_id(user_id)
        if subscription and subscription.status in ENTITLED_SUBSCRIPTION_STATES:
            return "subscription", subscription

        account = await self.credit_accounts.get_by_user_id(user_id)
        if account and account.is_active and not account.is_expired(now):
            return "credits", account

        return "free", None

    async def check_limit(
        self,
        user_id: uuid.UUID,
        limit_type: UsageLimitType,
        current: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> LimitCheck:
        """Check one usage type for a user.

        ``current`` is only used on the credit path, where usage counters are
        owned by the caller.
        """
        now = now or utcnow()
        source, record = await self._resolve_entitlement(user_id, now)
        if source == "subscription":
            return self.meter.check_limit(record, limit_type)
        if source == "credits":
            return check_credit_feature(record, limit_type, current or 0, now)
        free_limit = plan_usage_limits(PlanTier.FREE.value)[UsageLimitType(limit_type).value]
        return check_limit(free_limit, current or 0)

    async def can_perform(
        self,
        user_id: uuid.UUID,
        limit_type: UsageLimitType,
        current: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        result = await self.check_limit(user_id, limit_type, current, now)
        return result.allowed

    async def increment_usage(
        self,
        user_id: uuid.UUID,
        limit_type: UsageLimitType,
        amount: int = 1,
        enforce: bool = False,
    ) -> OperationResult:
        """Count usage against the user's subscription.

        The meter itself never blocks; with ``enforce`` the limit is checked
        under the same row lock first. Credit-path users have no counters
        here; the call is acknowledged without tracking.
        """
        try:
            async with self._unit_of_work():
                subscription = await self.subscriptions.get_by_user_id(user_id, for_update=True)
                if subscription and subscription.status in ENTITLED_SUBSCRIPTION_STATES:
                    if enforce and not self.meter.check_limit(subscription, limit_type).allowed:
                        raise UsageLimitExceededError(
                            f"{UsageLimitType(limit_type).value} limit reached for plan {subscription.plan}"
                        )
                    value = self.meter.increment_usage(subscription, limit_type, amount)
                    return OperationResult.success(tracked=True, usage=value)

                account = await self.credit_accounts.get_by_user_id(user_id)
                if account is not None:
                    return OperationResult.success(tracked=False)
                raise RecordNotFoundError(f"User {user_id} has no subscription")
        except BUSINESS_ERRORS as e:
            return OperationResult.failure(e)

    async def get_entitlement_summary(
        self, user_id: uuid.UUID, now: Optional[datetime] = None
    ) -> EntitlementSummary:
        now = now or utcnow()
        source, record = await self._resolve_entitlement(user_id, now)

        if source == "subscription":
            return EntitlementSummary(
                user_id=user_id,
                plan=record.plan,
                source=source,
                status=record.status,
                usage_percentages=self.meter.usage_percentages(record),
                days_remaining=days_remaining(record, now),
                is_trial_active=is_trial_active(record, now),
                trial_days_remaining=trial_days_remaining(record, now),
            )
        if source == "credits":
            remaining = max(0, (record.plan_end_date - now).days)
            return EntitlementSummary(
                user_id=user_id,
                plan=record.plan_type,
                source=source,
                status="active",
                days_remaining=remaining,
                available_credits=record.available_credits,
            )
        return EntitlementSummary(user_id=user_id, plan=PlanTier.FREE.value, source=source)

    # ==================== Card payments ====================

    async def record_success(
        self,
        payment_id: uuid.UUID,
        charge_id: str,
        amount_received: float,
        fees: float = 0.0,
        application_fee: float = 0.0,
        event_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """Apply a successful charge.

        Idempotent on the charge id and on the gateway event id. A payment
        held for fraud review is not completed; the charge is stored and
        applied if the review is approved.
        """
        now = now or utcnow()
        charge_key = f"{CHARGE_SUCCEEDED}:{charge_id}"
        dedup_key = event_id or charge_key
        try:
            async with self._unit_of_work():
                payment = await self._get_payment(payment_id)

                if payment.has_processed_event(dedup_key) or payment.has_processed_event(charge_key):
                    WEBHOOK_REPLAYS_TOTAL.labels(event_type=CHARGE_SUCCEEDED).inc()
                    return OperationResult.success(
                        "Event already processed",
                        payment_id=str(payment.id),
                        status=payment.status,
                        duplicate=True,
                    )

                if is_on_fraud_hold(payment):
                    ledger.add_webhook_event(
                        payment,
                        CHARGE_SUCCEEDED,
                        dedup_key,
                        processed=False,
                        payload={
                            "charge_id": charge_id,
                            "amount_received": amount_received,
                            "gateway_fee": fees,
                            "application_fee": application_fee,
                        },
                        now=now,
                    )
                    log_warning(
                        logger,
                        "Charge held for fraud review",
                        payment_id=str(payment.id),
                        charge_id=charge_id,
                    )
                    return OperationResult(
                        ok=False,
                        error_code="fraud_hold",
                        message="Payment is held for fraud review",
                        data={"payment_id": str(payment.id)},
                    )

                outcome = ledger.mark_succeeded(
                    payment, charge_id, amount_received, fees, application_fee, now
                )
                ledger.add_webhook_event(payment, CHARGE_SUCCEEDED, dedup_key, now=now)
                if dedup_key != charge_key:
                    ledger.add_webhook_event(payment, CHARGE_SUCCEEDED, charge_key, now=now)
                if outcome.duplicate:
                    WEBHOOK_REPLAYS_TOTAL.labels(event_type=CHARGE_SUCCEEDED).inc()
                else:
                    PAYMENTS_TOTAL.labels(outcome="succeeded").inc()
                    subscription = await self._linked_subscription(payment)
                    if subscription is not None:
                        self.lifecycle.record_payment(subscription, amount_received, now)

                return OperationResult.success(
                    payment_id=str(payment.id),
                    status=payment.status,
                    net_amount=payment.net_amount,
                    duplicate=outcome.duplicate,
                )
        except BUSINESS_ERRORS as e:
            return OperationResult.failure(e)

    def _apply_failure_to_subscription(
        self, subscription: Optional[Subscription], exhausted: bool
    ) -> None:
        if subscription is None:
            return
        if exhausted:
            if can_transition(subscription.status, SubscriptionStatus.UNPAID.value):
                self.lifecycle.mark_unpaid(subscription)
        elif subscription.status in (
            SubscriptionStatus.ACTIVE.value, SubscriptionStatus.TRIALING.value,
        ):
            self.lifecycle.mark_past_due(subscription)
        elif subscription.status == SubscriptionStatus.PAST_DUE.value:
            subscription.payment_failure_count = (subscription.payment_failure_count or 0) + 1

    async def record_failure(
        self,
        payment_id: uuid.UUID,
        failure_code: Optional[str],
        failure_message: Optional[str],
        event_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """Record a failed charge and schedule its retry.

        A payment held for fraud review is left as it is; the failure is
        stored and applied if the review is approved.
        """
        now = now or utcnow()
        try:
            async with self._unit_of_work():
                payment = await self._get_payment(payment_id)

                if event_id and payment.has_processed_event(event_id):
                    WEBHOOK_REPLAYS_TOTAL.labels(event_type=CHARGE_FAILED).inc()
                    return OperationResult.success(
                        "Event already processed",
                        payment_id=str(payment.id),
                        status=payment.status,
                        duplicate=True,
                    )

                if is_on_fraud_hold(payment):
                    ledger.add_webhook_event(
                        payment,
                        CHARGE_FAILED,
                        event_id or f"{CHARGE_FAILED}:{now.isoformat()}",
                        processed=False,
                        payload={"failure_code": failure_code, "failure_message": failure_message},
                        now=now,
                    )
                    log_warning(
                        logger,
                        "Charge failure held for fraud review",
                        payment_id=str(payment.id),
                        failure_code=failure_code,
                    )
                    return OperationResult(
                        ok=False,
                        error_code="fraud_hold",
                        message="Payment is held for fraud review",
                        data={"payment_id": str(payment.id)},
                    )

                decision = on_payment_failed(payment, failure_code, failure_message, now)
                if event_id:
                    ledger.add_webhook_event(payment, CHARGE_FAILED, event_id, now=now)
                PAYMENTS_TOTAL.labels(outcome="failed").inc()

                subscription = await self._linked_subscription(payment)
                self._apply_failure_to_subscription(subscription, decision.exhausted)

                return OperationResult.success(
                    payment_id=str(payment.id),
                    status=payment.status,
                    retry_attempts=decision.retry_attempts,
                    next_retry_at=decision.next_retry_at,
                    exhausted=decision.exhausted,
                    duplicate=False,
                )
        except BUSINESS_ERRORS as e:
            return OperationResult.failure(e)

    async def record_refund(
        self,
        payment_id: uuid.UUID,
        amount: float,
        reason: Optional[str] = None,
        event_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """Add a refund; a full refund ends the linked subscription."""
        now = now or utcnow()
        try:
            async with self._unit_of_work():
                payment = await self._get_payment(payment_id)

                if event_id and payment.has_processed_event(event_id):
                    WEBHOOK_REPLAYS_TOTAL.labels(event_type=CHARGE_REFUNDED).inc()
                    return OperationResult.success(
                        "Event already processed",
                        payment_id=str(payment.id),
                        status=payment.status,
                        duplicate=True,
                    )

                outcome = ledger.process_refund(payment, amount, reason, now)
                if event_id:
                    ledger.add_webhook_event(payment, CHARGE_REFUNDED, event_id, now=now)
                PAYMENTS_TOTAL.labels(outcome="refunded").inc()

                subscription_canceled = False
                if outcome.fully_refunded:
                    subscription = await self._linked_subscription(payment)
                    if (
                        subscription is not None
                        and subscription.status != SubscriptionStatus.CANCELED.value
                    ):
                        self.lifecycle.cancel(
                            subscription, reason="Payment fully refunded", immediate=True, now=now
                        )
                        subscription_canceled = True

                return OperationResult.success(
                    payment_id=str(payment.id),
                    status=payment.status,
                    refund_amount=outcome.refund_amount,
                    fully_refunded=outcome.fully_refunded,
                    subscription_canceled=subscription_canceled,
                    duplicate=False,
                )
        except BUSINESS_ERRORS as e:
            return OperationResult.failure(e)

    async def cancel_payment(
        self, payment_id: uuid.UUID, user_id: uuid.UUID
    ) -> OperationResult:
        try:
            async with self._unit_of_work():
                payment = await self._get_payment(payment_id)
                if payment.user_id != user_id:
                    raise RecordNotFoundError(f"Payment {payment_id} not found")
                ledger.cancel_payment(payment)
                return OperationResult.success(payment_id=str(payment.id), status=payment.status)
        except BUSINESS_ERRORS as e:
            return OperationResult.failure(e)

    # ==================== Fraud review ====================

    async def set_payment_risk_score(
        self, payment_id: uuid.UUID, risk_score: int
    ) -> OperationResult:
        try:
            async with self._unit_of_work():
                payment = await self._get_payment(payment_id)
                level = self.risk.set_risk_score(payment, risk_score)
                return OperationResult.success(
                    payment_id=str(payment.id), risk_score=risk_score, risk_level=level.value
                )
        except BUSINESS_ERRORS as e:
            return OperationResult.failure(e)

    async def flag_payment_for_fraud(
        self, payment_id: uuid.UUID, reason: str
    ) -> OperationResult:
        try:
            async with self._unit_of_work():
                payment = await self._get_payment(payment_id)
                self.risk.flag_for_fraud(payment, reason)
                return OperationResult.success(
                    payment_id=str(payment.id),
                    risk_level=payment.risk_level,
                    fraud_review_status=payment.fraud_review_status,
                )
        except BUSINESS_ERRORS as e:
            return OperationResult.failure(e)

    async def approve_payment_review(
        self, payment_id: uuid.UUID, now: Optional[datetime] = None
    ) -> OperationResult:
        """Clear a fraud hold and apply any charge outcome that arrived meanwhile.

        A held success wins over a held failure. Payments that already failed
        or were canceled stay that way.
        """
        now = now or utcnow()
        try:
            async with self._unit_of_work():
                payment = await self._get_payment(payment_id)
                self.risk.approve_after_review(payment)

                applied_charge = False
                held = ledger.held_events(payment, CHARGE_SUCCEEDED)
                if held and payment.status in (
                    PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value,
                ):
                    event = held[0]
                    payload = event.get("payload") or {}
                    ledger.mark_succeeded(
                        payment,
                        payload.get("charge_id"),
                        payload.get("amount_received", 0.0),
                        payload.get("gateway_fee", 0.0),
                        payload.get("application_fee", 0.0),
                        now,
                    )
                    ledger.mark_event_processed(payment, event["event_id"])
                    ledger.add_webhook_event(
                        payment, CHARGE_SUCCEEDED,
                        f"{CHARGE_SUCCEEDED}:{payment.gateway_charge_id}", now=now,
                    )
                    PAYMENTS_TOTAL.labels(outcome="succeeded").inc()
                    subscription = await self._linked_subscription(payment)
                    if subscription is not None:
                        self.lifecycle.record_payment(
                            subscription, payment.amount_received, now
                        )
                    applied_charge = True

                applied_failure = False
                held_failures = ledger.held_events(payment, CHARGE_FAILED)
                if (
                    not applied_charge
                    and held_failures
                    and payment.status in (
                        PaymentStatus.PENDING.value, PaymentStatus.PROCESSING.value,
                    )
                ):
                    event = held_failures[-1]
                    payload = event.get("payload") or {}
                    decision = on_payment_failed(
                        payment, payload.get("failure_code"), payload.get("failure_message"), now
                    )
                    ledger.mark_event_processed(payment, event["event_id"])
                    PAYMENTS_TOTAL.labels(outcome="failed").inc()
                    subscription = await self._linked_subscription(payment)
                    self._apply_failure_to_subscription(subscription, decision.exhausted)
                    applied_failure = True

                return OperationResult.success(
                    payment_id=str(payment.id),
                    status=payment.status,
                    fraud_review_status=payment.fraud_review_status,
                    applied_held_charge=applied_charge,
                    applied_held_failure=applied_failure,
                )
        except BUSINESS_ERRORS as e:
            return OperationResult.failure(e)

    async def decline_payment_review(self, payment_id: uuid.UUID) -> OperationResult:
        try:
            async with self._unit_of_work():
                payment = await self._get_payment(payment_id)
                self.risk.decline_after_review(payment)
                return OperationResult.success(
                    payment_id=str(payment.id),
                    status=payment.status,
                    fraud_review_status=payment.fraud_review_status,
                )
        except BUSINESS_ERRORS as e:
            return OperationResult.failure(e)

    async def get_fraud_alerts(self, limit: int = 100) -> list[Payment]:
        payments = await self.payments.get_fraud_alerts(limit)
        return [p for p in payments if is_fraud_alert(p)]

    # ==================== Subscriptions ====================

    async def handle_subscription_updated(
        self,
        gateway_subscription_id: str,
        status: Optional[str],
        period_start: Optional[datetime],
        period_end: Optional[datetime],
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """Apply a gateway subscription update; replays change nothing."""
        try:
            async with self._unit_of_work():
                subscription = await self.subscriptions.get_by_gateway_id(
                    gateway_subscription_id, for_update=True
                )
                if subscription is None:
                    raise RecordNotFoundError(
                        f"Subscription {gateway_subscription_id} not found"
                    )
                rolled = self.lifecycle.apply_gateway_update(
                    subscription, status, period_start, period_end, now
                )
                return OperationResult.success(
                    subscription_id=str(subscription.id),
                    status=subscription.status,
                    period_rolled_over=rolled,
                )
        except BUSINESS_ERRORS as e:
            return OperationResult.failure(e)

    # ==================== Manual payments and credits ====================

    async def submit_manual_payment(
        self,
        user_id: uuid.UUID,
        plan_type: str,
        amount: float,
        currency: str,
        payment_method: str,
        payment_proof: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        try:
            async with self._unit_of_work():
                request = create_request(
                    user_id, plan_type, amount, currency, payment_method, payment_proof, now
                )
                while await self.manual_requests.get_by_reference(request.reference_number):
                    request = create_request(
                        user_id, plan_type, amount, currency, payment_method, payment_proof, now
                    )
                await self.manual_requests.add(request)
                return OperationResult.success(
                    request_id=str(request.id),
                    reference_number=request.reference_number,
                    status=request.status,
                    bank_details=request.bank_details,
                )
        except BUSINESS_ERRORS as e:
            return OperationResult.failure(e)

    async def admin_verify_manual_payment(
        self,
        request_id: uuid.UUID,
        admin_id: uuid.UUID,
        notes: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        """Verify a bank transfer and credit the user's account exactly once."""
        try:
            async with self._unit_of_work():
                request = await self.manual_requests.get_by_id(request_id, for_update=True)
                if request is None:
                    raise RecordNotFoundError(f"Manual payment request {request_id} not found")

                account = await self.credit_accounts.get_by_user_id(
                    request.user_id, for_update=True
                )
                is_new = account is None
                result = self.credit_workflow.verify(request, account, admin_id, notes, now)
                if is_new:
                    await self.credit_accounts.add(result.account)

                return OperationResult.success(
                    request_id=str(request.id),
                    reference_number=request.reference_number,
                    credits_added=result.credits_added,
                    available_credits=result.account.available_credits,
                    plan_end_date=result.account.plan_end_date,
                )
        except BUSINESS_ERRORS as e:
            return OperationResult.failure(e)

    async def admin_reject_manual_payment(
        self,
        request_id: uuid.UUID,
        admin_id: uuid.UUID,
        reason: str,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        try:
            async with self._unit_of_work():
                request = await self.manual_requests.get_by_id(request_id, for_update=True)
                if request is None:
                    raise RecordNotFoundError(f"Manual payment request {request_id} not found")
                self.credit_workflow.reject(request, admin_id, reason, now)
                return OperationResult.success(
                    request_id=str(request.id),
                    status=request.status,
                    rejection_reason=request.rejection_reason,
                )
        except BUSINESS_ERRORS as e:
            return OperationResult.failure(e)

    async def admin_update_manual_payment_notes(
        self, request_id: uuid.UUID, notes: Optional[str]
    ) -> OperationResult:
        try:
            async with self._unit_of_work():
                request = await self.manual_requests.get_by_id(request_id, for_update=True)
                if request is None:
                    raise RecordNotFoundError(f"Manual payment request {request_id} not found")
                self.credit_workflow.update_admin_notes(request, notes)
                return OperationResult.success(request_id=str(request.id))
        except BUSINESS_ERRORS as e:
            return OperationResult.failure(e)

    async def admin_grant_credits(
        self,
        user_id: uuid.UUID,
        credits: int,
        plan_type: str,
        admin_id: uuid.UUID,
        reason: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> OperationResult:
        try:
            async with self._unit_of_work():
                account = await self.credit_accounts.get_by_user_id(user_id, for_update=True)
                is_new = account is None
                result = self.credit_workflow.grant_credits(
                    account, user_id, credits, plan_type, admin_id, reason, now
                )
                await self.manual_requests.add(result.request)
                if is_new:
                    await self.credit_accounts.add(result.account)
                return OperationResult.success(
                    request_id=str(result.request.id),
                    reference_number=result.request.reference_number,
                    credits_added=result.credits_added,
                    available_credits=result.account.available_credits,
                )
        except BUSINESS_ERRORS as e:
            return OperationResult.failure(e)

    async def use_credits(self, user_id: uuid.UUID, amount: int) -> OperationResult:
        """Spend credits under a row lock so concurrent spends cannot overdraw."""
        try:
            async with self._unit_of_work():
                account = await self.credit_accounts.get_by_user_id(user_id, for_update=True)
                if account is None:
                    raise RecordNotFoundError(f"User {user_id} has no credit account")
                remaining = use_credits(account, amount)
                return OperationResult.success(
                    used=amount,
                    available_credits=remaining,
                )
        except BUSINESS_ERRORS as e:
            return OperationResult.failure(e)

    # ==================== Background sweeps ====================

    async def process_retry_queue(
        self,
        gateway: Optional[ChargeGateway] = None,
        now: Optional[datetime] = None,
        limit: Optional[int] = None,
    ) -> dict:
        """Claim due retries one by one and re-attempt the charge.

        The claim is committed before the gateway call, so a second worker
        looking at the same payment skips it.
        """
        now = now or utcnow()
        gateway = gateway or self.gateway or HttpChargeGateway()
        stats = {"due": 0, "claimed": 0, "succeeded": 0, "failed": 0, "skipped": 0}

        candidates = await self.payments.get_retryable(
            now, limit or settings.BILLING_RETRY_BATCH_SIZE
        )
        stats["due"] = len(candidates)

        for candidate in candidates:
            if is_on_fraud_hold(candidate):
                stats["skipped"] += 1
                continue

            payment_id = candidate.id
            expected_attempts = candidate.retry_attempts
            charge = ChargeRequest(
                payment_id=str(payment_id),
                payment_intent_id=candidate.gateway_payment_intent_id,
                customer_id=candidate.gateway_customer_id,
                amount=candidate.amount,
                currency=candidate.currency,
                idempotency_key=idempotency_key(candidate),
            )

            claimed = await self.payments.claim_for_retry(payment_id, expected_attempts, now)
            await self.session.commit()
            if not claimed:
                stats["skipped"] += 1
                continue
            stats["claimed"] += 1

            try:
                result = await gateway.charge(charge)
            except GatewayTimeoutError as e:
                result = ChargeResult(
                    succeeded=False, failure_code=e.error_code, failure_message=e.message
                )
            except GatewayError as e:
                log_error(logger, "Gateway charge failed", exception=e, payment_id=str(payment_id))
                result = ChargeResult(
                    succeeded=False, failure_code=e.error_code, failure_message=e.message
                )

            if result.succeeded:
                outcome = await self.record_success(
                    payment_id,
                    result.charge_id,
                    result.amount_received,
                    result.gateway_fee,
                    result.application_fee,
                    now=now,
                )
            else:
                outcome = await self.record_failure(
                    payment_id, result.failure_code, result.failure_message, now=now
                )
            stats["succeeded" if result.succeeded and outcome.ok else "failed"] += 1

        log_info(logger, "Retry queue processed", **stats)
        return stats

    async def expire_stale_pending_payments(self, now: Optional[datetime] = None) -> dict:
        """Fail pending payments older than the configured timeout."""
        now = now or utcnow()
        stats = {"expired": 0, "exhausted": 0}
        async with self._unit_of_work():
            payments = await self.payments.get_stale_pending(ledger.pending_cutoff(now))
            for payment in payments:
                decision = ledger.expire_stale_pending(payment, now)
                if decision is None:
                    continue
                stats["expired"] += 1
                PAYMENTS_TOTAL.labels(outcome="expired").inc()
                if decision.exhausted:
                    stats["exhausted"] += 1
                subscription = await self._linked_subscription(payment)
                self._apply_failure_to_subscription(subscription, decision.exhausted)
        log_info(logger, "Stale pending payments expired", **stats)
        return stats

    async def process_subscription_periods(self, now: Optional[datetime] = None) -> dict:
        """Apply deferred cancellations and end finished trials."""
        now = now or utcnow()
        stats = {"canceled": 0, "trials_ended": 0}
        async with self._unit_of_work():
            subscriptions = await self.subscriptions.get_due_for_period_processing(now)
            for subscription in subscriptions:
                if self.lifecycle.process_period_end(subscription, now):
                    stats["canceled"] += 1
                elif self.lifecycle.end_trial(subscription, now):
                    stats["trials_ended"] += 1
        log_info(logger, "Subscription periods processed", **stats)
        return stats

    async def deactivate_expired_credit_accounts(self, now: Optional[datetime] = None) -> dict:
        now = now or utcnow()
        deactivated = 0
        async with self._unit_of_work():
            accounts = await self.credit_accounts.get_expired_active(now)
            for account in accounts:
                if account.is_expired(now):
                    account.is_active = False
                    deactivated += 1
        log_info(logger, "Expired credit accounts deactivated", deactivated=deactivated)
        return {"deactivated": deactivated}
