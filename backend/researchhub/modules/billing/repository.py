"""Repositories for billing ledger records.

Mutating reads take a row lock (``SELECT ... FOR UPDATE``) so a transition
is a single read-modify-write per record. Rows also carry a version column
that SQLAlchemy checks on every UPDATE.
"""

import uuid
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update, and_, or_
from sqlalchemy.ext.asyncio import AsyncSession

from researchhub.modules.billing.models import (
    CreditAccount,
    DisputeStatus,
    ManualPaymentRequest,
    ManualPaymentStatus,
    Payment,
    PaymentStatus,
    RiskLevel,
    Subscription,
    SubscriptionStatus,
)
from researchhub.modules.billing.retry import RETRY_CLAIM_TIMEOUT


class PaymentRepository:
    """Repository for payment operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, payment: Payment) -> Payment:
        self.session.add(payment)
        await self.session.flush()
        return payment

    async def get_by_id(
        self, payment_id: uuid.UUID, for_update: bool = False
    ) -> Optional[Payment]:
        """Get payment by ID, optionally locking the row."""
        query = select(Payment).where(Payment.id == payment_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_by_intent_id(
        self, payment_intent_id: str, for_update: bool = False
    ) -> Optional[Payment]:
        """Get payment by gateway payment intent ID."""
        query = select(Payment).where(Payment.gateway_payment_intent_id == payment_intent_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_retryable(self, now: datetime, limit: int = 50) -> list[Payment]:
        """Failed payments whose next retry is due and that no live worker owns."""
        result = await self.session.execute(
            select(Payment)
            .where(
                and_(
                    Payment.status == PaymentStatus.FAILED.value,
                    Payment.retry_attempts < Payment.max_retry_attempts,
                    Payment.next_retry_at.is_not(None),
                    Payment.next_retry_at <= now,
                    or_(
                        Payment.retry_claimed_at.is_(None),
                        Payment.retry_claimed_at <= now - RETRY_CLAIM_TIMEOUT,
                    ),
                )
            )
            .order_by(Payment.next_retry_at)
            .limit(limit)
        )
        return list(result.scalars().all())

    async def claim_for_retry(
        self,
        payment_id: uuid.UUID,
        expected_attempts: int,
        now: datetime,
    ) -> bool:
        """Claim a payment for one retry attempt.

        The conditional update only matches while the payment is still failed
        at the attempt count the worker saw, so two workers cannot both claim
        the same attempt.
        """
        result = await self.session.execute(
            update(Payment)
            .where(
                and_(
                    Payment.id == payment_id,
                    Payment.retry_attempts == expected_attempts,
                    Payment.status == PaymentStatus.FAILED.value,
                    or_(
                        Payment.retry_claimed_at.is_(None),
                        Payment.retry_claimed_at <= now - RETRY_CLAIM_TIMEOUT,
                    ),
                )
            )
            .values(retry_claimed_at=now, version=Payment.version + 1)
            .execution_options(synchronize_session=False)
        )
        return result.rowcount == 1

    async def get_stale_pending(self, cutoff: datetime, limit: int = 100) -> list[Payment]:
        """Pending payments attempted before ``cutoff``."""
        result = await self.session.execute(
            select(Payment)
            .where(
                and_(
                    Payment.status == PaymentStatus.PENDING.value,
                    Payment.attempted_at < cutoff,
                )
            )
            .order_by(Payment.attempted_at)
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())

    async def get_fraud_alerts(self, limit: int = 100) -> list[Payment]:
        """Flagged, high-risk or disputed payments, newest first."""
        result = await self.session.execute(
            select(Payment)
            .where(
                or_(
                    Payment.fraud_flagged == True,
                    Payment.risk_level.in_([RiskLevel.HIGH.value, RiskLevel.CRITICAL.value]),
                    Payment.dispute_status != DisputeStatus.NONE.value,
                )
            )
            .order_by(Payment.created_at.desc())
            .limit(limit)
        )
        return list(result.scalars().all())

    async def get_user_payments(
        self, user_id: uuid.UUID, limit: int = 50, offset: int = 0
    ) -> list[Payment]:
        result = await self.session.execute(
            select(Payment)
            .where(Payment.user_id == user_id)
            .order_by(Payment.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())


class SubscriptionRepository:
    """Repository for subscription operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, subscription: Subscription) -> Subscription:
        self.session.add(subscription)
        await self.session.flush()
        return subscription

    async def get_by_id(
        self, subscription_id: uuid.UUID, for_update: bool = False
    ) -> Optional[Subscription]:
        query = select(Subscription).where(Subscription.id == subscription_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_by_user_id(
        self, user_id: uuid.UUID, for_update: bool = False
    ) -> Optional[Subscription]:
        query = select(Subscription).where(Subscription.user_id == user_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_by_gateway_id(
        self, gateway_subscription_id: str, for_update: bool = False
    ) -> Optional[Subscription]:
        query = select(Subscription).where(
            Subscription.gateway_subscription_id == gateway_subscription_id
        )
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_due_for_period_processing(
        self, now: datetime, limit: int = 100
    ) -> list[Subscription]:
        """Subscriptions with a deferred cancellation or trial that has ended."""
        result = await self.session.execute(
            select(Subscription)
            .where(
                and_(
                    Subscription.status != SubscriptionStatus.CANCELED.value,
                    or_(
                        and_(
                            Subscription.cancel_at_period_end == True,
                            Subscription.current_period_end <= now,
                        ),
                        and_(
                            Subscription.status == SubscriptionStatus.TRIALING.value,
                            Subscription.trial_end <= now,
                        ),
                    ),
                )
            )
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())


class CreditAccountRepository:
    """Repository for credit account operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, account: CreditAccount) -> CreditAccount:
        self.session.add(account)
        await self.session.flush()
        return account

    async def get_by_user_id(
        self, user_id: uuid.UUID, for_update: bool = False
    ) -> Optional[CreditAccount]:
        query = select(CreditAccount).where(CreditAccount.user_id == user_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_expired_active(self, now: datetime, limit: int = 100) -> list[CreditAccount]:
        """Accounts still marked active whose plan window has ended."""
        result = await self.session.execute(
            select(CreditAccount)
            .where(
                and_(
                    CreditAccount.is_active == True,
                    CreditAccount.plan_end_date < now,
                )
            )
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        return list(result.scalars().all())


class ManualPaymentRequestRepository:
    """Repository for manual payment request operations."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def add(self, request: ManualPaymentRequest) -> ManualPaymentRequest:
        self.session.add(request)
        await self.session.flush()
        return request

    async def get_by_id(
        self, request_id: uuid.UUID, for_update: bool = False
    ) -> Optional[ManualPaymentRequest]:
        query = select(ManualPaymentRequest).where(ManualPaymentRequest.id == request_id)
        if for_update:
            query = query.with_for_update().execution_options(populate_existing=True)
        result = await self.session.execute(query)
        return result.scalar_one_or_none()

    async def get_by_reference(self, reference_number: str) -> Optional[ManualPaymentRequest]:
        result = await self.session.execute(
            select(ManualPaymentRequest).where(
                ManualPaymentRequest.reference_number == reference_number
            )
        )
        return result.scalar_one_or_none()

    async def list_by_status(
        self,
        status: str = ManualPaymentStatus.PENDING.value,
        limit: int = 50,
        offset: int = 0,
    ) -> list[ManualPaymentRequest]:
        result = await self.session.execute(
            select(ManualPaymentRequest)
            .where(ManualPaymentRequest.status == status)
            .order_by(ManualPaymentRequest.created_at.desc())
            .limit(limit)
            .offset(offset)
        )
        return list(result.scalars().all())
