"""Subscription lifecycle: status transitions, trials, renewal amounts and
period rollover.

Status moves follow ``ALLOWED_TRANSITIONS``; ``canceled`` is terminal.
Canceling a subscription never touches payments that are mid-retry.
"""

import logging
import math
import uuid
from datetime import datetime, timedelta
from typing import Optional

from researchhub.core.logging import log_info, log_warning
from researchhub.modules.billing.errors import (
    InvalidTransitionError,
    LedgerValidationError,
)
from researchhub.modules.billing.metering import UsageMeter
from researchhub.modules.billing.models import (
    BillingCycle,
    PlanTier,
    Subscription,
    SubscriptionStatus,
    add_billing_period,
    get_plan_features,
    utcnow,
)

logger = logging.getLogger(__name__)

S = SubscriptionStatus

ALLOWED_TRANSITIONS: dict[str, set[str]] = {
    S.TRIALING.value: {S.ACTIVE.value, S.PAST_DUE.value, S.CANCELED.value, S.UNPAID.value},
    S.ACTIVE.value: {S.PAST_DUE.value, S.CANCELED.value, S.UNPAID.value},
    S.PAST_DUE.value: {S.ACTIVE.value, S.CANCELED.value, S.UNPAID.value},
    S.UNPAID.value: {S.ACTIVE.value, S.CANCELED.value},
    S.CANCELED.value: set(),
}


def is_stale_period(
    subscription: Subscription, period_start: datetime, period_end: datetime
) -> bool:
    """True for a period that started before the current one or is already archived."""
    if (
        subscription.current_period_start is not None
        and period_start < subscription.current_period_start
    ):
        return True
    period = {"start": period_start.isoformat(), "end": period_end.isoformat()}
    return any(entry.get("period") == period for entry in subscription.usage_history or [])


def can_transition(current: str, target: str) -> bool:
    return target == current or target in ALLOWED_TRANSITIONS.get(current, set())


def _transition(subscription: Subscription, target: str) -> None:
    target = SubscriptionStatus(target).value
    if not can_transition(subscription.status, target):
        raise InvalidTransitionError(
            f"Subscription {subscription.id} cannot move from {subscription.status} to {target}"
        )
    if target != subscription.status:
        log_info(
            logger,
            "Subscription status changed",
            subscription_id=str(subscription.id),
            from_status=subscription.status,
            to_status=target,
        )
    subscription.status = target


class SubscriptionLifecycle:
    """Owns every state change on a Subscription."""

    def __init__(self, meter: Optional[UsageMeter] = None):
        self.meter = meter or UsageMeter()

    def create_subscription(
        self,
        user_id: uuid.UUID,
        plan: str = PlanTier.FREE.value,
        billing_cycle: str = BillingCycle.MONTHLY.value,
        amount: float = 0.0,
        currency: str = "USD",
        trial_days: Optional[int] = None,
        gateway_subscription_id: Optional[str] = None,
        gateway_customer_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> Subscription:
        """Create a subscription with the plan's limit snapshot.

        A trial window makes the subscription start out ``trialing``.
        """
        now = now or utcnow()
        get_plan_features(plan)

        kwargs = dict(
            user_id=user_id,
            plan=plan,
            billing_cycle=billing_cycle,
            amount=amount,
            currency=currency,
            start_date=now,
            current_period_start=now,
            current_period_end=add_billing_period(now, billing_cycle),
            gateway_subscription_id=gateway_subscription_id,
            gateway_customer_id=gateway_customer_id,
        )
        if trial_days:
            kwargs.update(
                status=S.TRIALING.value,
                trial_start=now,
                trial_end=now + timedelta(days=trial_days),
            )
        subscription = Subscription(**kwargs)

        log_info(
            logger,
            "Subscription created",
            subscription_id=str(subscription.id),
            user_id=str(user_id),
            plan=plan,
            status=subscription.status,
        )
        return subscription

    def apply_plan(self, subscription: Subscription, plan: str) -> None:
        """Switch plans. Limits are replaced; usage counters are kept."""
        if subscription.status == S.CANCELED.value:
            raise InvalidTransitionError(
                f"Cannot change plan of canceled subscription {subscription.id}"
            )
        previous = subscription.plan
        subscription.plan = plan
        log_info(
            logger,
            "Subscription plan changed",
            subscription_id=str(subscription.id),
            from_plan=previous,
            to_plan=plan,
        )

    @staticmethod
    def has_feature(subscription: Subscription, name: str) -> bool:
        """Plan features plus enabled custom overrides. Overrides only add."""
        if name in subscription.get_plan_features().get("features", []):
            return True
        return any(
            override.get("name") == name and override.get("enabled")
            for override in subscription.features or []
        )

    def cancel(
        self,
        subscription: Subscription,
        reason: Optional[str] = None,
        immediate: bool = False,
        now: Optional[datetime] = None,
    ) -> None:
        """Cancel now, or at the end of the current period."""
        now = now or utcnow()
        if subscription.status == S.CANCELED.value:
            raise InvalidTransitionError(f"Subscription {subscription.id} is already canceled")

        subscription.cancellation_reason = reason
        if immediate:
            _transition(subscription, S.CANCELED.value)
            subscription.canceled_at = now
            subscription.end_date = now
            subscription.cancel_at_period_end = False
        else:
            subscription.cancel_at_period_end = True

        log_info(
            logger,
            "Subscription cancellation requested",
            subscription_id=str(subscription.id),
            immediate=immediate,
            reason=reason,
        )

    def reactivate(self, subscription: Subscription) -> None:
        """Undo a pending end-of-period cancellation."""
        if subscription.status == S.CANCELED.value or not subscription.cancel_at_period_end:
            raise InvalidTransitionError(
                f"Subscription {subscription.id} has no pending cancellation to undo"
            )
        _transition(subscription, S.ACTIVE.value)
        subscription.cancel_at_period_end = False
        subscription.canceled_at = None
        subscription.cancellation_reason = None
        subscription.end_date = None
        log_info(logger, "Subscription reactivated", subscription_id=str(subscription.id))

    @staticmethod
    def recompute_renewal_amount(subscription: Subscription) -> float:
        """Base amount plus enabled add-ons, minus the discount."""
        subscription.recompute_derived()
        return subscription.renewal_amount

    def set_add_ons(self, subscription: Subscription, add_ons: list[dict]) -> float:
        normalized = []
        for add_on in add_ons:
            amount = add_on.get("amount", 0)
            quantity = add_on.get("quantity", 1)
            if amount < 0 or quantity < 1:
                raise LedgerValidationError(
                    f"Invalid add-on {add_on.get('name')}: amount={amount} quantity={quantity}"
                )
            normalized.append({
                "name": add_on.get("name"),
                "amount": amount,
                "quantity": quantity,
                "enabled": bool(add_on.get("enabled", True)),
            })
        subscription.add_ons = normalized
        return self.recompute_renewal_amount(subscription)

    def set_discount(self, subscription: Subscription, total_discount: float) -> float:
        subscription.total_discount = total_discount
        return self.recompute_renewal_amount(subscription)

    def set_amount(self, subscription: Subscription, amount: float) -> float:
        subscription.amount = amount
        return self.recompute_renewal_amount(subscription)

    def mark_past_due(self, subscription: Subscription) -> None:
        _transition(subscription, S.PAST_DUE.value)
        subscription.payment_failure_count = (subscription.payment_failure_count or 0) + 1

    def mark_unpaid(self, subscription: Subscription) -> None:
        """Retries are exhausted for this subscription's payment."""
        _transition(subscription, S.UNPAID.value)
        log_warning(
            logger,
            "Subscription unpaid after exhausted retries",
            subscription_id=str(subscription.id),
        )

    def record_payment(
        self,
        subscription: Subscription,
        amount: float,
        now: Optional[datetime] = None,
    ) -> None:
        """A charge for this subscription succeeded."""
        subscription.last_payment_at = now or utcnow()
        subscription.last_payment_amount = amount
        subscription.payment_failure_count = 0
        if subscription.status in (S.PAST_DUE.value, S.UNPAID.value, S.TRIALING.value):
            _transition(subscription, S.ACTIVE.value)

    def rollover_period(
        self,
        subscription: Subscription,
        new_start: datetime,
        new_end: datetime,
        now: Optional[datetime] = None,
    ) -> bool:
        """Start a new billing period, archiving the old period's usage.

        Returns False when the subscription is already in that period, or
        when the period is older than the current one or was archived before.
        """
        if new_end <= new_start:
            raise LedgerValidationError("Period end must be after period start")
        if (
            subscription.current_period_start == new_start
            and subscription.current_period_end == new_end
        ):
            return False
        if is_stale_period(subscription, new_start, new_end):
            return False

        self.meter.reset_usage_period(subscription, now)
        subscription.current_period_start = new_start
        subscription.current_period_end = new_end
        subscription.recompute_derived()
        return True

    def apply_gateway_update(
        self,
        subscription: Subscription,
        status: Optional[str],
        period_start: Optional[datetime],
        period_end: Optional[datetime],
        now: Optional[datetime] = None,
    ) -> bool:
        """Apply a normalized ``subscription.updated`` event.

        Returns True if a new period was started.
        """
        rolled = False
        if (
            period_start is not None
            and period_end is not None
            and is_stale_period(subscription, period_start, period_end)
        ):
            log_warning(
                logger,
                "Ignoring out-of-order subscription update",
                subscription_id=str(subscription.id),
                period_start=period_start.isoformat(),
                current_period_start=subscription.current_period_start.isoformat(),
            )
            return False
        if period_start is not None and period_end is not None:
            rolled = self.rollover_period(subscription, period_start, period_end, now)
        if status and status != subscription.status:
            _transition(subscription, status)
            if status == S.CANCELED.value:
                subscription.canceled_at = now or utcnow()
                subscription.end_date = subscription.canceled_at
        return rolled

    def process_period_end(
        self,
        subscription: Subscription,
        now: Optional[datetime] = None,
    ) -> bool:
        """Apply a deferred cancellation once its period is over."""
        now = now or utcnow()
        if (
            not subscription.cancel_at_period_end
            or subscription.status == S.CANCELED.value
            or now < subscription.current_period_end
        ):
            return False
        _transition(subscription, S.CANCELED.value)
        subscription.canceled_at = now
        subscription.end_date = subscription.current_period_end
        return True

    def end_trial(self, subscription: Subscription, now: Optional[datetime] = None) -> bool:
        now = now or utcnow()
        if (
            subscription.status != S.TRIALING.value
            or subscription.trial_end is None
            or now < subscription.trial_end
        ):
            return False
        _transition(subscription, S.ACTIVE.value)
        return True


def is_trial_active(subscription: Subscription, now: Optional[datetime] = None) -> bool:
    if not subscription.trial_start or not subscription.trial_end:
        return False
    now = now or utcnow()
    return subscription.trial_start <= now <= subscription.trial_end


def _days_until(moment: Optional[datetime], now: datetime) -> int:
    if moment is None:
        return 0
    seconds = (moment - now).total_seconds()
    return max(0, math.ceil(seconds / 86400))


def days_remaining(subscription: Subscription, now: Optional[datetime] = None) -> int:
    return _days_until(subscription.current_period_end, now or utcnow())


def trial_days_remaining(subscription: Subscription, now: Optional[datetime] = None) -> int:
    if not is_trial_active(subscription, now):
        return 0
    return _days_until(subscription.trial_end, now or utcnow())
