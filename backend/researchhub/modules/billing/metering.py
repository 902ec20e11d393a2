"""Usage metering against plan-derived limits.

Counters live on the subscription (``current_usage``) and are checked
against the ``usage_limits`` snapshot. Credit-based accounts are checked
against their manual plan features instead.
"""

import logging
import math
from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from researchhub.core.logging import log_info, log_warning
from researchhub.modules.billing.errors import LedgerValidationError
from researchhub.modules.billing.models import (
    UNLIMITED,
    CreditAccount,
    Subscription,
    UsageLimitType,
    empty_usage,
    utcnow,
)

logger = logging.getLogger(__name__)


# Usage types limited by a credit account's manual plan features.
CREDIT_FEATURE_LIMITS = {
    UsageLimitType.STUDIES.value: "max_studies",
    UsageLimitType.PARTICIPANTS.value: "max_participants",
    UsageLimitType.RECORDINGS.value: "max_recording_minutes",
}


@dataclass
class LimitCheck:
    """Outcome of checking one usage counter against its limit.

    ``remaining`` is -1 when the limit is unlimited.
    """
    allowed: bool
    remaining: int
    percentage: int


def _round_half_up(value: float) -> int:
    return int(math.floor(value + 0.5))


def _limit_type_value(limit_type) -> str:
    try:
        return UsageLimitType(limit_type).value
    except ValueError:
        raise LedgerValidationError(f"Unknown usage limit type: {limit_type}")


def check_limit(limit: int, current: int) -> LimitCheck:
    """Check a counter against a limit.

    Args:
        limit: Configured limit, or -1 for unlimited
        current: Current counter value

    Returns:
        LimitCheck with allowed flag, remaining headroom and percentage used
    """
    if limit == UNLIMITED:
        return LimitCheck(allowed=True, remaining=UNLIMITED, percentage=0)

    remaining = max(0, limit - current)
    percentage = _round_half_up(current / limit * 100) if limit > 0 else 0
    return LimitCheck(allowed=current < limit, remaining=remaining, percentage=percentage)


class UsageMeter:
    """Tracks subscription usage counters and answers limit questions."""

    def check_limit(self, subscription: Subscription, limit_type) -> LimitCheck:
        key = _limit_type_value(limit_type)
        limit = (subscription.usage_limits or {}).get(key, 0)
        current = (subscription.current_usage or {}).get(key, 0)
        return check_limit(limit, current)

    def increment_usage(
        self,
        subscription: Subscription,
        limit_type,
        amount: int = 1,
    ) -> int:
        """Add to a usage counter.

        The meter never blocks: callers are expected to call ``check_limit``
        first. Going over the limit is logged.

        Returns:
            The new counter value
        """
        key = _limit_type_value(limit_type)
        if amount < 0:
            raise LedgerValidationError(f"Usage increment must be >= 0, got {amount}")

        usage = dict(subscription.current_usage or {})
        new_value = usage.get(key, 0) + amount
        usage[key] = new_value
        subscription.current_usage = usage

        limit = (subscription.usage_limits or {}).get(key, 0)
        if limit != UNLIMITED and new_value > limit:
            log_warning(
                logger,
                "Usage exceeded plan limit",
                subscription_id=str(subscription.id),
                limit_type=key,
                usage=new_value,
                limit=limit,
            )
        return new_value

    def reset_usage_period(
        self,
        subscription: Subscription,
        now: Optional[datetime] = None,
    ) -> bool:
        """Archive the current period's counters and zero them.

        The archive entry is keyed by the period's start and end, so a second
        call for the same period does nothing.

        Returns:
            True if the period was archived, False if it already had been
        """
        now = now or utcnow()
        period = {
            "start": subscription.current_period_start.isoformat(),
            "end": subscription.current_period_end.isoformat(),
        }
        history = list(subscription.usage_history or [])
        if any(entry.get("period") == period for entry in history):
            return False

        usage = {
            key: value
            for key, value in (subscription.current_usage or {}).items()
            if key != "last_reset_at"
        }
        history.append({"period": period, "usage": usage})
        subscription.usage_history = history
        subscription.current_usage = empty_usage(now)

        log_info(
            logger,
            "Usage period archived",
            subscription_id=str(subscription.id),
            period_start=period["start"],
            period_end=period["end"],
        )
        return True

    def usage_percentages(self, subscription: Subscription) -> dict[str, int]:
        """Percentage used for each limited counter."""
        percentages = {}
        for limit_type in UsageLimitType:
            limit = (subscription.usage_limits or {}).get(limit_type.value, 0)
            if limit > 0:
                percentages[limit_type.value] = self.check_limit(
                    subscription, limit_type
                ).percentage
        return percentages


def check_credit_feature(
    account: CreditAccount,
    limit_type,
    current: int = 0,
    now: Optional[datetime] = None,
) -> LimitCheck:
    """Check a usage type against a credit account's manual plan features.

    Inactive or expired accounts deny everything. Usage types the manual
    plans do not limit are allowed while the account is live.
    """
    key = _limit_type_value(limit_type)
    if not account.is_active or account.is_expired(now):
        return LimitCheck(allowed=False, remaining=0, percentage=100)

    feature_key = CREDIT_FEATURE_LIMITS.get(key)
    if feature_key is None:
        return LimitCheck(allowed=True, remaining=UNLIMITED, percentage=0)

    limit = (account.features or {}).get(feature_key, 0)
    return check_limit(limit, current)
