"""Property-based tests for usage metering.

**Feature: researchhub-billing, Property 1: Usage Limit Checks**
"""

import uuid
from datetime import datetime, timedelta, timezone

from hypothesis import given, settings, strategies as st
import pytest

from researchhub.modules.billing.errors import LedgerValidationError
from researchhub.modules.billing.metering import (
    UsageMeter,
    check_credit_feature,
    check_limit,
)
from researchhub.modules.billing.models import (
    MANUAL_PLAN_CONFIGS,
    PLAN_FEATURES,
    UNLIMITED,
    CreditAccount,
    PlanTier,
    Subscription,
    UsageLimitType,
    empty_usage,
)


NOW = datetime(2026, 3, 15, 12, 0, tzinfo=timezone.utc)

limited_plan_strategy = st.sampled_from([
    PlanTier.FREE.value,
    PlanTier.BASIC.value,
    PlanTier.PRO.value,
])

limit_type_strategy = st.sampled_from(list(UsageLimitType))


def make_subscription(plan: str, **usage: int) -> Subscription:
    current_usage = empty_usage(NOW)
    current_usage.update(usage)
    return Subscription(
        user_id=uuid.uuid4(),
        plan=plan,
        start_date=NOW,
        current_usage=current_usage,
    )


def make_credit_account(plan_type: str = PlanTier.BASIC.value, **overrides) -> CreditAccount:
    values = dict(
        user_id=uuid.uuid4(),
        plan_type=plan_type,
        plan_start_date=NOW - timedelta(days=1),
        plan_end_date=NOW + timedelta(days=29),
        features=dict(MANUAL_PLAN_CONFIGS[plan_type]["features"]),
    )
    values.update(overrides)
    return CreditAccount(**values)


class TestUsageLimitChecks:
    """Property tests for limit checks against a plan snapshot.

    **Feature: researchhub-billing, Property 1: Usage Limit Checks**
    """

    def test_pro_plan_one_participant_short_of_limit(self) -> None:
        """2499 of 2500 participants is still allowed and rounds to 100%."""
        subscription = make_subscription(PlanTier.PRO.value, participants=2499)

        result = UsageMeter().check_limit(subscription, UsageLimitType.PARTICIPANTS)

        assert result.allowed is True
        assert result.remaining == 1
        assert result.percentage == 100

    @given(
        limit=st.integers(min_value=1, max_value=100_000),
        ratio=st.floats(min_value=0.0, max_value=2.0),
    )
    @settings(max_examples=100)
    def test_allowed_iff_below_limit(self, limit: int, ratio: float) -> None:
        """*For any* finite limit, a counter is allowed exactly while it is below the limit."""
        current = int(limit * ratio)

        result = check_limit(limit, current)

        assert result.allowed == (current < limit)
        assert result.remaining == max(0, limit - current)
        assert result.remaining >= 0

    @given(current=st.integers(min_value=0, max_value=10_000_000))
    @settings(max_examples=100)
    def test_unlimited_is_always_allowed(self, current: int) -> None:
        """*For any* counter value, an unlimited limit allows and reports remaining -1."""
        result = check_limit(UNLIMITED, current)

        assert result.allowed is True
        assert result.remaining == UNLIMITED
        assert result.percentage == 0

    @given(limit_type=limit_type_strategy)
    @settings(max_examples=50)
    def test_enterprise_unlimited_types(self, limit_type: UsageLimitType) -> None:
        """Enterprise counters marked unlimited never block, however high they go."""
        subscription = make_subscription(PlanTier.ENTERPRISE.value, **{limit_type.value: 10**9})

        result = UsageMeter().check_limit(subscription, limit_type)

        if PLAN_FEATURES[PlanTier.ENTERPRISE.value][limit_type.value] == UNLIMITED:
            assert result.allowed is True
            assert result.remaining == UNLIMITED
        else:
            assert result.allowed is False

    @given(
        plan=limited_plan_strategy,
        limit_type=limit_type_strategy,
    )
    @settings(max_examples=100)
    def test_counter_at_limit_is_blocked(self, plan: str, limit_type: UsageLimitType) -> None:
        """*For any* limited plan, a counter equal to its limit is not allowed."""
        limit = PLAN_FEATURES[plan][limit_type.value]
        subscription = make_subscription(plan, **{limit_type.value: limit})

        result = UsageMeter().check_limit(subscription, limit_type)

        assert result.allowed is False
        assert result.remaining == 0
        assert result.percentage == 100

    def test_unknown_limit_type_rejected(self) -> None:
        subscription = make_subscription(PlanTier.FREE.value)

        with pytest.raises(LedgerValidationError):
            UsageMeter().check_limit(subscription, "bandwidth")


class TestUsageIncrements:
    """Property tests for usage counters.

    **Feature: researchhub-billing, Property 2: Usage Counter Monotonicity**
    """

    @given(
        plan=limited_plan_strategy,
        limit_type=limit_type_strategy,
        increments=st.lists(st.integers(min_value=0, max_value=50), min_size=1, max_size=20),
    )
    @settings(max_examples=100)
    def test_increments_accumulate(
        self,
        plan: str,
        limit_type: UsageLimitType,
        increments: list[int],
    ) -> None:
        """*For any* sequence of increments, the counter equals their sum and never decreases."""
        subscription = make_subscription(plan)
        meter = UsageMeter()

        previous = 0
        for amount in increments:
            value = meter.increment_usage(subscription, limit_type, amount)
            assert value >= previous
            previous = value

        assert subscription.current_usage[limit_type.value] == sum(increments)

    def test_increment_past_limit_is_permitted(self) -> None:
        """The meter records overage; blocking is the caller's decision."""
        subscription = make_subscription(PlanTier.FREE.value, studies=1)

        value = UsageMeter().increment_usage(subscription, UsageLimitType.STUDIES)

        assert value == 2
        assert UsageMeter().check_limit(subscription, UsageLimitType.STUDIES).allowed is False

    def test_negative_increment_rejected(self) -> None:
        subscription = make_subscription(PlanTier.BASIC.value, studies=3)

        with pytest.raises(LedgerValidationError):
            UsageMeter().increment_usage(subscription, UsageLimitType.STUDIES, -1)

        assert subscription.current_usage["studies"] == 3

    def test_plan_change_keeps_counters(self) -> None:
        """Switching plans replaces limits but leaves usage alone."""
        subscription = make_subscription(PlanTier.BASIC.value, studies=4)

        subscription.plan = PlanTier.PRO.value

        assert subscription.usage_limits["studies"] == PLAN_FEATURES[PlanTier.PRO.value]["studies"]
        assert subscription.current_usage["studies"] == 4


class TestUsagePeriodReset:
    """Property tests for period archival.

    **Feature: researchhub-billing, Property 3: Usage Reset Idempotence**
    """

    @given(
        studies=st.integers(min_value=0, max_value=25),
        participants=st.integers(min_value=0, max_value=2500),
        repeats=st.integers(min_value=1, max_value=5),
    )
    @settings(max_examples=100)
    def test_reset_archives_once_per_period(
        self,
        studies: int,
        participants: int,
        repeats: int,
    ) -> None:
        """*For any* usage, resetting the same period again and again archives it once."""
        subscription = make_subscription(
            PlanTier.PRO.value, studies=studies, participants=participants
        )
        meter = UsageMeter()

        assert meter.reset_usage_period(subscription, NOW) is True
        for _ in range(repeats):
            assert meter.reset_usage_period(subscription, NOW) is False

        assert len(subscription.usage_history) == 1
        archived = subscription.usage_history[0]["usage"]
        assert archived["studies"] == studies
        assert archived["participants"] == participants
        assert all(
            subscription.current_usage[limit.value] == 0 for limit in UsageLimitType
        )

    def test_usage_percentages_skip_unlimited(self) -> None:
        subscription = make_subscription(PlanTier.ENTERPRISE.value, storage=500)

        percentages = UsageMeter().usage_percentages(subscription)

        assert percentages == {"storage": 50}


class TestCreditFeatureChecks:
    """Property tests for credit-account feature limits.

    **Feature: researchhub-billing, Property 4: Credit Plan Feature Limits**
    """

    @given(current=st.integers(min_value=0, max_value=20))
    @settings(max_examples=50)
    def test_basic_manual_plan_studies(self, current: int) -> None:
        """*For any* study count, a basic credit plan allows fewer than five."""
        account = make_credit_account()

        result = check_credit_feature(account, UsageLimitType.STUDIES, current, NOW)

        assert result.allowed == (current < 5)

    def test_expired_account_denies_everything(self) -> None:
        account = make_credit_account(
            plan_start_date=NOW - timedelta(days=40),
            plan_end_date=NOW - timedelta(days=10),
        )

        result = check_credit_feature(account, UsageLimitType.STUDIES, 0, NOW)

        assert result.allowed is False
        assert result.remaining == 0
        assert result.percentage == 100

    def test_inactive_account_denies_everything(self) -> None:
        account = make_credit_account(is_active=False)

        assert check_credit_feature(account, UsageLimitType.PARTICIPANTS, 0, NOW).allowed is False

    def test_unmapped_usage_type_is_allowed(self) -> None:
        account = make_credit_account()

        result = check_credit_feature(account, UsageLimitType.STORAGE, 999, NOW)

        assert result.allowed is True
        assert result.remaining == UNLIMITED

    def test_enterprise_manual_plan_is_unlimited(self) -> None:
        account = make_credit_account(PlanTier.ENTERPRISE.value)

        result = check_credit_feature(account, UsageLimitType.RECORDINGS, 10**6, NOW)

        assert result.allowed is True
        assert result.remaining == UNLIMITED
