"""Tests for the billing facade and webhook dispatch.

Repositories and the session are replaced with in-memory fakes so each
operation's unit of work can be exercised without a database.
"""

import uuid
from datetime import datetime, timedelta, timezone
from typing import Optional

import pytest
from sqlalchemy.orm.exc import StaleDataError

from researchhub.modules.billing.errors import GatewayTimeoutError
from researchhub.modules.billing.gateway import ChargeGateway, ChargeRequest, ChargeResult
from researchhub.modules.billing.models import (
    MANUAL_PLAN_CONFIGS,
    CreditAccount,
    FraudReviewStatus,
    Payment,
    PaymentStatus,
    PlanTier,
    Subscription,
    SubscriptionStatus,
    UsageLimitType,
    empty_usage,
)
from researchhub.modules.billing.retry import is_claimed, is_retryable, on_payment_failed
from researchhub.modules.billing.service import BillingFacade
from researchhub.modules.billing.webhooks import WebhookDispatcher


NOW = datetime(2026, 7, 1, 12, 0, tzinfo=timezone.utc)
ADMIN_ID = uuid.UUID("00000000-0000-0000-0000-0000000000ad")


class FakeSession:
    """Counts commits and rollbacks; optionally fails the next commit."""

    def __init__(self):
        self.commits = 0
        self.rollbacks = 0
        self.fail_next_commit: Optional[Exception] = None

    async def commit(self):
        if self.fail_next_commit is not None:
            error, self.fail_next_commit = self.fail_next_commit, None
            raise error
        self.commits += 1

    async def rollback(self):
        self.rollbacks += 1


class FakePaymentRepository:
    def __init__(self):
        self.items: dict[uuid.UUID, Payment] = {}

    async def add(self, payment):
        self.items[payment.id] = payment
        return payment

    async def get_by_id(self, payment_id, for_update=False):
        return self.items.get(payment_id)

    async def get_by_intent_id(self, payment_intent_id, for_update=False):
        for payment in self.items.values():
            if payment.gateway_payment_intent_id == payment_intent_id:
                return payment
        return None

    async def get_retryable(self, now, limit=50):
        due = [p for p in self.items.values() if is_retryable(p, now)]
        return sorted(due, key=lambda p: p.next_retry_at)[:limit]

    async def claim_for_retry(self, payment_id, expected_attempts, now):
        payment = self.items.get(payment_id)
        if (
            payment is None
            or payment.status != PaymentStatus.FAILED.value
            or payment.retry_attempts != expected_attempts
            or is_claimed(payment, now)
        ):
            return False
        payment.retry_claimed_at = now
        return True

    async def get_stale_pending(self, cutoff, limit=100):
        return [
            p for p in self.items.values()
            if p.status == PaymentStatus.PENDING.value and p.attempted_at < cutoff
        ][:limit]

    async def get_fraud_alerts(self, limit=100):
        return list(self.items.values())[:limit]


class FakeSubscriptionRepository:
    def __init__(self):
        self.items: dict[uuid.UUID, Subscription] = {}

    async def add(self, subscription):
        self.items[subscription.id] = subscription
        return subscription

    async def get_by_id(self, subscription_id, for_update=False):
        return self.items.get(subscription_id)

    async def get_by_user_id(self, user_id, for_update=False):
        for subscription in self.items.values():
            if subscription.user_id == user_id:
                return subscription
        return None

    async def get_by_gateway_id(self, gateway_subscription_id, for_update=False):
        for subscription in self.items.values():
            if subscription.gateway_subscription_id == gateway_subscription_id:
                return subscription
        return None

    async def get_due_for_period_processing(self, now, limit=100):
        return list(self.items.values())[:limit]


class FakeCreditAccountRepository:
    def __init__(self):
        self.items: dict[uuid.UUID, CreditAccount] = {}

    async def add(self, account):
        self.items[account.user_id] = account
        return account

    async def get_by_user_id(self, user_id, for_update=False):
        return self.items.get(user_id)

    async def get_expired_active(self, now, limit=100):
        return [
            a for a in self.items.values() if a.is_active and a.plan_end_date < now
        ][:limit]


class FakeManualRequestRepository:
    def __init__(self):
        self.items = {}

    async def add(self, request):
        self.items[request.id] = request
        return request

    async def get_by_id(self, request_id, for_update=False):
        return self.items.get(request_id)

    async def get_by_reference(self, reference_number):
        for request in self.items.values():
            if request.reference_number == reference_number:
                return request
        return None


class FakeGateway(ChargeGateway):
    """Answers charges from a queue of results or exceptions."""

    def __init__(self, *answers):
        self.answers = list(answers)
        self.requests: list[ChargeRequest] = []

    async def charge(self, request: ChargeRequest) -> ChargeResult:
        self.requests.append(request)
        answer = self.answers.pop(0)
        if isinstance(answer, Exception):
            raise answer
        return answer


def make_facade(gateway: Optional[ChargeGateway] = None) -> BillingFacade:
    return BillingFacade(
        FakeSession(),
        payments=FakePaymentRepository(),
        subscriptions=FakeSubscriptionRepository(),
        credit_accounts=FakeCreditAccountRepository(),
        manual_requests=FakeManualRequestRepository(),
        gateway=gateway,
    )


async def add_subscription(facade: BillingFacade, plan: str = PlanTier.PRO.value, **kwargs):
    usage = kwargs.pop("usage", {})
    current_usage = empty_usage(NOW)
    current_usage.update(usage)
    values = dict(
        user_id=uuid.uuid4(),
        plan=plan,
        amount=50.0,
        start_date=NOW - timedelta(days=10),
        current_usage=current_usage,
    )
    values.update(kwargs)
    return await facade.subscriptions.add(Subscription(**values))


async def add_payment(facade: BillingFacade, **kwargs) -> Payment:
    values = dict(
        user_id=uuid.uuid4(),
        amount=100.0,
        attempted_at=NOW - timedelta(minutes=5),
        gateway_payment_intent_id=f"pi_{uuid.uuid4().hex[:12]}",
    )
    values.update(kwargs)
    return await facade.payments.add(Payment(**values))


async def add_credit_account(facade: BillingFacade, user_id: uuid.UUID, total: int = 1000):
    return await facade.credit_accounts.add(CreditAccount(
        user_id=user_id,
        total_credits=total,
        plan_type=PlanTier.BASIC.value,
        plan_start_date=NOW - timedelta(days=1),
        plan_end_date=NOW + timedelta(days=29),
        features=dict(MANUAL_PLAN_CONFIGS[PlanTier.BASIC.value]["features"]),
    ))


class TestEntitlements:
    """Entitlement resolution across subscription, credit and free paths."""

    @pytest.mark.asyncio
    async def test_subscription_path(self):
        facade = make_facade()
        subscription = await add_subscription(facade, usage={"participants": 2499})

        result = await facade.check_limit(
            subscription.user_id, UsageLimitType.PARTICIPANTS, now=NOW
        )

        assert result.allowed is True
        assert result.remaining == 1
        assert result.percentage == 100

    @pytest.mark.asyncio
    async def test_credit_path_uses_manual_plan_features(self):
        facade = make_facade()
        user_id = uuid.uuid4()
        await add_credit_account(facade, user_id)

        assert await facade.can_perform(user_id, UsageLimitType.STUDIES, current=4, now=NOW)
        assert not await facade.can_perform(user_id, UsageLimitType.STUDIES, current=5, now=NOW)

    @pytest.mark.asyncio
    async def test_free_path_for_unknown_user(self):
        facade = make_facade()
        user_id = uuid.uuid4()

        assert await facade.can_perform(user_id, UsageLimitType.STUDIES, current=0, now=NOW)
        assert not await facade.can_perform(user_id, UsageLimitType.STUDIES, current=1, now=NOW)

    @pytest.mark.asyncio
    async def test_unpaid_subscription_falls_back_to_credits(self):
        facade = make_facade()
        subscription = await add_subscription(
            facade, plan=PlanTier.FREE.value, status=SubscriptionStatus.UNPAID.value
        )
        await add_credit_account(facade, subscription.user_id)

        summary = await facade.get_entitlement_summary(subscription.user_id, now=NOW)

        assert summary.source == "credits"
        assert summary.plan == PlanTier.BASIC.value
        assert summary.available_credits == 1000

    @pytest.mark.asyncio
    async def test_subscription_summary(self):
        facade = make_facade()
        subscription = await add_subscription(facade, usage={"studies": 5})

        summary = await facade.get_entitlement_summary(subscription.user_id, now=NOW)

        assert summary.source == "subscription"
        assert summary.plan == PlanTier.PRO.value
        assert summary.usage_percentages["studies"] == 20
        assert summary.days_remaining > 0

    @pytest.mark.asyncio
    async def test_enforced_increment_blocks_at_limit(self):
        facade = make_facade()
        subscription = await add_subscription(
            facade, plan=PlanTier.FREE.value, usage={"studies": 1}
        )

        blocked = await facade.increment_usage(
            subscription.user_id, UsageLimitType.STUDIES, enforce=True
        )
        permitted = await facade.increment_usage(subscription.user_id, UsageLimitType.STUDIES)

        assert blocked.ok is False
        assert blocked.error_code == "limit_exceeded"
        assert permitted.ok is True
        assert permitted.data["usage"] == 2

    @pytest.mark.asyncio
    async def test_increment_for_credit_user_is_untracked(self):
        facade = make_facade()
        user_id = uuid.uuid4()
        await add_credit_account(facade, user_id)

        result = await facade.increment_usage(user_id, UsageLimitType.STUDIES)

        assert result.ok is True
        assert result.data["tracked"] is False

    @pytest.mark.asyncio
    async def test_increment_for_unknown_user_not_found(self):
        facade = make_facade()

        result = await facade.increment_usage(uuid.uuid4(), UsageLimitType.STUDIES)

        assert result.ok is False
        assert result.error_code == "not_found"


class TestCardPayments:
    """Charge outcomes and their effect on the linked subscription."""

    @pytest.mark.asyncio
    async def test_webhook_replay_is_absorbed(self):
        facade = make_facade()
        subscription = await add_subscription(facade, status=SubscriptionStatus.PAST_DUE.value)
        payment = await add_payment(facade, subscription_id=subscription.id)
        dispatcher = WebhookDispatcher(facade)
        event = {
            "type": "charge.succeeded",
            "event_id": "evt_1",
            "payment_intent_id": payment.gateway_payment_intent_id,
            "charge_id": "ch_1",
            "amount_received": 100.0,
            "fees": 3.2,
        }

        first = await dispatcher.dispatch(event)
        second = await dispatcher.dispatch(event)

        assert first.handled is True
        assert first.duplicate is False
        assert second.handled is True
        assert second.duplicate is True
        assert payment.status == PaymentStatus.SUCCEEDED.value
        assert payment.net_amount == pytest.approx(96.8)
        assert [e["event_id"] for e in payment.webhook_events] == ["evt_1", "charge.succeeded:ch_1"]
        assert subscription.status == SubscriptionStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_webhook_for_unknown_payment(self):
        facade = make_facade()

        ack = await WebhookDispatcher(facade).dispatch({
            "type": "charge.failed",
            "event_id": "evt_2",
            "payment_intent_id": "pi_missing",
        })

        assert ack.handled is False
        assert ack.error_code == "not_found"

    @pytest.mark.asyncio
    async def test_unhandled_event_type_is_acknowledged(self):
        facade = make_facade()

        ack = await WebhookDispatcher(facade).dispatch(
            {"type": "customer.created", "event_id": "evt_3"}
        )

        assert ack.received is True
        assert ack.handled is False

    @pytest.mark.asyncio
    async def test_exhausted_failures_leave_subscription_unpaid(self):
        facade = make_facade()
        subscription = await add_subscription(facade)
        payment = await add_payment(facade, subscription_id=subscription.id)

        first = await facade.record_failure(payment.id, "card_declined", "Declined", now=NOW)
        assert subscription.status == SubscriptionStatus.PAST_DUE.value
        assert first.data["next_retry_at"] == NOW + timedelta(hours=2)

        await facade.record_failure(payment.id, "card_declined", "Declined", now=NOW)
        third = await facade.record_failure(payment.id, "card_declined", "Declined", now=NOW)

        assert third.data["exhausted"] is True
        assert payment.next_retry_at is None
        assert subscription.status == SubscriptionStatus.UNPAID.value

    @pytest.mark.asyncio
    async def test_full_refund_cancels_subscription(self):
        facade = make_facade()
        subscription = await add_subscription(facade)
        payment = await add_payment(facade, subscription_id=subscription.id)
        await facade.record_success(payment.id, "ch_9", 100.0, now=NOW)

        partial = await facade.record_refund(payment.id, 40.0, "partial", now=NOW)
        assert partial.data["subscription_canceled"] is False
        assert subscription.status == SubscriptionStatus.ACTIVE.value

        full = await facade.record_refund(payment.id, 60.0, "rest", now=NOW)
        assert full.data["fully_refunded"] is True
        assert full.data["subscription_canceled"] is True
        assert payment.status == PaymentStatus.REFUNDED.value
        assert subscription.status == SubscriptionStatus.CANCELED.value

    @pytest.mark.asyncio
    async def test_success_redelivered_after_full_refund_is_absorbed(self):
        facade = make_facade()
        payment = await add_payment(facade)
        await facade.record_success(payment.id, "ch_1", 100.0, event_id="evt_1", now=NOW)
        await facade.record_refund(payment.id, 100.0, "requested", event_id="evt_r1", now=NOW)

        replay = await facade.record_success(
            payment.id, "ch_1", 100.0, event_id="evt_1b", now=NOW
        )

        assert replay.ok is True
        assert replay.data["duplicate"] is True
        assert payment.status == PaymentStatus.REFUNDED.value
        assert payment.refund_amount == 100.0

    @pytest.mark.asyncio
    async def test_cancel_payment_checks_owner(self):
        facade = make_facade()
        payment = await add_payment(facade)

        wrong_owner = await facade.cancel_payment(payment.id, uuid.uuid4())
        owner = await facade.cancel_payment(payment.id, payment.user_id)

        assert wrong_owner.error_code == "not_found"
        assert owner.ok is True
        assert payment.status == PaymentStatus.CANCELED.value

    @pytest.mark.asyncio
    async def test_concurrent_write_reported_as_result(self):
        facade = make_facade()
        payment = await add_payment(facade)
        facade.session.fail_next_commit = StaleDataError("version mismatch")

        result = await facade.set_payment_risk_score(payment.id, 70)

        assert result.ok is False
        assert result.error_code == "concurrent_modification"
        assert facade.session.rollbacks == 1


class TestFraudHold:
    """A flagged payment is neither succeeded nor failed until reviewed."""

    @pytest.mark.asyncio
    async def test_charge_held_then_applied_on_approval(self):
        facade = make_facade()
        payment = await add_payment(facade)
        await facade.flag_payment_for_fraud(payment.id, "velocity")

        held = await facade.record_success(payment.id, "ch_h", 100.0, event_id="evt_h", now=NOW)

        assert held.ok is False
        assert held.error_code == "fraud_hold"
        assert payment.status == PaymentStatus.PENDING.value

        approved = await facade.approve_payment_review(payment.id, now=NOW)

        assert approved.data["applied_held_charge"] is True
        assert payment.status == PaymentStatus.SUCCEEDED.value
        assert payment.gateway_charge_id == "ch_h"
        assert payment.fraud_review_status == FraudReviewStatus.APPROVED.value

    @pytest.mark.asyncio
    async def test_declined_review_keeps_charge_held(self):
        facade = make_facade()
        payment = await add_payment(facade)
        await facade.flag_payment_for_fraud(payment.id, "velocity")
        await facade.decline_payment_review(payment.id)

        result = await facade.record_success(payment.id, "ch_d", 100.0, now=NOW)

        assert result.error_code == "fraud_hold"
        assert payment.status == PaymentStatus.PENDING.value

    @pytest.mark.asyncio
    async def test_failure_held_then_applied_on_approval(self):
        facade = make_facade()
        subscription = await add_subscription(facade)
        payment = await add_payment(facade, subscription_id=subscription.id)
        await facade.flag_payment_for_fraud(payment.id, "velocity")

        held = await facade.record_failure(
            payment.id, "card_declined", "Declined", event_id="evt_f", now=NOW
        )

        assert held.ok is False
        assert held.error_code == "fraud_hold"
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.retry_attempts == 0
        assert subscription.status == SubscriptionStatus.ACTIVE.value

        approved = await facade.approve_payment_review(payment.id, now=NOW)

        assert approved.data["applied_held_failure"] is True
        assert payment.status == PaymentStatus.FAILED.value
        assert payment.retry_attempts == 1
        assert payment.next_retry_at == NOW + timedelta(hours=2)
        assert subscription.status == SubscriptionStatus.PAST_DUE.value

    @pytest.mark.asyncio
    async def test_pending_sweep_leaves_held_payment_pending(self):
        facade = make_facade()
        payment = await add_payment(facade, attempted_at=NOW - timedelta(hours=3))
        await facade.flag_payment_for_fraud(payment.id, "velocity")

        stats = await facade.expire_stale_pending_payments(now=NOW)

        assert stats == {"expired": 0, "exhausted": 0}
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.retry_attempts == 0

    @pytest.mark.asyncio
    async def test_fraud_alerts_include_flagged_payments(self):
        facade = make_facade()
        flagged = await add_payment(facade)
        await add_payment(facade)
        await facade.flag_payment_for_fraud(flagged.id, "velocity")

        alerts = await facade.get_fraud_alerts()

        assert [p.id for p in alerts] == [flagged.id]


class TestRetryQueue:
    """The retry sweep claims due payments and re-attempts the charge."""

    @pytest.mark.asyncio
    async def test_successful_retry(self):
        gateway = FakeGateway(ChargeResult(succeeded=True, charge_id="ch_r", amount_received=100.0))
        facade = make_facade(gateway)
        payment = await add_payment(facade)
        on_payment_failed(payment, "card_declined", None, NOW)

        stats = await facade.process_retry_queue(now=NOW + timedelta(hours=2))

        assert stats["due"] == 1
        assert stats["claimed"] == 1
        assert stats["succeeded"] == 1
        assert gateway.requests[0].idempotency_key == f"{payment.id}:1"
        assert payment.status == PaymentStatus.SUCCEEDED.value
        assert payment.retry_claimed_at is None

        again = await facade.process_retry_queue(now=NOW + timedelta(hours=2))
        assert again["due"] == 0
        assert len(gateway.requests) == 1

    @pytest.mark.asyncio
    async def test_gateway_timeout_counts_as_failure(self):
        gateway = FakeGateway(GatewayTimeoutError("Gateway did not answer"))
        facade = make_facade(gateway)
        payment = await add_payment(facade)
        on_payment_failed(payment, "card_declined", None, NOW)

        stats = await facade.process_retry_queue(now=NOW + timedelta(hours=2))

        assert stats["failed"] == 1
        assert payment.retry_attempts == 2
        assert payment.failure_code == "gateway_timeout"
        assert payment.next_retry_at == NOW + timedelta(hours=6)

    @pytest.mark.asyncio
    async def test_retry_not_due_yet(self):
        gateway = FakeGateway()
        facade = make_facade(gateway)
        payment = await add_payment(facade)
        on_payment_failed(payment, "card_declined", None, NOW)

        stats = await facade.process_retry_queue(now=NOW + timedelta(hours=1))

        assert stats["due"] == 0
        assert gateway.requests == []

    @pytest.mark.asyncio
    async def test_fraud_held_payment_skipped(self):
        gateway = FakeGateway()
        facade = make_facade(gateway)
        payment = await add_payment(facade)
        on_payment_failed(payment, "card_declined", None, NOW)
        await facade.flag_payment_for_fraud(payment.id, "manual check")

        stats = await facade.process_retry_queue(now=NOW + timedelta(hours=2))

        assert stats["skipped"] == 1
        assert gateway.requests == []


class TestSweeps:
    @pytest.mark.asyncio
    async def test_stale_pending_expired(self):
        facade = make_facade()
        subscription = await add_subscription(facade)
        stale = await add_payment(
            facade, subscription_id=subscription.id, attempted_at=NOW - timedelta(hours=3)
        )
        fresh = await add_payment(facade, attempted_at=NOW - timedelta(minutes=10))

        stats = await facade.expire_stale_pending_payments(now=NOW)

        assert stats == {"expired": 1, "exhausted": 0}
        assert stale.status == PaymentStatus.FAILED.value
        assert fresh.status == PaymentStatus.PENDING.value
        assert subscription.status == SubscriptionStatus.PAST_DUE.value

    @pytest.mark.asyncio
    async def test_deferred_cancellation_applied(self):
        facade = make_facade()
        subscription = await add_subscription(facade)
        facade.lifecycle.cancel(subscription, now=NOW)

        stats = await facade.process_subscription_periods(
            now=subscription.current_period_end + timedelta(minutes=1)
        )

        assert stats["canceled"] == 1
        assert subscription.status == SubscriptionStatus.CANCELED.value

    @pytest.mark.asyncio
    async def test_expired_credit_accounts_deactivated(self):
        facade = make_facade()
        user_id = uuid.uuid4()
        account = await add_credit_account(facade, user_id)

        stats = await facade.deactivate_expired_credit_accounts(now=NOW + timedelta(days=30))

        assert stats == {"deactivated": 1}
        assert account.is_active is False


class TestManualPayments:
    """Bank transfer submission, admin review and credit spending."""

    @pytest.mark.asyncio
    async def test_submit_verify_and_reverify(self):
        facade = make_facade()
        user_id = uuid.uuid4()

        submitted = await facade.submit_manual_payment(
            user_id, PlanTier.PRO.value, 500.0, "SAR", "bank_transfer", "receipt.pdf", now=NOW
        )
        request_id = uuid.UUID(submitted.data["request_id"])

        verified = await facade.admin_verify_manual_payment(request_id, ADMIN_ID, now=NOW)
        repeated = await facade.admin_verify_manual_payment(request_id, ADMIN_ID, now=NOW)

        assert submitted.data["status"] == "pending"
        assert submitted.data["reference_number"].startswith("PAY-")
        assert verified.data["credits_added"] == 500
        assert verified.data["available_credits"] == 500
        assert repeated.ok is False
        assert repeated.error_code == "already_processed"
        assert facade.credit_accounts.items[user_id].total_credits == 500

    @pytest.mark.asyncio
    async def test_reject_then_verify_refused(self):
        facade = make_facade()
        submitted = await facade.submit_manual_payment(
            uuid.uuid4(), PlanTier.BASIC.value, 99.0, "SAR", "bank_transfer", now=NOW
        )
        request_id = uuid.UUID(submitted.data["request_id"])

        rejected = await facade.admin_reject_manual_payment(
            request_id, ADMIN_ID, "Transfer not received", now=NOW
        )
        verified = await facade.admin_verify_manual_payment(request_id, ADMIN_ID, now=NOW)

        assert rejected.data["status"] == "rejected"
        assert verified.error_code == "already_processed"

    @pytest.mark.asyncio
    async def test_use_credits_insufficient_leaves_balance(self):
        facade = make_facade()
        user_id = uuid.uuid4()
        account = await add_credit_account(facade, user_id, total=100)

        spent = await facade.use_credits(user_id, 60)
        refused = await facade.use_credits(user_id, 60)

        assert spent.data["available_credits"] == 40
        assert refused.ok is False
        assert refused.error_code == "insufficient_credits"
        assert account.used_credits == 60
        assert account.available_credits == 40

    @pytest.mark.asyncio
    async def test_admin_grant_creates_account(self):
        facade = make_facade()
        user_id = uuid.uuid4()

        result = await facade.admin_grant_credits(
            user_id, 300, PlanTier.PRO.value, ADMIN_ID, reason="Pilot study", now=NOW
        )

        assert result.ok is True
        assert facade.credit_accounts.items[user_id].available_credits == 300
        assert len(facade.manual_requests.items) == 1


class TestSubscriptionUpdates:
    @pytest.mark.asyncio
    async def test_period_rollover_replay_is_noop(self):
        facade = make_facade()
        subscription = await add_subscription(
            facade, gateway_subscription_id="sub_gw_1", usage={"studies": 3}
        )
        new_start = subscription.current_period_end
        new_end = new_start + timedelta(days=31)
        event = {
            "type": "subscription.updated",
            "event_id": "evt_s1",
            "subscription_id": "sub_gw_1",
            "current_period_start": new_start.isoformat(),
            "current_period_end": new_end.isoformat(),
        }
        dispatcher = WebhookDispatcher(facade)

        first = await dispatcher.dispatch(event)
        second = await dispatcher.dispatch(event)

        assert first.handled is True
        assert second.handled is True
        assert len(subscription.usage_history) == 1
        assert subscription.current_usage["studies"] == 0
        assert subscription.current_period_end == new_end

    @pytest.mark.asyncio
    async def test_late_update_for_earlier_period_is_ignored(self):
        facade = make_facade()
        subscription = await add_subscription(facade, gateway_subscription_id="sub_gw_2")
        first_start = subscription.current_period_start
        first_end = subscription.current_period_end
        second_end = first_end + timedelta(days=31)

        await facade.handle_subscription_updated("sub_gw_2", None, first_end, second_end, NOW)
        await facade.increment_usage(subscription.user_id, UsageLimitType.STUDIES, 2)

        late = await facade.handle_subscription_updated(
            "sub_gw_2", None, first_start, first_end, NOW
        )

        assert late.ok is True
        assert late.data["period_rolled_over"] is False
        assert subscription.current_usage["studies"] == 2
        assert subscription.current_period_start == first_end
        assert subscription.current_period_end == second_end
        assert len(subscription.usage_history) == 1
