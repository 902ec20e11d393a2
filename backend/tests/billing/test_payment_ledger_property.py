"""Property-based tests for payment ledger invariants.

**Feature: researchhub-billing, Property 17: Payment Amount Invariants**
"""

import uuid
from datetime import datetime, timedelta, timezone

from hypothesis import assume, given, settings, strategies as st
import pytest

from researchhub.modules.billing import ledger
from researchhub.modules.billing.errors import InvalidTransitionError, LedgerValidationError
from researchhub.modules.billing.models import Payment, PaymentStatus
from researchhub.modules.billing.risk import RiskScorer


NOW = datetime(2026, 6, 1, 15, 0, tzinfo=timezone.utc)

money = st.integers(min_value=0, max_value=1_000_000).map(lambda cents: cents / 100)


def make_payment(**overrides) -> Payment:
    values = dict(user_id=uuid.uuid4(), amount=100.0, attempted_at=NOW)
    values.update(overrides)
    return Payment(**values)


class TestPaymentAmounts:
    """Property tests for net amount derivation.

    **Feature: researchhub-billing, Property 17: Payment Amount Invariants**
    """

    @given(received=money, fee=money, application_fee=money)
    @settings(max_examples=100)
    def test_net_amount_after_success(
        self,
        received: float,
        fee: float,
        application_fee: float,
    ) -> None:
        """*For any* captured charge, net amount is received minus both fees."""
        assume(received > 0)
        payment = make_payment(amount=received)

        ledger.mark_succeeded(payment, "ch_1", received, fee, application_fee, NOW)

        assert payment.net_amount == pytest.approx(received - fee - application_fee)
        assert payment.status == PaymentStatus.SUCCEEDED.value
        assert payment.paid_at == NOW

    @given(field=st.sampled_from(["amount", "amount_received", "gateway_fee", "refund_amount"]))
    @settings(max_examples=20)
    def test_negative_amounts_rejected(self, field: str) -> None:
        """*For any* monetary field, a negative value is refused."""
        payment = make_payment()

        with pytest.raises(LedgerValidationError):
            setattr(payment, field, -1.0)

    def test_amount_is_required(self) -> None:
        with pytest.raises(LedgerValidationError):
            Payment(user_id=uuid.uuid4())

    def test_paid_at_requires_success(self) -> None:
        payment = make_payment()
        payment.paid_at = NOW

        with pytest.raises(LedgerValidationError):
            payment.recompute_derived()


class TestSuccessIdempotence:
    """**Feature: researchhub-billing, Property 18: Success Replay Safety**"""

    @given(replays=st.integers(min_value=1, max_value=5))
    @settings(max_examples=30)
    def test_same_charge_replay_changes_nothing(self, replays: int) -> None:
        """*For any* number of replays of the same charge, the first result stands."""
        payment = make_payment()
        ledger.mark_succeeded(payment, "ch_abc", 100.0, 3.2, 1.0, NOW)
        snapshot = (payment.status, payment.paid_at, payment.net_amount, payment.amount_received)

        for i in range(replays):
            outcome = ledger.mark_succeeded(
                payment, "ch_abc", 100.0, 3.2, 1.0, NOW + timedelta(minutes=i + 1)
            )
            assert outcome.duplicate is True
            assert outcome.applied is False

        assert (
            payment.status, payment.paid_at, payment.net_amount, payment.amount_received
        ) == snapshot

    def test_different_charge_rejected(self) -> None:
        payment = make_payment()
        ledger.mark_succeeded(payment, "ch_abc", 100.0, now=NOW)

        with pytest.raises(InvalidTransitionError):
            ledger.mark_succeeded(payment, "ch_other", 100.0, now=NOW)

    def test_canceled_payment_cannot_succeed(self) -> None:
        payment = make_payment()
        ledger.cancel_payment(payment, NOW)

        with pytest.raises(InvalidTransitionError):
            ledger.mark_succeeded(payment, "ch_abc", 100.0, now=NOW)

    def test_same_charge_replay_after_full_refund_is_absorbed(self) -> None:
        payment = make_payment()
        ledger.mark_succeeded(payment, "ch_abc", 100.0, now=NOW)
        ledger.process_refund(payment, 100.0, "requested", NOW)

        outcome = ledger.mark_succeeded(payment, "ch_abc", 100.0, now=NOW)

        assert outcome.duplicate is True
        assert payment.status == PaymentStatus.REFUNDED.value
        assert payment.refund_amount == 100.0
        with pytest.raises(InvalidTransitionError):
            ledger.mark_succeeded(payment, "ch_other", 100.0, now=NOW)

    def test_unknown_status_is_a_validation_error(self) -> None:
        payment = make_payment()

        with pytest.raises(LedgerValidationError):
            payment.status = "settled"

    def test_webhook_event_dedup(self) -> None:
        payment = make_payment()
        ledger.add_webhook_event(payment, "charge.succeeded", "evt_1", now=NOW)

        assert ledger.has_processed_event(payment, "evt_1")
        assert not ledger.has_processed_event(payment, "evt_2")
        assert not ledger.has_processed_event(payment, None)


class TestRefunds:
    """Property tests for refund bounds.

    **Feature: researchhub-billing, Property 19: Refund Bounds**
    """

    @given(
        received=st.integers(min_value=1, max_value=10_000),
        refunds=st.lists(st.integers(min_value=1, max_value=5_000), min_size=1, max_size=10),
    )
    @settings(max_examples=100)
    def test_cumulative_refund_never_exceeds_received(
        self,
        received: int,
        refunds: list[int],
    ) -> None:
        """*For any* refund sequence, the refunded total stays within the amount received."""
        payment = make_payment(amount=float(received))
        ledger.mark_succeeded(payment, "ch_1", float(received), now=NOW)

        for amount in refunds:
            before = payment.refund_amount
            if before + amount <= received:
                outcome = ledger.process_refund(payment, float(amount), "customer request", NOW)
                assert outcome.refund_amount == before + amount
            else:
                with pytest.raises(LedgerValidationError):
                    ledger.process_refund(payment, float(amount), "customer request", NOW)
                assert payment.refund_amount == before
            assert payment.refund_amount <= payment.amount_received

        fully = payment.refund_amount == received
        assert (payment.status == PaymentStatus.REFUNDED.value) == fully

    def test_refund_requires_settled_payment(self) -> None:
        payment = make_payment()

        with pytest.raises(InvalidTransitionError):
            ledger.process_refund(payment, 10.0, now=NOW)

    def test_refunded_at_set_once(self) -> None:
        payment = make_payment()
        ledger.mark_succeeded(payment, "ch_1", 100.0, now=NOW)

        ledger.process_refund(payment, 30.0, now=NOW)
        ledger.process_refund(payment, 70.0, now=NOW + timedelta(days=1))

        assert payment.refunded_at == NOW
        assert payment.status == PaymentStatus.REFUNDED.value
        assert payment.effective_amount == 0


class TestCancellationAndStalePending:
    """**Feature: researchhub-billing, Property 20: Pending Payment Handling**"""

    @given(status=st.sampled_from([
        PaymentStatus.PROCESSING.value,
        PaymentStatus.SUCCEEDED.value,
        PaymentStatus.FAILED.value,
        PaymentStatus.REFUNDED.value,
    ]))
    @settings(max_examples=20)
    def test_only_pending_can_be_canceled(self, status: str) -> None:
        payment = make_payment(status=status)

        with pytest.raises(InvalidTransitionError):
            ledger.cancel_payment(payment, NOW)

    def test_cancel_pending(self) -> None:
        payment = make_payment()

        ledger.cancel_payment(payment, NOW)

        assert payment.status == PaymentStatus.CANCELED.value
        assert payment.canceled_at == NOW

    @given(age_minutes=st.integers(min_value=0, max_value=600))
    @settings(max_examples=100)
    def test_stale_pending_moves_to_retry(self, age_minutes: int) -> None:
        """*For any* pending age, only payments past the timeout are expired."""
        payment = make_payment(attempted_at=NOW - timedelta(minutes=age_minutes))

        decision = ledger.expire_stale_pending(payment, NOW)

        if age_minutes > 60:
            assert decision is not None
            assert payment.status == PaymentStatus.FAILED.value
            assert payment.failure_code == ledger.PENDING_TIMEOUT_CODE
            assert payment.retry_attempts == 1
            assert payment.next_retry_at is not None
        else:
            assert decision is None
            assert payment.status == PaymentStatus.PENDING.value

    def test_stale_pending_on_fraud_hold_is_left_alone(self) -> None:
        payment = make_payment(attempted_at=NOW - timedelta(hours=3))
        RiskScorer().flag_for_fraud(payment, "velocity")

        decision = ledger.expire_stale_pending(payment, NOW)

        assert decision is None
        assert payment.status == PaymentStatus.PENDING.value
        assert payment.retry_attempts == 0
