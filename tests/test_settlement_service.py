"""
Tests for the settlement coordinator: split creation, payment outcomes,
idempotency and exactly-once settlement.
"""

import threading
from concurrent.futures import ThreadPoolExecutor

import pytest

from shared.config.constants import (
    ContributionStatus,
    EventType,
    PaymentOutcome,
    SessionEndReason,
    SplitStatus,
    STAFF_CHANNEL,
)
from shared.utils.exceptions import (
    AlreadySettledError,
    ConflictError,
    ContributionNotFoundError,
    InvalidStateError,
    SplitMismatchError,
    SplitSessionNotFoundError,
    StateError,
    ValidationError,
)
from group_settlement.services.domain import CustomSplit, EqualSplit, GiftSplit, PerItemSplit, Tip
from tests.conftest import build_services, deliver, place_order, seat_party


def pay(services, split, participant, outcome=PaymentOutcome.SUCCEEDED, ref=None):
    return services.settlement.record_payment(
        split.id, participant.id, outcome, payment_ref=ref or f"ch_{split.id}_{participant.id}"
    )


def dues(split):
    return {c.participant_id: c.amount_due_cents for c in split.contributions}


class TestCreateSplitSession:
    """Computing and persisting obligations."""

    def test_equal_split_with_tip(self, services, seat, order_for, notifier):
        """4 diners, 100.00 base, 10.00 tip: everyone owes 27.50."""
        table_session, party = seat(4)
        for p in party:
            order_for(p, (1, 1))

        split = services.settlement.create_split_session(
            table_session.id, EqualSplit(), Tip(1000, "equal")
        )

        assert split.status == SplitStatus.OPEN
        assert split.base_amount_cents == 10000
        assert split.tip_amount_cents == 1000
        assert list(dues(split).values()) == [2750] * 4
        assert sum(dues(split).values()) == split.total_cents == 11000
        assert notifier.of_type(EventType.SPLIT_CREATED, STAFF_CHANNEL)
        for p in party:
            assert notifier.of_type(EventType.CONTRIBUTION_DUE, p.id)[0].entity["amount_due_cents"] == 2750

    def test_equal_split_remainder_goes_to_first_joiner(self, services, seat, order_for):
        table_session, (a, b, c) = seat(3)
        order_for(b, (1, 4))

        split = services.settlement.create_split_session(table_session.id, EqualSplit())

        assert dues(split) == {a.id: 3334, b.id: 3333, c.id: 3333}

    def test_per_item_split(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (2, 1))
        order_for(b, (3, 1))

        split = services.settlement.create_split_session(table_session.id, PerItemSplit())

        assert split.strategy == "perItem"
        assert dues(split) == {a.id: 4200, b.id: 1800}

    def test_participant_without_orders_is_left_out_of_per_item(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (2, 1))

        split = services.settlement.create_split_session(table_session.id, PerItemSplit())

        assert dues(split) == {a.id: 4200}
        with pytest.raises(ContributionNotFoundError):
            services.settlement.record_payment(split.id, b.id, PaymentOutcome.SUCCEEDED)

    def test_gift_split(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (2, 1))
        order_for(b, (1, 1))

        split = services.settlement.create_split_session(
            table_session.id, GiftSplit(payer_id=a.id, beneficiary_ids=frozenset({b.id}))
        )

        by_participant = {c.participant_id: c for c in split.contributions}
        # The beneficiary is settled from the start
        assert split.status == SplitStatus.PARTIALLY_SETTLED
        assert split.gift_payer_participant_id == a.id
        assert by_participant[b.id].status == ContributionStatus.WAIVED
        assert by_participant[b.id].amount_due_cents == 0
        assert by_participant[b.id].paid_by_participant_id == a.id
        assert by_participant[a.id].amount_due_cents == 4200 + 2500
        assert by_participant[a.id].gifted_amount_cents == 2500

    def test_custom_split_must_reconcile(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (1, 1))

        with pytest.raises(SplitMismatchError):
            services.settlement.create_split_session(
                table_session.id, CustomSplit({a.id: 1000, b.id: 1000})
            )

        assert services.settlement.live_split(table_session.id) is None

    def test_custom_split(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (1, 1))

        split = services.settlement.create_split_session(
            table_session.id, CustomSplit({a.id: 500, b.id: 2000})
        )

        assert dues(split) == {a.id: 500, b.id: 2000}

    def test_no_billable_orders(self, services, seat, order_for):
        table_session, (a,) = seat(1)
        order_for(a, (1, 1), confirm=False)

        with pytest.raises(ValidationError):
            services.settlement.create_split_session(table_session.id, EqualSplit())

    def test_cancelled_orders_are_not_billed(self, services, seat, order_for):
        table_session, (a,) = seat(1)
        keep = order_for(a, (4, 1))
        drop = order_for(a, (1, 1))
        services.orders.cancel(drop.id, reason="Wrong dish")

        split = services.settlement.create_split_session(table_session.id, EqualSplit())

        assert split.order_ids == [keep.id]
        assert split.base_amount_cents == 1000

    def test_one_live_split_per_session(self, services, seat, order_for):
        table_session, (a,) = seat(1)
        order_for(a, (1, 1))
        services.settlement.create_split_session(table_session.id, EqualSplit())

        with pytest.raises(ConflictError):
            services.settlement.create_split_session(table_session.id, PerItemSplit())

    def test_order_subset(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        first = order_for(a, (1, 1))
        order_for(b, (2, 1))

        split = services.settlement.create_split_session(
            table_session.id, PerItemSplit(), order_ids=[first.id]
        )

        assert split.order_ids == [first.id]
        assert dues(split) == {a.id: 2500}

    def test_order_subset_must_be_billable(self, services, seat, order_for):
        table_session, (a,) = seat(1)
        cart = order_for(a, (1, 1), confirm=False)

        with pytest.raises(ValidationError):
            services.settlement.create_split_session(table_session.id, EqualSplit(), order_ids=[cart.id])

    def test_departed_owner_is_billed_to_creator(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order = order_for(b, (2, 1))
        deliver(services, order)
        services.registry.leave(b.id)

        split = services.settlement.create_split_session(table_session.id, PerItemSplit())

        assert dues(split) == {a.id: 4200}

    def test_unknown_split(self, services):
        with pytest.raises(SplitSessionNotFoundError):
            services.settlement.record_payment(999, 1, PaymentOutcome.SUCCEEDED)


class TestRecordPayment:
    """Payment outcomes and the split state machine."""

    def test_failed_then_retried_payment(self, services, seat, order_for, notifier):
        """The split settles only after the failed contribution is retried."""
        table_session, (a, b, c) = seat(3)
        order_for(a, (1, 4))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())

        assert pay(services, split, a).split_status == SplitStatus.PARTIALLY_SETTLED
        assert pay(services, split, b).split_status == SplitStatus.PARTIALLY_SETTLED

        failed = pay(services, split, c, PaymentOutcome.FAILED)
        assert failed.changed
        assert failed.split_status == SplitStatus.PARTIALLY_SETTLED
        assert failed.contribution.status == ContributionStatus.FAILED
        assert failed.contribution.amount_paid_cents == 0
        assert failed.contribution.failure_count == 1
        assert notifier.of_type(EventType.PAYMENT_FAILED, c.id)

        retried = pay(services, split, c)
        assert retried.settled_now
        assert retried.split_status == SplitStatus.SETTLED
        assert services.settlement.get_split_session(split.id).settled_at is not None

    def test_first_failure_keeps_split_open(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (1, 1))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())

        result = pay(services, split, a, PaymentOutcome.FAILED)

        assert result.split_status == SplitStatus.OPEN

    def test_duplicate_success_is_idempotent(self, services, seat, order_for, notifier):
        table_session, (a, b) = seat(2)
        order_for(a, (1, 1))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())

        first = pay(services, split, a, ref="ch_1")
        notifier.clear()
        replay = pay(services, split, a, ref="ch_1")

        assert first.changed
        assert not replay.changed
        assert replay.contribution.status == ContributionStatus.PAID
        assert replay.contribution.amount_paid_cents == 1250
        assert notifier.sent == []

    def test_failure_after_success_is_ignored(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (1, 1))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())
        pay(services, split, a)

        late = pay(services, split, a, PaymentOutcome.FAILED)

        assert not late.changed
        assert late.contribution.status == ContributionStatus.PAID

    def test_waived_contribution_cannot_be_paid(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (2, 1))
        order_for(b, (1, 1))
        split = services.settlement.create_split_session(
            table_session.id, GiftSplit(payer_id=a.id, beneficiary_ids=frozenset({b.id}))
        )

        with pytest.raises(InvalidStateError):
            pay(services, split, b)

    def test_gift_payer_alone_settles(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (2, 1))
        order_for(b, (1, 1))
        split = services.settlement.create_split_session(
            table_session.id, GiftSplit(payer_id=a.id, beneficiary_ids=frozenset({b.id}))
        )

        assert pay(services, split, a).settled_now

    def test_gift_payer_failure_leaves_split_partially_settled(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (2, 1))
        order_for(b, (1, 1))
        split = services.settlement.create_split_session(
            table_session.id, GiftSplit(payer_id=a.id, beneficiary_ids=frozenset({b.id}))
        )

        result = pay(services, split, a, PaymentOutcome.FAILED)

        assert result.split_status == SplitStatus.PARTIALLY_SETTLED
        assert result.contribution.status == ContributionStatus.FAILED
        assert services.settlement.get_split_session(split.id).status == SplitStatus.PARTIALLY_SETTLED

    def test_gift_split_without_payments_can_be_cancelled(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (2, 1))
        order_for(b, (1, 1))
        split = services.settlement.create_split_session(
            table_session.id, GiftSplit(payer_id=a.id, beneficiary_ids=frozenset({b.id}))
        )

        cancelled = services.settlement.cancel_split_session(split.id, "Paying separately")

        assert cancelled.status == SplitStatus.CANCELLED

    def test_unknown_outcome(self, services, seat, order_for):
        table_session, (a,) = seat(1)
        order_for(a, (1, 1))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())

        with pytest.raises(ValidationError):
            services.settlement.record_payment(split.id, a.id, "maybe")

    def test_settlement_marks_orders_paid(self, services, seat, order_for):
        table_session, (a,) = seat(1)
        order = order_for(a, (1, 1))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())

        pay(services, split, a)

        assert services.orders.get_order(order.id).settled_by_split_id == split.id
        assert services.settlement.billable_orders(table_session.id) == []

    def test_next_split_only_covers_new_orders(self, services, seat, order_for):
        table_session, (a,) = seat(1)
        order_for(a, (1, 1))
        first = services.settlement.create_split_session(table_session.id, EqualSplit())
        pay(services, split=first, participant=a)
        later = order_for(a, (4, 1))

        second = services.settlement.create_split_session(table_session.id, EqualSplit())

        assert second.order_ids == [later.id]
        assert second.base_amount_cents == 1000

    def test_settlement_ends_session_when_everything_is_served(self, services, seat, order_for, notifier):
        table_session, (a, b) = seat(2)
        deliver(services, order_for(a, (1, 1)))
        deliver(services, order_for(b, (3, 1)))
        split = services.settlement.create_split_session(table_session.id, PerItemSplit())

        pay(services, split, a)
        pay(services, split, b)

        ended = services.registry.get_session(table_session.id)
        assert not ended.is_active
        assert ended.ended_by == SessionEndReason.SETTLEMENT
        assert notifier.of_type(EventType.SPLIT_SETTLED, STAFF_CHANNEL)
        assert notifier.of_type(EventType.TABLE_SESSION_ENDED, STAFF_CHANNEL)

    def test_session_stays_open_while_kitchen_is_busy(self, services, seat, order_for):
        table_session, (a,) = seat(1)
        order_for(a, (1, 1))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())

        pay(services, split, a)

        assert services.registry.get_session(table_session.id).is_active

    def test_auto_end_can_be_disabled(self, make_services, notifier):
        svc = make_services(auto_end_session_on_settlement=False)
        table_session, (a,) = seat_party(svc, 1)
        deliver(svc, place_order(svc, a, (1, 1)))
        split = svc.settlement.create_split_session(table_session.id, EqualSplit())

        pay(svc, split, a)

        assert svc.registry.get_session(table_session.id).is_active


class TestStartPayment:
    """pending/failed -> processing."""

    def test_start_then_succeed(self, services, seat, order_for):
        table_session, (a,) = seat(1)
        order_for(a, (1, 1))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())

        contribution = services.settlement.start_payment(split.id, a.id, "card")

        assert contribution.status == ContributionStatus.PROCESSING
        assert contribution.payment_method == "card"
        assert contribution.processing_started_at is not None
        assert pay(services, split, a).settled_now

    def test_cannot_start_twice(self, services, seat, order_for):
        table_session, (a,) = seat(1)
        order_for(a, (1, 1))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())
        services.settlement.start_payment(split.id, a.id, "card")

        with pytest.raises(InvalidStateError):
            services.settlement.start_payment(split.id, a.id, "card")

    def test_cannot_start_paid(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (1, 1))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())
        pay(services, split, a)

        with pytest.raises(AlreadySettledError):
            services.settlement.start_payment(split.id, a.id, "card")

    def test_retry_after_failure(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (1, 1))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())
        pay(services, split, a, PaymentOutcome.FAILED)

        contribution = services.settlement.start_payment(split.id, a.id, "cash")

        assert contribution.status == ContributionStatus.PROCESSING

    def test_stale_attempt_can_be_restarted(self, make_services):
        svc = make_services(payment_processing_timeout_seconds=0)
        table_session, (a, b) = seat_party(svc, 2)
        place_order(svc, a, (1, 1))
        split = svc.settlement.create_split_session(table_session.id, EqualSplit())
        first = svc.settlement.start_payment(split.id, a.id, "card")
        started_at = first.processing_started_at

        restarted = svc.settlement.start_payment(split.id, a.id, "other-card")

        assert restarted.status == ContributionStatus.PROCESSING
        assert restarted.payment_method == "other-card"
        assert restarted.processing_started_at >= started_at
        assert pay(svc, split, a).contribution.status == ContributionStatus.PAID


class TestAddTip:
    """Replacing the tip of a live split."""

    def test_equal_tip_keeps_sum_exact(self, services, seat, order_for, notifier):
        table_session, (a, b) = seat(2)
        order_for(a, (1, 1))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())
        notifier.clear()

        updated = services.settlement.add_tip(split.id, Tip(1001, "equal"))

        assert updated.tip_amount_cents == 1001
        assert updated.tip_strategy == "equal"
        assert dues(updated) == {a.id: 1751, b.id: 1750}
        assert sum(dues(updated).values()) == updated.total_cents == 3501
        assert notifier.of_type(EventType.CONTRIBUTION_DUE, a.id)[-1].entity["amount_due_cents"] == 1751
        assert notifier.of_type(EventType.CONTRIBUTION_DUE, b.id)[-1].entity["amount_due_cents"] == 1750
        assert notifier.of_type(EventType.SPLIT_TIP_UPDATED, STAFF_CHANNEL)[0].entity["total_cents"] == 3501

    def test_proportional_tip_follows_base_shares(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (2, 1))
        order_for(b, (3, 1))
        split = services.settlement.create_split_session(table_session.id, PerItemSplit())

        updated = services.settlement.add_tip(split.id, Tip(1000, "proportional"))

        assert dues(updated) == {a.id: 4900, b.id: 2100}
        by_participant = {c.participant_id: c for c in updated.contributions}
        assert by_participant[a.id].tip_amount_cents == 700
        assert by_participant[b.id].base_amount_cents == 1800

    def test_replaces_previous_tip(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (1, 1))
        split = services.settlement.create_split_session(
            table_session.id, EqualSplit(), Tip(500, "equal")
        )

        updated = services.settlement.add_tip(split.id, Tip())

        assert updated.tip_amount_cents == 0
        assert updated.tip_strategy == "none"
        assert dues(updated) == {a.id: 1250, b.id: 1250}

    def test_gift_payer_absorbs_beneficiary_tip(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (2, 1))
        order_for(b, (1, 1))
        split = services.settlement.create_split_session(
            table_session.id, GiftSplit(payer_id=a.id, beneficiary_ids=frozenset({b.id}))
        )

        updated = services.settlement.add_tip(split.id, Tip(1000, "equal"))

        by_participant = {c.participant_id: c for c in updated.contributions}
        assert by_participant[b.id].amount_due_cents == 0
        assert by_participant[b.id].waived_amount_cents == 2500 + 500
        assert by_participant[a.id].gifted_amount_cents == 3000
        assert by_participant[a.id].amount_due_cents == 4200 + 500 + 3000
        assert sum(dues(updated).values()) == updated.total_cents == 7700

    def test_allowed_after_failed_payment(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (1, 1))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())
        pay(services, split, a, PaymentOutcome.FAILED)

        updated = services.settlement.add_tip(split.id, Tip(200, "equal"))

        assert dues(updated) == {a.id: 1350, b.id: 1350}

    def test_rejected_after_payment(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (1, 1))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())
        pay(services, split, a)

        with pytest.raises(StateError):
            services.settlement.add_tip(split.id, Tip(1000, "equal"))

    def test_rejected_while_charging(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (1, 1))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())
        services.settlement.start_payment(split.id, a.id, "card")

        with pytest.raises(StateError):
            services.settlement.add_tip(split.id, Tip(1000, "equal"))

    def test_custom_tip_must_reconcile(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (1, 1))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())

        with pytest.raises(SplitMismatchError):
            services.settlement.add_tip(split.id, Tip(1000, "custom", {a.id: 600, b.id: 300}))

        unchanged = services.settlement.get_split_session(split.id)
        assert unchanged.tip_amount_cents == 0
        assert dues(unchanged) == {a.id: 1250, b.id: 1250}

    def test_cancelled_split(self, services, seat, order_for):
        table_session, (a,) = seat(1)
        order_for(a, (1, 1))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())
        services.settlement.cancel_split_session(split.id, "Changed plan")

        with pytest.raises(InvalidStateError):
            services.settlement.add_tip(split.id, Tip(1000, "equal"))


class TestCancelSplitSession:
    """Cancelling a split before money moves."""

    def test_cancel_unpaid_split(self, services, seat, order_for, notifier):
        table_session, (a,) = seat(1)
        order_for(a, (1, 1))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())

        cancelled = services.settlement.cancel_split_session(split.id, "Switching to per item")

        assert cancelled.status == SplitStatus.CANCELLED
        assert cancelled.cancel_reason == "Switching to per item"
        assert notifier.of_type(EventType.SPLIT_CANCELLED, a.id)
        # The orders can be billed again
        again = services.settlement.create_split_session(table_session.id, PerItemSplit())
        assert again.base_amount_cents == 2500

    def test_reason_required(self, services, seat, order_for):
        table_session, (a,) = seat(1)
        order_for(a, (1, 1))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())

        with pytest.raises(ValidationError):
            services.settlement.cancel_split_session(split.id, " ")

    def test_cannot_cancel_after_payment(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (1, 1))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())
        pay(services, split, a)

        with pytest.raises(StateError):
            services.settlement.cancel_split_session(split.id, "Too late")

    def test_success_on_cancelled_split_requests_refund(self, services, seat, order_for, notifier):
        table_session, (a,) = seat(1)
        order_for(a, (1, 1))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())
        services.settlement.cancel_split_session(split.id, "Changed plan")

        with pytest.raises(InvalidStateError):
            pay(services, split, a, ref="ch_late_123")

        refund = notifier.of_type(EventType.REFUND_REQUIRED, STAFF_CHANNEL)
        assert refund[0].entity["refunds"] == [
            {"participant_id": a.id, "amount_cents": 2500, "payment_ref": "ch_late_123"}
        ]
        contribution = services.settlement.get_contribution(split.id, a.id)
        assert contribution.status == ContributionStatus.PENDING


class TestConcurrentSettlement:
    """Racing payment callbacks against a shared database."""

    @pytest.mark.parametrize("round_", range(5))
    def test_exactly_one_call_settles(self, file_session_factory, locks, notifier, round_):
        setup_db = file_session_factory()
        setup = build_services(setup_db, locks, notifier)
        table_session, party = seat_party(setup, 2, table_id=round_ + 1)
        for p in party:
            place_order(setup, p, (1, 1))
        split = setup.settlement.create_split_session(table_session.id, EqualSplit())
        setup_db.close()

        barrier = threading.Barrier(len(party))

        def settle(participant_id):
            db = file_session_factory()
            try:
                svc = build_services(db, locks, notifier)
                barrier.wait()
                return svc.settlement.record_payment(
                    split.id, participant_id, PaymentOutcome.SUCCEEDED, payment_ref=f"ch_{participant_id}"
                ).settled_now
            finally:
                db.close()

        with ThreadPoolExecutor(max_workers=len(party)) as pool:
            results = list(pool.map(settle, [p.id for p in party]))

        assert results.count(True) == 1
        assert len(notifier.of_type(EventType.SPLIT_SETTLED, STAFF_CHANNEL)) == 1

    def test_duplicate_callbacks_change_state_once(self, file_session_factory, locks, notifier):
        setup_db = file_session_factory()
        setup = build_services(setup_db, locks, notifier)
        table_session, (a, b) = seat_party(setup, 2)
        place_order(setup, a, (1, 1))
        split = setup.settlement.create_split_session(table_session.id, EqualSplit())
        setup_db.close()

        callbacks = 4
        barrier = threading.Barrier(callbacks)

        def callback(_):
            db = file_session_factory()
            try:
                svc = build_services(db, locks, notifier)
                barrier.wait()
                return svc.settlement.record_payment(
                    split.id, a.id, PaymentOutcome.SUCCEEDED, payment_ref="ch_dup"
                ).changed
            finally:
                db.close()

        with ThreadPoolExecutor(max_workers=callbacks) as pool:
            results = list(pool.map(callback, range(callbacks)))

        assert results.count(True) == 1
        assert len(notifier.of_type(EventType.PAYMENT_SUCCEEDED, a.id)) == 1

        check_db = file_session_factory()
        try:
            contribution = build_services(check_db, locks, notifier).settlement.get_contribution(split.id, a.id)
            assert contribution.amount_paid_cents == 1250
            assert contribution.status == ContributionStatus.PAID
        finally:
            check_db.close()
