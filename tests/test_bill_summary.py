"""
Tests for the group bill summary.
"""

import pytest

from shared.config.constants import ContributionStatus, OrderStatus, PaymentOutcome, SplitStatus
from shared.utils.exceptions import SessionNotFoundError
from group_settlement.services.domain import EqualSplit, PerItemSplit
from tests.conftest import deliver


class TestGroupBill:
    """get_group_bill"""

    def test_unknown_session(self, services):
        with pytest.raises(SessionNotFoundError):
            services.bills.get_group_bill(404)

    def test_before_any_split(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (1, 1))
        order_for(b, (4, 2), confirm=False)

        bill = services.bills.get_group_bill(table_session.id)

        assert bill.is_active
        assert [p.fantasy_name for p in bill.participants] == ["Diner 1", "Diner 2"]
        assert bill.participants[0].ordered_cents == 2500
        assert bill.participants[1].orders[0].status == OrderStatus.PENDING
        assert bill.total_ordered_cents == 4500
        # Carts are not billable yet
        assert bill.billable_cents == 2500
        assert bill.outstanding_cents == 2500
        assert bill.split_session is None
        assert bill.participants[0].contribution_status is None

    def test_cancelled_orders_are_excluded_from_totals(self, services, seat, order_for):
        table_session, (a,) = seat(1)
        order_for(a, (4, 1))
        dropped = order_for(a, (1, 1))
        services.orders.cancel(dropped.id, reason="Wrong table")

        bill = services.bills.get_group_bill(table_session.id)

        assert len(bill.participants[0].orders) == 2
        assert bill.participants[0].ordered_cents == 1000
        assert bill.total_ordered_cents == 1000

    def test_live_split_progress(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        order_for(a, (2, 1))
        order_for(b, (3, 1))
        split = services.settlement.create_split_session(table_session.id, PerItemSplit())
        services.settlement.record_payment(split.id, a.id, PaymentOutcome.SUCCEEDED, payment_ref="ch_1")

        bill = services.bills.get_group_bill(table_session.id)

        assert bill.split_session.id == split.id
        assert bill.split_session.status == SplitStatus.PARTIALLY_SETTLED
        rows = {p.id: p for p in bill.participants}
        assert rows[a.id].contribution_status == ContributionStatus.PAID
        assert rows[a.id].amount_paid_cents == 4200
        assert rows[b.id].contribution_status == ContributionStatus.PENDING
        assert rows[b.id].amount_due_cents == 1800
        assert bill.outstanding_cents == 1800
        assert bill.settled_cents == 0

    def test_orders_outside_live_split_are_outstanding(self, services, seat, order_for):
        table_session, (a, b) = seat(2)
        first = order_for(a, (1, 1))
        order_for(b, (3, 1))
        split = services.settlement.create_split_session(
            table_session.id, PerItemSplit(), order_ids=[first.id]
        )

        bill = services.bills.get_group_bill(table_session.id)
        assert bill.split_session.id == split.id
        assert bill.outstanding_cents == 2500 + 1800

        services.settlement.record_payment(split.id, a.id, PaymentOutcome.SUCCEEDED, payment_ref="ch_1")

        bill = services.bills.get_group_bill(table_session.id)
        assert bill.split_session.status == SplitStatus.SETTLED
        assert bill.settled_cents == 2500
        assert bill.outstanding_cents == 1800

    def test_after_settlement(self, services, seat, order_for):
        table_session, (a,) = seat(1)
        deliver(services, order_for(a, (1, 1)))
        split = services.settlement.create_split_session(table_session.id, EqualSplit())
        services.settlement.record_payment(split.id, a.id, PaymentOutcome.SUCCEEDED, payment_ref="ch_1")

        bill = services.bills.get_group_bill(table_session.id)

        assert not bill.is_active
        assert bill.ended_by == "settlement"
        assert bill.split_session.status == SplitStatus.SETTLED
        assert bill.settled_cents == 2500
        assert bill.billable_cents == 0
        assert bill.outstanding_cents == 0
        assert bill.participants[0].orders[0].settled_by_split_id == split.id

    def test_cancelled_split_shows_until_replaced(self, services, seat, order_for):
        table_session, (a,) = seat(1)
        order_for(a, (1, 1))
        first = services.settlement.create_split_session(table_session.id, EqualSplit())
        services.settlement.cancel_split_session(first.id, "Switching")

        bill = services.bills.get_group_bill(table_session.id)
        assert bill.split_session.status == SplitStatus.CANCELLED
        assert bill.outstanding_cents == 2500

        second = services.settlement.create_split_session(table_session.id, PerItemSplit())
        assert services.bills.get_group_bill(table_session.id).split_session.id == second.id

    def test_departed_participant_is_listed(self, services, seat):
        table_session, (a, b) = seat(2)
        services.registry.leave(b.id)

        bill = services.bills.get_group_bill(table_session.id)

        rows = {p.id: p for p in bill.participants}
        assert not rows[b.id].is_active
        assert rows[b.id].left_at is not None

    def test_serializes_to_json(self, services, seat, order_for):
        table_session, (a,) = seat(1)
        order_for(a, (1, 1))
        services.settlement.create_split_session(table_session.id, EqualSplit())

        data = services.bills.get_group_bill(table_session.id).model_dump(mode="json")

        assert data["split_session"]["strategy"] == "equal"
        assert data["participants"][0]["orders"][0]["items"][0]["unit_price_cents"] == 2500
