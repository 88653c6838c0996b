"""
Group Bill Summary.

Read-only view of a table session for staff and diners: participants with
their orders, the live (or most recent) split session and each participant's
settlement status. Recomputed on every call and never takes the session lock.
"""

from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from shared.config.constants import ContributionStatus, OrderStatus, BILLABLE_ORDER_STATUSES, SplitStatus
from shared.utils.exceptions import SessionNotFoundError
from shared.utils.schemas import (
    GroupBillOutput,
    OrderOutput,
    ParticipantBillOutput,
    SplitSessionOutput,
)
from group_settlement.models import Order, Participant, SplitSession, TableSession


class BillSummaryService:
    """
    Domain service assembling the group bill.
    """

    def __init__(self, db: Session):
        self._db = db

    def get_group_bill(self, session_id: int) -> GroupBillOutput:
        table_session = self._db.get(TableSession, session_id)
        if table_session is None:
            raise SessionNotFoundError(session_id)

        participants = list(self._db.scalars(
            select(Participant)
            .where(Participant.session_id == session_id)
            .order_by(Participant.joined_at, Participant.id)
        ))
        orders = list(self._db.scalars(
            select(Order)
            .where(Order.session_id == session_id)
            .options(selectinload(Order.items))
            .order_by(Order.id)
        ))
        splits = list(self._db.scalars(
            select(SplitSession)
            .where(SplitSession.table_session_id == session_id)
            .options(selectinload(SplitSession.contributions))
            .order_by(SplitSession.id)
        ))

        shown = next((s for s in splits if s.status in SplitStatus.LIVE), splits[-1] if splits else None)
        contributions = {c.participant_id: c for c in shown.contributions} if shown else {}

        orders_by_owner: dict[int, list[Order]] = {}
        for order in orders:
            orders_by_owner.setdefault(order.owner_participant_id, []).append(order)

        participant_rows = []
        for p in participants:
            owned = orders_by_owner.get(p.id, [])
            contribution = contributions.get(p.id)
            participant_rows.append(ParticipantBillOutput(
                id=p.id,
                fantasy_name=p.fantasy_name,
                user_id=p.user_id,
                is_active=p.is_active,
                joined_at=p.joined_at,
                left_at=p.left_at,
                orders=[OrderOutput.model_validate(o) for o in owned],
                ordered_cents=sum(o.total_amount_cents for o in owned if o.status != OrderStatus.CANCELLED),
                contribution_status=contribution.status if contribution else None,
                amount_due_cents=contribution.amount_due_cents if contribution else None,
                amount_paid_cents=contribution.amount_paid_cents if contribution else None,
            ))

        billed = [o for o in orders if o.status in BILLABLE_ORDER_STATUSES]
        settled_cents = sum(o.total_amount_cents for o in billed if o.settled_by_split_id is not None)
        billable_cents = sum(o.total_amount_cents for o in billed if o.settled_by_split_id is None)

        if shown is not None and shown.status in SplitStatus.LIVE:
            # What the live split still has to collect, plus orders outside it
            covered = set(shown.order_ids)
            outstanding = sum(
                c.amount_due_cents for c in shown.contributions
                if c.status not in ContributionStatus.SETTLED
            ) + sum(
                o.total_amount_cents for o in billed
                if o.settled_by_split_id is None and o.id not in covered
            )
        else:
            outstanding = billable_cents

        return GroupBillOutput(
            session_id=table_session.id,
            table_id=table_session.table_id,
            is_active=table_session.is_active,
            started_at=table_session.started_at,
            ended_at=table_session.ended_at,
            ended_by=table_session.ended_by,
            participants=participant_rows,
            total_ordered_cents=sum(o.total_amount_cents for o in orders if o.status != OrderStatus.CANCELLED),
            billable_cents=billable_cents,
            settled_cents=settled_cents,
            split_session=SplitSessionOutput.model_validate(shown) if shown else None,
            outstanding_cents=outstanding,
        )
