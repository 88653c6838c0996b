"""
Settlement Coordinator.

State machine for split sessions and their contributions:

    SplitSession:  open -> partially_settled -> settled
                   open | partially_settled -> cancelled

    Contribution:  pending -> processing -> paid
                                         -> failed -> processing ...
                   processing -> processing (restart after the payment timeout)
                   waived (gift beneficiaries, final from creation)

Every transition runs under the per-session guard, so duplicate payment
callbacks are idempotent and, when the last two contributions are paid
concurrently, exactly one of them settles the split.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone

from sqlalchemy import select

from shared.config.constants import (
    BILLABLE_ORDER_STATUSES,
    ContributionStatus,
    EventType,
    PaymentOutcome,
    SessionEndReason,
    SplitStatus,
    SplitStrategyName,
    STAFF_CHANNEL,
)
from shared.config.logging import mask_payment_ref, settlement_logger as logger
from shared.infrastructure.db import safe_commit
from shared.utils.exceptions import (
    AlreadySettledError,
    ConflictError,
    ContributionNotFoundError,
    InvalidStateError,
    SplitSessionNotFoundError,
    StateError,
    ValidationError,
)
from group_settlement.models import Contribution, Order, SplitSession, TableSession, utcnow
from group_settlement.services.base_service import DomainService
from group_settlement.services.domain import split_calculator
from group_settlement.services.domain.session_service import SessionService
from group_settlement.services.domain.split_calculator import (
    BillLine,
    GiftSplit,
    SplitStrategy,
    Tip,
    distribute_tip,
)


@dataclass(frozen=True)
class PaymentResult:
    """
    Outcome of recording a payment.

    ``changed`` is False for an idempotent replay of an already-paid
    contribution; ``settled_now`` is True only for the call that settled
    the split.
    """

    contribution: Contribution
    split_status: str
    changed: bool
    settled_now: bool = False


class SettlementService(DomainService):
    """
    Domain service for split sessions and payment outcomes.
    """

    def __init__(self, *args, **kwargs):
        super().__init__(*args, **kwargs)
        # Used for fallback owners and ending the session; its events go
        # out with ours after commit
        self._registry = SessionService(*args, **kwargs)
        self._registry._pending_events = self._pending_events

    # =========================================================================
    # Queries
    # =========================================================================

    def get_split_session(self, split_session_id: int) -> SplitSession:
        split = self._db.get(SplitSession, split_session_id)
        if split is None:
            raise SplitSessionNotFoundError(split_session_id)
        return split

    def get_contribution(self, split_session_id: int, participant_id: int) -> Contribution:
        contribution = self._db.scalar(
            select(Contribution).where(
                Contribution.split_session_id == split_session_id,
                Contribution.participant_id == participant_id,
            )
        )
        if contribution is None:
            raise ContributionNotFoundError(split_session_id, participant_id)
        return contribution

    def live_split(self, table_session_id: int) -> SplitSession | None:
        return self._db.scalar(
            select(SplitSession).where(
                SplitSession.table_session_id == table_session_id,
                SplitSession.status.in_(SplitStatus.LIVE),
            )
        )

    def billable_orders(self, table_session_id: int) -> list[Order]:
        """Orders the kitchen accepted that no earlier split has paid for."""
        return list(self._db.scalars(
            select(Order)
            .where(
                Order.session_id == table_session_id,
                Order.status.in_(BILLABLE_ORDER_STATUSES),
                Order.settled_by_split_id.is_(None),
            )
            .order_by(Order.id)
        ))

    def stale_split_ids(self, cutoff: datetime) -> list[tuple[int, int]]:
        """(split_session_id, table_session_id) of live splits idle since before ``cutoff``."""
        rows = self._db.execute(
            select(SplitSession.id, SplitSession.table_session_id)
            .where(
                SplitSession.status.in_(SplitStatus.LIVE),
                SplitSession.last_activity_at < cutoff,
            )
            .order_by(SplitSession.id)
        )
        return [(row[0], row[1]) for row in rows]

    # =========================================================================
    # Creation
    # =========================================================================

    def create_split_session(
        self,
        table_session_id: int,
        strategy: SplitStrategy,
        tip: Tip = Tip(),
        order_ids: Sequence[int] | None = None,
    ) -> SplitSession:
        """
        Compute obligations and persist the split with its contributions.

        Covers every billable order of the session, or the given subset.
        Only one live split may exist per table session.
        """
        with self._session_guard(table_session_id) as table_session:
            existing = self.live_split(table_session_id)
            if existing is not None:
                raise ConflictError(
                    f"Split session {existing.id} is still open for table session {table_session_id}",
                    table_session_id=table_session_id,
                    split_session_id=existing.id,
                )

            orders = self._select_orders(table_session_id, order_ids)
            participants = self._registry.active_participants(table_session_id)
            if not participants:
                raise StateError(
                    f"Table session {table_session_id} has no active participants",
                    session_id=table_session_id,
                )

            lines = self._bill_lines(table_session, orders, {p.id for p in participants})
            result = split_calculator.calculate(
                lines, [p.id for p in participants], strategy, tip
            )

            now = utcnow()
            split = SplitSession(
                table_session_id=table_session_id,
                strategy=split_calculator.strategy_name(strategy),
                base_amount_cents=result.base_cents,
                tip_amount_cents=result.tip_cents,
                tip_strategy=tip.strategy,
                status=(
                    SplitStatus.PARTIALLY_SETTLED
                    if any(ob.is_waived for ob in result.obligations)
                    else SplitStatus.OPEN
                ),
                currency=self._settings.currency,
                order_ids=[o.id for o in orders],
                gift_payer_participant_id=strategy.payer_id if isinstance(strategy, GiftSplit) else None,
                last_activity_at=now,
            )
            for ob in result.obligations:
                split.contributions.append(Contribution(
                    participant_id=ob.participant_id,
                    amount_due_cents=ob.amount_due_cents,
                    base_amount_cents=ob.base_cents,
                    tip_amount_cents=ob.tip_cents,
                    gifted_amount_cents=ob.gifted_cents,
                    waived_amount_cents=ob.waived_cents,
                    paid_by_participant_id=ob.paid_by_participant_id,
                    amount_paid_cents=0,
                    status=ContributionStatus.WAIVED if ob.is_waived else ContributionStatus.PENDING,
                    failure_count=0,
                ))
            self._db.add(split)
            self._db.flush()

            if sum(c.amount_due_cents for c in split.contributions) != split.total_cents:
                # Guaranteed by the calculator; never persist a mismatch
                raise ValidationError(
                    "Contributions do not reconcile with the split total",
                    split_session_id=split.id,
                )

            self._emit(
                STAFF_CHANNEL, EventType.SPLIT_CREATED, table_session_id,
                split_session_id=split.id,
                strategy=split.strategy,
                total_cents=split.total_cents,
            )
            for c in split.contributions:
                self._emit(
                    c.participant_id, EventType.CONTRIBUTION_DUE, table_session_id,
                    split_session_id=split.id,
                    amount_due_cents=c.amount_due_cents,
                    status=c.status,
                    paid_by_participant_id=c.paid_by_participant_id,
                )
            safe_commit(self._db)

        logger.info(
            "Split session created",
            split_session_id=split.id,
            table_session_id=table_session_id,
            strategy=split.strategy,
            base_amount_cents=split.base_amount_cents,
            tip_amount_cents=split.tip_amount_cents,
            contributions=len(split.contributions),
        )
        self._dispatch()
        return split

    def _select_orders(self, table_session_id: int, order_ids: Sequence[int] | None) -> list[Order]:
        billable = self.billable_orders(table_session_id)
        if order_ids is None:
            orders = billable
        else:
            by_id = {o.id: o for o in billable}
            missing = [oid for oid in order_ids if oid not in by_id]
            if missing:
                raise ValidationError(
                    f"Orders not billable in this session: {missing}",
                    order_ids=missing,
                )
            orders = [by_id[oid] for oid in sorted(set(order_ids))]
        if not orders:
            raise ValidationError(
                f"Table session {table_session_id} has no orders to settle",
                session_id=table_session_id,
            )
        return orders

    def _bill_lines(self, table_session: TableSession, orders: list[Order], active_ids: set[int]) -> list[BillLine]:
        """Attribute each order to its owner, or to the fallback owner if they left."""
        fallback = None
        lines = []
        for order in orders:
            payer_id = order.owner_participant_id
            if payer_id not in active_ids:
                if fallback is None:
                    fallback = self._registry.fallback_owner(table_session)
                payer_id = fallback.id
            lines.append(BillLine(order.id, payer_id, order.total_amount_cents))
        return lines

    # =========================================================================
    # Tip
    # =========================================================================

    def add_tip(self, split_session_id: int, tip: Tip) -> SplitSession:
        """
        Replace the tip of a live split before anyone has paid.

        The tip is spread over the existing base shares the same way it
        would have been at creation; a gift payer absorbs the tip of their
        beneficiaries. Every participant gets a fresh CONTRIBUTION_DUE.

        Raises:
            InvalidStateError: Split not live.
            StateError: A contribution is already paid or being charged.
            SplitMismatchError: Custom tip amounts do not sum to the tip.
        """
        session_id = self.get_split_session(split_session_id).table_session_id

        with self._session_guard(session_id) as table_session:
            split = self._db.get(SplitSession, split_session_id, populate_existing=True)
            if not split.is_live:
                raise InvalidStateError(f"Split session {split.id}", split.status, sorted(SplitStatus.LIVE))
            busy = [
                c.participant_id for c in split.contributions
                if c.status in (ContributionStatus.PAID, ContributionStatus.PROCESSING)
            ]
            if busy:
                raise StateError(
                    f"Split session {split.id} already has payments from participants {busy}",
                    split_session_id=split.id,
                )

            shares = distribute_tip(
                tip,
                {c.participant_id: c.base_amount_cents for c in split.contributions},
                everyone=split.strategy == SplitStrategyName.EQUAL,
            )

            gifted = 0
            for c in split.contributions:
                c.tip_amount_cents = shares[c.participant_id]
                if c.status == ContributionStatus.WAIVED:
                    c.waived_amount_cents = c.base_amount_cents + c.tip_amount_cents
                    gifted += c.waived_amount_cents
            for c in split.contributions:
                if c.participant_id == split.gift_payer_participant_id:
                    c.gifted_amount_cents = gifted
                c.amount_due_cents = (
                    c.base_amount_cents + c.tip_amount_cents
                    + c.gifted_amount_cents - c.waived_amount_cents
                )

            split.tip_amount_cents = tip.amount_cents
            split.tip_strategy = tip.strategy
            split.last_activity_at = utcnow()

            if sum(c.amount_due_cents for c in split.contributions) != split.total_cents:
                raise ValidationError(
                    "Contributions do not reconcile with the split total",
                    split_session_id=split.id,
                )

            self._emit(
                STAFF_CHANNEL, EventType.SPLIT_TIP_UPDATED, table_session.id,
                split_session_id=split.id,
                tip_amount_cents=split.tip_amount_cents,
                total_cents=split.total_cents,
            )
            for c in split.contributions:
                self._emit(
                    c.participant_id, EventType.CONTRIBUTION_DUE, table_session.id,
                    split_session_id=split.id,
                    amount_due_cents=c.amount_due_cents,
                    status=c.status,
                    paid_by_participant_id=c.paid_by_participant_id,
                )
            safe_commit(self._db)

        logger.info(
            "Split tip updated",
            split_session_id=split_session_id,
            tip_amount_cents=tip.amount_cents,
            tip_strategy=tip.strategy,
        )
        self._dispatch()
        return split

    # =========================================================================
    # Payments
    # =========================================================================

    def start_payment(self, split_session_id: int, participant_id: int, method: str) -> Contribution:
        """
        Mark a contribution as being charged (pending/failed -> processing).

        Raises:
            AlreadySettledError: Already paid.
            InvalidStateError: Waived, processing within the payment timeout,
                or split not live.
        """
        session_id = self.get_split_session(split_session_id).table_session_id

        with self._session_guard(session_id, require_active=False):
            split, contribution = self._locked_contribution(split_session_id, participant_id)
            if not split.is_live:
                raise InvalidStateError(f"Split session {split.id}", split.status, sorted(SplitStatus.LIVE))
            if contribution.status == ContributionStatus.PAID:
                raise AlreadySettledError(contribution.id)
            now = utcnow()
            if contribution.status == ContributionStatus.PROCESSING and self._attempt_expired(contribution, now):
                logger.warning(
                    "Restarting stale payment attempt",
                    split_session_id=split_session_id,
                    participant_id=participant_id,
                    previous_method=contribution.payment_method,
                    started_at=contribution.processing_started_at,
                )
            elif contribution.status not in (ContributionStatus.PENDING, ContributionStatus.FAILED):
                raise InvalidStateError(
                    f"Contribution {contribution.id}",
                    contribution.status,
                    [ContributionStatus.PENDING, ContributionStatus.FAILED],
                )

            contribution.status = ContributionStatus.PROCESSING
            contribution.payment_method = method
            contribution.processing_started_at = now
            split.last_activity_at = now
            safe_commit(self._db)

        logger.info(
            "Payment started",
            split_session_id=split_session_id,
            participant_id=participant_id,
            amount_due_cents=contribution.amount_due_cents,
            method=method,
        )
        return contribution

    def _attempt_expired(self, contribution: Contribution, now: datetime) -> bool:
        """True if a processing contribution has waited longer than the payment timeout."""
        started = contribution.processing_started_at
        if started is None:
            return True
        if started.tzinfo is None:
            started = started.replace(tzinfo=timezone.utc)
        return now - started >= timedelta(seconds=self._settings.payment_processing_timeout_seconds)

    def record_payment(
        self,
        split_session_id: int,
        participant_id: int,
        outcome: str,
        payment_ref: str | None = None,
        method: str | None = None,
    ) -> PaymentResult:
        """
        Record a payment outcome for one contribution, atomically.

        A replay for an already-paid contribution is a silent no-op
        (``changed=False``). A failed outcome leaves the amount due so the
        diner can retry. When every contribution is paid or waived the split
        settles, covered orders are marked paid and the session may end.
        """
        if outcome not in (PaymentOutcome.SUCCEEDED, PaymentOutcome.FAILED):
            raise ValidationError(f"Unknown payment outcome '{outcome}'", outcome=outcome)

        session_id = self.get_split_session(split_session_id).table_session_id
        settled_now = False

        with self._session_guard(session_id, require_active=False) as table_session:
            split, contribution = self._locked_contribution(split_session_id, participant_id)

            try:
                self._check_payable(split, contribution, outcome, payment_ref)
            except AlreadySettledError:
                logger.info(
                    "Duplicate payment outcome ignored",
                    split_session_id=split_session_id,
                    participant_id=participant_id,
                    outcome=outcome,
                    payment_ref=mask_payment_ref(payment_ref),
                )
                self._db.rollback()
                return PaymentResult(contribution, split.status, changed=False)

            now = utcnow()
            if method is not None:
                contribution.payment_method = method
            contribution.payment_ref = payment_ref
            split.last_activity_at = now

            if outcome == PaymentOutcome.SUCCEEDED:
                contribution.status = ContributionStatus.PAID
                contribution.amount_paid_cents = contribution.amount_due_cents
                contribution.paid_at = now
                self._emit(
                    contribution.participant_id, EventType.PAYMENT_SUCCEEDED, session_id,
                    split_session_id=split.id, amount_paid_cents=contribution.amount_paid_cents,
                )
                self._emit(
                    STAFF_CHANNEL, EventType.PAYMENT_SUCCEEDED, session_id,
                    split_session_id=split.id, participant_id=participant_id,
                    amount_paid_cents=contribution.amount_paid_cents,
                )
            else:
                contribution.status = ContributionStatus.FAILED
                contribution.amount_paid_cents = 0
                contribution.failure_count += 1
                self._emit(
                    contribution.participant_id, EventType.PAYMENT_FAILED, session_id,
                    split_session_id=split.id, amount_due_cents=contribution.amount_due_cents,
                )

            settled_now = self._reevaluate(table_session, split, now)
            safe_commit(self._db)

        logger.info(
            "Payment recorded",
            split_session_id=split_session_id,
            participant_id=participant_id,
            outcome=outcome,
            payment_ref=mask_payment_ref(payment_ref),
            split_status=split.status,
        )
        self._dispatch()
        return PaymentResult(contribution, split.status, changed=True, settled_now=settled_now)

    def _check_payable(self, split: SplitSession, contribution: Contribution, outcome: str, payment_ref: str | None) -> None:
        if contribution.status == ContributionStatus.PAID:
            raise AlreadySettledError(contribution.id, split_session_id=split.id)
        if contribution.status == ContributionStatus.WAIVED:
            raise InvalidStateError(
                f"Contribution {contribution.id}", contribution.status,
                [ContributionStatus.PENDING, ContributionStatus.PROCESSING, ContributionStatus.FAILED],
            )
        if not split.is_live:
            if outcome == PaymentOutcome.SUCCEEDED:
                logger.error(
                    "Payment succeeded on a closed split session",
                    split_session_id=split.id,
                    participant_id=contribution.participant_id,
                    payment_ref=mask_payment_ref(payment_ref),
                )
                # Sent immediately: the guard drops queued events on error
                self._notify_refund(split, [(contribution.participant_id, contribution.amount_due_cents, payment_ref)])
            raise InvalidStateError(f"Split session {split.id}", split.status, sorted(SplitStatus.LIVE))

    def _reevaluate(self, table_session: TableSession, split: SplitSession, now: datetime) -> bool:
        """Recompute the split status. Returns True if this call settled it."""
        statuses = [c.status for c in split.contributions]
        if all(s in ContributionStatus.SETTLED for s in statuses):
            split.status = SplitStatus.SETTLED
            split.settled_at = now
            self._on_settled(table_session, split)
            return True
        if any(s in ContributionStatus.SETTLED for s in statuses):
            split.status = SplitStatus.PARTIALLY_SETTLED
        return False

    def _on_settled(self, table_session: TableSession, split: SplitSession) -> None:
        for order in self._db.scalars(select(Order).where(Order.id.in_(split.order_ids))):
            order.settled_by_split_id = split.id
        self._db.flush()

        for c in split.contributions:
            self._emit(c.participant_id, EventType.SPLIT_SETTLED, table_session.id, split_session_id=split.id)
        self._emit(
            STAFF_CHANNEL, EventType.SPLIT_SETTLED, table_session.id,
            split_session_id=split.id, total_cents=split.total_cents,
        )
        logger.info(
            "Split session settled",
            split_session_id=split.id,
            table_session_id=table_session.id,
            total_cents=split.total_cents,
        )

        if (
            table_session.is_active
            and self._settings.auto_end_session_on_settlement
            and not self._registry.settleable_reasons(table_session)
        ):
            self._registry.close(table_session, SessionEndReason.SETTLEMENT)

    def _locked_contribution(self, split_session_id: int, participant_id: int) -> tuple[SplitSession, Contribution]:
        split = self._db.get(SplitSession, split_session_id, populate_existing=True)
        if split is None:
            raise SplitSessionNotFoundError(split_session_id)
        contribution = self._db.scalar(
            select(Contribution)
            .where(
                Contribution.split_session_id == split_session_id,
                Contribution.participant_id == participant_id,
            )
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        if contribution is None:
            raise ContributionNotFoundError(split_session_id, participant_id)
        return split, contribution

    # =========================================================================
    # Cancellation
    # =========================================================================

    def cancel_split_session(self, split_session_id: int, reason: str) -> SplitSession:
        """
        Cancel a live split while nothing has been paid, e.g. to switch
        strategy. A new split can be created afterwards.
        """
        if not reason or not reason.strip():
            raise ValidationError("A reason is required to cancel a split session")
        session_id = self.get_split_session(split_session_id).table_session_id

        with self._session_guard(session_id, require_active=False):
            split = self._db.get(SplitSession, split_session_id, populate_existing=True)
            if not split.is_live:
                raise InvalidStateError(f"Split session {split.id}", split.status, sorted(SplitStatus.LIVE))
            paid = [c.participant_id for c in split.contributions if c.status == ContributionStatus.PAID]
            if paid:
                raise StateError(
                    f"Split session {split.id} already has payments from participants {paid}",
                    split_session_id=split.id,
                )
            self._cancel(split, reason.strip())
            safe_commit(self._db)

        self._dispatch()
        return split

    def cancel_if_abandoned(self, split_session_id: int, cutoff: datetime) -> bool:
        """
        Cancel a live split idle since before ``cutoff``. Re-checked under the
        lock so a late payment wins the race. Paid contributions of a
        partially settled split are reported to staff for refund.
        """
        session_id = self.get_split_session(split_session_id).table_session_id

        with self._session_guard(session_id, require_active=False):
            split = self._db.get(SplitSession, split_session_id, populate_existing=True)
            last_activity = split.last_activity_at
            if last_activity.tzinfo is None:
                last_activity = last_activity.replace(tzinfo=cutoff.tzinfo)
            if not split.is_live or last_activity >= cutoff:
                self._db.rollback()
                return False

            refunds = [
                (c.participant_id, c.amount_paid_cents, c.payment_ref)
                for c in split.contributions
                if c.status == ContributionStatus.PAID
            ]
            self._cancel(split, "abandoned")
            safe_commit(self._db)

        if refunds:
            self._notify_refund(split, refunds)
        self._dispatch()
        return True

    def _cancel(self, split: SplitSession, reason: str) -> None:
        split.status = SplitStatus.CANCELLED
        split.cancel_reason = reason
        split.cancelled_at = utcnow()
        for c in split.contributions:
            self._emit(
                c.participant_id, EventType.SPLIT_CANCELLED, split.table_session_id,
                split_session_id=split.id, reason=reason,
            )
        self._emit(
            STAFF_CHANNEL, EventType.SPLIT_CANCELLED, split.table_session_id,
            split_session_id=split.id, reason=reason,
        )
        logger.info("Split session cancelled", split_session_id=split.id, reason=reason)

    def _notify_refund(self, split: SplitSession, refunds: list[tuple[int, int, str | None]]) -> None:
        self._notify_now(
            STAFF_CHANNEL, EventType.REFUND_REQUIRED, split.table_session_id,
            split_session_id=split.id,
            refunds=[
                {"participant_id": pid, "amount_cents": amount, "payment_ref": ref}
                for pid, amount, ref in refunds
            ],
        )
