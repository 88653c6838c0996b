"""
Session & Participant Registry.

Owns the lifecycle of a table session and its participant list:
check-in, join, rename, leave and ending the session.

Join, rename, leave and end run under the per-session guard so that two
concurrent joins can never claim the same fantasy name.
"""

from __future__ import annotations

import random
from datetime import datetime

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError

from shared.config.constants import (
    ContributionStatus,
    NON_TERMINAL_ORDER_STATUSES,
    OrderStatus,
    EventType,
    LeaveFallbackPolicy,
    SessionEndReason,
    SplitStatus,
    STAFF_CHANNEL,
)
from shared.config.logging import registry_logger as logger
from shared.infrastructure.db import safe_commit
from shared.infrastructure.locks import table_key
from shared.utils.exceptions import (
    ActiveSessionExistsError,
    ConflictError,
    NameTakenError,
    ParticipantNotFoundError,
    SessionNotFoundError,
    SessionNotSettleableError,
    StateError,
)
from group_settlement.models import Contribution, Order, Participant, SplitSession, TableSession, utcnow
from group_settlement.services.base_service import DomainService
from group_settlement.services.domain import fantasy_names


class SessionService(DomainService):
    """
    Domain service for table sessions and participants.
    """

    def __init__(self, *args, rng: random.Random | None = None, **kwargs):
        super().__init__(*args, **kwargs)
        self._rng = rng

    # =========================================================================
    # Queries
    # =========================================================================

    def get_session(self, session_id: int) -> TableSession:
        table_session = self._db.get(TableSession, session_id)
        if table_session is None:
            raise SessionNotFoundError(session_id)
        return table_session

    def get_participant(self, participant_id: int) -> Participant:
        participant = self._db.get(Participant, participant_id)
        if participant is None:
            raise ParticipantNotFoundError(participant_id)
        return participant

    def find_active_session(self, table_id: int) -> TableSession | None:
        return self._db.scalar(
            select(TableSession).where(
                TableSession.table_id == table_id,
                TableSession.is_active.is_(True),
            )
        )

    def active_participants(self, session_id: int) -> list[Participant]:
        """Active participants in join order."""
        return list(self._db.scalars(
            select(Participant)
            .where(
                Participant.session_id == session_id,
                Participant.left_at.is_(None),
            )
            .order_by(Participant.joined_at, Participant.id)
        ))

    # =========================================================================
    # Check-in
    # =========================================================================

    def check_in(self, table_id: int, join_existing: bool = False) -> TableSession:
        """
        Start a session for a table.

        If the table already has an active session, returns it when
        ``join_existing`` is set and raises ActiveSessionExistsError otherwise.
        """
        with self._locks.hold(table_key(table_id)):
            self._db.expire_all()
            existing = self.find_active_session(table_id)
            if existing is not None:
                if join_existing:
                    return existing
                raise ActiveSessionExistsError(table_id, existing.id)

            table_session = TableSession(table_id=table_id, is_active=True, started_at=utcnow())
            self._db.add(table_session)
            try:
                safe_commit(self._db)
            except IntegrityError:
                # Another process won the partial unique index race
                existing = self.find_active_session(table_id)
                if existing is not None and join_existing:
                    return existing
                raise ActiveSessionExistsError(table_id, existing.id if existing else None)

        logger.info("Table session started", session_id=table_session.id, table_id=table_id)
        self._emit(STAFF_CHANNEL, EventType.TABLE_SESSION_STARTED, table_session.id, table_id=table_id)
        self._dispatch()
        return table_session

    # =========================================================================
    # Participants
    # =========================================================================

    def join(
        self,
        session_id: int,
        user_id: int | None = None,
        requested_name: str | None = None,
    ) -> Participant:
        """
        Register a diner in an active session.

        Without ``requested_name`` a fantasy name is allocated. A requested
        name colliding (case-insensitively) with an active participant's
        name raises NameTakenError.
        """
        with self._session_guard(session_id) as table_session:
            active = self.active_participants(session_id)

            if user_id is not None and any(p.user_id == user_id for p in active):
                raise ConflictError(
                    f"User {user_id} already joined table session {session_id}",
                    session_id=session_id,
                    user_id=user_id,
                )

            if requested_name is None:
                name = fantasy_names.allocate(
                    (p.fantasy_name for p in active),
                    rng=self._rng,
                    max_attempts=self._settings.fantasy_name_max_attempts,
                )
            else:
                name = fantasy_names.validate_name(requested_name, self._settings.fantasy_name_max_length)
                self._ensure_name_free(name, active)

            participant = Participant(
                session_id=session_id,
                user_id=user_id,
                fantasy_name=name,
                name_key=fantasy_names.name_key(name),
                joined_at=utcnow(),
            )
            self._db.add(participant)
            self._db.flush()

            if table_session.creator_participant_id is None:
                table_session.creator_participant_id = participant.id

            self._emit(
                STAFF_CHANNEL, EventType.PARTICIPANT_JOINED, session_id,
                participant_id=participant.id, fantasy_name=name,
            )
            for other in active:
                self._emit(
                    other.id, EventType.PARTICIPANT_JOINED, session_id,
                    participant_id=participant.id, fantasy_name=name,
                )
            safe_commit(self._db)

        logger.info(
            "Participant joined",
            session_id=session_id,
            participant_id=participant.id,
            anonymous=user_id is None,
            generated_name=requested_name is None,
        )
        self._dispatch()
        return participant

    def rename(self, participant_id: int, new_name: str) -> Participant:
        """Change an active participant's fantasy name."""
        session_id = self.get_participant(participant_id).session_id

        with self._session_guard(session_id):
            participant = self._db.get(Participant, participant_id)
            if participant is None or not participant.is_active:
                raise ParticipantNotFoundError(participant_id, session_id=session_id)

            name = fantasy_names.validate_name(new_name, self._settings.fantasy_name_max_length)
            others = [p for p in self.active_participants(session_id) if p.id != participant_id]
            self._ensure_name_free(name, others)

            old_name = participant.fantasy_name
            participant.fantasy_name = name
            participant.name_key = fantasy_names.name_key(name)

            for p in others + [participant]:
                self._emit(
                    p.id, EventType.PARTICIPANT_RENAMED, session_id,
                    participant_id=participant_id, old_name=old_name, fantasy_name=name,
                )
            safe_commit(self._db)

        logger.info("Participant renamed", session_id=session_id, participant_id=participant_id)
        self._dispatch()
        return participant

    def leave(self, participant_id: int) -> Participant:
        """
        Soft-remove a participant. Orders they own are never deleted.

        Orders the kitchen has started (preparing/ready) always block leaving.
        Pending or confirmed orders block it under the "reject" policy and are
        handed to the fallback owner under "transfer_to_creator".
        """
        session_id = self.get_participant(participant_id).session_id

        with self._session_guard(session_id) as table_session:
            participant = self._db.get(Participant, participant_id)
            if participant is None or not participant.is_active:
                raise ParticipantNotFoundError(participant_id, session_id=session_id)

            open_orders = list(self._db.scalars(
                select(Order)
                .where(
                    Order.owner_participant_id == participant_id,
                    Order.status.in_(NON_TERMINAL_ORDER_STATUSES),
                )
                .order_by(Order.id)
            ))
            self._ensure_nothing_owed(participant)
            if open_orders:
                self._hand_over_orders(table_session, participant, open_orders)

            participant.left_at = utcnow()
            self._db.flush()

            remaining = self.active_participants(session_id)
            for p in remaining:
                self._emit(p.id, EventType.PARTICIPANT_LEFT, session_id, participant_id=participant_id)
            self._emit(STAFF_CHANNEL, EventType.PARTICIPANT_LEFT, session_id, participant_id=participant_id)

            ended = False
            if not remaining and self._settings.end_session_when_empty:
                if not self.settleable_reasons(table_session):
                    self.close(table_session, SessionEndReason.EMPTY)
                    ended = True

            safe_commit(self._db)

        logger.info(
            "Participant left",
            session_id=session_id,
            participant_id=participant_id,
            transferred_orders=len(open_orders),
            session_ended=ended,
        )
        self._dispatch()
        return participant

    def _ensure_nothing_owed(self, participant: Participant) -> None:
        owed = list(self._db.scalars(
            select(Contribution.split_session_id)
            .join(SplitSession, SplitSession.id == Contribution.split_session_id)
            .where(
                Contribution.participant_id == participant.id,
                Contribution.status.not_in(ContributionStatus.SETTLED),
                SplitSession.status.in_(SplitStatus.LIVE),
            )
        ))
        if owed:
            raise StateError(
                f"Participant {participant.id} still owes a contribution in split sessions {owed}",
                participant_id=participant.id,
                split_session_ids=owed,
            )

    def _hand_over_orders(
        self,
        table_session: TableSession,
        participant: Participant,
        open_orders: list[Order],
    ) -> None:
        started = [o.id for o in open_orders if o.status not in (OrderStatus.PENDING, OrderStatus.CONFIRMED)]
        if started:
            raise StateError(
                f"Participant {participant.id} owns orders already in the kitchen: {started}",
                participant_id=participant.id,
                order_ids=started,
            )

        if self._settings.leave_fallback_policy != LeaveFallbackPolicy.TRANSFER_TO_CREATOR:
            raise StateError(
                f"Participant {participant.id} must transfer open orders before leaving",
                participant_id=participant.id,
                order_ids=[o.id for o in open_orders],
            )

        new_owner = self.fallback_owner(table_session, exclude_id=participant.id)
        if new_owner is None:
            raise StateError(
                f"No participant can take over the open orders of participant {participant.id}",
                participant_id=participant.id,
            )

        for order in open_orders:
            order.owner_participant_id = new_owner.id
            self._emit(
                new_owner.id, EventType.ORDER_TRANSFERRED, table_session.id,
                order_id=order.id, from_participant_id=participant.id, to_participant_id=new_owner.id,
            )
            logger.info(
                "Order transferred on leave",
                order_id=order.id,
                from_participant_id=participant.id,
                to_participant_id=new_owner.id,
            )

    def fallback_owner(self, table_session: TableSession, exclude_id: int | None = None) -> Participant | None:
        """
        Who takes over orders of a participant who is gone: the session
        creator if still active, otherwise the earliest active participant.
        """
        candidates = [p for p in self.active_participants(table_session.id) if p.id != exclude_id]
        for p in candidates:
            if p.id == table_session.creator_participant_id:
                return p
        return candidates[0] if candidates else None

    def _ensure_name_free(self, name: str, active: list[Participant]) -> None:
        key = fantasy_names.name_key(name)
        if any(p.name_key == key for p in active):
            raise NameTakenError(name)

    # =========================================================================
    # Ending
    # =========================================================================

    def settleable_reasons(self, table_session: TableSession) -> list[str]:
        """
        Why the session cannot end yet. Empty list means it can.

        A session ends only without non-terminal orders and with every split
        session settled or cancelled.
        """
        reasons = []

        open_order_ids = list(self._db.scalars(
            select(Order.id).where(
                Order.session_id == table_session.id,
                Order.status.in_(NON_TERMINAL_ORDER_STATUSES),
            )
        ))
        if open_order_ids:
            reasons.append(f"orders not finished: {open_order_ids}")

        live_split_ids = list(self._db.scalars(
            select(SplitSession.id).where(
                SplitSession.table_session_id == table_session.id,
                SplitSession.status.in_(SplitStatus.LIVE),
            )
        ))
        if live_split_ids:
            reasons.append(f"split sessions not settled: {live_split_ids}")

        return reasons

    def close(self, table_session: TableSession, ended_by: str, now: datetime | None = None) -> None:
        """
        Mark the session ended. Caller holds the session guard and has
        checked ``settleable_reasons``.
        """
        table_session.is_active = False
        table_session.ended_at = now or utcnow()
        table_session.ended_by = ended_by

        for p in self.active_participants(table_session.id):
            self._emit(p.id, EventType.TABLE_SESSION_ENDED, table_session.id, ended_by=ended_by)
        self._emit(STAFF_CHANNEL, EventType.TABLE_SESSION_ENDED, table_session.id, ended_by=ended_by)
        logger.info("Table session ended", session_id=table_session.id, ended_by=ended_by)

    def end_session(self, session_id: int, ended_by: str = SessionEndReason.STAFF) -> TableSession:
        """
        End a session.

        Raises:
            SessionNotSettleableError: Non-terminal orders or live splits remain.
            SessionNotActiveError: Already ended.
        """
        with self._session_guard(session_id) as table_session:
            reasons = self.settleable_reasons(table_session)
            if reasons:
                raise SessionNotSettleableError(session_id, reasons)
            self.close(table_session, ended_by)
            safe_commit(self._db)

        self._dispatch()
        return table_session
