"""
Settlement Models: SplitSession, Contribution.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import (
    JSON,
    BigInteger,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shared.config.constants import ContributionStatus, SplitStatus, TipStrategy
from .base import Base, BigIntPK, TimestampMixin, utcnow

if TYPE_CHECKING:
    from .table import Participant, TableSession


class SplitSession(TimestampMixin, Base):
    """
    One attempt to settle payment for some or all orders of a table session.

    Invariant: sum(Contribution.amount_due_cents) == base + tip exactly.

    States: open -> partially_settled -> settled, and cancelled from
    open/partially_settled. Any paid or waived contribution makes it
    partially_settled.
    """

    __tablename__ = "split_session"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    table_session_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("table_session.id"), nullable=False, index=True
    )
    strategy: Mapped[str] = mapped_column(Text, nullable=False)  # equal, perItem, custom, gift
    base_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    tip_amount_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tip_strategy: Mapped[str] = mapped_column(Text, default=TipStrategy.NONE, nullable=False)
    status: Mapped[str] = mapped_column(Text, default=SplitStatus.OPEN, nullable=False, index=True)
    currency: Mapped[str] = mapped_column(Text, default="EUR", nullable=False)
    # Orders covered by this split
    order_ids: Mapped[list[int]] = mapped_column(JSON, default=list, nullable=False)
    gift_payer_participant_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("participant.id")
    )
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text)
    settled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    # Drives the abandoned-split sweep
    last_activity_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False, index=True
    )

    # Relationships
    table_session: Mapped["TableSession"] = relationship(back_populates="split_sessions")
    contributions: Mapped[list["Contribution"]] = relationship(
        back_populates="split_session",
        order_by="Contribution.id",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("base_amount_cents >= 0", name="chk_split_base_non_negative"),
        CheckConstraint("tip_amount_cents >= 0", name="chk_split_tip_non_negative"),
        Index("ix_split_session_status_activity", "status", "last_activity_at"),
    )

    @property
    def total_cents(self) -> int:
        return self.base_amount_cents + self.tip_amount_cents

    @property
    def is_live(self) -> bool:
        return self.status in SplitStatus.LIVE

    def __repr__(self) -> str:
        return (
            f"<SplitSession(id={self.id}, session={self.table_session_id}, "
            f"strategy='{self.strategy}', total={self.total_cents}, status='{self.status}')>"
        )


class Contribution(TimestampMixin, Base):
    """
    One participant's obligation and payment record within a split session.

    amount_due = base share + tip share + gifted (absorbed for others) - waived.
    amount_paid is only written together with the transition to paid/failed.
    """

    __tablename__ = "contribution"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    split_session_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("split_session.id"), nullable=False, index=True
    )
    participant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("participant.id"), nullable=False, index=True
    )
    amount_due_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    base_amount_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tip_amount_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    gifted_amount_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    waived_amount_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    amount_paid_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    status: Mapped[str] = mapped_column(
        Text, default=ContributionStatus.PENDING, nullable=False, index=True
    )
    # Gift: who pays this participant's share
    paid_by_participant_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("participant.id")
    )
    payment_ref: Mapped[Optional[str]] = mapped_column(Text)
    payment_method: Mapped[Optional[str]] = mapped_column(Text)
    failure_count: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    processing_started_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Relationships
    split_session: Mapped["SplitSession"] = relationship(back_populates="contributions")
    participant: Mapped["Participant"] = relationship(foreign_keys=[participant_id])

    __table_args__ = (
        UniqueConstraint(
            "split_session_id", "participant_id", name="uq_contribution_split_participant"
        ),
        CheckConstraint("amount_due_cents >= 0", name="chk_contribution_due_non_negative"),
        CheckConstraint("amount_paid_cents >= 0", name="chk_contribution_paid_non_negative"),
        CheckConstraint(
            "amount_due_cents = base_amount_cents + tip_amount_cents"
            " + gifted_amount_cents - waived_amount_cents",
            name="chk_contribution_due_reconciles",
        ),
    )

    @property
    def is_settled(self) -> bool:
        return self.status in ContributionStatus.SETTLED

    def __repr__(self) -> str:
        return (
            f"<Contribution(id={self.id}, split={self.split_session_id}, "
            f"participant={self.participant_id}, due={self.amount_due_cents}, status='{self.status}')>"
        )
