"""
Table Session Models: TableSession, Participant.
"""

from __future__ import annotations

from datetime import datetime
from typing import TYPE_CHECKING, Optional

from sqlalchemy import BigInteger, Boolean, DateTime, ForeignKey, Index, Text, text
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .base import Base, BigIntPK, TimestampMixin, utcnow

if TYPE_CHECKING:
    from .order import Order
    from .split import SplitSession


class TableSession(TimestampMixin, Base):
    """
    One continuous occupancy of a physical table.

    Tables themselves live in the venue catalog; only their id is kept here.
    At most one active session exists per table (partial unique index).
    """

    __tablename__ = "table_session"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    table_id: Mapped[int] = mapped_column(BigInteger, nullable=False, index=True)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    started_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    ended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    # "staff", "settlement" or "empty"
    ended_by: Mapped[Optional[str]] = mapped_column(Text)
    # First participant to join; fallback owner for orphaned orders.
    # No FK: participant already references table_session.
    creator_participant_id: Mapped[Optional[int]] = mapped_column(BigInteger)

    # Relationships
    participants: Mapped[list["Participant"]] = relationship(
        back_populates="session", order_by="Participant.id"
    )
    orders: Mapped[list["Order"]] = relationship(
        back_populates="session", order_by="Order.id"
    )
    split_sessions: Mapped[list["SplitSession"]] = relationship(
        back_populates="table_session", order_by="SplitSession.id"
    )

    __table_args__ = (
        Index(
            "uq_table_session_active_table",
            "table_id",
            unique=True,
            sqlite_where=text("is_active = 1"),
            postgresql_where=text("is_active"),
        ),
    )

    def __repr__(self) -> str:
        return f"<TableSession(id={self.id}, table_id={self.table_id}, active={self.is_active})>"


class Participant(TimestampMixin, Base):
    """
    One diner within a table session, known by a session-unique fantasy name.

    Leaving is a soft removal (left_at is set); owned orders are kept.
    """

    __tablename__ = "participant"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    session_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("table_session.id"), nullable=False, index=True
    )
    # Anonymous diners have no user account
    user_id: Mapped[Optional[int]] = mapped_column(BigInteger, index=True)
    fantasy_name: Mapped[str] = mapped_column(Text, nullable=False)
    # Normalized name used for uniqueness (trimmed, single-spaced, casefolded)
    name_key: Mapped[str] = mapped_column(Text, nullable=False)
    joined_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )
    left_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))

    # Relationships
    session: Mapped["TableSession"] = relationship(back_populates="participants")

    __table_args__ = (
        Index(
            "uq_participant_active_name",
            "session_id",
            "name_key",
            unique=True,
            sqlite_where=text("left_at IS NULL"),
            postgresql_where=text("left_at IS NULL"),
        ),
    )

    @property
    def is_active(self) -> bool:
        return self.left_at is None

    def __repr__(self) -> str:
        return f"<Participant(id={self.id}, session_id={self.session_id}, name='{self.fantasy_name}')>"
