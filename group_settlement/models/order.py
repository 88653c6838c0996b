"""
Order Models: Order, OrderItem.
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
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from shared.config.constants import OrderStatus
from .base import Base, BigIntPK, TimestampMixin

if TYPE_CHECKING:
    from .table import Participant, TableSession


class Order(TimestampMixin, Base):
    """
    An order owned by exactly one participant.

    While status is "pending" the order is the participant's cart and its
    items can change. Any other status is immutable except for status
    transitions.

    Totals are tax-inclusive: total = subtotal + tax = sum(item totals).

    Single-row writes are protected by optimistic versioning: a concurrent
    update of the same order raises StaleDataError on flush.

    Table is named "app_order" because ORDER is a reserved SQL keyword.
    """

    __tablename__ = "app_order"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    session_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("table_session.id"), nullable=False, index=True
    )
    owner_participant_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("participant.id"), nullable=False, index=True
    )
    status: Mapped[str] = mapped_column(Text, default=OrderStatus.PENDING, nullable=False, index=True)
    subtotal_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    tax_amount_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_amount_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    version: Mapped[int] = mapped_column(Integer, nullable=False)

    confirmed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    delivered_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True))
    cancel_reason: Mapped[Optional[str]] = mapped_column(Text)
    # Split session whose settlement paid for this order
    settled_by_split_id: Mapped[Optional[int]] = mapped_column(
        BigInteger, ForeignKey("split_session.id"), index=True
    )

    # Relationships
    session: Mapped["TableSession"] = relationship(back_populates="orders")
    owner: Mapped["Participant"] = relationship()
    items: Mapped[list["OrderItem"]] = relationship(
        back_populates="order",
        order_by="OrderItem.id",
        cascade="all, delete-orphan",
    )

    __mapper_args__ = {"version_id_col": version}

    __table_args__ = (
        CheckConstraint(
            "total_amount_cents = subtotal_cents + tax_amount_cents",
            name="chk_order_total_reconciles",
        ),
        CheckConstraint("subtotal_cents >= 0", name="chk_order_subtotal_non_negative"),
        CheckConstraint("tax_amount_cents >= 0", name="chk_order_tax_non_negative"),
        Index("ix_order_session_status", "session_id", "status"),
    )

    @property
    def is_cart(self) -> bool:
        return self.status == OrderStatus.PENDING

    def __repr__(self) -> str:
        return (
            f"<Order(id={self.id}, owner={self.owner_participant_id}, "
            f"status='{self.status}', total={self.total_amount_cents})>"
        )


class OrderItem(TimestampMixin, Base):
    """
    One line item.

    Prices come from the menu at add time and are never revalidated:
    total_price = unit_price * quantity + sum(customization surcharges).
    """

    __tablename__ = "order_item"

    id: Mapped[int] = mapped_column(BigIntPK, primary_key=True)
    order_id: Mapped[int] = mapped_column(
        BigInteger, ForeignKey("app_order.id"), nullable=False, index=True
    )
    menu_item_id: Mapped[int] = mapped_column(BigInteger, nullable=False)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False)
    unit_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    # Sorted list of customization names
    customizations: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    surcharge_cents: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_price_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)

    # Relationships
    order: Mapped["Order"] = relationship(back_populates="items")

    __table_args__ = (
        CheckConstraint("quantity > 0", name="chk_order_item_qty_positive"),
        CheckConstraint("unit_price_cents >= 0", name="chk_order_item_price_non_negative"),
        CheckConstraint("surcharge_cents >= 0", name="chk_order_item_surcharge_non_negative"),
        CheckConstraint(
            "total_price_cents = unit_price_cents * quantity + surcharge_cents",
            name="chk_order_item_total",
        ),
    )

    def recompute_total(self) -> None:
        self.total_price_cents = self.unit_price_cents * self.quantity + self.surcharge_cents

    def __repr__(self) -> str:
        return f"<OrderItem(id={self.id}, order_id={self.order_id}, qty={self.quantity}, total={self.total_price_cents})>"
