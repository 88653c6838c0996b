"""
Shared Pydantic schemas used across the application.

Output models are built from ORM objects with ``model_validate`` and are
safe to serialize for staff dashboards, diner apps and the CLI.
"""

from datetime import datetime
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field


# =============================================================================
# Common Types
# =============================================================================

OrderStatusLiteral = Literal["pending", "confirmed", "preparing", "ready", "delivered", "cancelled"]
SplitStrategyLiteral = Literal["equal", "perItem", "custom", "gift"]
TipStrategyLiteral = Literal["equal", "proportional", "custom", "none"]
SplitStatusLiteral = Literal["open", "partially_settled", "settled", "cancelled"]
ContributionStatusLiteral = Literal["pending", "processing", "paid", "failed", "waived"]


# =============================================================================
# Group Bill Schemas
# =============================================================================


class OrderItemOutput(BaseModel):
    """Single line item of an order."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    menu_item_id: int
    quantity: int
    unit_price_cents: int
    customizations: list[str] = Field(default_factory=list)
    surcharge_cents: int = 0
    total_price_cents: int
    notes: str | None = None


class OrderOutput(BaseModel):
    """Order (cart or confirmed) with its items."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    owner_participant_id: int
    status: OrderStatusLiteral
    subtotal_cents: int
    tax_amount_cents: int
    total_amount_cents: int
    notes: str | None = None
    settled_by_split_id: int | None = None
    cancel_reason: str | None = None
    items: list[OrderItemOutput]
    created_at: datetime
    confirmed_at: datetime | None = None


class ContributionOutput(BaseModel):
    """One participant's obligation within a split session."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    participant_id: int
    amount_due_cents: int
    base_amount_cents: int
    tip_amount_cents: int
    gifted_amount_cents: int
    waived_amount_cents: int
    amount_paid_cents: int
    status: ContributionStatusLiteral
    paid_by_participant_id: int | None = None
    payment_ref: str | None = None
    failure_count: int = 0
    paid_at: datetime | None = None


class SplitSessionOutput(BaseModel):
    """Split session with its contributions."""

    model_config = ConfigDict(from_attributes=True)

    id: int
    strategy: SplitStrategyLiteral
    base_amount_cents: int
    tip_amount_cents: int
    tip_strategy: TipStrategyLiteral
    status: SplitStatusLiteral
    currency: str
    order_ids: list[int]
    contributions: list[ContributionOutput]
    created_at: datetime
    settled_at: datetime | None = None
    cancelled_at: datetime | None = None
    cancel_reason: str | None = None


class ParticipantBillOutput(BaseModel):
    """A participant with their orders and settlement status."""

    id: int
    fantasy_name: str
    user_id: int | None = None
    is_active: bool
    joined_at: datetime
    left_at: datetime | None = None
    orders: list[OrderOutput]
    # Sum of non-cancelled orders owned by the participant
    ordered_cents: int
    # Status of this participant's contribution in the shown split, if any
    contribution_status: ContributionStatusLiteral | None = None
    amount_due_cents: int | None = None
    amount_paid_cents: int | None = None


class GroupBillOutput(BaseModel):
    """Read-only view of a table session for staff and diners."""

    session_id: int
    table_id: int
    is_active: bool
    started_at: datetime
    ended_at: datetime | None = None
    ended_by: str | None = None
    participants: list[ParticipantBillOutput]
    # Totals over non-cancelled orders
    total_ordered_cents: int
    billable_cents: int
    settled_cents: int
    # Live split if any, otherwise the most recent one
    split_session: SplitSessionOutput | None = None
    outstanding_cents: int
