"""
Domain constants: statuses, strategies, event types and limits.

Values are stored verbatim in the database, so they must never be renamed.
"""

from typing import Final


# =============================================================================
# Orders
# =============================================================================


class OrderStatus:
    """Order lifecycle. PENDING is the mutable cart."""

    PENDING: Final[str] = "pending"
    CONFIRMED: Final[str] = "confirmed"
    PREPARING: Final[str] = "preparing"
    READY: Final[str] = "ready"
    DELIVERED: Final[str] = "delivered"
    CANCELLED: Final[str] = "cancelled"


# Orders in these statuses block leaving and ending the session
NON_TERMINAL_ORDER_STATUSES: Final[frozenset[str]] = frozenset({
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
})

# Ownership can only move while the kitchen has not started
TRANSFERABLE_ORDER_STATUSES: Final[frozenset[str]] = frozenset({
    OrderStatus.PENDING,
    OrderStatus.CONFIRMED,
})

# Orders a split session can bill
BILLABLE_ORDER_STATUSES: Final[frozenset[str]] = frozenset({
    OrderStatus.CONFIRMED,
    OrderStatus.PREPARING,
    OrderStatus.READY,
    OrderStatus.DELIVERED,
})

ORDER_TRANSITIONS: Final[dict[str, frozenset[str]]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.CONFIRMED, OrderStatus.CANCELLED}),
    OrderStatus.CONFIRMED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}


# =============================================================================
# Settlement
# =============================================================================


class SplitStrategyName:
    """Split strategies as persisted on SplitSession.strategy."""

    EQUAL: Final[str] = "equal"
    PER_ITEM: Final[str] = "perItem"
    CUSTOM: Final[str] = "custom"
    GIFT: Final[str] = "gift"


class TipStrategy:
    """How a tip is distributed across contributors."""

    EQUAL: Final[str] = "equal"
    PROPORTIONAL: Final[str] = "proportional"
    CUSTOM: Final[str] = "custom"
    NONE: Final[str] = "none"

    ALL: Final[frozenset[str]] = frozenset({"equal", "proportional", "custom", "none"})


class SplitStatus:
    """SplitSession state machine."""

    OPEN: Final[str] = "open"
    PARTIALLY_SETTLED: Final[str] = "partially_settled"
    SETTLED: Final[str] = "settled"
    CANCELLED: Final[str] = "cancelled"

    LIVE: Final[frozenset[str]] = frozenset({"open", "partially_settled"})
    CLOSED: Final[frozenset[str]] = frozenset({"settled", "cancelled"})


class ContributionStatus:
    """Contribution payment states."""

    PENDING: Final[str] = "pending"
    PROCESSING: Final[str] = "processing"
    PAID: Final[str] = "paid"
    FAILED: Final[str] = "failed"
    WAIVED: Final[str] = "waived"

    # Contributions that no longer need money
    SETTLED: Final[frozenset[str]] = frozenset({"paid", "waived"})


class PaymentOutcome:
    """Outcome reported by the payment collaborator."""

    SUCCEEDED: Final[str] = "succeeded"
    FAILED: Final[str] = "failed"


class SessionEndReason:
    """Who ended a table session."""

    STAFF: Final[str] = "staff"
    SETTLEMENT: Final[str] = "settlement"
    EMPTY: Final[str] = "empty"


class LeaveFallbackPolicy:
    """What happens to open orders of a participant who leaves."""

    REJECT: Final[str] = "reject"
    TRANSFER_TO_CREATOR: Final[str] = "transfer_to_creator"


# =============================================================================
# Notifications
# =============================================================================


STAFF_CHANNEL: Final[str] = "staff"


class EventType:
    """Notification event types."""

    # Session lifecycle
    TABLE_SESSION_STARTED: Final[str] = "TABLE_SESSION_STARTED"
    TABLE_SESSION_ENDED: Final[str] = "TABLE_SESSION_ENDED"
    PARTICIPANT_JOINED: Final[str] = "PARTICIPANT_JOINED"
    PARTICIPANT_RENAMED: Final[str] = "PARTICIPANT_RENAMED"
    PARTICIPANT_LEFT: Final[str] = "PARTICIPANT_LEFT"

    # Orders
    ORDER_CONFIRMED: Final[str] = "ORDER_CONFIRMED"
    ORDER_STATUS_CHANGED: Final[str] = "ORDER_STATUS_CHANGED"
    ORDER_CANCELLED: Final[str] = "ORDER_CANCELLED"
    ORDER_TRANSFERRED: Final[str] = "ORDER_TRANSFERRED"

    # Settlement
    SPLIT_CREATED: Final[str] = "SPLIT_CREATED"
    CONTRIBUTION_DUE: Final[str] = "CONTRIBUTION_DUE"
    PAYMENT_SUCCEEDED: Final[str] = "PAYMENT_SUCCEEDED"
    PAYMENT_FAILED: Final[str] = "PAYMENT_FAILED"
    SPLIT_SETTLED: Final[str] = "SPLIT_SETTLED"
    SPLIT_TIP_UPDATED: Final[str] = "SPLIT_TIP_UPDATED"
    SPLIT_CANCELLED: Final[str] = "SPLIT_CANCELLED"
    REFUND_REQUIRED: Final[str] = "REFUND_REQUIRED"


# =============================================================================
# Limits
# =============================================================================


class Limits:
    """Input bounds."""

    MAX_ITEM_QUANTITY: Final[int] = 99
    MAX_NOTES_LENGTH: Final[int] = 500
    MAX_CANCEL_REASON_LENGTH: Final[int] = 500
    # Rounding for tax-inclusive prices uses basis points
    BPS_DENOMINATOR: Final[int] = 10_000
