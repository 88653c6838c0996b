"""
ORM models for table sessions, orders and group settlement.
"""

from .base import Base, TimestampMixin, utcnow
from .table import TableSession, Participant
from .order import Order, OrderItem
from .split import SplitSession, Contribution

__all__ = [
    "Base",
    "TimestampMixin",
    "utcnow",
    "TableSession",
    "Participant",
    "Order",
    "OrderItem",
    "SplitSession",
    "Contribution",
]
