"""
Domain services for table sessions and group settlement.
"""

from .session_service import SessionService
from .order_service import OrderService, split_tax_inclusive
from .settlement_service import SettlementService, PaymentResult
from .bill_summary_service import BillSummaryService
from .split_calculator import (
    BillLine,
    CustomSplit,
    EqualSplit,
    GiftSplit,
    Obligation,
    PerItemSplit,
    SplitResult,
    SplitStrategy,
    Tip,
    calculate,
    distribute_tip,
)
from . import fantasy_names

__all__ = [
    "SessionService",
    "OrderService",
    "split_tax_inclusive",
    "SettlementService",
    "PaymentResult",
    "BillSummaryService",
    "BillLine",
    "CustomSplit",
    "EqualSplit",
    "GiftSplit",
    "Obligation",
    "PerItemSplit",
    "SplitResult",
    "SplitStrategy",
    "Tip",
    "calculate",
    "distribute_tip",
    "fantasy_names",
]
