"""
Group settlement services.
"""

from .base_service import DomainService
from .pricing import MenuPricing, PriceQuote
from .sweeper import SplitSweeper

__all__ = [
    "DomainService",
    "MenuPricing",
    "PriceQuote",
    "SplitSweeper",
]
