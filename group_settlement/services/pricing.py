"""
Menu/pricing collaborator.

The core asks the menu for a unit price and customization surcharges when
an item is added, and never revalidates them afterwards.
"""

from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Protocol

from shared.utils.exceptions import ValidationError


@dataclass(frozen=True)
class PriceQuote:
    """Price of one menu item with the requested customizations."""

    unit_price_cents: int
    # customization name -> surcharge for the line
    surcharges: Mapping[str, int] = field(default_factory=dict)

    @property
    def surcharge_cents(self) -> int:
        return sum(self.surcharges.values())

    def validate(self, menu_item_id: int) -> None:
        if self.unit_price_cents < 0 or any(v < 0 for v in self.surcharges.values()):
            raise ValidationError(
                f"Menu item {menu_item_id} has a negative price",
                menu_item_id=menu_item_id,
            )


class MenuPricing(Protocol):
    """Supplies prices at add time."""

    def quote(self, menu_item_id: int, customizations: Sequence[str]) -> PriceQuote:
        """
        Price a menu item.

        Raises NotFoundError for an unknown item or customization.
        """
        ...
