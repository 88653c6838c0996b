"""
Payment execution collaborator.

The provider wire protocol is out of scope; the core only needs
"charge this amount and report the outcome".
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Protocol


@dataclass(frozen=True)
class ChargeResult:
    """Outcome of a charge attempt."""

    succeeded: bool
    payment_ref: str | None = None
    error: str | None = None


class PaymentGateway(Protocol):
    """Anything that can charge a diner."""

    name: str

    def charge(self, participant_id: int, amount_cents: int, method: str) -> ChargeResult:
        """
        Charge ``amount_cents`` for a participant.

        May block on the network. Raising is treated as a failed charge.
        """
        ...
