"""
Split Calculator.

Pure functions turning billed orders, a split strategy and a tip into
per-participant obligations. All amounts are integer cents; whenever an
amount does not divide evenly the remainder goes to the earliest
participants in join order, so obligations always sum exactly to
base + tip.

Strategies are a closed set of variants dispatched by type:

    obligations = calculate(lines, participant_ids, EqualSplit(), Tip(1000, "equal"))
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field
from typing import Union

from shared.config.constants import SplitStrategyName, TipStrategy
from shared.utils.exceptions import SplitMismatchError, ValidationError


# =============================================================================
# Inputs
# =============================================================================


@dataclass(frozen=True)
class BillLine:
    """One billed order, attributed to the participant who pays for it."""

    order_id: int
    participant_id: int
    total_cents: int


@dataclass(frozen=True)
class EqualSplit:
    """Everyone pays the same; remainder cents go to the earliest joiners."""


@dataclass(frozen=True)
class PerItemSplit:
    """Everyone pays for the orders they own."""


@dataclass(frozen=True)
class CustomSplit:
    """Caller-supplied amounts that must sum to the base exactly."""

    amounts: Mapping[int, int]


@dataclass(frozen=True)
class GiftSplit:
    """
    Per-item split where ``payer_id`` also covers the beneficiaries' shares
    (including their tip).
    """

    payer_id: int
    beneficiary_ids: frozenset[int]


SplitStrategy = Union[EqualSplit, PerItemSplit, CustomSplit, GiftSplit]


@dataclass(frozen=True)
class Tip:
    """Tip amount and how it is distributed."""

    amount_cents: int = 0
    strategy: str = TipStrategy.NONE
    custom_amounts: Mapping[int, int] | None = None


@dataclass(frozen=True)
class Obligation:
    """What one participant owes, and why."""

    participant_id: int
    base_cents: int
    tip_cents: int
    gifted_cents: int = 0
    waived_cents: int = 0
    paid_by_participant_id: int | None = None

    @property
    def amount_due_cents(self) -> int:
        return self.base_cents + self.tip_cents + self.gifted_cents - self.waived_cents

    @property
    def is_waived(self) -> bool:
        return self.paid_by_participant_id is not None


@dataclass(frozen=True)
class SplitResult:
    base_cents: int
    tip_cents: int
    obligations: list[Obligation] = field(default_factory=list)

    @property
    def total_cents(self) -> int:
        return self.base_cents + self.tip_cents


# =============================================================================
# Arithmetic
# =============================================================================


def distribute_evenly(total_cents: int, count: int) -> list[int]:
    """
    Split ``total_cents`` into ``count`` parts differing by at most one
    cent; the first ``total % count`` parts get the extra cent.
    """
    if count <= 0:
        raise ValueError("count must be positive")
    quotient, remainder = divmod(total_cents, count)
    return [quotient + 1 if i < remainder else quotient for i in range(count)]


def distribute_proportionally(total_cents: int, weights: Sequence[int]) -> list[int]:
    """
    Largest-remainder allocation of ``total_cents`` by ``weights``.

    Ties in the fractional remainder go to the earlier position. All-zero
    weights fall back to an even split.
    """
    weight_sum = sum(weights)
    if weight_sum == 0:
        return distribute_evenly(total_cents, len(weights))

    shares = [total_cents * w // weight_sum for w in weights]
    leftover = total_cents - sum(shares)
    by_remainder = sorted(
        range(len(weights)),
        key=lambda i: (-(total_cents * weights[i] % weight_sum), i),
    )
    for i in by_remainder[:leftover]:
        shares[i] += 1
    return shares


# =============================================================================
# Base shares per strategy
# =============================================================================


def _owned_totals(lines: Sequence[BillLine], participant_ids: Sequence[int]) -> dict[int, int]:
    totals = dict.fromkeys(participant_ids, 0)
    for line in lines:
        if line.participant_id not in totals:
            raise ValidationError(
                f"Order {line.order_id} belongs to a participant outside the split",
                order_id=line.order_id,
                participant_id=line.participant_id,
            )
        totals[line.participant_id] += line.total_cents
    return totals


def _check_amounts(amounts: Mapping[int, int], participant_ids: Sequence[int], expected: int, what: str) -> dict[int, int]:
    unknown = set(amounts) - set(participant_ids)
    if unknown:
        raise ValidationError(
            f"Unknown participants in {what}: {sorted(unknown)}",
            participant_ids=sorted(unknown),
        )
    if any(v < 0 for v in amounts.values()):
        raise ValidationError(f"Negative value in {what}")
    actual = sum(amounts.values())
    if actual != expected:
        raise SplitMismatchError(expected, actual, what=what)
    return {pid: amounts.get(pid, 0) for pid in participant_ids}


def _equal_shares(strategy: EqualSplit, lines, participant_ids, base) -> dict[int, int]:
    return dict(zip(participant_ids, distribute_evenly(base, len(participant_ids))))


def _per_item_shares(strategy: PerItemSplit | GiftSplit, lines, participant_ids, base) -> dict[int, int]:
    return _owned_totals(lines, participant_ids)


def _custom_shares(strategy: CustomSplit, lines, participant_ids, base) -> dict[int, int]:
    return _check_amounts(strategy.amounts, participant_ids, base, "split amounts")


_BASE_SHARES: dict[type, Callable[..., dict[int, int]]] = {
    EqualSplit: _equal_shares,
    PerItemSplit: _per_item_shares,
    CustomSplit: _custom_shares,
    GiftSplit: _per_item_shares,
}

_STRATEGY_NAMES: dict[type, str] = {
    EqualSplit: SplitStrategyName.EQUAL,
    PerItemSplit: SplitStrategyName.PER_ITEM,
    CustomSplit: SplitStrategyName.CUSTOM,
    GiftSplit: SplitStrategyName.GIFT,
}


def strategy_name(strategy: SplitStrategy) -> str:
    """Persisted name of a strategy variant."""
    return _STRATEGY_NAMES[type(strategy)]


# =============================================================================
# Tip
# =============================================================================


def _tip_shares(tip: Tip, base_shares: dict[int, int], holders: list[int]) -> dict[int, int]:
    if tip.amount_cents < 0:
        raise ValidationError("Tip cannot be negative", tip_cents=tip.amount_cents)
    if tip.strategy not in TipStrategy.ALL:
        raise ValidationError(f"Unknown tip strategy '{tip.strategy}'", tip_strategy=tip.strategy)

    shares = dict.fromkeys(base_shares, 0)

    if tip.strategy == TipStrategy.NONE:
        if tip.amount_cents:
            raise ValidationError("Tip strategy 'none' requires a zero tip", tip_cents=tip.amount_cents)
        return shares

    if tip.strategy == TipStrategy.CUSTOM:
        shares.update(_check_amounts(tip.custom_amounts or {}, list(base_shares), tip.amount_cents, "tip amounts"))
        return shares

    if tip.strategy == TipStrategy.EQUAL:
        parts = distribute_evenly(tip.amount_cents, len(holders))
    else:
        parts = distribute_proportionally(tip.amount_cents, [base_shares[pid] for pid in holders])
    shares.update(zip(holders, parts))
    return shares


def distribute_tip(tip: Tip, base_shares: Mapping[int, int], everyone: bool = False) -> dict[int, int]:
    """
    Tip share per participant, keyed like ``base_shares`` (join order).

    Equal and proportional tips go to everyone when ``everyone`` is set
    (equal split), otherwise to participants with a base share, or to
    everyone if nobody has one.
    """
    base_shares = dict(base_shares)
    participant_ids = list(base_shares)
    if everyone:
        holders = participant_ids
    else:
        holders = [pid for pid in participant_ids if base_shares[pid] > 0] or participant_ids
    return _tip_shares(tip, base_shares, holders)


# =============================================================================
# Entry point
# =============================================================================


def calculate(
    lines: Sequence[BillLine],
    participant_ids: Sequence[int],
    strategy: SplitStrategy,
    tip: Tip = Tip(),
) -> SplitResult:
    """
    Compute obligations.

    Args:
        lines: Billed orders, each attributed to one of ``participant_ids``.
        participant_ids: Participants who can pay, in join order.
        strategy: One of the split variants.
        tip: Tip amount and distribution.

    Returns:
        SplitResult whose obligations sum exactly to base + tip. Participants
        owing nothing are omitted unless they are gift beneficiaries.

    Raises:
        SplitMismatchError: Custom amounts do not sum to the base (or tip).
        ValidationError: Anything else inconsistent; nothing to pay.
    """
    handler = _BASE_SHARES.get(type(strategy))
    if handler is None:
        raise ValidationError(f"Unknown split strategy {strategy!r}")
    if not participant_ids:
        raise ValidationError("A split needs at least one participant")
    if len(set(participant_ids)) != len(participant_ids):
        raise ValidationError("Duplicate participants in split")
    if any(line.total_cents < 0 for line in lines):
        raise ValidationError("Order totals cannot be negative")

    participant_ids = list(participant_ids)
    base = sum(line.total_cents for line in lines)
    if base + tip.amount_cents <= 0:
        raise ValidationError("Nothing to settle")

    base_shares = handler(strategy, lines, participant_ids, base)

    tip_shares = distribute_tip(tip, base_shares, everyone=isinstance(strategy, EqualSplit))

    if isinstance(strategy, GiftSplit):
        obligations = _apply_gift(strategy, participant_ids, base_shares, tip_shares)
    else:
        obligations = [
            Obligation(participant_id=pid, base_cents=base_shares[pid], tip_cents=tip_shares[pid])
            for pid in participant_ids
        ]

    obligations = [o for o in obligations if o.amount_due_cents > 0 or o.is_waived]
    return SplitResult(base_cents=base, tip_cents=tip.amount_cents, obligations=obligations)


def _apply_gift(
    strategy: GiftSplit,
    participant_ids: list[int],
    base_shares: dict[int, int],
    tip_shares: dict[int, int],
) -> list[Obligation]:
    beneficiaries = set(strategy.beneficiary_ids)
    if strategy.payer_id not in base_shares:
        raise ValidationError(
            f"Gift payer {strategy.payer_id} is not part of the split",
            participant_id=strategy.payer_id,
        )
    if not beneficiaries:
        raise ValidationError("A gift needs at least one beneficiary")
    if strategy.payer_id in beneficiaries:
        raise ValidationError("A participant cannot gift themselves", participant_id=strategy.payer_id)
    unknown = beneficiaries - set(base_shares)
    if unknown:
        raise ValidationError(
            f"Gift beneficiaries are not part of the split: {sorted(unknown)}",
            participant_ids=sorted(unknown),
        )

    gifted = 0
    obligations = []
    for pid in participant_ids:
        if pid in beneficiaries:
            share = base_shares[pid] + tip_shares[pid]
            if share == 0:
                raise ValidationError(f"Participant {pid} has nothing to gift", participant_id=pid)
            gifted += share
            obligations.append(Obligation(
                participant_id=pid,
                base_cents=base_shares[pid],
                tip_cents=tip_shares[pid],
                waived_cents=share,
                paid_by_participant_id=strategy.payer_id,
            ))
        else:
            obligations.append(Obligation(
                participant_id=pid, base_cents=base_shares[pid], tip_cents=tip_shares[pid],
            ))

    return [
        Obligation(
            participant_id=o.participant_id,
            base_cents=o.base_cents,
            tip_cents=o.tip_cents,
            gifted_cents=gifted,
        ) if o.participant_id == strategy.payer_id else o
        for o in obligations
    ]
