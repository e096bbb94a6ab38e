"""
collateral.py - Collateral requirements for multi-leg strategies

Short legs must be collateralised unless they are covered by long legs of the
same side in the same strategy:

    Calls: a long call covers a short call when long.strike <= short.strike.
           Long calls are pooled ascending by strike; short calls are
           processed in ascending strike order. Uncovered quantity costs
           underlying_price * contract_size per contract.

    Puts:  a long put covers a short put when long.strike >= short.strike.
           Long puts are pooled descending by strike; short puts are processed
           in descending strike order. Uncovered quantity costs
           short.strike * contract_size per contract.

Coverage is a shared pool: capacity a long leg does not use on one short
carries to the next. All functions here are pure.

Example (call spread, underlying 50):
    long 1 call @ 50, short 1 call @ 55  -> fully covered, collateral 0
    short 2 calls @ 55 with the same long -> 1 uncovered, collateral 5000
"""

from __future__ import annotations
from dataclasses import dataclass, field
from decimal import Decimal, ROUND_HALF_UP
from typing import Any, Dict, List, Optional, Sequence

from .core import (
    OptionSide, Direction, InvalidQuantity,
    CONTRACT_SIZE, MAX_LEVERAGE, ZERO,
    to_decimal, positive_quantity,
)


ONE = Decimal("1")


@dataclass(frozen=True, slots=True)
class StrategyLeg:
    """One leg of a strategy as seen by the collateral calculator."""
    leg_id: str
    side: OptionSide
    direction: Direction
    strike: Decimal
    quantity: Decimal

    def __post_init__(self):
        if not isinstance(self.strike, Decimal) or not self.strike.is_finite() or self.strike <= ZERO:
            raise InvalidQuantity("strike", self.strike)
        if not isinstance(self.quantity, Decimal) or not self.quantity.is_finite() or self.quantity <= ZERO:
            raise InvalidQuantity("quantity", self.quantity)

    @classmethod
    def of(cls, leg_id: str, side: Any, direction: Any, strike: Any, quantity: Any) -> 'StrategyLeg':
        return cls(
            leg_id=leg_id,
            side=OptionSide.parse(side),
            direction=direction if isinstance(direction, Direction) else Direction(str(direction).lower()),
            strike=to_decimal(strike, "strike"),
            quantity=to_decimal(quantity, "quantity"),
        )


@dataclass(frozen=True, slots=True)
class CollateralRequirement:
    """
    Attributes:
        total_collateral: Sum over every short leg
        per_leg_uncovered: Collateral owed per short leg id
        uncovered_quantity: Uncovered contracts per short leg id
    """
    total_collateral: Decimal
    per_leg_uncovered: Dict[str, Decimal] = field(default_factory=dict)
    uncovered_quantity: Dict[str, Decimal] = field(default_factory=dict)

    @property
    def is_fully_covered(self) -> bool:
        return self.total_collateral == ZERO


def _uncovered(
    shorts: List[StrategyLeg],
    longs: List[StrategyLeg],
    covers,
) -> Dict[str, Decimal]:
    """Run the shared-pool matching; returns uncovered quantity per short leg."""
    capacity = [leg.quantity for leg in longs]
    result: Dict[str, Decimal] = {}
    for short in shorts:
        remaining = short.quantity
        for i, long_leg in enumerate(longs):
            if remaining <= ZERO:
                break
            if capacity[i] <= ZERO or not covers(long_leg.strike, short.strike):
                continue
            covered = min(remaining, capacity[i])
            remaining -= covered
            capacity[i] -= covered
        result[short.leg_id] = remaining
    return result


def compute_collateral(
    legs: Sequence[StrategyLeg],
    underlying_price: Any = None,
    contract_size: Decimal = CONTRACT_SIZE,
) -> CollateralRequirement:
    """
    Collateral required to open a set of legs.

    Args:
        legs: Strategy legs, any mix of sides and directions
        underlying_price: Current underlying price. Only needed (and only
            validated) when a short call is left uncovered.
        contract_size: Underlying units per contract

    Returns:
        CollateralRequirement with per-leg detail for every short leg

    Raises:
        InvalidQuantity: If an uncovered short call needs an underlying price
            and the given one is missing, negative or not finite
    """
    if not legs:
        return CollateralRequirement(total_collateral=ZERO)

    def pick(side: OptionSide, direction: Direction) -> List[StrategyLeg]:
        return [leg for leg in legs if leg.side is side and leg.direction is direction]

    long_calls = sorted(pick(OptionSide.CALL, Direction.LONG), key=lambda leg: leg.strike)
    short_calls = sorted(pick(OptionSide.CALL, Direction.SHORT), key=lambda leg: leg.strike)
    long_puts = sorted(pick(OptionSide.PUT, Direction.LONG), key=lambda leg: leg.strike, reverse=True)
    short_puts = sorted(pick(OptionSide.PUT, Direction.SHORT), key=lambda leg: leg.strike, reverse=True)

    call_uncovered = _uncovered(short_calls, long_calls, lambda long_k, short_k: long_k <= short_k)
    put_uncovered = _uncovered(short_puts, long_puts, lambda long_k, short_k: long_k >= short_k)

    per_leg: Dict[str, Decimal] = {}
    uncovered_quantity: Dict[str, Decimal] = {}

    spot: Optional[Decimal] = None
    if any(qty > ZERO for qty in call_uncovered.values()):
        if underlying_price is None:
            raise InvalidQuantity("underlying_price", underlying_price, "is required for uncovered short calls")
        spot = to_decimal(underlying_price, "underlying_price")
        if spot < ZERO:
            raise InvalidQuantity("underlying_price", underlying_price, "must be non-negative and finite")

    for leg in short_calls:
        qty = call_uncovered[leg.leg_id]
        uncovered_quantity[leg.leg_id] = qty
        per_leg[leg.leg_id] = qty * spot * contract_size if qty > ZERO else ZERO

    for leg in short_puts:
        qty = put_uncovered[leg.leg_id]
        uncovered_quantity[leg.leg_id] = qty
        per_leg[leg.leg_id] = qty * leg.strike * contract_size

    total = sum(per_leg.values(), ZERO)
    return CollateralRequirement(
        total_collateral=total,
        per_leg_uncovered=per_leg,
        uncovered_quantity=uncovered_quantity,
    )


# ============================================================================
# LEVERAGE HELPERS
# ============================================================================

def has_enough_collateral(needed: Any, provided: Any, leverage: Any = ONE) -> bool:
    """True when provided * leverage covers the requirement."""
    needed = to_decimal(needed, "needed")
    provided = to_decimal(provided, "provided")
    leverage = positive_quantity(leverage, "leverage")
    return provided * leverage >= needed


def optimal_leverage(needed: Any, provided: Any, max_leverage: Decimal = MAX_LEVERAGE) -> Decimal:
    """
    Smallest leverage that makes the provided collateral sufficient.

    Clamped to [1, max_leverage] and rounded to 2 decimal places. Returns 1
    when nothing is needed or nothing is provided.
    """
    needed = to_decimal(needed, "needed")
    provided = to_decimal(provided, "provided")
    if needed <= ZERO or provided <= ZERO:
        return ONE
    leverage = needed / provided
    leverage = max(ONE, min(to_decimal(max_leverage, "max_leverage"), leverage))
    return leverage.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def min_collateral_required(needed: Any, max_leverage: Decimal = MAX_LEVERAGE) -> Decimal:
    """Collateral that must be provided when borrowing at the maximum leverage."""
    needed = to_decimal(needed, "needed")
    if needed <= ZERO:
        return ZERO
    return needed / positive_quantity(max_leverage, "max_leverage")
