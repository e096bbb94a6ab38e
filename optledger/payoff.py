"""
payoff.py - Expiry P&L curves and breakevens for multi-leg strategies

Per-leg P&L at underlying price S (q = quantity, m = contract multiplier):
    Long call:  (max(0, S-K) - premium) * q * m
    Short call: (premium - max(0, S-K)) * q * m
    Long put:   (max(0, K-S) - premium) * q * m
    Short put:  (premium - max(0, K-S)) * q * m

Total P&L is the sum across legs.

Breakevens:
    - Single leg: analytic, K + premium for calls and K - premium for puts.
    - Multi-leg: the domain [0, max_price] is sampled, sign changes between
      adjacent samples are located and each is refined by linear
      interpolation. Every crossing is reported, in ascending order.

Exact values (total_pnl, payoff_summary) use Decimal. Curves and numeric root
finding use numpy floats and are converted back at the boundary.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, List, Optional, Sequence

import numpy as np

from .core import (
    OptionSide, Direction, InvalidQuantity,
    CONTRACT_SIZE, ZERO,
    to_decimal, quantize,
)


DEFAULT_SAMPLES = 4001


@dataclass(frozen=True, slots=True)
class PayoffLeg:
    side: OptionSide
    direction: Direction
    strike: Decimal
    premium: Decimal
    quantity: Decimal

    def __post_init__(self):
        if self.strike <= ZERO:
            raise InvalidQuantity("strike", self.strike)
        if self.premium < ZERO:
            raise InvalidQuantity("premium", self.premium, "must be non-negative and finite")
        if self.quantity <= ZERO:
            raise InvalidQuantity("quantity", self.quantity)

    @classmethod
    def of(cls, side: Any, direction: Any, strike: Any, premium: Any, quantity: Any = 1) -> 'PayoffLeg':
        return cls(
            side=OptionSide.parse(side),
            direction=direction if isinstance(direction, Direction) else Direction(str(direction).lower()),
            strike=to_decimal(strike, "strike"),
            premium=to_decimal(premium, "premium"),
            quantity=to_decimal(quantity, "quantity"),
        )


@dataclass(frozen=True)
class PayoffCurve:
    """Sampled P&L. prices is a monotonic linspace over [0, max_price]."""
    prices: np.ndarray
    pnl: np.ndarray


@dataclass(frozen=True, slots=True)
class PayoffSummary:
    """
    Attributes:
        max_profit: Highest P&L, or None when unbounded as S grows
        max_loss: Lowest P&L (a negative number for a loss), or None when
            unbounded as S grows
        breakevens: All zero crossings, ascending
    """
    max_profit: Optional[Decimal]
    max_loss: Optional[Decimal]
    breakevens: List[Decimal]


# ============================================================================
# EXACT P&L
# ============================================================================

def leg_pnl(leg: PayoffLeg, underlying_price: Any, multiplier: Decimal = CONTRACT_SIZE) -> Decimal:
    """P&L of one leg at expiry for a given underlying price."""
    s = to_decimal(underlying_price, "underlying_price")
    if leg.side is OptionSide.CALL:
        intrinsic = max(ZERO, s - leg.strike)
    else:
        intrinsic = max(ZERO, leg.strike - s)
    per_contract = intrinsic - leg.premium
    if leg.direction is Direction.SHORT:
        per_contract = -per_contract
    return per_contract * leg.quantity * multiplier


def total_pnl(legs: Sequence[PayoffLeg], underlying_price: Any, multiplier: Decimal = CONTRACT_SIZE) -> Decimal:
    return sum((leg_pnl(leg, underlying_price, multiplier) for leg in legs), ZERO)


def default_max_price(legs: Sequence[PayoffLeg]) -> Decimal:
    """Twice the highest strike."""
    if not legs:
        raise InvalidQuantity("legs", len(legs), "must contain at least one leg")
    return max(leg.strike for leg in legs) * 2


# ============================================================================
# SAMPLED CURVE
# ============================================================================

def _pnl_float(legs: Sequence[PayoffLeg], prices: np.ndarray, multiplier: float) -> np.ndarray:
    total = np.zeros_like(prices, dtype=float)
    for leg in legs:
        k = float(leg.strike)
        if leg.side is OptionSide.CALL:
            intrinsic = np.maximum(0.0, prices - k)
        else:
            intrinsic = np.maximum(0.0, k - prices)
        per_contract = intrinsic - float(leg.premium)
        sign = 1.0 if leg.direction is Direction.LONG else -1.0
        total += sign * per_contract * float(leg.quantity) * multiplier
    return total


def payoff_curve(
    legs: Sequence[PayoffLeg],
    max_price: Any = None,
    samples: int = DEFAULT_SAMPLES,
    multiplier: Decimal = CONTRACT_SIZE,
) -> PayoffCurve:
    """
    Sample total P&L over [0, max_price].

    Args:
        legs: Strategy legs
        max_price: Upper end of the domain (default: twice the highest strike)
        samples: Number of sample points, at least 2
        multiplier: Contract multiplier
    """
    if samples < 2:
        raise InvalidQuantity("samples", samples, "must be at least 2")
    upper = default_max_price(legs) if max_price is None else to_decimal(max_price, "max_price")
    if upper <= ZERO:
        raise InvalidQuantity("max_price", max_price)
    prices = np.linspace(0.0, float(upper), samples)
    return PayoffCurve(prices=prices, pnl=_pnl_float(legs, prices, float(multiplier)))


# ============================================================================
# BREAKEVENS
# ============================================================================

def _single_leg_breakeven(leg: PayoffLeg) -> List[Decimal]:
    if leg.side is OptionSide.CALL:
        breakeven = leg.strike + leg.premium
    else:
        breakeven = leg.strike - leg.premium
    if breakeven <= ZERO:
        return []
    return [breakeven]


def _crossings(prices: np.ndarray, pnl: np.ndarray) -> List[float]:
    """Zero crossings of a sampled curve, refined by linear interpolation."""
    roots: List[float] = []
    n = len(prices)
    i = 1
    while i < n:
        y0, y1 = pnl[i - 1], pnl[i]
        if y0 == 0.0:
            i += 1
            continue
        if y1 == 0.0:
            # Run of exact zeros: a crossing only if the sign differs on the far side.
            j = i
            while j < n and pnl[j] == 0.0:
                j += 1
            if j < n and np.sign(pnl[j]) != np.sign(y0):
                roots.append(float(prices[i]))
            i = j + 1 if j < n else n
            continue
        if np.sign(y0) != np.sign(y1):
            x0, x1 = prices[i - 1], prices[i]
            roots.append(float(x0 - y0 * (x1 - x0) / (y1 - y0)))
        i += 1
    return roots


def breakevens(
    legs: Sequence[PayoffLeg],
    max_price: Any = None,
    samples: int = DEFAULT_SAMPLES,
    multiplier: Decimal = CONTRACT_SIZE,
) -> List[Decimal]:
    """
    Underlying prices at which total P&L crosses zero, ascending.

    A single leg is solved analytically. Multi-leg strategies are sampled;
    a touch of zero without a sign change is not a breakeven.

    Example:
        long call K=100 @ 5 + short call K=110 @ 2 -> [103]
    """
    if not legs:
        return []
    if len(legs) == 1:
        return _single_leg_breakeven(legs[0])
    curve = payoff_curve(legs, max_price, samples, multiplier)
    return [
        quantize(Decimal(repr(root)), 'PRICE')
        for root in _crossings(curve.prices, curve.pnl)
    ]


def payoff_summary(
    legs: Sequence[PayoffLeg],
    max_price: Any = None,
    samples: int = DEFAULT_SAMPLES,
    multiplier: Decimal = CONTRACT_SIZE,
) -> PayoffSummary:
    """
    Max profit, max loss and breakevens over [0, max_price].

    P&L is piecewise linear with kinks at the strikes, so the extremes are
    evaluated exactly at the strikes and the domain ends. Beyond the domain
    P&L changes at the net long-call slope: positive means unbounded profit,
    negative means unbounded loss.
    """
    if not legs:
        return PayoffSummary(max_profit=ZERO, max_loss=ZERO, breakevens=[])
    upper = default_max_price(legs) if max_price is None else to_decimal(max_price, "max_price")
    candidates = {ZERO, upper}
    candidates.update(leg.strike for leg in legs if leg.strike <= upper)
    values = [total_pnl(legs, s, multiplier) for s in sorted(candidates)]

    call_slope = ZERO
    for leg in legs:
        if leg.side is OptionSide.CALL:
            call_slope += leg.quantity * leg.direction.sign

    return PayoffSummary(
        max_profit=None if call_slope > ZERO else max(values),
        max_loss=None if call_slope < ZERO else min(values),
        breakevens=breakevens(legs, upper, samples, multiplier),
    )
