"""
costs.py - Order pricing and seller economics

OrderLeg is the unit of a trade ticket: one series, a direction, a quantity
and a per-contract price. summarize_order() prices a ticket:

    net_amount = sum(short credit) - sum(long debit)
                 (price * quantity * CONTRACT_SIZE per leg)
    is_debit   = net_amount < 0
    volume     = gross notional across all legs

Fees:
    option creation fee: OPTION_CREATION_FEE per leg
    borrow fee:          borrowed_amount * BORROW_FEE_RATE
    transaction cost:    TRANSACTION_COST per non-empty order

The seller helpers (premium, hourly interest, borrow cost, max profit) follow
the same constants and are used by the mint flow to show what a writer earns.
"""

from __future__ import annotations
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, Sequence

from .core import (
    SeriesKey, Direction,
    CONTRACT_SIZE, BASE_ANNUAL_INTEREST_RATE, OPTION_CREATION_FEE,
    BORROW_FEE_RATE, TRANSACTION_COST, ZERO,
    to_decimal, positive_quantity, non_negative_price, as_series,
)


HOURS_PER_YEAR = Decimal(365 * 24)


@dataclass(frozen=True, slots=True)
class OrderLeg:
    """One leg of a ticket. LONG legs buy from inventory, SHORT legs write it."""
    series: SeriesKey
    direction: Direction
    quantity: Decimal
    price: Decimal

    @classmethod
    def of(cls, series: Any, direction: Any, quantity: Any, price: Any) -> 'OrderLeg':
        return cls(
            series=as_series(series),
            direction=direction if isinstance(direction, Direction) else Direction(str(direction).lower()),
            quantity=positive_quantity(quantity),
            price=non_negative_price(price),
        )

    @property
    def notional(self) -> Decimal:
        return self.price * self.quantity * CONTRACT_SIZE


@dataclass(frozen=True, slots=True)
class FeeBreakdown:
    option_creation_fee: Decimal
    borrow_fee: Decimal
    transaction_cost: Decimal

    @property
    def total(self) -> Decimal:
        return self.option_creation_fee + self.borrow_fee + self.transaction_cost


@dataclass(frozen=True, slots=True)
class OrderSummary:
    total_quantity: Decimal
    net_amount: Decimal
    is_debit: bool
    volume: Decimal
    fees: FeeBreakdown


def summarize_order(legs: Sequence[OrderLeg], borrowed_amount: Any = ZERO) -> OrderSummary:
    """Net debit or credit, gross volume and fees for a ticket."""
    borrowed = non_negative_price(borrowed_amount, "borrowed_amount")
    net = ZERO
    volume = ZERO
    quantity = ZERO
    for leg in legs:
        notional = leg.notional
        net += notional if leg.direction is Direction.SHORT else -notional
        volume += notional
        quantity += leg.quantity

    fees = FeeBreakdown(
        option_creation_fee=OPTION_CREATION_FEE * len(legs) if legs else ZERO,
        borrow_fee=borrowed * BORROW_FEE_RATE,
        transaction_cost=TRANSACTION_COST if legs else ZERO,
    )
    return OrderSummary(
        total_quantity=quantity,
        net_amount=net,
        is_debit=net < ZERO,
        volume=volume,
        fees=fees,
    )


# ============================================================================
# SELLER ECONOMICS
# ============================================================================

def total_premium(legs: Sequence[OrderLeg]) -> Decimal:
    """Premium across legs: price * quantity * CONTRACT_SIZE."""
    return sum((leg.notional for leg in legs), ZERO)


def hourly_interest_rate(annual_rate: Any = BASE_ANNUAL_INTEREST_RATE) -> Decimal:
    return to_decimal(annual_rate, "annual_rate") / HOURS_PER_YEAR


def borrow_cost(amount: Any, hourly_rate: Any, hours: Any) -> Decimal:
    return (
        to_decimal(amount, "amount")
        * to_decimal(hourly_rate, "hourly_rate")
        * to_decimal(hours, "hours")
    )


def max_profit_potential(
    premium: Any,
    borrow: Any,
    creation_fee: Any = OPTION_CREATION_FEE,
    transaction_cost: Any = TRANSACTION_COST,
    asset_price: Any = Decimal("1"),
) -> Decimal:
    """
    Best case for a writer: the options expire worthless.

    premium - borrow cost - creation fee - transaction cost * asset_price
    (the transaction cost is quoted in the underlying).
    """
    return (
        to_decimal(premium, "premium")
        - to_decimal(borrow, "borrow")
        - to_decimal(creation_fee, "creation_fee")
        - to_decimal(transaction_cost, "transaction_cost") * to_decimal(asset_price, "asset_price")
    )
