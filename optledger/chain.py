"""
chain.py - Option chain quotes

Builds the per-strike rows shown to traders: a call and a put quote priced by
black_scholes.price_option(), with a symmetric spread around the model price,
plus the volume, open interest and availability tracked for each series.

    bid = mid * (1 - spread / 2)
    ask = mid * (1 + spread / 2)

Expiry is taken as 00:00 UTC on the expiry date. Time to expiry is floored
at zero, so an expired series quotes at zero.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Any, List, Optional, Sequence

from . import black_scholes
from .core import (
    SeriesKey, OptionSide, InvalidQuantity,
    DEFAULT_VOLATILITY, DEFAULT_RISK_FREE_RATE, OPTION_SPREAD_PERCENTAGE, ZERO,
    to_decimal, non_negative_price, quantize,
)
from .trackers import LedgerSet


TWO = Decimal("2")


@dataclass(frozen=True, slots=True)
class Quote:
    bid: Decimal
    ask: Decimal
    mid: Decimal


@dataclass(frozen=True, slots=True)
class SeriesQuote:
    """One side of a chain row."""
    series: SeriesKey
    quote: Quote
    greeks: black_scholes.Greeks
    volume: Decimal
    open_interest: Decimal
    available: Decimal


@dataclass(frozen=True, slots=True)
class ChainRow:
    strike: Decimal
    call: SeriesQuote
    put: SeriesQuote


def quote(mid: Any, spread: Any = OPTION_SPREAD_PERCENTAGE) -> Quote:
    """Bid and ask around a mid price."""
    mid = non_negative_price(mid, "mid")
    spread = non_negative_price(spread, "spread")
    half = spread / TWO
    return Quote(
        bid=quantize(mid * (1 - half), 'PRICE'),
        ask=quantize(mid * (1 + half), 'PRICE'),
        mid=mid,
    )


def seconds_until_expiry(expiry: date, as_of: datetime) -> int:
    """Whole seconds from as_of to 00:00 UTC on expiry, never negative."""
    expiry_moment = datetime.combine(expiry, time(0, 0), tzinfo=timezone.utc)
    if as_of.tzinfo is None:
        as_of = as_of.replace(tzinfo=timezone.utc)
    return max(0, int((expiry_moment - as_of).total_seconds()))


def option_chain(
    asset: str,
    strikes: Sequence[Any],
    expiry: date,
    spot: Any,
    as_of: datetime,
    ledgers: Optional[LedgerSet] = None,
    volatility: Decimal = DEFAULT_VOLATILITY,
    risk_free_rate: Decimal = DEFAULT_RISK_FREE_RATE,
    spread: Decimal = OPTION_SPREAD_PERCENTAGE,
) -> List[ChainRow]:
    """
    Quote calls and puts for every strike on one expiry.

    Args:
        asset: Underlying symbol (the ledgers are per underlying)
        strikes: Strike prices, quoted in the given order
        expiry: Expiry date shared by every row
        spot: Current underlying price. A zero spot yields an empty chain.
        as_of: Quote time
        ledgers: Trackers to read volume / open interest / availability
            from. Reported as zero when omitted.
        volatility: Annualised volatility
        risk_free_rate: Annual risk-free rate
        spread: Full bid-ask spread as a fraction of mid

    Returns:
        One ChainRow per strike
    """
    spot = non_negative_price(spot, "spot")
    if spot == ZERO:
        return []
    if not asset:
        raise InvalidQuantity("asset", asset, "must be a non-empty symbol")
    seconds = seconds_until_expiry(expiry, as_of)
    ledgers = ledgers if ledgers is not None else LedgerSet()

    def side_quote(series: SeriesKey) -> SeriesQuote:
        calc = black_scholes.price_option(
            is_call=series.is_call,
            strike=series.strike,
            spot=spot,
            time_to_expiry_seconds=seconds,
            volatility=volatility,
            risk_free_rate=risk_free_rate,
        )
        stats = ledgers.stats(series)
        return SeriesQuote(
            series=series,
            quote=quote(calc.price, spread),
            greeks=calc.greeks,
            volume=stats['volume'],
            open_interest=stats['open_interest'],
            available=stats['available'],
        )

    rows = []
    for raw_strike in strikes:
        strike = to_decimal(raw_strike, "strike")
        rows.append(ChainRow(
            strike=strike,
            call=side_quote(SeriesKey(strike, expiry, OptionSide.CALL)),
            put=side_quote(SeriesKey(strike, expiry, OptionSide.PUT)),
        ))
    return rows
