"""
Core types and pure functions for the option position ledger.

This module provides the foundational data structures used by every other module:
1. Enums: OptionSide, Direction, LotStatus, LegStatus
2. Immutable identity: SeriesKey (the sharding key for every tracker)
3. Exceptions: LedgerError and domain-specific error types
4. Constants: contract size, precision, market and fee defaults
5. Pure helpers: Decimal coercion, weighted-average pricing, display rounding

All functions in this module are pure. Nothing here holds mutable state.
"""

from __future__ import annotations
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, ROUND_HALF_EVEN, ROUND_DOWN, getcontext
from enum import Enum
from typing import Any, Dict, Optional, Union


# ============================================================================
# DECIMAL CONTEXT CONFIGURATION
# ============================================================================
#
# Ledger arithmetic must be exact so that the conservation properties hold
# without a tolerance. The global context is configured once at import.
#
# PRECONDITION: No other code should modify the global Decimal context.
# If thread-local contexts are needed, use decimal.localcontext().
#
_OPTLEDGER_DECIMAL_CONTEXT = getcontext()
_OPTLEDGER_DECIMAL_CONTEXT.prec = 50
_OPTLEDGER_DECIMAL_CONTEXT.rounding = ROUND_HALF_EVEN


# ============================================================================
# CONSTANTS
# ============================================================================

# Each option contract represents 100 units of the underlying.
CONTRACT_SIZE = Decimal("100")

# Amounts below one cent are shown as zero. Display only, never accounting.
DISPLAY_EPSILON = Decimal("0.01")

# Maximum number of legs accepted in a single strategy order.
MAX_OPTION_LEGS = 4

# Per-quantity-class precision for presentation boundaries.
DECIMAL_PRECISION = {
    'CASH': 2,
    'QUANTITY': 8,
    'PRICE': 8,
}

DECIMAL_ROUNDING = {
    'CASH': ROUND_HALF_EVEN,
    'QUANTITY': ROUND_DOWN,
    'PRICE': ROUND_HALF_EVEN,
}

# Market defaults for quote generation.
DEFAULT_VOLATILITY = Decimal("1.16")
DEFAULT_RISK_FREE_RATE = Decimal("0.08")
OPTION_SPREAD_PERCENTAGE = Decimal("0.01")  # 1% bid-ask spread

# Seller economics.
BASE_ANNUAL_INTEREST_RATE = Decimal("0.1456")
OPTION_CREATION_FEE = Decimal("0.01")
BORROW_FEE_RATE = Decimal("0.00035")
TRANSACTION_COST = Decimal("0.02")
MAX_LEVERAGE = Decimal("10")

ZERO = Decimal("0")


# ============================================================================
# ENUMS
# ============================================================================

class OptionSide(Enum):
    """Call or put."""
    CALL = "call"
    PUT = "put"

    @classmethod
    def parse(cls, value: Union[str, 'OptionSide']) -> 'OptionSide':
        if isinstance(value, OptionSide):
            return value
        try:
            return cls(str(value).lower())
        except ValueError:
            raise ValueError(f"option side must be 'call' or 'put', got {value!r}") from None

    @property
    def label(self) -> str:
        """Capitalised form used in persisted position legs ('Call' / 'Put')."""
        return self.value.capitalize()


class Direction(Enum):
    """Long (bought) or short (written) exposure."""
    LONG = "long"
    SHORT = "short"

    @property
    def sign(self) -> int:
        return 1 if self is Direction.LONG else -1


class LotStatus(Enum):
    """
    Lifecycle of a written-option lot.

    PENDING: open for matching, quantity > 0.
    FILLED: matched to a buyer; never matched again.
    CANCELLED: withdrawn by the writer before matching.
    """
    PENDING = "pending"
    FILLED = "filled"
    CANCELLED = "cancelled"


class LegStatus(Enum):
    """Lifecycle of one leg of a trader's position."""
    PENDING = "pending"
    FILLED = "filled"
    CANCELLED = "cancelled"
    CLOSED = "closed"


# ============================================================================
# EXCEPTIONS
# ============================================================================

class LedgerError(Exception):
    """Base exception for all option ledger errors."""
    pass


class InsufficientInventory(LedgerError):
    """Raised when a buy arrives for a series with nothing left to sell."""

    def __init__(self, series: 'SeriesKey', requested: Decimal, available: Decimal):
        self.series = series
        self.requested = requested
        self.available = available
        super().__init__(
            f"Insufficient inventory for {series}: requested {requested}, available {available}"
        )


class InvalidQuantity(LedgerError):
    """Raised for non-positive or non-finite quantities and prices."""

    def __init__(self, field_name: str, value: Any, reason: str = "must be positive and finite"):
        self.field_name = field_name
        self.value = value
        super().__init__(f"{field_name} {reason}, got {value}")


class SeriesNotFound(LedgerError):
    """Raised by strict lookups against a series with no tracked state."""

    def __init__(self, series: 'SeriesKey', ledger_name: str = ""):
        self.series = series
        self.ledger_name = ledger_name
        where = f" in {ledger_name}" if ledger_name else ""
        super().__init__(f"Series {series} not tracked{where}")


class StaleCollectionRead(LedgerError):
    """Raised when a commit is based on a collection version that is no longer current."""

    def __init__(self, collection: str, expected: int, actual: int):
        self.collection = collection
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"Stale read of '{collection}': expected version {expected}, store is at {actual}"
        )


class RecordNotFound(LedgerError):
    """Raised when a lot, position, or leg id does not exist in the store."""

    def __init__(self, kind: str, record_id: Any):
        self.kind = kind
        self.record_id = record_id
        super().__init__(f"{kind} {record_id!r} not found")


class InvalidOrder(LedgerError):
    """Raised when an order is structurally invalid for the current state."""
    pass


# ============================================================================
# DECIMAL HELPERS
# ============================================================================

def to_decimal(value: Any, field_name: str = "value") -> Decimal:
    """
    Convert a numeric input to Decimal, rejecting NaN and infinities.

    Floats go through str() so that 0.1 becomes Decimal("0.1").

    Raises:
        InvalidQuantity: If the value cannot be converted or is not finite
    """
    if isinstance(value, bool):
        raise InvalidQuantity(field_name, value, "must be numeric")
    try:
        d = value if isinstance(value, Decimal) else Decimal(str(value))
    except (ArithmeticError, ValueError):
        raise InvalidQuantity(field_name, value, "must be numeric") from None
    if not d.is_finite():
        raise InvalidQuantity(field_name, value, "must be finite")
    return d


def positive_quantity(value: Any, field_name: str = "quantity") -> Decimal:
    """Coerce and validate a strictly positive, finite quantity."""
    d = to_decimal(value, field_name)
    if d <= ZERO:
        raise InvalidQuantity(field_name, value)
    return d


def non_negative_price(value: Any, field_name: str = "price") -> Decimal:
    """Coerce and validate a non-negative, finite price."""
    d = to_decimal(value, field_name)
    if d < ZERO:
        raise InvalidQuantity(field_name, value, "must be non-negative and finite")
    return d


def normalize_decimal(d: Decimal) -> str:
    """
    Canonical string form of a Decimal for persistence.

    Decimal("1.0") and Decimal("1.00") both become "1"; scientific
    notation is avoided.
    """
    normalized = d.normalize()
    if normalized == normalized.to_integral_value():
        return str(int(normalized))
    return format(normalized, 'f')


def quantize(value: Decimal, kind: str = 'CASH') -> Decimal:
    """Round a value at one of the defined precision boundaries."""
    quantizer = Decimal(10) ** -DECIMAL_PRECISION[kind]
    return value.quantize(quantizer, rounding=DECIMAL_ROUNDING[kind])


def display_amount(value: Decimal) -> Decimal:
    """
    Round a currency amount to cents for presentation.

    Magnitudes below DISPLAY_EPSILON are shown as zero. Never feed the
    result back into ledger accounting.
    """
    value = to_decimal(value)
    if abs(value) < DISPLAY_EPSILON:
        return Decimal("0.00")
    return quantize(value, 'CASH')


def weighted_average_price(
    current_price: Decimal,
    current_quantity: Decimal,
    fill_price: Decimal,
    fill_quantity: Decimal,
) -> Decimal:
    """
    Quantity-weighted average of an existing position and a new fill.

    new = (p0*q0 + p1*q1) / (q0 + q1), and new = p1 when q0 == 0.

    Computed in the 50-digit context so repeated small fills are not lost.

    Example:
        (10 @ 1.00) then (5 @ 1.30) -> (10*1.00 + 5*1.30) / 15 = 1.10
    """
    if current_quantity == ZERO:
        return fill_price
    if fill_quantity == ZERO:
        return current_price
    total = current_quantity + fill_quantity
    return (current_price * current_quantity + fill_price * fill_quantity) / total


# ============================================================================
# SERIES KEY
# ============================================================================

def _to_date(value: Union[date, datetime, str]) -> date:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


@dataclass(frozen=True, slots=True)
class SeriesKey:
    """
    Identity of one option series: strike, expiry and side.

    Used as the key of every tracker. Equality is exact Decimal equality
    (Decimal("50") == Decimal("50.0")), with no tolerance on strike or expiry.

    Attributes:
        strike: Strike price (positive, finite)
        expiry: Expiration date
        side: OptionSide.CALL or OptionSide.PUT
    """
    strike: Decimal
    expiry: date
    side: OptionSide

    def __post_init__(self):
        if not isinstance(self.strike, Decimal):
            raise ValueError(f"SeriesKey strike must be Decimal, got {type(self.strike)}")
        if not self.strike.is_finite() or self.strike <= ZERO:
            raise ValueError(f"SeriesKey strike must be positive and finite, got {self.strike}")
        if isinstance(self.expiry, datetime) or not isinstance(self.expiry, date):
            raise ValueError(f"SeriesKey expiry must be a date, got {type(self.expiry)}")
        if not isinstance(self.side, OptionSide):
            raise ValueError(f"SeriesKey side must be OptionSide, got {self.side!r}")

    @classmethod
    def of(
        cls,
        strike: Any,
        expiry: Union[date, datetime, str],
        side: Union[str, OptionSide],
    ) -> 'SeriesKey':
        """Build a key from loose inputs (floats, ISO date strings, 'call'/'put')."""
        return cls(
            strike=to_decimal(strike, "strike"),
            expiry=_to_date(expiry),
            side=OptionSide.parse(side),
        )

    @property
    def is_call(self) -> bool:
        return self.side is OptionSide.CALL

    def to_record(self) -> Dict[str, str]:
        return {
            'strike': normalize_decimal(self.strike),
            'expiry': self.expiry.isoformat(),
            'side': self.side.value,
        }

    def __str__(self) -> str:
        return f"{self.side.label} {normalize_decimal(self.strike)} {self.expiry.isoformat()}"


def as_series(value: Union[SeriesKey, Dict[str, Any]]) -> SeriesKey:
    """Accept either a SeriesKey or a {'strike', 'expiry', 'side'} mapping."""
    if isinstance(value, SeriesKey):
        return value
    return SeriesKey.of(value['strike'], value['expiry'], value['side'])


def optional_datetime(value: Optional[str]) -> Optional[datetime]:
    """Parse an optional ISO timestamp."""
    if value is None or value == "":
        return None
    return datetime.fromisoformat(value)
