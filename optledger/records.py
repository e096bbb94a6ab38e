"""
records.py - Written-option lots and open-position records

Immutable record types for the two persisted collections:
    - WrittenOption: one writer's inventory lot for a series
    - OpenPosition / OpenPositionLeg / Fill: a trader's multi-leg position

Records are frozen. Every state transition returns a new instance built with
dataclasses.replace(), so a record that has been read from the store can never
be changed behind the store's back.

to_record() / from_record() produce JSON-safe dicts with Decimals written as
normalised strings, so round trips are exact.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional, Tuple

from .core import (
    SeriesKey, OptionSide, Direction, LotStatus, LegStatus,
    InvalidQuantity, InvalidOrder,
    CONTRACT_SIZE, ZERO,
    normalize_decimal, positive_quantity, non_negative_price,
    weighted_average_price, optional_datetime, to_decimal,
)


def _dec(value: Any) -> Decimal:
    return to_decimal(value)


def _opt_dec(value: Any) -> Optional[Decimal]:
    return None if value is None else to_decimal(value)


def _opt_str_dec(value: Optional[Decimal]) -> Optional[str]:
    return None if value is None else normalize_decimal(value)


def _opt_iso(value: Optional[datetime]) -> Optional[str]:
    return None if value is None else value.isoformat()


# ============================================================================
# WRITTEN OPTION LOTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class WrittenOption:
    """
    One writer's inventory lot for a series (a "minted" option).

    A PENDING lot is open for matching and always has quantity > 0. A partial
    match splits the lot into a FILLED part and a PENDING remnant; both exist
    as separate records and their quantities sum to the original exactly.

    Attributes:
        id: Unique lot identifier
        asset: Underlying asset symbol (e.g., "SOL")
        series: Strike / expiry / side of the lot
        quantity: Contracts in this lot
        premium: Asking premium per contract set by the writer
        status: PENDING, FILLED or CANCELLED
        created_at: When the lot was written
        position_id: Writer's OpenPosition holding the matching short leg
        filled_at: When the lot was matched (FILLED only)
        filled_price: Trade price of the match (FILLED only)
        parent_id: Lot this record was split from, if any
        split_count: Number of filled parts split off this lot so far
    """
    id: str
    asset: str
    series: SeriesKey
    quantity: Decimal
    premium: Decimal
    created_at: datetime
    status: LotStatus = LotStatus.PENDING
    position_id: Optional[str] = None
    filled_at: Optional[datetime] = None
    filled_price: Optional[Decimal] = None
    parent_id: Optional[str] = None
    split_count: int = 0

    def __post_init__(self):
        if not self.id:
            raise ValueError("WrittenOption id cannot be empty")
        if not isinstance(self.quantity, Decimal) or not self.quantity.is_finite():
            raise ValueError(f"WrittenOption quantity must be a finite Decimal, got {self.quantity!r}")
        if self.quantity <= ZERO:
            raise ValueError(f"WrittenOption quantity must be positive, got {self.quantity}")

    @property
    def is_pending(self) -> bool:
        return self.status is LotStatus.PENDING

    def fill(self, price: Decimal, timestamp: datetime) -> 'WrittenOption':
        """Match the whole lot."""
        if not self.is_pending:
            raise InvalidOrder(f"Lot {self.id} is {self.status.value}, cannot fill")
        return replace(
            self,
            status=LotStatus.FILLED,
            filled_at=timestamp,
            filled_price=price,
        )

    def split(
        self,
        fill_quantity: Decimal,
        price: Decimal,
        timestamp: datetime,
    ) -> Tuple['WrittenOption', 'WrittenOption']:
        """
        Match part of the lot.

        Returns:
            (filled_part, pending_remnant) where
            filled_part.quantity + pending_remnant.quantity == self.quantity

        Raises:
            InvalidQuantity: Unless 0 < fill_quantity < self.quantity
        """
        if not self.is_pending:
            raise InvalidOrder(f"Lot {self.id} is {self.status.value}, cannot split")
        if fill_quantity <= ZERO or fill_quantity >= self.quantity:
            raise InvalidQuantity(
                "fill_quantity", fill_quantity,
                f"must be between 0 and {self.quantity} (exclusive) to split"
            )
        split_count = self.split_count + 1
        filled_part = replace(
            self,
            id=f"{self.id}-f{split_count}",
            quantity=fill_quantity,
            status=LotStatus.FILLED,
            filled_at=timestamp,
            filled_price=price,
            parent_id=self.id,
            split_count=0,
        )
        remnant = replace(
            self,
            quantity=self.quantity - fill_quantity,
            split_count=split_count,
        )
        return filled_part, remnant

    def cancel(self) -> 'WrittenOption':
        if not self.is_pending:
            raise InvalidOrder(f"Lot {self.id} is {self.status.value}, cannot cancel")
        return replace(self, status=LotStatus.CANCELLED)

    def to_record(self) -> Dict[str, Any]:
        record = {
            'id': self.id,
            'asset': self.asset,
            **self.series.to_record(),
            'quantity': normalize_decimal(self.quantity),
            'premium': normalize_decimal(self.premium),
            'status': self.status.value,
            'createdAt': self.created_at.isoformat(),
            'splitCount': self.split_count,
        }
        if self.position_id is not None:
            record['positionId'] = self.position_id
        if self.filled_at is not None:
            record['filledAt'] = self.filled_at.isoformat()
        if self.filled_price is not None:
            record['filledPrice'] = normalize_decimal(self.filled_price)
        if self.parent_id is not None:
            record['parentId'] = self.parent_id
        return record

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'WrittenOption':
        return cls(
            id=record['id'],
            asset=record.get('asset', ''),
            series=SeriesKey.of(record['strike'], record['expiry'], record['side']),
            quantity=_dec(record['quantity']),
            premium=_dec(record.get('premium', '0')),
            created_at=datetime.fromisoformat(record['createdAt']),
            status=LotStatus(record.get('status', 'pending')),
            position_id=record.get('positionId'),
            filled_at=optional_datetime(record.get('filledAt')),
            filled_price=_opt_dec(record.get('filledPrice')),
            parent_id=record.get('parentId'),
            split_count=int(record.get('splitCount', 0)),
        )


# ============================================================================
# POSITIONS
# ============================================================================

@dataclass(frozen=True, slots=True)
class Fill:
    """One execution against a leg."""
    price: Decimal
    quantity: Decimal
    timestamp: datetime

    def to_record(self) -> Dict[str, str]:
        return {
            'price': normalize_decimal(self.price),
            'quantity': normalize_decimal(self.quantity),
            'timestamp': self.timestamp.isoformat(),
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'Fill':
        return cls(
            price=_dec(record['price']),
            quantity=_dec(record['quantity']),
            timestamp=datetime.fromisoformat(record['timestamp']),
        )


@dataclass(frozen=True, slots=True)
class OpenPositionLeg:
    """
    One leg of a trader's position.

    Invariant (checked on construction, so it holds after every mutation):
        filled_quantity + pending_quantity == abs(position)

    Attributes:
        series: Strike / expiry / side
        position: Signed open quantity (negative = short)
        filled_quantity: Matched and still open
        pending_quantity: Waiting for a counterparty
        entry_price: Quantity-weighted average of all fills
        status: PENDING, FILLED, CANCELLED or CLOSED
        fill_history: Every execution in order
        closed_quantity: Quantity closed out so far
        realized_pnl: P&L booked by closes, in currency
    """
    series: SeriesKey
    position: Decimal
    filled_quantity: Decimal
    pending_quantity: Decimal
    entry_price: Decimal
    status: LegStatus
    fill_history: Tuple[Fill, ...] = ()
    closed_quantity: Decimal = ZERO
    realized_pnl: Decimal = ZERO

    def __post_init__(self):
        if self.filled_quantity < ZERO or self.pending_quantity < ZERO:
            raise ValueError(
                f"Leg quantities must be non-negative: filled={self.filled_quantity}, "
                f"pending={self.pending_quantity}"
            )
        if self.filled_quantity + self.pending_quantity != abs(self.position):
            raise ValueError(
                f"Leg invariant violated: filled {self.filled_quantity} + pending "
                f"{self.pending_quantity} != |position| {abs(self.position)}"
            )

    # ------------------------------------------------------------------
    # Constructors
    # ------------------------------------------------------------------

    @classmethod
    def opened_long(cls, series: SeriesKey, quantity: Decimal, price: Decimal, timestamp: datetime) -> 'OpenPositionLeg':
        """A long leg filled immediately (buy orders do not rest)."""
        return cls(
            series=series,
            position=quantity,
            filled_quantity=quantity,
            pending_quantity=ZERO,
            entry_price=price,
            status=LegStatus.FILLED,
            fill_history=(Fill(price, quantity, timestamp),),
        )

    @classmethod
    def written_short(cls, series: SeriesKey, quantity: Decimal, premium: Decimal) -> 'OpenPositionLeg':
        """A short leg waiting for buyers, quoted at the writer's premium."""
        return cls(
            series=series,
            position=-quantity,
            filled_quantity=ZERO,
            pending_quantity=quantity,
            entry_price=premium,
            status=LegStatus.PENDING,
        )

    # ------------------------------------------------------------------
    # Properties
    # ------------------------------------------------------------------

    @property
    def direction(self) -> Direction:
        return Direction.SHORT if self.position < ZERO else Direction.LONG

    @property
    def is_short(self) -> bool:
        return self.position < ZERO

    @property
    def is_open(self) -> bool:
        return self.status in (LegStatus.PENDING, LegStatus.FILLED)

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def apply_fill(self, price: Decimal, quantity: Decimal, timestamp: datetime) -> 'OpenPositionLeg':
        """
        Move quantity from pending to filled at the given price.

        The entry price is re-averaged over all fills; the leg becomes FILLED
        when nothing is left pending.

        Raises:
            InvalidQuantity: If quantity is not positive or exceeds pending
        """
        quantity = positive_quantity(quantity)
        price = non_negative_price(price)
        if quantity > self.pending_quantity:
            raise InvalidQuantity(
                "fill quantity", quantity,
                f"exceeds pending quantity {self.pending_quantity}"
            )
        new_pending = self.pending_quantity - quantity
        return replace(
            self,
            filled_quantity=self.filled_quantity + quantity,
            pending_quantity=new_pending,
            entry_price=self._averaged_entry(price, quantity),
            status=LegStatus.FILLED if new_pending == ZERO else LegStatus.PENDING,
            fill_history=self.fill_history + (Fill(price, quantity, timestamp),),
        )

    def add_fill(self, price: Decimal, quantity: Decimal, timestamp: datetime) -> 'OpenPositionLeg':
        """
        Grow the leg by an immediately filled quantity (same direction).

        Used when a further buy on the same series lands in an existing leg.
        """
        quantity = positive_quantity(quantity)
        price = non_negative_price(price)
        delta = quantity if self.position >= ZERO else -quantity
        return replace(
            self,
            position=self.position + delta,
            filled_quantity=self.filled_quantity + quantity,
            entry_price=self._averaged_entry(price, quantity),
            status=LegStatus.FILLED if self.pending_quantity == ZERO else LegStatus.PENDING,
            fill_history=self.fill_history + (Fill(price, quantity, timestamp),),
        )

    def add_pending(self, quantity: Decimal, quote: Decimal) -> 'OpenPositionLeg':
        """
        Grow the leg by quantity that still waits for a counterparty.

        The quote becomes the entry price only while nothing has been filled.
        """
        quantity = positive_quantity(quantity)
        quote = non_negative_price(quote, "quote")
        delta = -quantity if self.position < ZERO else quantity
        return replace(
            self,
            position=self.position + delta,
            pending_quantity=self.pending_quantity + quantity,
            entry_price=quote if self.filled_quantity == ZERO else self.entry_price,
            status=LegStatus.PENDING,
        )

    def _averaged_entry(self, price: Decimal, quantity: Decimal) -> Decimal:
        # Unfilled quantity carries no weight; a short leg's premium quote is replaced outright.
        return weighted_average_price(self.entry_price, self.filled_quantity, price, quantity)

    def cancel_pending(self, quantity: Optional[Decimal] = None) -> 'OpenPositionLeg':
        """
        Withdraw pending quantity (all of it by default).

        The leg becomes CANCELLED when nothing was ever filled.
        """
        quantity = self.pending_quantity if quantity is None else quantity
        if quantity > self.pending_quantity:
            raise InvalidQuantity(
                "cancel quantity", quantity,
                f"exceeds pending quantity {self.pending_quantity}"
            )
        new_pending = self.pending_quantity - quantity
        delta = quantity if self.position < ZERO else -quantity
        new_position = self.position + delta
        if new_position == ZERO:
            status = LegStatus.CLOSED if self.closed_quantity > ZERO else LegStatus.CANCELLED
        elif new_pending == ZERO:
            status = LegStatus.FILLED
        else:
            status = self.status
        return replace(
            self,
            position=new_position,
            pending_quantity=new_pending,
            status=status,
        )

    def close(
        self,
        quantity: Decimal,
        price: Decimal,
        timestamp: datetime,
        contract_size: Decimal = CONTRACT_SIZE,
    ) -> 'OpenPositionLeg':
        """
        Close filled quantity at an exit price and book realised P&L.

        Long:  (exit - entry) * qty * contract_size
        Short: (entry - exit) * qty * contract_size

        Raises:
            InvalidOrder: If quantity exceeds the filled quantity
        """
        quantity = positive_quantity(quantity)
        price = non_negative_price(price)
        if quantity > self.filled_quantity:
            raise InvalidOrder(
                f"Cannot close {quantity} of {self.series}: only {self.filled_quantity} filled"
            )
        sign = Decimal(self.direction.sign)
        pnl = (price - self.entry_price) * quantity * contract_size * sign
        new_position = self.position - sign * quantity
        new_filled = self.filled_quantity - quantity
        if new_position == ZERO:
            status = LegStatus.CLOSED
        else:
            status = self.status
        return replace(
            self,
            position=new_position,
            filled_quantity=new_filled,
            status=status,
            closed_quantity=self.closed_quantity + quantity,
            realized_pnl=self.realized_pnl + pnl,
        )

    # ------------------------------------------------------------------
    # Serialisation
    # ------------------------------------------------------------------

    def to_record(self) -> Dict[str, Any]:
        return {
            'type': self.series.side.label,
            'strike': normalize_decimal(self.series.strike),
            'expiry': self.series.expiry.isoformat(),
            'position': normalize_decimal(self.position),
            'entryPrice': normalize_decimal(self.entry_price),
            'filledQuantity': normalize_decimal(self.filled_quantity),
            'pendingQuantity': normalize_decimal(self.pending_quantity),
            'status': self.status.value,
            'closedQuantity': normalize_decimal(self.closed_quantity),
            'realizedPnl': normalize_decimal(self.realized_pnl),
            'fillHistory': [f.to_record() for f in self.fill_history],
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'OpenPositionLeg':
        return cls(
            series=SeriesKey.of(record['strike'], record['expiry'], record['type']),
            position=_dec(record['position']),
            filled_quantity=_dec(record['filledQuantity']),
            pending_quantity=_dec(record['pendingQuantity']),
            entry_price=_dec(record['entryPrice']),
            status=LegStatus(record['status']),
            fill_history=tuple(Fill.from_record(f) for f in record.get('fillHistory', [])),
            closed_quantity=_dec(record.get('closedQuantity', '0')),
            realized_pnl=_dec(record.get('realizedPnl', '0')),
        )


@dataclass(frozen=True, slots=True)
class OpenPosition:
    """
    A trader's position in one underlying: one or more legs.

    Attributes:
        id: Unique position identifier
        owner: Wallet / account that holds the position
        asset: Underlying asset symbol
        market_price: Underlying price when the position was opened
        legs: Legs in insertion order (leg index is stable)
        created_at: When the position was opened
    """
    id: str
    owner: str
    asset: str
    market_price: Decimal
    created_at: datetime
    legs: Tuple[OpenPositionLeg, ...] = field(default_factory=tuple)

    def add_leg(self, leg: OpenPositionLeg) -> Tuple['OpenPosition', int]:
        """Append a leg; returns the new position and the leg's index."""
        return replace(self, legs=self.legs + (leg,)), len(self.legs)

    def with_leg(self, index: int, leg: OpenPositionLeg) -> 'OpenPosition':
        legs = list(self.legs)
        legs[index] = leg
        return replace(self, legs=tuple(legs))

    def find_leg(
        self,
        series: SeriesKey,
        direction: Direction,
        pending_only: bool = False,
    ) -> Optional[int]:
        """Index of the first open leg on a series in a direction, if any."""
        for index, leg in enumerate(self.legs):
            if leg.series != series or leg.direction is not direction or not leg.is_open:
                continue
            if pending_only and leg.pending_quantity <= ZERO:
                continue
            return index
        return None

    @property
    def realized_pnl(self) -> Decimal:
        return sum((leg.realized_pnl for leg in self.legs), ZERO)

    def to_record(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'owner': self.owner,
            'asset': self.asset,
            'marketPrice': normalize_decimal(self.market_price),
            'createdAt': self.created_at.isoformat(),
            'legs': [leg.to_record() for leg in self.legs],
        }

    @classmethod
    def from_record(cls, record: Dict[str, Any]) -> 'OpenPosition':
        return cls(
            id=record['id'],
            owner=record.get('owner', ''),
            asset=record.get('asset', ''),
            market_price=_dec(record.get('marketPrice', '0')),
            created_at=datetime.fromisoformat(record['createdAt']),
            legs=tuple(OpenPositionLeg.from_record(leg) for leg in record.get('legs', [])),
        )


def pending_lots_for(lots: List[WrittenOption], series: SeriesKey) -> List[WrittenOption]:
    """Pending lots on a series, in collection order."""
    return [lot for lot in lots if lot.series == series and lot.is_pending]
