"""
matching.py - Matching engine for written-option inventory

MatchingEngine is the only component that mutates the per-series ledgers.
Every operation follows the same shape:

    1. Read a snapshot of the store (lots + positions, with versions)
    2. Validate the intent against the ledgers and the snapshot
    3. Mutate the ledgers and build the changed records in a working set
    4. Commit the changed records with the versions read in step 1

If anything fails after step 1 (validation, a stale store, a record that
cannot take the fill) the ledgers are restored to their state before the
operation and the error propagates. Nothing is half-applied.

Buy matching:
    fill = min(requested, available, pending lot quantity)
    Volume += fill, OpenInterest += fill, Availability -= fill
    Pending lots are consumed in LotOrdering order; a lot that is only partly
    consumed splits into a FILLED part and a PENDING remnant.
    Each lot fill is credited to the short leg of the writer's position.

Thread Safety:
    Not thread-safe. Each thread should maintain its own engine and LedgerSet.
"""

from __future__ import annotations
import uuid
from collections import defaultdict
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence, Tuple

from .core import (
    SeriesKey, Direction,
    InsufficientInventory, InvalidOrder, RecordNotFound,
    MAX_OPTION_LEGS, ZERO,
    positive_quantity, non_negative_price, as_series, normalize_decimal,
)
from .trackers import LedgerSet
from .records import WrittenOption, OpenPosition, OpenPositionLeg
from .store import PositionStore, StoreSnapshot
from .collateral import StrategyLeg, CollateralRequirement, compute_collateral, has_enough_collateral
from .costs import OrderLeg


class LotOrdering(Enum):
    """
    Order in which pending lots are consumed by a buy.

    FIRST_FOUND: collection order of the store.
    PRICE_TIME: lowest premium first, then earliest created_at.
    """
    FIRST_FOUND = "first_found"
    PRICE_TIME = "price_time"


# ============================================================================
# RESULTS
# ============================================================================

@dataclass(frozen=True, slots=True)
class LotFill:
    """
    Quantity taken from one lot by a buy.

    lot_id is the lot that was matched; filled_lot_id is the record that now
    holds the FILLED quantity (the same id for a full fill, the split-off id
    for a partial one).
    """
    lot_id: str
    filled_lot_id: str
    quantity: Decimal
    price: Decimal
    seller_position_id: Optional[str]


@dataclass(frozen=True, slots=True)
class MatchResult:
    series: SeriesKey
    requested_quantity: Decimal
    filled_quantity: Decimal
    price: Decimal
    lot_fills: Tuple[LotFill, ...]
    buyer_position: OpenPosition
    seller_positions: Tuple[OpenPosition, ...]

    @property
    def is_partial(self) -> bool:
        return self.filled_quantity < self.requested_quantity


@dataclass(frozen=True, slots=True)
class MintResult:
    lot: WrittenOption
    position: OpenPosition


@dataclass(frozen=True, slots=True)
class StrategyResult:
    position: OpenPosition
    collateral: CollateralRequirement
    minted: Tuple[WrittenOption, ...]
    matches: Tuple[MatchResult, ...]


def position_collateral_legs(position: OpenPosition) -> List[StrategyLeg]:
    """
    A position's open legs as collateral legs, keyed by leg index.

    Long legs count only their filled quantity; short legs count their whole
    written quantity, filled or still pending.
    """
    legs = []
    for index, leg in enumerate(position.legs):
        if not leg.is_open:
            continue
        quantity = abs(leg.position) if leg.is_short else leg.filled_quantity
        if quantity <= ZERO:
            continue
        legs.append(StrategyLeg(str(index), leg.series.side, leg.direction, leg.series.strike, quantity))
    return legs


# ============================================================================
# WORKING SET
# ============================================================================

class _WorkingSet:
    """
    Records read from one snapshot plus the changes made on top of them.

    Reads see the changes. Only changed records are committed.
    """

    def __init__(self, snapshot: StoreSnapshot):
        self.snapshot = snapshot
        self._lots: Dict[str, WrittenOption] = {lot.id: lot for lot in snapshot.lots}
        self._positions: Dict[str, OpenPosition] = {p.id: p for p in snapshot.positions}
        self.changed_lots: Dict[str, WrittenOption] = {}
        self.changed_positions: Dict[str, OpenPosition] = {}

    def lots(self) -> List[WrittenOption]:
        return list(self._lots.values())

    def positions(self) -> List[OpenPosition]:
        return list(self._positions.values())

    def pending_lots(self, series: SeriesKey) -> List[WrittenOption]:
        return [lot for lot in self._lots.values() if lot.series == series and lot.is_pending]

    def lot(self, lot_id: str) -> WrittenOption:
        if lot_id not in self._lots:
            raise RecordNotFound("lot", lot_id)
        return self._lots[lot_id]

    def position(self, position_id: str) -> OpenPosition:
        if position_id not in self._positions:
            raise RecordNotFound("position", position_id)
        return self._positions[position_id]

    def find_position(self, position_id: Optional[str]) -> Optional[OpenPosition]:
        if position_id is None:
            return None
        return self._positions.get(position_id)

    def put_lot(self, lot: WrittenOption) -> None:
        self._lots[lot.id] = lot
        self.changed_lots[lot.id] = lot

    def put_position(self, position: OpenPosition) -> None:
        self._positions[position.id] = position
        self.changed_positions[position.id] = position


# ============================================================================
# ENGINE
# ============================================================================

class MatchingEngine:
    """
    Mint, buy, cancel and close against one underlying's ledgers and store.

    Example:
        ledgers = LedgerSet()
        engine = MatchingEngine(ledgers, InMemoryPositionStore())
        series = SeriesKey.of(50, "2025-06-27", "call")

        engine.mint("writer", "SOL", series, 10, premium=Decimal("1.20"))
        result = engine.buy("trader", "SOL", series, 4, price=Decimal("1.20"))

        result.filled_quantity          # Decimal("4")
        engine.available(series)        # Decimal("6")
    """

    def __init__(
        self,
        ledgers: LedgerSet,
        store: PositionStore,
        lot_ordering: LotOrdering = LotOrdering.FIRST_FOUND,
        initial_time: Optional[datetime] = None,
        id_factory: Optional[Callable[[], str]] = None,
        verbose: bool = False,
    ):
        """
        Create an engine.

        Args:
            ledgers: Volume / open interest / availability trackers
            store: Persisted lots and positions
            lot_ordering: Which pending lots a buy consumes first
            initial_time: Starting logical time (default: 1970-01-01)
            id_factory: Generates lot and position ids (default: uuid4 hex)
            verbose: Print one line per operation (default: False)
        """
        self.ledgers = ledgers
        self.store = store
        self.lot_ordering = lot_ordering
        self._current_time: datetime = initial_time or datetime(1970, 1, 1)
        self._id_factory = id_factory or (lambda: uuid.uuid4().hex)
        self.verbose = verbose

    # ========================================================================
    # TIME
    # ========================================================================

    @property
    def current_time(self) -> datetime:
        return self._current_time

    def advance_time(self, new_time: datetime) -> None:
        """
        Advance the logical clock used to timestamp lots and fills.

        Raises:
            ValueError: If new_time is before the current time
        """
        if new_time < self._current_time:
            raise ValueError(
                f"Cannot move time backwards: {new_time} < {self._current_time}"
            )
        self._current_time = new_time

    # ========================================================================
    # READS
    # ========================================================================

    def available(self, series: Any) -> Decimal:
        return self.ledgers.availability.get(as_series(series))

    def volume(self, series: Any) -> Decimal:
        return self.ledgers.volume.get(as_series(series))

    def open_interest(self, series: Any) -> Decimal:
        return self.ledgers.open_interest.get(as_series(series))

    # ========================================================================
    # PUBLIC OPERATIONS
    # ========================================================================

    def mint(
        self,
        owner: str,
        asset: str,
        series: Any,
        quantity: Any,
        premium: Any,
        market_price: Any = ZERO,
        position_id: Optional[str] = None,
    ) -> MintResult:
        """
        Write new inventory: a PENDING lot and a short PENDING leg.

        Availability increases by quantity. With position_id the short leg is
        added to (or merged into) that position.

        Raises:
            InvalidQuantity: If quantity is not positive or premium is negative
            RecordNotFound: If position_id does not exist
        """
        result = self._transact(
            lambda work: self._apply_mint(
                work, owner, asset, as_series(series), quantity, premium, market_price, position_id
            )
        )
        if self.verbose:
            print(f"✓ MINTED: {normalize_decimal(result.lot.quantity)} x {result.lot.series} "
                  f"@ {normalize_decimal(result.lot.premium)} lot={result.lot.id}")
        return result

    def buy(
        self,
        owner: str,
        asset: str,
        series: Any,
        quantity: Any,
        price: Any,
        market_price: Any = ZERO,
        position_id: Optional[str] = None,
    ) -> MatchResult:
        """
        Match a buy order against pending written inventory.

        The order may fill partially: filled_quantity is
        min(requested, available, pending lot quantity). Buy orders never
        rest, so the buyer's leg holds only the filled quantity.

        Args:
            owner: Buyer
            asset: Underlying symbol
            series: SeriesKey (or mapping) to buy
            quantity: Contracts requested
            price: Trade price per contract
            market_price: Underlying price recorded on a new position
            position_id: Existing position to add the long leg to

        Raises:
            InvalidQuantity: If quantity is not positive or price is negative
            InsufficientInventory: If nothing is available for the series
            RecordNotFound: If position_id does not exist
            StaleCollectionRead: If the store changed since it was read
        """
        result = self._transact(
            lambda work: self._apply_buy(
                work, owner, asset, as_series(series), quantity, price, market_price, position_id
            )
        )
        if self.verbose:
            partial = " (partial)" if result.is_partial else ""
            print(f"✓ MATCHED: {normalize_decimal(result.filled_quantity)}/"
                  f"{normalize_decimal(result.requested_quantity)} x {result.series} "
                  f"@ {normalize_decimal(result.price)} across {len(result.lot_fills)} lot(s){partial}")
        return result

    def place_strategy(
        self,
        owner: str,
        asset: str,
        legs: Sequence[OrderLeg],
        market_price: Any,
        collateral_provided: Any = None,
        leverage: Any = Decimal("1"),
    ) -> StrategyResult:
        """
        Open a multi-leg strategy as one position in one commit.

        SHORT legs are minted, LONG legs are bought. The collateral
        requirement of the whole leg set is computed first; when
        collateral_provided is given it must cover the requirement at the
        given leverage. Every long leg's series must have inventory before
        anything is mutated.

        Long legs can fill partially, which leaves shorts less covered than
        requested. The requirement is therefore computed again from the
        opened position (filled longs against written shorts) and checked
        before the commit. StrategyResult.collateral is that final figure.

        Raises:
            InvalidOrder: If there are no legs, more than MAX_OPTION_LEGS, or
                the collateral is insufficient for the requested or the
                opened legs
            InsufficientInventory: If a long leg's series has nothing available
        """
        legs = list(legs)
        if not legs:
            raise InvalidOrder("A strategy needs at least one leg")
        if len(legs) > MAX_OPTION_LEGS:
            raise InvalidOrder(f"A strategy may have at most {MAX_OPTION_LEGS} legs, got {len(legs)}")

        collateral = compute_collateral(
            [
                StrategyLeg(str(i), leg.series.side, leg.direction, leg.series.strike, leg.quantity)
                for i, leg in enumerate(legs)
            ],
            market_price,
        )
        if collateral_provided is not None and not has_enough_collateral(
            collateral.total_collateral, collateral_provided, leverage
        ):
            if self.verbose:
                print(f"✗ REJECTED: collateral {collateral_provided} x {leverage} "
                      f"< required {collateral.total_collateral}")
            raise InvalidOrder(
                f"Insufficient collateral: {collateral_provided} x {leverage} "
                f"< required {collateral.total_collateral}"
            )

        requested: Dict[SeriesKey, Decimal] = defaultdict(lambda: ZERO)
        for leg in legs:
            if leg.direction is Direction.LONG:
                requested[leg.series] += leg.quantity
        for series, quantity in requested.items():
            available = self.ledgers.availability.get(series)
            if available <= ZERO:
                if self.verbose:
                    print(f"✗ REJECTED: no inventory for {series}")
                raise InsufficientInventory(series, quantity, available)

        def apply(work: _WorkingSet) -> StrategyResult:
            position = OpenPosition(
                id=self._id_factory(),
                owner=owner,
                asset=asset,
                market_price=non_negative_price(market_price, "market_price"),
                created_at=self._current_time,
            )
            work.put_position(position)
            minted = []
            matches = []
            for leg in legs:
                if leg.direction is Direction.SHORT:
                    minted.append(self._apply_mint(
                        work, owner, asset, leg.series, leg.quantity, leg.price,
                        market_price, position.id,
                    ).lot)
                else:
                    matches.append(self._apply_buy(
                        work, owner, asset, leg.series, leg.quantity, leg.price,
                        market_price, position.id,
                    ))

            # Long legs may fill partially; price what was actually opened.
            opened = work.position(position.id)
            actual = compute_collateral(position_collateral_legs(opened), market_price)
            if collateral_provided is not None and not has_enough_collateral(
                actual.total_collateral, collateral_provided, leverage
            ):
                raise InvalidOrder(
                    f"Insufficient collateral after fills: {collateral_provided} x {leverage} "
                    f"< required {actual.total_collateral}"
                )
            return StrategyResult(
                position=opened,
                collateral=actual,
                minted=tuple(minted),
                matches=tuple(matches),
            )

        result = self._transact(apply)
        if self.verbose:
            print(f"✓ STRATEGY: {len(legs)} leg(s) position={result.position.id} "
                  f"collateral={normalize_decimal(result.collateral.total_collateral)}")
        return result

    def cancel_lot(self, lot_id: str) -> WrittenOption:
        """
        Withdraw a PENDING lot.

        Availability drops by the lot quantity and the writer's short leg
        loses the same pending quantity (CANCELLED if nothing was filled).

        Raises:
            RecordNotFound: If the lot does not exist
            InvalidOrder: If the lot is not PENDING
        """

        def apply(work: _WorkingSet) -> WrittenOption:
            lot = work.lot(lot_id)
            cancelled = lot.cancel()
            self.ledgers.availability.decrease(lot.series, lot.quantity)
            work.put_lot(cancelled)

            position = work.find_position(lot.position_id)
            if position is not None:
                index = position.find_leg(lot.series, Direction.SHORT, pending_only=True)
                if index is not None:
                    leg = position.legs[index]
                    withdrawn = min(lot.quantity, leg.pending_quantity)
                    work.put_position(position.with_leg(index, leg.cancel_pending(withdrawn)))
            return cancelled

        result = self._transact(apply)
        if self.verbose:
            print(f"✓ CANCELLED: lot={result.id} {normalize_decimal(result.quantity)} x {result.series}")
        return result

    def close_leg(
        self,
        position_id: str,
        leg_index: int,
        quantity: Any,
        price: Any,
    ) -> OpenPosition:
        """
        Close filled quantity of a leg at an exit price.

        OpenInterest -= quantity, Volume += quantity, and the leg books
        realised P&L. The leg is CLOSED once flat.

        Raises:
            RecordNotFound: If the position or leg does not exist
            SeriesNotFound: If the series has no tracked open interest
            InvalidOrder: If quantity exceeds the leg's filled quantity
        """
        quantity = positive_quantity(quantity)
        price = non_negative_price(price)

        def apply(work: _WorkingSet) -> OpenPosition:
            position = work.position(position_id)
            if not 0 <= leg_index < len(position.legs):
                raise RecordNotFound("leg", f"{position_id}[{leg_index}]")
            leg = position.legs[leg_index]
            self.ledgers.open_interest.require(leg.series)
            closed = leg.close(quantity, price, self._current_time)
            self.ledgers.open_interest.decrease(leg.series, quantity)
            self.ledgers.volume.increase(leg.series, quantity)
            updated = position.with_leg(leg_index, closed)
            work.put_position(updated)
            return updated

        result = self._transact(apply)
        if self.verbose:
            leg = result.legs[leg_index]
            print(f"✓ CLOSED: {normalize_decimal(quantity)} x {leg.series} @ {normalize_decimal(price)} "
                  f"realized={normalize_decimal(leg.realized_pnl)}")
        return result

    def roll_expiry(self, expiry: date) -> int:
        """Drop availability for every series expiring on the given date."""
        removed = self.ledgers.availability.clear_for_expiry(expiry)
        if self.verbose:
            print(f"✓ ROLLED: {expiry.isoformat()} cleared {removed} series")
        return removed

    # ========================================================================
    # INTERNALS
    # ========================================================================

    def _transact(self, action: Callable[[_WorkingSet], Any]) -> Any:
        """
        Run action on a fresh working set and write; restore ledgers on any failure.

        Change notices go out only after the write succeeded. A listener
        error propagates to the caller but leaves ledgers and store as
        committed.
        """
        saved = self.ledgers.snapshot()
        work = _WorkingSet(self.store.read())
        try:
            result = action(work)
            _, notices = self.store.write(
                lots=list(work.changed_lots.values()),
                positions=list(work.changed_positions.values()),
                expected_versions=work.snapshot.versions,
            )
        except Exception as exc:
            self.ledgers.restore(saved)
            if self.verbose:
                print(f"✗ REJECTED: {exc}")
            raise
        self.store.publish(notices)
        return result

    def _ordered(self, lots: List[WrittenOption]) -> List[WrittenOption]:
        if self.lot_ordering is LotOrdering.PRICE_TIME:
            return sorted(lots, key=lambda lot: (lot.premium, lot.created_at))
        return lots

    def _apply_mint(
        self,
        work: _WorkingSet,
        owner: str,
        asset: str,
        series: SeriesKey,
        quantity: Any,
        premium: Any,
        market_price: Any,
        position_id: Optional[str],
    ) -> MintResult:
        quantity = positive_quantity(quantity)
        premium = non_negative_price(premium, "premium")
        now = self._current_time

        if position_id is not None:
            position = work.position(position_id)
            index = position.find_leg(series, Direction.SHORT)
            if index is not None:
                position = position.with_leg(index, position.legs[index].add_pending(quantity, premium))
            else:
                position, _ = position.add_leg(OpenPositionLeg.written_short(series, quantity, premium))
        else:
            position = OpenPosition(
                id=self._id_factory(),
                owner=owner,
                asset=asset,
                market_price=non_negative_price(market_price, "market_price"),
                created_at=now,
                legs=(OpenPositionLeg.written_short(series, quantity, premium),),
            )

        lot = WrittenOption(
            id=self._id_factory(),
            asset=asset,
            series=series,
            quantity=quantity,
            premium=premium,
            created_at=now,
            position_id=position.id,
        )
        self.ledgers.availability.increase(series, quantity)
        work.put_position(position)
        work.put_lot(lot)
        return MintResult(lot=lot, position=position)

    def _apply_buy(
        self,
        work: _WorkingSet,
        owner: str,
        asset: str,
        series: SeriesKey,
        quantity: Any,
        price: Any,
        market_price: Any,
        position_id: Optional[str],
    ) -> MatchResult:
        requested = positive_quantity(quantity)
        price = non_negative_price(price)
        now = self._current_time

        available = self.ledgers.availability.get(series)
        if available <= ZERO:
            raise InsufficientInventory(series, requested, available)

        pending = self._ordered(work.pending_lots(series))
        pending_total = sum((lot.quantity for lot in pending), ZERO)
        if pending_total <= ZERO:
            raise InsufficientInventory(series, requested, pending_total)

        fill = min(requested, available, pending_total)
        if position_id is not None:
            work.position(position_id)

        self.ledgers.volume.increase(series, fill)
        self.ledgers.open_interest.increase(series, fill)
        self.ledgers.availability.decrease(series, fill)

        remaining = fill
        lot_fills: List[LotFill] = []
        seller_ids: List[str] = []
        for lot in pending:
            if remaining <= ZERO:
                break
            take = min(remaining, lot.quantity)
            if take == lot.quantity:
                filled = lot.fill(price, now)
                work.put_lot(filled)
            else:
                filled, remnant = lot.split(take, price, now)
                work.put_lot(remnant)
                work.put_lot(filled)
            remaining -= take
            seller_id = self._credit_seller(work, lot, take, price)
            if seller_id is not None and seller_id not in seller_ids:
                seller_ids.append(seller_id)
            lot_fills.append(LotFill(
                lot_id=lot.id,
                filled_lot_id=filled.id,
                quantity=take,
                price=price,
                seller_position_id=seller_id,
            ))

        if position_id is not None:
            position = work.position(position_id)
            index = position.find_leg(series, Direction.LONG)
            if index is not None:
                position = position.with_leg(index, position.legs[index].add_fill(price, fill, now))
            else:
                position, _ = position.add_leg(OpenPositionLeg.opened_long(series, fill, price, now))
        else:
            position = OpenPosition(
                id=self._id_factory(),
                owner=owner,
                asset=asset,
                market_price=non_negative_price(market_price, "market_price"),
                created_at=now,
                legs=(OpenPositionLeg.opened_long(series, fill, price, now),),
            )
        work.put_position(position)

        return MatchResult(
            series=series,
            requested_quantity=requested,
            filled_quantity=fill,
            price=price,
            lot_fills=tuple(lot_fills),
            buyer_position=work.position(position.id),
            seller_positions=tuple(work.position(pid) for pid in seller_ids),
        )

    def _credit_seller(
        self,
        work: _WorkingSet,
        lot: WrittenOption,
        quantity: Decimal,
        price: Decimal,
    ) -> Optional[str]:
        """
        Move quantity from pending to filled on the writer's short leg.

        Looks in the lot's own position first, then falls back to the first
        position with a pending short leg on the series. Returns the credited
        position id, or None when no short leg exists.
        """
        position = work.find_position(lot.position_id)
        index = None
        if position is not None:
            index = position.find_leg(lot.series, Direction.SHORT, pending_only=True)
        if index is None:
            position = None
            for candidate in work.positions():
                index = candidate.find_leg(lot.series, Direction.SHORT, pending_only=True)
                if index is not None:
                    position = candidate
                    break
        if position is None or index is None:
            if self.verbose:
                print(f"⚠️  NO SELLER LEG: lot={lot.id} {lot.series}")
            return None
        leg = position.legs[index].apply_fill(price, quantity, self._current_time)
        work.put_position(position.with_leg(index, leg))
        return position.id
