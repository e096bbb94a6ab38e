"""
trackers.py - Per-series quantity ledgers

Three independent maps keyed by SeriesKey:
    - VolumeLedger: traded quantity, increase-only (the historical record)
    - OpenInterestLedger: opened minus closed quantity, floored at zero
    - AvailabilityLedger: unmatched written quantity, floored at zero

Entries are created lazily on the first increase. Reads of an unknown series
return the configured baseline. The ledgers are plain store objects: build a
LedgerSet once at startup and hand it to the MatchingEngine, which is the only
component that mutates them.

Thread Safety:
    Not thread-safe. Each thread should maintain its own LedgerSet.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from typing import Dict, Iterator, Optional, Tuple

from .core import (
    SeriesKey, SeriesNotFound, ZERO,
    positive_quantity,
)


class SeriesLedger:
    """
    Base ledger mapping SeriesKey -> Decimal.

    Subclasses decide which mutations are allowed. The base only supports
    reads and increases.
    """

    def __init__(self, name: str, baseline: Decimal = ZERO):
        """
        Create a ledger.

        Args:
            name: Ledger identifier used in error messages
            baseline: Value reported for series that have no entry yet
        """
        self.name = name
        self.baseline = baseline
        self._entries: Dict[SeriesKey, Decimal] = {}

    def get(self, series: SeriesKey) -> Decimal:
        """Current value for a series (baseline if never referenced)."""
        return self._entries.get(series, self.baseline)

    def require(self, series: SeriesKey) -> Decimal:
        """
        Strict lookup for callers that must not act on an untracked series.

        Raises:
            SeriesNotFound: If the series has no entry
        """
        if series not in self._entries:
            raise SeriesNotFound(series, self.name)
        return self._entries[series]

    def increase(self, series: SeriesKey, quantity: Decimal) -> Decimal:
        """
        Add a positive quantity to a series, creating the entry if needed.

        Returns:
            The new value

        Raises:
            InvalidQuantity: If quantity is not positive and finite
        """
        quantity = positive_quantity(quantity)
        new_value = self.get(series) + quantity
        self._entries[series] = new_value
        return new_value

    def __contains__(self, series: SeriesKey) -> bool:
        return series in self._entries

    def __iter__(self) -> Iterator[SeriesKey]:
        return iter(list(self._entries))

    def __len__(self) -> int:
        return len(self._entries)

    def entries(self) -> Dict[SeriesKey, Decimal]:
        """Copy of every tracked entry."""
        return dict(self._entries)

    def total(self) -> Decimal:
        """Sum across all series, accumulated in a deterministic order."""
        keys = sorted(self._entries, key=lambda s: (s.expiry, s.side.value, s.strike))
        return sum((self._entries[k] for k in keys), ZERO)

    def snapshot(self) -> Dict[SeriesKey, Decimal]:
        return dict(self._entries)

    def restore(self, snapshot: Dict[SeriesKey, Decimal]) -> None:
        self._entries = dict(snapshot)

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.name!r}, {len(self._entries)} series)"


class VolumeLedger(SeriesLedger):
    """
    Traded quantity per series. Monotonically non-decreasing.

    Records the absolute magnitude of every match regardless of direction.
    It has no decrease().
    """

    def __init__(self, baseline: Decimal = ZERO):
        super().__init__("volume", baseline)


class _ClampedLedger(SeriesLedger):
    """Ledger that can also decrease, clamped at zero."""

    def decrease(self, series: SeriesKey, quantity: Decimal) -> Decimal:
        """
        Subtract a positive quantity, never going below zero.

        new = max(0, current - quantity)

        Returns:
            The new value

        Raises:
            InvalidQuantity: If quantity is not positive and finite
        """
        quantity = positive_quantity(quantity)
        new_value = max(ZERO, self.get(series) - quantity)
        self._entries[series] = new_value
        return new_value


class OpenInterestLedger(_ClampedLedger):
    """Open (not yet closed) quantity per series. Never negative."""

    def __init__(self, baseline: Decimal = ZERO):
        super().__init__("open_interest", baseline)


class AvailabilityLedger(_ClampedLedger):
    """
    Written quantity still available to buyers. Never negative.

    This is the scarce resource that gates buy-side matching.
    """

    def __init__(self, baseline: Decimal = ZERO):
        super().__init__("availability", baseline)

    def clear_for_expiry(self, expiry: date) -> int:
        """
        Remove every entry whose series expires on the given date.

        Used when a contract's trading window rolls off. Volume and open
        interest are separate ledgers and are not touched.

        Returns:
            Number of entries removed
        """
        doomed = [s for s in self._entries if s.expiry == expiry]
        for series in doomed:
            del self._entries[series]
        return len(doomed)


@dataclass
class LedgerSet:
    """
    The three trackers, constructed once and passed to the engine.

    Example:
        ledgers = LedgerSet()
        engine = MatchingEngine(ledgers, InMemoryPositionStore())
    """
    volume: VolumeLedger = field(default_factory=VolumeLedger)
    open_interest: OpenInterestLedger = field(default_factory=OpenInterestLedger)
    availability: AvailabilityLedger = field(default_factory=AvailabilityLedger)

    def snapshot(self) -> Tuple[Dict[SeriesKey, Decimal], ...]:
        """Capture all three ledgers for a later restore()."""
        return (
            self.volume.snapshot(),
            self.open_interest.snapshot(),
            self.availability.snapshot(),
        )

    def restore(self, snapshot: Tuple[Dict[SeriesKey, Decimal], ...]) -> None:
        volume, open_interest, availability = snapshot
        self.volume.restore(volume)
        self.open_interest.restore(open_interest)
        self.availability.restore(availability)

    def stats(self, series: SeriesKey) -> Dict[str, Decimal]:
        """Volume, open interest and availability for one series."""
        return {
            'volume': self.volume.get(series),
            'open_interest': self.open_interest.get(series),
            'available': self.availability.get(series),
        }
