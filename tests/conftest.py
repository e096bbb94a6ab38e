"""
conftest.py - Shared pytest fixtures for option ledger tests

Provides common fixtures used across unit and functional tests:
- Series keys on a fixed expiry
- Fresh ledgers and stores
- A matching engine with deterministic ids and a fixed clock
"""

import itertools
import pytest
from datetime import date, datetime
from decimal import Decimal

from optledger import (
    SeriesKey, OptionSide,
    LedgerSet, InMemoryPositionStore, MatchingEngine,
)


EXPIRY = date(2025, 6, 27)
T0 = datetime(2025, 1, 2, 9, 30)


def sequential_ids(prefix: str = "id"):
    """Deterministic id factory: id1, id2, ..."""
    counter = itertools.count(1)
    return lambda: f"{prefix}{next(counter)}"


@pytest.fixture
def call_50() -> SeriesKey:
    return SeriesKey(Decimal("50"), EXPIRY, OptionSide.CALL)


@pytest.fixture
def put_45() -> SeriesKey:
    return SeriesKey(Decimal("45"), EXPIRY, OptionSide.PUT)


@pytest.fixture
def ledgers() -> LedgerSet:
    return LedgerSet()


@pytest.fixture
def store() -> InMemoryPositionStore:
    return InMemoryPositionStore()


@pytest.fixture
def engine(ledgers, store) -> MatchingEngine:
    """Engine over fresh ledgers with ids id1, id2, ... and time T0."""
    return MatchingEngine(
        ledgers,
        store,
        initial_time=T0,
        id_factory=sequential_ids(),
        verbose=False,
    )
