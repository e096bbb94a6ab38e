"""
optledger - Option Position Ledger and Matching Engine

Per-series volume, open interest and availability tracking, buy-side matching
against written inventory, multi-leg collateral and payoff analysis.

Usage:
    from decimal import Decimal
    from optledger import (
        LedgerSet, InMemoryPositionStore, MatchingEngine, SeriesKey,
    )

    ledgers = LedgerSet()
    engine = MatchingEngine(ledgers, InMemoryPositionStore())
    series = SeriesKey.of(50, "2025-06-27", "call")

    # Writer mints 10 contracts
    engine.mint("writer", "SOL", series, 10, premium=Decimal("1.20"))

    # Trader buys 4: the lot splits into Filled(4) and Pending(6)
    result = engine.buy("trader", "SOL", series, 4, price=Decimal("1.20"))

    engine.available(series)      # Decimal("6")
    engine.volume(series)         # Decimal("4")
    engine.open_interest(series)  # Decimal("4")
"""

# Core types
from .core import (
    SeriesKey,
    OptionSide,
    Direction,
    LotStatus,
    LegStatus,
    LedgerError,
    InsufficientInventory,
    InvalidQuantity,
    SeriesNotFound,
    StaleCollectionRead,
    RecordNotFound,
    InvalidOrder,
    CONTRACT_SIZE,
    DISPLAY_EPSILON,
    MAX_OPTION_LEGS,
    weighted_average_price,
    display_amount,
)

# Ledgers
from .trackers import (
    VolumeLedger,
    OpenInterestLedger,
    AvailabilityLedger,
    LedgerSet,
)

# Records and store
from .records import WrittenOption, Fill, OpenPositionLeg, OpenPosition
from .store import (
    PositionStore,
    InMemoryPositionStore,
    JsonFilePositionStore,
    ConflictPolicy,
    StoreSnapshot,
    ChangeNotice,
)

# Matching
from .matching import (
    MatchingEngine,
    LotOrdering,
    LotFill,
    MatchResult,
    MintResult,
    StrategyResult,
)

# Collateral
from .collateral import (
    StrategyLeg,
    CollateralRequirement,
    compute_collateral,
    has_enough_collateral,
    optimal_leverage,
    min_collateral_required,
)

# Payoff
from .payoff import (
    PayoffLeg,
    PayoffCurve,
    PayoffSummary,
    leg_pnl,
    total_pnl,
    payoff_curve,
    breakevens,
    payoff_summary,
)

# Pricing, quotes and costs
from .black_scholes import price_option, OptionCalculation, Greeks
from .chain import quote, option_chain, Quote, ChainRow, SeriesQuote
from .costs import (
    OrderLeg,
    OrderSummary,
    FeeBreakdown,
    summarize_order,
    total_premium,
    hourly_interest_rate,
    borrow_cost,
    max_profit_potential,
)

__all__ = [
    # Core
    'SeriesKey', 'OptionSide', 'Direction', 'LotStatus', 'LegStatus',
    'LedgerError', 'InsufficientInventory', 'InvalidQuantity', 'SeriesNotFound',
    'StaleCollectionRead', 'RecordNotFound', 'InvalidOrder',
    'CONTRACT_SIZE', 'DISPLAY_EPSILON', 'MAX_OPTION_LEGS',
    'weighted_average_price', 'display_amount',
    # Ledgers
    'VolumeLedger', 'OpenInterestLedger', 'AvailabilityLedger', 'LedgerSet',
    # Records and store
    'WrittenOption', 'Fill', 'OpenPositionLeg', 'OpenPosition',
    'PositionStore', 'InMemoryPositionStore', 'JsonFilePositionStore',
    'ConflictPolicy', 'StoreSnapshot', 'ChangeNotice',
    # Matching
    'MatchingEngine', 'LotOrdering', 'LotFill', 'MatchResult', 'MintResult', 'StrategyResult',
    # Collateral
    'StrategyLeg', 'CollateralRequirement', 'compute_collateral',
    'has_enough_collateral', 'optimal_leverage', 'min_collateral_required',
    # Payoff
    'PayoffLeg', 'PayoffCurve', 'PayoffSummary', 'leg_pnl', 'total_pnl',
    'payoff_curve', 'breakevens', 'payoff_summary',
    # Pricing, quotes and costs
    'price_option', 'OptionCalculation', 'Greeks',
    'quote', 'option_chain', 'Quote', 'ChainRow', 'SeriesQuote',
    'OrderLeg', 'OrderSummary', 'FeeBreakdown', 'summarize_order',
    'total_premium', 'hourly_interest_rate', 'borrow_cost', 'max_profit_potential',
]
