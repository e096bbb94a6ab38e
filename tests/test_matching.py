"""
test_matching.py - Tests for MatchingEngine

Tests:
- Mint: lot, short leg, availability
- Buy: full / partial fills, lot splits, multi-lot distribution, ordering
- Seller crediting and buyer leg averaging
- Rejections leave ledgers and store untouched
- Cancel, close, expiry roll, strategies
"""

import pytest
from datetime import date, datetime, timedelta
from decimal import Decimal

from optledger import (
    SeriesKey, Direction, LotStatus, LegStatus,
    LedgerSet, InMemoryPositionStore, StoreSnapshot, WrittenOption,
    MatchingEngine, LotOrdering, OrderLeg,
    InsufficientInventory, InvalidQuantity, InvalidOrder, RecordNotFound,
    SeriesNotFound, StaleCollectionRead,
)
from tests.conftest import sequential_ids


EXPIRY = date(2025, 6, 27)
T0 = datetime(2025, 1, 2, 9, 30)


class TestMint:

    def test_mint_creates_lot_leg_and_availability(self, engine, store, call_50):
        result = engine.mint("writer", "SOL", call_50, 10, Decimal("1.20"), market_price=48)

        assert engine.available(call_50) == Decimal("10")
        assert engine.volume(call_50) == Decimal("0")
        assert engine.open_interest(call_50) == Decimal("0")

        lot = result.lot
        assert lot.status is LotStatus.PENDING
        assert lot.quantity == Decimal("10")
        assert lot.position_id == result.position.id
        assert lot.created_at == T0

        leg = result.position.legs[0]
        assert leg.position == Decimal("-10")
        assert leg.pending_quantity == Decimal("10")
        assert leg.entry_price == Decimal("1.20")
        assert leg.status is LegStatus.PENDING

        snap = store.read()
        assert snap.lot(lot.id) == lot
        assert snap.position(result.position.id) == result.position

    def test_mint_into_existing_position_merges_short_leg(self, engine, call_50):
        first = engine.mint("writer", "SOL", call_50, 2, Decimal("1"))
        second = engine.mint("writer", "SOL", call_50, 3, Decimal("1"), position_id=first.position.id)
        assert len(second.position.legs) == 1
        assert second.position.legs[0].position == Decimal("-5")
        assert engine.available(call_50) == Decimal("5")

    def test_mint_into_unknown_position_rejected(self, engine, call_50):
        with pytest.raises(RecordNotFound):
            engine.mint("writer", "SOL", call_50, 2, Decimal("1"), position_id="missing")
        assert engine.available(call_50) == Decimal("0")

    def test_mint_rejects_bad_quantity(self, engine, store, call_50):
        with pytest.raises(InvalidQuantity):
            engine.mint("writer", "SOL", call_50, 0, Decimal("1"))
        assert store.read().lots == ()


class TestBuyScenario:
    """Mint 10, buy 4."""

    @pytest.fixture
    def matched(self, engine, call_50):
        minted = engine.mint("writer", "SOL", call_50, 10, Decimal("1.20"))
        result = engine.buy("trader", "SOL", call_50, 4, Decimal("1.20"))
        return minted, result

    def test_ledgers(self, engine, call_50, matched):
        assert engine.available(call_50) == Decimal("6")
        assert engine.volume(call_50) == Decimal("4")
        assert engine.open_interest(call_50) == Decimal("4")

    def test_lot_splits(self, store, call_50, matched):
        minted, result = matched
        lots = {lot.id: lot for lot in store.read().lots}
        remnant = lots[minted.lot.id]
        filled = lots[result.lot_fills[0].filled_lot_id]
        assert remnant.status is LotStatus.PENDING
        assert remnant.quantity == Decimal("6")
        assert filled.status is LotStatus.FILLED
        assert filled.quantity == Decimal("4")
        assert filled.filled_price == Decimal("1.20")

    def test_buyer_leg(self, matched):
        _, result = matched
        assert result.filled_quantity == Decimal("4")
        assert not result.is_partial
        leg = result.buyer_position.legs[0]
        assert leg.position == Decimal("4")
        assert leg.filled_quantity == Decimal("4")
        assert leg.pending_quantity == Decimal("0")
        assert leg.status is LegStatus.FILLED
        assert leg.entry_price == Decimal("1.20")

    def test_seller_leg(self, store, matched):
        minted, result = matched
        seller = store.read().position(minted.position.id)
        leg = seller.legs[0]
        assert leg.filled_quantity == Decimal("4")
        assert leg.pending_quantity == Decimal("6")
        assert leg.status is LegStatus.PENDING
        assert result.seller_positions == (seller,)


class TestBuyFills:

    def test_partial_fill_when_inventory_short(self, engine, call_50):
        engine.mint("writer", "SOL", call_50, 3, Decimal("1"))
        result = engine.buy("trader", "SOL", call_50, 5, Decimal("1"))
        assert result.requested_quantity == Decimal("5")
        assert result.filled_quantity == Decimal("3")
        assert result.is_partial
        assert result.buyer_position.legs[0].position == Decimal("3")
        assert engine.available(call_50) == Decimal("0")

    def test_buy_with_nothing_available(self, engine, store, call_50):
        with pytest.raises(InsufficientInventory) as exc_info:
            engine.buy("trader", "SOL", call_50, 1, Decimal("1"))
        assert exc_info.value.available == Decimal("0")
        assert engine.volume(call_50) == Decimal("0")
        assert store.read().positions == ()

    def test_buy_after_inventory_exhausted(self, engine, call_50):
        engine.mint("writer", "SOL", call_50, 2, Decimal("1"))
        engine.buy("trader", "SOL", call_50, 2, Decimal("1"))
        with pytest.raises(InsufficientInventory):
            engine.buy("trader", "SOL", call_50, 1, Decimal("1"))

    def test_fill_spans_lots(self, engine, store, call_50):
        a = engine.mint("w1", "SOL", call_50, 3, Decimal("1.00"))
        b = engine.mint("w2", "SOL", call_50, 4, Decimal("1.10"))
        result = engine.buy("trader", "SOL", call_50, 5, Decimal("1.05"))

        assert [(f.lot_id, f.quantity) for f in result.lot_fills] == [
            (a.lot.id, Decimal("3")), (b.lot.id, Decimal("2")),
        ]
        snap = store.read()
        assert snap.lot(a.lot.id).status is LotStatus.FILLED
        assert snap.lot(b.lot.id).quantity == Decimal("2")
        assert snap.position(a.position.id).legs[0].status is LegStatus.FILLED
        assert snap.position(b.position.id).legs[0].filled_quantity == Decimal("2")
        assert {p.id for p in result.seller_positions} == {a.position.id, b.position.id}

    def test_price_time_ordering(self, ledgers, store, call_50):
        engine = MatchingEngine(ledgers, store, lot_ordering=LotOrdering.PRICE_TIME,
                                initial_time=T0, id_factory=sequential_ids())
        expensive = engine.mint("w1", "SOL", call_50, 2, Decimal("1.50"))
        engine.advance_time(T0 + timedelta(minutes=1))
        cheap_late = engine.mint("w2", "SOL", call_50, 2, Decimal("1.00"))
        engine.advance_time(T0 + timedelta(minutes=2))
        cheap_later = engine.mint("w3", "SOL", call_50, 2, Decimal("1.00"))

        result = engine.buy("trader", "SOL", call_50, 3, Decimal("1.50"))
        assert [f.lot_id for f in result.lot_fills] == [cheap_late.lot.id, cheap_later.lot.id]
        assert store.read().lot(expensive.lot.id).is_pending

    def test_first_found_ordering_is_collection_order(self, engine, call_50):
        first = engine.mint("w1", "SOL", call_50, 2, Decimal("1.50"))
        engine.mint("w2", "SOL", call_50, 2, Decimal("1.00"))
        result = engine.buy("trader", "SOL", call_50, 1, Decimal("1.50"))
        assert result.lot_fills[0].lot_id == first.lot.id

    def test_seller_entry_price_averages_over_fills(self, engine, store, call_50):
        minted = engine.mint("writer", "SOL", call_50, 15, Decimal("0.90"))
        engine.buy("t1", "SOL", call_50, 10, Decimal("1.00"))
        engine.buy("t2", "SOL", call_50, 5, Decimal("1.30"))
        leg = store.read().position(minted.position.id).legs[0]
        assert leg.entry_price == Decimal("1.10")
        assert leg.status is LegStatus.FILLED

    def test_buy_into_existing_position_averages_long_leg(self, engine, call_50):
        engine.mint("writer", "SOL", call_50, 10, Decimal("1"))
        first = engine.buy("trader", "SOL", call_50, 2, Decimal("1.00"))
        second = engine.buy("trader", "SOL", call_50, 2, Decimal("2.00"),
                            position_id=first.buyer_position.id)
        assert second.buyer_position.id == first.buyer_position.id
        leg = second.buyer_position.legs[0]
        assert leg.position == Decimal("4")
        assert leg.entry_price == Decimal("1.50")
        assert len(leg.fill_history) == 2

    def test_lot_without_position_falls_back_to_first_short_leg(self, engine, store, call_50):
        minted = engine.mint("writer", "SOL", call_50, 5, Decimal("1"))
        orphan = WrittenOption(
            id="orphan", asset="SOL", series=call_50, quantity=Decimal("5"),
            premium=Decimal("1"), created_at=T0,
        )
        store.commit(lots=[store.read().lot(minted.lot.id).cancel(), orphan])
        result = engine.buy("trader", "SOL", call_50, 2, Decimal("1"))
        assert result.lot_fills[0].lot_id == "orphan"
        assert result.lot_fills[0].seller_position_id == minted.position.id

    @pytest.mark.parametrize("qty,price", [(0, 1), (-1, 1), (1, -1), (float("nan"), 1), (1, float("inf"))])
    def test_invalid_inputs_do_not_mutate(self, engine, store, call_50, qty, price):
        engine.mint("writer", "SOL", call_50, 5, Decimal("1"))
        before = store.read()
        with pytest.raises(InvalidQuantity):
            engine.buy("trader", "SOL", call_50, qty, price)
        assert store.read() == before
        assert engine.available(call_50) == Decimal("5")
        assert engine.volume(call_50) == Decimal("0")

    def test_stale_store_restores_ledgers(self, engine, store, call_50, monkeypatch):
        engine.mint("writer", "SOL", call_50, 5, Decimal("1"))
        original_read = store.read

        def read_then_race():
            snap = original_read()
            # Another client commits between this read and the engine's commit.
            store._snapshot = StoreSnapshot(
                snap.lots, snap.positions, snap.lots_version + 1, snap.positions_version
            )
            return snap

        monkeypatch.setattr(store, "read", read_then_race)
        with pytest.raises(StaleCollectionRead):
            engine.buy("trader", "SOL", call_50, 2, Decimal("1"))
        monkeypatch.undo()

        assert engine.available(call_50) == Decimal("5")
        assert engine.volume(call_50) == Decimal("0")
        assert engine.open_interest(call_50) == Decimal("0")


class TestCancel:

    def test_cancel_unfilled_lot(self, engine, store, call_50):
        minted = engine.mint("writer", "SOL", call_50, 5, Decimal("1"))
        cancelled = engine.cancel_lot(minted.lot.id)
        assert cancelled.status is LotStatus.CANCELLED
        assert engine.available(call_50) == Decimal("0")
        leg = store.read().position(minted.position.id).legs[0]
        assert leg.status is LegStatus.CANCELLED
        assert leg.position == Decimal("0")

    def test_cancel_remnant_after_partial_fill(self, engine, store, call_50):
        minted = engine.mint("writer", "SOL", call_50, 10, Decimal("1"))
        engine.buy("trader", "SOL", call_50, 4, Decimal("1"))
        engine.cancel_lot(minted.lot.id)
        assert engine.available(call_50) == Decimal("0")
        assert engine.open_interest(call_50) == Decimal("4")
        leg = store.read().position(minted.position.id).legs[0]
        assert leg.position == Decimal("-4")
        assert leg.pending_quantity == Decimal("0")
        assert leg.status is LegStatus.FILLED

    def test_cancel_filled_lot_rejected(self, engine, call_50):
        minted = engine.mint("writer", "SOL", call_50, 2, Decimal("1"))
        engine.buy("trader", "SOL", call_50, 2, Decimal("1"))
        with pytest.raises(InvalidOrder):
            engine.cancel_lot(minted.lot.id)

    def test_cancel_unknown_lot(self, engine):
        with pytest.raises(RecordNotFound):
            engine.cancel_lot("missing")


class TestClose:

    def test_close_long_leg(self, engine, call_50):
        engine.mint("writer", "SOL", call_50, 10, Decimal("1"))
        bought = engine.buy("trader", "SOL", call_50, 4, Decimal("1.20"))
        position = engine.close_leg(bought.buyer_position.id, 0, 4, Decimal("2.00"))

        leg = position.legs[0]
        assert leg.status is LegStatus.CLOSED
        assert leg.position == Decimal("0")
        assert leg.realized_pnl == Decimal("320.00")
        assert engine.open_interest(call_50) == Decimal("0")
        assert engine.volume(call_50) == Decimal("8")

    def test_close_requires_tracked_open_interest(self, engine, store, call_50):
        engine.mint("writer", "SOL", call_50, 10, Decimal("1"))
        bought = engine.buy("trader", "SOL", call_50, 4, Decimal("1"))
        engine.ledgers.open_interest.restore({})
        with pytest.raises(SeriesNotFound):
            engine.close_leg(bought.buyer_position.id, 0, 1, Decimal("1"))

    def test_close_more_than_filled(self, engine, call_50):
        engine.mint("writer", "SOL", call_50, 10, Decimal("1"))
        bought = engine.buy("trader", "SOL", call_50, 4, Decimal("1"))
        with pytest.raises(InvalidOrder):
            engine.close_leg(bought.buyer_position.id, 0, 5, Decimal("1"))
        assert engine.open_interest(call_50) == Decimal("4")

    def test_close_unknown_leg(self, engine, call_50):
        engine.mint("writer", "SOL", call_50, 10, Decimal("1"))
        bought = engine.buy("trader", "SOL", call_50, 4, Decimal("1"))
        with pytest.raises(RecordNotFound):
            engine.close_leg(bought.buyer_position.id, 3, 1, Decimal("1"))


class TestExpiryAndTime:

    def test_roll_expiry_clears_availability_only(self, engine, call_50, put_45):
        engine.mint("writer", "SOL", call_50, 10, Decimal("1"))
        engine.mint("writer", "SOL", put_45, 5, Decimal("1"))
        engine.buy("trader", "SOL", call_50, 4, Decimal("1"))
        assert engine.roll_expiry(EXPIRY) == 2
        assert engine.available(call_50) == Decimal("0")
        assert engine.volume(call_50) == Decimal("4")
        assert engine.open_interest(call_50) == Decimal("4")

    def test_time_moves_forward_only(self, engine):
        engine.advance_time(T0 + timedelta(hours=1))
        with pytest.raises(ValueError, match="backwards"):
            engine.advance_time(T0)

    def test_fills_are_timestamped_with_engine_time(self, engine, call_50):
        engine.mint("writer", "SOL", call_50, 10, Decimal("1"))
        later = T0 + timedelta(hours=2)
        engine.advance_time(later)
        result = engine.buy("trader", "SOL", call_50, 1, Decimal("1"))
        assert result.buyer_position.legs[0].fill_history[0].timestamp == later


class TestStrategy:

    def test_covered_call_spread_in_one_position(self, engine, store, call_50):
        call_55 = SeriesKey.of(55, EXPIRY, "call")
        engine.mint("writer", "SOL", call_50, 10, Decimal("3"))
        notices = []
        store.subscribe(notices.append)

        result = engine.place_strategy("trader", "SOL", [
            OrderLeg.of(call_50, "long", 1, Decimal("3")),
            OrderLeg.of(call_55, "short", 1, Decimal("1")),
        ], market_price=Decimal("52"))

        assert result.collateral.total_collateral == Decimal("0")
        assert len(result.position.legs) == 2
        assert result.position.legs[0].direction is Direction.LONG
        assert result.position.legs[1].direction is Direction.SHORT
        assert len(result.minted) == 1
        assert len(result.matches) == 1
        assert engine.available(call_55) == Decimal("1")
        assert engine.available(call_50) == Decimal("9")
        assert [n.collection for n in notices] == ['lots', 'positions']

    def test_uncovered_short_call_collateral(self, engine, call_50):
        result = engine.place_strategy("writer", "SOL", [
            OrderLeg.of(call_50, "short", 2, Decimal("1")),
        ], market_price=Decimal("48"))
        assert result.collateral.total_collateral == Decimal("9600")

    def test_insufficient_collateral_rejected(self, engine, store, call_50):
        with pytest.raises(InvalidOrder, match="collateral"):
            engine.place_strategy("writer", "SOL", [
                OrderLeg.of(call_50, "short", 2, Decimal("1")),
            ], market_price=Decimal("48"), collateral_provided=Decimal("1000"), leverage=2)
        assert store.read().lots == ()

    def test_long_leg_without_inventory_rejected_before_mutation(self, engine, store, call_50, put_45):
        with pytest.raises(InsufficientInventory):
            engine.place_strategy("trader", "SOL", [
                OrderLeg.of(put_45, "short", 1, Decimal("1")),
                OrderLeg.of(call_50, "long", 1, Decimal("1")),
            ], market_price=Decimal("48"))
        assert engine.available(put_45) == Decimal("0")
        assert store.read().positions == ()

    def test_partial_long_fill_priced_on_opened_legs(self, engine, call_50):
        call_55 = SeriesKey.of(55, EXPIRY, "call")
        engine.mint("mm", "SOL", call_50, 1, Decimal("3"))

        result = engine.place_strategy("trader", "SOL", [
            OrderLeg.of(call_50, "long", 2, Decimal("3")),
            OrderLeg.of(call_55, "short", 2, Decimal("1")),
        ], market_price=Decimal("50"))

        assert result.matches[0].filled_quantity == Decimal("1")
        assert result.collateral.total_collateral == Decimal("5000")
        assert result.collateral.uncovered_quantity == {"1": Decimal("1")}

    def test_partial_long_fill_rejected_when_collateral_falls_short(self, engine, store, call_50):
        call_55 = SeriesKey.of(55, EXPIRY, "call")
        minted = engine.mint("mm", "SOL", call_50, 1, Decimal("3"))
        before = store.read()

        with pytest.raises(InvalidOrder, match="after fills"):
            engine.place_strategy("trader", "SOL", [
                OrderLeg.of(call_50, "long", 2, Decimal("3")),
                OrderLeg.of(call_55, "short", 2, Decimal("1")),
            ], market_price=Decimal("50"), collateral_provided=Decimal("0"))

        assert store.read() == before
        assert engine.available(call_50) == Decimal("1")
        assert engine.available(call_55) == Decimal("0")
        assert engine.volume(call_50) == Decimal("0")
        assert store.read().lot(minted.lot.id).is_pending

    def test_too_many_legs(self, engine, call_50):
        legs = [OrderLeg.of(call_50, "short", 1, Decimal("1"))] * 5
        with pytest.raises(InvalidOrder, match="at most 4"):
            engine.place_strategy("writer", "SOL", legs, market_price=Decimal("48"))

    def test_empty_strategy(self, engine):
        with pytest.raises(InvalidOrder):
            engine.place_strategy("writer", "SOL", [], market_price=Decimal("48"))


class TestNotifications:

    def test_failing_listener_does_not_undo_committed_buy(self, engine, store, call_50):
        engine.mint("writer", "SOL", call_50, 10, Decimal("1.20"))

        def broken_listener(notice):
            raise RuntimeError("listener down")

        unsubscribe = store.subscribe(broken_listener)
        with pytest.raises(RuntimeError, match="listener down"):
            engine.buy("trader", "SOL", call_50, 4, Decimal("1.20"))

        # The buy was written; ledgers must agree with the store.
        pending = store.read().pending_lots(call_50)
        assert sum(lot.quantity for lot in pending) == Decimal("6")
        assert engine.available(call_50) == Decimal("6")
        assert engine.volume(call_50) == Decimal("4")
        assert engine.open_interest(call_50) == Decimal("4")

        unsubscribe()
        result = engine.buy("trader", "SOL", call_50, 6, Decimal("1.20"))
        assert result.filled_quantity == Decimal("6")
        assert engine.volume(call_50) == Decimal("10")
        assert engine.available(call_50) == Decimal("0")

    def test_no_notice_for_rejected_operation(self, engine, store, call_50):
        notices = []
        store.subscribe(notices.append)
        with pytest.raises(InsufficientInventory):
            engine.buy("trader", "SOL", call_50, 1, Decimal("1"))
        assert notices == []


class TestVerbose:

    def test_prints_status_lines(self, ledgers, store, call_50, capsys):
        engine = MatchingEngine(ledgers, store, initial_time=T0,
                                id_factory=sequential_ids(), verbose=True)
        engine.mint("writer", "SOL", call_50, 10, Decimal("1.2"))
        engine.buy("trader", "SOL", call_50, 4, Decimal("1.2"))
        with pytest.raises(InsufficientInventory):
            engine.buy("trader", "SOL", SeriesKey.of(60, EXPIRY, "call"), 1, Decimal("1"))
        out = capsys.readouterr().out
        assert "✓ MINTED" in out
        assert "✓ MATCHED: 4/4" in out
        assert "✗ REJECTED" in out

    def test_silent_by_default(self, engine, call_50, capsys):
        engine.mint("writer", "SOL", call_50, 1, Decimal("1"))
        assert capsys.readouterr().out == ""
