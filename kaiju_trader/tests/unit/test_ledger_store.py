"""
KAIJU TRADER — Unit Tests for Ledger Persistence
"""
import pytest
from datetime import datetime, timedelta, timezone

from sqlalchemy.exc import IntegrityError

from kaiju_trader.data.models import Position, PositionSide, Trade, TradeSide, TradeType
from kaiju_trader.db.ledger_store import LedgerStore
from kaiju_trader.engines.portfolio import Portfolio

OPENED = datetime(2024, 3, 1, 9, 0, tzinfo=timezone.utc)


@pytest.fixture
def store(tmp_path):
    return LedgerStore(f"sqlite:///{tmp_path / 'ledger.db'}")


def make_position(**fields):
    base = dict(
        id="p1", symbol="ETH/USDT", side=PositionSide.SHORT, entry_price=3000.0,
        current_price=2950.0, quantity=0.5, opened_at=OPENED, stop_loss=3060.0,
        take_profit=2850.0, trade_type=TradeType.PERPETUAL, leverage=5.0, venue_ref="7",
    )
    base.update(fields)
    return Position(**base)


def make_trade(trade_id, minutes=0, pnl=None, side=TradeSide.SELL):
    return Trade(
        id=trade_id, symbol="ETH/USDT", side=side, price=3000.0, quantity=0.5,
        timestamp=OPENED + timedelta(minutes=minutes), fee=1.5, pnl=pnl,
        reason="test", position_id="p1", venue="defi",
    )


class TestLedgerStore:
    def test_empty(self, store):
        assert store.load() == ([], [])

    def test_trades_round_trip_in_order(self, store):
        store.append_trade(make_trade("t2", minutes=5, pnl=-3.0, side=TradeSide.BUY))
        store.append_trade(make_trade("t1", minutes=0))
        _, trades = store.load()
        assert [t.id for t in trades] == ["t2", "t1"]
        assert trades[0].pnl == -3.0
        assert trades[0].side == TradeSide.BUY
        assert trades[0].timestamp == OPENED + timedelta(minutes=5)
        assert trades[1].pnl is None

    def test_trades_are_append_only(self, store):
        store.append_trade(make_trade("t1"))
        with pytest.raises(IntegrityError):
            store.append_trade(make_trade("t1"))

    def test_position_round_trip(self, store):
        position = make_position()
        store.save_position(position)
        positions, _ = store.load()
        restored = positions[0]
        assert restored.id == "p1"
        assert restored.side == PositionSide.SHORT
        assert restored.trade_type == TradeType.PERPETUAL
        assert restored.venue_ref == "7"
        assert restored.opened_at == OPENED
        # re-marked on load
        assert restored.pnl == pytest.approx(25.0)

    def test_save_position_upserts(self, store):
        store.save_position(make_position())
        store.save_position(make_position(quantity=0.25))
        positions, _ = store.load()
        assert len(positions) == 1
        assert positions[0].quantity == 0.25

    def test_delete_position(self, store):
        store.save_position(make_position())
        store.delete_position("p1")
        store.delete_position("missing")
        assert store.load()[0] == []

    def test_restore_into_portfolio(self, store):
        store.save_position(make_position())
        store.append_trade(make_trade("p1", side=TradeSide.SELL))
        store.append_trade(make_trade("closed-x", minutes=-60, pnl=12.0))
        portfolio = Portfolio(10000.0)
        portfolio.restore(*store.load())
        assert portfolio.has_position("ETH/USDT")
        assert portfolio.realized_pnl() == pytest.approx(12.0)
        assert portfolio.opening_trade(portfolio.get_position("ETH/USDT")).id == "p1"

    def test_survives_reopen(self, tmp_path):
        url = f"sqlite:///{tmp_path / 'ledger.db'}"
        LedgerStore(url).append_trade(make_trade("t1"))
        assert [t.id for t in LedgerStore(url).load()[1]] == ["t1"]
