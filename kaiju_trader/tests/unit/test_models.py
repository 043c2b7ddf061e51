"""
KAIJU TRADER — Unit Tests for Data Models and Helpers
"""
import pytest
from datetime import datetime, timezone

from kaiju_trader.data.models import (
    BollingerBands, Position, PositionSide, SentimentData, SignalAction, Trade, TradeSide,
    TradeType,
)
from kaiju_trader.utils.helpers import (
    base_asset, clamp, quote_asset, safe_divide, seconds_until_next_utc_day, stable_id,
    start_of_utc_day,
)


# ─── Ledger models ──────────────────────────────────────────────

class TestPosition:
    def _position(self, side=PositionSide.LONG, entry=100.0, qty=2.0):
        return Position(
            id="p1", symbol="ETH/USDT", side=side, entry_price=entry, current_price=entry,
            quantity=qty, opened_at=datetime(2024, 1, 1, tzinfo=timezone.utc),
        )

    def test_long_unrealized(self):
        pos = self._position()
        assert pos.unrealized_pnl(110.0) == pytest.approx(20.0)

    def test_short_unrealized(self):
        pos = self._position(side=PositionSide.SHORT)
        assert pos.unrealized_pnl(110.0) == pytest.approx(-20.0)

    def test_marked_is_a_copy(self):
        pos = self._position()
        marked = pos.marked(105.0)
        assert marked.current_price == 105.0
        assert marked.pnl == pytest.approx(10.0)
        assert marked.pnl_percentage == pytest.approx(5.0)
        assert pos.current_price == 100.0

    def test_json_round_trip(self):
        pos = self._position().model_copy(update={
            "stop_loss": 95.0, "trade_type": TradeType.PERPETUAL, "leverage": 5.0, "venue_ref": "7",
        })
        restored = Position.model_validate_json(pos.model_dump_json())
        assert restored == pos


class TestTrade:
    def test_json_round_trip(self):
        trade = Trade(
            id="t1", symbol="BTC/USDT", side=TradeSide.SELL, price=50000.0, quantity=0.02,
            timestamp=datetime(2024, 1, 1, 9, 30, tzinfo=timezone.utc), fee=1.0, pnl=-12.5,
            reason="Stop loss hit", position_id="p1", venue="spot",
        )
        restored = Trade.model_validate_json(trade.model_dump_json())
        assert restored == trade
        assert restored.timestamp.tzinfo is not None

    def test_trade_is_frozen(self):
        trade = Trade(id="t1", symbol="BTC/USDT", side=TradeSide.BUY, price=1.0, quantity=1.0,
                      timestamp=datetime(2024, 1, 1, tzinfo=timezone.utc))
        with pytest.raises(Exception):
            trade.price = 2.0


class TestSignalAndSentiment:
    def test_confidence_bounds(self, make_signal):
        with pytest.raises(Exception):
            make_signal(confidence=1.5)

    def test_is_opening(self, make_signal):
        assert make_signal(action=SignalAction.BUY).is_opening
        assert make_signal(action=SignalAction.SELL).is_opening
        assert not make_signal(action=SignalAction.CLOSE).is_opening

    def test_sentiment_range(self, fixed_now):
        with pytest.raises(Exception):
            SentimentData(symbol="BTC/USDT", score=1.2, timestamp=fixed_now)

    def test_neutral_sentiment(self, fixed_now):
        neutral = SentimentData.neutral("BTC/USDT", fixed_now)
        assert neutral.score == 0.0
        assert neutral.sources == {}

    def test_band_width(self):
        assert BollingerBands(upper=110, middle=100, lower=90).width == pytest.approx(0.2)
        assert BollingerBands().width == 0.0


# ─── Helpers ────────────────────────────────────────────────────

class TestHelpers:
    def test_assets(self):
        assert base_asset("btc/usdt") == "BTC"
        assert quote_asset("BTC/USDT") == "USDT"
        assert quote_asset("BTC") == "USD"

    def test_safe_divide(self):
        assert safe_divide(1, 0) == 0.0
        assert safe_divide(1, 0, default=-1) == -1
        assert safe_divide(6, 3) == 2

    def test_clamp(self):
        assert clamp(2.0) == 1.0
        assert clamp(-3.0, -1.0, 1.0) == -1.0

    def test_stable_id_deterministic(self):
        assert stable_id("a", 1, "x") == stable_id("a", 1, "x")
        assert stable_id("a", 1) != stable_id("a", 2)

    def test_utc_day_boundaries(self):
        ts = datetime(2024, 3, 1, 23, 59, 30, tzinfo=timezone.utc)
        assert start_of_utc_day(ts) == datetime(2024, 3, 1, tzinfo=timezone.utc)
        assert seconds_until_next_utc_day(ts) == pytest.approx(30.0)
