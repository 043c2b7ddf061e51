"""
KAIJU TRADER — Test Configuration & Fixtures
Shared fixtures for all test modules.
"""
import asyncio
import pytest
import pandas as pd
import numpy as np
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from kaiju_trader.config.settings import (
    AISettings, AppSettings, DataCollectionSettings, DatabaseSettings, RiskSettings,
    TradingSettings,
)
from kaiju_trader.data.adapters.base import ExchangeClient, SentimentSource
from kaiju_trader.data.models import (
    BollingerBands, MACD, MarketAnalysis, MarketData, SentimentData, SignalAction,
    TechnicalIndicators, TradeType, TradingSignal,
)
from kaiju_trader.engines.ai_decision import InferenceClient
from kaiju_trader.utils.helpers import stable_id

FIXED_NOW = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


# ─── Fakes ──────────────────────────────────────────────────────

class FakeExchange(ExchangeClient):
    """In-memory ExchangeClient. Prices are set per symbol; orders fill fully."""

    def __init__(self, prices: Optional[Dict[str, float]] = None, exchange_id: str = "fake"):
        super().__init__(exchange_id)
        self.prices: Dict[str, float] = dict(prices or {})
        self.change_24h: Dict[str, float] = {}
        self.orders: List[Dict[str, Any]] = []
        self.ohlcv_rows: Dict[str, List[List[float]]] = {}
        self.fail_load = False
        self.fail_tickers = False
        self.order_error: Optional[Exception] = None
        self.fill_ratio = 1.0
        self.closed = False

    async def load_markets(self):
        if self.fail_load:
            raise RuntimeError("exchange unreachable")
        return {symbol: {"symbol": symbol} for symbol in self.prices}

    async def fetch_tickers(self, symbols=None):
        if self.fail_tickers:
            raise RuntimeError("tickers unavailable")
        ts = int(FIXED_NOW.timestamp() * 1000)
        return {
            symbol: {
                "symbol": symbol,
                "last": price,
                "bid": price * 0.9995,
                "ask": price * 1.0005,
                "high": price * 1.02,
                "low": price * 0.98,
                "quoteVolume": 1_000_000.0,
                "percentage": self.change_24h.get(symbol, 0.0),
                "timestamp": ts,
            }
            for symbol, price in self.prices.items()
            if symbols is None or symbol in symbols
        }

    async def fetch_order_book(self, symbol, limit=10):
        price = self.prices[symbol]
        return {
            "bids": [[price * 0.999, 1.0], [price * 0.998, 2.0]],
            "asks": [[price * 1.001, 1.5], [price * 1.002, 3.0]],
            "timestamp": int(FIXED_NOW.timestamp() * 1000),
        }

    async def fetch_ohlcv(self, symbol, timeframe="15m", limit=100):
        if symbol not in self.ohlcv_rows:
            raise RuntimeError(f"no candles for {symbol}")
        return self.ohlcv_rows[symbol][-limit:]

    async def create_order(self, symbol, order_type, side, amount, price=None):
        if self.order_error is not None:
            raise self.order_error
        fill_price = self.prices[symbol]
        filled = amount * self.fill_ratio
        order = {
            "id": f"order-{len(self.orders) + 1}",
            "symbol": symbol,
            "type": order_type,
            "side": side,
            "amount": amount,
            "filled": filled,
            "average": fill_price,
            "status": "closed",
            "fee": {"cost": fill_price * filled * 0.001, "currency": "USDT"},
        }
        self.orders.append(order)
        return order

    async def close(self):
        self.closed = True


class FakeSentimentSource(SentimentSource):
    def __init__(self, name: str, scores: Dict[str, float], volume: float = 0.0, fail: bool = False):
        super().__init__(name)
        self.scores = scores
        self.volume = volume
        self.fail = fail

    async def fetch_scores(self, symbols):
        if self.fail:
            raise RuntimeError(f"{self.name} down")
        return {
            s: {"score": self.scores[s], "volume": self.volume}
            for s in symbols if s in self.scores
        }


class FakeInference(InferenceClient):
    """Returns a canned response, optionally after a delay."""

    def __init__(self, response: str = '{"signals": [], "confidence": 0.5}', delay: float = 0.0):
        self.response = response
        self.delay = delay
        self.prompts: List[str] = []

    async def infer(self, system_prompt, prompt):
        self.prompts.append(prompt)
        if self.delay:
            await asyncio.sleep(self.delay)
        return self.response


# ─── Settings ───────────────────────────────────────────────────

@pytest.fixture
def settings():
    """Paper-mode settings with fixed sizing and three pairs."""
    return AppSettings(
        trading=TradingSettings(
            mode="paper",
            initial_capital=10000.0,
            max_position_size=0.1,
            pairs=["BTC/USDT", "ETH/USDT", "SOL/USDT"],
            fee_rate=0.001,
        ),
        risk=RiskSettings(
            max_daily_loss=0.05,
            max_open_positions=3,
            position_sizing_method="fixed",
            min_position_size=0.005,
        ),
        ai=AISettings(enabled=False, api_key="", timeout_seconds=0.2),
        data_collection=DataCollectionSettings(
            price_update_interval=3600,
            sentiment_update_interval=3600,
            news_update_interval=3600,
            analysis_interval=3600,
            position_update_interval=3600,
        ),
        database=DatabaseSettings(enabled=False),
    )


@pytest.fixture
def fake_exchange():
    return FakeExchange({"BTC/USDT": 50000.0, "ETH/USDT": 3000.0, "SOL/USDT": 100.0})


# ─── Candles ────────────────────────────────────────────────────

@pytest.fixture
def candle_df():
    """Seeded random-walk OHLCV frame with a mild uptrend."""
    np.random.seed(42)
    n = 120
    dates = pd.date_range(start="2024-01-01", periods=n, freq="15min", tz=timezone.utc)
    returns = np.random.normal(0.0005, 0.004, n)
    close = 100.0 * np.exp(np.cumsum(returns))
    df = pd.DataFrame({
        "open": close * (1 + np.random.normal(0, 0.001, n)),
        "high": close * (1 + np.abs(np.random.normal(0, 0.003, n))),
        "low": close * (1 - np.abs(np.random.normal(0, 0.003, n))),
        "close": close,
        "volume": np.random.randint(1000, 50000, n).astype(float),
    }, index=dates)
    df["high"] = df[["open", "high", "close"]].max(axis=1)
    df["low"] = df[["open", "low", "close"]].min(axis=1)
    return df


@pytest.fixture
def ohlcv_rows(candle_df):
    """The candle frame as ccxt OHLCV rows."""
    return [
        [int(ts.timestamp() * 1000), row.open, row.high, row.low, row.close, row.volume]
        for ts, row in candle_df.iterrows()
    ]


# ─── Builders ───────────────────────────────────────────────────

@pytest.fixture
def make_market():
    def _make(symbol="BTC/USDT", price=50000.0, change_24h=0.0, source="primary",
              bid=None, ask=None, timestamp=FIXED_NOW):
        return MarketData(
            symbol=symbol,
            price=price,
            volume=1_000_000.0,
            bid=price * 0.9995 if bid is None else bid,
            ask=price * 1.0005 if ask is None else ask,
            high_24h=price * 1.02,
            low_24h=price * 0.98,
            change_24h=change_24h,
            timestamp=timestamp,
            source=source,
        )
    return _make


@pytest.fixture
def make_analysis(make_market):
    """
    Build a MarketAnalysis. Indicator defaults are neutral (nothing fires);
    override any TechnicalIndicators field by keyword.
    """
    def _make(symbol="BTC/USDT", price=50000.0, change_24h=0.0, sentiment=0.0,
              sentiment_sources=None, mentions=0.0, references=(), **indicators):
        market = make_market(symbol, price, change_24h)
        fields = dict(
            symbol=symbol,
            rsi=50.0,
            macd=MACD(),
            sma20=price,
            sma50=price,
            ema12=price,
            ema26=price,
            bbands=BollingerBands(upper=price * 1.05, middle=price, lower=price * 0.95),
            atr=price * 0.005,
            volume=1000.0,
            timestamp=FIXED_NOW,
            sample_size=100,
        )
        fields.update(indicators)
        return MarketAnalysis(
            market_data=[market, *references],
            technical_indicators=TechnicalIndicators(**fields),
            sentiment_data=SentimentData(
                symbol=symbol,
                score=sentiment,
                sources=sentiment_sources or {},
                volume=mentions,
                timestamp=FIXED_NOW,
            ),
        )
    return _make


@pytest.fixture
def make_signal():
    def _make(symbol="BTC/USDT", action=SignalAction.BUY, confidence=0.7, position_size=0.1,
              strategy="test", entry_price=None, leverage=None, trade_type=TradeType.SPOT, **extra):
        return TradingSignal(
            id=stable_id(strategy, symbol, action.value, confidence, position_size),
            symbol=symbol,
            action=action,
            confidence=confidence,
            reason=f"{strategy} {action.value}",
            timestamp=FIXED_NOW,
            entry_price=entry_price,
            position_size=position_size,
            leverage=leverage,
            strategy=strategy,
            trade_type=trade_type,
            **extra,
        )
    return _make


@pytest.fixture
def make_exchange():
    return FakeExchange


@pytest.fixture
def make_source():
    return FakeSentimentSource


@pytest.fixture
def make_inference():
    return FakeInference


@pytest.fixture
def fixed_now():
    return FIXED_NOW
