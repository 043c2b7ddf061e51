"""
KAIJU TRADER — Technical Analysis Engine
RSI (14), MACD (12/26/9), SMA 20/50, EMA 12/26, Bollinger Bands (20,2), ATR (14).
Every indicator degrades to a neutral value when the window is too short.
"""
from typing import Any, Dict, List, Optional, Sequence

import numpy as np
import pandas as pd
from cachetools import TTLCache

from kaiju_trader.config.settings import IndicatorSettings, get_settings
from kaiju_trader.data.models import (
    BollingerBands, MACD, MarketData, OHLCVBar, TechnicalIndicators,
)
from kaiju_trader.utils.errors import DataFetchError
from kaiju_trader.utils.events import EventBus, TECHNICAL_UPDATE
from kaiju_trader.utils.helpers import utc_now
from kaiju_trader.utils.logger import get_logger

logger = get_logger("technical")

OHLCV_COLUMNS = ["open", "high", "low", "close", "volume"]


# ─── Indicator math ─────────────────────────────────────────────

def rsi(close: pd.Series, period: int = 14) -> float:
    """Wilder RSI of the last bar; 50 when fewer than period + 1 closes."""
    if len(close) < period + 1:
        return 50.0
    delta = close.diff()
    gain = delta.where(delta > 0, 0.0)
    loss = (-delta).where(delta < 0, 0.0)
    avg_gain = gain.ewm(alpha=1.0 / period, min_periods=period, adjust=False).mean().iloc[-1]
    avg_loss = loss.ewm(alpha=1.0 / period, min_periods=period, adjust=False).mean().iloc[-1]

    if pd.isna(avg_gain) or pd.isna(avg_loss):
        return 50.0
    if avg_loss == 0:
        return 100.0 if avg_gain > 0 else 50.0
    rs = avg_gain / avg_loss
    return float(100.0 - (100.0 / (1.0 + rs)))


def ema(close: pd.Series, period: int) -> float:
    if len(close) < period:
        return float(close.iloc[-1]) if len(close) else 0.0
    return float(close.ewm(span=period, adjust=False).mean().iloc[-1])


def sma(close: pd.Series, period: int) -> float:
    if len(close) < period:
        return float(close.iloc[-1]) if len(close) else 0.0
    return float(close.rolling(window=period).mean().iloc[-1])


def macd(close: pd.Series, fast: int = 12, slow: int = 26, signal: int = 9) -> MACD:
    if len(close) < slow:
        return MACD()
    ema_fast = close.ewm(span=fast, adjust=False).mean()
    ema_slow = close.ewm(span=slow, adjust=False).mean()
    line = ema_fast - ema_slow
    signal_line = line.ewm(span=signal, adjust=False).mean()
    value = float(line.iloc[-1])
    sig = float(signal_line.iloc[-1])
    return MACD(value=value, signal=sig, histogram=value - sig)


def bollinger(close: pd.Series, period: int = 20, std_dev: float = 2.0) -> BollingerBands:
    if len(close) < period:
        last = float(close.iloc[-1]) if len(close) else 0.0
        return BollingerBands(upper=last, middle=last, lower=last)
    window = close.iloc[-period:]
    middle = float(window.mean())
    # Population standard deviation, as on most charting platforms
    std = float(window.std(ddof=0))
    return BollingerBands(upper=middle + std_dev * std, middle=middle, lower=middle - std_dev * std)


def atr(df: pd.DataFrame, period: int = 14) -> float:
    """Wilder ATR of the last bar; 0 when fewer than period + 1 bars."""
    if len(df) < period + 1:
        return 0.0
    high_low = df["high"] - df["low"]
    high_close = (df["high"] - df["close"].shift(1)).abs()
    low_close = (df["low"] - df["close"].shift(1)).abs()
    true_range = pd.concat([high_low, high_close, low_close], axis=1).max(axis=1)
    # First bar has no previous close
    true_range = true_range.iloc[1:]
    value = true_range.ewm(alpha=1.0 / period, min_periods=period, adjust=False).mean().iloc[-1]
    return 0.0 if pd.isna(value) else float(value)


# ─── Frame helpers ──────────────────────────────────────────────

def candles_to_dataframe(bars: Sequence[OHLCVBar]) -> pd.DataFrame:
    """Convert OHLCV bars to a time-indexed DataFrame."""
    if not bars:
        return pd.DataFrame(columns=OHLCV_COLUMNS)
    df = pd.DataFrame([b.model_dump() for b in bars])
    df.set_index("timestamp", inplace=True)
    df.sort_index(inplace=True)
    return df[OHLCV_COLUMNS].astype(float)


def snapshots_to_dataframe(snapshots: Sequence[MarketData]) -> pd.DataFrame:
    """Close-only frame from cached snapshots (high = low = close)."""
    if not snapshots:
        return pd.DataFrame(columns=OHLCV_COLUMNS)
    df = pd.DataFrame(
        {
            "open": [s.price for s in snapshots],
            "high": [s.price for s in snapshots],
            "low": [s.price for s in snapshots],
            "close": [s.price for s in snapshots],
            "volume": [s.volume for s in snapshots],
        },
        index=pd.DatetimeIndex([s.timestamp for s in snapshots]),
    )
    return df.astype(float)


# ─── Pattern helpers ────────────────────────────────────────────

def _trend(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    half = len(values) // 2
    first = float(np.mean(values[:half]))
    second = float(np.mean(values[half:]))
    if first == 0:
        return 0.0
    return (second - first) / abs(first)


def detect_divergence(prices: Sequence[float], indicator: Sequence[float]) -> Dict[str, Any]:
    """Price/indicator divergence over the last four points."""
    if len(prices) < 4 or len(indicator) < 4:
        return {"type": "none", "strength": 0.0}
    price_trend = _trend(list(prices)[-4:])
    indicator_trend = _trend(list(indicator)[-4:])
    if price_trend < 0 < indicator_trend:
        return {"type": "bullish", "strength": abs(price_trend - indicator_trend)}
    if price_trend > 0 > indicator_trend:
        return {"type": "bearish", "strength": abs(price_trend - indicator_trend)}
    return {"type": "none", "strength": 0.0}


def identify_pattern(candles: pd.DataFrame) -> Optional[Dict[str, Any]]:
    """Hammer or doji on the last candle; None otherwise."""
    if len(candles) < 3:
        return None
    last = candles.iloc[-1]
    body = abs(last["close"] - last["open"])
    lower_wick = min(last["open"], last["close"]) - last["low"]
    upper_wick = last["high"] - max(last["open"], last["close"])

    if body > 0 and lower_wick > body * 2 and upper_wick < body * 0.5:
        return {"pattern": "hammer", "bullish": True, "reliability": 0.7}
    if body < (last["high"] - last["low"]) * 0.1:
        return {"pattern": "doji", "bullish": False, "reliability": 0.6}
    return None


# ─── Engine ─────────────────────────────────────────────────────

class TechnicalAnalysisEngine:
    """
    Computes TechnicalIndicators for a symbol. `compute` is pure; `analyze`
    fetches candles through the market collector and caches them briefly.
    """

    def __init__(
        self,
        collector=None,
        bus: Optional[EventBus] = None,
        settings: Optional[IndicatorSettings] = None,
    ):
        self.settings = settings or get_settings().indicators
        self.collector = collector
        self.bus = bus
        self._candle_cache: TTLCache = TTLCache(
            maxsize=256, ttl=self.settings.ohlcv_cache_ttl_seconds
        )
        self._latest: Dict[str, TechnicalIndicators] = {}

    def compute(self, symbol: str, candles: pd.DataFrame, timestamp=None) -> TechnicalIndicators:
        s = self.settings
        ts = timestamp
        if ts is None:
            if len(candles) and isinstance(candles.index, pd.DatetimeIndex):
                ts = candles.index[-1].to_pydatetime()
            else:
                ts = utc_now()
        if len(candles) == 0:
            return TechnicalIndicators(symbol=symbol, timestamp=ts, sample_size=0)

        close = candles["close"].astype(float)
        return TechnicalIndicators(
            symbol=symbol,
            rsi=rsi(close, s.rsi_period),
            macd=macd(close, s.macd_fast, s.macd_slow, s.macd_signal),
            sma20=sma(close, s.sma_fast),
            sma50=sma(close, s.sma_slow),
            ema12=ema(close, s.ema_fast),
            ema26=ema(close, s.ema_slow),
            bbands=bollinger(close, s.bb_period, s.bb_std),
            atr=atr(candles, s.atr_period),
            volume=float(candles["volume"].iloc[-1]),
            timestamp=ts,
            sample_size=len(candles),
        )

    def compute_from_history(self, symbol: str, snapshots: Sequence[MarketData]) -> TechnicalIndicators:
        ts = snapshots[-1].timestamp if snapshots else utc_now()
        return self.compute(symbol, snapshots_to_dataframe(snapshots), timestamp=ts)

    async def get_candles(self, symbol: str) -> pd.DataFrame:
        s = self.settings
        key = f"{symbol}:{s.ohlcv_timeframe}"
        cached = self._candle_cache.get(key)
        if cached is not None:
            return cached
        bars = await self.collector.fetch_ohlcv(symbol, s.ohlcv_timeframe, s.ohlcv_limit)
        df = candles_to_dataframe(bars)
        self._candle_cache[key] = df
        return df

    async def analyze(self, symbol: str) -> TechnicalIndicators:
        """Indicators from exchange candles, or from cached snapshots if those fail."""
        try:
            candles = await self.get_candles(symbol)
            indicators = self.compute(symbol, candles)
        except DataFetchError as e:
            logger.warning("ohlcv_unavailable_using_history", symbol=symbol, error=str(e))
            indicators = self.compute_from_history(
                symbol, self.collector.get_history(symbol, self.settings.ohlcv_limit)
            )

        self._latest[symbol] = indicators
        if self.bus is not None:
            self.bus.publish(TECHNICAL_UPDATE, indicators.model_dump(mode="json"))
        return indicators

    def get_latest(self, symbol: str) -> Optional[TechnicalIndicators]:
        return self._latest.get(symbol)

    @property
    def stats(self) -> Dict[str, int]:
        return {"cached_frames": len(self._candle_cache), "symbols": len(self._latest)}
