"""
KAIJU TRADER — Momentum Strategy
Buys confirmed uptrends, sells overbought reversals.
"""
from typing import List

from kaiju_trader.data.models import MarketAnalysis, SignalAction, TradingSignal
from kaiju_trader.strategies.base import BaseStrategy


class MomentumStrategy(BaseStrategy):
    """
    BUY:  50 < RSI < 70, MACD histogram > 0, price > SMA20 > SMA50, 24h change > 2%
    SELL: RSI > 70, MACD histogram < 0, price < SMA20
    """

    default_parameters = {
        "min_change_24h": 2.0,
        "position_size": 0.1,
        "target_pct": 0.05,
        "long_stop_pct": 0.03,
        "short_stop_pct": 0.02,
    }

    def __init__(self, parameters=None):
        super().__init__(name="momentum", parameters=parameters)

    def analyze(self, analysis: MarketAnalysis) -> List[TradingSignal]:
        p = self.parameters
        market = analysis.primary
        ind = analysis.technical_indicators
        price = market.price
        hist = ind.macd.histogram

        if (
            50 < ind.rsi < 70
            and hist > 0
            and price > ind.sma20 > ind.sma50
            and market.change_24h > p["min_change_24h"]
        ):
            confidence = min(0.9, (ind.rsi - 50) / 20 + market.change_24h / 10 + 0.2)
            return [self._signal(
                analysis, SignalAction.BUY, confidence,
                "Strong momentum: price above MAs, MACD bullish, RSI favorable",
                entry_price=price,
                target_price=price * (1 + p["target_pct"]),
                stop_loss=price * (1 - p["long_stop_pct"]),
                position_size=p["position_size"],
            )]

        if ind.rsi > 70 and hist < 0 and price < ind.sma20:
            confidence = min(0.8, (ind.rsi - 70) / 30 + 0.3)
            return [self._signal(
                analysis, SignalAction.SELL, confidence,
                "Momentum reversal: RSI overbought, MACD bearish",
                entry_price=price,
                target_price=price * (1 - p["target_pct"]),
                stop_loss=price * (1 + p["short_stop_pct"]),
                position_size=p["position_size"],
            )]

        return []
