"""
KAIJU TRADER — Mean Reversion Strategy
Fades band extremes confirmed by RSI.
"""
from typing import List

from kaiju_trader.data.models import MarketAnalysis, SignalAction, TradingSignal
from kaiju_trader.strategies.base import BaseStrategy
from kaiju_trader.utils.helpers import safe_divide


class MeanReversionStrategy(BaseStrategy):
    """Lower band + RSI < 30 buys, upper band + RSI > 70 sells; targets the middle band."""

    default_parameters = {
        "band_tolerance": 0.01,
        "oversold": 30.0,
        "overbought": 70.0,
        "atr_stop_mult": 2.0,
        "position_size": 0.08,
    }

    def __init__(self, parameters=None):
        super().__init__(name="mean_reversion", parameters=parameters)

    def analyze(self, analysis: MarketAnalysis) -> List[TradingSignal]:
        p = self.parameters
        price = analysis.primary.price
        ind = analysis.technical_indicators
        bands = ind.bbands

        # Degenerate bands (short window) carry no information
        if bands.upper <= bands.lower:
            return []

        if price <= bands.lower * (1 + p["band_tolerance"]) and ind.rsi < p["oversold"]:
            deviation = safe_divide(bands.middle - price, bands.middle)
            confidence = min(0.85, deviation * 2 + (p["oversold"] - ind.rsi) / 30)
            return [self._signal(
                analysis, SignalAction.BUY, confidence,
                "Mean reversion buy: price at lower band, RSI oversold",
                entry_price=price,
                target_price=bands.middle,
                stop_loss=price - p["atr_stop_mult"] * ind.atr,
                position_size=p["position_size"],
            )]

        if price >= bands.upper * (1 - p["band_tolerance"]) and ind.rsi > p["overbought"]:
            deviation = safe_divide(price - bands.middle, bands.middle)
            confidence = min(0.85, deviation * 2 + (ind.rsi - p["overbought"]) / 30)
            return [self._signal(
                analysis, SignalAction.SELL, confidence,
                "Mean reversion sell: price at upper band, RSI overbought",
                entry_price=price,
                target_price=bands.middle,
                stop_loss=price + p["atr_stop_mult"] * ind.atr,
                position_size=p["position_size"],
            )]

        return []
