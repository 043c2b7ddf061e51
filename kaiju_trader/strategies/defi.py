"""
KAIJU TRADER — DeFi Opportunity Strategy
Spot trend trades, stable-pair reversion, volatility perps and contrarian
sentiment extremes, tagged for on-chain execution.
"""
from typing import List, Optional

from kaiju_trader.data.models import MarketAnalysis, SignalAction, TradeType, TradingSignal
from kaiju_trader.strategies.base import BaseStrategy
from kaiju_trader.utils.helpers import safe_divide

STABLE_PAIRS = {"USDC/USDT", "DAI/USDT", "DAI/USDC"}


class DeFiStrategy(BaseStrategy):
    default_parameters = {
        "perp_leverage": 5.0,
        "perp_min_volatility": 0.02,
        "perp_min_band_width": 0.04,
        "extreme_sentiment": 0.8,
    }

    def __init__(self, parameters=None):
        super().__init__(name="defi", parameters=parameters)

    def analyze(self, analysis: MarketAnalysis) -> List[TradingSignal]:
        candidates = [
            self._trend(analysis),
            self._stable_reversion(analysis) if analysis.symbol in STABLE_PAIRS else None,
            self._volatility_perp(analysis),
            self._sentiment_extreme(analysis),
        ]
        return [s for s in candidates if s is not None]

    def _trend(self, analysis: MarketAnalysis) -> Optional[TradingSignal]:
        price = analysis.primary.price
        ind = analysis.technical_indicators
        score = analysis.sentiment_data.score

        if (
            50 < ind.rsi < 70
            and ind.macd.histogram > 0
            and ind.macd.signal > ind.macd.value * 0.95
            and price > ind.sma20
            and price > ind.ema12
            and score > 0.3
        ):
            return self._signal(
                analysis, SignalAction.BUY, 0.75,
                "Uptrend with positive sentiment", tag="trend",
                entry_price=price, target_price=price * 1.03, stop_loss=price * 0.98,
                position_size=0.15,
            )
        if (
            30 < ind.rsi < 50
            and ind.macd.histogram < 0
            and price < ind.sma20
            and price < ind.ema12
            and score < -0.3
        ):
            return self._signal(
                analysis, SignalAction.SELL, 0.7,
                "Downtrend with negative sentiment", tag="trend",
                entry_price=price, target_price=price * 0.97, stop_loss=price * 1.02,
                position_size=0.1,
            )
        return None

    def _stable_reversion(self, analysis: MarketAnalysis) -> Optional[TradingSignal]:
        price = analysis.primary.price
        ind = analysis.technical_indicators
        bands = ind.bbands
        if bands.upper <= bands.lower:
            return None
        position = (price - bands.lower) / (bands.upper - bands.lower)

        if position < 0.2 and ind.rsi < 35:
            return self._signal(
                analysis, SignalAction.BUY, 0.65,
                "Oversold stable pair", tag="stable",
                entry_price=price, target_price=bands.middle, stop_loss=bands.lower * 0.99,
                position_size=0.2,
            )
        if position > 0.8 and ind.rsi > 65:
            return self._signal(
                analysis, SignalAction.SELL, 0.65,
                "Overbought stable pair", tag="stable",
                entry_price=price, target_price=bands.middle, stop_loss=bands.upper * 1.01,
                position_size=0.2,
            )
        return None

    def _volatility_perp(self, analysis: MarketAnalysis) -> Optional[TradingSignal]:
        p = self.parameters
        price = analysis.primary.price
        ind = analysis.technical_indicators
        volatility = safe_divide(ind.atr, price)

        if volatility <= p["perp_min_volatility"] or ind.bbands.width <= p["perp_min_band_width"]:
            return None

        if ind.macd.histogram > 0 and ind.rsi > 55:
            return self._signal(
                analysis, SignalAction.BUY, 0.7,
                "High volatility with bullish momentum: perpetual long", tag="perp",
                entry_price=price,
                target_price=price * (1 + volatility * 2),
                stop_loss=price * (1 - volatility),
                position_size=0.05,
                leverage=p["perp_leverage"],
                trade_type=TradeType.PERPETUAL,
            )
        if ind.macd.histogram < 0 and ind.rsi < 45:
            return self._signal(
                analysis, SignalAction.SELL, 0.7,
                "High volatility with bearish momentum: perpetual short", tag="perp",
                entry_price=price,
                target_price=price * (1 - volatility * 2),
                stop_loss=price * (1 + volatility),
                position_size=0.05,
                leverage=p["perp_leverage"],
                trade_type=TradeType.PERPETUAL,
            )
        return None

    def _sentiment_extreme(self, analysis: MarketAnalysis) -> Optional[TradingSignal]:
        price = analysis.primary.price
        score = analysis.sentiment_data.score
        extreme = self.parameters["extreme_sentiment"]

        if score > extreme:
            return self._signal(
                analysis, SignalAction.SELL, 0.6,
                "Extreme greed: contrarian short", tag="contrarian",
                entry_price=price, target_price=price * 0.95, stop_loss=price * 1.03,
                position_size=0.08,
            )
        if score < -extreme:
            return self._signal(
                analysis, SignalAction.BUY, 0.65,
                "Extreme fear: contrarian long", tag="contrarian",
                entry_price=price, target_price=price * 1.05, stop_loss=price * 0.97,
                position_size=0.1,
            )
        return None
