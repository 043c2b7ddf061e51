"""
KAIJU TRADER — Cross-Venue Arbitrage Strategy
Compares the primary book top against reference venues for the same symbol.
"""
from typing import List

from kaiju_trader.data.models import MarketAnalysis, SignalAction, TradingSignal
from kaiju_trader.strategies.base import BaseStrategy
from kaiju_trader.utils.helpers import safe_divide


class ArbitrageStrategy(BaseStrategy):
    """
    BUY on the primary venue when a reference bid clears the primary ask by
    more than `min_spread`; SELL when the primary bid clears a reference ask.
    `min_spread` is fee-inclusive. Does nothing without reference venues.
    """

    default_parameters = {
        "min_spread": 0.003,
        "position_size": 0.05,
        "max_confidence": 0.9,
    }

    def __init__(self, parameters=None):
        super().__init__(name="arbitrage", parameters=parameters)

    def analyze(self, analysis: MarketAnalysis) -> List[TradingSignal]:
        p = self.parameters
        primary = analysis.primary
        if not analysis.references or primary.bid <= 0 or primary.ask <= 0:
            return []

        best_buy_spread, best_buy_ref = 0.0, None
        best_sell_spread, best_sell_ref = 0.0, None
        for ref in analysis.references:
            if ref.bid > 0:
                spread = safe_divide(ref.bid - primary.ask, primary.ask)
                if spread > best_buy_spread:
                    best_buy_spread, best_buy_ref = spread, ref
            if ref.ask > 0:
                spread = safe_divide(primary.bid - ref.ask, ref.ask)
                if spread > best_sell_spread:
                    best_sell_spread, best_sell_ref = spread, ref

        signals = []
        if best_buy_ref is not None and best_buy_spread > p["min_spread"]:
            signals.append(self._signal(
                analysis, SignalAction.BUY, self._confidence(best_buy_spread),
                f"Primary ask below {best_buy_ref.source} bid by {best_buy_spread:.2%}",
                entry_price=primary.ask,
                target_price=best_buy_ref.bid,
                stop_loss=primary.ask * (1 - best_buy_spread),
                position_size=p["position_size"],
            ))
        elif best_sell_ref is not None and best_sell_spread > p["min_spread"]:
            signals.append(self._signal(
                analysis, SignalAction.SELL, self._confidence(best_sell_spread),
                f"Primary bid above {best_sell_ref.source} ask by {best_sell_spread:.2%}",
                entry_price=primary.bid,
                target_price=best_sell_ref.ask,
                stop_loss=primary.bid * (1 + best_sell_spread),
                position_size=p["position_size"],
            ))
        return signals

    def _confidence(self, spread: float) -> float:
        # 0.5 at the threshold, rising with the spread
        p = self.parameters
        return min(p["max_confidence"], 0.5 + (spread - p["min_spread"]) * 50)
