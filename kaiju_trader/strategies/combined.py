"""
KAIJU TRADER — Combined Multi-Factor Strategy
Runs momentum, mean reversion and sentiment and rewards agreement.
"""
from typing import List, Optional

from kaiju_trader.data.models import MarketAnalysis, SignalAction, TradingSignal
from kaiju_trader.strategies.base import BaseStrategy
from kaiju_trader.strategies.mean_reversion import MeanReversionStrategy
from kaiju_trader.strategies.momentum import MomentumStrategy
from kaiju_trader.strategies.sentiment import SentimentStrategy


def _mean(values: List[Optional[float]]) -> Optional[float]:
    present = [v for v in values if v is not None]
    if not present:
        return None
    return sum(present) / len(present)


class CombinedStrategy(BaseStrategy):
    """
    Two or more agreeing components: one signal, confidence x1.2 (cap 0.95),
    size 0.15. A single component signal passes at x0.7 confidence and
    half size. Disagreement yields nothing.
    """

    default_parameters = {
        "consensus_boost": 1.2,
        "consensus_cap": 0.95,
        "consensus_size": 0.15,
        "single_penalty": 0.7,
        "single_size_mult": 0.5,
    }

    def __init__(self, parameters=None):
        super().__init__(name="combined", parameters=parameters)
        self.components: List[BaseStrategy] = [
            MomentumStrategy(), MeanReversionStrategy(), SentimentStrategy(),
        ]

    def analyze(self, analysis: MarketAnalysis) -> List[TradingSignal]:
        p = self.parameters
        signals: List[TradingSignal] = []
        for component in self.components:
            signals.extend(component.analyze(analysis))

        if not signals:
            return []

        if len(signals) == 1:
            single = signals[0]
            return [self._signal(
                analysis, single.action, single.confidence * p["single_penalty"],
                f"Single factor ({single.strategy}): {single.reason}",
                entry_price=single.entry_price,
                target_price=single.target_price,
                stop_loss=single.stop_loss,
                position_size=(single.position_size or 0.1) * p["single_size_mult"],
            )]

        for action in (SignalAction.BUY, SignalAction.SELL):
            agreeing = [s for s in signals if s.action == action]
            if len(agreeing) >= 2:
                confidence = sum(s.confidence for s in agreeing) / len(agreeing)
                return [self._signal(
                    analysis, action, min(p["consensus_cap"], confidence * p["consensus_boost"]),
                    f"Multiple strategies confirm {action.value}: "
                    + "; ".join(s.reason for s in agreeing),
                    entry_price=_mean([s.entry_price for s in agreeing]),
                    target_price=_mean([s.target_price for s in agreeing]),
                    stop_loss=_mean([s.stop_loss for s in agreeing]),
                    position_size=p["consensus_size"],
                )]

        return []
