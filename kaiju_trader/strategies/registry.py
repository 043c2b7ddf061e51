"""
KAIJU TRADER — Strategy Set
Runs every registered strategy against a snapshot with per-strategy isolation.
"""
from typing import Dict, Iterable, List, Optional

from kaiju_trader.data.models import MarketAnalysis, TradingSignal
from kaiju_trader.strategies.arbitrage import ArbitrageStrategy
from kaiju_trader.strategies.base import BaseStrategy
from kaiju_trader.strategies.combined import CombinedStrategy
from kaiju_trader.strategies.defi import DeFiStrategy
from kaiju_trader.strategies.mean_reversion import MeanReversionStrategy
from kaiju_trader.strategies.momentum import MomentumStrategy
from kaiju_trader.strategies.sentiment import SentimentStrategy
from kaiju_trader.utils.errors import StrategyError
from kaiju_trader.utils.logger import get_logger

logger = get_logger("strategy_set")


def default_strategies() -> List[BaseStrategy]:
    return [
        MomentumStrategy(),
        MeanReversionStrategy(),
        SentimentStrategy(),
        ArbitrageStrategy(),
        CombinedStrategy(),
        DeFiStrategy(),
    ]


class StrategySet:
    """Ordered collection of strategies."""

    def __init__(self, strategies: Optional[Iterable[BaseStrategy]] = None):
        self._strategies: Dict[str, BaseStrategy] = {}
        self.last_errors: List[StrategyError] = []
        for strategy in default_strategies() if strategies is None else strategies:
            self.register(strategy)
        logger.info("strategies_registered", count=len(self._strategies), names=self.names)

    def register(self, strategy: BaseStrategy) -> None:
        self._strategies[strategy.name] = strategy

    def get(self, name: str) -> Optional[BaseStrategy]:
        return self._strategies.get(name)

    @property
    def names(self) -> List[str]:
        return list(self._strategies.keys())

    @property
    def count(self) -> int:
        return len(self._strategies)

    def run(self, analysis: MarketAnalysis) -> List[TradingSignal]:
        """Concatenate every strategy's signals in registration order."""
        signals: List[TradingSignal] = []
        self.last_errors = []
        for name, strategy in self._strategies.items():
            try:
                signals.extend(strategy.analyze(analysis))
            except Exception as e:
                err = StrategyError(name, e)
                self.last_errors.append(err)
                logger.warning("strategy_eval_error", strategy=name,
                               symbol=analysis.symbol, error=str(err))
        return signals
