"""
KAIJU TRADER — Base Strategy Interface
Strategies map a MarketAnalysis snapshot to zero or more TradingSignals.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional

from kaiju_trader.data.models import MarketAnalysis, SignalAction, TradeType, TradingSignal
from kaiju_trader.utils.helpers import clamp, stable_id


class BaseStrategy(ABC):
    """
    Abstract base class for all trading strategies.

    Implementations must be deterministic for a given snapshot: signal
    timestamps come from the snapshot and ids from strategy/symbol/action.
    """

    default_parameters: Dict[str, Any] = {}

    def __init__(self, name: str, parameters: Optional[Dict[str, Any]] = None):
        self.name = name
        self.parameters = {**self.default_parameters, **(parameters or {})}

    @abstractmethod
    def analyze(self, analysis: MarketAnalysis) -> List[TradingSignal]:
        pass

    def _signal(
        self,
        analysis: MarketAnalysis,
        action: SignalAction,
        confidence: float,
        reason: str,
        tag: str = "",
        **fields: Any,
    ) -> TradingSignal:
        """Build a signal stamped with the snapshot time and a stable id."""
        symbol = analysis.symbol
        timestamp = analysis.timestamp
        fields.setdefault("trade_type", TradeType.SPOT)
        return TradingSignal(
            id=stable_id(self.name, tag, symbol, action.value, timestamp.isoformat()),
            symbol=symbol,
            action=action,
            confidence=clamp(confidence, 0.0, 1.0),
            reason=reason,
            timestamp=timestamp,
            strategy=self.name,
            **fields,
        )

    def __repr__(self) -> str:
        return f"{self.__class__.__name__}(name={self.name})"
