"""
KAIJU TRADER — Adapter Interfaces
Capabilities the engine consumes from exchanges and sentiment providers.
"""
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional


class ExchangeClient(ABC):
    """Spot exchange capability. Raw ccxt-shaped dicts in, raw dicts out."""

    def __init__(self, exchange_id: str):
        self.exchange_id = exchange_id

    @abstractmethod
    async def load_markets(self) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def fetch_tickers(self, symbols: List[str]) -> Dict[str, Dict[str, Any]]:
        pass

    @abstractmethod
    async def fetch_order_book(self, symbol: str, limit: int = 10) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def fetch_ohlcv(
        self, symbol: str, timeframe: str = "15m", limit: int = 100
    ) -> List[List[float]]:
        pass

    @abstractmethod
    async def create_order(
        self, symbol: str, order_type: str, side: str, amount: float,
        price: Optional[float] = None,
    ) -> Dict[str, Any]:
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class SentimentSource(ABC):
    """A sentiment provider producing a sub-score in [-1, 1] per symbol."""

    def __init__(self, name: str):
        self.name = name

    async def connect(self) -> None:
        pass

    async def disconnect(self) -> None:
        pass

    @abstractmethod
    async def fetch_scores(self, symbols: List[str]) -> Dict[str, Dict[str, float]]:
        """
        Return {symbol: {"score": s, "volume": v}} for the symbols this
        source has data on. Raises DataFetchError on transport failure.
        """
        pass

    async def fetch_news(self, symbols: List[str]) -> List[Any]:
        """NewsItem list; sources without headlines return nothing."""
        return []
