"""
KAIJU TRADER — Market Data Cache
Latest snapshot per (symbol, venue) plus a bounded history per symbol.
Writes replace whole entries; reads hand out copies.
"""
from collections import deque
from typing import Deque, Dict, List, Optional

from kaiju_trader.data.models import MarketData, SentimentData, NewsItem
from kaiju_trader.utils.logger import get_logger

logger = get_logger("market_cache")

PRIMARY = "primary"


class MarketCache:
    """Owned by the collectors; everything else reads."""

    def __init__(self, history_size: int = 500):
        self._latest: Dict[str, Dict[str, MarketData]] = {}
        self._history: Dict[str, Deque[MarketData]] = {}
        self._sentiment: Dict[str, SentimentData] = {}
        self._news: List[NewsItem] = []
        self._max_history = history_size
        self._writes = 0

    # ─── Market data ────────────────────────────────────────────

    def put_market_data(self, data: MarketData) -> None:
        venues = dict(self._latest.get(data.symbol, {}))
        venues[data.source] = data
        self._latest[data.symbol] = venues
        if data.source == PRIMARY:
            history = self._history.setdefault(data.symbol, deque(maxlen=self._max_history))
            history.append(data)
        self._writes += 1

    def get_market_data(self, symbol: str, source: str = PRIMARY) -> Optional[MarketData]:
        return self._latest.get(symbol, {}).get(source)

    def get_all_market_data(self, source: str = PRIMARY) -> Dict[str, MarketData]:
        return {
            symbol: venues[source]
            for symbol, venues in self._latest.items()
            if source in venues
        }

    def get_reference_data(self, symbol: str) -> List[MarketData]:
        """Snapshots from every non-primary venue, ordered by venue name."""
        venues = self._latest.get(symbol, {})
        return [venues[name] for name in sorted(venues) if name != PRIMARY]

    def get_history(self, symbol: str, limit: int = 100) -> List[MarketData]:
        history = self._history.get(symbol)
        if not history:
            return []
        return list(history)[-limit:]

    # ─── Sentiment & news ───────────────────────────────────────

    def put_sentiment(self, data: SentimentData) -> None:
        self._sentiment[data.symbol] = data
        self._writes += 1

    def get_sentiment(self, symbol: str) -> Optional[SentimentData]:
        return self._sentiment.get(symbol)

    def get_all_sentiment(self) -> Dict[str, SentimentData]:
        return dict(self._sentiment)

    def put_news(self, items: List[NewsItem]) -> None:
        self._news = list(items)
        self._writes += 1

    def get_news(self, symbol: Optional[str] = None) -> List[NewsItem]:
        if symbol is None:
            return list(self._news)
        return [n for n in self._news if symbol in n.relevant_symbols]

    @property
    def stats(self) -> Dict[str, int]:
        return {
            "symbols": len(self._latest),
            "history_points": sum(len(h) for h in self._history.values()),
            "sentiment_entries": len(self._sentiment),
            "news_items": len(self._news),
            "writes": self._writes,
        }
