"""
KAIJU TRADER — Sentiment Collector
Aggregates per-source sentiment sub-scores and refreshes the news cache.
"""
import asyncio
from typing import Dict, List, Optional, Sequence

from kaiju_trader.data.adapters.base import SentimentSource
from kaiju_trader.data.cache.market_cache import MarketCache
from kaiju_trader.data.models import NewsItem, SentimentData
from kaiju_trader.utils.events import EventBus, SENTIMENT_UPDATE
from kaiju_trader.utils.helpers import clamp, utc_now
from kaiju_trader.utils.logger import get_logger

logger = get_logger("sentiment_collector")


class SentimentCollector:
    """Two recurring pollers: sentiment scores and news headlines."""

    def __init__(
        self,
        sources: Sequence[SentimentSource],
        cache: MarketCache,
        bus: EventBus,
        symbols: List[str],
        interval_seconds: float = 60.0,
        news_interval_seconds: float = 300.0,
    ):
        self.sources = list(sources)
        self.cache = cache
        self.bus = bus
        self.symbols = list(symbols)
        self.interval = interval_seconds
        self.news_interval = news_interval_seconds
        self._tasks: List[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return bool(self._tasks) and not any(task.done() for task in self._tasks)

    async def start(self) -> None:
        for source in self.sources:
            await source.connect()
        await self.collect_once()
        await self.refresh_news()
        self._tasks = [
            asyncio.create_task(self._run_loop(self.interval, self.collect_once, "sentiment_tick_failed")),
            asyncio.create_task(self._run_loop(self.news_interval, self.refresh_news, "news_tick_failed")),
        ]
        logger.info("sentiment_collector_started", sources=[s.name for s in self.sources])

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []
        for source in self.sources:
            await source.disconnect()
        logger.info("sentiment_collector_stopped")

    @staticmethod
    async def _run_loop(interval: float, tick, failure_event: str) -> None:
        while True:
            await asyncio.sleep(interval)
            try:
                await tick()
            except Exception as e:
                logger.error(failure_event, error=str(e))

    async def collect_once(self) -> int:
        """Poll every source; returns the number of symbols updated."""
        if not self.sources:
            return 0

        results = await asyncio.gather(
            *(source.fetch_scores(self.symbols) for source in self.sources),
            return_exceptions=True,
        )

        per_symbol: Dict[str, Dict[str, float]] = {}
        volumes: Dict[str, float] = {}
        for source, result in zip(self.sources, results):
            if isinstance(result, Exception):
                logger.warning("sentiment_source_failed", source=source.name, error=str(result))
                continue
            try:
                parsed = {
                    symbol: (clamp(float(entry["score"]), -1.0, 1.0), float(entry.get("volume") or 0.0))
                    for symbol, entry in result.items()
                }
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.warning("sentiment_source_malformed", source=source.name, error=str(e))
                continue
            for symbol, (score, volume) in parsed.items():
                per_symbol.setdefault(symbol, {})[source.name] = score
                volumes[symbol] = volumes.get(symbol, 0.0) + volume

        if not per_symbol:
            logger.warning("sentiment_tick_empty")
            return 0

        now = utc_now()
        for symbol, sources in per_symbol.items():
            score = clamp(sum(sources.values()) / len(sources), -1.0, 1.0)
            data = SentimentData(
                symbol=symbol,
                score=score,
                sources=sources,
                volume=volumes.get(symbol, 0.0),
                timestamp=now,
            )
            self.cache.put_sentiment(data)
            self.bus.publish(SENTIMENT_UPDATE, data.model_dump(mode="json"))
        return len(per_symbol)

    async def refresh_news(self) -> int:
        results = await asyncio.gather(
            *(source.fetch_news(self.symbols) for source in self.sources),
            return_exceptions=True,
        )
        items: List[NewsItem] = []
        failed = 0
        for source, result in zip(self.sources, results):
            if isinstance(result, Exception):
                failed += 1
                logger.warning("news_source_failed", source=source.name, error=str(result))
                continue
            items.extend(result)

        if failed and failed == len(self.sources):
            return 0
        items.sort(key=lambda n: n.published_at, reverse=True)
        self.cache.put_news(items)
        return len(items)

    # ─── Reads ──────────────────────────────────────────────────

    def get_latest_sentiment(self, symbol: str) -> Optional[SentimentData]:
        return self.cache.get_sentiment(symbol)

    def get_all_latest_sentiment(self) -> Dict[str, SentimentData]:
        return self.cache.get_all_sentiment()

    def fetch_news(self, symbol: Optional[str] = None) -> List[NewsItem]:
        return self.cache.get_news(symbol)
