"""
KAIJU TRADER — Market Data Collector
Polls tickers for the configured pairs from the primary exchange and any
reference venues, and keeps the latest snapshot per symbol in the cache.
"""
import asyncio
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from kaiju_trader.data.adapters.base import ExchangeClient
from kaiju_trader.data.cache.market_cache import MarketCache, PRIMARY
from kaiju_trader.data.models import MarketData, OHLCVBar, OrderBook
from kaiju_trader.utils.errors import ConfigurationError, DataFetchError
from kaiju_trader.utils.events import EventBus, MARKET_UPDATE
from kaiju_trader.utils.helpers import utc_now
from kaiju_trader.utils.logger import get_logger

logger = get_logger("market_collector")


def _num(value: Any, default: float = 0.0) -> float:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def ticker_to_market_data(symbol: str, ticker: Dict[str, Any], source: str = PRIMARY) -> Optional[MarketData]:
    """Map a ccxt ticker dict to MarketData; None when it carries no price."""
    price = ticker.get("last")
    if price is None:
        price = ticker.get("close")
    if price is None:
        return None

    ts = ticker.get("timestamp")
    timestamp = (
        datetime.fromtimestamp(ts / 1000.0, tz=timezone.utc) if ts else utc_now()
    )
    volume = ticker.get("quoteVolume")
    if volume is None:
        volume = ticker.get("baseVolume")

    return MarketData(
        symbol=symbol,
        price=float(price),
        volume=_num(volume),
        bid=_num(ticker.get("bid")),
        ask=_num(ticker.get("ask")),
        high_24h=_num(ticker.get("high")),
        low_24h=_num(ticker.get("low")),
        change_24h=_num(ticker.get("percentage")),
        timestamp=timestamp,
        source=source,
    )


class MarketDataCollector:
    """Recurring ticker poller feeding the MarketCache."""

    def __init__(
        self,
        exchange: ExchangeClient,
        cache: MarketCache,
        bus: EventBus,
        symbols: List[str],
        interval_seconds: float = 5.0,
        reference_exchanges: Optional[Dict[str, ExchangeClient]] = None,
    ):
        self.exchange = exchange
        self.cache = cache
        self.bus = bus
        self.symbols = list(symbols)
        self.interval = interval_seconds
        self.reference_exchanges: Dict[str, ExchangeClient] = dict(reference_exchanges or {})
        self._task: Optional[asyncio.Task] = None
        self.fetch_count = 0
        self.error_count = 0

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        try:
            await self.exchange.load_markets()
        except Exception as e:
            logger.error("market_load_failed", exchange=self.exchange.exchange_id, error=str(e))
            raise ConfigurationError(
                f"Could not load markets from {self.exchange.exchange_id}: {e}"
            ) from e

        for name, client in list(self.reference_exchanges.items()):
            try:
                await client.load_markets()
            except Exception as e:
                logger.warning("reference_exchange_disabled", exchange=name, error=str(e))
                self.reference_exchanges.pop(name)

        await self.collect_once()
        self._task = asyncio.create_task(self._run_loop())
        logger.info("market_collector_started", symbols=self.symbols, interval=self.interval,
                    references=list(self.reference_exchanges))

    async def stop(self) -> None:
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None
        logger.info("market_collector_stopped")

    async def _run_loop(self) -> None:
        while True:
            await asyncio.sleep(self.interval)
            try:
                await self.collect_once()
            except Exception as e:
                self.error_count += 1
                logger.error("market_tick_failed", exchange=self.exchange.exchange_id, error=str(e))

    async def collect_once(self) -> int:
        """One polling tick. Returns the number of primary snapshots stored."""
        try:
            tickers = await self.exchange.fetch_tickers(self.symbols)
        except Exception as e:
            self.error_count += 1
            logger.warning("market_fetch_failed", exchange=self.exchange.exchange_id, error=str(e))
            tickers = None

        snapshots: List[MarketData] = []
        if tickers:
            # A malformed ticker voids the whole tick so the cache stays consistent
            try:
                for symbol in self.symbols:
                    ticker = tickers.get(symbol)
                    data = ticker_to_market_data(symbol, ticker) if ticker else None
                    if data is not None:
                        snapshots.append(data)
            except (AttributeError, TypeError, ValueError) as e:
                self.error_count += 1
                logger.warning("market_tick_failed", exchange=self.exchange.exchange_id, error=str(e))
                snapshots = []
            else:
                self.fetch_count += 1

        for data in snapshots:
            self.cache.put_market_data(data)
            self.bus.publish(MARKET_UPDATE, data.model_dump(mode="json"))

        for name, client in self.reference_exchanges.items():
            try:
                ref_tickers = await client.fetch_tickers(self.symbols)
                refs = [
                    ticker_to_market_data(symbol, ref_tickers[symbol], source=name)
                    for symbol in self.symbols if ref_tickers.get(symbol)
                ]
            except Exception as e:
                logger.warning("reference_fetch_failed", exchange=name, error=str(e))
                continue
            for data in refs:
                if data is not None:
                    self.cache.put_market_data(data)

        return len(snapshots)

    # ─── Reads ──────────────────────────────────────────────────

    def get_latest_data(self, symbol: str) -> Optional[MarketData]:
        return self.cache.get_market_data(symbol)

    def get_all_latest_data(self) -> Dict[str, MarketData]:
        return self.cache.get_all_market_data()

    def get_reference_data(self, symbol: str) -> List[MarketData]:
        return self.cache.get_reference_data(symbol)

    def get_history(self, symbol: str, limit: int = 100) -> List[MarketData]:
        return self.cache.get_history(symbol, limit)

    # ─── On-demand fetches ──────────────────────────────────────

    async def fetch_order_book(self, symbol: str, depth: int = 10) -> OrderBook:
        try:
            raw = await self.exchange.fetch_order_book(symbol, depth)
        except Exception as e:
            logger.error("order_book_fetch_failed", symbol=symbol, error=str(e))
            if isinstance(e, DataFetchError):
                raise
            raise DataFetchError(str(e), symbol) from e

        ts = raw.get("timestamp")
        return OrderBook(
            symbol=symbol,
            bids=[(float(p), float(a)) for p, a, *_ in raw.get("bids", [])[:depth]],
            asks=[(float(p), float(a)) for p, a, *_ in raw.get("asks", [])[:depth]],
            timestamp=datetime.fromtimestamp(ts / 1000.0, tz=timezone.utc) if ts else utc_now(),
        )

    async def fetch_ohlcv(self, symbol: str, timeframe: str = "15m", limit: int = 100) -> List[OHLCVBar]:
        try:
            rows = await self.exchange.fetch_ohlcv(symbol, timeframe, limit)
        except Exception as e:
            logger.error("ohlcv_fetch_failed", symbol=symbol, timeframe=timeframe, error=str(e))
            if isinstance(e, DataFetchError):
                raise
            raise DataFetchError(str(e), symbol) from e

        return [
            OHLCVBar(
                timestamp=datetime.fromtimestamp(row[0] / 1000.0, tz=timezone.utc),
                open=float(row[1]),
                high=float(row[2]),
                low=float(row[3]),
                close=float(row[4]),
                volume=_num(row[5]),
            )
            for row in rows
            if row and len(row) >= 6 and row[4] is not None
        ]
