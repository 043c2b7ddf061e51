"""
KAIJU TRADER — Unit Tests for the Event Bus and Market Cache
"""
import asyncio
import pytest

from kaiju_trader.data.cache.market_cache import MarketCache
from kaiju_trader.utils.events import (
    ANALYSIS_COMPLETE, EventBus, MARKET_UPDATE, TRADE_EXECUTED,
)


class TestEventBus:
    def test_fan_out(self):
        bus = EventBus()
        a, b = bus.subscribe(), bus.subscribe()
        bus.publish(MARKET_UPDATE, {"symbol": "BTC/USDT"})
        assert a.get_nowait().data == {"symbol": "BTC/USDT"}
        assert b.get_nowait().type == MARKET_UPDATE

    def test_type_filter(self):
        bus = EventBus()
        trades = bus.subscribe([TRADE_EXECUTED])
        bus.publish(MARKET_UPDATE)
        bus.publish(TRADE_EXECUTED, {"id": "t1"})
        assert [e.type for e in trades.drain()] == [TRADE_EXECUTED]

    def test_slow_subscriber_drops_without_blocking(self):
        bus = EventBus()
        slow = bus.subscribe(maxsize=2)
        fast = bus.subscribe(maxsize=100)
        for i in range(5):
            bus.publish(ANALYSIS_COMPLETE, {"i": i})
        assert [e.data["i"] for e in slow.drain()] == [0, 1]
        assert slow.dropped == 3
        assert len(fast.drain()) == 5

    def test_close_unsubscribes(self):
        bus = EventBus()
        sub = bus.subscribe()
        sub.close()
        bus.publish(MARKET_UPDATE)
        assert sub.get_nowait() is None
        assert bus.subscriber_count == 0

    def test_listener_errors_isolated(self):
        bus = EventBus()
        seen = []

        def broken(event):
            raise RuntimeError("listener bug")

        bus.add_listener(broken)
        bus.add_listener(seen.append)
        bus.publish(MARKET_UPDATE)
        assert len(seen) == 1
        assert bus.published == 1

    @pytest.mark.asyncio
    async def test_async_iteration(self):
        bus = EventBus()
        sub = bus.subscribe()
        bus.publish(MARKET_UPDATE, {"n": 1})
        event = await asyncio.wait_for(sub.__anext__(), timeout=1)
        assert event.data == {"n": 1}


class TestMarketCache:
    def test_latest_per_venue(self, make_market):
        cache = MarketCache()
        cache.put_market_data(make_market(price=100.0))
        cache.put_market_data(make_market(price=101.0, source="kraken"))
        cache.put_market_data(make_market(price=102.0))
        assert cache.get_market_data("BTC/USDT").price == 102.0
        assert cache.get_market_data("BTC/USDT", "kraken").price == 101.0
        assert [m.price for m in cache.get_history("BTC/USDT")] == [100.0, 102.0]

    def test_reads_are_copies(self, make_market):
        cache = MarketCache()
        cache.put_market_data(make_market())
        snapshot = cache.get_all_market_data()
        snapshot.clear()
        assert cache.get_market_data("BTC/USDT") is not None

    def test_stats(self, make_market):
        cache = MarketCache()
        cache.put_market_data(make_market())
        assert cache.stats["symbols"] == 1
        assert cache.stats["writes"] == 1
