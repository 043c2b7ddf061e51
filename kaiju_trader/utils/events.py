"""
KAIJU TRADER — Event Bus
Fan-out of engine events to subscribers. Publishing never blocks: each
subscriber owns a bounded asyncio queue and events are dropped for a
subscriber whose queue is full.
"""
import asyncio
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from kaiju_trader.data.models import EngineEvent
from kaiju_trader.utils.helpers import utc_now
from kaiju_trader.utils.logger import get_logger

logger = get_logger("events")

MARKET_UPDATE = "marketUpdate"
SENTIMENT_UPDATE = "sentimentUpdate"
TECHNICAL_UPDATE = "technicalUpdate"
TRADE_EXECUTED = "tradeExecuted"
POSITION_CLOSED = "positionClosed"
ANALYSIS_COMPLETE = "analysisComplete"
ANALYSIS_ERROR = "analysisError"
ENGINE_STARTED = "engineStarted"
ENGINE_STOPPED = "engineStopped"
DAILY_RESET = "dailyReset"


class Subscription:
    """A subscriber's bounded view of the event stream."""

    def __init__(self, bus: "EventBus", types: Optional[Set[str]], maxsize: int):
        self._bus = bus
        self.types = types
        self.queue: asyncio.Queue = asyncio.Queue(maxsize=maxsize)
        self.dropped = 0

    def accepts(self, event_type: str) -> bool:
        return self.types is None or event_type in self.types

    async def get(self) -> EngineEvent:
        return await self.queue.get()

    def get_nowait(self) -> Optional[EngineEvent]:
        try:
            return self.queue.get_nowait()
        except asyncio.QueueEmpty:
            return None

    def drain(self) -> List[EngineEvent]:
        events = []
        while True:
            event = self.get_nowait()
            if event is None:
                return events
            events.append(event)

    def close(self) -> None:
        self._bus.unsubscribe(self)

    def __aiter__(self):
        return self

    async def __anext__(self) -> EngineEvent:
        return await self.queue.get()


class EventBus:
    """Process-local event bus."""

    def __init__(self, default_queue_size: int = 1000):
        self.default_queue_size = default_queue_size
        self._subscriptions: List[Subscription] = []
        self._listeners: List[Callable[[EngineEvent], None]] = []
        self.published = 0

    def subscribe(
        self, types: Optional[Iterable[str]] = None, maxsize: Optional[int] = None
    ) -> Subscription:
        """Subscribe to all events, or only to the given types."""
        sub = Subscription(
            self,
            set(types) if types is not None else None,
            maxsize if maxsize is not None else self.default_queue_size,
        )
        self._subscriptions.append(sub)
        logger.debug("event_subscribed", types=sorted(sub.types) if sub.types else "all")
        return sub

    def unsubscribe(self, sub: Subscription) -> None:
        if sub in self._subscriptions:
            self._subscriptions.remove(sub)

    def add_listener(self, callback: Callable[[EngineEvent], None]) -> None:
        """Register a synchronous callback invoked on every publish."""
        self._listeners.append(callback)

    def remove_listener(self, callback: Callable[[EngineEvent], None]) -> None:
        if callback in self._listeners:
            self._listeners.remove(callback)

    def publish(self, event_type: str, data: Optional[Dict[str, Any]] = None) -> EngineEvent:
        event = EngineEvent(type=event_type, timestamp=utc_now(), data=data or {})
        self.published += 1

        for sub in list(self._subscriptions):
            if not sub.accepts(event_type):
                continue
            try:
                sub.queue.put_nowait(event)
            except asyncio.QueueFull:
                sub.dropped += 1
                logger.debug("event_dropped", type=event_type, dropped=sub.dropped)

        for callback in list(self._listeners):
            try:
                callback(event)
            except Exception as e:
                logger.error("event_listener_error", type=event_type, error=str(e))

        return event

    @property
    def subscriber_count(self) -> int:
        return len(self._subscriptions) + len(self._listeners)
