"""
KAIJU TRADER — Trading Engine
Orchestrates collectors, indicators, strategies, AI, risk and execution.
Cycles never overlap: the analysis loop, forced analyses and the position
monitor all run under one cycle lock, and stop() lets an in-flight cycle
finish before the collectors shut down.
"""
import asyncio
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, Iterable, List, Optional, Sequence, Tuple

from sqlalchemy.exc import SQLAlchemyError

from kaiju_trader.collectors.market_data import MarketDataCollector
from kaiju_trader.collectors.sentiment import SentimentCollector
from kaiju_trader.config.settings import AppSettings, get_settings, validate_settings
from kaiju_trader.data.adapters.base import ExchangeClient, SentimentSource
from kaiju_trader.data.adapters.exchange_adapter import CcxtExchange
from kaiju_trader.data.adapters.sentiment_adapter import FearGreedSource, NewsSentimentSource
from kaiju_trader.data.cache.market_cache import MarketCache
from kaiju_trader.data.models import (
    AIDecision, MarketAnalysis, Position, PositionSide, RiskMetrics, SentimentData,
    SignalAction, Trade, TradingSignal,
)
from kaiju_trader.db.ledger_store import LedgerStore
from kaiju_trader.defi.chain_executor import ChainExecutor, Web3ChainExecutor
from kaiju_trader.engines.ai_decision import AIDecisionEngine, GeminiInferenceClient, InferenceClient
from kaiju_trader.engines.execution import ExecutionRouter
from kaiju_trader.engines.portfolio import Portfolio
from kaiju_trader.engines.risk_manager import RiskManager
from kaiju_trader.indicators.technical import TechnicalAnalysisEngine
from kaiju_trader.strategies.registry import StrategySet
from kaiju_trader.utils.errors import (
    ConfigurationError, DecisionUnavailable, ExecutionBusy, ExecutionError,
)
from kaiju_trader.utils.events import (
    ANALYSIS_COMPLETE, ANALYSIS_ERROR, DAILY_RESET, ENGINE_STARTED, ENGINE_STOPPED,
    POSITION_CLOSED, TRADE_EXECUTED, EventBus, Subscription,
)
from kaiju_trader.utils.helpers import safe_divide, seconds_until_next_utc_day, stable_id, utc_now
from kaiju_trader.utils.logger import get_logger

logger = get_logger("trading_engine")


class EngineState(str, Enum):
    STOPPED = "stopped"
    STARTING = "starting"
    RUNNING = "running"
    STOPPING = "stopping"


STOP_LOSS_HIT = "Stop loss hit"
TAKE_PROFIT_HIT = "Take profit hit"


class TradingEngine:
    """Owns the cycle schedule and the single-writer ledger."""

    def __init__(
        self,
        settings: AppSettings,
        bus: EventBus,
        cache: MarketCache,
        market_collector: MarketDataCollector,
        sentiment_collector: SentimentCollector,
        technical: TechnicalAnalysisEngine,
        strategies: StrategySet,
        portfolio: Portfolio,
        risk_manager: RiskManager,
        router: ExecutionRouter,
        ai_engine: Optional[AIDecisionEngine] = None,
        store: Optional[LedgerStore] = None,
        resources: Sequence[Any] = (),
        clock: Callable[[], datetime] = utc_now,
    ):
        self.settings = settings
        self.bus = bus
        self.cache = cache
        self.market_collector = market_collector
        self.sentiment_collector = sentiment_collector
        self.technical = technical
        self.strategies = strategies
        self.portfolio = portfolio
        self.risk_manager = risk_manager
        self.router = router
        self.ai_engine = ai_engine
        self.store = store
        self.clock = clock
        self._resources = list(resources)

        self._state = EngineState.STOPPED
        self._analyzing = False
        self._pending_forced = False
        self._cycle_lock = asyncio.Lock()
        self._timers: List[asyncio.Task] = []
        self._cycle_task: Optional[asyncio.Task] = None
        self._monitor_task: Optional[asyncio.Task] = None

        self.cycles = 0
        self.last_cycle_at: Optional[datetime] = None
        self.last_summary: Dict[str, Any] = {}

    # ─── Lifecycle ──────────────────────────────────────────────

    @property
    def state(self) -> EngineState:
        return self._state

    @property
    def is_analyzing(self) -> bool:
        return self._analyzing

    async def start(self) -> None:
        if self._state != EngineState.STOPPED:
            logger.warning("engine_already_running", state=self._state.value)
            return

        self._state = EngineState.STARTING
        logger.info("engine_starting", mode=self.settings.trading.mode,
                    pairs=self.settings.trading.pairs)
        try:
            self._restore_ledger()
            await self.market_collector.start()
            await self.sentiment_collector.start()
        except Exception as e:
            logger.error("engine_start_failed", error=str(e))
            await self.market_collector.stop()
            await self.sentiment_collector.stop()
            self._state = EngineState.STOPPED
            raise

        self._timers = [
            asyncio.create_task(self._analysis_loop()),
            asyncio.create_task(self._position_loop()),
            asyncio.create_task(self._daily_loop()),
        ]
        self._state = EngineState.RUNNING
        logger.info("engine_started")
        self.bus.publish(ENGINE_STARTED, {
            "mode": self.settings.trading.mode,
            "pairs": self.settings.trading.pairs,
            "strategies": self.strategies.names,
            "ai_enabled": self.ai_engine is not None,
        })

    async def stop(self) -> None:
        if self._state != EngineState.RUNNING:
            logger.warning("engine_not_running", state=self._state.value)
            return

        self._state = EngineState.STOPPING
        logger.info("engine_stopping")
        for task in self._timers:
            task.cancel()
        await asyncio.gather(*self._timers, return_exceptions=True)
        self._timers = []

        # In-flight work finishes; nothing new gets scheduled
        self._pending_forced = False
        for task in (self._cycle_task, self._monitor_task):
            if task is not None and not task.done():
                await asyncio.gather(task, return_exceptions=True)

        await self.market_collector.stop()
        await self.sentiment_collector.stop()
        self._state = EngineState.STOPPED
        logger.info("engine_stopped", cycles=self.cycles)
        self.bus.publish(ENGINE_STOPPED, {"cycles": self.cycles})

    async def close(self) -> None:
        """Stop if running and release network clients."""
        if self._state == EngineState.RUNNING:
            await self.stop()
        for resource in self._resources:
            try:
                await resource.close()
            except Exception as e:
                logger.warning("resource_close_failed", resource=type(resource).__name__, error=str(e))

    def _restore_ledger(self) -> None:
        if self.store is None or self.portfolio.trades or self.portfolio.positions:
            return
        try:
            positions, trades = self.store.load()
        except SQLAlchemyError as e:
            raise ConfigurationError(f"Could not load ledger from {self.store.db_url}: {e}") from e
        self.portfolio.restore(positions, trades)

    # ─── Timers ─────────────────────────────────────────────────

    async def _analysis_loop(self) -> None:
        while True:
            await asyncio.shield(self._spawn_cycle())
            await asyncio.sleep(self.settings.data_collection.analysis_interval)

    async def _position_loop(self) -> None:
        while True:
            await asyncio.sleep(self.settings.data_collection.position_update_interval)
            if self._monitor_task is None or self._monitor_task.done():
                self._monitor_task = asyncio.create_task(self.check_positions())
            try:
                await asyncio.shield(self._monitor_task)
            except Exception as e:
                logger.error("position_monitor_failed", error=str(e))

    async def _daily_loop(self) -> None:
        while True:
            await asyncio.sleep(seconds_until_next_utc_day(self.clock()) + 1)
            if self.risk_manager.check_daily_reset():
                self.bus.publish(DAILY_RESET, {
                    "portfolio_value": self.portfolio.portfolio_value,
                    "circuit_breaker_active": self.risk_manager.is_circuit_breaker_active(),
                })

    def _spawn_cycle(self) -> asyncio.Task:
        if self._cycle_task is None or self._cycle_task.done():
            self._cycle_task = asyncio.create_task(self._run_cycles())
        return self._cycle_task

    async def _run_cycles(self) -> Dict[str, Any]:
        async with self._cycle_lock:
            while True:
                self._pending_forced = False
                summary = await self.run_cycle()
                if not self._pending_forced or self._state == EngineState.STOPPING:
                    return summary

    async def force_analysis(self) -> Optional[Dict[str, Any]]:
        """
        Run a cycle now and return its summary. If one is already running,
        queue a single follow-up cycle and return None immediately.
        """
        if self._cycle_task is not None and not self._cycle_task.done():
            self._pending_forced = True
            logger.info("forced_analysis_queued")
            return None
        logger.info("forced_analysis")
        return await asyncio.shield(self._spawn_cycle())

    # ─── Cycle ──────────────────────────────────────────────────

    async def run_cycle(self) -> Dict[str, Any]:
        """One analysis cycle. Callers must hold the cycle lock."""
        self._analyzing = True
        started = self.clock()
        executed: List[Trade] = []
        try:
            analyses = await self.build_analyses()

            strategy_signals: List[TradingSignal] = []
            strategy_failures = 0
            for analysis in analyses:
                strategy_signals.extend(self.strategies.run(analysis))
                strategy_failures += len(self.strategies.last_errors)

            decisions, ai_failures = await self._ai_decisions(analyses)
            ai_signals = [s for d in decisions for s in d.signals]
            ai_available = self.ai_engine is not None and ai_failures == 0

            volatility = {
                a.symbol: safe_divide(a.technical_indicators.atr, a.primary.price)
                for a in analyses if a.technical_indicators.atr > 0
            }
            approved = self.risk_manager.evaluate(
                strategy_signals + ai_signals, self.portfolio.positions, volatility=volatility
            )
            for signal in approved:
                trade = await self._execute(signal)
                if trade is not None:
                    executed.append(trade)

            summary = {
                "started_at": started.isoformat(),
                "symbols_analyzed": [a.symbol for a in analyses],
                "strategy_signals": len(strategy_signals),
                "ai_signals": len(ai_signals),
                "signals_generated": len(approved),
                "signals_rejected": len(self.risk_manager.last_rejections),
                "trades_executed": len(executed),
                "ai_available": ai_available,
                "ai_decisions": [d.model_dump(mode="json") for d in decisions],
                "portfolio_value": self.portfolio.portfolio_value,
            }

            no_decision_source = (
                analyses
                and strategy_failures == len(analyses) * self.strategies.count
                and not decisions
            )
            if no_decision_source:
                logger.error("analysis_no_decision_source", symbols=len(analyses))
                self.bus.publish(ANALYSIS_ERROR, {
                    "error": "All strategies failed and AI is unavailable",
                    **summary,
                })
            else:
                self.bus.publish(ANALYSIS_COMPLETE, summary)
            logger.info("analysis_complete", symbols=len(analyses),
                        approved=len(approved), trades=len(executed), ai_available=ai_available)
        except Exception as e:
            logger.error("analysis_cycle_failed", error=str(e), trades_executed=len(executed))
            summary = {
                "started_at": started.isoformat(),
                "error": str(e),
                "trades_executed": len(executed),
            }
            self.bus.publish(ANALYSIS_ERROR, summary)
        finally:
            self._analyzing = False
            self.cycles += 1
            self.last_cycle_at = started

        self.last_summary = summary
        return summary

    async def build_analyses(self) -> List[MarketAnalysis]:
        analyses: List[MarketAnalysis] = []
        for symbol in self.settings.trading.pairs:
            market = self.market_collector.get_latest_data(symbol)
            if market is None:
                logger.warning("analysis_skipped_no_data", symbol=symbol)
                continue
            sentiment = (
                self.sentiment_collector.get_latest_sentiment(symbol)
                or SentimentData.neutral(symbol, market.timestamp)
            )
            indicators = await self.technical.analyze(symbol)
            news = self.sentiment_collector.fetch_news(symbol)
            analyses.append(MarketAnalysis(
                market_data=[market, *self.market_collector.get_reference_data(symbol)],
                technical_indicators=indicators,
                sentiment_data=sentiment,
                news_data=news or None,
            ))
        return analyses

    async def _ai_decisions(self, analyses: List[MarketAnalysis]) -> Tuple[List[AIDecision], int]:
        if self.ai_engine is None or not analyses:
            return [], 0
        positions = self.portfolio.positions
        metrics = self.risk_manager.get_risk_metrics()
        results = await asyncio.gather(
            *(self.ai_engine.decide(a, positions, metrics) for a in analyses),
            return_exceptions=True,
        )
        decisions: List[AIDecision] = []
        failures = 0
        for analysis, result in zip(analyses, results):
            if isinstance(result, DecisionUnavailable):
                failures += 1
                logger.warning("ai_decision_unavailable", symbol=analysis.symbol, error=str(result))
            elif isinstance(result, BaseException):
                raise result
            else:
                decisions.append(result)
        return decisions, failures

    async def _execute(self, signal: TradingSignal) -> Optional[Trade]:
        position = self.portfolio.get_position(signal.symbol)
        try:
            trade = await self.router.execute(signal, position if signal.action == SignalAction.CLOSE else None)
        except ExecutionBusy:
            logger.info("execution_busy", symbol=signal.symbol, action=signal.action.value)
            return None
        except ExecutionError:
            # already logged with its reason code by the router
            return None

        self._persist(trade)
        self.bus.publish(TRADE_EXECUTED, {
            "mode": self.settings.trading.mode,
            "action": signal.action.value,
            "trade": trade.model_dump(mode="json"),
            "signal": signal.model_dump(mode="json"),
        })
        if trade.pnl is not None:
            self.bus.publish(POSITION_CLOSED, {
                "symbol": trade.symbol,
                "position_id": trade.position_id,
                "pnl": trade.pnl,
                "reason": trade.reason,
            })
        return trade

    def _persist(self, trade: Trade) -> None:
        if self.store is None:
            return
        try:
            self.store.append_trade(trade)
            position = self.portfolio.get_position(trade.symbol)
            if position is not None and position.id == trade.position_id:
                self.store.save_position(position)
            else:
                self.store.delete_position(trade.position_id)
        except SQLAlchemyError as e:
            logger.error("ledger_persist_failed", trade_id=trade.id, error=str(e))

    # ─── Position monitor ───────────────────────────────────────

    @staticmethod
    def exit_reason(position: Position, price: float) -> Optional[str]:
        if position.side == PositionSide.LONG:
            if position.stop_loss and price <= position.stop_loss:
                return STOP_LOSS_HIT
            if position.take_profit and price >= position.take_profit:
                return TAKE_PROFIT_HIT
        else:
            if position.stop_loss and price >= position.stop_loss:
                return STOP_LOSS_HIT
            if position.take_profit and price <= position.take_profit:
                return TAKE_PROFIT_HIT
        return None

    async def check_positions(self) -> List[Trade]:
        """Mark open positions to market and close any that hit a stop or target."""
        exits: List[Tuple[Position, str, float]] = []
        for position in self.portfolio.positions:
            market = self.market_collector.get_latest_data(position.symbol)
            if market is None:
                continue
            marked = self.portfolio.mark(position.symbol, market.price)
            reason = self.exit_reason(marked, market.price)
            if reason:
                exits.append((marked, reason, market.price))

        closed: List[Trade] = []
        if not exits:
            return closed
        async with self._cycle_lock:
            for position, reason, price in exits:
                current = self.portfolio.get_position(position.symbol)
                if current is None or current.id != position.id:
                    continue
                logger.info("position_exit_triggered", symbol=position.symbol, reason=reason,
                            price=price, stop_loss=position.stop_loss,
                            take_profit=position.take_profit)
                signal = TradingSignal(
                    id=stable_id("monitor", position.id, reason),
                    symbol=position.symbol,
                    action=SignalAction.CLOSE,
                    confidence=1.0,
                    reason=reason,
                    timestamp=self.clock(),
                    entry_price=price,
                    strategy="position_monitor",
                    trade_type=position.trade_type,
                )
                trade = await self._execute(signal)
                if trade is not None:
                    closed.append(trade)
        return closed

    # ─── Reads ──────────────────────────────────────────────────

    def get_positions(self) -> List[Position]:
        return [p.model_copy() for p in self.portfolio.positions]

    def get_trades(self) -> List[Trade]:
        return self.portfolio.trades

    def get_risk_metrics(self) -> RiskMetrics:
        return self.risk_manager.get_risk_metrics()

    def get_portfolio_value(self) -> float:
        return self.portfolio.portfolio_value

    def subscribe(self, types: Optional[Iterable[str]] = None) -> Subscription:
        return self.bus.subscribe(types)

    @property
    def status(self) -> Dict[str, Any]:
        return {
            "state": self._state.value,
            "analyzing": self._analyzing,
            "mode": self.settings.trading.mode,
            "pairs": self.settings.trading.pairs,
            "cycles": self.cycles,
            "last_cycle_at": self.last_cycle_at.isoformat() if self.last_cycle_at else None,
            "portfolio_value": self.portfolio.portfolio_value,
            "open_positions": self.portfolio.open_count,
            "trades": len(self.portfolio.trades),
            "circuit_breaker_active": self.risk_manager.is_circuit_breaker_active(),
            "strategies": self.strategies.names,
            "ai_enabled": self.ai_engine is not None,
            "market_collector": {
                "running": self.market_collector.is_running,
                "fetches": self.market_collector.fetch_count,
                "errors": self.market_collector.error_count,
            },
            "cache": self.cache.stats,
            "executions": {"succeeded": self.router.executed, "failed": self.router.failed},
        }


# ─── Factory ────────────────────────────────────────────────────

def build_engine(
    settings: Optional[AppSettings] = None,
    *,
    exchange: Optional[ExchangeClient] = None,
    reference_exchanges: Optional[Dict[str, ExchangeClient]] = None,
    sentiment_sources: Optional[Sequence[SentimentSource]] = None,
    inference_client: Optional[InferenceClient] = None,
    chain_executor: Optional[ChainExecutor] = None,
    store: Optional[LedgerStore] = None,
    strategies: Optional[StrategySet] = None,
    clock: Callable[[], datetime] = utc_now,
) -> TradingEngine:
    """Wire every component from settings; any argument overrides the default client."""
    settings = settings or get_settings()
    validate_settings(settings)
    pairs = settings.trading.pairs
    dc = settings.data_collection

    if exchange is None:
        exchange = CcxtExchange.from_settings(settings.exchange)
    if reference_exchanges is None:
        reference_exchanges = {
            name: CcxtExchange(name, timeout_ms=settings.exchange.timeout_ms)
            for name in settings.exchange.reference_exchanges
        }
    if sentiment_sources is None:
        sentiment_sources = [FearGreedSource(dc.fear_greed_url)]
        if dc.news_api_key:
            sentiment_sources.append(NewsSentimentSource(dc.news_api_url, dc.news_api_key))
    if inference_client is None and settings.ai.enabled and settings.ai.api_key:
        inference_client = GeminiInferenceClient(settings.ai)

    chain = settings.blockchain
    live = settings.trading.mode == "live"
    if chain_executor is None and live and (chain.use_dex_for_spot or chain.perpetual_exchange_address):
        chain_executor = Web3ChainExecutor.from_settings(chain)
    if store is None and settings.database.enabled:
        store = LedgerStore(settings.database.db_url, echo=settings.database.echo_sql)

    bus = EventBus(settings.event_queue_size)
    cache = MarketCache(dc.history_size)
    market_collector = MarketDataCollector(
        exchange, cache, bus, pairs, dc.price_update_interval, reference_exchanges
    )
    sentiment_collector = SentimentCollector(
        sentiment_sources, cache, bus, pairs, dc.sentiment_update_interval, dc.news_update_interval
    )
    portfolio = Portfolio(settings.trading.initial_capital)
    ai_engine = AIDecisionEngine(inference_client, pairs, settings) if inference_client else None
    resources: List[Any] = [exchange, *reference_exchanges.values()]
    if inference_client is not None:
        resources.append(inference_client)
    if chain_executor is not None:
        resources.append(chain_executor)

    return TradingEngine(
        settings=settings,
        bus=bus,
        cache=cache,
        market_collector=market_collector,
        sentiment_collector=sentiment_collector,
        technical=TechnicalAnalysisEngine(market_collector, bus, settings.indicators),
        strategies=strategies if strategies is not None else StrategySet(),
        portfolio=portfolio,
        risk_manager=RiskManager(portfolio, settings, clock),
        router=ExecutionRouter(
            portfolio, cache, settings,
            exchange=exchange if live else None,
            chain_executor=chain_executor,
        ),
        ai_engine=ai_engine,
        store=store,
        resources=resources,
        clock=clock,
    )
