"""
KAIJU TRADER — Risk Manager Module
Filters and sizes candidate signals against portfolio limits, runs the
daily-loss circuit breaker, and derives risk metrics from the ledger.
"""
import math
from datetime import date, datetime
from typing import Callable, Dict, Iterable, List, Optional, Sequence

import numpy as np

from kaiju_trader.config.settings import AppSettings, RiskSettings, get_settings
from kaiju_trader.data.models import (
    Position, PositionSide, RiskMetrics, SignalAction, TradingSignal,
)
from kaiju_trader.engines.portfolio import Portfolio
from kaiju_trader.utils.errors import RiskRejected
from kaiju_trader.utils.helpers import base_asset, safe_divide, start_of_utc_day, utc_now
from kaiju_trader.utils.logger import get_logger

logger = get_logger("risk_manager")

TRADING_DAYS_PER_YEAR = 252


class RiskManager:
    """
    Risk gate between signal generation and execution.

    `evaluate` applies, in order:
      0. reversal normalization (opposite signal on a held symbol -> CLOSE)
      1. one position per symbol (and per base asset when configured)
      2. sizing and the max-position clamp
      3. max open positions
      4. daily-loss circuit breaker
      5. per-symbol conflict resolution (highest confidence, ties -> no action)
      6. capacity: remaining slots and capital, highest confidence first
    """

    def __init__(
        self,
        portfolio: Portfolio,
        settings: Optional[AppSettings] = None,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.portfolio = portfolio
        self.settings = settings or get_settings()
        self.clock = clock
        self._breaker_day: Optional[date] = None
        self._current_day: date = clock().date()
        self.last_rejections: List[RiskRejected] = []

    # ─── Evaluation ─────────────────────────────────────────────

    def evaluate(
        self,
        candidate_signals: Iterable[TradingSignal],
        open_positions: Optional[Sequence[Position]] = None,
        risk_config: Optional[RiskSettings] = None,
        volatility: Optional[Dict[str, float]] = None,
    ) -> List[TradingSignal]:
        cfg = risk_config or self.settings.risk
        positions = list(self.portfolio.positions if open_positions is None else open_positions)
        held = {p.symbol: p for p in positions}
        self.last_rejections = []
        self.check_daily_reset()

        signals = [s for s in candidate_signals if s.action != SignalAction.HOLD]
        if cfg.min_signal_confidence > 0:
            signals = [
                s for s in signals
                if s.confidence >= cfg.min_signal_confidence
                or self._reject(s, "low_confidence", f"{s.confidence:.2f}")
            ]

        # 0. Reversal normalization / shorting policy
        normalized: List[TradingSignal] = []
        for s in signals:
            position = held.get(s.symbol)
            if position is not None and cfg.close_on_reversal and self._reverses(s, position):
                s = s.model_copy(update={"action": SignalAction.CLOSE})
            elif position is None and s.action == SignalAction.SELL and not cfg.allow_short:
                self._reject(s, "short_disabled")
                continue
            normalized.append(s)

        # 1. One open position per symbol
        held_bases = {base_asset(sym) for sym in held}
        step1: List[TradingSignal] = []
        for s in normalized:
            if s.action == SignalAction.CLOSE:
                if s.symbol not in held:
                    self._reject(s, "no_position_to_close")
                    continue
            elif s.symbol in held:
                self._reject(s, "position_exists")
                continue
            elif cfg.block_correlated_positions and base_asset(s.symbol) in held_bases:
                self._reject(s, "correlated_position", base_asset(s.symbol))
                continue
            step1.append(s)

        # 2. Sizing
        portfolio_value = self._portfolio_value(positions)
        available = self._available_fraction(positions, portfolio_value)
        max_size = self.max_position_size(cfg)
        step2: List[TradingSignal] = []
        for s in step1:
            if s.action == SignalAction.CLOSE:
                step2.append(s)
                continue
            sized = self._size(s, cfg, max_size, available, volatility or {})
            if sized is not None:
                step2.append(sized)

        # 3. Max open positions
        step3 = [
            s for s in step2
            if s.action == SignalAction.CLOSE
            or len(positions) < cfg.max_open_positions
            or self._reject(s, "max_open_positions", f"{len(positions)}/{cfg.max_open_positions}")
        ]

        # 4. Daily-loss circuit breaker
        breaker = self._update_circuit_breaker(positions, cfg)
        step4 = [
            s for s in step3
            if s.action == SignalAction.CLOSE
            or not breaker
            or self._reject(s, "daily_loss_limit")
        ]

        # 5. Conflict resolution per symbol
        step5 = self._resolve_conflicts(step4)

        # 6. Capacity
        approved = self._apply_capacity(step5, positions, cfg, available)

        logger.info("risk_evaluated", candidates=len(signals), approved=len(approved),
                    rejected=len(self.last_rejections))
        return approved

    @staticmethod
    def _reverses(signal: TradingSignal, position: Position) -> bool:
        if position.side == PositionSide.LONG:
            return signal.action == SignalAction.SELL
        return signal.action == SignalAction.BUY

    def _size(
        self,
        signal: TradingSignal,
        cfg: RiskSettings,
        max_size: float,
        available: float,
        volatility: Dict[str, float],
    ) -> Optional[TradingSignal]:
        size = signal.position_size
        if size is None:
            size = self.default_position_size(signal, cfg, volatility.get(signal.symbol))
        if size is None or math.isnan(size) or size <= 0:
            self._reject(signal, "invalid_size", str(size))
            return None

        if size > max_size:
            logger.info("position_size_clamped", symbol=signal.symbol,
                        requested=round(size, 4), max=max_size)
            size = max_size

        leverage = max(signal.leverage or 1.0, 1.0)
        if size / leverage > available:
            size = available * leverage
        if size < cfg.min_position_size:
            self._reject(signal, "insufficient_capital", f"size={size:.4f}")
            return None

        if size == signal.position_size:
            return signal
        return signal.model_copy(update={"position_size": size})

    def default_position_size(
        self, signal: TradingSignal, cfg: RiskSettings, volatility: Optional[float] = None
    ) -> float:
        """Size for signals that carry no hint, per the configured method."""
        t = self.settings.trading
        cap = self.max_position_size(cfg)
        method = cfg.position_sizing_method
        if method == "kelly":
            p = signal.confidence
            b = safe_divide(t.take_profit_percentage, t.stop_loss_percentage, 1.0)
            kelly = (p * b - (1 - p)) / b
            # Quarter Kelly
            return max(0.0, min(kelly * 0.25, cap))
        if method == "volatility":
            vol = volatility or cfg.default_volatility
            size = safe_divide(0.02, vol * t.stop_loss_percentage, cap)
            return min(size, cap)
        return cap

    def max_position_size(self, cfg: Optional[RiskSettings] = None) -> float:
        """Per-trade cap: the risk override when set, else the trading limit."""
        cfg = cfg or self.settings.risk
        if cfg.max_position_size is not None:
            return cfg.max_position_size
        return self.settings.trading.max_position_size

    def _resolve_conflicts(self, signals: List[TradingSignal]) -> List[TradingSignal]:
        by_symbol: Dict[str, List[TradingSignal]] = {}
        for s in signals:
            by_symbol.setdefault(s.symbol, []).append(s)

        resolved: List[TradingSignal] = []
        for symbol, group in by_symbol.items():
            if len(group) == 1:
                resolved.append(group[0])
                continue
            top = max(s.confidence for s in group)
            leaders = [s for s in group if s.confidence == top]
            if len(leaders) == 1:
                winner = leaders[0]
            elif all(s.action == SignalAction.CLOSE for s in leaders):
                winner = leaders[0]
            else:
                for s in group:
                    self._reject(s, "tied_conflict", f"confidence={top:.3f}")
                continue
            for s in group:
                if s is not winner:
                    self._reject(s, "outranked", f"by {winner.strategy}")
            resolved.append(winner)
        return resolved

    def _apply_capacity(
        self,
        signals: List[TradingSignal],
        positions: List[Position],
        cfg: RiskSettings,
        available: float,
    ) -> List[TradingSignal]:
        closes = [s for s in signals if s.action == SignalAction.CLOSE]
        openings = sorted(
            (s for s in signals if s.action != SignalAction.CLOSE),
            key=lambda s: s.confidence,
            reverse=True,
        )
        slots = cfg.max_open_positions - len(positions)
        remaining = available
        admitted: List[TradingSignal] = []
        for s in openings:
            if slots <= 0:
                self._reject(s, "max_open_positions", "no slots left this cycle")
                continue
            leverage = max(s.leverage or 1.0, 1.0)
            margin = (s.position_size or 0.0) / leverage
            if margin > remaining:
                shrunk = remaining * leverage
                if shrunk < cfg.min_position_size:
                    self._reject(s, "insufficient_capital", "capital committed this cycle")
                    continue
                s = s.model_copy(update={"position_size": shrunk})
                margin = remaining
            admitted.append(s)
            remaining -= margin
            slots -= 1
        return closes + admitted

    def _reject(self, signal: TradingSignal, reason: str, detail: str = "") -> bool:
        rejection = RiskRejected(reason, signal.symbol, detail)
        self.last_rejections.append(rejection)
        logger.info("signal_rejected", symbol=signal.symbol, action=signal.action.value,
                    strategy=signal.strategy, reason=reason, detail=detail)
        return False

    # ─── Capital & daily loss ───────────────────────────────────

    def _portfolio_value(self, positions: Sequence[Position]) -> float:
        return (
            self.portfolio.initial_capital
            + self.portfolio.realized_pnl()
            + sum(p.unrealized_pnl() for p in positions)
        )

    def _available_fraction(self, positions: Sequence[Position], portfolio_value: float) -> float:
        committed = sum(p.notional / max(p.leverage, 1.0) for p in positions)
        return max(0.0, safe_divide(portfolio_value - committed, portfolio_value))

    def daily_pnl(self, positions: Optional[Sequence[Position]] = None) -> float:
        """Realized P&L since the last UTC midnight plus open unrealized P&L."""
        positions = self.portfolio.positions if positions is None else positions
        day_start = start_of_utc_day(self.clock())
        return self.portfolio.realized_pnl(since=day_start) + sum(
            p.unrealized_pnl() for p in positions
        )

    def daily_start_value(self) -> float:
        day_start = start_of_utc_day(self.clock())
        return self.portfolio.initial_capital + self.portfolio.realized_pnl(before=day_start)

    def _update_circuit_breaker(self, positions: Sequence[Position], cfg: RiskSettings) -> bool:
        today = self.clock().date()
        if self._breaker_day == today:
            return True
        loss = -self.daily_pnl(positions)
        base = self.daily_start_value()
        if base > 0 and loss / base > cfg.max_daily_loss:
            self._breaker_day = today
            logger.warning("circuit_breaker_tripped", daily_loss=round(loss, 2),
                           limit_pct=cfg.max_daily_loss * 100)
            return True
        return False

    def check_daily_reset(self) -> bool:
        """Clear the breaker at the UTC day boundary. True when a new day began."""
        today = self.clock().date()
        if today == self._current_day:
            return False
        self._current_day = today
        if self._breaker_day is not None and self._breaker_day != today:
            self._breaker_day = None
        logger.info("daily_risk_reset", day=today.isoformat(),
                    start_value=round(self.daily_start_value(), 2))
        return True

    def is_circuit_breaker_active(self) -> bool:
        return self._breaker_day == self.clock().date()

    # ─── Metrics ────────────────────────────────────────────────

    def get_risk_metrics(self) -> RiskMetrics:
        """Pure read of the ledger; never raises."""
        try:
            return self._compute_metrics()
        except Exception as e:
            logger.error("risk_metrics_failed", error=str(e))
            return RiskMetrics(portfolio_value=self.portfolio.initial_capital)

    def _compute_metrics(self) -> RiskMetrics:
        positions = self.portfolio.positions
        closed = [t.pnl for t in self.portfolio.closed_trades]
        wins = [p for p in closed if p > 0]
        losses = [abs(p) for p in closed if p < 0]

        average_win = float(np.mean(wins)) if wins else 0.0
        average_loss = float(np.mean(losses)) if losses else 0.0
        daily = self.daily_pnl(positions) if (closed or positions) else 0.0

        return RiskMetrics(
            portfolio_value=self.portfolio.portfolio_value,
            daily_pnl=daily,
            daily_pnl_percentage=safe_divide(daily, self.daily_start_value()) * 100,
            open_positions=len(positions),
            max_drawdown=self._max_drawdown(closed),
            sharpe_ratio=self._sharpe(closed),
            win_rate=safe_divide(len(wins), len(closed)) * 100,
            average_win=average_win,
            average_loss=average_loss,
            risk_reward_ratio=safe_divide(average_win, average_loss),
        )

    def _max_drawdown(self, pnls: List[float]) -> float:
        """Peak-to-trough of the realized equity curve, in percent."""
        equity = peak = self.portfolio.initial_capital
        worst = 0.0
        for pnl in pnls:
            equity += pnl
            peak = max(peak, equity)
            worst = max(worst, safe_divide(peak - equity, peak))
        return worst * 100

    def _sharpe(self, pnls: List[float]) -> float:
        if len(pnls) < 2:
            return 0.0
        returns = np.array(pnls) / self.portfolio.initial_capital
        std = float(returns.std())
        if std == 0:
            return 0.0
        return float(returns.mean() * TRADING_DAYS_PER_YEAR / (std * math.sqrt(TRADING_DAYS_PER_YEAR)))

    @property
    def risk_report(self) -> Dict[str, object]:
        metrics = self.get_risk_metrics()
        return {
            **metrics.model_dump(),
            "circuit_breaker_active": self.is_circuit_breaker_active(),
            "available_capital": round(self.portfolio.available_capital(), 2),
        }
