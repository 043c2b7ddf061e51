"""
KAIJU TRADER — Unit Tests for the Risk Manager
"""
import math
import pytest
import numpy as np
from datetime import datetime, timedelta, timezone

from kaiju_trader.config.settings import RiskSettings, validate_settings
from kaiju_trader.data.models import Position, PositionSide, SignalAction, Trade, TradeSide
from kaiju_trader.engines.portfolio import Portfolio
from kaiju_trader.engines.risk_manager import RiskManager, TRADING_DAYS_PER_YEAR
from kaiju_trader.utils.errors import ConfigurationError

DAY = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)


class Clock:
    def __init__(self, now=DAY):
        self.now = now

    def __call__(self):
        return self.now


def open_position(portfolio, symbol, price=100.0, quantity=5.0, side=PositionSide.LONG, when=DAY):
    position = Position(
        id=f"pos-{symbol}", symbol=symbol, side=side, entry_price=price, current_price=price,
        quantity=quantity, opened_at=when,
    )
    trade = Trade(
        id=f"pos-{symbol}", symbol=symbol,
        side=TradeSide.BUY if side == PositionSide.LONG else TradeSide.SELL,
        price=price, quantity=quantity, timestamp=when, position_id=position.id,
    )
    portfolio.open_position(position, trade)
    return position


def closed_trade(pnl, when=DAY, symbol="BTC/USDT"):
    return Trade(id=f"t-{pnl}-{when.isoformat()}", symbol=symbol, side=TradeSide.SELL,
                 price=100.0, quantity=1.0, timestamp=when, pnl=pnl)


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def portfolio(settings):
    return Portfolio(settings.trading.initial_capital)


@pytest.fixture
def risk(portfolio, settings, clock):
    return RiskManager(portfolio, settings, clock)


def reasons(risk):
    return [r.reason for r in risk.last_rejections]


# ─── Filtering ──────────────────────────────────────────────────

class TestFiltering:
    def test_hold_dropped(self, risk, make_signal):
        assert risk.evaluate([make_signal(action=SignalAction.HOLD)]) == []

    def test_buy_approved(self, risk, make_signal):
        approved = risk.evaluate([make_signal(position_size=0.05)])
        assert len(approved) == 1
        assert approved[0].position_size == 0.05

    def test_existing_position_rejected(self, risk, portfolio, make_signal):
        open_position(portfolio, "BTC/USDT")
        assert risk.evaluate([make_signal(action=SignalAction.BUY)]) == []
        assert reasons(risk) == ["position_exists"]

    def test_close_without_position_rejected(self, risk, make_signal):
        assert risk.evaluate([make_signal(action=SignalAction.CLOSE)]) == []
        assert reasons(risk) == ["no_position_to_close"]

    def test_reversal_becomes_close(self, risk, portfolio, make_signal):
        open_position(portfolio, "BTC/USDT")
        approved = risk.evaluate([make_signal(action=SignalAction.SELL)])
        assert [s.action for s in approved] == [SignalAction.CLOSE]

    def test_short_disabled(self, risk, make_signal):
        cfg = RiskSettings(allow_short=False)
        assert risk.evaluate([make_signal(action=SignalAction.SELL)], risk_config=cfg) == []
        assert reasons(risk) == ["short_disabled"]

    def test_correlated_position_blocked(self, risk, portfolio, make_signal):
        open_position(portfolio, "BTC/USDT")
        assert risk.evaluate([make_signal(symbol="BTC/USDC")]) == []
        assert reasons(risk) == ["correlated_position"]

    def test_min_confidence(self, risk, make_signal):
        cfg = RiskSettings(min_signal_confidence=0.6)
        approved = risk.evaluate(
            [make_signal(confidence=0.5), make_signal(symbol="ETH/USDT", confidence=0.7)],
            risk_config=cfg,
        )
        assert [s.symbol for s in approved] == ["ETH/USDT"]
        assert reasons(risk) == ["low_confidence"]


# ─── Sizing ─────────────────────────────────────────────────────

class TestSizing:
    def test_oversized_hint_clamped(self, risk, make_signal):
        approved = risk.evaluate([make_signal(position_size=0.5)])
        assert approved[0].position_size == pytest.approx(0.1)

    def test_risk_config_caps_size(self, risk, make_signal):
        cfg = RiskSettings(max_position_size=0.04)
        approved = risk.evaluate(
            [make_signal(position_size=0.5), make_signal("ETH/USDT", position_size=None)],
            risk_config=cfg,
        )
        assert {s.symbol: s.position_size for s in approved} == {
            "BTC/USDT": pytest.approx(0.04), "ETH/USDT": pytest.approx(0.04),
        }
        # without an override the trading limit applies
        assert risk.max_position_size() == pytest.approx(0.1)

    def test_risk_cap_validated(self, settings):
        settings.risk.max_position_size = 1.5
        with pytest.raises(ConfigurationError):
            validate_settings(settings)

    def test_fixed_default(self, risk, make_signal):
        approved = risk.evaluate([make_signal(position_size=None)])
        assert approved[0].position_size == pytest.approx(0.1)

    def test_kelly(self, risk, settings, make_signal):
        cfg = RiskSettings(position_sizing_method="kelly")
        approved = risk.evaluate([make_signal(position_size=None, confidence=0.5)], risk_config=cfg)
        b = settings.trading.take_profit_percentage / settings.trading.stop_loss_percentage
        expected = (0.5 * b - 0.5) / b * 0.25
        assert approved[0].position_size == pytest.approx(expected)

    def test_kelly_negative_edge_rejected(self, risk, make_signal):
        cfg = RiskSettings(position_sizing_method="kelly")
        assert risk.evaluate([make_signal(position_size=None, confidence=0.2)], risk_config=cfg) == []
        assert reasons(risk) == ["invalid_size"]

    def test_volatility_scales_down(self, risk, make_signal):
        cfg = RiskSettings(position_sizing_method="volatility")
        signal = make_signal(position_size=None)
        calm = risk.default_position_size(signal, cfg, volatility=0.01)
        wild = risk.default_position_size(signal, cfg, volatility=25.0)
        assert calm == pytest.approx(0.1)
        assert wild == pytest.approx(0.02 / (25.0 * 0.02))
        assert wild < calm

    def test_shrinks_to_available_capital(self, risk, portfolio, make_signal):
        # 9500 of 10000 committed
        open_position(portfolio, "ETH/USDT", price=100.0, quantity=95.0)
        approved = risk.evaluate([make_signal(position_size=0.1)])
        assert approved[0].position_size == pytest.approx(0.05)

    def test_insufficient_capital(self, risk, portfolio, make_signal):
        open_position(portfolio, "ETH/USDT", price=100.0, quantity=99.9)
        assert risk.evaluate([make_signal(position_size=0.1)]) == []
        assert reasons(risk) == ["insufficient_capital"]


# ─── Limits ─────────────────────────────────────────────────────

class TestLimits:
    def test_max_open_positions(self, risk, portfolio, make_signal):
        for symbol in ("BTC/USDT", "ETH/USDT", "SOL/USDT"):
            open_position(portfolio, symbol, quantity=1.0)
        assert risk.evaluate([make_signal(symbol="ADA/USDT")]) == []
        assert reasons(risk) == ["max_open_positions"]

    def test_capacity_ranks_by_confidence(self, risk, portfolio, make_signal):
        open_position(portfolio, "BTC/USDT", quantity=1.0)
        approved = risk.evaluate([
            make_signal(symbol="ETH/USDT", confidence=0.6, position_size=0.05),
            make_signal(symbol="SOL/USDT", confidence=0.9, position_size=0.05),
            make_signal(symbol="ADA/USDT", confidence=0.8, position_size=0.05),
        ])
        assert [s.symbol for s in approved] == ["SOL/USDT", "ADA/USDT"]
        assert "max_open_positions" in reasons(risk)

    def test_highest_confidence_wins(self, risk, make_signal):
        approved = risk.evaluate([
            make_signal(action=SignalAction.BUY, confidence=0.6, strategy="a"),
            make_signal(action=SignalAction.SELL, confidence=0.8, strategy="b"),
        ])
        assert [(s.action, s.strategy) for s in approved] == [(SignalAction.SELL, "b")]
        assert reasons(risk) == ["outranked"]

    def test_tie_means_no_action(self, risk, make_signal):
        approved = risk.evaluate([
            make_signal(action=SignalAction.BUY, confidence=0.7, strategy="a"),
            make_signal(action=SignalAction.SELL, confidence=0.7, strategy="b"),
        ])
        assert approved == []
        assert reasons(risk) == ["tied_conflict", "tied_conflict"]

    def test_tied_closes_collapse(self, risk, portfolio, make_signal):
        open_position(portfolio, "BTC/USDT")
        approved = risk.evaluate([
            make_signal(action=SignalAction.CLOSE, confidence=0.7, strategy="a"),
            make_signal(action=SignalAction.SELL, confidence=0.7, strategy="b"),
        ])
        assert [s.action for s in approved] == [SignalAction.CLOSE]


# ─── Circuit breaker ────────────────────────────────────────────

class TestCircuitBreaker:
    def test_trips_and_resets_next_day(self, portfolio, settings, clock, make_signal):
        portfolio.restore([], [closed_trade(-600.0, DAY - timedelta(hours=1))])
        risk = RiskManager(portfolio, settings, clock)

        assert risk.evaluate([make_signal()]) == []
        assert reasons(risk) == ["daily_loss_limit"]
        assert risk.is_circuit_breaker_active()

        clock.now = DAY + timedelta(days=1)
        assert risk.check_daily_reset() is True
        assert not risk.is_circuit_breaker_active()
        assert len(risk.evaluate([make_signal()])) == 1

    def test_latch_holds_after_recovery(self, portfolio, settings, clock, make_signal):
        portfolio.restore([], [closed_trade(-600.0, DAY - timedelta(hours=1))])
        risk = RiskManager(portfolio, settings, clock)
        risk.evaluate([make_signal()])
        portfolio._trades.append(closed_trade(700.0, DAY))
        assert risk.evaluate([make_signal()]) == []
        assert reasons(risk) == ["daily_loss_limit"]

    def test_closes_pass_while_tripped(self, portfolio, settings, clock, make_signal):
        held = Position(id="p1", symbol="BTC/USDT", side=PositionSide.LONG, entry_price=100.0,
                        current_price=100.0, quantity=1.0, opened_at=DAY)
        portfolio.restore([held], [closed_trade(-600.0, DAY - timedelta(hours=1), "ETH/USDT")])
        risk = RiskManager(portfolio, settings, clock)
        approved = risk.evaluate([
            make_signal(action=SignalAction.CLOSE),
            make_signal(symbol="SOL/USDT"),
        ])
        assert [s.action for s in approved] == [SignalAction.CLOSE]
        assert "daily_loss_limit" in reasons(risk)

    def test_yesterdays_loss_does_not_trip(self, portfolio, settings, clock, make_signal):
        portfolio.restore([], [closed_trade(-600.0, DAY - timedelta(days=1))])
        risk = RiskManager(portfolio, settings, clock)
        assert len(risk.evaluate([make_signal()])) == 1


# ─── Invariants under random input ──────────────────────────────

class TestRandomizedInvariants:
    SYMBOLS = ["BTC/USDT", "ETH/USDT", "SOL/USDT", "ADA/USDT", "XRP/USDT"]
    ACTIONS = [SignalAction.BUY, SignalAction.SELL, SignalAction.CLOSE, SignalAction.HOLD]

    def test_one_position_per_symbol(self, settings, make_signal):
        np.random.seed(42)
        for _ in range(200):
            portfolio = Portfolio(settings.trading.initial_capital)
            held = {str(s) for s in np.random.choice(self.SYMBOLS, size=np.random.randint(0, 4), replace=False)}
            for symbol in held:
                open_position(portfolio, symbol, quantity=2.0)
            risk = RiskManager(portfolio, settings, Clock())

            signals = [
                make_signal(
                    symbol=str(np.random.choice(self.SYMBOLS)),
                    action=self.ACTIONS[np.random.randint(len(self.ACTIONS))],
                    confidence=round(float(np.random.uniform(0.1, 1.0)), 1),
                    position_size=float(np.random.choice([0.01, 0.05, 0.1, 0.4])),
                    strategy=f"s{i}",
                )
                for i in range(np.random.randint(1, 12))
            ]
            approved = risk.evaluate(signals)

            symbols = [s.symbol for s in approved]
            assert len(symbols) == len(set(symbols))
            openings = [s for s in approved if s.action != SignalAction.CLOSE]
            closes = [s for s in approved if s.action == SignalAction.CLOSE]
            assert all(s.symbol not in held for s in openings)
            assert all(s.symbol in held for s in closes)
            assert len(held) + len(openings) <= settings.risk.max_open_positions
            for s in openings:
                assert settings.risk.min_position_size <= s.position_size <= settings.trading.max_position_size


# ─── Metrics ────────────────────────────────────────────────────

class TestMetrics:
    def test_empty_ledger(self, risk, settings):
        m = risk.get_risk_metrics()
        assert m.portfolio_value == settings.trading.initial_capital
        assert m.daily_pnl == 0.0
        assert m.win_rate == 0.0
        assert m.sharpe_ratio == 0.0
        assert m.max_drawdown == 0.0
        assert m.open_positions == 0

    def test_closed_trades(self, portfolio, settings, clock):
        pnls = [100.0, -50.0, 200.0]
        portfolio.restore([], [closed_trade(p, DAY - timedelta(minutes=10 - i)) for i, p in enumerate(pnls)])
        m = RiskManager(portfolio, settings, clock).get_risk_metrics()

        assert m.portfolio_value == pytest.approx(10250.0)
        assert m.daily_pnl == pytest.approx(250.0)
        assert m.win_rate == pytest.approx(200 / 3)
        assert m.average_win == pytest.approx(150.0)
        assert m.average_loss == pytest.approx(50.0)
        assert m.risk_reward_ratio == pytest.approx(3.0)
        assert m.max_drawdown == pytest.approx(50 / 10100 * 100)

        returns = np.array(pnls) / 10000.0
        expected = returns.mean() * TRADING_DAYS_PER_YEAR / (returns.std() * math.sqrt(TRADING_DAYS_PER_YEAR))
        assert m.sharpe_ratio == pytest.approx(expected)

    def test_open_position_counts_toward_daily(self, risk, portfolio):
        open_position(portfolio, "BTC/USDT", price=100.0, quantity=10.0)
        portfolio.mark("BTC/USDT", 90.0)
        m = risk.get_risk_metrics()
        assert m.open_positions == 1
        assert m.daily_pnl == pytest.approx(-100.0)
        assert m.daily_pnl_percentage == pytest.approx(-1.0)

    def test_metrics_never_raise(self, risk, monkeypatch, settings):
        def broken():
            raise RuntimeError("corrupt ledger")
        monkeypatch.setattr(risk, "_compute_metrics", broken)
        assert risk.get_risk_metrics().portfolio_value == settings.trading.initial_capital

    def test_risk_report(self, risk):
        report = risk.risk_report
        assert report["circuit_breaker_active"] is False
        assert report["available_capital"] == 10000.0
