"""
KAIJU TRADER — Unit Tests for the AI Decision Engine
"""
import json
import pytest

from kaiju_trader.data.models import MarketCondition, RiskLevel, SignalAction
from kaiju_trader.engines.ai_decision import AIDecisionEngine, extract_json_object
from kaiju_trader.utils.errors import DecisionUnavailable


def response(signals=None, **extra):
    body = {
        "signals": signals or [],
        "reasoning": "Trend intact",
        "marketCondition": "BULLISH",
        "confidence": 0.72,
        "suggestedActions": [{"symbol": "BTC/USDT", "action": "Watch 51000", "rationale": "resistance"}],
        "riskAssessment": {"level": "High", "factors": ["funding elevated"]},
    }
    body.update(extra)
    return json.dumps(body)


@pytest.fixture
def engine_for(settings):
    def _make(client):
        return AIDecisionEngine(client, settings.trading.pairs, settings)
    return _make


class TestExtractJson:
    def test_plain(self):
        assert extract_json_object('{"a": 1}') == {"a": 1}

    def test_fenced_with_prose(self):
        text = 'Here you go:\n```json\n{"a": {"b": "}"}}\n```\nGood luck'
        assert extract_json_object(text) == {"a": {"b": "}"}}

    def test_missing(self):
        with pytest.raises(ValueError):
            extract_json_object("no json here")

    def test_unbalanced(self):
        with pytest.raises(ValueError):
            extract_json_object('{"a": {"b": 1}')


class TestDecide:
    @pytest.mark.asyncio
    async def test_parses_decision(self, engine_for, make_inference, make_analysis):
        client = make_inference(response([
            {"symbol": "BTC/USDT", "action": "buy", "confidence": 0.8, "reason": "breakout",
             "entryPrice": 50100, "targetPrice": 52500, "stopLoss": 49000, "positionSize": 0.05},
        ]))
        engine = engine_for(client)
        decision = await engine.decide(make_analysis())

        assert decision.market_condition == MarketCondition.BULLISH
        assert decision.confidence == pytest.approx(0.72)
        assert decision.risk_assessment.level == RiskLevel.HIGH
        assert decision.suggested_actions[0].action == "Watch 51000"
        signal = decision.signals[0]
        assert signal.action == SignalAction.BUY
        assert signal.strategy == "ai"
        assert signal.position_size == 0.05
        assert "RSI: 50.00" in client.prompts[0]
        assert "No open positions" in client.prompts[0]

    @pytest.mark.asyncio
    async def test_drops_unknown_symbol_and_action(self, engine_for, make_inference, make_analysis):
        client = make_inference(response([
            {"symbol": "DOGE/USDT", "action": "BUY", "confidence": 0.9},
            {"symbol": "BTC/USDT", "action": "YOLO", "confidence": 0.9},
            {"symbol": "BTC/USDT", "action": "HOLD", "confidence": 0.4},
        ]))
        decision = await engine_for(client).decide(make_analysis())
        assert [(s.symbol, s.action) for s in decision.signals] == [("BTC/USDT", SignalAction.HOLD)]

    @pytest.mark.asyncio
    async def test_signals_for_other_pairs_dropped(self, engine_for, make_inference, make_analysis):
        client = make_inference(response([
            {"symbol": "ETH/USDT", "action": "BUY", "confidence": 0.8, "entryPrice": 3000, "stopLoss": 2960},
            {"symbol": "SOL/USDT", "action": "SELL", "confidence": 0.7},
            {"symbol": "BTC/USDT", "action": "BUY", "confidence": 0.6, "stopLoss": 49500},
        ]))
        decision = await engine_for(client).decide(make_analysis(price=50000.0))
        assert [s.symbol for s in decision.signals] == ["BTC/USDT"]
        assert "Only emit signals for BTC/USDT" in client.prompts[0]

    @pytest.mark.asyncio
    async def test_unknown_condition_defaults_neutral(self, engine_for, make_inference, make_analysis):
        client = make_inference(response(marketCondition="sideways", riskAssessment="n/a"))
        decision = await engine_for(client).decide(make_analysis())
        assert decision.market_condition == MarketCondition.NEUTRAL
        assert decision.risk_assessment.level == RiskLevel.MEDIUM

    @pytest.mark.asyncio
    async def test_timeout(self, engine_for, make_inference, make_analysis):
        engine = engine_for(make_inference(delay=1.0))
        with pytest.raises(DecisionUnavailable):
            await engine.decide(make_analysis())
        assert engine.failures == 1

    @pytest.mark.asyncio
    async def test_unparseable(self, engine_for, make_inference, make_analysis):
        engine = engine_for(make_inference("I would rather not say"))
        with pytest.raises(DecisionUnavailable):
            await engine.decide(make_analysis())
        assert engine.calls == 1 and engine.failures == 1

    @pytest.mark.asyncio
    async def test_client_failure(self, engine_for, make_inference, make_analysis):
        class Broken(make_inference):
            async def infer(self, system_prompt, prompt):
                raise ConnectionResetError("reset by peer")

        with pytest.raises(DecisionUnavailable):
            await engine_for(Broken()).decide(make_analysis())


class TestEvaluateSignal:
    def _signal(self, make_signal, **fields):
        return make_signal(strategy="ai", **fields)

    def test_accepts_near_market(self, engine_for, make_inference, make_signal, make_market):
        engine = engine_for(make_inference())
        signal = self._signal(make_signal, entry_price=50500.0, stop_loss=49000.0)
        assert engine.evaluate_signal(signal, make_market(price=50000.0)) is signal

    def test_rejects_far_entry(self, engine_for, make_inference, make_signal, make_market):
        engine = engine_for(make_inference())
        signal = self._signal(make_signal, entry_price=52000.0)
        assert engine.evaluate_signal(signal, make_market(price=50000.0)) is None

    def test_rejects_far_stop(self, engine_for, make_inference, make_signal, make_market):
        engine = engine_for(make_inference())
        signal = self._signal(make_signal, entry_price=50000.0, stop_loss=47000.0)
        assert engine.evaluate_signal(signal, make_market(price=50000.0)) is None

    def test_hold_passes(self, engine_for, make_inference, make_signal, make_market):
        engine = engine_for(make_inference())
        signal = self._signal(make_signal, action=SignalAction.HOLD, entry_price=1.0)
        assert engine.evaluate_signal(signal, make_market(price=50000.0)) is signal

    def test_system_prompt_carries_limits(self, engine_for, make_inference):
        prompt = engine_for(make_inference()).system_prompt()
        assert "Maximum position size: 10% of capital" in prompt
        assert "Maximum open positions: 3" in prompt
