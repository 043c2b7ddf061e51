"""
KAIJU TRADER — AI Decision Engine
Prompts a generative model with the market snapshot and parses its JSON
answer into an AIDecision. AI signals are advisory: they go through the
same risk checks as strategy signals.
"""
import asyncio
import json
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Sequence

import aiohttp
from pydantic import ValidationError

from kaiju_trader.config.settings import AISettings, AppSettings, get_settings
from kaiju_trader.data.models import (
    AIDecision, MarketAnalysis, MarketCondition, MarketData, Position, RiskLevel, RiskMetrics,
    SignalAction, TradingSignal,
)
from kaiju_trader.utils.errors import DecisionUnavailable
from kaiju_trader.utils.helpers import clamp, stable_id
from kaiju_trader.utils.logger import get_logger

logger = get_logger("ai_decision")


class InferenceClient(ABC):
    """Text-in, text-out model capability."""

    @abstractmethod
    async def infer(self, system_prompt: str, prompt: str) -> str:
        pass

    async def close(self) -> None:
        pass


class GeminiInferenceClient(InferenceClient):
    """Gemini generateContent over REST."""

    def __init__(self, settings: Optional[AISettings] = None):
        self.settings = settings or get_settings().ai
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None:
            timeout = aiohttp.ClientTimeout(total=self.settings.timeout_seconds)
            self._session = aiohttp.ClientSession(timeout=timeout)
        return self._session

    async def infer(self, system_prompt: str, prompt: str) -> str:
        s = self.settings
        url = f"{s.base_url}/models/{s.model}:generateContent"
        payload = {
            "systemInstruction": {"parts": [{"text": system_prompt}]},
            "contents": [{"role": "user", "parts": [{"text": prompt}]}],
            "generationConfig": {
                "temperature": s.temperature,
                "topK": 1,
                "topP": 0.95,
                "maxOutputTokens": s.max_output_tokens,
            },
        }
        session = await self._get_session()
        try:
            async with session.post(url, params={"key": s.api_key}, json=payload) as resp:
                if resp.status != 200:
                    body = await resp.text()
                    raise DecisionUnavailable(f"Inference HTTP {resp.status}: {body[:200]}")
                data = await resp.json()
        except aiohttp.ClientError as e:
            raise DecisionUnavailable(f"Inference request failed: {e}") from e

        try:
            parts = data["candidates"][0]["content"]["parts"]
        except (KeyError, IndexError, TypeError) as e:
            raise DecisionUnavailable("Inference response had no candidates") from e
        return "".join(part.get("text", "") for part in parts)

    async def close(self) -> None:
        if self._session:
            await self._session.close()
            self._session = None


def extract_json_object(text: str) -> Dict[str, Any]:
    """Parse the first balanced {...} object in text."""
    start = text.find("{")
    if start == -1:
        raise ValueError("No JSON object in response")

    depth = 0
    in_string = False
    escaped = False
    for i in range(start, len(text)):
        ch = text[i]
        if in_string:
            if escaped:
                escaped = False
            elif ch == "\\":
                escaped = True
            elif ch == '"':
                in_string = False
            continue
        if ch == '"':
            in_string = True
        elif ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return json.loads(text[start:i + 1])
    raise ValueError("Unbalanced JSON object in response")


class AIDecisionEngine:
    """Builds prompts, calls the InferenceClient under a timeout, parses the answer."""

    def __init__(
        self,
        client: InferenceClient,
        symbols: Sequence[str],
        settings: Optional[AppSettings] = None,
    ):
        self.client = client
        self.symbols = set(symbols)
        self.settings = settings or get_settings()
        self.calls = 0
        self.failures = 0

    # ─── Prompts ────────────────────────────────────────────────

    def system_prompt(self) -> str:
        t = self.settings.trading
        r = self.settings.risk
        return f"""You are an expert cryptocurrency trading assistant. Analyze market data, technical indicators and sentiment to make trading decisions.

Responsibilities:
1. Analyze market conditions comprehensively
2. Generate trading signals with appropriate risk management
3. Consider current positions and portfolio risk
4. Give clear reasoning for every recommendation
5. Prioritize capital preservation over aggressive gains

Trading rules:
- Maximum position size: {(r.max_position_size or t.max_position_size) * 100:.0f}% of capital per trade
- Stop loss: {t.stop_loss_percentage * 100:.1f}% maximum loss per position
- Take profit: target {t.take_profit_percentage * 100:.1f}% gain per position
- Maximum open positions: {r.max_open_positions}
- Daily loss limit: {r.max_daily_loss * 100:.1f}%

Answer with a single JSON object in this format:
{{
  "signals": [
    {{
      "symbol": "BTC/USDT",
      "action": "BUY|SELL|HOLD",
      "confidence": 0.0-1.0,
      "reason": "Brief explanation",
      "entryPrice": 50000,
      "targetPrice": 52500,
      "stopLoss": 49000,
      "positionSize": 0.1
    }}
  ],
  "reasoning": "Detailed market analysis",
  "marketCondition": "bullish|bearish|neutral|volatile",
  "confidence": 0.0-1.0,
  "suggestedActions": [
    {{"symbol": "BTC/USDT", "action": "Monitor for breakout above 51000", "rationale": "Explanation"}}
  ],
  "riskAssessment": {{"level": "low|medium|high", "factors": ["List of risk factors"]}}
}}"""

    def build_prompt(
        self,
        analysis: MarketAnalysis,
        positions: Sequence[Position] = (),
        metrics: Optional[RiskMetrics] = None,
    ) -> str:
        ind = analysis.technical_indicators
        sent = analysis.sentiment_data
        market_lines = "\n".join(
            f"{md.symbol} [{md.source}]: Price: ${md.price}, Volume: {md.volume}, "
            f"24h Change: {md.change_24h}%"
            for md in analysis.market_data
        )
        source_lines = "\n".join(f"- {name}: {score:.2f}" for name, score in sent.sources.items())
        if positions:
            position_lines = "\n".join(
                f"{p.symbol}: {p.side.value} {p.quantity} @ ${p.entry_price}, "
                f"PnL: {p.pnl_percentage:.2f}%"
                for p in positions
            )
        else:
            position_lines = "No open positions"
        metrics = metrics or RiskMetrics()
        news_lines = ""
        if analysis.news_data:
            news_lines = "\nRECENT NEWS:\n" + "\n".join(
                f"- {n.title} (sentiment {n.sentiment:.2f})" for n in analysis.news_data[:5]
            ) + "\n"

        return f"""Analyze the following market data and provide trading recommendations:

MARKET DATA:
{market_lines}

TECHNICAL INDICATORS:
- RSI: {ind.rsi:.2f}
- MACD: Value: {ind.macd.value:.4f}, Signal: {ind.macd.signal:.4f}, Histogram: {ind.macd.histogram:.4f}
- SMA20: {ind.sma20}, SMA50: {ind.sma50}
- EMA12: {ind.ema12}, EMA26: {ind.ema26}
- Bollinger Bands: Upper: {ind.bbands.upper}, Middle: {ind.bbands.middle}, Lower: {ind.bbands.lower}
- ATR: {ind.atr}

SENTIMENT ANALYSIS:
- Overall Score: {sent.score:.2f} (-1 to 1)
{source_lines or "- No sources"}
- Mention Volume: {sent.volume}
{news_lines}
CURRENT POSITIONS:
{position_lines}

RISK METRICS:
- Portfolio Value: ${metrics.portfolio_value:.2f}
- Daily PnL: {metrics.daily_pnl_percentage:.2f}%
- Open Positions: {metrics.open_positions}/{self.settings.risk.max_open_positions}
- Win Rate: {metrics.win_rate:.1f}%
- Risk/Reward Ratio: {metrics.risk_reward_ratio:.2f}

Only emit signals for {analysis.symbol}. Provide your analysis and recommendations in the specified JSON format."""

    # ─── Decision ───────────────────────────────────────────────

    async def decide(
        self,
        analysis: MarketAnalysis,
        positions: Sequence[Position] = (),
        metrics: Optional[RiskMetrics] = None,
    ) -> AIDecision:
        """Raises DecisionUnavailable on timeout, transport failure or bad output."""
        self.calls += 1
        prompt = self.build_prompt(analysis, positions, metrics)
        try:
            text = await asyncio.wait_for(
                self.client.infer(self.system_prompt(), prompt),
                timeout=self.settings.ai.timeout_seconds,
            )
        except asyncio.TimeoutError as e:
            self.failures += 1
            logger.warning("ai_inference_timeout", symbol=analysis.symbol,
                           timeout=self.settings.ai.timeout_seconds)
            raise DecisionUnavailable("Inference timed out") from e
        except DecisionUnavailable:
            self.failures += 1
            raise
        except Exception as e:
            self.failures += 1
            logger.warning("ai_inference_failed", symbol=analysis.symbol, error=str(e))
            raise DecisionUnavailable(f"Inference failed: {e}") from e

        try:
            decision = self.parse_response(text, analysis)
        except (ValueError, ValidationError) as e:
            self.failures += 1
            logger.warning("ai_response_unparseable", symbol=analysis.symbol,
                           error=str(e), preview=text[:200])
            raise DecisionUnavailable(f"Unparseable response: {e}") from e

        logger.info("ai_decision", symbol=analysis.symbol,
                    condition=decision.market_condition.value,
                    confidence=round(decision.confidence, 3),
                    signals=len(decision.signals))
        return decision

    def parse_response(self, text: str, analysis: MarketAnalysis) -> AIDecision:
        parsed = extract_json_object(text)
        if not isinstance(parsed, dict):
            raise ValueError("Response JSON is not an object")

        timestamp = analysis.timestamp
        signals: List[TradingSignal] = []
        for raw in parsed.get("signals") or []:
            signal = self._parse_signal(raw, timestamp)
            if signal is None:
                continue
            if signal.symbol != analysis.symbol:
                # signals are checked against this snapshot's price only
                logger.info("ai_signal_dropped", symbol=signal.symbol, reason="other_symbol",
                            analysis_symbol=analysis.symbol)
                continue
            checked = self.evaluate_signal(signal, analysis.primary)
            if checked is not None:
                signals.append(checked)

        risk = parsed.get("riskAssessment")
        if not isinstance(risk, dict):
            risk = {}
        return AIDecision.model_validate({
            "signals": signals,
            "reasoning": str(parsed.get("reasoning", "")),
            "market_condition": _enum_value(MarketCondition, parsed.get("marketCondition"), MarketCondition.NEUTRAL),
            "confidence": clamp(_float(parsed.get("confidence"), 0.0)),
            "suggested_actions": [
                {
                    "symbol": str(a.get("symbol", "")),
                    "action": str(a.get("action", "")),
                    "rationale": str(a.get("rationale", "")),
                }
                for a in parsed.get("suggestedActions") or []
                if isinstance(a, dict)
            ],
            "risk_assessment": {
                "level": _enum_value(RiskLevel, risk.get("level"), RiskLevel.MEDIUM),
                "factors": [str(f) for f in risk.get("factors") or []],
            },
        })

    def _parse_signal(self, raw: Any, timestamp) -> Optional[TradingSignal]:
        if not isinstance(raw, dict):
            return None
        symbol = raw.get("symbol")
        try:
            action = SignalAction(str(raw.get("action", "")).upper())
        except ValueError:
            logger.info("ai_signal_dropped", symbol=symbol, reason="unknown_action",
                        action=raw.get("action"))
            return None
        if symbol not in self.symbols:
            logger.info("ai_signal_dropped", symbol=symbol, reason="unknown_symbol")
            return None

        return TradingSignal(
            id=stable_id("ai", symbol, action.value, timestamp.isoformat()),
            symbol=symbol,
            action=action,
            confidence=clamp(_float(raw.get("confidence"), 0.0)),
            reason=str(raw.get("reason", "")),
            timestamp=timestamp,
            entry_price=_float(raw.get("entryPrice")),
            target_price=_float(raw.get("targetPrice")),
            stop_loss=_float(raw.get("stopLoss")),
            position_size=_float(raw.get("positionSize")),
            strategy="ai",
        )

    def evaluate_signal(self, signal: TradingSignal, market: MarketData) -> Optional[TradingSignal]:
        """Sanity-check an AI signal against the live price; None drops it."""
        price = market.price
        if price <= 0 or signal.action == SignalAction.HOLD:
            return signal

        entry = signal.entry_price or price
        if abs(price - entry) / price > 0.02:
            logger.info("ai_signal_dropped", symbol=signal.symbol, reason="entry_far_from_market",
                        entry=entry, price=price)
            return None

        if signal.stop_loss:
            distance = abs(signal.stop_loss - price) / price
            if distance > self.settings.trading.stop_loss_percentage * 2:
                logger.info("ai_signal_dropped", symbol=signal.symbol, reason="stop_too_far",
                            stop_loss=signal.stop_loss, price=price)
                return None
        return signal


def _float(value: Any, default: Optional[float] = None) -> Optional[float]:
    if value is None:
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _enum_value(enum_cls, value: Any, default):
    try:
        return enum_cls(str(value).lower())
    except ValueError:
        return default
