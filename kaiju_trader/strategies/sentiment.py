"""
KAIJU TRADER — Sentiment Strategy
Trades strong, broad crowd sentiment backed by mention volume.
"""
from typing import List

from kaiju_trader.data.models import MarketAnalysis, SignalAction, TradingSignal
from kaiju_trader.strategies.base import BaseStrategy


class SentimentStrategy(BaseStrategy):
    default_parameters = {
        "bullish_score": 0.6,
        "bearish_score": -0.6,
        "min_mentions": 5000.0,
        "source_agreement": 0.5,
        "position_size": 0.05,
    }

    def __init__(self, parameters=None):
        super().__init__(name="sentiment", parameters=parameters)

    def analyze(self, analysis: MarketAnalysis) -> List[TradingSignal]:
        p = self.parameters
        price = analysis.primary.price
        sentiment = analysis.sentiment_data
        score = sentiment.score
        volume = sentiment.volume
        sub_scores = list(sentiment.sources.values())

        agreeing = len(sub_scores) >= 2 and all(s > p["source_agreement"] for s in sub_scores)
        if score > p["bullish_score"] and volume > p["min_mentions"] and agreeing:
            confidence = min(0.8, score * 0.8 + min(volume / 10000, 0.2))
            return [self._signal(
                analysis, SignalAction.BUY, confidence,
                f"Strong positive sentiment: score {score:.2f}, volume {volume:.0f}",
                entry_price=price,
                target_price=price * 1.03,
                stop_loss=price * 0.98,
                position_size=p["position_size"],
            )]

        if score < p["bearish_score"] and volume > p["min_mentions"]:
            confidence = min(0.7, abs(score) * 0.7)
            return [self._signal(
                analysis, SignalAction.SELL, confidence,
                f"Strong negative sentiment: score {score:.2f}",
                entry_price=price,
                target_price=price * 0.97,
                stop_loss=price * 1.02,
                position_size=p["position_size"],
            )]

        return []
