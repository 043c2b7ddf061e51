"""
KAIJU TRADER — Data Models
Canonical data structures shared by collectors, strategies, risk and execution.
"""
from pydantic import BaseModel, ConfigDict, Field
from typing import Optional, List, Dict, Any, Tuple
from datetime import datetime
from enum import Enum

from kaiju_trader.utils.helpers import utc_now


class SignalAction(str, Enum):
    BUY = "BUY"
    SELL = "SELL"
    HOLD = "HOLD"
    CLOSE = "CLOSE"


class PositionSide(str, Enum):
    LONG = "LONG"
    SHORT = "SHORT"


class TradeSide(str, Enum):
    BUY = "BUY"
    SELL = "SELL"


class TradeType(str, Enum):
    SPOT = "spot"
    PERPETUAL = "perpetual"
    LIQUIDITY = "liquidity"


class MarketCondition(str, Enum):
    BULLISH = "bullish"
    BEARISH = "bearish"
    NEUTRAL = "neutral"
    VOLATILE = "volatile"


class RiskLevel(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


# ─── Market Inputs ──────────────────────────────────────────────

class MarketData(BaseModel):
    """Latest ticker snapshot for a symbol on one venue."""
    model_config = ConfigDict(frozen=True)

    symbol: str
    price: float
    volume: float = 0.0
    bid: float = 0.0
    ask: float = 0.0
    high_24h: float = 0.0
    low_24h: float = 0.0
    change_24h: float = 0.0  # percent
    timestamp: datetime
    source: str = "primary"


class OHLCVBar(BaseModel):
    """Single OHLCV candle."""
    model_config = ConfigDict(frozen=True)

    timestamp: datetime
    open: float
    high: float
    low: float
    close: float
    volume: float


class OrderBook(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    bids: List[Tuple[float, float]] = Field(default_factory=list)
    asks: List[Tuple[float, float]] = Field(default_factory=list)
    timestamp: datetime


class MACD(BaseModel):
    model_config = ConfigDict(frozen=True)

    value: float = 0.0
    signal: float = 0.0
    histogram: float = 0.0


class BollingerBands(BaseModel):
    model_config = ConfigDict(frozen=True)

    upper: float = 0.0
    middle: float = 0.0
    lower: float = 0.0

    @property
    def width(self) -> float:
        """Band width relative to the middle band."""
        if self.middle == 0:
            return 0.0
        return (self.upper - self.lower) / self.middle


class TechnicalIndicators(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    rsi: float = 50.0
    macd: MACD = MACD()
    sma20: float = 0.0
    sma50: float = 0.0
    ema12: float = 0.0
    ema26: float = 0.0
    bbands: BollingerBands = BollingerBands()
    atr: float = 0.0
    volume: float = 0.0
    timestamp: datetime
    sample_size: int = 0


class SentimentData(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    score: float = Field(default=0.0, ge=-1.0, le=1.0)
    sources: Dict[str, float] = Field(default_factory=dict)
    volume: float = 0.0  # mention volume
    timestamp: datetime

    @classmethod
    def neutral(cls, symbol: str, timestamp: Optional[datetime] = None) -> "SentimentData":
        return cls(symbol=symbol, score=0.0, timestamp=timestamp or utc_now())


class NewsItem(BaseModel):
    model_config = ConfigDict(frozen=True)

    title: str
    content: str = ""
    url: str = ""
    published_at: datetime
    source: str = ""
    sentiment: float = 0.0
    relevant_symbols: List[str] = Field(default_factory=list)


class MarketAnalysis(BaseModel):
    """Everything a strategy sees for one symbol in one cycle."""
    model_config = ConfigDict(frozen=True)

    market_data: List[MarketData]
    technical_indicators: TechnicalIndicators
    sentiment_data: SentimentData
    news_data: Optional[List[NewsItem]] = None

    @property
    def symbol(self) -> str:
        return self.market_data[0].symbol

    @property
    def primary(self) -> MarketData:
        return self.market_data[0]

    @property
    def references(self) -> List[MarketData]:
        return self.market_data[1:]

    @property
    def timestamp(self) -> datetime:
        return self.market_data[0].timestamp


# ─── Decisions ──────────────────────────────────────────────────

class TradingSignal(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    symbol: str
    action: SignalAction
    confidence: float = Field(ge=0.0, le=1.0)
    reason: str = ""
    timestamp: datetime
    entry_price: Optional[float] = None
    target_price: Optional[float] = None
    stop_loss: Optional[float] = None
    position_size: Optional[float] = None  # fraction of portfolio value
    leverage: Optional[float] = None
    strategy: str = ""
    trade_type: TradeType = TradeType.SPOT

    @property
    def is_opening(self) -> bool:
        return self.action in (SignalAction.BUY, SignalAction.SELL)


class SuggestedAction(BaseModel):
    model_config = ConfigDict(frozen=True)

    symbol: str
    action: str  # free text, e.g. "Monitor for breakout above 51000"
    rationale: str = ""


class RiskAssessment(BaseModel):
    model_config = ConfigDict(frozen=True)

    level: RiskLevel = RiskLevel.MEDIUM
    factors: List[str] = Field(default_factory=list)


class AIDecision(BaseModel):
    model_config = ConfigDict(frozen=True)

    signals: List[TradingSignal] = Field(default_factory=list)
    reasoning: str = ""
    market_condition: MarketCondition = MarketCondition.NEUTRAL
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    suggested_actions: List[SuggestedAction] = Field(default_factory=list)
    risk_assessment: RiskAssessment = RiskAssessment()


# ─── Ledger ─────────────────────────────────────────────────────

class Position(BaseModel):
    id: str
    symbol: str
    side: PositionSide
    entry_price: float
    current_price: float
    quantity: float
    pnl: float = 0.0
    pnl_percentage: float = 0.0
    opened_at: datetime
    stop_loss: Optional[float] = None
    take_profit: Optional[float] = None
    trade_type: TradeType = TradeType.SPOT
    leverage: float = 1.0
    venue_ref: Optional[str] = None

    @property
    def notional(self) -> float:
        return self.entry_price * self.quantity

    def unrealized_pnl(self, price: Optional[float] = None) -> float:
        mark = self.current_price if price is None else price
        direction = 1.0 if self.side == PositionSide.LONG else -1.0
        return (mark - self.entry_price) * self.quantity * direction

    def marked(self, price: float) -> "Position":
        """Copy marked to a new price."""
        pnl = self.unrealized_pnl(price)
        pct = pnl / self.notional * 100 if self.notional else 0.0
        return self.model_copy(update={"current_price": price, "pnl": pnl, "pnl_percentage": pct})


class Trade(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    symbol: str
    side: TradeSide
    price: float
    quantity: float
    timestamp: datetime
    fee: float = 0.0
    pnl: Optional[float] = None  # realized, set on closing trades
    reason: str = ""
    position_id: Optional[str] = None
    venue: str = "paper"


class RiskMetrics(BaseModel):
    model_config = ConfigDict(frozen=True)

    portfolio_value: float = 0.0
    daily_pnl: float = 0.0
    daily_pnl_percentage: float = 0.0
    open_positions: int = 0
    max_drawdown: float = 0.0
    sharpe_ratio: float = 0.0
    win_rate: float = 0.0
    average_win: float = 0.0
    average_loss: float = 0.0
    risk_reward_ratio: float = 0.0


# ─── Events ─────────────────────────────────────────────────────

class EngineEvent(BaseModel):
    model_config = ConfigDict(frozen=True)

    type: str
    timestamp: datetime
    data: Dict[str, Any] = Field(default_factory=dict)
