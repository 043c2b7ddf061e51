"""
KAIJU TRADER — Central Configuration
All settings are loaded from environment variables with sensible defaults.
"""
from pydantic_settings import BaseSettings
from pydantic import Field
from typing import Dict, List, Optional

from kaiju_trader.utils.errors import ConfigurationError


class TradingSettings(BaseSettings):
    """Portfolio and order defaults."""
    mode: str = "paper"  # paper | live
    initial_capital: float = 10000.0
    max_position_size: float = 0.1  # fraction of portfolio value
    stop_loss_percentage: float = 0.02
    take_profit_percentage: float = 0.05
    pairs: List[str] = Field(default=["BTC/USDT", "ETH/USDT", "SOL/USDT"])
    fee_rate: float = 0.001

    class Config:
        env_file = ".env"
        env_prefix = "TRADING_"
        extra = "ignore"


class ExchangeSettings(BaseSettings):
    """Primary exchange credentials and reference venues."""
    name: str = "binance"
    api_key: str = ""
    api_secret: str = ""
    reference_exchanges: List[str] = Field(default_factory=list)
    timeout_ms: int = 10000

    class Config:
        env_file = ".env"
        env_prefix = "EXCHANGE_"
        extra = "ignore"


class AISettings(BaseSettings):
    """AI inference provider."""
    enabled: bool = True
    api_key: str = ""
    model: str = "gemini-2.0-flash-exp"
    base_url: str = "https://generativelanguage.googleapis.com/v1beta"
    timeout_seconds: float = 20.0
    temperature: float = 0.3
    max_output_tokens: int = 1000

    class Config:
        env_file = ".env"
        env_prefix = "AI_"
        extra = "ignore"


class BlockchainSettings(BaseSettings):
    """On-chain execution (DEX router + perpetual exchange)."""
    private_key: str = ""
    rpc_url: str = ""
    chain_id: int = 1
    router_address: str = ""
    perpetual_exchange_address: str = ""
    # base asset -> ERC20 address, e.g. {"ETH": "0x...", "USDT": "0x..."}
    token_addresses: Dict[str, str] = Field(default_factory=dict)
    token_decimals: Dict[str, int] = Field(default_factory=dict)
    gas_buffer: float = 1.2
    max_slippage: float = 0.05
    swap_deadline_seconds: int = 1200
    use_dex_for_spot: bool = False
    tx_timeout_seconds: float = 120.0

    class Config:
        env_file = ".env"
        env_prefix = "CHAIN_"
        extra = "ignore"


class DataCollectionSettings(BaseSettings):
    """Polling cadences (seconds) and sentiment sources."""
    price_update_interval: float = 5.0
    sentiment_update_interval: float = 60.0
    news_update_interval: float = 300.0
    analysis_interval: float = 300.0
    position_update_interval: float = 10.0
    history_size: int = 500

    fear_greed_url: str = "https://api.alternative.me/fng/"
    news_api_url: str = "https://cryptopanic.com/api/v1/posts/"
    news_api_key: str = ""
    request_timeout_seconds: float = 10.0

    class Config:
        env_file = ".env"
        env_prefix = "COLLECT_"
        extra = "ignore"


class RiskSettings(BaseSettings):
    """Portfolio-level risk limits."""
    max_daily_loss: float = 0.05
    max_open_positions: int = 3
    max_position_size: Optional[float] = None  # overrides trading.max_position_size
    position_sizing_method: str = "fixed"  # fixed | kelly | volatility
    min_position_size: float = 0.005
    close_on_reversal: bool = True
    allow_short: bool = True
    min_signal_confidence: float = 0.0
    block_correlated_positions: bool = True  # same base asset on another quote
    default_volatility: float = 0.02

    class Config:
        env_file = ".env"
        env_prefix = "RISK_"
        extra = "ignore"


class IndicatorSettings(BaseSettings):
    """Indicator computation parameters."""
    rsi_period: int = 14
    macd_fast: int = 12
    macd_slow: int = 26
    macd_signal: int = 9
    sma_fast: int = 20
    sma_slow: int = 50
    ema_fast: int = 12
    ema_slow: int = 26
    bb_period: int = 20
    bb_std: float = 2.0
    atr_period: int = 14
    ohlcv_timeframe: str = "15m"
    ohlcv_limit: int = 100
    ohlcv_cache_ttl_seconds: int = 60

    class Config:
        env_file = ".env"
        env_prefix = "IND_"
        extra = "ignore"


class DatabaseSettings(BaseSettings):
    """Ledger persistence."""
    enabled: bool = False
    db_url: str = Field(default="sqlite:///kaiju_trader.db")
    echo_sql: bool = False

    class Config:
        env_file = ".env"
        env_prefix = "DB_"
        extra = "ignore"


class AppSettings(BaseSettings):
    """Top-level application settings."""
    app_name: str = "KAIJU TRADER"
    version: str = "1.0.0"
    debug: bool = False
    log_level: str = "INFO"
    host: str = "0.0.0.0"
    port: int = 3001
    event_queue_size: int = 1000

    trading: TradingSettings = TradingSettings()
    exchange: ExchangeSettings = ExchangeSettings()
    ai: AISettings = AISettings()
    blockchain: BlockchainSettings = BlockchainSettings()
    data_collection: DataCollectionSettings = DataCollectionSettings()
    risk: RiskSettings = RiskSettings()
    indicators: IndicatorSettings = IndicatorSettings()
    database: DatabaseSettings = DatabaseSettings()

    class Config:
        env_file = ".env"
        extra = "ignore"


def validate_settings(settings: AppSettings) -> None:
    """Reject configurations the engine cannot run with."""
    trading = settings.trading
    if trading.mode not in ("paper", "live"):
        raise ConfigurationError(f"Unknown trading mode: {trading.mode}")
    if not trading.pairs:
        raise ConfigurationError("At least one trading pair is required")
    if not 0 < trading.max_position_size <= 1:
        raise ConfigurationError("max_position_size must be in (0, 1]")
    if trading.initial_capital <= 0:
        raise ConfigurationError("initial_capital must be positive")

    if trading.mode == "live":
        if not settings.exchange.api_key or not settings.exchange.api_secret:
            raise ConfigurationError("Exchange credentials required for live trading")
        chain = settings.blockchain
        if (chain.use_dex_for_spot or chain.perpetual_exchange_address) and (
            not chain.private_key or not chain.rpc_url
        ):
            raise ConfigurationError("Private key and RPC URL required for on-chain execution")

    dc = settings.data_collection
    for name in ("price_update_interval", "sentiment_update_interval",
                 "news_update_interval", "analysis_interval", "position_update_interval"):
        if getattr(dc, name) <= 0:
            raise ConfigurationError(f"{name} must be positive")

    if settings.risk.position_sizing_method not in ("fixed", "kelly", "volatility"):
        raise ConfigurationError(
            f"Unknown position sizing method: {settings.risk.position_sizing_method}"
        )
    if settings.risk.max_open_positions < 1:
        raise ConfigurationError("max_open_positions must be at least 1")
    cap = settings.risk.max_position_size
    if cap is not None and not 0 < cap <= 1:
        raise ConfigurationError("risk.max_position_size must be in (0, 1]")


# Singleton
_settings: Optional[AppSettings] = None


def get_settings() -> AppSettings:
    global _settings
    if _settings is None:
        _settings = AppSettings()
    return _settings
