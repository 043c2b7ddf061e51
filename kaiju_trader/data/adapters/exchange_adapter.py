"""
KAIJU TRADER — ccxt Exchange Adapter
Spot market data and market orders via ccxt's asyncio client.
"""
from typing import Any, Dict, List, Optional

import ccxt
import ccxt.async_support as ccxt_async

from kaiju_trader.data.adapters.base import ExchangeClient
from kaiju_trader.config.settings import ExchangeSettings, get_settings
from kaiju_trader.utils.errors import ConfigurationError, DataFetchError, ExecutionError
from kaiju_trader.utils.logger import get_logger

logger = get_logger("exchange_adapter")


class CcxtExchange(ExchangeClient):
    """ExchangeClient backed by a ccxt.async_support exchange instance."""

    def __init__(
        self,
        exchange_id: str,
        api_key: str = "",
        api_secret: str = "",
        timeout_ms: int = 10000,
    ):
        super().__init__(exchange_id)
        exchange_class = getattr(ccxt_async, exchange_id, None)
        if exchange_class is None:
            raise ConfigurationError(f"Unknown exchange: {exchange_id}")

        params: Dict[str, Any] = {
            "enableRateLimit": True,
            "timeout": timeout_ms,
            "options": {"defaultType": "spot"},
        }
        if api_key and api_secret:
            params["apiKey"] = api_key
            params["secret"] = api_secret
        self._exchange = exchange_class(params)

    @classmethod
    def from_settings(cls, settings: Optional[ExchangeSettings] = None) -> "CcxtExchange":
        settings = settings or get_settings().exchange
        return cls(settings.name, settings.api_key, settings.api_secret, settings.timeout_ms)

    async def load_markets(self) -> Dict[str, Any]:
        markets = await self._exchange.load_markets()
        logger.info("exchange_markets_loaded", exchange=self.exchange_id, count=len(markets))
        return markets

    async def fetch_tickers(self, symbols: List[str]) -> Dict[str, Dict[str, Any]]:
        try:
            return await self._exchange.fetch_tickers(symbols)
        except ccxt.BaseError as e:
            raise DataFetchError(f"{self.exchange_id} fetch_tickers failed: {e}") from e

    async def fetch_order_book(self, symbol: str, limit: int = 10) -> Dict[str, Any]:
        try:
            return await self._exchange.fetch_order_book(symbol, limit)
        except ccxt.BaseError as e:
            raise DataFetchError(f"{self.exchange_id} order book failed: {e}", symbol) from e

    async def fetch_ohlcv(
        self, symbol: str, timeframe: str = "15m", limit: int = 100
    ) -> List[List[float]]:
        try:
            return await self._exchange.fetch_ohlcv(symbol, timeframe, limit=limit)
        except ccxt.BaseError as e:
            raise DataFetchError(f"{self.exchange_id} ohlcv failed: {e}", symbol) from e

    async def create_order(
        self, symbol: str, order_type: str, side: str, amount: float,
        price: Optional[float] = None,
    ) -> Dict[str, Any]:
        try:
            order = await self._exchange.create_order(symbol, order_type, side, amount, price)
        except ccxt.InsufficientFunds as e:
            raise ExecutionError(ExecutionError.INSUFFICIENT_BALANCE, str(e)) from e
        except ccxt.BadSymbol as e:
            raise ExecutionError(ExecutionError.UNSUPPORTED_SYMBOL, str(e)) from e
        except ccxt.InvalidOrder as e:
            raise ExecutionError(ExecutionError.REJECTED, str(e)) from e
        except ccxt.NetworkError as e:
            raise ExecutionError(ExecutionError.NETWORK_ERROR, str(e)) from e
        except ccxt.BaseError as e:
            raise ExecutionError(ExecutionError.REJECTED, str(e)) from e

        logger.info("exchange_order_placed", exchange=self.exchange_id, symbol=symbol,
                    side=side, amount=amount, order_id=order.get("id"))
        return order

    async def close(self) -> None:
        await self._exchange.close()
