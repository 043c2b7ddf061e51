"""
KAIJU TRADER — Execution Router
Routes approved signals to a venue (paper, ccxt spot, on-chain) and books
the resulting fill into the portfolio ledger. One execution per symbol at
a time; different symbols run concurrently.
"""
import asyncio
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Dict, Optional

from kaiju_trader.config.settings import AppSettings, BlockchainSettings, get_settings
from kaiju_trader.data.adapters.base import ExchangeClient
from kaiju_trader.data.cache.market_cache import MarketCache
from kaiju_trader.data.models import (
    Position, PositionSide, SignalAction, Trade, TradeSide, TradeType, TradingSignal,
)
from kaiju_trader.defi.abis import (
    ERC20_ABI, MAX_UINT256, PERPETUAL_EXCHANGE_ABI, UNISWAP_V2_ROUTER_ABI,
)
from kaiju_trader.defi.chain_executor import ChainExecutor
from kaiju_trader.engines.portfolio import Portfolio, realized_pnl_for_close
from kaiju_trader.utils.errors import ExecutionBusy, ExecutionError
from kaiju_trader.utils.helpers import base_asset, quote_asset, utc_now
from kaiju_trader.utils.logger import get_logger

logger = get_logger("execution")

# Fills within this fraction of the requested quantity count as complete
FILL_TOLERANCE = 1e-9


@dataclass
class Fill:
    """What a venue reports back for one order."""
    price: float
    quantity: float
    fee: float = 0.0
    venue: str = "paper"
    venue_ref: Optional[str] = None


class Venue(ABC):
    name: str = ""

    @abstractmethod
    async def fill(
        self,
        signal: TradingSignal,
        side: TradeSide,
        quantity: float,
        price: float,
        position: Optional[Position] = None,
    ) -> Fill:
        """Execute `quantity` at market. `position` is set when closing."""


# ─── Venues ─────────────────────────────────────────────────────

class PaperVenue(Venue):
    """Simulated fills at the reference price."""
    name = "paper"

    def __init__(self, fee_rate: float = 0.001):
        self.fee_rate = fee_rate

    async def fill(self, signal, side, quantity, price, position=None) -> Fill:
        return Fill(price=price, quantity=quantity, fee=price * quantity * self.fee_rate,
                    venue=self.name)


class SpotVenue(Venue):
    """Market orders on the primary ccxt exchange."""
    name = "spot"

    def __init__(self, exchange: ExchangeClient, fee_rate: float = 0.001):
        self.exchange = exchange
        self.fee_rate = fee_rate

    async def fill(self, signal, side, quantity, price, position=None) -> Fill:
        if position is None and side == TradeSide.SELL:
            raise ExecutionError(ExecutionError.REJECTED, "spot venue cannot open a short")

        order = await self.exchange.create_order(signal.symbol, "market", side.value.lower(), quantity)
        filled = float(order.get("filled") or 0.0)
        if filled <= 0:
            raise ExecutionError(ExecutionError.REJECTED,
                                 f"order {order.get('id')} not filled ({order.get('status')})")
        fill_price = float(order.get("average") or order.get("price") or price)
        return Fill(
            price=fill_price,
            quantity=filled,
            fee=self._fee_in_quote(order, signal.symbol, fill_price, filled),
            venue=self.name,
            venue_ref=str(order.get("id")) if order.get("id") is not None else None,
        )

    def _fee_in_quote(self, order: Dict[str, Any], symbol: str, price: float, filled: float) -> float:
        fee = order.get("fee") or {}
        cost = fee.get("cost")
        if cost is None:
            return price * filled * self.fee_rate
        if (fee.get("currency") or "").upper() == base_asset(symbol):
            return float(cost) * price
        return float(cost)


class DeFiVenue(Venue):
    """
    Uniswap-V2 swaps for spot and a perpetual exchange contract for
    leveraged positions, all through a ChainExecutor.
    """
    name = "defi"

    def __init__(self, executor: ChainExecutor, settings: Optional[BlockchainSettings] = None):
        self.executor = executor
        self.settings = settings or get_settings().blockchain

    async def fill(self, signal, side, quantity, price, position=None) -> Fill:
        trade_type = position.trade_type if position is not None else signal.trade_type
        if trade_type == TradeType.PERPETUAL:
            if position is not None:
                return await self._close_perp(position, price)
            return await self._open_perp(signal, side, quantity, price)
        if trade_type == TradeType.LIQUIDITY:
            raise ExecutionError(ExecutionError.REJECTED, "liquidity provision is not supported")
        if position is None and side == TradeSide.SELL:
            raise ExecutionError(ExecutionError.REJECTED, "DEX spot cannot open a short")
        return await self._swap(signal.symbol, side, quantity, price)

    # ─── Helpers ────────────────────────────────────────────────

    def _token(self, asset: str, symbol: str) -> str:
        address = self.settings.token_addresses.get(asset)
        if not address:
            raise ExecutionError(ExecutionError.UNSUPPORTED_SYMBOL,
                                 f"no token address for {asset} ({symbol})")
        return address

    def _decimals(self, asset: str, default: int = 18) -> int:
        return self.settings.token_decimals.get(asset, default)

    async def _send(self, tx: Dict[str, Any]) -> Dict[str, Any]:
        gas = await self.executor.estimate_gas(tx)
        return await self.executor.sign_and_send({**tx, "gas": int(gas * self.settings.gas_buffer)})

    async def _ensure_allowance(self, token: str, spender: str, amount: int) -> None:
        allowance = int(await self.executor.call(token, ERC20_ABI, "allowance",
                                                 self.executor.address, spender))
        if allowance >= amount:
            return
        tx = await self.executor.build_transaction(token, ERC20_ABI, "approve", spender, MAX_UINT256)
        receipt = await self._send(tx)
        logger.info("token_approved", token=token, spender=spender, tx=receipt["tx_hash"])

    # ─── Spot swaps ─────────────────────────────────────────────

    async def _swap(self, symbol: str, side: TradeSide, quantity: float, price: float) -> Fill:
        router = self.settings.router_address
        if not router:
            raise ExecutionError(ExecutionError.VENUE_UNAVAILABLE, "no DEX router configured")

        base, quote = base_asset(symbol), quote_asset(symbol)
        if side == TradeSide.BUY:
            asset_in, asset_out, amount_in = quote, base, quantity * price
        else:
            asset_in, asset_out, amount_in = base, quote, quantity
        token_in, token_out = self._token(asset_in, symbol), self._token(asset_out, symbol)
        dec_in, dec_out = self._decimals(asset_in), self._decimals(asset_out)
        raw_in = int(amount_in * 10 ** dec_in)

        balance = await self.executor.get_balance(token_in)
        if balance < raw_in:
            raise ExecutionError(ExecutionError.INSUFFICIENT_BALANCE,
                                 f"{asset_in} balance {balance / 10 ** dec_in} < {amount_in}")

        path = [token_in, token_out]
        amounts = await self.executor.call(router, UNISWAP_V2_ROUTER_ABI, "getAmountsOut", raw_in, path)
        expected = int(amounts[-1])
        min_out = int(expected * (1 - self.settings.max_slippage))

        await self._ensure_allowance(token_in, router, raw_in)
        before = await self.executor.get_balance(token_out)
        deadline = int(utc_now().timestamp()) + self.settings.swap_deadline_seconds
        tx = await self.executor.build_transaction(
            router, UNISWAP_V2_ROUTER_ABI, "swapExactTokensForTokens",
            raw_in, min_out, path, self.executor.address, deadline,
        )
        receipt = await self._send(tx)
        after = await self.executor.get_balance(token_out)

        received_raw = after - before if after > before else expected
        received = received_raw / 10 ** dec_out
        if side == TradeSide.BUY:
            fill_qty, fill_price = received, amount_in / received
        else:
            fill_qty, fill_price = quantity, received / quantity

        logger.info("dex_swap_filled", symbol=symbol, side=side.value, amount_in=amount_in,
                    received=received, min_out=min_out / 10 ** dec_out, tx=receipt["tx_hash"])
        # LP fee is already inside the fill price
        return Fill(price=fill_price, quantity=fill_qty, fee=0.0, venue=self.name,
                    venue_ref=receipt["tx_hash"])

    # ─── Perpetuals ─────────────────────────────────────────────

    def _perp_exchange(self) -> str:
        address = self.settings.perpetual_exchange_address
        if not address:
            raise ExecutionError(ExecutionError.VENUE_UNAVAILABLE, "no perpetual exchange configured")
        return address

    async def _open_perp(self, signal: TradingSignal, side: TradeSide,
                         quantity: float, price: float) -> Fill:
        exchange = self._perp_exchange()
        leverage = max(int(signal.leverage or 1), 1)
        quote = quote_asset(signal.symbol)
        collateral_raw = int(quantity * price / leverage * 10 ** self._decimals(quote, 6))

        total, used, _ = await self.executor.call(
            exchange, PERPETUAL_EXCHANGE_ABI, "getUserAccount", self.executor.address
        )
        if int(total) - int(used) < collateral_raw:
            raise ExecutionError(ExecutionError.INSUFFICIENT_BALANCE, "not enough free collateral")

        tx = await self.executor.build_transaction(
            exchange, PERPETUAL_EXCHANGE_ABI, "openPosition",
            base_asset(signal.symbol), side == TradeSide.BUY, collateral_raw, leverage,
        )
        receipt = await self._send(tx)
        _, _, position_ids = await self.executor.call(
            exchange, PERPETUAL_EXCHANGE_ABI, "getUserAccount", self.executor.address
        )
        venue_ref = str(position_ids[-1]) if position_ids else receipt["tx_hash"]
        logger.info("perp_opened", symbol=signal.symbol, side=side.value, leverage=leverage,
                    collateral=collateral_raw, position_ref=venue_ref)
        return Fill(price=price, quantity=quantity, venue=self.name, venue_ref=venue_ref)

    async def _close_perp(self, position: Position, price: float) -> Fill:
        exchange = self._perp_exchange()
        if not position.venue_ref or not position.venue_ref.isdigit():
            raise ExecutionError(ExecutionError.REJECTED,
                                 f"no on-chain position id for {position.symbol}")
        tx = await self.executor.build_transaction(
            exchange, PERPETUAL_EXCHANGE_ABI, "closePosition", int(position.venue_ref)
        )
        receipt = await self._send(tx)
        logger.info("perp_closed", symbol=position.symbol, position_ref=position.venue_ref,
                    tx=receipt["tx_hash"])
        return Fill(price=price, quantity=position.quantity, venue=self.name,
                    venue_ref=receipt["tx_hash"])


# ─── Router ─────────────────────────────────────────────────────

class ExecutionRouter:
    """Chooses a venue per signal and books fills into the ledger."""

    def __init__(
        self,
        portfolio: Portfolio,
        cache: MarketCache,
        settings: Optional[AppSettings] = None,
        exchange: Optional[ExchangeClient] = None,
        chain_executor: Optional[ChainExecutor] = None,
    ):
        self.portfolio = portfolio
        self.cache = cache
        self.settings = settings or get_settings()
        fee_rate = self.settings.trading.fee_rate
        self.paper = PaperVenue(fee_rate)
        self.spot = SpotVenue(exchange, fee_rate) if exchange is not None else None
        self.defi = (
            DeFiVenue(chain_executor, self.settings.blockchain)
            if chain_executor is not None else None
        )
        self._locks: Dict[str, asyncio.Lock] = {}
        self.executed = 0
        self.failed = 0

    def is_busy(self, symbol: str) -> bool:
        lock = self._locks.get(symbol)
        return lock is not None and lock.locked()

    def venue_for(self, signal: TradingSignal, position: Optional[Position] = None) -> Venue:
        if self.settings.trading.mode == "paper":
            return self.paper
        trade_type = position.trade_type if position is not None else signal.trade_type
        if trade_type != TradeType.SPOT or self.settings.blockchain.use_dex_for_spot:
            if self.defi is None:
                raise ExecutionError(ExecutionError.VENUE_UNAVAILABLE, "on-chain executor not configured")
            return self.defi
        if self.spot is None:
            raise ExecutionError(ExecutionError.VENUE_UNAVAILABLE, "exchange not configured")
        return self.spot

    def reference_price(self, signal: TradingSignal) -> float:
        if signal.entry_price and signal.entry_price > 0:
            return signal.entry_price
        market = self.cache.get_market_data(signal.symbol)
        if market is None or market.price <= 0:
            raise ExecutionError(ExecutionError.NO_PRICE, f"no price for {signal.symbol}")
        return market.price

    async def execute(self, signal: TradingSignal, position: Optional[Position] = None) -> Trade:
        lock = self._locks.setdefault(signal.symbol, asyncio.Lock())
        if lock.locked():
            raise ExecutionBusy(signal.symbol)
        async with lock:
            try:
                trade = await self._execute(signal, position)
            except ExecutionError as e:
                self.failed += 1
                logger.warning("execution_failed", symbol=signal.symbol, action=signal.action.value,
                               reason=e.reason, error=e.message)
                raise
            self.executed += 1
            return trade

    async def _execute(self, signal: TradingSignal, position: Optional[Position]) -> Trade:
        price = self.reference_price(signal)

        if signal.action == SignalAction.CLOSE:
            position = position or self.portfolio.get_position(signal.symbol)
            if position is None:
                raise ExecutionError(ExecutionError.REJECTED, f"no open position for {signal.symbol}")
            side = TradeSide.SELL if position.side == PositionSide.LONG else TradeSide.BUY
            venue = self.venue_for(signal, position)
            fill = await venue.fill(signal, side, position.quantity, price, position)
            return self._book_close(signal, position, side, fill)

        if not signal.is_opening:
            raise ExecutionError(ExecutionError.REJECTED, f"cannot execute {signal.action.value}")
        if self.portfolio.has_position(signal.symbol):
            raise ExecutionError(ExecutionError.REJECTED, f"position already open for {signal.symbol}")

        side = TradeSide.BUY if signal.action == SignalAction.BUY else TradeSide.SELL
        size = signal.position_size or self.settings.trading.max_position_size
        quantity = size * self.portfolio.portfolio_value / price
        if quantity <= 0:
            raise ExecutionError(ExecutionError.REJECTED, "computed quantity is not positive")
        venue = self.venue_for(signal)
        fill = await venue.fill(signal, side, quantity, price)
        return self._book_open(signal, side, fill)

    def _book_open(self, signal: TradingSignal, side: TradeSide, fill: Fill) -> Trade:
        position_id = uuid.uuid4().hex
        now = utc_now()
        position = Position(
            id=position_id,
            symbol=signal.symbol,
            side=PositionSide.LONG if side == TradeSide.BUY else PositionSide.SHORT,
            entry_price=fill.price,
            current_price=fill.price,
            quantity=fill.quantity,
            opened_at=now,
            stop_loss=signal.stop_loss,
            take_profit=signal.target_price,
            trade_type=signal.trade_type,
            leverage=max(signal.leverage or 1.0, 1.0),
            venue_ref=fill.venue_ref,
        )
        trade = Trade(
            id=position_id,
            symbol=signal.symbol,
            side=side,
            price=fill.price,
            quantity=fill.quantity,
            timestamp=now,
            fee=fill.fee,
            reason=signal.reason,
            position_id=position_id,
            venue=fill.venue,
        )
        self.portfolio.open_position(position, trade)
        return trade

    def _book_close(self, signal: TradingSignal, position: Position,
                    side: TradeSide, fill: Fill) -> Trade:
        opening = self.portfolio.opening_trade(position)
        open_fee = 0.0
        if opening is not None and opening.quantity > 0:
            open_fee = opening.fee * min(fill.quantity / opening.quantity, 1.0)
        pnl = realized_pnl_for_close(position, fill.price, fill.quantity, fill.fee, open_fee)

        partial = fill.quantity < position.quantity * (1 - FILL_TOLERANCE)
        trade = Trade(
            id=f"{position.id}-partial-{uuid.uuid4().hex[:8]}" if partial else f"{position.id}-close",
            symbol=position.symbol,
            side=side,
            price=fill.price,
            quantity=fill.quantity,
            timestamp=utc_now(),
            fee=fill.fee,
            pnl=pnl,
            reason=signal.reason,
            position_id=position.id,
            venue=fill.venue,
        )
        if partial:
            self.portfolio.reduce_position(position.symbol, fill.quantity, trade)
        else:
            self.portfolio.close_position(position.symbol, trade)
        return trade
