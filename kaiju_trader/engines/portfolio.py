"""
KAIJU TRADER — Portfolio Ledger
Open positions keyed by symbol plus the append-only trade ledger.
Mutated only by the execution router under its per-symbol lock; reads return copies.
"""
from datetime import datetime
from typing import Dict, List, Optional

from kaiju_trader.data.models import Position, PositionSide, Trade
from kaiju_trader.utils.errors import LedgerError
from kaiju_trader.utils.logger import get_logger

logger = get_logger("portfolio")


class Portfolio:
    """
    Portfolio value = starting capital + realized P&L of closing trades
    + unrealized P&L of open positions. Closing trades carry the round-trip
    P&L net of fees, so nothing else needs tracking.
    """

    def __init__(self, initial_capital: float):
        self.initial_capital = initial_capital
        self._positions: Dict[str, Position] = {}
        self._trades: List[Trade] = []

    # ─── Mutations ──────────────────────────────────────────────

    def open_position(self, position: Position, trade: Trade) -> None:
        if position.symbol in self._positions:
            raise LedgerError(f"Position already open for {position.symbol}")
        self._positions[position.symbol] = position
        self._trades.append(trade)
        logger.info("position_opened", symbol=position.symbol, side=position.side.value,
                    quantity=position.quantity, entry=position.entry_price)

    def close_position(self, symbol: str, trade: Trade) -> Position:
        position = self._positions.pop(symbol, None)
        if position is None:
            raise LedgerError(f"No open position for {symbol}")
        self._trades.append(trade)
        logger.info("position_closed", symbol=symbol, pnl=round(trade.pnl or 0.0, 4),
                    reason=trade.reason)
        return position

    def reduce_position(self, symbol: str, quantity: float, trade: Trade) -> Position:
        """Partial close: keep the remainder open at the original entry."""
        position = self._positions.get(symbol)
        if position is None:
            raise LedgerError(f"No open position for {symbol}")
        if quantity >= position.quantity:
            return self.close_position(symbol, trade)
        remaining = position.model_copy(update={"quantity": position.quantity - quantity})
        self._positions[symbol] = remaining.marked(position.current_price)
        self._trades.append(trade)
        logger.info("position_reduced", symbol=symbol, closed=quantity,
                    remaining=remaining.quantity, pnl=round(trade.pnl or 0.0, 4))
        return self._positions[symbol]

    def mark(self, symbol: str, price: float) -> Optional[Position]:
        position = self._positions.get(symbol)
        if position is None or price <= 0:
            return position
        marked = position.marked(price)
        self._positions[symbol] = marked
        return marked

    def restore(self, positions: List[Position], trades: List[Trade]) -> None:
        """Load persisted state into an empty ledger."""
        if self._positions or self._trades:
            raise LedgerError("Cannot restore into a non-empty ledger")
        for position in positions:
            self._positions[position.symbol] = position
        self._trades = sorted(trades, key=lambda t: t.timestamp)
        logger.info("ledger_restored", positions=len(self._positions), trades=len(self._trades))

    # ─── Reads ──────────────────────────────────────────────────

    def get_position(self, symbol: str) -> Optional[Position]:
        return self._positions.get(symbol)

    def has_position(self, symbol: str) -> bool:
        return symbol in self._positions

    def opening_trade(self, position: Position) -> Optional[Trade]:
        for t in self._trades:
            if t.position_id == position.id and t.pnl is None:
                return t
        return None

    @property
    def positions(self) -> List[Position]:
        return list(self._positions.values())

    @property
    def trades(self) -> List[Trade]:
        return list(self._trades)

    @property
    def open_count(self) -> int:
        return len(self._positions)

    @property
    def closed_trades(self) -> List[Trade]:
        return [t for t in self._trades if t.pnl is not None]

    def realized_pnl(self, since: Optional[datetime] = None, before: Optional[datetime] = None) -> float:
        total = 0.0
        for t in self._trades:
            if t.pnl is None:
                continue
            if since is not None and t.timestamp < since:
                continue
            if before is not None and t.timestamp >= before:
                continue
            total += t.pnl
        return total

    def unrealized_pnl(self) -> float:
        return sum(p.unrealized_pnl() for p in self._positions.values())

    def committed_capital(self) -> float:
        """Margin tied up in open positions."""
        return sum(p.notional / max(p.leverage, 1.0) for p in self._positions.values())

    @property
    def portfolio_value(self) -> float:
        return self.initial_capital + self.realized_pnl() + self.unrealized_pnl()

    def available_capital(self) -> float:
        return max(0.0, self.portfolio_value - self.committed_capital())


def realized_pnl_for_close(position: Position, exit_price: float, quantity: float,
                           fee: float, open_fee: float = 0.0) -> float:
    """Round-trip P&L of closing `quantity` of a position at exit_price, net of fees."""
    direction = 1.0 if position.side == PositionSide.LONG else -1.0
    return (exit_price - position.entry_price) * quantity * direction - fee - open_fee
