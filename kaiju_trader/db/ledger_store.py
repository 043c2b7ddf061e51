"""
KAIJU TRADER — Ledger Store
Write-through persistence of trades and open positions, restored on start.
"""
from datetime import timezone
from typing import List, Optional, Tuple

from sqlalchemy import select

from kaiju_trader.config.settings import get_settings
from kaiju_trader.data.models import Position, PositionSide, Trade, TradeSide, TradeType
from kaiju_trader.db.schema import PositionRecord, TradeRecord, init_db_sync
from kaiju_trader.utils.logger import get_logger

logger = get_logger("ledger_store")


def _utc(ts):
    # sqlite drops tzinfo on the way back
    if ts is not None and ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


class LedgerStore:
    """SQLAlchemy-backed trade ledger and open-position table."""

    def __init__(self, db_url: Optional[str] = None, echo: bool = False):
        self.db_url = db_url or get_settings().database.db_url
        self._session_factory = init_db_sync(self.db_url, echo=echo)
        logger.info("ledger_store_ready", db_url=self.db_url)

    # ─── Writes ─────────────────────────────────────────────────

    def append_trade(self, trade: Trade) -> None:
        record = TradeRecord(
            trade_id=trade.id,
            symbol=trade.symbol,
            side=trade.side.value,
            price=trade.price,
            quantity=trade.quantity,
            fee=trade.fee,
            pnl=trade.pnl,
            reason=trade.reason,
            position_id=trade.position_id,
            venue=trade.venue,
            executed_at=trade.timestamp,
        )
        with self._session_factory() as session:
            session.add(record)
            session.commit()

    def save_position(self, position: Position) -> None:
        """Insert or update the row for a position."""
        with self._session_factory() as session:
            record = session.get(PositionRecord, position.id)
            if record is None:
                record = PositionRecord(position_id=position.id)
                session.add(record)
            record.symbol = position.symbol
            record.side = position.side.value
            record.entry_price = position.entry_price
            record.current_price = position.current_price
            record.quantity = position.quantity
            record.stop_loss = position.stop_loss
            record.take_profit = position.take_profit
            record.trade_type = position.trade_type.value
            record.leverage = position.leverage
            record.venue_ref = position.venue_ref
            record.opened_at = position.opened_at
            session.commit()

    def delete_position(self, position_id: str) -> None:
        with self._session_factory() as session:
            record = session.get(PositionRecord, position_id)
            if record is not None:
                session.delete(record)
                session.commit()

    # ─── Reads ──────────────────────────────────────────────────

    def load(self) -> Tuple[List[Position], List[Trade]]:
        """All open positions and the full trade ledger, oldest trade first."""
        with self._session_factory() as session:
            trade_rows = session.scalars(select(TradeRecord).order_by(TradeRecord.seq)).all()
            position_rows = session.scalars(select(PositionRecord)).all()
            trades = [self._to_trade(r) for r in trade_rows]
            positions = [self._to_position(r) for r in position_rows]
        logger.info("ledger_loaded", positions=len(positions), trades=len(trades))
        return positions, trades

    @staticmethod
    def _to_trade(r: TradeRecord) -> Trade:
        return Trade(
            id=r.trade_id,
            symbol=r.symbol,
            side=TradeSide(r.side),
            price=r.price,
            quantity=r.quantity,
            timestamp=_utc(r.executed_at),
            fee=r.fee or 0.0,
            pnl=r.pnl,
            reason=r.reason or "",
            position_id=r.position_id,
            venue=r.venue or "paper",
        )

    @staticmethod
    def _to_position(r: PositionRecord) -> Position:
        position = Position(
            id=r.position_id,
            symbol=r.symbol,
            side=PositionSide(r.side),
            entry_price=r.entry_price,
            current_price=r.current_price,
            quantity=r.quantity,
            opened_at=_utc(r.opened_at),
            stop_loss=r.stop_loss,
            take_profit=r.take_profit,
            trade_type=TradeType(r.trade_type or "spot"),
            leverage=r.leverage or 1.0,
            venue_ref=r.venue_ref,
        )
        return position.marked(r.current_price)
