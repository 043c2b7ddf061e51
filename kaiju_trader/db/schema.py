"""
KAIJU TRADER — Database Schema Design
SQLAlchemy models for the trade ledger and open positions.
"""
from datetime import datetime, timezone
from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Text, Index, create_engine
)
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


class TradeRecord(Base):
    """Append-only trade ledger row."""
    __tablename__ = "trades"

    seq = Column(Integer, primary_key=True, autoincrement=True)
    trade_id = Column(String(64), nullable=False, unique=True)
    symbol = Column(String(20), nullable=False, index=True)
    side = Column(String(10), nullable=False)  # BUY, SELL
    price = Column(Float, nullable=False)
    quantity = Column(Float, nullable=False)
    fee = Column(Float, default=0.0)
    pnl = Column(Float)  # set on closing trades only
    reason = Column(Text)
    position_id = Column(String(64), index=True)
    venue = Column(String(20), default="paper")  # paper, spot, defi
    executed_at = Column(DateTime(timezone=True), nullable=False)
    created_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc))

    __table_args__ = (
        Index("idx_trades_symbol_time", "symbol", "executed_at"),
    )


class PositionRecord(Base):
    """Currently open position; deleted when the position closes."""
    __tablename__ = "open_positions"

    position_id = Column(String(64), primary_key=True)
    symbol = Column(String(20), nullable=False, unique=True)
    side = Column(String(10), nullable=False)  # LONG, SHORT
    entry_price = Column(Float, nullable=False)
    current_price = Column(Float, nullable=False)
    quantity = Column(Float, nullable=False)
    stop_loss = Column(Float)
    take_profit = Column(Float)
    trade_type = Column(String(20), default="spot")
    leverage = Column(Float, default=1.0)
    venue_ref = Column(String(128))
    opened_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), default=lambda: datetime.now(timezone.utc),
                        onupdate=lambda: datetime.now(timezone.utc))


def init_db_sync(db_url: str = "sqlite:///kaiju_trader.db", echo: bool = False):
    """Create all tables and return a session factory."""
    engine = create_engine(db_url, echo=echo)
    Base.metadata.create_all(engine)
    return sessionmaker(bind=engine, expire_on_commit=False)
