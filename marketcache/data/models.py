"""Database table definitions."""

from sqlalchemy import (
    Column,
    DateTime,
    Float,
    ForeignKey,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase


class Base(DeclarativeBase):
    pass


class Symbol(Base):
    __tablename__ = "symbols"

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol = Column(String(20), nullable=False, unique=True, index=True)
    name = Column(String(200))
    exchange = Column(String(50))
    instrument_type = Column("type", String(20))


class Candle(Base):
    """One OHLCV bar. Timestamps are stored as naive UTC."""

    __tablename__ = "candles"
    __table_args__ = (
        UniqueConstraint("symbol_id", "interval", "period_start", name="uq_candle_period"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol_id = Column(Integer, ForeignKey("symbols.id", ondelete="CASCADE"), nullable=False)
    interval = Column(String(10), nullable=False)
    period_start = Column(DateTime, nullable=False, index=True)
    open = Column(Float, nullable=False)
    high = Column(Float, nullable=False)
    low = Column(Float, nullable=False)
    close = Column(Float, nullable=False)
    volume = Column(Float, nullable=False, default=0.0)


class Freshness(Base):
    __tablename__ = "data_freshness"
    __table_args__ = (UniqueConstraint("symbol_id", "interval", name="uq_freshness_interval"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    symbol_id = Column(Integer, ForeignKey("symbols.id", ondelete="CASCADE"), nullable=False)
    interval = Column(String(10), nullable=False)
    last_fetched_at = Column(DateTime)
    last_successful_fetch_at = Column(DateTime)
    fetch_count = Column(Integer, nullable=False, default=0)
    error_count = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
