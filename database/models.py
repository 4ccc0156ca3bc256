"""SQLAlchemy models."""

from datetime import datetime

from sqlalchemy import Column, DateTime, Float, Integer, String, UniqueConstraint
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class PositionRow(Base):
    __tablename__ = "positions"
    __table_args__ = (UniqueConstraint("user_id", "token", name="uq_positions_user_token"),)

    id = Column(Integer, primary_key=True)
    user_id = Column(String, nullable=False, index=True)
    token = Column(String, nullable=False)
    entry_price = Column(Float, nullable=False)
    # Raw token units can exceed 64-bit integers, so they are kept as text.
    quantity = Column(String, nullable=False)
    stop_loss = Column(Float, nullable=True)
    take_profit = Column(Float, nullable=True)
    trailing_stop = Column(Float, nullable=True)
    high_water_mark = Column(Float, nullable=False)
    status = Column(String, default="OPEN", nullable=False)
    opened_at = Column(Float, nullable=False)
    updated_at = Column(Float, nullable=False)
    buy_signature = Column(String, default="", nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow, nullable=False)


class RateLimitRow(Base):
    __tablename__ = "rate_limits"

    user_id = Column(String, primary_key=True)
    window_start = Column(Float, nullable=False)
    count = Column(Integer, default=0, nullable=False)
    limit = Column(Integer, nullable=False)
