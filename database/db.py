"""Database helpers for positions and rate-limit windows."""

from sqlalchemy import create_engine
from sqlalchemy.orm import Session, sessionmaker

from config import DATABASE_URL
from database.models import Base, PositionRow, RateLimitRow
from trading.positions import ExitRules, Position
from trading.rate_limiter import RateLimitRecord


def _to_position(row: PositionRow) -> Position:
    return Position(
        user_id=row.user_id,
        token=row.token,
        entry_price=float(row.entry_price),
        quantity=int(row.quantity),
        rules=ExitRules.from_fractions(
            stop_loss=row.stop_loss,
            take_profit=row.take_profit,
            trailing_stop=row.trailing_stop,
        ),
        high_water_mark=float(row.high_water_mark),
        status=row.status,
        opened_at=float(row.opened_at),
        updated_at=float(row.updated_at),
        buy_signature=row.buy_signature or "",
    )


class TradeStore:
    """Synchronous store; async callers go through ``asyncio.to_thread``."""

    def __init__(self, database_url: str | None = None) -> None:
        self.engine = create_engine(database_url or DATABASE_URL, future=True)
        self.SessionLocal = sessionmaker(bind=self.engine, autoflush=False, autocommit=False, future=True)

    def init_db(self) -> None:
        Base.metadata.create_all(bind=self.engine)

    def get_db(self) -> Session:
        return self.SessionLocal()

    def close(self) -> None:
        self.engine.dispose()

    def load_positions(self) -> list[Position]:
        db = self.get_db()
        try:
            return [_to_position(row) for row in db.query(PositionRow).all()]
        finally:
            db.close()

    def save_position(self, position: Position) -> None:
        db = self.get_db()
        try:
            row = (
                db.query(PositionRow)
                .filter(PositionRow.user_id == position.user_id, PositionRow.token == position.token)
                .first()
            )
            if row is None:
                row = PositionRow(user_id=position.user_id, token=position.token)
                db.add(row)
            rules = position.rules.as_dict()
            row.entry_price = float(position.entry_price)
            row.quantity = str(int(position.quantity))
            row.stop_loss = rules["stop_loss"]
            row.take_profit = rules["take_profit"]
            row.trailing_stop = rules["trailing_stop"]
            row.high_water_mark = float(position.high_water_mark)
            row.status = position.status
            row.opened_at = float(position.opened_at)
            row.updated_at = float(position.updated_at)
            row.buy_signature = position.buy_signature or ""
            db.commit()
        finally:
            db.close()

    def remove_position(self, user_id: str, token: str) -> bool:
        db = self.get_db()
        try:
            deleted = (
                db.query(PositionRow)
                .filter(PositionRow.user_id == str(user_id), PositionRow.token == str(token))
                .delete()
            )
            db.commit()
            return bool(deleted)
        finally:
            db.close()

    def load_rate_limits(self) -> list[RateLimitRecord]:
        db = self.get_db()
        try:
            return [
                RateLimitRecord(
                    user_id=row.user_id,
                    window_start=float(row.window_start),
                    count=int(row.count),
                    limit=int(row.limit),
                )
                for row in db.query(RateLimitRow).all()
            ]
        finally:
            db.close()

    def save_rate_limit(self, record: RateLimitRecord) -> None:
        db = self.get_db()
        try:
            row = db.get(RateLimitRow, str(record.user_id))
            if row is None:
                row = RateLimitRow(user_id=str(record.user_id))
                db.add(row)
            row.window_start = float(record.window_start)
            row.count = int(record.count)
            row.limit = int(record.limit)
            db.commit()
        finally:
            db.close()
