"""Open positions and the price-based exit rules evaluated against them."""

from __future__ import annotations

import asyncio
import logging
import math
import time
from dataclasses import dataclass, field
from typing import Any, AsyncContextManager, Callable, Union

import config
from trading.errors import PositionBusyError, PositionExistsError, PositionNotFoundError, ValidationError
from utils.keyed_locks import KeyedLocks

logger = logging.getLogger(__name__)

STATUS_OPEN = "OPEN"
STATUS_CLOSING = "CLOSING"


def _at_or_below(price: float, threshold: float) -> bool:
    return price <= threshold or math.isclose(price, threshold, rel_tol=1e-9)


def _at_or_above(price: float, threshold: float) -> bool:
    return price >= threshold or math.isclose(price, threshold, rel_tol=1e-9)


@dataclass(frozen=True)
class StopLoss:
    fraction: float
    kind: str = field(default="stop_loss", init=False)

    def threshold(self, position: "Position") -> float:
        return position.entry_price * (1.0 - self.fraction)

    def triggered(self, position: "Position", price: float) -> bool:
        return _at_or_below(price, self.threshold(position))


@dataclass(frozen=True)
class TakeProfit:
    fraction: float
    kind: str = field(default="take_profit", init=False)

    def threshold(self, position: "Position") -> float:
        return position.entry_price * (1.0 + self.fraction)

    def triggered(self, position: "Position", price: float) -> bool:
        return _at_or_above(price, self.threshold(position))


@dataclass(frozen=True)
class TrailingStop:
    fraction: float
    kind: str = field(default="trailing_stop", init=False)

    def threshold(self, position: "Position") -> float:
        return position.high_water_mark * (1.0 - self.fraction)

    def triggered(self, position: "Position", price: float) -> bool:
        return _at_or_below(price, self.threshold(position))


ExitRule = Union[StopLoss, TakeProfit, TrailingStop]


@dataclass(frozen=True)
class ExitRules:
    stop_loss: StopLoss | None = None
    take_profit: TakeProfit | None = None
    trailing_stop: TrailingStop | None = None

    def __post_init__(self) -> None:
        for rule in (self.stop_loss, self.trailing_stop):
            if rule is not None and not 0.0 < rule.fraction < 1.0:
                raise ValidationError(f"{rule.kind} fraction must be between 0 and 1", fraction=rule.fraction)
        if self.take_profit is not None and self.take_profit.fraction <= 0.0:
            raise ValidationError("take_profit fraction must be positive", fraction=self.take_profit.fraction)

    @classmethod
    def from_fractions(
        cls,
        stop_loss: float | None = None,
        take_profit: float | None = None,
        trailing_stop: float | None = None,
    ) -> "ExitRules":
        return cls(
            stop_loss=StopLoss(float(stop_loss)) if stop_loss else None,
            take_profit=TakeProfit(float(take_profit)) if take_profit else None,
            trailing_stop=TrailingStop(float(trailing_stop)) if trailing_stop else None,
        )

    @classmethod
    def defaults(cls) -> "ExitRules":
        return cls.from_fractions(
            stop_loss=getattr(config, "DEFAULT_STOP_LOSS_FRACTION", 0.1),
            take_profit=getattr(config, "DEFAULT_TAKE_PROFIT_FRACTION", 0.2),
            trailing_stop=getattr(config, "DEFAULT_TRAILING_STOP_FRACTION", None),
        )

    def ordered(self) -> list[ExitRule]:
        # Priority: stop-loss, then take-profit, then trailing stop.
        return [rule for rule in (self.stop_loss, self.take_profit, self.trailing_stop) if rule is not None]

    def first_triggered(self, position: "Position", price: float) -> ExitRule | None:
        for rule in self.ordered():
            if rule.triggered(position, price):
                return rule
        return None

    def as_dict(self) -> dict[str, float | None]:
        return {
            "stop_loss": self.stop_loss.fraction if self.stop_loss else None,
            "take_profit": self.take_profit.fraction if self.take_profit else None,
            "trailing_stop": self.trailing_stop.fraction if self.trailing_stop else None,
        }


@dataclass
class Position:
    user_id: str
    token: str
    entry_price: float
    quantity: int
    rules: ExitRules
    high_water_mark: float
    status: str = STATUS_OPEN
    opened_at: float = 0.0
    updated_at: float = 0.0
    buy_signature: str = ""

    @property
    def key(self) -> tuple[str, str]:
        return (self.user_id, self.token)


class PositionTracker:
    """In-memory position book with optional persistence.

    Mutating calls expect the caller to hold ``lock_for(user_id, token)``.
    """

    def __init__(self, store: Any | None = None, clock: Callable[[], float] = time.time) -> None:
        self._store = store
        self._clock = clock
        self._positions: dict[tuple[str, str], Position] = {}
        self._locks = KeyedLocks()

    def lock_for(self, user_id: str, token: str) -> AsyncContextManager[None]:
        return self._locks.hold((str(user_id), str(token)))

    def is_locked(self, user_id: str, token: str) -> bool:
        return self._locks.locked((str(user_id), str(token)))

    @property
    def lock_count(self) -> int:
        return len(self._locks)

    def get(self, user_id: str, token: str) -> Position | None:
        return self._positions.get((str(user_id), str(token)))

    def positions(self) -> list[Position]:
        return list(self._positions.values())

    async def _persist(self, position: Position) -> None:
        if self._store is not None:
            await asyncio.to_thread(self._store.save_position, position)

    async def load(self) -> int:
        if self._store is None:
            return 0
        rows = await asyncio.to_thread(self._store.load_positions)
        for position in rows:
            if position.status == STATUS_CLOSING:
                # A close interrupted by restart is retried on the next tick.
                position.status = STATUS_OPEN
            self._positions[position.key] = position
        logger.info("POSITIONS_LOADED count=%s", len(rows))
        return len(rows)

    async def open(
        self,
        user_id: str,
        token: str,
        entry_price: float,
        quantity: int,
        rules: ExitRules,
        signature: str = "",
    ) -> Position:
        key = (str(user_id), str(token))
        if key in self._positions:
            raise PositionExistsError("position already open for token", user_id=key[0], token=key[1])
        if entry_price <= 0 or quantity <= 0:
            raise ValidationError("position needs positive entry price and quantity")
        now = self._clock()
        position = Position(
            user_id=key[0],
            token=key[1],
            entry_price=float(entry_price),
            quantity=int(quantity),
            rules=rules,
            high_water_mark=float(entry_price),
            opened_at=now,
            updated_at=now,
            buy_signature=signature,
        )
        self._positions[key] = position
        await self._persist(position)
        logger.info(
            "POSITION_OPEN user=%s token=%s entry=%.12f qty=%s rules=%s",
            position.user_id,
            position.token,
            position.entry_price,
            position.quantity,
            rules.as_dict(),
        )
        return position

    async def observe_price(self, position: Position, price: float) -> ExitRule | None:
        """Raise the high-water mark, then return the first rule that fires."""
        if position.status != STATUS_OPEN or price <= 0:
            return None
        if price > position.high_water_mark:
            position.high_water_mark = float(price)
            position.updated_at = self._clock()
            await self._persist(position)
        return position.rules.first_triggered(position, price)

    def _require(self, user_id: str, token: str) -> Position:
        position = self.get(user_id, token)
        if position is None:
            raise PositionNotFoundError("no open position for token", user_id=str(user_id), token=str(token))
        return position

    async def begin_close(self, user_id: str, token: str) -> Position:
        position = self._require(user_id, token)
        if position.status != STATUS_OPEN:
            raise PositionBusyError("position is already closing", user_id=position.user_id, token=position.token)
        position.status = STATUS_CLOSING
        position.updated_at = self._clock()
        await self._persist(position)
        return position

    async def revert(self, user_id: str, token: str) -> Position | None:
        position = self.get(user_id, token)
        if position is None:
            return None
        position.status = STATUS_OPEN
        position.updated_at = self._clock()
        await self._persist(position)
        return position

    async def close(self, user_id: str, token: str) -> Position:
        position = self._require(user_id, token)
        del self._positions[position.key]
        if self._store is not None:
            await asyncio.to_thread(self._store.remove_position, position.user_id, position.token)
        logger.info("POSITION_CLOSED user=%s token=%s", position.user_id, position.token)
        return position

    async def reduce(self, user_id: str, token: str, sold_quantity: int) -> Position | None:
        """Apply a partial sell; the position is closed when nothing is left."""
        position = self._require(user_id, token)
        remaining = int(position.quantity) - int(sold_quantity)
        if remaining <= 0:
            await self.close(user_id, token)
            return None
        position.quantity = remaining
        position.status = STATUS_OPEN
        position.updated_at = self._clock()
        await self._persist(position)
        return position
