"""Fixed-window limit on buy actions per user."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable

import config
from trading.errors import RateLimitError, Result
from utils.keyed_locks import KeyedLocks

logger = logging.getLogger(__name__)


@dataclass
class RateLimitRecord:
    user_id: str
    window_start: float
    count: int
    limit: int


class RateLimiter:
    def __init__(
        self,
        limit: int | None = None,
        window_seconds: float | None = None,
        *,
        store: Any | None = None,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.limit = max(1, int(limit or getattr(config, "BUY_RATE_LIMIT", 5)))
        self.window_seconds = max(1.0, float(window_seconds or getattr(config, "BUY_RATE_WINDOW_SECONDS", 3600)))
        self._store = store
        self._clock = clock
        self._records: dict[str, RateLimitRecord] = {}
        self._locks = KeyedLocks()

    async def load(self) -> int:
        if self._store is None:
            return 0
        rows = await asyncio.to_thread(self._store.load_rate_limits)
        for row in rows:
            row.limit = self.limit
            self._records[str(row.user_id)] = row
        return len(rows)

    def _window_expired(self, record: RateLimitRecord | None, now: float) -> bool:
        return record is None or (now - record.window_start) >= self.window_seconds

    def remaining(self, user_id: str) -> int:
        record = self._records.get(str(user_id))
        if self._window_expired(record, self._clock()):
            return self.limit
        return max(0, self.limit - record.count)

    async def try_acquire(self, user_id: str) -> Result[int]:
        """Consume one slot; the value is how many remain in the window."""
        key = str(user_id)
        async with self._locks.hold(key):
            now = self._clock()
            record = self._records.get(key)
            if self._window_expired(record, now):
                record = RateLimitRecord(user_id=key, window_start=now, count=0, limit=self.limit)
                self._records[key] = record
            if record.count >= self.limit:
                retry_at = record.window_start + self.window_seconds
                logger.info("RATE_LIMITED user=%s count=%s limit=%s retry_in=%.0fs", key, record.count, self.limit, retry_at - now)
                return Result.failure(
                    RateLimitError(
                        f"buy limit of {self.limit} per {self.window_seconds:.0f}s reached",
                        retry_at=retry_at,
                        limit=self.limit,
                        remaining=0,
                    )
                )
            record.count += 1
            if self._store is not None:
                snapshot = RateLimitRecord(**vars(record))
                await asyncio.to_thread(self._store.save_rate_limit, snapshot)
            return Result.success(self.limit - record.count)
