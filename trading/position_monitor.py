"""Background loop that routes fired exit rules to sells."""

from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Any, Callable

import config
from trading.errors import InvalidTransactionTypeError, TradeError
from trading.orchestrator import TradeOrchestrator, TradeResult
from trading.positions import STATUS_OPEN, PositionTracker

logger = logging.getLogger(__name__)


class PositionMonitor:
    def __init__(
        self,
        tracker: PositionTracker,
        orchestrator: TradeOrchestrator,
        price_source: Any,
        credential_provider: Callable[[str], Any],
        *,
        interval_seconds: float | None = None,
        stats_sources: list[Any] | None = None,
    ) -> None:
        self.tracker = tracker
        self.orchestrator = orchestrator
        self.price_source = price_source
        self.credential_provider = credential_provider
        self.interval_seconds = float(
            interval_seconds if interval_seconds is not None else getattr(config, "POSITION_EVAL_INTERVAL_SECONDS", 15)
        )
        self.stats_sources = list(stats_sources or [])

    async def _credential_for(self, user_id: str) -> Any:
        credential = self.credential_provider(user_id)
        if inspect.isawaitable(credential):
            credential = await credential
        return credential

    async def _fetch_prices(self, tokens: list[str]) -> dict[str, float | None]:
        results = await asyncio.gather(
            *(self.price_source.current_price(token) for token in tokens),
            return_exceptions=True,
        )
        prices: dict[str, float | None] = {}
        for token, value in zip(tokens, results):
            if isinstance(value, Exception):
                logger.warning("PRICE_FETCH_FAILED token=%s error=%s", token, value)
                prices[token] = None
            else:
                prices[token] = value
        return prices

    async def run_once(self) -> list[TradeResult]:
        positions = [p for p in self.tracker.positions() if p.status == STATUS_OPEN]
        if not positions:
            return []
        tokens = sorted({p.token for p in positions})
        prices = await self._fetch_prices(tokens)

        results: list[TradeResult] = []
        for snapshot in positions:
            price = prices.get(snapshot.token)
            if price is None or price <= 0:
                continue
            async with self.tracker.lock_for(snapshot.user_id, snapshot.token):
                position = self.tracker.get(snapshot.user_id, snapshot.token)
                if position is None or position.status != STATUS_OPEN:
                    continue
                rule = await self.tracker.observe_price(position, price)
                if rule is None:
                    continue
                results.append(await self._close(position, rule.kind, price))
        return results

    async def _close(self, position: Any, reason: str, price: float) -> TradeResult:
        await self.tracker.begin_close(position.user_id, position.token)
        logger.info(
            "AUTO_SELL trigger token=%s user=%s reason=%s price=%.12f entry=%.12f hwm=%.12f",
            position.token,
            position.user_id,
            reason,
            price,
            position.entry_price,
            position.high_water_mark,
        )
        result: TradeResult | None = None
        try:
            credential = await self._credential_for(position.user_id)
            result = await self.orchestrator.auto_close(position.user_id, credential, position.token, reason)
        except InvalidTransactionTypeError:
            raise
        except Exception as exc:
            logger.exception("AUTO_SELL error token=%s user=%s reason=%s", position.token, position.user_id, reason)
            result = TradeResult(
                ok=False,
                action="sell",
                user_id=position.user_id,
                token=position.token,
                error=TradeError(f"auto close raised {type(exc).__name__}: {exc}"),
                reason=reason,
            )
        finally:
            if result is None or not result.ok:
                await self.tracker.revert(position.user_id, position.token)
        if not result.ok:
            logger.warning(
                "AUTO_SELL failed token=%s user=%s reason=%s error=%s",
                position.token,
                position.user_id,
                reason,
                result.error,
            )
        else:
            # auto_close sells the full quantity so the tracker has already dropped it.
            logger.info(
                "AUTO_SELL done token=%s user=%s reason=%s signature=%s received=%s",
                position.token,
                position.user_id,
                reason,
                result.signature,
                result.amount_out,
            )
        return result

    def _log_stats(self) -> None:
        for source in self.stats_sources:
            snapshot = getattr(source, "snapshot_stats", None)
            if snapshot is not None:
                logger.info("GATEWAY_STATS name=%s stats=%s", getattr(source, "name", "-"), snapshot())

    async def run_forever(self, stop_event: asyncio.Event | None = None) -> None:
        stop_event = stop_event or asyncio.Event()
        logger.info("MONITOR_START interval=%.1fs", self.interval_seconds)
        while not stop_event.is_set():
            try:
                await self.run_once()
            except Exception:
                logger.exception("MONITOR_TICK_FAILED")
            self._log_stats()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_seconds)
            except asyncio.TimeoutError:
                continue
        logger.info("MONITOR_STOP")
