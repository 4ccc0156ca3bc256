"""Rate-spaced, circuit-breaker-protected JSON client for the swap aggregator."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import aiohttp

import config
from trading.errors import (
    CircuitOpenError,
    GatewayError,
    GatewayExhaustedError,
    GatewayResponseError,
    GatewayTransientError,
)
from utils.retry import Backoff, retry_async

logger = logging.getLogger(__name__)

CLOSED = "CLOSED"
OPEN = "OPEN"
HALF_OPEN = "HALF_OPEN"


@dataclass
class GatewayResult:
    ok: bool
    status: int
    data: Any | None
    error: GatewayError | None = None
    attempts: int = 0
    retryable: bool = False
    retry_after: float | None = None


@dataclass
class GatewayStats:
    ok: int = 0
    fail: int = 0
    rate_limited: int = 0
    retries: int = 0
    circuit_rejections: int = 0
    latency_total_ms: float = 0.0
    latency_max_ms: float = 0.0
    latency_count: int = 0


class CircuitBreaker:
    """Consecutive-failure breaker.

    Callers run on one event loop and none of these methods await, so each
    transition is atomic with respect to other coroutines.
    """

    def __init__(
        self,
        failure_threshold: int,
        open_seconds: float,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.failure_threshold = max(1, int(failure_threshold))
        self.open_seconds = max(0.0, float(open_seconds))
        self._clock = clock
        self.state = CLOSED
        self.failures = 0
        self.last_failure_at = 0.0
        self._trial_in_flight = False

    def before_call(self) -> None:
        if self.state == CLOSED:
            return
        now = self._clock()
        if self.state == OPEN:
            elapsed = now - self.last_failure_at
            if elapsed <= self.open_seconds:
                raise CircuitOpenError(
                    "circuit open, refusing request",
                    retry_in=self.open_seconds - elapsed,
                )
            self.state = HALF_OPEN
            logger.info("CIRCUIT_HALF_OPEN failures=%s", self.failures)
        if self._trial_in_flight:
            raise CircuitOpenError("circuit half-open, trial request in flight", retry_in=0.0)
        self._trial_in_flight = True

    def release_trial(self) -> None:
        self._trial_in_flight = False

    def record_success(self) -> None:
        if self.state != CLOSED:
            logger.info("CIRCUIT_CLOSED previous_state=%s", self.state)
        self.state = CLOSED
        self.failures = 0
        self._trial_in_flight = False

    def record_failure(self) -> None:
        self.failures += 1
        self.last_failure_at = self._clock()
        self._trial_in_flight = False
        if self.state == HALF_OPEN or self.failures >= self.failure_threshold:
            if self.state != OPEN:
                logger.warning(
                    "CIRCUIT_OPEN failures=%s threshold=%s open_for=%.1fs",
                    self.failures,
                    self.failure_threshold,
                    self.open_seconds,
                )
            self.state = OPEN

    def snapshot(self) -> dict[str, Any]:
        return {
            "state": self.state,
            "failures": int(self.failures),
            "threshold": int(self.failure_threshold),
            "last_failure_at": round(float(self.last_failure_at), 3),
        }


class ApiGateway:
    def __init__(
        self,
        base_url: str,
        *,
        name: str = "jupiter",
        timeout_seconds: float | None = None,
        min_interval_seconds: float | None = None,
        retry_attempts: int | None = None,
        backoff_base_seconds: float | None = None,
        retry_after_default_seconds: float | None = None,
        failure_threshold: int | None = None,
        open_seconds: float | None = None,
        headers: dict[str, str] | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.base_url = str(base_url or "").rstrip("/")
        self.name = name
        timeout = timeout_seconds if timeout_seconds is not None else getattr(config, "JUPITER_TIMEOUT_SECONDS", 10.0)
        self._timeout = aiohttp.ClientTimeout(total=max(1.0, float(timeout)))
        self._headers = dict(headers or {})
        self._min_interval = max(
            0.0,
            float(
                min_interval_seconds
                if min_interval_seconds is not None
                else getattr(config, "GATEWAY_MIN_INTERVAL_SECONDS", 0.5)
            ),
        )
        self._backoff = Backoff(
            attempts=max(1, int(retry_attempts or getattr(config, "GATEWAY_RETRY_ATTEMPTS", 3))),
            base_delay_seconds=float(
                backoff_base_seconds
                if backoff_base_seconds is not None
                else getattr(config, "GATEWAY_BACKOFF_BASE_SECONDS", 1.0)
            ),
        )
        self._retry_after_default = float(
            retry_after_default_seconds
            if retry_after_default_seconds is not None
            else getattr(config, "GATEWAY_RETRY_AFTER_DEFAULT_SECONDS", 5.0)
        )
        self.breaker = CircuitBreaker(
            failure_threshold=int(failure_threshold or getattr(config, "CIRCUIT_FAILURE_THRESHOLD", 5)),
            open_seconds=float(
                open_seconds if open_seconds is not None else getattr(config, "CIRCUIT_OPEN_SECONDS", 60.0)
            ),
            clock=clock,
        )
        self._clock = clock
        self._sleep = sleep
        self._gate_lock = asyncio.Lock()
        self._last_request_at: float | None = None
        self._session: aiohttp.ClientSession | None = None
        self._stats = GatewayStats()

    async def close(self) -> None:
        session = self._session
        self._session = None
        if session is not None and not session.closed:
            await session.close()

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            connector_limit = max(1, int(getattr(config, "HTTP_CONNECTOR_LIMIT", 30) or 30))
            connector = aiohttp.TCPConnector(limit=connector_limit)
            self._session = aiohttp.ClientSession(timeout=self._timeout, connector=connector)
        return self._session

    async def _wait_spacing(self) -> None:
        async with self._gate_lock:
            if self._last_request_at is not None:
                wait_for = self._last_request_at + self._min_interval - self._clock()
                if wait_for > 0:
                    logger.debug("GATEWAY_SPACING_WAIT gateway=%s wait=%.3fs", self.name, wait_for)
                    await self._sleep(wait_for)
            self._last_request_at = self._clock()

    async def _send(
        self,
        method: str,
        url: str,
        params: dict[str, Any] | None,
    ) -> tuple[int, Any, dict[str, str]]:
        session = await self._get_session()
        kwargs: dict[str, Any] = {"headers": self._headers}
        if method == "GET":
            kwargs["params"] = params
        else:
            kwargs["json"] = params
        async with session.request(method, url, **kwargs) as response:
            status = int(response.status or 0)
            try:
                payload = await response.json(content_type=None)
            except ValueError:
                payload = None
            return status, payload, dict(response.headers or {})

    def _retry_after_seconds(self, headers: dict[str, str]) -> float:
        raw = ""
        for key, value in (headers or {}).items():
            if str(key).lower() == "retry-after":
                raw = str(value or "").strip()
                break
        if raw:
            try:
                return max(0.0, float(raw))
            except ValueError:
                pass
        return max(0.0, self._retry_after_default)

    def _record_latency(self, started: float) -> None:
        elapsed_ms = max(0.0, (time.perf_counter() - started) * 1000.0)
        self._stats.latency_total_ms += elapsed_ms
        self._stats.latency_count += 1
        self._stats.latency_max_ms = max(self._stats.latency_max_ms, elapsed_ms)

    async def _attempt(self, method: str, url: str, params: dict[str, Any] | None, attempt: int) -> GatewayResult:
        stats = self._stats
        last_attempt = attempt >= self._backoff.attempts
        try:
            self.breaker.before_call()
        except CircuitOpenError as exc:
            stats.circuit_rejections += 1
            logger.warning("GATEWAY_CIRCUIT_REJECT gateway=%s retry_in=%.2fs url=%s", self.name, exc.retry_in, url)
            return GatewayResult(ok=False, status=0, data=None, error=exc, attempts=attempt - 1)

        status = 0
        try:
            await self._wait_spacing()
            started = time.perf_counter()
            try:
                status, payload, headers = await self._send(method, url, params)
            finally:
                self._record_latency(started)
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            self.breaker.record_failure()
            return GatewayResult(
                ok=False,
                status=0,
                data=None,
                error=GatewayTransientError(f"transport error: {exc or type(exc).__name__}"),
                attempts=attempt,
                retryable=True,
            )
        finally:
            self.breaker.release_trial()

        if 200 <= status < 300:
            self.breaker.record_success()
            stats.ok += 1
            return GatewayResult(ok=True, status=status, data=payload, attempts=attempt)

        if status == 429:
            stats.rate_limited += 1
            if last_attempt:
                self.breaker.record_failure()
            return GatewayResult(
                ok=False,
                status=status,
                data=payload,
                error=GatewayTransientError("rate limited by remote service", status=status),
                attempts=attempt,
                retryable=True,
                retry_after=self._retry_after_seconds(headers),
            )

        self.breaker.record_failure()
        if status >= 500:
            return GatewayResult(
                ok=False,
                status=status,
                data=payload,
                error=GatewayTransientError(f"http_status_{status}", status=status),
                attempts=attempt,
                retryable=True,
            )
        return GatewayResult(
            ok=False,
            status=status,
            data=payload,
            error=GatewayResponseError(f"http_status_{status}", status=status, body=payload),
            attempts=attempt,
        )

    def _log_retry(self, result: GatewayResult, attempt: int, delay: float) -> None:
        self._stats.retries += 1
        logger.info(
            "GATEWAY_RETRY gateway=%s attempt=%s/%s status=%s delay=%.2fs error=%s",
            self.name,
            attempt,
            self._backoff.attempts,
            result.status,
            delay,
            result.error,
        )

    async def request(
        self,
        endpoint: str,
        params: dict[str, Any] | None = None,
        method: str = "GET",
    ) -> GatewayResult:
        """Issue one logical call; failures come back on the result, never raised."""
        method = str(method or "GET").upper()
        url = f"{self.base_url}/{str(endpoint or '').lstrip('/')}"

        async def operation(attempt: int) -> GatewayResult:
            return await self._attempt(method, url, params, attempt)

        result = await retry_async(
            operation,
            backoff=self._backoff,
            should_retry=lambda r: r.retryable,
            delay_override=lambda r, _attempt: r.retry_after,
            sleep=self._sleep,
            on_retry=self._log_retry,
        )
        if result.ok:
            return result
        if result.retryable:
            self._stats.fail += 1
            logger.warning(
                "GATEWAY_EXHAUSTED gateway=%s attempts=%s status=%s url=%s",
                self.name,
                result.attempts,
                result.status,
                url,
            )
            return GatewayResult(
                ok=False,
                status=result.status,
                data=result.data,
                error=GatewayExhaustedError(
                    f"{self.name} request failed after {result.attempts} attempts",
                    attempts=result.attempts,
                    last_error=result.error,
                ),
                attempts=result.attempts,
            )
        if not isinstance(result.error, CircuitOpenError):
            self._stats.fail += 1
        return result

    def snapshot_stats(self, reset: bool = False) -> dict[str, int | float | str]:
        row = self._stats
        total = int(row.ok + row.fail)
        err_pct = (float(row.fail) / total * 100.0) if total > 0 else 0.0
        out: dict[str, int | float | str] = {
            "ok": int(row.ok),
            "fail": int(row.fail),
            "total": total,
            "rate_limited": int(row.rate_limited),
            "retries": int(row.retries),
            "circuit_rejections": int(row.circuit_rejections),
            "circuit_state": self.breaker.state,
            "error_percent": round(err_pct, 2),
            "latency_avg_ms": round((row.latency_total_ms / row.latency_count), 2) if row.latency_count > 0 else 0.0,
            "latency_max_ms": round(float(row.latency_max_ms), 2),
        }
        if reset:
            self._stats = GatewayStats()
        return out
