"""Entry point for the Solana swap execution service."""

import argparse
import asyncio
import logging
import os
import signal
from dataclasses import dataclass
from logging.handlers import RotatingFileHandler

import config
from config import APP_LOG_FILE, LOG_DIR, LOG_LEVEL
from database.db import TradeStore
from monitor.price_source import DexScreenerPriceSource
from trading.credentials import SignerCredential
from trading.errors import ValidationError
from trading.fees import FeeCollector
from trading.ledger import SolanaLedger
from trading.orchestrator import TradeOrchestrator, TradeResult
from trading.position_monitor import PositionMonitor
from trading.positions import ExitRules, PositionTracker
from trading.rate_limiter import RateLimiter
from trading.swap_builder import SwapBuilder
from trading.transaction_executor import TransactionExecutor
from trading.verification import TransactionVerifier
from utils.api_gateway import ApiGateway


def configure_logging() -> None:
    os.makedirs(LOG_DIR, exist_ok=True)
    formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(name)s: %(message)s")

    file_handler = RotatingFileHandler(APP_LOG_FILE, maxBytes=1_000_000, backupCount=5, encoding="utf-8")
    file_handler.setFormatter(formatter)

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    root = logging.getLogger()
    root.setLevel(getattr(logging, LOG_LEVEL.upper(), logging.INFO))
    root.handlers.clear()
    root.addHandler(file_handler)
    root.addHandler(console_handler)

    # RPC transport logs echo full request bodies.
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("aiohttp").setLevel(logging.WARNING)


logger = logging.getLogger(__name__)


@dataclass
class Services:
    store: TradeStore
    ledger: SolanaLedger
    jupiter: ApiGateway
    prices: DexScreenerPriceSource
    tracker: PositionTracker
    rate_limiter: RateLimiter
    orchestrator: TradeOrchestrator

    async def close(self) -> None:
        await self.jupiter.close()
        await self.prices.close()
        await self.ledger.close()
        self.store.close()


def env_credential(user_id: str) -> SignerCredential | None:
    """Fresh credential per call from LIVE_PRIVATE_KEY for the configured user."""
    if str(user_id) != config.LIVE_USER_ID or not config.LIVE_PRIVATE_KEY:
        return None
    return SignerCredential.from_secret(config.LIVE_PRIVATE_KEY, user_id=str(user_id))


async def build_services() -> Services:
    store = TradeStore(config.DATABASE_URL)
    store.init_db()
    ledger = SolanaLedger(config.SOLANA_RPC_URL, config.RPC_TIMEOUT_SECONDS)
    jupiter = ApiGateway(config.JUPITER_API_BASE, name="jupiter")
    executor = TransactionExecutor(ledger)
    tracker = PositionTracker(store=store)
    rate_limiter = RateLimiter(store=store)
    await tracker.load()
    await rate_limiter.load()
    orchestrator = TradeOrchestrator(
        swap_builder=SwapBuilder(jupiter),
        executor=executor,
        verifier=TransactionVerifier(ledger),
        ledger=ledger,
        tracker=tracker,
        rate_limiter=rate_limiter,
        fee_collector=FeeCollector(executor),
    )
    return Services(
        store=store,
        ledger=ledger,
        jupiter=jupiter,
        prices=DexScreenerPriceSource(),
        tracker=tracker,
        rate_limiter=rate_limiter,
        orchestrator=orchestrator,
    )


def _report(result: TradeResult) -> int:
    if result.ok:
        logger.info("RESULT %s", result.summary())
        if result.remaining_buys is not None:
            logger.info("RESULT remaining_buys=%s", result.remaining_buys)
        if result.fee_error is not None:
            logger.warning("RESULT fee_error=%s", result.fee_error)
        return 0
    logger.error("RESULT %s details=%s", result.summary(), result.error.details if result.error else {})
    return 1


async def run_buy(args: argparse.Namespace) -> int:
    try:
        rules = ExitRules.from_fractions(
            stop_loss=args.stop_loss,
            take_profit=args.take_profit,
            trailing_stop=args.trailing_stop,
        )
    except ValidationError as exc:
        logger.error("RESULT buy rejected error=%s", exc)
        return 2
    services = await build_services()
    try:
        result = await services.orchestrator.buy(
            config.LIVE_USER_ID,
            env_credential(config.LIVE_USER_ID),
            args.token,
            args.amount,
            rules,
        )
        return _report(result)
    finally:
        await services.close()


async def run_sell(args: argparse.Namespace) -> int:
    services = await build_services()
    try:
        result = await services.orchestrator.sell(
            config.LIVE_USER_ID,
            env_credential(config.LIVE_USER_ID),
            args.token,
            quantity=args.quantity,
            percent=args.percent,
        )
        return _report(result)
    finally:
        await services.close()


async def run_monitor(_args: argparse.Namespace) -> int:
    services = await build_services()
    stop_event = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops do not support signal handlers.
            pass
    monitor = PositionMonitor(
        services.tracker,
        services.orchestrator,
        services.prices,
        env_credential,
        stats_sources=[services.jupiter, services.prices.gateway],
    )
    try:
        await monitor.run_forever(stop_event)
        return 0
    finally:
        await services.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Jupiter swap execution with managed exits.")
    sub = parser.add_subparsers(dest="command", required=True)

    buy = sub.add_parser("buy", help="Buy a token with SOL and open a managed position")
    buy.add_argument("token", help="Token mint address")
    buy.add_argument("amount", type=float, help="Amount of SOL to spend")
    buy.add_argument("--stop-loss", type=float, default=config.DEFAULT_STOP_LOSS_FRACTION, help="Stop-loss fraction (default: config)")
    buy.add_argument("--take-profit", type=float, default=config.DEFAULT_TAKE_PROFIT_FRACTION, help="Take-profit fraction (default: config)")
    buy.add_argument("--trailing-stop", type=float, default=config.DEFAULT_TRAILING_STOP_FRACTION, help="Trailing-stop fraction (default: off)")
    buy.set_defaults(handler=run_buy)

    sell = sub.add_parser("sell", help="Sell a token back to SOL")
    sell.add_argument("token", help="Token mint address")
    group = sell.add_mutually_exclusive_group()
    group.add_argument("--quantity", type=int, default=None, help="Raw token units to sell")
    group.add_argument("--percent", type=float, default=None, help="Percent of the holding to sell (default: 100)")
    sell.set_defaults(handler=run_sell)

    mon = sub.add_parser("monitor", help="Evaluate exit rules for open positions until stopped")
    mon.set_defaults(handler=run_monitor)
    return parser


def main() -> int:
    args = build_parser().parse_args()
    configure_logging()
    return asyncio.run(args.handler(args))


if __name__ == "__main__":
    raise SystemExit(main())
