"""Buy and sell composition over the swap, execution and position services."""

from __future__ import annotations

import asyncio
import logging
import math
from dataclasses import dataclass
from typing import Any, Awaitable, Callable

import config
from trading.credentials import SignerCredential
from trading.errors import (
    ExecutionError,
    InsufficientBalanceError,
    InvalidTransactionTypeError,
    MissingCredentialError,
    PositionExistsError,
    TradeError,
    ValidationError,
)
from trading.ledger import LedgerError
from trading.positions import ExitRules, Position, PositionTracker
from trading.rate_limiter import RateLimiter
from trading.swap_builder import BuiltSwap, SwapBuilder
from trading.transaction_executor import ExecutionResult, FailureCategory, TransactionExecutor
from trading.verification import TransactionVerifier
from utils.addressing import is_valid_mint, normalize_mint, parse_pubkey
from utils.retry import Backoff, retry_async

logger = logging.getLogger(__name__)

ACTION_BUY = "buy"
ACTION_SELL = "sell"


@dataclass
class TradeResult:
    ok: bool
    action: str
    user_id: str
    token: str
    signature: str = ""
    error: TradeError | None = None
    amount_in: int = 0
    amount_out: int = 0
    position: Position | None = None
    remaining_buys: int | None = None
    fee_signature: str = ""
    fee_error: TradeError | None = None
    reason: str = ""

    def summary(self) -> str:
        if self.ok:
            return f"{self.action} ok token={self.token} signature={self.signature}"
        message = self.error.message if self.error is not None else "failed"
        return f"{self.action} failed token={self.token} error={message}"


class TradeOrchestrator:
    def __init__(
        self,
        *,
        swap_builder: SwapBuilder,
        executor: TransactionExecutor,
        verifier: TransactionVerifier,
        ledger: Any,
        tracker: PositionTracker,
        rate_limiter: RateLimiter,
        fee_collector: Any | None = None,
        execute_backoff: Backoff | None = None,
        base_fee_lamports: int | None = None,
        bot_fee_fraction: float | None = None,
        slippage_bps: int | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        self.swap_builder = swap_builder
        self.executor = executor
        self.verifier = verifier
        self.ledger = ledger
        self.tracker = tracker
        self.rate_limiter = rate_limiter
        self.fee_collector = fee_collector
        self.execute_backoff = execute_backoff or Backoff(
            attempts=int(getattr(config, "TX_EXECUTE_ATTEMPTS", 3)),
            base_delay_seconds=float(getattr(config, "TX_RETRY_DELAY_SECONDS", 1.0)),
            linear=True,
        )
        self.base_fee_lamports = int(
            base_fee_lamports if base_fee_lamports is not None else getattr(config, "BASE_NETWORK_FEE_LAMPORTS", 5000)
        )
        self.bot_fee_fraction = float(
            bot_fee_fraction if bot_fee_fraction is not None else getattr(config, "BOT_FEE_FRACTION", 0.01)
        )
        self.slippage_bps = slippage_bps
        self._sleep = sleep

    # Ledger reads

    async def _native_balance(self, credential: SignerCredential) -> int:
        try:
            return int(await self.ledger.native_balance(credential.pubkey))
        except LedgerError as exc:
            raise ExecutionError(f"balance lookup failed: {exc}") from exc

    async def _token_balance(self, credential: SignerCredential, token: str) -> int:
        try:
            balance = await self.ledger.token_balance(credential.pubkey, parse_pubkey(token))
        except LedgerError as exc:
            raise ExecutionError(f"token balance lookup failed: {exc}") from exc
        return int(balance.amount_raw)

    async def _signature_landed(self, signature: str) -> bool:
        try:
            level, err = await self.ledger.signature_status(signature)
        except LedgerError as exc:
            logger.warning("TX_STATUS_LOOKUP_FAILED signature=%s error=%s", signature, exc)
            return False
        return level == "finalized" and not err

    async def _ensure_balance(self, credential: SignerCredential, required: int) -> int:
        balance = await self._native_balance(credential)
        if balance < required:
            raise InsufficientBalanceError(
                f"insufficient SOL: have {balance / config.LAMPORTS_PER_SOL:.6f}, "
                f"need {required / config.LAMPORTS_PER_SOL:.6f}",
                balance=balance,
                required=required,
            )
        return balance

    def _bot_fee(self, lamports: int) -> int:
        return max(0, int(math.ceil(int(lamports) * self.bot_fee_fraction)))

    # Execution with retry

    async def _execute_with_retry(
        self,
        credential: SignerCredential,
        built: BuiltSwap,
        required_lamports: int,
    ) -> ExecutionResult:
        previous: ExecutionResult | None = None
        expired_seen = 0

        async def operation(attempt: int) -> ExecutionResult:
            nonlocal previous
            if attempt > 1 and previous is not None:
                if previous.signature and await self._signature_landed(previous.signature):
                    logger.info("TX_LANDED_ON_RETRY_CHECK signature=%s", previous.signature)
                    return ExecutionResult(success=True, signature=previous.signature)
                await self._ensure_balance(credential, required_lamports)
            previous = await self.executor.execute(credential, built.transaction)
            return previous

        def should_retry(outcome: ExecutionResult) -> bool:
            nonlocal expired_seen
            if outcome.success:
                return False
            if outcome.category == FailureCategory.UNKNOWN:
                return True
            if outcome.category == FailureCategory.EXPIRED_REFERENCE:
                expired_seen += 1
                return expired_seen <= 1
            return False

        def on_retry(outcome: ExecutionResult, attempt: int, delay: float) -> None:
            logger.info(
                "TX_RETRY attempt=%s/%s category=%s delay=%.1fs cause=%s",
                attempt,
                self.execute_backoff.attempts,
                outcome.category.value if outcome.category else "-",
                delay,
                outcome.cause,
            )

        return await retry_async(
            operation,
            backoff=self.execute_backoff,
            should_retry=should_retry,
            sleep=self._sleep,
            on_retry=on_retry,
        )

    async def _collect_fee(self, amount_lamports: int, credential: SignerCredential) -> tuple[str, TradeError | None]:
        if self.fee_collector is None or amount_lamports <= 0:
            return "", None
        try:
            collected = await self.fee_collector.collect_fee(amount_lamports, credential)
        except InvalidTransactionTypeError:
            raise
        except TradeError as exc:
            logger.warning("FEE_FAILED amount=%s error=%s", amount_lamports, exc)
            return "", exc
        if not collected.ok:
            logger.warning("FEE_FAILED amount=%s error=%s", amount_lamports, collected.error)
            return "", collected.error
        return str(collected.value or ""), None

    # Buy

    async def buy(
        self,
        user_id: str,
        credential: SignerCredential | None,
        token: str,
        amount_sol: float,
        rules: ExitRules | None = None,
    ) -> TradeResult:
        user_id = str(user_id)
        token = normalize_mint(token)
        try:
            if credential is None:
                raise MissingCredentialError("no signing credential supplied")
            if not is_valid_mint(token):
                raise ValidationError("token is not a valid mint address", token=token)
            try:
                amount = float(amount_sol)
            except (TypeError, ValueError) as exc:
                raise ValidationError("amount must be a number") from exc
            lamports = int(round(amount * config.LAMPORTS_PER_SOL)) if math.isfinite(amount) else 0
            if amount <= 0 or lamports <= 0:
                raise ValidationError("amount must be positive and finite", amount=amount_sol)
            rules = rules or ExitRules.defaults()
            async with self.tracker.lock_for(user_id, token):
                return await self._buy_locked(user_id, credential, token, lamports, rules)
        except InvalidTransactionTypeError:
            raise
        except TradeError as exc:
            logger.warning("BUY_FAILED user=%s token=%s code=%s error=%s", user_id, token, exc.code, exc)
            return TradeResult(
                ok=False,
                action=ACTION_BUY,
                user_id=user_id,
                token=token,
                signature=str(exc.details.get("signature", "") or ""),
                error=exc,
                remaining_buys=self.rate_limiter.remaining(user_id),
            )
        finally:
            if credential is not None:
                credential.clear()

    async def _buy_locked(
        self,
        user_id: str,
        credential: SignerCredential,
        token: str,
        lamports: int,
        rules: ExitRules,
    ) -> TradeResult:
        if self.tracker.get(user_id, token) is not None:
            raise PositionExistsError("position already open for token", user_id=user_id, token=token)

        acquired = await self.rate_limiter.try_acquire(user_id)
        if not acquired.ok:
            raise acquired.error
        remaining = int(acquired.value)

        built_result = await self.swap_builder.build_swap(
            config.SOL_MINT,
            token,
            lamports,
            str(credential.pubkey),
            self.slippage_bps,
        )
        if not built_result.ok:
            raise built_result.error
        built = built_result.value

        required = lamports + built.prioritization_fee_lamports + self.base_fee_lamports + self._bot_fee(lamports)
        balance = await self._ensure_balance(credential, required)
        logger.info(
            "BUY_START user=%s token=%s lamports=%s required=%s balance=%s",
            user_id,
            token,
            lamports,
            required,
            balance,
        )

        outcome = await self._execute_with_retry(credential, built, required)
        if not outcome.success:
            raise outcome.error

        verified = await self.verifier.verify(outcome.signature, token, str(credential.pubkey))
        if not verified.ok:
            return TradeResult(
                ok=False,
                action=ACTION_BUY,
                user_id=user_id,
                token=token,
                signature=outcome.signature,
                error=verified.error,
                amount_in=lamports,
                remaining_buys=remaining,
            )
        delta = verified.value

        quote = built.quote
        out_tokens = quote.out_amount / (10 ** delta.decimals)
        entry_price = (quote.in_amount / config.LAMPORTS_PER_SOL) / out_tokens
        position = await self.tracker.open(user_id, token, entry_price, delta.raw_delta, rules, outcome.signature)

        fee_signature, fee_error = await self._collect_fee(self._bot_fee(lamports), credential)
        logger.info(
            "BUY_DONE user=%s token=%s signature=%s qty=%s entry=%.12f remaining_buys=%s",
            user_id,
            token,
            outcome.signature,
            delta.raw_delta,
            entry_price,
            remaining,
        )
        return TradeResult(
            ok=True,
            action=ACTION_BUY,
            user_id=user_id,
            token=token,
            signature=outcome.signature,
            amount_in=lamports,
            amount_out=delta.raw_delta,
            position=position,
            remaining_buys=remaining,
            fee_signature=fee_signature,
            fee_error=fee_error,
        )

    # Sell

    async def sell(
        self,
        user_id: str,
        credential: SignerCredential | None,
        token: str,
        quantity: int | None = None,
        percent: float | None = None,
    ) -> TradeResult:
        user_id = str(user_id)
        token = normalize_mint(token)
        try:
            if credential is None:
                raise MissingCredentialError("no signing credential supplied")
            if not is_valid_mint(token):
                raise ValidationError("token is not a valid mint address", token=token)
            async with self.tracker.lock_for(user_id, token):
                return await self._sell_locked(user_id, credential, token, quantity, percent, reason="manual")
        except InvalidTransactionTypeError:
            raise
        except TradeError as exc:
            return self._sell_failure(user_id, token, exc)
        finally:
            if credential is not None:
                credential.clear()

    async def auto_close(
        self,
        user_id: str,
        credential: SignerCredential | None,
        token: str,
        reason: str,
    ) -> TradeResult:
        """Sell the whole position; the caller already holds the position lock."""
        user_id = str(user_id)
        try:
            if credential is None:
                raise MissingCredentialError("no signing credential supplied")
            return await self._sell_locked(user_id, credential, token, None, None, reason=reason)
        except InvalidTransactionTypeError:
            raise
        except TradeError as exc:
            return self._sell_failure(user_id, token, exc, reason=reason)
        finally:
            if credential is not None:
                credential.clear()

    def _sell_failure(self, user_id: str, token: str, exc: TradeError, reason: str = "") -> TradeResult:
        logger.warning("SELL_FAILED user=%s token=%s code=%s error=%s", user_id, token, exc.code, exc)
        return TradeResult(
            ok=False,
            action=ACTION_SELL,
            user_id=user_id,
            token=token,
            signature=str(exc.details.get("signature", "") or ""),
            error=exc,
            reason=reason,
        )

    async def _sell_amount(
        self,
        credential: SignerCredential,
        token: str,
        position: Position | None,
        quantity: int | None,
        percent: float | None,
    ) -> int:
        if quantity is not None:
            amount = int(quantity)
            if amount <= 0:
                raise ValidationError("quantity must be positive", quantity=quantity)
            if position is not None and amount > position.quantity:
                raise ValidationError(
                    "quantity exceeds position size",
                    quantity=amount,
                    position_quantity=position.quantity,
                )
            return amount
        pct = 100.0 if percent is None else float(percent)
        if not math.isfinite(pct) or pct <= 0 or pct > 100:
            raise ValidationError("percent must be within (0, 100]", percent=percent)
        held = position.quantity if position is not None else await self._token_balance(credential, token)
        amount = int(held * pct / 100.0)
        if amount <= 0:
            raise ValidationError("nothing to sell", held=held, percent=pct)
        return amount

    async def _sell_locked(
        self,
        user_id: str,
        credential: SignerCredential,
        token: str,
        quantity: int | None,
        percent: float | None,
        *,
        reason: str,
    ) -> TradeResult:
        position = self.tracker.get(user_id, token)
        amount = await self._sell_amount(credential, token, position, quantity, percent)

        built_result = await self.swap_builder.build_swap(
            token,
            config.SOL_MINT,
            amount,
            str(credential.pubkey),
            self.slippage_bps,
        )
        if not built_result.ok:
            raise built_result.error
        built = built_result.value

        required = built.prioritization_fee_lamports + self.base_fee_lamports
        await self._ensure_balance(credential, required)
        logger.info("SELL_START user=%s token=%s amount=%s reason=%s", user_id, token, amount, reason)

        outcome = await self._execute_with_retry(credential, built, required)
        if not outcome.success:
            raise outcome.error

        verified = await self.verifier.verify(outcome.signature, config.SOL_MINT, str(credential.pubkey))
        if not verified.ok:
            return TradeResult(
                ok=False,
                action=ACTION_SELL,
                user_id=user_id,
                token=token,
                signature=outcome.signature,
                error=verified.error,
                amount_in=amount,
                reason=reason,
            )
        received = int(verified.value.raw_delta)

        remaining_position = None
        if position is not None:
            remaining_position = await self.tracker.reduce(user_id, token, amount)

        fee_signature, fee_error = await self._collect_fee(self._bot_fee(received), credential)
        logger.info(
            "SELL_DONE user=%s token=%s signature=%s amount=%s received=%s reason=%s",
            user_id,
            token,
            outcome.signature,
            amount,
            received,
            reason,
        )
        return TradeResult(
            ok=True,
            action=ACTION_SELL,
            user_id=user_id,
            token=token,
            signature=outcome.signature,
            amount_in=amount,
            amount_out=received,
            position=remaining_position,
            fee_signature=fee_signature,
            fee_error=fee_error,
            reason=reason,
        )
