from __future__ import annotations

import asyncio
import dataclasses
import unittest

from solders.keypair import Keypair

from trading.credentials import SignerCredential
from trading.errors import (
    ExpiredReferenceError,
    FeeError,
    InsufficientBalanceError,
    InvalidTransactionTypeError,
    MissingCredentialError,
    PositionExistsError,
    RateLimitError,
    Result,
    SimulationFailureError,
    ValidationError,
    VerificationError,
)
from trading.ledger import LedgerError, TokenBalance
from trading.orchestrator import TradeOrchestrator
from trading.positions import ExitRules, PositionTracker
from trading.rate_limiter import RateLimiter
from trading.swap_builder import SwapBuilder
from trading.transaction_executor import TransactionExecutor
from trading.verification import TransactionVerifier
from trading_fakes import (
    SOL,
    FakeClock,
    FakeLedger,
    StubFeeCollector,
    new_mint,
    sol_credit_record,
    swap_gateway,
    token_credit_record,
)

ONE_SOL = 1_000_000_000
OUT_RAW = 5_000_000_000
PRIO_FEE = 9_995_000


class _LandedLedger(FakeLedger):
    async def signature_status(self, signature: str) -> tuple[str | None, str | None]:
        if signature in self.signatures:
            return "finalized", None
        return None, None


class Harness:
    def __init__(
        self,
        balance_lamports: int = 1_050_000_000,
        *,
        selling: bool = False,
        fee_collector: StubFeeCollector | None = None,
        ledger: FakeLedger | None = None,
    ) -> None:
        self.keypair = Keypair()
        self.owner = str(self.keypair.pubkey())
        self.token = new_mint()
        self.ledger = ledger or FakeLedger()
        self.ledger.balance = balance_lamports
        if selling:
            self.gateway = swap_gateway(self.keypair, self.token, SOL, 1000, 500_000_000, PRIO_FEE)
            self.ledger.record_factory = sol_credit_record(500_000_000)
        else:
            self.gateway = swap_gateway(self.keypair, SOL, self.token, ONE_SOL, OUT_RAW, PRIO_FEE)
            self.ledger.record_factory = lambda sig: token_credit_record(self.owner, self.token, OUT_RAW)(sig)
        self.tracker = PositionTracker()
        self.limiter = RateLimiter(limit=5, window_seconds=3600, clock=FakeClock())
        self.fees = fee_collector or StubFeeCollector()
        self.clock = FakeClock()
        self.orchestrator = TradeOrchestrator(
            swap_builder=SwapBuilder(self.gateway),
            executor=TransactionExecutor(self.ledger, confirm_timeout_seconds=5),
            verifier=TransactionVerifier(self.ledger),
            ledger=self.ledger,
            tracker=self.tracker,
            rate_limiter=self.limiter,
            fee_collector=self.fees,
            sleep=self.clock.sleep,
        )

    def credential(self) -> SignerCredential:
        return SignerCredential(self.keypair, user_id="u1")

    def buy(self, amount: float = 1.0, token: str | None = None, credential: SignerCredential | None = None):
        return asyncio.run(
            self.orchestrator.buy(
                "u1",
                credential or self.credential(),
                token or self.token,
                amount,
                ExitRules.from_fractions(stop_loss=0.1, take_profit=0.2),
            )
        )


class BuyTests(unittest.TestCase):
    def test_end_to_end_buy_opens_position(self) -> None:
        harness = Harness(balance_lamports=1_050_000_000)
        credential = harness.credential()
        result = harness.buy(1.0, credential=credential)

        self.assertTrue(result.ok, msg=str(result.error))
        self.assertEqual(result.remaining_buys, 4)
        self.assertEqual(harness.limiter.remaining("u1"), 4)
        position = harness.tracker.get("u1", harness.token)
        self.assertIsNotNone(position)
        self.assertAlmostEqual(position.entry_price, 0.0002)
        self.assertEqual(position.quantity, OUT_RAW)
        self.assertEqual(position.buy_signature, result.signature)
        self.assertEqual(harness.fees.calls, [10_000_000])
        self.assertEqual(result.fee_signature, "fee-signature")
        self.assertEqual(len(harness.ledger.sent), 1)
        self.assertTrue(credential.cleared)

    def test_insufficient_balance_rejected_before_any_ledger_write(self) -> None:
        harness = Harness(balance_lamports=1_010_000_000)
        credential = harness.credential()
        result = harness.buy(1.0, credential=credential)

        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, InsufficientBalanceError)
        self.assertEqual(result.error.required, 1_020_000_000)
        self.assertEqual(result.error.shortfall, 10_000_000)
        self.assertEqual(harness.ledger.sent, [])
        self.assertIsNone(harness.tracker.get("u1", harness.token))
        self.assertEqual(harness.fees.calls, [])
        self.assertTrue(credential.cleared)

    def test_sixth_buy_in_window_is_rate_limited(self) -> None:
        harness = Harness(balance_lamports=10 * ONE_SOL)
        results = []
        for _ in range(6):
            harness.token = new_mint()
            results.append(harness.buy(0.1))

        self.assertTrue(all(r.ok for r in results[:5]), msg=[str(r.error) for r in results])
        self.assertIsInstance(results[5].error, RateLimitError)
        self.assertEqual(results[5].remaining_buys, 0)
        self.assertEqual(harness.gateway.count("quote"), 5)

    def test_duplicate_buy_rejected_without_consuming_slot(self) -> None:
        harness = Harness()
        first = harness.buy(0.5)
        second = harness.buy(0.5)
        self.assertTrue(first.ok)
        self.assertIsInstance(second.error, PositionExistsError)
        self.assertEqual(harness.limiter.remaining("u1"), 4)
        self.assertEqual(len(harness.ledger.sent), 1)

    def test_invalid_requests_are_rejected(self) -> None:
        harness = Harness()
        for token, amount in (("not-a-mint", 1.0), (harness.token, 0), (harness.token, float("nan")), (harness.token, -1)):
            result = harness.buy(amount, token=token)
            self.assertIsInstance(result.error, ValidationError, msg=f"{token} {amount}")
        self.assertEqual(harness.gateway.calls, [])
        self.assertEqual(harness.limiter.remaining("u1"), 5)

    def test_missing_credential_is_rejected(self) -> None:
        harness = Harness()
        result = asyncio.run(harness.orchestrator.buy("u1", None, harness.token, 1.0))
        self.assertIsInstance(result.error, MissingCredentialError)

    def test_fee_failure_does_not_unwind_trade(self) -> None:
        fees = StubFeeCollector(Result.failure(FeeError("fee transfer failed")))
        harness = Harness(fee_collector=fees)
        result = harness.buy(1.0)
        self.assertTrue(result.ok)
        self.assertIsInstance(result.fee_error, FeeError)
        self.assertIsNotNone(harness.tracker.get("u1", harness.token))

    def test_unknown_failure_retried_with_fresh_blockhash(self) -> None:
        harness = Harness()
        harness.ledger.send_errors = [LedgerError("node unhealthy"), None]
        result = harness.buy(1.0)

        self.assertTrue(result.ok, msg=str(result.error))
        self.assertEqual(harness.clock.sleeps, [1.0])
        self.assertEqual(len(harness.ledger.references), 2)
        self.assertEqual(harness.ledger.balance_calls, 2)

    def test_expired_reference_retried_only_once(self) -> None:
        harness = Harness()
        harness.ledger.send_errors = [LedgerError("Blockhash not found"), LedgerError("Blockhash not found"), None]
        result = harness.buy(1.0)

        self.assertIsInstance(result.error, ExpiredReferenceError)
        self.assertEqual(len(harness.ledger.sent), 2)
        self.assertIsNone(harness.tracker.get("u1", harness.token))

    def test_simulation_failure_is_not_retried(self) -> None:
        harness = Harness()
        harness.ledger.send_errors = [LedgerError("Transaction simulation failed: Error processing Instruction 1")]
        result = harness.buy(1.0)
        self.assertIsInstance(result.error, SimulationFailureError)
        self.assertEqual(len(harness.ledger.sent), 1)
        self.assertEqual(harness.clock.sleeps, [])

    def test_balance_recheck_stops_retry(self) -> None:
        harness = Harness()
        harness.ledger.balance_sequence = [1_050_000_000, 1_000]
        harness.ledger.send_errors = [LedgerError("node unhealthy")]
        result = harness.buy(1.0)
        self.assertIsInstance(result.error, InsufficientBalanceError)
        self.assertEqual(len(harness.ledger.sent), 1)

    def test_landed_signature_is_not_resent(self) -> None:
        harness = Harness(ledger=_LandedLedger())
        harness.ledger.confirm_errors = [LedgerError("rpc hiccup")]
        result = harness.buy(1.0)
        self.assertTrue(result.ok, msg=str(result.error))
        self.assertEqual(len(harness.ledger.sent), 1)
        self.assertEqual(result.signature, harness.ledger.signatures[0])

    def test_verification_failure_surfaces_without_position(self) -> None:
        harness = Harness()
        harness.ledger.record_factory = lambda _sig: None
        result = harness.buy(1.0)
        self.assertFalse(result.ok)
        self.assertIsInstance(result.error, VerificationError)
        self.assertTrue(result.signature)
        self.assertIsNone(harness.tracker.get("u1", harness.token))
        self.assertEqual(harness.fees.calls, [])


    def test_malformed_built_transaction_is_raised(self) -> None:
        harness = Harness()
        original = harness.orchestrator.swap_builder.build_swap

        async def broken_build(*args, **kwargs) -> Result:
            built = await original(*args, **kwargs)
            return Result.success(dataclasses.replace(built.value, transaction=b"raw bytes"))

        harness.orchestrator.swap_builder.build_swap = broken_build  # type: ignore[method-assign]
        credential = harness.credential()
        with self.assertRaises(InvalidTransactionTypeError):
            harness.buy(1.0, credential=credential)
        self.assertTrue(credential.cleared)
        self.assertEqual(harness.ledger.sent, [])

    def test_locks_are_released_after_trades(self) -> None:
        harness = Harness()
        harness.buy(1.0)
        harness.buy(1.0, token="not-a-mint")
        self.assertEqual(harness.tracker.lock_count, 0)


class SerializationTests(unittest.TestCase):
    def test_sell_waits_for_in_flight_buy_on_same_token(self) -> None:
        harness = Harness(balance_lamports=2 * ONE_SOL)
        original = harness.gateway.request
        calls: list[str] = []

        async def scenario():
            release = asyncio.Event()

            async def gated(endpoint: str, params=None, method: str = "GET"):
                calls.append(endpoint)
                if len(calls) == 1:
                    await release.wait()
                return await original(endpoint, params, method)

            harness.gateway.request = gated  # type: ignore[method-assign]
            buy = asyncio.create_task(
                harness.orchestrator.buy("u1", harness.credential(), harness.token, 1.0)
            )
            for _ in range(5):
                await asyncio.sleep(0)
            sell = asyncio.create_task(harness.orchestrator.sell("u1", harness.credential(), harness.token))
            for _ in range(5):
                await asyncio.sleep(0)
            self.assertEqual(calls, ["quote"])
            self.assertTrue(harness.tracker.is_locked("u1", harness.token))
            release.set()
            return await buy, await sell

        bought, sold = asyncio.run(scenario())
        self.assertTrue(bought.ok, msg=str(bought.error))
        self.assertEqual(calls[:3], ["quote", "swap", "quote"])
        # The sell saw the position the buy opened.
        self.assertEqual(sold.amount_in, OUT_RAW)
        self.assertEqual(harness.tracker.lock_count, 0)

    def test_different_tokens_do_not_block_each_other(self) -> None:
        harness = Harness(balance_lamports=3 * ONE_SOL)
        other = new_mint()
        original = harness.gateway.request
        calls: list[str] = []

        async def scenario():
            release = asyncio.Event()

            async def gated(endpoint: str, params=None, method: str = "GET"):
                calls.append(params.get("outputMint", "") if endpoint == "quote" else endpoint)
                if endpoint == "quote" and params.get("outputMint") == harness.token:
                    await release.wait()
                return await original(endpoint, params, method)

            harness.gateway.request = gated  # type: ignore[method-assign]
            first = asyncio.create_task(harness.orchestrator.buy("u1", harness.credential(), harness.token, 0.5))
            for _ in range(5):
                await asyncio.sleep(0)
            second = asyncio.create_task(harness.orchestrator.buy("u1", harness.credential(), other, 0.5))
            for _ in range(5):
                await asyncio.sleep(0)
            self.assertIn(other, calls)
            release.set()
            return await first, await second

        first, _second = asyncio.run(scenario())
        self.assertTrue(first.ok, msg=str(first.error))


class SellTests(unittest.TestCase):
    def _open(self, harness: Harness, quantity: int) -> None:
        asyncio.run(harness.tracker.open("u1", harness.token, 0.0002, quantity, ExitRules.from_fractions(stop_loss=0.1)))

    def test_sell_whole_position(self) -> None:
        harness = Harness(selling=True)
        self._open(harness, 1000)
        credential = harness.credential()
        result = asyncio.run(harness.orchestrator.sell("u1", credential, harness.token))

        self.assertTrue(result.ok, msg=str(result.error))
        self.assertEqual(result.amount_in, 1000)
        self.assertEqual(result.amount_out, 500_000_000)
        self.assertIsNone(harness.tracker.get("u1", harness.token))
        self.assertEqual(harness.fees.calls, [5_000_000])
        self.assertEqual(harness.gateway.calls[0][1]["amount"], "1000")
        self.assertEqual(harness.limiter.remaining("u1"), 5)
        self.assertTrue(credential.cleared)

    def test_partial_sell_reduces_position(self) -> None:
        harness = Harness(selling=True)
        self._open(harness, 1000)
        result = asyncio.run(harness.orchestrator.sell("u1", harness.credential(), harness.token, percent=50))
        self.assertTrue(result.ok, msg=str(result.error))
        self.assertEqual(result.amount_in, 500)
        self.assertEqual(harness.tracker.get("u1", harness.token).quantity, 500)

    def test_percent_sell_without_position_uses_wallet_balance(self) -> None:
        harness = Harness(selling=True)
        harness.ledger.token_balances[harness.token] = TokenBalance(amount_raw=800, decimals=6)
        result = asyncio.run(harness.orchestrator.sell("u1", harness.credential(), harness.token, percent=25))
        self.assertTrue(result.ok, msg=str(result.error))
        self.assertEqual(harness.gateway.calls[0][1]["amount"], "200")

    def test_invalid_sell_amounts(self) -> None:
        harness = Harness(selling=True)
        self._open(harness, 1000)
        for kwargs in ({"percent": 150}, {"percent": 0}, {"quantity": 0}, {"quantity": 5000}):
            result = asyncio.run(harness.orchestrator.sell("u1", harness.credential(), harness.token, **kwargs))
            self.assertIsInstance(result.error, ValidationError, msg=str(kwargs))
        self.assertEqual(harness.gateway.calls, [])

    def test_auto_close_sells_whole_position(self) -> None:
        harness = Harness(selling=True)
        self._open(harness, 1000)
        credential = harness.credential()
        result = asyncio.run(harness.orchestrator.auto_close("u1", credential, harness.token, "stop_loss"))

        self.assertTrue(result.ok, msg=str(result.error))
        self.assertEqual(result.reason, "stop_loss")
        self.assertEqual(result.amount_in, 1000)
        self.assertIsNone(harness.tracker.get("u1", harness.token))
        self.assertTrue(credential.cleared)

    def test_auto_close_without_credential_keeps_position(self) -> None:
        harness = Harness(selling=True)
        self._open(harness, 1000)
        result = asyncio.run(harness.orchestrator.auto_close("u1", None, harness.token, "take_profit"))
        self.assertIsInstance(result.error, MissingCredentialError)
        self.assertEqual(result.reason, "take_profit")
        self.assertEqual(harness.tracker.get("u1", harness.token).quantity, 1000)
        self.assertEqual(harness.gateway.calls, [])

    def test_sell_fee_check_covers_network_fees_only(self) -> None:
        harness = Harness(balance_lamports=PRIO_FEE + 4_999, selling=True)
        self._open(harness, 1000)
        result = asyncio.run(harness.orchestrator.sell("u1", harness.credential(), harness.token))
        self.assertIsInstance(result.error, InsufficientBalanceError)
        self.assertEqual(result.error.required, PRIO_FEE + 5_000)
        self.assertEqual(harness.tracker.get("u1", harness.token).quantity, 1000)


if __name__ == "__main__":
    unittest.main()
