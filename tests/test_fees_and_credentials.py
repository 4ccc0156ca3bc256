from __future__ import annotations

import asyncio
import json
import unittest

from solders.keypair import Keypair
from solders.transaction import VersionedTransaction

from trading.credentials import SignerCredential, parse_private_key
from trading.errors import FeeError, MissingCredentialError
from trading.fees import FeeCollector, split_fee
from trading.transaction_executor import ExecutionResult, FailureCategory


class _RecordingExecutor:
    def __init__(self, result: ExecutionResult) -> None:
        self.result = result
        self.transactions: list[VersionedTransaction] = []

    async def execute(self, signer: SignerCredential, transaction: VersionedTransaction) -> ExecutionResult:
        self.transactions.append(transaction)
        return self.result


class FeeCollectorTests(unittest.TestCase):
    def setUp(self) -> None:
        self.credential = SignerCredential(Keypair(), user_id="u1")
        self.treasury = str(Keypair().pubkey())
        self.reward = str(Keypair().pubkey())

    def test_split_is_sixty_forty(self) -> None:
        self.assertEqual(split_fee(10_000_000, 0.6), (6_000_000, 4_000_000))
        self.assertEqual(split_fee(7, 0.6), (4, 3))

    def test_collects_into_both_wallets(self) -> None:
        executor = _RecordingExecutor(ExecutionResult(success=True, signature="feesig"))
        collector = FeeCollector(executor, treasury_wallet=self.treasury, reward_wallet=self.reward, treasury_share=0.6)
        result = asyncio.run(collector.collect_fee(10_000_000, self.credential))

        self.assertTrue(result.ok)
        self.assertEqual(result.value, "feesig")
        message = executor.transactions[0].message
        self.assertEqual(len(message.instructions), 2)

    def test_failed_transfer_is_fee_error(self) -> None:
        executor = _RecordingExecutor(
            ExecutionResult(success=False, category=FailureCategory.INSUFFICIENT_FUNDS, cause="insufficient lamports")
        )
        collector = FeeCollector(executor, treasury_wallet=self.treasury, reward_wallet=self.reward)
        result = asyncio.run(collector.collect_fee(1000, self.credential))
        self.assertIsInstance(result.error, FeeError)

    def test_unconfigured_wallets_skip_transfer(self) -> None:
        executor = _RecordingExecutor(ExecutionResult(success=True))
        collector = FeeCollector(executor, treasury_wallet="", reward_wallet="")
        result = asyncio.run(collector.collect_fee(1000, self.credential))
        self.assertTrue(result.ok)
        self.assertEqual(executor.transactions, [])


class SignerCredentialTests(unittest.TestCase):
    def test_parses_base58_and_json_array(self) -> None:
        keypair = Keypair()
        self.assertEqual(parse_private_key(str(keypair)).pubkey(), keypair.pubkey())
        self.assertEqual(parse_private_key(json.dumps(list(bytes(keypair)))).pubkey(), keypair.pubkey())

    def test_rejects_garbage(self) -> None:
        with self.assertRaises(ValueError):
            parse_private_key("")
        with self.assertRaises(ValueError):
            parse_private_key("not a key")

    def test_clear_drops_keypair(self) -> None:
        credential = SignerCredential(Keypair(), user_id="u1")
        pubkey = credential.pubkey
        credential.clear()
        self.assertTrue(credential.cleared)
        self.assertEqual(credential.pubkey, pubkey)
        with self.assertRaises(MissingCredentialError):
            credential.keypair()
        self.assertIn("cleared", repr(credential))


if __name__ == "__main__":
    unittest.main()
