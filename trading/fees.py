"""Bot fee transfer split between the treasury and reward wallets."""

from __future__ import annotations

import logging
from typing import Any

from solders.hash import Hash
from solders.message import MessageV0
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

import config
from trading.credentials import SignerCredential
from trading.errors import FeeError, Result
from utils.addressing import parse_pubkey

logger = logging.getLogger(__name__)


def split_fee(amount_lamports: int, treasury_share: float) -> tuple[int, int]:
    amount = max(0, int(amount_lamports))
    treasury = int(amount * max(0.0, min(1.0, float(treasury_share))))
    return treasury, amount - treasury


class FeeCollector:
    def __init__(
        self,
        executor: Any,
        *,
        treasury_wallet: str | None = None,
        reward_wallet: str | None = None,
        treasury_share: float | None = None,
    ) -> None:
        self.executor = executor
        self.treasury = parse_pubkey(
            treasury_wallet if treasury_wallet is not None else getattr(config, "FEE_TREASURY_WALLET", "")
        )
        self.reward = parse_pubkey(
            reward_wallet if reward_wallet is not None else getattr(config, "FEE_REWARD_WALLET", "")
        )
        self.treasury_share = float(
            treasury_share if treasury_share is not None else getattr(config, "FEE_TREASURY_SHARE", 0.6)
        )

    @property
    def enabled(self) -> bool:
        return self.treasury is not None or self.reward is not None

    def _build_transfer(self, credential: SignerCredential, amount_lamports: int) -> VersionedTransaction | None:
        treasury_amount, reward_amount = split_fee(amount_lamports, self.treasury_share)
        if self.reward is None:
            treasury_amount, reward_amount = treasury_amount + reward_amount, 0
        if self.treasury is None:
            treasury_amount, reward_amount = 0, treasury_amount + reward_amount
        instructions = []
        payer = credential.pubkey
        if treasury_amount > 0:
            instructions.append(transfer(TransferParams(from_pubkey=payer, to_pubkey=self.treasury, lamports=treasury_amount)))
        if reward_amount > 0:
            instructions.append(transfer(TransferParams(from_pubkey=payer, to_pubkey=self.reward, lamports=reward_amount)))
        if not instructions:
            return None
        # The executor stamps a fresh blockhash before signing.
        message = MessageV0.try_compile(payer, instructions, [], Hash.default())
        return VersionedTransaction(message, [credential.keypair()])

    async def collect_fee(self, amount_lamports: int, credential: SignerCredential) -> Result[str]:
        amount = int(amount_lamports)
        if amount <= 0:
            return Result.success("")
        if not self.enabled:
            logger.debug("FEE_SKIPPED reason=no_fee_wallets amount=%s", amount)
            return Result.success("")
        transaction = self._build_transfer(credential, amount)
        if transaction is None:
            return Result.success("")
        outcome = await self.executor.execute(credential, transaction)
        if not outcome.success:
            return Result.failure(
                FeeError(f"fee transfer failed: {outcome.cause}", amount=amount, signature=outcome.signature)
            )
        logger.info("FEE_COLLECTED amount=%s signature=%s", amount, outcome.signature)
        return Result.success(outcome.signature)
