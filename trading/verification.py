"""Post-trade check that the expected asset actually reached the owner."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

import config
from trading.errors import Result, VerificationError
from trading.ledger import LedgerError, TransactionRecord

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AssetDelta:
    mint: str
    raw_delta: int
    decimals: int


def _token_total(entries: list, owner: str, mint: str) -> tuple[int, int | None]:
    total = 0
    decimals = None
    for entry in entries:
        if entry.owner == owner and entry.mint == mint:
            total += int(entry.amount_raw)
            decimals = int(entry.decimals)
    return total, decimals


def asset_delta(record: TransactionRecord, expected_mint: str, owner: str) -> AssetDelta:
    if expected_mint == config.SOL_MINT:
        # Fee payer is always account index 0.
        if not record.pre_lamports or not record.post_lamports:
            return AssetDelta(mint=expected_mint, raw_delta=0, decimals=9)
        delta = int(record.post_lamports[0]) - int(record.pre_lamports[0])
        return AssetDelta(mint=expected_mint, raw_delta=delta, decimals=9)
    pre, pre_decimals = _token_total(record.pre_token_balances, owner, expected_mint)
    post, post_decimals = _token_total(record.post_token_balances, owner, expected_mint)
    decimals = post_decimals if post_decimals is not None else (pre_decimals or 0)
    return AssetDelta(mint=expected_mint, raw_delta=post - pre, decimals=decimals)


class TransactionVerifier:
    def __init__(self, ledger: Any) -> None:
        self.ledger = ledger

    async def verify(self, signature: str, expected_mint: str, owner: str) -> Result[AssetDelta]:
        owner = str(owner)
        try:
            record = await self.ledger.get_transaction(signature)
        except LedgerError as exc:
            return Result.failure(VerificationError(f"transaction lookup failed: {exc}", signature=signature))
        if record is None:
            return Result.failure(VerificationError("transaction not found", signature=signature))
        if record.err:
            return Result.failure(
                VerificationError(f"transaction carries an error: {record.err}", signature=signature)
            )
        delta = asset_delta(record, expected_mint, owner)
        if delta.raw_delta <= 0:
            logger.warning(
                "VERIFY_NO_INCREASE signature=%s mint=%s owner=%s delta=%s",
                signature,
                expected_mint,
                owner,
                delta.raw_delta,
            )
            return Result.failure(
                VerificationError(
                    "owner balance of the expected asset did not increase",
                    signature=signature,
                    mint=expected_mint,
                    delta=delta.raw_delta,
                )
            )
        logger.info("VERIFY_OK signature=%s mint=%s delta=%s", signature, expected_mint, delta.raw_delta)
        return Result.success(delta)
