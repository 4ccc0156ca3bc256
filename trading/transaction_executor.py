"""Sign, broadcast and confirm a swap transaction, classifying any failure."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Any

from solders.message import Message, MessageV0
from solders.transaction import VersionedTransaction

import config
from trading.credentials import SignerCredential
from trading.errors import (
    CustomProgramError,
    ExecutionError,
    ExpiredReferenceError,
    InsufficientFundsError,
    InvalidTransactionTypeError,
    MissingCredentialError,
    SimulationFailureError,
    UnknownExecutionError,
)
from trading.ledger import BlockReference, LedgerError

logger = logging.getLogger(__name__)


class FailureCategory(str, Enum):
    CUSTOM_PROGRAM = "custom_program"
    EXPIRED_REFERENCE = "expired_reference"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    SIMULATION = "simulation"
    UNKNOWN = "unknown"


_GUIDANCE = {
    FailureCategory.CUSTOM_PROGRAM: (
        "swap program rejected the trade; the token balance may be dust or too small, "
        "or slippage was exceeded"
    ),
    FailureCategory.EXPIRED_REFERENCE: "transaction reference expired before confirmation; retry with a fresh quote",
    FailureCategory.INSUFFICIENT_FUNDS: "wallet cannot cover the trade amount and network fees",
    FailureCategory.SIMULATION: "transaction simulation failed; market conditions may have changed",
    FailureCategory.UNKNOWN: "transaction failed for an unknown reason",
}

_ERROR_TYPES = {
    FailureCategory.CUSTOM_PROGRAM: CustomProgramError,
    FailureCategory.EXPIRED_REFERENCE: ExpiredReferenceError,
    FailureCategory.INSUFFICIENT_FUNDS: InsufficientFundsError,
    FailureCategory.SIMULATION: SimulationFailureError,
    FailureCategory.UNKNOWN: UnknownExecutionError,
}


@dataclass
class ExecutionResult:
    success: bool
    signature: str = ""
    category: FailureCategory | None = None
    cause: str = ""
    error: ExecutionError | None = None


def classify_failure(message: str) -> FailureCategory:
    text = str(message or "").lower()
    if "0x1771" in text or "custom program error" in text or "custom(" in text:
        return FailureCategory.CUSTOM_PROGRAM
    if "blockhash not found" in text or "block height exceeded" in text or "expired" in text:
        return FailureCategory.EXPIRED_REFERENCE
    if (
        "no record of a prior credit" in text
        or "insufficient lamports" in text
        or "insufficient funds" in text
        or "insufficientfunds" in text
    ):
        return FailureCategory.INSUFFICIENT_FUNDS
    if "simulation failed" in text:
        return FailureCategory.SIMULATION
    return FailureCategory.UNKNOWN


def failure_result(message: str, signature: str = "") -> ExecutionResult:
    category = classify_failure(message)
    error_type = _ERROR_TYPES[category]
    error = error_type(_GUIDANCE[category], cause=str(message), signature=signature)
    return ExecutionResult(
        success=False,
        signature=signature,
        category=category,
        cause=str(message),
        error=error,
    )


def restamp(transaction: VersionedTransaction, reference: BlockReference) -> Any:
    """Rebuild the message around a fresh blockhash."""
    message = transaction.message
    if isinstance(message, MessageV0):
        return MessageV0(
            message.header,
            message.account_keys,
            reference.blockhash,
            message.instructions,
            message.address_table_lookups,
        )
    header = message.header
    return Message.new_with_compiled_instructions(
        header.num_required_signatures,
        header.num_readonly_signed_accounts,
        header.num_readonly_unsigned_accounts,
        message.account_keys,
        reference.blockhash,
        message.instructions,
    )


class TransactionExecutor:
    def __init__(
        self,
        ledger: Any,
        *,
        confirm_timeout_seconds: float | None = None,
        poll_seconds: float | None = None,
    ) -> None:
        self.ledger = ledger
        self.confirm_timeout_seconds = float(
            confirm_timeout_seconds
            if confirm_timeout_seconds is not None
            else getattr(config, "TX_CONFIRM_TIMEOUT_SECONDS", 90.0)
        )
        self.poll_seconds = float(
            poll_seconds if poll_seconds is not None else getattr(config, "TX_CONFIRM_POLL_SECONDS", 2.0)
        )

    async def execute(self, signer: SignerCredential | None, transaction: Any) -> ExecutionResult:
        if not isinstance(transaction, VersionedTransaction):
            raise InvalidTransactionTypeError(
                f"expected VersionedTransaction, got {type(transaction).__name__}"
            )
        if signer is None:
            raise MissingCredentialError("no signing credential supplied")
        keypair = signer.keypair()

        signature = ""
        try:
            reference = await self.ledger.latest_blockhash()
            signed = VersionedTransaction(restamp(transaction, reference), [keypair])
            signature = str(signed.signatures[0])
            logger.info("TX_SEND owner=%s signature=%s", signer.pubkey, signature)
            signature = await self.ledger.send_raw(bytes(signed)) or signature
            await asyncio.wait_for(
                self.ledger.confirm_finalized(
                    signature,
                    reference.last_valid_block_height,
                    self.poll_seconds,
                ),
                timeout=self.confirm_timeout_seconds,
            )
        except asyncio.TimeoutError:
            logger.warning("TX_CONFIRM_TIMEOUT signature=%s timeout=%.1fs", signature, self.confirm_timeout_seconds)
            return failure_result(
                f"confirmation expired after {self.confirm_timeout_seconds:.0f}s",
                signature,
            )
        except LedgerError as exc:
            result = failure_result(str(exc), signature)
            logger.warning(
                "TX_FAILED signature=%s category=%s cause=%s",
                signature or "-",
                result.category.value,
                exc,
            )
            return result

        logger.info("TX_FINALIZED signature=%s", signature)
        return ExecutionResult(success=True, signature=signature)
