"""Solana RPC access used by the executor, verifier and orchestrator."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Any

from solana.exceptions import SolanaRpcException
from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed, Finalized
from solana.rpc.core import RPCException
from solana.rpc.models import TokenAccountOpts, TxOpts
from solders.hash import Hash
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

import config

logger = logging.getLogger(__name__)


class LedgerError(Exception):
    """Raised by the ledger with the node's own error text."""


@dataclass(frozen=True)
class BlockReference:
    blockhash: Hash
    last_valid_block_height: int


@dataclass(frozen=True)
class TokenBalance:
    amount_raw: int
    decimals: int


@dataclass(frozen=True)
class TokenBalanceEntry:
    owner: str
    mint: str
    amount_raw: int
    decimals: int


@dataclass
class TransactionRecord:
    signature: str
    err: str | None = None
    pre_lamports: list[int] = field(default_factory=list)
    post_lamports: list[int] = field(default_factory=list)
    pre_token_balances: list[TokenBalanceEntry] = field(default_factory=list)
    post_token_balances: list[TokenBalanceEntry] = field(default_factory=list)


def _token_entries(raw: Any) -> list[TokenBalanceEntry]:
    out: list[TokenBalanceEntry] = []
    for item in raw or []:
        owner = getattr(item, "owner", None)
        ui_amount = getattr(item, "ui_token_amount", None)
        if ui_amount is None:
            continue
        out.append(
            TokenBalanceEntry(
                owner=str(owner or ""),
                mint=str(item.mint),
                amount_raw=int(str(ui_amount.amount or "0")),
                decimals=int(ui_amount.decimals or 0),
            )
        )
    return out


class SolanaLedger:
    def __init__(self, rpc_url: str | None = None, timeout_seconds: float | None = None) -> None:
        self.rpc_url = (rpc_url or config.SOLANA_RPC_URL).strip()
        if not self.rpc_url:
            raise ValueError("SOLANA_RPC_URL is empty")
        timeout = float(timeout_seconds or config.RPC_TIMEOUT_SECONDS)
        self._client = AsyncClient(self.rpc_url, commitment=Confirmed, timeout=timeout)

    async def close(self) -> None:
        await self._client.close()

    async def native_balance(self, owner: Pubkey) -> int:
        try:
            resp = await self._client.get_balance(owner, commitment=Confirmed)
        except SolanaRpcException as exc:
            raise LedgerError(f"getBalance failed: {exc}") from exc
        return int(resp.value)

    async def token_balance(self, owner: Pubkey, mint: Pubkey) -> TokenBalance:
        try:
            resp = await self._client.get_token_accounts_by_owner_json_parsed(
                owner,
                TokenAccountOpts(mint=mint),
                commitment=Confirmed,
            )
        except SolanaRpcException as exc:
            raise LedgerError(f"getTokenAccountsByOwner failed: {exc}") from exc
        total = 0
        decimals = 0
        for keyed in resp.value or []:
            parsed = keyed.account.data.parsed
            info = (parsed or {}).get("info", {}) if isinstance(parsed, dict) else {}
            token_amount = info.get("tokenAmount", {}) or {}
            total += int(str(token_amount.get("amount", "0") or "0"))
            decimals = int(token_amount.get("decimals", decimals) or decimals)
        return TokenBalance(amount_raw=total, decimals=decimals)

    async def latest_blockhash(self) -> BlockReference:
        try:
            resp = await self._client.get_latest_blockhash(Finalized)
        except SolanaRpcException as exc:
            raise LedgerError(f"getLatestBlockhash failed: {exc}") from exc
        return BlockReference(
            blockhash=resp.value.blockhash,
            last_valid_block_height=int(resp.value.last_valid_block_height),
        )

    async def send_raw(self, raw: bytes) -> str:
        opts = TxOpts(skip_preflight=False, preflight_commitment=Confirmed, max_retries=3)
        try:
            resp = await self._client.send_raw_transaction(raw, opts=opts)
        except RPCException as exc:
            raise LedgerError(str(exc)) from exc
        except SolanaRpcException as exc:
            raise LedgerError(f"sendTransaction failed: {exc}") from exc
        return str(resp.value)

    async def signature_status(self, signature: str) -> tuple[str | None, str | None]:
        """Return (confirmation level, error text) or (None, None) when unknown."""
        try:
            resp = await self._client.get_signature_statuses(
                [Signature.from_string(signature)],
                search_transaction_history=True,
            )
        except SolanaRpcException as exc:
            raise LedgerError(f"getSignatureStatuses failed: {exc}") from exc
        status = (resp.value or [None])[0]
        if status is None:
            return None, None
        level = None
        if status.confirmation_status == TransactionConfirmationStatus.Finalized:
            level = "finalized"
        elif status.confirmation_status is not None:
            level = "confirmed"
        err = str(status.err) if status.err is not None else None
        return level, err

    async def block_height(self) -> int:
        try:
            resp = await self._client.get_block_height(Finalized)
        except SolanaRpcException as exc:
            raise LedgerError(f"getBlockHeight failed: {exc}") from exc
        return int(resp.value)

    async def confirm_finalized(
        self,
        signature: str,
        last_valid_block_height: int,
        poll_seconds: float | None = None,
    ) -> None:
        """Poll until finalized; raise LedgerError on execution error or expiry."""
        poll = max(0.1, float(poll_seconds or config.TX_CONFIRM_POLL_SECONDS))
        while True:
            level, err = await self.signature_status(signature)
            if err:
                raise LedgerError(f"transaction failed: {err}")
            if level == "finalized":
                return
            height = await self.block_height()
            if height > int(last_valid_block_height):
                raise LedgerError(
                    f"block height exceeded: height={height} last_valid={last_valid_block_height}"
                )
            await asyncio.sleep(poll)

    async def get_transaction(self, signature: str) -> TransactionRecord | None:
        try:
            resp = await self._client.get_transaction(
                Signature.from_string(signature),
                encoding="json",
                commitment=Finalized,
                max_supported_transaction_version=0,
            )
        except SolanaRpcException as exc:
            raise LedgerError(f"getTransaction failed: {exc}") from exc
        if resp.value is None:
            return None
        meta = resp.value.transaction.meta
        if meta is None:
            return TransactionRecord(signature=signature, err="missing transaction meta")
        return TransactionRecord(
            signature=signature,
            err=str(meta.err) if meta.err is not None else None,
            pre_lamports=[int(x) for x in meta.pre_balances],
            post_lamports=[int(x) for x in meta.post_balances],
            pre_token_balances=_token_entries(meta.pre_token_balances),
            post_token_balances=_token_entries(meta.post_token_balances),
        )
