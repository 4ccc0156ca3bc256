"""Quote and swap-transaction construction through the aggregator gateway."""

from __future__ import annotations

import base64
import logging
from dataclasses import dataclass
from typing import Any

from solders.transaction import VersionedTransaction

import config
from trading.errors import (
    BuildError,
    CircuitOpenError,
    GatewayExhaustedError,
    GatewayResponseError,
    QuoteError,
    Result,
    TransactionDecodeError,
)
from utils.api_gateway import ApiGateway

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SwapQuote:
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    price_impact_pct: float
    slippage_bps: int
    raw: dict[str, Any]


@dataclass(frozen=True)
class BuiltSwap:
    quote: SwapQuote
    transaction: VersionedTransaction
    last_valid_block_height: int
    prioritization_fee_lamports: int
    compute_unit_limit: int


def _to_int(value: Any, default: int = 0) -> int:
    try:
        return int(str(value))
    except (TypeError, ValueError):
        return default


def _to_float(value: Any, default: float = 0.0) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def _error_text(payload: Any) -> str:
    if isinstance(payload, dict):
        return str(payload.get("error") or payload.get("message") or payload)
    return str(payload)


class SwapBuilder:
    def __init__(
        self,
        gateway: ApiGateway,
        *,
        priority_fee_max_lamports: int | None = None,
        priority_level: str | None = None,
    ) -> None:
        self.gateway = gateway
        self.priority_fee_max_lamports = int(
            priority_fee_max_lamports
            if priority_fee_max_lamports is not None
            else getattr(config, "PRIORITY_FEE_MAX_LAMPORTS", 10_000_000)
        )
        self.priority_level = str(priority_level or getattr(config, "PRIORITY_FEE_LEVEL", "veryHigh"))

    async def quote(self, input_mint: str, output_mint: str, amount: int, slippage_bps: int) -> Result[SwapQuote]:
        result = await self.gateway.request(
            "quote",
            {
                "inputMint": input_mint,
                "outputMint": output_mint,
                "amount": str(int(amount)),
                "slippageBps": str(int(slippage_bps)),
                "restrictIntermediateTokens": "true",
            },
            "GET",
        )
        if not result.ok:
            if isinstance(result.error, GatewayResponseError):
                return Result.failure(
                    QuoteError(f"quote rejected: {_error_text(result.data)}", status=result.status)
                )
            return Result.failure(result.error)

        payload = result.data
        if not isinstance(payload, dict) or not payload:
            return Result.failure(QuoteError("empty quote response"))
        if payload.get("error"):
            return Result.failure(QuoteError(f"quote error: {payload.get('error')}"))
        out_amount = _to_int(payload.get("outAmount"), -1)
        if out_amount <= 0:
            return Result.failure(QuoteError("quote has no output amount"))

        return Result.success(
            SwapQuote(
                input_mint=str(payload.get("inputMint") or input_mint),
                output_mint=str(payload.get("outputMint") or output_mint),
                in_amount=_to_int(payload.get("inAmount"), int(amount)),
                out_amount=out_amount,
                price_impact_pct=_to_float(payload.get("priceImpactPct")),
                slippage_bps=_to_int(payload.get("slippageBps"), int(slippage_bps)),
                raw=payload,
            )
        )

    async def build_swap(
        self,
        input_mint: str,
        output_mint: str,
        amount: int,
        owner: str,
        slippage_bps: int | None = None,
    ) -> Result[BuiltSwap]:
        slippage = int(slippage_bps if slippage_bps is not None else getattr(config, "SLIPPAGE_BPS", 100))
        quoted = await self.quote(input_mint, output_mint, amount, slippage)
        if not quoted.ok:
            logger.warning(
                "SWAP_QUOTE_FAILED in=%s out=%s amount=%s error=%s",
                input_mint,
                output_mint,
                amount,
                quoted.error,
            )
            return Result.failure(quoted.error)
        quote = quoted.value

        body = {
            "quoteResponse": quote.raw,
            "userPublicKey": str(owner),
            "wrapAndUnwrapSol": True,
            "dynamicComputeUnitLimit": True,
            "prioritizationFeeLamports": {
                "priorityLevelWithMaxLamports": {
                    "maxLamports": self.priority_fee_max_lamports,
                    "priorityLevel": self.priority_level,
                }
            },
        }
        result = await self.gateway.request("swap", body, "POST")
        if not result.ok:
            if isinstance(result.error, (CircuitOpenError, GatewayExhaustedError)):
                return Result.failure(result.error)
            return Result.failure(
                BuildError(f"swap build rejected: {_error_text(result.data)}", status=result.status)
            )

        payload = result.data if isinstance(result.data, dict) else {}
        encoded = payload.get("swapTransaction")
        if not encoded:
            return Result.failure(BuildError("swap response has no transaction"))
        try:
            raw = base64.b64decode(str(encoded), validate=True)
            transaction = VersionedTransaction.from_bytes(raw)
        except Exception as exc:  # solders raises its own bincode error types
            return Result.failure(TransactionDecodeError(f"swap transaction could not be decoded: {exc}"))

        built = BuiltSwap(
            quote=quote,
            transaction=transaction,
            last_valid_block_height=_to_int(payload.get("lastValidBlockHeight")),
            prioritization_fee_lamports=max(0, _to_int(payload.get("prioritizationFeeLamports"))),
            compute_unit_limit=max(0, _to_int(payload.get("computeUnitLimit"))),
        )
        logger.info(
            "SWAP_BUILT in=%s out=%s in_amount=%s out_amount=%s impact=%.4f prio_fee=%s",
            quote.input_mint,
            quote.output_mint,
            quote.in_amount,
            quote.out_amount,
            quote.price_impact_pct,
            built.prioritization_fee_lamports,
        )
        return Result.success(built)
