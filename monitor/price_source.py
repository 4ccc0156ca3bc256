"""Current token prices in SOL from DexScreener pairs."""

from __future__ import annotations

import logging
from typing import Any

import config
from utils.addressing import normalize_mint
from utils.api_gateway import ApiGateway

logger = logging.getLogger(__name__)

CHAIN_ID = "solana"


def _to_float(value: Any) -> float:
    try:
        return float(value or 0)
    except (TypeError, ValueError):
        return 0.0


def best_native_price(pairs: list[dict[str, Any]], token: str) -> float | None:
    """Pick the SOL-quoted price of the deepest Solana pair for ``token``."""
    best_liq = -1.0
    best_price = 0.0
    for pair in pairs or []:
        if str(pair.get("chainId", "")).lower() != CHAIN_ID:
            continue
        base = str((pair.get("baseToken") or {}).get("address") or "")
        quote = str((pair.get("quoteToken") or {}).get("address") or "")
        if base != token or quote != config.SOL_MINT:
            continue
        price = _to_float(pair.get("priceNative"))
        if price <= 0:
            continue
        liq = _to_float((pair.get("liquidity") or {}).get("usd"))
        if liq > best_liq:
            best_liq = liq
            best_price = price
    if best_price <= 0:
        return None
    return best_price


class DexScreenerPriceSource:
    def __init__(self, gateway: ApiGateway | None = None) -> None:
        self.gateway = gateway or ApiGateway(
            config.DEXSCREENER_API,
            name="dexscreener",
            timeout_seconds=config.PRICE_TIMEOUT_SECONDS,
            min_interval_seconds=config.PRICE_MIN_INTERVAL_SECONDS,
            headers={"Accept": "application/json, text/plain, */*"},
        )

    async def close(self) -> None:
        await self.gateway.close()

    async def current_price(self, token: str) -> float | None:
        token = normalize_mint(token)
        if not token:
            return None
        result = await self.gateway.request(f"tokens/{token}")
        if not result.ok or not isinstance(result.data, dict):
            logger.debug("PRICE_UNAVAILABLE token=%s error=%s", token, result.error)
            return None
        return best_native_price(result.data.get("pairs", []) or [], token)
