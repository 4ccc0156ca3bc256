"""Address normalization helpers."""

from __future__ import annotations

from solders.pubkey import Pubkey


def normalize_mint(value: str | None) -> str:
    """Strip whitespace; base58 mint keys are case-sensitive so case is kept."""
    return str(value or "").strip()


def parse_pubkey(value: str | Pubkey | None) -> Pubkey | None:
    if isinstance(value, Pubkey):
        return value
    text = normalize_mint(value)
    if not text:
        return None
    try:
        return Pubkey.from_string(text)
    except ValueError:
        return None


def is_valid_mint(value: str | None) -> bool:
    return parse_pubkey(value) is not None
