"""Per-operation signing credential."""

from __future__ import annotations

import json

from solders.keypair import Keypair
from solders.pubkey import Pubkey

from trading.errors import MissingCredentialError


def parse_private_key(raw: str) -> Keypair:
    """Accept a base58 secret or a JSON array of 64 secret-key bytes."""
    value = str(raw or "").strip()
    if not value:
        raise ValueError("private key is empty")
    if value.startswith("["):
        arr = json.loads(value)
        if not isinstance(arr, list):
            raise ValueError("private key JSON must be an integer array")
        try:
            return Keypair.from_bytes(bytes(arr))
        except Exception as exc:
            raise ValueError("private key array is not a valid keypair") from exc
    try:
        return Keypair.from_base58_string(value)
    except Exception as exc:
        raise ValueError("unsupported private key format") from exc


class SignerCredential:
    """Holds a keypair for one buy or sell; ``clear`` drops it for good."""

    def __init__(self, keypair: Keypair, user_id: str = "") -> None:
        self._keypair: Keypair | None = keypair
        self.user_id = str(user_id)
        self._pubkey = keypair.pubkey()

    @classmethod
    def from_secret(cls, raw: str, user_id: str = "") -> "SignerCredential":
        return cls(parse_private_key(raw), user_id=user_id)

    @property
    def pubkey(self) -> Pubkey:
        return self._pubkey

    @property
    def cleared(self) -> bool:
        return self._keypair is None

    def keypair(self) -> Keypair:
        if self._keypair is None:
            raise MissingCredentialError("signing credential was cleared", owner=str(self._pubkey))
        return self._keypair

    def clear(self) -> None:
        self._keypair = None

    def __repr__(self) -> str:
        state = "cleared" if self._keypair is None else "active"
        return f"SignerCredential(user_id={self.user_id!r}, pubkey={self._pubkey}, {state})"
