from __future__ import annotations

import json
from pathlib import Path

from solders.keypair import Keypair

from .errors import WalletError


def parse_keypair(raw: str) -> Keypair:
    """Accept a JSON byte array (solana-keygen format) or a base58 secret key."""
    value = raw.strip()
    if not value:
        raise WalletError("empty keypair")

    if value.startswith("["):
        try:
            arr = json.loads(value)
        except json.JSONDecodeError as exc:
            raise WalletError(f"keypair JSON is malformed: {exc}") from exc
        if not isinstance(arr, list) or len(arr) != 64:
            raise WalletError("keypair JSON must be an array of 64 integers")
        try:
            return Keypair.from_bytes(bytes(arr))
        except (ValueError, TypeError) as exc:
            raise WalletError(f"invalid keypair bytes: {exc}") from exc

    try:
        return Keypair.from_base58_string(value)
    except Exception as exc:
        raise WalletError("unsupported keypair format") from exc


def load_keypair(inline: str, wallet_path: str) -> Keypair:
    """Inline ``KEYPAIR`` wins over the wallet file."""
    if inline.strip():
        return parse_keypair(inline)
    path = Path(wallet_path).expanduser()
    try:
        text = path.read_text(encoding="utf-8")
    except OSError as exc:
        raise WalletError(f"cannot read wallet file {path}: {exc}") from exc
    return parse_keypair(text)
