"""Batched account fetcher.

``getMultipleAccounts`` accepts at most 100 keys per call, so larger
requests are split into chunks that run concurrently and are stitched back
together in input order.  Every call carries a ``minContextSlot`` floor so
the node never answers with state older than what the caller has already
seen.
"""
from __future__ import annotations

import asyncio
import base64
import logging
from dataclasses import dataclass
from typing import Any, Protocol, Sequence

import zstandard
from solders.pubkey import Pubkey

from .errors import DecodeError, MissingAccount, RpcError

log = logging.getLogger(__name__)

MAX_ACCOUNTS_PER_CALL = 100


class RpcCaller(Protocol):
    async def call(self, method: str, params: list[Any] | None = None) -> Any: ...


@dataclass(frozen=True, slots=True)
class AccountSnapshot:
    """Account bytes as observed at ``slot``."""
    pubkey: Pubkey
    data: bytes
    slot: int
    owner: Pubkey
    lamports: int


def chunked(items: Sequence[Pubkey], size: int) -> list[Sequence[Pubkey]]:
    if size < 1:
        raise ValueError("chunk size must be >= 1")
    return [items[i:i + size] for i in range(0, len(items), size)]


def decode_account_data(raw: Any) -> bytes:
    """Decode the ``data`` field of an account returned by the RPC."""
    if not isinstance(raw, (list, tuple)) or len(raw) != 2:
        raise DecodeError(f"unexpected account data shape: {str(raw)[:80]}")
    payload, encoding = raw
    try:
        blob = base64.b64decode(payload)
    except (ValueError, TypeError) as exc:
        raise DecodeError(f"invalid base64 account data: {exc}") from exc
    if encoding == "base64":
        return blob
    if encoding == "base64+zstd":
        # Frames from the node do not always carry a content size.
        try:
            return zstandard.ZstdDecompressor().decompressobj().decompress(blob)
        except zstandard.ZstdError as exc:
            raise DecodeError(f"invalid zstd account data: {exc}") from exc
    raise DecodeError(f"unsupported account encoding {encoding!r}")


class AccountFetcher:
    """Fetches many accounts at once with a minimum-slot floor.

    Usage:
        fetcher = AccountFetcher(rpc, commitment="processed")
        snapshots = await fetcher.fetch(keys, min_slot=floor)
    """

    def __init__(
        self,
        rpc: RpcCaller,
        *,
        commitment: str = "processed",
        encoding: str = "base64+zstd",
        max_per_call: int = MAX_ACCOUNTS_PER_CALL,
    ) -> None:
        self._rpc = rpc
        self._commitment = commitment
        self._encoding = encoding
        self._max_per_call = max(1, min(MAX_ACCOUNTS_PER_CALL, int(max_per_call)))

    async def fetch(self, keys: Sequence[Pubkey], min_slot: int = 0) -> list[AccountSnapshot]:
        if not keys:
            return []
        chunks = chunked(list(keys), self._max_per_call)
        results = await asyncio.gather(
            *(self._fetch_chunk(chunk, min_slot) for chunk in chunks)
        )
        out: list[AccountSnapshot] = []
        for part in results:
            out.extend(part)
        return out

    async def _fetch_chunk(self, keys: Sequence[Pubkey], min_slot: int) -> list[AccountSnapshot]:
        config: dict[str, Any] = {
            "encoding": self._encoding,
            "commitment": self._commitment,
        }
        if min_slot > 0:
            config["minContextSlot"] = int(min_slot)
        result = await self._rpc.call(
            "getMultipleAccounts", [[str(k) for k in keys], config]
        )
        if not isinstance(result, dict):
            raise RpcError(f"unexpected result: {str(result)[:200]}", method="getMultipleAccounts")
        context = result.get("context") or {}
        value = result.get("value")
        slot = context.get("slot") if isinstance(context, dict) else None
        if not isinstance(slot, int) or not isinstance(value, list):
            raise RpcError("result missing context slot or value", method="getMultipleAccounts")
        if len(value) != len(keys):
            raise RpcError(
                f"asked for {len(keys)} accounts, got {len(value)}",
                method="getMultipleAccounts",
            )

        missing = [str(k) for k, item in zip(keys, value) if item is None]
        if missing:
            raise MissingAccount(missing)

        snapshots: list[AccountSnapshot] = []
        for key, item in zip(keys, value):
            snapshots.append(
                AccountSnapshot(
                    pubkey=key,
                    data=decode_account_data(item.get("data")),
                    slot=slot,
                    owner=Pubkey.from_string(item.get("owner", "")),
                    lamports=int(item.get("lamports", 0)),
                )
            )
        log.debug("fetched %d accounts at slot %d", len(snapshots), slot)
        return snapshots
