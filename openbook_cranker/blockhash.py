"""Recent blockhash cache.

Transactions built from the same blockhash and instructions produce the same
signature, so the node would drop repeats as duplicates.  The cache is
refreshed more often than the crank loop submits.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from typing import Any, Optional

from solders.hash import Hash

from .accounts import RpcCaller
from .errors import BlockhashUnavailable, RpcError

log = logging.getLogger(__name__)


@dataclass(frozen=True, slots=True)
class BlockhashHandle:
    blockhash: Hash
    last_valid_block_height: int
    fetched_at: float


def parse_latest_blockhash(result: Any) -> BlockhashHandle:
    value = result.get("value") if isinstance(result, dict) else None
    if not isinstance(value, dict):
        raise RpcError(f"unexpected getLatestBlockhash result: {result!r}", method="getLatestBlockhash")
    blockhash = value.get("blockhash")
    height = value.get("lastValidBlockHeight")
    if not isinstance(blockhash, str) or not blockhash or not isinstance(height, int):
        raise RpcError(f"incomplete getLatestBlockhash value: {value!r}", method="getLatestBlockhash")
    return BlockhashHandle(
        blockhash=Hash.from_string(blockhash),
        last_valid_block_height=height,
        fetched_at=time.time(),
    )


class BlockhashCache:
    """Holds the newest finalized blockhash, refreshed on a timer.

    Usage:
        cache = BlockhashCache(rpc)
        await cache.start()      # first fetch; raises on failure
        handle = cache.current()
        await cache.stop()
    """

    def __init__(self, rpc: RpcCaller, refresh_s: float = 1.0,
                 commitment: str = "finalized") -> None:
        self._rpc = rpc
        self._refresh_s = refresh_s
        self._commitment = commitment
        self._handle: Optional[BlockhashHandle] = None
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def ready(self) -> bool:
        return self._handle is not None

    def current(self) -> BlockhashHandle:
        handle = self._handle
        if handle is None:
            raise BlockhashUnavailable("no blockhash fetched yet")
        return handle

    async def refresh(self) -> BlockhashHandle:
        result = await self._rpc.call("getLatestBlockhash", [{"commitment": self._commitment}])
        handle = parse_latest_blockhash(result)
        self._handle = handle
        return handle

    async def start(self) -> BlockhashHandle:
        handle = await self.refresh()
        log.info("initial blockhash %s (valid until height %d)",
                 handle.blockhash, handle.last_valid_block_height)
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self._run(), name="blockhash-refresh")
        return handle

    async def stop(self) -> None:
        task, self._task = self._task, None
        if task is None:
            return
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass

    async def _run(self) -> None:
        while True:
            await asyncio.sleep(self._refresh_s)
            try:
                await self.refresh()
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                log.warning("blockhash refresh failed, keeping previous value: %s", exc)
