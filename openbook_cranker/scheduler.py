"""Crank scheduler and main loop.

Each tick:
    FETCH     all event queues in one batched call, floored at min_slot
    DECODE    each queue into its live events
    BUILD     one ConsumeEvents instruction per market worth cranking
    BATCH     pack instructions into fee-tiered transactions
    SIGN      against the newest cached blockhash
    BROADCAST without waiting (one task per transaction)

The slot floor is the only state carried between ticks.  It moves to the
highest observed slot + 1 after every successful fetch, so the next tick
never reads a queue state that was already cranked.
"""
from __future__ import annotations

import asyncio
import logging
from typing import Optional, Protocol, Sequence

from solders.keypair import Keypair
from solders.transaction import Transaction

from .accounts import AccountFetcher
from .blockhash import BlockhashCache
from .config import CrankerConfig
from .errors import BenignRace, DecodeError, RpcError, SubmissionFailure
from .event_queue import decode_event_queue
from .instructions import CrankInstruction, InstructionBatcher, TransactionBatch, sign_batch
from .markets import MarketDescriptor

log = logging.getLogger(__name__)

SEND_MAX_RETRIES = 2


class TransactionSender(Protocol):
    async def send_transaction(self, raw: bytes, *, skip_preflight: bool = True,
                               max_retries: int = 2) -> str: ...


class CrankScheduler:
    """Owns the crank loop and its in-flight broadcasts.

    Usage:
        scheduler = CrankScheduler(cfg, markets, fetcher, batcher, blockhash, rpc, payer)
        scheduler.start()
        ...
        await scheduler.stop()
    """

    def __init__(
        self,
        cfg: CrankerConfig,
        markets: Sequence[MarketDescriptor],
        fetcher: AccountFetcher,
        batcher: InstructionBatcher,
        blockhash: BlockhashCache,
        sender: TransactionSender,
        payer: Keypair,
    ) -> None:
        self._cfg = cfg
        self._markets = tuple(markets)
        self._queue_keys = [m.event_queue for m in self._markets]
        self._fetcher = fetcher
        self._batcher = batcher
        self._blockhash = blockhash
        self._sender = sender
        self._payer = payer
        self._min_slot = 0
        self._task: Optional[asyncio.Task[None]] = None
        self._inflight: set[asyncio.Task[str]] = set()
        self._running = False

        self.ticks = 0
        self.failed_ticks = 0
        self.sent = 0
        self.failed_sends = 0

    @property
    def min_slot(self) -> int:
        return self._min_slot

    @property
    def inflight(self) -> int:
        return len(self._inflight)

    # ── Tick ──

    async def tick(self) -> list[TransactionBatch]:
        snapshots = await self._fetcher.fetch(self._queue_keys, min_slot=self._min_slot)
        if not snapshots:
            return []
        self._min_slot = max(s.slot for s in snapshots) + 1

        cranks: list[CrankInstruction] = []
        for market, snapshot in zip(self._markets, snapshots):
            try:
                events = decode_event_queue(snapshot.data)
            except DecodeError as exc:
                log.error("market %d %s: cannot decode event queue: %s",
                          market.index, market.name, exc)
                continue
            crank = self._batcher.build(market, events)
            if crank is not None:
                cranks.append(crank)

        batches = self._batcher.batch(cranks)
        for batch in batches:
            handle = self._blockhash.current()
            tx = sign_batch(batch, self._payer, handle.blockhash)
            log.info("markets %s sending consume events for %d events (cu price %d)",
                     ",".join(batch.market_names), batch.event_count, batch.cu_price)
            self._broadcast(batch, tx)
        return batches

    # ── Broadcast ──

    def _broadcast(self, batch: TransactionBatch, tx: Transaction) -> None:
        task = asyncio.create_task(self._submit(bytes(tx)), name="send-" + ",".join(batch.market_names))
        self._inflight.add(task)
        task.add_done_callback(lambda t: self._on_submitted(batch, t))

    async def _submit(self, raw: bytes) -> str:
        try:
            return await self._sender.send_transaction(
                raw, skip_preflight=True, max_retries=SEND_MAX_RETRIES
            )
        except RpcError as exc:
            raise SubmissionFailure(str(exc)) from exc

    def _on_submitted(self, batch: TransactionBatch, task: asyncio.Task[str]) -> None:
        self._inflight.discard(task)
        names = ",".join(batch.market_names)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            self.failed_sends += 1
            log.error("send failed for markets %s: %s", names, exc)
            return
        self.sent += 1
        log.info("cranked markets %s: %s", names, task.result())

    async def drain(self) -> None:
        """Wait for in-flight broadcasts to settle."""
        if self._inflight:
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

    # ── Loop ──

    async def run(self) -> None:
        self._running = True
        log.info("cranking %d markets every %.3fs", len(self._markets), self._cfg.interval_s)
        while self._running:
            try:
                await self.tick()
                self.ticks += 1
            except asyncio.CancelledError:
                self._running = False
                return
            except BenignRace as exc:
                self.failed_ticks += 1
                log.debug("node behind slot floor %d: %s", self._min_slot, exc)
            except Exception:
                self.failed_ticks += 1
                log.exception("crank tick failed")
            try:
                await asyncio.sleep(self._cfg.interval_s)
            except asyncio.CancelledError:
                self._running = False
                return

    def start(self) -> asyncio.Task[None]:
        if self._task is None or self._task.done():
            self._task = asyncio.create_task(self.run(), name="crank-loop")
        return self._task

    async def stop(self) -> None:
        self._running = False
        task, self._task = self._task, None
        if task is not None:
            task.cancel()
            await asyncio.gather(task, return_exceptions=True)
        await self.drain()
