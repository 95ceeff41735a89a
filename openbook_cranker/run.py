"""Entry point: wires the components and runs the cranker.

Startup (any failure aborts):
    wallet → market resolution → market loading → first blockhash
Steady state:
    BlockhashCache refresh task  ┐
    CrankScheduler loop          ┘ until SIGINT/SIGTERM

Usage:
    openbook-cranker
    python -m openbook_cranker.run --cluster devnet --interval 500
"""
from __future__ import annotations

import asyncio
import logging
import signal
import sys
from typing import Optional, Sequence

from .accounts import AccountFetcher
from .blockhash import BlockhashCache
from .config import CrankerConfig, parse_args
from .errors import CrankerError
from .instructions import InstructionBatcher
from .markets import MarketRegistry
from .rpc import SolanaRpc
from .scheduler import CrankScheduler
from .wallet import load_keypair

log = logging.getLogger(__name__)


class CrankerRunner:
    """Orchestrates startup and shutdown."""

    def __init__(self, cfg: CrankerConfig, rpc: Optional[SolanaRpc] = None) -> None:
        self.cfg = cfg
        self.rpc = rpc or SolanaRpc(cfg.rpc_url, timeout_s=cfg.rpc_timeout_s)
        self.fetcher = AccountFetcher(
            self.rpc, commitment=cfg.commitment, encoding=cfg.encoding
        )
        self.registry = MarketRegistry(cfg, self.fetcher)
        self.blockhash = BlockhashCache(self.rpc, refresh_s=cfg.blockhash_refresh_s)
        self.batcher = InstructionBatcher(cfg)
        self.scheduler: Optional[CrankScheduler] = None

    async def run(self, stop: asyncio.Event) -> None:
        payer = load_keypair(self.cfg.keypair, self.cfg.wallet_path)
        log.info("payer %s", payer.pubkey())
        log.info("endpoint %s, program %s", self.cfg.rpc_url, self.cfg.program)

        await self.rpc.connect()
        try:
            entries = await self.registry.resolve()
            markets = await self.registry.load(entries)
            if not markets:
                raise CrankerError("no markets to crank")
            await self.blockhash.start()

            self.scheduler = CrankScheduler(
                self.cfg, markets, self.fetcher, self.batcher,
                self.blockhash, self.rpc, payer,
            )
            loop_task = self.scheduler.start()
            stop_task = asyncio.create_task(stop.wait(), name="stop-signal")
            await asyncio.wait({loop_task, stop_task}, return_when=asyncio.FIRST_COMPLETED)
            stop_task.cancel()
        finally:
            if self.scheduler is not None:
                await self.scheduler.stop()
                log.info("stopped after %d ticks (%d failed), %d sent, %d send failures",
                         self.scheduler.ticks, self.scheduler.failed_ticks,
                         self.scheduler.sent, self.scheduler.failed_sends)
            await self.blockhash.stop()
            await self.rpc.close()


async def _main(cfg: CrankerConfig) -> None:
    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass
    await CrankerRunner(cfg).run(stop)


def main(argv: Optional[Sequence[str]] = None) -> int:
    try:
        cfg = parse_args(argv)
    except ValueError as exc:
        print(f"invalid configuration: {exc}", file=sys.stderr)
        return 2

    logging.basicConfig(
        level=getattr(logging, cfg.log_level, logging.INFO),
        format="%(asctime)s %(levelname)s %(name)s  %(message)s",
        stream=sys.stderr,
    )

    try:
        asyncio.run(_main(cfg))
    except KeyboardInterrupt:
        log.info("interrupted")
    except CrankerError as exc:
        log.error("startup failed: %s", exc)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
