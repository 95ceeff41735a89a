"""ConsumeEvents instruction building, fee tiering and transaction packing."""
from __future__ import annotations

import dataclasses
import logging
import struct
from dataclasses import dataclass
from typing import Iterable, Optional, Sequence

from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import Message
from solders.pubkey import Pubkey
from solders.transaction import Transaction

from .config import CrankerConfig
from .event_queue import Event, collect_open_orders
from .markets import MarketDescriptor

log = logging.getLogger(__name__)

INSTRUCTION_VERSION = 0
CONSUME_EVENTS_TAG = 3

# version u8, instruction tag u32, limit u16
_CONSUME_EVENTS = struct.Struct("<BIH")


def consume_events_instruction(
    *,
    program_id: Pubkey,
    market: Pubkey,
    event_queue: Pubkey,
    coin_fee: Pubkey,
    pc_fee: Pubkey,
    open_orders: Sequence[Pubkey],
    limit: int,
) -> Instruction:
    accounts = [AccountMeta(pubkey=k, is_signer=False, is_writable=True) for k in open_orders]
    accounts += [
        AccountMeta(pubkey=market, is_signer=False, is_writable=True),
        AccountMeta(pubkey=event_queue, is_signer=False, is_writable=True),
        AccountMeta(pubkey=coin_fee, is_signer=False, is_writable=True),
        AccountMeta(pubkey=pc_fee, is_signer=False, is_writable=True),
    ]
    data = _CONSUME_EVENTS.pack(INSTRUCTION_VERSION, CONSUME_EVENTS_TAG, limit)
    return Instruction(program_id, data, accounts)


@dataclass(frozen=True, slots=True)
class CrankInstruction:
    market: MarketDescriptor
    instruction: Instruction
    open_orders: tuple[Pubkey, ...]
    queue_depth: int
    priority: bool = False

    def with_priority(self, priority: bool = True) -> "CrankInstruction":
        return dataclasses.replace(self, priority=priority)


@dataclass(frozen=True, slots=True)
class TransactionBatch:
    instructions: tuple[CrankInstruction, ...]
    priority: bool
    cu_limit: int
    cu_price: int

    @property
    def market_names(self) -> list[str]:
        return [ix.market.name for ix in self.instructions]

    @property
    def event_count(self) -> int:
        return sum(ix.queue_depth for ix in self.instructions)

    def compute_budget_instructions(self) -> list[Instruction]:
        out = [set_compute_unit_limit(self.cu_limit)]
        if self.cu_price > 0:
            out.append(set_compute_unit_price(self.cu_price))
        return out

    def transaction_instructions(self) -> list[Instruction]:
        return self.compute_budget_instructions() + [ix.instruction for ix in self.instructions]


def sign_batch(batch: TransactionBatch, payer: Keypair, blockhash: Hash) -> Transaction:
    message = Message.new_with_blockhash(batch.transaction_instructions(), payer.pubkey(), blockhash)
    return Transaction([payer], message, blockhash)


class InstructionBatcher:
    """Turns decoded queues into fee-tiered transaction batches.

    Usage:
        batcher = InstructionBatcher(cfg)
        ix = batcher.build(market, events)          # None when skipped
        batches = batcher.batch([ix, ...])
    """

    def __init__(self, cfg: CrankerConfig) -> None:
        self._cfg = cfg

    def is_priority(self, market: MarketDescriptor, queue_depth: int) -> bool:
        if queue_depth > self._cfg.priority_queue_limit:
            return True
        return any(market.matches(sel) for sel in self._cfg.priority_markets)

    def build(self, market: MarketDescriptor, events: Sequence[Event]) -> Optional[CrankInstruction]:
        depth = len(events)
        if depth == 0:
            return None
        if depth < self._cfg.min_events:
            log.debug("market %d %s: %d events below minimum %d, skipping",
                      market.index, market.name, depth, self._cfg.min_events)
            return None

        open_orders = collect_open_orders(events, self._cfg.max_unique_accounts)
        # Event queue stands in for both the coin and pc fee accounts.
        instruction = consume_events_instruction(
            program_id=market.program_id,
            market=market.address,
            event_queue=market.event_queue,
            coin_fee=market.event_queue,
            pc_fee=market.event_queue,
            open_orders=open_orders,
            limit=self._cfg.consume_events_limit,
        )
        crank = CrankInstruction(
            market=market,
            instruction=instruction,
            open_orders=open_orders,
            queue_depth=depth,
        )
        if self.is_priority(market, depth):
            crank = crank.with_priority()
        return crank

    def batch(self, instructions: Iterable[CrankInstruction]) -> list[TransactionBatch]:
        size = self._cfg.max_tx_instructions
        # Budget covers every slot of the batch, filled or not
        cu_limit = self._cfg.cu_limit * size
        pending = list(instructions)
        batches: list[TransactionBatch] = []
        for start in range(0, len(pending), size):
            group = tuple(pending[start:start + size])
            priority = any(ix.priority for ix in group)
            batches.append(
                TransactionBatch(
                    instructions=group,
                    priority=priority,
                    cu_limit=cu_limit,
                    cu_price=self._cfg.priority_cu_price if priority else self._cfg.default_cu_price,
                )
            )
        return batches
