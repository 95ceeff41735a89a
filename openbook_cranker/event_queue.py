"""Event queue decoding.

The queue is a ring buffer: a 37-byte header followed by fixed 88-byte
event slots.  ``count`` events are live, starting at slot ``head`` and
wrapping at the ring capacity.  Bytes past the last whole slot (the
``padding`` tail) are ignored.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from typing import Iterable

from solders.pubkey import Pubkey

from .errors import DecodeError
from .layouts import EVENT_STRUCT, HEAD_PADDING, QUEUE_HEADER_STRUCT, AccountFlag, EventFlag


@dataclass(frozen=True, slots=True)
class QueueHeader:
    account_flags: AccountFlag
    head: int
    count: int
    seq_num: int


@dataclass(frozen=True, slots=True)
class Event:
    flags: EventFlag
    open_orders_slot: int
    fee_tier: int
    native_quantity_released: int
    native_quantity_paid: int
    native_fee_or_rebate: int
    order_id: int
    open_orders: Pubkey
    client_order_id: int

    @property
    def is_fill(self) -> bool:
        return bool(self.flags & EventFlag.FILL)

    @property
    def is_out(self) -> bool:
        return bool(self.flags & EventFlag.OUT)

    @property
    def is_bid(self) -> bool:
        return bool(self.flags & EventFlag.BID)

    @property
    def is_maker(self) -> bool:
        return bool(self.flags & EventFlag.MAKER)


def decode_queue_header(data: bytes) -> QueueHeader:
    if len(data) < QUEUE_HEADER_STRUCT.size:
        raise DecodeError(f"event queue is {len(data)} bytes, shorter than its header")
    head_pad, flags, head, count, seq_num = QUEUE_HEADER_STRUCT.unpack_from(data, 0)
    if head_pad != HEAD_PADDING:
        raise DecodeError("event queue head padding mismatch")
    account_flags = AccountFlag(flags & 0xFF)
    if not (account_flags & AccountFlag.INITIALIZED and account_flags & AccountFlag.EVENT_QUEUE):
        raise DecodeError("Invalid events queue")
    return QueueHeader(account_flags=account_flags, head=head, count=count, seq_num=seq_num)


def decode_event_queue(data: bytes) -> tuple[Event, ...]:
    """Decode the live events of a queue account, oldest first."""
    header = decode_queue_header(data)
    capacity = (len(data) - QUEUE_HEADER_STRUCT.size) // EVENT_STRUCT.size
    if header.count > capacity:
        raise DecodeError(f"event count {header.count} exceeds ring capacity {capacity}")
    if header.count == 0:
        return ()

    events: list[Event] = []
    for i in range(header.count):
        slot = (header.head + i) % capacity
        offset = QUEUE_HEADER_STRUCT.size + slot * EVENT_STRUCT.size
        try:
            (
                flags, owner_slot, fee_tier, released, paid, fee,
                order_id, open_orders, client_order_id,
            ) = EVENT_STRUCT.unpack_from(data, offset)
        except struct.error as exc:
            raise DecodeError(f"event slot {slot}: {exc}") from exc
        events.append(
            Event(
                flags=EventFlag(flags & 0x1F),
                open_orders_slot=owner_slot,
                fee_tier=fee_tier,
                native_quantity_released=released,
                native_quantity_paid=paid,
                native_fee_or_rebate=fee,
                order_id=int.from_bytes(order_id, "little"),
                open_orders=Pubkey.from_bytes(open_orders),
                client_order_id=client_order_id,
            )
        )
    return tuple(events)


_WORDS = struct.Struct("<4Q")


def open_orders_sort_key(key: Pubkey) -> tuple[int, int, int, int]:
    """Sort key the DEX expects: four little-endian u64 words, first word most significant."""
    return _WORDS.unpack(bytes(key))


def collect_open_orders(events: Iterable[Event], max_accounts: int = 10) -> tuple[Pubkey, ...]:
    """Distinct open-orders accounts of the first events, capped and sorted."""
    if max_accounts < 1:
        return ()
    seen: dict[Pubkey, None] = {}
    for event in events:
        seen.setdefault(event.open_orders, None)
        if len(seen) >= max_accounts:
            break
    return tuple(sorted(seen, key=open_orders_sort_key))
