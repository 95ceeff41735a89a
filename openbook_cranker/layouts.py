"""Fixed binary layouts for the accounts the cranker reads.

All DEX accounts are wrapped in a 5-byte ``serum`` head and a 7-byte
``padding`` tail.  Sizes are asserted at import so a layout edit that
shifts an offset fails immediately.
"""
from __future__ import annotations

import struct
from dataclasses import dataclass
from enum import IntFlag

from solders.pubkey import Pubkey

from .errors import DecodeError


HEAD_PADDING = b"serum"
TAIL_PADDING = b"padding"


class AccountFlag(IntFlag):
    INITIALIZED = 1 << 0
    MARKET = 1 << 1
    OPEN_ORDERS = 1 << 2
    REQUEST_QUEUE = 1 << 3
    EVENT_QUEUE = 1 << 4
    BIDS = 1 << 5
    ASKS = 1 << 6
    DISABLED = 1 << 7


class EventFlag(IntFlag):
    FILL = 1 << 0
    OUT = 1 << 1
    BID = 1 << 2
    MAKER = 1 << 3
    RELEASE_FUNDS = 1 << 4


# ──────────────────────────────────────────────────────────────
# Market state (v2)
# ──────────────────────────────────────────────────────────────

MARKET_STRUCT = struct.Struct(
    "<5s"   # head padding
    "Q"     # account flags
    "32s"   # own address
    "Q"     # vault signer nonce
    "32s"   # base mint
    "32s"   # quote mint
    "32s"   # base vault
    "Q"     # base deposits total
    "Q"     # base fees accrued
    "32s"   # quote vault
    "Q"     # quote deposits total
    "Q"     # quote fees accrued
    "Q"     # quote dust threshold
    "32s"   # request queue
    "32s"   # event queue
    "32s"   # bids
    "32s"   # asks
    "Q"     # base lot size
    "Q"     # quote lot size
    "Q"     # fee rate bps
    "Q"     # referrer rebates accrued
    "7s"    # tail padding
)
assert MARKET_STRUCT.size == 388


@dataclass(frozen=True, slots=True)
class MarketState:
    account_flags: AccountFlag
    own_address: Pubkey
    vault_signer_nonce: int
    base_mint: Pubkey
    quote_mint: Pubkey
    base_vault: Pubkey
    quote_vault: Pubkey
    request_queue: Pubkey
    event_queue: Pubkey
    bids: Pubkey
    asks: Pubkey
    base_lot_size: int
    quote_lot_size: int
    fee_rate_bps: int


def decode_market(data: bytes) -> MarketState:
    if len(data) != MARKET_STRUCT.size:
        raise DecodeError(f"market account is {len(data)} bytes, expected {MARKET_STRUCT.size}")
    (
        head, flags, own, nonce, base_mint, quote_mint, base_vault,
        _base_deposits, _base_fees, quote_vault, _quote_deposits, _quote_fees,
        _dust, request_queue, event_queue, bids, asks,
        base_lot, quote_lot, fee_rate_bps, _rebates, tail,
    ) = MARKET_STRUCT.unpack(data)
    if head != HEAD_PADDING or tail != TAIL_PADDING:
        raise DecodeError("market account padding mismatch")
    account_flags = AccountFlag(flags & 0xFF)
    if not (account_flags & AccountFlag.INITIALIZED and account_flags & AccountFlag.MARKET):
        raise DecodeError(f"account flags {flags:#x} do not describe an initialized market")
    return MarketState(
        account_flags=account_flags,
        own_address=Pubkey.from_bytes(own),
        vault_signer_nonce=nonce,
        base_mint=Pubkey.from_bytes(base_mint),
        quote_mint=Pubkey.from_bytes(quote_mint),
        base_vault=Pubkey.from_bytes(base_vault),
        quote_vault=Pubkey.from_bytes(quote_vault),
        request_queue=Pubkey.from_bytes(request_queue),
        event_queue=Pubkey.from_bytes(event_queue),
        bids=Pubkey.from_bytes(bids),
        asks=Pubkey.from_bytes(asks),
        base_lot_size=base_lot,
        quote_lot_size=quote_lot,
        fee_rate_bps=fee_rate_bps,
    )


# ──────────────────────────────────────────────────────────────
# SPL token mint
# ──────────────────────────────────────────────────────────────

MINT_STRUCT = struct.Struct(
    "<44s"  # mint authority option + authority + supply
    "B"     # decimals
    "37s"   # is_initialized + freeze authority option + authority
)
assert MINT_STRUCT.size == 82


def decode_mint_decimals(data: bytes) -> int:
    if len(data) != MINT_STRUCT.size:
        raise DecodeError(f"mint account is {len(data)} bytes, expected {MINT_STRUCT.size}")
    _prefix, decimals, suffix = MINT_STRUCT.unpack(data)
    if suffix[0] != 1:
        raise DecodeError("mint account is not initialized")
    return decimals


# ──────────────────────────────────────────────────────────────
# Event queue
# ──────────────────────────────────────────────────────────────

QUEUE_HEADER_STRUCT = struct.Struct(
    "<5s"   # head padding
    "Q"     # account flags
    "I4x"   # head
    "I4x"   # count
    "I4x"   # seq num
)
assert QUEUE_HEADER_STRUCT.size == 37

EVENT_STRUCT = struct.Struct(
    "<B"    # event flags
    "B"     # owner slot
    "B"     # fee tier
    "5x"
    "Q"     # native quantity released
    "Q"     # native quantity paid
    "Q"     # native fee or rebate
    "16s"   # order id (u128)
    "32s"   # open orders
    "Q"     # client order id
)
assert EVENT_STRUCT.size == 88
