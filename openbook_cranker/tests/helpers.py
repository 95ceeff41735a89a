"""Shared builders and fakes for the cranker tests."""
from __future__ import annotations

import asyncio
import base64
import contextlib
from typing import Any, AsyncIterator, Awaitable, Callable, Optional, Sequence

import zstandard
from aiohttp import web
from aiohttp.test_utils import TestServer
from solders.hash import Hash
from solders.pubkey import Pubkey

from openbook_cranker.config import CrankerConfig
from openbook_cranker.layouts import (
    EVENT_STRUCT,
    MARKET_STRUCT,
    MINT_STRUCT,
    QUEUE_HEADER_STRUCT,
    AccountFlag,
    EventFlag,
)
from openbook_cranker.markets import MarketDescriptor

PROGRAM = Pubkey.from_string("srmqPvymJeFKQ4zGQed1GFppgkRHL9kaELCbyksJtPX")
TOKEN_PROGRAM = Pubkey.from_string("TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA")


def market_bytes(
    own: Pubkey,
    event_queue: Pubkey,
    base_mint: Pubkey,
    quote_mint: Pubkey,
    flags: int = AccountFlag.INITIALIZED | AccountFlag.MARKET,
) -> bytes:
    return MARKET_STRUCT.pack(
        b"serum", int(flags), bytes(own), 1,
        bytes(base_mint), bytes(quote_mint), bytes(Pubkey.new_unique()),
        0, 0, bytes(Pubkey.new_unique()), 0, 0, 100,
        bytes(Pubkey.new_unique()), bytes(event_queue),
        bytes(Pubkey.new_unique()), bytes(Pubkey.new_unique()),
        100, 10, 22, 0, b"padding",
    )


def mint_bytes(decimals: int, initialized: bool = True) -> bytes:
    suffix = (b"\x01" if initialized else b"\x00") + b"\x00" * 36
    return MINT_STRUCT.pack(b"\x00" * 44, decimals, suffix)


def queue_bytes(
    owners: Sequence[Pubkey],
    capacity: Optional[int] = None,
    head: int = 0,
    flags: int = AccountFlag.INITIALIZED | AccountFlag.EVENT_QUEUE,
) -> bytes:
    cap = capacity if capacity is not None else max(1, len(owners))
    slots = [b"\x00" * EVENT_STRUCT.size] * cap
    for i, owner in enumerate(owners):
        slots[(head + i) % cap] = EVENT_STRUCT.pack(
            int(EventFlag.FILL | EventFlag.BID), i % 256, 0,
            1000 + i, 2000 + i, 3,
            (i + 1).to_bytes(16, "little"), bytes(owner), i,
        )
    header = QUEUE_HEADER_STRUCT.pack(b"serum", int(flags), head, len(owners), len(owners))
    return header + b"".join(slots) + b"padding"


def make_market(index: int = 0, name: str = "SOL/USDC",
                event_queue: Optional[Pubkey] = None) -> MarketDescriptor:
    return MarketDescriptor(
        index=index,
        name=name,
        address=Pubkey.new_unique(),
        program_id=PROGRAM,
        event_queue=event_queue or Pubkey.new_unique(),
        base_mint=Pubkey.new_unique(),
        quote_mint=Pubkey.new_unique(),
        base_decimals=9,
        quote_decimals=6,
    )


def make_config(**overrides: Any) -> CrankerConfig:
    cfg = CrankerConfig(**overrides)
    cfg.validate()
    return cfg


class FakeRpc:
    """In-memory stand-in for SolanaRpc.

    ``accounts`` maps base58 keys to ``(data, owner)``.  Exceptions queued in
    ``errors`` are raised by the next calls, one per call.
    """

    def __init__(self, accounts: Optional[dict[str, tuple[bytes, Pubkey]]] = None,
                 slot: int = 100, slot_step: int = 0, delay: float = 0.0) -> None:
        self.accounts = dict(accounts or {})
        self.slot = slot
        self.slot_step = slot_step
        self.delay = delay
        self.calls: list[tuple[str, list[Any]]] = []
        self.errors: list[BaseException] = []
        self.sent: list[tuple[bytes, bool, int]] = []
        self.send_errors: list[BaseException] = []
        self.in_flight = 0
        self.max_in_flight = 0
        # Method name -> error raised on every call of that method
        self.fail_methods: dict[str, BaseException] = {}
        self.connected = False
        self.closed = False

    async def connect(self) -> None:
        self.connected = True

    async def close(self) -> None:
        self.closed = True

    def put(self, key: Pubkey, data: bytes, owner: Pubkey = PROGRAM) -> None:
        self.accounts[str(key)] = (data, owner)

    async def call(self, method: str, params: Optional[list[Any]] = None) -> Any:
        params = params or []
        self.calls.append((method, params))
        self.in_flight += 1
        self.max_in_flight = max(self.max_in_flight, self.in_flight)
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            if self.errors:
                raise self.errors.pop(0)
            if method in self.fail_methods:
                raise self.fail_methods[method]
            if method == "getMultipleAccounts":
                return self._get_multiple_accounts(params)
            if method == "getLatestBlockhash":
                return {
                    "context": {"slot": self.slot},
                    "value": {"blockhash": str(Hash.new_unique()), "lastValidBlockHeight": 5000},
                }
            raise AssertionError(f"unexpected method {method}")
        finally:
            self.in_flight -= 1

    def _get_multiple_accounts(self, params: list[Any]) -> dict[str, Any]:
        keys, config = params
        encoding = config.get("encoding", "base64")
        value: list[Optional[dict[str, Any]]] = []
        for key in keys:
            entry = self.accounts.get(key)
            if entry is None:
                value.append(None)
                continue
            data, owner = entry
            if encoding == "base64+zstd":
                data = zstandard.ZstdCompressor().compress(data)
            value.append({
                "data": [base64.b64encode(data).decode("ascii"), encoding],
                "owner": str(owner),
                "lamports": 1_000_000,
                "executable": False,
                "rentEpoch": 0,
            })
        result = {"context": {"slot": self.slot}, "value": value}
        self.slot += self.slot_step
        return result

    def account_calls(self) -> list[list[Any]]:
        return [params for method, params in self.calls if method == "getMultipleAccounts"]

    async def send_transaction(self, raw: bytes, *, skip_preflight: bool = True,
                               max_retries: int = 2) -> str:
        self.sent.append((raw, skip_preflight, max_retries))
        await asyncio.sleep(0)
        if self.send_errors:
            raise self.send_errors.pop(0)
        return f"sig{len(self.sent)}"


Handler = Callable[[web.Request], Awaitable[web.StreamResponse]]


@contextlib.asynccontextmanager
async def serving(handler: Handler) -> AsyncIterator[str]:
    """Run *handler* on a local HTTP server and yield its base URL."""
    app = web.Application()
    app.router.add_route("*", "/", handler)
    server = TestServer(app)
    await server.start_server()
    try:
        yield str(server.make_url("/"))
    finally:
        await server.close()
