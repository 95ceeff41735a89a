"""Tests for market resolution and loading."""
from __future__ import annotations

import asyncio
import json
from typing import Any

import pytest
from aiohttp import web
from solders.pubkey import Pubkey

from openbook_cranker.accounts import AccountFetcher
from openbook_cranker.errors import DecodeError, DiscoveryFailed, MarketListError, MissingAccount
from openbook_cranker.markets import (
    DEFAULT_MARKETS_FILE,
    MarketListEntry,
    MarketRegistry,
    load_static_markets,
    parse_market_entries,
)

from helpers import (
    PROGRAM, TOKEN_PROGRAM, FakeRpc, make_config, make_market, market_bytes, mint_bytes, serving,
)


class _ScriptedRegistry(MarketRegistry):
    """Registry whose directory responses come from a list."""

    def __init__(self, cfg, fetcher, responses: list[Any]) -> None:
        super().__init__(cfg, fetcher)
        self.responses = list(responses)
        self.attempts = 0

    async def _fetch_directory(self) -> Any:
        self.attempts += 1
        item = self.responses.pop(0)
        if isinstance(item, BaseException):
            raise item
        return item


def _setup_markets(count: int, shared_quote: bool = True):
    rpc = FakeRpc()
    quote = Pubkey.new_unique()
    entries = []
    expected = []
    for i in range(count):
        address, eq, base = Pubkey.new_unique(), Pubkey.new_unique(), Pubkey.new_unique()
        q = quote if shared_quote else Pubkey.new_unique()
        rpc.put(address, market_bytes(address, eq, base, q))
        rpc.put(base, mint_bytes(9), TOKEN_PROGRAM)
        rpc.put(q, mint_bytes(6), TOKEN_PROGRAM)
        entries.append(MarketListEntry(name=f"M{i}/USDC", address=str(address)))
        expected.append((address, eq, base, q))
    return rpc, entries, expected


class TestParseEntries:
    def test_dedup_and_skip_invalid(self) -> None:
        a = str(Pubkey.new_unique())
        payload = [
            {"name": "A", "address": a},
            {"name": "A again", "address": a},
            {"name": "bad", "address": "not-a-key"},
            {"name": "blank"},
            "junk",
        ]
        entries = parse_market_entries(payload)
        assert entries == [MarketListEntry(name="A", address=a)]

    def test_requires_list(self) -> None:
        with pytest.raises(ValueError):
            parse_market_entries({"address": "x"})

    def test_bundled_file(self) -> None:
        entries = load_static_markets("mainnet", DEFAULT_MARKETS_FILE)
        assert entries
        assert load_static_markets("devnet") == []


class TestResolve:
    def test_static_file(self, tmp_path) -> None:
        a, b = str(Pubkey.new_unique()), str(Pubkey.new_unique())
        path = tmp_path / "markets.json"
        path.write_text(json.dumps({
            "mainnet": [{"name": "A", "address": a}],
            "devnet": [{"name": "B", "address": b}],
        }))
        cfg = make_config(cluster="devnet", markets_file=str(path))
        registry = MarketRegistry(cfg, AccountFetcher(FakeRpc()))
        assert asyncio.run(registry.resolve()) == [MarketListEntry(name="B", address=b)]

    def test_discovery_retries_then_succeeds(self) -> None:
        a = str(Pubkey.new_unique())
        cfg = make_config(top_market=True)
        registry = _ScriptedRegistry(cfg, AccountFetcher(FakeRpc()), [
            RuntimeError("http 502"),
            [{"name": "A", "address": a}],
        ])
        assert asyncio.run(registry.resolve()) == [MarketListEntry(name="A", address=a)]
        assert registry.attempts == 2

    def test_discovery_gives_up_after_three(self) -> None:
        cfg = make_config(top_market=True)
        registry = _ScriptedRegistry(cfg, AccountFetcher(FakeRpc()), [
            RuntimeError("down"), RuntimeError("down"), {"not": "a list"}, [],
        ])
        with pytest.raises(DiscoveryFailed):
            asyncio.run(registry.resolve())
        assert registry.attempts == 3

    def test_directory_request(self) -> None:
        a = str(Pubkey.new_unique())
        queries = []

        async def handler(request: web.Request) -> web.Response:
            queries.append(dict(request.query))
            if len(queries) < 3:
                return web.Response(status=503, text="busy")
            return web.json_response([{"name": "A", "address": a}])

        async def scenario():
            async with serving(handler) as url:
                cfg = make_config(top_market=True, market_directory_url=url, min_24h_volume=1_000_000)
                return await MarketRegistry(cfg, AccountFetcher(FakeRpc())).resolve()

        assert asyncio.run(scenario()) == [MarketListEntry(name="A", address=a)]
        assert len(queries) == 3
        assert queries[0] == {"min24hVolume": "1000000"}

    def test_directory_always_failing(self) -> None:
        async def handler(request: web.Request) -> web.Response:
            return web.Response(status=500, text="down")

        async def scenario():
            async with serving(handler) as url:
                cfg = make_config(top_market=True, market_directory_url=url)
                return await MarketRegistry(cfg, AccountFetcher(FakeRpc())).resolve()

        with pytest.raises(DiscoveryFailed):
            asyncio.run(scenario())

    def test_static_file_missing(self, tmp_path) -> None:
        cfg = make_config(markets_file=str(tmp_path / "nope.json"))
        with pytest.raises(MarketListError):
            asyncio.run(MarketRegistry(cfg, AccountFetcher(FakeRpc())).resolve())

    def test_static_file_malformed(self, tmp_path) -> None:
        path = tmp_path / "markets.json"
        path.write_text("{\"mainnet\": \"not a list\"}")
        cfg = make_config(markets_file=str(path))
        with pytest.raises(MarketListError):
            asyncio.run(MarketRegistry(cfg, AccountFetcher(FakeRpc())).resolve())


class TestLoad:
    def test_two_round_trips(self) -> None:
        rpc, entries, expected = _setup_markets(5)
        registry = MarketRegistry(make_config(), AccountFetcher(rpc))
        markets = asyncio.run(registry.load(entries))

        calls = rpc.account_calls()
        assert len(calls) == 2
        assert len(calls[0][0]) == 5
        # 5 base mints + 1 shared quote mint
        assert len(calls[1][0]) == 6

        for i, (market, (address, eq, base, quote)) in enumerate(zip(markets, expected)):
            assert market.index == i
            assert market.name == f"M{i}/USDC"
            assert market.address == address
            assert market.event_queue == eq
            assert market.base_mint == base
            assert market.quote_mint == quote
            assert market.base_decimals == 9
            assert market.quote_decimals == 6
            assert market.program_id == PROGRAM

    def test_empty(self) -> None:
        rpc = FakeRpc()
        registry = MarketRegistry(make_config(), AccountFetcher(rpc))
        assert asyncio.run(registry.load([])) == []
        assert rpc.calls == []

    def test_wrong_owner(self) -> None:
        rpc, entries, expected = _setup_markets(1)
        address = expected[0][0]
        data, _ = rpc.accounts[str(address)]
        rpc.put(address, data, owner=TOKEN_PROGRAM)
        registry = MarketRegistry(make_config(), AccountFetcher(rpc))
        with pytest.raises(DecodeError):
            asyncio.run(registry.load(entries))

    def test_own_address_mismatch(self) -> None:
        rpc, entries, expected = _setup_markets(1)
        address, eq, base, quote = expected[0]
        rpc.put(address, market_bytes(Pubkey.new_unique(), eq, base, quote))
        registry = MarketRegistry(make_config(), AccountFetcher(rpc))
        with pytest.raises(DecodeError):
            asyncio.run(registry.load(entries))

    def test_bad_mint_layout(self) -> None:
        rpc, entries, expected = _setup_markets(1)
        rpc.put(expected[0][2], mint_bytes(9)[:80], TOKEN_PROGRAM)
        registry = MarketRegistry(make_config(), AccountFetcher(rpc))
        with pytest.raises(DecodeError):
            asyncio.run(registry.load(entries))

    def test_missing_market(self) -> None:
        rpc, entries, _ = _setup_markets(1)
        entries.append(MarketListEntry(name="ghost", address=str(Pubkey.new_unique())))
        registry = MarketRegistry(make_config(), AccountFetcher(rpc))
        with pytest.raises(MissingAccount):
            asyncio.run(registry.load(entries))


class TestDescriptorMatch:
    def test_selectors(self) -> None:
        m = make_market(index=2, name="SOL/USDC")
        assert m.matches("2")
        assert not m.matches("1")
        assert m.matches("sol/usdc")
        assert m.matches(str(m.address))
        assert not m.matches(str(Pubkey.new_unique()))
        assert not m.matches("")
