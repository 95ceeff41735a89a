"""Market registry: decides which markets to crank and loads their accounts.

Resolution reads either the bundled/static market list for the configured
cluster, or the market directory filtered by 24h volume.

Loading costs two batched round trips no matter how many markets there are:
one ``getMultipleAccounts`` sweep over the market accounts (event queue and
mint addresses), then one over the distinct mints (decimals).
"""
from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Iterable, Optional, Sequence

import aiohttp
from solders.pubkey import Pubkey

from .accounts import AccountFetcher
from .config import CrankerConfig
from .errors import DecodeError, DiscoveryFailed, MarketListError
from .layouts import decode_market, decode_mint_decimals

log = logging.getLogger(__name__)

DEFAULT_MARKETS_FILE = Path(__file__).with_name("markets.json")

DISCOVERY_ATTEMPTS = 3

_HEADERS = {"User-Agent": "openbook-cranker/1.0"}


@dataclass(frozen=True, slots=True)
class MarketListEntry:
    name: str
    address: str


@dataclass(frozen=True, slots=True)
class MarketDescriptor:
    """Static identity of one order book, loaded once at startup."""
    index: int
    name: str
    address: Pubkey
    program_id: Pubkey
    event_queue: Pubkey
    base_mint: Pubkey
    quote_mint: Pubkey
    base_decimals: int
    quote_decimals: int

    def matches(self, selector: str) -> bool:
        """True if *selector* names this market by address, name or list index."""
        text = selector.strip()
        if not text:
            return False
        if text.isdigit():
            return int(text) == self.index
        return text == str(self.address) or text.lower() == self.name.lower()


def parse_market_entries(payload: Any) -> list[MarketListEntry]:
    """Turn a JSON list of ``{name, address}`` objects into entries.

    Entries without a valid address are skipped; duplicates keep the first
    occurrence.
    """
    if not isinstance(payload, list):
        raise ValueError("market list must be a JSON array")
    out: list[MarketListEntry] = []
    seen: set[str] = set()
    for item in payload:
        if not isinstance(item, dict):
            continue
        address = str(item.get("address") or "").strip()
        if not address or address in seen:
            continue
        try:
            Pubkey.from_string(address)
        except ValueError:
            log.warning("skipping market with invalid address %r", address)
            continue
        seen.add(address)
        name = str(item.get("name") or address[:8]).strip()
        out.append(MarketListEntry(name=name, address=address))
    return out


def load_static_markets(cluster: str, path: Optional[Path] = None) -> list[MarketListEntry]:
    target = Path(path or DEFAULT_MARKETS_FILE)
    try:
        data = json.loads(target.read_text(encoding="utf-8"))
        if isinstance(data, dict):
            data = data.get(cluster, [])
        return parse_market_entries(data)
    except (OSError, ValueError) as exc:
        raise MarketListError(f"cannot load market list {target}: {exc}") from exc


def _distinct(keys: Iterable[Pubkey]) -> list[Pubkey]:
    return list(dict.fromkeys(keys))


class MarketRegistry:
    """Resolves the market set and loads descriptors.

    Usage:
        registry = MarketRegistry(cfg, fetcher)
        entries = await registry.resolve()
        markets = await registry.load(entries)
    """

    def __init__(self, cfg: CrankerConfig, fetcher: AccountFetcher) -> None:
        self._cfg = cfg
        self._fetcher = fetcher

    async def resolve(self) -> list[MarketListEntry]:
        if not self._cfg.top_market:
            path = Path(self._cfg.markets_file) if self._cfg.markets_file else None
            entries = load_static_markets(self._cfg.cluster, path)
            log.info("loaded %d markets from static list (%s)",
                     len(entries), path or DEFAULT_MARKETS_FILE.name)
            return entries

        last_error: Optional[BaseException] = None
        for attempt in range(1, DISCOVERY_ATTEMPTS + 1):
            try:
                payload = await self._fetch_directory()
                entries = parse_market_entries(payload)
            except Exception as exc:
                last_error = exc
                log.warning("market directory attempt %d/%d failed: %s",
                            attempt, DISCOVERY_ATTEMPTS, exc)
                continue
            log.info("discovered %d markets with 24h volume >= %.0f",
                     len(entries), self._cfg.min_24h_volume)
            return entries
        raise DiscoveryFailed(
            f"market directory unreachable after {DISCOVERY_ATTEMPTS} attempts: {last_error}"
        ) from last_error

    async def _fetch_directory(self) -> Any:
        params = {"min24hVolume": f"{self._cfg.min_24h_volume:.0f}"}
        timeout = aiohttp.ClientTimeout(total=self._cfg.rpc_timeout_s)
        async with aiohttp.ClientSession(headers=_HEADERS, timeout=timeout) as session:
            async with session.get(self._cfg.market_directory_url, params=params) as resp:
                if resp.status != 200:
                    raise RuntimeError(f"market directory http {resp.status}")
                return await resp.json(content_type=None)

    async def load(self, entries: Sequence[MarketListEntry]) -> list[MarketDescriptor]:
        if not entries:
            return []
        program = self._cfg.program
        market_keys = [Pubkey.from_string(e.address) for e in entries]
        market_accounts = await self._fetcher.fetch(market_keys)

        states = []
        for entry, account in zip(entries, market_accounts):
            if account.owner != program:
                raise DecodeError(
                    f"market {entry.name} ({entry.address}) is owned by {account.owner}, not {program}"
                )
            try:
                state = decode_market(account.data)
            except DecodeError as exc:
                raise DecodeError(f"market {entry.name} ({entry.address}): {exc}") from exc
            if state.own_address != account.pubkey:
                raise DecodeError(
                    f"market {entry.name} ({entry.address}) records own address {state.own_address}"
                )
            states.append(state)

        mint_keys = _distinct(k for s in states for k in (s.base_mint, s.quote_mint))
        mint_accounts = await self._fetcher.fetch(mint_keys)
        decimals: dict[Pubkey, int] = {}
        for account in mint_accounts:
            try:
                decimals[account.pubkey] = decode_mint_decimals(account.data)
            except DecodeError as exc:
                raise DecodeError(f"mint {account.pubkey}: {exc}") from exc

        markets = [
            MarketDescriptor(
                index=i,
                name=entry.name,
                address=account.pubkey,
                program_id=program,
                event_queue=state.event_queue,
                base_mint=state.base_mint,
                quote_mint=state.quote_mint,
                base_decimals=decimals[state.base_mint],
                quote_decimals=decimals[state.quote_mint],
            )
            for i, (entry, account, state) in enumerate(zip(entries, market_accounts, states))
        ]
        for m in markets:
            log.info("market %d %s %s queue=%s decimals=%d/%d",
                     m.index, m.name, m.address, m.event_queue, m.base_decimals, m.quote_decimals)
        return markets
