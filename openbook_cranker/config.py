"""Configuration for the OpenBook event-queue cranker.

Every knob has an environment variable (loaded from an optional env file)
and a matching CLI flag; the CLI wins.
"""
from __future__ import annotations

import argparse
import os
from dataclasses import dataclass
from typing import Any, Optional, Sequence

from solders.pubkey import Pubkey

from .env import DEFAULT_ENV_FILE, bootstrap_env_file, env_bool, env_float, env_int, env_json, env_str, load_env_file


# ──────────────────────────────────────────────────────────────
# Endpoints / program ids
# ──────────────────────────────────────────────────────────────

CLUSTERS = ("mainnet", "devnet")

DEFAULT_ENDPOINTS = {
    "mainnet": "https://api.mainnet-beta.solana.com",
    "devnet": "https://api.devnet.solana.com",
}

DEFAULT_PROGRAM_IDS = {
    "mainnet": "srmqPvymJeFKQ4zGQed1GFppgkRHL9kaELCbyksJtPX",
    "devnet": "EoTcMgcDRTJVZDMZWBoU6rhYHZfkNTVEAfz3uUJRcYGj",
}

MARKET_DIRECTORY_URL = "https://openserum.io/api/serum/markets.json"

DEFAULT_WALLET_PATH = os.path.join(os.path.expanduser("~"), ".config", "solana", "id.json")

COMMITMENTS = ("processed", "confirmed", "finalized")


# ──────────────────────────────────────────────────────────────
# Config dataclass
# ──────────────────────────────────────────────────────────────

@dataclass(slots=True)
class CrankerConfig:
    """Runtime configuration, populated from CLI + env."""

    # ── Connection ──
    endpoint_url: str = ""
    cluster: str = "mainnet"
    program_id: str = ""
    commitment: str = "processed"
    use_compression: bool = True
    rpc_timeout_s: float = 10.0
    blockhash_refresh_s: float = 1.0

    # ── Wallet ──
    wallet_path: str = DEFAULT_WALLET_PATH
    keypair: str = ""

    # ── Loop ──
    interval_s: float = 1.0

    # ── Instruction shape ──
    max_unique_accounts: int = 10
    consume_events_limit: int = 19
    min_events: int = 0

    # ── Fees ──
    # Queue length above which a market is cranked at the priority price
    priority_queue_limit: int = 100
    # Markets always cranked at the priority price (address, name or index)
    priority_markets: tuple[str, ...] = ()
    default_cu_price: int = 0
    priority_cu_price: int = 100_000
    cu_limit: int = 50_000
    max_tx_instructions: int = 1

    # ── Market source ──
    top_market: bool = False
    markets_file: str = ""
    market_directory_url: str = MARKET_DIRECTORY_URL
    min_24h_volume: float = 100_000.0

    # ── Logging ──
    log_level: str = "INFO"

    @property
    def rpc_url(self) -> str:
        return self.endpoint_url or DEFAULT_ENDPOINTS.get(self.cluster, DEFAULT_ENDPOINTS["mainnet"])

    @property
    def program(self) -> Pubkey:
        return Pubkey.from_string(self.program_id or DEFAULT_PROGRAM_IDS[self.cluster])

    @property
    def encoding(self) -> str:
        return "base64+zstd" if self.use_compression else "base64"

    def validate(self) -> None:
        if self.cluster not in CLUSTERS:
            raise ValueError(f"unknown cluster {self.cluster!r}, expected one of {CLUSTERS}")
        if self.commitment not in COMMITMENTS:
            raise ValueError(f"unknown commitment {self.commitment!r}")
        if self.max_unique_accounts < 1:
            raise ValueError("max_unique_accounts must be >= 1")
        if not 1 <= self.consume_events_limit <= 0xFFFF:
            raise ValueError("consume_events_limit must fit in a u16 and be >= 1")
        if self.max_tx_instructions < 1:
            raise ValueError("max_tx_instructions must be >= 1")
        if self.cu_limit < 1:
            raise ValueError("cu_limit must be >= 1")
        if self.default_cu_price < 0 or self.priority_cu_price < 0:
            raise ValueError("compute unit prices must be >= 0")
        if self.interval_s < 0 or self.blockhash_refresh_s <= 0:
            raise ValueError("interval and blockhash refresh must be positive")
        # Raises ValueError on a malformed override
        _ = self.program


def _normalize_market_list(raw: Any) -> tuple[str, ...]:
    """Accept a JSON list, a comma-separated string, or a scalar."""
    if raw is None:
        return ()
    if isinstance(raw, (list, tuple)):
        items = raw
    else:
        items = str(raw).split(",")
    out: list[str] = []
    for item in items:
        text = str(item).strip()
        if text and text not in out:
            out.append(text)
    return tuple(out)


def parse_args(argv: Optional[Sequence[str]] = None) -> CrankerConfig:
    """Build CrankerConfig from CLI args + environment variables."""
    argv_list = list(argv) if argv is not None else None
    env_file = bootstrap_env_file(argv_list)

    p = argparse.ArgumentParser(description="OpenBook event queue cranker")
    p.add_argument("--env-file", default=env_file)
    p.add_argument("--endpoint-url", default=env_str("ENDPOINT_URL", ""))
    p.add_argument("--cluster", default=env_str("CLUSTER", "mainnet"), choices=CLUSTERS)
    p.add_argument("--program-id", default=env_str("PROGRAM_ID", ""))
    p.add_argument("--commitment", default=env_str("COMMITMENT", "processed"), choices=COMMITMENTS)
    p.add_argument("--compression", action=argparse.BooleanOptionalAction,
                   default=env_bool("USE_COMPRESSION", True),
                   help="request base64+zstd account data")
    p.add_argument("--rpc-timeout", type=float, default=env_float("RPC_TIMEOUT", 10.0))
    p.add_argument("--blockhash-refresh", type=float, default=env_float("BLOCKHASH_REFRESH", 1.0),
                   help="seconds between blockhash refreshes")
    p.add_argument("--wallet-path", default=env_str("WALLET_PATH", DEFAULT_WALLET_PATH))
    p.add_argument("--interval", type=float, default=env_float("INTERVAL", 1000.0),
                   help="poll interval in milliseconds")
    p.add_argument("--max-unique-accounts", type=int, default=env_int("MAX_UNIQUE_ACCOUNTS", 10))
    p.add_argument("--consume-events-limit", type=int, default=env_int("CONSUME_EVENTS_LIMIT", 19))
    p.add_argument("--min-events", type=int, default=env_int("MIN_EVENTS", 0),
                   help="skip queues holding fewer events than this")
    p.add_argument("--priority-queue-limit", type=int, default=env_int("PRIORITY_QUEUE_LIMIT", 100))
    p.add_argument("--high-fee-markets", default=None,
                   help="comma-separated market addresses, names or indices")
    p.add_argument("--default-cu-price", type=int, default=env_int("DEFAULT_CU_PRICE", 0))
    p.add_argument("--priority-cu-price", type=int, default=env_int("PRIORITY_CU_PRICE", 100_000))
    p.add_argument("--cu-limit", type=int, default=env_int("PRIORITY_CU_LIMIT", 50_000),
                   help="compute unit limit per instruction slot")
    p.add_argument("--max-tx-instructions", type=int, default=env_int("MAX_TX_INSTRUCTIONS", 1))
    p.add_argument("--top-market", action=argparse.BooleanOptionalAction,
                   default=env_bool("TOP_MARKET", False),
                   help="discover markets from the market directory instead of the static list")
    p.add_argument("--markets-file", default=env_str("MARKETS_FILE", ""))
    p.add_argument("--market-directory-url", default=env_str("MARKET_DIRECTORY_URL", MARKET_DIRECTORY_URL))
    p.add_argument("--min-24h-volume", type=float, default=env_float("MIN_24H_VOLUME", 100_000.0))
    p.add_argument("--log-level", default=env_str("LOG_LEVEL", "INFO"))
    args = p.parse_args(argv_list)

    cli_env_file = str(args.env_file).strip() or DEFAULT_ENV_FILE
    if cli_env_file != env_file:
        load_env_file(cli_env_file)

    if args.high_fee_markets is not None:
        priority_markets = _normalize_market_list(args.high_fee_markets)
    else:
        priority_markets = _normalize_market_list(
            env_json("HIGH_FEE_MARKETS", env_str("HIGH_FEE_MARKETS", ""))
        )

    cfg = CrankerConfig(
        endpoint_url=str(args.endpoint_url).strip(),
        cluster=args.cluster,
        program_id=str(args.program_id).strip(),
        commitment=args.commitment,
        use_compression=bool(args.compression),
        rpc_timeout_s=max(0.5, float(args.rpc_timeout)),
        blockhash_refresh_s=max(0.1, float(args.blockhash_refresh)),
        wallet_path=os.path.expanduser(str(args.wallet_path)),
        keypair=env_str("KEYPAIR", ""),
        interval_s=max(0.0, float(args.interval)) / 1000.0,
        max_unique_accounts=int(args.max_unique_accounts),
        consume_events_limit=int(args.consume_events_limit),
        min_events=max(0, int(args.min_events)),
        priority_queue_limit=int(args.priority_queue_limit),
        priority_markets=priority_markets,
        default_cu_price=int(args.default_cu_price),
        priority_cu_price=int(args.priority_cu_price),
        cu_limit=int(args.cu_limit),
        max_tx_instructions=int(args.max_tx_instructions),
        top_market=bool(args.top_market),
        markets_file=str(args.markets_file).strip(),
        market_directory_url=str(args.market_directory_url).strip(),
        min_24h_volume=float(args.min_24h_volume),
        log_level=str(args.log_level).strip().upper() or "INFO",
    )
    cfg.validate()
    return cfg
