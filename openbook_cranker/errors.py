"""Exception taxonomy for the cranker.

Startup failures (market resolution/loading, first blockhash, wallet) abort
the process.  Everything raised inside a tick is caught at the tick boundary
by the scheduler.
"""
from __future__ import annotations

from typing import Optional


class CrankerError(RuntimeError):
    """Base class for all cranker errors."""


class RpcError(CrankerError):
    """The RPC endpoint rejected a call (JSON-RPC error or HTTP failure)."""

    def __init__(self, message: str, code: Optional[int] = None, method: str = "") -> None:
        super().__init__(message)
        self.message = message
        self.code = code
        self.method = method

    def __str__(self) -> str:
        parts = []
        if self.method:
            parts.append(f"method={self.method}")
        if self.code is not None:
            parts.append(f"code={self.code}")
        parts.append(self.message)
        return " ".join(parts)


class BenignRace(RpcError):
    """Node has not reached the requested minimum context slot yet."""


class MissingAccount(CrankerError):
    def __init__(self, missing: list[str]) -> None:
        self.missing = list(missing)
        example = self.missing[0] if self.missing else "?"
        super().__init__(
            f"getMultipleAccounts returned {len(self.missing)} null results. ex: {example}"
        )


class DecodeError(CrankerError):
    """Account bytes do not match the expected fixed layout."""


class DiscoveryFailed(CrankerError):
    """Market directory unreachable after the bounded number of attempts."""


class MarketListError(CrankerError):
    """Static market list missing or not a JSON list of markets."""


class SubmissionFailure(CrankerError):
    """A signed transaction was rejected by the endpoint."""


class BlockhashUnavailable(CrankerError):
    """No blockhash has been fetched yet."""


class WalletError(CrankerError):
    pass
