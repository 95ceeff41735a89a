"""Minimal async Solana JSON-RPC transport over aiohttp."""
from __future__ import annotations

import asyncio
import base64
import itertools
import logging
from typing import Any, Optional

import aiohttp

from .errors import BenignRace, RpcError

log = logging.getLogger(__name__)

MIN_CONTEXT_SLOT_NOT_REACHED = -32016

_HEADERS = {"User-Agent": "openbook-cranker/1.0", "Content-Type": "application/json"}


def unwrap_response(method: str, body: Any) -> Any:
    """Return ``result`` from a JSON-RPC response body or raise the error it carries."""
    if not isinstance(body, dict):
        raise RpcError(f"invalid response: {str(body)[:400]}", method=method)
    error = body.get("error")
    if error:
        if isinstance(error, dict):
            code = error.get("code")
            message = str(error.get("message") or error)
        else:
            code = None
            message = str(error)
        if code == MIN_CONTEXT_SLOT_NOT_REACHED or "minimum context slot" in message.lower():
            raise BenignRace(message, code=code, method=method)
        raise RpcError(message, code=code if isinstance(code, int) else None, method=method)
    if "result" not in body:
        raise RpcError("response has neither result nor error", method=method)
    return body["result"]


class SolanaRpc:
    """One HTTP session against one RPC endpoint.

    Usage:
        async with SolanaRpc(url) as rpc:
            result = await rpc.call("getSlot")
    """

    def __init__(self, url: str, timeout_s: float = 10.0,
                 session: Optional[aiohttp.ClientSession] = None) -> None:
        self.url = url
        self._timeout = aiohttp.ClientTimeout(total=timeout_s)
        self._session = session
        self._owns_session = session is None
        self._ids = itertools.count(1)

    async def __aenter__(self) -> "SolanaRpc":
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def connect(self) -> aiohttp.ClientSession:
        if self._session is None:
            self._session = aiohttp.ClientSession(headers=_HEADERS, timeout=self._timeout)
            self._owns_session = True
        return self._session

    async def close(self) -> None:
        if self._session is not None and self._owns_session:
            await self._session.close()
        self._session = None

    async def call(self, method: str, params: Optional[list[Any]] = None) -> Any:
        session = await self.connect()
        payload = {
            "jsonrpc": "2.0",
            "id": next(self._ids),
            "method": method,
            "params": params or [],
        }
        try:
            async with session.post(self.url, json=payload) as resp:
                if resp.status >= 400:
                    text = await resp.text()
                    raise RpcError(f"http {resp.status}: {text[:400]}", method=method)
                try:
                    body = await resp.json(content_type=None)
                except ValueError as exc:
                    raise RpcError(f"invalid json: {exc}", method=method) from exc
        except (aiohttp.ClientError, asyncio.TimeoutError) as exc:
            raise RpcError(f"transport error: {exc!r}", method=method) from exc
        return unwrap_response(method, body)

    async def send_transaction(self, raw: bytes, *, skip_preflight: bool = True,
                               max_retries: int = 2) -> str:
        """Submit a signed transaction; returns the signature string."""
        encoded = base64.b64encode(raw).decode("ascii")
        result = await self.call(
            "sendTransaction",
            [encoded, {
                "encoding": "base64",
                "skipPreflight": skip_preflight,
                "maxRetries": max_retries,
            }],
        )
        if not isinstance(result, str):
            raise RpcError(f"unexpected sendTransaction result: {result!r}", method="sendTransaction")
        return result
