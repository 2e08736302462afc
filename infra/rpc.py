# infra/rpc.py

from __future__ import annotations

import asyncio
import random
from typing import Any, Optional

import aiohttp

from exitbot import config
from exitbot.errors import RPCError

RETRYABLE_HTTP = (429, 500, 502, 503, 504)


def _normalize_url(url: str) -> str:
    u = str(url).strip()
    if not u:
        return u
    if "://" not in u:
        u = "https://" + u
    return u


def _url_host(url: str) -> str:
    u = _normalize_url(url).lower()
    if "://" in u:
        u = u.split("://", 1)[1]
    return u.split("/", 1)[0]


class AsyncRPC:
    """Async JSON-RPC client with:
    - persistent aiohttp session
    - per-call timeouts
    - retries + exponential backoff for transient errors / rate limits
    """

    def __init__(
        self,
        url: str,
        *,
        default_timeout_s: float = config.RPC_TIMEOUT_S,
        max_retries: int = 2,
        backoff_base_s: float = 0.35,
    ):
        self.url = _normalize_url(url)
        self.default_timeout_s = float(default_timeout_s)
        self.max_retries = int(max_retries)
        self.backoff_base_s = float(backoff_base_s)
        self._id = 0
        self._session: Optional[aiohttp.ClientSession] = None
        self._connector: Optional[aiohttp.TCPConnector] = None

    @property
    def host(self) -> str:
        return _url_host(self.url)

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session and not self._session.closed:
            return self._session
        self._connector = aiohttp.TCPConnector(limit=20, ttl_dns_cache=300)
        self._session = aiohttp.ClientSession(connector=self._connector)
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None
        if self._connector:
            await self._connector.close()
        self._connector = None

    async def call(self, method: str, params: list, *, timeout_s: Optional[float] = None) -> Any:
        """Perform a JSON-RPC call and return its "result".

        JSON-RPC level errors (reverts, nonce too low, ...) are not retried;
        resending the same request would not change the answer.
        """

        self._id += 1
        payload = {"jsonrpc": "2.0", "id": self._id, "method": method, "params": params}

        session = await self._get_session()
        to_s = float(timeout_s) if timeout_s is not None else self.default_timeout_s
        last_err: Optional[str] = None

        for attempt in range(self.max_retries + 1):
            try:
                async def _do():
                    async with session.post(self.url, json=payload) as resp:
                        if resp.status >= 400:
                            text = await resp.text()
                            raise aiohttp.ClientResponseError(
                                request_info=resp.request_info,
                                history=resp.history,
                                status=resp.status,
                                message=text,
                                headers=resp.headers,
                            )
                        return await resp.json(content_type=None)

                data = await asyncio.wait_for(_do(), timeout=to_s)
            except asyncio.TimeoutError:
                last_err = f"timeout({to_s}s)"
            except aiohttp.ClientResponseError as e:
                last_err = f"http_{e.status}"
                if e.status not in RETRYABLE_HTTP:
                    break
            except (aiohttp.ClientError, ValueError) as e:
                last_err = f"{type(e).__name__}: {e}"
            else:
                if not isinstance(data, dict):
                    raise RPCError(f"{method}: unexpected response {type(data).__name__}")
                if "error" in data:
                    err = data["error"]
                    msg = err.get("message") if isinstance(err, dict) else err
                    raise RPCError(f"{method}: rpc_error: {msg}")
                return data.get("result")

            if attempt < self.max_retries:
                sleep_s = (self.backoff_base_s * (2 ** attempt)) + random.random() * 0.25
                await asyncio.sleep(sleep_s)

        raise RPCError(f"{method}: failed after retries via {self.host}: {last_err}")

    async def chain_id(self) -> int:
        res = await self.call("eth_chainId", [])
        return int(res, 16) if isinstance(res, str) else int(res)

    async def pending_nonce(self, address: str) -> int:
        res = await self.call("eth_getTransactionCount", [address, "pending"])
        return int(res, 16) if isinstance(res, str) else int(res)

    async def balance(self, address: str, block: str = "latest") -> int:
        res = await self.call("eth_getBalance", [address, block])
        return int(res, 16) if isinstance(res, str) else int(res)

    async def eth_call(self, to: str, data: str, *, block: str = "latest") -> str:
        res = await self.call("eth_call", [{"to": to, "data": data}, block])
        return str(res or "0x")

    async def send_raw_transaction(self, raw_tx: str) -> str:
        res = await self.call("eth_sendRawTransaction", [raw_tx])
        return str(res) if res else ""

    async def transaction_by_hash(self, tx_hash: str) -> Optional[dict]:
        res = await self.call("eth_getTransactionByHash", [tx_hash])
        return res if isinstance(res, dict) else None
