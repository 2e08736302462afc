from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

import aiohttp

from exitbot import config
from exitbot.errors import PriceError
from exitbot.models import PricePair


def build_price_query(pair_id: str) -> str:
    return (
        "{\n"
        f'  pair(id: "{str(pair_id).lower()}") {{\n'
        "    token0Price\n"
        "    token1Price\n"
        "  }\n"
        "}"
    )


def _parse_price(name: str, raw: Any) -> float:
    try:
        return float(str(raw))
    except (TypeError, ValueError):
        raise PriceError(f"unparsable {name}: {raw!r}") from None


def parse_pair_response(data: Dict[str, Any]) -> PricePair:
    if not isinstance(data, dict):
        raise PriceError("subgraph response is not an object")
    errors = data.get("errors")
    if errors:
        first = errors[0] if isinstance(errors, list) else errors
        msg = first.get("message") if isinstance(first, dict) else first
        raise PriceError(f"subgraph error: {msg}")
    pair = (data.get("data") or {}).get("pair")
    if not isinstance(pair, dict):
        raise PriceError("pair not found")
    return PricePair(
        price0=_parse_price("token0Price", pair.get("token0Price")),
        price1=_parse_price("token1Price", pair.get("token1Price")),
    )


class PriceSource:
    """Uniswap V2 subgraph client for a single pair quote."""

    def __init__(self, url: str = config.SUBGRAPH_URL, *, timeout_s: float = config.PRICE_TIMEOUT_S) -> None:
        self.url = url
        self.timeout_s = float(timeout_s)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session and not self._session.closed:
            return self._session
        self._session = aiohttp.ClientSession(timeout=aiohttp.ClientTimeout(total=self.timeout_s))
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _post(self, body: Dict[str, Any]) -> Dict[str, Any]:
        session = await self._get_session()
        async with session.post(self.url, json=body) as resp:
            if resp.status >= 400:
                raise PriceError(f"subgraph http_{resp.status}")
            return await resp.json(content_type=None)

    async def get_price_pair(self, pair_id: str) -> PricePair:
        try:
            data = await self._post({"query": build_price_query(pair_id)})
        except PriceError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise PriceError(f"failed to load price: {type(exc).__name__}: {exc}") from exc
        return parse_pair_response(data)
