from __future__ import annotations

import asyncio
import logging
from typing import Any, Dict, Optional, Tuple

import aiohttp

from exitbot import config
from exitbot.errors import FeeError
from infra.gas_cache import FeeCache, FeeSnapshot, MemoryFeeCache

log = logging.getLogger(__name__)

GWEI = 1_000_000_000


def _trunc_div(value: int, divisor: int) -> int:
    q = abs(value) // divisor
    return -q if value < 0 else q


def gwei_to_wei(value: int) -> int:
    return int(value) * GWEI


def normalize_fee(raw: Any) -> int:
    """Convert an ethgasstation tier (deci-gwei) to wei.

    The raw value is truncated to whole gwei first, so 47 -> 4 gwei, not 4.7.
    """
    return gwei_to_wei(_trunc_div(int(raw), 10))


def snapshot_from_raw(raw: Dict[str, Any]) -> FeeSnapshot:
    if not isinstance(raw, dict):
        raise FeeError(f"unexpected gas station payload: {type(raw).__name__}")
    try:
        return FeeSnapshot(
            safe_low=normalize_fee(raw["safeLow"]),
            average=normalize_fee(raw["average"]),
            fast=normalize_fee(raw["fast"]),
            fastest=normalize_fee(raw["fastest"]),
            block_time=float(raw.get("block_time") or 0.0),
        )
    except (KeyError, TypeError, ValueError) as exc:
        raise FeeError(f"malformed gas station payload: {exc}") from exc


class GasStation:
    """Gas price tiers from ethgasstation, served through a FeeCache.

    get_fees() never raises for fetch problems: on failure it hands back
    whatever the cache still holds together with the error.
    """

    def __init__(
        self,
        cache: Optional[FeeCache] = None,
        *,
        url: str = config.GAS_STATION_URL,
        ttl_s: float = config.GAS_CACHE_TTL_S,
        timeout_s: float = config.GAS_TIMEOUT_S,
    ) -> None:
        self.cache = cache if cache is not None else MemoryFeeCache()
        self.url = url
        self.ttl_s = float(ttl_s)
        self.timeout_s = float(timeout_s)
        self._session: Optional[aiohttp.ClientSession] = None

    async def _get_session(self) -> aiohttp.ClientSession:
        if self._session and not self._session.closed:
            return self._session
        self._session = aiohttp.ClientSession(
            connector=aiohttp.TCPConnector(limit=20, ttl_dns_cache=300),
            timeout=aiohttp.ClientTimeout(total=self.timeout_s),
        )
        return self._session

    async def close(self) -> None:
        if self._session and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _request(self) -> Dict[str, Any]:
        session = await self._get_session()
        async with session.get(self.url) as resp:
            if resp.status != 200:
                raise FeeError(f"gas station http_{resp.status}")
            return await resp.json(content_type=None)

    async def fetch(self) -> FeeSnapshot:
        try:
            raw = await self._request()
        except FeeError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError, ValueError) as exc:
            raise FeeError(f"gas station request failed: {type(exc).__name__}: {exc}") from exc
        return snapshot_from_raw(raw)

    async def get_fees(self) -> Tuple[FeeSnapshot, Optional[Exception]]:
        cached, ok = self.cache.get()
        if ok:
            return cached, None

        try:
            fresh = await self.fetch()
        except FeeError as exc:
            stale = self.cache.get_stale()
            log.warning("gas station fetch failed, serving cached fees (empty=%s): %s", stale.is_empty(), exc)
            return stale, exc

        self.cache.set(fresh, self.ttl_s)
        return fresh, None

    async def warm_up(self) -> None:
        _, err = await self.get_fees()
        if err is not None:
            log.warning("gas cache warm-up failed: %s", err)
