# exitbot/config.py
# NOTE:
# Do not hardcode private keys in the repo. PRIVATE_KEY is read from the
# environment at startup and never written anywhere.

from __future__ import annotations

import math
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional

from exitbot.errors import ConfigError

CHAIN_ID = 1

# Uniswap V2 ETH/USDC pair (also the LP token being withdrawn).
PAIR_ID = "0xb4e16d0168e52d35cacd2c6185b44281ec28c9dc"

# Uniswap V2 Router02 — mainnet
UNISWAP_V2_ROUTER = "0x7a250d5630B4cF539739dF2C5dAcb4c659F2488D"

TOKENS = {
    "WETH": "0xC02aaA39b223FE8D0A0e5C4F27eAD9083C756Cc2",
    "USDC": "0xA0b86991c6218b36c1d19d4a2e9eb0ce3606eb48",
}

SUBGRAPH_URL = "https://api.thegraph.com/subgraphs/name/uniswap/uniswap-v2"
GAS_STATION_URL = "https://ethgasstation.info/api/ethgasAPI.json"
TELEGRAM_API_URL = "https://api.telegram.org"

# Loop pacing (seconds).
POLL_RETRY_S = 0.1
COOLDOWN_S = 0.1

# Gas station cache.
GAS_CACHE_TTL_S = 10.0
GAS_TIMEOUT_S = 25.0

# RPC / HTTP timeouts (seconds).
RPC_TIMEOUT_S = 15.0
PRICE_TIMEOUT_S = 10.0
NOTIFY_TIMEOUT_S = 10.0

# Transactions.
GAS_LIMIT = 200_000
DEADLINE_S = 3600

STATE_DIR = "state"
LOG_LEVEL = "INFO"


@dataclass(frozen=True)
class Settings:
    rpc_url: str
    private_key: str = field(repr=False)
    tg_bot_token: str = field(repr=False)
    tg_channel_id: int
    threshold: float
    pair_id: str = PAIR_ID
    retry_delay_s: float = POLL_RETRY_S
    cooldown_s: float = COOLDOWN_S
    gas_cache_ttl_s: float = GAS_CACHE_TTL_S
    gas_timeout_s: float = GAS_TIMEOUT_S
    rpc_timeout_s: float = RPC_TIMEOUT_S
    state_dir: Path = Path(STATE_DIR)
    log_level: str = LOG_LEVEL


def _required(env: Mapping[str, str], key: str) -> str:
    val = str(env.get(key) or "").strip()
    if not val:
        raise ConfigError(f"missing required setting {key}")
    return val


def _parse_int(key: str, raw: str) -> int:
    try:
        return int(raw)
    except ValueError:
        raise ConfigError(f"{key} must be an integer, got {raw!r}") from None


def _parse_float(key: str, raw: str, *, minimum: Optional[float] = None, strict: bool = False) -> float:
    try:
        val = float(raw)
    except ValueError:
        raise ConfigError(f"{key} must be a number, got {raw!r}") from None
    if not math.isfinite(val):
        raise ConfigError(f"{key} must be finite, got {raw!r}")
    if minimum is not None:
        if strict and val <= minimum:
            raise ConfigError(f"{key} must be > {minimum}, got {raw!r}")
        if not strict and val < minimum:
            raise ConfigError(f"{key} must be >= {minimum}, got {raw!r}")
    return val


def _optional_float(env: Mapping[str, str], key: str, default: float, *, strict: bool = False) -> float:
    raw = str(env.get(key) or "").strip()
    if not raw:
        return float(default)
    return _parse_float(key, raw, minimum=0.0, strict=strict)


def load_settings(env: Optional[Mapping[str, str]] = None) -> Settings:
    """Read settings once from the environment.

    Malformed numbers are fatal; nothing falls back to zero.
    """
    if env is None:
        env = os.environ

    log_level = str(env.get("LOG_LEVEL") or LOG_LEVEL).strip().upper()
    if log_level not in ("DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"):
        raise ConfigError(f"LOG_LEVEL must be a logging level name, got {log_level!r}")

    return Settings(
        rpc_url=_required(env, "ETH_RPC_URL"),
        private_key=_required(env, "PRIVATE_KEY"),
        tg_bot_token=_required(env, "TG_BOT_TOKEN"),
        tg_channel_id=_parse_int("TG_CHANNEL_ID", _required(env, "TG_CHANNEL_ID")),
        threshold=_parse_float("ETH_THRESHOLD", _required(env, "ETH_THRESHOLD")),
        pair_id=str(env.get("PAIR_ID") or PAIR_ID).strip().lower(),
        retry_delay_s=_optional_float(env, "POLL_RETRY_S", POLL_RETRY_S),
        cooldown_s=_optional_float(env, "COOLDOWN_S", COOLDOWN_S),
        gas_cache_ttl_s=_optional_float(env, "GAS_CACHE_TTL_S", GAS_CACHE_TTL_S, strict=True),
        gas_timeout_s=_optional_float(env, "GAS_TIMEOUT_S", GAS_TIMEOUT_S, strict=True),
        rpc_timeout_s=_optional_float(env, "RPC_TIMEOUT_S", RPC_TIMEOUT_S, strict=True),
        state_dir=Path(str(env.get("STATE_DIR") or STATE_DIR).strip()),
        log_level=log_level,
    )
