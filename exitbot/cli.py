from __future__ import annotations

import argparse
import asyncio
import logging
import signal
from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Sequence

from eth_account import Account

from exitbot import config
from exitbot.app import ExecutionLoop
from exitbot.errors import ConfigError, PriceError, RPCError, StartupError
from exitbot.journal import ExitJournal
from exitbot.logs import configure_logging, set_level
from exitbot.notify import TelegramNotifier
from exitbot.operations import OperationExecutor
from exitbot.price import PriceSource
from infra.gas import GasStation
from infra.gas_cache import MemoryFeeCache
from infra.rpc import AsyncRPC

log = logging.getLogger("exitbot.cli")

EXIT_FATAL = 2


@dataclass
class Runtime:
    loop: ExecutionLoop
    rpc: AsyncRPC
    gas: GasStation
    prices: PriceSource

    async def close(self) -> None:
        await self.prices.close()
        await self.gas.close()
        await self.rpc.close()


async def _check_startup(rpc: AsyncRPC, prices: PriceSource, settings: config.Settings) -> None:
    try:
        chain_id = await rpc.chain_id()
    except RPCError as exc:
        raise StartupError(f"cannot reach ethereum rpc {rpc.host}: {exc}") from exc
    if chain_id != config.CHAIN_ID:
        raise StartupError(f"rpc {rpc.host} is on chain {chain_id}, expected {config.CHAIN_ID}")

    try:
        pair = await prices.get_price_pair(settings.pair_id)
    except PriceError as exc:
        raise StartupError(f"cannot reach price source: {exc}") from exc
    log.info("connected: chain %s, %s price0=%s", chain_id, settings.pair_id, pair.price0)


async def build_app(settings: config.Settings) -> Runtime:
    try:
        account = Account.from_key(settings.private_key)
    except (ValueError, TypeError) as exc:
        raise ConfigError(f"PRIVATE_KEY is not a valid secp256k1 key: {type(exc).__name__}") from None

    rpc = AsyncRPC(settings.rpc_url, default_timeout_s=settings.rpc_timeout_s)
    prices = PriceSource()
    gas = GasStation(MemoryFeeCache(), ttl_s=settings.gas_cache_ttl_s, timeout_s=settings.gas_timeout_s)

    try:
        await _check_startup(rpc, prices, settings)
    except BaseException:
        await prices.close()
        await gas.close()
        await rpc.close()
        raise

    await gas.warm_up()

    executor = OperationExecutor(rpc, gas, account, pair=settings.pair_id)
    notifier = TelegramNotifier(settings.tg_bot_token, settings.tg_channel_id)
    journal = ExitJournal(Path(settings.state_dir) / "pending_exit.json")
    log.info("operating wallet %s", executor.address)

    loop = ExecutionLoop(
        prices,
        executor,
        notifier,
        threshold=settings.threshold,
        pair_id=settings.pair_id,
        retry_delay_s=settings.retry_delay_s,
        cooldown_s=settings.cooldown_s,
        journal=journal,
    )
    return Runtime(loop=loop, rpc=rpc, gas=gas, prices=prices)


def _install_signal_handlers(loop: ExecutionLoop) -> None:
    aio_loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            aio_loop.add_signal_handler(sig, loop.stop)
        except (NotImplementedError, RuntimeError):
            # Not supported on this platform; Ctrl+C falls back to KeyboardInterrupt.
            continue


async def run(settings: config.Settings, *, once: bool = False) -> int:
    runtime = await build_app(settings)
    try:
        _install_signal_handlers(runtime.loop)
        if once:
            await runtime.loop.report_pending_exit()
            result = await runtime.loop.run_once()
            log.info("single iteration: state=%s signal=%s", result.state.value, result.signal.value if result.signal else None)
        else:
            await runtime.loop.run()
    finally:
        await runtime.close()
    return 0


def main(argv: Optional[Sequence[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Exit a Uniswap V2 ETH/USDC position when ETH crosses a price threshold")
    parser.add_argument("--log-dir", type=str, default="logs", help="directory for exitbot.log ('' disables the file)")
    parser.add_argument("--once", action="store_true", help="run a single poll/execute iteration and exit")
    args = parser.parse_args(argv)

    logger = configure_logging(Path(args.log_dir) if args.log_dir else None)

    try:
        settings = config.load_settings()
    except ConfigError as exc:
        logger.critical("invalid configuration: %s", exc)
        return EXIT_FATAL
    set_level(settings.log_level)

    try:
        return asyncio.run(run(settings, once=args.once))
    except (ConfigError, StartupError) as exc:
        logger.critical("startup failed: %s", exc)
        return EXIT_FATAL
    except KeyboardInterrupt:
        logger.info("interrupted")
        return 130


if __name__ == "__main__":
    raise SystemExit(main())
