"""Price-triggered exit loop.

Polls the pair price and, once price0 reaches the threshold, removes the
liquidity position and swaps the released ETH to USDC. States:

    POLLING --price error--> POLLING (after retry delay)
    POLLING --wait---------> COOLING_DOWN
    POLLING --act----------> EXECUTING --> COOLING_DOWN
    COOLING_DOWN ----------> POLLING

Withdraw and exchange are strictly ordered with no rollback; a failed
withdraw skips the exchange. Failures are sent to the operator and the loop
keeps going. stop() is honoured at state boundaries and cuts a running pause
short, but is never checked between the two operations.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Optional, Protocol

from exitbot import config
from exitbot.journal import ExitJournal
from exitbot.models import IterationResult, LoopState, PricePair, TradeSignal, trade_signal

log = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


class PriceSourceLike(Protocol):
    async def get_price_pair(self, pair_id: str) -> PricePair:
        ...


class ExecutorLike(Protocol):
    async def withdraw(self) -> str:
        ...

    async def exchange(self) -> str:
        ...


class NotifierLike(Protocol):
    async def notify(self, message: str) -> None:
        ...


class ExecutionLoop:
    def __init__(
        self,
        price_source: PriceSourceLike,
        executor: ExecutorLike,
        notifier: NotifierLike,
        *,
        threshold: float,
        pair_id: str = config.PAIR_ID,
        retry_delay_s: float = config.POLL_RETRY_S,
        cooldown_s: float = config.COOLDOWN_S,
        sleep: Sleep = asyncio.sleep,
        journal: Optional[ExitJournal] = None,
    ) -> None:
        self.price_source = price_source
        self.executor = executor
        self.notifier = notifier
        self.threshold = float(threshold)
        self.pair_id = pair_id
        self.retry_delay_s = float(retry_delay_s)
        self.cooldown_s = float(cooldown_s)
        self.journal = journal
        self._sleep = sleep
        self._stop = asyncio.Event()
        self.state = LoopState.POLLING
        self.iterations = 0

    def stop(self) -> None:
        self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    async def _pause(self, delay_s: float) -> None:
        if self.stopping or delay_s <= 0:
            return
        sleeper = asyncio.ensure_future(self._sleep(delay_s))
        stopper = asyncio.ensure_future(self._stop.wait())
        try:
            await asyncio.wait({sleeper, stopper}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            for task in (sleeper, stopper):
                if not task.done():
                    task.cancel()
        if sleeper.done() and not sleeper.cancelled():
            sleeper.result()

    async def _notify(self, message: str) -> None:
        try:
            await self.notifier.notify(message)
        except Exception as exc:
            log.warning("notification not delivered: %s", exc)

    async def _cool_down(self, result: IterationResult) -> IterationResult:
        self.state = LoopState.COOLING_DOWN
        result.state = LoopState.COOLING_DOWN
        await self._pause(self.cooldown_s)
        return result

    def _journal_withdraw(self, tx_hash: str) -> None:
        if self.journal is None:
            return
        try:
            self.journal.record_withdraw(tx_hash)
        except OSError as exc:
            log.error("could not journal withdraw %s: %s", tx_hash, exc)

    def _journal_clear(self) -> None:
        if self.journal is None:
            return
        try:
            self.journal.clear()
        except OSError as exc:
            log.error("could not clear exit journal: %s", exc)

    async def _execute(self, result: IterationResult) -> IterationResult:
        self.state = LoopState.EXECUTING
        result.state = LoopState.EXECUTING

        try:
            result.withdraw_tx = await self.executor.withdraw()
        except Exception as exc:
            log.error("remove liquidity failed: %s", exc)
            result.failed_step, result.error = "withdraw", str(exc)
            await self._notify(f"remove liquidity: {exc}")
            return result
        log.info("liquidity removed, tx %s", result.withdraw_tx)
        self._journal_withdraw(result.withdraw_tx)

        try:
            result.exchange_tx = await self.executor.exchange()
        except Exception as exc:
            log.error("swap failed after withdraw %s: %s", result.withdraw_tx, exc)
            result.failed_step, result.error = "exchange", str(exc)
            await self._notify(f"swap: {exc}")
            return result
        self._journal_clear()

        log.info("exit complete: withdraw tx %s, swap tx %s", result.withdraw_tx, result.exchange_tx)
        return result

    async def run_once(self) -> IterationResult:
        self.iterations += 1
        self.state = LoopState.POLLING
        result = IterationResult(state=LoopState.POLLING)

        try:
            pair = await self.price_source.get_price_pair(self.pair_id)
        except Exception as exc:
            log.warning("price fetch failed: %s", exc)
            result.failed_step, result.error = "price", str(exc)
            await self._pause(self.retry_delay_s)
            return result

        result.pair = pair
        result.signal = trade_signal(pair, self.threshold)
        log.debug("price0=%s price1=%s threshold=%s signal=%s", pair.price0, pair.price1, self.threshold, result.signal.value)

        if result.signal is TradeSignal.ACT and not self.stopping:
            log.info("price0 %s >= threshold %s, exiting position", pair.price0, self.threshold)
            await self._execute(result)

        return await self._cool_down(result)

    async def report_pending_exit(self) -> Optional[dict]:
        if self.journal is None:
            return None
        pending = self.journal.pending()
        if not pending:
            return None
        tx = pending.get("withdraw_tx")
        log.error("previous run withdrew liquidity (tx %s) without a recorded swap", tx)
        await self._notify(f"unfinished exit: liquidity withdrawn in tx {tx} but no swap was recorded")
        return pending

    async def run(self) -> None:
        await self.report_pending_exit()
        log.info("watching pair %s, threshold %s", self.pair_id, self.threshold)
        while not self.stopping:
            await self.run_once()
        self.state = LoopState.STOPPED
        log.info("loop stopped after %s iterations", self.iterations)
