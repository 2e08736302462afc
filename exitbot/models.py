from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional


@dataclass(frozen=True)
class PricePair:
    price0: float
    price1: float


class TradeSignal(str, Enum):
    ACT = "act"
    WAIT = "wait"


class LoopState(str, Enum):
    POLLING = "polling"
    EXECUTING = "executing"
    COOLING_DOWN = "cooling_down"
    STOPPED = "stopped"


def trade_signal(pair: PricePair, threshold: float) -> TradeSignal:
    # Sell-high trigger: at or above the threshold means act.
    if pair.price0 >= threshold:
        return TradeSignal.ACT
    return TradeSignal.WAIT


@dataclass
class IterationResult:
    state: LoopState
    pair: Optional[PricePair] = None
    signal: Optional[TradeSignal] = None
    withdraw_tx: Optional[str] = None
    exchange_tx: Optional[str] = None
    failed_step: Optional[str] = None
    error: Optional[str] = None
