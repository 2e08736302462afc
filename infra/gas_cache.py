from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Callable, Iterator, Tuple


@dataclass(frozen=True)
class FeeSnapshot:
    """Gas price tiers in wei plus the average block time in seconds."""

    safe_low: int = 0
    average: int = 0
    fast: int = 0
    fastest: int = 0
    block_time: float = 0.0

    def is_empty(self) -> bool:
        return self == FeeSnapshot()


class RWLock:
    """Readers share the lock; a writer holds it alone.

    Waiting writers block new readers so a steady read load cannot starve a
    refresh.
    """

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


class FeeCache(ABC):
    """Storage for the latest fee snapshot."""

    @abstractmethod
    def get(self) -> Tuple[FeeSnapshot, bool]:
        """Return (snapshot, True) while fresh, (empty snapshot, False) otherwise."""

    @abstractmethod
    def set(self, value: FeeSnapshot, ttl_s: float) -> None:
        ...

    @abstractmethod
    def get_stale(self) -> FeeSnapshot:
        """Return the stored snapshot ignoring expiry."""


class MemoryFeeCache(FeeCache):
    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._clock = clock
        self._lock = RWLock()
        self._value = FeeSnapshot()
        # Never written: expired for any clock reading.
        self._expires_at = float("-inf")

    def expired(self) -> bool:
        with self._lock.read():
            return self._clock() >= self._expires_at

    def get(self) -> Tuple[FeeSnapshot, bool]:
        with self._lock.read():
            if self._clock() >= self._expires_at:
                return FeeSnapshot(), False
            return self._value, True

    def set(self, value: FeeSnapshot, ttl_s: float) -> None:
        with self._lock.write():
            self._value = value
            self._expires_at = self._clock() + float(ttl_s)

    def get_stale(self) -> FeeSnapshot:
        with self._lock.read():
            return self._value
