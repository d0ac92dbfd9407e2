"""Sleeping between relaunch attempts."""

from __future__ import annotations

import time
from typing import Callable, Protocol


class Sleeper(Protocol):
    """Blocks the calling thread for a number of seconds."""

    def sleep(self, seconds: int) -> None: ...


class InterruptibleSleeper:
    """Sleeps in one-second slices, stopping early once cancelled.

    Cancellation is observed after each slice, so a kill arriving mid-backoff
    is honoured within roughly one ``tick`` rather than after the full wait.
    """

    def __init__(
        self,
        is_cancelled: Callable[[], bool],
        tick: float = 1.0,
        sleep_fn: Callable[[float], None] = time.sleep,
    ):
        self._is_cancelled = is_cancelled
        self._tick = tick
        self._sleep_fn = sleep_fn

    def sleep(self, seconds: int) -> None:
        for _ in range(seconds):
            self._sleep_fn(self._tick)
            if self._is_cancelled():
                return
