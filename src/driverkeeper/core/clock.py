"""Time sources used by the retry loop."""

from __future__ import annotations

import threading
import time
from typing import Protocol


class Clock(Protocol):
    """Source of the current time in milliseconds."""

    def get_time_millis(self) -> int: ...


class SystemClock:
    """Wall-clock time."""

    def get_time_millis(self) -> int:
        return int(time.time() * 1000)


class ManualClock:
    """Clock that only moves when told to.

    Threads blocked in ``wait_till_time`` wake up once the clock has been
    advanced past their target.
    """

    def __init__(self, time_millis: int = 0):
        self._time = time_millis
        self._cond = threading.Condition()

    def get_time_millis(self) -> int:
        with self._cond:
            return self._time

    def set_time(self, time_millis: int) -> None:
        with self._cond:
            self._time = time_millis
            self._cond.notify_all()

    def advance(self, millis: int) -> None:
        with self._cond:
            self._time += millis
            self._cond.notify_all()

    def wait_till_time(self, target_millis: int) -> int:
        with self._cond:
            while self._time < target_millis:
                self._cond.wait(timeout=0.1)
            return self._time
