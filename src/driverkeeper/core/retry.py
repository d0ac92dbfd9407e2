"""Relaunch loop with exponential backoff for supervised drivers."""

from __future__ import annotations

import threading
from typing import Callable

from loguru import logger

from driverkeeper.core.clock import Clock, SystemClock
from driverkeeper.core.process import CommandLauncher, ProcessLike
from driverkeeper.core.redirect import format_command
from driverkeeper.core.sleeper import InterruptibleSleeper, Sleeper

# A run lasting longer than this resets the backoff to one second
SUCCESSFUL_RUN_DURATION = 5  # seconds
INITIAL_WAIT_SECONDS = 1


class DriverControl:
    """Kill flag and current process, shared between the retry loop and kill().

    ``lock`` guards ``process``. Launching a process and recording it happen
    under the lock together with the kill check, so a concurrent kill either
    prevents the launch or finds the process to terminate.
    """

    def __init__(self) -> None:
        self.lock = threading.Lock()
        self._killed = threading.Event()
        self.process: ProcessLike | None = None

    @property
    def killed(self) -> bool:
        return self._killed.is_set()

    def mark_killed(self) -> None:
        """Set the kill flag. It never goes back to False."""
        self._killed.set()


class RetrySupervisor:
    """Runs a command until it succeeds, is killed, or supervision is off."""

    def __init__(
        self,
        control: DriverControl,
        clock: Clock | None = None,
        sleeper: Sleeper | None = None,
        on_relaunch: Callable[[int, int], None] | None = None,
    ):
        """Initialize the retry supervisor.

        Args:
            control: Shared kill flag and process slot.
            clock: Time source used to measure each attempt.
            sleeper: Waits between attempts; defaults to one that stops
                early once ``control`` is killed.
            on_relaunch: Callback with (exit_code, wait_seconds) before each
                backoff sleep.
        """
        self.control = control
        self.clock = clock or SystemClock()
        self.sleeper = sleeper or InterruptibleSleeper(lambda: control.killed)
        self._on_relaunch = on_relaunch
        self.attempts = 0

    def run(
        self,
        command: CommandLauncher,
        initialize: Callable[[ProcessLike], object],
        supervise: bool,
    ) -> int:
        """Launch ``command`` (again and again if ``supervise``) and return the last exit code.

        Returns -1 if the command was never launched because a kill came first.
        """
        exit_code = -1
        wait_seconds = INITIAL_WAIT_SECONDS
        keep_trying = not self.control.killed

        while keep_trying:
            logger.info(f"Launch Command: {format_command(command.command)}")

            with self.control.lock:
                if self.control.killed:
                    return exit_code
                process = command.start()
                self.control.process = process
                try:
                    initialize(process)
                except Exception:
                    self.control.process = None
                    process.kill()
                    raise

            self.attempts += 1
            process_start = self.clock.get_time_millis()
            exit_code = process.wait()

            with self.control.lock:
                if self.control.process is process:
                    self.control.process = None

            keep_trying = supervise and exit_code != 0 and not self.control.killed
            if keep_trying:
                if self.clock.get_time_millis() - process_start > SUCCESSFUL_RUN_DURATION * 1000:
                    wait_seconds = INITIAL_WAIT_SECONDS
                logger.info(f"Command exited with status {exit_code}, re-launching after {wait_seconds} s.")
                if self._on_relaunch:
                    self._on_relaunch(exit_code, wait_seconds)
                self.sleeper.sleep(wait_seconds)
                wait_seconds *= 2

        return exit_code
