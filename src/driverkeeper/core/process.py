"""Child process handles and launchers for DriverKeeper."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import IO, Protocol

import psutil
from loguru import logger

# Extra wait after a forced kill before giving up on the process
KILL_WAIT_SECONDS = 5.0


class ProcessLike(Protocol):
    """What the retry loop and stream redirection need from a child process."""

    @property
    def pid(self) -> int: ...

    @property
    def stdout(self) -> IO[bytes] | None: ...

    @property
    def stderr(self) -> IO[bytes] | None: ...

    @property
    def returncode(self) -> int | None: ...

    def is_running(self) -> bool: ...

    def terminate(self) -> None: ...

    def kill(self) -> None: ...

    def wait(self, timeout: float | None = None) -> int: ...


class CommandLauncher(Protocol):
    """Starts a fixed command line; substitutable so tests can fake processes."""

    @property
    def command(self) -> list[str]: ...

    def start(self) -> ProcessLike: ...


class ProcessHandle:
    """Handle to a running driver process."""

    def __init__(self, process: subprocess.Popen[bytes], command: list[str]):
        self.process = process
        self.command = command

    @property
    def pid(self) -> int:
        """Get the process ID."""
        return self.process.pid

    @property
    def stdout(self) -> IO[bytes] | None:
        return self.process.stdout

    @property
    def stderr(self) -> IO[bytes] | None:
        return self.process.stderr

    @property
    def returncode(self) -> int | None:
        """Get the return code if process has exited."""
        return self.process.returncode

    def is_running(self) -> bool:
        """Check if the process is still running."""
        return self.process.poll() is None

    def terminate(self) -> None:
        """Send SIGTERM to the process."""
        if self.is_running():
            self.process.terminate()

    def kill(self) -> None:
        """Send SIGKILL to the process and any children it spawned."""
        if not self.is_running():
            return

        try:
            children = psutil.Process(self.pid).children(recursive=True)
        except psutil.Error as e:
            logger.debug(f"Could not list children of process {self.pid}: {e}")
            children = []

        self.process.kill()
        for child in children:
            try:
                child.kill()
            except psutil.Error:
                pass

    def wait(self, timeout: float | None = None) -> int:
        """Wait for process to finish."""
        return self.process.wait(timeout=timeout)

    def __repr__(self) -> str:
        return f"ProcessHandle(pid={self.pid}, returncode={self.returncode})"


class SubprocessLauncher:
    """Launches a command line with ``subprocess.Popen``, output piped back."""

    def __init__(
        self,
        argv: list[str],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ):
        self._argv = list(argv)
        self.cwd = cwd
        self.env = env

    @property
    def command(self) -> list[str]:
        return list(self._argv)

    def start(self) -> ProcessHandle:
        process = subprocess.Popen(
            self._argv,
            cwd=self.cwd,
            env=self.env,
            stdin=subprocess.DEVNULL,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            start_new_session=True,  # Create new process group
        )
        return ProcessHandle(process, self.command)


def terminate_process(process: ProcessLike, timeout: float) -> int | None:
    """Terminate a process, escalating to a forced kill after ``timeout`` seconds.

    Returns:
        The exit code, or None if the process could not be confirmed dead.
    """
    if not process.is_running():
        return process.returncode

    process.terminate()
    try:
        return process.wait(timeout=timeout)
    except subprocess.TimeoutExpired:
        logger.warning(f"Process {process.pid} did not stop within {timeout}s, killing")

    process.kill()
    try:
        return process.wait(timeout=KILL_WAIT_SECONDS)
    except subprocess.TimeoutExpired:
        return None
