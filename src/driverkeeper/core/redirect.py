"""Copying a driver's output streams into its working directory."""

from __future__ import annotations

import threading
from pathlib import Path
from typing import BinaryIO

from loguru import logger

from driverkeeper.core.process import ProcessLike

STDOUT_FILE = "stdout"
STDERR_FILE = "stderr"
DEFAULT_BUFFER_SIZE = 8192


def format_command(command: list[str]) -> str:
    """Quote each argument individually: ``"java" "-cp" "app.jar"``."""
    return " ".join(f'"{arg}"' for arg in command)


def launch_header(command: list[str]) -> str:
    """Header written to stderr before each launch attempt."""
    return f"Launch Command: {format_command(command)}\n{'=' * 40}\n\n"


def redirect_stream(
    stream: BinaryIO,
    path: Path,
    buffer_size: int = DEFAULT_BUFFER_SIZE,
) -> threading.Thread:
    """Copy ``stream`` into ``path`` (append mode) on a daemon thread.

    The thread ends when the stream reaches EOF, i.e. when the process exits.
    """

    def copy() -> None:
        try:
            with open(path, "ab") as out:
                while True:
                    chunk = stream.read1(buffer_size)
                    if not chunk:
                        break
                    out.write(chunk)
                    out.flush()
        except (OSError, ValueError) as e:
            logger.debug(f"Redirect to {path} stopped: {e}")
        finally:
            try:
                stream.close()
            except OSError:
                pass

    thread = threading.Thread(
        target=copy,
        name=f"redirect output to {path}",
        daemon=True,
    )
    thread.start()
    return thread


def attach_output(
    process: ProcessLike,
    base_dir: Path,
    command: list[str],
    buffer_size: int = DEFAULT_BUFFER_SIZE,
) -> list[threading.Thread]:
    """Redirect a freshly started process into ``base_dir/stdout`` and ``base_dir/stderr``.

    The stderr file gets a launch header first so that successive attempts
    can be told apart.
    """
    threads = []

    if process.stdout is not None:
        threads.append(redirect_stream(process.stdout, base_dir / STDOUT_FILE, buffer_size))

    stderr_path = base_dir / STDERR_FILE
    with open(stderr_path, "a", encoding="utf-8") as f:
        f.write(launch_header(command))

    if process.stderr is not None:
        threads.append(redirect_stream(process.stderr, stderr_path, buffer_size))

    return threads
