"""Turning a declarative driver command into an executable command line."""

from __future__ import annotations

import os
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from driverkeeper.errors import CommandBuildError
from driverkeeper.models import (
    AUTH_SECRET_ENV,
    NOTIFY_TOKEN_ENV,
    USER_JAR_PLACEHOLDER,
    WORKER_URL_PLACEHOLDER,
    DriverCommand,
)

# Never inherited from the worker environment; a driver gets these only if its
# command sets them explicitly.
SENSITIVE_ENV_VARS = frozenset({AUTH_SECRET_ENV, NOTIFY_TOKEN_ENV})

Substitution = Callable[[str], str]


@dataclass
class LaunchCommand:
    """A fully resolved command line plus its environment."""

    argv: list[str]
    env: dict[str, str] = field(default_factory=dict)


def library_path_env_name() -> str:
    """Name of the environment variable used to find shared libraries."""
    if sys.platform == "win32":
        return "PATH"
    if sys.platform == "darwin":
        return "DYLD_LIBRARY_PATH"
    return "LD_LIBRARY_PATH"


def make_substitution(worker_url: str, local_artifact: str) -> Substitution:
    """Map the recognised placeholders to their launch-time values.

    Only whole arguments are replaced; anything else passes through unchanged.
    """
    values = {
        WORKER_URL_PLACEHOLDER: worker_url,
        USER_JAR_PLACEHOLDER: local_artifact,
    }

    def substitute(argument: str) -> str:
        return values.get(argument, argument)

    return substitute


def build_command(
    command: DriverCommand,
    memory_mb: int,
    runtime_home: Path,
    substitute: Substitution,
) -> LaunchCommand:
    """Build the argv and environment used to launch a driver."""
    if not command.program.strip():
        raise CommandBuildError("Driver command has no program")

    argv = [command.program, *command.extra_options, *command.arguments]
    argv = [substitute(arg) for arg in argv]

    env = {k: v for k, v in os.environ.items() if k not in SENSITIVE_ENV_VARS}
    env.update({k: substitute(v) for k, v in command.environment.items()})
    env["DRIVER_MEMORY"] = f"{memory_mb}m"
    env["DRIVERKEEPER_HOME"] = str(runtime_home)

    if command.library_path:
        var = library_path_env_name()
        entries = [substitute(p) for p in command.library_path]
        existing = env.get(var)
        if existing:
            entries.append(existing)
        env[var] = os.pathsep.join(entries)

    return LaunchCommand(argv=argv, env=env)
