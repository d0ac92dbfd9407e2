"""Pydantic models for DriverKeeper configuration and driver state."""

from __future__ import annotations

import re
from datetime import datetime
from enum import Enum
from pathlib import Path

from pydantic import BaseModel, ConfigDict, Field, field_validator


# Placeholders substituted into driver arguments at launch time
WORKER_URL_PLACEHOLDER = "{{WORKER_URL}}"
USER_JAR_PLACEHOLDER = "{{USER_JAR}}"

# Secrets read from the keeper environment, never passed on to drivers
AUTH_SECRET_ENV = "DRIVERKEEPER_AUTH_SECRET"
NOTIFY_TOKEN_ENV = "DRIVERKEEPER_NOTIFY_TOKEN"

_DURATION_UNITS: dict[str, float] = {
    "ms": 0.001,
    "s": 1.0,
    "m": 60.0,
    "min": 60.0,
    "h": 3600.0,
}


def parse_duration(value: str | int | float) -> float:
    """Parse a duration to seconds.

    Examples:
        "10s" -> 10.0
        "500ms" -> 0.5
        "2m" -> 120.0
        30 -> 30.0

    Raises:
        ValueError: If the string is not a number followed by a known unit.
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid duration: {value!r}")
    if isinstance(value, (int, float)):
        if value < 0:
            raise ValueError(f"Duration must not be negative: {value}")
        return float(value)

    text = value.strip().lower()
    match = re.match(r"^(\d+(?:\.\d+)?)\s*(ms|s|min|m|h)?$", text)
    if not match:
        raise ValueError(f"Invalid duration format: {value}")

    number = float(match.group(1))
    unit = match.group(2) or "s"
    return number * _DURATION_UNITS[unit]


class DriverState(str, Enum):
    """State of a driver as reported to the cluster manager."""

    SUBMITTED = "SUBMITTED"
    RUNNING = "RUNNING"
    FINISHED = "FINISHED"
    RELAUNCHING = "RELAUNCHING"
    UNKNOWN = "UNKNOWN"
    KILLED = "KILLED"
    FAILED = "FAILED"
    ERROR = "ERROR"

    @property
    def is_terminal(self) -> bool:
        """Whether this state ends the driver's lifetime on the worker."""
        return self in (
            DriverState.FINISHED,
            DriverState.KILLED,
            DriverState.FAILED,
            DriverState.ERROR,
        )


class DriverCommand(BaseModel):
    """Declarative description of the driver's command line."""

    model_config = ConfigDict(frozen=True)

    program: str
    arguments: list[str] = Field(default_factory=list)
    environment: dict[str, str] = Field(default_factory=dict)
    library_path: list[str] = Field(default_factory=list)
    extra_options: list[str] = Field(default_factory=list)


class DriverDescription(BaseModel):
    """Everything needed to launch a driver, as submitted by the cluster manager."""

    model_config = ConfigDict(frozen=True)

    artifact_url: str
    memory_mb: int = Field(default=1024, gt=0)
    cores: int = Field(default=1, ge=1)
    supervise: bool = False
    command: DriverCommand

    @field_validator("artifact_url")
    @classmethod
    def validate_artifact_url(cls, v: str) -> str:
        if not v.strip():
            raise ValueError("artifact_url must not be empty")
        return v


class WorkerSettings(BaseModel):
    """Worker-node settings shared by every driver it runs."""

    work_dir: Path = Field(default_factory=lambda: Path.home() / ".driverkeeper" / "work")
    runtime_home: Path = Field(default_factory=lambda: Path.home() / ".driverkeeper")
    worker_url: str = "driverkeeper://localhost:7078"
    driver_terminate_timeout: float = 10.0  # seconds
    stream_buffer_size: int = Field(default=8192, gt=0)
    # Passed to the artifact fetcher, e.g. {"token": "..."} for HTTP downloads
    fetch_credentials: dict[str, str] | None = None

    @field_validator("driver_terminate_timeout", mode="before")
    @classmethod
    def validate_terminate_timeout(cls, v: str | int | float) -> float:
        return parse_duration(v)


class LoggingSettings(BaseModel):
    """Logging configuration for the keeper process itself."""

    level: str = "INFO"
    file: Path | None = None
    rotation: str = "10 MB"


class NotifySettings(BaseModel):
    """Where terminal driver notifications are delivered."""

    url: str | None = None
    token: str | None = None
    timeout: float = 10.0  # seconds


class KeeperConfig(BaseModel):
    """Main DriverKeeper configuration."""

    worker: WorkerSettings = Field(default_factory=WorkerSettings)
    logging: LoggingSettings = Field(default_factory=LoggingSettings)
    notify: NotifySettings = Field(default_factory=NotifySettings)


class DriverStateChanged(BaseModel):
    """Terminal notification sent once per driver."""

    driver_id: str
    state: DriverState
    exception: str | None = None
    timestamp: datetime = Field(default_factory=datetime.now)
