"""DriverKeeper core components."""

from driverkeeper.core.artifacts import ArtifactPreparer, DefaultFetcher
from driverkeeper.core.clock import ManualClock, SystemClock
from driverkeeper.core.hooks import ShutdownHookRegistry
from driverkeeper.core.retry import DriverControl, RetrySupervisor
from driverkeeper.core.runner import DriverRunner
from driverkeeper.core.sleeper import InterruptibleSleeper

__all__ = [
    "ArtifactPreparer",
    "DefaultFetcher",
    "DriverControl",
    "DriverRunner",
    "InterruptibleSleeper",
    "ManualClock",
    "RetrySupervisor",
    "ShutdownHookRegistry",
    "SystemClock",
]
