"""Error types raised while preparing and supervising a driver."""

from __future__ import annotations


class DriverKeeperError(Exception):
    """Base class for DriverKeeper errors."""

    pass


class WorkDirError(DriverKeeperError, OSError):
    """The driver working directory could not be created."""

    pass


class ArtifactFetchError(DriverKeeperError, OSError):
    """Transferring the driver artifact failed."""

    pass


class ArtifactMissingError(DriverKeeperError, OSError):
    """The fetch reported success but the expected artifact is not on disk."""

    def __init__(self, file_name: str, directory: str):
        self.file_name = file_name
        self.directory = directory
        super().__init__(
            f"Can not find expected artifact {file_name} which should have been loaded in {directory}"
        )


class CommandBuildError(DriverKeeperError):
    """The driver command description cannot be turned into a command line."""

    pass
