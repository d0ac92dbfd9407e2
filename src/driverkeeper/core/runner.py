"""Runs and supervises one driver on this worker."""

from __future__ import annotations

import threading
from functools import partial
from pathlib import Path
from typing import Callable

import psutil
from loguru import logger

from driverkeeper.core.artifacts import ArtifactPreparer, Fetcher
from driverkeeper.core.clock import Clock
from driverkeeper.core.command import LaunchCommand, Substitution, build_command, make_substitution
from driverkeeper.core.hooks import ShutdownHook, ShutdownHookRegistry, get_shutdown_registry
from driverkeeper.core.process import CommandLauncher, ProcessLike, SubprocessLauncher, terminate_process
from driverkeeper.core.redirect import DEFAULT_BUFFER_SIZE, attach_output
from driverkeeper.core.retry import DriverControl, RetrySupervisor
from driverkeeper.core.sleeper import Sleeper
from driverkeeper.models import DriverCommand, DriverDescription, DriverState, DriverStateChanged
from driverkeeper.notify import NotificationSink

CommandBuilder = Callable[[DriverCommand, int, Path, Substitution], LaunchCommand]
LauncherFactory = Callable[[LaunchCommand, Path], CommandLauncher]


def subprocess_launcher(launch: LaunchCommand, cwd: Path) -> CommandLauncher:
    return SubprocessLauncher(launch.argv, cwd=cwd, env=launch.env)


class DriverRunner:
    """Manages the execution of one driver, restarting it on failure when supervised.

    ``start`` returns at once; preparation, the launch/relaunch loop and the
    final notification all happen on a dedicated thread. ``kill`` may be
    called from any thread at any time, including before the driver was ever
    launched, in which case it is never launched.
    """

    def __init__(
        self,
        driver_id: str,
        work_dir: Path,
        runtime_home: Path,
        description: DriverDescription,
        worker_url: str,
        sink: NotificationSink,
        terminate_timeout: float = 10.0,
        fetcher: Fetcher | None = None,
        fetch_credentials: dict[str, str] | None = None,
        command_builder: CommandBuilder = build_command,
        launcher_factory: LauncherFactory = subprocess_launcher,
        shutdown_hooks: ShutdownHookRegistry | None = None,
        clock: Clock | None = None,
        sleeper: Sleeper | None = None,
        stream_buffer_size: int = DEFAULT_BUFFER_SIZE,
    ):
        self.driver_id = driver_id
        self.work_dir = Path(work_dir)
        self.runtime_home = Path(runtime_home)
        self.description = description
        self.worker_url = worker_url
        self.terminate_timeout = terminate_timeout
        self.stream_buffer_size = stream_buffer_size

        self._sink = sink
        self._command_builder = command_builder
        self._launcher_factory = launcher_factory
        self._hooks = shutdown_hooks if shutdown_hooks is not None else get_shutdown_registry()
        self._preparer = ArtifactPreparer(
            self.work_dir, description.artifact_url, fetcher, credentials=fetch_credentials
        )
        self._control = DriverControl()
        self._retry = RetrySupervisor(self._control, clock=clock, sleeper=sleeper)

        # Populated once finished
        self._final_state: DriverState | None = None
        self._final_exception: Exception | None = None
        self._done = threading.Event()
        self._thread: threading.Thread | None = None

    @property
    def killed(self) -> bool:
        return self._control.killed

    @property
    def final_state(self) -> DriverState | None:
        return self._final_state

    @property
    def final_exception(self) -> Exception | None:
        return self._final_exception

    @property
    def process(self) -> ProcessLike | None:
        """The currently running driver process, if any."""
        with self._control.lock:
            return self._control.process

    @property
    def attempts(self) -> int:
        """Number of processes launched so far."""
        return self._retry.attempts

    @property
    def driver_dir(self) -> Path:
        return self._preparer.driver_dir(self.driver_id)

    def start(self) -> threading.Thread:
        """Start a thread that prepares, runs and supervises the driver."""
        if self._thread is not None:
            raise RuntimeError(f"Driver '{self.driver_id}' was already started")

        self._thread = threading.Thread(
            target=self._run,
            name=f"DriverRunner for {self.driver_id}",
            daemon=True,
        )
        self._thread.start()
        return self._thread

    def wait(self, timeout: float | None = None) -> bool:
        """Block until the terminal notification has been sent."""
        return self._done.wait(timeout)

    def kill(self) -> None:
        """Terminate this driver, or prevent it from ever starting if not yet started."""
        logger.info(f"Killing driver process for '{self.driver_id}'")
        self._control.mark_killed()
        with self._control.lock:
            process = self._control.process
            if process is not None:
                try:
                    exit_code = terminate_process(process, self.terminate_timeout)
                except (OSError, psutil.Error) as e:
                    logger.error(f"Error terminating driver process {process}: {e}")
                    exit_code = None
                if exit_code is None:
                    logger.warning(
                        f"Failed to terminate driver process {process}. "
                        f"This process will likely be orphaned."
                    )

    def _on_shutdown(self) -> None:
        logger.info(f"Worker shutting down, killing driver {self.driver_id}")
        self.kill()

    def _run(self) -> None:
        hook: ShutdownHook | None = None
        try:
            try:
                hook = self._hooks.register(self._on_shutdown)
                exit_code = self.prepare_and_run_driver()

                # Final state depends on the exit code and whether we were killed
                if exit_code == 0:
                    self._set_final_state(DriverState.FINISHED)
                elif self.killed:
                    self._set_final_state(DriverState.KILLED)
                else:
                    self._set_final_state(DriverState.FAILED)
            except Exception as e:
                logger.exception(f"Driver '{self.driver_id}' failed: {e}")
                try:
                    self.kill()
                except Exception as kill_error:
                    logger.error(f"Failed to kill driver '{self.driver_id}' after error: {kill_error}")
                self._set_final_state(DriverState.ERROR, e)
            finally:
                if hook is not None:
                    self._hooks.remove(hook)
        finally:
            self._notify()

    def _set_final_state(self, state: DriverState, exception: Exception | None = None) -> None:
        if self._final_state is not None:
            raise RuntimeError(
                f"Final state of driver '{self.driver_id}' already set to {self._final_state.value}"
            )
        self._final_state = state
        self._final_exception = exception

    def _notify(self) -> None:
        try:
            state = self._final_state or DriverState.ERROR
            exception = repr(self._final_exception) if self._final_exception is not None else None
            self._sink.send(
                DriverStateChanged(driver_id=self.driver_id, state=state, exception=exception)
            )
        except Exception as e:
            logger.error(f"Failed to send final state for driver '{self.driver_id}': {e}")
        finally:
            self._done.set()

    def prepare_and_run_driver(self) -> int:
        """Prepare the working directory and artifact, then run the driver."""
        driver_dir = self._preparer.create_working_directory(self.driver_id)
        local_artifact = self._preparer.download_artifact(driver_dir)

        substitute = make_substitution(self.worker_url, str(local_artifact))
        launch = self._command_builder(
            self.description.command,
            self.description.memory_mb,
            self.runtime_home.absolute(),
            substitute,
        )
        return self._run_driver(launch, driver_dir, self.description.supervise)

    def _run_driver(self, launch: LaunchCommand, base_dir: Path, supervise: bool) -> int:
        launcher = self._launcher_factory(launch, base_dir)
        initialize = partial(
            attach_output,
            base_dir=base_dir,
            command=launcher.command,
            buffer_size=self.stream_buffer_size,
        )
        return self.run_command_with_retry(launcher, initialize, supervise)

    def run_command_with_retry(
        self,
        command: CommandLauncher,
        initialize: Callable[[ProcessLike], object],
        supervise: bool,
    ) -> int:
        """Run ``command`` under this driver's kill flag; see ``RetrySupervisor.run``."""
        return self._retry.run(command, initialize, supervise)
