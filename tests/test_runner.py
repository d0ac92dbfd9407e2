"""Tests for DriverRunner orchestration using fake processes."""

import threading
import time

import pytest
from loguru import logger

from driverkeeper.core.clock import ManualClock
from driverkeeper.core.hooks import ShutdownHookRegistry
from driverkeeper.core.redirect import STDERR_FILE, STDOUT_FILE
from driverkeeper.core.runner import DriverRunner
from driverkeeper.errors import ArtifactMissingError, WorkDirError
from driverkeeper.models import DriverCommand, DriverDescription, DriverState
from driverkeeper.notify import CallbackSink

from fakes import FakeLauncher, FakeProcess, LauncherFactory, RecordingSleeper

DRIVER_ID = "driver-20261018-0001"


class CopyingFetcher:
    """Writes the artifact file, counting calls."""

    def __init__(self, create: bool = True):
        self.create = create
        self.calls = 0
        self.credentials = None

    def fetch(self, url, dest_dir, credentials=None):
        self.calls += 1
        self.credentials = credentials
        if self.create:
            (dest_dir / url.rsplit("/", 1)[-1]).write_bytes(b"artifact")


@pytest.fixture
def hooks():
    return ShutdownHookRegistry(install_atexit=False)


@pytest.fixture
def notifications():
    return []


def make_description(supervise=False, arguments=None):
    return DriverDescription(
        artifact_url="hdfs://namenode/apps/report.jar",
        memory_mb=512,
        supervise=supervise,
        command=DriverCommand(
            program="java",
            arguments=arguments if arguments is not None else ["-jar", "{{USER_JAR}}", "{{WORKER_URL}}"],
        ),
    )


def make_runner(
    tmp_path,
    hooks,
    notifications,
    launcher,
    supervise=False,
    fetcher=None,
    sleeper=None,
    clock=None,
    work_dir=None,
    arguments=None,
    fetch_credentials=None,
):
    factory = LauncherFactory(launcher)
    runner = DriverRunner(
        driver_id=DRIVER_ID,
        work_dir=work_dir or tmp_path / "work",
        runtime_home=tmp_path / "home",
        description=make_description(supervise, arguments),
        worker_url="driverkeeper://worker-1:7078",
        sink=CallbackSink(notifications.append),
        terminate_timeout=1.0,
        fetcher=fetcher or CopyingFetcher(),
        fetch_credentials=fetch_credentials,
        launcher_factory=factory,
        shutdown_hooks=hooks,
        clock=clock or ManualClock(),
        sleeper=sleeper or RecordingSleeper(),
    )
    return runner, factory


def run_to_completion(runner, timeout=10.0):
    runner.start()
    assert runner.wait(timeout), "driver did not finish in time"


def wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return
        time.sleep(0.01)
    raise AssertionError("condition not met in time")


class TestFinalStates:
    """How exit codes and kills map to final states."""

    def test_clean_exit_is_finished(self, tmp_path, hooks, notifications):
        launcher = FakeLauncher([FakeProcess(0)])
        runner, _ = make_runner(tmp_path, hooks, notifications, launcher)

        run_to_completion(runner)

        assert runner.final_state == DriverState.FINISHED
        assert runner.final_exception is None
        assert len(launcher.started) == 1

    def test_unsupervised_failure_is_failed(self, tmp_path, hooks, notifications):
        sleeper = RecordingSleeper()
        launcher = FakeLauncher([FakeProcess(1)])
        runner, _ = make_runner(tmp_path, hooks, notifications, launcher, sleeper=sleeper)

        run_to_completion(runner)

        assert runner.final_state == DriverState.FAILED
        assert len(launcher.started) == 1
        assert sleeper.sleeps == []

    def test_supervised_success_first_time(self, tmp_path, hooks, notifications):
        sleeper = RecordingSleeper()
        launcher = FakeLauncher([FakeProcess(0)])
        runner, _ = make_runner(tmp_path, hooks, notifications, launcher, supervise=True, sleeper=sleeper)

        run_to_completion(runner)

        assert runner.final_state == DriverState.FINISHED
        assert sleeper.sleeps == []

    def test_supervised_relaunch_until_success(self, tmp_path, hooks, notifications):
        sleeper = RecordingSleeper()
        launcher = FakeLauncher([
            FakeProcess(1, stderr=b"crash 1\n"),
            FakeProcess(1, stderr=b"crash 2\n"),
            FakeProcess(0, stdout=b"done\n"),
        ])
        runner, _ = make_runner(tmp_path, hooks, notifications, launcher, supervise=True, sleeper=sleeper)

        run_to_completion(runner)

        assert runner.final_state == DriverState.FINISHED
        assert runner.attempts == 3
        assert sleeper.sleeps == [1, 2]
        wait_until(lambda: (runner.driver_dir / STDOUT_FILE).exists())
        wait_until(lambda: "crash 2" in (runner.driver_dir / STDERR_FILE).read_text())
        assert (runner.driver_dir / STDERR_FILE).read_text().count("Launch Command:") == 3

    def test_kill_before_start_prevents_launch(self, tmp_path, hooks, notifications):
        launcher = FakeLauncher([FakeProcess(0)])
        runner, _ = make_runner(tmp_path, hooks, notifications, launcher, supervise=True)

        runner.kill()
        run_to_completion(runner)

        assert launcher.started == []
        assert runner.final_state == DriverState.KILLED
        assert runner.attempts == 0

    def test_kill_while_running(self, tmp_path, hooks, notifications):
        process = FakeProcess(1, block=True)
        launcher = FakeLauncher([process])
        runner, _ = make_runner(tmp_path, hooks, notifications, launcher, supervise=True)

        runner.start()
        wait_until(lambda: runner.process is not None)
        runner.kill()

        assert runner.wait(5)
        assert process.terminated
        assert runner.final_state == DriverState.KILLED
        assert len(launcher.started) == 1

    def test_kill_during_backoff(self, tmp_path, hooks, notifications):
        launched = threading.Event()

        def always_fail(index):
            launched.set()
            return FakeProcess(1)

        in_sleep = threading.Event()
        release = threading.Event()

        def blocking_sleep(seconds):
            in_sleep.set()
            release.wait(5)

        launcher = FakeLauncher(always_fail)
        runner, _ = make_runner(
            tmp_path, hooks, notifications, launcher,
            supervise=True, sleeper=RecordingSleeper(on_sleep=blocking_sleep),
        )

        runner.start()
        assert in_sleep.wait(5)
        runner.kill()
        release.set()

        assert runner.wait(5)
        assert runner.final_state == DriverState.KILLED
        assert len(launcher.started) == 1

    def test_killed_process_exiting_cleanly_is_finished(self, tmp_path, hooks, notifications):
        class GracefulProcess(FakeProcess):
            def terminate(self):
                self.terminated = True
                self._exit_code = 0
                self._released.set()

        process = GracefulProcess(block=True)
        runner, _ = make_runner(tmp_path, hooks, notifications, FakeLauncher([process]))

        runner.start()
        wait_until(lambda: runner.process is not None)
        runner.kill()

        assert runner.wait(5)
        assert runner.final_state == DriverState.FINISHED

    def test_unkillable_process_is_reported_as_orphaned(self, tmp_path, hooks, notifications, monkeypatch):
        monkeypatch.setattr("driverkeeper.core.process.KILL_WAIT_SECONDS", 0.1)
        warnings = []
        handler_id = logger.add(warnings.append, level="WARNING", format="{message}")

        process = FakeProcess(1, block=True, ignore_terminate=True, ignore_kill=True)
        runner, _ = make_runner(tmp_path, hooks, notifications, FakeLauncher([process]), supervise=True)

        try:
            runner.start()
            wait_until(lambda: runner.process is not None)

            kill_started = time.monotonic()
            runner.kill()
            elapsed = time.monotonic() - kill_started
        finally:
            logger.remove(handler_id)

        # terminate_timeout (1s) plus the shortened post-kill wait
        assert elapsed < 3.0
        assert process.terminated
        assert process.killed
        assert any("will likely be orphaned" in message for message in warnings)
        assert not runner.wait(0.1)

        # The process eventually goes away on its own
        process.release(1)
        assert runner.wait(5)
        assert runner.final_state == DriverState.KILLED
        assert [m.state for m in notifications] == [DriverState.KILLED]


class TestErrors:
    """Failures in the supervising logic itself."""

    def test_failing_kill_on_error_path_still_notifies(self, tmp_path, hooks, notifications):
        runner, _ = make_runner(
            tmp_path, hooks, notifications, FakeLauncher([FakeProcess(0)]),
            fetcher=CopyingFetcher(create=False),
        )

        def broken_kill():
            raise RuntimeError("kill exploded")

        runner.kill = broken_kill

        run_to_completion(runner)

        assert runner.final_state == DriverState.ERROR
        assert isinstance(runner.final_exception, ArtifactMissingError)
        assert len(notifications) == 1
        assert notifications[0].state == DriverState.ERROR

    def test_missing_artifact_is_error(self, tmp_path, hooks, notifications):
        launcher = FakeLauncher([FakeProcess(0)])
        runner, _ = make_runner(
            tmp_path, hooks, notifications, launcher, fetcher=CopyingFetcher(create=False)
        )

        run_to_completion(runner)

        assert runner.final_state == DriverState.ERROR
        assert isinstance(runner.final_exception, ArtifactMissingError)
        assert runner.killed
        assert launcher.started == []
        assert "ArtifactMissingError" in notifications[0].exception

    def test_workdir_failure_is_error(self, tmp_path, hooks, notifications):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        launcher = FakeLauncher([FakeProcess(0)])
        runner, _ = make_runner(tmp_path, hooks, notifications, launcher, work_dir=blocker)

        run_to_completion(runner)

        assert runner.final_state == DriverState.ERROR
        assert isinstance(runner.final_exception, WorkDirError)
        assert launcher.started == []

    def test_launch_failure_is_error(self, tmp_path, hooks, notifications):
        class BrokenLauncher(FakeLauncher):
            def start(self):
                raise FileNotFoundError("java: not found")

        runner, _ = make_runner(tmp_path, hooks, notifications, BrokenLauncher([]), supervise=True)

        run_to_completion(runner)

        assert runner.final_state == DriverState.ERROR
        assert isinstance(runner.final_exception, FileNotFoundError)

    def test_sink_failure_still_completes(self, tmp_path, hooks):
        class BrokenSink:
            def send(self, message):
                raise RuntimeError("transport down")

        runner = DriverRunner(
            driver_id=DRIVER_ID,
            work_dir=tmp_path / "work",
            runtime_home=tmp_path,
            description=make_description(),
            worker_url="driverkeeper://worker-1:7078",
            sink=BrokenSink(),
            fetcher=CopyingFetcher(),
            launcher_factory=LauncherFactory(FakeLauncher([FakeProcess(0)])),
            shutdown_hooks=hooks,
            sleeper=RecordingSleeper(),
        )

        run_to_completion(runner)
        assert runner.final_state == DriverState.FINISHED


class TestNotification:
    """Exactly one terminal notification per driver."""

    @pytest.mark.parametrize(
        "scenario",
        ["success", "failure", "killed", "error"],
    )
    def test_exactly_one_notification(self, tmp_path, hooks, notifications, scenario):
        fetcher = CopyingFetcher(create=scenario != "error")
        processes = [FakeProcess(0 if scenario == "success" else 1)]
        runner, _ = make_runner(tmp_path, hooks, notifications, FakeLauncher(processes), fetcher=fetcher)
        if scenario == "killed":
            runner.kill()

        run_to_completion(runner)
        time.sleep(0.05)

        assert len(notifications) == 1
        message = notifications[0]
        assert message.driver_id == DRIVER_ID
        assert message.state == runner.final_state
        assert message.state.is_terminal
        if scenario == "error":
            assert message.exception is not None
        else:
            assert message.exception is None

    def test_hook_removed_before_notification(self, tmp_path, hooks):
        registered_at_notify = []
        runner = DriverRunner(
            driver_id=DRIVER_ID,
            work_dir=tmp_path / "work",
            runtime_home=tmp_path,
            description=make_description(),
            worker_url="driverkeeper://worker-1:7078",
            sink=CallbackSink(lambda m: registered_at_notify.append(len(hooks))),
            fetcher=CopyingFetcher(),
            launcher_factory=LauncherFactory(FakeLauncher([FakeProcess(0)])),
            shutdown_hooks=hooks,
            sleeper=RecordingSleeper(),
        )

        run_to_completion(runner)

        assert registered_at_notify == [0]


class TestShutdownHook:
    """Host shutdown kills the driver."""

    def test_hook_registered_while_running(self, tmp_path, hooks, notifications):
        process = FakeProcess(1, block=True)
        runner, _ = make_runner(tmp_path, hooks, notifications, FakeLauncher([process]), supervise=True)

        runner.start()
        wait_until(lambda: runner.process is not None)
        assert len(hooks) == 1

        hooks.run_all()

        assert runner.wait(5)
        assert process.terminated
        assert runner.final_state == DriverState.KILLED
        assert len(notifications) == 1

    def test_hook_registration_refused_during_shutdown(self, tmp_path, hooks, notifications):
        hooks.run_all()
        launcher = FakeLauncher([FakeProcess(0)])
        runner, _ = make_runner(tmp_path, hooks, notifications, launcher)

        run_to_completion(runner)

        assert runner.final_state == DriverState.ERROR
        assert launcher.started == []


class TestCommandPreparation:
    """What the runner hands to the launcher."""

    def test_placeholders_substituted(self, tmp_path, hooks, notifications):
        runner, factory = make_runner(tmp_path, hooks, notifications, FakeLauncher([FakeProcess(0)]))

        run_to_completion(runner)

        local_jar = str((tmp_path / "work" / DRIVER_ID / "report.jar").resolve())
        assert factory.launch.argv == ["java", "-jar", local_jar, "driverkeeper://worker-1:7078"]
        assert factory.launch.env["DRIVER_MEMORY"] == "512m"
        assert factory.cwd == tmp_path / "work" / DRIVER_ID

    def test_custom_command_builder(self, tmp_path, hooks, notifications):
        from driverkeeper.core.command import LaunchCommand

        seen = {}

        def builder(command, memory_mb, runtime_home, substitute):
            seen["memory"] = memory_mb
            seen["home"] = runtime_home
            return LaunchCommand(argv=[substitute(a) for a in ["custom", "{{WORKER_URL}}"]])

        factory = LauncherFactory(FakeLauncher([FakeProcess(0)]))
        runner = DriverRunner(
            driver_id=DRIVER_ID,
            work_dir=tmp_path / "work",
            runtime_home=tmp_path / "home",
            description=make_description(),
            worker_url="driverkeeper://worker-1:7078",
            sink=CallbackSink(notifications.append),
            fetcher=CopyingFetcher(),
            command_builder=builder,
            launcher_factory=factory,
            shutdown_hooks=hooks,
            sleeper=RecordingSleeper(),
        )

        run_to_completion(runner)

        assert factory.launch.argv == ["custom", "driverkeeper://worker-1:7078"]
        assert seen == {"memory": 512, "home": (tmp_path / "home").absolute()}

    def test_existing_artifact_not_refetched(self, tmp_path, hooks, notifications):
        driver_dir = tmp_path / "work" / DRIVER_ID
        driver_dir.mkdir(parents=True)
        (driver_dir / "report.jar").write_bytes(b"cached")
        fetcher = CopyingFetcher()
        runner, _ = make_runner(tmp_path, hooks, notifications, FakeLauncher([FakeProcess(0)]), fetcher=fetcher)

        run_to_completion(runner)

        assert fetcher.calls == 0
        assert runner.final_state == DriverState.FINISHED

    def test_fetch_credentials_reach_fetcher(self, tmp_path, hooks, notifications):
        fetcher = CopyingFetcher()
        runner, _ = make_runner(
            tmp_path, hooks, notifications, FakeLauncher([FakeProcess(0)]),
            fetcher=fetcher, fetch_credentials={"token": "s3cr3t"},
        )

        run_to_completion(runner)

        assert fetcher.credentials == {"token": "s3cr3t"}
        assert runner.final_state == DriverState.FINISHED

    def test_start_twice_rejected(self, tmp_path, hooks, notifications):
        runner, _ = make_runner(tmp_path, hooks, notifications, FakeLauncher([FakeProcess(0)]))
        thread = runner.start()

        assert thread.name == f"DriverRunner for {DRIVER_ID}"
        with pytest.raises(RuntimeError):
            runner.start()
        assert runner.wait(5)
