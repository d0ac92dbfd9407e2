"""DriverKeeper CLI application."""

from __future__ import annotations

import signal
import sys
import uuid
from pathlib import Path
from typing import Optional

import typer
from loguru import logger
from rich.console import Console
from rich.table import Table

from driverkeeper import __version__
from driverkeeper.config import ConfigError, load_config, load_descriptor
from driverkeeper.core.hooks import get_shutdown_registry
from driverkeeper.core.redirect import STDERR_FILE, STDOUT_FILE
from driverkeeper.core.runner import DriverRunner
from driverkeeper.models import DriverDescription, DriverState, DriverStateChanged, LoggingSettings
from driverkeeper.notify import CallbackSink, CompositeSink, HttpSink, LoggingSink, NotificationSink

# Initialize
app = typer.Typer(
    name="driverkeeper",
    help="DriverKeeper - supervised driver execution for worker nodes",
    no_args_is_help=True,
)
console = Console()

STATE_STYLES = {
    DriverState.FINISHED: "green",
    DriverState.KILLED: "yellow",
    DriverState.FAILED: "red",
    DriverState.ERROR: "red",
}


def setup_logging(verbose: bool = False, settings: LoggingSettings | None = None) -> None:
    """Setup logging configuration."""
    logger.remove()

    level = "DEBUG" if verbose else (settings.level if settings else "INFO")

    # Console logging
    logger.add(
        sys.stderr,
        format="<level>{level: <8}</level> | <cyan>{name}</cyan>:<cyan>{function}</cyan> - <level>{message}</level>",
        level=level,
        colorize=True,
    )

    if settings and settings.file:
        logger.add(
            settings.file,
            format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {thread.name} | {name}:{function} - {message}",
            level=level,
            rotation=settings.rotation,
            enqueue=True,
        )


def print_descriptor(description: DriverDescription) -> None:
    table = Table(title="Driver", show_header=False, box=None)
    table.add_column("Field", style="cyan")
    table.add_column("Value")

    table.add_row("Artifact", description.artifact_url)
    table.add_row("Memory", f"{description.memory_mb} MB")
    table.add_row("Cores", str(description.cores))
    table.add_row("Supervise", "yes" if description.supervise else "no")
    table.add_row("Program", description.command.program)
    if description.command.extra_options:
        table.add_row("Options", " ".join(description.command.extra_options))
    table.add_row("Arguments", " ".join(description.command.arguments) or "-")

    console.print(table)


@app.command("run")
def run_driver(
    descriptor: Path = typer.Argument(..., help="Driver descriptor YAML file"),
    driver_id: Optional[str] = typer.Option(None, "--driver-id", "-i", help="Driver ID (generated if omitted)"),
    config_path: Optional[Path] = typer.Option(None, "--config", "-c", help="Config file"),
    work_dir: Optional[Path] = typer.Option(None, "--work-dir", "-w", help="Override worker work directory"),
    worker_url: Optional[str] = typer.Option(None, "--worker-url", help="Override worker callback URL"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
) -> None:
    """Run a driver in the foreground until it finishes or is killed."""
    try:
        config = load_config(config_path)
        description = load_descriptor(descriptor)
    except ConfigError as e:
        setup_logging(verbose)
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(2)

    setup_logging(verbose, config.logging)

    worker = config.worker
    driver_id = driver_id or f"driver-{uuid.uuid4().hex[:12]}"
    outcome: list[DriverStateChanged] = []

    sinks: list[NotificationSink] = [LoggingSink(), CallbackSink(outcome.append)]
    if config.notify.url:
        sinks.append(
            HttpSink(config.notify.url, timeout=config.notify.timeout, token=config.notify.token)
        )

    hooks = get_shutdown_registry()
    runner = DriverRunner(
        driver_id=driver_id,
        work_dir=work_dir or worker.work_dir,
        runtime_home=worker.runtime_home,
        description=description,
        worker_url=worker_url or worker.worker_url,
        sink=CompositeSink(*sinks),
        terminate_timeout=worker.driver_terminate_timeout,
        fetch_credentials=worker.fetch_credentials,
        shutdown_hooks=hooks,
        stream_buffer_size=worker.stream_buffer_size,
    )

    # Setup signal handlers
    def handle_signal(signum: int, frame: object) -> None:
        logger.info(f"Received signal {signum}")
        hooks.run_all()

    previous = {sig: signal.signal(sig, handle_signal) for sig in (signal.SIGTERM, signal.SIGINT)}

    console.print(f"[blue]Starting driver '{driver_id}' in {runner.driver_dir}[/blue]")
    try:
        runner.start()
        while not runner.wait(timeout=0.5):
            pass
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)

    message = outcome[0] if outcome else None
    state = message.state if message else runner.final_state or DriverState.ERROR
    style = STATE_STYLES.get(state, "white")

    table = Table(title=driver_id, show_header=False, box=None)
    table.add_column("Field", style="cyan")
    table.add_column("Value")
    table.add_row("State", f"[{style}]{state.value}[/{style}]")
    table.add_row("Attempts", str(runner.attempts))
    table.add_row("Stdout", str(runner.driver_dir / STDOUT_FILE))
    table.add_row("Stderr", str(runner.driver_dir / STDERR_FILE))
    if message and message.exception:
        table.add_row("Error", f"[red]{message.exception}[/red]")
    console.print(table)

    raise typer.Exit(0 if state == DriverState.FINISHED else 1)


@app.command("validate")
def validate_descriptor(
    descriptor: Path = typer.Argument(..., help="Driver descriptor YAML file"),
) -> None:
    """Check that a driver descriptor parses."""
    setup_logging()
    try:
        description = load_descriptor(descriptor)
    except ConfigError as e:
        console.print(f"[red]Error: {e}[/red]")
        raise typer.Exit(1)

    print_descriptor(description)
    console.print("[green]✓ Descriptor is valid[/green]")


@app.command("version")
def version() -> None:
    """Show the DriverKeeper version."""
    console.print(f"driverkeeper {__version__}")


def main() -> None:
    app()


if __name__ == "__main__":
    main()
