"""Typer-powered command line interface for ``tbrunner``.

The CLI is a convenience wrapper around :class:`tbrunner.runner.TBRunner`
for running throwaway servers by hand, e.g. while developing a test suite
against a fixed port.
"""
from __future__ import annotations

import asyncio
import signal
import textwrap
from collections.abc import Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .config import ConfigurationError, InstanceConfiguration, RunnerSettings, load_settings
from .exit_codes import ExitCode
from .formatter import FormatError
from .instance import RunningInstance
from .launcher import LaunchError
from .logging import OperationScope, StructuredLogger
from .ports import PortAllocationError, PortAllocator
from .runner import TBRunner, TerminationError
from .workspace import FilesystemError

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to tbrunner's YAML config file.",
)

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Spawn throwaway TigerBeetle servers for testing.

        Each server gets a freshly formatted data file in its own temporary
        directory and a free port; both are removed when the server stops.
        """
    ).strip(),
)
config_app = typer.Typer(help="Inspect tbrunner configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    settings: RunnerSettings
    logger: StructuredLogger


def _error_exit_code(exc: BaseException) -> ExitCode:
    if isinstance(exc, ConfigurationError):
        return ExitCode.VALIDATION
    if isinstance(exc, (PortAllocationError, FilesystemError)):
        return ExitCode.ENVIRONMENT
    return ExitCode.PROVIDER


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = ExitCode.VALIDATION,
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _ensure_runtime(ctx: typer.Context, config_file: Path | None) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    try:
        settings = load_settings(config_file=config_file)
    except ConfigurationError as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=ExitCode.VALIDATION) from exc
    runtime = RuntimeContext(settings=settings, logger=StructuredLogger(settings.logs_dir))
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the tbrunner version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        console.print(f"tbrunner {__version__}")
        raise typer.Exit(code=ExitCode.OK)

    _ensure_runtime(ctx, config_file)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=ExitCode.OK)


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.settings.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            table.add_row(key, "" if value is None else str(value))

        console.print(table)
        op.success("Rendered configuration table.", changed=0)


@app.command("port")
def free_port(
    ctx: typer.Context,
    count: int = typer.Option(1, "--count", "-n", min=1, help="Number of distinct ports."),
) -> None:
    """Print free TCP ports, one per line."""
    runtime = _get_runtime(ctx)

    async def _allocate() -> list[int]:
        allocator = PortAllocator(host=runtime.settings.host)
        return [await allocator.reserve() for _ in range(count)]

    with runtime.logger.operation(
        "port",
        args={"count": count},
        target={"kind": "ports"},
    ) as op:
        try:
            ports = asyncio.run(_allocate())
        except PortAllocationError as exc:
            _command_error(op, str(exc), rc=ExitCode.ENVIRONMENT)
        for port in ports:
            console.print(str(port))
        op.success(f"Allocated {len(ports)} port(s).", changed=0, context={"ports": ports})


@app.command("run")
def run(
    ctx: typer.Context,
    count: int = typer.Option(1, "--count", "-n", min=1, help="Number of servers to start."),
    binary: Path | None = typer.Option(
        None,
        "--binary",
        dir_okay=False,
        help="Path to the tigerbeetle binary (defaults to PATH_TO_TIGERBEETLE).",
    ),
    cluster_id: int | None = typer.Option(None, "--cluster-id", min=0, help="Cluster id."),
    port: int | None = typer.Option(
        None,
        "--port",
        min=1,
        max=65535,
        help="Fixed port (only valid with --count 1).",
    ),
    ready_timeout: float | None = typer.Option(
        None,
        "--ready-timeout",
        min=0.0,
        help="Wait up to this many seconds for each server to accept connections.",
    ),
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit the started servers as JSON instead of a table.",
    ),
) -> None:
    """Start servers and keep them running until interrupted."""
    runtime = _get_runtime(ctx)
    args = {
        "count": count,
        "binary": binary,
        "cluster_id": cluster_id,
        "port": port,
        "ready_timeout": ready_timeout,
    }
    with runtime.logger.operation("run", args=args, target={"kind": "runner"}) as op:
        if port is not None and count != 1:
            _command_error(op, "--port can only be used with --count 1.")

        settings = runtime.settings
        if ready_timeout:
            settings = replace(settings, ready_timeout=ready_timeout)
        request = InstanceConfiguration(binary=binary, cluster_id=cluster_id, port=port)
        runner = TBRunner(settings, logger=runtime.logger)

        try:
            stopped = asyncio.run(
                _serve(runner, request, count, json_output=json_output)
            )
        except (
            ConfigurationError,
            PortAllocationError,
            FilesystemError,
            FormatError,
            LaunchError,
            TerminationError,
        ) as exc:
            errors = [str(exc)]
            if isinstance(exc, FormatError) and exc.output:
                errors.append(exc.output)
            _command_error(op, str(exc), rc=_error_exit_code(exc), errors=errors)

        op.success(f"Stopped {stopped} server(s).", changed=stopped)


async def _serve(
    runner: TBRunner,
    request: InstanceConfiguration,
    count: int,
    *,
    json_output: bool,
) -> int:
    try:
        instances = [await runner.spawn_instance(request) for _ in range(count)]
        _render_instances(instances, json_output=json_output)
        await _wait_for_shutdown(instances)
    finally:
        await runner.clean_up()
    return len(instances)


async def _wait_for_shutdown(instances: Sequence[RunningInstance]) -> None:
    """Block until SIGINT/SIGTERM arrives or every server has exited."""
    loop = asyncio.get_running_loop()
    stop = asyncio.Event()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)
    try:
        waiters = [asyncio.create_task(stop.wait())]
        waiters.extend(asyncio.create_task(item.exited.wait()) for item in instances)
        all_exited = asyncio.gather(*waiters[1:])
        _, pending = await asyncio.wait(
            [waiters[0], all_exited],
            return_when=asyncio.FIRST_COMPLETED,
        )
        for task in pending:
            task.cancel()
    finally:
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)


def _render_instances(instances: Sequence[RunningInstance], *, json_output: bool) -> None:
    rows = [
        {
            "pid": item.pid,
            "port": item.port,
            "cluster_id": item.cluster_id,
            "storage_path": str(item.storage_path),
        }
        for item in instances
    ]
    if json_output:
        console.print_json(data={"instances": rows})
        return

    table = Table(show_header=True, header_style="bold magenta")
    table.add_column("PID", style="bold")
    table.add_column("Port")
    table.add_column("Cluster")
    table.add_column("Storage")
    for row in rows:
        table.add_row(str(row["pid"]), str(row["port"]), str(row["cluster_id"]), row["storage_path"])
    console.print(table)
    console.print("Press Ctrl+C to stop.")


def main() -> None:
    """Console script entry point."""
    app()


__all__ = ["app", "main"]
