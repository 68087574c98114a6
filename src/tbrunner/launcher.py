"""Start long-running server processes and watch them until they exit.

The launcher does not wait for the server to accept connections. Callers that
need that guarantee use :func:`wait_until_ready`, which probes the port with
a bounded timeout.
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Awaitable, Callable
from pathlib import Path

from .instance import InstanceState, RunningInstance, connect_host

LOGGER = logging.getLogger(__name__)
SERVER_LOGGER = logging.getLogger("tbrunner.server")

ExitCallback = Callable[[RunningInstance], Awaitable[None]]

_CHUNK_SIZE = 64 * 1024


class LaunchError(RuntimeError):
    """Raised when the server process cannot be started."""


class ReadinessTimeout(LaunchError):
    """Raised when a started server does not accept connections in time."""


def start_command(binary: Path, host: str, port: int, storage_path: Path) -> list[str]:
    """Return the argv used to start a server on *host*:*port*."""
    return [str(binary), "start", f"--addresses={host}:{port}", str(storage_path)]


async def launch(
    binary: Path,
    instance: RunningInstance,
    *,
    host: str = "0.0.0.0",
    on_exit: ExitCallback | None = None,
) -> RunningInstance:
    """Spawn the server for *instance* and return it in the running state.

    Output lines are forwarded to the ``tbrunner.server`` logger. When the
    process exits, its return code is recorded and *on_exit* is awaited.
    """
    instance.transition(InstanceState.STARTING)
    instance.host = host
    args = start_command(binary, host, instance.port, instance.storage_path)
    LOGGER.debug("Spawning %s", " ".join(args))
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
    except OSError as exc:
        raise LaunchError(f"Could not start {binary}: {exc}") from exc

    instance.process = process
    instance.transition(InstanceState.RUNNING)

    pumps = []
    if process.stdout is not None:
        pumps.append(asyncio.create_task(_forward_output(process.stdout, process.pid, "stdout")))
    if process.stderr is not None:
        pumps.append(asyncio.create_task(_forward_output(process.stderr, process.pid, "stderr")))
    watcher = asyncio.create_task(_watch_exit(instance, process, pumps, on_exit))
    instance.tasks.extend([*pumps, watcher])

    LOGGER.info("Started server pid %s on port %s", process.pid, instance.port)
    return instance


async def _forward_output(stream: asyncio.StreamReader, pid: int, name: str) -> None:
    while True:
        try:
            line = await stream.readline()
        except ValueError:
            # Line longer than the stream limit; forward what is buffered.
            line = await stream.read(_CHUNK_SIZE)
        if not line:
            return
        text = line.decode("utf-8", errors="replace").rstrip()
        SERVER_LOGGER.info("[%s %s] %s", pid, name, text, extra={"pid": pid, "stream": name})


async def _watch_exit(
    instance: RunningInstance,
    process: asyncio.subprocess.Process,
    pumps: list[asyncio.Task[None]],
    on_exit: ExitCallback | None,
) -> None:
    returncode = await process.wait()
    try:
        await asyncio.gather(*pumps)
    finally:
        instance.returncode = returncode
        LOGGER.info("Server pid %s exited with code %s", process.pid, returncode)
        if on_exit is not None:
            await on_exit(instance)


async def wait_until_ready(
    instance: RunningInstance,
    timeout: float,
    *,
    host: str | None = None,
    interval: float = 0.05,
) -> None:
    """Poll the instance's port until it accepts a TCP connection.

    *host* defaults to the address clients would use for the instance's bind
    host, so wildcard binds are probed over loopback.
    """
    probe_host = host if host is not None else connect_host(instance.host)
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while True:
        process = instance.process
        if process is None or process.returncode is not None or instance.exited.is_set():
            raise ReadinessTimeout(
                f"Server on port {instance.port} exited before accepting connections."
            )
        remaining = deadline - loop.time()
        if remaining <= 0:
            raise ReadinessTimeout(
                f"Server on port {instance.port} did not accept connections "
                f"within {timeout} seconds."
            )
        try:
            _, writer = await asyncio.wait_for(
                asyncio.open_connection(probe_host, instance.port),
                timeout=remaining,
            )
        except (OSError, asyncio.TimeoutError):
            await asyncio.sleep(min(interval, max(deadline - loop.time(), 0)))
            continue
        writer.close()
        with contextlib.suppress(OSError):
            await writer.wait_closed()
        return


__all__ = [
    "ExitCallback",
    "LaunchError",
    "ReadinessTimeout",
    "launch",
    "start_command",
    "wait_until_ready",
]
