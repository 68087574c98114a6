"""Port allocation helpers for tbrunner.

Ports are discovered by briefly listening on port ``0`` and reading back the
number the operating system assigned. The port is only known to be free at
the instant of the probe; another process may bind it before the server does.
"""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Set
from dataclasses import dataclass, field

LOGGER = logging.getLogger(__name__)

MIN_PORT = 1
MAX_PORT = 65535


class PortAllocationError(RuntimeError):
    """Raised when a free port cannot be allocated or reserved."""


async def _accept_nothing(reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
    writer.close()


async def allocate_port(host: str = "0.0.0.0") -> int:
    """Return a port that was free on *host* at the time of the call."""
    try:
        server = await asyncio.start_server(_accept_nothing, host=host, port=0)
    except OSError as exc:
        raise PortAllocationError(f"Could not open a probe socket on {host}: {exc}") from exc

    try:
        sockets = server.sockets or ()
        if not sockets:
            raise PortAllocationError(f"Probe server on {host} exposed no sockets.")
        port = int(sockets[0].getsockname()[1])
    finally:
        server.close()
        try:
            await server.wait_closed()
        except OSError as exc:
            raise PortAllocationError(f"Could not close the probe socket: {exc}") from exc

    LOGGER.debug("Allocated free port %s on %s", port, host)
    return port


@dataclass(slots=True)
class PortAllocator:
    """Track the ports held by the live instances of one runner."""

    host: str = "0.0.0.0"
    max_attempts: int = 16
    _held: set[int] = field(default_factory=set, init=False, repr=False)

    def __post_init__(self) -> None:
        """Validate initialiser parameters."""
        if self.max_attempts < 1:
            raise PortAllocationError("max_attempts must be a positive integer.")

    @property
    def held(self) -> Set[int]:
        """Return the ports currently reserved."""
        return frozenset(self._held)

    async def reserve(self, requested: int | None = None) -> int:
        """Reserve *requested* (or a freshly probed port) and return it."""
        if requested is not None:
            port = _validate_port(requested)
            if port in self._held:
                raise PortAllocationError(f"Port {port} is already held by a running instance.")
            self._held.add(port)
            return port

        for attempt in range(1, self.max_attempts + 1):
            port = await allocate_port(self.host)
            if port not in self._held:
                self._held.add(port)
                return port
            LOGGER.debug(
                "Probed port %s is still held (attempt %s/%s); retrying",
                port,
                attempt,
                self.max_attempts,
            )
        raise PortAllocationError(
            f"Could not find a free port after {self.max_attempts} attempts."
        )

    def release(self, port: int) -> None:
        """Release *port*; releasing an unknown port is a no-op."""
        self._held.discard(port)


def _validate_port(value: int) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        raise PortAllocationError(f"Port must be an integer. Got {value!r}.")
    if value < MIN_PORT or value > MAX_PORT:
        raise PortAllocationError(
            f"Port {value} is outside the valid range {MIN_PORT}-{MAX_PORT}."
        )
    return value


__all__ = ["PortAllocationError", "PortAllocator", "allocate_port"]
