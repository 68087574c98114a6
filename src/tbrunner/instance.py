"""Instance model and lifecycle state machine."""
from __future__ import annotations

import asyncio
import enum
import logging
from dataclasses import dataclass, field
from pathlib import Path

LOGGER = logging.getLogger(__name__)

_WILDCARD_HOSTS = {"": "127.0.0.1", "0.0.0.0": "127.0.0.1", "::": "::1"}


def connect_host(bind_host: str) -> str:
    """Return the host a client uses to reach a server bound to *bind_host*.

    Wildcard binds are reached over loopback; any other host is used as is.
    """
    return _WILDCARD_HOSTS.get(bind_host, bind_host)


class InstanceStateError(RuntimeError):
    """Raised when an instance is asked to move backwards in its lifecycle."""


class InstanceState(enum.Enum):
    """Lifecycle states, in the only order an instance may visit them."""

    FORMATTING = "formatting"
    STARTING = "starting"
    RUNNING = "running"
    TERMINATING = "terminating"
    TERMINATED = "terminated"

    @property
    def rank(self) -> int:
        """Return the position of the state in the lifecycle."""
        return _ORDER.index(self)


_ORDER = tuple(InstanceState)


@dataclass(slots=True, eq=False)
class RunningInstance:
    """One server process together with its port and storage file.

    The instance owns ``process`` exclusively: only the runner that created
    it signals or reaps the process. ``exited`` is set once the exit handler
    has reclaimed the storage and dropped the registry entry.
    """

    port: int
    storage_path: Path
    cluster_id: int = 0
    host: str = "0.0.0.0"
    workspace: Path | None = None
    state: InstanceState = InstanceState.FORMATTING
    process: asyncio.subprocess.Process | None = field(default=None, repr=False)
    returncode: int | None = None
    exited: asyncio.Event = field(default_factory=asyncio.Event, repr=False)
    cleanup_error: Exception | None = field(default=None, repr=False)
    tasks: list[asyncio.Task[None]] = field(default_factory=list, repr=False)

    @property
    def pid(self) -> int:
        """Return the OS process id of the server."""
        if self.process is None:
            raise InstanceStateError(
                f"Instance on port {self.port} has no process (state: {self.state.value})."
            )
        return self.process.pid

    @property
    def address(self) -> str:
        """Return the address clients can connect to."""
        host = connect_host(self.host)
        if ":" in host:
            return f"[{host}]:{self.port}"
        return f"{host}:{self.port}"

    @property
    def terminated(self) -> bool:
        """Return ``True`` once the instance has reached its final state."""
        return self.state is InstanceState.TERMINATED

    def transition(self, target: InstanceState) -> None:
        """Move to *target*; staying put is allowed, moving back is not."""
        if target.rank < self.state.rank:
            raise InstanceStateError(
                f"Cannot move instance on port {self.port} from "
                f"{self.state.value} back to {target.value}."
            )
        if target is not self.state:
            LOGGER.debug(
                "Instance on port %s: %s -> %s", self.port, self.state.value, target.value
            )
        self.state = target


__all__ = ["InstanceState", "InstanceStateError", "RunningInstance", "connect_host"]
