"""tbrunner package bootstrap.

Ephemeral, isolated TigerBeetle servers for automated tests. The public
surface is :class:`TBRunner` plus the configuration types and the error
taxonomy re-exported below.
"""
from __future__ import annotations

# NOTE: The version is duplicated in ``pyproject.toml`` and managed by Hatch.
__version__ = "0.1.0"


def get_version() -> str:
    """Return the current package version."""
    return __version__


from .config import (  # noqa: E402 - __version__ must exist before submodules load
    ConfigurationError,
    InstanceConfiguration,
    RunnerSettings,
    load_settings,
)
from .formatter import FormatError  # noqa: E402
from .instance import InstanceState, InstanceStateError, RunningInstance  # noqa: E402
from .launcher import LaunchError, ReadinessTimeout, wait_until_ready  # noqa: E402
from .ports import PortAllocationError  # noqa: E402
from .runner import TBRunner, TerminationError, TerminationTimeout  # noqa: E402
from .workspace import FilesystemError  # noqa: E402

__all__ = [
    "ConfigurationError",
    "FilesystemError",
    "FormatError",
    "InstanceConfiguration",
    "InstanceState",
    "InstanceStateError",
    "LaunchError",
    "PortAllocationError",
    "ReadinessTimeout",
    "RunnerSettings",
    "RunningInstance",
    "TBRunner",
    "TerminationError",
    "TerminationTimeout",
    "__version__",
    "get_version",
    "load_settings",
    "wait_until_ready",
]
