"""Temporary workspace helpers.

Each instance gets its own directory under the platform temp root holding a
single storage file. The blocking filesystem calls run in a worker thread so
the event loop is free while they complete.
"""
from __future__ import annotations

import asyncio
import logging
import os
import shutil
import tempfile
from pathlib import Path

LOGGER = logging.getLogger(__name__)

DEFAULT_PREFIX = "tbrunner-"


class FilesystemError(RuntimeError):
    """Raised when a workspace cannot be created or removed."""


async def create_workspace(
    root: str | os.PathLike[str] | None = None,
    *,
    prefix: str = DEFAULT_PREFIX,
) -> Path:
    """Create a uniquely named directory and return its path."""
    directory = str(root) if root is not None else None
    try:
        created = await asyncio.to_thread(tempfile.mkdtemp, prefix=prefix, dir=directory)
    except OSError as exc:
        location = directory or tempfile.gettempdir()
        raise FilesystemError(f"Could not create a workspace under {location}: {exc}") from exc
    LOGGER.debug("Created workspace %s", created)
    return Path(created)


async def remove_workspace(path: Path) -> None:
    """Remove *path* and everything below it; a missing directory is ignored."""
    try:
        await asyncio.to_thread(shutil.rmtree, path)
    except FileNotFoundError:
        return
    except OSError as exc:
        raise FilesystemError(f"Could not remove workspace {path}: {exc}") from exc
    LOGGER.debug("Removed workspace %s", path)


async def remove_storage_file(path: Path) -> None:
    """Remove a single storage file; a missing file is ignored."""
    try:
        await asyncio.to_thread(path.unlink, missing_ok=True)
    except OSError as exc:
        raise FilesystemError(f"Could not remove storage file {path}: {exc}") from exc
    LOGGER.debug("Removed storage file %s", path)


__all__ = [
    "DEFAULT_PREFIX",
    "FilesystemError",
    "create_workspace",
    "remove_storage_file",
    "remove_workspace",
]
