"""One-shot storage initialisation via ``tigerbeetle format``."""
from __future__ import annotations

import asyncio
import logging
from pathlib import Path

LOGGER = logging.getLogger(__name__)

REPLICA_ID = 0


class FormatError(RuntimeError):
    """Raised when ``format`` fails; carries the exit code and combined output."""

    def __init__(self, message: str, *, exit_code: int | None, output: str) -> None:
        """Store the failing exit code and the captured output."""
        super().__init__(message)
        self.exit_code = exit_code
        self.output = output


def format_command(binary: Path, cluster_id: int, storage_path: Path) -> list[str]:
    """Return the argv used to format *storage_path*."""
    return [
        str(binary),
        "format",
        f"--cluster={cluster_id}",
        f"--replica={REPLICA_ID}",
        str(storage_path),
    ]


async def format_storage(binary: Path, cluster_id: int, storage_path: Path) -> None:
    """Initialise *storage_path* and wait for the formatter to exit."""
    args = format_command(binary, cluster_id, storage_path)
    LOGGER.debug("Running %s", " ".join(args))
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdin=asyncio.subprocess.DEVNULL,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
        )
    except OSError as exc:
        raise FormatError(
            f"Could not run {binary} format: {exc}",
            exit_code=None,
            output="",
        ) from exc

    stdout, _ = await process.communicate()
    output = (stdout or b"").decode("utf-8", errors="replace")
    if process.returncode != 0:
        message = output.strip() or "no output"
        raise FormatError(
            f"{binary} format failed (exit {process.returncode}): {message}",
            exit_code=process.returncode,
            output=output,
        )
    LOGGER.debug("Formatted %s for cluster %s", storage_path, cluster_id)


__all__ = ["FormatError", "REPLICA_ID", "format_command", "format_storage"]
