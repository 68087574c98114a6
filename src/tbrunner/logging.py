"""Structured operation logging for tbrunner.

Every spawn, termination and clean-up is recorded as one JSON document per
line in ``<log_dir>/operations.jsonl`` and summarised in a human readable
``<log_dir>/tbrunner.log``. Logging must never break the operation it
describes: when the directory cannot be created or a write fails, the logger
disables itself and carries on silently.
"""
from __future__ import annotations

import json
import logging
import time
import uuid
from collections.abc import Iterable, Iterator, Mapping, Sequence
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

from . import __version__

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG_NAME = "operations.jsonl"
HUMAN_LOG_NAME = "tbrunner.log"


def _sanitize(value: object) -> object:
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    if isinstance(value, Mapping):
        return {str(key): _sanitize(item) for key, item in value.items()}
    if isinstance(value, Sequence) and not isinstance(value, (str, bytes, bytearray)):
        return [_sanitize(item) for item in value]
    return str(value)


class OperationScope:
    """Collects steps and the final result of a single logged operation."""

    def __init__(self, command: str) -> None:
        """Start an empty scope for *command*."""
        self.command = command
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None

    def add_step(self, name: str, *, status: str, detail: object | None = None) -> None:
        """Record an intermediate step of the operation."""
        step: dict[str, object] = {"name": name, "status": status}
        if detail is not None:
            step["detail"] = _sanitize(detail)
        self.steps.append(step)

    def success(
        self,
        message: str,
        *,
        changed: int | None = None,
        warnings: Iterable[str] = (),
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._finish("success", message, changed=changed, warnings=warnings, context=context)

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] = (),
        errors: Iterable[str] = (),
        changed: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._finish(
            "warning",
            message,
            changed=changed,
            warnings=warnings,
            errors=errors,
            context=context,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._finish(
            "error",
            message,
            errors=list(errors) if errors is not None else [message],
            rc=rc,
            context=context,
        )

    def _finish(
        self,
        status: str,
        message: str,
        *,
        changed: int | None = None,
        warnings: Iterable[str] = (),
        errors: Iterable[str] = (),
        rc: int | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        result: dict[str, object] = {
            "status": status,
            "message": message,
            "warnings": list(warnings),
            "errors": list(errors),
        }
        if changed is not None:
            result["changed"] = changed
        if rc is not None:
            result["rc"] = rc
        if context:
            result["context"] = _sanitize(context)
        self.result = result


class StructuredLogger:
    """Append operation records to JSONL and human readable log files.

    Records are appended synchronously when an operation scope closes, so a
    write runs on the calling thread (the event loop, for the runner). Each
    write is a single short append per file.
    """

    def __init__(self, log_dir: Path | None) -> None:
        """Prepare the log directory; a ``None`` directory disables logging."""
        self._log_dir = log_dir
        self._enabled = False
        if log_dir is None:
            self._operations_log_path: Path | None = None
            self._human_log_path: Path | None = None
            return
        self._operations_log_path = log_dir / OPERATIONS_LOG_NAME
        self._human_log_path = log_dir / HUMAN_LOG_NAME
        try:
            log_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("Structured logging disabled; cannot create %s: %s", log_dir, exc)
            return
        self._enabled = True

    @property
    def enabled(self) -> bool:
        """Return ``True`` while records are being written."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield a scope for *command* and write its record on exit."""
        scope = OperationScope(command)
        started_at = datetime.now(UTC)
        start = time.perf_counter()
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                scope.error(str(exc) or type(exc).__name__, errors=[repr(exc)])
            raise
        finally:
            if scope.result is None:
                scope.success("Completed.")
            record: dict[str, object] = {
                "id": uuid.uuid4().hex,
                "timestamp": started_at.isoformat(),
                "command": command,
                "args": _sanitize(args or {}),
                "target": _sanitize(target or {}),
                "steps": scope.steps,
                "result": scope.result,
                "duration_ms": int((time.perf_counter() - start) * 1000),
                "context": {"tbrunner_version": __version__},
            }
            self._write(record)

    def _write(self, record: Mapping[str, object]) -> None:
        operations_path = self._operations_log_path
        human_path = self._human_log_path
        if not self._enabled or operations_path is None or human_path is None:
            return
        result = record.get("result")
        status = result.get("status") if isinstance(result, Mapping) else "unknown"
        message = result.get("message") if isinstance(result, Mapping) else ""
        human_line = f"{record['timestamp']} {record['command']} [{status}] {message}\n"
        try:
            with operations_path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(record, sort_keys=True) + "\n")
            with human_path.open("a", encoding="utf-8") as handle:
                handle.write(human_line)
        except OSError as exc:
            LOGGER.warning("Structured logging disabled after write failure: %s", exc)
            self._enabled = False


__all__ = ["HUMAN_LOG_NAME", "OPERATIONS_LOG_NAME", "OperationScope", "StructuredLogger"]
