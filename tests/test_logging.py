"""Tests for the structured operation log."""
from __future__ import annotations

import json
from pathlib import Path

import pytest

from tbrunner import __version__
from tbrunner.logging import StructuredLogger


def _records(logger: StructuredLogger) -> list[dict[str, object]]:
    path = logger._operations_log_path  # type: ignore[attr-defined]
    return [json.loads(line) for line in path.read_text(encoding="utf-8").splitlines()]


def test_operation_writes_json_and_human_lines(tmp_path: Path) -> None:
    """A completed operation produces one JSON record and one summary line."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation(
        "instance spawn",
        args={"storage_path": Path("/tmp/ws/0_0.tigerbeetle")},
        target={"kind": "instance"},
    ) as op:
        op.add_step("format", status="success", detail=Path("/tmp/ws/0_0.tigerbeetle"))
        op.success("Spawned.", changed=1, context={"port": 3001})

    (record,) = _records(logger)
    assert record["command"] == "instance spawn"
    assert record["args"] == {"storage_path": "/tmp/ws/0_0.tigerbeetle"}
    assert record["steps"] == [
        {"name": "format", "status": "success", "detail": "/tmp/ws/0_0.tigerbeetle"}
    ]
    assert record["result"] == {
        "status": "success",
        "message": "Spawned.",
        "warnings": [],
        "errors": [],
        "changed": 1,
        "context": {"port": 3001},
    }
    assert record["context"] == {"tbrunner_version": __version__}

    human = (tmp_path / "logs" / "tbrunner.log").read_text(encoding="utf-8")
    assert "instance spawn [success] Spawned." in human


def test_operation_defaults_to_success(tmp_path: Path) -> None:
    """Scopes that record no result are logged as completed."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("noop"):
        pass

    (record,) = _records(logger)
    assert record["result"]["status"] == "success"  # type: ignore[index]
    assert record["result"]["message"] == "Completed."  # type: ignore[index]


def test_exception_is_recorded_and_reraised(tmp_path: Path) -> None:
    """An exception escaping the scope is logged as an error and propagates."""
    logger = StructuredLogger(tmp_path / "logs")

    with pytest.raises(ValueError, match="bad port"):
        with logger.operation("instance spawn") as op:
            op.add_step("resolve", status="success")
            raise ValueError("bad port")

    (record,) = _records(logger)
    result = record["result"]
    assert result["status"] == "error"  # type: ignore[index]
    assert result["message"] == "bad port"  # type: ignore[index]
    assert result["errors"] == ["ValueError('bad port')"]  # type: ignore[index]


def test_error_defaults_error_list(tmp_path: Path) -> None:
    """Errors default to the message and sanitise their context."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("clean up") as op:
        op.error("boom", rc=4, context={"ports": {3001}})

    result = _records(logger)[0]["result"]
    assert result["errors"] == ["boom"]  # type: ignore[index]
    assert result["rc"] == 4  # type: ignore[index]
    assert result["context"] == {"ports": "{3001}"}  # type: ignore[index]


def test_warning_keeps_warnings_and_errors(tmp_path: Path) -> None:
    """Warnings carry both lists through to the record."""
    logger = StructuredLogger(tmp_path / "logs")

    with logger.operation("instance terminate") as op:
        op.warning("partial", warnings=("slow exit",), errors=("rmtree failed",), changed=1)

    result = _records(logger)[0]["result"]
    assert result["status"] == "warning"  # type: ignore[index]
    assert result["warnings"] == ["slow exit"]  # type: ignore[index]
    assert result["errors"] == ["rmtree failed"]  # type: ignore[index]


def test_logger_without_directory_is_disabled(tmp_path: Path) -> None:
    """No log directory means no files and no errors."""
    logger = StructuredLogger(None)

    with logger.operation("demo") as op:
        op.success("done")

    assert logger.enabled is False
    assert list(tmp_path.iterdir()) == []


def test_logger_disables_when_directory_unavailable(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """The logger disables itself when the log directory cannot be created."""
    log_dir = tmp_path / "logs"
    original_mkdir = Path.mkdir

    def fail_mkdir(self: Path, *args: object, **kwargs: object) -> None:
        if self == log_dir:
            raise PermissionError("no access")
        original_mkdir(self, *args, **kwargs)

    monkeypatch.setattr(Path, "mkdir", fail_mkdir)

    logger = StructuredLogger(log_dir)
    assert logger.enabled is False

    with logger.operation("demo") as op:
        op.success("done")


def test_logger_disables_after_write_failure(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Write failures disable the logger so later operations still succeed."""
    logger = StructuredLogger(tmp_path / "logs")
    operations_path = logger._operations_log_path  # type: ignore[attr-defined]
    original_open = Path.open

    def fail_open(self: Path, *args: object, **kwargs: object) -> object:
        if self == operations_path:
            raise OSError("disk full")
        return original_open(self, *args, **kwargs)

    monkeypatch.setattr(Path, "open", fail_open)

    with logger.operation("demo") as op:
        op.success("done")

    assert logger.enabled is False

    with logger.operation("demo-2") as op:
        op.success("done")
