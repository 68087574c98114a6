"""Tests for workspace provisioning and removal."""
from __future__ import annotations

import shutil
from pathlib import Path

import pytest

from tbrunner.workspace import (
    FilesystemError,
    create_workspace,
    remove_storage_file,
    remove_workspace,
)


@pytest.mark.asyncio
async def test_create_workspace_makes_unique_directories(tmp_path: Path) -> None:
    """Each call creates a fresh, prefixed directory under the root."""
    first = await create_workspace(tmp_path, prefix="demo-")
    second = await create_workspace(tmp_path, prefix="demo-")

    assert first != second
    assert first.is_dir() and second.is_dir()
    assert first.parent == tmp_path
    assert first.name.startswith("demo-")


@pytest.mark.asyncio
async def test_create_workspace_defaults_to_temp_root() -> None:
    """Without a root the platform temp directory is used."""
    workspace = await create_workspace()
    try:
        assert workspace.is_dir()
        assert workspace.name.startswith("tbrunner-")
    finally:
        shutil.rmtree(workspace)


@pytest.mark.asyncio
async def test_create_workspace_failure_raises(tmp_path: Path) -> None:
    """A root that cannot hold directories raises FilesystemError."""
    missing_root = tmp_path / "does-not-exist"

    with pytest.raises(FilesystemError, match="Could not create a workspace"):
        await create_workspace(missing_root)


@pytest.mark.asyncio
async def test_remove_workspace_deletes_tree(tmp_path: Path) -> None:
    """The workspace and the storage file inside it are removed."""
    workspace = await create_workspace(tmp_path)
    (workspace / "0_0.tigerbeetle").write_text("data", encoding="utf-8")

    await remove_workspace(workspace)

    assert not workspace.exists()
    # Removing again is a no-op.
    await remove_workspace(workspace)


@pytest.mark.asyncio
async def test_remove_workspace_wraps_os_errors(
    tmp_path: Path,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    """Unexpected removal failures surface as FilesystemError."""
    workspace = await create_workspace(tmp_path)

    def fail_rmtree(path: Path) -> None:
        raise PermissionError("read-only filesystem")

    monkeypatch.setattr(shutil, "rmtree", fail_rmtree)

    with pytest.raises(FilesystemError, match="read-only filesystem"):
        await remove_workspace(workspace)


@pytest.mark.asyncio
async def test_remove_storage_file_ignores_missing_file(tmp_path: Path) -> None:
    """Only the file is removed; a missing file is not an error."""
    storage = tmp_path / "data.tigerbeetle"
    storage.write_text("data", encoding="utf-8")

    await remove_storage_file(storage)
    await remove_storage_file(storage)

    assert not storage.exists()
    assert tmp_path.exists()
