"""Pytest configuration helpers for the test suite."""

from __future__ import annotations

import os
from pathlib import Path

import pytest
from helpers import write_fake_binary

from tbrunner.config import RunnerSettings, load_settings

pytest_plugins = ["tbrunner.pytest_plugin"]


def pytest_collection_modifyitems(config: pytest.Config, items: list[pytest.Item]) -> None:
    """Skip process-spawning tests when explicitly requested."""
    if not os.environ.get("SKIP_SPAWNING_TESTS"):
        return
    skip_marker = pytest.mark.skip(reason="Process-spawning tests disabled.")
    for item in items:
        if "spawns_processes" in item.keywords:
            item.add_marker(skip_marker)


@pytest.fixture
def fake_binary(tmp_path: Path) -> Path:
    """Return the path of an executable fake tigerbeetle binary."""
    return write_fake_binary(tmp_path / "bin")


@pytest.fixture
def workspace_root(tmp_path: Path) -> Path:
    """Return an empty directory that receives instance workspaces."""
    root = tmp_path / "workspaces"
    root.mkdir()
    return root


@pytest.fixture
def settings(tmp_path: Path, fake_binary: Path, workspace_root: Path) -> RunnerSettings:
    """Return runner settings pointing at the fake binary and temp paths."""
    return load_settings(
        config_file=tmp_path / "absent.yml",
        env={},
        overrides={
            "binary": str(fake_binary),
            "workspace_root": str(workspace_root),
            "logs_dir": str(tmp_path / "logs"),
        },
    )


@pytest.fixture
def tb_settings(settings: RunnerSettings) -> RunnerSettings:
    """Point the plugin's ``tb_runner`` fixture at the fake binary."""
    return settings
