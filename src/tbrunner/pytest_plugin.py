"""pytest fixtures for tests that need a private TigerBeetle server.

Enable the plugin from a ``conftest.py``::

    pytest_plugins = ["tbrunner.pytest_plugin"]

``tb_instance`` gives every test its own freshly formatted server; the
runner tears all of them down after the test, so rows written by one test are
never visible to another.
"""
from __future__ import annotations

from collections.abc import AsyncIterator

import pytest
import pytest_asyncio

from .config import RunnerSettings, load_settings
from .instance import RunningInstance
from .runner import TBRunner


@pytest.fixture
def tb_settings() -> RunnerSettings:
    """Return the settings used to build ``tb_runner``."""
    return load_settings()


@pytest_asyncio.fixture
async def tb_runner(tb_settings: RunnerSettings) -> AsyncIterator[TBRunner]:
    """Yield a runner and clean up every server it started."""
    runner = TBRunner(tb_settings)
    try:
        yield runner
    finally:
        await runner.clean_up()


@pytest_asyncio.fixture
async def tb_instance(tb_runner: TBRunner) -> RunningInstance:
    """Return a running server owned by ``tb_runner``."""
    return await tb_runner.spawn_instance()
