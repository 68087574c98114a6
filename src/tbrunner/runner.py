"""Instance registry and lifecycle orchestration.

:class:`TBRunner` owns every server it starts. Instances are keyed by process
id from the moment they are launched until their exit has been confirmed and
their storage reclaimed. The exit handler is the only place that reclaims
storage or drops registry entries; ``terminate`` and ``clean_up`` signal the
processes and wait for that handler to finish.

Typical use from a test suite::

    async with TBRunner() as runner:
        instance = await runner.spawn_instance()
        ...  # connect a client to instance.port
"""
from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import Mapping
from pathlib import Path
from types import TracebackType

from .config import (
    ConfigurationError,
    InstanceConfiguration,
    ResolvedInstanceConfiguration,
    RunnerSettings,
    load_settings,
    release_resolved,
    resolve_instance_config,
)
from .formatter import format_storage
from .instance import InstanceState, RunningInstance
from .launcher import launch, wait_until_ready
from .logging import StructuredLogger
from .ports import PortAllocator
from .workspace import FilesystemError, remove_storage_file, remove_workspace

LOGGER = logging.getLogger(__name__)


class TerminationError(RuntimeError):
    """Raised when a server process cannot be signalled to stop."""


class TerminationTimeout(TerminationError):
    """Raised when a server does not confirm its exit within the given bound."""


class TBRunner:
    """Spawn, track and tear down isolated TigerBeetle servers."""

    def __init__(
        self,
        settings: RunnerSettings | None = None,
        *,
        logger: StructuredLogger | None = None,
        env: Mapping[str, str] | None = None,
    ) -> None:
        """Create an empty registry using *settings* (loaded when omitted)."""
        self.settings = settings if settings is not None else load_settings(env=env)
        self.logger = logger if logger is not None else StructuredLogger(self.settings.logs_dir)
        self._env = env
        self._ports = PortAllocator(host=self.settings.host)
        self._instances: dict[int, RunningInstance] = {}
        self._storage_paths: set[Path] = set()

    # ------------------------------------------------------------------
    # Registry views
    # ------------------------------------------------------------------
    @property
    def instances(self) -> list[RunningInstance]:
        """Return the currently registered instances."""
        return list(self._instances.values())

    def get(self, pid: int) -> RunningInstance | None:
        """Return the registered instance for *pid*, if any."""
        return self._instances.get(pid)

    async def __aenter__(self) -> TBRunner:
        """Return the runner for use in ``async with``."""
        return self

    async def __aexit__(
        self,
        exc_type: type[BaseException] | None,
        exc: BaseException | None,
        traceback: TracebackType | None,
    ) -> None:
        """Terminate every instance that is still registered."""
        await self.clean_up()

    # ------------------------------------------------------------------
    # Lifecycle operations
    # ------------------------------------------------------------------
    async def spawn_instance(
        self,
        config: InstanceConfiguration | None = None,
    ) -> RunningInstance:
        """Format fresh storage, start a server on it and register it."""
        request = config or InstanceConfiguration()
        args = {
            "binary": request.binary,
            "cluster_id": request.cluster_id,
            "port": request.port,
            "storage_path": request.storage_path,
        }
        with self.logger.operation("instance spawn", args=args, target={"kind": "instance"}) as op:
            resolved = await resolve_instance_config(
                request,
                settings=self.settings,
                ports=self._ports,
                env=self._env,
            )
            op.add_step(
                "resolve",
                status="success",
                detail={"port": resolved.port, "storage_path": resolved.storage_path},
            )

            instance = RunningInstance(
                port=resolved.port,
                storage_path=resolved.storage_path,
                cluster_id=resolved.cluster_id,
                host=self.settings.host,
                workspace=resolved.workspace,
            )
            try:
                self._claim_storage(resolved.storage_path)
            except ConfigurationError:
                await release_resolved(resolved, self._ports)
                raise
            try:
                await format_storage(resolved.binary, resolved.cluster_id, resolved.storage_path)
                op.add_step("format", status="success", detail=resolved.storage_path)
                await launch(
                    resolved.binary,
                    instance,
                    host=self.settings.host,
                    on_exit=self._handle_exit,
                )
            except BaseException:
                await self._abandon(instance, resolved)
                raise
            self._instances[instance.pid] = instance
            op.add_step("launch", status="success", detail={"pid": instance.pid})

            try:
                await self._await_startup(instance)
            except BaseException:
                await self._kill(instance)
                raise

            op.success(
                f"Spawned server pid {instance.pid} on port {instance.port}.",
                changed=1,
                context={"pid": instance.pid, "port": instance.port},
            )
        return instance

    async def terminate(self, instance: RunningInstance, *, timeout: float | None = None) -> None:
        """Stop *instance* and wait until its storage has been reclaimed.

        Unknown or already terminated instances are ignored. A timeout (from
        *timeout* or ``settings.terminate_timeout``) raises
        :class:`TerminationTimeout`; the exit handler still reclaims the
        instance if the process exits later.
        """
        if instance.terminated or instance.process is None:
            return
        if self._instances.get(instance.pid) is not instance:
            return

        with self.logger.operation(
            "instance terminate",
            args={"timeout": timeout},
            target={"kind": "instance", "pid": instance.pid, "port": instance.port},
        ) as op:
            if instance.state is not InstanceState.TERMINATING:
                instance.transition(InstanceState.TERMINATING)
                try:
                    instance.process.terminate()
                except ProcessLookupError:
                    op.add_step("signal", status="skipped", detail="process already exited")
                except OSError as exc:
                    raise TerminationError(
                        f"Could not signal server pid {instance.pid}: {exc}"
                    ) from exc
                else:
                    op.add_step("signal", status="success", detail="SIGTERM")

            effective_timeout = timeout if timeout is not None else self.settings.terminate_timeout
            try:
                if effective_timeout is None:
                    await instance.exited.wait()
                else:
                    await asyncio.wait_for(instance.exited.wait(), timeout=effective_timeout)
            except asyncio.TimeoutError as exc:
                raise TerminationTimeout(
                    f"Server pid {instance.pid} did not exit within {effective_timeout} seconds."
                ) from exc

            if instance.cleanup_error is not None:
                raise instance.cleanup_error
            op.success(
                f"Terminated server pid {instance.pid}.",
                changed=1,
                context={"returncode": instance.returncode},
            )

    async def clean_up(self, *, timeout: float | None = None) -> None:
        """Terminate every registered instance concurrently."""
        targets = self.instances
        with self.logger.operation(
            "clean up",
            args={"timeout": timeout},
            target={"kind": "runner", "instances": [item.pid for item in targets]},
        ) as op:
            results = await asyncio.gather(
                *(self.terminate(item, timeout=timeout) for item in targets),
                return_exceptions=True,
            )
            failures = [result for result in results if isinstance(result, BaseException)]
            if failures:
                op.error(
                    f"{len(failures)} of {len(targets)} instance(s) failed to terminate.",
                    errors=[str(failure) for failure in failures],
                )
                raise failures[0]
            op.success(f"Terminated {len(targets)} instance(s).", changed=len(targets))

    # ------------------------------------------------------------------
    # Internal helpers
    # ------------------------------------------------------------------
    def _claim_storage(self, storage_path: Path) -> None:
        if storage_path in self._storage_paths:
            raise ConfigurationError(
                f"Storage path {storage_path} is already used by a running instance."
            )
        self._storage_paths.add(storage_path)

    async def _await_startup(self, instance: RunningInstance) -> None:
        if self.settings.startup_delay > 0:
            await asyncio.sleep(self.settings.startup_delay)
        if self.settings.ready_timeout is not None:
            await wait_until_ready(instance, self.settings.ready_timeout)

    async def _kill(self, instance: RunningInstance) -> None:
        """Kill a server that never finished starting and wait for its reclamation."""
        if instance.process is None or instance.terminated:
            return
        instance.transition(InstanceState.TERMINATING)
        with contextlib.suppress(ProcessLookupError):
            instance.process.kill()
        await instance.exited.wait()

    async def _abandon(
        self,
        instance: RunningInstance,
        resolved: ResolvedInstanceConfiguration,
    ) -> None:
        if instance.process is not None:
            # Launched but not registered; the exit handler reclaims it.
            await self._kill(instance)
            return
        self._storage_paths.discard(instance.storage_path)
        await release_resolved(resolved, self._ports)

    async def _handle_exit(self, instance: RunningInstance) -> None:
        try:
            if instance.workspace is not None:
                await remove_workspace(instance.workspace)
            else:
                await remove_storage_file(instance.storage_path)
        except FilesystemError as exc:
            LOGGER.error("Could not reclaim storage for port %s: %s", instance.port, exc)
            instance.cleanup_error = exc
        finally:
            instance.transition(InstanceState.TERMINATED)
            self._ports.release(instance.port)
            self._storage_paths.discard(instance.storage_path)
            if instance.process is not None:
                pid = instance.process.pid
                if self._instances.get(pid) is instance:
                    del self._instances[pid]
            instance.exited.set()
            LOGGER.info(
                "Instance on port %s terminated (exit code %s)",
                instance.port,
                instance.returncode,
            )


__all__ = ["TBRunner", "TerminationError", "TerminationTimeout"]
