"""Configuration loader and instance configuration resolver for tbrunner.

Runner settings are read from several layered sources:

1. Built-in defaults.
2. ``./tbrunner.yml`` (or the file named by ``TBRUNNER_CONFIG_FILE``, or an
   explicit path).
3. Environment variables prefixed with ``TBRUNNER_``.
4. Explicit overrides supplied programmatically (reserved for CLI flags).

Environment values are coerced via PyYAML's ``safe_load`` so that numbers and
``null`` are parsed naturally, e.g.::

    export TBRUNNER_CLUSTER_ID=7
    export TBRUNNER_READY_TIMEOUT=5

The resolved settings are exposed as an immutable dataclass. The second half
of this module fills in a per-instance :class:`InstanceConfiguration`,
delegating to the port allocator and workspace provisioner for values the
caller leaves unset.
"""
from __future__ import annotations

import logging
import os
from collections.abc import Mapping, MutableMapping
from dataclasses import dataclass
from pathlib import Path

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered by packaging
    raise RuntimeError(
        "PyYAML is required to load tbrunner configuration. Install with "
        "`pip install tbrunner` or ensure PyYAML>=6.0 is available."
    ) from exc

from .ports import PortAllocator
from .workspace import DEFAULT_PREFIX, FilesystemError, create_workspace, remove_workspace

LOGGER = logging.getLogger(__name__)

ENV_PREFIX = "TBRUNNER_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
BINARY_ENV_VAR = "PATH_TO_TIGERBEETLE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}

DEFAULT_BINARY = Path(__file__).resolve().parent / "bin" / "tigerbeetle"
DEFAULT_STORAGE_FILENAME = "0_0.tigerbeetle"


class ConfigurationError(RuntimeError):
    """Raised when configuration parsing or resolution fails."""


@dataclass(frozen=True)
class RunnerSettings:
    """Resolved settings shared by every instance a runner spawns."""

    config_file: Path
    binary: Path | None = None
    cluster_id: int = 0
    host: str = "0.0.0.0"
    storage_filename: str = DEFAULT_STORAGE_FILENAME
    workspace_root: Path | None = None
    workspace_prefix: str = DEFAULT_PREFIX
    logs_dir: Path | None = None
    startup_delay: float = 0.0
    ready_timeout: float | None = None
    terminate_timeout: float | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the settings."""
        return {
            "config_file": str(self.config_file),
            "binary": str(self.binary) if self.binary is not None else None,
            "cluster_id": self.cluster_id,
            "host": self.host,
            "storage_filename": self.storage_filename,
            "workspace_root": (
                str(self.workspace_root) if self.workspace_root is not None else None
            ),
            "workspace_prefix": self.workspace_prefix,
            "logs_dir": str(self.logs_dir) if self.logs_dir is not None else None,
            "startup_delay": self.startup_delay,
            "ready_timeout": self.ready_timeout,
            "terminate_timeout": self.terminate_timeout,
        }


@dataclass(frozen=True)
class InstanceConfiguration:
    """Per-instance overrides; ``None`` fields are filled in by the resolver."""

    binary: Path | None = None
    cluster_id: int | None = None
    port: int | None = None
    storage_path: Path | None = None


@dataclass(frozen=True)
class ResolvedInstanceConfiguration:
    """Fully populated instance configuration.

    ``workspace`` is the directory the resolver created for the storage file,
    or ``None`` when the caller supplied ``storage_path`` directly.
    """

    binary: Path
    cluster_id: int
    port: int
    storage_path: Path
    workspace: Path | None = None


DEFAULTS: dict[str, object] = {
    "config_file": "tbrunner.yml",
    "binary": None,
    "cluster_id": 0,
    "host": "0.0.0.0",
    "storage_filename": DEFAULT_STORAGE_FILENAME,
    "workspace_root": None,
    "workspace_prefix": DEFAULT_PREFIX,
    "logs_dir": None,
    "startup_delay": 0.0,
    "ready_timeout": None,
    "terminate_timeout": None,
}

ALLOWED_KEYS = set(DEFAULTS.keys())


def load_settings(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> RunnerSettings:
    """Load and merge configuration sources into :class:`RunnerSettings`."""
    merged: dict[str, object] = dict(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_path = _determine_config_path(str(DEFAULTS["config_file"]), config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _merge(merged, file_values, source=f"file:{config_path}")

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _merge(merged, env_values, source="environment")

    if overrides:
        _merge(merged, dict(overrides), source="overrides")

    merged["config_file"] = str(config_path)
    return _build_settings(merged)


def _determine_config_path(
    default_path: str,
    cli_override: str | os.PathLike[str] | None,
    env: Mapping[str, str],
) -> Path:
    if cli_override:
        return Path(cli_override)
    if CONFIG_ENV_VAR in env:
        return Path(env[CONFIG_ENV_VAR])
    return Path(default_path)


def _load_yaml_file(path: Path) -> dict[str, object]:
    if not path.exists():
        return {}
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    except yaml.YAMLError as exc:
        raise ConfigurationError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigurationError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _merge(
    target: MutableMapping[str, object],
    values: Mapping[str, object],
    *,
    source: str,
) -> None:
    unknown = set(values.keys()) - ALLOWED_KEYS
    if unknown:
        joined = ", ".join(sorted(unknown))
        raise ConfigurationError(f"Unknown configuration keys from {source}: {joined}.")
    target.update(values)


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        name = key[len(ENV_PREFIX) :].lower()
        if not name:
            continue
        overrides[name] = _coerce_value(value)
    return overrides


def _build_settings(raw: Mapping[str, object]) -> RunnerSettings:
    binary_value = raw.get("binary")
    cluster_id = _expect_int(raw.get("cluster_id"), "cluster_id", default=0)
    if cluster_id < 0:
        raise ConfigurationError("cluster_id must be a non-negative integer.")

    storage_filename = str(raw.get("storage_filename") or DEFAULT_STORAGE_FILENAME)
    if Path(storage_filename).name != storage_filename:
        raise ConfigurationError(
            f"storage_filename must be a bare file name. Got {storage_filename!r}."
        )

    return RunnerSettings(
        config_file=_to_path(raw.get("config_file")),
        binary=_to_path(binary_value) if binary_value not in (None, "") else None,
        cluster_id=cluster_id,
        host=str(raw.get("host") or "0.0.0.0"),
        storage_filename=storage_filename,
        workspace_root=_optional_path(raw.get("workspace_root")),
        workspace_prefix=str(raw.get("workspace_prefix") or DEFAULT_PREFIX),
        logs_dir=_optional_path(raw.get("logs_dir")),
        startup_delay=_expect_non_negative_float(
            raw.get("startup_delay"), "startup_delay", default=0.0
        ),
        ready_timeout=_optional_positive_float(raw.get("ready_timeout"), "ready_timeout"),
        terminate_timeout=_optional_positive_float(
            raw.get("terminate_timeout"), "terminate_timeout"
        ),
    )


# ----------------------------------------------------------------------
# Instance configuration resolution
# ----------------------------------------------------------------------
async def resolve_instance_config(
    request: InstanceConfiguration | None,
    *,
    settings: RunnerSettings,
    ports: PortAllocator,
    env: Mapping[str, str] | None = None,
) -> ResolvedInstanceConfiguration:
    """Fill every unset field of *request* and return the resolved form.

    The binary and cluster id are checked before any port is reserved or any
    workspace is created. When a later step fails, whatever was already
    reserved or created is released before the error propagates.
    """
    request = request or InstanceConfiguration()
    binary = resolve_binary(request.binary, settings=settings, env=env)

    cluster_id = settings.cluster_id if request.cluster_id is None else request.cluster_id
    if isinstance(cluster_id, bool) or not isinstance(cluster_id, int) or cluster_id < 0:
        raise ConfigurationError(f"Cluster id must be a non-negative integer. Got {cluster_id!r}.")

    port = await ports.reserve(request.port)

    workspace: Path | None = None
    try:
        if request.storage_path is not None:
            storage_path = Path(request.storage_path).expanduser()
        else:
            workspace = await create_workspace(
                settings.workspace_root, prefix=settings.workspace_prefix
            )
            storage_path = workspace / settings.storage_filename
    except BaseException:
        ports.release(port)
        raise

    return ResolvedInstanceConfiguration(
        binary=binary,
        cluster_id=cluster_id,
        port=port,
        storage_path=storage_path,
        workspace=workspace,
    )


async def release_resolved(resolved: ResolvedInstanceConfiguration, ports: PortAllocator) -> None:
    """Undo the side effects of :func:`resolve_instance_config`.

    The workspace (if one was created) is removed on a best-effort basis; a
    caller-supplied storage file is never touched.
    """
    ports.release(resolved.port)
    if resolved.workspace is None:
        return
    try:
        await remove_workspace(resolved.workspace)
    except FilesystemError as exc:
        LOGGER.warning("Could not remove workspace after failed spawn: %s", exc)


def resolve_binary(
    explicit: str | os.PathLike[str] | None,
    *,
    settings: RunnerSettings,
    env: Mapping[str, str] | None = None,
) -> Path:
    """Return the server binary path, raising when it is not executable."""
    resolved_env = os.environ if env is None else env
    if explicit is not None:
        candidate, source = Path(explicit), "explicit option"
    elif settings.binary is not None:
        candidate, source = settings.binary, f"settings ({settings.config_file})"
    elif resolved_env.get(BINARY_ENV_VAR):
        candidate, source = Path(resolved_env[BINARY_ENV_VAR]), BINARY_ENV_VAR
    else:
        candidate, source = DEFAULT_BINARY, "package default"

    candidate = candidate.expanduser()
    if not candidate.is_file() or not os.access(candidate, os.X_OK):
        raise ConfigurationError(
            f"TigerBeetle binary not found or not executable: {candidate} (from {source})."
        )
    return candidate


# ----------------------------------------------------------------------
# Value coercion helpers
# ----------------------------------------------------------------------
def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigurationError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigurationError(f"Cannot convert value {value!r} to Path.")


def _optional_path(value: object) -> Path | None:
    if value in (None, ""):
        return None
    return _to_path(value)


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigurationError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigurationError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_float(value: object, label: str) -> float:
    if isinstance(value, bool):
        raise ConfigurationError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value)
        except ValueError as exc:
            raise ConfigurationError(f"Invalid number for {label}: {value!r}.") from exc
    raise ConfigurationError(f"Expected {label} to be numeric. Got {type(value).__name__}.")


def _expect_non_negative_float(value: object | None, label: str, *, default: float) -> float:
    if value is None:
        return float(default)
    numeric = _expect_float(value, label)
    if numeric < 0:
        raise ConfigurationError(f"{label} must not be negative. Got {numeric}.")
    return numeric


def _optional_positive_float(value: object | None, label: str) -> float | None:
    if value is None:
        return None
    numeric = _expect_float(value, label)
    if numeric <= 0:
        raise ConfigurationError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigurationError(
            f"Expected {label} to be a mapping. Got {type(value).__name__}."
        )
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigurationError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "BINARY_ENV_VAR",
    "CONFIG_ENV_VAR",
    "ConfigurationError",
    "DEFAULT_BINARY",
    "DEFAULT_STORAGE_FILENAME",
    "InstanceConfiguration",
    "ResolvedInstanceConfiguration",
    "RunnerSettings",
    "load_settings",
    "release_resolved",
    "resolve_binary",
    "resolve_instance_config",
]
