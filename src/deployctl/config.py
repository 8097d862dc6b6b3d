"""Configuration loader for deployctl.

Configuration values are merged from several sources, later sources winning:

1. Built-in defaults.
2. ``/etc/deployctl/config.yml`` (or an override path).
3. Environment variables prefixed with ``DEPLOYCTL_``.
4. Explicit overrides supplied programmatically (CLI flags).

Environment keys use double underscores to express nesting, e.g.::

    export DEPLOYCTL_MAX_WORKERS=8
    export DEPLOYCTL_SSH__CONNECT_TIMEOUT=5
    export DEPLOYCTL_TOOL_DIRS__PACKS=/opt/stackstorm/packs

Values are coerced via PyYAML's ``safe_load`` so that booleans and numbers are
parsed naturally. The resulting configuration is exposed as immutable
``dataclasses``.
"""
from __future__ import annotations

import os
from collections.abc import Mapping, MutableMapping, Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import cast

try:  # PyYAML is a runtime dependency (declared in pyproject.toml).
    import yaml
except Exception as exc:  # pragma: no cover - import failure covered in tests
    raise RuntimeError(
        "PyYAML is required to load deployctl configuration. Install with "
        "`pip install deployctl` or ensure PyYAML>=6.0 is available."
    ) from exc


ENV_PREFIX = "DEPLOYCTL_"
CONFIG_ENV_VAR = f"{ENV_PREFIX}CONFIG_FILE"
RESERVED_ENV_KEYS = {CONFIG_ENV_VAR}


class ConfigError(RuntimeError):
    """Raised when configuration parsing fails."""


@dataclass(frozen=True)
class SSHConfig:
    """Binaries and options used by the SSH transport."""

    ssh_bin: str = "ssh"
    scp_bin: str = "scp"
    connect_timeout: int = 10
    options: tuple[str, ...] = ("BatchMode=yes",)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "ssh_bin": self.ssh_bin,
            "scp_bin": self.scp_bin,
            "connect_timeout": self.connect_timeout,
            "options": list(self.options),
        }


@dataclass(frozen=True)
class AppConfig:
    """Resolved configuration values for deployctl."""

    config_file: Path
    source_dir: Path
    deploy_dir: Path
    archive_dir: Path
    state_dir: Path
    registry_dir: Path
    logs_dir: Path
    runtime_dir: Path
    inventory_file: Path
    plan_file: Path | None
    archive_name: str
    lock_timeout: float
    step_timeout: float
    max_workers: int
    ssh: SSHConfig
    tool_dirs: Mapping[str, Path] = field(default_factory=dict)

    def to_dict(self) -> dict[str, object]:
        """Return a JSON-serialisable representation of the config."""
        return {
            "config_file": str(self.config_file),
            "source_dir": str(self.source_dir),
            "deploy_dir": str(self.deploy_dir),
            "archive_dir": str(self.archive_dir),
            "state_dir": str(self.state_dir),
            "registry_dir": str(self.registry_dir),
            "logs_dir": str(self.logs_dir),
            "runtime_dir": str(self.runtime_dir),
            "inventory_file": str(self.inventory_file),
            "plan_file": str(self.plan_file) if self.plan_file else None,
            "archive_name": self.archive_name,
            "lock_timeout": self.lock_timeout,
            "step_timeout": self.step_timeout,
            "max_workers": self.max_workers,
            "ssh": self.ssh.to_dict(),
            "tool_dirs": {name: str(path) for name, path in self.tool_dirs.items()},
        }


DEFAULTS: dict[str, object] = {
    "config_file": "/etc/deployctl/config.yml",
    "source_dir": ".",
    "deploy_dir": "/opt/deployctl",
    "archive_dir": "/var/tmp/deployctl",
    "state_dir": "/var/lib/deployctl",
    "registry_dir": None,  # derived from state_dir when absent
    "logs_dir": "/var/log/deployctl",
    "runtime_dir": "/run/deployctl",
    "inventory_file": "/etc/deployctl/inventory.yml",
    "plan_file": None,
    "archive_name": "release",
    "lock_timeout": 30.0,
    "step_timeout": 300.0,
    "max_workers": 4,
    "ssh": {
        "ssh_bin": "ssh",
        "scp_bin": "scp",
        "connect_timeout": 10,
        "options": ["BatchMode=yes"],
    },
    "tool_dirs": {},
}

ALLOWED_TOP_LEVEL_KEYS = set(DEFAULTS.keys())
ALLOWED_SSH_KEYS = {"ssh_bin", "scp_bin", "connect_timeout", "options"}


def load_config(
    config_file: str | os.PathLike[str] | None = None,
    *,
    env: Mapping[str, str] | None = None,
    overrides: Mapping[str, object] | None = None,
) -> AppConfig:
    """Load and merge configuration sources into an :class:`AppConfig`."""
    merged: dict[str, object] = _deep_copy(DEFAULTS)
    resolved_env = dict(os.environ if env is None else env)

    config_default = _expect_str(merged["config_file"], "config_file")
    config_path = _determine_config_path(config_default, config_file, resolved_env)

    file_values = _load_yaml_file(config_path)
    if file_values:
        _deep_merge(merged, file_values)

    env_values = _build_env_overrides(resolved_env)
    if env_values:
        _deep_merge(merged, env_values)

    if overrides:
        _deep_merge(merged, dict(overrides))

    merged["config_file"] = str(config_path)

    _validate_structure(merged)

    return _build_app_config(merged)


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
    except yaml.YAMLError as exc:  # pragma: no cover - PyYAML owns detailed error
        raise ConfigError(f"Failed to parse config file {path}: {exc}") from exc
    if not isinstance(data, Mapping):
        raise ConfigError(f"Config file {path} must contain a mapping at the top level.")
    return _as_dict(data, f"file:{path}")


def _validate_structure(raw: Mapping[str, object]) -> None:
    unknown_keys = set(raw.keys()) - ALLOWED_TOP_LEVEL_KEYS
    if unknown_keys:
        joined = ", ".join(sorted(unknown_keys))
        raise ConfigError(f"Unknown configuration keys: {joined}.")

    for key in ("lock_timeout", "step_timeout"):
        value = raw.get(key)
        if value is not None:
            _expect_positive_float(value, key, default=1.0)

    max_workers = raw.get("max_workers")
    if max_workers is not None:
        if _expect_int(max_workers, "max_workers", default=4) < 1:
            raise ConfigError("max_workers must be at least 1.")

    archive_name = raw.get("archive_name")
    if archive_name is not None:
        name = str(archive_name).strip()
        if not name or "/" in name:
            raise ConfigError("archive_name must be a non-empty file name without '/'.")

    ssh = raw.get("ssh")
    if ssh is not None:
        ssh_map = _as_dict(ssh, "ssh")
        unknown = set(ssh_map.keys()) - ALLOWED_SSH_KEYS
        if unknown:
            joined = ", ".join(sorted(unknown))
            raise ConfigError(f"Unknown ssh configuration keys: {joined}.")
        options = ssh_map.get("options")
        if options is not None:
            _as_sequence(options, "ssh.options")

    tool_dirs = raw.get("tool_dirs")
    if tool_dirs is not None:
        for name, value in _as_dict(tool_dirs, "tool_dirs").items():
            if not isinstance(value, (str, Path)):
                raise ConfigError(f"tool_dirs.{name} must be a filesystem path.")


def _build_app_config(raw: Mapping[str, object]) -> AppConfig:
    state_dir = _to_path(raw.get("state_dir"))
    registry_dir_value = raw.get("registry_dir")
    registry_dir = _to_path(registry_dir_value) if registry_dir_value else state_dir / "registry"

    plan_value = raw.get("plan_file")
    plan_file = _to_path(plan_value) if plan_value else None

    ssh_mapping = _as_dict(raw.get("ssh"), "ssh")
    options_raw = ssh_mapping.get("options")
    options = (
        tuple(str(option) for option in _as_sequence(options_raw, "ssh.options"))
        if options_raw is not None
        else SSHConfig().options
    )
    ssh = SSHConfig(
        ssh_bin=str(ssh_mapping.get("ssh_bin", "ssh")),
        scp_bin=str(ssh_mapping.get("scp_bin", "scp")),
        connect_timeout=_expect_int(
            ssh_mapping.get("connect_timeout"), "ssh.connect_timeout", default=10
        ),
        options=options,
    )

    tool_dirs = {
        name: _to_path(value)
        for name, value in _as_dict(raw.get("tool_dirs"), "tool_dirs").items()
    }

    return AppConfig(
        config_file=_to_path(raw.get("config_file")),
        source_dir=_to_path(raw.get("source_dir")),
        deploy_dir=_to_path(raw.get("deploy_dir")),
        archive_dir=_to_path(raw.get("archive_dir")),
        state_dir=state_dir,
        registry_dir=registry_dir,
        logs_dir=_to_path(raw.get("logs_dir")),
        runtime_dir=_to_path(raw.get("runtime_dir")),
        inventory_file=_to_path(raw.get("inventory_file")),
        plan_file=plan_file,
        archive_name=str(raw.get("archive_name", "release")).strip(),
        lock_timeout=_expect_positive_float(raw.get("lock_timeout"), "lock_timeout", default=30.0),
        step_timeout=_expect_positive_float(
            raw.get("step_timeout"), "step_timeout", default=300.0
        ),
        max_workers=_expect_int(raw.get("max_workers"), "max_workers", default=4),
        ssh=ssh,
        tool_dirs=tool_dirs,
    )


def _build_env_overrides(env: Mapping[str, str]) -> dict[str, object]:
    overrides: dict[str, object] = {}
    for key, value in env.items():
        if key in RESERVED_ENV_KEYS:
            continue
        if not key.startswith(ENV_PREFIX):
            continue
        suffix = key[len(ENV_PREFIX) :]
        path_segments = [segment.lower() for segment in suffix.split("__") if segment]
        if not path_segments:
            continue
        _assign_nested(overrides, path_segments, _coerce_value(value))
    return overrides


def _assign_nested(tree: MutableMapping[str, object], path: list[str], value: object) -> None:
    current: MutableMapping[str, object] = tree
    for segment in path[:-1]:
        existing = current.get(segment)
        if existing is None:
            new_child: MutableMapping[str, object] = {}
            current[segment] = new_child
            current = new_child
            continue
        if isinstance(existing, MutableMapping):
            current = cast(MutableMapping[str, object], existing)
            continue
        raise ConfigError(
            "Environment overrides conflict with existing scalar value at "
            f"{'.'.join(path)}"
        )
    current[path[-1]] = value


def _deep_merge(target: MutableMapping[str, object], overrides: Mapping[str, object]) -> None:
    for key, value in overrides.items():
        existing = target.get(key)
        if isinstance(existing, MutableMapping) and isinstance(value, Mapping):
            _deep_merge(existing, _as_dict(value, f"merge.{key}"))
            continue
        target[key] = value


def _deep_copy(source: Mapping[str, object]) -> dict[str, object]:
    result: dict[str, object] = {}
    for key, value in source.items():
        if isinstance(value, Mapping):
            result[key] = _deep_copy(_as_dict(value, f"copy.{key}"))
        elif isinstance(value, list):
            result[key] = list(value)
        else:
            result[key] = value
    return result


def _as_sequence(value: object, label: str) -> Sequence[object]:
    if isinstance(value, (str, bytes)) or not isinstance(value, Sequence):
        raise ConfigError(f"Expected {label} to be a sequence. Got {type(value).__name__}.")
    return value


def _coerce_value(raw: str) -> object:
    raw = raw.strip()
    try:
        parsed = yaml.safe_load(raw)
    except yaml.YAMLError:  # pragma: no cover - treat as string if parsing fails
        return raw
    return parsed


def _to_path(value: object) -> Path:
    if value is None:
        raise ConfigError("Expected a filesystem path, received None.")
    if isinstance(value, Path):
        return value.expanduser()
    if isinstance(value, str):
        return Path(value).expanduser()
    raise ConfigError(f"Cannot convert value {value!r} to Path.")


def _expect_int(value: object | None, label: str, *, default: int) -> int:
    if value is None:
        return default
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be an integer. Got boolean {value!r}.")
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value, 0)
        except ValueError as exc:
            raise ConfigError(f"Invalid integer for {label}: {value!r}.") from exc
    raise ConfigError(f"Expected {label} to be an integer. Got {type(value).__name__}.")


def _expect_str(value: object, key: str) -> str:
    if isinstance(value, str):
        return value
    raise ConfigError(f"Expected {key} to resolve to a string. Got {value!r}.")


def _expect_positive_float(
    value: object | None,
    label: str,
    *,
    default: float,
) -> float:
    if value is None:
        return float(default)
    if isinstance(value, bool):
        raise ConfigError(f"Expected {label} to be a number. Got boolean {value!r}.")
    if isinstance(value, (int, float)):
        numeric = float(value)
    elif isinstance(value, str):
        try:
            numeric = float(value)
        except ValueError as exc:
            raise ConfigError(f"Invalid number for {label}: {value!r}.") from exc
    else:
        raise ConfigError(
            f"Expected {label} to be numeric. Got {type(value).__name__}."
        )
    if numeric <= 0:
        raise ConfigError(f"{label} must be greater than zero. Got {numeric}.")
    return numeric


def _as_dict(value: object | None, label: str) -> dict[str, object]:
    if value is None:
        return {}
    if not isinstance(value, Mapping):
        raise ConfigError(f"Expected {label} to be a mapping. Got {type(value).__name__}.")
    result: dict[str, object] = {}
    for key, item in value.items():
        if not isinstance(key, str):
            raise ConfigError(f"Mapping {label} must use string keys. Got {key!r}.")
        result[key] = item
    return result


__all__ = [
    "AppConfig",
    "ConfigError",
    "SSHConfig",
    "load_config",
]
