"""Plan files: ordered step declarations in YAML.

Example::

    steps:
      - name: transfer
        type: transfer
        source: "{{ archive }}"
        destination: "{{ remote_archive }}"
      - name: extract
        type: process
        command: ["tar", "-xzf", "{{ remote_archive }}", "-C", "{{ release_dir }}"]
        timeout: 120
      - name: link
        type: link
        path: "{{ deploy_dir }}/current"
        points_to: "{{ release_dir }}"
      - name: register
        type: register
        targets: st2
        command: st2 pack register
        resources: ["{{ tool_dirs.packs }}/mypack"]

``targets`` narrows a step to a target spec; omitted means every target in
the run. Commands may be lists or shell-style strings.
"""
from __future__ import annotations

import re
import shlex
from collections.abc import Mapping, Sequence
from pathlib import Path
from typing import Any

import yaml

from .archive import Archive
from .config import AppConfig
from .steps import LinkStep, ProcessStep, RegisterStep, Step, TransferStep
from .targets import TargetRegistry

STEP_TYPES = ("process", "transfer", "link", "register")
_COMMON_KEYS = {"name", "type", "targets", "timeout"}
_TYPE_KEYS = {
    "process": {"command", "remote", "cwd", "env"},
    "transfer": {"source", "destination"},
    "link": {"path", "points_to"},
    "register": {"command", "resources", "remote"},
}


_EXPRESSION = re.compile(r"\{\{.*?\}\}|\{%.*?%\}")
_PLACEHOLDER = re.compile(r"__deployctl_expr_(\d+)__")


class PlanError(RuntimeError):
    """Raised when a plan file is malformed."""


def split_command(value: str) -> list[str]:
    """Split a shell-style command, keeping template expressions whole."""
    expressions: list[str] = []

    def _stash(match: re.Match[str]) -> str:
        expressions.append(match.group(0))
        return f"__deployctl_expr_{len(expressions) - 1}__"

    try:
        parts = shlex.split(_EXPRESSION.sub(_stash, value))
    except ValueError as exc:
        raise PlanError(f"Cannot parse command {value!r}: {exc}") from exc
    return [
        _PLACEHOLDER.sub(lambda match: expressions[int(match.group(1))], part) for part in parts
    ]


def load_plan(path: Path, registry: TargetRegistry | None = None) -> list[Step]:
    """Load the plan stored at *path*."""
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise PlanError(f"Plan file not found: {path}") from exc
    except yaml.YAMLError as exc:
        raise PlanError(f"Failed to parse plan {path}: {exc}") from exc
    return parse_plan(data, registry)


def parse_plan(data: object, registry: TargetRegistry | None = None) -> list[Step]:
    """Build steps from a parsed plan document."""
    if not isinstance(data, Mapping):
        raise PlanError("A plan must be a mapping with a 'steps' list.")
    raw_steps = data.get("steps")
    if not isinstance(raw_steps, list) or not raw_steps:
        raise PlanError("A plan must declare a non-empty 'steps' list.")

    steps: list[Step] = []
    seen: set[str] = set()
    for index, raw in enumerate(raw_steps):
        step = _parse_step(raw, index, registry)
        if step.name in seen:
            raise PlanError(f"Duplicate step name '{step.name}'.")
        seen.add(step.name)
        steps.append(step)
    return steps


def default_plan(resources: Sequence[str] = (), register_command: str | None = None) -> list[Step]:
    """Return the standard transfer, unpack, link and register workflow."""
    steps: list[Step] = [
        TransferStep(name="transfer", source="{{ archive }}", destination="{{ remote_archive }}"),
        ProcessStep(name="prepare", command=("mkdir", "-p", "{{ release_dir }}")),
        ProcessStep(
            name="extract",
            command=("tar", "-xzf", "{{ remote_archive }}", "-C", "{{ release_dir }}"),
        ),
        LinkStep(name="link", path="{{ deploy_dir }}/current", points_to="{{ release_dir }}"),
    ]
    if resources:
        steps.append(
            RegisterStep(
                name="register",
                command=tuple(split_command(register_command or "st2 pack register")),
                resources=tuple(resources),
            )
        )
    return steps


def plan_variables(config: AppConfig, archive: Archive) -> dict[str, object]:
    """Return the template variables available to every step of a run."""
    release_id = archive.release.id
    deploy_dir = str(config.deploy_dir)
    return {
        "release": release_id,
        "archive": str(archive.path),
        "archive_name": archive.path.name,
        "checksum": archive.checksum,
        "deploy_dir": deploy_dir,
        "release_dir": f"{deploy_dir}/releases/{release_id}",
        "remote_archive": f"{deploy_dir}/archives/{archive.path.name}",
        "source_dir": str(config.source_dir),
        "archive_dir": str(config.archive_dir),
        "tool_dirs": {name: str(path) for name, path in config.tool_dirs.items()},
    }


def _parse_step(raw: object, index: int, registry: TargetRegistry | None) -> Step:
    if not isinstance(raw, Mapping):
        raise PlanError(f"Step #{index + 1} must be a mapping.")
    name = str(raw.get("name", "")).strip()
    if not name or "/" in name or name in {".", ".."}:
        raise PlanError(f"Step #{index + 1} needs a name without '/'.")
    kind = str(raw.get("type", "")).strip().lower()
    if kind not in STEP_TYPES:
        allowed = ", ".join(STEP_TYPES)
        raise PlanError(f"Step '{name}' has unknown type {kind!r}. Allowed: {allowed}.")

    unknown = set(raw) - _COMMON_KEYS - _TYPE_KEYS[kind]
    if unknown:
        joined = ", ".join(sorted(str(key) for key in unknown))
        raise PlanError(f"Step '{name}' has unknown keys: {joined}.")

    common: dict[str, Any] = {
        "name": name,
        "scope": _parse_scope(raw.get("targets"), registry, name),
        "timeout": _parse_timeout(raw.get("timeout"), name),
    }

    if kind == "process":
        env = raw.get("env") or {}
        if not isinstance(env, Mapping):
            raise PlanError(f"Step '{name}': env must be a mapping.")
        cwd = raw.get("cwd")
        return ProcessStep(
            **common,
            command=_parse_command(raw.get("command"), name),
            remote=bool(raw.get("remote", True)),
            cwd=str(cwd) if cwd is not None else None,
            env={str(key): str(value) for key, value in env.items()},
        )
    if kind == "transfer":
        return TransferStep(
            **common,
            source=_require_str(raw, "source", name),
            destination=_require_str(raw, "destination", name),
        )
    if kind == "link":
        return LinkStep(
            **common,
            path=_require_str(raw, "path", name),
            points_to=_require_str(raw, "points_to", name),
        )
    resources = raw.get("resources")
    if isinstance(resources, str):
        resources = [resources]
    if not isinstance(resources, list) or not resources:
        raise PlanError(f"Step '{name}': register steps need a non-empty 'resources' list.")
    return RegisterStep(
        **common,
        command=_parse_command(raw.get("command"), name),
        resources=tuple(str(item) for item in resources),
        remote=bool(raw.get("remote", True)),
    )


def _parse_command(value: object, name: str) -> tuple[str, ...]:
    if isinstance(value, str):
        parts = split_command(value)
    elif isinstance(value, list):
        parts = [str(item) for item in value]
    else:
        raise PlanError(f"Step '{name}': command must be a string or a list.")
    if not parts:
        raise PlanError(f"Step '{name}': command is empty.")
    return tuple(parts)


def _parse_scope(
    value: object,
    registry: TargetRegistry | None,
    name: str,
) -> frozenset[str] | None:
    if value is None:
        return None
    if isinstance(value, list):
        spec = ",".join(str(item) for item in value)
    elif isinstance(value, str):
        spec = value
    else:
        raise PlanError(f"Step '{name}': targets must be a spec string or a list.")
    if registry is None:
        return frozenset(term.strip() for term in spec.split(",") if term.strip())
    return frozenset(target.id for target in registry.resolve(spec))


def _parse_timeout(value: object, name: str) -> float | None:
    if value is None:
        return None
    if isinstance(value, bool):
        raise PlanError(f"Step '{name}': timeout must be a number of seconds.")
    try:
        timeout = float(value)  # type: ignore[arg-type]
    except (TypeError, ValueError) as exc:
        raise PlanError(f"Step '{name}': timeout must be a number of seconds.") from exc
    if timeout <= 0:
        raise PlanError(f"Step '{name}': timeout must be greater than zero.")
    return timeout


def _require_str(raw: Mapping[str, object], key: str, name: str) -> str:
    value = raw.get(key)
    if not isinstance(value, str) or not value.strip():
        raise PlanError(f"Step '{name}': '{key}' is required.")
    return value


__all__ = [
    "PlanError",
    "STEP_TYPES",
    "default_plan",
    "load_plan",
    "parse_plan",
    "plan_variables",
    "split_command",
]
