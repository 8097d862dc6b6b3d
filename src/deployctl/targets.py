"""Target inventory and target-spec resolution.

The inventory is a YAML document::

    targets:
      - name: web1
        host: 10.0.0.5
        user: deploy
        port: 22
        identity_file: ~/.ssh/deploy_ed25519
        vars:
          role: web
      - name: builder
        transport: local
    groups:
      web: [web1, "web-*"]
      everything: [web, builder]

A target spec is a comma separated list of terms. Each term is a target
name, a group name, ``all``, ``localhost`` or a shell-style glob matched
against target names. Every term must match at least one target.
"""
from __future__ import annotations

import fnmatch
from collections.abc import Iterable, Mapping
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

TRANSPORTS = frozenset({"local", "ssh"})
LOCALHOST = "localhost"
_GLOB_CHARS = frozenset("*?[")


class ResolutionError(RuntimeError):
    """Raised when a target spec cannot be resolved to concrete targets."""


@dataclass(frozen=True, slots=True)
class Target:
    """A resolved deployment target and how to reach it."""

    id: str
    transport: str = "ssh"
    address: str | None = None
    user: str | None = None
    port: int = 22
    identity_file: Path | None = None
    vars: Mapping[str, Any] = field(default_factory=dict, compare=False, hash=False)

    @property
    def is_local(self) -> bool:
        """Return ``True`` when commands run on the control node."""
        return self.transport == "local"

    @property
    def destination(self) -> str:
        """Return the ``user@host`` form used by ssh and scp."""
        host = self.address or self.id
        return f"{self.user}@{host}" if self.user else host

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "id": self.id,
            "transport": self.transport,
            "address": self.address,
            "user": self.user,
            "port": self.port,
            "identity_file": str(self.identity_file) if self.identity_file else None,
            "vars": dict(self.vars),
        }


def _local_target() -> Target:
    return Target(id=LOCALHOST, transport="local", address=LOCALHOST)


class TargetRegistry:
    """Resolve target specs against an inventory."""

    def __init__(
        self,
        targets: Iterable[Mapping[str, Any]] = (),
        groups: Mapping[str, Iterable[str]] | None = None,
    ) -> None:
        """Index raw inventory entries by name."""
        self._raw: dict[str, dict[str, Any]] = {}
        for entry in targets:
            if not isinstance(entry, Mapping):
                raise ResolutionError("Inventory targets must be mappings.")
            name = str(entry.get("name", "")).strip()
            if not name:
                raise ResolutionError("Inventory target is missing 'name'.")
            if "/" in name or name in {".", ".."}:
                raise ResolutionError(f"Inventory target name {name!r} cannot name a directory.")
            if name in self._raw:
                raise ResolutionError(f"Duplicate inventory target '{name}'.")
            self._raw[name] = dict(entry)
        self._groups: dict[str, list[str]] = {}
        for group, members in (groups or {}).items():
            if isinstance(members, (str, bytes)) or not isinstance(members, Iterable):
                raise ResolutionError(f"Group '{group}' must list its members.")
            self._groups[str(group)] = [str(member).strip() for member in members]

    @classmethod
    def from_file(cls, path: Path) -> TargetRegistry:
        """Load an inventory file; a missing file yields an empty inventory."""
        if not path.exists():
            return cls()
        try:
            data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
        except yaml.YAMLError as exc:
            raise ResolutionError(f"Failed to parse inventory {path}: {exc}") from exc
        if not isinstance(data, Mapping):
            raise ResolutionError(f"Inventory {path} must contain a mapping at the top level.")
        targets = data.get("targets") or []
        groups = data.get("groups") or {}
        if not isinstance(targets, list):
            raise ResolutionError(f"Inventory {path}: 'targets' must be a list.")
        if not isinstance(groups, Mapping):
            raise ResolutionError(f"Inventory {path}: 'groups' must be a mapping.")
        return cls(targets, groups)

    @property
    def names(self) -> list[str]:
        """Return the inventory target names in declaration order."""
        return list(self._raw)

    @property
    def groups(self) -> dict[str, list[str]]:
        """Return a copy of the group definitions."""
        return {name: list(members) for name, members in self._groups.items()}

    def resolve(self, spec: str) -> set[Target]:
        """Return the targets selected by *spec*."""
        terms = [term.strip() for term in spec.split(",") if term.strip()]
        if not terms:
            raise ResolutionError("Target spec is empty.")
        names: set[str] = set()
        for term in terms:
            names.update(self._expand(term, seen=()))
        return {self._build(name) for name in names}

    def get(self, name: str) -> Target:
        """Return the target named *name*."""
        if name not in self._raw and name != LOCALHOST:
            raise ResolutionError(f"Unknown target '{name}'.")
        return self._build(name)

    # ------------------------------------------------------------------
    def _expand(self, term: str, *, seen: tuple[str, ...]) -> set[str]:
        if term == "all":
            if not self._raw:
                raise ResolutionError("Target spec 'all' matched no hosts: inventory is empty.")
            return set(self._raw)
        if term in self._raw:
            return {term}
        if term in self._groups:
            if term in seen:
                cycle = " -> ".join((*seen, term))
                raise ResolutionError(f"Group cycle detected: {cycle}")
            members: set[str] = set()
            for member in self._groups[term]:
                members.update(self._expand(member, seen=(*seen, term)))
            return members
        if term == LOCALHOST:
            return {LOCALHOST}
        if _GLOB_CHARS & set(term):
            matched = set(fnmatch.filter(self._raw, term))
            if matched:
                return matched
        raise ResolutionError(f"Target spec '{term}' matched no known host.")

    def _build(self, name: str) -> Target:
        raw = self._raw.get(name)
        if raw is None:
            return _local_target()

        transport = str(raw.get("transport", "ssh")).strip().lower()
        if transport not in TRANSPORTS:
            allowed = ", ".join(sorted(TRANSPORTS))
            raise ResolutionError(
                f"Target '{name}' uses unknown transport '{transport}'. Allowed: {allowed}."
            )

        address_raw = raw.get("host", raw.get("address"))
        address = str(address_raw).strip() if address_raw is not None else None
        if transport == "ssh" and not address:
            raise ResolutionError(f"Target '{name}' is missing 'host' for the ssh transport.")

        port_raw = raw.get("port", 22)
        if isinstance(port_raw, bool):
            raise ResolutionError(f"Target '{name}' has an invalid port: {port_raw!r}.")
        try:
            port = int(port_raw)
        except (TypeError, ValueError) as exc:
            raise ResolutionError(f"Target '{name}' has an invalid port: {port_raw!r}.") from exc
        if not 1 <= port <= 65535:
            raise ResolutionError(f"Target '{name}' port {port} is out of range.")

        user_raw = raw.get("user")
        identity_raw = raw.get("identity_file")
        variables = raw.get("vars") or {}
        if not isinstance(variables, Mapping):
            raise ResolutionError(f"Target '{name}' vars must be a mapping.")

        return Target(
            id=name,
            transport=transport,
            address=address or (LOCALHOST if transport == "local" else None),
            user=str(user_raw).strip() if user_raw else None,
            port=port,
            identity_file=Path(str(identity_raw)).expanduser() if identity_raw else None,
            vars=dict(variables),
        )


__all__ = ["LOCALHOST", "ResolutionError", "Target", "TargetRegistry"]
