"""Helpers for interacting with the deployctl release registry.

The registry directory (``/var/lib/deployctl/registry`` by default) stores YAML
artifacts such as ``releases.yml``. Files are written atomically (temporary
file plus ``os.replace``) so a crash never leaves a half-written registry.
"""
from __future__ import annotations

import os
import tempfile
from collections.abc import Iterable, Mapping
from copy import deepcopy
from dataclasses import dataclass
from pathlib import Path
from typing import Any

try:  # PyYAML is a runtime dependency declared in pyproject.toml
    import yaml
except Exception as exc:  # pragma: no cover - import failure handled in tests
    raise RuntimeError(
        "PyYAML is required to manage deployctl state. Install with `pip install deployctl`."
    ) from exc

RELEASES_FILE = "releases.yml"


class StateRegistryError(RuntimeError):
    """Raised when state registry operations fail."""


def write_yaml_atomic(path: Path, payload: Mapping[str, object]) -> None:
    """Atomically write *payload* as YAML to *path*."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_fd, tmp_name = tempfile.mkstemp(dir=str(path.parent), prefix=f".{path.name}.")
    tmp_path = Path(tmp_name)
    try:
        with os.fdopen(tmp_fd, "w", encoding="utf-8") as handle:
            yaml.safe_dump(dict(payload), handle, sort_keys=False)
        os.replace(tmp_path, path)
        os.chmod(path, 0o640)
    finally:
        tmp_path.unlink(missing_ok=True)


def read_yaml(path: Path, *, default: object | None = None) -> object | None:
    """Read YAML from *path*, returning *default* when the file is missing."""
    if not path.exists():
        return deepcopy(default)
    try:
        data = yaml.safe_load(path.read_text(encoding="utf-8"))
    except yaml.YAMLError as exc:
        raise StateRegistryError(f"Failed to parse registry file {path}: {exc}") from exc
    return data if data is not None else deepcopy(default)


@dataclass(frozen=True)
class StateRegistry:
    """High-level interface to the YAML registry."""

    root: Path

    def __post_init__(self) -> None:
        """Normalise the root path after initialisation."""
        object.__setattr__(self, "root", self.root.expanduser())

    def ensure_root(self) -> None:
        """Create the registry directory if it does not yet exist."""
        self.root.mkdir(parents=True, exist_ok=True)

    # ------------------------------------------------------------------
    # Public helpers
    # ------------------------------------------------------------------
    def path_for(self, name: str) -> Path:
        """Return the filesystem path for a named registry file."""
        return self.root / name

    def read(self, name: str, *, default: object | None = None) -> object | None:
        """Read a registry file, returning *default* when missing."""
        return read_yaml(self.path_for(name), default=default)

    def write(self, name: str, payload: Mapping[str, object]) -> None:
        """Atomically write *payload* to the given registry file."""
        self.ensure_root()
        write_yaml_atomic(self.path_for(name), payload)

    # Release helpers -------------------------------------------------
    def read_releases(self) -> Mapping[str, object]:
        """Return the contents of ``releases.yml`` (empty mapping if missing)."""
        value = self.read(RELEASES_FILE, default={"releases": []})
        return value if isinstance(value, Mapping) else {"releases": []}

    def write_releases(self, releases: Iterable[object]) -> None:
        """Persist release entries to ``releases.yml``."""
        self.write(RELEASES_FILE, {"releases": list(releases)})

    def list_releases(self) -> list[dict[str, Any]]:
        """Return every registered release in registration order."""
        raw_entries = self.read_releases().get("releases", [])
        if not isinstance(raw_entries, list):
            return []
        return [_normalize_release_entry(item) for item in raw_entries if isinstance(item, Mapping)]

    def get_release(self, release_id: str) -> dict[str, Any] | None:
        """Return the registry entry for *release_id* if present."""
        normalized = _normalize_release_id(release_id)
        for entry in self.list_releases():
            if entry["id"] == normalized:
                return deepcopy(entry)
        return None

    def register_release(self, entry: Mapping[str, object]) -> dict[str, Any]:
        """Record a new release, refusing to alter an existing one.

        Releases are immutable once created. Registering the same release
        again with an identical checksum is a no-op that returns the stored
        entry; a different checksum raises :class:`StateRegistryError`.
        """
        normalized = _normalize_release_entry(entry)
        releases = self.list_releases()
        for existing in releases:
            if existing["id"] != normalized["id"]:
                continue
            if existing.get("checksum") != normalized.get("checksum"):
                raise StateRegistryError(
                    f"Release '{normalized['id']}' is already registered with a different "
                    "archive checksum; choose a new release id."
                )
            return existing
        releases.append(normalized)
        self.write_releases(releases)
        return normalized

    def update_release(self, release_id: str, updates: Mapping[str, object]) -> None:
        """Merge *updates* into the metadata of a registered release."""
        normalized_id = _normalize_release_id(release_id)
        releases = self.list_releases()
        found = False
        for entry in releases:
            if entry["id"] == normalized_id:
                metadata = dict(entry.get("metadata", {}))
                metadata.update(updates)
                entry["metadata"] = metadata
                found = True
        if not found:
            raise StateRegistryError(f"Release '{normalized_id}' not found in registry")
        self.write_releases(releases)


def _normalize_release_id(value: object) -> str:
    release_id = str(value).strip() if value is not None else ""
    if not release_id:
        raise StateRegistryError("Release identifier must be a non-empty string.")
    return release_id


def _normalize_release_entry(entry: Mapping[str, object]) -> dict[str, Any]:
    """Validate and normalise a release registry entry."""
    if not isinstance(entry, Mapping):
        raise StateRegistryError("Release entry must be a mapping.")

    normalized: dict[str, Any] = {"id": _normalize_release_id(entry.get("id"))}

    for key in ("archive", "checksum", "created_at", "source_dir"):
        if entry.get(key) is not None:
            normalized[key] = str(entry[key])

    sources = entry.get("sources")
    if sources is not None:
        if isinstance(sources, (str, bytes)) or not isinstance(sources, Iterable):
            raise StateRegistryError("Release entry 'sources' must be a list of paths.")
        normalized["sources"] = [str(item) for item in sources]

    metadata = entry.get("metadata")
    if metadata is not None:
        if not isinstance(metadata, Mapping):
            raise StateRegistryError("Release entry 'metadata' must be a mapping.")
        normalized["metadata"] = dict(metadata)

    return normalized


__all__ = ["StateRegistry", "StateRegistryError", "read_yaml", "write_yaml_atomic"]
