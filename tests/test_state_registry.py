"""State registry helpers tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from deployctl.state import StateRegistry, StateRegistryError


def _entry(release_id: str = "20261018120000", checksum: str = "abc") -> dict[str, object]:
    return {
        "id": release_id,
        "archive": f"/var/tmp/deployctl/release-{release_id}.tar.gz",
        "checksum": checksum,
        "created_at": "2026-10-18T12:00:00+00:00",
        "sources": ["app.py", "vendor/lib.py"],
    }


def test_read_missing_files_returns_default(tmp_path: Path) -> None:
    """Missing files return the provided default structure."""
    registry = StateRegistry(tmp_path)

    result = registry.read("releases.yml", default={"releases": []})

    assert result == {"releases": []}


def test_write_and_read_roundtrip(tmp_path: Path) -> None:
    """Writing a registry file and reading it back succeeds."""
    registry = StateRegistry(tmp_path / "registry")
    payload = {"releases": [{"id": "r1"}]}

    registry.write("releases.yml", payload)

    path = tmp_path / "registry" / "releases.yml"
    assert path.exists()
    assert (path.stat().st_mode & 0o777) == 0o640
    assert registry.read("releases.yml") == payload
    assert not [item for item in path.parent.iterdir() if item.name.startswith(".")]


def test_invalid_yaml_raises(tmp_path: Path) -> None:
    """Invalid YAML raises a StateRegistryError."""
    registry = StateRegistry(tmp_path)
    (tmp_path / "releases.yml").write_text("::: not yaml :::\n")

    with pytest.raises(StateRegistryError):
        registry.read("releases.yml")


def test_register_and_get_release(tmp_path: Path) -> None:
    """Registered releases are returned by id."""
    registry = StateRegistry(tmp_path)

    stored = registry.register_release(_entry())

    assert stored["sources"] == ["app.py", "vendor/lib.py"]
    assert registry.get_release("20261018120000") == stored
    assert registry.get_release("missing") is None
    assert [item["id"] for item in registry.list_releases()] == ["20261018120000"]


def test_register_release_is_idempotent_for_same_checksum(tmp_path: Path) -> None:
    """Registering the same release twice keeps a single entry."""
    registry = StateRegistry(tmp_path)

    registry.register_release(_entry())
    registry.register_release(_entry())

    assert len(registry.list_releases()) == 1


def test_register_release_refuses_different_checksum(tmp_path: Path) -> None:
    """Releases are immutable once registered."""
    registry = StateRegistry(tmp_path)
    registry.register_release(_entry(checksum="abc"))

    with pytest.raises(StateRegistryError, match="different archive checksum"):
        registry.register_release(_entry(checksum="def"))


def test_update_release_merges_metadata(tmp_path: Path) -> None:
    """update_release merges into the metadata mapping."""
    registry = StateRegistry(tmp_path)
    registry.register_release({**_entry(), "metadata": {"size_bytes": 10}})

    registry.update_release("20261018120000", {"last_run": {"ok": True}})

    entry = registry.get_release("20261018120000")
    assert entry is not None
    assert entry["metadata"] == {"size_bytes": 10, "last_run": {"ok": True}}


def test_update_unknown_release_raises(tmp_path: Path) -> None:
    """Updating a release that was never registered fails."""
    registry = StateRegistry(tmp_path)

    with pytest.raises(StateRegistryError, match="not found"):
        registry.update_release("nope", {"x": 1})


def test_entry_validation(tmp_path: Path) -> None:
    """Malformed entries are rejected."""
    registry = StateRegistry(tmp_path)

    with pytest.raises(StateRegistryError):
        registry.register_release({"id": ""})
    with pytest.raises(StateRegistryError):
        registry.register_release({"id": "r1", "sources": "app.py"})
