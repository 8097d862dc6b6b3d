"""Target inventory and spec resolution tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from deployctl.targets import ResolutionError, Target, TargetRegistry

INVENTORY = """\
targets:
  - name: web1
    host: 10.0.0.1
    user: deploy
  - name: web2
    host: 10.0.0.2
    port: 2222
    identity_file: ~/.ssh/deploy
  - name: db1
    host: 10.0.1.1
    vars:
      role: database
  - name: builder
    transport: local
groups:
  web: [web1, web2]
  backend: [db1]
  everything: [web, backend]
"""


@pytest.fixture()
def registry(tmp_path: Path) -> TargetRegistry:
    """Load the sample inventory."""
    path = tmp_path / "inventory.yml"
    path.write_text(INVENTORY)
    return TargetRegistry.from_file(path)


def _ids(targets: set[Target]) -> list[str]:
    return sorted(target.id for target in targets)


def test_resolve_names_groups_and_globs(registry: TargetRegistry) -> None:
    """Names, groups, nested groups and globs can be combined."""
    assert _ids(registry.resolve("web1")) == ["web1"]
    assert _ids(registry.resolve("web")) == ["web1", "web2"]
    assert _ids(registry.resolve("everything")) == ["db1", "web1", "web2"]
    assert _ids(registry.resolve("web*, db1")) == ["db1", "web1", "web2"]
    assert _ids(registry.resolve("all")) == ["builder", "db1", "web1", "web2"]


def test_resolve_deduplicates(registry: TargetRegistry) -> None:
    """Overlapping terms select each target once."""
    assert _ids(registry.resolve("web,web1,web*")) == ["web1", "web2"]


def test_localhost_is_implicit(registry: TargetRegistry) -> None:
    """``localhost`` resolves without an inventory entry."""
    [target] = registry.resolve("localhost")

    assert target.is_local
    assert target.transport == "local"


def test_unknown_term_raises(registry: TargetRegistry) -> None:
    """Any term matching nothing fails the whole spec."""
    with pytest.raises(ResolutionError, match="nosuchhost"):
        registry.resolve("web1,nosuchhost")
    with pytest.raises(ResolutionError):
        registry.resolve("cache*")
    with pytest.raises(ResolutionError, match="empty"):
        registry.resolve(" , ")


def test_connection_details_are_parsed(registry: TargetRegistry) -> None:
    """Ports, users, identity files and vars come from the inventory."""
    web1 = registry.get("web1")
    web2 = registry.get("web2")
    db1 = registry.get("db1")

    assert web1.destination == "deploy@10.0.0.1"
    assert web1.port == 22
    assert web2.port == 2222
    assert web2.identity_file == Path("~/.ssh/deploy").expanduser()
    assert db1.vars == {"role": "database"}
    assert db1.to_dict()["vars"] == {"role": "database"}


@pytest.mark.parametrize(
    ("entry", "message"),
    [
        ({"name": "bad", "host": "h", "port": "ssh"}, "invalid port"),
        ({"name": "bad", "host": "h", "port": 70000}, "out of range"),
        ({"name": "bad", "host": "h", "port": True}, "invalid port"),
        ({"name": "bad"}, "missing 'host'"),
        ({"name": "bad", "host": "h", "transport": "telnet"}, "unknown transport"),
    ],
)
def test_malformed_connection_parameters_raise(entry: dict[str, object], message: str) -> None:
    """Malformed descriptors fail resolution."""
    registry = TargetRegistry([entry])

    with pytest.raises(ResolutionError, match=message):
        registry.resolve("bad")


def test_group_cycles_are_detected() -> None:
    """Groups referencing each other in a loop are rejected."""
    registry = TargetRegistry(
        [{"name": "web1", "host": "h"}],
        {"a": ["b"], "b": ["a"]},
    )

    with pytest.raises(ResolutionError, match="cycle"):
        registry.resolve("a")


def test_missing_inventory_is_empty(tmp_path: Path) -> None:
    """A missing inventory only resolves localhost."""
    registry = TargetRegistry.from_file(tmp_path / "absent.yml")

    assert registry.names == []
    assert _ids(registry.resolve("localhost")) == ["localhost"]
    with pytest.raises(ResolutionError):
        registry.resolve("all")


def test_duplicate_names_rejected() -> None:
    """Inventory names are unique."""
    with pytest.raises(ResolutionError, match="Duplicate"):
        TargetRegistry([{"name": "a", "host": "h"}, {"name": "a", "host": "h"}])


@pytest.mark.parametrize("name", ["dc1/web", ".", ".."])
def test_names_that_cannot_name_a_directory_are_rejected(name: str) -> None:
    """Target names become ledger path segments, so path separators are refused."""
    with pytest.raises(ResolutionError, match="cannot name a directory"):
        TargetRegistry([{"name": name, "transport": "local"}, {"name": "ok", "transport": "local"}])
