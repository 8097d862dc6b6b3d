"""Configuration loader tests."""
from __future__ import annotations

from pathlib import Path

import pytest

from deployctl.config import AppConfig, ConfigError, SSHConfig, load_config


def test_load_config_defaults_when_file_missing(tmp_path: Path) -> None:
    """Defaults apply when no config file is present."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    assert isinstance(config, AppConfig)
    assert config.deploy_dir == Path("/opt/deployctl")
    assert config.state_dir == Path("/var/lib/deployctl")
    assert config.registry_dir == Path("/var/lib/deployctl/registry")
    assert config.plan_file is None
    assert config.max_workers == 4
    assert config.step_timeout == 300.0
    assert config.ssh == SSHConfig()
    assert config.tool_dirs == {}


def test_load_config_reads_yaml_file(tmp_path: Path) -> None:
    """Values are loaded from the YAML config file."""
    cfg = tmp_path / "deployctl.yml"
    cfg.write_text(
        f"deploy_dir: {tmp_path / 'deploy'}\n"
        "max_workers: 2\n"
        "archive_name: webapp\n"
        "ssh:\n"
        "  connect_timeout: 3\n"
        "  options: [BatchMode=yes, StrictHostKeyChecking=no]\n"
        "tool_dirs:\n"
        "  packs: /opt/stackstorm/packs\n"
    )

    config = load_config(config_file=cfg, env={})

    assert config.config_file == cfg
    assert config.deploy_dir == tmp_path / "deploy"
    assert config.max_workers == 2
    assert config.archive_name == "webapp"
    assert config.ssh.connect_timeout == 3
    assert config.ssh.options == ("BatchMode=yes", "StrictHostKeyChecking=no")
    assert config.tool_dirs == {"packs": Path("/opt/stackstorm/packs")}


def test_env_overrides_take_precedence(tmp_path: Path) -> None:
    """Environment variables override defaults and file settings."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("max_workers: 2\nlock_timeout: 10\n")
    state_dir = tmp_path / "state"
    env = {
        "DEPLOYCTL_MAX_WORKERS": "8",
        "DEPLOYCTL_STATE_DIR": str(state_dir),
        "DEPLOYCTL_SSH__SSH_BIN": "/usr/local/bin/ssh",
        "DEPLOYCTL_TOOL_DIRS__PACKS": str(tmp_path / "packs"),
    }

    config = load_config(config_file=cfg, env=env)

    assert config.max_workers == 8
    assert config.lock_timeout == 10.0
    assert config.state_dir == state_dir
    assert config.registry_dir == state_dir / "registry"
    assert config.ssh.ssh_bin == "/usr/local/bin/ssh"
    assert config.tool_dirs["packs"] == tmp_path / "packs"


def test_overrides_win_over_env(tmp_path: Path) -> None:
    """Programmatic overrides (CLI flags) are applied last."""
    config = load_config(
        config_file=tmp_path / "missing.yml",
        env={"DEPLOYCTL_LOCK_TIMEOUT": "45"},
        overrides={"lock_timeout": 5},
    )

    assert config.lock_timeout == 5.0


def test_env_can_select_config_file(tmp_path: Path) -> None:
    """Environment variable selects an alternate config file."""
    cfg = tmp_path / "override.yml"
    cfg.write_text(f"plan_file: {tmp_path / 'plan.yml'}\n")

    config = load_config(env={"DEPLOYCTL_CONFIG_FILE": str(cfg)})

    assert config.config_file == cfg
    assert config.plan_file == tmp_path / "plan.yml"


def test_invalid_config_file_raises(tmp_path: Path) -> None:
    """A non-mapping document raises a ConfigError."""
    cfg = tmp_path / "bad.yml"
    cfg.write_text("- not-a-mapping\n")

    with pytest.raises(ConfigError):
        load_config(config_file=cfg, env={})


def test_unknown_top_level_key_raises(tmp_path: Path) -> None:
    """Unexpected top-level keys trigger ConfigError."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("unknown: value\n")

    with pytest.raises(ConfigError, match="Unknown configuration keys"):
        load_config(config_file=cfg, env={})


def test_unknown_ssh_keys_raise(tmp_path: Path) -> None:
    """Extra ssh keys produce ConfigError for clarity."""
    cfg = tmp_path / "config.yml"
    cfg.write_text("ssh:\n  ssh_bin: ssh\n  extra: true\n")

    with pytest.raises(ConfigError, match="Unknown ssh configuration keys"):
        load_config(config_file=cfg, env={})


@pytest.mark.parametrize(
    ("body", "message"),
    [
        ("max_workers: 0\n", "max_workers"),
        ("step_timeout: -1\n", "step_timeout"),
        ("archive_name: a/b\n", "archive_name"),
        ("tool_dirs:\n  packs: 5\n", "tool_dirs.packs"),
    ],
)
def test_invalid_values_raise(tmp_path: Path, body: str, message: str) -> None:
    """Out-of-range or malformed values are rejected."""
    cfg = tmp_path / "config.yml"
    cfg.write_text(body)

    with pytest.raises(ConfigError, match=message):
        load_config(config_file=cfg, env={})


def test_to_dict_is_serialisable(tmp_path: Path) -> None:
    """to_dict renders paths as strings."""
    config = load_config(config_file=tmp_path / "missing.yml", env={})

    data = config.to_dict()

    assert data["deploy_dir"] == "/opt/deployctl"
    assert data["plan_file"] is None
    assert data["ssh"]["options"] == ["BatchMode=yes"]  # type: ignore[index]
