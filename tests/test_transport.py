"""Transport tests: process control and ssh command construction."""
from __future__ import annotations

import os
import subprocess
import sys
import threading
import time
from collections.abc import Sequence
from pathlib import Path

import pytest

from deployctl.config import SSHConfig
from deployctl.providers import transport as transport_module
from deployctl.providers.transport import (
    Deadline,
    LocalTransport,
    SSHTransport,
    TransportCancelledError,
    TransportError,
    TransportTimeoutError,
    run_process,
    transport_for,
)
from deployctl.targets import Target

REMOTE = Target(
    id="web1",
    address="10.0.0.1",
    user="deploy",
    port=2222,
    identity_file=Path("/keys/deploy"),
)


class RecordingRunner:
    """Stand-in for run_process that records argv and replies per call."""

    def __init__(self, replies: Sequence[tuple[int, str]] = ()) -> None:
        self.calls: list[list[str]] = []
        self._replies = list(replies)

    def __call__(self, args: Sequence[str], **_: object) -> subprocess.CompletedProcess[str]:
        self.calls.append(list(args))
        returncode, stdout = self._replies.pop(0) if self._replies else (0, "")
        return subprocess.CompletedProcess(list(args), returncode, stdout, "")


@pytest.fixture()
def recorder(monkeypatch: pytest.MonkeyPatch) -> RecordingRunner:
    """Patch run_process in the transport module."""
    runner = RecordingRunner()
    monkeypatch.setattr(transport_module, "run_process", runner)
    return runner


def test_run_process_captures_output() -> None:
    """stdout, stderr and the exit code are returned."""
    result = run_process(
        [sys.executable, "-c", "import sys; print('out'); sys.stderr.write('err'); sys.exit(2)"],
        timeout=30,
    )

    assert result.returncode == 2
    assert result.stdout.strip() == "out"
    assert result.stderr == "err"


@pytest.mark.mutation_timeout
def test_run_process_timeout_kills_process() -> None:
    """Exceeding the timeout raises TransportTimeoutError."""
    with pytest.raises(TransportTimeoutError):
        run_process([sys.executable, "-c", "import time; time.sleep(30)"], timeout=0.3)


@pytest.mark.mutation_timeout
def test_run_process_cancel_event() -> None:
    """A set cancel event stops the process."""
    event = threading.Event()
    timer = threading.Timer(0.2, event.set)
    timer.start()
    try:
        with pytest.raises(TransportCancelledError):
            run_process(
                [sys.executable, "-c", "import time; time.sleep(30)"],
                timeout=30,
                cancel_event=event,
            )
    finally:
        timer.cancel()


def test_run_process_missing_binary() -> None:
    """A missing executable is a transport error."""
    with pytest.raises(TransportError, match="not found"):
        run_process(["/nonexistent/deployctl-binary"], timeout=5)


def test_ssh_command_includes_connection_options() -> None:
    """Port, identity file, timeout and extra options reach ssh."""
    transport = SSHTransport(REMOTE, SSHConfig(connect_timeout=7, options=("BatchMode=yes",)))

    argv = transport.ssh_command("uptime")

    assert argv == [
        "ssh",
        "-p",
        "2222",
        "-o",
        "ConnectTimeout=7",
        "-o",
        "BatchMode=yes",
        "-i",
        "/keys/deploy",
        "deploy@10.0.0.1",
        "--",
        "uptime",
    ]


def test_ssh_run_quotes_arguments(recorder: RecordingRunner) -> None:
    """Arguments, env and cwd are shell-quoted for the remote side."""
    transport = SSHTransport(REMOTE, SSHConfig())

    transport.run(["tar", "-xzf", "my file.tgz"], timeout=5, cwd="/opt/app dir", env={"A": "b c"})

    remote = recorder.calls[0][-1]
    assert remote == "cd '/opt/app dir' && env A='b c' tar -xzf 'my file.tgz'"


def test_ssh_upload_copies_to_temp_then_renames(recorder: RecordingRunner, tmp_path: Path) -> None:
    """Uploads use scp to a temporary name and mv into place."""
    artifact = tmp_path / "release.tar.gz"
    artifact.write_bytes(b"x")
    transport = SSHTransport(REMOTE, SSHConfig())

    transport.upload(artifact, "/opt/deployctl/archives/release.tar.gz", timeout=5)

    mkdir, scp, move = recorder.calls
    assert mkdir[-1] == "mkdir -p -- /opt/deployctl/archives"
    assert scp[0] == "scp"
    assert scp[1:3] == ["-P", "2222"]
    assert scp[-1] == "deploy@10.0.0.1:/opt/deployctl/archives/release.tar.gz.deployctl-upload"
    assert move[-1].startswith("mv -f -- /opt/deployctl/archives/release.tar.gz.deployctl-upload ")


def test_ssh_checksum_parses_sha256sum(monkeypatch: pytest.MonkeyPatch) -> None:
    """The digest is the first field of sha256sum output; absence yields None."""
    runner = RecordingRunner([(0, "abc123  /tmp/file\n"), (0, "__deployctl_missing__\n")])
    monkeypatch.setattr(transport_module, "run_process", runner)
    transport = SSHTransport(REMOTE, SSHConfig())

    assert transport.checksum("/tmp/file", timeout=5) == "abc123"
    assert transport.checksum("/tmp/absent", timeout=5) is None


def test_ssh_failure_raises_transport_error(monkeypatch: pytest.MonkeyPatch) -> None:
    """A failing remote helper raises TransportError with its exit code."""
    monkeypatch.setattr(transport_module, "run_process", RecordingRunner([(255, "")]))
    transport = SSHTransport(REMOTE, SSHConfig())

    with pytest.raises(TransportError, match="exit 255"):
        transport.read_link("/opt/current", timeout=5)


def test_ssh_replace_symlink_uses_rename(recorder: RecordingRunner) -> None:
    """The link is built under a temporary name and renamed over the target."""
    transport = SSHTransport(REMOTE, SSHConfig())

    transport.replace_symlink("/opt/deployctl/current", "/opt/deployctl/releases/r1", timeout=5)

    remote = recorder.calls[0][-1]
    assert "ln -sfn -- /opt/deployctl/releases/r1 /opt/deployctl/current.deployctl-tmp" in remote
    assert remote.endswith("mv -Tf -- /opt/deployctl/current.deployctl-tmp /opt/deployctl/current")


def test_transport_for_selects_by_target() -> None:
    """Local targets use LocalTransport, others ssh."""
    local = Target(id="localhost", transport="local", address="localhost")

    assert isinstance(transport_for(local), LocalTransport)
    assert isinstance(transport_for(REMOTE), SSHTransport)


def test_ssh_upload_shares_one_deadline(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    """mkdir, scp and mv split a single timeout between them."""
    timeouts: list[float] = []

    def slow_runner(
        args: Sequence[str], *, timeout: float, **_: object
    ) -> subprocess.CompletedProcess[str]:
        timeouts.append(timeout)
        time.sleep(0.05)
        return subprocess.CompletedProcess(list(args), 0, "", "")

    monkeypatch.setattr(transport_module, "run_process", slow_runner)
    artifact = tmp_path / "release.tar.gz"
    artifact.write_bytes(b"x")

    SSHTransport(REMOTE, SSHConfig()).upload(artifact, "/opt/archives/release.tar.gz", timeout=10)

    assert len(timeouts) == 3
    assert 10 >= timeouts[0] > timeouts[1] > timeouts[2]


def test_deadline_raises_once_spent() -> None:
    """An exhausted budget is a timeout."""
    deadline = Deadline(0.05)
    assert 0 < deadline.remaining() <= 0.05
    time.sleep(0.1)

    with pytest.raises(TransportTimeoutError):
        deadline.remaining()


def test_local_symlink_swaps_do_not_collide(tmp_path: Path) -> None:
    """Concurrent swaps of one link each use their own temporary name."""
    link = tmp_path / "current"
    errors: list[BaseException] = []

    def swap(name: str) -> None:
        transport = LocalTransport(Target(id=name, transport="local", address="localhost"))
        for index in range(50):
            try:
                transport.replace_symlink(str(link), f"/srv/releases/{name}-{index}", timeout=5)
            except TransportError as exc:
                errors.append(exc)

    threads = [threading.Thread(target=swap, args=(name,)) for name in ("web1", "web2")]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert errors == []
    assert os.readlink(link).startswith("/srv/releases/")
    assert [path.name for path in tmp_path.iterdir()] == ["current"]
