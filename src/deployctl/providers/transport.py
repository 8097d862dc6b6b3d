"""Transports carrying step operations to a target.

``LocalTransport`` acts on the control node directly. ``SSHTransport``
drives the ``ssh`` and ``scp`` binaries. Both run external processes through
:func:`run_process`, which enforces a timeout and honours a cancellation
event by terminating the child's whole process group.
"""
from __future__ import annotations

import logging
import os
import secrets
import shlex
import signal
import subprocess
import tempfile
import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Mapping, Sequence
from pathlib import Path

from ..archive import compute_checksum
from ..config import SSHConfig
from ..targets import Target

LOGGER = logging.getLogger(__name__)

_POLL_INTERVAL = 0.1
_TERMINATE_GRACE = 5.0
_MISSING_MARKER = "__deployctl_missing__"


class TransportError(RuntimeError):
    """Raised when a transport operation fails."""


class TransportTimeoutError(TransportError):
    """Raised when a process exceeds its timeout."""


class TransportCancelledError(TransportError):
    """Raised when a process is stopped because the run was cancelled."""


class Deadline:
    """One time budget shared by a sequence of process calls."""

    def __init__(self, seconds: float) -> None:
        """Start the clock for *seconds*."""
        self.seconds = seconds
        self._expires = time.monotonic() + seconds

    def remaining(self) -> float:
        """Return the seconds left; raise once the budget is spent."""
        left = self._expires - time.monotonic()
        if left <= 0:
            raise TransportTimeoutError(f"Timed out after {self.seconds:.0f}s")
        return left


def run_process(
    args: Sequence[str],
    *,
    timeout: float,
    cancel_event: threading.Event | None = None,
    cwd: Path | str | None = None,
    env: Mapping[str, str] | None = None,
) -> subprocess.CompletedProcess[str]:
    """Run *args*, capturing output, bounded by *timeout* and *cancel_event*."""
    if cancel_event is not None and cancel_event.is_set():
        raise TransportCancelledError(f"{args[0]} not started: run cancelled")
    env_vars = None
    if env:
        env_vars = os.environ.copy()
        env_vars.update(env)
    try:
        process = subprocess.Popen(  # noqa: S603 - controlled command execution
            list(args),
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            stdin=subprocess.DEVNULL,
            text=True,
            cwd=str(cwd) if cwd is not None else None,
            env=env_vars,
            start_new_session=True,
        )
    except FileNotFoundError as exc:
        raise TransportError(f"{args[0]} not found: {exc}") from exc
    except OSError as exc:
        raise TransportError(f"Failed to start {args[0]}: {exc}") from exc

    deadline = time.monotonic() + timeout
    while True:
        remaining = deadline - time.monotonic()
        if remaining <= 0:
            _terminate(process)
            raise TransportTimeoutError(f"{args[0]} timed out after {timeout:g}s")
        if cancel_event is not None and cancel_event.is_set():
            _terminate(process)
            raise TransportCancelledError(f"{args[0]} stopped: run cancelled")
        try:
            stdout, stderr = process.communicate(timeout=min(_POLL_INTERVAL, remaining))
            break
        except subprocess.TimeoutExpired:
            continue
    return subprocess.CompletedProcess(list(args), process.returncode, stdout, stderr)


def _terminate(process: subprocess.Popen[str]) -> None:
    for sig, grace in ((signal.SIGTERM, _TERMINATE_GRACE), (signal.SIGKILL, None)):
        try:
            os.killpg(process.pid, sig)
        except ProcessLookupError:
            break
        try:
            process.communicate(timeout=grace)
            return
        except subprocess.TimeoutExpired:
            continue
    process.communicate()


def _check(result: subprocess.CompletedProcess[str], action: str) -> str:
    if result.returncode != 0:
        message = (result.stderr or "").strip() or (result.stdout or "").strip() or "no output"
        raise TransportError(f"{action} failed (exit {result.returncode}): {message}")
    return result.stdout or ""


class Transport(ABC):
    """Operations every transport offers to the step executor."""

    def __init__(self, target: Target) -> None:
        """Bind the transport to *target*."""
        self.target = target

    @abstractmethod
    def run(
        self,
        command: Sequence[str],
        *,
        timeout: float,
        cancel_event: threading.Event | None = None,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *command* on the target and return the completed process."""

    @abstractmethod
    def upload(
        self,
        source: Path,
        destination: str,
        *,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Copy *source* to *destination* on the target, replacing it atomically."""

    @abstractmethod
    def checksum(
        self,
        path: str,
        *,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> str | None:
        """Return the SHA-256 of *path* on the target, ``None`` when absent."""

    @abstractmethod
    def read_link(
        self,
        path: str,
        *,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> str | None:
        """Return the target of symlink *path*, ``None`` if it is not a symlink."""

    @abstractmethod
    def replace_symlink(
        self,
        link: str,
        points_to: str,
        *,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Point *link* at *points_to* via an atomic rename."""


class LocalTransport(Transport):
    """Perform operations on the control node."""

    def run(
        self,
        command: Sequence[str],
        *,
        timeout: float,
        cancel_event: threading.Event | None = None,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *command* as a local child process."""
        return run_process(command, timeout=timeout, cancel_event=cancel_event, cwd=cwd, env=env)

    def upload(
        self,
        source: Path,
        destination: str,
        *,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Copy *source* next to *destination*, then rename it into place."""
        target_path = Path(destination)
        try:
            target_path.parent.mkdir(parents=True, exist_ok=True)
            tmp_fd, tmp_name = tempfile.mkstemp(
                dir=str(target_path.parent), prefix=f".{target_path.name}."
            )
        except OSError as exc:
            raise TransportError(f"Cannot prepare {destination}: {exc}") from exc
        tmp_path = Path(tmp_name)
        try:
            with os.fdopen(tmp_fd, "wb") as out, source.open("rb") as src:
                for chunk in iter(lambda: src.read(1024 * 1024), b""):
                    if cancel_event is not None and cancel_event.is_set():
                        raise TransportCancelledError(f"copy to {destination} cancelled")
                    out.write(chunk)
            os.chmod(tmp_path, 0o644)
            os.replace(tmp_path, target_path)
        except OSError as exc:
            raise TransportError(f"Copy of {source} to {destination} failed: {exc}") from exc
        finally:
            tmp_path.unlink(missing_ok=True)

    def checksum(
        self,
        path: str,
        *,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> str | None:
        """Return the local file's SHA-256."""
        candidate = Path(path)
        if not candidate.is_file():
            return None
        return compute_checksum(candidate)

    def read_link(
        self,
        path: str,
        *,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> str | None:
        """Return ``os.readlink`` of *path* when it is a symlink."""
        candidate = Path(path)
        if not candidate.is_symlink():
            return None
        return os.readlink(candidate)

    def replace_symlink(
        self,
        link: str,
        points_to: str,
        *,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Create a temporary symlink and rename it over *link*."""
        link_path = Path(link)
        if link_path.exists() and not link_path.is_symlink() and link_path.is_dir():
            raise TransportError(f"Refusing to replace directory {link} with a symlink")
        temp_link = link_path.with_name(
            f".{link_path.name}.{secrets.token_hex(4)}.deployctl-tmp"
        )
        try:
            link_path.parent.mkdir(parents=True, exist_ok=True)
            temp_link.symlink_to(points_to)
            temp_link.replace(link_path)
        except OSError as exc:
            temp_link.unlink(missing_ok=True)
            raise TransportError(f"Failed to link {link} -> {points_to}: {exc}") from exc


class SSHTransport(Transport):
    """Perform operations on a remote host over ``ssh``/``scp``."""

    def __init__(self, target: Target, config: SSHConfig) -> None:
        """Bind to *target* using binaries and options from *config*."""
        super().__init__(target)
        self.config = config

    def _options(self, port_flag: str) -> list[str]:
        args = [port_flag, str(self.target.port), "-o", f"ConnectTimeout={self.config.connect_timeout}"]
        for option in self.config.options:
            args.extend(["-o", option])
        if self.target.identity_file is not None:
            args.extend(["-i", str(self.target.identity_file)])
        return args

    def ssh_command(self, remote_command: str) -> list[str]:
        """Return the argv running *remote_command* on the target."""
        return [
            self.config.ssh_bin,
            *self._options("-p"),
            self.target.destination,
            "--",
            remote_command,
        ]

    def _shell(
        self,
        remote_command: str,
        *,
        timeout: float,
        cancel_event: threading.Event | None,
    ) -> subprocess.CompletedProcess[str]:
        LOGGER.debug("ssh %s: %s", self.target.id, remote_command)
        return run_process(
            self.ssh_command(remote_command),
            timeout=timeout,
            cancel_event=cancel_event,
        )

    def run(
        self,
        command: Sequence[str],
        *,
        timeout: float,
        cancel_event: threading.Event | None = None,
        cwd: str | None = None,
        env: Mapping[str, str] | None = None,
    ) -> subprocess.CompletedProcess[str]:
        """Run *command* remotely, quoting every argument."""
        remote = shlex.join(list(command))
        if env:
            assignments = " ".join(f"{key}={shlex.quote(value)}" for key, value in env.items())
            remote = f"env {assignments} {remote}"
        if cwd:
            remote = f"cd {shlex.quote(cwd)} && {remote}"
        return self._shell(remote, timeout=timeout, cancel_event=cancel_event)

    def upload(
        self,
        source: Path,
        destination: str,
        *,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """Copy with ``scp`` to a temporary name and ``mv`` it into place."""
        deadline = Deadline(timeout)
        parent = str(Path(destination).parent)
        temp_remote = f"{destination}.deployctl-upload"
        _check(
            self._shell(
                f"mkdir -p -- {shlex.quote(parent)}",
                timeout=deadline.remaining(),
                cancel_event=cancel_event,
            ),
            f"mkdir {parent} on {self.target.id}",
        )
        scp = [
            self.config.scp_bin,
            *self._options("-P"),
            str(source),
            f"{self.target.destination}:{temp_remote}",
        ]
        _check(
            run_process(scp, timeout=deadline.remaining(), cancel_event=cancel_event),
            f"scp to {self.target.id}",
        )
        _check(
            self._shell(
                f"mv -f -- {shlex.quote(temp_remote)} {shlex.quote(destination)}",
                timeout=deadline.remaining(),
                cancel_event=cancel_event,
            ),
            f"rename upload on {self.target.id}",
        )

    def checksum(
        self,
        path: str,
        *,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> str | None:
        """Run ``sha256sum`` remotely."""
        quoted = shlex.quote(path)
        output = _check(
            self._shell(
                f"if [ -f {quoted} ]; then sha256sum -- {quoted}; "
                f"else echo {_MISSING_MARKER}; fi",
                timeout=timeout,
                cancel_event=cancel_event,
            ),
            f"sha256sum on {self.target.id}",
        ).strip()
        if not output or output == _MISSING_MARKER:
            return None
        return output.split()[0]

    def read_link(
        self,
        path: str,
        *,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> str | None:
        """Run ``readlink`` remotely."""
        quoted = shlex.quote(path)
        output = _check(
            self._shell(
                f"if [ -L {quoted} ]; then readlink -- {quoted}; fi",
                timeout=timeout,
                cancel_event=cancel_event,
            ),
            f"readlink on {self.target.id}",
        ).rstrip("\n")
        return output or None

    def replace_symlink(
        self,
        link: str,
        points_to: str,
        *,
        timeout: float,
        cancel_event: threading.Event | None = None,
    ) -> None:
        """``ln -sfn`` to a temporary name, then ``mv -T`` over the link."""
        temp_link = f"{link}.deployctl-tmp"
        command = (
            f"mkdir -p -- {shlex.quote(str(Path(link).parent))} && "
            f"ln -sfn -- {shlex.quote(points_to)} {shlex.quote(temp_link)} && "
            f"mv -Tf -- {shlex.quote(temp_link)} {shlex.quote(link)}"
        )
        _check(
            self._shell(command, timeout=timeout, cancel_event=cancel_event),
            f"symlink update on {self.target.id}",
        )


def transport_for(target: Target, ssh_config: SSHConfig | None = None) -> Transport:
    """Return the transport matching *target*'s connection descriptor."""
    if target.is_local:
        return LocalTransport(target)
    return SSHTransport(target, ssh_config or SSHConfig())


__all__ = [
    "Deadline",
    "LocalTransport",
    "SSHTransport",
    "Transport",
    "TransportCancelledError",
    "TransportError",
    "TransportTimeoutError",
    "run_process",
    "transport_for",
]
