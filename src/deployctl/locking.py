"""Advisory file locks guarding deployctl state.

Locks live under the runtime directory (``/run/deployctl`` by default):

* ``deployctl.lock``: the global lock taken before mutating shared state.
* ``releases/<release>.lock``: one lock per release being deployed.
* ``keys/<release>/<step>/<target>.lock``: one lock per idempotency key, held
  for the whole execution of that key so two runs never execute it at once.

Locks use ``fcntl.flock`` on a dedicated file descriptor, which serialises
both threads and processes. The lockfile keeps the holder's metadata for
diagnostics after release.
"""
from __future__ import annotations

import fcntl
import json
import os
import time
from collections.abc import Iterable, Iterator, Sequence
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path

GLOBAL_LOCK_NAME = "deployctl.lock"
_POLL_INTERVAL = 0.05


class LockTimeoutError(RuntimeError):
    """Raised when a lock cannot be acquired within the timeout."""


@dataclass(slots=True)
class LockHandle:
    """A held lock and how long acquiring it took."""

    path: Path
    wait_ms: int


@dataclass(slots=True)
class LockBundle:
    """Several locks acquired together, in order."""

    handles: list[LockHandle]

    @property
    def wait_ms(self) -> int:
        """Return the cumulative wait across every lock in the bundle."""
        return sum(handle.wait_ms for handle in self.handles)


def _safe_component(value: str) -> str:
    cleaned = value.strip().replace("/", "_").replace(os.sep, "_")
    if cleaned in {"", ".", ".."}:
        raise ValueError(f"Invalid lock name component: {value!r}")
    return cleaned


class LockManager:
    """Hand out global, release and per-key locks."""

    def __init__(self, runtime_dir: Path, default_timeout: float = 30.0) -> None:
        """Store the lock root and the default acquisition timeout."""
        self.runtime_dir = runtime_dir.expanduser()
        self.default_timeout = default_timeout

    # ------------------------------------------------------------------
    # Lock paths
    # ------------------------------------------------------------------
    def global_path(self) -> Path:
        """Return the path of the global lockfile."""
        return self.runtime_dir / GLOBAL_LOCK_NAME

    def release_path(self, release: str) -> Path:
        """Return the lockfile path for *release*."""
        return self.runtime_dir / "releases" / f"{_safe_component(release)}.lock"

    def key_path(self, release: str, step: str, target: str) -> Path:
        """Return the lockfile path for one idempotency key."""
        return (
            self.runtime_dir
            / "keys"
            / _safe_component(release)
            / _safe_component(step)
            / f"{_safe_component(target)}.lock"
        )

    # ------------------------------------------------------------------
    # Context managers
    # ------------------------------------------------------------------
    @contextmanager
    def global_lock(self, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the global lock."""
        with self._acquire(self.global_path(), timeout) as handle:
            yield handle

    @contextmanager
    def release_lock(self, release: str, timeout: float | None = None) -> Iterator[LockHandle]:
        """Hold the lock for *release*."""
        with self._acquire(self.release_path(release), timeout) as handle:
            yield handle

    @contextmanager
    def key_lock(
        self,
        release: str,
        step: str,
        target: str,
        *,
        timeout: float | None = 0.0,
    ) -> Iterator[LockHandle]:
        """Hold the lock for one (release, step, target) key.

        The default timeout of zero makes this a try-lock: a key that is
        already being executed elsewhere raises :class:`LockTimeoutError`
        immediately.
        """
        with self._acquire(self.key_path(release, step, target), timeout) as handle:
            yield handle

    @contextmanager
    def mutate_releases(
        self,
        releases: Iterable[str],
        *,
        include_global: bool = True,
        timeout: float | None = None,
    ) -> Iterator[LockBundle]:
        """Acquire the global lock followed by per-release locks."""
        paths: list[Path] = []
        if include_global:
            paths.append(self.global_path())
        paths.extend(self.release_path(name) for name in sorted(set(releases)))
        with self._acquire_many(paths, timeout) as bundle:
            yield bundle

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------
    @contextmanager
    def _acquire_many(
        self,
        paths: Sequence[Path],
        timeout: float | None,
    ) -> Iterator[LockBundle]:
        with ExitStack() as stack:
            handles = [stack.enter_context(self._acquire(path, timeout)) for path in paths]
            yield LockBundle(handles=handles)

    @contextmanager
    def _acquire(self, path: Path, timeout: float | None) -> Iterator[LockHandle]:
        effective_timeout = self.default_timeout if timeout is None else timeout
        path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(path, os.O_RDWR | os.O_CREAT, 0o640)
        start = time.monotonic()
        try:
            while True:
                try:
                    fcntl.flock(fd, fcntl.LOCK_EX | fcntl.LOCK_NB)
                    break
                except BlockingIOError:
                    if time.monotonic() - start >= effective_timeout:
                        raise LockTimeoutError(
                            f"Timed out after {effective_timeout:.1f}s waiting for lock {path}"
                        ) from None
                    time.sleep(_POLL_INTERVAL)
            wait_ms = int((time.monotonic() - start) * 1000)
            _write_metadata(fd, path)
            try:
                yield LockHandle(path=path, wait_ms=wait_ms)
            finally:
                fcntl.flock(fd, fcntl.LOCK_UN)
        finally:
            os.close(fd)


def _write_metadata(fd: int, path: Path) -> None:
    payload = {
        "pid": os.getpid(),
        "path": str(path),
        "acquired_at": datetime.now(tz=UTC).isoformat(timespec="seconds"),
    }
    data = json.dumps(payload).encode("utf-8")
    os.ftruncate(fd, 0)
    os.lseek(fd, 0, os.SEEK_SET)
    os.write(fd, data)


__all__ = ["LockBundle", "LockHandle", "LockManager", "LockTimeoutError"]
