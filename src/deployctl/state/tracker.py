"""Durable execution ledger keyed by (release, step, target).

Each idempotency key owns one YAML file under the tracker root::

    <root>/<release>/<step>/<target>.yml

The file holds every attempt for the key, oldest first; the last attempt is
the key's current :class:`ExecutionRecord`. Succeeded and failed records are
terminal. A failed key may gain a new attempt, a succeeded key never does.
"""
from __future__ import annotations

import logging
from collections.abc import Iterator, Mapping
from contextlib import ExitStack, contextmanager
from dataclasses import dataclass, replace
from datetime import UTC, datetime
from enum import Enum
from pathlib import Path
from typing import Any

from ..locking import LockManager, LockTimeoutError
from .registry import StateRegistryError, read_yaml, write_yaml_atomic

LOGGER = logging.getLogger(__name__)

_MAX_OUTPUT_CHARS = 4000


class StateTrackerError(RuntimeError):
    """Raised when a ledger read or write violates the record lifecycle."""


class KeyBusyError(StateTrackerError):
    """Raised when another execution currently holds an idempotency key."""


class RecordStatus(str, Enum):
    """Lifecycle states of an execution record."""

    PENDING = "pending"
    SUCCEEDED = "succeeded"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        """Return ``True`` for succeeded and failed records."""
        return self is not RecordStatus.PENDING


@dataclass(frozen=True, slots=True)
class ExecutionKey:
    """Idempotency key identifying one step on one target for one release."""

    release: str
    step: str
    target: str

    def __post_init__(self) -> None:
        """Reject components that cannot be used as path segments."""
        for label, value in (("release", self.release), ("step", self.step), ("target", self.target)):
            if not value or value in {".", ".."} or "/" in value:
                raise StateTrackerError(f"Invalid {label} component for execution key: {value!r}")

    def __str__(self) -> str:
        return f"{self.release}/{self.step}/{self.target}"

    def to_dict(self) -> dict[str, str]:
        """Return a serialisable representation."""
        return {"release": self.release, "step": self.step, "target": self.target}


@dataclass(frozen=True, slots=True)
class ExecutionRecord:
    """One attempt at executing an idempotency key."""

    key: ExecutionKey
    status: RecordStatus
    attempt: int = 1
    reason: str | None = None
    output: str | None = None
    started_at: str | None = None
    finished_at: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation (without the key)."""
        payload: dict[str, object] = {"status": self.status.value, "attempt": self.attempt}
        if self.reason is not None:
            payload["reason"] = self.reason
        if self.output:
            payload["output"] = self.output[-_MAX_OUTPUT_CHARS:]
        if self.started_at is not None:
            payload["started_at"] = self.started_at
        if self.finished_at is not None:
            payload["finished_at"] = self.finished_at
        return payload

    @classmethod
    def from_dict(cls, key: ExecutionKey, raw: Mapping[str, Any]) -> ExecutionRecord:
        """Build a record from its stored mapping."""
        try:
            status = RecordStatus(str(raw.get("status")))
        except ValueError as exc:
            raise StateTrackerError(f"Unknown record status for {key}: {raw.get('status')!r}") from exc
        attempt_raw = raw.get("attempt", 1)
        try:
            attempt = int(attempt_raw)
        except (TypeError, ValueError) as exc:
            raise StateTrackerError(f"Invalid attempt number for {key}: {attempt_raw!r}") from exc
        return cls(
            key=key,
            status=status,
            attempt=attempt,
            reason=_optional_str(raw.get("reason")),
            output=_optional_str(raw.get("output")),
            started_at=_optional_str(raw.get("started_at")),
            finished_at=_optional_str(raw.get("finished_at")),
        )


def _optional_str(value: object) -> str | None:
    return None if value is None else str(value)


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


class Claim:
    """Exclusive right to execute one key, obtained from :meth:`StateTracker.claim`."""

    def __init__(self, tracker: StateTracker, record: ExecutionRecord) -> None:
        """Wrap the record that was current when the claim was taken."""
        self._tracker = tracker
        self.record = record

    @property
    def key(self) -> ExecutionKey:
        """Return the claimed key."""
        return self.record.key

    @property
    def already_succeeded(self) -> bool:
        """Return ``True`` when the key succeeded in an earlier run."""
        return self.record.status is RecordStatus.SUCCEEDED

    @property
    def finished(self) -> bool:
        """Return ``True`` once the claimed record is terminal."""
        return self.record.status.is_terminal

    def finish(
        self,
        success: bool,
        *,
        reason: str | None = None,
        output: str | None = None,
    ) -> ExecutionRecord:
        """Move the pending record to succeeded or failed."""
        if self.finished:
            raise StateTrackerError(f"Record for {self.key} is already {self.record.status.value}.")
        terminal = replace(
            self.record,
            status=RecordStatus.SUCCEEDED if success else RecordStatus.FAILED,
            reason=None if success else (reason or "step failed"),
            output=output,
            finished_at=_now_iso(),
        )
        self._tracker.put(self.key, terminal)
        self.record = terminal
        return terminal


class StateTracker:
    """Read and write execution records; serialise same-key execution."""

    def __init__(self, root: Path, locks: LockManager) -> None:
        """Store the ledger root and the lock manager guarding keys."""
        self.root = root.expanduser()
        self.locks = locks

    def path_for(self, key: ExecutionKey) -> Path:
        """Return the ledger file holding *key*."""
        return self.root / key.release / key.step / f"{key.target}.yml"

    def history(self, key: ExecutionKey) -> list[ExecutionRecord]:
        """Return every attempt recorded for *key*, oldest first."""
        try:
            raw = read_yaml(self.path_for(key), default={"attempts": []})
        except StateRegistryError as exc:
            raise StateTrackerError(str(exc)) from exc
        except OSError as exc:
            raise StateTrackerError(f"Cannot read ledger file for {key}: {exc}") from exc
        attempts = raw.get("attempts", []) if isinstance(raw, Mapping) else []
        if not isinstance(attempts, list):
            raise StateTrackerError(f"Ledger file for {key} is malformed.")
        return [
            ExecutionRecord.from_dict(key, item) for item in attempts if isinstance(item, Mapping)
        ]

    def get(self, key: ExecutionKey) -> ExecutionRecord | None:
        """Return the current record for *key*, or ``None`` when absent."""
        attempts = self.history(key)
        return attempts[-1] if attempts else None

    def put(self, key: ExecutionKey, record: ExecutionRecord) -> None:
        """Persist *record* as the current record for *key*.

        Callers must hold the key lock (see :meth:`claim`). The lifecycle is
        enforced here: a terminal record is never rewritten, and a new attempt
        may only follow a failed or a stale pending record.
        """
        if record.key != key:
            raise StateTrackerError(f"Record key {record.key} does not match {key}.")
        attempts = self.history(key)
        current = attempts[-1] if attempts else None

        if current is None:
            if record.attempt != 1:
                raise StateTrackerError(f"First record for {key} must be attempt 1.")
            attempts.append(record)
        elif record.attempt == current.attempt:
            if current.status.is_terminal:
                raise StateTrackerError(
                    f"Record for {key} is {current.status.value}; terminal records are final."
                )
            attempts[-1] = record
        elif record.attempt == current.attempt + 1:
            if current.status is RecordStatus.SUCCEEDED:
                raise StateTrackerError(f"{key} already succeeded; no new attempt is allowed.")
            attempts.append(record)
        else:
            raise StateTrackerError(
                f"Attempt {record.attempt} for {key} does not follow attempt {current.attempt}."
            )

        try:
            write_yaml_atomic(
                self.path_for(key),
                {"key": key.to_dict(), "attempts": [item.to_dict() for item in attempts]},
            )
        except OSError as exc:
            raise StateTrackerError(f"Cannot write ledger file for {key}: {exc}") from exc

    @contextmanager
    def claim(self, key: ExecutionKey) -> Iterator[Claim]:
        """Hold *key* exclusively and yield a :class:`Claim` for it.

        When the key already succeeded the claim carries that record and the
        caller should skip execution. Otherwise a new pending attempt is
        written first. Leaving the block without finishing the claim marks
        the attempt failed.
        """
        with ExitStack() as stack:
            try:
                stack.enter_context(self.locks.key_lock(key.release, key.step, key.target))
            except LockTimeoutError as exc:
                raise KeyBusyError(f"{key} is being executed by another run.") from exc
            except OSError as exc:
                raise StateTrackerError(f"Cannot lock {key}: {exc}") from exc
            current = self.get(key)
            if current is not None and current.status is RecordStatus.SUCCEEDED:
                yield Claim(self, current)
                return
            if current is not None and current.status is RecordStatus.PENDING:
                # Holding the lock means the writer of this record is gone.
                LOGGER.debug("Superseding stale pending record for %s", key)
            attempt = current.attempt + 1 if current is not None else 1
            pending = ExecutionRecord(
                key=key,
                status=RecordStatus.PENDING,
                attempt=attempt,
                started_at=_now_iso(),
            )
            self.put(key, pending)
            claim = Claim(self, pending)
            try:
                yield claim
            except BaseException as exc:
                if not claim.finished:
                    claim.finish(False, reason=f"interrupted: {exc!r}")
                raise
            if not claim.finished:
                claim.finish(False, reason="execution ended without an outcome")

    def records_for_release(self, release: str) -> list[ExecutionRecord]:
        """Return the current record of every key recorded for *release*."""
        release_root = self.root / release
        if not release_root.is_dir():
            return []
        records: list[ExecutionRecord] = []
        for path in sorted(release_root.glob("*/*.yml")):
            key = ExecutionKey(release=release, step=path.parent.name, target=path.stem)
            record = self.get(key)
            if record is not None:
                records.append(record)
        return records


__all__ = [
    "Claim",
    "ExecutionKey",
    "ExecutionRecord",
    "KeyBusyError",
    "RecordStatus",
    "StateTracker",
    "StateTrackerError",
]
