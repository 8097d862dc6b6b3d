"""Structured operation logging for deployctl.

Every CLI command runs inside :meth:`StructuredLogger.operation`. The scope
collects the steps a command performed and its final result, then appends a
single JSON document to ``operations.jsonl`` and a one-line summary to
``deployctl.log`` in the configured logs directory.

Logging must never break a deployment: when the directory cannot be created
or a write fails, the logger disables itself and later operations become
no-ops.
"""
from __future__ import annotations

import json
import logging
import secrets
import threading
import time
from collections.abc import Iterable, Iterator, Mapping
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path

LOGGER = logging.getLogger(__name__)

OPERATIONS_LOG = "operations.jsonl"
HUMAN_LOG = "deployctl.log"


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def _json_safe(value: object) -> object:
    """Return *value* converted into something ``json.dumps`` accepts."""
    if value is None or isinstance(value, (bool, int, float, str)):
        return value
    if isinstance(value, Path):
        return str(value)
    if isinstance(value, Mapping):
        return {str(key): _json_safe(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_json_safe(item) for item in value]
    return str(value)


class OperationScope:
    """Accumulates steps and the final result of one logged operation."""

    def __init__(
        self,
        logger: StructuredLogger,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> None:
        """Start a new scope for *command*."""
        self._logger = logger
        self.op_id = f"op-{secrets.token_hex(6)}"
        self.command = command
        self.args = dict(args or {})
        self.target = dict(target or {})
        self.steps: list[dict[str, object]] = []
        self.result: dict[str, object] | None = None
        self.lock_wait_ms: int | None = None
        self.started_at = _now_iso()
        self._start = time.perf_counter()
        self._steps_lock = threading.Lock()

    def add_step(self, name: str, *, status: str = "success", detail: str | None = None) -> None:
        """Record an intermediate step (thread-safe)."""
        entry: dict[str, object] = {"name": name, "status": status, "at": _now_iso()}
        if detail is not None:
            entry["detail"] = detail
        with self._steps_lock:
            self.steps.append(entry)

    def set_lock_wait_ms(self, wait_ms: int) -> None:
        """Record how long the command waited for its locks."""
        self.lock_wait_ms = int(wait_ms)

    def success(
        self,
        message: str,
        *,
        changed: int = 0,
        artifacts: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as successful."""
        self._set_result(
            "success",
            message,
            changed=changed,
            artifacts=artifacts,
            context=context,
            rc=0,
        )

    def warning(
        self,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        artifacts: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as completed with warnings."""
        self._set_result(
            "warning",
            message,
            warnings=warnings if warnings is not None else [message],
            errors=errors,
            changed=changed,
            artifacts=artifacts,
            context=context,
            rc=0,
        )

    def error(
        self,
        message: str,
        *,
        errors: Iterable[str] | None = None,
        rc: int = 1,
        context: Mapping[str, object] | None = None,
    ) -> None:
        """Mark the operation as failed."""
        self._set_result(
            "error",
            message,
            errors=errors if errors is not None else [message],
            context=context,
            rc=rc,
        )

    def _set_result(
        self,
        status: str,
        message: str,
        *,
        warnings: Iterable[str] | None = None,
        errors: Iterable[str] | None = None,
        changed: int = 0,
        artifacts: Iterable[str] | None = None,
        context: Mapping[str, object] | None = None,
        rc: int,
    ) -> None:
        self.result = {
            "status": status,
            "message": message,
            "changed": changed,
            "warnings": [str(item) for item in warnings or ()],
            "errors": [str(item) for item in errors or ()],
            "artifacts": [str(item) for item in artifacts or ()],
            "context": _json_safe(dict(context or {})),
            "rc": rc,
        }

    def to_record(self) -> dict[str, object]:
        """Return the JSON document describing this operation."""
        return {
            "op_id": self.op_id,
            "command": self.command,
            "started_at": self.started_at,
            "finished_at": _now_iso(),
            "duration_ms": int((time.perf_counter() - self._start) * 1000),
            "lock_wait_ms": self.lock_wait_ms,
            "args": _json_safe(self.args),
            "target": _json_safe(self.target),
            "steps": _json_safe(self.steps),
            "result": self.result,
        }


class StructuredLogger:
    """Append-only JSONL operation log plus a human readable summary log."""

    def __init__(self, logs_dir: Path) -> None:
        """Prepare the logs directory, disabling logging when unavailable."""
        self.logs_dir = logs_dir.expanduser()
        self._operations_log_path = self.logs_dir / OPERATIONS_LOG
        self._human_log_path = self.logs_dir / HUMAN_LOG
        self._write_lock = threading.Lock()
        self._enabled = True
        try:
            self.logs_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.debug("Structured logging disabled (%s): %s", self.logs_dir, exc)
            self._enabled = False

    @property
    def enabled(self) -> bool:
        """Return ``True`` while the logger is still writing records."""
        return self._enabled

    @contextmanager
    def operation(
        self,
        command: str,
        *,
        args: Mapping[str, object] | None = None,
        target: Mapping[str, object] | None = None,
    ) -> Iterator[OperationScope]:
        """Yield an :class:`OperationScope` and persist it on exit."""
        scope = OperationScope(self, command, args=args, target=target)
        try:
            yield scope
        except BaseException as exc:
            if scope.result is None:
                message = str(exc) or exc.__class__.__name__
                scope.error(message, errors=[repr(exc)])
            raise
        finally:
            if scope.result is None:
                scope.success("Operation completed.")
            self._write(scope)

    def _write(self, scope: OperationScope) -> None:
        if not self._enabled:
            return
        record = scope.to_record()
        result = scope.result or {}
        summary = (
            f"{record['finished_at']} {scope.op_id} {scope.command} "
            f"status={result.get('status')} message={result.get('message')!r}\n"
        )
        with self._write_lock:
            try:
                with self._operations_log_path.open("a", encoding="utf-8") as handle:
                    handle.write(json.dumps(record, sort_keys=False))
                    handle.write("\n")
                with self._human_log_path.open("a", encoding="utf-8") as handle:
                    handle.write(summary)
            except OSError as exc:
                LOGGER.debug("Structured logging disabled after write failure: %s", exc)
                self._enabled = False


__all__ = ["OperationScope", "StructuredLogger"]
