"""Plan runner: ordered steps across targets with idempotent resume.

Steps run in declared order. Within one step every eligible target runs on a
bounded thread pool; a failure on one target never stops the others, but a
target that failed receives no later steps. Keys that already succeeded in a
previous run are skipped, so re-running a partially failed release resumes
where each target stopped.
"""
from __future__ import annotations

import concurrent.futures
import logging
import time
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field
from enum import Enum

from .archive import Release
from .logging import OperationScope
from .state import ExecutionKey, KeyBusyError, RecordStatus, StateTracker, StateTrackerError
from .steps import Outcome, Step, StepExecutor
from .targets import Target

LOGGER = logging.getLogger(__name__)


class TargetStatus(str, Enum):
    """Final status of one target in a run."""

    COMPLETE = "complete"
    ALREADY_COMPLETE = "already-complete"
    FAILED = "failed"
    CANCELLED = "cancelled"
    PLANNED = "planned"

    @property
    def is_success(self) -> bool:
        """Return ``True`` for statuses that do not fail the run."""
        return self in {TargetStatus.COMPLETE, TargetStatus.ALREADY_COMPLETE, TargetStatus.PLANNED}


@dataclass(slots=True)
class TargetReport:
    """What happened to one target."""

    target: str
    status: TargetStatus
    executed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed_step: str | None = None
    cause: str | None = None

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "target": self.target,
            "status": self.status.value,
            "executed": list(self.executed),
            "skipped": list(self.skipped),
            "failed_step": self.failed_step,
            "cause": self.cause,
        }


@dataclass(slots=True)
class RunReport:
    """Per-target terminal status for one run of a plan."""

    release: str
    targets: list[TargetReport]
    cancelled: bool = False
    duration_ms: int = 0

    @property
    def ok(self) -> bool:
        """Return ``True`` when every target finished successfully."""
        return not self.cancelled and all(report.status.is_success for report in self.targets)

    def failures(self) -> list[TargetReport]:
        """Return reports for targets that failed or were cancelled."""
        return [report for report in self.targets if not report.status.is_success]

    def get(self, target: str) -> TargetReport:
        """Return the report for *target*."""
        for report in self.targets:
            if report.target == target:
                return report
        raise KeyError(target)

    def to_dict(self) -> dict[str, object]:
        """Return a serialisable representation."""
        return {
            "release": self.release,
            "ok": self.ok,
            "cancelled": self.cancelled,
            "duration_ms": self.duration_ms,
            "targets": [report.to_dict() for report in self.targets],
        }


@dataclass(slots=True)
class _Progress:
    target: Target
    executed: list[str] = field(default_factory=list)
    skipped: list[str] = field(default_factory=list)
    failed_step: str | None = None
    cause: str | None = None
    cancelled: bool = False

    @property
    def active(self) -> bool:
        return self.failed_step is None and not self.cancelled


@dataclass(frozen=True, slots=True)
class _StepResult:
    status: str  # "succeeded" | "skipped" | "failed" | "cancelled"
    cause: str | None = None
    outcome: Outcome | None = None


class PlanRunner:
    """Execute a plan across targets, recording every key in the ledger."""

    def __init__(
        self,
        executor: StepExecutor,
        tracker: StateTracker,
        *,
        max_workers: int = 4,
        op: OperationScope | None = None,
    ) -> None:
        """Store collaborators and the per-step concurrency bound."""
        if max_workers < 1:
            raise ValueError("max_workers must be at least 1")
        self.executor = executor
        self.tracker = tracker
        self.max_workers = max_workers
        self.op = op

    @property
    def cancelled(self) -> bool:
        """Return ``True`` once :meth:`cancel` was called."""
        return self.executor.context.cancel_event.is_set()

    def cancel(self) -> None:
        """Stop starting new work and signal in-flight steps to stop."""
        LOGGER.info("Cancellation requested")
        self.executor.context.cancel_event.set()

    def run(
        self,
        plan: Sequence[Step],
        targets: Iterable[Target],
        release: Release | str,
    ) -> RunReport:
        """Run *plan* on *targets* for *release* and report per target."""
        release_id = release.id if isinstance(release, Release) else release
        start = time.perf_counter()
        progress = {target.id: _Progress(target) for target in sorted(targets, key=lambda t: t.id)}

        for step in plan:
            if self.cancelled:
                break
            eligible = [
                item.target
                for item in progress.values()
                if item.active and step.applies_to(item.target)
            ]
            if not eligible:
                continue
            for target_id, result in self._run_step(step, eligible, release_id).items():
                self._apply(progress[target_id], step, result)

        reports = [self._finalise(item, plan) for item in progress.values()]
        return RunReport(
            release=release_id,
            targets=reports,
            cancelled=any(item.status is TargetStatus.CANCELLED for item in reports),
            duration_ms=int((time.perf_counter() - start) * 1000),
        )

    def preview(
        self,
        plan: Sequence[Step],
        targets: Iterable[Target],
        release: Release | str,
    ) -> RunReport:
        """Report which steps a run would execute, without executing any."""
        release_id = release.id if isinstance(release, Release) else release
        reports: list[TargetReport] = []
        for target in sorted(targets, key=lambda t: t.id):
            pending: list[str] = []
            done: list[str] = []
            for step in plan:
                if not step.applies_to(target):
                    continue
                record = self.tracker.get(ExecutionKey(release_id, step.name, target.id))
                if record is not None and record.status is RecordStatus.SUCCEEDED:
                    done.append(step.name)
                else:
                    pending.append(step.name)
            status = TargetStatus.PLANNED if pending else TargetStatus.ALREADY_COMPLETE
            reports.append(
                TargetReport(target=target.id, status=status, executed=pending, skipped=done)
            )
        return RunReport(release=release_id, targets=reports)

    # ------------------------------------------------------------------
    def _run_step(
        self,
        step: Step,
        targets: Sequence[Target],
        release_id: str,
    ) -> dict[str, _StepResult]:
        workers = min(self.max_workers, len(targets))
        if workers == 1:
            return {target.id: self._run_one(step, target, release_id) for target in targets}

        results: dict[str, _StepResult] = {}
        with concurrent.futures.ThreadPoolExecutor(max_workers=workers) as pool:
            future_to_target = {
                pool.submit(self._run_one, step, target, release_id): target for target in targets
            }
            for future in concurrent.futures.as_completed(future_to_target):
                results[future_to_target[future].id] = future.result()
        return results

    def _run_one(self, step: Step, target: Target, release_id: str) -> _StepResult:
        if self.cancelled:
            return _StepResult("cancelled", cause="run cancelled before start")
        try:
            key = ExecutionKey(release_id, step.name, target.id)
            with self.tracker.claim(key) as claim:
                if claim.already_succeeded:
                    self._note(step, target, "skipped", "already succeeded")
                    return _StepResult("skipped")
                outcome = self.executor.execute(step, target)
                claim.finish(outcome.success, reason=outcome.error, output=outcome.output)
        except KeyBusyError as exc:
            self._note(step, target, "error", str(exc))
            return _StepResult("failed", cause=str(exc))
        except StateTrackerError as exc:
            self._note(step, target, "error", f"ledger error: {exc}")
            return _StepResult("failed", cause=f"ledger error: {exc}")

        if outcome.success:
            self._note(step, target, "success", "changed" if outcome.changed else "unchanged")
            return _StepResult("succeeded", outcome=outcome)
        status = "cancelled" if outcome.cancelled else "failed"
        self._note(step, target, "error", outcome.error)
        return _StepResult(status, cause=outcome.error, outcome=outcome)

    def _note(self, step: Step, target: Target, status: str, detail: str | None) -> None:
        LOGGER.info("%s on %s: %s %s", step.name, target.id, status, detail or "")
        if self.op is not None:
            self.op.add_step(f"step.{step.name}", status=status, detail=f"{target.id}: {detail}")

    @staticmethod
    def _apply(progress: _Progress, step: Step, result: _StepResult) -> None:
        if result.status == "skipped":
            progress.skipped.append(step.name)
        elif result.status == "succeeded":
            progress.executed.append(step.name)
        elif result.status == "cancelled":
            progress.cancelled = True
            progress.failed_step = step.name
            progress.cause = result.cause
        else:
            progress.failed_step = step.name
            progress.cause = result.cause

    def _finalise(self, progress: _Progress, plan: Sequence[Step]) -> TargetReport:
        in_scope = [step.name for step in plan if step.applies_to(progress.target)]
        finished = len(progress.executed) + len(progress.skipped)
        interrupted = (
            self.cancelled and progress.failed_step is None and finished < len(in_scope)
        )
        if progress.cancelled or interrupted:
            status = TargetStatus.CANCELLED
        elif progress.failed_step is not None:
            status = TargetStatus.FAILED
        elif not progress.executed:
            status = TargetStatus.ALREADY_COMPLETE
        else:
            status = TargetStatus.COMPLETE
        cause = progress.cause
        if status is TargetStatus.CANCELLED and cause is None:
            cause = "run cancelled"
        return TargetReport(
            target=progress.target.id,
            status=status,
            executed=list(progress.executed),
            skipped=list(progress.skipped),
            failed_step=progress.failed_step,
            cause=cause,
        )


__all__ = ["PlanRunner", "RunReport", "TargetReport", "TargetStatus"]
