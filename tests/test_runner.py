"""Plan runner tests: ordering, isolation, idempotence and resume."""
from __future__ import annotations

import sys
import threading
from collections.abc import Iterable
from pathlib import Path

import pytest

from deployctl.locking import LockManager
from deployctl.runner import PlanRunner, TargetStatus
from deployctl.state import ExecutionKey, RecordStatus, StateTracker
from deployctl.steps import Outcome, ProcessStep, Step, StepContext, StepExecutor
from deployctl.targets import Target

TARGETS = [
    Target(id=name, transport="local", address="localhost") for name in ("web1", "web2", "web3")
]


def _step(
    name: str,
    *,
    fail_on: Iterable[str] = (),
    scope: frozenset[str] | None = None,
    sleep: float = 0.0,
) -> ProcessStep:
    """A step that appends ``<name>:<target>`` to the shared log."""
    script = (
        "import os, sys, time; "
        f"time.sleep({sleep}); "
        "open('{{ log }}', 'a').write('" + name + ":{{ target.id }}\\n'); "
        "sys.exit(1 if '{{ target.id }}' in " + repr(list(fail_on)) + " "
        "or os.path.exists('{{ flag }}/" + name + "') else 0)"
    )
    return ProcessStep(name=name, command=("{{ python }}", "-c", script), scope=scope)


@pytest.fixture()
def workspace(tmp_path: Path) -> Path:
    """Directory holding the execution log, failure flags and state."""
    (tmp_path / "flags").mkdir()
    return tmp_path


def _runner(workspace: Path, *, max_workers: int = 4) -> PlanRunner:
    locks = LockManager(workspace / "run", default_timeout=1.0)
    tracker = StateTracker(workspace / "records", locks)
    context = StepContext(
        variables={
            "python": sys.executable,
            "log": str(workspace / "log.txt"),
            "flag": str(workspace / "flags"),
        },
        timeout=30,
    )
    return PlanRunner(StepExecutor(context), tracker, max_workers=max_workers)


def _log(workspace: Path) -> list[str]:
    path = workspace / "log.txt"
    return path.read_text().splitlines() if path.exists() else []


def test_steps_run_in_declared_order_per_target(workspace: Path) -> None:
    """Every target sees the steps in plan order."""
    plan = [_step("a"), _step("b"), _step("c")]

    report = _runner(workspace).run(plan, TARGETS, "r1")

    assert report.ok
    assert [item.status for item in report.targets] == [TargetStatus.COMPLETE] * 3
    for target in TARGETS:
        seen = [line.split(":")[0] for line in _log(workspace) if line.endswith(f":{target.id}")]
        assert seen == ["a", "b", "c"]
    # Step-level sequencing: no target starts b before every target finished a.
    names = [line.split(":")[0] for line in _log(workspace)]
    assert names == ["a"] * 3 + ["b"] * 3 + ["c"] * 3


def test_second_run_is_a_no_op(workspace: Path) -> None:
    """Re-running a fully successful release executes nothing."""
    plan = [_step("a"), _step("b")]
    _runner(workspace).run(plan, TARGETS, "r1")
    before = _log(workspace)

    report = _runner(workspace).run(plan, TARGETS, "r1")

    assert _log(workspace) == before
    assert report.ok
    for item in report.targets:
        assert item.status is TargetStatus.ALREADY_COMPLETE
        assert item.executed == []
        assert item.skipped == ["a", "b"]


def test_failure_is_isolated_to_one_target(workspace: Path) -> None:
    """Other targets complete; the failed target gets no later steps."""
    plan = [_step("a"), _step("b", fail_on=["web2"]), _step("c")]
    runner = _runner(workspace)

    report = runner.run(plan, TARGETS, "r1")

    assert not report.ok
    assert report.get("web1").status is TargetStatus.COMPLETE
    assert report.get("web3").status is TargetStatus.COMPLETE
    failed = report.get("web2")
    assert failed.status is TargetStatus.FAILED
    assert failed.failed_step == "b"
    assert failed.cause is not None and failed.cause.startswith("exit 1")
    assert "c:web2" not in _log(workspace)
    assert runner.tracker.get(ExecutionKey("r1", "c", "web2")) is None
    record = runner.tracker.get(ExecutionKey("r1", "b", "web2"))
    assert record is not None and record.status is RecordStatus.FAILED
    assert [item.target for item in report.failures()] == ["web2"]


def test_resume_skips_succeeded_steps(workspace: Path) -> None:
    """After a mid-plan failure, a re-run starts at the failed step."""
    plan = [_step("transfer"), _step("extract"), _step("register")]
    targets = TARGETS[:1]
    flag = workspace / "flags" / "extract"
    flag.touch()

    first = _runner(workspace).run(plan, targets, "r1")

    assert first.get("web1").failed_step == "extract"
    assert "register:web1" not in _log(workspace)

    flag.unlink()
    second = _runner(workspace).run(plan, targets, "r1")

    result = second.get("web1")
    assert result.status is TargetStatus.COMPLETE
    assert result.skipped == ["transfer"]
    assert result.executed == ["extract", "register"]
    assert _log(workspace).count("transfer:web1") == 1
    history = _runner(workspace).tracker.history(ExecutionKey("r1", "extract", "web1"))
    assert [item.status for item in history] == [RecordStatus.FAILED, RecordStatus.SUCCEEDED]


def test_new_release_runs_everything_again(workspace: Path) -> None:
    """Idempotency keys are per release."""
    plan = [_step("a")]
    _runner(workspace).run(plan, TARGETS[:1], "r1")

    report = _runner(workspace).run(plan, TARGETS[:1], "r2")

    assert report.get("web1").status is TargetStatus.COMPLETE
    assert _log(workspace) == ["a:web1", "a:web1"]


def test_out_of_scope_targets_skip_step(workspace: Path) -> None:
    """Targets outside a step's scope skip it without failing."""
    plan = [_step("a"), _step("only-web1", scope=frozenset({"web1"})), _step("c")]

    report = _runner(workspace).run(plan, TARGETS[:2], "r1")

    assert report.ok
    assert report.get("web1").executed == ["a", "only-web1", "c"]
    assert report.get("web2").executed == ["a", "c"]
    assert "only-web1:web2" not in _log(workspace)


def test_busy_key_fails_only_that_target(workspace: Path) -> None:
    """A key held by another run is not executed twice."""
    runner = _runner(workspace)
    plan = [_step("a")]

    with runner.tracker.locks.key_lock("r1", "a", "web1"):
        report = runner.run(plan, TARGETS[:2], "r1")

    busy = report.get("web1")
    assert busy.status is TargetStatus.FAILED
    assert busy.cause is not None and "another run" in busy.cause
    assert report.get("web2").status is TargetStatus.COMPLETE
    assert _log(workspace) == ["a:web2"]


def test_cancel_before_run_starts_nothing(workspace: Path) -> None:
    """A cancelled runner reports every target cancelled."""
    runner = _runner(workspace)
    runner.cancel()

    report = runner.run([_step("a")], TARGETS, "r1")

    assert report.cancelled
    assert not report.ok
    assert {item.status for item in report.targets} == {TargetStatus.CANCELLED}
    assert _log(workspace) == []


@pytest.mark.mutation_timeout
def test_cancel_during_run_stops_in_flight_work(workspace: Path) -> None:
    """Cancelling mid-step terminates processes and starts no later steps."""
    runner = _runner(workspace)
    plan = [_step("slow", sleep=30), _step("after")]
    timer = threading.Timer(0.5, runner.cancel)
    timer.start()
    try:
        report = runner.run(plan, TARGETS[:2], "r1")
    finally:
        timer.cancel()

    assert report.cancelled
    assert {item.status for item in report.targets} == {TargetStatus.CANCELLED}
    assert _log(workspace) == []
    record = runner.tracker.get(ExecutionKey("r1", "slow", "web1"))
    assert record is not None and record.status is RecordStatus.FAILED


def test_preview_executes_nothing(workspace: Path) -> None:
    """Dry runs list pending steps and leave the ledger untouched."""
    plan = [_step("a"), _step("b")]
    runner = _runner(workspace)
    runner.run([_step("a")], TARGETS[:1], "r1")
    before = _log(workspace)

    preview = runner.preview(plan, TARGETS[:2], "r1")

    assert _log(workspace) == before
    assert preview.get("web1").skipped == ["a"]
    assert preview.get("web1").executed == ["b"]
    assert preview.get("web2").executed == ["a", "b"]
    assert {item.status for item in preview.targets} == {TargetStatus.PLANNED}
    assert runner.tracker.get(ExecutionKey("r1", "a", "web2")) is None


def test_single_worker_still_completes(workspace: Path) -> None:
    """A pool bound of one runs targets sequentially."""
    report = _runner(workspace, max_workers=1).run([_step("a")], TARGETS, "r1")

    assert report.ok
    assert sorted(_log(workspace)) == ["a:web1", "a:web2", "a:web3"]


def test_report_to_dict(workspace: Path) -> None:
    """Reports serialise per-target details."""
    report = _runner(workspace).run([_step("a", fail_on=["web1"])], TARGETS[:1], "r1")

    data = report.to_dict()

    assert data["release"] == "r1"
    assert data["ok"] is False
    assert data["targets"] == [  # type: ignore[comparison-overlap]
        {
            "target": "web1",
            "status": "failed",
            "executed": [],
            "skipped": [],
            "failed_step": "a",
            "cause": report.get("web1").cause,
        }
    ]


def test_invalid_worker_bound() -> None:
    """The pool needs at least one worker."""
    context = StepContext(variables={})
    with pytest.raises(ValueError):
        PlanRunner(StepExecutor(context), None, max_workers=0)  # type: ignore[arg-type]


def test_invalid_key_component_fails_only_that_target(workspace: Path) -> None:
    """A target id that cannot form a ledger key fails alone."""
    odd = Target(id="dc1/web", transport="local", address="localhost")
    healthy = Target(id="ok", transport="local", address="localhost")

    report = _runner(workspace).run([_step("a")], [odd, healthy], "r1")

    failed = report.get("dc1/web")
    assert failed.status is TargetStatus.FAILED
    assert failed.cause is not None and "Invalid target component" in failed.cause
    assert report.get("ok").status is TargetStatus.COMPLETE
    assert _log(workspace) == ["a:ok"]


def test_unwritable_ledger_fails_targets_with_a_cause(workspace: Path) -> None:
    """Ledger write errors become failed targets instead of escaping the run."""
    (workspace / "records").write_text("not a directory\n")

    report = _runner(workspace).run([_step("a"), _step("b")], TARGETS[:2], "r1")

    assert not report.ok
    for item in report.targets:
        assert item.status is TargetStatus.FAILED
        assert item.failed_step == "a"
        assert item.cause is not None and item.cause.startswith("ledger error:")
    assert _log(workspace) == []


def test_cancel_after_last_step_finished_still_succeeds(workspace: Path) -> None:
    """A late cancel that interrupts nothing leaves the run successful."""
    runner = _runner(workspace, max_workers=1)
    original = runner.executor.execute

    def execute_then_cancel(step: Step, target: Target) -> Outcome:
        outcome = original(step, target)
        if target.id == TARGETS[-1].id:
            runner.cancel()
        return outcome

    runner.executor.execute = execute_then_cancel  # type: ignore[method-assign]

    report = runner.run([_step("a")], TARGETS, "r1")

    assert not report.cancelled
    assert report.ok
    assert {item.status for item in report.targets} == {TargetStatus.COMPLETE}
