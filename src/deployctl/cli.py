"""Typer-powered command line interface for ``deployctl``.

``deploy run`` is the main workflow: resolve targets, load the plan, build
(or reuse) the release archive, then execute every step on every target,
skipping work already recorded as succeeded. The remaining commands inspect
or prepare the pieces of that workflow.
"""
from __future__ import annotations

import signal
import textwrap
import threading
from collections.abc import Iterator, Mapping, Sequence
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import NoReturn

import typer
from rich.console import Console
from rich.table import Table

from . import __version__
from .archive import (
    Archive,
    ArchiveBuilder,
    ArchiveError,
    Release,
    clone_source,
    compute_checksum,
    git_manifest,
    new_release_id,
)
from .config import AppConfig, ConfigError, load_config
from .exit_codes import ExitCode
from .locking import LockManager, LockTimeoutError
from .logging import OperationScope, StructuredLogger
from .plan import PlanError, default_plan, load_plan, plan_variables
from .runner import PlanRunner, RunReport, TargetStatus
from .state import StateRegistry, StateRegistryError, StateTracker, StateTrackerError
from .steps import Step, StepContext, StepExecutor
from .targets import ResolutionError, Target, TargetRegistry
from .templates import TemplateEngine

console = Console()

CONFIG_FILE_OPTION = typer.Option(
    None,
    "--config-file",
    dir_okay=False,
    help="Override the path to deployctl's YAML config file.",
)

RELEASE_OPTION = typer.Option(
    None,
    "--release",
    "-r",
    help="Release identifier (defaults to a new YYYYmmddHHMMSS timestamp).",
)

REQUIRED_RELEASE_OPTION = typer.Option(
    ...,
    "--release",
    "-r",
    help="Release identifier.",
)

TARGETS_OPTION = typer.Option(
    ...,
    "--targets",
    "-t",
    help="Target spec: names, groups, 'all', 'localhost' or globs, comma separated.",
)

PLAN_OPTION = typer.Option(
    None,
    "--plan",
    dir_okay=False,
    help="Plan file to execute (defaults to plan_file from config, then the built-in plan).",
)

SOURCE_OPTION = typer.Option(
    None,
    "--source",
    help="Extra file or vendored directory (relative to source_dir) to archive. Repeatable.",
)

GIT_OPTION = typer.Option(
    True,
    "--git/--no-git",
    help="Include the files tracked by git in source_dir.",
)

MAX_WORKERS_OPTION = typer.Option(
    None,
    "--max-workers",
    min=1,
    help="Maximum number of targets executing one step concurrently.",
)

DRY_RUN_OPTION = typer.Option(
    False,
    "--dry-run",
    help="Show which steps would run without executing or recording anything.",
)

JSON_OPTION = typer.Option(
    False,
    "--json",
    help="Emit machine-readable JSON.",
)

_STATUS_STYLE = {
    TargetStatus.COMPLETE: "[green]complete[/green]",
    TargetStatus.ALREADY_COMPLETE: "[green]already-complete[/green]",
    TargetStatus.FAILED: "[red]failed[/red]",
    TargetStatus.CANCELLED: "[yellow]cancelled[/yellow]",
    TargetStatus.PLANNED: "[cyan]planned[/cyan]",
}

_RECORD_STYLE = {
    "succeeded": "[green]succeeded[/green]",
    "failed": "[red]failed[/red]",
    "pending": "[yellow]pending[/yellow]",
}

app = typer.Typer(
    add_completion=False,
    help=textwrap.dedent(
        """
        Dependency-ordered, idempotent multi-target deployments.

        A run packages the source tree into a reproducible release archive and
        executes an ordered plan of steps on every selected target. Each
        (release, step, target) key runs at most once successfully, so a
        failed run can simply be re-run to resume.
        """
    ).strip(),
)

config_app = typer.Typer(help="Inspect the effective configuration.")
app.add_typer(config_app, name="config")


@dataclass
class RuntimeContext:
    """Aggregated runtime objects shared by commands."""

    config: AppConfig
    registry: StateRegistry
    tracker: StateTracker
    locks: LockManager
    logger: StructuredLogger
    templates: TemplateEngine
    targets: TargetRegistry


def _ensure_runtime(
    ctx: typer.Context,
    config_file: Path | None,
    lock_timeout_override: float | None = None,
) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime

    overrides: dict[str, object] = {}
    if lock_timeout_override is not None:
        overrides["lock_timeout"] = lock_timeout_override

    try:
        config = load_config(config_file=config_file, overrides=overrides)
        targets = TargetRegistry.from_file(config.inventory_file)
    except (ConfigError, ResolutionError) as exc:
        console.print(f"[red]{exc}[/red]")
        raise typer.Exit(code=int(ExitCode.VALIDATION)) from exc

    locks = LockManager(config.runtime_dir, config.lock_timeout)
    runtime = RuntimeContext(
        config=config,
        registry=StateRegistry(config.registry_dir),
        tracker=StateTracker(config.state_dir / "records", locks),
        locks=locks,
        logger=StructuredLogger(config.logs_dir),
        templates=TemplateEngine(),
        targets=targets,
    )
    ctx.obj = runtime
    return runtime


def _get_runtime(ctx: typer.Context) -> RuntimeContext:
    runtime = ctx.obj
    if isinstance(runtime, RuntimeContext):
        return runtime
    return _ensure_runtime(ctx, None, None)


@app.callback(invoke_without_command=True)
def _root(  # noqa: D401 - Typer displays help for us, docstring optional.
    ctx: typer.Context,
    version: bool = typer.Option(
        False,
        "--version",
        "-V",
        help="Show the deployctl version and exit.",
    ),
    config_file: Path | None = CONFIG_FILE_OPTION,
    lock_timeout: float | None = typer.Option(
        None,
        "--lock-timeout",
        help="Override lock acquisition timeout in seconds.",
    ),
) -> None:
    """Entry point callback invoked for every CLI execution."""
    if version:
        runtime = _ensure_runtime(ctx, config_file, lock_timeout)
        with runtime.logger.operation(
            "root --version",
            args={"version": True},
            target={"kind": "meta", "scope": "version"},
        ) as op:
            console.print(f"deployctl {__version__}")
            op.success("Reported CLI version.", changed=0)
        raise typer.Exit(code=0)

    _ensure_runtime(ctx, config_file, lock_timeout)

    if ctx.invoked_subcommand is None:
        console.print(ctx.get_help())
        raise typer.Exit(code=0)


def _command_error(
    op: OperationScope,
    message: str,
    *,
    rc: int = int(ExitCode.VALIDATION),
    errors: Sequence[str] | None = None,
) -> NoReturn:
    """Emit a structured error and terminate the command."""
    console.print(f"[red]{message}[/red]")
    op.error(message, errors=list(errors or [message]), rc=rc)
    raise typer.Exit(code=rc)


def _dry_run_complete(
    op: OperationScope,
    summary: str,
    *,
    context: Mapping[str, object] | None = None,
) -> None:
    """Standardise dry-run completion messaging."""
    console.print(f"[yellow]Dry run[/yellow]: {summary}")
    op.success("Dry run complete.", changed=0, context=dict(context or {}))


def _now_iso() -> str:
    return datetime.now(tz=UTC).isoformat(timespec="seconds").replace("+00:00", "Z")


# ----------------------------------------------------------------------
# Pre-flight helpers
# ----------------------------------------------------------------------
def _resolve_targets(op: OperationScope, runtime: RuntimeContext, spec: str) -> list[Target]:
    try:
        resolved = runtime.targets.resolve(spec)
    except ResolutionError as exc:
        _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))
    op.add_step("targets.resolve", detail=", ".join(sorted(target.id for target in resolved)))
    return sorted(resolved, key=lambda target: target.id)


def _load_steps(op: OperationScope, runtime: RuntimeContext, plan_file: Path | None) -> list[Step]:
    path = plan_file or runtime.config.plan_file
    try:
        if path is None:
            steps = default_plan()
        else:
            steps = load_plan(path, runtime.targets)
    except (PlanError, ResolutionError) as exc:
        _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))
    op.add_step("plan.load", detail=str(path) if path else "built-in")
    return steps


def _source_entries(config: AppConfig, sources: Sequence[Path]) -> list[str]:
    root = config.source_dir.expanduser().resolve()
    entries: list[str] = []
    for source in sources:
        if source.is_absolute():
            try:
                source = source.resolve().relative_to(root)
            except ValueError as exc:
                raise ArchiveError(f"Source {source} is outside source_dir {root}.") from exc
        entries.append(source.as_posix())
    return entries


def _source_lists(
    config: AppConfig,
    sources: Sequence[Path],
    *,
    use_git: bool,
) -> list[list[str]]:
    lists: list[list[str]] = []
    if use_git:
        lists.append(git_manifest(config.source_dir))
    if sources:
        lists.append(_source_entries(config, sources))
    return lists


def _registered_archive(entry: Mapping[str, object]) -> Archive:
    release_id = str(entry["id"])
    archive_raw = entry.get("archive")
    if not archive_raw:
        raise ArchiveError(f"Release '{release_id}' has no archive recorded.")
    path = Path(str(archive_raw))
    if not path.is_file():
        raise ArchiveError(f"Archive for release '{release_id}' is missing: {path}")
    checksum = compute_checksum(path)
    if checksum != entry.get("checksum"):
        raise ArchiveError(
            f"Archive for release '{release_id}' changed since it was registered "
            f"(expected {entry.get('checksum')}, found {checksum})."
        )
    sources = entry.get("sources") or []
    release = Release(
        id=release_id,
        sources=tuple(str(item) for item in sources),  # type: ignore[union-attr]
        archive_path=path,
        created_at=str(entry.get("created_at") or _now_iso()),
    )
    return Archive(
        release=release,
        path=path,
        checksum=checksum,
        checksum_file=path.with_name(f"{path.name}.sha256"),
        size_bytes=path.stat().st_size,
    )


def _prepare_archive(
    op: OperationScope,
    runtime: RuntimeContext,
    release: Release,
    sources: Sequence[Path],
    *,
    use_git: bool,
) -> Archive:
    """Return the release archive, reusing a registered one when present."""
    config = runtime.config
    entry = runtime.registry.get_release(release.id)
    if entry is not None:
        archive = _registered_archive(entry)
        op.add_step("archive.reuse", detail=str(archive.path))
        return archive

    builder = ArchiveBuilder(
        config.source_dir,
        config.archive_dir,
        archive_name=config.archive_name,
    )
    archive = builder.build(release, _source_lists(config, sources, use_git=use_git))
    op.add_step("archive.build", detail=f"{archive.path} sha256={archive.checksum}")
    runtime.registry.register_release(
        {
            "id": archive.release.id,
            "archive": str(archive.path),
            "checksum": archive.checksum,
            "created_at": archive.release.created_at,
            "source_dir": str(config.source_dir),
            "sources": list(archive.files),
            "metadata": {"size_bytes": archive.size_bytes},
        }
    )
    op.add_step("registry.register", detail=archive.release.id)
    return archive


@contextmanager
def _cancel_on_signal(runner: PlanRunner) -> Iterator[None]:
    """Route SIGINT/SIGTERM to :meth:`PlanRunner.cancel` while running."""
    if threading.current_thread() is not threading.main_thread():
        yield
        return

    def _handler(signum: int, _frame: object) -> None:
        console.print(f"[yellow]Received signal {signum}; cancelling run...[/yellow]")
        runner.cancel()

    previous = {sig: signal.signal(sig, _handler) for sig in (signal.SIGINT, signal.SIGTERM)}
    try:
        yield
    finally:
        for sig, handler in previous.items():
            signal.signal(sig, handler)


# ----------------------------------------------------------------------
# Rendering
# ----------------------------------------------------------------------
def _render_run_report(report: RunReport, *, title: str) -> None:
    table = Table(title=title, show_header=True, header_style="bold magenta")
    table.add_column("Target", style="bold")
    table.add_column("Status")
    table.add_column("Executed")
    table.add_column("Skipped")
    table.add_column("Failed step")
    table.add_column("Cause")
    for item in report.targets:
        table.add_row(
            item.target,
            _STATUS_STYLE[item.status],
            ", ".join(item.executed) or "-",
            ", ".join(item.skipped) or "-",
            item.failed_step or "-",
            item.cause or "-",
        )
    console.print(table)


# ----------------------------------------------------------------------
# Commands
# ----------------------------------------------------------------------
@app.command("run")
def run_command(
    ctx: typer.Context,
    release: str | None = RELEASE_OPTION,
    targets: str = TARGETS_OPTION,
    plan_file: Path | None = PLAN_OPTION,
    sources: list[Path] | None = SOURCE_OPTION,
    use_git: bool = GIT_OPTION,
    max_workers: int | None = MAX_WORKERS_OPTION,
    dry_run: bool = DRY_RUN_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Deploy a release to the selected targets, resuming prior progress."""
    runtime = _get_runtime(ctx)
    config = runtime.config
    release_id = release or new_release_id()
    workers = max_workers or config.max_workers

    with runtime.logger.operation(
        "run",
        args={
            "release": release_id,
            "targets": targets,
            "plan": plan_file,
            "sources": list(sources or []),
            "git": use_git,
            "max_workers": workers,
            "dry_run": dry_run,
        },
        target={"kind": "release", "id": release_id},
    ) as op:
        try:
            release_obj = Release(id=release_id)
        except ArchiveError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))
        resolved = _resolve_targets(op, runtime, targets)
        steps = _load_steps(op, runtime, plan_file)

        context = StepContext(variables={}, templates=runtime.templates, timeout=config.step_timeout)
        executor = StepExecutor(context, ssh_config=config.ssh)
        runner = PlanRunner(executor, runtime.tracker, max_workers=workers, op=op)

        if dry_run:
            try:
                preview = runner.preview(steps, resolved, release_id)
            except StateTrackerError as exc:
                _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
            if json_output:
                console.print_json(data={"dry_run": True, "report": preview.to_dict()})
                op.success("Dry run complete.", changed=0, context=preview.to_dict())
                return
            _render_run_report(preview, title=f"Plan for release {release_id}")
            pending = sum(len(item.executed) for item in preview.targets)
            _dry_run_complete(
                op,
                f"{pending} step execution(s) across {len(resolved)} target(s) would run.",
                context=preview.to_dict(),
            )
            return

        try:
            with runtime.locks.mutate_releases([release_id]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                archive = _prepare_archive(op, runtime, release_obj, sources or [], use_git=use_git)
        except LockTimeoutError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        except (ArchiveError, StateRegistryError) as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))

        context.variables = plan_variables(config, archive)
        with _cancel_on_signal(runner):
            report = runner.run(steps, resolved, archive.release)

        try:
            with runtime.locks.mutate_releases([release_id]):
                runtime.registry.update_release(
                    release_id,
                    {
                        "last_run": {
                            "at": _now_iso(),
                            "ok": report.ok,
                            "targets": {item.target: item.status.value for item in report.targets},
                        }
                    },
                )
        except (LockTimeoutError, StateRegistryError) as exc:
            op.add_step("registry.update", status="warning", detail=str(exc))

        if json_output:
            console.print_json(data={"archive": archive.to_dict(), "report": report.to_dict()})
        else:
            _render_run_report(report, title=f"Release {release_id}")

        executed = sum(len(item.executed) for item in report.targets)
        if report.ok:
            op.success(
                f"Release {release_id} deployed to {len(report.targets)} target(s).",
                changed=executed,
                artifacts=[str(archive.path)],
                context=report.to_dict(),
            )
            return

        failures = report.failures()
        message = f"Release {release_id} failed on {len(failures)} of {len(report.targets)} target(s)."
        if not json_output:
            console.print(f"[red]{message}[/red]")
        op.error(
            message,
            errors=[
                f"{item.target}: {item.status.value} at {item.failed_step or '-'}: {item.cause}"
                for item in failures
            ],
            rc=int(ExitCode.PROVIDER),
            context=report.to_dict(),
        )
        raise typer.Exit(code=int(ExitCode.PROVIDER))


@app.command("status")
def status_command(
    ctx: typer.Context,
    release: str = REQUIRED_RELEASE_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Show the recorded execution state of a release."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "status",
        args={"release": release, "json": json_output},
        target={"kind": "release", "id": release},
    ) as op:
        try:
            entry = runtime.registry.get_release(release)
            records = runtime.tracker.records_for_release(release)
        except (StateRegistryError, StateTrackerError) as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        if entry is None and not records:
            _command_error(op, f"Release '{release}' is unknown.", rc=int(ExitCode.VALIDATION))

        if json_output:
            console.print_json(
                data={
                    "release": entry,
                    "records": [
                        {**record.key.to_dict(), **record.to_dict()} for record in records
                    ],
                }
            )
            op.success("Rendered release status as JSON.", changed=0)
            return

        if entry is not None:
            console.print(
                f"[bold]Release {release}[/bold] archive={entry.get('archive', '-')} "
                f"sha256={entry.get('checksum', '-')}"
            )
        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Step", style="bold")
        table.add_column("Target")
        table.add_column("Status")
        table.add_column("Attempt", justify="right")
        table.add_column("Finished")
        table.add_column("Reason")
        for record in records:
            table.add_row(
                record.key.step,
                record.key.target,
                _RECORD_STYLE.get(record.status.value, record.status.value),
                str(record.attempt),
                record.finished_at or "-",
                record.reason or "-",
            )
        console.print(table)
        op.success(f"Rendered status for {len(records)} key(s).", changed=0)


@app.command("targets")
def targets_command(
    ctx: typer.Context,
    spec: str = typer.Argument("all", help="Target spec to resolve."),
    json_output: bool = JSON_OPTION,
) -> None:
    """Resolve a target spec against the inventory."""
    runtime = _get_runtime(ctx)
    with runtime.logger.operation(
        "targets",
        args={"spec": spec, "json": json_output},
        target={"kind": "inventory", "path": runtime.config.inventory_file},
    ) as op:
        resolved = _resolve_targets(op, runtime, spec)
        if json_output:
            console.print_json(data={"targets": [target.to_dict() for target in resolved]})
            op.success(f"Resolved {len(resolved)} target(s).", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Target", style="bold")
        table.add_column("Transport")
        table.add_column("Destination")
        table.add_column("Port", justify="right")
        for target in resolved:
            table.add_row(
                target.id,
                target.transport,
                target.destination,
                "-" if target.is_local else str(target.port),
            )
        console.print(table)
        op.success(f"Resolved {len(resolved)} target(s).", changed=0)


@app.command("archive")
def archive_command(
    ctx: typer.Context,
    release: str | None = RELEASE_OPTION,
    sources: list[Path] | None = SOURCE_OPTION,
    use_git: bool = GIT_OPTION,
    json_output: bool = JSON_OPTION,
) -> None:
    """Build and register a release archive without deploying it."""
    runtime = _get_runtime(ctx)
    release_id = release or new_release_id()
    with runtime.logger.operation(
        "archive",
        args={"release": release_id, "sources": list(sources or []), "git": use_git},
        target={"kind": "release", "id": release_id},
    ) as op:
        try:
            release_obj = Release(id=release_id)
        except ArchiveError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.VALIDATION))
        try:
            with runtime.locks.mutate_releases([release_id]) as bundle:
                op.set_lock_wait_ms(bundle.wait_ms)
                archive = _prepare_archive(op, runtime, release_obj, sources or [], use_git=use_git)
        except (ArchiveError, LockTimeoutError, StateRegistryError) as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))

        if json_output:
            console.print_json(data=archive.to_dict())
        else:
            console.print(
                f"[green]Archive ready[/green]: {archive.path} "
                f"({len(archive.files)} files, sha256 {archive.checksum})"
            )
        op.success(
            f"Archive for release {release_id} is ready.",
            changed=1,
            artifacts=[str(archive.path), str(archive.checksum_file)],
            context=archive.to_dict(),
        )


@app.command("clone")
def clone_command(
    ctx: typer.Context,
    url: str = typer.Argument(..., help="Repository URL to clone."),
    ref: str | None = typer.Option(None, "--ref", help="Branch or tag to check out."),
    dest: Path | None = typer.Option(
        None,
        "--dest",
        file_okay=False,
        help="Clone destination (defaults to source_dir).",
    ),
) -> None:
    """Clone the source repository that releases are built from."""
    runtime = _get_runtime(ctx)
    destination = dest or runtime.config.source_dir
    with runtime.logger.operation(
        "clone",
        args={"url": url, "ref": ref, "dest": destination},
        target={"kind": "source", "path": destination},
    ) as op:
        try:
            path = clone_source(url, destination, ref=ref)
        except ArchiveError as exc:
            _command_error(op, str(exc), rc=int(ExitCode.ENVIRONMENT))
        console.print(f"[green]Cloned[/green] {url} into {path}")
        op.success(f"Cloned {url}.", changed=1, artifacts=[str(path)])


@config_app.command("show")
def config_show(
    ctx: typer.Context,
    json_output: bool = typer.Option(
        False,
        "--json",
        help="Emit configuration as JSON instead of a table.",
    ),
) -> None:
    """Display the effective configuration after merges."""
    runtime = _get_runtime(ctx)
    data = runtime.config.to_dict()

    with runtime.logger.operation(
        "config show",
        args={"json": json_output},
        target={"kind": "config"},
    ) as op:
        if json_output:
            console.print_json(data=data)
            op.success("Rendered configuration as JSON.", changed=0)
            return

        table = Table(show_header=True, header_style="bold magenta")
        table.add_column("Key", style="bold")
        table.add_column("Value")
        for key, value in data.items():
            table.add_row(key, str(value))
        console.print(table)
        op.success("Rendered configuration table.", changed=0)


def main() -> None:
    """Console script entry point."""
    app()
