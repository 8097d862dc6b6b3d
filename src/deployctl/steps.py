"""Deployment steps and the executor that runs one step on one target.

Four step kinds exist:

* :class:`ProcessStep` runs a command (on the target, or on the control node
  when ``remote`` is false). Success means exit code zero.
* :class:`TransferStep` copies a local artifact to the target. Success means
  the destination checksum matches the source.
* :class:`LinkStep` atomically points a fixed path at a versioned path.
  A link that already points at the right place is left untouched.
* :class:`RegisterStep` invokes a registration command once with the whole
  batch of resources. The batch succeeds or fails as a unit.

Every string field is a Jinja2 template rendered per target. Steps raise
:class:`StepError`; :meth:`StepExecutor.execute` turns that into a failed
:class:`Outcome`. Nothing here retries.
"""
from __future__ import annotations

import threading
import time
from abc import ABC, abstractmethod
from collections.abc import Callable, Iterator, Mapping
from contextlib import contextmanager
from dataclasses import dataclass, field
from pathlib import Path

from .archive import compute_checksum
from .config import SSHConfig
from .providers.transport import (
    Deadline,
    LocalTransport,
    Transport,
    TransportCancelledError,
    TransportError,
    TransportTimeoutError,
    transport_for,
)
from .targets import Target
from .templates import TemplateEngine, TemplateError

_OUTPUT_TAIL = 2000


class StepError(RuntimeError):
    """A step failed on a target."""

    def __init__(self, step: str, target: str, cause: str) -> None:
        """Record which step failed where, and why."""
        super().__init__(f"step '{step}' failed on '{target}': {cause}")
        self.step = step
        self.target = target
        self.cause = cause


class StepTimeoutError(StepError):
    """A step exceeded its timeout."""


class StepCancelledError(StepError):
    """A step was stopped because the run was cancelled."""


@dataclass(frozen=True, slots=True)
class Outcome:
    """Result of executing one step on one target."""

    success: bool
    output: str = ""
    error: str | None = None
    changed: bool = True
    cancelled: bool = False
    duration_ms: int = 0


@dataclass(slots=True)
class StepContext:
    """Run-wide inputs shared by every step execution."""

    variables: Mapping[str, object]
    templates: TemplateEngine = field(default_factory=TemplateEngine)
    timeout: float = 300.0
    cancel_event: threading.Event = field(default_factory=threading.Event)

    def variables_for(self, target: Target) -> dict[str, object]:
        """Return the template variables visible while running on *target*."""
        variables = dict(self.variables)
        variables["target"] = target.to_dict()
        return variables

    def render(self, value: object, target: Target) -> object:
        """Render *value* for *target*."""
        return self.templates.render_value(value, self.variables_for(target))

    def render_str(self, value: str, target: Target) -> str:
        """Render a string field for *target*."""
        return self.templates.render_string(value, self.variables_for(target))


def _tail(text: str | None) -> str:
    if not text:
        return ""
    stripped = text.strip()
    return stripped[-_OUTPUT_TAIL:]


def _combined_output(stdout: str | None, stderr: str | None) -> str:
    parts = [part.strip() for part in (stdout, stderr) if part and part.strip()]
    return "\n".join(parts)


@dataclass(frozen=True, kw_only=True)
class Step(ABC):
    """Common fields of every deployment step."""

    name: str
    scope: frozenset[str] | None = None
    timeout: float | None = None

    kind = "step"

    def applies_to(self, target: Target) -> bool:
        """Return ``True`` when *target* is in this step's scope."""
        return self.scope is None or target.id in self.scope

    def effective_timeout(self, context: StepContext) -> float:
        """Return the step timeout, falling back to the run default."""
        return self.timeout if self.timeout is not None else context.timeout

    @abstractmethod
    def run(self, target: Target, transport: Transport, context: StepContext) -> Outcome:
        """Perform the step on *target*; raise :class:`StepError` on failure."""

    @abstractmethod
    def describe(self) -> str:
        """Return a one-line summary for plans and dry runs."""

    @contextmanager
    def _translate_errors(self, target: Target) -> Iterator[None]:
        try:
            yield
        except TransportTimeoutError as exc:
            raise StepTimeoutError(self.name, target.id, str(exc)) from exc
        except TransportCancelledError as exc:
            raise StepCancelledError(self.name, target.id, str(exc)) from exc
        except TransportError as exc:
            raise StepError(self.name, target.id, str(exc)) from exc
        except (TemplateError, OSError) as exc:
            raise StepError(self.name, target.id, str(exc)) from exc


@dataclass(frozen=True, kw_only=True)
class ProcessStep(Step):
    """Run an external command."""

    command: tuple[str, ...]
    remote: bool = True
    cwd: str | None = None
    env: Mapping[str, str] = field(default_factory=dict)

    kind = "process"

    def run(self, target: Target, transport: Transport, context: StepContext) -> Outcome:
        """Run the command and require a zero exit status."""
        with self._translate_errors(target):
            argv = [str(item) for item in context.render(list(self.command), target)]  # type: ignore[union-attr]
            cwd = context.render_str(self.cwd, target) if self.cwd else None
            env = {key: context.render_str(value, target) for key, value in self.env.items()}
            runner = transport if self.remote else LocalTransport(target)
            result = runner.run(
                argv,
                timeout=self.effective_timeout(context),
                cancel_event=context.cancel_event,
                cwd=cwd,
                env=env or None,
            )
        output = _combined_output(result.stdout, result.stderr)
        if result.returncode != 0:
            detail = _tail(result.stderr) or _tail(result.stdout) or "no output"
            raise StepError(self.name, target.id, f"exit {result.returncode}: {detail}")
        return Outcome(success=True, output=output)

    def describe(self) -> str:
        """Summarise the command."""
        where = "target" if self.remote else "control node"
        return f"run on {where}: {' '.join(self.command)}"


@dataclass(frozen=True, kw_only=True)
class TransferStep(Step):
    """Copy a local artifact to the target and verify its checksum."""

    source: str
    destination: str

    kind = "transfer"

    def run(self, target: Target, transport: Transport, context: StepContext) -> Outcome:
        """Upload unless an identical copy is present, then verify."""
        deadline = Deadline(self.effective_timeout(context))
        with self._translate_errors(target):
            source = Path(context.render_str(self.source, target))
            destination = context.render_str(self.destination, target)
            if not source.is_file():
                raise StepError(self.name, target.id, f"source artifact missing: {source}")
            expected = compute_checksum(source)
            existing = transport.checksum(
                destination, timeout=deadline.remaining(), cancel_event=context.cancel_event
            )
            if existing == expected:
                return Outcome(
                    success=True,
                    output=f"{destination} already matches sha256 {expected}",
                    changed=False,
                )
            transport.upload(
                source, destination, timeout=deadline.remaining(), cancel_event=context.cancel_event
            )
            actual = transport.checksum(
                destination, timeout=deadline.remaining(), cancel_event=context.cancel_event
            )
        if actual != expected:
            raise StepError(
                self.name,
                target.id,
                f"checksum mismatch for {destination}: expected {expected}, got {actual}",
            )
        return Outcome(success=True, output=f"copied {source} -> {destination} (sha256 {expected})")

    def describe(self) -> str:
        """Summarise the copy."""
        return f"transfer {self.source} -> {self.destination}"


@dataclass(frozen=True, kw_only=True)
class LinkStep(Step):
    """Point ``path`` at ``points_to`` with an atomic rename."""

    path: str
    points_to: str

    kind = "link"

    def run(self, target: Target, transport: Transport, context: StepContext) -> Outcome:
        """Replace the link unless it already points at the right place."""
        deadline = Deadline(self.effective_timeout(context))
        with self._translate_errors(target):
            link = context.render_str(self.path, target)
            points_to = context.render_str(self.points_to, target)
            current = transport.read_link(
                link, timeout=deadline.remaining(), cancel_event=context.cancel_event
            )
            if current == points_to:
                return Outcome(success=True, output=f"{link} already -> {points_to}", changed=False)
            transport.replace_symlink(
                link, points_to, timeout=deadline.remaining(), cancel_event=context.cancel_event
            )
            updated = transport.read_link(
                link, timeout=deadline.remaining(), cancel_event=context.cancel_event
            )
        if updated != points_to:
            raise StepError(
                self.name, target.id, f"{link} points to {updated!r} after update, not {points_to!r}"
            )
        return Outcome(success=True, output=f"{link} -> {points_to}")

    def describe(self) -> str:
        """Summarise the link."""
        return f"link {self.path} -> {self.points_to}"


@dataclass(frozen=True, kw_only=True)
class RegisterStep(Step):
    """Register a batch of resources with one command invocation."""

    command: tuple[str, ...]
    resources: tuple[str, ...]
    remote: bool = True

    kind = "register"

    def run(self, target: Target, transport: Transport, context: StepContext) -> Outcome:
        """Invoke the registration command with every resource as an argument."""
        with self._translate_errors(target):
            argv = [
                str(item)
                for item in context.render([*self.command, *self.resources], target)  # type: ignore[union-attr]
            ]
            runner = transport if self.remote else LocalTransport(target)
            result = runner.run(
                argv,
                timeout=self.effective_timeout(context),
                cancel_event=context.cancel_event,
            )
        output = _combined_output(result.stdout, result.stderr)
        if result.returncode != 0:
            detail = _tail(result.stderr) or _tail(result.stdout) or "no output"
            raise StepError(
                self.name,
                target.id,
                f"registration of {len(self.resources)} resource(s) failed "
                f"(exit {result.returncode}): {detail}",
            )
        return Outcome(success=True, output=output)

    def describe(self) -> str:
        """Summarise the registration batch."""
        return f"register {len(self.resources)} resource(s) via {' '.join(self.command)}"


TransportFactory = Callable[[Target], Transport]


class StepExecutor:
    """Run one step against one target and capture its :class:`Outcome`."""

    def __init__(
        self,
        context: StepContext,
        *,
        ssh_config: SSHConfig | None = None,
        transport_factory: TransportFactory | None = None,
    ) -> None:
        """Store the run context and how to reach targets."""
        self.context = context
        self._transport_factory = transport_factory or (
            lambda target: transport_for(target, ssh_config)
        )

    def execute(self, step: Step, target: Target) -> Outcome:
        """Execute *step* on *target*; failures become a failed outcome."""
        start = time.perf_counter()
        try:
            if self.context.cancel_event.is_set():
                raise StepCancelledError(step.name, target.id, "run cancelled before start")
            outcome = step.run(target, self._transport_factory(target), self.context)
        except StepError as exc:
            return Outcome(
                success=False,
                output="",
                error=exc.cause,
                cancelled=isinstance(exc, StepCancelledError),
                duration_ms=_elapsed_ms(start),
            )
        return Outcome(
            success=outcome.success,
            output=outcome.output,
            error=outcome.error,
            changed=outcome.changed,
            cancelled=outcome.cancelled,
            duration_ms=_elapsed_ms(start),
        )


def _elapsed_ms(start: float) -> int:
    return int((time.perf_counter() - start) * 1000)


__all__ = [
    "LinkStep",
    "Outcome",
    "ProcessStep",
    "RegisterStep",
    "Step",
    "StepCancelledError",
    "StepContext",
    "StepError",
    "StepExecutor",
    "StepTimeoutError",
    "TransferStep",
]
