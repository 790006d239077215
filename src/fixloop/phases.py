from __future__ import annotations

import json
import logging
import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from importlib import resources
from pathlib import Path
from typing import Any, Literal

from fixloop.jobs import JobResult, JobSpec, ResultTally
from fixloop.manifest import TaskDescriptor
from fixloop.pool import WorkerPool
from fixloop.validation import FailedItem, ValidationHarness, ValidationResult

logger = logging.getLogger(__name__)

PhaseName = Literal[
    "propose-fix",
    "scaffold-checks",
    "apply-work",
    "verify-work",
    "run-validation",
    "analyze-failures",
]
PHASE_ORDER: tuple[PhaseName, ...] = (
    "propose-fix",
    "scaffold-checks",
    "apply-work",
    "verify-work",
    "run-validation",
    "analyze-failures",
)
SETUP_PHASES: tuple[PhaseName, ...] = ("propose-fix", "scaffold-checks")
ITERATION_PHASES: tuple[PhaseName, ...] = (
    "apply-work",
    "verify-work",
    "run-validation",
    "analyze-failures",
)

SETUP_TASK = TaskDescriptor(
    identity="__scaffold_setup__",
    source_location=".",
    category="setup",
    original_identity="__scaffold_setup__",
)
ANALYSIS_TASK = TaskDescriptor(
    identity="__analysis__",
    source_location=".",
    category="analysis",
    original_identity="__analysis__",
)

MAX_RENDERED_FAILURES = 50
MAX_FAILURE_MESSAGE = 800
_ITERATION_FILE_PATTERN = re.compile(r"^iter-(\d+)\.")

PhaseEventHook = Callable[[dict[str, Any]], None]


class PhaseSetupError(RuntimeError):
    """Raised when a one-time setup job fails and the run is configured to stop."""


def phase_index(phase: str) -> int:
    try:
        return PHASE_ORDER.index(phase)  # type: ignore[arg-type]
    except ValueError as exc:
        raise ValueError(f"Unknown phase: {phase}") from exc


@dataclass(frozen=True, slots=True)
class RunLayout:
    root: Path

    @property
    def plans_dir(self) -> Path:
        return self.root / "plans"

    @property
    def checks_dir(self) -> Path:
        return self.root / "checks"

    @property
    def logs_dir(self) -> Path:
        return self.root / "logs"

    @property
    def guidance_dir(self) -> Path:
        return self.root / "guidance"

    @property
    def validation_dir(self) -> Path:
        return self.root / "validation"

    @property
    def state_dir(self) -> Path:
        return self.root / "state"

    @property
    def setup_marker(self) -> Path:
        return self.checks_dir / "_setup.md"

    @property
    def report_markdown(self) -> Path:
        return self.root / "report.md"

    @property
    def report_json(self) -> Path:
        return self.root / "report.json"

    def ensure(self) -> None:
        for directory in (
            self.plans_dir,
            self.checks_dir,
            self.logs_dir,
            self.guidance_dir,
            self.validation_dir,
            self.state_dir,
        ):
            directory.mkdir(parents=True, exist_ok=True)

    def log_path(self, phase: str, task: TaskDescriptor, iteration: int) -> Path:
        return self.logs_dir / phase / f"iter-{iteration:03d}" / f"{task.slug}.log"

    def plan_path(self, task: TaskDescriptor) -> Path:
        return self.plans_dir / f"{task.slug}.md"

    def check_path(self, task: TaskDescriptor) -> Path:
        return self.checks_dir / f"{task.slug}.md"

    def guidance_path(self, iteration: int) -> Path:
        return self.guidance_dir / f"iter-{iteration:03d}.md"

    def validation_path(self, iteration: int) -> Path:
        return self.validation_dir / f"iter-{iteration:03d}.json"

    def validation_log(self, iteration: int) -> Path:
        return self.logs_dir / "run-validation" / f"iter-{iteration:03d}" / "harness.log"


@dataclass(frozen=True, slots=True)
class PhaseContext:
    iteration: int = 1
    lessons: tuple[str, ...] = ()
    failures: tuple[FailedItem, ...] = ()

    @property
    def guidance(self) -> str:
        return "\n\n---\n\n".join(lesson.strip() for lesson in self.lessons if lesson.strip())

    def with_failures(self, failures: Sequence[FailedItem]) -> PhaseContext:
        return replace(self, failures=tuple(failures))

    def advance(self, lesson: str | None) -> PhaseContext:
        lessons = self.lessons
        if lesson and lesson.strip():
            lessons = (*lessons, lesson.strip())
        return PhaseContext(iteration=self.iteration + 1, lessons=lessons, failures=())

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "lessons": list(self.lessons),
            "failures": [item.to_dict() for item in self.failures],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> PhaseContext:
        failures = tuple(
            FailedItem(name=str(item.get("name", "")), message=str(item.get("message", "")))
            for item in payload.get("failures", [])
            if isinstance(item, dict)
        )
        return cls(
            iteration=int(payload.get("iteration", 1)),
            lessons=tuple(str(item) for item in payload.get("lessons", [])),
            failures=failures,
        )


_FALLBACK_TEMPLATES = {
    "propose_fix": "Write a repair plan for {identity} ({source_location}) to {plan_path}.",
    "scaffold_setup": "Set up the shared verification harness and summarize it in {setup_path}.",
    "scaffold_check": "Write a check for {identity} ({source_location}); note it in {check_path}.",
    "apply_work": "Fix {identity} ({source_location}) following {plan_path}.\n\n{guidance}",
    "verify_work": "Verify and correct the fix for {identity} ({source_location}).\n\n{guidance}",
    "analyze_failures": "Analyze these failures and write guidance to {guidance_path}:\n{failures}",
}


class _TemplateValues(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def load_template(name: str) -> str:
    try:
        template_path = resources.files("fixloop.prompts").joinpath(f"{name}.md")
        return template_path.read_text(encoding="utf-8").strip()
    except (FileNotFoundError, ModuleNotFoundError):
        return _FALLBACK_TEMPLATES[name]


def render_failures(failures: Sequence[FailedItem]) -> str:
    if not failures:
        return "(no named failures were reported)"
    lines: list[str] = []
    for item in failures[:MAX_RENDERED_FAILURES]:
        message = " ".join(item.message.split())[:MAX_FAILURE_MESSAGE]
        lines.append(f"- {item.name}: {message}" if message else f"- {item.name}")
    hidden = len(failures) - MAX_RENDERED_FAILURES
    if hidden > 0:
        lines.append(f"- ... and {hidden} more")
    return "\n".join(lines)


class PhaseBuilders:
    """Pure ``(TaskDescriptor, PhaseContext) -> JobSpec`` builders for every phase.

    Builders only compute specs and never write to disk, so phases can
    be exercised with a fake launcher.
    """

    def __init__(
        self,
        layout: RunLayout,
        *,
        working_directory: Path,
        context_dirs: Sequence[str] = (),
        timeout_seconds: float | None = None,
    ) -> None:
        self.layout = layout
        self.working_directory = working_directory
        self.context_dirs = tuple(context_dirs)
        self.timeout_seconds = timeout_seconds
        self._templates: dict[str, str] = {}

    def _template(self, name: str) -> str:
        if name not in self._templates:
            self._templates[name] = load_template(name)
        return self._templates[name]

    def _values(self, task: TaskDescriptor, context: PhaseContext) -> _TemplateValues:
        return _TemplateValues(
            identity=task.identity,
            category=task.category,
            source_location=task.source_location,
            original_identity=task.original_identity,
            iteration=context.iteration,
            plan_path=str(self.layout.plan_path(task)),
            check_path=str(self.layout.check_path(task)),
            setup_path=str(self.layout.setup_marker),
            guidance=context.guidance or "(none yet)",
        )

    def _spec(
        self,
        phase: PhaseName,
        template: str,
        task: TaskDescriptor,
        context: PhaseContext,
        values: _TemplateValues,
    ) -> JobSpec:
        return JobSpec(
            payload=self._template(template).format_map(values),
            working_directory=self.working_directory,
            log_path=self.layout.log_path(phase, task, context.iteration),
            label=f"{phase}:{task.identity}:{context.iteration}",
            extra_context=(str(self.layout.root), *self.context_dirs),
            timeout_seconds=self.timeout_seconds,
        )

    def propose_fix(self, task: TaskDescriptor, context: PhaseContext) -> JobSpec:
        return self._spec("propose-fix", "propose_fix", task, context, self._values(task, context))

    def scaffold_setup(self, task: TaskDescriptor, context: PhaseContext) -> JobSpec:
        values = self._values(task, context)
        return self._spec("scaffold-checks", "scaffold_setup", task, context, values)

    def scaffold_check(self, task: TaskDescriptor, context: PhaseContext) -> JobSpec:
        values = self._values(task, context)
        return self._spec("scaffold-checks", "scaffold_check", task, context, values)

    def apply_work(self, task: TaskDescriptor, context: PhaseContext) -> JobSpec:
        return self._spec("apply-work", "apply_work", task, context, self._values(task, context))

    def verify_work(self, task: TaskDescriptor, context: PhaseContext) -> JobSpec:
        values = self._values(task, context)
        values["apply_log_path"] = str(self.layout.log_path("apply-work", task, context.iteration))
        return self._spec("verify-work", "verify_work", task, context, values)

    def analyze_failures(self, task: TaskDescriptor, context: PhaseContext) -> JobSpec:
        values = self._values(task, context)
        values["failures"] = render_failures(context.failures)
        values["guidance_path"] = str(self.layout.guidance_path(context.iteration))
        return self._spec("analyze-failures", "analyze_failures", task, context, values)


@dataclass(slots=True)
class PhaseOutcome:
    phase: PhaseName
    iteration: int
    results: list[JobResult] = field(default_factory=list)
    setup_results: list[JobResult] = field(default_factory=list)
    skipped: bool = False

    @property
    def tally(self) -> ResultTally:
        return ResultTally.of(self.results)

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase,
            "iteration": self.iteration,
            "skipped": self.skipped,
            "results": [result.to_dict() for result in self.results],
            "setup_results": [result.to_dict() for result in self.setup_results],
        }


def _write_fallback_artifact(result: JobResult, path: Path) -> bool:
    if not result.succeeded or path.exists() or not result.captured_output.strip():
        return False
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(result.captured_output.strip() + "\n", encoding="utf-8")
    return True


class PhaseRunner:
    def __init__(
        self,
        pool: WorkerPool,
        builders: PhaseBuilders,
        harness: ValidationHarness,
        *,
        abort_on_setup_failure: bool = False,
        event_hook: PhaseEventHook | None = None,
    ) -> None:
        self.pool = pool
        self.builders = builders
        self.harness = harness
        self.abort_on_setup_failure = abort_on_setup_failure
        self.event_hook = event_hook

    @property
    def layout(self) -> RunLayout:
        return self.builders.layout

    def set_event_hook(self, hook: PhaseEventHook | None) -> None:
        self.event_hook = hook
        self.pool.event_hook = hook
        self.harness.event_hook = hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def _skip_or_discard(
        self,
        phase: PhaseName,
        artifacts: list[Path],
        context: PhaseContext,
        reuse_existing: bool,
    ) -> bool:
        if reuse_existing and artifacts and all(path.exists() for path in artifacts):
            logger.info("Skipping %s: all %d artifacts already exist", phase, len(artifacts))
            self._emit({"event": "phase_skipped", "phase": phase, "iteration": context.iteration})
            return True
        for path in artifacts:
            path.unlink(missing_ok=True)
        return False

    async def propose_fix(
        self,
        queue: Sequence[TaskDescriptor],
        context: PhaseContext,
        *,
        reuse_existing: bool,
    ) -> PhaseOutcome:
        outcome = PhaseOutcome(phase="propose-fix", iteration=context.iteration)
        artifacts = [self.layout.plan_path(task) for task in queue]
        if self._skip_or_discard("propose-fix", artifacts, context, reuse_existing):
            outcome.skipped = True
            return outcome

        outcome.results = await self.pool.run(
            queue, lambda task: self.builders.propose_fix(task, context)
        )
        for result in outcome.results:
            _write_fallback_artifact(result, self.layout.plan_path(result.task))
        return outcome

    async def scaffold_checks(
        self,
        queue: Sequence[TaskDescriptor],
        context: PhaseContext,
        *,
        reuse_existing: bool,
    ) -> PhaseOutcome:
        outcome = PhaseOutcome(phase="scaffold-checks", iteration=context.iteration)
        artifacts = [self.layout.setup_marker, *(self.layout.check_path(task) for task in queue)]
        if self._skip_or_discard("scaffold-checks", artifacts, context, reuse_existing):
            outcome.skipped = True
            return outcome

        outcome.setup_results = await self.pool.run(
            [SETUP_TASK], lambda task: self.builders.scaffold_setup(task, context)
        )
        setup = outcome.setup_results[0]
        if setup.succeeded:
            _write_fallback_artifact(setup, self.layout.setup_marker)
        else:
            logger.error(
                "Scaffold setup job failed (exit code %d); continuing with per-task checks",
                setup.exit_code,
            )
            self._emit(
                {
                    "event": "setup_job_failed",
                    "phase": "scaffold-checks",
                    "iteration": context.iteration,
                    "exit_code": setup.exit_code,
                    "error": setup.error,
                }
            )
            if self.abort_on_setup_failure:
                raise PhaseSetupError(
                    f"Scaffold setup job failed with exit code {setup.exit_code}."
                )

        outcome.results = await self.pool.run(
            queue, lambda task: self.builders.scaffold_check(task, context)
        )
        for result in outcome.results:
            _write_fallback_artifact(result, self.layout.check_path(result.task))
        return outcome

    async def apply_and_verify(
        self,
        queue: Sequence[TaskDescriptor],
        context: PhaseContext,
    ) -> tuple[PhaseOutcome, PhaseOutcome]:
        apply_results, verify_results = await self.pool.run_stages(
            queue,
            [
                lambda task: self.builders.apply_work(task, context),
                lambda task: self.builders.verify_work(task, context),
            ],
        )
        return (
            PhaseOutcome(phase="apply-work", iteration=context.iteration, results=apply_results),
            PhaseOutcome(phase="verify-work", iteration=context.iteration, results=verify_results),
        )

    async def apply_work(
        self, queue: Sequence[TaskDescriptor], context: PhaseContext
    ) -> PhaseOutcome:
        results = await self.pool.run(queue, lambda task: self.builders.apply_work(task, context))
        return PhaseOutcome(phase="apply-work", iteration=context.iteration, results=results)

    async def verify_work(
        self, queue: Sequence[TaskDescriptor], context: PhaseContext
    ) -> PhaseOutcome:
        results = await self.pool.run(queue, lambda task: self.builders.verify_work(task, context))
        return PhaseOutcome(phase="verify-work", iteration=context.iteration, results=results)

    async def run_validation(self, context: PhaseContext) -> ValidationResult:
        validation = await self.harness.run(self.layout.validation_log(context.iteration))
        path = self.layout.validation_path(context.iteration)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(
            json.dumps(validation.to_dict(), ensure_ascii=False, indent=2) + "\n",
            encoding="utf-8",
        )
        return validation

    def load_validation(self, iteration: int) -> ValidationResult | None:
        path = self.layout.validation_path(iteration)
        if not path.exists():
            return None
        try:
            payload = json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None
        if not isinstance(payload, dict):
            return None
        return ValidationResult.from_dict(payload)

    def discard_iteration_artifacts(self, first_iteration: int) -> list[Path]:
        """Delete validation results and guidance from ``first_iteration`` onwards."""
        removed: list[Path] = []
        for directory, suffix in (
            (self.layout.validation_dir, ".json"),
            (self.layout.guidance_dir, ".md"),
        ):
            if not directory.is_dir():
                continue
            for path in sorted(directory.glob(f"iter-*{suffix}")):
                match = _ITERATION_FILE_PATTERN.match(path.name)
                if match and int(match.group(1)) >= first_iteration:
                    path.unlink(missing_ok=True)
                    removed.append(path)
        if removed:
            logger.info(
                "Discarded %d artifact(s) from iteration %d on", len(removed), first_iteration
            )
        return removed

    async def analyze_failures(self, context: PhaseContext) -> tuple[PhaseOutcome, str | None]:
        guidance_path = self.layout.guidance_path(context.iteration)
        guidance_path.unlink(missing_ok=True)
        results = await self.pool.run(
            [ANALYSIS_TASK], lambda task: self.builders.analyze_failures(task, context)
        )
        outcome = PhaseOutcome(
            phase="analyze-failures", iteration=context.iteration, results=results
        )
        _write_fallback_artifact(results[0], guidance_path)
        if not guidance_path.exists():
            logger.warning(
                "Failure analysis produced no guidance for iteration %d", context.iteration
            )
            self._emit(
                {
                    "event": "analysis_without_guidance",
                    "iteration": context.iteration,
                    "exit_code": results[0].exit_code,
                }
            )
            return outcome, None
        return outcome, guidance_path.read_text(encoding="utf-8", errors="replace")
