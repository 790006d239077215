from __future__ import annotations

import logging
import time
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Literal
from uuid import uuid4

from fixloop.jobs import JobResult
from fixloop.manifest import TaskDescriptor
from fixloop.phases import (
    PHASE_ORDER,
    SETUP_PHASES,
    PhaseContext,
    PhaseName,
    PhaseOutcome,
    PhaseRunner,
    phase_index,
)
from fixloop.state import RunStateStore, StateError
from fixloop.validation import ValidationResult

logger = logging.getLogger(__name__)

RunOutcome = Literal["pass", "ceiling", "aborted"]
Decision = Literal["pass", "ceiling", "analyze"]
LoopEventHook = Callable[[dict[str, Any]], None]
ReportWriter = Callable[["RunSummary"], None]

HEARTBEAT_EVENTS = {"job_started", "job_finished", "job_timeout", "validation_finished"}


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


class ResumeError(RuntimeError):
    """Raised when a run cannot be resumed from the requested point."""


@dataclass(frozen=True, slots=True)
class ResumePoint:
    phase: PhaseName
    iteration: int = 1

    def __post_init__(self) -> None:
        if self.phase not in PHASE_ORDER:
            raise ResumeError(
                f"Unknown phase '{self.phase}'. Expected one of: {', '.join(PHASE_ORDER)}."
            )
        if self.iteration < 1:
            raise ResumeError(f"Resume iteration must be at least 1, got {self.iteration}.")


@dataclass(slots=True)
class IterationState:
    iteration: int
    apply_results: list[JobResult] = field(default_factory=list)
    verify_results: list[JobResult] = field(default_factory=list)
    validation: ValidationResult | None = None
    guidance: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "iteration": self.iteration,
            "apply_results": [result.to_dict() for result in self.apply_results],
            "verify_results": [result.to_dict() for result in self.verify_results],
            "validation": self.validation.to_dict() if self.validation is not None else None,
            "guidance": self.guidance,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> IterationState:
        validation = payload.get("validation")
        return cls(
            iteration=int(payload.get("iteration", 1)),
            apply_results=[JobResult.from_dict(item) for item in payload.get("apply_results", [])],
            verify_results=[
                JobResult.from_dict(item) for item in payload.get("verify_results", [])
            ],
            validation=(
                ValidationResult.from_dict(validation) if isinstance(validation, dict) else None
            ),
            guidance=payload.get("guidance"),
        )


@dataclass(slots=True)
class RunSummary:
    run_id: str
    project: str
    outcome: RunOutcome
    max_iterations: int
    started_at: str
    ended_at: str
    task_count: int
    history: list[IterationState] = field(default_factory=list)
    setup: list[PhaseOutcome] = field(default_factory=list)
    error: str | None = None

    @property
    def iterations_run(self) -> int:
        return len(self.history)

    @property
    def final_validation(self) -> ValidationResult | None:
        for state in reversed(self.history):
            if state.validation is not None:
                return state.validation
        return None

    def to_dict(self) -> dict[str, Any]:
        final = self.final_validation
        return {
            "run_id": self.run_id,
            "project": self.project,
            "outcome": self.outcome,
            "max_iterations": self.max_iterations,
            "iterations_run": self.iterations_run,
            "started_at": self.started_at,
            "ended_at": self.ended_at,
            "task_count": self.task_count,
            "error": self.error,
            "final_validation": final.to_dict() if final is not None else None,
            "setup": [outcome.to_dict() for outcome in self.setup],
            "history": [state.to_dict() for state in self.history],
        }


def decide(validation: ValidationResult, iteration: int, max_iterations: int) -> Decision:
    if validation.converged:
        return "pass"
    if iteration >= max_iterations:
        return "ceiling"
    return "analyze"


class ConvergenceLoop:
    """Drives the repair phases until validation passes or the iteration ceiling is hit.

    Every iteration reworks the full queue. The run summary is finalized
    exactly once, including when a fatal error aborts the run; the error is
    re-raised after the report is written.
    """

    def __init__(
        self,
        runner: PhaseRunner,
        state: RunStateStore,
        *,
        project: str = "",
        max_iterations: int = 3,
        lease_ttl_seconds: float = 3600.0,
        reuse_setup_artifacts_on_resume: bool = False,
        report_writer: ReportWriter | None = None,
        event_hook: LoopEventHook | None = None,
    ) -> None:
        if max_iterations < 1:
            raise ValueError(f"max_iterations must be at least 1, got {max_iterations}.")
        self.runner = runner
        self.state = state
        self.project = project
        self.max_iterations = int(max_iterations)
        self.lease_ttl_seconds = max(30.0, float(lease_ttl_seconds))
        self.reuse_setup_artifacts_on_resume = reuse_setup_artifacts_on_resume
        self.report_writer = report_writer
        self.event_hook = event_hook
        self._run_id: str | None = None
        self._last_heartbeat = 0.0
        runner.set_event_hook(self.on_event)

    def on_event(self, event: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(event)
        if self._run_id and event.get("event") in HEARTBEAT_EVENTS:
            if time.monotonic() - self._last_heartbeat >= min(30.0, self.lease_ttl_seconds / 10):
                self._heartbeat_run(self._run_id)

    def _emit(self, payload: dict[str, Any]) -> None:
        self.on_event(payload)

    def _acquire_run_lease(self, run_id: str, *, resume: bool) -> None:
        now_epoch = time.time()
        now_iso = _utcnow_iso()

        def _updater(payload: Any) -> dict[str, Any]:
            leases = payload if isinstance(payload, dict) else {}
            active = leases.get("active")
            if isinstance(active, dict):
                active_run = str(active.get("run_id", ""))
                active_expiry = float(active.get("expires_epoch", 0))
                if active_run and active_run != run_id and active_expiry > now_epoch:
                    raise StateError(
                        f"Run {active_run} still holds the lease for this work directory "
                        "until it expires."
                    )
            leases["active"] = {
                "run_id": run_id,
                "heartbeat_at": now_iso,
                "expires_epoch": now_epoch + self.lease_ttl_seconds,
            }
            return leases

        self.state.update_json("leases", _updater, default={})
        self.state.upsert_run(
            run_id,
            {
                "run_id": run_id,
                "lease_acquired_at": now_iso,
                "heartbeat_at": now_iso,
                "status": "in_progress",
                "resumed": resume,
            },
        )
        self._last_heartbeat = time.monotonic()

    def _heartbeat_run(self, run_id: str) -> None:
        now_epoch = time.time()
        now_iso = _utcnow_iso()

        def _updater(payload: Any) -> dict[str, Any]:
            leases = payload if isinstance(payload, dict) else {}
            active = leases.get("active")
            if not isinstance(active, dict) or str(active.get("run_id", "")) != run_id:
                active = {"run_id": run_id}
            active["heartbeat_at"] = now_iso
            active["expires_epoch"] = now_epoch + self.lease_ttl_seconds
            leases["active"] = active
            return leases

        self.state.update_json("leases", _updater, default={})
        self._last_heartbeat = time.monotonic()

    def _release_run_lease(self, run_id: str) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            leases = payload if isinstance(payload, dict) else {}
            active = leases.get("active")
            if isinstance(active, dict) and str(active.get("run_id", "")) == run_id:
                leases["active"] = None
            return leases

        self.state.update_json("leases", _updater, default={})

    def _enter_phase(self, run_id: str, phase: PhaseName, iteration: int) -> None:
        logger.info("Iteration %d: %s", iteration, phase)
        context = self.state.get_context()
        context.update(
            {
                "run_id": run_id,
                "phase": phase,
                "iteration": iteration,
                "status": "in_progress",
            }
        )
        history = context.setdefault("phase_history", [])
        history.append({"phase": phase, "iteration": iteration, "at": _utcnow_iso()})
        context["phase_history"] = history[-100:]
        self.state.set_context(context)
        self._emit({"event": "phase_started", "phase": phase, "iteration": iteration})

    def _initial_context(
        self, resume: ResumePoint | None, history: list[IterationState]
    ) -> PhaseContext:
        if resume is None:
            return PhaseContext()
        stored = self.state.get_phase_context()
        if stored is not None:
            context = PhaseContext.from_dict(stored)
            if context.iteration == resume.iteration:
                return context
        lessons = tuple(state.guidance for state in history if state.guidance)
        return PhaseContext(iteration=resume.iteration, lessons=lessons)

    def _load_history(self, resume: ResumePoint) -> tuple[list[IterationState], IterationState]:
        history: list[IterationState] = []
        current = IterationState(iteration=resume.iteration)
        for record in self.state.get_iterations():
            state = IterationState.from_dict(record)
            if state.iteration < resume.iteration:
                history.append(state)
            elif state.iteration == resume.iteration:
                current = state
        if resume.iteration > 1 and len(history) != resume.iteration - 1:
            raise ResumeError(
                f"Cannot resume at iteration {resume.iteration}: "
                f"only {len(history)} earlier iteration(s) are recorded."
            )
        return history, current

    def _discard_stale_iterations(
        self, resume: ResumePoint | None, current: IterationState
    ) -> None:
        """Forget everything recorded after the point this run starts from.

        Iterations after the resume iteration never happened as far as this run
        is concerned. Resuming at or before ``run-validation`` also drops the
        resume iteration's own validation and guidance.
        """
        if resume is None:
            self.state.truncate_iterations(keep_before=1)
            self.runner.discard_iteration_artifacts(1)
            return
        self.state.truncate_iterations(keep_before=resume.iteration + 1)
        if phase_index(resume.phase) <= phase_index("run-validation"):
            current.validation = None
            current.guidance = None
            self.runner.discard_iteration_artifacts(resume.iteration)
            recorded = {int(item.get("iteration", 0)) for item in self.state.get_iterations()}
            if resume.iteration in recorded:
                self._record_iteration(current)
        else:
            self.runner.discard_iteration_artifacts(resume.iteration + 1)

    async def run(
        self,
        queue: Sequence[TaskDescriptor],
        *,
        resume: ResumePoint | None = None,
    ) -> RunSummary:
        if resume is not None and resume.iteration > self.max_iterations:
            raise ResumeError(
                f"Resume iteration {resume.iteration} exceeds max_iterations "
                f"{self.max_iterations}."
            )
        queue = list(queue)
        context_record = self.state.get_context()
        if resume is not None and context_record.get("run_id"):
            run_id = str(context_record["run_id"])
        else:
            run_id = f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"

        if resume is not None:
            history, current = self._load_history(resume)
        else:
            history, current = [], IterationState(iteration=1)

        self._acquire_run_lease(run_id, resume=resume is not None)
        self._discard_stale_iterations(resume, current)
        self._run_id = run_id
        self.runner.layout.ensure()
        started_at = _utcnow_iso()
        self.state.upsert_run(
            run_id,
            {
                "project": self.project,
                "started_at": started_at,
                "task_count": len(queue),
                "max_iterations": self.max_iterations,
            },
        )
        self._emit(
            {
                "event": "run_started",
                "run_id": run_id,
                "task_count": len(queue),
                "resume": None if resume is None else f"{resume.phase}@{resume.iteration}",
            }
        )

        summary = RunSummary(
            run_id=run_id,
            project=self.project,
            outcome="aborted",
            max_iterations=self.max_iterations,
            started_at=started_at,
            ended_at=started_at,
            task_count=len(queue),
            history=history,
        )
        try:
            summary.outcome = await self._drive(queue, summary, current, resume)
        except BaseException as exc:
            summary.outcome = "aborted"
            summary.error = f"{type(exc).__name__}: {exc}"
            logger.error("Run %s aborted: %s", run_id, summary.error)
            self._finalize(summary)
            raise
        self._finalize(summary)
        return summary

    async def _drive(
        self,
        queue: list[TaskDescriptor],
        summary: RunSummary,
        current: IterationState,
        resume: ResumePoint | None,
    ) -> RunOutcome:
        run_id = summary.run_id
        context = self._initial_context(resume, summary.history)
        self.state.set_phase_context(context.to_dict())
        start_index = phase_index(resume.phase) if resume is not None else 0

        if start_index < len(SETUP_PHASES):
            reuse = context.iteration == 1 or self.reuse_setup_artifacts_on_resume
            if start_index == 0:
                self._enter_phase(run_id, "propose-fix", context.iteration)
                summary.setup.append(
                    await self.runner.propose_fix(queue, context, reuse_existing=reuse)
                )
            self._enter_phase(run_id, "scaffold-checks", context.iteration)
            summary.setup.append(
                await self.runner.scaffold_checks(queue, context, reuse_existing=reuse)
            )

        skip_before = start_index
        while True:
            iteration = context.iteration
            if current.iteration != iteration:
                current = IterationState(iteration=iteration)
            summary.history.append(current)

            if skip_before <= phase_index("apply-work"):
                self._enter_phase(run_id, "apply-work", iteration)
                apply, verify = await self.runner.apply_and_verify(queue, context)
                current.apply_results = apply.results
                current.verify_results = verify.results
                self._record_iteration(current)
            elif skip_before == phase_index("verify-work"):
                self._enter_phase(run_id, "verify-work", iteration)
                current.verify_results = (await self.runner.verify_work(queue, context)).results
                self._record_iteration(current)

            if skip_before <= phase_index("run-validation"):
                self._enter_phase(run_id, "run-validation", iteration)
                validation = await self.runner.run_validation(context)
            else:
                loaded = self.runner.load_validation(iteration)
                if loaded is None:
                    raise ResumeError(
                        f"No recorded validation for iteration {iteration}; "
                        "resume from run-validation instead."
                    )
                validation = loaded
            current.validation = validation
            self._record_iteration(current)
            skip_before = 0

            decision = decide(validation, iteration, self.max_iterations)
            self._emit(
                {
                    "event": "iteration_evaluated",
                    "iteration": iteration,
                    "decision": decision,
                    "total": validation.total,
                    "passed": validation.passed,
                    "failed": validation.failed,
                }
            )
            if decision != "analyze":
                logger.info(
                    "Iteration %d finished with %s: %s", iteration, decision, validation.summary()
                )
                return decision

            context = context.with_failures(validation.failed_items)
            self._enter_phase(run_id, "analyze-failures", iteration)
            _, guidance = await self.runner.analyze_failures(context)
            current.guidance = guidance
            self._record_iteration(current)
            context = context.advance(guidance)
            self.state.set_phase_context(context.to_dict())

    def _record_iteration(self, state: IterationState) -> None:
        self.state.upsert_iteration(state.to_dict())

    def _finalize(self, summary: RunSummary) -> None:
        summary.ended_at = _utcnow_iso()
        try:
            if self.report_writer is not None:
                self.report_writer(summary)
        finally:
            context = self.state.get_context()
            context.update(
                {
                    "run_id": summary.run_id,
                    "status": summary.outcome,
                    "ended_at": summary.ended_at,
                    "iterations_run": summary.iterations_run,
                }
            )
            self.state.set_context(context)
            final = summary.final_validation
            self.state.upsert_run(
                summary.run_id,
                {
                    "status": summary.outcome,
                    "ended_at": summary.ended_at,
                    "iterations_run": summary.iterations_run,
                    "error": summary.error,
                    "final_validation": final.to_dict() if final is not None else None,
                },
            )
            self._release_run_lease(summary.run_id)
            self._emit(
                {
                    "event": "run_finished",
                    "run_id": summary.run_id,
                    "outcome": summary.outcome,
                    "iterations_run": summary.iterations_run,
                }
            )
            self._run_id = None
