from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

import click

from fixloop.config import FixloopConfig, WorkerBackendName, load_config, save_config
from fixloop.loop import ConvergenceLoop, ResumePoint, RunSummary
from fixloop.manifest import load_manifest
from fixloop.phases import PHASE_ORDER, PhaseBuilders, PhaseRunner, RunLayout
from fixloop.pool import WorkerPool
from fixloop.report import write_report
from fixloop.state import RunStateStore
from fixloop.validation import ValidationHarness
from fixloop.workers import (
    ClaudeWorker,
    CodexWorker,
    CommandWorker,
    SubprocessLauncher,
    WorkerCommand,
)

DEFAULT_CONFIG = "fixloop.toml"


@dataclass(slots=True)
class Runtime:
    repo_root: Path
    config_path: Path
    config: FixloopConfig
    layout: RunLayout
    state: RunStateStore
    loop: ConvergenceLoop


def _resolve_config_path(repo_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = repo_root / config_path
    return config_path.resolve()


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


def _build_worker_command(config: FixloopConfig) -> WorkerCommand:
    worker = config.worker
    backend: WorkerBackendName = worker.backend
    if backend == "command":
        return CommandWorker(worker.command, extra_args=worker.extra_args)
    if backend == "claude":
        return ClaudeWorker(
            binary=worker.binary or "claude",
            model=worker.model,
            extra_args=worker.extra_args,
        )
    return CodexWorker(
        binary=worker.binary or "codex",
        model=worker.model,
        extra_args=worker.extra_args,
    )


def _build_harness(config: FixloopConfig, repo_root: Path) -> ValidationHarness:
    return ValidationHarness(
        config.validation.command,
        config.resolve_path(repo_root, config.validation.report_path),
        report_format=config.validation.report_format,
        working_directory=repo_root,
        timeout_seconds=config.validation.timeout_seconds or None,
    )


def _load_runtime(repo_root: Path, config_path: Path) -> Runtime:
    config = load_config(config_path)
    layout = RunLayout(config.resolve_path(repo_root, config.project.work_dir))
    layout.ensure()
    state = RunStateStore(layout.state_dir)

    def _hook(event: dict[str, Any]) -> None:
        state.record_event(event)

    launcher = SubprocessLauncher(_build_worker_command(config), event_hook=_hook)
    pool = WorkerPool(
        launcher,
        workers=config.worker.workers,
        poll_interval=config.worker.poll_interval_seconds,
    )
    builders = PhaseBuilders(
        layout,
        working_directory=repo_root,
        context_dirs=[str(config.resolve_path(repo_root, d)) for d in config.worker.context_dirs],
        timeout_seconds=config.worker.timeout_seconds or None,
    )
    runner = PhaseRunner(
        pool,
        builders,
        _build_harness(config, repo_root),
        abort_on_setup_failure=config.loop.abort_on_setup_failure,
    )
    loop = ConvergenceLoop(
        runner,
        state,
        project=config.project.name,
        max_iterations=config.loop.max_iterations,
        lease_ttl_seconds=config.loop.lease_ttl_seconds,
        reuse_setup_artifacts_on_resume=config.loop.reuse_setup_artifacts_on_resume,
        report_writer=lambda summary: write_report(layout, summary),
        event_hook=_hook,
    )
    return Runtime(
        repo_root=repo_root,
        config_path=config_path,
        config=config,
        layout=layout,
        state=state,
        loop=loop,
    )


def _echo_summary(summary: RunSummary, layout: RunLayout) -> None:
    click.echo(f"Outcome: {summary.outcome}")
    click.echo(f"Run ID: {summary.run_id}")
    click.echo(f"Iterations: {summary.iterations_run}/{summary.max_iterations}")
    final = summary.final_validation
    if final is not None:
        click.echo(f"Validation: {final.summary()}")
    click.echo(f"Report: {layout.report_markdown}")


def _execute(runtime: Runtime, resume: ResumePoint | None) -> None:
    manifest_path = runtime.config.resolve_path(
        runtime.repo_root, runtime.config.project.manifest_path
    )
    try:
        queue = load_manifest(manifest_path)
        summary = asyncio.run(runtime.loop.run(queue, resume=resume))
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    _echo_summary(summary, runtime.layout)
    if summary.outcome != "pass":
        raise click.exceptions.Exit(1)


@click.group()
def cli() -> None:
    """fixloop CLI."""


@cli.command("init")
@click.option("--backend", type=click.Choice(["codex", "claude", "command"]), default=None)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def init_command(backend: str | None, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    if backend:
        config.worker.backend = backend  # type: ignore[assignment]
    save_config(config_path, config)

    layout = RunLayout(config.resolve_path(repo_root, config.project.work_dir))
    layout.ensure()
    state = RunStateStore(layout.state_dir)
    if not state.get_context():
        state.set_context({"run_id": None, "phase": "idle", "status": "ready"})

    click.echo(f"Initialized fixloop in {repo_root}")
    click.echo(f"Config: {config_path}")
    click.echo(f"Worker backend: {config.worker.backend}")
    click.echo(f"Work directory: {layout.root}")


@cli.command("run")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
@click.option("--max-iterations", type=click.IntRange(min=1), default=None)
@click.option("--workers", type=click.IntRange(min=1), default=None)
@click.option("--verbose", is_flag=True, default=False)
def run_command(
    config_value: str, max_iterations: int | None, workers: int | None, verbose: bool
) -> None:
    _configure_logging(verbose)
    repo_root = Path.cwd().resolve()
    try:
        runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    if max_iterations is not None:
        runtime.loop.max_iterations = max_iterations
    if workers is not None:
        runtime.loop.runner.pool.workers = workers
    _execute(runtime, None)


@cli.command("resume")
@click.option("--phase", type=click.Choice(list(PHASE_ORDER)), required=True)
@click.option("--iteration", type=click.IntRange(min=1), default=1, show_default=True)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
@click.option("--verbose", is_flag=True, default=False)
def resume_command(phase: str, iteration: int, config_value: str, verbose: bool) -> None:
    _configure_logging(verbose)
    repo_root = Path.cwd().resolve()
    try:
        runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
        resume = ResumePoint(phase=phase, iteration=iteration)  # type: ignore[arg-type]
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    _execute(runtime, resume)


@cli.command("status")
@click.option("--verbose", is_flag=True, default=False)
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def status_command(verbose: bool, config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    try:
        runtime = _load_runtime(repo_root, _resolve_config_path(repo_root, config_value))
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc
    state = runtime.state
    iterations: list[dict[str, Any]] = state.get_iterations()
    if not verbose:
        iterations = [
            {
                "iteration": item.get("iteration"),
                "validation": item.get("validation"),
                "has_guidance": bool(item.get("guidance")),
            }
            for item in iterations
        ]
    events = state.get_json("events", default={})
    payload = {
        "context": state.get_context(),
        "phase_context": state.get_phase_context(),
        "iterations": iterations,
        "runs": state.get_runs(),
        "leases": state.get_leases(),
        "event_counts": events.get("counts", {}) if isinstance(events, dict) else {},
    }
    if verbose:
        payload["recent_events"] = state.get_events()[-20:]
    click.echo(json.dumps(payload, ensure_ascii=False, indent=2))


@cli.command("validate")
@click.option("--config", "config_value", default=DEFAULT_CONFIG, show_default=True)
def validate_command(config_value: str) -> None:
    repo_root = Path.cwd().resolve()
    config_path = _resolve_config_path(repo_root, config_value)
    try:
        config = load_config(config_path)
        layout = RunLayout(config.resolve_path(repo_root, config.project.work_dir))
        harness = _build_harness(config, repo_root)
        result = asyncio.run(harness.run(layout.logs_dir / "validate.log"))
    except RuntimeError as exc:
        raise click.ClickException(str(exc)) from exc

    click.echo(f"Validation: {result.summary()}")
    for item in result.failed_items:
        click.echo(f"- {item.name}: {item.message.splitlines()[0] if item.message else ''}")
    if not result.converged:
        raise click.exceptions.Exit(1)
