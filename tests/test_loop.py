import asyncio
import time
from pathlib import Path

import pytest

from fixloop.jobs import JobSpec
from fixloop.loop import ConvergenceLoop, ResumeError, ResumePoint, RunSummary, decide
from fixloop.manifest import TaskDescriptor
from fixloop.phases import PhaseBuilders, PhaseRunner, RunLayout
from fixloop.pool import WorkerPool
from fixloop.state import RunStateStore, StateError
from fixloop.validation import FailedItem, HarnessUnavailableError, ValidationResult
from fixloop.workers.base import ProcessLauncher, WorkerProcess

PASSING = ValidationResult(total=10, passed=10, failed=0)
FAILING = ValidationResult(
    total=10,
    passed=7,
    failed=3,
    failed_items=(FailedItem(name="Suite.Test_T1", message="shared state mutated"),),
)


class DoneProcess(WorkerProcess):
    def __init__(self, output: str) -> None:
        self._output = output

    @property
    def returncode(self) -> int | None:
        return 0

    def kill(self) -> None:
        return None

    async def wait(self) -> int:
        return 0

    def read_output(self) -> str:
        return self._output


class RecordingLauncher(ProcessLauncher):
    def __init__(self) -> None:
        self.launched: list[JobSpec] = []

    async def launch(self, spec: JobSpec) -> WorkerProcess:
        self.launched.append(spec)
        return DoneProcess(f"output of {spec.label}")

    def labels(self, prefix: str) -> list[str]:
        return [spec.label for spec in self.launched if spec.label.startswith(prefix)]


class FakeHarness:
    def __init__(self, *results: ValidationResult | Exception) -> None:
        self.results = list(results)
        self.calls = 0
        self.event_hook = None

    async def run(self, log_path: Path) -> ValidationResult:
        _ = log_path
        result = self.results[min(self.calls, len(self.results) - 1)]
        self.calls += 1
        if isinstance(result, Exception):
            raise result
        return result


async def _no_sleep(seconds: float) -> None:
    _ = seconds


def _tasks(count: int) -> list[TaskDescriptor]:
    return [
        TaskDescriptor(
            identity=f"T{index}",
            source_location=f"src/T{index}.cs",
            category="race",
            original_identity=f"T{index}",
        )
        for index in range(count)
    ]


def _loop(
    tmp_path: Path,
    harness: FakeHarness,
    launcher: RecordingLauncher,
    reports: list[RunSummary],
    *,
    max_iterations: int = 3,
    reuse_setup_artifacts_on_resume: bool = False,
) -> ConvergenceLoop:
    layout = RunLayout(tmp_path / ".fixloop")
    runner = PhaseRunner(
        WorkerPool(launcher, workers=4, sleep=_no_sleep),
        PhaseBuilders(layout, working_directory=tmp_path),
        harness,
    )
    return ConvergenceLoop(
        runner,
        RunStateStore(layout.state_dir),
        project="demo",
        max_iterations=max_iterations,
        reuse_setup_artifacts_on_resume=reuse_setup_artifacts_on_resume,
        report_writer=reports.append,
    )


def test_decide_transitions() -> None:
    assert decide(PASSING, 1, 3) == "pass"
    assert decide(FAILING, 1, 3) == "analyze"
    assert decide(FAILING, 3, 3) == "ceiling"
    assert decide(ValidationResult(total=0, passed=0, failed=0), 1, 1) == "ceiling"


def test_resume_point_validation() -> None:
    with pytest.raises(ResumeError):
        ResumePoint(phase="deploy", iteration=1)  # type: ignore[arg-type]
    with pytest.raises(ResumeError):
        ResumePoint(phase="apply-work", iteration=0)


def test_converges_on_first_iteration(tmp_path: Path) -> None:
    launcher = RecordingLauncher()
    reports: list[RunSummary] = []
    loop = _loop(tmp_path, FakeHarness(PASSING), launcher, reports)

    summary = asyncio.run(loop.run(_tasks(10)))

    assert summary.outcome == "pass"
    assert summary.iterations_run == 1
    assert summary.final_validation == PASSING
    assert len(launcher.labels("propose-fix")) == 10
    assert len(launcher.labels("scaffold-checks")) == 11
    assert len(launcher.labels("apply-work")) == 10
    assert len(launcher.labels("verify-work")) == 10
    assert launcher.labels("analyze-failures") == []
    assert reports == [summary]


def test_stops_at_ceiling_with_full_queue_each_iteration(tmp_path: Path) -> None:
    launcher = RecordingLauncher()
    reports: list[RunSummary] = []
    harness = FakeHarness(FAILING)
    loop = _loop(tmp_path, harness, launcher, reports, max_iterations=3)

    summary = asyncio.run(loop.run(_tasks(10)))

    assert summary.outcome == "ceiling"
    assert [state.iteration for state in summary.history] == [1, 2, 3]
    assert harness.calls == 3
    assert len(launcher.labels("apply-work")) == 30
    assert len(launcher.labels("apply-work:T4:")) == 3
    assert len(launcher.labels("analyze-failures")) == 2
    assert len(reports) == 1
    assert reports[0].history[-1].validation == FAILING
    assert len(summary.history[-1].apply_results) == 10


def test_guidance_flows_into_next_iteration(tmp_path: Path) -> None:
    launcher = RecordingLauncher()
    loop = _loop(tmp_path, FakeHarness(FAILING, PASSING), launcher, [])

    summary = asyncio.run(loop.run(_tasks(2)))

    assert summary.outcome == "pass"
    assert summary.history[0].guidance is not None
    second_apply = [spec for spec in launcher.launched if spec.label == "apply-work:T0:2"]
    assert "output of analyze-failures:__analysis__:1" in second_apply[0].payload
    analysis = [spec for spec in launcher.launched if spec.label.startswith("analyze-failures")]
    assert "Suite.Test_T1" in analysis[0].payload


def test_fatal_error_finalizes_once_and_propagates(tmp_path: Path) -> None:
    reports: list[RunSummary] = []
    loop = _loop(
        tmp_path,
        FakeHarness(HarnessUnavailableError("dotnet not found")),
        RecordingLauncher(),
        reports,
    )

    with pytest.raises(HarnessUnavailableError):
        asyncio.run(loop.run(_tasks(2)))

    assert len(reports) == 1
    assert reports[0].outcome == "aborted"
    assert "dotnet not found" in (reports[0].error or "")
    assert loop.state.get_leases()["active"] is None
    assert loop.state.get_context()["status"] == "aborted"


def test_state_records_iterations_and_run(tmp_path: Path) -> None:
    loop = _loop(tmp_path, FakeHarness(FAILING), RecordingLauncher(), [], max_iterations=2)

    summary = asyncio.run(loop.run(_tasks(3)))

    iterations = loop.state.get_iterations()
    assert [item["iteration"] for item in iterations] == [1, 2]
    assert iterations[0]["guidance"]
    run = loop.state.get_runs()[summary.run_id]
    assert run["status"] == "ceiling"
    assert run["iterations_run"] == 2
    assert loop.state.get_phase_context()["iteration"] == 2


def test_resume_from_validation_skips_earlier_phases(tmp_path: Path) -> None:
    launcher = RecordingLauncher()
    harness = FakeHarness(PASSING)
    loop = _loop(tmp_path, harness, launcher, [])

    summary = asyncio.run(
        loop.run(_tasks(5), resume=ResumePoint(phase="run-validation", iteration=1))
    )

    assert summary.outcome == "pass"
    assert launcher.launched == []
    assert harness.calls == 1


def test_resume_from_analysis_uses_recorded_validation(tmp_path: Path) -> None:
    queue = _tasks(3)
    first = _loop(tmp_path, FakeHarness(FAILING), RecordingLauncher(), [], max_iterations=1)
    assert asyncio.run(first.run(queue)).outcome == "ceiling"

    launcher = RecordingLauncher()
    harness = FakeHarness(PASSING)
    resumed = _loop(tmp_path, harness, launcher, [], max_iterations=2)
    summary = asyncio.run(
        resumed.run(queue, resume=ResumePoint(phase="analyze-failures", iteration=1))
    )

    assert summary.outcome == "pass"
    assert [state.iteration for state in summary.history] == [1, 2]
    assert summary.history[0].validation == FAILING
    assert launcher.labels("propose-fix") == []
    assert launcher.labels("analyze-failures") == ["analyze-failures:__analysis__:1"]
    assert len(launcher.labels("apply-work")) == 3
    assert harness.calls == 1


def test_resume_from_analysis_without_validation_fails(tmp_path: Path) -> None:
    reports: list[RunSummary] = []
    loop = _loop(tmp_path, FakeHarness(PASSING), RecordingLauncher(), reports)

    with pytest.raises(ResumeError):
        asyncio.run(loop.run(_tasks(2), resume=ResumePoint(phase="analyze-failures")))

    assert reports[0].outcome == "aborted"


def test_resume_beyond_recorded_history_is_refused(tmp_path: Path) -> None:
    loop = _loop(tmp_path, FakeHarness(PASSING), RecordingLauncher(), [])

    with pytest.raises(ResumeError):
        asyncio.run(loop.run(_tasks(2), resume=ResumePoint(phase="apply-work", iteration=3)))


def test_active_lease_blocks_second_run(tmp_path: Path) -> None:
    reports: list[RunSummary] = []
    loop = _loop(tmp_path, FakeHarness(PASSING), RecordingLauncher(), reports)
    loop.state.set_json(
        "leases",
        {"active": {"run_id": "run-other", "expires_epoch": time.time() + 600}},
    )

    with pytest.raises(StateError):
        asyncio.run(loop.run(_tasks(2)))

    assert reports == []


def test_expired_lease_is_taken_over(tmp_path: Path) -> None:
    loop = _loop(tmp_path, FakeHarness(PASSING), RecordingLauncher(), [])
    loop.state.set_json(
        "leases",
        {"active": {"run_id": "run-crashed", "expires_epoch": time.time() - 1}},
    )

    summary = asyncio.run(loop.run(_tasks(1)))

    assert summary.outcome == "pass"
    assert loop.state.get_leases()["active"] is None


def test_resume_at_earlier_iteration_forgets_later_iterations(tmp_path: Path) -> None:
    queue = _tasks(2)
    first = _loop(tmp_path, FakeHarness(FAILING), RecordingLauncher(), [], max_iterations=3)
    assert asyncio.run(first.run(queue)).outcome == "ceiling"
    layout = first.runner.layout
    assert layout.validation_path(3).exists()
    assert layout.guidance_path(2).exists()

    resumed = _loop(tmp_path, FakeHarness(PASSING), RecordingLauncher(), [], max_iterations=3)
    summary = asyncio.run(
        resumed.run(queue, resume=ResumePoint(phase="apply-work", iteration=2))
    )

    assert summary.outcome == "pass"
    assert [item["iteration"] for item in resumed.state.get_iterations()] == [1, 2]
    assert resumed.state.get_iterations()[1]["guidance"] is None
    assert not layout.validation_path(3).exists()
    assert not layout.guidance_path(2).exists()
    assert layout.guidance_path(1).exists()
    assert resumed.runner.load_validation(2) == PASSING


def test_fresh_run_drops_artifacts_of_previous_run(tmp_path: Path) -> None:
    queue = _tasks(1)
    first = _loop(tmp_path, FakeHarness(FAILING), RecordingLauncher(), [], max_iterations=2)
    asyncio.run(first.run(queue))

    second = _loop(tmp_path, FakeHarness(PASSING), RecordingLauncher(), [], max_iterations=2)
    asyncio.run(second.run(queue))

    assert [item["iteration"] for item in second.state.get_iterations()] == [1]
    assert not second.runner.layout.validation_path(2).exists()
    assert not second.runner.layout.guidance_path(1).exists()


def test_fresh_run_reuses_existing_plans(tmp_path: Path) -> None:
    queue = _tasks(3)
    layout = RunLayout(tmp_path / ".fixloop")
    layout.ensure()
    for task in queue:
        layout.plan_path(task).write_text(
            f"hand-written plan for {task.identity}\n", encoding="utf-8"
        )
    launcher = RecordingLauncher()

    summary = asyncio.run(_loop(tmp_path, FakeHarness(PASSING), launcher, []).run(queue))

    assert summary.setup[0].skipped is True
    assert launcher.labels("propose-fix") == []
    assert layout.plan_path(queue[0]).read_text() == "hand-written plan for T0\n"
    assert len(launcher.labels("scaffold-checks")) == 4


def _run_to_ceiling(tmp_path: Path, queue: list[TaskDescriptor]) -> RunLayout:
    first = _loop(tmp_path, FakeHarness(FAILING), RecordingLauncher(), [], max_iterations=2)
    assert asyncio.run(first.run(queue)).outcome == "ceiling"
    return first.runner.layout


def test_setup_resume_after_first_iteration_regenerates_artifacts(tmp_path: Path) -> None:
    queue = _tasks(2)
    layout = _run_to_ceiling(tmp_path, queue)
    assert layout.plan_path(queue[0]).read_text().strip() == "output of propose-fix:T0:1"
    launcher = RecordingLauncher()

    summary = asyncio.run(
        _loop(tmp_path, FakeHarness(PASSING), launcher, [], max_iterations=2).run(
            queue, resume=ResumePoint(phase="propose-fix", iteration=2)
        )
    )

    assert summary.outcome == "pass"
    assert launcher.labels("propose-fix") == ["propose-fix:T0:2", "propose-fix:T1:2"]
    assert len(launcher.labels("scaffold-checks")) == 3
    assert layout.plan_path(queue[0]).read_text().strip() == "output of propose-fix:T0:2"
    assert layout.check_path(queue[1]).read_text().strip() == "output of scaffold-checks:T1:2"


def test_setup_resume_can_keep_existing_artifacts(tmp_path: Path) -> None:
    queue = _tasks(2)
    layout = _run_to_ceiling(tmp_path, queue)
    launcher = RecordingLauncher()
    loop = _loop(
        tmp_path,
        FakeHarness(PASSING),
        launcher,
        [],
        max_iterations=2,
        reuse_setup_artifacts_on_resume=True,
    )

    summary = asyncio.run(loop.run(queue, resume=ResumePoint(phase="scaffold-checks", iteration=2)))

    assert summary.outcome == "pass"
    assert [outcome.skipped for outcome in summary.setup] == [True]
    assert launcher.labels("propose-fix") == []
    assert launcher.labels("scaffold-checks") == []
    assert len(launcher.labels("apply-work:")) == 2
    assert layout.check_path(queue[0]).read_text().strip() == "output of scaffold-checks:T0:1"
