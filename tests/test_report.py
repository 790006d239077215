import json
from pathlib import Path

from fixloop.jobs import JobResult
from fixloop.loop import IterationState, RunSummary
from fixloop.manifest import TaskDescriptor
from fixloop.phases import PhaseOutcome, RunLayout
from fixloop.report import render_markdown, write_report
from fixloop.validation import FailedItem, ValidationResult

TASK = TaskDescriptor("Foo", "src/Foo.cs", "race", "Foo")


def _result(label: str, exit_code: int = 0, *, timed_out: bool = False) -> JobResult:
    return JobResult(
        exit_code=exit_code,
        duration_seconds=1.5,
        captured_output="log",
        label=label,
        queue_index=0,
        task=TASK,
        timed_out=timed_out,
    )


def _summary() -> RunSummary:
    return RunSummary(
        run_id="run-1",
        project="demo",
        outcome="ceiling",
        max_iterations=2,
        started_at="2026-01-01T00:00:00+00:00",
        ended_at="2026-01-01T01:00:00+00:00",
        task_count=1,
        setup=[PhaseOutcome(phase="propose-fix", iteration=1, skipped=True)],
        history=[
            IterationState(
                iteration=1,
                apply_results=[_result("apply-work:Foo:1", 1)],
                verify_results=[_result("verify-work:Foo:1", 124, timed_out=True)],
                validation=ValidationResult(
                    total=2,
                    passed=1,
                    failed=1,
                    failed_items=(FailedItem(name="Suite.Test_Foo", message="boom"),),
                ),
                guidance="lock the cache",
            ),
            IterationState(
                iteration=2,
                apply_results=[_result("apply-work:Foo:2")],
                verify_results=[_result("verify-work:Foo:2")],
                validation=ValidationResult(
                    total=2,
                    passed=1,
                    failed=1,
                    failed_items=(FailedItem(name="Suite.Test_Foo", message="still boom"),),
                ),
            ),
        ],
    )


def test_render_markdown_describes_each_iteration() -> None:
    text = render_markdown(_summary())

    assert "Outcome: Stopped at iteration ceiling" in text
    assert "Iterations: 2/2" in text
    assert "- Suite.Test_Foo: still boom" in text
    assert "- propose-fix: reused existing artifacts" in text
    assert "## Iteration 1" in text
    assert "- apply-work: 0/1 ok, 1 failed, 0 timed out, 0 not started" in text
    assert "- verify-work: 0/1 ok, 0 failed, 1 timed out, 0 not started" in text
    assert "- verify-work:Foo:1" in text


def test_write_report_emits_markdown_and_json(tmp_path: Path) -> None:
    layout = RunLayout(tmp_path / ".fixloop")

    path = write_report(layout, _summary())

    assert path == layout.report_markdown
    payload = json.loads(layout.report_json.read_text(encoding="utf-8"))
    assert payload["outcome"] == "ceiling"
    assert payload["iterations_run"] == 2
    assert payload["final_validation"]["failed_items"][0]["message"] == "still boom"
    assert payload["history"][0]["verify_results"][0]["outcome"] == "timeout"
