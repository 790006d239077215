from __future__ import annotations

import json
from pathlib import Path

from fixloop.jobs import JobResult, ResultTally
from fixloop.loop import RunSummary
from fixloop.phases import RunLayout

MAX_LISTED_FAILURES = 25

_OUTCOME_TITLES = {
    "pass": "Converged",
    "ceiling": "Stopped at iteration ceiling",
    "aborted": "Aborted",
}


def _tally_line(label: str, results: list[JobResult]) -> str:
    tally = ResultTally.of(results)
    return (
        f"- {label}: {tally.ok}/{tally.total} ok, {tally.failed} failed, "
        f"{tally.timed_out} timed out, {tally.spec_errors} not started"
    )


def render_markdown(summary: RunSummary) -> str:
    lines = [
        f"# fixloop report: {summary.project or summary.run_id}",
        "",
        f"Outcome: {_OUTCOME_TITLES.get(summary.outcome, summary.outcome)}",
        f"Run ID: {summary.run_id}",
        f"Started At: {summary.started_at}",
        f"Ended At: {summary.ended_at}",
        f"Tasks: {summary.task_count}",
        f"Iterations: {summary.iterations_run}/{summary.max_iterations}",
    ]
    if summary.error:
        lines.extend(["", "## Error", summary.error])

    final = summary.final_validation
    lines.extend(["", "## Final validation"])
    if final is None:
        lines.append("No validation result was recorded.")
    else:
        lines.append(final.summary())
        for item in final.failed_items[:MAX_LISTED_FAILURES]:
            message = " ".join(item.message.split())[:300]
            lines.append(f"- {item.name}: {message}" if message else f"- {item.name}")
        hidden = len(final.failed_items) - MAX_LISTED_FAILURES
        if hidden > 0:
            lines.append(f"- ... and {hidden} more")

    if summary.setup:
        lines.extend(["", "## Setup"])
        for outcome in summary.setup:
            if outcome.skipped:
                lines.append(f"- {outcome.phase}: reused existing artifacts")
                continue
            lines.append(_tally_line(outcome.phase, outcome.results))
            for setup in outcome.setup_results:
                status = "ok" if setup.succeeded else f"failed ({setup.exit_code})"
                lines.append(f"- {outcome.phase} shared setup: {status}")

    for state in summary.history:
        lines.extend(["", f"## Iteration {state.iteration}"])
        lines.append(_tally_line("apply-work", state.apply_results))
        lines.append(_tally_line("verify-work", state.verify_results))
        if state.validation is not None:
            lines.append(f"- run-validation: {state.validation.summary()}")
        if state.guidance:
            lines.append("- analyze-failures: guidance recorded")
        failed = [
            result.label
            for result in (*state.apply_results, *state.verify_results)
            if not result.succeeded
        ]
        if failed:
            lines.append("")
            lines.append("Failed jobs:")
            lines.extend(f"- {label}" for label in failed[:MAX_LISTED_FAILURES])
    lines.append("")
    return "\n".join(lines)


def write_report(layout: RunLayout, summary: RunSummary) -> Path:
    layout.root.mkdir(parents=True, exist_ok=True)
    layout.report_markdown.write_text(render_markdown(summary), encoding="utf-8")
    layout.report_json.write_text(
        json.dumps(summary.to_dict(), ensure_ascii=False, indent=2) + "\n",
        encoding="utf-8",
    )
    return layout.report_markdown
