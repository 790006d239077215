from __future__ import annotations

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from fixloop.manifest import TaskDescriptor

BUILD_FAILURE_EXIT_CODE = -1
TIMEOUT_EXIT_CODE = 124


@dataclass(frozen=True, slots=True)
class JobSpec:
    payload: str
    working_directory: Path
    log_path: Path
    label: str
    extra_context: tuple[str, ...] = ()
    timeout_seconds: float | None = None

    @property
    def prompt_path(self) -> Path:
        return self.log_path.with_name(f"{self.log_path.stem}.prompt.md")


@dataclass(frozen=True, slots=True)
class JobResult:
    exit_code: int
    duration_seconds: float
    captured_output: str
    label: str
    queue_index: int
    task: TaskDescriptor
    timed_out: bool = False
    error: str | None = None
    log_path: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.exit_code == 0 and not self.timed_out

    @property
    def outcome(self) -> str:
        if self.timed_out:
            return "timeout"
        if self.exit_code == BUILD_FAILURE_EXIT_CODE and self.error:
            return "spec-error"
        return "ok" if self.exit_code == 0 else "failed"

    def to_dict(self, *, output_tail: int = 2000) -> dict[str, Any]:
        return {
            "exit_code": self.exit_code,
            "duration_seconds": round(self.duration_seconds, 3),
            "captured_output_tail": self.captured_output[-output_tail:] if output_tail else "",
            "label": self.label,
            "queue_index": self.queue_index,
            "task": self.task.to_dict(),
            "timed_out": self.timed_out,
            "error": self.error,
            "log_path": self.log_path,
            "outcome": self.outcome,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> JobResult:
        return cls(
            exit_code=int(payload["exit_code"]),
            duration_seconds=float(payload.get("duration_seconds", 0.0)),
            captured_output=str(payload.get("captured_output_tail", "")),
            label=str(payload.get("label", "")),
            queue_index=int(payload.get("queue_index", 0)),
            task=TaskDescriptor.from_dict(payload["task"]),
            timed_out=bool(payload.get("timed_out", False)),
            error=payload.get("error"),
            log_path=payload.get("log_path"),
        )


@dataclass(slots=True)
class ResultTally:
    ok: int = 0
    failed: int = 0
    timed_out: int = 0
    spec_errors: int = 0
    failed_labels: list[str] = field(default_factory=list)

    @classmethod
    def of(cls, results: list[JobResult] | tuple[JobResult, ...]) -> ResultTally:
        tally = cls()
        for result in results:
            outcome = result.outcome
            if outcome == "ok":
                tally.ok += 1
                continue
            if outcome == "timeout":
                tally.timed_out += 1
            elif outcome == "spec-error":
                tally.spec_errors += 1
            else:
                tally.failed += 1
            tally.failed_labels.append(result.label)
        return tally

    @property
    def total(self) -> int:
        return self.ok + self.failed + self.timed_out + self.spec_errors
