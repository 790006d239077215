from __future__ import annotations

from fixloop.jobs import JobSpec
from fixloop.workers.base import WorkerCommand


class ClaudeWorker(WorkerCommand):
    name = "claude"

    def __init__(
        self,
        binary: str = "claude",
        model: str = "",
        extra_args: list[str] | None = None,
    ) -> None:
        self.binary = binary
        self.model = model
        self.extra_args = list(extra_args or [])

    def build_command(self, spec: JobSpec) -> list[str]:
        command = [self.binary, "-p", "--output-format", "text"]
        if self.model.strip():
            command.extend(["--model", self.model.strip()])
        for directory in spec.extra_context:
            command.extend(["--add-dir", directory])
        command.extend(self.extra_args)
        return command
