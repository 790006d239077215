from __future__ import annotations

from fixloop.jobs import JobSpec
from fixloop.workers.base import WorkerCommand


class CodexWorker(WorkerCommand):
    name = "codex"

    def __init__(
        self,
        binary: str = "codex",
        model: str = "",
        extra_args: list[str] | None = None,
    ) -> None:
        self.binary = binary
        self.model = model
        self.extra_args = list(extra_args or [])

    def build_command(self, spec: JobSpec) -> list[str]:
        command = [self.binary, "exec", "--cd", str(spec.working_directory)]
        if self.model.strip():
            command.extend(["-m", self.model.strip()])
        for directory in spec.extra_context:
            command.extend(["--add-dir", directory])
        command.extend(self.extra_args)
        # "-" makes codex read the prompt from stdin.
        command.append("-")
        return command
