from __future__ import annotations

from fixloop.jobs import JobSpec
from fixloop.workers.base import WorkerCommand


class CommandWorker(WorkerCommand):
    """Runs an arbitrary argv; job details are passed through FIXLOOP_* env vars."""

    name = "command"

    def __init__(self, argv: list[str], extra_args: list[str] | None = None) -> None:
        if not argv:
            raise ValueError("CommandWorker requires a non-empty argv.")
        self.argv = list(argv)
        self.extra_args = list(extra_args or [])

    def build_command(self, spec: JobSpec) -> list[str]:
        _ = spec
        return [*self.argv, *self.extra_args]
