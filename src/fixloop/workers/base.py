from __future__ import annotations

from abc import ABC, abstractmethod

from fixloop.jobs import JobSpec


class WorkerLaunchError(RuntimeError):
    """Raised when a worker process cannot be started at all."""

    def __init__(
        self,
        message: str,
        *,
        worker: str | None = None,
        label: str | None = None,
    ) -> None:
        super().__init__(message)
        self.worker = worker
        self.label = label


class WorkerProcess(ABC):
    """A launched child process as seen by the worker pool."""

    @property
    @abstractmethod
    def returncode(self) -> int | None:
        """Exit status, or None while the process is still running."""

    @abstractmethod
    def kill(self) -> None:
        """Forcibly terminate the process."""

    @abstractmethod
    async def wait(self) -> int:
        """Wait for the process to exit and return its exit status."""

    @abstractmethod
    def read_output(self) -> str:
        """Return the captured output once the process has exited."""

    def release(self) -> None:
        """Release file handles and other per-process resources."""


class ProcessLauncher(ABC):
    @abstractmethod
    async def launch(self, spec: JobSpec) -> WorkerProcess:
        """Start a worker process for the given job spec."""


class WorkerCommand(ABC):
    name: str = "worker"

    @abstractmethod
    def build_command(self, spec: JobSpec) -> list[str]:
        """Return argv for a worker that reads its payload from stdin."""
