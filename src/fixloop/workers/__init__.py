from fixloop.workers.base import ProcessLauncher, WorkerCommand, WorkerLaunchError, WorkerProcess
from fixloop.workers.claude import ClaudeWorker
from fixloop.workers.codex import CodexWorker
from fixloop.workers.command import CommandWorker
from fixloop.workers.launcher import ChildProcess, SubprocessLauncher

__all__ = [
    "ChildProcess",
    "ClaudeWorker",
    "CodexWorker",
    "CommandWorker",
    "ProcessLauncher",
    "SubprocessLauncher",
    "WorkerCommand",
    "WorkerLaunchError",
    "WorkerProcess",
]
