from __future__ import annotations

import asyncio
import os
from collections.abc import Callable
from typing import IO, Any

from fixloop.jobs import JobSpec
from fixloop.workers.base import ProcessLauncher, WorkerCommand, WorkerLaunchError, WorkerProcess

LauncherEventHook = Callable[[dict[str, Any]], None]


class ChildProcess(WorkerProcess):
    def __init__(
        self,
        process: asyncio.subprocess.Process,
        spec: JobSpec,
        handles: list[IO[Any]],
    ) -> None:
        self._process = process
        self._spec = spec
        self._handles = handles

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def returncode(self) -> int | None:
        return self._process.returncode

    def kill(self) -> None:
        try:
            self._process.kill()
        except ProcessLookupError:
            pass

    async def wait(self) -> int:
        return await self._process.wait()

    def read_output(self) -> str:
        for handle in self._handles:
            if not handle.closed and handle.writable():
                handle.flush()
        if not self._spec.log_path.exists():
            return ""
        return self._spec.log_path.read_text(encoding="utf-8", errors="replace")

    def release(self) -> None:
        for handle in self._handles:
            if not handle.closed:
                handle.close()
        self._handles = []


class SubprocessLauncher(ProcessLauncher):
    """Starts workers as local child processes.

    The payload is written next to the job log as ``<log>.prompt.md`` and fed
    to the worker on stdin; stdout and stderr both go to the job log.
    """

    def __init__(
        self,
        command: WorkerCommand,
        *,
        env: dict[str, str] | None = None,
        event_hook: LauncherEventHook | None = None,
    ) -> None:
        self.command = command
        self.env = dict(env) if env is not None else None
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def _environment(self, spec: JobSpec) -> dict[str, str]:
        env = dict(self.env) if self.env is not None else os.environ.copy()
        env["FIXLOOP_LABEL"] = spec.label
        env["FIXLOOP_LOG_PATH"] = str(spec.log_path)
        env["FIXLOOP_PROMPT_PATH"] = str(spec.prompt_path)
        env["FIXLOOP_CONTEXT_DIRS"] = os.pathsep.join(spec.extra_context)
        return env

    async def launch(self, spec: JobSpec) -> WorkerProcess:
        spec.log_path.parent.mkdir(parents=True, exist_ok=True)
        spec.prompt_path.write_text(spec.payload, encoding="utf-8")
        argv = self.command.build_command(spec)

        stdin_handle = spec.prompt_path.open("rb")
        log_handle = spec.log_path.open("wb")
        handles: list[IO[Any]] = [stdin_handle, log_handle]
        self._emit(
            {
                "event": "worker_spawn",
                "worker": self.command.name,
                "label": spec.label,
                "command": argv[:4],
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *argv,
                cwd=str(spec.working_directory),
                env=self._environment(spec),
                stdin=stdin_handle,
                stdout=log_handle,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as exc:
            for handle in handles:
                handle.close()
            raise WorkerLaunchError(
                f"Worker executable could not be started: {argv[0]} ({exc})",
                worker=self.command.name,
                label=spec.label,
            ) from exc
        return ChildProcess(process, spec, handles)
