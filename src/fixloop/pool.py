from __future__ import annotations

import asyncio
import logging
import time
from collections import deque
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from fixloop.jobs import BUILD_FAILURE_EXIT_CODE, TIMEOUT_EXIT_CODE, JobResult, JobSpec
from fixloop.manifest import TaskDescriptor
from fixloop.workers.base import ProcessLauncher, WorkerProcess

logger = logging.getLogger(__name__)

JobSpecBuilder = Callable[[TaskDescriptor], JobSpec]
PoolEventHook = Callable[[dict[str, Any]], None]

KILL_GRACE_SECONDS = 5.0


@dataclass(slots=True)
class JobHandle:
    spec: JobSpec
    process: WorkerProcess
    started_at: float
    queue_index: int
    task: TaskDescriptor
    stage: int = 0
    deadline: float | None = None


class WorkerPool:
    """Runs queued tasks on at most ``workers`` concurrent external processes.

    Results always come back ordered by queue position, whatever order the
    processes actually exit in. A failing or timed-out job is recorded as a
    ``JobResult``; only a launcher error (missing worker executable) escapes,
    after every process still running has been killed.
    """

    def __init__(
        self,
        launcher: ProcessLauncher,
        *,
        workers: int = 5,
        poll_interval: float = 1.0,
        default_timeout: float | None = None,
        event_hook: PoolEventHook | None = None,
        clock: Callable[[], float] = time.monotonic,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ) -> None:
        if int(workers) <= 0:
            raise ValueError(f"Worker count must be at least 1, got {workers}.")
        if poll_interval < 0:
            raise ValueError(f"Poll interval must not be negative, got {poll_interval}.")
        self.launcher = launcher
        self.workers = int(workers)
        self.poll_interval = float(poll_interval)
        self.default_timeout = default_timeout
        self.event_hook = event_hook
        self._clock = clock
        self._sleep = sleep
        self.peak_running = 0

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    async def run(
        self, queue: Sequence[TaskDescriptor], build_job_spec: JobSpecBuilder
    ) -> list[JobResult]:
        stages = await self.run_stages(queue, [build_job_spec])
        return stages[0]

    async def run_stages(
        self,
        queue: Sequence[TaskDescriptor],
        builders: Sequence[JobSpecBuilder],
    ) -> list[list[JobResult]]:
        """Run each task through ``builders`` in order, one job per stage.

        A task's stage ``k + 1`` job starts as soon as its stage ``k`` result
        exists; other tasks are not waited for. Returns one result list per
        stage, each of length ``len(queue)`` and in queue order.
        """
        if not builders:
            raise ValueError("At least one job spec builder is required.")
        stage_count = len(builders)
        accumulators: list[list[JobResult]] = [[] for _ in range(stage_count)]
        if not queue:
            return accumulators

        pending: deque[tuple[int, TaskDescriptor]] = deque(enumerate(queue))
        advancing: deque[tuple[int, TaskDescriptor, int]] = deque()
        running: list[JobHandle] = []
        used_log_paths: set[Path] = set()

        def _record(result: JobResult, stage: int) -> None:
            accumulators[stage].append(result)
            if stage + 1 < stage_count:
                advancing.append((result.queue_index, result.task, stage + 1))

        try:
            while pending or advancing or running:
                while len(running) < self.workers and (advancing or pending):
                    if advancing:
                        index, task, stage = advancing.popleft()
                    else:
                        index, task = pending.popleft()
                        stage = 0
                    started = await self._start(index, task, stage, builders[stage], used_log_paths)
                    if isinstance(started, JobResult):
                        _record(started, stage)
                        continue
                    running.append(started)
                    self.peak_running = max(self.peak_running, len(running))
                    self._emit(
                        {
                            "event": "job_started",
                            "label": started.spec.label,
                            "queue_index": index,
                            "stage": stage,
                            "running": len(running),
                        }
                    )

                completed = 0
                now = self._clock()
                for handle in list(running):
                    if handle.process.returncode is None:
                        if handle.deadline is None or now < handle.deadline:
                            continue
                        result = await self._expire(handle)
                    else:
                        result = await self._collect(handle)
                    running.remove(handle)
                    completed += 1
                    _record(result, handle.stage)

                if completed == 0 and running:
                    await self._sleep(self.poll_interval)
        except BaseException:
            await self._abort(running)
            raise

        return [sorted(results, key=lambda item: item.queue_index) for results in accumulators]

    @staticmethod
    def _unique_log_path(spec: JobSpec, index: int, used: set[Path]) -> JobSpec:
        if spec.log_path in used:
            log_path = spec.log_path
            renamed = log_path.with_name(f"{log_path.stem}.{index}{log_path.suffix}")
            spec = replace(spec, log_path=renamed)
        used.add(spec.log_path)
        return spec

    async def _start(
        self,
        index: int,
        task: TaskDescriptor,
        stage: int,
        builder: JobSpecBuilder,
        used_log_paths: set[Path],
    ) -> JobHandle | JobResult:
        try:
            spec = builder(task)
        except Exception as exc:
            error = f"{type(exc).__name__}: {exc}"
            logger.warning("Job spec builder failed for %s: %s", task.identity, error)
            self._emit(
                {
                    "event": "job_spec_failed",
                    "label": task.identity,
                    "queue_index": index,
                    "stage": stage,
                    "error": error,
                }
            )
            return JobResult(
                exit_code=BUILD_FAILURE_EXIT_CODE,
                duration_seconds=0.0,
                captured_output="",
                label=task.identity,
                queue_index=index,
                task=task,
                error=error,
            )

        spec = self._unique_log_path(spec, index, used_log_paths)
        process = await self.launcher.launch(spec)
        started_at = self._clock()
        timeout = spec.timeout_seconds
        if timeout is None:
            timeout = self.default_timeout
        deadline = started_at + timeout if timeout is not None and timeout > 0 else None
        logger.debug("Started %s (queue index %d, stage %d)", spec.label, index, stage)
        return JobHandle(
            spec=spec,
            process=process,
            started_at=started_at,
            queue_index=index,
            task=task,
            stage=stage,
            deadline=deadline,
        )

    async def _collect(self, handle: JobHandle) -> JobResult:
        try:
            exit_code = await handle.process.wait()
            output = handle.process.read_output()
        finally:
            handle.process.release()
        duration = self._clock() - handle.started_at
        logger.debug("Finished %s with exit code %d", handle.spec.label, exit_code)
        self._emit(
            {
                "event": "job_finished",
                "label": handle.spec.label,
                "queue_index": handle.queue_index,
                "stage": handle.stage,
                "exit_code": exit_code,
                "duration_seconds": round(duration, 3),
            }
        )
        return JobResult(
            exit_code=exit_code,
            duration_seconds=duration,
            captured_output=output,
            label=handle.spec.label,
            queue_index=handle.queue_index,
            task=handle.task,
            log_path=str(handle.spec.log_path),
        )

    async def _expire(self, handle: JobHandle) -> JobResult:
        handle.process.kill()
        try:
            await asyncio.wait_for(handle.process.wait(), timeout=KILL_GRACE_SECONDS)
        except TimeoutError:
            logger.warning("Worker %s did not exit after kill", handle.spec.label)
        try:
            output = handle.process.read_output()
        finally:
            handle.process.release()
        duration = self._clock() - handle.started_at
        logger.warning("Worker %s timed out after %.1fs", handle.spec.label, duration)
        self._emit(
            {
                "event": "job_timeout",
                "label": handle.spec.label,
                "queue_index": handle.queue_index,
                "stage": handle.stage,
                "duration_seconds": round(duration, 3),
            }
        )
        return JobResult(
            exit_code=TIMEOUT_EXIT_CODE,
            duration_seconds=duration,
            captured_output=output,
            label=handle.spec.label,
            queue_index=handle.queue_index,
            task=handle.task,
            timed_out=True,
            error=f"Timed out after {duration:.1f}s",
            log_path=str(handle.spec.log_path),
        )

    async def _abort(self, running: list[JobHandle]) -> None:
        for handle in running:
            handle.process.kill()
        for handle in running:
            try:
                await asyncio.wait_for(handle.process.wait(), timeout=KILL_GRACE_SECONDS)
            except (TimeoutError, asyncio.CancelledError):
                logger.warning("Worker %s did not exit after abort", handle.spec.label)
            finally:
                handle.process.release()
            self._emit({"event": "job_aborted", "label": handle.spec.label})
        running.clear()


async def run_pool(
    queue: Sequence[TaskDescriptor],
    workers: int,
    build_job_spec: JobSpecBuilder,
    *,
    launcher: ProcessLauncher,
    poll_interval: float = 1.0,
    default_timeout: float | None = None,
    event_hook: PoolEventHook | None = None,
) -> list[JobResult]:
    pool = WorkerPool(
        launcher,
        workers=workers,
        poll_interval=poll_interval,
        default_timeout=default_timeout,
        event_hook=event_hook,
    )
    return await pool.run(queue, build_job_spec)
