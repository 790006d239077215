from __future__ import annotations

import asyncio
import json
import logging
import os
import re
import shlex
import shutil
import signal
import subprocess
import time
import xml.etree.ElementTree as ET
from collections.abc import Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SHELL_REQUIRED_PATTERN = re.compile(r"(?:\|\||&&|[|;<>`]|[$]\()")
ENV_ASSIGNMENT_PATTERN = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")
HARNESS_ITEM_NAME = "validation-harness"

ValidationEventHook = Callable[[dict[str, Any]], None]


class HarnessUnavailableError(RuntimeError):
    """Raised when the validation harness entry point does not exist."""


class ReportParseError(ValueError):
    """Raised when a validation report cannot be interpreted."""


@dataclass(frozen=True, slots=True)
class FailedItem:
    name: str
    message: str

    def to_dict(self) -> dict[str, str]:
        return {"name": self.name, "message": self.message}


@dataclass(frozen=True, slots=True)
class ValidationResult:
    total: int
    passed: int
    failed: int
    failed_items: tuple[FailedItem, ...] = ()

    @property
    def converged(self) -> bool:
        return self.failed == 0 and self.total > 0

    def summary(self) -> str:
        return f"{self.passed}/{self.total} passed, {self.failed} failed"

    def to_dict(self) -> dict[str, Any]:
        return {
            "total": self.total,
            "passed": self.passed,
            "failed": self.failed,
            "failed_items": [item.to_dict() for item in self.failed_items],
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> ValidationResult:
        items = payload.get("failed_items") or payload.get("failures") or []
        failed_items = tuple(
            FailedItem(name=str(item.get("name", "")), message=str(item.get("message", "")))
            for item in items
            if isinstance(item, dict)
        )
        failed = payload.get("failed")
        passed = payload.get("passed")
        total = payload.get("total")
        failed_count = int(failed) if failed is not None else len(failed_items)
        passed_count = int(passed) if passed is not None else 0
        total_count = int(total) if total is not None else passed_count + failed_count
        return cls(
            total=total_count,
            passed=passed_count,
            failed=failed_count,
            failed_items=failed_items,
        )

    @classmethod
    def harness_failure(cls, message: str) -> ValidationResult:
        return cls(
            total=0,
            passed=0,
            failed=0,
            failed_items=(FailedItem(name=HARNESS_ITEM_NAME, message=message),),
        )


def parse_json_report(text: str) -> ValidationResult:
    try:
        payload = json.loads(text)
    except json.JSONDecodeError as exc:
        raise ReportParseError(f"Validation report is not valid JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise ReportParseError("Validation report must be a JSON object.")
    try:
        return ValidationResult.from_dict(payload)
    except (TypeError, ValueError) as exc:
        raise ReportParseError(f"Validation report has invalid counts: {exc}") from exc


def _local_name(tag: str) -> str:
    return tag.rsplit("}", maxsplit=1)[-1]


def parse_trx_report(text: str) -> ValidationResult:
    """Read a Visual Studio TRX file as written by ``dotnet test --logger trx``."""
    try:
        root = ET.fromstring(text)
    except ET.ParseError as exc:
        raise ReportParseError(f"Validation report is not valid TRX: {exc}") from exc

    counters: dict[str, str] = {}
    failed_items: list[FailedItem] = []
    for element in root.iter():
        name = _local_name(element.tag)
        if name == "Counters":
            counters = dict(element.attrib)
        elif name == "UnitTestResult" and element.get("outcome") == "Failed":
            message = ""
            for child in element.iter():
                if _local_name(child.tag) == "Message" and child.text:
                    message = child.text.strip()
                    break
            failed_items.append(
                FailedItem(name=element.get("testName", "unknown"), message=message)
            )

    if not counters:
        raise ReportParseError("TRX report has no ResultSummary counters.")
    try:
        total = int(counters.get("total", "0"))
        passed = int(counters.get("passed", "0"))
        failed = int(counters.get("failed", "0"))
    except ValueError as exc:
        raise ReportParseError(f"TRX counters are not integers: {exc}") from exc
    for key in ("error", "timeout", "aborted"):
        failed += int(counters.get(key, "0") or 0)
    return ValidationResult(
        total=total,
        passed=passed,
        failed=failed,
        failed_items=tuple(failed_items),
    )


def parse_report(text: str, report_format: str) -> ValidationResult:
    if report_format == "json":
        return parse_json_report(text)
    if report_format == "trx":
        return parse_trx_report(text)
    raise ReportParseError(f"Unsupported report format: {report_format}")


class ValidationHarness:
    def __init__(
        self,
        command: str,
        report_path: Path,
        *,
        report_format: str = "json",
        working_directory: Path,
        timeout_seconds: float | None = None,
        event_hook: ValidationEventHook | None = None,
    ) -> None:
        self.command = command.strip()
        self.report_path = report_path
        self.report_format = report_format
        self.working_directory = working_directory
        self.timeout_seconds = timeout_seconds
        self.event_hook = event_hook

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def _command_payload(self) -> tuple[str | list[str], bool]:
        """Split the command for direct exec, or keep it whole for ``sh -c``.

        Shell operators, leading ``NAME=value`` assignments and shell builtins
        all need the shell; anything else is executed directly.
        """
        if SHELL_REQUIRED_PATTERN.search(self.command):
            return self.command, True
        try:
            tokens = shlex.split(self.command)
        except ValueError:
            return self.command, True
        if not tokens:
            return tokens, False
        if ENV_ASSIGNMENT_PATTERN.match(tokens[0]):
            return self.command, True
        if not self._on_path(tokens[0]) and self._shell_resolves(tokens[0]):
            return self.command, True
        return tokens, False

    def _on_path(self, executable: str) -> bool:
        if os.sep in executable or (os.altsep and os.altsep in executable):
            candidate = Path(executable)
            if not candidate.is_absolute():
                candidate = self.working_directory / candidate
            return candidate.exists()
        return shutil.which(executable) is not None

    def _shell_resolves(self, executable: str) -> bool:
        check = subprocess.run(
            ["sh", "-lc", f"command -v {shlex.quote(executable)} >/dev/null 2>&1"],
            cwd=self.working_directory,
            text=True,
            capture_output=True,
        )
        return check.returncode == 0

    def ensure_available(self) -> None:
        if not self.command:
            raise HarnessUnavailableError("Validation command is empty.")
        payload, used_shell = self._command_payload()
        # The shell's exit status and the missing report decide for shell commands.
        if used_shell:
            return
        if not self._on_path(payload[0]):
            raise HarnessUnavailableError(
                f"Validation harness executable '{payload[0]}' not found."
            )

    def _kill(self, process: asyncio.subprocess.Process) -> None:
        try:
            os.killpg(process.pid, signal.SIGKILL)
        except ProcessLookupError:
            pass

    async def run(self, log_path: Path) -> ValidationResult:
        self.ensure_available()
        if self.report_path.exists():
            self.report_path.unlink()
        log_path.parent.mkdir(parents=True, exist_ok=True)
        payload, used_shell = self._command_payload()
        started = time.monotonic()
        self._emit({"event": "validation_start", "command": self.command, "shell": used_shell})

        with log_path.open("wb") as log_handle:
            if used_shell:
                process = await asyncio.create_subprocess_shell(
                    str(payload),
                    cwd=str(self.working_directory),
                    stdout=log_handle,
                    stderr=asyncio.subprocess.STDOUT,
                    start_new_session=True,
                )
            else:
                try:
                    process = await asyncio.create_subprocess_exec(
                        *payload,
                        cwd=str(self.working_directory),
                        stdout=log_handle,
                        stderr=asyncio.subprocess.STDOUT,
                        start_new_session=True,
                    )
                except OSError as exc:
                    raise HarnessUnavailableError(
                        f"Validation harness could not be started: {exc}"
                    ) from exc
            try:
                exit_code = await asyncio.wait_for(process.wait(), timeout=self.timeout_seconds)
            except TimeoutError:
                # Kills the whole session so children of ``sh -c`` go too.
                self._kill(process)
                await process.wait()
                duration = time.monotonic() - started
                self._emit({"event": "validation_timeout", "duration_seconds": round(duration, 3)})
                logger.warning("Validation harness timed out after %.1fs", duration)
                return ValidationResult.harness_failure(
                    f"Validation harness timed out after {duration:.1f}s."
                )

        duration = time.monotonic() - started
        if not self.report_path.exists():
            tail = log_path.read_text(encoding="utf-8", errors="replace")[-1500:]
            self._emit(
                {"event": "validation_report_missing", "exit_code": exit_code}
            )
            return ValidationResult.harness_failure(
                f"Harness exited with code {exit_code} without writing "
                f"{self.report_path.name}.\n{tail}".strip()
            )
        try:
            result = parse_report(
                self.report_path.read_text(encoding="utf-8", errors="replace"),
                self.report_format,
            )
        except ReportParseError as exc:
            self._emit({"event": "validation_report_invalid", "error": str(exc)})
            return ValidationResult.harness_failure(str(exc))

        self._emit(
            {
                "event": "validation_finished",
                "exit_code": exit_code,
                "total": result.total,
                "passed": result.passed,
                "failed": result.failed,
                "duration_seconds": round(duration, 3),
            }
        )
        logger.info("Validation: %s", result.summary())
        return result
