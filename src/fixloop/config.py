from __future__ import annotations

import json
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Any, Literal

WorkerBackendName = Literal["codex", "claude", "command"]
ReportFormat = Literal["json", "trx"]

WORKER_BACKENDS = ("codex", "claude", "command")
REPORT_FORMATS = ("json", "trx")


class ConfigError(RuntimeError):
    """Raised when fixloop.toml contains unusable values."""


@dataclass(slots=True)
class ProjectConfig:
    name: str = "my-project"
    manifest_path: str = "tasks.json"
    work_dir: str = ".fixloop"


@dataclass(slots=True)
class WorkerConfig:
    backend: WorkerBackendName = "codex"
    binary: str = ""
    model: str = ""
    command: list[str] = field(default_factory=list)
    extra_args: list[str] = field(default_factory=list)
    context_dirs: list[str] = field(default_factory=list)
    workers: int = 5
    poll_interval_seconds: float = 2.0
    timeout_seconds: float = 1800.0


@dataclass(slots=True)
class ValidationConfig:
    command: str = (
        "dotnet test --logger \"trx;LogFileName=fixloop.trx\" "
        "--results-directory .fixloop/validation"
    )
    report_path: str = ".fixloop/validation/fixloop.trx"
    report_format: ReportFormat = "trx"
    timeout_seconds: float = 1800.0


@dataclass(slots=True)
class LoopConfig:
    max_iterations: int = 3
    abort_on_setup_failure: bool = False
    reuse_setup_artifacts_on_resume: bool = False
    lease_ttl_seconds: float = 3600.0


@dataclass(slots=True)
class FixloopConfig:
    project: ProjectConfig = field(default_factory=ProjectConfig)
    worker: WorkerConfig = field(default_factory=WorkerConfig)
    validation: ValidationConfig = field(default_factory=ValidationConfig)
    loop: LoopConfig = field(default_factory=LoopConfig)

    @classmethod
    def default(cls) -> FixloopConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> FixloopConfig:
        try:
            config = cls(
                project=ProjectConfig(**data.get("project", {})),
                worker=WorkerConfig(**data.get("worker", {})),
                validation=ValidationConfig(**data.get("validation", {})),
                loop=LoopConfig(**data.get("loop", {})),
            )
        except TypeError as exc:
            raise ConfigError(f"Unknown configuration key: {exc}") from exc
        config.validate()
        return config

    def validate(self) -> None:
        if self.worker.backend not in WORKER_BACKENDS:
            raise ConfigError(f"Unsupported worker backend: {self.worker.backend}")
        if self.worker.backend == "command" and not self.worker.command:
            raise ConfigError("worker.command must be set when worker.backend = 'command'.")
        if int(self.worker.workers) < 1:
            raise ConfigError(f"worker.workers must be >= 1, got {self.worker.workers}.")
        if float(self.worker.poll_interval_seconds) <= 0:
            raise ConfigError("worker.poll_interval_seconds must be positive.")
        if self.validation.report_format not in REPORT_FORMATS:
            raise ConfigError(
                f"Unsupported validation report format: {self.validation.report_format}"
            )
        if not self.validation.command.strip():
            raise ConfigError("validation.command must not be empty.")
        if int(self.loop.max_iterations) < 1:
            raise ConfigError(f"loop.max_iterations must be >= 1, got {self.loop.max_iterations}.")

    def to_dict(self) -> dict[str, dict[str, Any]]:
        sections = {
            "project": self.project,
            "worker": self.worker,
            "validation": self.validation,
            "loop": self.loop,
        }
        data: dict[str, dict[str, Any]] = {}
        for name, section in sections.items():
            values: dict[str, Any] = {}
            for item in fields(section):
                value = getattr(section, item.name)
                values[item.name] = list(value) if isinstance(value, list) else value
            data[name] = values
        return data

    def resolve_path(self, repo_root: Path, value: str) -> Path:
        path = Path(value)
        if not path.is_absolute():
            path = repo_root / path
        return path.resolve()


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def dumps_toml(config: FixloopConfig) -> str:
    data = config.to_dict()
    lines: list[str] = []
    section_order = ["project", "worker", "validation", "loop"]
    for section in section_order:
        lines.append(f"[{section}]")
        for key, value in data[section].items():
            lines.append(f"{key} = {_toml_value(value)}")
        lines.append("")
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> FixloopConfig:
    if not path.exists():
        return FixloopConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid TOML in {path}: {exc}") from exc
    return FixloopConfig.from_dict(data)


def save_config(path: Path, config: FixloopConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
