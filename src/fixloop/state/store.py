from __future__ import annotations

import json
import os
import time
from collections.abc import Callable
from contextlib import contextmanager
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

MAX_RECORDED_EVENTS = 500


class StateError(RuntimeError):
    """Raised when run-state operations fail."""


class RunStateStore:
    """JSON namespaces under ``<work_dir>/state`` wrapped in a revision envelope.

    Every write goes through an exclusive lock file; ``update_json`` retries a
    read-modify-write when another writer bumped the revision in between.
    """

    NAMESPACES = {"context", "iterations", "phase_context", "events", "runs", "leases"}
    SCHEMA_VERSION = 1

    def __init__(self, state_dir: Path) -> None:
        self.state_dir = state_dir.resolve()
        self.state_dir.mkdir(parents=True, exist_ok=True)
        self.lock_file = self.state_dir / ".lock"

    @staticmethod
    def _utcnow_iso() -> str:
        return datetime.now(UTC).replace(microsecond=0).isoformat()

    @staticmethod
    def _validate_namespace(namespace: str) -> None:
        if namespace not in RunStateStore.NAMESPACES:
            raise StateError(f"Unsupported namespace: {namespace}")

    def _file(self, namespace: str) -> Path:
        return self.state_dir / f"{namespace}.json"

    @contextmanager
    def _state_lock(self, timeout_seconds: float = 3.0):
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise StateError("Timed out waiting for state lock.") from exc
                time.sleep(0.02)

        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def _read_raw_json(self, namespace: str) -> Any:
        path = self._file(namespace)
        if not path.exists():
            return None
        try:
            return json.loads(path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            return None

    def _write_raw_json(self, namespace: str, payload: Any) -> None:
        path = self._file(namespace)
        staging = path.with_suffix(".json.tmp")
        staging.write_text(json.dumps(payload, ensure_ascii=False, indent=2), encoding="utf-8")
        os.replace(staging, path)

    def _normalize_envelope(self, raw_payload: Any, default: Any) -> dict[str, Any]:
        if (
            isinstance(raw_payload, dict)
            and "schema_version" in raw_payload
            and "data" in raw_payload
            and "revision" in raw_payload
        ):
            return {
                "schema_version": int(raw_payload.get("schema_version") or self.SCHEMA_VERSION),
                "revision": int(raw_payload.get("revision") or 1),
                "updated_at": raw_payload.get("updated_at") or self._utcnow_iso(),
                "data": raw_payload.get("data", default),
            }
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": self._utcnow_iso(),
            "data": default if raw_payload is None else raw_payload,
        }

    def get_envelope(self, namespace: str, default: Any | None = None) -> dict[str, Any]:
        self._validate_namespace(namespace)
        default_value = {} if default is None else default
        return self._normalize_envelope(self._read_raw_json(namespace), default_value)

    def get_json(self, namespace: str, default: Any | None = None) -> Any:
        return self.get_envelope(namespace, default=default).get("data")

    def set_json(self, namespace: str, data: Any, expected_revision: int | None = None) -> None:
        self._validate_namespace(namespace)
        with self._state_lock():
            current = self.get_envelope(namespace, default={})
            current_revision = int(current.get("revision", 1))
            if expected_revision is not None and expected_revision != current_revision:
                raise StateError(f"Concurrent state update detected for namespace '{namespace}'.")
            self._write_raw_json(
                namespace,
                {
                    "schema_version": self.SCHEMA_VERSION,
                    "revision": current_revision + 1,
                    "updated_at": self._utcnow_iso(),
                    "data": data,
                },
            )

    def update_json(
        self,
        namespace: str,
        updater: Callable[[Any], Any],
        default: Any | None = None,
    ) -> Any:
        default_value = {} if default is None else default
        last_error: Exception | None = None
        for _ in range(4):
            current = self.get_envelope(namespace, default=default_value)
            updated = updater(current.get("data", default_value))
            try:
                self.set_json(namespace, updated, expected_revision=int(current.get("revision", 1)))
                return updated
            except StateError as exc:
                last_error = exc
                if "Concurrent state update detected" not in str(exc):
                    raise
                time.sleep(0.01)
        raise StateError(str(last_error) if last_error else "State update failed.")

    def get_context(self) -> dict[str, Any]:
        context = self.get_json("context", default={})
        return context if isinstance(context, dict) else {}

    def set_context(self, context: dict[str, Any]) -> None:
        self.set_json("context", context)

    def get_phase_context(self) -> dict[str, Any] | None:
        payload = self.get_json("phase_context", default={})
        if isinstance(payload, dict) and payload:
            return payload
        return None

    def set_phase_context(self, payload: dict[str, Any]) -> None:
        self.set_json("phase_context", payload)

    def get_iterations(self) -> list[dict[str, Any]]:
        payload = self.get_json("iterations", default={"iterations": []})
        if not isinstance(payload, dict):
            return []
        iterations = payload.get("iterations", [])
        if not isinstance(iterations, list):
            return []
        return [item for item in iterations if isinstance(item, dict)]

    def upsert_iteration(self, record: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            iterations = [
                item
                for item in result.get("iterations", [])
                if isinstance(item, dict) and item.get("iteration") != record.get("iteration")
            ]
            iterations.append(record)
            iterations.sort(key=lambda item: int(item.get("iteration", 0)))
            result["iterations"] = iterations
            return result

        self.update_json("iterations", _updater, default={"iterations": []})

    def truncate_iterations(self, keep_before: int) -> None:
        """Drop persisted iterations numbered ``keep_before`` and later."""

        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            result["iterations"] = [
                item
                for item in result.get("iterations", [])
                if isinstance(item, dict) and int(item.get("iteration", 0)) < keep_before
            ]
            return result

        self.update_json("iterations", _updater, default={"iterations": []})

    def get_events(self) -> list[dict[str, Any]]:
        payload = self.get_json("events", default={"events": []})
        if not isinstance(payload, dict):
            return []
        events = payload.get("events", [])
        return events if isinstance(events, list) else []

    def record_event(self, event: dict[str, Any]) -> None:
        event_payload = dict(event)
        event_payload["at"] = self._utcnow_iso()

        def _updater(payload: Any) -> dict[str, Any]:
            result = payload if isinstance(payload, dict) else {}
            events = result.get("events", [])
            if not isinstance(events, list):
                events = []
            events.append(event_payload)
            result["events"] = events[-MAX_RECORDED_EVENTS:]
            counts = result.get("counts", {})
            if not isinstance(counts, dict):
                counts = {}
            name = str(event.get("event", "unknown"))
            counts[name] = int(counts.get(name, 0)) + 1
            result["counts"] = counts
            return result

        self.update_json("events", _updater, default={"events": []})

    def get_runs(self) -> dict[str, Any]:
        runs = self.get_json("runs", default={})
        return runs if isinstance(runs, dict) else {}

    def upsert_run(self, run_id: str, updates: dict[str, Any]) -> None:
        def _updater(payload: Any) -> dict[str, Any]:
            runs = payload if isinstance(payload, dict) else {}
            run = runs.get(run_id, {})
            if not isinstance(run, dict):
                run = {}
            run.update(updates)
            runs[run_id] = run
            return runs

        self.update_json("runs", _updater, default={})

    def get_leases(self) -> dict[str, Any]:
        leases = self.get_json("leases", default={})
        return leases if isinstance(leases, dict) else {}
