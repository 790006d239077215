from __future__ import annotations

import hashlib
import json
from dataclasses import dataclass
from pathlib import Path
from typing import Any


class ManifestError(RuntimeError):
    """Raised when the task manifest cannot be loaded."""


@dataclass(frozen=True, slots=True)
class TaskDescriptor:
    identity: str
    source_location: str
    category: str
    original_identity: str

    @property
    def slug(self) -> str:
        """Filesystem-safe, collision-free form of the identity used in artifact paths."""
        cleaned = "".join(ch if ch.isalnum() or ch in "-_." else "_" for ch in self.identity)
        cleaned = cleaned.strip(".") or "task"
        if cleaned == self.identity:
            return cleaned
        digest = hashlib.sha1(self.identity.encode("utf-8")).hexdigest()[:8]
        return f"{cleaned}-{digest}"

    def to_dict(self) -> dict[str, str]:
        return {
            "identity": self.identity,
            "source_location": self.source_location,
            "category": self.category,
            "original_identity": self.original_identity,
        }

    @classmethod
    def from_dict(cls, payload: dict[str, Any]) -> TaskDescriptor:
        return cls(
            identity=str(payload["identity"]),
            source_location=str(payload.get("source_location", "")),
            category=str(payload.get("category", "")),
            original_identity=str(payload.get("original_identity") or payload["identity"]),
        )


_KEY_ALIASES = {
    "identity": ("identity", "id", "name"),
    "source_location": ("source_location", "sourceLocation", "source", "path"),
    "category": ("category",),
    "original_identity": ("original_identity", "originalIdentity", "original"),
}


def _pick(entry: dict[str, Any], field_name: str) -> str | None:
    for key in _KEY_ALIASES[field_name]:
        value = entry.get(key)
        if isinstance(value, str) and value.strip():
            return value.strip()
    return None


def _descriptor_from_entry(
    entry: Any, *, fallback_identity: str | None, position: str
) -> TaskDescriptor:
    if not isinstance(entry, dict):
        raise ManifestError(f"Manifest entry {position} must be an object.")
    identity = _pick(entry, "identity") or fallback_identity
    if not identity:
        raise ManifestError(f"Manifest entry {position} has no identity.")
    source_location = _pick(entry, "source_location")
    if not source_location:
        raise ManifestError(f"Manifest entry '{identity}' has no source location.")
    return TaskDescriptor(
        identity=identity,
        source_location=source_location,
        category=_pick(entry, "category") or "uncategorized",
        original_identity=_pick(entry, "original_identity") or identity,
    )


def parse_manifest(payload: Any) -> list[TaskDescriptor]:
    if isinstance(payload, dict) and "tasks" in payload:
        payload = payload["tasks"]

    descriptors: list[TaskDescriptor] = []
    if isinstance(payload, list):
        for index, entry in enumerate(payload):
            descriptors.append(
                _descriptor_from_entry(entry, fallback_identity=None, position=f"#{index}")
            )
    elif isinstance(payload, dict):
        for key, entry in payload.items():
            descriptors.append(
                _descriptor_from_entry(entry, fallback_identity=str(key), position=f"'{key}'")
            )
    else:
        raise ManifestError("Manifest must be a list of tasks or a mapping keyed by task.")

    seen: set[str] = set()
    for descriptor in descriptors:
        if descriptor.identity in seen:
            raise ManifestError(f"Duplicate task identity in manifest: {descriptor.identity}")
        seen.add(descriptor.identity)
    return descriptors


def load_manifest(path: Path) -> tuple[TaskDescriptor, ...]:
    if not path.exists():
        raise ManifestError(f"Manifest not found: {path}")
    try:
        payload = json.loads(path.read_text(encoding="utf-8"))
    except json.JSONDecodeError as exc:
        raise ManifestError(f"Manifest is not valid JSON ({path}): {exc}") from exc
    return tuple(parse_manifest(payload))
