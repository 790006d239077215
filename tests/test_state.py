import json
from pathlib import Path

import pytest

from fixloop.state import RunStateStore, StateError
from fixloop.state.store import MAX_RECORDED_EVENTS


def test_state_roundtrip(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path / "state")
    payload = {"run_id": "run-1", "phase": "apply-work"}
    store.set_json("context", payload)

    assert store.get_json("context") == payload
    assert store.get_context() == payload


def test_state_schema_migrates_legacy_payload(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path / "state")
    local_path = tmp_path / "state" / "context.json"
    local_path.write_text(json.dumps({"legacy": True}), encoding="utf-8")

    assert store.get_json("context") == {"legacy": True}

    store.set_json("context", {"legacy": False})
    on_disk = json.loads(local_path.read_text(encoding="utf-8"))
    assert on_disk["schema_version"] == RunStateStore.SCHEMA_VERSION
    assert on_disk["data"] == {"legacy": False}


def test_update_json_increments_revision(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path / "state")
    store.set_json("runs", {"count": 1})
    before = store.get_envelope("runs")["revision"]

    store.update_json("runs", lambda payload: {"count": int(payload.get("count", 0)) + 1})

    envelope = store.get_envelope("runs")
    assert envelope["data"] == {"count": 2}
    assert envelope["revision"] == before + 1


def test_stale_revision_is_rejected(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path / "state")
    store.set_json("runs", {"count": 1})
    stale = store.get_envelope("runs")["revision"]
    store.set_json("runs", {"count": 2})

    with pytest.raises(StateError, match="Concurrent state update"):
        store.set_json("runs", {"count": 3}, expected_revision=stale)


def test_unknown_namespace_is_rejected(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path / "state")

    with pytest.raises(StateError):
        store.set_json("metrics", {})


def test_lock_timeout_raises(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path / "state")
    store.lock_file.write_text("12345", encoding="utf-8")

    with pytest.raises(StateError, match="state lock"):
        with store._state_lock(timeout_seconds=0.05):
            pass


def test_iterations_are_upserted_and_truncated(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path / "state")
    store.upsert_iteration({"iteration": 2, "guidance": None})
    store.upsert_iteration({"iteration": 1, "guidance": "first"})
    store.upsert_iteration({"iteration": 2, "guidance": "second"})

    assert store.get_iterations() == [
        {"iteration": 1, "guidance": "first"},
        {"iteration": 2, "guidance": "second"},
    ]

    store.truncate_iterations(keep_before=2)
    assert [item["iteration"] for item in store.get_iterations()] == [1]


def test_record_event_caps_history_and_counts(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path / "state")
    for index in range(MAX_RECORDED_EVENTS + 5):
        store.record_event({"event": "job_finished", "queue_index": index})

    events = store.get_events()
    assert len(events) == MAX_RECORDED_EVENTS
    assert events[-1]["queue_index"] == MAX_RECORDED_EVENTS + 4
    assert "at" in events[-1]
    assert store.get_json("events")["counts"]["job_finished"] == MAX_RECORDED_EVENTS + 5


def test_runs_and_phase_context(tmp_path: Path) -> None:
    store = RunStateStore(tmp_path / "state")
    store.upsert_run("run-1", {"status": "in_progress"})
    store.upsert_run("run-1", {"status": "pass"})

    assert store.get_runs() == {"run-1": {"status": "pass"}}
    assert store.get_phase_context() is None

    store.set_phase_context({"iteration": 2, "lessons": ["x"], "failures": []})
    assert store.get_phase_context()["iteration"] == 2
