import json
from pathlib import Path

import pytest

from foreman.state.store import (
    ControlSignals,
    ForemanStateError,
    IssueState,
    IssueStateStore,
    LoopState,
    LoopStateStore,
    QueueEntry,
    new_run_id,
)


def test_loop_state_roundtrip_with_envelope(tmp_path: Path) -> None:
    store = LoopStateStore(tmp_path)
    state = LoopState(
        run_id="run-1",
        goal="ship it",
        status="running",
        issue_queue=[QueueEntry(id="7", title="Fix login", depends_on=["3"], difficulty=2)],
    )

    assert store.save(state) is True
    loaded = store.load()

    assert loaded is not None
    assert loaded.run_id == "run-1"
    assert loaded.issue_queue[0].depends_on == ["3"]
    assert loaded.issue_queue[0].status == "pending"
    on_disk = json.loads(store.path.read_text(encoding="utf-8"))
    assert on_disk["schema_version"] == 1
    assert on_disk["revision"] == 1
    assert on_disk["data"]["goal"] == "ship it"


def test_save_increments_revision(tmp_path: Path) -> None:
    store = LoopStateStore(tmp_path)
    state = LoopState(run_id="run-1")
    store.save(state)
    store.save(state, guard_run_id="run-1")

    on_disk = json.loads(store.path.read_text(encoding="utf-8"))
    assert on_disk["revision"] == 2


def test_guarded_save_is_rejected_for_foreign_run(tmp_path: Path) -> None:
    store = LoopStateStore(tmp_path)
    store.save(LoopState(run_id="run-new", status="running"))

    stale = LoopState(run_id="run-old", status="completed")
    accepted = store.save(stale, guard_run_id="run-old")

    assert accepted is False
    loaded = store.load()
    assert loaded is not None
    assert loaded.run_id == "run-new"
    assert loaded.status == "running"


def test_unguarded_save_claims_the_file(tmp_path: Path) -> None:
    store = LoopStateStore(tmp_path)
    store.save(LoopState(run_id="run-old"))

    assert store.save(LoopState(run_id="run-new")) is True
    assert store.load().run_id == "run-new"


def test_heartbeat_stamps_time(tmp_path: Path) -> None:
    store = LoopStateStore(tmp_path)
    state = LoopState(run_id="run-1")
    store.save(state)

    assert store.heartbeat(state) is True
    assert store.load().last_heartbeat_at is not None


def test_bare_payload_is_accepted(tmp_path: Path) -> None:
    store = LoopStateStore(tmp_path)
    store.path.parent.mkdir(parents=True)
    store.path.write_text(json.dumps({"run_id": "legacy", "status": "completed"}), encoding="utf-8")

    loaded = store.load()

    assert loaded is not None
    assert loaded.run_id == "legacy"


def test_lock_times_out_when_held(tmp_path: Path) -> None:
    store = LoopStateStore(tmp_path)
    store.path.parent.mkdir(parents=True)
    store.store.lock_file.write_text("999", encoding="utf-8")

    with pytest.raises(ForemanStateError):
        with store.store.lock(timeout_seconds=0.05):
            pass


def test_queue_entry_ignores_unknown_fields() -> None:
    entry = QueueEntry.from_dict({"id": 12, "title": "x", "labels": ["bug"], "depends_on": [3]})

    assert entry.id == "12"
    assert entry.depends_on == ["3"]


def test_counts_by_status() -> None:
    state = LoopState(
        run_id="r",
        issue_queue=[
            QueueEntry(id="1", status="completed"),
            QueueEntry(id="2", status="failed"),
            QueueEntry(id="3", status="skipped"),
            QueueEntry(id="4", status="deferred"),
            QueueEntry(id="5", status="completed"),
            QueueEntry(id="6"),
        ],
    )

    assert state.counts() == {"completed": 2, "failed": 1, "skipped": 1, "deferred": 1}


def test_issue_state_store_reset(tmp_path: Path) -> None:
    store = IssueStateStore(tmp_path)
    state = IssueState(issue_id="9", branch="feat/x_local_9")
    state.mark("planning", {"artifact": "PLAN.md"})
    store.save(state)

    loaded = store.load()
    assert loaded.done("planning")
    assert not loaded.done("implementation")

    store.reset()
    assert store.load().issue_id is None


def test_control_signals_are_consumed_once(tmp_path: Path) -> None:
    signals = ControlSignals(tmp_path)
    signals.send("pause", "run-1")

    assert signals.consume("run-2") is None
    assert signals.consume("run-1") == "pause"
    assert signals.consume("run-1") is None


def test_control_signal_rejects_unknown_action(tmp_path: Path) -> None:
    with pytest.raises(ForemanStateError):
        ControlSignals(tmp_path).send("explode")  # type: ignore[arg-type]


def test_run_ids_are_unique() -> None:
    first, second = new_run_id(), new_run_id()

    assert first.startswith("run-")
    assert first != second
