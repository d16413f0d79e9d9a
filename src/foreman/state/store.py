from __future__ import annotations

import json
import logging
import os
import tempfile
import time
from contextlib import contextmanager
from dataclasses import asdict, dataclass, field, fields
from datetime import UTC, datetime
from pathlib import Path
from typing import Any, Literal
from uuid import uuid4

logger = logging.getLogger(__name__)

EntryStatus = Literal["pending", "in_progress", "deferred", "completed", "failed", "skipped"]
LoopStatus = Literal["idle", "running", "paused", "completed", "failed", "cancelled"]
ControlAction = Literal["cancel", "pause", "resume"]

TERMINAL_STATUSES = frozenset({"completed", "failed", "skipped"})
CONTROL_ACTIONS = frozenset({"cancel", "pause", "resume"})


class ForemanStateError(RuntimeError):
    """Raised when persisted state cannot be read or written."""


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def new_run_id() -> str:
    return f"run-{datetime.now(UTC).strftime('%Y%m%d%H%M%S')}-{uuid4().hex[:8]}"


def _known_fields(cls: type, data: dict[str, Any]) -> dict[str, Any]:
    names = {item.name for item in fields(cls)}
    return {key: value for key, value in data.items() if key in names}


@dataclass(slots=True)
class QueueEntry:
    id: str
    title: str = ""
    source: str = "local"
    repo_path: str = ""
    difficulty: int = 3
    depends_on: list[str] = field(default_factory=list)
    status: EntryStatus = "pending"
    base_branch: str | None = None
    branch: str | None = None
    pr_url: str | None = None
    error: str | None = None
    started_at: str | None = None
    completed_at: str | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_STATUSES

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueueEntry:
        payload = _known_fields(cls, data)
        payload["id"] = str(payload.get("id", ""))
        payload["depends_on"] = [str(dep) for dep in payload.get("depends_on") or []]
        return cls(**payload)


@dataclass(slots=True)
class LoopState:
    run_id: str
    goal: str = ""
    status: LoopStatus = "idle"
    issue_queue: list[QueueEntry] = field(default_factory=list)
    current_index: int = 0
    current_stage: str | None = None
    last_heartbeat_at: str | None = None
    runner_pid: int | None = None
    active_agent: str | None = None
    started_at: str | None = None
    completed_at: str | None = None

    def entry(self, issue_id: str) -> QueueEntry | None:
        for entry in self.issue_queue:
            if entry.id == issue_id:
                return entry
        return None

    def counts(self) -> dict[str, int]:
        totals = {"completed": 0, "failed": 0, "skipped": 0, "deferred": 0}
        for entry in self.issue_queue:
            if entry.status in totals:
                totals[entry.status] += 1
        return totals

    def to_dict(self) -> dict[str, Any]:
        payload = asdict(self)
        payload["issue_queue"] = [entry.to_dict() for entry in self.issue_queue]
        return payload

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> LoopState:
        payload = _known_fields(cls, data)
        payload["issue_queue"] = [
            QueueEntry.from_dict(item)
            for item in payload.get("issue_queue") or []
            if isinstance(item, dict)
        ]
        payload.setdefault("run_id", "")
        return cls(**payload)


class JsonFileStore:
    """Versioned JSON envelope on disk with a lock file and atomic replace."""

    SCHEMA_VERSION = 1

    def __init__(self, path: Path) -> None:
        self.path = path
        self.lock_file = path.with_name(f".{path.name}.lock")

    @contextmanager
    def lock(self, timeout_seconds: float = 3.0):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        start = time.monotonic()
        while True:
            try:
                fd = os.open(self.lock_file, os.O_CREAT | os.O_EXCL | os.O_WRONLY)
                os.write(fd, str(os.getpid()).encode("utf-8"))
                os.close(fd)
                break
            except FileExistsError as exc:
                if time.monotonic() - start > timeout_seconds:
                    raise ForemanStateError(f"Timed out waiting for lock on {self.path}") from exc
                time.sleep(0.02)
        try:
            yield
        finally:
            try:
                self.lock_file.unlink()
            except FileNotFoundError:
                pass

    def read_envelope(self) -> dict[str, Any] | None:
        if not self.path.exists():
            return None
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8"))
        except json.JSONDecodeError:
            logger.warning("Ignoring unreadable state file %s", self.path)
            return None
        except OSError as exc:
            raise ForemanStateError(f"Cannot read {self.path}: {exc}") from exc
        if isinstance(raw, dict) and "schema_version" in raw and "data" in raw:
            return raw
        # bare payloads written by hand are accepted as revision 1
        return {
            "schema_version": self.SCHEMA_VERSION,
            "revision": 1,
            "updated_at": _utcnow_iso(),
            "data": raw,
        }

    def read(self) -> Any:
        envelope = self.read_envelope()
        return None if envelope is None else envelope.get("data")

    def _write_atomic(self, payload: dict[str, Any]) -> None:
        serialized = json.dumps(payload, ensure_ascii=False, indent=2)
        fd, tmp_name = tempfile.mkstemp(prefix=f".{self.path.name}.", dir=self.path.parent)
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as handle:
                handle.write(serialized)
            os.replace(tmp_name, self.path)
        except OSError as exc:
            Path(tmp_name).unlink(missing_ok=True)
            raise ForemanStateError(f"Cannot write {self.path}: {exc}") from exc

    def write(self, data: Any, *, previous: dict[str, Any] | None = None) -> None:
        revision = int((previous or {}).get("revision") or 0) + 1
        self._write_atomic(
            {
                "schema_version": self.SCHEMA_VERSION,
                "revision": revision,
                "updated_at": _utcnow_iso(),
                "data": data,
            }
        )

    def delete(self) -> None:
        self.path.unlink(missing_ok=True)


class LoopStateStore:
    """Authoritative snapshot of a batch run under ``.foreman/loop-state.json``."""

    def __init__(self, workspace_root: Path) -> None:
        self.store = JsonFileStore(workspace_root / ".foreman" / "loop-state.json")

    @property
    def path(self) -> Path:
        return self.store.path

    def load(self) -> LoopState | None:
        data = self.store.read()
        if not isinstance(data, dict):
            return None
        return LoopState.from_dict(data)

    def save(self, state: LoopState, *, guard_run_id: str | None = None) -> bool:
        """Persist ``state``.

        With ``guard_run_id`` the write is skipped (returning ``False``) when the
        file on disk now belongs to a different run. Without it the caller claims
        the file, which is how a new run takes over.
        """
        with self.store.lock():
            previous = self.store.read_envelope()
            on_disk = (previous or {}).get("data")
            if guard_run_id and isinstance(on_disk, dict):
                disk_run_id = on_disk.get("run_id")
                if disk_run_id and disk_run_id != guard_run_id:
                    logger.warning(
                        "Skipping loop-state save: file owned by %s, writer is %s",
                        disk_run_id,
                        guard_run_id,
                    )
                    return False
            self.store.write(state.to_dict(), previous=previous)
        return True

    def heartbeat(self, state: LoopState) -> bool:
        state.last_heartbeat_at = _utcnow_iso()
        try:
            return self.save(state, guard_run_id=state.run_id)
        except ForemanStateError as exc:
            logger.warning("Heartbeat write failed: %s", exc)
            return False


@dataclass(slots=True)
class IssueState:
    """Progress of the issue currently moving through the pipeline."""

    issue_id: str | None = None
    repo_path: str | None = None
    base_branch: str | None = None
    branch: str | None = None
    steps: dict[str, bool] = field(default_factory=dict)
    outputs: dict[str, Any] = field(default_factory=dict)

    def done(self, step: str) -> bool:
        return bool(self.steps.get(step))

    def mark(self, step: str, output: Any = None) -> None:
        self.steps[step] = True
        if output is not None:
            self.outputs[step] = output

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> IssueState:
        return cls(**_known_fields(cls, data))


class IssueStateStore:
    def __init__(self, workspace_root: Path) -> None:
        self.store = JsonFileStore(workspace_root / ".foreman" / "state.json")

    @property
    def path(self) -> Path:
        return self.store.path

    def load(self) -> IssueState:
        data = self.store.read()
        return IssueState.from_dict(data) if isinstance(data, dict) else IssueState()

    def save(self, state: IssueState) -> None:
        with self.store.lock():
            self.store.write(state.to_dict(), previous=self.store.read_envelope())

    def reset(self) -> None:
        self.store.delete()


class ControlSignals:
    """Out-of-band cancel/pause/resume requests for a running loop."""

    def __init__(self, workspace_root: Path) -> None:
        self.path = workspace_root / ".foreman" / "control.json"

    def send(self, action: ControlAction, run_id: str | None = None) -> None:
        if action not in CONTROL_ACTIONS:
            raise ForemanStateError(f"Unknown control action: {action}")
        self.path.parent.mkdir(parents=True, exist_ok=True)
        payload = {"action": action, "run_id": run_id, "at": _utcnow_iso()}
        self.path.write_text(json.dumps(payload), encoding="utf-8")

    def consume(self, run_id: str) -> ControlAction | None:
        if not self.path.exists():
            return None
        try:
            payload = json.loads(self.path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as exc:
            logger.warning("Discarding unreadable control file: %s", exc)
            self.path.unlink(missing_ok=True)
            return None
        target = payload.get("run_id")
        if target and target != run_id:
            return None
        self.path.unlink(missing_ok=True)
        action = payload.get("action")
        return action if action in CONTROL_ACTIONS else None
