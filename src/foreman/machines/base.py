from __future__ import annotations

import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

from pydantic import BaseModel, ValidationError

from foreman.backends.pool import AgentPool
from foreman.config import ForemanConfig
from foreman.events import EventLog

logger = logging.getLogger(__name__)

UnitStatus = Literal["ok", "error", "skipped"]
EventSink = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class CancelToken:
    cancelled: bool = False
    paused: bool = False

    def cancel(self) -> None:
        self.cancelled = True

    def pause(self) -> None:
        self.paused = True

    def resume(self) -> None:
        self.paused = False


@dataclass(slots=True)
class RunContext:
    """Shared, mutable state for one pipeline run; passed by reference."""

    workspace_root: Path
    repo_root: Path
    config: ForemanConfig
    pool: AgentPool
    log: EventSink = field(default_factory=EventLog)
    cancel_token: CancelToken = field(default_factory=CancelToken)
    secrets: dict[str, str] = field(default_factory=dict)
    artifacts_dir: Path | None = None
    scratch_dir: Path | None = None

    def __post_init__(self) -> None:
        foreman_dir = self.workspace_root / ".foreman"
        if self.artifacts_dir is None:
            self.artifacts_dir = foreman_dir / "artifacts"
        if self.scratch_dir is None:
            self.scratch_dir = foreman_dir / "scratchpad"

    @property
    def state_dir(self) -> Path:
        return self.workspace_root / ".foreman"

    def artifact_path(self, name: str) -> Path:
        directory = self.artifacts_dir or self.state_dir / "artifacts"
        directory.mkdir(parents=True, exist_ok=True)
        return directory / name

    async def set_repo_root(self, new_root: Path) -> None:
        """Move the active repository; stale pooled handles are released."""
        self.repo_root = new_root
        released = await self.pool.update_context(new_root)
        if released:
            self.log(
                {"event": "pool_context_updated", "repo_root": str(new_root), "released": len(released)}
            )


@dataclass(slots=True)
class MachineResult:
    status: UnitStatus
    data: Any = None
    error: str | None = None
    duration_ms: int | None = None
    error_kind: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status,
            "data": self.data,
            "error": self.error,
            "error_kind": self.error_kind,
            "duration_ms": self.duration_ms,
        }


MachineBody = Callable[[Any, RunContext], Awaitable[MachineResult]]


def _elapsed_ms(started: float) -> int:
    return max(0, int((time.monotonic() - started) * 1000))


class Machine:
    """A schema-validated unit of work with a uniform result envelope."""

    def __init__(
        self,
        name: str,
        description: str,
        input_model: type[BaseModel],
        execute: MachineBody,
    ) -> None:
        self.name = name
        self.description = description
        self.input_model = input_model
        self._execute = execute

    def __repr__(self) -> str:
        return f"Machine({self.name!r})"

    async def run(self, raw_input: Any, context: RunContext) -> MachineResult:
        started = time.monotonic()
        try:
            validated = self.input_model.model_validate(raw_input or {})
        except ValidationError as exc:
            return MachineResult(
                status="error",
                error=f"Invalid input for {self.name}: {exc}",
                duration_ms=_elapsed_ms(started),
            )

        try:
            result = await self._execute(validated, context)
        except Exception as exc:
            logger.debug("Machine %s raised", self.name, exc_info=True)
            return MachineResult(
                status="error",
                error=str(exc) or exc.__class__.__name__,
                duration_ms=_elapsed_ms(started),
                error_kind=getattr(exc, "kind", None),
            )

        if result.duration_ms is None:
            result.duration_ms = _elapsed_ms(started)
        return result


def define_machine(
    name: str,
    description: str,
    input_model: type[BaseModel],
) -> Callable[[MachineBody], Machine]:
    def _decorator(execute: MachineBody) -> Machine:
        return Machine(name, description, input_model, execute)

    return _decorator
