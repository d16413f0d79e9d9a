from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Literal
from uuid import uuid4

from foreman.backends.base import NON_RETRIABLE_KINDS, is_rate_limited
from foreman.hooks import HookDispatcher
from foreman.machines.base import Machine, MachineResult, RunContext

logger = logging.getLogger(__name__)

WorkflowStatus = Literal["completed", "failed", "cancelled"]


@dataclass(slots=True)
class StepRecord:
    machine: str
    status: str
    data: Any = None
    error: str | None = None
    error_kind: str | None = None
    duration_ms: int = 0

    def to_dict(self) -> dict[str, Any]:
        return {
            "machine": self.machine,
            "status": self.status,
            "data": self.data,
            "error": self.error,
            "error_kind": self.error_kind,
            "duration_ms": self.duration_ms,
        }


@dataclass(slots=True)
class RunState:
    """Accumulated state handed to every input mapper."""

    run_id: str
    initial: dict[str, Any] = field(default_factory=dict)
    results: list[StepRecord] = field(default_factory=list)


InputMapper = Callable[[MachineResult | None, RunState], Any]


def _initial_input(_: MachineResult | None, state: RunState) -> Any:
    return state.initial


@dataclass(slots=True)
class Step:
    machine: Machine
    input_mapper: InputMapper = _initial_input
    optional: bool = False


@dataclass(slots=True)
class WorkflowOutcome:
    status: WorkflowStatus
    run_id: str
    results: list[StepRecord] = field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None
    duration_ms: int = 0

    @property
    def last_data(self) -> Any:
        return self.results[-1].data if self.results else None

    @property
    def rate_limited(self) -> bool:
        return self.error_kind == "rate_limit" or is_rate_limited(self.error)

    @property
    def non_retriable(self) -> bool:
        return self.error_kind in NON_RETRIABLE_KINDS


class WorkflowRunner:
    """Runs steps in order, threading each result into the next step's input.

    The cancel token is checked before every step; a paused token blocks
    here, polling until it is resumed, cancelled, or the pause limit runs out.
    """

    def __init__(
        self,
        name: str,
        context: RunContext,
        *,
        hooks: HookDispatcher | None = None,
        on_stage_change: Callable[[str], None] | None = None,
        on_checkpoint: Callable[[StepRecord], None] | None = None,
        on_heartbeat: Callable[[], None] | None = None,
        poll_signals: Callable[[], None] | None = None,
    ) -> None:
        self.name = name
        self.context = context
        self.hooks = hooks
        self.on_stage_change = on_stage_change
        self.on_checkpoint = on_checkpoint
        self.on_heartbeat = on_heartbeat
        self.poll_signals = poll_signals

    async def _dispatch(self, event: str, **kwargs: Any) -> None:
        if self.hooks is not None:
            await self.hooks.dispatch(event, **kwargs)

    async def wait_while_paused(self) -> bool:
        """Block while paused. Returns ``True`` if the run may continue."""
        token = self.context.cancel_token
        workflow = self.context.config.workflow
        if self.poll_signals is not None:
            self.poll_signals()
        if not token.paused:
            return not token.cancelled

        self.context.log({"event": "workflow_paused", "workflow": self.name})
        waited = 0.0
        interval = max(0.01, float(workflow.pause_poll_seconds))
        while token.paused and not token.cancelled:
            if waited >= workflow.max_pause_seconds:
                self.context.log({"event": "pause_timeout", "workflow": self.name})
                token.cancel()
                break
            await asyncio.sleep(interval)
            waited += interval
            if self.on_heartbeat is not None:
                self.on_heartbeat()
            if self.poll_signals is not None:
                self.poll_signals()
        if not token.cancelled:
            self.context.log({"event": "workflow_resumed", "workflow": self.name})
        return not token.cancelled

    async def run(self, steps: list[Step], initial_input: dict[str, Any] | None = None) -> WorkflowOutcome:
        run_id = uuid4().hex[:8]
        state = RunState(run_id=run_id, initial=dict(initial_input or {}))
        started = time.monotonic()
        previous: MachineResult | None = None

        def _outcome(
            status: WorkflowStatus, error: str | None = None, kind: str | None = None
        ) -> WorkflowOutcome:
            return WorkflowOutcome(
                status=status,
                run_id=run_id,
                results=list(state.results),
                error=error,
                error_kind=kind,
                duration_ms=int((time.monotonic() - started) * 1000),
            )

        await self._dispatch("workflow_start", data={"workflow": self.name, "run_id": run_id})

        for step in steps:
            machine_name = step.machine.name
            if not await self.wait_while_paused():
                self.context.log(
                    {"event": "workflow_cancelled", "workflow": self.name, "at_machine": machine_name}
                )
                return _outcome("cancelled")

            if self.on_stage_change is not None:
                self.on_stage_change(machine_name)
            self.context.log({"event": "machine_start", "machine": machine_name, "run_id": run_id})
            await self._dispatch("machine_start", machine=machine_name)

            result = await step.machine.run(step.input_mapper(previous, state), self.context)
            record = StepRecord(
                machine=machine_name,
                status=result.status,
                data=result.data,
                error=result.error,
                error_kind=result.error_kind,
                duration_ms=result.duration_ms or 0,
            )
            state.results.append(record)
            self.context.log(
                {
                    "event": "machine_complete",
                    "machine": machine_name,
                    "status": result.status,
                    "duration_ms": record.duration_ms,
                }
            )
            if self.on_checkpoint is not None:
                self.on_checkpoint(record)

            if result.status == "error":
                await self._dispatch(
                    "machine_error", machine=machine_name, status="error", data={"error": result.error}
                )
                if step.optional:
                    logger.info("Optional step %s failed: %s", machine_name, result.error)
                    continue
                await self._dispatch("workflow_failed", machine=machine_name, status="failed")
                return _outcome("failed", result.error, result.error_kind)

            await self._dispatch("machine_complete", machine=machine_name, status=result.status)
            previous = result

        await self._dispatch("workflow_complete", status="completed", data={"workflow": self.name})
        return _outcome("completed")


async def run_with_machine_retry(
    run_phase: Callable[[], Awaitable[WorkflowOutcome]],
    *,
    max_retries: int,
    backoff_seconds: float,
    log: Callable[[dict[str, Any]], None],
) -> WorkflowOutcome:
    """Re-run a failed pipeline phase with exponential backoff.

    Completed stages short-circuit on re-run through their persisted step
    flags. Cancelled and rate-limited outcomes are returned immediately so
    the caller can stop or defer, as are timeout, auth and startup failures.
    """
    retries = max(0, max_retries)
    attempt = 0
    while True:
        outcome = await run_phase()
        if outcome.status != "failed" or outcome.rate_limited:
            return outcome
        if outcome.non_retriable:
            log(
                {
                    "event": "machine_retry_skipped",
                    "machine": outcome.results[-1].machine if outcome.results else None,
                    "error": outcome.error,
                    "error_kind": outcome.error_kind,
                }
            )
            return outcome
        failed_at = outcome.results[-1].machine if outcome.results else None
        log(
            {
                "event": "machine_retry_failed",
                "attempt": attempt,
                "machine": failed_at,
                "error": outcome.error,
            }
        )
        if attempt >= retries:
            return outcome
        delay = backoff_seconds * (2**attempt)
        if delay > 0:
            await asyncio.sleep(delay)
        attempt += 1
        log({"event": "machine_retry_attempt", "attempt": attempt, "machine": failed_at})
