from __future__ import annotations

import logging
import os
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from foreman import gitops
from foreman.backends.base import is_rate_limited
from foreman.hooks import HookDispatcher
from foreman.machines import develop as stages
from foreman.machines.base import MachineResult, RunContext
from foreman.state.store import (
    ControlSignals,
    ForemanStateError,
    IssueStateStore,
    LoopState,
    LoopStateStore,
    QueueEntry,
    new_run_id,
)
from foreman.workflows.queue import Outcome, build_issue_queue, resolve_dependency_branch
from foreman.workflows.runner import (
    RunState,
    Step,
    WorkflowOutcome,
    WorkflowRunner,
    run_with_machine_retry,
)

logger = logging.getLogger(__name__)

ALL_DEPENDENCIES_FAILED = "All dependencies failed"
COALESCE_FILE = "COALESCE.md"
COALESCE_DIFF_LIMIT = 8000
COALESCE_TIMEOUT_SECONDS = 900.0

PipelineFn = Callable[[QueueEntry, RunContext, str | None, bool], Awaitable[WorkflowOutcome]]


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def _issue_payload(entry: QueueEntry) -> dict[str, Any]:
    return {
        "id": entry.id,
        "title": entry.title,
        "source": entry.source,
        "repo_path": entry.repo_path,
        "difficulty": entry.difficulty,
        "depends_on": list(entry.depends_on),
    }


def _merge_outcomes(outcomes: list[WorkflowOutcome]) -> WorkflowOutcome:
    last = outcomes[-1]
    return WorkflowOutcome(
        status=last.status,
        run_id=outcomes[0].run_id,
        results=[record for outcome in outcomes for record in outcome.results],
        error=last.error,
        error_kind=last.error_kind,
        duration_ms=sum(outcome.duration_ms for outcome in outcomes),
    )


async def run_develop_pipeline(
    entry: QueueEntry,
    context: RunContext,
    *,
    base_branch: str | None = None,
    force: bool = True,
    goal: str = "",
    test_command: str = "",
    hooks: HookDispatcher | None = None,
    on_stage_change: Callable[[str], None] | None = None,
    on_heartbeat: Callable[[], None] | None = None,
    poll_signals: Callable[[], None] | None = None,
) -> WorkflowOutcome:
    """Drive one issue from draft to published branch.

    The stages run in four phases (draft, plan, review, build and publish);
    a failed phase is retried as a whole, and stages that already finished
    return their cached result.
    """
    runner = WorkflowRunner(
        "develop",
        context,
        hooks=hooks,
        on_stage_change=on_stage_change
        or (lambda stage: context.log({"event": "develop_stage", "stage": stage})),
        on_heartbeat=on_heartbeat,
        poll_signals=poll_signals,
    )
    draft_attempts = 0

    def _draft_input(_: MachineResult | None, __: RunState) -> dict[str, Any]:
        nonlocal draft_attempts
        draft_attempts += 1
        return {
            "issue": _issue_payload(entry),
            "repo_path": entry.repo_path,
            "base_branch": base_branch,
            "clarifications": f"Autonomous mode. Goal: {goal}" if goal else "",
            "force": force and draft_attempts == 1,
        }

    phases: list[list[Step]] = [
        [Step(stages.issue_draft, _draft_input)],
        [Step(stages.planning, lambda _prev, _state: {})],
        [Step(stages.plan_review, lambda _prev, _state: {})],
        [
            Step(stages.implementation, lambda _prev, _state: {}),
            Step(stages.quality_review, lambda _prev, _state: {"test_command": test_command}),
            Step(stages.pr_creation, lambda _prev, _state: {"base": base_branch}),
        ],
    ]
    workflow = context.config.workflow
    outcomes: list[WorkflowOutcome] = []
    for steps in phases:
        outcome = await run_with_machine_retry(
            lambda steps=steps: runner.run(steps),
            max_retries=workflow.max_machine_retries,
            backoff_seconds=workflow.machine_retry_backoff_seconds,
            log=context.log,
        )
        outcomes.append(outcome)
        if outcome.status != "completed":
            break
    return _merge_outcomes(outcomes)


def reset_for_next_issue(
    context: RunContext,
    repo_root: Path,
    *,
    issue_status: str,
    destructive: bool = False,
) -> None:
    """Clear per-issue state and return the repository to its default branch.

    Uncommitted work of an issue that did not complete is committed to that
    issue's own branch first, so it is never silently lost.
    """
    IssueStateStore(context.workspace_root).reset()
    if context.artifacts_dir is not None:
        for name in stages.ARTIFACT_FILES:
            (context.artifacts_dir / name).unlink(missing_ok=True)

    if not repo_root.exists() or not gitops.is_git_repo(repo_root):
        return
    default_branch = gitops.detect_default_branch(repo_root)
    if issue_status != "completed":
        branch = gitops.current_branch(repo_root)
        if branch != default_branch and gitops.is_dirty(repo_root):
            gitops.commit_all(repo_root, f"wip: partial work (issue {issue_status})")
            context.log({"event": "partial_work_committed", "branch": branch, "status": issue_status})

    checkout = gitops.run_git(repo_root, ["checkout", default_branch], check=False)
    if checkout.returncode != 0:
        logger.warning("Could not check out %s: %s", default_branch, checkout.stderr.strip())
    if destructive and gitops.is_dirty(repo_root):
        gitops.discard_changes(repo_root)


@dataclass(slots=True)
class LoopOptions:
    goal: str = "resolve all assigned issues"
    max_issues: int | None = None
    destructive_reset: bool | None = None
    local_issues_dir: str = ""
    test_command: str = ""


@dataclass(slots=True)
class LoopSummary:
    status: str
    run_id: str
    completed: int = 0
    failed: int = 0
    skipped: int = 0
    deferred: int = 0
    error: str | None = None
    results: list[dict[str, Any]] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {
            "completed": self.completed,
            "failed": self.failed,
            "skipped": self.skipped,
            "deferred": self.deferred,
        }


class DevelopLoop:
    """Runs a batch of issues through the develop pipeline, one at a time.

    Queue entries and the outcome map belong to this object alone. Every
    entry transition is persisted before the next step so an observer, or a
    resumed run, sees each state the entry went through.
    """

    def __init__(
        self,
        context: RunContext,
        options: LoopOptions | None = None,
        *,
        pipeline: PipelineFn | None = None,
        hooks: HookDispatcher | None = None,
        run_id: str | None = None,
    ) -> None:
        self.context = context
        self.options = options or LoopOptions()
        self.run_id = run_id or new_run_id()
        self.hooks = hooks or HookDispatcher(
            context.config.workflow.hooks, cwd=context.workspace_root, run_id=self.run_id
        )
        self.store = LoopStateStore(context.workspace_root)
        self.signals = ControlSignals(context.workspace_root)
        self.state = LoopState(run_id=self.run_id, goal=self.options.goal)
        self.outcomes: dict[str, Outcome] = {}
        self.known_ids: set[str] = set()
        self._pipeline = pipeline
        self._gate = WorkflowRunner(
            "develop-loop",
            context,
            on_heartbeat=self._heartbeat,
            poll_signals=self.poll_signals,
        )

    @property
    def destructive_reset(self) -> bool:
        if self.options.destructive_reset is not None:
            return self.options.destructive_reset
        return self.context.config.workflow.destructive_reset

    def _claim(self) -> None:
        try:
            self.store.save(self.state)
        except ForemanStateError as exc:
            self._write_failed(exc)

    def _write_failed(self, exc: ForemanStateError) -> None:
        logger.warning("Loop state write failed: %s", exc)
        self.context.log({"event": "state_write_failed", "error": str(exc)})

    def _save(self) -> None:
        try:
            accepted = self.store.save(self.state, guard_run_id=self.run_id)
        except ForemanStateError as exc:
            self._write_failed(exc)
            return
        if not accepted and not self.context.cancel_token.cancelled:
            self.context.log({"event": "loop_superseded", "run_id": self.run_id})
            self.context.cancel_token.cancel()

    def _heartbeat(self) -> None:
        self.store.heartbeat(self.state)

    def poll_signals(self) -> None:
        action = self.signals.consume(self.run_id)
        if action is None:
            return
        token = self.context.cancel_token
        self.context.log({"event": "control_signal", "action": action})
        if action == "cancel":
            token.cancel()
        elif action == "pause":
            token.pause()
            self.state.status = "paused"
            self._save()
        elif action == "resume":
            token.resume()
            self.state.status = "running"
            self._save()

    async def _notify(self, event: str, entry: QueueEntry | None = None, **data: Any) -> None:
        payload = dict(data)
        if entry is not None:
            payload.update({"issue_id": entry.id, "title": entry.title, "status": entry.status})
        await self.hooks.dispatch(event, status=payload.get("status", ""), data=payload)

    def _repo_root_for(self, entry: QueueEntry) -> Path:
        if entry.repo_path:
            return (self.context.workspace_root / entry.repo_path).resolve()
        return self.context.repo_root

    async def _list_issues(self) -> list[QueueEntry]:
        local_dir = self.options.local_issues_dir or self.context.config.workflow.local_issues_dir
        result = await stages.issue_list.run(
            {"goal": self.options.goal, "local_issues_dir": local_dir}, self.context
        )
        if result.status != "ok":
            raise RuntimeError(result.error or "Issue listing failed")
        limit = self.options.max_issues or self.context.config.workflow.max_issues
        raw = (result.data or {}).get("issues") or []
        return [QueueEntry.from_dict(item) for item in raw[: max(0, limit)]]

    def _adopt_prior(self, entries: list[QueueEntry]) -> None:
        prior = self.store.load()
        prior_by_id = {entry.id: entry for entry in prior.issue_queue} if prior else {}
        for entry in entries:
            previous = prior_by_id.get(entry.id)
            if previous is None:
                continue
            entry.status = previous.status
            entry.branch = previous.branch
            entry.pr_url = previous.pr_url
            entry.error = previous.error
            entry.base_branch = previous.base_branch
            entry.started_at = previous.started_at
            entry.completed_at = previous.completed_at
            if entry.is_terminal:
                self.outcomes[entry.id] = Outcome(status=entry.status, branch=entry.branch)

    async def _run_pipeline(self, entry: QueueEntry, base_branch: str | None) -> WorkflowOutcome:
        if self._pipeline is not None:
            return await self._pipeline(entry, self.context, base_branch, True)
        return await run_develop_pipeline(
            entry,
            self.context,
            base_branch=base_branch,
            force=True,
            goal=self.options.goal,
            test_command=self.options.test_command,
            hooks=self.hooks,
            on_stage_change=self._on_stage_change,
            on_heartbeat=self._heartbeat,
            poll_signals=self.poll_signals,
        )

    def _on_stage_change(self, stage: str) -> None:
        self.state.current_stage = stage
        self.context.log({"event": "develop_stage", "stage": stage})
        self._heartbeat()

    def _finish(self, entry: QueueEntry, status: str, *, error: str | None = None) -> None:
        entry.status = status  # type: ignore[assignment]
        entry.error = error
        entry.completed_at = _utcnow_iso()
        if entry.is_terminal:
            self.outcomes[entry.id] = Outcome(status=status, branch=entry.branch)
        self._save()

    async def process_issue(self, index: int, *, is_retry: bool = False) -> str:
        entry = self.state.issue_queue[index]
        self.state.current_index = index
        self.state.current_stage = "retry" if is_retry else "processing"

        resolution = resolve_dependency_branch(
            entry, self.outcomes, self.known_ids, pending_counts_as_failed=is_retry
        )
        if resolution.all_deps_failed:
            self.context.log(
                {
                    "event": "issue_skipped",
                    "issue_id": entry.id,
                    "reason": "all_dependencies_failed",
                    "dep_outcomes": resolution.dep_outcomes,
                }
            )
            self._finish(entry, "skipped", error=ALL_DEPENDENCIES_FAILED)
            await self._notify("issue_skipped", entry, reason=ALL_DEPENDENCIES_FAILED)
            return entry.status

        if resolution.has_pending and not is_retry:
            entry.status = "deferred"
            self._save()
            self.context.log(
                {"event": "issue_deferred", "issue_id": entry.id, "dep_outcomes": resolution.dep_outcomes}
            )
            await self._notify("issue_deferred", entry, reason="dependency_pending")
            return entry.status

        entry.status = "in_progress"
        entry.error = None
        entry.started_at = _utcnow_iso()
        if resolution.base_branch:
            entry.base_branch = resolution.base_branch
            self.context.log(
                {
                    "event": "dependency_branch_resolved",
                    "issue_id": entry.id,
                    "base_branch": resolution.base_branch,
                }
            )
        self.state.last_heartbeat_at = _utcnow_iso()
        self._save()
        self.context.log({"event": "issue_start", "issue_id": entry.id, "retry": is_retry})
        await self._notify("issue_start", entry)

        try:
            outcome = await self._run_pipeline(entry, entry.base_branch)
        except Exception as exc:
            # a crash in the pipeline is recorded against this issue only
            logger.exception("Pipeline crashed for issue %s", entry.id)
            outcome = WorkflowOutcome(
                status="failed",
                run_id="",
                error=str(exc) or exc.__class__.__name__,
                error_kind=getattr(exc, "kind", None),
            )

        issue_state = IssueStateStore(self.context.workspace_root).load()
        if issue_state.branch and issue_state.issue_id == entry.id:
            entry.branch = issue_state.branch

        if outcome.status == "completed":
            data = outcome.last_data if isinstance(outcome.last_data, dict) else {}
            entry.branch = data.get("branch") or entry.branch
            entry.pr_url = data.get("pr_url")
            self._finish(entry, "completed")
            await self._notify("issue_complete", entry, branch=entry.branch, pr_url=entry.pr_url)
        elif outcome.status == "cancelled":
            entry.status = "pending"
            entry.error = None
            self._save()
        elif not is_retry and (outcome.rate_limited or is_rate_limited(outcome.error)):
            entry.status = "deferred"
            entry.error = outcome.error
            self._save()
            self.context.log({"event": "issue_rate_limited", "issue_id": entry.id})
            await self._notify("issue_deferred", entry, reason="rate_limited")
        else:
            self._finish(entry, "failed", error=outcome.error or "Pipeline failed")
            await self._notify("issue_failed", entry, error=entry.error)

        reset_for_next_issue(
            self.context,
            self._repo_root_for(entry),
            issue_status=entry.status,
            destructive=self.destructive_reset,
        )
        return entry.status

    def cleanup_branches(self) -> dict[str, list[str]]:
        """Delete failed/skipped issue branches that carry no commits of their own."""
        deleted: list[str] = []
        kept: list[str] = []
        for entry in self.state.issue_queue:
            if entry.status not in {"failed", "skipped"}:
                continue
            repo = self._repo_root_for(entry)
            if not repo.exists() or not gitops.is_git_repo(repo):
                continue
            branch = entry.branch or gitops.issue_branch_name(entry.id, entry.title, source=entry.source)
            if not gitops.branch_exists(repo, branch):
                continue
            default_branch = gitops.detect_default_branch(repo)
            if branch == default_branch:
                continue
            if gitops.commits_ahead(repo, default_branch, branch) > 0:
                kept.append(branch)
                continue
            try:
                gitops.delete_branch(repo, branch)
            except gitops.GitError as exc:
                logger.warning("Could not delete branch %s: %s", branch, exc)
                kept.append(branch)
                continue
            deleted.append(branch)
        if deleted or kept:
            self.context.log({"event": "smart_branch_cleanup", "deleted": deleted, "kept": kept})
        return {"deleted": deleted, "kept": kept}

    async def coalesce(self) -> Path | None:
        """Ask the reviewer for a cross-branch integration report; never raises."""
        completed = [
            entry for entry in self.state.issue_queue if entry.status == "completed" and entry.branch
        ]
        if len(completed) < 2 or self.context.cancel_token.cancelled:
            return None
        self.context.log(
            {"event": "coalesce_analysis_start", "branches": [entry.branch for entry in completed]}
        )
        try:
            sections: list[str] = []
            bases: set[str] = set()
            for entry in completed:
                repo = self._repo_root_for(entry)
                base = gitops.detect_default_branch(repo)
                bases.add(base)
                stat, diff = gitops.diff_against(repo, base, str(entry.branch), limit=COALESCE_DIFF_LIMIT)
                sections.append(
                    f"## Branch: {entry.branch} (Issue {entry.id}: {entry.title})\n\n"
                    f"### File Stats\n```\n{stat}\n```\n\n### Diff (truncated)\n```diff\n{diff}\n```"
                )
            prompt = (
                f"Review the combined changes of {len(completed)} branches built against "
                f"{', '.join(sorted(bases))}. Report overlapping file changes, duplicate helpers, "
                "likely merge conflicts, cross-cutting concerns and a recommended merge order.\n\n"
                + "\n\n---\n\n".join(sections)
            )
            _, handle = self.context.pool.get_handle("reviewer", scope="repo")
            result = await handle.execute(prompt, timeout_seconds=COALESCE_TIMEOUT_SECONDS)
            report = self.context.artifact_path(COALESCE_FILE)
            report.write_text(result.stdout or result.stderr, encoding="utf-8")
        except Exception as exc:
            self.context.log({"event": "coalesce_analysis_error", "error": str(exc)})
            return None
        self.context.log({"event": "coalesce_analysis_complete", "branches": len(completed)})
        return report

    async def run(self) -> LoopSummary:
        token = self.context.cancel_token
        try:
            entries = await self._list_issues()
        except Exception as exc:
            self.context.log({"event": "issue_list_failed", "error": str(exc)})
            return LoopSummary(status="failed", run_id=self.run_id, error=str(exc))

        ordered, rationale = build_issue_queue(entries)
        self.known_ids = {entry.id for entry in ordered}
        self.context.log(
            {
                "event": "queue_built",
                **rationale.to_dict(),
                "count": len(ordered),
                "order": [entry.id for entry in ordered],
            }
        )
        self._adopt_prior(ordered)

        self.state.issue_queue = list(ordered)
        self.state.status = "running"
        self.state.started_at = _utcnow_iso()
        self.state.runner_pid = os.getpid()
        self.state.last_heartbeat_at = self.state.started_at
        self._claim()
        await self._notify("loop_start", count=len(ordered), goal=self.options.goal)

        for index, entry in enumerate(self.state.issue_queue):
            if not await self._gate.wait_while_paused():
                break
            if entry.status == "completed":
                continue
            await self.process_issue(index)

        deferred = [
            index for index, entry in enumerate(self.state.issue_queue) if entry.status == "deferred"
        ]
        if deferred and not token.cancelled:
            self.context.log(
                {
                    "event": "deferred_retry_pass",
                    "count": len(deferred),
                    "ids": [self.state.issue_queue[index].id for index in deferred],
                }
            )
            for index in deferred:
                if not await self._gate.wait_while_paused():
                    break
                await self.process_issue(index, is_retry=True)

        counts = self.state.counts()
        self.context.log({"event": "loop_summary", "total": len(self.state.issue_queue), **counts})
        self.cleanup_branches()
        await self.coalesce()

        self.state.status = "cancelled" if token.cancelled else "completed"
        self.state.completed_at = _utcnow_iso()
        self.state.current_stage = None
        self._save()
        await self._notify("loop_complete", status=self.state.status, **counts)
        return LoopSummary(
            status=self.state.status,
            run_id=self.run_id,
            results=[entry.to_dict() for entry in self.state.issue_queue],
            **counts,
        )


async def run_develop_loop(
    context: RunContext,
    options: LoopOptions | None = None,
    *,
    pipeline: PipelineFn | None = None,
) -> LoopSummary:
    loop = DevelopLoop(context, options, pipeline=pipeline)
    try:
        return await loop.run()
    finally:
        await context.pool.shutdown()
