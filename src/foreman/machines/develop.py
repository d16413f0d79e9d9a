"""Stage units of the develop pipeline.

Each unit is a thin collaborator around one worker role: it builds a short
prompt, invokes the role's handle, writes its artifact and records a step
flag in the per-issue state so that a re-run returns the cached result.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    ValidationError,
    field_validator,
    model_validator,
)

from foreman import gitops
from foreman.backends.base import AgentResult, raise_for_result
from foreman.machines.base import MachineResult, RunContext, define_machine
from foreman.state.store import IssueState, IssueStateStore

logger = logging.getLogger(__name__)

ISSUE_FILE = "ISSUE.md"
PLAN_FILE = "PLAN.md"
PLAN_REVIEW_FILE = "PLANREVIEW.md"
ARTIFACT_FILES = (ISSUE_FILE, PLAN_FILE, PLAN_REVIEW_FILE)
HEADING_PATTERN = re.compile(r"^#\s+(.+)$", re.MULTILINE)


class _Input(BaseModel):
    model_config = ConfigDict(extra="forbid")


class IssueItem(BaseModel):
    """One listed issue; loose worker or manifest values are normalized."""

    model_config = ConfigDict(extra="ignore")

    id: str = Field(min_length=1)
    title: str = ""
    source: str = "local"
    repo_path: str = ""
    difficulty: int = Field(default=3, ge=1, le=5)
    depends_on: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("depends_on", "dependsOn")
    )

    @field_validator("id", "title", "repo_path", mode="before")
    @classmethod
    def _text(cls, value: Any) -> Any:
        if value is None:
            return ""
        if isinstance(value, (int, float)) and not isinstance(value, bool):
            return str(value)
        return value

    @field_validator("difficulty", mode="before")
    @classmethod
    def _clamp_difficulty(cls, value: Any) -> int:
        try:
            number = int(value)
        except (TypeError, ValueError):
            return 3
        return min(5, max(1, number))

    @field_validator("depends_on", mode="before")
    @classmethod
    def _dependency_ids(cls, value: Any) -> Any:
        if value is None:
            return []
        if isinstance(value, (str, int)):
            value = [value]
        if isinstance(value, list):
            return [str(dep) for dep in value]
        return value

    @model_validator(mode="after")
    def _title_defaults_to_id(self) -> IssueItem:
        if not self.title:
            self.title = self.id
        return self


class IssueListInput(_Input):
    goal: str = ""
    local_issues_dir: str = ""


class IssueDraftInput(_Input):
    issue: IssueItem
    repo_path: str = ""
    base_branch: str | None = None
    clarifications: str = ""
    force: bool = False


class EmptyInput(_Input):
    pass


class QualityReviewInput(_Input):
    test_command: str = ""


class PrCreationInput(_Input):
    pr_type: str = "feat"
    base: str | None = None


async def invoke_role(
    context: RunContext,
    role: str,
    prompt: str,
    *,
    stage: str,
    structured: bool = False,
    scope: str = "repo",
) -> AgentResult:
    worker, handle = context.pool.get_handle(role, scope=scope)  # type: ignore[arg-type]
    timeout = context.config.workflow.timeout_for(stage, context.config.agents.timeout_seconds)
    context.log({"event": "agent_call", "stage": stage, "role": role, "worker": worker})
    if structured:
        result = await handle.execute_structured(prompt, timeout_seconds=timeout)
    else:
        result = await handle.execute(prompt, timeout_seconds=timeout)
    return raise_for_result(result, backend=worker)


def _states(context: RunContext) -> IssueStateStore:
    return IssueStateStore(context.workspace_root)


def _artifact(context: RunContext, name: str) -> Path:
    return context.artifact_path(name)


def _read_artifact(context: RunContext, name: str) -> str:
    path = _artifact(context, name)
    return path.read_text(encoding="utf-8") if path.exists() else ""


def _cached(state: IssueState, step: str) -> MachineResult:
    return MachineResult(status="ok", data={**(state.outputs.get(step) or {}), "cached": True})


def _require_issue(state: IssueState) -> None:
    if not state.issue_id:
        raise RuntimeError("No issue drafted yet; run develop.issue_draft first")


def parse_issues(
    raw_items: list[Any],
    *,
    log: Callable[[dict[str, Any]], None] | None = None,
) -> list[dict[str, Any]]:
    """Validate listed issues one by one, dropping only the malformed ones."""
    issues: list[dict[str, Any]] = []
    for position, item in enumerate(raw_items):
        try:
            if not isinstance(item, dict):
                raise TypeError(f"expected an object, got {type(item).__name__}")
            issues.append(IssueItem.model_validate(item).model_dump())
        except (ValidationError, TypeError) as exc:
            logger.warning("Ignoring malformed issue at position %d: %s", position, exc)
            if log is not None:
                log({"event": "issue_rejected", "position": position, "error": str(exc)})
    return issues


def load_local_issues(
    issues_dir: Path,
    *,
    log: Callable[[dict[str, Any]], None] | None = None,
) -> list[dict[str, Any]]:
    """Read ``manifest.json`` and resolve titles from the referenced markdown."""
    manifest_path = issues_dir / "manifest.json"
    if not manifest_path.exists():
        return []
    manifest = json.loads(manifest_path.read_text(encoding="utf-8"))
    entries: list[Any] = []
    for entry in manifest.get("issues") or []:
        if isinstance(entry, dict) and not entry.get("title") and entry.get("file"):
            md_path = issues_dir / str(entry["file"])
            if md_path.exists():
                match = HEADING_PATTERN.search(md_path.read_text(encoding="utf-8"))
                entry = {**entry, "title": match.group(1).strip() if match else ""}
        entries.append(entry)
    return parse_issues(entries, log=log)


@define_machine(
    "develop.issue_list",
    "List candidate issues from a local manifest or the issue-selector worker.",
    IssueListInput,
)
async def issue_list(params: IssueListInput, context: RunContext) -> MachineResult:
    issues_dir = params.local_issues_dir or context.config.workflow.local_issues_dir
    if issues_dir:
        path = Path(issues_dir)
        if not path.is_absolute():
            path = context.workspace_root / path
        issues = load_local_issues(path, log=context.log)
        return MachineResult(status="ok", data={"issues": issues, "source": "local"})

    prompt = (
        "List the open issues for this repository as JSON "
        '{"issues": [{"id", "title", "difficulty" (1-5), "depends_on": [ids]}]}.'
    )
    if params.goal:
        prompt += f"\nPrioritize work toward this goal: {params.goal}"
    result = await invoke_role(
        context, "issue_selector", prompt, stage="issue_list", structured=True, scope="workspace"
    )
    payload = result.parsed
    raw_issues = payload.get("issues") if isinstance(payload, dict) else payload
    if not isinstance(raw_issues, list):
        raise RuntimeError("Issue selector did not return a JSON issue list")
    issues = parse_issues(raw_issues, log=context.log)
    return MachineResult(status="ok", data={"issues": issues, "source": "agent"})


@define_machine(
    "develop.issue_draft",
    "Resolve the repository, create the issue branch and write ISSUE.md.",
    IssueDraftInput,
)
async def issue_draft(params: IssueDraftInput, context: RunContext) -> MachineResult:
    issue = params.issue
    repo_path = params.repo_path or issue.repo_path
    repo_root = (context.workspace_root / repo_path).resolve() if repo_path else context.repo_root
    if repo_root != context.repo_root:
        await context.set_repo_root(repo_root)

    store = _states(context)
    state = store.load()
    if state.issue_id != issue.id or params.force:
        state = IssueState(issue_id=issue.id)
    elif state.done("issue_draft"):
        return _cached(state, "issue_draft")
    state.repo_path = str(repo_root)

    if gitops.is_git_repo(repo_root):
        base = params.base_branch or gitops.detect_default_branch(repo_root)
        branch = gitops.issue_branch_name(issue.id, issue.title, source=issue.source)
        if gitops.branch_exists(repo_root, branch) and gitops.commits_ahead(repo_root, base, branch):
            # keep partial work committed by an earlier attempt
            gitops.checkout(repo_root, branch)
        else:
            gitops.checkout(repo_root, branch, create_from=base)
        state.base_branch = base
        state.branch = branch

    prompt = (
        f"Draft a concise engineering issue for: {issue.title} ({issue.source} #{issue.id}).\n"
        "Describe the problem, acceptance criteria and affected files in markdown."
    )
    if params.clarifications:
        prompt += f"\nClarifications:\n{params.clarifications}"
    result = await invoke_role(context, "issue_selector", prompt, stage="issue_draft")
    _artifact(context, ISSUE_FILE).write_text(result.stdout.strip() + "\n", encoding="utf-8")

    output = {"issue_id": issue.id, "branch": state.branch, "base_branch": state.base_branch}
    state.mark("issue_draft", output)
    store.save(state)
    return MachineResult(status="ok", data=output)


async def _document_stage(
    context: RunContext,
    *,
    step: str,
    role: str,
    source_files: tuple[str, ...],
    target: str,
    instruction: str,
) -> MachineResult:
    store = _states(context)
    state = store.load()
    _require_issue(state)
    if state.done(step):
        return _cached(state, step)
    sections = [instruction]
    for name in source_files:
        sections.append(f"--- {name} ---\n{_read_artifact(context, name)}")
    result = await invoke_role(context, role, "\n\n".join(sections), stage=step)
    path = _artifact(context, target)
    path.write_text(result.stdout.strip() + "\n", encoding="utf-8")
    output = {"artifact": str(path)}
    state.mark(step, output)
    store.save(state)
    return MachineResult(status="ok", data=output)


@define_machine("develop.planning", "Write PLAN.md for the drafted issue.", EmptyInput)
async def planning(params: EmptyInput, context: RunContext) -> MachineResult:
    return await _document_stage(
        context,
        step="planning",
        role="planner",
        source_files=(ISSUE_FILE,),
        target=PLAN_FILE,
        instruction="Write a step-by-step implementation plan for this issue.",
    )


@define_machine("develop.plan_review", "Critique PLAN.md into PLANREVIEW.md.", EmptyInput)
async def plan_review(params: EmptyInput, context: RunContext) -> MachineResult:
    return await _document_stage(
        context,
        step="plan_review",
        role="plan_reviewer",
        source_files=(ISSUE_FILE, PLAN_FILE),
        target=PLAN_REVIEW_FILE,
        instruction="Review this plan. List blocking problems first, then suggestions.",
    )


@define_machine("develop.implementation", "Have the programmer apply the plan.", EmptyInput)
async def implementation(params: EmptyInput, context: RunContext) -> MachineResult:
    store = _states(context)
    state = store.load()
    _require_issue(state)
    if state.done("implementation"):
        return _cached(state, "implementation")
    prompt = "\n\n".join(
        [
            "Implement the plan below in this repository. Address the review notes.",
            f"--- {PLAN_FILE} ---\n{_read_artifact(context, PLAN_FILE)}",
            f"--- {PLAN_REVIEW_FILE} ---\n{_read_artifact(context, PLAN_REVIEW_FILE)}",
        ]
    )
    await invoke_role(context, "programmer", prompt, stage="implementation")
    changed = gitops.is_git_repo(context.repo_root) and gitops.is_dirty(context.repo_root)
    output = {"changed": changed}
    state.mark("implementation", output)
    store.save(state)
    return MachineResult(status="ok", data=output)


async def _run_test_command(command: str, cwd: Path, timeout: float) -> tuple[int, str]:
    process = await asyncio.create_subprocess_shell(
        command,
        cwd=str(cwd),
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.STDOUT,
    )
    try:
        output, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except TimeoutError:
        process.kill()
        await process.wait()
        return 124, f"Test command timed out after {timeout:.0f}s"
    return process.returncode or 0, output.decode("utf-8", errors="replace")


@define_machine(
    "develop.quality_review",
    "Ask the reviewer for fixes and run the project's test command.",
    QualityReviewInput,
)
async def quality_review(params: QualityReviewInput, context: RunContext) -> MachineResult:
    store = _states(context)
    state = store.load()
    _require_issue(state)
    if state.done("quality_review"):
        return _cached(state, "quality_review")
    await invoke_role(
        context,
        "reviewer",
        "Review the uncommitted changes for this issue against ISSUE.md and fix any defects.\n\n"
        f"--- {ISSUE_FILE} ---\n{_read_artifact(context, ISSUE_FILE)}",
        stage="quality_review",
    )
    output: dict[str, Any] = {"tests": None}
    if params.test_command:
        timeout = context.config.workflow.timeout_for("tests", context.config.agents.timeout_seconds)
        code, log_text = await _run_test_command(params.test_command, context.repo_root, timeout)
        output["tests"] = {"command": params.test_command, "exit_code": code}
        if code != 0:
            raise RuntimeError(f"Tests failed ({code}): {log_text.strip()[-500:]}")
    state.mark("quality_review", output)
    store.save(state)
    return MachineResult(status="ok", data=output)


@define_machine(
    "develop.pr_creation",
    "Commit the issue branch and have the committer publish it.",
    PrCreationInput,
)
async def pr_creation(params: PrCreationInput, context: RunContext) -> MachineResult:
    store = _states(context)
    state = store.load()
    _require_issue(state)
    if state.done("pr_creation"):
        return _cached(state, "pr_creation")

    repo = context.repo_root
    if state.branch and gitops.is_git_repo(repo):
        if gitops.current_branch(repo) != state.branch:
            gitops.checkout(repo, state.branch)
        gitops.commit_all(repo, f"{params.pr_type}: resolve issue {state.issue_id}")

    result = await invoke_role(
        context,
        "committer",
        "Push the current branch and open a pull request against "
        f"{params.base or state.base_branch or 'the default branch'}. "
        'Reply with JSON {"pr_url": "..."}.',
        stage="pr_creation",
        structured=True,
    )
    pr_url = result.parsed.get("pr_url") if isinstance(result.parsed, dict) else None
    output = {"branch": state.branch, "pr_url": pr_url, "base_branch": state.base_branch}
    state.mark("pr_creation", output)
    store.save(state)
    return MachineResult(status="ok", data=output)


DEVELOP_MACHINES = (
    issue_list,
    issue_draft,
    planning,
    plan_review,
    implementation,
    quality_review,
    pr_creation,
)
