from __future__ import annotations

import asyncio
import json
import logging
from pathlib import Path

import click

from foreman.backends.pool import AgentPool
from foreman.config import ConfigError, ForemanConfig, build_secrets, load_config, save_config
from foreman.events import EventLog
from foreman.machines.base import RunContext
from foreman.state.store import ControlSignals, ForemanStateError, LoopStateStore
from foreman.workflows.develop import LoopOptions, LoopSummary, run_develop_loop


def _resolve_config_path(workspace_root: Path, config_value: str) -> Path:
    config_path = Path(config_value)
    if not config_path.is_absolute():
        config_path = workspace_root / config_path
    return config_path.resolve()


def _load(workspace_root: Path, config_value: str) -> ForemanConfig:
    try:
        return load_config(_resolve_config_path(workspace_root, config_value))
    except ConfigError as exc:
        raise click.ClickException(str(exc)) from exc


def _build_pool(
    config: ForemanConfig, workspace_root: Path, secrets: dict[str, str], log: EventLog
) -> AgentPool:
    return AgentPool(
        config,
        workspace_root=workspace_root,
        secrets=secrets,
        event_hook=log,
    )


def _build_context(config: ForemanConfig, workspace_root: Path) -> RunContext:
    log = EventLog(workspace_root / ".foreman" / "events.jsonl")
    secrets = build_secrets(config.workflow.pass_env)
    return RunContext(
        workspace_root=workspace_root,
        repo_root=workspace_root,
        config=config,
        pool=_build_pool(config, workspace_root, secrets, log),
        log=log,
        secrets=secrets,
    )


def _echo_summary(summary: LoopSummary) -> None:
    click.echo(f"Run ID: {summary.run_id}")
    click.echo(f"Status: {summary.status}")
    counts = summary.counts()
    click.echo(
        "Issues: "
        + ", ".join(f"{counts[key]} {key}" for key in ("completed", "failed", "skipped", "deferred"))
    )
    for item in summary.results:
        line = f"  {item['id']:<12} {item['status']:<11} {item.get('title') or ''}"
        if item.get("pr_url"):
            line += f"  {item['pr_url']}"
        elif item.get("error"):
            line += f"  ({item['error']})"
        click.echo(line.rstrip())


@click.group()
@click.option("--verbose", is_flag=True, default=False, help="Log every event to stderr.")
def cli(verbose: bool) -> None:
    """Foreman: run a queue of issues through resilient coding workers."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@cli.command("init")
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def init_command(config_value: str) -> None:
    workspace_root = Path.cwd().resolve()
    config_path = _resolve_config_path(workspace_root, config_value)
    config = _load(workspace_root, config_value)
    save_config(config_path, config)
    (workspace_root / ".foreman").mkdir(parents=True, exist_ok=True)
    click.echo(f"Initialized Foreman in {workspace_root}")
    click.echo(f"Config: {config_path}")
    click.echo(
        "Workers: "
        + ", ".join(f"{role}={worker}" for role, worker in sorted(config.agents.roles.items()))
    )


@cli.command("run")
@click.argument("goal", required=False, default="resolve all assigned issues")
@click.option("--max-issues", type=int, default=None)
@click.option("--issues-dir", "issues_dir", default="", help="Directory holding manifest.json.")
@click.option("--test-command", default="", help="Shell command run during quality review.")
@click.option("--destructive-reset/--keep-changes", default=None)
@click.option("--config", "config_value", default="foreman.toml", show_default=True)
def run_command(
    goal: str,
    max_issues: int | None,
    issues_dir: str,
    test_command: str,
    destructive_reset: bool | None,
    config_value: str,
) -> None:
    workspace_root = Path.cwd().resolve()
    config = _load(workspace_root, config_value)
    try:
        context = _build_context(config, workspace_root)
        options = LoopOptions(
            goal=goal,
            max_issues=max_issues,
            destructive_reset=destructive_reset,
            local_issues_dir=issues_dir,
            test_command=test_command,
        )
        summary = asyncio.run(run_develop_loop(context, options))
    except (ConfigError, ForemanStateError, RuntimeError) as exc:
        raise click.ClickException(str(exc)) from exc

    _echo_summary(summary)
    if summary.status == "failed":
        raise click.ClickException(summary.error or "Loop failed")


@cli.command("status")
def status_command() -> None:
    workspace_root = Path.cwd().resolve()
    try:
        state = LoopStateStore(workspace_root).load()
    except ForemanStateError as exc:
        raise click.ClickException(str(exc)) from exc
    if state is None:
        click.echo("No loop has run in this workspace.")
        return
    click.echo(json.dumps(state.to_dict(), ensure_ascii=False, indent=2))


def _send(action: str) -> str:
    workspace_root = Path.cwd().resolve()
    state = LoopStateStore(workspace_root).load()
    if state is None or state.status not in {"running", "paused"}:
        raise click.ClickException("No active loop to signal.")
    ControlSignals(workspace_root).send(action, state.run_id)  # type: ignore[arg-type]
    return state.run_id


@cli.command("pause")
def pause_command() -> None:
    run_id = _send("pause")
    click.echo(f"Pause requested for {run_id}.")


@cli.command("resume")
def resume_command() -> None:
    run_id = _send("resume")
    click.echo(f"Resume requested for {run_id}.")


@cli.command("cancel")
def cancel_command() -> None:
    run_id = _send("cancel")
    click.echo(f"Cancel requested for {run_id}.")

