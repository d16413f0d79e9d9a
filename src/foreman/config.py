from __future__ import annotations

import json
import os
import tomllib
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Literal

WorkerName = Literal["gemini", "claude", "codex"]
ToolTransport = Literal["stdio", "http"]

SUPPORTED_WORKERS: tuple[str, ...] = ("gemini", "claude", "codex")
ROLES: tuple[str, ...] = (
    "issue_selector",
    "planner",
    "plan_reviewer",
    "programmer",
    "reviewer",
    "committer",
)
DEFAULT_PASS_ENV: tuple[str, ...] = (
    "GOOGLE_API_KEY",
    "GEMINI_API_KEY",
    "ANTHROPIC_API_KEY",
    "CLAUDE_CODE_OAUTH_TOKEN",
    "OPENAI_API_KEY",
    "GITHUB_TOKEN",
    "GITLAB_TOKEN",
)


class ConfigError(ValueError):
    """Raised when configuration values cannot be resolved."""


def resolve_worker_name(name: str) -> WorkerName:
    normalized = str(name or "").strip().lower()
    if normalized not in SUPPORTED_WORKERS:
        raise ConfigError(
            f"Unsupported worker '{name}'. Expected one of: {', '.join(SUPPORTED_WORKERS)}"
        )
    return normalized  # type: ignore[return-value]


POLICY_FIELDS: tuple[str, ...] = (
    "max_retries",
    "retry_delay_seconds",
    "backoff_multiplier",
    "retry_on_rate_limit",
)


@dataclass(slots=True)
class RolePolicyConfig:
    """Per-role overrides; unset fields fall back to the [agents] defaults."""

    max_retries: int | None = None
    retry_delay_seconds: float | None = None
    backoff_multiplier: float | None = None
    retry_on_rate_limit: bool | None = None

    def to_dict(self) -> dict[str, Any]:
        values = {name: getattr(self, name) for name in POLICY_FIELDS}
        return {name: value for name, value in values.items() if value is not None}


@dataclass(slots=True)
class AgentsConfig:
    roles: dict[str, str] = field(default_factory=lambda: {role: "gemini" for role in ROLES})
    fallback: dict[str, str] = field(default_factory=dict)
    policy: dict[str, RolePolicyConfig] = field(default_factory=dict)
    max_retries: int = 1
    retry_delay_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    retry_on_rate_limit: bool = True
    timeout_seconds: float = 600.0

    def worker_for(self, role: str) -> WorkerName:
        return resolve_worker_name(self.roles.get(role) or "gemini")

    def fallback_for(self, role: str) -> WorkerName | None:
        name = self.fallback.get(role)
        if not name:
            return None
        return resolve_worker_name(name)

    def policy_value(self, role: str, name: str) -> Any:
        override = self.policy.get(role)
        value = getattr(override, name) if override is not None else None
        return getattr(self, name) if value is None else value


@dataclass(slots=True)
class ModelConfig:
    model: str = ""
    api_endpoint: str = ""
    api_key_env: str = ""


def _default_models() -> dict[str, ModelConfig]:
    return {
        "gemini": ModelConfig(
            model="gemini-2.5-flash",
            api_endpoint="https://generativelanguage.googleapis.com/v1beta",
            api_key_env="GEMINI_API_KEY",
        ),
        "claude": ModelConfig(
            model="claude-sonnet-4-5",
            api_endpoint="https://api.anthropic.com",
            api_key_env="ANTHROPIC_API_KEY",
        ),
        "codex": ModelConfig(model="", api_endpoint="", api_key_env="OPENAI_API_KEY"),
    }


@dataclass(slots=True)
class HookConfig:
    on: str
    run: str
    machine: str = ""


@dataclass(slots=True)
class WorkflowConfig:
    max_issues: int = 10
    destructive_reset: bool = False
    max_machine_retries: int = 3
    machine_retry_backoff_seconds: float = 5.0
    local_issues_dir: str = ""
    pause_poll_seconds: float = 1.0
    max_pause_seconds: float = 86400.0
    pass_env: list[str] = field(default_factory=lambda: list(DEFAULT_PASS_ENV))
    hooks: list[HookConfig] = field(default_factory=list)
    timeouts: dict[str, float] = field(default_factory=dict)

    def timeout_for(self, stage: str, default: float) -> float:
        value = self.timeouts.get(stage)
        return float(value) if value else default


@dataclass(slots=True)
class ToolServerConfig:
    name: str = "tools"
    transport: ToolTransport = "stdio"
    command: str = ""
    args: list[str] = field(default_factory=list)
    url: str = ""
    tool_name: str = "run"


@dataclass(slots=True)
class ForemanConfig:
    agents: AgentsConfig = field(default_factory=AgentsConfig)
    models: dict[str, ModelConfig] = field(default_factory=_default_models)
    workflow: WorkflowConfig = field(default_factory=WorkflowConfig)
    tool_server: ToolServerConfig = field(default_factory=ToolServerConfig)
    verbose: bool = False

    @classmethod
    def default(cls) -> ForemanConfig:
        return cls()

    @classmethod
    def from_dict(cls, data: dict) -> ForemanConfig:
        agents_data = dict(data.get("agents", {}))
        roles = {role: "gemini" for role in ROLES}
        roles.update(agents_data.pop("roles", {}) or {})
        for role, name in roles.items():
            resolve_worker_name(name)
        fallback = dict(agents_data.pop("fallback", {}) or {})
        for name in fallback.values():
            resolve_worker_name(name)
        policy: dict[str, RolePolicyConfig] = {}
        for role, raw in (agents_data.pop("policy", {}) or {}).items():
            unknown = sorted(set(raw or {}) - set(POLICY_FIELDS))
            if unknown:
                raise ConfigError(f"Unknown policy keys for role '{role}': {', '.join(unknown)}")
            policy[str(role)] = RolePolicyConfig(**(raw or {}))

        models = _default_models()
        for name, raw in (data.get("models", {}) or {}).items():
            base = models.get(name, ModelConfig())
            models[name] = ModelConfig(
                model=str(raw.get("model", base.model)),
                api_endpoint=str(raw.get("api_endpoint", base.api_endpoint)),
                api_key_env=str(raw.get("api_key_env", base.api_key_env)),
            )

        workflow_data = dict(data.get("workflow", {}))
        hooks = [HookConfig(**hook) for hook in workflow_data.pop("hooks", []) or []]

        return cls(
            agents=AgentsConfig(roles=roles, fallback=fallback, policy=policy, **agents_data),
            models=models,
            workflow=WorkflowConfig(hooks=hooks, **workflow_data),
            tool_server=ToolServerConfig(**data.get("tool_server", {})),
            verbose=bool(data.get("verbose", False)),
        )

    def to_dict(self) -> dict:
        return {
            "verbose": self.verbose,
            "agents": {
                "max_retries": self.agents.max_retries,
                "retry_delay_seconds": self.agents.retry_delay_seconds,
                "backoff_multiplier": self.agents.backoff_multiplier,
                "retry_on_rate_limit": self.agents.retry_on_rate_limit,
                "timeout_seconds": self.agents.timeout_seconds,
                "roles": dict(self.agents.roles),
                "fallback": dict(self.agents.fallback),
                "policy": {role: value.to_dict() for role, value in self.agents.policy.items()},
            },
            "models": {
                name: {
                    "model": model.model,
                    "api_endpoint": model.api_endpoint,
                    "api_key_env": model.api_key_env,
                }
                for name, model in self.models.items()
            },
            "workflow": {
                "max_issues": self.workflow.max_issues,
                "destructive_reset": self.workflow.destructive_reset,
                "max_machine_retries": self.workflow.max_machine_retries,
                "machine_retry_backoff_seconds": self.workflow.machine_retry_backoff_seconds,
                "local_issues_dir": self.workflow.local_issues_dir,
                "pause_poll_seconds": self.workflow.pause_poll_seconds,
                "max_pause_seconds": self.workflow.max_pause_seconds,
                "pass_env": list(self.workflow.pass_env),
                "timeouts": dict(self.workflow.timeouts),
                "hooks": [
                    {"on": hook.on, "run": hook.run, "machine": hook.machine}
                    for hook in self.workflow.hooks
                ],
            },
            "tool_server": {
                "name": self.tool_server.name,
                "transport": self.tool_server.transport,
                "command": self.tool_server.command,
                "args": list(self.tool_server.args),
                "url": self.tool_server.url,
                "tool_name": self.tool_server.tool_name,
            },
        }


def build_secrets(pass_env: list[str] | tuple[str, ...]) -> dict[str, str]:
    secrets: dict[str, str] = {}
    for name in pass_env:
        value = os.environ.get(name)
        if value:
            secrets[name] = value
    if "GEMINI_API_KEY" not in secrets and secrets.get("GOOGLE_API_KEY"):
        secrets["GEMINI_API_KEY"] = secrets["GOOGLE_API_KEY"]
    return secrets


def _toml_value(value: object) -> str:
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        rendered = f"{value:.3f}".rstrip("0").rstrip(".")
        return rendered if rendered else "0"
    if isinstance(value, list):
        return "[" + ", ".join(_toml_value(item) for item in value) + "]"
    return json.dumps(str(value), ensure_ascii=False)


def _toml_table(lines: list[str], header: str, values: dict[str, Any]) -> None:
    lines.append(f"[{header}]")
    for key, value in values.items():
        lines.append(f"{key} = {_toml_value(value)}")
    lines.append("")


def dumps_toml(config: ForemanConfig) -> str:
    data = config.to_dict()
    lines: list[str] = [f"verbose = {_toml_value(data['verbose'])}", ""]

    agents = dict(data["agents"])
    roles = agents.pop("roles")
    fallback = agents.pop("fallback")
    policy = agents.pop("policy")
    _toml_table(lines, "agents", agents)
    _toml_table(lines, "agents.roles", roles)
    if fallback:
        _toml_table(lines, "agents.fallback", fallback)
    for role, overrides in policy.items():
        if overrides:
            _toml_table(lines, f"agents.policy.{role}", overrides)

    for name, model in data["models"].items():
        _toml_table(lines, f"models.{name}", model)

    workflow = dict(data["workflow"])
    timeouts = workflow.pop("timeouts")
    hooks = workflow.pop("hooks")
    _toml_table(lines, "workflow", workflow)
    if timeouts:
        _toml_table(lines, "workflow.timeouts", timeouts)
    for hook in hooks:
        _toml_table(lines, "[workflow.hooks]", hook)

    _toml_table(lines, "tool_server", data["tool_server"])
    return "\n".join(lines).strip() + "\n"


def load_config(path: Path) -> ForemanConfig:
    if not path.exists():
        return ForemanConfig.default()
    try:
        data = tomllib.loads(path.read_text(encoding="utf-8"))
    except tomllib.TOMLDecodeError as exc:
        raise ConfigError(f"Invalid config file {path}: {exc}") from exc
    return ForemanConfig.from_dict(data)


def save_config(path: Path, config: ForemanConfig) -> None:
    path.write_text(dumps_toml(config), encoding="utf-8")
