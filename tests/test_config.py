import tomllib
from pathlib import Path

import pytest

from foreman import __version__
from foreman.config import (
    ConfigError,
    ForemanConfig,
    HookConfig,
    RolePolicyConfig,
    build_secrets,
    dumps_toml,
    load_config,
    resolve_worker_name,
    save_config,
)


def test_config_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "foreman.toml"
    config = ForemanConfig.default()
    config.agents.roles["programmer"] = "claude"
    config.agents.fallback["programmer"] = "gemini"
    config.agents.max_retries = 3
    config.agents.retry_on_rate_limit = False
    config.workflow.max_issues = 4
    config.workflow.destructive_reset = True
    config.workflow.local_issues_dir = "issues"
    config.workflow.timeouts["implementation"] = 1200.0
    config.workflow.hooks.append(HookConfig(on="issue_complete", run="echo done", machine="pr_"))
    config.tool_server.command = "tool-server"
    config.tool_server.args = ["--stdio"]

    save_config(config_path, config)
    loaded = load_config(config_path)

    assert loaded.agents.worker_for("programmer") == "claude"
    assert loaded.agents.fallback_for("programmer") == "gemini"
    assert loaded.agents.fallback_for("planner") is None
    assert loaded.agents.max_retries == 3
    assert loaded.agents.retry_on_rate_limit is False
    assert loaded.workflow.max_issues == 4
    assert loaded.workflow.destructive_reset is True
    assert loaded.workflow.local_issues_dir == "issues"
    assert loaded.workflow.timeout_for("implementation", 10.0) == 1200.0
    assert loaded.workflow.timeout_for("planning", 10.0) == 10.0
    assert loaded.workflow.hooks == [HookConfig(on="issue_complete", run="echo done", machine="pr_")]
    assert loaded.tool_server.command == "tool-server"
    assert loaded.tool_server.args == ["--stdio"]
    assert loaded.models["gemini"].model == "gemini-2.5-flash"


def test_toml_dump_contains_retry_fields() -> None:
    rendered = dumps_toml(ForemanConfig.default())
    parsed = tomllib.loads(rendered)

    assert parsed["agents"]["max_retries"] == 1
    assert parsed["agents"]["retry_delay_seconds"] == 5
    assert parsed["agents"]["retry_on_rate_limit"] is True
    assert parsed["agents"]["roles"]["issue_selector"] == "gemini"
    assert "max_machine_retries" in parsed["workflow"]
    assert "[tool_server]" in rendered


def test_missing_config_file_yields_defaults(tmp_path: Path) -> None:
    loaded = load_config(tmp_path / "absent.toml")

    assert loaded.agents.max_retries == 1
    assert loaded.agents.retry_delay_seconds == 5.0
    assert loaded.agents.retry_on_rate_limit is True
    assert loaded.workflow.max_issues == 10


def test_unknown_worker_name_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "foreman.toml"
    config_path.write_text('[agents.roles]\nplanner = "copilot"\n', encoding="utf-8")

    with pytest.raises(ConfigError, match="copilot"):
        load_config(config_path)


def test_invalid_toml_raises_config_error(tmp_path: Path) -> None:
    config_path = tmp_path / "foreman.toml"
    config_path.write_text("[agents\nmax_retries = ", encoding="utf-8")

    with pytest.raises(ConfigError):
        load_config(config_path)


def test_resolve_worker_name_normalizes_case() -> None:
    assert resolve_worker_name(" Claude ") == "claude"


def test_build_secrets_aliases_google_key(monkeypatch) -> None:
    monkeypatch.setenv("GOOGLE_API_KEY", "g-123")
    monkeypatch.delenv("GEMINI_API_KEY", raising=False)
    monkeypatch.delenv("ANTHROPIC_API_KEY", raising=False)

    secrets = build_secrets(["GOOGLE_API_KEY", "GEMINI_API_KEY", "ANTHROPIC_API_KEY"])

    assert secrets == {"GOOGLE_API_KEY": "g-123", "GEMINI_API_KEY": "g-123"}


def test_package_version_constant_matches_pyproject() -> None:
    pyproject = Path(__file__).resolve().parents[1] / "pyproject.toml"
    data = tomllib.loads(pyproject.read_text(encoding="utf-8"))

    assert data["project"]["version"] == __version__


def test_role_policy_overrides_roundtrip(tmp_path: Path) -> None:
    config_path = tmp_path / "foreman.toml"
    config = ForemanConfig.default()
    config.agents.max_retries = 2
    config.agents.policy["programmer"] = RolePolicyConfig(max_retries=5, retry_delay_seconds=0.5)
    config.agents.policy["reviewer"] = RolePolicyConfig(retry_on_rate_limit=False)

    save_config(config_path, config)
    rendered = config_path.read_text(encoding="utf-8")
    loaded = load_config(config_path)

    assert "[agents.policy.programmer]" in rendered
    assert loaded.agents.policy_value("programmer", "max_retries") == 5
    assert loaded.agents.policy_value("programmer", "retry_delay_seconds") == 0.5
    assert loaded.agents.policy_value("programmer", "retry_on_rate_limit") is True
    assert loaded.agents.policy_value("reviewer", "max_retries") == 2
    assert loaded.agents.policy_value("reviewer", "retry_on_rate_limit") is False
    assert loaded.agents.policy_value("planner", "max_retries") == 2


def test_unknown_role_policy_key_is_rejected(tmp_path: Path) -> None:
    config_path = tmp_path / "foreman.toml"
    config_path.write_text("[agents.policy.planner]\nretries = 3\n", encoding="utf-8")

    with pytest.raises(ConfigError, match="retries"):
        load_config(config_path)
