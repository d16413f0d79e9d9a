import asyncio
from pathlib import Path

import pytest

from foreman.backends.base import AgentBackend, AgentResult
from foreman.backends.pool import AgentPool, decode_pool_key, encode_pool_key
from foreman.backends.resilient import RetryFallbackBackend
from foreman.config import ConfigError, ForemanConfig, RolePolicyConfig

WORKSPACE = "C:\\Users\\User\\MyProject"
REPO_A = "C:\\Users\\User\\MyProject\\service-a"
REPO_B = "C:\\Users\\User\\MyProject\\service-b"


class FakeHandle(AgentBackend):
    def __init__(self, transport: str, name: str, context: str) -> None:
        self.transport = transport
        self.name = name
        self.context = context
        self.killed = False

    async def execute(
        self,
        prompt: str,
        *,
        timeout_seconds: float | None = None,
        resume_id: str | None = None,
    ) -> AgentResult:
        _ = timeout_seconds, resume_id
        return AgentResult(exit_code=0, stdout=f"{self.name}:{prompt}")

    async def kill(self) -> None:
        self.killed = True


class StuckHandle(FakeHandle):
    async def kill(self) -> None:
        raise RuntimeError("cannot kill")


def _pool(config: ForemanConfig | None = None, factory=FakeHandle) -> tuple[AgentPool, list[FakeHandle]]:
    created: list[FakeHandle] = []

    def _factory(transport: str, name: str, context: str) -> AgentBackend:
        handle = factory(transport, name, context)
        created.append(handle)
        return handle

    config = config or ForemanConfig.default()
    config.tool_server.command = "tool-server"
    pool = AgentPool(config, workspace_root=WORKSPACE, repo_root=REPO_A, backend_factory=_factory)
    return pool, created


def test_pool_key_survives_separators_in_context() -> None:
    key = encode_pool_key("cli", "gemini", "C:\\repo:with:colons")

    assert decode_pool_key(key) == ("cli", "gemini", "C:\\repo:with:colons")
    assert encode_pool_key("cli", "a:b", "c") != encode_pool_key("cli", "a", "b:c")


def test_handles_are_cached_per_key() -> None:
    config = ForemanConfig.default()
    config.agents.max_retries = 0
    pool, created = _pool(config)

    first_name, first = pool.get_handle("planner")
    _, second = pool.get_handle("reviewer")

    assert first_name == "gemini"
    assert first is second
    assert len(created) == 1
    assert pool.keys() == [("cli", "gemini", REPO_A)]


def test_undecorated_when_no_retry_and_no_fallback() -> None:
    config = ForemanConfig.default()
    config.agents.max_retries = 0
    pool, created = _pool(config)

    _, handle = pool.get_handle("planner")

    assert handle is created[0]


def test_fallback_handle_shares_the_cache() -> None:
    config = ForemanConfig.default()
    config.agents.roles["programmer"] = "claude"
    config.agents.fallback["programmer"] = "gemini"
    pool, created = _pool(config)

    name, handle = pool.get_handle("programmer")
    _, planner = pool.get_handle("planner")

    assert name == "claude"
    assert isinstance(handle, RetryFallbackBackend)
    assert handle.fallback is created[1]
    assert isinstance(planner, RetryFallbackBackend)
    assert planner.primary is created[1]
    assert len(created) == 2


def test_resilience_policy_is_resolved_per_role() -> None:
    config = ForemanConfig.default()
    config.agents.max_retries = 1
    config.agents.retry_delay_seconds = 2.0
    config.agents.policy["programmer"] = RolePolicyConfig(max_retries=4, retry_on_rate_limit=False)
    config.agents.policy["reviewer"] = RolePolicyConfig(max_retries=0)
    pool, created = _pool(config)

    _, programmer = pool.get_handle("programmer")
    _, planner = pool.get_handle("planner")
    _, reviewer = pool.get_handle("reviewer")

    assert isinstance(programmer, RetryFallbackBackend)
    assert programmer.retry_policy.max_retries == 4
    assert programmer.retry_policy.backoff_seconds == 2.0
    assert programmer.retry_policy.retry_on_rate_limit is False
    assert isinstance(planner, RetryFallbackBackend)
    assert planner.retry_policy.max_retries == 1
    assert planner.retry_policy.retry_on_rate_limit is True
    assert reviewer is created[0]


def test_update_context_keeps_workspace_api_and_tool_handles() -> None:
    pool, created = _pool()
    pool.get_handle("issue_selector", scope="workspace")
    pool.get_handle("planner", scope="repo")
    pool.get_handle("planner", transport="api")
    pool.get_handle("planner", transport="tool")

    released = asyncio.run(pool.update_context(REPO_B))

    assert released == [("cli", "gemini", REPO_A)]
    assert [handle.killed for handle in created] == [False, True, False, False]
    remaining = set(pool.keys())
    assert ("cli", "gemini", WORKSPACE) in remaining
    assert ("api", "gemini", "planner") in remaining
    assert ("tool", "tools", "tool-server") in remaining

    pool.get_handle("planner")
    assert ("cli", "gemini", REPO_B) in set(pool.keys())


def test_update_context_to_same_root_releases_nothing() -> None:
    pool, created = _pool()
    pool.get_handle("planner")

    released = asyncio.run(pool.update_context(REPO_A))

    assert released == []
    assert created[0].killed is False


def test_shutdown_is_best_effort_and_clears_cache() -> None:
    pool, created = _pool(factory=StuckHandle)
    pool.get_handle("planner")
    pool.get_handle("issue_selector", scope="workspace")

    asyncio.run(pool.shutdown())

    assert len(pool) == 0
    assert len(created) == 2


def test_tool_transport_requires_command() -> None:
    config = ForemanConfig.default()
    pool = AgentPool(config, workspace_root=Path("/ws"))

    with pytest.raises(ConfigError):
        pool.get_handle("planner", transport="tool")


def test_api_transport_requires_key() -> None:
    pool = AgentPool(ForemanConfig.default(), workspace_root=Path("/ws"), secrets={})

    with pytest.raises(ConfigError, match="GEMINI_API_KEY"):
        pool.get_handle("planner", transport="api")


def test_api_transport_builds_named_handle() -> None:
    pool = AgentPool(
        ForemanConfig.default(), workspace_root=Path("/ws"), secrets={"GEMINI_API_KEY": "k"}
    )

    name, _ = pool.get_handle("planner", transport="api")

    assert name == "gemini-api"
    assert pool.snapshot() == [{"transport": "api", "name": "gemini", "context": "planner"}]
