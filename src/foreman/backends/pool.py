from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from pathlib import Path
from typing import Any, Literal

from foreman.backends.api import ApiBackend
from foreman.backends.base import AgentBackend
from foreman.backends.cli_agent import CliBackend
from foreman.backends.resilient import BackendEventHook, RetryFallbackBackend, RetryPolicy
from foreman.backends.tool_server import ToolServerBackend
from foreman.config import ConfigError, ForemanConfig

logger = logging.getLogger(__name__)

Scope = Literal["repo", "workspace"]
Transport = Literal["cli", "api", "tool"]
BackendFactory = Callable[[str, str, str], AgentBackend]

API_PROVIDERS = {"gemini": "gemini", "claude": "anthropic"}


def encode_pool_key(transport: str, name: str, context: str) -> str:
    """Length-prefix each segment so separators inside a segment stay literal."""
    return "".join(f"{len(part)}:{part}" for part in (transport, name, context))


def decode_pool_key(key: str) -> tuple[str, str, str]:
    parts: list[str] = []
    cursor = 0
    while cursor < len(key):
        sep = key.index(":", cursor)
        size = int(key[cursor:sep])
        start = sep + 1
        parts.append(key[start : start + size])
        cursor = start + size
    if len(parts) != 3:
        raise ValueError(f"Malformed pool key: {key!r}")
    return parts[0], parts[1], parts[2]


class AgentPool:
    """Lazily creates worker handles and caches one live handle per key.

    Raw handles are cached undecorated; retry/fallback wrapping happens at
    request time so decorated and undecorated callers share a process.
    """

    def __init__(
        self,
        config: ForemanConfig,
        *,
        workspace_root: Path | str,
        repo_root: Path | str | None = None,
        secrets: dict[str, str] | None = None,
        backend_factory: BackendFactory | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.config = config
        self.workspace_root = str(workspace_root)
        self.repo_root = str(repo_root) if repo_root is not None else self.workspace_root
        self.secrets = dict(secrets or {})
        self.event_hook = event_hook
        self._backend_factory = backend_factory or self._build_backend
        self._handles: dict[str, AgentBackend] = {}

    def __len__(self) -> int:
        return len(self._handles)

    def keys(self) -> list[tuple[str, str, str]]:
        return [decode_pool_key(key) for key in self._handles]

    def _build_backend(self, transport: str, name: str, context: str) -> AgentBackend:
        if transport == "cli":
            model = self.config.models.get(name)
            return CliBackend(
                name,
                working_directory=Path(context),
                secrets=self.secrets,
                model=(model.model or None) if model else None,
                event_hook=self.event_hook,
            )
        if transport == "api":
            worker = "claude" if name == "anthropic" else name
            model = self.config.models.get(worker)
            if model is None or not model.api_endpoint:
                raise ConfigError(f"No API endpoint configured for worker '{worker}'")
            api_key = self.secrets.get(model.api_key_env, "")
            if not api_key:
                raise ConfigError(f"Missing API key: set {model.api_key_env}")
            return ApiBackend(
                name,  # type: ignore[arg-type]
                endpoint=model.api_endpoint,
                api_key=api_key,
                model=model.model,
            )
        if transport == "tool":
            server = self.config.tool_server
            return ToolServerBackend(
                server.name,
                tool_name=server.tool_name,
                command=server.command if server.transport == "stdio" else "",
                args=server.args,
                url=server.url if server.transport == "http" else "",
                working_directory=Path(self.workspace_root),
                secrets=self.secrets,
            )
        raise ConfigError(f"Unknown transport: {transport}")

    def _raw_handle(self, transport: str, name: str, context: str) -> AgentBackend:
        key = encode_pool_key(transport, name, context)
        handle = self._handles.get(key)
        if handle is None:
            handle = self._backend_factory(transport, name, context)
            self._handles[key] = handle
            logger.debug("Created %s handle %s for %s", transport, name, context)
        return handle

    def _context_for(self, scope: Scope) -> str:
        return self.workspace_root if scope == "workspace" else self.repo_root

    def policy_for(self, role: str) -> RetryPolicy:
        value = self.config.agents.policy_value
        return RetryPolicy(
            max_retries=max(0, int(value(role, "max_retries"))),
            backoff_seconds=max(0.0, float(value(role, "retry_delay_seconds"))),
            backoff_multiplier=max(1.0, float(value(role, "backoff_multiplier"))),
            retry_on_rate_limit=bool(value(role, "retry_on_rate_limit")),
        )

    def _decorate(
        self,
        role: str,
        primary: AgentBackend,
        fallback: AgentBackend | None,
    ) -> AgentBackend:
        policy = self.policy_for(role)
        if policy.max_retries == 0 and fallback is None:
            return primary
        return RetryFallbackBackend(
            primary, policy, fallback=fallback, event_hook=self.event_hook
        )

    def get_handle(
        self,
        role: str,
        *,
        scope: Scope = "repo",
        transport: Transport = "cli",
    ) -> tuple[str, AgentBackend]:
        """Return ``(resolved_name, handle)`` for a role."""
        worker = self.config.agents.worker_for(role)
        fallback_worker = self.config.agents.fallback_for(role)

        if transport == "tool":
            server = self.config.tool_server
            endpoint = server.url if server.transport == "http" else server.command
            if not endpoint:
                raise ConfigError(
                    f"Tool server '{server.name}' needs "
                    + ("a url" if server.transport == "http" else "a command")
                )
            return server.name, self._raw_handle("tool", server.name, endpoint)

        if transport == "api":
            provider = API_PROVIDERS.get(worker)
            if provider is None:
                raise ConfigError(f"Worker '{worker}' has no HTTP API transport")
            primary = self._raw_handle("api", provider, role)
            fallback = None
            if fallback_worker and fallback_worker != worker and fallback_worker in API_PROVIDERS:
                fallback = self._raw_handle("api", API_PROVIDERS[fallback_worker], role)
            return f"{provider}-api", self._decorate(role, primary, fallback)

        context = self._context_for(scope)
        primary = self._raw_handle("cli", worker, context)
        fallback = None
        if fallback_worker and fallback_worker != worker:
            fallback = self._raw_handle("cli", fallback_worker, context)
        return worker, self._decorate(role, primary, fallback)

    async def _release(self, entries: list[tuple[str, AgentBackend]]) -> None:
        outcomes = await asyncio.gather(
            *(handle.kill() for _, handle in entries), return_exceptions=True
        )
        for (key, _), outcome in zip(entries, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Failed to release pooled handle %s: %s", decode_pool_key(key), outcome)

    async def update_context(self, new_root: Path | str) -> list[tuple[str, str, str]]:
        """Point repo-scoped handles at a new root, releasing stale process handles."""
        root = str(new_root)
        self.repo_root = root
        stale: list[tuple[str, AgentBackend]] = []
        for key, handle in self._handles.items():
            transport, _, context = decode_pool_key(key)
            if transport != "cli":
                continue
            if context in (root, self.workspace_root):
                continue
            stale.append((key, handle))
        for key, _ in stale:
            del self._handles[key]
        if stale:
            await self._release(stale)
        return [decode_pool_key(key) for key, _ in stale]

    async def shutdown(self) -> None:
        entries = list(self._handles.items())
        self._handles.clear()
        await self._release(entries)

    def snapshot(self) -> list[dict[str, Any]]:
        return [
            {"transport": transport, "name": name, "context": context}
            for transport, name, context in self.keys()
        ]
