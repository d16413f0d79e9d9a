from foreman.backends.api import ApiBackend
from foreman.backends.base import (
    AgentBackend,
    AgentResult,
    BackendAuthError,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    RateLimitError,
)
from foreman.backends.cli_agent import CliBackend
from foreman.backends.pool import AgentPool
from foreman.backends.resilient import RetryFallbackBackend, RetryPolicy
from foreman.backends.tool_server import ToolServerBackend

__all__ = [
    "AgentBackend",
    "AgentPool",
    "AgentResult",
    "ApiBackend",
    "BackendAuthError",
    "BackendExecutionError",
    "BackendProcessError",
    "BackendTimeoutError",
    "CliBackend",
    "RateLimitError",
    "RetryFallbackBackend",
    "RetryPolicy",
    "ToolServerBackend",
]
