import asyncio
from typing import Any

import pytest

from foreman.backends.base import (
    AgentBackend,
    AgentResult,
    BackendAuthError,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    RateLimitError,
)
from foreman.backends.resilient import RetryFallbackBackend, RetryPolicy


class ScriptedBackend(AgentBackend):
    """Replays a fixed list of results or exceptions, one per call."""

    def __init__(self, name: str, script: list[AgentResult | Exception]) -> None:
        self.name = name
        self.script = list(script)
        self.calls = 0
        self.killed = False

    async def execute(
        self,
        prompt: str,
        *,
        timeout_seconds: float | None = None,
        resume_id: str | None = None,
    ) -> AgentResult:
        _ = prompt, timeout_seconds, resume_id
        step = self.script[min(self.calls, len(self.script) - 1)]
        self.calls += 1
        if isinstance(step, Exception):
            raise step
        return step

    async def kill(self) -> None:
        self.killed = True


class BrokenKillBackend(ScriptedBackend):
    async def kill(self) -> None:
        raise RuntimeError("already gone")


def _policy(max_retries: int, *, retry_on_rate_limit: bool = True) -> RetryPolicy:
    return RetryPolicy(
        max_retries=max_retries, backoff_seconds=0.0, retry_on_rate_limit=retry_on_rate_limit
    )


def _fail(text: str = "boom") -> AgentResult:
    return AgentResult(exit_code=1, stderr=text)


def test_succeeds_after_failures_within_budget() -> None:
    events: list[dict[str, Any]] = []
    primary = ScriptedBackend("gemini", [_fail(), _fail(), AgentResult(exit_code=0, stdout="ok")])
    backend = RetryFallbackBackend(primary, _policy(2), event_hook=events.append)

    result = asyncio.run(backend.execute("work"))

    assert result.stdout == "ok"
    assert primary.calls == 3
    assert [event["attempt"] for event in events if event["event"] == "backend_retry"] == [1, 2]


def test_exhausted_retries_without_fallback_raise_last_error() -> None:
    primary = ScriptedBackend("gemini", [_fail("first"), _fail("second")])
    backend = RetryFallbackBackend(primary, _policy(1))

    with pytest.raises(BackendExecutionError, match="second"):
        asyncio.run(backend.execute("work"))

    assert primary.calls == 2


def test_fallback_runs_exactly_once_and_result_is_returned_verbatim() -> None:
    events: list[dict[str, Any]] = []
    primary = ScriptedBackend("gemini", [_fail()])
    fallback_result = AgentResult(exit_code=3, stdout="partial", stderr="fallback failed too")
    fallback = ScriptedBackend("claude", [fallback_result])
    backend = RetryFallbackBackend(primary, _policy(2), fallback=fallback, event_hook=events.append)

    result = asyncio.run(backend.execute("work"))

    assert result is fallback_result
    assert primary.calls == 3
    assert fallback.calls == 1
    names = [event["event"] for event in events]
    assert "backend_fallback_start" in names
    assert "backend_fallback_failed" in names
    assert "backend_fallback_success" not in names


def test_fallback_success_event() -> None:
    events: list[dict[str, Any]] = []
    primary = ScriptedBackend("gemini", [_fail()])
    fallback = ScriptedBackend("claude", [AgentResult(exit_code=0, stdout="rescued")])
    backend = RetryFallbackBackend(primary, _policy(0), fallback=fallback, event_hook=events.append)

    result = asyncio.run(backend.execute("work"))

    assert result.stdout == "rescued"
    assert primary.calls == 1
    assert events[-1]["event"] == "backend_fallback_success"


@pytest.mark.parametrize(
    "error",
    [
        BackendTimeoutError("too slow", backend="gemini"),
        BackendAuthError("Server rejected stored OAuth token", backend="gemini"),
        BackendProcessError("gemini: command not found", backend="gemini"),
    ],
    ids=["timeout", "auth", "startup"],
)
def test_non_retriable_errors_skip_retries_and_fallback(error: BackendExecutionError) -> None:
    events: list[dict[str, Any]] = []
    primary = ScriptedBackend("gemini", [error, AgentResult(exit_code=0)])
    fallback = ScriptedBackend("claude", [AgentResult(exit_code=0)])
    backend = RetryFallbackBackend(primary, _policy(3), fallback=fallback, event_hook=events.append)

    with pytest.raises(type(error)):
        asyncio.run(backend.execute("work"))

    assert primary.calls == 1
    assert fallback.calls == 0
    assert [event["event"] for event in events] == ["backend_attempt_failed"]
    assert events[0]["retriable"] is False
    assert events[0]["error_kind"] == error.kind


def test_rate_limit_is_classified_and_retried() -> None:
    events: list[dict[str, Any]] = []
    primary = ScriptedBackend("gemini", [_fail("429 Too Many Requests"), AgentResult(exit_code=0)])
    backend = RetryFallbackBackend(primary, _policy(1), event_hook=events.append)

    asyncio.run(backend.execute("work"))

    failed = [event for event in events if event["event"] == "backend_attempt_failed"]
    assert failed[0]["error_kind"] == "rate_limit"


def test_rate_limit_classification_can_be_disabled() -> None:
    primary = ScriptedBackend("gemini", [_fail("quota exceeded")])
    backend = RetryFallbackBackend(primary, _policy(1, retry_on_rate_limit=False))

    with pytest.raises(BackendExecutionError) as exc_info:
        asyncio.run(backend.execute("work"))

    assert not isinstance(exc_info.value, RateLimitError)
    assert primary.calls == 2


def test_unexpected_exception_is_wrapped_and_retried() -> None:
    primary = ScriptedBackend("gemini", [ValueError("odd"), AgentResult(exit_code=0, stdout="ok")])
    backend = RetryFallbackBackend(primary, _policy(1))

    result = asyncio.run(backend.execute("work"))

    assert result.stdout == "ok"
    assert primary.calls == 2


def test_structured_call_parses_json() -> None:
    primary = ScriptedBackend("gemini", [AgentResult(exit_code=0, stdout='{"pr_url": "https://x"}')])
    backend = RetryFallbackBackend(primary, _policy(1))

    result = asyncio.run(backend.execute_structured("publish"))

    assert result.parsed == {"pr_url": "https://x"}


def test_kill_releases_both_handles_best_effort() -> None:
    primary = BrokenKillBackend("gemini", [AgentResult(exit_code=0)])
    fallback = ScriptedBackend("claude", [AgentResult(exit_code=0)])
    backend = RetryFallbackBackend(primary, _policy(1), fallback=fallback)

    asyncio.run(backend.kill())

    assert fallback.killed is True


def test_policy_delay_grows_exponentially() -> None:
    policy = RetryPolicy(max_retries=3, backoff_seconds=2.0, backoff_multiplier=3.0)

    assert [policy.delay_for(attempt) for attempt in (1, 2, 3)] == [2.0, 6.0, 18.0]
