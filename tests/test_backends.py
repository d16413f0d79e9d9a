import asyncio
import json
from pathlib import Path

import httpx
import pytest

from foreman.backends.api import ApiBackend
from foreman.backends.base import (
    AgentResult,
    BackendAuthError,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
    RateLimitError,
    extract_json,
    is_rate_limited,
    raise_for_result,
)
from foreman.backends.cli_agent import CliBackend
from foreman.backends.resilient import RetryFallbackBackend, RetryPolicy
from foreman.backends.tool_server import ToolServerBackend


def _script(tmp_path: Path, name: str, body: str) -> Path:
    path = tmp_path / name
    path.write_text("#!/bin/sh\n" + body + "\n", encoding="utf-8")
    path.chmod(0o755)
    return path


def test_gemini_build_command_shape() -> None:
    backend = CliBackend("gemini", working_directory=Path("."), model="gemini-2.5-flash")
    command, stdin_text = backend.build_command("fix the bug", structured=True)

    assert command == ["gemini", "--yolo", "-m", "gemini-2.5-flash", "-o", "json"]
    assert stdin_text == "fix the bug"


def test_claude_build_command_shape() -> None:
    backend = CliBackend("claude", working_directory=Path("."))
    command, stdin_text = backend.build_command("fix the bug", resume_id="sess-1")

    assert command[0:2] == ["claude", "-p"]
    assert "--dangerously-skip-permissions" in command
    assert command[-2:] == ["--resume", "sess-1"]
    assert stdin_text == "fix the bug"


def test_codex_build_command_passes_prompt_as_argument() -> None:
    backend = CliBackend("codex", working_directory=Path("."), model="gpt-5-codex")
    command, stdin_text = backend.build_command("fix the bug")

    assert command[0:2] == ["codex", "exec"]
    assert "--full-auto" in command
    assert "gpt-5-codex" in command
    assert command[-1] == "fix the bug"
    assert stdin_text is None


def test_cli_backend_pipes_prompt_and_reports_exit(tmp_path: Path) -> None:
    events: list[dict] = []
    script = _script(tmp_path, "fake-claude", "cat\necho done >&2")
    backend = CliBackend(
        "claude",
        working_directory=tmp_path,
        binary=str(script),
        secrets={"ANTHROPIC_API_KEY": "secret"},
        event_hook=events.append,
    )

    result = asyncio.run(backend.execute("hello worker", timeout_seconds=10))

    assert result.ok
    assert result.stdout == "hello worker"
    assert result.stderr.strip() == "done"
    assert [event["event"] for event in events] == ["cli_agent_start", "cli_agent_exit"]


def test_cli_backend_gemini_structured_unwraps_envelope(tmp_path: Path) -> None:
    payload = json.dumps({"response": json.dumps({"issues": [{"id": "1", "title": "x"}]})})
    script = _script(tmp_path, "fake-gemini", f"cat >/dev/null\ncat <<'EOF'\n{payload}\nEOF")
    backend = CliBackend("gemini", working_directory=tmp_path, binary=str(script))

    result = asyncio.run(backend.execute_structured("list issues", timeout_seconds=10))

    assert result.parsed == {"issues": [{"id": "1", "title": "x"}]}


def test_cli_backend_missing_binary_is_startup_error(tmp_path: Path) -> None:
    backend = CliBackend("claude", working_directory=tmp_path, binary=str(tmp_path / "nope"))

    with pytest.raises(BackendProcessError) as exc_info:
        asyncio.run(backend.execute("hi"))

    assert exc_info.value.retriable is False
    assert exc_info.value.kind == "startup"


def test_cli_backend_timeout_kills_process(tmp_path: Path) -> None:
    script = _script(tmp_path, "slow-claude", "exec sleep 5")
    backend = CliBackend("claude", working_directory=tmp_path, binary=str(script))

    with pytest.raises(BackendTimeoutError) as exc_info:
        asyncio.run(backend.execute("hi", timeout_seconds=0.2))

    assert exc_info.value.exit_code == 124
    assert exc_info.value.retriable is False


def test_cli_backend_gemini_auth_failure(tmp_path: Path) -> None:
    script = _script(
        tmp_path, "fake-gemini", "cat >/dev/null\necho 'Server rejected stored OAuth token' >&2\nexit 1"
    )
    backend = CliBackend("gemini", working_directory=tmp_path, binary=str(script))

    with pytest.raises(BackendAuthError):
        asyncio.run(backend.execute("hi", timeout_seconds=10))


def test_extract_json_variants() -> None:
    assert extract_json('{"a": 1}') == {"a": 1}
    assert extract_json('Here you go:\n```json\n{"pr_url": "u"}\n```\nthanks') == {"pr_url": "u"}
    assert extract_json('noise [1, 2] trailing') == [1, 2]
    assert extract_json("no json here") is None
    assert extract_json("") is None


def test_rate_limit_detection() -> None:
    assert is_rate_limited("Error 429: Too Many Requests")
    assert is_rate_limited("RESOURCE_EXHAUSTED: quota exceeded")
    assert is_rate_limited("rate limit reached")
    assert not is_rate_limited("syntax error on line 4290")
    assert not is_rate_limited(None)


def test_raise_for_result_classifies_failures() -> None:
    ok = AgentResult(exit_code=0, stdout="fine")
    assert raise_for_result(ok) is ok

    with pytest.raises(RateLimitError) as throttled:
        raise_for_result(AgentResult(exit_code=1, stderr="429 rate limit"), backend="gemini")
    assert throttled.value.backend == "gemini"
    assert throttled.value.result is not None

    with pytest.raises(BackendExecutionError) as failed:
        raise_for_result(AgentResult(exit_code=2, stderr="boom"))
    assert not isinstance(failed.value, RateLimitError)
    assert failed.value.exit_code == 2


def test_api_backend_gemini_request_and_text() -> None:
    seen: list[httpx.Request] = []

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return httpx.Response(
            200,
            json={"candidates": [{"content": {"parts": [{"text": "hello "}, {"text": "there"}]}}]},
        )

    backend = ApiBackend(
        "gemini",
        endpoint="https://example.test/v1beta/",
        api_key="k-1",
        model="gemini-2.5-flash",
        transport=httpx.MockTransport(handler),
    )

    async def _run() -> AgentResult:
        try:
            return await backend.execute("say hi", timeout_seconds=5)
        finally:
            await backend.kill()

    result = asyncio.run(_run())

    assert result.ok
    assert result.stdout == "hello there"
    assert str(seen[0].url) == "https://example.test/v1beta/models/gemini-2.5-flash:generateContent"
    assert seen[0].headers["x-goog-api-key"] == "k-1"
    assert json.loads(seen[0].content)["contents"][0]["parts"][0]["text"] == "say hi"


def test_api_backend_anthropic_error_maps_to_exit_one() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.headers["anthropic-version"] == "2023-06-01"
        return httpx.Response(429, text="rate limit exceeded")

    backend = ApiBackend(
        "anthropic",
        endpoint="https://example.test",
        api_key="k-2",
        model="claude-sonnet-4-5",
        transport=httpx.MockTransport(handler),
    )

    result = asyncio.run(backend.execute("hi", timeout_seconds=5))

    assert backend.name == "anthropic-api"
    assert result.exit_code == 1
    assert "429" in result.stderr
    assert is_rate_limited(result.stderr)


def _counting_api(calls: list[str], status: int | None, label: str) -> ApiBackend:
    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(label)
        if status is None:
            raise httpx.ReadTimeout("slow", request=request)
        if status == 200:
            return httpx.Response(200, json={"candidates": []})
        return httpx.Response(status, text=f"failure {status}")

    return ApiBackend(
        "gemini",
        endpoint="https://example.test",
        api_key="k",
        model="m",
        transport=httpx.MockTransport(handler),
    )


@pytest.mark.parametrize(
    ("status", "error_type"),
    [(None, BackendTimeoutError), (401, BackendAuthError), (403, BackendAuthError)],
)
def test_api_backend_non_retriable_failures_skip_retry_and_fallback(status, error_type) -> None:
    calls: list[str] = []
    primary = _counting_api(calls, status, "primary")
    fallback = _counting_api(calls, 200, "fallback")
    wrapped = RetryFallbackBackend(
        primary, RetryPolicy(max_retries=3, backoff_seconds=0), fallback=fallback
    )

    with pytest.raises(error_type):
        asyncio.run(wrapped.execute("hi", timeout_seconds=1))

    assert calls == ["primary"]


def test_api_backend_server_error_is_still_retried() -> None:
    calls: list[str] = []
    primary = _counting_api(calls, 500, "primary")
    wrapped = RetryFallbackBackend(primary, RetryPolicy(max_retries=2, backoff_seconds=0))

    with pytest.raises(BackendExecutionError) as exc_info:
        asyncio.run(wrapped.execute("hi", timeout_seconds=1))

    assert calls == ["primary"] * 3
    assert exc_info.value.kind == "execution"


def test_tool_server_requires_command_or_url() -> None:
    with pytest.raises(BackendProcessError):
        ToolServerBackend("tools")


def test_tool_server_http_initializes_once_and_calls_tool() -> None:
    methods: list[str] = []

    def handler(request: httpx.Request) -> httpx.Response:
        message = json.loads(request.content)
        methods.append(message["method"])
        if message["method"] == "initialize":
            return httpx.Response(200, json={"jsonrpc": "2.0", "id": message["id"], "result": {}})
        prompt = message["params"]["arguments"]["prompt"]
        return httpx.Response(
            200,
            json={
                "jsonrpc": "2.0",
                "id": message["id"],
                "result": {"content": [{"type": "text", "text": f"ran: {prompt}"}]},
            },
        )

    backend = ToolServerBackend(
        "tools", url="https://tools.test/rpc", transport=httpx.MockTransport(handler)
    )

    async def _run() -> list[AgentResult]:
        try:
            return [await backend.execute("one"), await backend.execute("two")]
        finally:
            await backend.kill()

    first, second = asyncio.run(_run())

    assert first.stdout == "ran: one"
    assert second.stdout == "ran: two"
    assert methods == ["initialize", "tools/call", "tools/call"]


def test_tool_server_error_result_is_nonzero_exit() -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        message = json.loads(request.content)
        result = {} if message["method"] == "initialize" else {
            "isError": True,
            "content": [{"type": "text", "text": "tool crashed"}],
        }
        return httpx.Response(200, json={"jsonrpc": "2.0", "id": message["id"], "result": result})

    backend = ToolServerBackend(
        "tools", url="https://tools.test/rpc", transport=httpx.MockTransport(handler)
    )

    result = asyncio.run(backend.execute("go"))

    assert result.exit_code == 1
    assert result.stderr == "tool crashed"
