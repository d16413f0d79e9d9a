from __future__ import annotations

import asyncio
import itertools
import json
import logging
import os
from pathlib import Path
from typing import Any

import httpx

from foreman.backends.base import (
    AgentBackend,
    AgentResult,
    BackendExecutionError,
    BackendProcessError,
    BackendTimeoutError,
)

logger = logging.getLogger(__name__)

PROTOCOL_VERSION = "2024-11-05"
STARTUP_TIMEOUT_SECONDS = 30.0
DEFAULT_TIMEOUT_SECONDS = 600.0


class ToolServerBackend(AgentBackend):
    """Long-lived tool server reached over JSON-RPC, via stdio or HTTP.

    The server is started (or the session initialized) on first use and
    reused for every later call until :meth:`kill`.
    """

    def __init__(
        self,
        server_name: str,
        *,
        tool_name: str = "run",
        command: str = "",
        args: list[str] | None = None,
        url: str = "",
        working_directory: Path | None = None,
        secrets: dict[str, str] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if not command and not url:
            raise BackendProcessError(
                f"Tool server '{server_name}' needs a command (stdio) or a url (http)",
                backend=server_name,
            )
        self.name = server_name
        self.tool_name = tool_name
        self.command = command
        self.args = list(args or [])
        self.url = url
        self.working_directory = working_directory
        self.secrets = dict(secrets or {})
        self._http_transport = transport
        self._ids = itertools.count(1)
        self._lock = asyncio.Lock()
        self._process: asyncio.subprocess.Process | None = None
        self._client: httpx.AsyncClient | None = None
        self._initialized = False

    @property
    def uses_http(self) -> bool:
        return bool(self.url) and not self.command

    def _message(self, method: str, params: dict[str, Any]) -> dict[str, Any]:
        return {"jsonrpc": "2.0", "id": next(self._ids), "method": method, "params": params}

    async def _start_process(self) -> asyncio.subprocess.Process:
        env = os.environ.copy()
        env.update(self.secrets)
        try:
            return await asyncio.create_subprocess_exec(
                self.command,
                *self.args,
                cwd=str(self.working_directory) if self.working_directory else None,
                env=env,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.DEVNULL,
            )
        except OSError as exc:
            raise BackendProcessError(
                f"Failed to start tool server '{self.name}': {exc}", backend=self.name
            ) from exc

    async def _stdio_request(self, message: dict[str, Any], timeout: float) -> dict[str, Any]:
        process = self._process
        if process is None or process.stdin is None or process.stdout is None:
            raise BackendProcessError(f"Tool server '{self.name}' is not running", backend=self.name)
        stdout = process.stdout
        process.stdin.write((json.dumps(message) + "\n").encode("utf-8"))
        await process.stdin.drain()

        async def _read_reply() -> dict[str, Any]:
            while True:
                line = await stdout.readline()
                if not line:
                    raise BackendProcessError(
                        f"Tool server '{self.name}' closed its output", backend=self.name
                    )
                try:
                    reply = json.loads(line)
                except json.JSONDecodeError:
                    logger.debug("Ignoring non-JSON line from %s: %s", self.name, line[:200])
                    continue
                # notifications carry no id
                if isinstance(reply, dict) and reply.get("id") == message["id"]:
                    return reply

        return await asyncio.wait_for(_read_reply(), timeout=timeout)

    async def _http_request(self, message: dict[str, Any], timeout: float) -> dict[str, Any]:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout, connect=10.0), transport=self._http_transport
            )
        try:
            response = await self._client.post(self.url, json=message, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise TimeoutError(str(exc)) from exc
        except httpx.HTTPError as exc:
            raise BackendExecutionError(
                f"Tool server '{self.name}' request failed: {exc}", backend=self.name
            ) from exc
        if not response.is_success:
            raise BackendExecutionError(
                f"Tool server '{self.name}' returned HTTP {response.status_code}",
                backend=self.name,
                exit_code=1,
            )
        return response.json()

    async def _request(self, method: str, params: dict[str, Any], timeout: float) -> Any:
        message = self._message(method, params)
        if self.uses_http:
            reply = await self._http_request(message, timeout)
        else:
            reply = await self._stdio_request(message, timeout)
        if "error" in reply:
            error = reply["error"] or {}
            raise BackendExecutionError(
                f"Tool server '{self.name}' error: {error.get('message', error)}",
                backend=self.name,
                exit_code=1,
            )
        return reply.get("result")

    async def _ensure_started(self) -> None:
        if self._initialized:
            return
        if not self.uses_http:
            self._process = await self._start_process()
        try:
            await self._request(
                "initialize",
                {
                    "protocolVersion": PROTOCOL_VERSION,
                    "capabilities": {},
                    "clientInfo": {"name": "foreman", "version": "0.1.0"},
                },
                STARTUP_TIMEOUT_SECONDS,
            )
        except (TimeoutError, BackendExecutionError) as exc:
            await self.kill()
            raise BackendProcessError(
                f"Tool server '{self.name}' failed to initialize: {exc}", backend=self.name
            ) from exc
        self._initialized = True

    async def execute(
        self,
        prompt: str,
        *,
        timeout_seconds: float | None = None,
        resume_id: str | None = None,
    ) -> AgentResult:
        timeout = timeout_seconds or DEFAULT_TIMEOUT_SECONDS
        arguments: dict[str, Any] = {"prompt": prompt}
        if resume_id:
            arguments["session_id"] = resume_id
        async with self._lock:
            await self._ensure_started()
            try:
                result = await self._request(
                    "tools/call", {"name": self.tool_name, "arguments": arguments}, timeout
                )
            except TimeoutError as exc:
                raise BackendTimeoutError(
                    f"Tool server '{self.name}' timed out after {timeout:.1f}s",
                    backend=self.name,
                ) from exc
        result = result if isinstance(result, dict) else {}
        text = "".join(
            block.get("text", "")
            for block in result.get("content") or []
            if isinstance(block, dict)
        )
        if result.get("isError"):
            return AgentResult(exit_code=1, stderr=text)
        return AgentResult(exit_code=0, stdout=text)

    async def kill(self) -> None:
        self._initialized = False
        process, self._process = self._process, None
        if process is not None and process.returncode is None:
            if process.stdin is not None:
                process.stdin.close()
            try:
                process.kill()
            except ProcessLookupError:
                pass
            await process.wait()
        client, self._client = self._client, None
        if client is not None:
            await client.aclose()
