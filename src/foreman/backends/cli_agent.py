from __future__ import annotations

import asyncio
import logging
import os
import re
from collections.abc import Callable
from pathlib import Path
from typing import Any

from foreman.backends.base import (
    AgentBackend,
    AgentResult,
    BackendAuthError,
    BackendProcessError,
    BackendTimeoutError,
    extract_json,
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 600.0
GEMINI_AUTH_FAILURE_PATTERNS = (
    re.compile(r"rejected stored OAuth token", re.IGNORECASE),
    re.compile(r"Please re-authenticate using:\s*/mcp auth", re.IGNORECASE),
)


class CliBackend(AgentBackend):
    """Runs a worker as a local command-line process, one process per call."""

    def __init__(
        self,
        name: str,
        *,
        working_directory: Path,
        secrets: dict[str, str] | None = None,
        model: str | None = None,
        binary: str | None = None,
        event_hook: Callable[[dict[str, Any]], None] | None = None,
    ) -> None:
        self.name = name
        self.working_directory = working_directory
        self.secrets = dict(secrets or {})
        self.model = model
        self.binary = binary or name
        self.event_hook = event_hook
        self._process: asyncio.subprocess.Process | None = None

    def _emit(self, payload: dict[str, Any]) -> None:
        if self.event_hook is not None:
            self.event_hook(payload)

    def build_command(
        self,
        prompt: str,
        *,
        structured: bool = False,
        resume_id: str | None = None,
    ) -> tuple[list[str], str | None]:
        """Return the argv and the text to pipe on stdin."""
        if self.name == "gemini":
            command = [self.binary, "--yolo"]
            if self.model:
                command.extend(["-m", self.model])
            if structured:
                command.extend(["-o", "json"])
            return command, prompt
        if self.name == "claude":
            command = [self.binary, "-p"]
            if self.model:
                command.extend(["--model", self.model])
            command.append("--dangerously-skip-permissions")
            if resume_id:
                command.extend(["--resume", resume_id])
            return command, prompt
        if self.name == "codex":
            command = [self.binary, "exec", "--full-auto", "--skip-git-repo-check"]
            if self.model:
                command.extend(["-m", self.model])
            if resume_id:
                command.extend(["--resume", resume_id])
            command.append(prompt)
            return command, None
        raise BackendProcessError(f"No command layout for worker '{self.name}'", backend=self.name)

    def _environment(self) -> dict[str, str]:
        env = os.environ.copy()
        env.update(self.secrets)
        return env

    def _check_auth(self, stderr: str) -> None:
        if self.name != "gemini":
            return
        if any(pattern.search(stderr) for pattern in GEMINI_AUTH_FAILURE_PATTERNS):
            raise BackendAuthError(
                "Gemini rejected its stored credentials; re-authenticate and retry.",
                backend=self.name,
            )

    async def _run(
        self,
        prompt: str,
        *,
        structured: bool,
        timeout_seconds: float | None,
        resume_id: str | None,
    ) -> AgentResult:
        command, stdin_text = self.build_command(
            prompt, structured=structured, resume_id=resume_id
        )
        timeout = timeout_seconds or DEFAULT_TIMEOUT_SECONDS
        self._emit(
            {
                "event": "cli_agent_start",
                "backend": self.name,
                "command": command[:3],
                "cwd": str(self.working_directory),
            }
        )
        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=str(self.working_directory),
                env=self._environment(),
                stdin=asyncio.subprocess.PIPE if stdin_text is not None else asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError as exc:
            raise BackendProcessError(
                f"Worker binary not found: {self.binary}", backend=self.name
            ) from exc

        self._process = process
        stdin_bytes = stdin_text.encode("utf-8") if stdin_text is not None else None
        try:
            stdout_raw, stderr_raw = await asyncio.wait_for(
                process.communicate(stdin_bytes), timeout=timeout
            )
        except TimeoutError as exc:
            await self._terminate(process)
            raise BackendTimeoutError(
                f"Worker {self.name} timed out after {timeout:.1f}s", backend=self.name
            ) from exc
        finally:
            self._process = None

        stdout = stdout_raw.decode("utf-8", errors="replace")
        stderr = stderr_raw.decode("utf-8", errors="replace")
        exit_code = process.returncode if process.returncode is not None else 1
        self._emit({"event": "cli_agent_exit", "backend": self.name, "exit_code": exit_code})
        self._check_auth(stderr)
        return AgentResult(exit_code=exit_code, stdout=stdout, stderr=stderr)

    async def execute(
        self,
        prompt: str,
        *,
        timeout_seconds: float | None = None,
        resume_id: str | None = None,
    ) -> AgentResult:
        return await self._run(
            prompt, structured=False, timeout_seconds=timeout_seconds, resume_id=resume_id
        )

    async def execute_structured(
        self,
        prompt: str,
        *,
        timeout_seconds: float | None = None,
        resume_id: str | None = None,
    ) -> AgentResult:
        result = await self._run(
            prompt, structured=True, timeout_seconds=timeout_seconds, resume_id=resume_id
        )
        parsed = extract_json(result.stdout)
        # gemini -o json wraps the model text in {"response": ...}
        if self.name == "gemini" and isinstance(parsed, dict) and isinstance(
            parsed.get("response"), str
        ):
            parsed = extract_json(parsed["response"])
        result.parsed = parsed
        return result

    @staticmethod
    async def _terminate(process: asyncio.subprocess.Process) -> None:
        if process.returncode is not None:
            return
        try:
            process.kill()
        except ProcessLookupError:
            return
        await process.wait()

    async def kill(self) -> None:
        process = self._process
        if process is not None:
            logger.debug("Killing in-flight %s process", self.name)
            await self._terminate(process)
            self._process = None
