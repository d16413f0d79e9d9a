from __future__ import annotations

import asyncio
import json
import logging
import re
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any

logger = logging.getLogger(__name__)

RATE_LIMIT_PATTERN = re.compile(
    r"rate[ _-]?limit|\b429\b|resource[ _]exhausted|quota", re.IGNORECASE
)
FENCED_JSON_PATTERN = re.compile(r"```(?:json)?\s*\n(.*?)```", re.DOTALL | re.IGNORECASE)


class BackendExecutionError(RuntimeError):
    """Raised when a worker invocation fails."""

    kind = "execution"

    def __init__(
        self,
        message: str,
        *,
        backend: str | None = None,
        exit_code: int | None = None,
        retriable: bool = True,
        result: AgentResult | None = None,
    ) -> None:
        super().__init__(message)
        self.backend = backend
        self.exit_code = exit_code
        self.retriable = retriable
        self.result = result


class BackendTimeoutError(BackendExecutionError):
    """Raised when worker execution exceeds its timeout."""

    kind = "timeout"

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs.setdefault("exit_code", 124)
        kwargs["retriable"] = False
        super().__init__(message, **kwargs)


class BackendAuthError(BackendExecutionError):
    """Raised when a worker rejects its credentials."""

    kind = "auth"

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs["retriable"] = False
        super().__init__(message, **kwargs)


class BackendProcessError(BackendExecutionError):
    """Raised when a worker process or server cannot be started."""

    kind = "startup"

    def __init__(self, message: str, **kwargs: Any) -> None:
        kwargs["retriable"] = False
        super().__init__(message, **kwargs)


class RateLimitError(BackendExecutionError):
    """Raised when a failure looks like provider throttling."""

    kind = "rate_limit"


NON_RETRIABLE_ERRORS: tuple[type[BackendExecutionError], ...] = (
    BackendTimeoutError,
    BackendAuthError,
    BackendProcessError,
)
NON_RETRIABLE_KINDS = frozenset(error.kind for error in NON_RETRIABLE_ERRORS)


def is_rate_limited(text: str | None) -> bool:
    return bool(text) and RATE_LIMIT_PATTERN.search(text) is not None


def is_rate_limit_error(exc: BaseException) -> bool:
    if isinstance(exc, RateLimitError):
        return True
    return is_rate_limited(str(exc))


def extract_json(raw: str) -> Any:
    """Best-effort parse of structured worker output.

    Tries the whole text, then a fenced ``json`` block, then the widest
    ``{...}`` or ``[...]`` span. Returns ``None`` when nothing parses.
    """
    text = (raw or "").strip()
    if not text:
        return None
    candidates = [text]
    candidates.extend(match.strip() for match in FENCED_JSON_PATTERN.findall(text))
    for opener, closer in (("{", "}"), ("[", "]")):
        start = text.find(opener)
        end = text.rfind(closer)
        if start != -1 and end > start:
            candidates.append(text[start : end + 1])
    for candidate in candidates:
        try:
            return json.loads(candidate)
        except json.JSONDecodeError:
            continue
    return None


@dataclass(slots=True)
class AgentResult:
    exit_code: int
    stdout: str = ""
    stderr: str = ""
    parsed: Any = None

    @property
    def ok(self) -> bool:
        return self.exit_code == 0

    def failure_text(self) -> str:
        return (self.stderr or self.stdout or "").strip()


def raise_for_result(result: AgentResult, *, backend: str | None = None) -> AgentResult:
    """Turn a non-zero worker exit into an exception, classifying throttling."""
    if result.ok:
        return result
    detail = result.failure_text()[:400]
    message = f"Worker exited with status {result.exit_code}: {detail}"
    error_cls = RateLimitError if is_rate_limited(detail) else BackendExecutionError
    raise error_cls(message, backend=backend, exit_code=result.exit_code, result=result)


class AgentBackend(ABC):
    """Uniform capability surface shared by every worker transport."""

    name: str = "agent"

    @abstractmethod
    async def execute(
        self,
        prompt: str,
        *,
        timeout_seconds: float | None = None,
        resume_id: str | None = None,
    ) -> AgentResult:
        """Run one prompt and return the raw completion."""

    async def execute_structured(
        self,
        prompt: str,
        *,
        timeout_seconds: float | None = None,
        resume_id: str | None = None,
    ) -> AgentResult:
        result = await self.execute(prompt, timeout_seconds=timeout_seconds, resume_id=resume_id)
        result.parsed = extract_json(result.stdout)
        return result

    async def execute_with_retry(
        self,
        prompt: str,
        *,
        retries: int = 1,
        backoff_seconds: float = 5.0,
        timeout_seconds: float | None = None,
        structured: bool = False,
    ) -> AgentResult:
        call = self.execute_structured if structured else self.execute
        last_error: BackendExecutionError | None = None
        for attempt in range(max(0, retries) + 1):
            if attempt > 0:
                delay = backoff_seconds * (2 ** (attempt - 1))
                logger.debug("%s retry %d after %.2fs", self.name, attempt, delay)
                await asyncio.sleep(delay)
            try:
                result = await call(prompt, timeout_seconds=timeout_seconds)
                return raise_for_result(result, backend=self.name)
            except NON_RETRIABLE_ERRORS:
                raise
            except BackendExecutionError as exc:
                last_error = exc
        if last_error is None:
            raise BackendExecutionError("No attempts were made", backend=self.name)
        raise last_error

    async def kill(self) -> None:
        """Release any process, connection or session held by this handle."""
