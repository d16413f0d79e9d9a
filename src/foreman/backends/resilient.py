from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from foreman.backends.base import (
    NON_RETRIABLE_ERRORS,
    AgentBackend,
    AgentResult,
    BackendExecutionError,
    RateLimitError,
    raise_for_result,
)

logger = logging.getLogger(__name__)

BackendEventHook = Callable[[dict[str, Any]], None]


@dataclass(slots=True)
class RetryPolicy:
    max_retries: int = 1
    backoff_seconds: float = 5.0
    backoff_multiplier: float = 2.0
    retry_on_rate_limit: bool = True

    def delay_for(self, attempt: int) -> float:
        return self.backoff_seconds * (self.backoff_multiplier ** (attempt - 1))


class RetryFallbackBackend(AgentBackend):
    """Wraps a primary handle with bounded retry and a single-shot fallback."""

    def __init__(
        self,
        primary: AgentBackend,
        retry_policy: RetryPolicy,
        fallback: AgentBackend | None = None,
        event_hook: BackendEventHook | None = None,
    ) -> None:
        self.primary = primary
        self.fallback = fallback
        self.retry_policy = retry_policy
        self.event_hook = event_hook
        self.name = primary.name

    def _emit(self, event: dict[str, Any]) -> None:
        if self.event_hook:
            self.event_hook(event)

    def _classify(self, exc: BackendExecutionError) -> BackendExecutionError:
        if isinstance(exc, RateLimitError) and not self.retry_policy.retry_on_rate_limit:
            plain = BackendExecutionError(
                str(exc),
                backend=exc.backend,
                exit_code=exc.exit_code,
                result=exc.result,
            )
            plain.__cause__ = exc
            return plain
        return exc

    async def _execute_attempts(
        self,
        call_name: str,
        call: Callable[[AgentBackend], Awaitable[AgentResult]],
    ) -> AgentResult:
        last_error: BackendExecutionError | None = None
        for attempt in range(max(0, self.retry_policy.max_retries) + 1):
            if attempt > 0:
                delay = self.retry_policy.delay_for(attempt)
                self._emit(
                    {
                        "event": "backend_retry",
                        "backend": self.primary.name,
                        "attempt": attempt,
                        "delay_seconds": delay,
                        "call": call_name,
                        "error_kind": last_error.kind if last_error else None,
                    }
                )
                await asyncio.sleep(delay)
            try:
                result = await call(self.primary)
                return raise_for_result(result, backend=self.primary.name)
            except NON_RETRIABLE_ERRORS as exc:
                self._emit(
                    {
                        "event": "backend_attempt_failed",
                        "backend": self.primary.name,
                        "attempt": attempt,
                        "call": call_name,
                        "error": str(exc),
                        "error_kind": exc.kind,
                        "retriable": False,
                    }
                )
                raise
            except BackendExecutionError as exc:
                last_error = self._classify(exc)
            except Exception as exc:
                last_error = BackendExecutionError(str(exc), backend=self.primary.name)
                last_error.__cause__ = exc
            self._emit(
                {
                    "event": "backend_attempt_failed",
                    "backend": self.primary.name,
                    "attempt": attempt,
                    "call": call_name,
                    "error": str(last_error),
                    "error_kind": last_error.kind,
                    "retriable": True,
                }
            )

        if last_error is None:
            raise BackendExecutionError("No attempts were made", backend=self.primary.name)
        if self.fallback is None:
            raise last_error

        self._emit(
            {
                "event": "backend_fallback_start",
                "backend": self.fallback.name,
                "call": call_name,
                "primary_error": str(last_error),
            }
        )
        result = await call(self.fallback)
        self._emit(
            {
                "event": "backend_fallback_success" if result.ok else "backend_fallback_failed",
                "backend": self.fallback.name,
                "call": call_name,
                "exit_code": result.exit_code,
            }
        )
        return result

    async def execute(
        self,
        prompt: str,
        *,
        timeout_seconds: float | None = None,
        resume_id: str | None = None,
    ) -> AgentResult:
        return await self._execute_attempts(
            "execute",
            lambda backend: backend.execute(
                prompt, timeout_seconds=timeout_seconds, resume_id=resume_id
            ),
        )

    async def execute_structured(
        self,
        prompt: str,
        *,
        timeout_seconds: float | None = None,
        resume_id: str | None = None,
    ) -> AgentResult:
        return await self._execute_attempts(
            "execute_structured",
            lambda backend: backend.execute_structured(
                prompt, timeout_seconds=timeout_seconds, resume_id=resume_id
            ),
        )

    async def execute_with_retry(
        self,
        prompt: str,
        *,
        retries: int = 1,
        backoff_seconds: float = 5.0,
        timeout_seconds: float | None = None,
        structured: bool = False,
    ) -> AgentResult:
        # the configured policy already governs retries here
        _ = retries, backoff_seconds
        if structured:
            return await self.execute_structured(prompt, timeout_seconds=timeout_seconds)
        return await self.execute(prompt, timeout_seconds=timeout_seconds)

    async def kill(self) -> None:
        handles = [self.primary] + ([self.fallback] if self.fallback is not None else [])
        outcomes = await asyncio.gather(
            *(handle.kill() for handle in handles), return_exceptions=True
        )
        for handle, outcome in zip(handles, outcomes):
            if isinstance(outcome, BaseException):
                logger.warning("Failed to release %s: %s", handle.name, outcome)
