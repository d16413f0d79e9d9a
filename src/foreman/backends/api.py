"""HTTP worker transport for hosted model APIs."""

from __future__ import annotations

import logging
from typing import Any, Literal

import httpx

from foreman.backends.base import (
    AgentBackend,
    AgentResult,
    BackendAuthError,
    BackendProcessError,
    BackendTimeoutError,
)

logger = logging.getLogger(__name__)

ApiProvider = Literal["gemini", "anthropic"]

DEFAULT_TIMEOUT_SECONDS = 600.0
ANTHROPIC_VERSION = "2023-06-01"
ANTHROPIC_MAX_TOKENS = 4096
AUTH_FAILURE_STATUSES = frozenset({401, 403})


class ApiBackend(AgentBackend):
    """Sends each prompt as one request to a provider's generation endpoint."""

    def __init__(
        self,
        provider: ApiProvider,
        *,
        endpoint: str,
        api_key: str,
        model: str,
        system_instruction: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        if provider not in {"gemini", "anthropic"}:
            raise BackendProcessError(f"Unsupported API provider: {provider}", backend=provider)
        self.provider = provider
        self.name = f"{provider}-api"
        self.endpoint = endpoint.rstrip("/")
        self.api_key = api_key
        self.model = model
        self.system_instruction = system_instruction
        self._transport = transport
        self._client: httpx.AsyncClient | None = None

    def _get_client(self, timeout_seconds: float) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                timeout=httpx.Timeout(timeout_seconds, connect=10.0),
                transport=self._transport,
            )
        return self._client

    def _build_request(self, prompt: str) -> tuple[str, dict[str, str], dict[str, Any]]:
        if self.provider == "gemini":
            url = f"{self.endpoint}/models/{self.model}:generateContent"
            body: dict[str, Any] = {"contents": [{"parts": [{"text": prompt}]}]}
            if self.system_instruction:
                body["systemInstruction"] = {"parts": [{"text": self.system_instruction}]}
            return url, {"x-goog-api-key": self.api_key}, body

        url = f"{self.endpoint}/v1/messages"
        headers = {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
        }
        body = {
            "model": self.model,
            "max_tokens": ANTHROPIC_MAX_TOKENS,
            "messages": [{"role": "user", "content": prompt}],
        }
        if self.system_instruction:
            body["system"] = self.system_instruction
        return url, headers, body

    def _extract_text(self, payload: dict[str, Any]) -> str:
        if self.provider == "gemini":
            candidates = payload.get("candidates") or []
            if not candidates:
                return ""
            parts = (candidates[0].get("content") or {}).get("parts") or []
            return "".join(part.get("text", "") for part in parts if isinstance(part, dict))
        blocks = payload.get("content") or []
        return "".join(
            block.get("text", "")
            for block in blocks
            if isinstance(block, dict) and block.get("type", "text") == "text"
        )

    async def execute(
        self,
        prompt: str,
        *,
        timeout_seconds: float | None = None,
        resume_id: str | None = None,
    ) -> AgentResult:
        _ = resume_id
        timeout = timeout_seconds or DEFAULT_TIMEOUT_SECONDS
        url, headers, body = self._build_request(prompt)
        client = self._get_client(timeout)
        try:
            response = await client.post(url, headers=headers, json=body, timeout=timeout)
        except httpx.TimeoutException as exc:
            raise BackendTimeoutError(
                f"{self.name} request timed out after {timeout:.1f}s", backend=self.name
            ) from exc
        except httpx.HTTPError as exc:
            logger.warning("%s request failed: %s", self.name, exc)
            return AgentResult(exit_code=1, stderr=str(exc))

        if response.status_code in AUTH_FAILURE_STATUSES:
            raise BackendAuthError(
                f"{self.name} rejected credentials: HTTP {response.status_code}",
                backend=self.name,
                exit_code=1,
            )
        if not response.is_success:
            return AgentResult(
                exit_code=1,
                stderr=f"HTTP {response.status_code}: {response.text[:500]}",
            )
        try:
            payload = response.json()
        except ValueError as exc:
            return AgentResult(exit_code=1, stderr=f"Invalid JSON response: {exc}")
        return AgentResult(exit_code=0, stdout=self._extract_text(payload))

    async def kill(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None
