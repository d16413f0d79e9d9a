from __future__ import annotations

import asyncio
import json
import logging
import os
import re
from pathlib import Path
from typing import Any

from foreman.config import HookConfig

logger = logging.getLogger(__name__)

HOOK_TIMEOUT_SECONDS = 30.0
LIFECYCLE_EVENTS = frozenset(
    {
        "workflow_start",
        "workflow_complete",
        "workflow_failed",
        "machine_start",
        "machine_complete",
        "machine_error",
        "loop_start",
        "loop_complete",
        "issue_start",
        "issue_complete",
        "issue_failed",
        "issue_skipped",
        "issue_deferred",
    }
)


class HookDispatcher:
    """Runs configured shell commands on lifecycle events; never raises."""

    def __init__(
        self,
        hooks: list[HookConfig],
        *,
        cwd: Path,
        run_id: str = "",
        timeout_seconds: float = HOOK_TIMEOUT_SECONDS,
    ) -> None:
        self.hooks = [hook for hook in hooks if hook.on in LIFECYCLE_EVENTS]
        for hook in hooks:
            if hook.on not in LIFECYCLE_EVENTS:
                logger.warning("Ignoring hook for unknown event %r", hook.on)
        self.cwd = cwd
        self.run_id = run_id
        self.timeout_seconds = timeout_seconds

    def _matching(self, event: str, machine: str) -> list[HookConfig]:
        matched: list[HookConfig] = []
        for hook in self.hooks:
            if hook.on != event:
                continue
            if hook.machine:
                try:
                    if not re.search(hook.machine, machine or ""):
                        continue
                except re.error as exc:
                    logger.warning("Bad machine filter %r on hook: %s", hook.machine, exc)
                    continue
            matched.append(hook)
        return matched

    async def _run_one(self, hook: HookConfig, env: dict[str, str]) -> None:
        try:
            process = await asyncio.create_subprocess_shell(
                hook.run,
                cwd=str(self.cwd),
                env=env,
                stdout=asyncio.subprocess.DEVNULL,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as exc:
            logger.warning("Hook %r could not start: %s", hook.run, exc)
            return
        try:
            _, stderr = await asyncio.wait_for(process.communicate(), timeout=self.timeout_seconds)
        except TimeoutError:
            process.kill()
            await process.wait()
            logger.warning("Hook %r timed out after %.0fs", hook.run, self.timeout_seconds)
            return
        if process.returncode != 0:
            logger.warning(
                "Hook %r exited with %s: %s",
                hook.run,
                process.returncode,
                stderr.decode("utf-8", errors="replace").strip()[:300],
            )

    async def dispatch(
        self,
        event: str,
        *,
        machine: str = "",
        status: str = "",
        data: Any = None,
    ) -> None:
        hooks = self._matching(event, machine)
        if not hooks:
            return
        env = os.environ.copy()
        env.update(
            {
                "FOREMAN_HOOK_EVENT": event,
                "FOREMAN_HOOK_MACHINE": machine,
                "FOREMAN_HOOK_STATUS": status,
                "FOREMAN_HOOK_DATA": json.dumps(data if data is not None else {}, default=str),
                "FOREMAN_HOOK_RUN_ID": self.run_id,
            }
        )
        for hook in hooks:
            await self._run_one(hook, env)
