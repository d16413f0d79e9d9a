from __future__ import annotations

import json
import logging
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

logger = logging.getLogger(__name__)

SENSITIVE_MARKERS = ("key", "token", "secret", "password")


def _utcnow_iso() -> str:
    return datetime.now(UTC).replace(microsecond=0).isoformat()


def redact(payload: Any) -> Any:
    if isinstance(payload, dict):
        cleaned: dict[str, Any] = {}
        for key, value in payload.items():
            lowered = str(key).lower()
            if any(marker in lowered for marker in SENSITIVE_MARKERS) and isinstance(value, str):
                cleaned[key] = "***"
            else:
                cleaned[key] = redact(value)
        return cleaned
    if isinstance(payload, list):
        return [redact(item) for item in payload]
    return payload


class EventLog:
    """Structured event sink: JSON lines on disk, one-line summary to logging."""

    def __init__(self, path: Path | None = None) -> None:
        self.path = path
        self.events: list[dict[str, Any]] = []
        if path is not None:
            path.parent.mkdir(parents=True, exist_ok=True)

    def __call__(self, event: dict[str, Any]) -> None:
        payload = redact(dict(event))
        payload.setdefault("at", _utcnow_iso())
        self.events.append(payload)
        name = payload.get("event", "event")
        details = " ".join(
            f"{key}={value}"
            for key, value in payload.items()
            if key not in {"event", "at"} and isinstance(value, str | int | float | bool)
        )
        logger.info("%s %s", name, details)
        if self.path is None:
            return
        try:
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(payload, ensure_ascii=False, default=str) + "\n")
        except OSError as exc:
            logger.warning("Could not append to event log %s: %s", self.path, exc)

    def names(self) -> list[str]:
        return [str(event.get("event")) for event in self.events]
