"""Operational utilities for famledger."""

from __future__ import annotations

import json
from pathlib import Path
from typing import Optional

from .clock import now_local


class HealthMonitor:
    """Aggregate runtime health information for the health action."""

    def __init__(self, database_url: str) -> None:
        self.database_url = database_url
        self.database_online = True

    @property
    def db_mode(self) -> str:
        return "local" if self.database_url.startswith("sqlite") else "remote"

    def status(self) -> dict:
        return {"ok": self.database_online, "dbMode": self.db_mode}


class StructuredLogger:
    """Write JSON lines log entries for admin inspection."""

    def __init__(self, *, path: Path | None = None, retain: int = 500) -> None:
        self.path = path
        self.retain = retain
        self._entries: list[dict] = []

    def log(self, event_type: str, *, level: str = "info", **fields: object) -> dict:
        entry = {"timestamp": now_local().isoformat(), "level": level, "event": event_type, **fields}
        self._entries.append(entry)
        if len(self._entries) > self.retain:
            del self._entries[: len(self._entries) - self.retain]
        if self.path:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            with self.path.open("a", encoding="utf-8") as handle:
                handle.write(json.dumps(entry, default=str) + "\n")
        return entry

    def error(self, event_type: str, *, exc: Optional[BaseException] = None, **fields: object) -> dict:
        if exc is not None:
            fields.setdefault("error", f"{type(exc).__name__}: {exc}")
        return self.log(event_type, level="error", **fields)

    def tail(self, limit: int = 50) -> tuple[dict, ...]:
        return tuple(self._entries[-limit:])


__all__ = ["HealthMonitor", "StructuredLogger"]
