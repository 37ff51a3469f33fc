"""Key-value stores with per-key expiry backing sessions and rate limits."""

from __future__ import annotations

import json
from abc import ABC, abstractmethod
from datetime import datetime, timedelta
from pathlib import Path
from typing import Any, Dict, Iterator, Optional, Tuple

from .clock import now_local

Record = Dict[str, Any]


class TTLStore(ABC):
    """Minimal interface shared by the session manager and the rate limiter."""

    @abstractmethod
    def get(self, key: str, *, at: Optional[datetime] = None) -> Optional[Record]:
        """Return the live value stored under ``key``."""

    @abstractmethod
    def set(self, key: str, value: Record, *, ttl: Optional[timedelta] = None, at: Optional[datetime] = None) -> None:
        """Store ``value`` under ``key``, expiring after ``ttl`` when given."""

    @abstractmethod
    def delete(self, key: str) -> bool:
        """Remove ``key`` and report whether it existed."""

    @abstractmethod
    def items(self, *, at: Optional[datetime] = None) -> Iterator[Tuple[str, Record]]:
        """Iterate over every live ``(key, value)`` pair."""

    def purge_expired(self, *, at: Optional[datetime] = None) -> int:
        return 0


class MemoryStore(TTLStore):
    """Process-local store; expired entries are dropped lazily on access."""

    def __init__(self) -> None:
        self._data: Dict[str, Tuple[Record, Optional[datetime]]] = {}

    def get(self, key: str, *, at: Optional[datetime] = None) -> Optional[Record]:
        entry = self._data.get(key)
        if entry is None:
            return None
        value, expires_at = entry
        if expires_at is not None and (at or now_local()) >= expires_at:
            self._data.pop(key, None)
            self._changed()
            return None
        return dict(value)

    def set(self, key: str, value: Record, *, ttl: Optional[timedelta] = None, at: Optional[datetime] = None) -> None:
        expires_at = (at or now_local()) + ttl if ttl is not None else None
        self._data[key] = (dict(value), expires_at)
        self._changed()

    def delete(self, key: str) -> bool:
        existed = self._data.pop(key, None) is not None
        if existed:
            self._changed()
        return existed

    def items(self, *, at: Optional[datetime] = None) -> Iterator[Tuple[str, Record]]:
        moment = at or now_local()
        for key, (value, expires_at) in list(self._data.items()):
            if expires_at is None or moment < expires_at:
                yield key, dict(value)

    def purge_expired(self, *, at: Optional[datetime] = None) -> int:
        moment = at or now_local()
        expired = [key for key, (_, expires_at) in self._data.items() if expires_at is not None and moment >= expires_at]
        for key in expired:
            self._data.pop(key, None)
        if expired:
            self._changed()
        return len(expired)

    def __len__(self) -> int:
        return len(self._data)

    def _changed(self) -> None:
        """Hook invoked after every mutation."""


class JsonFileStore(MemoryStore):
    """Memory store that snapshots itself to a JSON file after each write.

    Entries that are already expired, or that cannot be parsed, are skipped
    when the snapshot is loaded.
    """

    def __init__(self, path: Path | str) -> None:
        super().__init__()
        self.path = Path(path)
        self._load()

    def _load(self) -> None:
        if not self.path.exists():
            return
        try:
            raw = json.loads(self.path.read_text(encoding="utf-8") or "{}")
        except json.JSONDecodeError:
            return
        if not isinstance(raw, dict):
            return
        now = now_local()
        for key, payload in raw.items():
            if not isinstance(payload, dict) or not isinstance(payload.get("value"), dict):
                continue
            expires_raw = payload.get("expires_at")
            try:
                expires_at = datetime.fromisoformat(expires_raw) if expires_raw else None
            except (TypeError, ValueError):
                continue
            if expires_at is not None and expires_at <= now:
                continue
            self._data[str(key)] = (payload["value"], expires_at)

    def _changed(self) -> None:
        snapshot = {
            key: {"value": value, "expires_at": expires_at.isoformat() if expires_at else None}
            for key, (value, expires_at) in self._data.items()
        }
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_suffix(self.path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(snapshot, sort_keys=True), encoding="utf-8")
        tmp_path.replace(self.path)


__all__ = ["JsonFileStore", "MemoryStore", "Record", "TTLStore"]
