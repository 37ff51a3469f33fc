"""Replaceable wall clock used for timestamps across famledger."""

from __future__ import annotations

from datetime import datetime
from typing import Callable

_time_provider: Callable[[], datetime] = datetime.now


def now_local() -> datetime:
    """Return naive local time using the configured provider."""

    return _time_provider()


def set_time_provider(provider: Callable[[], datetime] | None) -> None:
    global _time_provider
    _time_provider = provider or datetime.now


__all__ = ["now_local", "set_time_provider"]
