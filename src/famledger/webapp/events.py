"""Process wide structured event log for the web frontend."""
from __future__ import annotations

from ..ops import StructuredLogger
from .config import LOG_FILE

event_log = StructuredLogger(path=LOG_FILE)

__all__ = ["event_log"]
