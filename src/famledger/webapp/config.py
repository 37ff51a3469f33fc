"""Configuration constants for the famledger web frontend."""
from __future__ import annotations

import os
from datetime import timedelta
from pathlib import Path
from typing import Optional, Tuple

from dotenv import load_dotenv

load_dotenv()


def _env_flag(name: str, default: bool = False) -> bool:
    raw = os.environ.get(name)
    if raw is None:
        return default
    return raw.strip().lower() in {"1", "true", "yes", "on"}


SESSION_SECRET = os.environ.get("SESSION_SECRET", "change-this-session-secret")
SQLITE_FILE_NAME = os.environ.get("FAMLEDGER_SQLITE", "famledger.db")
DATABASE_URL = os.environ.get("FAMLEDGER_DATABASE_URL", f"sqlite:///{SQLITE_FILE_NAME}")
SESSIONS_FILE = Path(os.environ.get("FAMLEDGER_SESSIONS_FILE", "sessions.json"))
RATE_LIMIT_FILE = Path(os.environ.get("FAMLEDGER_RATE_LIMIT_FILE", "rate-limits.json"))
_log_file = os.environ.get("FAMLEDGER_LOG_FILE")
LOG_FILE: Optional[Path] = Path(_log_file) if _log_file else None

AUTH_COOKIE_NAME = "famledger-auth"
SHORT_SESSION_LIFETIME = timedelta(hours=24)
LONG_SESSION_LIFETIME = timedelta(days=30)
SHORT_SESSION_MAX_AGE = int(SHORT_SESSION_LIFETIME.total_seconds())
LONG_SESSION_MAX_AGE = int(LONG_SESSION_LIFETIME.total_seconds())
ENFORCE_FINGERPRINT = _env_flag("FAMLEDGER_ENFORCE_FINGERPRINT")

CSRF_FORM_FIELD = "_csrf_token"
CSRF_HEADER_NAMES: Tuple[str, ...] = ("x-csrf-token", "x-xsrf-token")

LOGIN_MAX_ATTEMPTS = 5
LOGIN_BLOCK_DURATION = timedelta(minutes=30)
LOGIN_ATTEMPT_WINDOW = timedelta(hours=1)

PUBLIC_PATHS: Tuple[str, ...] = ("/", "/login", "/register", "/health")
MAX_BULK_IDS = 10
DEFAULT_PAGE_SIZE = 20
DEFAULT_ACCOUNT_COLOR = "#6172F3"
DEFAULT_CATEGORY_COLOR = "#6172F3"
DEFAULT_TAG_COLOR = "#e99537"

__all__ = [
    "AUTH_COOKIE_NAME",
    "CSRF_FORM_FIELD",
    "CSRF_HEADER_NAMES",
    "DATABASE_URL",
    "DEFAULT_ACCOUNT_COLOR",
    "DEFAULT_CATEGORY_COLOR",
    "DEFAULT_PAGE_SIZE",
    "DEFAULT_TAG_COLOR",
    "ENFORCE_FINGERPRINT",
    "LOGIN_ATTEMPT_WINDOW",
    "LOGIN_BLOCK_DURATION",
    "LOGIN_MAX_ATTEMPTS",
    "LOG_FILE",
    "LONG_SESSION_LIFETIME",
    "LONG_SESSION_MAX_AGE",
    "MAX_BULK_IDS",
    "PUBLIC_PATHS",
    "RATE_LIMIT_FILE",
    "SESSIONS_FILE",
    "SESSION_SECRET",
    "SHORT_SESSION_LIFETIME",
    "SHORT_SESSION_MAX_AGE",
    "SQLITE_FILE_NAME",
]
