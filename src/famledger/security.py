"""Password hashing, CSRF tokens, sessions and login rate limiting."""

from __future__ import annotations

import hashlib
import hmac
import json
import secrets
from dataclasses import asdict, dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, List, Mapping, Optional

from passlib.context import CryptContext

from .clock import now_local
from .stores import Record, TTLStore

# log2 of the scrypt work factor (N=16384)
SCRYPT_ROUNDS = 14

CLIENT_IP_HEADERS = ("x-forwarded-for", "x-real-ip", "x-client-ip", "cf-connecting-ip")


# ------------------------------------------------------------------
# Passwords
# ------------------------------------------------------------------
pwd_context = CryptContext(schemes=["scrypt"], deprecated="auto", scrypt__rounds=SCRYPT_ROUNDS)


def hash_password(password: str) -> str:
    """Return a modular-crypt scrypt hash (``$scrypt$...``) for ``password``."""

    return pwd_context.hash(password)


def verify_password(password: str, stored_hash: Optional[str]) -> bool:
    """Check ``password`` against a stored hash; malformed hashes never match."""

    if not stored_hash:
        return False
    try:
        return pwd_context.verify(password, stored_hash)
    except ValueError:
        return False


# ------------------------------------------------------------------
# CSRF and request fingerprinting
# ------------------------------------------------------------------
def generate_csrf_token() -> str:
    return secrets.token_hex(32)


def csrf_tokens_match(expected: Optional[str], provided: Optional[str]) -> bool:
    if not expected or not provided:
        return False
    return hmac.compare_digest(expected.encode("utf-8"), provided.encode("utf-8"))


def extract_csrf_token(
    form: Optional[Mapping[str, object]],
    headers: Mapping[str, str],
    *,
    field_name: str = "_csrf_token",
    header_names: Iterable[str] = ("x-csrf-token", "x-xsrf-token"),
) -> Optional[str]:
    """Find the submitted token in the form body, then in the request headers."""

    if form is not None:
        value = form.get(field_name)
        if isinstance(value, str) and value:
            return value
    for name in header_names:
        value = headers.get(name)
        if value:
            return value
    return None


def client_ip(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    forwarded = headers.get("x-forwarded-for")
    if forwarded:
        first = forwarded.split(",")[0].strip()
        if first:
            return first
    for name in CLIENT_IP_HEADERS[1:]:
        value = headers.get(name)
        if value:
            return value.strip()
    return peer or "unknown"


def request_fingerprint(headers: Mapping[str, str], peer: Optional[str] = None) -> str:
    """Hash the stable parts of a client's request headers."""

    payload = {
        "userAgent": headers.get("user-agent", ""),
        "acceptLanguage": headers.get("accept-language", ""),
        "acceptEncoding": headers.get("accept-encoding", ""),
        "ip": client_ip(headers, peer),
    }
    return hashlib.sha256(json.dumps(payload, sort_keys=True).encode("utf-8")).hexdigest()


# ------------------------------------------------------------------
# Sessions
# ------------------------------------------------------------------
@dataclass(slots=True)
class SessionRecord:
    """Represents an authenticated session with CSRF metadata."""

    id: str
    user_id: int
    username: str
    email: str
    fingerprint: str
    csrf_token: str
    long_term: bool = False
    created_at: datetime = field(default_factory=now_local)

    def to_record(self) -> Record:
        data = asdict(self)
        data["created_at"] = self.created_at.isoformat()
        return data

    @classmethod
    def from_record(cls, data: Record) -> "SessionRecord":
        return cls(
            id=str(data["id"]),
            user_id=int(data["user_id"]),
            username=str(data.get("username", "")),
            email=str(data.get("email", "")),
            fingerprint=str(data.get("fingerprint", "")),
            csrf_token=str(data.get("csrf_token", "")),
            long_term=bool(data.get("long_term", False)),
            created_at=datetime.fromisoformat(data["created_at"]),
        )


class SessionManager:
    """Create, validate and revoke sessions kept in a :class:`TTLStore`."""

    def __init__(
        self,
        store: TTLStore,
        *,
        short_lifetime: timedelta = timedelta(hours=24),
        long_lifetime: timedelta = timedelta(days=30),
    ) -> None:
        self.store = store
        self.short_lifetime = short_lifetime
        self.long_lifetime = long_lifetime

    def lifetime(self, long_term: bool) -> timedelta:
        return self.long_lifetime if long_term else self.short_lifetime

    def create(
        self,
        *,
        user_id: int,
        username: str,
        email: str,
        fingerprint: str = "",
        long_term: bool = False,
        at: Optional[datetime] = None,
    ) -> SessionRecord:
        now = at or now_local()
        record = SessionRecord(
            id=secrets.token_hex(32),
            user_id=user_id,
            username=username,
            email=email,
            fingerprint=fingerprint,
            csrf_token=generate_csrf_token(),
            long_term=long_term,
            created_at=now,
        )
        self.store.set(record.id, record.to_record(), ttl=self.lifetime(long_term), at=now)
        return record

    def get(self, session_id: Optional[str], *, at: Optional[datetime] = None) -> Optional[SessionRecord]:
        if not session_id:
            return None
        data = self.store.get(session_id, at=at)
        if data is None:
            return None
        try:
            return SessionRecord.from_record(data)
        except (KeyError, TypeError, ValueError):
            self.store.delete(session_id)
            return None

    def validate(
        self,
        session_id: Optional[str],
        *,
        fingerprint: Optional[str] = None,
        at: Optional[datetime] = None,
    ) -> Optional[SessionRecord]:
        """Return the session when it exists, is unexpired and matches ``fingerprint``."""

        record = self.get(session_id, at=at)
        if record is None:
            return None
        now = at or now_local()
        if now - record.created_at >= self.lifetime(record.long_term):
            self.store.delete(record.id)
            return None
        if fingerprint is not None and record.fingerprint and not hmac.compare_digest(
            record.fingerprint, fingerprint
        ):
            return None
        return record

    def destroy(self, session_id: Optional[str]) -> bool:
        if not session_id:
            return False
        return self.store.delete(session_id)

    def sessions_for(self, user_id: int, *, at: Optional[datetime] = None) -> List[SessionRecord]:
        records: List[SessionRecord] = []
        for _, data in self.store.items(at=at):
            if int(data.get("user_id", -1)) == user_id:
                records.append(SessionRecord.from_record(data))
        return records

    def destroy_other_user_sessions(self, user_id: int, current_session_id: Optional[str]) -> int:
        destroyed = 0
        for record in self.sessions_for(user_id):
            if record.id != current_session_id and self.store.delete(record.id):
                destroyed += 1
        return destroyed

    def destroy_all_user_sessions(self, user_id: int) -> int:
        return self.destroy_other_user_sessions(user_id, None)

    def update_user_data(self, session_id: str, *, username: Optional[str] = None, email: Optional[str] = None) -> bool:
        record = self.get(session_id)
        if record is None:
            return False
        if username is not None:
            record.username = username
        if email is not None:
            record.email = email
        self._save(record)
        return True

    def rotate_csrf(self, session_id: str) -> str:
        record = self.get(session_id)
        if record is None:
            raise KeyError(f"Unknown session id '{session_id}'.")
        record.csrf_token = generate_csrf_token()
        self._save(record)
        return record.csrf_token

    def _save(self, record: SessionRecord) -> None:
        remaining = record.created_at + self.lifetime(record.long_term) - now_local()
        self.store.set(record.id, record.to_record(), ttl=max(remaining, timedelta(0)))


# ------------------------------------------------------------------
# Rate limiting helpers
# ------------------------------------------------------------------
@dataclass(slots=True)
class BlockStatus:
    blocked: bool
    reason: Optional[str] = None
    unblock_at: Optional[datetime] = None


class RateLimiter:
    """Count failed logins per client IP and per email address."""

    IP_REASON = "IP address blocked due to too many failed login attempts"
    EMAIL_REASON = "Email address blocked due to too many failed login attempts"

    def __init__(
        self,
        store: TTLStore,
        *,
        max_attempts: int = 5,
        block_duration: timedelta = timedelta(minutes=30),
        attempt_window: timedelta = timedelta(hours=1),
    ) -> None:
        self.store = store
        self.max_attempts = max_attempts
        self.block_duration = block_duration
        self.attempt_window = attempt_window

    @staticmethod
    def _keys(ip: str, email: Optional[str]) -> List[tuple[str, str]]:
        keys = [("ip", f"ip:{ip}")]
        if email:
            keys.append(("email", f"email:{email.strip().lower()}"))
        return keys

    def is_blocked(self, ip: str, email: Optional[str] = None, *, at: Optional[datetime] = None) -> BlockStatus:
        now = at or now_local()
        for kind, key in self._keys(ip, email):
            entry = self.store.get(key, at=now)
            if not entry or not entry.get("blocked_until"):
                continue
            blocked_until = datetime.fromisoformat(entry["blocked_until"])
            if now < blocked_until:
                reason = self.IP_REASON if kind == "ip" else self.EMAIL_REASON
                return BlockStatus(blocked=True, reason=reason, unblock_at=blocked_until)
            self.store.delete(key)
        return BlockStatus(blocked=False)

    def record_failure(self, ip: str, email: Optional[str] = None, *, at: Optional[datetime] = None) -> None:
        now = at or now_local()
        ttl = max(self.attempt_window, self.block_duration)
        for _, key in self._keys(ip, email):
            entry = self.store.get(key, at=now) or {"count": 0, "last_attempt": None, "blocked_until": None}
            last_attempt = entry.get("last_attempt")
            blocked_until = entry.get("blocked_until")
            window_passed = last_attempt and now - datetime.fromisoformat(last_attempt) > self.attempt_window
            block_expired = blocked_until and now >= datetime.fromisoformat(blocked_until)
            if window_passed or block_expired:
                entry["count"] = 0
                entry["blocked_until"] = None
            entry["count"] = int(entry.get("count", 0)) + 1
            entry["last_attempt"] = now.isoformat()
            if entry["count"] >= self.max_attempts:
                entry["blocked_until"] = (now + self.block_duration).isoformat()
            self.store.set(key, entry, ttl=ttl, at=now)

    def clear(self, ip: str, email: Optional[str] = None) -> None:
        for _, key in self._keys(ip, email):
            self.store.delete(key)

    def remaining_attempts(self, ip: str, email: Optional[str] = None, *, at: Optional[datetime] = None) -> int:
        used = 0
        for _, key in self._keys(ip, email):
            entry = self.store.get(key, at=at)
            if entry:
                used = max(used, int(entry.get("count", 0)))
        return max(0, self.max_attempts - used)


__all__ = [
    "BlockStatus",
    "RateLimiter",
    "SessionManager",
    "SessionRecord",
    "client_ip",
    "csrf_tokens_match",
    "extract_csrf_token",
    "generate_csrf_token",
    "hash_password",
    "pwd_context",
    "request_fingerprint",
    "verify_password",
]
