import json
from datetime import datetime, timedelta

from famledger.security import (
    RateLimiter,
    SessionManager,
    client_ip,
    csrf_tokens_match,
    extract_csrf_token,
    generate_csrf_token,
    hash_password,
    pwd_context,
    request_fingerprint,
    verify_password,
)
from famledger.stores import JsonFileStore, MemoryStore

NOW = datetime(2024, 1, 5, 12, 0)


def test_password_hash_round_trip() -> None:
    stored = hash_password("correct horse")
    assert stored.startswith("$scrypt$ln=14,")
    assert pwd_context.identify(stored) == "scrypt"
    assert verify_password("correct horse", stored)
    assert not verify_password("wrong horse", stored)
    assert hash_password("correct horse") != stored


def test_malformed_hashes_never_verify() -> None:
    assert not verify_password("anything", None)
    assert not verify_password("anything", "")
    assert not verify_password("anything", "no-separator")
    assert not verify_password("anything", "abcd:abcd")


def test_csrf_token_extraction_prefers_form() -> None:
    token = generate_csrf_token()
    assert len(token) == 64
    assert extract_csrf_token({"_csrf_token": token}, {"x-csrf-token": "other"}) == token
    assert extract_csrf_token({}, {"x-xsrf-token": token}) == token
    assert extract_csrf_token(None, {}) is None
    assert csrf_tokens_match(token, token)
    assert not csrf_tokens_match(token, None)
    assert not csrf_tokens_match(token, generate_csrf_token())


def test_client_ip_and_fingerprint() -> None:
    assert client_ip({"x-forwarded-for": "203.0.113.9, 10.0.0.1"}) == "203.0.113.9"
    assert client_ip({"cf-connecting-ip": "198.51.100.2"}) == "198.51.100.2"
    assert client_ip({}, "127.0.0.1") == "127.0.0.1"
    assert client_ip({}) == "unknown"
    headers = {"user-agent": "pytest", "accept-language": "en"}
    assert request_fingerprint(headers, "1.2.3.4") == request_fingerprint(dict(headers), "1.2.3.4")
    assert request_fingerprint(headers, "1.2.3.4") != request_fingerprint(headers, "5.6.7.8")


def test_memory_store_expiry() -> None:
    store = MemoryStore()
    store.set("a", {"n": 1}, ttl=timedelta(minutes=5), at=NOW)
    store.set("b", {"n": 2}, at=NOW)
    assert store.get("a", at=NOW + timedelta(minutes=4)) == {"n": 1}
    assert dict(store.items(at=NOW + timedelta(minutes=6))) == {"b": {"n": 2}}
    assert store.purge_expired(at=NOW + timedelta(minutes=6)) == 1
    assert store.get("a", at=NOW) is None
    assert store.delete("b")
    assert not store.delete("b")


def test_json_file_store_survives_reload(tmp_path) -> None:
    path = tmp_path / "state" / "sessions.json"
    store = JsonFileStore(path)
    store.set("live", {"user_id": 1}, ttl=timedelta(days=365))
    store.set("stale", {"user_id": 2}, ttl=timedelta(hours=1), at=datetime.now() - timedelta(hours=2))
    assert json.loads(path.read_text(encoding="utf-8"))["live"]["value"] == {"user_id": 1}

    reloaded = JsonFileStore(path)
    assert reloaded.get("live") == {"user_id": 1}
    assert "stale" not in dict(reloaded.items())

    path.write_text("not json", encoding="utf-8")
    assert len(JsonFileStore(path)) == 0


def test_session_lifetimes() -> None:
    sessions = SessionManager(MemoryStore())
    short = sessions.create(user_id=1, username="alice", email="a@example.com", at=NOW)
    remembered = sessions.create(user_id=1, username="alice", email="a@example.com", long_term=True, at=NOW)
    later = NOW + timedelta(hours=25)
    assert sessions.validate(short.id, at=NOW + timedelta(hours=23)) is not None
    assert sessions.validate(short.id, at=later) is None
    assert sessions.validate(remembered.id, at=later).user_id == 1
    assert sessions.validate(remembered.id, at=NOW + timedelta(days=31)) is None
    assert sessions.validate(None) is None
    assert sessions.validate("missing") is None


def test_session_fingerprint_mismatch() -> None:
    sessions = SessionManager(MemoryStore())
    record = sessions.create(user_id=3, username="carol", email="c@example.com", fingerprint="abc")
    assert sessions.validate(record.id, fingerprint="abc") is not None
    assert sessions.validate(record.id, fingerprint="xyz") is None
    assert sessions.validate(record.id) is not None


def test_session_revocation_and_updates() -> None:
    sessions = SessionManager(MemoryStore())
    current = sessions.create(user_id=7, username="dana", email="d@example.com")
    sessions.create(user_id=7, username="dana", email="d@example.com")
    sessions.create(user_id=7, username="dana", email="d@example.com", long_term=True)
    other_user = sessions.create(user_id=8, username="eve", email="e@example.com")

    assert sessions.destroy_other_user_sessions(7, current.id) == 2
    assert [record.id for record in sessions.sessions_for(7)] == [current.id]
    assert sessions.get(other_user.id) is not None

    assert sessions.update_user_data(current.id, username="dana2", email="d2@example.com")
    refreshed = sessions.get(current.id)
    assert (refreshed.username, refreshed.email) == ("dana2", "d2@example.com")

    old_token = refreshed.csrf_token
    assert sessions.rotate_csrf(current.id) != old_token
    assert sessions.destroy_all_user_sessions(7) == 1
    assert sessions.get(current.id) is None


def test_rate_limiter_blocks_ip_after_five_failures() -> None:
    limiter = RateLimiter(MemoryStore())
    for minute in range(4):
        limiter.record_failure("10.0.0.1", "a@example.com", at=NOW + timedelta(minutes=minute))
    assert not limiter.is_blocked("10.0.0.1", "a@example.com", at=NOW + timedelta(minutes=4)).blocked
    assert limiter.remaining_attempts("10.0.0.1", "a@example.com", at=NOW + timedelta(minutes=4)) == 1

    limiter.record_failure("10.0.0.1", "a@example.com", at=NOW + timedelta(minutes=4))
    status = limiter.is_blocked("10.0.0.1", "a@example.com", at=NOW + timedelta(minutes=5))
    assert status.blocked
    assert status.reason == RateLimiter.IP_REASON
    assert status.unblock_at == NOW + timedelta(minutes=34)

    assert not limiter.is_blocked("10.0.0.1", "a@example.com", at=NOW + timedelta(minutes=35)).blocked


def test_rate_limiter_blocks_email_across_addresses() -> None:
    limiter = RateLimiter(MemoryStore())
    for index in range(5):
        limiter.record_failure(f"10.0.0.{index}", "Target@Example.com", at=NOW)
    status = limiter.is_blocked("192.168.1.1", "target@example.com", at=NOW)
    assert status.blocked
    assert status.reason == RateLimiter.EMAIL_REASON
    limiter.clear("192.168.1.1", "target@example.com")
    assert not limiter.is_blocked("192.168.1.1", "target@example.com", at=NOW).blocked


def test_rate_limiter_window_resets_count() -> None:
    limiter = RateLimiter(MemoryStore())
    for minute in range(4):
        limiter.record_failure("10.0.0.1", at=NOW + timedelta(minutes=minute))
    later = NOW + timedelta(minutes=3, hours=1, seconds=1)
    limiter.record_failure("10.0.0.1", at=later)
    assert not limiter.is_blocked("10.0.0.1", at=later).blocked
    assert limiter.remaining_attempts("10.0.0.1", at=later) == 4
