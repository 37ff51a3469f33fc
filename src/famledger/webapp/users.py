"""Registration, login and profile handlers."""
from __future__ import annotations

from typing import Any, Dict, Optional, Tuple

from sqlalchemy import func
from sqlmodel import Session, select

from ..clock import now_local
from ..exceptions import ConflictError, NotFoundError, RateLimitedError, ValidationError
from ..models import Actor, UserRole
from ..security import RateLimiter, SessionManager, SessionRecord, hash_password, verify_password
from .forms import require_text
from .persistence import Account, RecurringTransaction, Transaction, User, serialize

INVALID_CREDENTIALS = "Invalid email or password"
MIN_PASSWORD_LENGTH = 6


def _clean_email(value: Optional[str]) -> str:
    email = (value or "").strip().lower()
    if not email:
        raise ValidationError("Email is required")
    if "@" not in email or "." not in email:
        raise ValidationError("Please enter a valid email address")
    return email


def _check_password(value: Optional[str], label: str = "Password") -> str:
    password = value or ""
    if len(password) < MIN_PASSWORD_LENGTH:
        raise ValidationError(f"{label} must be at least {MIN_PASSWORD_LENGTH} characters")
    return password


def _email_taken(db: Session, email: str, *, exclude_id: Optional[int] = None) -> bool:
    query = select(User).where(func.lower(User.email) == email)
    if exclude_id is not None:
        query = query.where(User.id != exclude_id)
    return db.exec(query).first() is not None


def register_user(
    db: Session,
    sessions: SessionManager,
    *,
    username: str,
    email: str,
    password: str,
    fingerprint: str = "",
) -> Tuple[User, SessionRecord]:
    """Create a user account and sign it in with a short lived session."""

    clean_username = require_text(username, "Username", min_length=4, max_length=50)
    clean_email = _clean_email(email)
    clean_password = _check_password(password)
    if _email_taken(db, clean_email):
        raise ConflictError("User with this email already exists")
    user = User(
        username=clean_username,
        email=clean_email,
        password_hash=hash_password(clean_password),
        role=UserRole.ADMIN.value,
        last_login=now_local(),
    )
    db.add(user)
    db.commit()
    db.refresh(user)
    record = sessions.create(
        user_id=user.id, username=user.username, email=user.email, fingerprint=fingerprint, long_term=False
    )
    return user, record


def login_user(
    db: Session,
    sessions: SessionManager,
    limiter: RateLimiter,
    *,
    email: str,
    password: str,
    remember: bool = False,
    ip: str = "unknown",
    fingerprint: str = "",
) -> Tuple[User, SessionRecord]:
    clean_email = (email or "").strip().lower()
    status = limiter.is_blocked(ip, clean_email)
    if status.blocked:
        raise RateLimitedError(status.reason or INVALID_CREDENTIALS, status.unblock_at)
    if not clean_email or not password:
        raise ValidationError("Email and password are required")
    user = db.exec(
        select(User).where(func.lower(User.email) == clean_email, User.deleted_at.is_(None))
    ).first()
    if user is None or not verify_password(password, user.password_hash):
        limiter.record_failure(ip, clean_email)
        raise ValidationError(INVALID_CREDENTIALS)
    limiter.clear(ip, clean_email)
    user.last_login = now_local()
    db.add(user)
    db.commit()
    record = sessions.create(
        user_id=user.id, username=user.username, email=user.email, fingerprint=fingerprint, long_term=remember
    )
    return user, record


def logout_user(sessions: SessionManager, session_id: Optional[str]) -> bool:
    return sessions.destroy(session_id)


def get_user(db: Session, actor: Actor) -> Dict[str, Any]:
    user = db.get(User, actor.user_id)
    if user is None:
        raise NotFoundError("User not found")
    transaction_count = db.exec(
        select(func.count(Transaction.id)).where(Transaction.user_id == user.id, Transaction.deleted_at.is_(None))
    ).one()
    recurring_count = db.exec(
        select(func.count(RecurringTransaction.id)).where(
            RecurringTransaction.user_id == user.id, RecurringTransaction.deleted_at.is_(None)
        )
    ).one()
    account_count = 0
    if user.family_id is not None:
        account_count = db.exec(
            select(func.count(Account.id)).where(Account.family_id == user.family_id, Account.deleted_at.is_(None))
        ).one()
    return serialize(
        user,
        transaction_count=transaction_count,
        recurring_transaction_count=recurring_count,
        account_count=account_count,
    )


def update_profile(
    db: Session,
    sessions: SessionManager,
    actor: Actor,
    session_id: Optional[str],
    *,
    username: str,
    email: str,
) -> User:
    user = db.get(User, actor.user_id)
    if user is None:
        raise NotFoundError("User not found")
    clean_username = require_text(username, "Username", max_length=50)
    clean_email = _clean_email(email)
    if _email_taken(db, clean_email, exclude_id=user.id):
        raise ConflictError("Email is already in use by another account")
    user.username = clean_username
    user.email = clean_email
    user.updated_at = now_local()
    db.add(user)
    db.commit()
    if session_id:
        sessions.update_user_data(session_id, username=user.username, email=user.email)
    return user


def change_password(
    db: Session,
    sessions: SessionManager,
    actor: Actor,
    session_id: Optional[str],
    *,
    current_password: str,
    new_password: str,
) -> int:
    """Replace the password and sign out every other session; return how many were ended."""

    user = db.get(User, actor.user_id)
    if user is None:
        raise NotFoundError("User not found")
    if not current_password:
        raise ValidationError("Current password is required")
    clean_password = _check_password(new_password, "New password")
    if not verify_password(current_password, user.password_hash):
        raise ValidationError("Current password is incorrect")
    user.password_hash = hash_password(clean_password)
    user.updated_at = now_local()
    db.add(user)
    db.commit()
    return sessions.destroy_other_user_sessions(user.id, session_id)


__all__ = [
    "change_password",
    "get_user",
    "login_user",
    "logout_user",
    "register_user",
    "update_profile",
]
