"""Caller resolution and family scoping shared by every action handler."""
from __future__ import annotations

from typing import Optional, Type

from sqlalchemy import func
from sqlmodel import Session, SQLModel, select

from ..exceptions import AuthenticationRequiredError, FamilyRequiredError, PermissionDeniedError
from ..models import Actor, UserRole
from .persistence import User


def resolve_actor(db: Session, user_id: Optional[int]) -> Actor:
    """Load the signed-in user as an :class:`Actor`."""

    if user_id is None:
        raise AuthenticationRequiredError()
    user = db.get(User, user_id)
    if user is None or user.deleted_at is not None:
        raise AuthenticationRequiredError("Invalid session")
    return Actor(
        user_id=user.id,
        family_id=user.family_id,
        role=UserRole(user.role),
        username=user.username,
        email=user.email,
    )


def require_family(actor: Actor) -> int:
    if actor.family_id is None:
        raise FamilyRequiredError()
    return actor.family_id


def require_admin(actor: Actor, message: str) -> int:
    family_id = require_family(actor)
    if not actor.is_admin:
        raise PermissionDeniedError(message)
    return family_id


def active_name_taken(
    db: Session,
    model: Type[SQLModel],
    family_id: int,
    name: str,
    *,
    exclude_id: Optional[int] = None,
) -> bool:
    """Return whether another active row of ``model`` in the family uses ``name`` (case-insensitive)."""

    query = select(model).where(
        model.family_id == family_id,  # type: ignore[attr-defined]
        model.deleted_at.is_(None),  # type: ignore[attr-defined]
        func.lower(model.name) == name.strip().lower(),  # type: ignore[attr-defined]
    )
    if exclude_id is not None:
        query = query.where(model.id != exclude_id)  # type: ignore[attr-defined]
    return db.exec(query).first() is not None


__all__ = ["active_name_taken", "require_admin", "require_family", "resolve_actor"]
