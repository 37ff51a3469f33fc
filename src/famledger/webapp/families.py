"""Family membership handlers."""
from __future__ import annotations

from typing import Any, Dict, List

from sqlalchemy import func, update
from sqlmodel import Session, select

from ..clock import now_local
from ..exceptions import ConflictError, FamilyRequiredError, NotFoundError, PermissionDeniedError, ValidationError
from ..models import Actor, UserRole
from .context import require_admin
from .forms import parse_enum, parse_id, require_text
from .persistence import (
    Account,
    AccountBalance,
    Category,
    Family,
    RecurringTransaction,
    Tag,
    Transaction,
    User,
    serialize,
)


def _members(db: Session, family_id: int) -> List[User]:
    return list(
        db.exec(
            select(User).where(User.family_id == family_id, User.deleted_at.is_(None)).order_by(User.username)
        ).all()
    )


def _admin_count(db: Session, family_id: int) -> int:
    return db.exec(
        select(func.count(User.id)).where(
            User.family_id == family_id, User.role == UserRole.ADMIN.value, User.deleted_at.is_(None)
        )
    ).one()


def _load_user(db: Session, actor: Actor) -> User:
    user = db.get(User, actor.user_id)
    if user is None:
        raise NotFoundError("User not found")
    return user


def _get_active_family(db: Session, family_id: int) -> Family:
    family = db.exec(select(Family).where(Family.id == family_id, Family.deleted_at.is_(None))).first()
    if family is None:
        raise NotFoundError("Family not found")
    return family


def get_families(db: Session) -> List[Dict[str, Any]]:
    families = db.exec(select(Family).where(Family.deleted_at.is_(None)).order_by(Family.name)).all()
    counts = dict(
        db.exec(
            select(User.family_id, func.count(User.id))
            .where(User.deleted_at.is_(None), User.family_id.is_not(None))
            .group_by(User.family_id)
        ).all()
    )
    return [serialize(family, user_count=counts.get(family.id, 0)) for family in families]


def get_family_details(db: Session, actor: Actor) -> Dict[str, Any]:
    if actor.family_id is None:
        raise FamilyRequiredError("You don't belong to any family")
    family = _get_active_family(db, actor.family_id)
    members = _members(db, family.id)
    return serialize(
        family,
        members=[serialize(member) for member in members],
        user_count=len(members),
        is_admin=actor.is_admin,
    )


def create_family(db: Session, actor: Actor, *, name: str) -> Family:
    user = _load_user(db, actor)
    if user.family_id is not None:
        raise ConflictError("You already belong to a family")
    family = Family(name=require_text(name, "Family name", max_length=100))
    db.add(family)
    db.flush()
    user.family_id = family.id
    user.role = UserRole.ADMIN.value
    user.updated_at = now_local()
    db.add(user)
    db.commit()
    db.refresh(family)
    return family


def join_family(db: Session, actor: Actor, family_id: object) -> Family:
    """Join an existing family; the first member to arrive becomes its admin."""

    user = _load_user(db, actor)
    if user.family_id is not None:
        raise ConflictError("You already belong to a family")
    family = _get_active_family(db, parse_id(family_id, "Family"))
    user.role = (UserRole.MEMBER if _members(db, family.id) else UserRole.ADMIN).value
    user.family_id = family.id
    user.updated_at = now_local()
    db.add(user)
    db.commit()
    return family


def leave_family(db: Session, actor: Actor) -> None:
    user = _load_user(db, actor)
    if user.family_id is None:
        raise FamilyRequiredError("You don't belong to any family")
    members = _members(db, user.family_id)
    if user.role == UserRole.ADMIN.value and len(members) > 1 and _admin_count(db, user.family_id) <= 1:
        raise ConflictError("Cannot leave family: You are the only admin. Promote another member to admin first.")
    user.family_id = None
    user.role = UserRole.MEMBER.value
    user.updated_at = now_local()
    db.add(user)
    db.commit()


def leave_and_delete_family(db: Session, actor: Actor) -> None:
    """Soft delete the family and everything it owns, then detach the caller."""

    user = _load_user(db, actor)
    if user.family_id is None:
        raise FamilyRequiredError("You don't belong to any family")
    if user.role != UserRole.ADMIN.value:
        raise PermissionDeniedError("Only administrators can delete the family")
    family_id = user.family_id
    if any(member.id != user.id for member in _members(db, family_id)):
        raise ConflictError("Cannot delete family: There are other members in the family")

    stamp = now_local()
    account_ids = select(Account.id).where(Account.family_id == family_id)
    live = {"deleted_at": stamp, "updated_at": stamp}
    db.exec(
        update(RecurringTransaction)
        .where(RecurringTransaction.account_id.in_(account_ids), RecurringTransaction.deleted_at.is_(None))
        .values(**live)
    )
    db.exec(
        update(Transaction)
        .where(Transaction.account_id.in_(account_ids), Transaction.deleted_at.is_(None))
        .values(**live)
    )
    db.exec(
        update(AccountBalance)
        .where(AccountBalance.account_id.in_(account_ids), AccountBalance.deleted_at.is_(None))
        .values(**live)
    )
    for model in (Account, Category, Tag):
        db.exec(update(model).where(model.family_id == family_id, model.deleted_at.is_(None)).values(**live))
    db.exec(update(Family).where(Family.id == family_id).values(**live))
    user.family_id = None
    user.role = UserRole.MEMBER.value
    user.updated_at = stamp
    db.add(user)
    db.commit()


def update_user_role(db: Session, actor: Actor, user_id: object, role: str) -> User:
    family_id = require_admin(actor, "Only admins can change user roles")
    new_role = parse_enum(UserRole, role, "Role")
    target = db.exec(
        select(User).where(User.id == parse_id(user_id, "User"), User.family_id == family_id, User.deleted_at.is_(None))
    ).first()
    if target is None:
        raise NotFoundError("User not found in your family")
    if target.id == actor.user_id and new_role is UserRole.MEMBER and _admin_count(db, family_id) <= 1:
        raise ValidationError("Cannot demote yourself: You are the only admin")
    target.role = new_role.value
    target.updated_at = now_local()
    db.add(target)
    db.commit()
    return target


def remove_user_from_family(db: Session, actor: Actor, user_id: object) -> User:
    family_id = require_admin(actor, "Only admins can remove users from family")
    target = db.exec(
        select(User).where(User.id == parse_id(user_id, "User"), User.family_id == family_id, User.deleted_at.is_(None))
    ).first()
    if target is None:
        raise NotFoundError("User not found in your family")
    if (
        target.id == actor.user_id
        and _admin_count(db, family_id) <= 1
        and len(_members(db, family_id)) > 1
    ):
        raise ValidationError("Cannot remove yourself: You are the only admin")
    target.family_id = None
    target.role = UserRole.MEMBER.value
    target.updated_at = now_local()
    db.add(target)
    db.commit()
    return target


__all__ = [
    "create_family",
    "get_families",
    "get_family_details",
    "join_family",
    "leave_and_delete_family",
    "leave_family",
    "remove_user_from_family",
    "update_user_role",
]
