"""Category handlers with hierarchy validation."""
from __future__ import annotations

from typing import Any, Dict, List, Optional, Set

from sqlalchemy import case, delete, func, update
from sqlmodel import Session, select

from ..clock import now_local
from ..exceptions import ConflictError, NotFoundError, ValidationError
from ..models import Actor, BulkResult, SkipReason
from .config import DEFAULT_CATEGORY_COLOR
from .context import active_name_taken, require_family
from .forms import parse_color, parse_id_list, parse_optional_int, require_text
from .persistence import Category, RecurringTransaction, Transaction, serialize

CATEGORY_NOT_FOUND = "Category not found or not accessible"
NAME_TAKEN = "A category with this name already exists"


def _get_active(db: Session, family_id: int, category_id: int) -> Category:
    category = db.exec(
        select(Category).where(
            Category.id == category_id, Category.family_id == family_id, Category.deleted_at.is_(None)
        )
    ).first()
    if category is None:
        raise NotFoundError(CATEGORY_NOT_FOUND)
    return category


def get_active_category(db: Session, family_id: int, category_id: int) -> Category:
    return _get_active(db, family_id, category_id)


def find_or_create_category(db: Session, family_id: int, name: str) -> Category:
    """Return the active category called ``name``, creating it when missing."""

    clean_name = require_text(name, "Category name", max_length=100)
    existing = db.exec(
        select(Category).where(
            Category.family_id == family_id,
            Category.deleted_at.is_(None),
            func.lower(Category.name) == clean_name.lower(),
        )
    ).first()
    if existing is not None:
        return existing
    category = Category(family_id=family_id, name=clean_name, color=DEFAULT_CATEGORY_COLOR)
    db.add(category)
    db.flush()
    return category


def _descendant_ids(db: Session, family_id: int, category_id: int) -> Set[int]:
    found: Set[int] = set()
    frontier = [category_id]
    while frontier:
        children = db.exec(
            select(Category.id).where(
                Category.family_id == family_id,
                Category.parent_id.in_(frontier),
                Category.deleted_at.is_(None),
            )
        ).all()
        frontier = [child for child in children if child not in found]
        found.update(frontier)
    return found


def _resolve_parent(db: Session, family_id: int, parent_id: Optional[int]) -> Optional[int]:
    if parent_id is None:
        return None
    parent = db.exec(
        select(Category).where(
            Category.id == parent_id, Category.family_id == family_id, Category.deleted_at.is_(None)
        )
    ).first()
    if parent is None:
        raise NotFoundError("Parent category not found")
    return parent.id


# ---------------------------------------------------------------------------
# Reads
# ---------------------------------------------------------------------------
def get_categories(db: Session, actor: Actor, *, include_deleted: bool = False) -> List[Dict[str, Any]]:
    family_id = require_family(actor)
    query = select(Category).where(Category.family_id == family_id)
    if not include_deleted:
        query = query.where(Category.deleted_at.is_(None))
    query = query.order_by(case((Category.deleted_at.is_(None), 0), else_=1), Category.name)
    categories = db.exec(query).all()
    counts = dict(
        db.exec(
            select(Transaction.category_id, func.count(Transaction.id))
            .where(Transaction.deleted_at.is_(None), Transaction.category_id.is_not(None))
            .group_by(Transaction.category_id)
        ).all()
    )
    return [serialize(category, transaction_count=counts.get(category.id, 0)) for category in categories]


def get_category(db: Session, actor: Actor, category_id: int) -> Dict[str, Any]:
    family_id = require_family(actor)
    category = _get_active(db, family_id, category_id)
    children = db.exec(
        select(Category)
        .where(Category.parent_id == category.id, Category.deleted_at.is_(None))
        .order_by(Category.name)
    ).all()
    parent = db.get(Category, category.parent_id) if category.parent_id else None
    return serialize(
        category,
        parent=serialize(parent) if parent is not None and parent.deleted_at is None else None,
        children=[serialize(child) for child in children],
    )


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------
def create_category(
    db: Session,
    actor: Actor,
    *,
    name: str,
    color: Optional[str] = None,
    parent_id: object = None,
) -> Category:
    family_id = require_family(actor)
    clean_name = require_text(name, "Category name", max_length=100)
    clean_color = parse_color(color, DEFAULT_CATEGORY_COLOR)
    if active_name_taken(db, Category, family_id, clean_name):
        raise ConflictError(NAME_TAKEN)
    parent = _resolve_parent(db, family_id, parse_optional_int(parent_id, "Parent category", minimum=1))
    category = Category(family_id=family_id, name=clean_name, color=clean_color, parent_id=parent)
    db.add(category)
    db.commit()
    db.refresh(category)
    return category


def update_category(
    db: Session,
    actor: Actor,
    category_id: int,
    *,
    name: str,
    color: Optional[str] = None,
    parent_id: object = None,
) -> Category:
    """Rename, recolour or move a category, refusing cycles in the hierarchy."""

    family_id = require_family(actor)
    category = _get_active(db, family_id, category_id)
    clean_name = require_text(name, "Category name", max_length=100)
    clean_color = parse_color(color, category.color)
    new_parent = parse_optional_int(parent_id, "Parent category", minimum=1)
    if new_parent == category.id:
        raise ValidationError("Category cannot be its own parent")
    if active_name_taken(db, Category, family_id, clean_name, exclude_id=category.id):
        raise ConflictError(NAME_TAKEN)
    new_parent = _resolve_parent(db, family_id, new_parent)
    if new_parent is not None and new_parent in _descendant_ids(db, family_id, category.id):
        raise ValidationError("Cannot create circular reference in category hierarchy")
    category.name = clean_name
    category.color = clean_color
    category.parent_id = new_parent
    category.updated_at = now_local()
    db.add(category)
    db.commit()
    db.refresh(category)
    return category


def delete_category(db: Session, actor: Actor, category_id: int) -> Category:
    family_id = require_family(actor)
    category = _get_active(db, family_id, category_id)
    child = db.exec(
        select(Category.id).where(Category.parent_id == category.id, Category.deleted_at.is_(None))
    ).first()
    if child is not None:
        raise ConflictError("Cannot delete category with subcategories. Delete subcategories first.")
    in_use = db.exec(
        select(Transaction.id).where(Transaction.category_id == category.id, Transaction.deleted_at.is_(None))
    ).first()
    if in_use is not None:
        raise ConflictError("Cannot delete category that is being used by transactions")
    category.deleted_at = now_local()
    category.updated_at = category.deleted_at
    db.add(category)
    db.commit()
    return category


def _get_deleted(db: Session, family_id: int, category_id: int) -> Category:
    category = db.exec(
        select(Category).where(
            Category.id == category_id, Category.family_id == family_id, Category.deleted_at.is_not(None)
        )
    ).first()
    if category is None:
        raise NotFoundError("Deleted category not found")
    return category


def _reactivate(db: Session, family_id: int, category: Category) -> None:
    if category.parent_id is not None:
        parent = db.get(Category, category.parent_id)
        if parent is None or parent.deleted_at is not None or parent.family_id != family_id:
            category.parent_id = None
    category.deleted_at = None
    category.updated_at = now_local()
    db.add(category)
    db.flush()


def restore_category(db: Session, actor: Actor, category_id: int) -> Category:
    family_id = require_family(actor)
    category = _get_deleted(db, family_id, category_id)
    if active_name_taken(db, Category, family_id, category.name):
        raise ConflictError("Cannot restore: An active category with this name already exists")
    _reactivate(db, family_id, category)
    db.commit()
    return category


def _detach(db: Session, category_ids: List[int]) -> None:
    db.exec(update(Transaction).where(Transaction.category_id.in_(category_ids)).values(category_id=None))
    db.exec(
        update(RecurringTransaction)
        .where(RecurringTransaction.category_id.in_(category_ids))
        .values(category_id=None)
    )
    db.exec(
        update(Category)
        .where(Category.parent_id.in_(category_ids), Category.id.not_in(category_ids))
        .values(parent_id=None)
    )


def purge_category(db: Session, actor: Actor, category_id: int) -> None:
    """Delete a soft-deleted category for good, detaching anything that referenced it."""

    family_id = require_family(actor)
    category = _get_deleted(db, family_id, category_id)
    _detach(db, [category.id])
    db.exec(delete(Category).where(Category.id == category.id))
    db.commit()


def bulk_restore_categories(db: Session, actor: Actor, raw_ids: object) -> BulkResult:
    family_id = require_family(actor)
    result = BulkResult()
    for category_id in parse_id_list(raw_ids):
        category = db.exec(
            select(Category).where(Category.id == category_id, Category.family_id == family_id)
        ).first()
        if category is None:
            result.skip(category_id, SkipReason.NOT_FOUND)
        elif category.deleted_at is None:
            result.skip(category_id, SkipReason.NOT_DELETED_ANYMORE)
        elif active_name_taken(db, Category, family_id, category.name):
            result.skip(category_id, SkipReason.NAME_CONFLICT)
        else:
            _reactivate(db, family_id, category)
            result.affected += 1
    db.commit()
    return result


def bulk_purge_categories(db: Session, actor: Actor, raw_ids: object) -> BulkResult:
    family_id = require_family(actor)
    result = BulkResult()
    purgeable: List[int] = []
    for category_id in parse_id_list(raw_ids):
        category = db.exec(
            select(Category).where(Category.id == category_id, Category.family_id == family_id)
        ).first()
        if category is None:
            result.skip(category_id, SkipReason.NOT_FOUND)
        elif category.deleted_at is None:
            result.skip(category_id, SkipReason.NOT_DELETED_ANYMORE)
        else:
            purgeable.append(category.id)
    if purgeable:
        _detach(db, purgeable)
        db.exec(delete(Category).where(Category.id.in_(purgeable)))
        result.affected = len(purgeable)
    db.commit()
    return result


__all__ = [
    "bulk_purge_categories",
    "bulk_restore_categories",
    "create_category",
    "delete_category",
    "find_or_create_category",
    "get_active_category",
    "get_categories",
    "get_category",
    "purge_category",
    "restore_category",
    "update_category",
]
