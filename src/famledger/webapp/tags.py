"""Tag handlers and tag-set helpers used by transactions and recurring rules."""
from __future__ import annotations

from typing import Any, Dict, Iterable, List, Optional

from sqlalchemy import delete, func
from sqlmodel import Session, select

from ..clock import now_local
from ..exceptions import ConflictError, NotFoundError
from ..models import Actor, BulkResult, SkipReason
from .config import DEFAULT_TAG_COLOR
from .context import active_name_taken, require_family
from .forms import parse_color, parse_id_list, parse_tag_names, require_text
from .persistence import RecurringTransactionTag, Tag, Transaction, TransactionTag, serialize

TAG_NOT_FOUND = "Tag not found or not accessible"
NAME_TAKEN = "A tag with this name already exists"


def find_or_create_tags(db: Session, family_id: int, raw_names: Optional[str]) -> List[Tag]:
    """Resolve comma separated tag names to active family tags, creating missing ones."""

    tags: List[Tag] = []
    for name in parse_tag_names(raw_names):
        tag = db.exec(
            select(Tag).where(
                Tag.family_id == family_id,
                Tag.deleted_at.is_(None),
                func.lower(Tag.name) == name.lower(),
            )
        ).first()
        if tag is None:
            tag = Tag(family_id=family_id, name=name[:50], color=DEFAULT_TAG_COLOR)
            db.add(tag)
            db.flush()
        tags.append(tag)
    return tags


def set_transaction_tags(db: Session, transaction_id: int, tags: Iterable[Tag]) -> None:
    db.exec(delete(TransactionTag).where(TransactionTag.transaction_id == transaction_id))
    for tag in tags:
        db.add(TransactionTag(transaction_id=transaction_id, tag_id=tag.id))
    db.flush()


def set_rule_tags(db: Session, rule_id: int, tags: Iterable[Tag]) -> None:
    db.exec(delete(RecurringTransactionTag).where(RecurringTransactionTag.recurring_transaction_id == rule_id))
    for tag in tags:
        db.add(RecurringTransactionTag(recurring_transaction_id=rule_id, tag_id=tag.id))
    db.flush()


def tags_for_transaction(db: Session, transaction_id: int) -> List[Tag]:
    return list(
        db.exec(
            select(Tag)
            .join(TransactionTag, TransactionTag.tag_id == Tag.id)
            .where(TransactionTag.transaction_id == transaction_id, Tag.deleted_at.is_(None))
            .order_by(Tag.name)
        ).all()
    )


def tags_for_rule(db: Session, rule_id: int) -> List[Tag]:
    return list(
        db.exec(
            select(Tag)
            .join(RecurringTransactionTag, RecurringTransactionTag.tag_id == Tag.id)
            .where(RecurringTransactionTag.recurring_transaction_id == rule_id, Tag.deleted_at.is_(None))
            .order_by(Tag.name)
        ).all()
    )


def _get_active(db: Session, family_id: int, tag_id: int) -> Tag:
    tag = db.exec(
        select(Tag).where(Tag.id == tag_id, Tag.family_id == family_id, Tag.deleted_at.is_(None))
    ).first()
    if tag is None:
        raise NotFoundError(TAG_NOT_FOUND)
    return tag


def _active_usage(db: Session, tag_id: int) -> int:
    return db.exec(
        select(func.count(TransactionTag.transaction_id))
        .join(Transaction, Transaction.id == TransactionTag.transaction_id)
        .where(TransactionTag.tag_id == tag_id, Transaction.deleted_at.is_(None))
    ).one()


def get_tags(db: Session, actor: Actor, *, include_deleted: bool = False) -> List[Dict[str, Any]]:
    family_id = require_family(actor)
    query = select(Tag).where(Tag.family_id == family_id)
    if not include_deleted:
        query = query.where(Tag.deleted_at.is_(None))
    tags = db.exec(query.order_by(Tag.name)).all()
    return [serialize(tag, transaction_count=_active_usage(db, tag.id)) for tag in tags]


def get_tag(db: Session, actor: Actor, tag_id: int) -> Dict[str, Any]:
    tag = _get_active(db, require_family(actor), tag_id)
    return serialize(tag, transaction_count=_active_usage(db, tag.id))


def create_tag(db: Session, actor: Actor, *, name: str, color: Optional[str] = None) -> Tag:
    family_id = require_family(actor)
    clean_name = require_text(name, "Tag name", max_length=50)
    clean_color = parse_color(color, DEFAULT_TAG_COLOR)
    if active_name_taken(db, Tag, family_id, clean_name):
        raise ConflictError(NAME_TAKEN)
    tag = Tag(family_id=family_id, name=clean_name, color=clean_color)
    db.add(tag)
    db.commit()
    db.refresh(tag)
    return tag


def update_tag(db: Session, actor: Actor, tag_id: int, *, name: str, color: Optional[str] = None) -> Tag:
    family_id = require_family(actor)
    tag = _get_active(db, family_id, tag_id)
    clean_name = require_text(name, "Tag name", max_length=50)
    clean_color = parse_color(color, tag.color)
    if active_name_taken(db, Tag, family_id, clean_name, exclude_id=tag.id):
        raise ConflictError(NAME_TAKEN)
    tag.name = clean_name
    tag.color = clean_color
    tag.updated_at = now_local()
    db.add(tag)
    db.commit()
    db.refresh(tag)
    return tag


def delete_tag(db: Session, actor: Actor, tag_id: int) -> Tag:
    tag = _get_active(db, require_family(actor), tag_id)
    if _active_usage(db, tag.id):
        raise ConflictError("Cannot delete tag that is being used by transactions")
    tag.deleted_at = now_local()
    tag.updated_at = tag.deleted_at
    db.add(tag)
    db.commit()
    return tag


def restore_tag(db: Session, actor: Actor, tag_id: int) -> Tag:
    family_id = require_family(actor)
    tag = db.exec(
        select(Tag).where(Tag.id == tag_id, Tag.family_id == family_id, Tag.deleted_at.is_not(None))
    ).first()
    if tag is None:
        raise NotFoundError("Deleted tag not found")
    if active_name_taken(db, Tag, family_id, tag.name):
        raise ConflictError("Cannot restore: An active tag with this name already exists")
    tag.deleted_at = None
    tag.updated_at = now_local()
    db.add(tag)
    db.commit()
    return tag


def _purge(db: Session, tag_ids: List[int]) -> None:
    db.exec(delete(TransactionTag).where(TransactionTag.tag_id.in_(tag_ids)))
    db.exec(delete(RecurringTransactionTag).where(RecurringTransactionTag.tag_id.in_(tag_ids)))
    db.exec(delete(Tag).where(Tag.id.in_(tag_ids)))


def bulk_restore_tags(db: Session, actor: Actor, raw_ids: object) -> BulkResult:
    family_id = require_family(actor)
    result = BulkResult()
    for tag_id in parse_id_list(raw_ids):
        tag = db.exec(select(Tag).where(Tag.id == tag_id, Tag.family_id == family_id)).first()
        if tag is None:
            result.skip(tag_id, SkipReason.NOT_FOUND)
        elif tag.deleted_at is None:
            result.skip(tag_id, SkipReason.NOT_DELETED_ANYMORE)
        elif active_name_taken(db, Tag, family_id, tag.name):
            result.skip(tag_id, SkipReason.NAME_CONFLICT)
        else:
            tag.deleted_at = None
            tag.updated_at = now_local()
            db.add(tag)
            db.flush()
            result.affected += 1
    db.commit()
    return result


def bulk_purge_tags(db: Session, actor: Actor, raw_ids: object) -> BulkResult:
    family_id = require_family(actor)
    result = BulkResult()
    purgeable: List[int] = []
    for tag_id in parse_id_list(raw_ids):
        tag = db.exec(select(Tag).where(Tag.id == tag_id, Tag.family_id == family_id)).first()
        if tag is None:
            result.skip(tag_id, SkipReason.NOT_FOUND)
        elif tag.deleted_at is None:
            result.skip(tag_id, SkipReason.NOT_DELETED_ANYMORE)
        else:
            purgeable.append(tag.id)
    if purgeable:
        _purge(db, purgeable)
        result.affected = len(purgeable)
    db.commit()
    return result


__all__ = [
    "bulk_purge_tags",
    "bulk_restore_tags",
    "create_tag",
    "delete_tag",
    "find_or_create_tags",
    "get_tag",
    "get_tags",
    "restore_tag",
    "set_rule_tags",
    "set_transaction_tags",
    "tags_for_rule",
    "tags_for_transaction",
    "update_tag",
]
