"""Ledger transaction handlers."""
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import func
from sqlmodel import Session, desc, select

from ..clock import now_local
from ..exceptions import NotFoundError
from ..models import Actor, Page, TransactionType
from ..money import to_cents
from .accounts import apply_balance_delta, get_active_account
from .categories import find_or_create_category, get_active_category
from .config import DEFAULT_PAGE_SIZE
from .context import require_family
from .forms import (
    parse_amount,
    parse_datetime,
    parse_enum,
    parse_id,
    parse_optional_datetime,
    parse_optional_int,
    require_text,
)
from .persistence import Account, Transaction, serialize
from .tags import find_or_create_tags, set_transaction_tags, tags_for_transaction

TRANSACTION_NOT_FOUND = "Transaction not found or not accessible"


def resolve_category_id(
    db: Session, family_id: int, category_id: object, new_category: Optional[str]
) -> Optional[int]:
    """Pick an existing category by id, or find/create one by name when no id is given."""

    chosen = parse_optional_int(category_id, "Category", minimum=1)
    if chosen is not None:
        return get_active_category(db, family_id, chosen).id
    if new_category and new_category.strip():
        return find_or_create_category(db, family_id, new_category).id
    return None


def _get_active(db: Session, family_id: int, transaction_id: int) -> Transaction:
    transaction = db.exec(
        select(Transaction)
        .join(Account, Account.id == Transaction.account_id)
        .where(
            Transaction.id == transaction_id,
            Transaction.deleted_at.is_(None),
            Account.family_id == family_id,
        )
    ).first()
    if transaction is None:
        raise NotFoundError(TRANSACTION_NOT_FOUND)
    return transaction


def transaction_payload(db: Session, transaction: Transaction) -> Dict[str, Any]:
    return serialize(transaction, tags=[serialize(tag) for tag in tags_for_transaction(db, transaction.id)])


def create_transaction(
    db: Session,
    actor: Actor,
    *,
    account_id: object,
    amount: object,
    transaction_type: str,
    name: str,
    date: object,
    category_id: object = None,
    new_category: Optional[str] = None,
    tags: Optional[str] = None,
) -> Transaction:
    family_id = require_family(actor)
    account = get_active_account(db, actor, parse_id(account_id, "Account"))
    value = parse_amount(amount)
    kind = parse_enum(TransactionType, transaction_type, "Transaction type")
    clean_name = require_text(name, "Name", max_length=200)
    when = parse_datetime(date, "Date")
    transaction = Transaction(
        account_id=account.id,
        user_id=actor.user_id,
        category_id=resolve_category_id(db, family_id, category_id, new_category),
        date=when,
        name=clean_name,
        amount_cents=to_cents(value),
        type=kind.value,
    )
    db.add(transaction)
    db.flush()
    set_transaction_tags(db, transaction.id, find_or_create_tags(db, family_id, tags))
    apply_balance_delta(db, account.id, kind.signed(transaction.amount_cents))
    db.commit()
    db.refresh(transaction)
    return transaction


def update_transaction(
    db: Session,
    actor: Actor,
    transaction_id: int,
    *,
    account_id: object,
    amount: object,
    transaction_type: str,
    name: str,
    date: object,
    category_id: object = None,
    new_category: Optional[str] = None,
    tags: Optional[str] = None,
) -> Transaction:
    """Rewrite a transaction, moving its balance effect to the new account and amount."""

    family_id = require_family(actor)
    transaction = _get_active(db, family_id, transaction_id)
    account = get_active_account(db, actor, parse_id(account_id, "Account"))
    value = parse_amount(amount)
    kind = parse_enum(TransactionType, transaction_type, "Transaction type")
    clean_name = require_text(name, "Name", max_length=200)
    when = parse_datetime(date, "Date")

    old_delta = TransactionType(transaction.type).signed(transaction.amount_cents)
    apply_balance_delta(db, transaction.account_id, -old_delta)

    transaction.account_id = account.id
    transaction.amount_cents = to_cents(value)
    transaction.type = kind.value
    transaction.name = clean_name
    transaction.date = when
    transaction.category_id = resolve_category_id(db, family_id, category_id, new_category)
    transaction.updated_at = now_local()
    db.add(transaction)
    db.flush()
    set_transaction_tags(db, transaction.id, find_or_create_tags(db, family_id, tags))
    apply_balance_delta(db, account.id, kind.signed(transaction.amount_cents))
    db.commit()
    db.refresh(transaction)
    return transaction


def delete_transaction(db: Session, actor: Actor, transaction_id: int) -> Transaction:
    transaction = _get_active(db, require_family(actor), transaction_id)
    transaction.deleted_at = now_local()
    transaction.updated_at = transaction.deleted_at
    db.add(transaction)
    apply_balance_delta(
        db, transaction.account_id, -TransactionType(transaction.type).signed(transaction.amount_cents)
    )
    db.commit()
    return transaction


def get_transaction(db: Session, actor: Actor, transaction_id: int) -> Dict[str, Any]:
    transaction = _get_active(db, require_family(actor), transaction_id)
    return transaction_payload(db, transaction)


def get_transactions(
    db: Session,
    actor: Actor,
    *,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    account_id: Optional[int] = None,
    category_id: Optional[int] = None,
    transaction_type: Optional[str] = None,
    start_date: Optional[object] = None,
    end_date: Optional[object] = None,
) -> Page:
    family_id = require_family(actor)
    page = max(1, page)
    limit = max(1, min(limit, 100))
    query = (
        select(Transaction)
        .join(Account, Account.id == Transaction.account_id)
        .where(Account.family_id == family_id, Transaction.deleted_at.is_(None))
    )
    if account_id is not None:
        query = query.where(Transaction.account_id == account_id)
    if category_id is not None:
        query = query.where(Transaction.category_id == category_id)
    if transaction_type:
        query = query.where(Transaction.type == parse_enum(TransactionType, transaction_type, "Transaction type").value)
    start: Optional[datetime] = parse_optional_datetime(start_date, "Start date")
    end: Optional[datetime] = parse_optional_datetime(end_date, "End date")
    if start is not None:
        query = query.where(Transaction.date >= start)
    if end is not None:
        if end.hour == 0 and end.minute == 0 and end.second == 0:
            end = end.replace(hour=23, minute=59, second=59)
        query = query.where(Transaction.date <= end)

    total = db.exec(select(func.count()).select_from(query.subquery())).one()
    rows = db.exec(
        query.order_by(desc(Transaction.date), desc(Transaction.created_at), desc(Transaction.id))
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()
    return Page(items=[transaction_payload(db, row) for row in rows], total=total, page=page, limit=limit)


__all__ = [
    "create_transaction",
    "delete_transaction",
    "get_transaction",
    "get_transactions",
    "resolve_category_id",
    "transaction_payload",
    "update_transaction",
]
