"""Account handlers: CRUD, soft delete lifecycle and balance bookkeeping."""
from __future__ import annotations

from datetime import date, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import case, delete, update
from sqlmodel import Session, desc, select

from ..clock import now_local
from ..exceptions import ConflictError, NotFoundError
from ..models import AccountType, Actor, BulkResult, SkipReason, TransactionType
from ..money import to_cents
from .config import DEFAULT_ACCOUNT_COLOR
from .context import active_name_taken, require_family
from .forms import parse_amount, parse_color, parse_enum, parse_id_list, require_text
from .persistence import (
    Account,
    AccountBalance,
    RecurringTransaction,
    RecurringTransactionLog,
    RecurringTransactionTag,
    Transaction,
    TransactionTag,
    serialize,
)

ACCOUNT_NOT_FOUND = "Account not found or not accessible"
NAME_TAKEN = "An account with this name already exists"


# ---------------------------------------------------------------------------
# Balance helpers
# ---------------------------------------------------------------------------
def update_daily_balance(db: Session, account_id: int, day: Optional[date] = None) -> AccountBalance:
    """Upsert the balance snapshot of ``account_id`` for ``day`` (today by default)."""

    account = db.get(Account, account_id)
    if account is None:
        raise NotFoundError(ACCOUNT_NOT_FOUND)
    db.refresh(account)
    snapshot_day = day or now_local().date()
    snapshot = db.exec(
        select(AccountBalance).where(AccountBalance.account_id == account_id, AccountBalance.day == snapshot_day)
    ).first()
    if snapshot is None:
        snapshot = AccountBalance(account_id=account_id, day=snapshot_day)
    snapshot.balance_cents = account.balance_cents
    snapshot.cash_balance_cents = account.balance_cents
    snapshot.updated_at = now_local()
    db.add(snapshot)
    db.flush()
    return snapshot


def apply_balance_delta(db: Session, account_id: int, delta_cents: int) -> None:
    """Increment the stored balance in SQL and refresh today's snapshot."""

    if delta_cents:
        db.exec(
            update(Account)
            .where(Account.id == account_id)
            .values(balance_cents=Account.balance_cents + delta_cents, updated_at=now_local())
        )
    update_daily_balance(db, account_id)


def recalculate_account_balance(db: Session, actor: Actor, account_id: int) -> Account:
    """Rebuild an account balance from its active transactions."""

    account = _get_active(db, require_family(actor), account_id)
    transactions = db.exec(
        select(Transaction).where(Transaction.account_id == account.id, Transaction.deleted_at.is_(None))
    ).all()
    account.balance_cents = sum(TransactionType(item.type).signed(item.amount_cents) for item in transactions)
    account.updated_at = now_local()
    db.add(account)
    db.flush()
    update_daily_balance(db, account.id)
    db.commit()
    return account


# ---------------------------------------------------------------------------
# Lookups
# ---------------------------------------------------------------------------
def _get_active(db: Session, family_id: int, account_id: int) -> Account:
    account = db.exec(
        select(Account).where(Account.id == account_id, Account.family_id == family_id, Account.deleted_at.is_(None))
    ).first()
    if account is None:
        raise NotFoundError(ACCOUNT_NOT_FOUND)
    return account


def get_active_account(db: Session, actor: Actor, account_id: int) -> Account:
    return _get_active(db, require_family(actor), account_id)


def get_accounts(db: Session, actor: Actor, *, include_deleted: bool = False) -> List[Account]:
    family_id = require_family(actor)
    query = select(Account).where(Account.family_id == family_id)
    if not include_deleted:
        query = query.where(Account.deleted_at.is_(None))
    query = query.order_by(case((Account.deleted_at.is_(None), 0), else_=1), Account.name)
    return list(db.exec(query).all())


def get_account(db: Session, actor: Actor, account_id: int) -> Dict[str, Any]:
    account = _get_active(db, require_family(actor), account_id)
    transactions = db.exec(
        select(Transaction)
        .where(Transaction.account_id == account.id, Transaction.deleted_at.is_(None))
        .order_by(desc(Transaction.date), desc(Transaction.id))
        .limit(10)
    ).all()
    balances = db.exec(
        select(AccountBalance)
        .where(AccountBalance.account_id == account.id, AccountBalance.deleted_at.is_(None))
        .order_by(desc(AccountBalance.day))
        .limit(30)
    ).all()
    return {
        "account": serialize(account),
        "transactions": [serialize(item) for item in transactions],
        "balances": [serialize(item) for item in balances],
    }


def get_account_balance_history(db: Session, actor: Actor, account_id: int, *, days: int = 30) -> List[AccountBalance]:
    account = _get_active(db, require_family(actor), account_id)
    since = now_local().date() - timedelta(days=days)
    return list(
        db.exec(
            select(AccountBalance)
            .where(
                AccountBalance.account_id == account.id,
                AccountBalance.day >= since,
                AccountBalance.deleted_at.is_(None),
            )
            .order_by(AccountBalance.day)
        ).all()
    )


# ---------------------------------------------------------------------------
# Mutations
# ---------------------------------------------------------------------------
def create_account(
    db: Session,
    actor: Actor,
    *,
    name: str,
    account_type: str,
    balance: object = "0",
    color: Optional[str] = None,
) -> Account:
    """Create an account and, for a non-zero opening balance, its "Initial Balance" entry."""

    family_id = require_family(actor)
    clean_name = require_text(name, "Account name", max_length=100)
    kind = parse_enum(AccountType, account_type, "Account type")
    opening = parse_amount(balance, "Balance", allow_negative=True)
    clean_color = parse_color(color, DEFAULT_ACCOUNT_COLOR)
    if active_name_taken(db, Account, family_id, clean_name):
        raise ConflictError(NAME_TAKEN)

    account = Account(
        family_id=family_id,
        name=clean_name,
        account_type=kind.value,
        balance_cents=to_cents(opening),
        color=clean_color,
    )
    db.add(account)
    db.flush()
    update_daily_balance(db, account.id)
    if account.balance_cents:
        db.add(
            Transaction(
                account_id=account.id,
                user_id=actor.user_id,
                date=now_local(),
                name="Initial Balance",
                amount_cents=abs(account.balance_cents),
                type=(TransactionType.INCOME if account.balance_cents > 0 else TransactionType.EXPENSE).value,
            )
        )
    db.commit()
    db.refresh(account)
    return account


def update_account(
    db: Session,
    actor: Actor,
    account_id: int,
    *,
    name: str,
    account_type: str,
    color: Optional[str] = None,
) -> Account:
    family_id = require_family(actor)
    account = _get_active(db, family_id, account_id)
    clean_name = require_text(name, "Account name", max_length=100)
    kind = parse_enum(AccountType, account_type, "Account type")
    clean_color = parse_color(color, account.color)
    if active_name_taken(db, Account, family_id, clean_name, exclude_id=account.id):
        raise ConflictError(NAME_TAKEN)
    account.name = clean_name
    account.account_type = kind.value
    account.color = clean_color
    account.updated_at = now_local()
    db.add(account)
    db.commit()
    db.refresh(account)
    return account


def delete_account(db: Session, actor: Actor, account_id: int) -> Account:
    account = _get_active(db, require_family(actor), account_id)
    account.deleted_at = now_local()
    account.updated_at = account.deleted_at
    db.add(account)
    db.commit()
    return account


def restore_account(db: Session, actor: Actor, account_id: int) -> Account:
    family_id = require_family(actor)
    account = db.exec(
        select(Account).where(Account.id == account_id, Account.family_id == family_id, Account.deleted_at.is_not(None))
    ).first()
    if account is None:
        raise NotFoundError("Account not found or not deleted")
    if active_name_taken(db, Account, family_id, account.name):
        raise ConflictError("Cannot restore: An active account with this name already exists")
    account.deleted_at = None
    account.updated_at = now_local()
    db.add(account)
    db.commit()
    return account


def _purge_rows(db: Session, account: Account) -> None:
    transaction_ids = select(Transaction.id).where(Transaction.account_id == account.id)
    rule_ids = select(RecurringTransaction.id).where(RecurringTransaction.account_id == account.id)
    db.exec(delete(RecurringTransactionLog).where(RecurringTransactionLog.recurring_transaction_id.in_(rule_ids)))
    db.exec(delete(RecurringTransactionTag).where(RecurringTransactionTag.recurring_transaction_id.in_(rule_ids)))
    db.exec(delete(RecurringTransaction).where(RecurringTransaction.account_id == account.id))
    db.exec(delete(TransactionTag).where(TransactionTag.transaction_id.in_(transaction_ids)))
    db.exec(delete(Transaction).where(Transaction.account_id == account.id))
    db.exec(delete(AccountBalance).where(AccountBalance.account_id == account.id))
    db.delete(account)


def purge_account(db: Session, actor: Actor, account_id: int) -> None:
    """Permanently remove a soft-deleted account with its history."""

    family_id = require_family(actor)
    account = db.exec(
        select(Account).where(Account.id == account_id, Account.family_id == family_id, Account.deleted_at.is_not(None))
    ).first()
    if account is None:
        raise NotFoundError("Account not found or not deleted")
    _purge_rows(db, account)
    db.commit()


def bulk_restore_accounts(db: Session, actor: Actor, raw_ids: object) -> BulkResult:
    family_id = require_family(actor)
    ids = parse_id_list(raw_ids)
    result = BulkResult()
    for account_id in ids:
        account = db.exec(select(Account).where(Account.id == account_id, Account.family_id == family_id)).first()
        if account is None:
            result.skip(account_id, SkipReason.NOT_FOUND)
        elif account.deleted_at is None:
            result.skip(account_id, SkipReason.NOT_DELETED_ANYMORE)
        elif active_name_taken(db, Account, family_id, account.name):
            result.skip(account_id, SkipReason.NAME_CONFLICT)
        else:
            account.deleted_at = None
            account.updated_at = now_local()
            db.add(account)
            db.flush()
            result.affected += 1
    db.commit()
    return result


def bulk_purge_accounts(db: Session, actor: Actor, raw_ids: object) -> BulkResult:
    family_id = require_family(actor)
    ids = parse_id_list(raw_ids)
    result = BulkResult()
    for account_id in ids:
        account = db.exec(select(Account).where(Account.id == account_id, Account.family_id == family_id)).first()
        if account is None:
            result.skip(account_id, SkipReason.NOT_FOUND)
        elif account.deleted_at is None:
            result.skip(account_id, SkipReason.NOT_DELETED_ANYMORE)
        else:
            _purge_rows(db, account)
            result.affected += 1
    db.commit()
    return result


__all__ = [
    "apply_balance_delta",
    "bulk_purge_accounts",
    "bulk_restore_accounts",
    "create_account",
    "delete_account",
    "get_account",
    "get_account_balance_history",
    "get_accounts",
    "get_active_account",
    "purge_account",
    "recalculate_account_balance",
    "restore_account",
    "update_account",
    "update_daily_balance",
]
