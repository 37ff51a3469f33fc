"""Persistence and SQLModel definitions for the famledger web frontend."""
from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, Optional

from sqlalchemy import UniqueConstraint
from sqlalchemy.engine import Engine
from sqlmodel import Field, Session, SQLModel, create_engine

from ..clock import now_local
from ..money import from_cents
from .config import DATABASE_URL

# ---------------------------------------------------------------------------
# Engine
# ---------------------------------------------------------------------------


def _build_engine(url: str) -> Engine:
    connect_args = {"check_same_thread": False} if url.startswith("sqlite") else {}
    return create_engine(url, echo=False, connect_args=connect_args)


engine = _build_engine(DATABASE_URL)


def configure_engine(url: str) -> Engine:
    """Point the module level engine at ``url`` and return it."""

    global engine
    engine.dispose()
    engine = _build_engine(url)
    return engine


def open_session() -> Session:
    return Session(engine, expire_on_commit=False)


# ---------------------------------------------------------------------------
# Database models
# ---------------------------------------------------------------------------
class Family(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    name: str
    created_at: datetime = Field(default_factory=now_local)
    updated_at: datetime = Field(default_factory=now_local)
    deleted_at: Optional[datetime] = None


class User(SQLModel, table=True):
    __tablename__ = "app_user"

    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: Optional[int] = Field(default=None, foreign_key="family.id", index=True)
    username: str
    email: str = Field(index=True, unique=True)
    password_hash: str
    role: str = "Member"  # Admin|Member
    last_login: Optional[datetime] = None
    created_at: datetime = Field(default_factory=now_local)
    updated_at: datetime = Field(default_factory=now_local)
    deleted_at: Optional[datetime] = None


class Account(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(foreign_key="family.id", index=True)
    name: str
    account_type: str  # Cash|Checking|Savings|CreditCard|Investment|Loan
    balance_cents: int = 0
    color: str = "#6172F3"
    created_at: datetime = Field(default_factory=now_local)
    updated_at: datetime = Field(default_factory=now_local)
    deleted_at: Optional[datetime] = None


class AccountBalance(SQLModel, table=True):
    __table_args__ = (UniqueConstraint("account_id", "day", name="uq_account_balance_day"),)

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: int = Field(foreign_key="account.id", index=True)
    day: date
    balance_cents: int = 0
    cash_balance_cents: int = 0
    created_at: datetime = Field(default_factory=now_local)
    updated_at: datetime = Field(default_factory=now_local)
    deleted_at: Optional[datetime] = None


class Category(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(foreign_key="family.id", index=True)
    name: str
    color: str = "#6172F3"
    parent_id: Optional[int] = Field(default=None, foreign_key="category.id")
    created_at: datetime = Field(default_factory=now_local)
    updated_at: datetime = Field(default_factory=now_local)
    deleted_at: Optional[datetime] = None


class Tag(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    family_id: int = Field(foreign_key="family.id", index=True)
    name: str
    color: str = "#e99537"
    created_at: datetime = Field(default_factory=now_local)
    updated_at: datetime = Field(default_factory=now_local)
    deleted_at: Optional[datetime] = None


class Transaction(SQLModel, table=True):
    __tablename__ = "ledger_transaction"

    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: int = Field(foreign_key="account.id", index=True)
    user_id: int = Field(foreign_key="app_user.id")
    category_id: Optional[int] = Field(default=None, foreign_key="category.id")
    date: datetime
    name: str
    amount_cents: int
    type: str  # Income|Expense|InvestmentBuy|InvestmentSell|LoanPayment|LoanRepayment
    created_at: datetime = Field(default_factory=now_local)
    updated_at: datetime = Field(default_factory=now_local)
    deleted_at: Optional[datetime] = None


class TransactionTag(SQLModel, table=True):
    transaction_id: int = Field(foreign_key="ledger_transaction.id", primary_key=True)
    tag_id: int = Field(foreign_key="tag.id", primary_key=True)


class RecurringTransaction(SQLModel, table=True):
    id: Optional[int] = Field(default=None, primary_key=True)
    account_id: int = Field(foreign_key="account.id", index=True)
    user_id: int = Field(foreign_key="app_user.id")
    category_id: Optional[int] = Field(default=None, foreign_key="category.id")
    description: str
    amount_cents: int
    type: str
    frequency: str  # Daily|Weekly|Monthly|Yearly
    day_of_week: Optional[int] = None
    day_of_month: Optional[int] = None
    time_of_day: str = "00:00"
    start_date: datetime
    end_date: Optional[datetime] = None
    max_occurrences: Optional[int] = None
    occurrences_count: int = 0
    created_at: datetime = Field(default_factory=now_local)
    updated_at: datetime = Field(default_factory=now_local)
    deleted_at: Optional[datetime] = None


class RecurringTransactionTag(SQLModel, table=True):
    recurring_transaction_id: int = Field(foreign_key="recurringtransaction.id", primary_key=True)
    tag_id: int = Field(foreign_key="tag.id", primary_key=True)


class RecurringTransactionLog(SQLModel, table=True):
    __table_args__ = (
        UniqueConstraint("recurring_transaction_id", "execution_time", name="uq_recurring_log_execution"),
    )

    id: Optional[int] = Field(default=None, primary_key=True)
    recurring_transaction_id: int = Field(foreign_key="recurringtransaction.id", index=True)
    generated_transaction_id: Optional[int] = Field(default=None, foreign_key="ledger_transaction.id")
    execution_time: datetime
    created_at: datetime = Field(default_factory=now_local)
    updated_at: datetime = Field(default_factory=now_local)


def create_db_and_tables() -> None:
    SQLModel.metadata.create_all(engine)


def serialize(row: SQLModel, **extra: Any) -> Dict[str, Any]:
    """Return a JSON friendly dict for ``row``; ``*_cents`` columns become decimal strings."""

    payload: Dict[str, Any] = {}
    for key, value in row.model_dump().items():
        if key == "password_hash":
            continue
        if key.endswith("_cents") and isinstance(value, int):
            payload[key[: -len("_cents")]] = str(from_cents(value))
        elif isinstance(value, (datetime, date)):
            payload[key] = value.isoformat()
        elif isinstance(value, Decimal):
            payload[key] = str(value)
        elif isinstance(value, Enum):
            payload[key] = value.value
        else:
            payload[key] = value
    payload.update(extra)
    return payload


__all__ = [
    "Account",
    "AccountBalance",
    "Category",
    "Family",
    "RecurringTransaction",
    "RecurringTransactionLog",
    "RecurringTransactionTag",
    "Tag",
    "Transaction",
    "TransactionTag",
    "User",
    "configure_engine",
    "create_db_and_tables",
    "engine",
    "open_session",
    "serialize",
]
