"""Domain enums and value objects shared across famledger."""

from __future__ import annotations

import math
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional


class UserRole(str, Enum):
    """Role a user holds inside their family."""

    ADMIN = "Admin"
    MEMBER = "Member"


class AccountType(str, Enum):
    """Kinds of accounts a family can track."""

    CASH = "Cash"
    CHECKING = "Checking"
    SAVINGS = "Savings"
    CREDIT_CARD = "CreditCard"
    INVESTMENT = "Investment"
    LOAN = "Loan"


class TransactionType(str, Enum):
    """Enumerates the supported types of ledger transactions."""

    INCOME = "Income"
    EXPENSE = "Expense"
    INVESTMENT_BUY = "InvestmentBuy"
    INVESTMENT_SELL = "InvestmentSell"
    LOAN_PAYMENT = "LoanPayment"
    LOAN_REPAYMENT = "LoanRepayment"

    @property
    def is_inflow(self) -> bool:
        return self in _INFLOW_TYPES

    def signed(self, amount_cents: int) -> int:
        """Return the balance delta for a transaction of ``amount_cents``."""

        return amount_cents if self.is_inflow else -amount_cents


_INFLOW_TYPES = frozenset(
    {TransactionType.INCOME, TransactionType.INVESTMENT_SELL, TransactionType.LOAN_REPAYMENT}
)


class Frequency(str, Enum):
    """How often a recurring rule fires."""

    DAILY = "Daily"
    WEEKLY = "Weekly"
    MONTHLY = "Monthly"
    YEARLY = "Yearly"


class EndCondition(str, Enum):
    """The single active end condition of a recurring rule."""

    NEVER = "never"
    END_DATE = "endDate"
    MAX_OCCURRENCES = "maxOccurrences"


class Horizon(str, Enum):
    """Upper bound selector for recurring transaction generation."""

    TODAY = "today"
    NEXT_WEEK = "nextWeek"
    NEXT_MONTH = "nextMonth"


class RecurringStatus(str, Enum):
    SCHEDULED = "scheduled"
    ACTIVE = "active"
    COMPLETED = "completed"


class SkipReason(str, Enum):
    """Why a bulk restore or purge left an id untouched."""

    NOT_FOUND = "not_found"
    NOT_DELETED_ANYMORE = "not_deleted_anymore"
    NAME_CONFLICT = "name_conflict"


@dataclass(slots=True)
class GenerationResult:
    """Outcome of a recurring generation batch."""

    generated_count: int = 0
    errors: List[str] = field(default_factory=list)

    def as_payload(self) -> Dict[str, Any]:
        return {"generatedCount": self.generated_count, "errors": list(self.errors) or None}


@dataclass(slots=True)
class SkippedItem:
    id: int
    reason: SkipReason


@dataclass(slots=True)
class BulkResult:
    """Counts and per-id skip reasons for a bulk restore or purge."""

    affected: int = 0
    skipped: List[SkippedItem] = field(default_factory=list)

    def skip(self, item_id: int, reason: SkipReason) -> None:
        self.skipped.append(SkippedItem(id=item_id, reason=reason))

    def as_payload(self, verb: str) -> Dict[str, Any]:
        return {
            verb: self.affected,
            "skipped": [{"id": item.id, "reason": item.reason.value} for item in self.skipped],
        }


@dataclass(slots=True)
class Page:
    """A single page of results plus the pagination metadata."""

    items: List[Any]
    total: int
    page: int
    limit: int

    @property
    def total_pages(self) -> int:
        if self.limit <= 0:
            return 0
        return math.ceil(self.total / self.limit)

    def pagination(self) -> Dict[str, int]:
        return {"total": self.total, "page": self.page, "limit": self.limit, "totalPages": self.total_pages}


@dataclass(slots=True)
class Actor:
    """The authenticated caller of an action."""

    user_id: int
    family_id: Optional[int]
    role: UserRole
    username: str = ""
    email: str = ""

    @property
    def is_admin(self) -> bool:
        return self.role is UserRole.ADMIN


__all__ = [
    "AccountType",
    "Actor",
    "BulkResult",
    "EndCondition",
    "Frequency",
    "GenerationResult",
    "Horizon",
    "Page",
    "RecurringStatus",
    "SkipReason",
    "SkippedItem",
    "TransactionType",
    "UserRole",
]
