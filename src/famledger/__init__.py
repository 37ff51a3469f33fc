"""famledger package: shared-family personal finance tracking."""

from .clock import now_local, set_time_provider
from .exceptions import (
    AuthenticationRequiredError,
    ConflictError,
    CsrfValidationError,
    FamilyRequiredError,
    FamLedgerError,
    NotFoundError,
    PermissionDeniedError,
    RateLimitedError,
    ValidationError,
)
from .models import (
    AccountType,
    Actor,
    BulkResult,
    EndCondition,
    Frequency,
    GenerationResult,
    Horizon,
    Page,
    RecurringStatus,
    SkipReason,
    TransactionType,
    UserRole,
)
from .ops import HealthMonitor, StructuredLogger
from .recurrence import RecurrenceSchedule, add_months, horizon_target
from .security import RateLimiter, SessionManager, SessionRecord, hash_password, verify_password
from .stores import JsonFileStore, MemoryStore, TTLStore

__all__ = [
    "AccountType",
    "Actor",
    "AuthenticationRequiredError",
    "BulkResult",
    "ConflictError",
    "CsrfValidationError",
    "EndCondition",
    "FamLedgerError",
    "FamilyRequiredError",
    "Frequency",
    "GenerationResult",
    "HealthMonitor",
    "Horizon",
    "JsonFileStore",
    "MemoryStore",
    "NotFoundError",
    "Page",
    "PermissionDeniedError",
    "RateLimitedError",
    "RateLimiter",
    "RecurrenceSchedule",
    "RecurringStatus",
    "SessionManager",
    "SessionRecord",
    "SkipReason",
    "StructuredLogger",
    "TTLStore",
    "TransactionType",
    "UserRole",
    "ValidationError",
    "add_months",
    "hash_password",
    "horizon_target",
    "now_local",
    "set_time_provider",
    "verify_password",
]
