"""Recurring transaction rules and the generator that materializes them.

Generation walks each rule's schedule from its start date up to the requested
horizon. Every new occurrence is written in its own database transaction: the
log row goes in first and its unique ``(rule, execution_time)`` constraint
decides whether the occurrence is new, then the ledger transaction, its tags,
the balance change and the rule counter follow before the commit. A second
run over the same window therefore creates nothing, and a failure part way
through one rule leaves earlier occurrences committed.
"""
from __future__ import annotations

import re
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional, Set

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlmodel import Session, desc, select

from ..clock import now_local
from ..exceptions import NotFoundError, ValidationError
from ..models import (
    Actor,
    EndCondition,
    Frequency,
    GenerationResult,
    Horizon,
    Page,
    RecurringStatus,
    TransactionType,
)
from ..money import to_cents
from ..ops import StructuredLogger
from ..recurrence import RecurrenceSchedule, horizon_target
from .accounts import apply_balance_delta, get_active_account
from .config import DEFAULT_PAGE_SIZE
from .context import require_family
from .events import event_log
from .forms import (
    parse_amount,
    parse_datetime,
    parse_enum,
    parse_id,
    parse_optional_datetime,
    parse_optional_int,
    require_text,
)
from .persistence import (
    Account,
    Category,
    RecurringTransaction,
    RecurringTransactionLog,
    Transaction,
    TransactionTag,
    serialize,
)
from .tags import find_or_create_tags, set_rule_tags, tags_for_rule
from .transactions import resolve_category_id

RULE_NOT_FOUND = "Recurring transaction not found or not accessible"
_TIME_OF_DAY = re.compile(r"^([01]\d|2[0-3]):[0-5]\d(:[0-5]\d)?$")


# ---------------------------------------------------------------------------
# Lookups and derived state
# ---------------------------------------------------------------------------
def _rule_query(family_id: int):
    return (
        select(RecurringTransaction)
        .join(Account, Account.id == RecurringTransaction.account_id)
        .where(
            RecurringTransaction.deleted_at.is_(None),
            Account.family_id == family_id,
            Account.deleted_at.is_(None),
        )
    )


def _get_active(db: Session, family_id: int, rule_id: int) -> Optional[RecurringTransaction]:
    return db.exec(_rule_query(family_id).where(RecurringTransaction.id == rule_id)).first()


def schedule_for(rule: RecurringTransaction) -> RecurrenceSchedule:
    return RecurrenceSchedule(frequency=Frequency(rule.frequency), start=rule.start_date, end=rule.end_date)


def rule_status(rule: RecurringTransaction, *, at: Optional[datetime] = None) -> RecurringStatus:
    now = at or now_local()
    if now < rule.start_date:
        return RecurringStatus.SCHEDULED
    if rule.end_date is not None and now > rule.end_date:
        return RecurringStatus.COMPLETED
    if rule.max_occurrences is not None and rule.occurrences_count >= rule.max_occurrences:
        return RecurringStatus.COMPLETED
    return RecurringStatus.ACTIVE


def remaining_occurrences(rule: RecurringTransaction) -> Optional[int]:
    if rule.max_occurrences is None:
        return None
    return max(0, rule.max_occurrences - rule.occurrences_count)


def _rule_payload(
    db: Session, rule: RecurringTransaction, *, log_limit: Optional[int], at: Optional[datetime] = None
) -> Dict[str, Any]:
    account = db.get(Account, rule.account_id)
    category = db.get(Category, rule.category_id) if rule.category_id else None
    log_query = (
        select(RecurringTransactionLog)
        .where(RecurringTransactionLog.recurring_transaction_id == rule.id)
        .order_by(desc(RecurringTransactionLog.execution_time))
    )
    if log_limit is not None:
        log_query = log_query.limit(log_limit)
    logs = []
    for log in db.exec(log_query).all():
        generated = db.get(Transaction, log.generated_transaction_id) if log.generated_transaction_id else None
        logs.append(
            serialize(
                log,
                generated_transaction=serialize(generated) if generated is not None else None,
            )
        )
    return serialize(
        rule,
        account={"id": account.id, "name": account.name, "color": account.color} if account else None,
        category={"id": category.id, "name": category.name, "color": category.color} if category else None,
        tags=[serialize(tag) for tag in tags_for_rule(db, rule.id)],
        logs=logs,
        status=rule_status(rule, at=at).value,
        remaining_occurrences=remaining_occurrences(rule),
    )


def get_recurring_transactions(
    db: Session,
    actor: Actor,
    *,
    page: int = 1,
    limit: int = DEFAULT_PAGE_SIZE,
    account_id: Optional[int] = None,
    category_id: Optional[int] = None,
    transaction_type: Optional[str] = None,
    frequency: Optional[str] = None,
    at: Optional[datetime] = None,
) -> Page:
    family_id = require_family(actor)
    page = max(1, page)
    limit = max(1, min(limit, 100))
    query = _rule_query(family_id)
    if account_id is not None:
        query = query.where(RecurringTransaction.account_id == account_id)
    if category_id is not None:
        query = query.where(RecurringTransaction.category_id == category_id)
    if transaction_type:
        query = query.where(
            RecurringTransaction.type == parse_enum(TransactionType, transaction_type, "Transaction type").value
        )
    if frequency:
        query = query.where(RecurringTransaction.frequency == parse_enum(Frequency, frequency, "Frequency").value)
    total = db.exec(select(func.count()).select_from(query.subquery())).one()
    rules = db.exec(
        query.order_by(desc(RecurringTransaction.created_at), desc(RecurringTransaction.id))
        .offset((page - 1) * limit)
        .limit(limit)
    ).all()
    return Page(
        items=[_rule_payload(db, rule, log_limit=5, at=at) for rule in rules],
        total=total,
        page=page,
        limit=limit,
    )


def get_recurring_transaction(db: Session, actor: Actor, rule_id: int) -> Dict[str, Any]:
    rule = _get_active(db, require_family(actor), rule_id)
    if rule is None:
        raise NotFoundError(RULE_NOT_FOUND)
    return _rule_payload(db, rule, log_limit=None)


# ---------------------------------------------------------------------------
# Create / update / delete
# ---------------------------------------------------------------------------
def _rule_fields(
    *,
    amount: object,
    transaction_type: str,
    frequency: str,
    description: str,
    time_of_day: str,
    start_date: object,
    day_of_week: object,
    day_of_month: object,
    end_condition: str,
    end_date: object,
    max_occurrences: object,
) -> Dict[str, Any]:
    clean_description = require_text(description, "Description", max_length=200)
    value = parse_amount(amount, "Amount")
    kind = parse_enum(TransactionType, transaction_type, "Transaction type")
    cadence = parse_enum(Frequency, frequency, "Frequency")
    weekday = parse_optional_int(day_of_week, "Day of week")
    month_day = parse_optional_int(day_of_month, "Day of month")
    if cadence is Frequency.WEEKLY and (weekday is None or not 0 <= weekday <= 6):
        raise ValidationError("Day of week is required for weekly frequency (0-6)")
    if cadence in (Frequency.MONTHLY, Frequency.YEARLY) and (month_day is None or not 1 <= month_day <= 31):
        raise ValidationError(f"Day of month is required for {cadence.value.lower()} frequency (1-31)")
    clean_time = (time_of_day or "").strip()
    if not clean_time:
        raise ValidationError("Time of day is required")
    if not _TIME_OF_DAY.match(clean_time):
        raise ValidationError("Time of day must use HH:MM")
    start = parse_datetime(start_date, "Start date")

    condition = parse_enum(EndCondition, end_condition or EndCondition.NEVER.value, "End condition")
    until: Optional[datetime] = None
    cap: Optional[int] = None
    if condition is EndCondition.END_DATE:
        until = parse_optional_datetime(end_date, "End date")
        if until is None:
            raise ValidationError("End date is required when end condition is set to end by date")
        if until < start:
            raise ValidationError("End date must be after the start date")
    elif condition is EndCondition.MAX_OCCURRENCES:
        try:
            cap = parse_optional_int(max_occurrences, "Max occurrences")
        except ValidationError as exc:
            raise ValidationError("Max occurrences must be a positive number") from exc
        if cap is None or cap <= 0:
            raise ValidationError("Max occurrences must be a positive number")

    return {
        "description": clean_description,
        "amount_cents": to_cents(value),
        "type": kind.value,
        "frequency": cadence.value,
        "day_of_week": weekday if cadence is Frequency.WEEKLY else None,
        "day_of_month": month_day if cadence in (Frequency.MONTHLY, Frequency.YEARLY) else None,
        "time_of_day": clean_time,
        "start_date": start,
        "end_date": until,
        "max_occurrences": cap,
    }


def create_recurring_transaction(
    db: Session,
    actor: Actor,
    *,
    account_id: object,
    amount: object,
    transaction_type: str,
    frequency: str,
    description: str,
    time_of_day: str,
    start_date: object,
    day_of_week: object = None,
    day_of_month: object = None,
    end_condition: str = "never",
    end_date: object = None,
    max_occurrences: object = None,
    category_id: object = None,
    new_category: Optional[str] = None,
    tags: Optional[str] = None,
) -> RecurringTransaction:
    family_id = require_family(actor)
    account = get_active_account(db, actor, parse_id(account_id, "Account"))
    fields = _rule_fields(
        amount=amount,
        transaction_type=transaction_type,
        frequency=frequency,
        description=description,
        time_of_day=time_of_day,
        start_date=start_date,
        day_of_week=day_of_week,
        day_of_month=day_of_month,
        end_condition=end_condition,
        end_date=end_date,
        max_occurrences=max_occurrences,
    )
    rule = RecurringTransaction(
        account_id=account.id,
        user_id=actor.user_id,
        category_id=resolve_category_id(db, family_id, category_id, new_category),
        **fields,
    )
    db.add(rule)
    db.flush()
    set_rule_tags(db, rule.id, find_or_create_tags(db, family_id, tags))
    db.commit()
    db.refresh(rule)
    return rule


def update_recurring_transaction(
    db: Session,
    actor: Actor,
    rule_id: int,
    *,
    account_id: object,
    amount: object,
    transaction_type: str,
    frequency: str,
    description: str,
    time_of_day: str,
    start_date: object,
    day_of_week: object = None,
    day_of_month: object = None,
    end_condition: str = "never",
    end_date: object = None,
    max_occurrences: object = None,
    category_id: object = None,
    new_category: Optional[str] = None,
    tags: Optional[str] = None,
) -> RecurringTransaction:
    """Replace a rule's definition; already generated occurrences are left untouched."""

    family_id = require_family(actor)
    rule = _get_active(db, family_id, rule_id)
    if rule is None:
        raise NotFoundError(RULE_NOT_FOUND)
    account = get_active_account(db, actor, parse_id(account_id, "Account"))
    fields = _rule_fields(
        amount=amount,
        transaction_type=transaction_type,
        frequency=frequency,
        description=description,
        time_of_day=time_of_day,
        start_date=start_date,
        day_of_week=day_of_week,
        day_of_month=day_of_month,
        end_condition=end_condition,
        end_date=end_date,
        max_occurrences=max_occurrences,
    )
    for key, value in fields.items():
        setattr(rule, key, value)
    rule.account_id = account.id
    rule.category_id = resolve_category_id(db, family_id, category_id, new_category)
    rule.updated_at = now_local()
    db.add(rule)
    db.flush()
    set_rule_tags(db, rule.id, find_or_create_tags(db, family_id, tags))
    db.commit()
    db.refresh(rule)
    return rule


def delete_recurring_transaction(db: Session, actor: Actor, rule_id: int) -> RecurringTransaction:
    rule = _get_active(db, require_family(actor), rule_id)
    if rule is None:
        raise NotFoundError(RULE_NOT_FOUND)
    rule.deleted_at = now_local()
    rule.updated_at = rule.deleted_at
    db.add(rule)
    db.commit()
    return rule


# ---------------------------------------------------------------------------
# Generation
# ---------------------------------------------------------------------------
def _already_logged(db: Session, rule_id: int, moment: datetime) -> bool:
    statement = select(RecurringTransactionLog.id).where(
        RecurringTransactionLog.recurring_transaction_id == rule_id,
        RecurringTransactionLog.execution_time == moment,
    )
    return db.exec(statement).first() is not None


def _materialize(db: Session, rule: RecurringTransaction, tag_ids: List[int], moment: datetime) -> bool:
    """Write one occurrence atomically; return ``False`` when it was already logged."""

    rule_id = rule.id
    log = RecurringTransactionLog(recurring_transaction_id=rule_id, execution_time=moment)
    db.add(log)
    try:
        db.flush()
    except IntegrityError:
        db.rollback()
        if _already_logged(db, rule_id, moment):
            return False
        raise

    kind = TransactionType(rule.type)
    transaction = Transaction(
        account_id=rule.account_id,
        user_id=rule.user_id,
        category_id=rule.category_id,
        date=moment,
        name=f"{rule.description} (Recurring)",
        amount_cents=rule.amount_cents,
        type=kind.value,
    )
    db.add(transaction)
    db.flush()
    for tag_id in tag_ids:
        db.add(TransactionTag(transaction_id=transaction.id, tag_id=tag_id))
    apply_balance_delta(db, rule.account_id, kind.signed(rule.amount_cents))
    log.generated_transaction_id = transaction.id
    db.add(log)
    db.exec(
        update(RecurringTransaction)
        .where(RecurringTransaction.id == rule.id)
        .values(occurrences_count=RecurringTransaction.occurrences_count + 1, updated_at=now_local())
    )
    db.commit()
    return True


def _generate_for_rule(
    db: Session,
    rule: RecurringTransaction,
    *,
    until: datetime,
    logger: StructuredLogger,
) -> int:
    rule_id = rule.id
    tag_ids = [tag.id for tag in tags_for_rule(db, rule_id)]
    logged: Set[datetime] = set(
        db.exec(
            select(RecurringTransactionLog.execution_time).where(
                RecurringTransactionLog.recurring_transaction_id == rule_id
            )
        ).all()
    )
    generated = 0
    for moment in schedule_for(rule).occurrences(until):
        db.refresh(rule)
        if rule.max_occurrences is not None and rule.occurrences_count >= rule.max_occurrences:
            break
        if moment in logged:
            continue
        if _materialize(db, rule, tag_ids, moment):
            generated += 1
            logger.log("recurring_occurrence_generated", rule_id=rule_id, execution_time=moment.isoformat())
        logged.add(moment)
    return generated


def generate_recurring_transactions(
    db: Session,
    actor: Actor,
    rule_ids: Iterable[int],
    horizon: Horizon | str = Horizon.TODAY,
    *,
    at: Optional[datetime] = None,
    logger: Optional[StructuredLogger] = None,
) -> GenerationResult:
    """Materialize every due occurrence of ``rule_ids`` up to ``horizon``.

    Rules are processed in order. A rule that cannot be found in the caller's
    family, or that fails part way, is reported in ``errors`` and the batch
    carries on with the next id.
    """

    family_id = require_family(actor)
    log = logger or event_log
    now = at or now_local()
    selected = parse_enum(Horizon, horizon or Horizon.TODAY.value, "Generate up to")
    until = horizon_target(selected, now)
    result = GenerationResult()

    for rule_id in rule_ids:
        rule = _get_active(db, family_id, rule_id)
        if rule is None:
            result.errors.append(f"Recurring transaction {rule_id} not found")
            continue
        if rule.start_date > now:
            continue
        if rule.end_date is not None and rule.end_date < now:
            continue
        try:
            result.generated_count += _generate_for_rule(db, rule, until=until, logger=log)
        except Exception as exc:
            db.rollback()
            log.error("recurring_generation_failed", exc=exc, rule_id=rule_id)
            result.errors.append(f"Failed to generate transactions for recurring transaction {rule_id}")
    return result


__all__ = [
    "create_recurring_transaction",
    "delete_recurring_transaction",
    "generate_recurring_transactions",
    "get_recurring_transaction",
    "get_recurring_transactions",
    "remaining_occurrences",
    "rule_status",
    "schedule_for",
    "update_recurring_transaction",
]
