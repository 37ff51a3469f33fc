from datetime import datetime
from decimal import Decimal

import pytest
from sqlmodel import select

from conftest import make_family, make_user
from famledger.exceptions import NotFoundError, ValidationError
from famledger.models import Horizon, RecurringStatus
from famledger.money import from_cents
from famledger.ops import StructuredLogger
from famledger.webapp import accounts, recurring
from famledger.webapp.persistence import (
    Account,
    AccountBalance,
    RecurringTransaction,
    RecurringTransactionLog,
    Transaction,
)
from famledger.webapp.tags import tags_for_transaction

NOW = datetime(2024, 1, 5, 12, 0)


def _account(db, actor, name="Checking") -> Account:
    return accounts.create_account(db, actor, name=name, account_type="Checking", balance="0")


def _rule(db, actor, account, **overrides) -> RecurringTransaction:
    fields = {
        "account_id": str(account.id),
        "amount": "10.00",
        "transaction_type": "Expense",
        "frequency": "Daily",
        "description": "Coffee",
        "time_of_day": "09:00",
        "start_date": "2024-01-01T09:00",
    }
    fields.update(overrides)
    return recurring.create_recurring_transaction(db, actor, **fields)


def _balance(db, account_id) -> Decimal:
    db.expire_all()
    return from_cents(db.get(Account, account_id).balance_cents)


def _generated(db, rule_id):
    return db.exec(
        select(Transaction)
        .join(RecurringTransactionLog, RecurringTransactionLog.generated_transaction_id == Transaction.id)
        .where(RecurringTransactionLog.recurring_transaction_id == rule_id)
        .order_by(Transaction.date)
    ).all()


def test_daily_rule_generates_every_due_occurrence(db, actor) -> None:
    account = _account(db, actor)
    rule = _rule(db, actor, account)
    logger = StructuredLogger()

    result = recurring.generate_recurring_transactions(db, actor, [rule.id], Horizon.TODAY, at=NOW, logger=logger)

    assert result.generated_count == 5
    assert result.as_payload() == {"generatedCount": 5, "errors": None}
    generated = _generated(db, rule.id)
    assert [item.date for item in generated] == [datetime(2024, 1, day, 9, 0) for day in range(1, 6)]
    assert {item.name for item in generated} == {"Coffee (Recurring)"}
    assert _balance(db, account.id) == Decimal("-50.00")
    db.refresh(rule)
    assert rule.occurrences_count == 5
    assert sum(1 for entry in logger.tail() if entry["event"] == "recurring_occurrence_generated") == 5


def test_generation_is_idempotent(db, actor) -> None:
    account = _account(db, actor)
    rule = _rule(db, actor, account, transaction_type="Income", amount="25")

    first = recurring.generate_recurring_transactions(db, actor, [rule.id], "today", at=NOW)
    second = recurring.generate_recurring_transactions(db, actor, [rule.id], "today", at=NOW)

    assert first.generated_count == 5
    assert second.generated_count == 0
    assert second.errors == []
    assert len(_generated(db, rule.id)) == 5
    assert _balance(db, account.id) == Decimal("125.00")
    db.refresh(rule)
    assert rule.occurrences_count == 5


def test_max_occurrences_caps_generation(db, actor) -> None:
    account = _account(db, actor)
    rule = _rule(db, actor, account, end_condition="maxOccurrences", max_occurrences="3")

    result = recurring.generate_recurring_transactions(db, actor, [rule.id], Horizon.NEXT_WEEK, at=NOW)
    again = recurring.generate_recurring_transactions(db, actor, [rule.id], Horizon.NEXT_MONTH, at=NOW)

    assert result.generated_count == 3
    assert again.generated_count == 0
    db.refresh(rule)
    assert rule.occurrences_count == 3
    assert recurring.remaining_occurrences(rule) == 0
    assert recurring.rule_status(rule, at=NOW) is RecurringStatus.COMPLETED
    assert _balance(db, account.id) == Decimal("-30.00")


def test_rule_whose_end_date_has_passed_generates_nothing(db, actor) -> None:
    account = _account(db, actor)
    rule = _rule(db, actor, account, end_condition="endDate", end_date="2024-01-03T09:00")

    result = recurring.generate_recurring_transactions(db, actor, [rule.id], Horizon.TODAY, at=NOW)

    assert result.as_payload() == {"generatedCount": 0, "errors": None}
    assert _generated(db, rule.id) == []
    assert _balance(db, account.id) == Decimal("0.00")
    assert recurring.rule_status(rule, at=NOW) is RecurringStatus.COMPLETED


def test_end_date_is_inclusive_while_the_rule_is_running(db, actor) -> None:
    account = _account(db, actor)
    rule = _rule(db, actor, account, end_condition="endDate", end_date="2024-01-03T09:00")

    result = recurring.generate_recurring_transactions(
        db, actor, [rule.id], Horizon.NEXT_MONTH, at=datetime(2024, 1, 2, 12, 0)
    )

    assert result.generated_count == 3
    assert _generated(db, rule.id)[-1].date == datetime(2024, 1, 3, 9, 0)
    assert recurring.generate_recurring_transactions(db, actor, [rule.id], at=NOW).generated_count == 0


def test_next_week_horizon_reaches_ahead(db, actor) -> None:
    account = _account(db, actor)
    rule = _rule(db, actor, account, frequency="Weekly", day_of_week="1", start_date="2024-01-01T08:00")

    result = recurring.generate_recurring_transactions(db, actor, [rule.id], "nextWeek", at=datetime(2024, 1, 3, 12))

    assert result.generated_count == 2
    assert [item.date for item in _generated(db, rule.id)] == [datetime(2024, 1, 1, 8), datetime(2024, 1, 8, 8)]


def test_monthly_rule_on_the_31st(db, actor) -> None:
    account = _account(db, actor)
    rule = _rule(
        db,
        actor,
        account,
        frequency="Monthly",
        day_of_month="31",
        start_date="2024-01-31T07:30",
        transaction_type="Income",
        amount="1000",
    )

    recurring.generate_recurring_transactions(db, actor, [rule.id], at=datetime(2024, 4, 30, 12))

    assert [item.date.date() for item in _generated(db, rule.id)] == [
        datetime(2024, 1, 31).date(),
        datetime(2024, 2, 29).date(),
        datetime(2024, 3, 31).date(),
        datetime(2024, 4, 30).date(),
    ]
    assert _balance(db, account.id) == Decimal("4000.00")


def test_rules_starting_in_the_future_are_skipped(db, actor) -> None:
    account = _account(db, actor)
    rule = _rule(db, actor, account, start_date="2024-01-10T09:00")

    result = recurring.generate_recurring_transactions(db, actor, [rule.id], Horizon.NEXT_MONTH, at=NOW)

    assert result.generated_count == 0
    assert result.errors == []
    assert recurring.rule_status(rule, at=NOW) is RecurringStatus.SCHEDULED


def test_batch_reports_missing_rules_and_continues(db, actor) -> None:
    account = _account(db, actor)
    rule = _rule(db, actor, account)
    outsider_family = make_family(db, "Jones")
    outsider = make_user(db, "bobby", family_id=outsider_family.id)
    foreign_account = _account(db, outsider, "Foreign")
    foreign_rule = _rule(db, outsider, foreign_account)

    result = recurring.generate_recurring_transactions(db, actor, [9999, foreign_rule.id, rule.id], at=NOW)

    assert result.generated_count == 5
    assert result.errors == [
        "Recurring transaction 9999 not found",
        f"Recurring transaction {foreign_rule.id} not found",
    ]
    assert _generated(db, foreign_rule.id) == []


def test_generated_transactions_copy_rule_tags_and_category(db, actor) -> None:
    account = _account(db, actor)
    rule = _rule(db, actor, account, tags="home, Rent, home", new_category="Housing")

    recurring.generate_recurring_transactions(db, actor, [rule.id], at=datetime(2024, 1, 2, 9, 0))

    generated = _generated(db, rule.id)
    assert len(generated) == 2
    for item in generated:
        assert item.category_id == rule.category_id
        assert [tag.name for tag in tags_for_transaction(db, item.id)] == ["Rent", "home"]


def test_generation_records_daily_balance_snapshot(db, actor, frozen_clock) -> None:
    account = _account(db, actor)
    rule = _rule(db, actor, account)

    recurring.generate_recurring_transactions(db, actor, [rule.id], at=NOW)

    snapshot = db.exec(
        select(AccountBalance).where(AccountBalance.account_id == account.id, AccountBalance.day == NOW.date())
    ).one()
    assert snapshot.balance_cents == -5000


def test_rule_validation_messages(db, actor) -> None:
    account = _account(db, actor)
    with pytest.raises(ValidationError, match="Day of week is required for weekly frequency"):
        _rule(db, actor, account, frequency="Weekly")
    with pytest.raises(ValidationError, match="Day of month is required for monthly frequency"):
        _rule(db, actor, account, frequency="Monthly", day_of_month="32")
    with pytest.raises(ValidationError, match="Time of day is required"):
        _rule(db, actor, account, time_of_day="")
    with pytest.raises(ValidationError, match="End date is required"):
        _rule(db, actor, account, end_condition="endDate")
    with pytest.raises(ValidationError, match="End date must be after the start date"):
        _rule(db, actor, account, end_condition="endDate", end_date="2023-12-31T09:00")
    with pytest.raises(ValidationError, match="Max occurrences must be a positive number"):
        _rule(db, actor, account, end_condition="maxOccurrences", max_occurrences="0")
    with pytest.raises(ValidationError, match="Amount must be positive"):
        _rule(db, actor, account, amount="-4")


def test_rule_listing_and_details(db, actor) -> None:
    account = _account(db, actor)
    daily = _rule(db, actor, account)
    _rule(db, actor, account, description="Salary", transaction_type="Income", frequency="Monthly", day_of_month="1")
    recurring.generate_recurring_transactions(db, actor, [daily.id], at=NOW)

    page = recurring.get_recurring_transactions(db, actor, frequency="Daily", at=NOW)
    assert page.total == 1
    item = page.items[0]
    assert item["description"] == "Coffee"
    assert item["amount"] == "10.00"
    assert item["status"] == "active"
    assert item["account"]["name"] == "Checking"
    assert len(item["logs"]) == 5
    assert item["logs"][0]["generated_transaction"]["name"] == "Coffee (Recurring)"

    details = recurring.get_recurring_transaction(db, actor, daily.id)
    assert details["remaining_occurrences"] is None
    assert len(details["logs"]) == 5

    assert recurring.get_recurring_transactions(db, actor).pagination()["total"] == 2


def test_update_and_delete_rule(db, actor) -> None:
    account = _account(db, actor)
    rule = _rule(db, actor, account, tags="coffee")
    updated = recurring.update_recurring_transaction(
        db,
        actor,
        rule.id,
        account_id=str(account.id),
        amount="12.50",
        transaction_type="Expense",
        frequency="Weekly",
        day_of_week="3",
        description="Beans",
        time_of_day="10:15",
        start_date="2024-01-03T10:15",
        tags="groceries",
    )
    assert updated.amount_cents == 1250
    assert updated.day_of_month is None
    details = recurring.get_recurring_transaction(db, actor, rule.id)
    assert [tag["name"] for tag in details["tags"]] == ["groceries"]

    recurring.delete_recurring_transaction(db, actor, rule.id)
    with pytest.raises(NotFoundError):
        recurring.get_recurring_transaction(db, actor, rule.id)
    result = recurring.generate_recurring_transactions(db, actor, [rule.id], at=NOW)
    assert result.errors == [f"Recurring transaction {rule.id} not found"]


def test_materialize_skips_an_occurrence_logged_concurrently(db, actor) -> None:
    account = _account(db, actor)
    rule = _rule(db, actor, account)
    moment = datetime(2024, 1, 1, 9, 0)
    db.add(RecurringTransactionLog(recurring_transaction_id=rule.id, execution_time=moment))
    db.commit()

    assert recurring._materialize(db, rule, [], moment) is False
    assert _generated(db, rule.id) == []
    assert _balance(db, account.id) == Decimal("0.00")


class _UnloggableSchedule:
    def occurrences(self, until):
        yield None


def test_other_integrity_errors_are_reported_per_rule(db, actor, monkeypatch) -> None:
    account = _account(db, actor)
    broken = _rule(db, actor, account)
    healthy = _rule(db, actor, account, description="Rent", start_date="2024-01-05T09:00")
    real_schedule = recurring.schedule_for
    monkeypatch.setattr(
        recurring,
        "schedule_for",
        lambda rule: _UnloggableSchedule() if rule.id == broken.id else real_schedule(rule),
    )
    logger = StructuredLogger()

    result = recurring.generate_recurring_transactions(db, actor, [broken.id, healthy.id], at=NOW, logger=logger)

    assert result.generated_count == 1
    assert result.errors == [f"Failed to generate transactions for recurring transaction {broken.id}"]
    assert any(entry["event"] == "recurring_generation_failed" for entry in logger.tail())
    assert _balance(db, account.id) == Decimal("-10.00")
