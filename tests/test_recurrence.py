from datetime import date
from decimal import Decimal

from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from models import (
    AccountType,
    CategoryType,
    RecurringFrequency,
    RecurringRule,
    TransactionType,
)
from recurrence import RecurringEngine, calculate_next_date
from schemas import AccountIn, CategoryIn, RecurringRuleIn, RecurringRulePatch
from services import (
    AccountService,
    CategoryService,
    RecurringRuleService,
    TransactionService,
)


def _rule(frequency: RecurringFrequency, start: date, interval: int = 1) -> RecurringRule:
    return RecurringRule(frequency=frequency, interval_count=interval, start_date=start)


def _account(session: Session, balance: str = "100.00"):
    return AccountService(session, 1).create(
        AccountIn(
            name="Checking",
            account_type=AccountType.checking,
            initial_balance=Decimal(balance),
        )
    )


def _rule_in(account_id: int, start: date, **extra) -> RecurringRuleIn:
    return RecurringRuleIn(
        account_id=account_id,
        transaction_type=TransactionType.expense,
        amount=Decimal(extra.pop("amount", "10.00")),
        description=extra.pop("description", "Gym"),
        frequency=extra.pop("frequency", RecurringFrequency.monthly),
        start_date=start,
        **extra,
    )


def test_month_end_anchor_snaps_and_recovers() -> None:
    rule = _rule(RecurringFrequency.monthly, date(2024, 1, 31))
    feb = calculate_next_date(rule, date(2024, 1, 31))
    assert feb == date(2024, 2, 29)
    assert calculate_next_date(rule, feb) == date(2024, 3, 31)
    assert calculate_next_date(rule, date(2024, 3, 31)) == date(2024, 4, 30)


def test_quarterly_yearly_weekly_daily_steps() -> None:
    quarterly = _rule(RecurringFrequency.quarterly, date(2024, 11, 30))
    assert calculate_next_date(quarterly, date(2024, 11, 30)) == date(2025, 2, 28)
    assert calculate_next_date(quarterly, date(2025, 2, 28)) == date(2025, 5, 30)

    yearly = _rule(RecurringFrequency.yearly, date(2024, 2, 29))
    assert calculate_next_date(yearly, date(2024, 2, 29)) == date(2025, 2, 28)

    weekly = _rule(RecurringFrequency.weekly, date(2025, 1, 1), interval=2)
    assert calculate_next_date(weekly, date(2025, 1, 1)) == date(2025, 1, 15)

    daily = _rule(RecurringFrequency.daily, date(2025, 12, 31))
    assert calculate_next_date(daily, date(2025, 12, 31)) == date(2026, 1, 1)


def test_catch_up_posts_every_missed_occurrence_once() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account = _account(session)
        rule = RecurringRuleService(session, 1).create(
            _rule_in(account.id, date(2025, 1, 15))
        )

        recurring = RecurringEngine(session)
        assert recurring.post_due_rules(today=date(2025, 3, 20)) == 3

        rule = RecurringRuleService(session, 1).get(rule.id)
        assert rule.next_occurrence == date(2025, 4, 15)
        assert rule.is_active
        assert AccountService(session, 1).get(account.id).balance == Decimal("70.00")

        assert recurring.post_due_rules(today=date(2025, 3, 20)) == 0
        _, total = TransactionService(session, 1).list()
        assert total == 3


def test_posted_transaction_links_back_to_its_rule() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account = _account(session)
        rule = RecurringRuleService(session, 1).create(
            _rule_in(account.id, date(2025, 2, 1), description="Rent")
        )
        RecurringEngine(session).post_due_rules(today=date(2025, 2, 1))

        [txn], _ = TransactionService(session, 1).list()
        assert txn.recurring_rule_id == rule.id
        assert txn.occurrence_date == date(2025, 2, 1)
        assert txn.date == date(2025, 2, 1)
        assert txn.amount == Decimal("10.00")
        assert txn.notes == "Recurring transaction from rule: Rent"


def test_rule_deactivates_after_its_end_date() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account = _account(session)
        rule = RecurringRuleService(session, 1).create(
            _rule_in(
                account.id,
                date(2025, 1, 1),
                frequency=RecurringFrequency.daily,
                end_date=date(2025, 1, 3),
            )
        )
        posted = RecurringEngine(session).post_due_rules(today=date(2025, 1, 10))
        assert posted == 3

        rule = RecurringRuleService(session, 1).get(rule.id)
        assert not rule.is_active
        assert rule.next_occurrence == date(2025, 1, 4)


def test_failing_rule_does_not_stop_the_others() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account = _account(session)
        gym = CategoryService(session, 1).create(
            CategoryIn(name="Gym", category_type=CategoryType.expense)
        )
        broken = RecurringRuleService(session, 1).create(
            _rule_in(account.id, date(2025, 1, 1), category_id=gym.id)
        )
        healthy = RecurringRuleService(session, 1).create(
            _rule_in(account.id, date(2025, 1, 5), description="Phone")
        )
        CategoryService(session, 1).soft_delete(gym.id)

        posted = RecurringEngine(session).post_due_rules(today=date(2025, 1, 10))
        assert posted == 1

        rules = RecurringRuleService(session, 1)
        assert rules.get(broken.id).next_occurrence == date(2025, 1, 1)
        assert rules.get(healthy.id).next_occurrence == date(2025, 2, 5)


def test_inactive_and_deleted_rules_are_not_posted() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account = _account(session)
        rules = RecurringRuleService(session, 1)
        first = rules.create(_rule_in(account.id, date(2025, 1, 1)))
        second = rules.create(_rule_in(account.id, date(2025, 1, 1), description="Web"))
        rules.soft_delete(first.id)
        rules.update(second.id, RecurringRulePatch(is_active=False))

        assert RecurringEngine(session).post_due_rules(today=date(2025, 6, 1)) == 0
