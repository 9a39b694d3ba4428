from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine, func, select
from sqlalchemy.orm import Session

from database import Base
from demo import DemoDataService
from errors import ValidationFailed
from ledger import BalanceEngine
from models import Transaction, TransactionType
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    SavingsGoalService,
)


def test_demo_ledger_is_internally_consistent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        result = DemoDataService(session, 1, seed=7).create(
            today=date(2025, 6, 15), months=2
        )
        assert (result.accounts, result.categories, result.budgets, result.goals) == (
            4,
            9,
            3,
            3,
        )
        count = session.scalar(
            select(func.count(Transaction.id)).where(Transaction.user_id == 1)
        )
        assert count == result.transactions

        first_day = session.scalar(select(func.min(Transaction.date)))
        last_day = session.scalar(select(func.max(Transaction.date)))
        assert first_day >= date(2025, 5, 1)
        assert last_day <= date(2025, 6, 15)

        accounts = AccountService(session, 1)
        checking = accounts.list_all()[0]
        assert checking.name == "BCA Checking"
        assert checking.is_default
        assert {account.currency for account in accounts.list_all()} == {"IDR"}

        ledger = BalanceEngine(session, 1)
        for account in accounts.list_all():
            expected = account.initial_balance_cents + ledger.live_effect_total(
                account.id
            )
            assert account.balance_cents == expected

        food = next(
            c for c in CategoryService(session, 1).list_all() if c.name == "Food & Dining"
        )
        food_spent = session.scalar(
            select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                Transaction.category_id == food.id,
                Transaction.transaction_type == TransactionType.expense,
                Transaction.date >= date(2025, 6, 1),
            )
        )
        budget = next(
            b for b in BudgetService(session, 1).list() if b.category_id == food.id
        )
        assert budget.spent_cents == food_spent
        assert (budget.period_start, budget.period_end) == (
            date(2025, 6, 1),
            date(2025, 6, 30),
        )

        goals = {goal.name: goal for goal in SavingsGoalService(session, 1).list()}
        assert goals["Vacation Fund"].current_amount == Decimal("8500000.00")
        assert goals["Vacation Fund"].target_date == date(2025, 12, 1)
        assert goals["New Laptop"].target_date == date(2026, 3, 15)


def test_same_seed_gives_the_same_ledger() -> None:
    totals = []
    for _ in range(2):
        engine = create_engine("sqlite:///:memory:")
        Base.metadata.create_all(engine)
        with Session(engine) as session:
            DemoDataService(session, 1, seed=3).create(today=date(2025, 2, 10), months=1)
            totals.append(
                [a.balance_cents for a in AccountService(session, 1).list_all()]
            )
    assert totals[0] == totals[1]


def test_demo_data_needs_an_empty_ledger() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        DemoDataService(session, 1, seed=1).create(today=date(2025, 1, 3), months=1)
        with pytest.raises(ValidationFailed, match="empty ledger"):
            DemoDataService(session, 1).create(today=date(2025, 1, 3), months=1)
        DemoDataService(session, 2, seed=1).create(today=date(2025, 1, 3), months=1)
