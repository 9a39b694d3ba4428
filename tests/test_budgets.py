from datetime import date
from decimal import Decimal

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import Session

from database import Base
from errors import ValidationFailed
from models import AccountType, CategoryType, TransactionType
from schemas import (
    AccountIn,
    BudgetIn,
    BudgetOut,
    BudgetPatch,
    CategoryIn,
    TransactionIn,
    TransactionPatch,
)
from services import AccountService, BudgetService, CategoryService, TransactionService
from trackers import BudgetTracker, budget_status


def _expense(account_id: int, category_id: int, amount: str, day: date) -> TransactionIn:
    return TransactionIn(
        account_id=account_id,
        category_id=category_id,
        transaction_type=TransactionType.expense,
        amount=Decimal(amount),
        description="Groceries",
        date=day,
    )


def _march_budget(session: Session, category_id: int, amount: str = "200.00"):
    return BudgetService(session, 1).create(
        BudgetIn(
            category_id=category_id,
            name="Groceries March",
            amount=Decimal(amount),
            period_start=date(2025, 3, 1),
            period_end=date(2025, 3, 31),
        )
    )


def _setup(session: Session):
    account = AccountService(session, 1).create(
        AccountIn(name="Checking", account_type=AccountType.checking)
    )
    food = CategoryService(session, 1).create(
        CategoryIn(name="Food", category_type=CategoryType.expense)
    )
    return account, food


def test_budget_spent_follows_matching_expenses() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account, food = _setup(session)
        transactions = TransactionService(session, 1)
        # Spending recorded before the budget exists still counts.
        transactions.create(_expense(account.id, food.id, "20.00", date(2025, 3, 2)))
        budget = _march_budget(session, food.id)
        assert budget.spent == Decimal("20.00")

        inside = transactions.create(
            _expense(account.id, food.id, "30.50", date(2025, 3, 31))
        )
        transactions.create(_expense(account.id, food.id, "99.00", date(2025, 4, 1)))
        assert BudgetService(session, 1).get(budget.id).spent == Decimal("50.50")

        transactions.update(inside.id, TransactionPatch(date=date(2025, 4, 2)))
        assert BudgetService(session, 1).get(budget.id).spent == Decimal("20.00")

        transactions.update(inside.id, TransactionPatch(date=date(2025, 3, 15)))
        transactions.update(inside.id, TransactionPatch(amount=Decimal("10.00")))
        assert BudgetService(session, 1).get(budget.id).spent == Decimal("30.00")

        transactions.soft_delete(inside.id)
        assert BudgetService(session, 1).get(budget.id).spent == Decimal("20.00")


def test_changing_category_moves_spending_between_budgets() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account, food = _setup(session)
        fun = CategoryService(session, 1).create(
            CategoryIn(name="Fun", category_type=CategoryType.expense)
        )
        food_budget = _march_budget(session, food.id)
        fun_budget = _march_budget(session, fun.id)

        transactions = TransactionService(session, 1)
        txn = transactions.create(
            _expense(account.id, food.id, "45.00", date(2025, 3, 10))
        )
        transactions.update(txn.id, TransactionPatch(category_id=fun.id))

        budgets = BudgetService(session, 1)
        assert budgets.get(food_budget.id).spent == Decimal("0.00")
        assert budgets.get(fun_budget.id).spent == Decimal("45.00")


def test_recompute_is_exact_and_idempotent() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account, food = _setup(session)
        budget = _march_budget(session, food.id)
        transactions = TransactionService(session, 1)
        for amount in ("0.10", "0.20", "0.30"):
            transactions.create(_expense(account.id, food.id, amount, date(2025, 3, 3)))

        stored = BudgetService(session, 1).get(budget.id)
        stored.spent_cents = 12345
        session.commit()

        tracker = BudgetTracker(session, 1)
        assert tracker.recompute(budget.id).spent_cents == 60
        assert tracker.recompute(budget.id).spent_cents == 60


def test_inactive_budget_still_tracks_spending() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account, food = _setup(session)
        budget = _march_budget(session, food.id)
        budgets = BudgetService(session, 1)
        budgets.update(budget.id, BudgetPatch(is_active=False))

        TransactionService(session, 1).create(
            _expense(account.id, food.id, "15.00", date(2025, 3, 20))
        )
        assert budgets.get(budget.id).spent == Decimal("15.00")
        assert budgets.list() == []
        assert [b.id for b in budgets.list(include_inactive=True)] == [budget.id]


def test_overlapping_active_budgets_are_rejected() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, food = _setup(session)
        _march_budget(session, food.id)
        with pytest.raises(ValidationFailed, match="already exists"):
            BudgetService(session, 1).create(
                BudgetIn(
                    category_id=food.id,
                    name="Late March",
                    amount=Decimal("50.00"),
                    period_start=date(2025, 3, 20),
                    period_end=date(2025, 4, 10),
                )
            )

        april = BudgetService(session, 1).create(
            BudgetIn(
                category_id=food.id,
                name="April",
                amount=Decimal("50.00"),
                period_start=date(2025, 4, 1),
                period_end=date(2025, 4, 30),
            )
        )
        assert april.id is not None


def test_budget_requires_expense_category_and_ordered_period() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _setup(session)
        salary = CategoryService(session, 1).create(
            CategoryIn(name="Salary", category_type=CategoryType.income)
        )
        with pytest.raises(ValidationFailed, match="expense categories"):
            _march_budget(session, salary.id)

        food = CategoryService(session, 1).find_by_name(CategoryType.expense, "food")
        with pytest.raises(ValidationFailed, match="end must not be before"):
            BudgetService(session, 1).create(
                BudgetIn(
                    category_id=food.id,
                    name="Backwards",
                    amount=Decimal("10.00"),
                    period_start=date(2025, 3, 31),
                    period_end=date(2025, 3, 1),
                )
            )


def test_budget_list_hides_deleted_categories() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        _, food = _setup(session)
        _march_budget(session, food.id)
        CategoryService(session, 1).soft_delete(food.id)
        assert BudgetService(session, 1).list() == []


@pytest.mark.parametrize(
    ("spent", "expected"),
    [
        ("0", "good"),
        ("79.99", "good"),
        ("80", "warning"),
        ("99.99", "warning"),
        ("100", "over"),
        ("150", "over"),
    ],
)
def test_budget_status_bands(spent: str, expected: str) -> None:
    assert budget_status(Decimal("100"), Decimal(spent)) == expected


def test_budget_output_derives_remaining_and_status() -> None:
    engine = create_engine("sqlite:///:memory:")
    Base.metadata.create_all(engine)

    with Session(engine) as session:
        account, food = _setup(session)
        budget = _march_budget(session, food.id, "200.00")
        TransactionService(session, 1).create(
            _expense(account.id, food.id, "170.00", date(2025, 3, 4))
        )
        out = BudgetOut.model_validate(BudgetService(session, 1).get(budget.id))
        assert out.remaining == Decimal("30.00")
        assert out.percentage_used == Decimal("85.00")
        assert out.status == "warning"
