"""Sample ledger for trying the app out.

Seeds four IDR accounts, nine categories, several months of day-to-day
activity, budgets for the current month and three savings goals. Everything
goes through the regular services, so balances, budget spending and goal
progress are derived exactly as they are for real entries.
"""

import logging
import random
from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

from sqlalchemy.orm import Session

from database import atomic
from errors import ValidationFailed
from models import AccountType, CategoryType, TransactionType
from periods import month_bounds
from schemas import (
    AccountIn,
    BudgetIn,
    CategoryIn,
    ContributionIn,
    SavingsGoalIn,
    TransactionIn,
)
from services import (
    AccountService,
    BudgetService,
    CategoryService,
    ProfileService,
    SavingsGoalService,
    TransactionService,
)

logger = logging.getLogger(__name__)

DEMO_CURRENCY = "IDR"

# (name, type, initial balance, color, icon)
DEMO_ACCOUNTS = [
    ("BCA Checking", AccountType.checking, 10_000_000, "#0066CC", "bank"),
    ("Mandiri Savings", AccountType.savings, 20_000_000, "#FFB800", "piggy-bank"),
    ("BNI Credit Card", AccountType.credit, 0, "#FF6B6B", "credit-card"),
    ("Cash Wallet", AccountType.cash, 500_000, "#4ECDC4", "wallet"),
]

DEMO_CATEGORIES = [
    ("Salary", CategoryType.income, "#27AE60", "briefcase"),
    ("Freelance", CategoryType.income, "#2ECC71", "laptop"),
    ("Investment", CategoryType.income, "#16A085", "trending-up"),
    ("Food & Dining", CategoryType.expense, "#E74C3C", "utensils"),
    ("Transportation", CategoryType.expense, "#9B59B6", "car"),
    ("Shopping", CategoryType.expense, "#F39C12", "shopping-bag"),
    ("Bills & Utilities", CategoryType.expense, "#34495E", "file-text"),
    ("Entertainment", CategoryType.expense, "#E67E22", "music"),
    ("Healthcare", CategoryType.expense, "#1ABC9C", "heart"),
]

# Paid from checking on the 5th, 6th, 7th and 8th of every month.
MONTHLY_BILLS = [
    ("Electricity Bill", 450_000),
    ("Internet Bill", 350_000),
    ("Mobile Phone Bill", 150_000),
    ("Water Bill", 125_000),
]

DEMO_BUDGETS = [
    ("Food & Dining", "Monthly Food Budget", 3_000_000),
    ("Transportation", "Transportation Budget", 1_500_000),
    ("Entertainment", "Entertainment Budget", 1_000_000),
]

SALARY = 12_000_000
SALARY_DAY = 25


@dataclass(frozen=True)
class DemoResult:
    accounts: int
    categories: int
    transactions: int
    budgets: int
    goals: int


def _month_start(day: date, offset: int) -> date:
    """First day of the month ``offset`` months from ``day``'s month."""
    total = day.year * 12 + day.month - 1 + offset
    return date(total // 12, total % 12 + 1, 1)


class DemoDataService:
    def __init__(self, session: Session, user_id: int, seed: Optional[int] = None) -> None:
        self.session = session
        self.user_id = user_id
        self.rng = random.Random(seed)

    def _amount(self, low: int, high: int) -> Decimal:
        return Decimal(self.rng.randrange(low, high + 1, 500))

    def _month_activity(
        self,
        first: date,
        last_day: int,
        accounts: dict[str, int],
        categories: dict[str, int],
    ) -> list[TransactionIn]:
        checking = accounts["BCA Checking"]
        cash = accounts["Cash Wallet"]
        credit = accounts["BNI Credit Card"]
        rows: list[TransactionIn] = []

        def add(account_id, category, txn_type, amount, description, day, tags):
            rows.append(
                TransactionIn(
                    account_id=account_id,
                    category_id=categories[category],
                    transaction_type=txn_type,
                    amount=amount,
                    description=description,
                    date=first.replace(day=day),
                    tags=tags,
                )
            )

        if SALARY_DAY <= last_day:
            add(
                checking,
                "Salary",
                TransactionType.income,
                Decimal(SALARY),
                "Monthly Salary",
                SALARY_DAY,
                ["salary", "regular"],
            )
        if self.rng.random() > 0.4:
            add(
                checking,
                "Freelance",
                TransactionType.income,
                self._amount(2_000_000, 7_000_000),
                "Freelance Project",
                self.rng.randint(1, last_day),
                ["freelance"],
            )

        for day in range(1, last_day + 1):
            weekend = first.replace(day=day).weekday() >= 5
            if not weekend or self.rng.random() > 0.3:
                add(
                    cash if self.rng.random() > 0.7 else checking,
                    "Food & Dining",
                    TransactionType.expense,
                    self._amount(50_000, 250_000),
                    self.rng.choice(["Lunch", "Dinner"]),
                    day,
                    ["food"],
                )
            if not weekend and self.rng.random() > 0.2:
                add(
                    cash,
                    "Transportation",
                    TransactionType.expense,
                    self._amount(25_000, 75_000),
                    self.rng.choice(["Gojek", "Grab"]),
                    day,
                    ["transport", "ojol"],
                )
            if self.rng.random() > 0.85:
                add(
                    credit,
                    "Shopping",
                    TransactionType.expense,
                    self._amount(200_000, 1_700_000),
                    "Online Shopping",
                    day,
                    ["shopping", "online"],
                )

        for offset, (description, amount) in enumerate(MONTHLY_BILLS):
            day = 5 + offset
            if day <= last_day:
                add(
                    checking,
                    "Bills & Utilities",
                    TransactionType.expense,
                    Decimal(amount),
                    description,
                    day,
                    ["bills", "monthly"],
                )
        return rows

    def create(self, today: Optional[date] = None, months: int = 6) -> DemoResult:
        """Seed the sample ledger; only allowed while the user has no accounts."""
        today = today or ProfileService(self.session, self.user_id).today()
        accounts_service = AccountService(self.session, self.user_id)
        if accounts_service.list_all():
            raise ValidationFailed("Demo data can only be added to an empty ledger")

        accounts: dict[str, int] = {}
        for index, (name, account_type, initial, color, icon) in enumerate(DEMO_ACCOUNTS):
            account = accounts_service.create(
                AccountIn(
                    name=name,
                    account_type=account_type,
                    initial_balance=Decimal(initial),
                    currency=DEMO_CURRENCY,
                    color=color,
                    icon=icon,
                    is_default=index == 0,
                )
            )
            accounts[name] = account.id

        category_service = CategoryService(self.session, self.user_id)
        categories: dict[str, int] = {}
        for name, category_type, color, icon in DEMO_CATEGORIES:
            category = category_service.create(
                CategoryIn(name=name, category_type=category_type, color=color, icon=icon)
            )
            categories[name] = category.id

        rows: list[TransactionIn] = []
        for back in range(months - 1, -1, -1):
            first = _month_start(today, -back)
            last_day = today.day if back == 0 else month_bounds(first)[1].day
            rows.extend(self._month_activity(first, last_day, accounts, categories))

        transactions = TransactionService(self.session, self.user_id)
        with atomic(self.session):
            for data in sorted(rows, key=lambda row: row.date):
                transactions.stage(data)

        period_start, period_end = month_bounds(today)
        budgets = BudgetService(self.session, self.user_id)
        for category, name, amount in DEMO_BUDGETS:
            budgets.create(
                BudgetIn(
                    category_id=categories[category],
                    name=name,
                    amount=Decimal(amount),
                    period_start=period_start,
                    period_end=period_end,
                )
            )

        savings = accounts["Mandiri Savings"]
        goal_specs = [
            (
                "Emergency Fund",
                "Build emergency fund for 6 months expenses",
                60_000_000,
                25_500_000,
                date(today.year + 1, 12, 31),
            ),
            (
                "Vacation Fund",
                "Save for family vacation to Bali",
                15_000_000,
                8_500_000,
                _month_start(today, 6),
            ),
            (
                "New Laptop",
                "Save for new MacBook Pro",
                25_000_000,
                12_000_000,
                _month_start(today, 9).replace(day=15),
            ),
        ]
        goals = SavingsGoalService(self.session, self.user_id)
        for name, description, target, saved, target_date in goal_specs:
            goal = goals.create(
                SavingsGoalIn(
                    account_id=savings,
                    name=name,
                    description=description,
                    target_amount=Decimal(target),
                    target_date=target_date,
                )
            )
            goals.contribute(
                goal.id, ContributionIn(amount=Decimal(saved), note="Saved so far")
            )

        result = DemoResult(
            accounts=len(accounts),
            categories=len(categories),
            transactions=len(rows),
            budgets=len(DEMO_BUDGETS),
            goals=len(goal_specs),
        )
        logger.info(
            f"demo_data_created: user_id={self.user_id} "
            f"transactions={result.transactions}"
        )
        return result
