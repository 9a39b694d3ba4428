"""Read-only rollups over the ledger.

Nothing here writes; the summary is the only view of the ledger handed to the
insight collaborator.
"""

from datetime import date
from typing import Optional

from sqlalchemy import func, select
from sqlalchemy.orm import Session

from errors import ValidationFailed
from models import Category, GoalStatus, Transaction, TransactionType
from money import from_cents, percentage
from periods import month_bounds
from schemas import (
    AccountBalance,
    AccountOut,
    BudgetOut,
    BudgetStatusLine,
    CategoryExpense,
    DashboardOut,
    FinancialSummary,
    SavingsGoalOut,
    TransactionOut,
)
from services import AccountService, BudgetService, SavingsGoalService, TransactionService
from trackers import budget_status

UNCATEGORIZED = "Uncategorized"


class SummaryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _totals(
        self, start: date, end: date, account_id: Optional[int] = None
    ) -> dict[TransactionType, int]:
        stmt = (
            select(
                Transaction.transaction_type,
                func.coalesce(func.sum(Transaction.amount_cents), 0),
            )
            .where(
                Transaction.user_id == self.user_id,
                Transaction.deleted_at.is_(None),
                Transaction.date.between(start, end),
            )
            .group_by(Transaction.transaction_type)
        )
        if account_id is not None:
            stmt = stmt.where(Transaction.account_id == account_id)
        return {row[0]: int(row[1] or 0) for row in self.session.execute(stmt)}

    def _expense_by_category(
        self, start: date, end: date, total_cents: int, account_id: Optional[int]
    ) -> list[CategoryExpense]:
        amount = func.sum(Transaction.amount_cents).label("amount")
        stmt = (
            select(Transaction.category_id, Category.name, amount)
            .outerjoin(Category, Category.id == Transaction.category_id)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.deleted_at.is_(None),
                Transaction.transaction_type == TransactionType.expense,
                Transaction.date.between(start, end),
            )
            .group_by(Transaction.category_id, Category.name)
            .order_by(amount.desc(), Transaction.category_id)
        )
        if account_id is not None:
            stmt = stmt.where(Transaction.account_id == account_id)
        total = from_cents(total_cents)
        lines = []
        for category_id, name, cents in self.session.execute(stmt):
            value = from_cents(int(cents or 0))
            lines.append(
                CategoryExpense(
                    category_id=category_id,
                    category_name=name or UNCATEGORIZED,
                    amount=value,
                    percentage=percentage(value, total),
                )
            )
        return lines

    def financial_summary(
        self, start: date, end: date, account_id: Optional[int] = None
    ) -> FinancialSummary:
        if start > end:
            raise ValidationFailed("Start date must be before end date")

        accounts_service = AccountService(self.session, self.user_id)
        if account_id is not None:
            accounts = [accounts_service.get(account_id)]
        else:
            accounts = accounts_service.list_all()

        totals = self._totals(start, end, account_id)
        income_cents = totals.get(TransactionType.income, 0)
        expense_cents = totals.get(TransactionType.expense, 0)

        budget_lines = []
        for budget in BudgetService(self.session, self.user_id).active_overlapping(
            start, end
        ):
            budget_lines.append(
                BudgetStatusLine(
                    budget_id=budget.id,
                    budget_name=budget.name,
                    allocated=budget.amount,
                    spent=budget.spent,
                    remaining=budget.amount - budget.spent,
                    percentage_used=percentage(budget.spent, budget.amount),
                    status=budget_status(budget.amount, budget.spent),
                )
            )

        return FinancialSummary(
            start_date=start,
            end_date=end,
            total_income=from_cents(income_cents),
            total_expenses=from_cents(expense_cents),
            net_income=from_cents(income_cents - expense_cents),
            account_balances=[
                AccountBalance(
                    account_id=account.id,
                    account_name=account.name,
                    currency=account.currency,
                    balance=account.balance,
                )
                for account in accounts
            ],
            expense_by_category=self._expense_by_category(
                start, end, expense_cents, account_id
            ),
            budget_status=budget_lines,
        )

    def dashboard(self, today: date) -> DashboardOut:
        month_start, month_end = month_bounds(today)
        accounts = AccountService(self.session, self.user_id)
        totals = self._totals(month_start, month_end)
        return DashboardOut(
            accounts=[AccountOut.model_validate(a) for a in accounts.list_all()],
            recent_transactions=[
                TransactionOut.model_validate(t)
                for t in TransactionService(self.session, self.user_id).recent()
            ],
            monthly_budgets=[
                BudgetOut.model_validate(b)
                for b in BudgetService(self.session, self.user_id).active_overlapping(
                    month_start, month_end
                )
            ],
            savings_goals=[
                SavingsGoalOut.model_validate(g)
                for g in SavingsGoalService(self.session, self.user_id).list(
                    GoalStatus.active
                )
            ],
            monthly_income=from_cents(totals.get(TransactionType.income, 0)),
            monthly_expenses=from_cents(totals.get(TransactionType.expense, 0)),
            net_worth=from_cents(accounts.net_worth_cents()),
        )
