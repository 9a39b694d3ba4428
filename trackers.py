"""Derived totals kept in step with the ledger.

Budgets carry ``spent`` and savings goals carry ``current_amount``. Neither is
authoritative; both are rebuilt from live rows whenever a transaction touching
them changes.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import Literal, Optional, Sequence

from sqlalchemy import and_, case, func, or_, select
from sqlalchemy.orm import Session

from errors import NotFound, ValidationFailed
from ledger import LedgerEntry
from models import (
    Budget,
    GoalContribution,
    GoalStatus,
    SavingsGoal,
    Transaction,
    TransactionType,
)
from money import percentage

logger = logging.getLogger(__name__)

BudgetBand = Literal["good", "warning", "over"]


def budget_status(allocated: Decimal, spent: Decimal) -> BudgetBand:
    used = percentage(spent, allocated)
    if used >= 100:
        return "over"
    if used >= 80:
        return "warning"
    return "good"


class BudgetTracker:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def spent_cents(self, budget: Budget) -> int:
        stmt = select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
            Transaction.user_id == self.user_id,
            Transaction.deleted_at.is_(None),
            Transaction.transaction_type == TransactionType.expense,
            Transaction.category_id == budget.category_id,
            Transaction.date.between(budget.period_start, budget.period_end),
        )
        return int(self.session.execute(stmt).scalar_one() or 0)

    def recompute(self, budget_id: int) -> Budget:
        budget = self.session.scalar(
            select(Budget).where(
                Budget.id == budget_id,
                Budget.user_id == self.user_id,
                Budget.deleted_at.is_(None),
            )
        )
        if not budget:
            raise NotFound("Budget")
        # Inactive budgets still track spending; the flag only hides them.
        budget.spent_cents = self.spent_cents(budget)
        self.session.flush()
        return budget

    def _affected(self, entries: Sequence[LedgerEntry]) -> list[Budget]:
        conditions = [
            and_(
                Budget.category_id == entry.category_id,
                Budget.period_start <= entry.date,
                Budget.period_end >= entry.date,
            )
            for entry in entries
            if entry.transaction_type == TransactionType.expense and entry.category_id
        ]
        if not conditions:
            return []
        stmt = select(Budget).where(
            Budget.user_id == self.user_id,
            Budget.deleted_at.is_(None),
            or_(*conditions),
        )
        return list(self.session.scalars(stmt))

    def on_ledger_change(self, entries: Sequence[LedgerEntry]) -> None:
        for budget in self._affected(entries):
            budget.spent_cents = self.spent_cents(budget)
        self.session.flush()


class GoalTracker:
    """Goal progress is explicit contributions plus linked transactions.

    A transaction linked through ``savings_goal_id`` counts with its signed
    effect on the goal's account, so a deposit into the goal account raises
    progress and a withdrawal lowers it.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _get_live(self, goal_id: int) -> SavingsGoal:
        goal = self.session.scalar(
            select(SavingsGoal).where(
                SavingsGoal.id == goal_id,
                SavingsGoal.user_id == self.user_id,
                SavingsGoal.deleted_at.is_(None),
            )
        )
        if not goal:
            raise NotFound("Savings goal")
        return goal

    def current_cents(self, goal: SavingsGoal) -> int:
        contributed = self.session.execute(
            select(func.coalesce(func.sum(GoalContribution.amount_cents), 0)).where(
                GoalContribution.goal_id == goal.id,
                GoalContribution.deleted_at.is_(None),
            )
        ).scalar_one()
        effect = case(
            (
                and_(
                    Transaction.transaction_type == TransactionType.transfer,
                    Transaction.to_account_id == goal.account_id,
                ),
                Transaction.amount_cents,
            ),
            (
                Transaction.transaction_type == TransactionType.income,
                Transaction.amount_cents,
            ),
            else_=-Transaction.amount_cents,
        )
        linked = self.session.execute(
            select(func.coalesce(func.sum(effect), 0)).where(
                Transaction.user_id == self.user_id,
                Transaction.deleted_at.is_(None),
                Transaction.savings_goal_id == goal.id,
            )
        ).scalar_one()
        return int(contributed or 0) + int(linked or 0)

    def _refresh(self, goal: SavingsGoal) -> SavingsGoal:
        goal.current_amount_cents = self.current_cents(goal)
        # Overshoot stays stored; only display progress is capped.
        if (
            goal.status == GoalStatus.active
            and goal.current_amount_cents >= goal.target_amount_cents
        ):
            goal.status = GoalStatus.completed
            logger.info(f"goal_completed: goal_id={goal.id} user_id={self.user_id}")
        self.session.flush()
        return goal

    def recompute(self, goal_id: int) -> SavingsGoal:
        return self._refresh(self._get_live(goal_id))

    def apply_contribution(
        self, goal_id: int, delta_cents: int, note: Optional[str] = None
    ) -> SavingsGoal:
        goal = self._get_live(goal_id)
        if delta_cents == 0:
            raise ValidationFailed("Contribution must not be zero", field="amount")
        self.session.add(
            GoalContribution(
                user_id=self.user_id,
                goal_id=goal.id,
                amount_cents=delta_cents,
                note=note,
            )
        )
        self.session.flush()
        return self._refresh(goal)

    def on_ledger_change(self, entries: Sequence[LedgerEntry]) -> None:
        goal_ids = {entry.savings_goal_id for entry in entries if entry.savings_goal_id}
        if not goal_ids:
            return
        goals = self.session.scalars(
            select(SavingsGoal).where(
                SavingsGoal.id.in_(goal_ids),
                SavingsGoal.user_id == self.user_id,
                SavingsGoal.deleted_at.is_(None),
            )
        )
        for goal in goals:
            self._refresh(goal)
