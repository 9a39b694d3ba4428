import logging
from datetime import date, timedelta
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from database import atomic
from errors import LedgerError
from models import RecurringFrequency, RecurringRule, Transaction
from periods import local_today
from schemas import TransactionIn
from services import ProfileService, TransactionService

logger = logging.getLogger(__name__)

# Upper bound on occurrences posted for one rule in a single run.
MAX_CATCH_UP = 366


def days_in_month(year: int, month: int) -> int:
    if month == 12:
        next_month = date(year + 1, 1, 1)
    else:
        next_month = date(year, month + 1, 1)
    return (next_month - date(year, month, 1)).days


def _add_months(base: date, months: int, *, desired_day: int) -> date:
    total_months = base.month - 1 + months
    year = base.year + total_months // 12
    month = total_months % 12 + 1
    return date(year, month, min(desired_day, days_in_month(year, month)))


def calculate_next_date(rule: RecurringRule, from_date: date) -> date:
    """Next occurrence after ``from_date``.

    Month based steps keep the start date's day of month and snap to the last
    day of shorter months, so a rule starting on Jan 31 posts Feb 28, Mar 31.
    """
    step = rule.interval_count
    if rule.frequency == RecurringFrequency.daily:
        return from_date + timedelta(days=step)
    if rule.frequency == RecurringFrequency.weekly:
        return from_date + timedelta(weeks=step)
    months = {
        RecurringFrequency.monthly: step,
        RecurringFrequency.quarterly: 3 * step,
        RecurringFrequency.yearly: 12 * step,
    }[rule.frequency]
    return _add_months(from_date, months, desired_day=rule.start_date.day)


class RecurringEngine:
    def __init__(self, session: Session) -> None:
        self.session = session
        self._todays: dict[int, date] = {}

    def _already_posted(self, rule: RecurringRule, occurrence_date: date) -> bool:
        stmt = (
            select(Transaction.id)
            .where(
                Transaction.recurring_rule_id == rule.id,
                Transaction.occurrence_date == occurrence_date,
            )
            .limit(1)
        )
        return self.session.execute(stmt).scalar_one_or_none() is not None

    def _post_occurrence(self, rule: RecurringRule, occurrence_date: date) -> bool:
        """Post one occurrence and advance the rule in the same unit of work."""
        with atomic(self.session):
            posted = False
            if not self._already_posted(rule, occurrence_date):
                data = TransactionIn(
                    account_id=rule.account_id,
                    to_account_id=rule.to_account_id,
                    category_id=rule.category_id,
                    transaction_type=rule.transaction_type,
                    amount=rule.amount,
                    description=rule.description,
                    notes=f"Recurring transaction from rule: {rule.description}",
                    date=occurrence_date,
                )
                TransactionService(self.session, rule.user_id).stage(
                    data,
                    recurring_rule_id=rule.id,
                    occurrence_date=occurrence_date,
                )
                posted = True
            rule.next_occurrence = calculate_next_date(rule, occurrence_date)
            if rule.end_date and rule.next_occurrence > rule.end_date:
                rule.is_active = False
        return posted

    def _user_today(self, user_id: int) -> date:
        if user_id not in self._todays:
            self._todays[user_id] = ProfileService(self.session, user_id).today()
        return self._todays[user_id]

    def catch_up_rule(self, rule: RecurringRule, today: Optional[date] = None) -> int:
        today = today or self._user_today(rule.user_id)
        posted = 0
        iterations = 0
        while (
            rule.is_active
            and rule.next_occurrence <= today
            and iterations < MAX_CATCH_UP
        ):
            if rule.end_date and rule.next_occurrence > rule.end_date:
                with atomic(self.session):
                    rule.is_active = False
                break
            if self._post_occurrence(rule, rule.next_occurrence):
                posted += 1
            iterations += 1
        return posted

    def due_rules(
        self, today: date, user_id: Optional[int] = None
    ) -> list[RecurringRule]:
        stmt = (
            select(RecurringRule)
            .where(
                RecurringRule.is_active.is_(True),
                RecurringRule.deleted_at.is_(None),
                RecurringRule.next_occurrence <= today,
            )
            .order_by(RecurringRule.next_occurrence, RecurringRule.id)
        )
        if user_id is not None:
            stmt = stmt.where(RecurringRule.user_id == user_id)
        return list(self.session.scalars(stmt))

    def post_due_rules(
        self, today: Optional[date] = None, user_id: Optional[int] = None
    ) -> int:
        """Post every due occurrence; returns how many transactions were created.

        A rule that fails (deleted account, bad category) is logged and left
        where it stopped; the remaining rules still run. Without an explicit
        ``today`` each rule runs against its owner's local date.
        """
        # Any profile timezone is at most two calendar days ahead of the server.
        horizon = today or local_today() + timedelta(days=2)
        total = 0
        for rule in self.due_rules(horizon, user_id):
            rule_id = rule.id
            rule_today = today or self._user_today(rule.user_id)
            if rule.next_occurrence > rule_today:
                continue
            try:
                total += self.catch_up_rule(rule, rule_today)
            except (LedgerError, SQLAlchemyError) as exc:
                logger.warning(f"recurring_rule_failed: rule_id={rule_id} error={exc}")
        logger.info(f"recurring_posted: count={total} horizon={horizon.isoformat()}")
        return total
