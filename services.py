from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date, datetime
from enum import Enum
from typing import Any, Iterable, Optional, Sequence
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from sqlalchemy import func, or_, select, update
from sqlalchemy.orm import Session, joinedload

from config import get_settings
from database import atomic
from errors import BlockingConstraint, ConstraintViolation, NotFound, ValidationFailed
from ledger import BalanceEngine, LedgerEntry, LedgerHook
from models import (
    Account,
    AuditLog,
    Budget,
    Category,
    CategoryType,
    GoalStatus,
    Profile,
    RecurringRule,
    SavingsGoal,
    Tag,
    Transaction,
    TransactionType,
)
from money import to_cents
from periods import local_today
from schemas import (
    AccountIn,
    AccountPatch,
    BudgetIn,
    BudgetPatch,
    CategoryIn,
    CategoryPatch,
    ContributionIn,
    ProfileIn,
    ProfilePatch,
    RecurringRuleIn,
    RecurringRulePatch,
    SavingsGoalIn,
    SavingsGoalPatch,
    TransactionIn,
    TransactionPatch,
)
from trackers import BudgetTracker, GoalTracker

logger = logging.getLogger(__name__)

TRANSACTION_FIELDS = (
    "account_id",
    "to_account_id",
    "category_id",
    "transaction_type",
    "amount_cents",
    "description",
    "notes",
    "receipt_url",
    "date",
    "savings_goal_id",
)

PROFILE_FIELDS = ("display_name", "currency", "locale", "timezone")

BUDGET_FIELDS = ("name", "amount_cents", "period_start", "period_end", "is_active")

GOAL_TRANSITIONS: dict[GoalStatus, set[GoalStatus]] = {
    GoalStatus.active: {GoalStatus.paused, GoalStatus.completed},
    GoalStatus.paused: {GoalStatus.active},
    GoalStatus.completed: {GoalStatus.active},
}


def _jsonable(value: Any) -> Any:
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, date):
        return value.isoformat()
    return value


def snapshot(row: object, fields: Iterable[str]) -> dict[str, Any]:
    return {name: _jsonable(getattr(row, name)) for name in fields}


def record_audit(
    session: Session,
    user_id: int,
    entity: object,
    action: str,
    old_values: Optional[dict[str, Any]] = None,
    new_values: Optional[dict[str, Any]] = None,
) -> None:
    session.add(
        AuditLog(
            user_id=user_id,
            entity_type=entity.__tablename__,
            entity_id=entity.id,
            action=action,
            old_values=old_values,
            new_values=new_values,
        )
    )


def _require(values: dict[str, Any], *fields: str) -> None:
    for name in fields:
        if name in values and values[name] is None:
            raise ValidationFailed(f"{name} cannot be null", field=name)


def _clean_name(name: str, label: str) -> str:
    clean = name.strip()
    if not clean:
        raise ValidationFailed(f"{label} cannot be empty", field="name")
    return clean


class TagService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def list_all(self) -> list[Tag]:
        stmt = select(Tag).where(Tag.user_id == self.user_id).order_by(Tag.name)
        return list(self.session.scalars(stmt))

    def get_or_create(self, name: str) -> Tag:
        clean_name = name.strip()
        if not clean_name:
            raise ValidationFailed("Tag name cannot be empty", field="tags")

        stmt = select(Tag).where(
            Tag.user_id == self.user_id, func.lower(Tag.name) == clean_name.lower()
        )
        existing = self.session.scalar(stmt)
        if existing:
            return existing

        tag = Tag(user_id=self.user_id, name=clean_name)
        self.session.add(tag)
        self.session.flush()
        return tag

    def resolve(self, names: Iterable[str]) -> list[Tag]:
        tags: list[Tag] = []
        tag_ids: set[int] = set()
        for name in names:
            tag = self.get_or_create(name)
            if tag.id not in tag_ids:
                tags.append(tag)
                tag_ids.add(tag.id)
        return tags


class CategoryService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, category_id: int) -> Category:
        category = self.session.scalar(
            select(Category).where(
                Category.id == category_id,
                Category.user_id == self.user_id,
                Category.deleted_at.is_(None),
            )
        )
        if not category:
            raise NotFound("Category")
        return category

    def list_all(self, category_type: Optional[CategoryType] = None) -> list[Category]:
        stmt = (
            select(Category)
            .where(Category.user_id == self.user_id, Category.deleted_at.is_(None))
            .order_by(Category.category_type, Category.name)
        )
        if category_type:
            stmt = stmt.where(Category.category_type == category_type)
        return list(self.session.scalars(stmt))

    def find_by_name(self, category_type: CategoryType, name: str) -> Optional[Category]:
        return self.session.scalar(
            select(Category)
            .where(
                Category.user_id == self.user_id,
                Category.deleted_at.is_(None),
                Category.category_type == category_type,
                func.lower(Category.name) == name.strip().lower(),
            )
            .order_by(Category.id)
            .limit(1)
        )

    def _check_parent(self, parent_id: int, category_type: CategoryType) -> None:
        parent = self.get(parent_id)
        if parent.category_type != category_type:
            raise ValidationFailed(
                "Parent category must have the same type", field="parent_id"
            )

    def create(self, data: CategoryIn) -> Category:
        name = _clean_name(data.name, "Category name")
        with atomic(self.session):
            if data.parent_id is not None:
                self._check_parent(data.parent_id, data.category_type)
            if self.find_by_name(data.category_type, name):
                raise ValidationFailed("Category with this name already exists")
            category = Category(
                user_id=self.user_id,
                name=name,
                category_type=data.category_type,
                parent_id=data.parent_id,
                color=data.color,
                icon=data.icon,
            )
            self.session.add(category)
            self.session.flush()
            record_audit(
                self.session,
                self.user_id,
                category,
                "create",
                new_values=snapshot(category, ("name", "category_type", "parent_id")),
            )
        return category

    def update(self, category_id: int, patch: CategoryPatch) -> Category:
        values = patch.provided()
        _require(values, "name")
        with atomic(self.session):
            category = self.get(category_id)
            old = snapshot(category, values.keys())
            if "name" in values:
                category.name = _clean_name(values["name"], "Category name")
            for field in ("color", "icon"):
                if field in values:
                    setattr(category, field, values[field])
            self.session.flush()
            record_audit(
                self.session,
                self.user_id,
                category,
                "update",
                old_values=old,
                new_values=snapshot(category, values.keys()),
            )
        return category

    def soft_delete(self, category_id: int) -> None:
        with atomic(self.session):
            category = self.get(category_id)
            category.deleted_at = datetime.utcnow()
            record_audit(self.session, self.user_id, category, "delete")


def _check_timezone(name: str) -> str:
    try:
        ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        raise ValidationFailed(f"Unknown timezone: {name}", field="timezone") from None
    return name


class ProfileService:
    """One profile per user holding currency, locale and timezone defaults.

    Users without a profile fall back to the configured defaults.
    """

    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def find(self) -> Optional[Profile]:
        return self.session.scalar(
            select(Profile).where(
                Profile.user_id == self.user_id, Profile.deleted_at.is_(None)
            )
        )

    def get(self) -> Profile:
        profile = self.find()
        if not profile:
            raise NotFound("Profile")
        return profile

    def currency(self) -> str:
        profile = self.find()
        return profile.currency if profile else get_settings().default_currency

    def timezone(self) -> str:
        profile = self.find()
        return profile.timezone if profile else get_settings().timezone

    def today(self) -> date:
        return local_today(self.timezone())

    def create(self, data: ProfileIn) -> Profile:
        settings = get_settings()
        with atomic(self.session):
            if self.find():
                raise ValidationFailed("Profile already exists")
            profile = Profile(
                user_id=self.user_id,
                display_name=_clean_name(data.display_name, "Display name"),
                email=data.email.strip().lower(),
                currency=(data.currency or settings.default_currency).upper(),
                locale=data.locale or settings.default_locale,
                timezone=_check_timezone(data.timezone or settings.timezone),
            )
            self.session.add(profile)
            self.session.flush()
            record_audit(
                self.session,
                self.user_id,
                profile,
                "create",
                new_values=snapshot(profile, PROFILE_FIELDS),
            )
        logger.info(f"profile_created: user_id={self.user_id}")
        return profile

    def update(self, patch: ProfilePatch) -> Profile:
        values = patch.provided()
        _require(values, *PROFILE_FIELDS)
        with atomic(self.session):
            profile = self.get()
            old = snapshot(profile, values.keys())
            if "display_name" in values:
                profile.display_name = _clean_name(
                    values["display_name"], "Display name"
                )
            if "currency" in values:
                profile.currency = values["currency"].upper()
            if "locale" in values:
                profile.locale = values["locale"]
            if "timezone" in values:
                profile.timezone = _check_timezone(values["timezone"])
            self.session.flush()
            record_audit(
                self.session,
                self.user_id,
                profile,
                "update",
                old_values=old,
                new_values=snapshot(profile, values.keys()),
            )
        return profile


class AccountService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, account_id: int) -> Account:
        account = self.session.scalar(
            select(Account).where(
                Account.id == account_id,
                Account.user_id == self.user_id,
                Account.deleted_at.is_(None),
            )
        )
        if not account:
            raise NotFound("Account")
        return account

    def list_all(self) -> list[Account]:
        stmt = (
            select(Account)
            .where(Account.user_id == self.user_id, Account.deleted_at.is_(None))
            .order_by(Account.is_default.desc(), Account.name, Account.id)
        )
        return list(self.session.scalars(stmt))

    def find_by_name(self, name: str) -> Optional[Account]:
        return self.session.scalar(
            select(Account)
            .where(
                Account.user_id == self.user_id,
                Account.deleted_at.is_(None),
                func.lower(Account.name) == name.strip().lower(),
            )
            .order_by(Account.id)
            .limit(1)
        )

    def _clear_default(self) -> None:
        self.session.execute(
            update(Account)
            .where(Account.user_id == self.user_id, Account.is_default.is_(True))
            .values(is_default=False)
        )

    def create(self, data: AccountIn) -> Account:
        name = _clean_name(data.name, "Account name")
        currency = (
            data.currency or ProfileService(self.session, self.user_id).currency()
        ).upper()
        initial_cents = to_cents(data.initial_balance)
        with atomic(self.session):
            has_accounts = self.session.scalar(
                select(func.count(Account.id)).where(
                    Account.user_id == self.user_id, Account.deleted_at.is_(None)
                )
            )
            is_default = data.is_default or not has_accounts
            if is_default:
                self._clear_default()
            account = Account(
                user_id=self.user_id,
                name=name,
                account_type=data.account_type,
                balance_cents=initial_cents,
                initial_balance_cents=initial_cents,
                currency=currency,
                color=data.color,
                icon=data.icon,
                is_default=is_default,
            )
            self.session.add(account)
            self.session.flush()
            record_audit(
                self.session,
                self.user_id,
                account,
                "create",
                new_values=snapshot(
                    account, ("name", "account_type", "initial_balance_cents", "currency")
                ),
            )
        logger.info(f"account_created: account_id={account.id} user_id={self.user_id}")
        return account

    def update(self, account_id: int, patch: AccountPatch) -> Account:
        values = patch.provided()
        _require(values, "name", "is_default")
        with atomic(self.session):
            account = self.get(account_id)
            old = snapshot(account, values.keys())
            if "name" in values:
                account.name = _clean_name(values["name"], "Account name")
            for field in ("color", "icon"):
                if field in values:
                    setattr(account, field, values[field])
            if values.get("is_default"):
                self._clear_default()
                account.is_default = True
            elif "is_default" in values:
                account.is_default = False
            self.session.flush()
            record_audit(
                self.session,
                self.user_id,
                account,
                "update",
                old_values=old,
                new_values=snapshot(account, values.keys()),
            )
        return account

    def blocking_constraint(self, account_id: int) -> Optional[BlockingConstraint]:
        """First reason the account cannot be deleted, checked in a fixed order.

        Soft-deleted transactions, inactive rules and non-active goals never
        block deletion.
        """
        checks = (
            (
                BlockingConstraint.live_transactions,
                select(Transaction.id).where(
                    Transaction.account_id == account_id,
                    Transaction.deleted_at.is_(None),
                ),
            ),
            (
                BlockingConstraint.live_transfer_transactions,
                select(Transaction.id).where(
                    Transaction.to_account_id == account_id,
                    Transaction.deleted_at.is_(None),
                ),
            ),
            (
                BlockingConstraint.active_recurring_rules,
                select(RecurringRule.id).where(
                    RecurringRule.account_id == account_id,
                    RecurringRule.is_active.is_(True),
                    RecurringRule.deleted_at.is_(None),
                ),
            ),
            (
                BlockingConstraint.active_transfer_recurring_rules,
                select(RecurringRule.id).where(
                    RecurringRule.to_account_id == account_id,
                    RecurringRule.is_active.is_(True),
                    RecurringRule.deleted_at.is_(None),
                ),
            ),
            (
                BlockingConstraint.active_savings_goals,
                select(SavingsGoal.id).where(
                    SavingsGoal.account_id == account_id,
                    SavingsGoal.status == GoalStatus.active,
                    SavingsGoal.deleted_at.is_(None),
                ),
            ),
        )
        for constraint, stmt in checks:
            if self.session.scalar(stmt.limit(1)) is not None:
                return constraint
        return None

    def delete(self, account_id: int) -> None:
        with atomic(self.session):
            account = self.get(account_id)
            constraint = self.blocking_constraint(account.id)
            if constraint:
                logger.warning(
                    f"account_delete_blocked: account_id={account.id} "
                    f"constraint={constraint.value}"
                )
                raise ConstraintViolation(constraint)
            account.deleted_at = datetime.utcnow()
            account.is_default = False
            record_audit(self.session, self.user_id, account, "delete")
        logger.info(f"account_deleted: account_id={account_id} user_id={self.user_id}")

    def recalculate_balance(self, account_id: int) -> Account:
        with atomic(self.session):
            self.get(account_id)
            account = BalanceEngine(self.session, self.user_id).recalculate(account_id)
        return account

    def net_worth_cents(self) -> int:
        return int(
            self.session.scalar(
                select(func.coalesce(func.sum(Account.balance_cents), 0)).where(
                    Account.user_id == self.user_id, Account.deleted_at.is_(None)
                )
            )
            or 0
        )


@dataclass
class TransactionFilters:
    transaction_type: Optional[TransactionType] = None
    account_id: Optional[int] = None
    category_id: Optional[int] = None
    start_date: Optional[date] = None
    end_date: Optional[date] = None
    query: Optional[str] = None
    tag: Optional[str] = None


class TransactionService:
    """Create, update and soft-delete transactions as single units of work.

    Each mutation moves balances through the ``BalanceEngine`` and then hands
    the old and new ledger entries to every registered hook before the commit.
    """

    def __init__(
        self,
        session: Session,
        user_id: int,
        hooks: Optional[Sequence[LedgerHook]] = None,
    ) -> None:
        self.session = session
        self.user_id = user_id
        self.engine = BalanceEngine(session, user_id)
        if hooks is None:
            hooks = (BudgetTracker(session, user_id), GoalTracker(session, user_id))
        self.hooks = list(hooks)

    def _notify(self, entries: Sequence[LedgerEntry]) -> None:
        for hook in self.hooks:
            hook.on_ledger_change(entries)

    def _live_goal(self, goal_id: int) -> SavingsGoal:
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

    def validate(
        self,
        *,
        transaction_type: TransactionType,
        amount_cents: int,
        account_id: int,
        to_account_id: Optional[int],
        category_id: Optional[int],
        savings_goal_id: Optional[int] = None,
        check_category: bool = True,
        check_goal: bool = True,
    ) -> None:
        if amount_cents <= 0:
            raise ValidationFailed("Amount must be a positive number", field="amount")
        accounts = AccountService(self.session, self.user_id)
        source = accounts.get(account_id)
        if transaction_type == TransactionType.transfer:
            if to_account_id is None:
                raise ValidationFailed(
                    "Transfer requires a destination account", field="to_account_id"
                )
            if to_account_id == account_id:
                raise ValidationFailed(
                    "Transfer destination must differ from the source account",
                    field="to_account_id",
                )
            destination = accounts.get(to_account_id)
            if destination.currency != source.currency:
                raise ValidationFailed(
                    f"Currency mismatch: {source.currency} and {destination.currency}",
                    field="to_account_id",
                )
            if category_id is not None:
                raise ValidationFailed(
                    "Transfers cannot have a category", field="category_id"
                )
        else:
            if to_account_id is not None:
                raise ValidationFailed(
                    "Only transfers can have a destination account",
                    field="to_account_id",
                )
            if check_category and category_id is not None:
                category = CategoryService(self.session, self.user_id).get(category_id)
                if category.category_type.value != transaction_type.value:
                    raise ValidationFailed(
                        "Category type mismatch", field="category_id"
                    )
        if check_goal and savings_goal_id is not None:
            goal = self._live_goal(savings_goal_id)
            if goal.account_id not in (account_id, to_account_id):
                raise ValidationFailed(
                    "Savings goal account must be one of the transaction accounts",
                    field="savings_goal_id",
                )

    def stage(
        self,
        data: TransactionIn,
        *,
        recurring_rule_id: Optional[int] = None,
        occurrence_date: Optional[date] = None,
    ) -> Transaction:
        """Stage a new transaction in the caller's unit of work."""
        amount_cents = to_cents(data.amount)
        self.validate(
            transaction_type=data.transaction_type,
            amount_cents=amount_cents,
            account_id=data.account_id,
            to_account_id=data.to_account_id,
            category_id=data.category_id,
            savings_goal_id=data.savings_goal_id,
        )
        txn = Transaction(
            user_id=self.user_id,
            account_id=data.account_id,
            to_account_id=data.to_account_id,
            category_id=data.category_id,
            transaction_type=data.transaction_type,
            amount_cents=amount_cents,
            description=_clean_name(data.description, "Description"),
            notes=data.notes,
            receipt_url=data.receipt_url,
            date=data.date,
            recurring_rule_id=recurring_rule_id,
            occurrence_date=occurrence_date,
            savings_goal_id=data.savings_goal_id,
        )
        if data.tags:
            txn.tags = TagService(self.session, self.user_id).resolve(data.tags)
        self.session.add(txn)
        self.session.flush()

        entry = LedgerEntry.of(txn)
        self.engine.apply(entry)
        self._notify([entry])
        record_audit(
            self.session,
            self.user_id,
            txn,
            "create",
            new_values=snapshot(txn, TRANSACTION_FIELDS),
        )
        return txn

    def create(self, data: TransactionIn) -> Transaction:
        with atomic(self.session):
            txn = self.stage(data)
        return txn

    def get(self, transaction_id: int, *, include_deleted: bool = False) -> Transaction:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.tags))
            .where(
                Transaction.user_id == self.user_id, Transaction.id == transaction_id
            )
        )
        if not include_deleted:
            stmt = stmt.where(Transaction.deleted_at.is_(None))
        txn = self.session.scalars(stmt).unique().one_or_none()
        if not txn:
            raise NotFound("Transaction")
        return txn

    def update(self, transaction_id: int, patch: TransactionPatch) -> Transaction:
        values = patch.provided()
        _require(
            values, "account_id", "transaction_type", "amount", "description", "date"
        )
        if "amount" in values:
            values["amount_cents"] = to_cents(values.pop("amount"))
        if "description" in values:
            values["description"] = _clean_name(values["description"], "Description")
        tags_given = "tags" in values
        tag_names = values.pop("tags", None)

        with atomic(self.session):
            txn = self.get(transaction_id)
            old_entry = LedgerEntry.of(txn)
            old_values = snapshot(txn, TRANSACTION_FIELDS)

            merged = {name: getattr(txn, name) for name in TRANSACTION_FIELDS}
            merged.update(values)
            self.validate(
                transaction_type=merged["transaction_type"],
                amount_cents=merged["amount_cents"],
                account_id=merged["account_id"],
                to_account_id=merged["to_account_id"],
                category_id=merged["category_id"],
                savings_goal_id=merged["savings_goal_id"],
                # A category or goal deleted since linking only matters when
                # the link changes.
                check_category=bool(
                    {"category_id", "transaction_type"} & values.keys()
                ),
                check_goal=bool(
                    {"savings_goal_id", "account_id", "to_account_id"} & values.keys()
                ),
            )

            for name, value in values.items():
                setattr(txn, name, value)
            if tags_given:
                txn.tags = TagService(self.session, self.user_id).resolve(tag_names or [])
            self.session.flush()

            new_entry = LedgerEntry.of(txn)
            self.engine.replace(old_entry, new_entry)
            self._notify([old_entry, new_entry])
            record_audit(
                self.session,
                self.user_id,
                txn,
                "update",
                old_values=old_values,
                new_values=snapshot(txn, TRANSACTION_FIELDS),
            )
        return txn

    def soft_delete(self, transaction_id: int) -> None:
        with atomic(self.session):
            txn = self.get(transaction_id)
            entry = LedgerEntry.of(txn)
            self.engine.reverse(entry)
            txn.deleted_at = datetime.utcnow()
            self.session.flush()
            self._notify([entry])
            record_audit(
                self.session,
                self.user_id,
                txn,
                "delete",
                old_values=snapshot(txn, TRANSACTION_FIELDS),
            )

    def _filtered(self, filters: TransactionFilters):
        stmt = select(Transaction).where(
            Transaction.user_id == self.user_id,
            Transaction.deleted_at.is_(None),
        )
        if filters.transaction_type:
            stmt = stmt.where(Transaction.transaction_type == filters.transaction_type)
        if filters.account_id:
            stmt = stmt.where(
                or_(
                    Transaction.account_id == filters.account_id,
                    Transaction.to_account_id == filters.account_id,
                )
            )
        if filters.category_id:
            stmt = stmt.where(Transaction.category_id == filters.category_id)
        if filters.start_date:
            stmt = stmt.where(Transaction.date >= filters.start_date)
        if filters.end_date:
            stmt = stmt.where(Transaction.date <= filters.end_date)
        if filters.query:
            like = f"%{filters.query.lower()}%"
            stmt = stmt.where(
                or_(
                    func.lower(Transaction.description).like(like),
                    func.lower(func.coalesce(Transaction.notes, "")).like(like),
                )
            )
        if filters.tag:
            stmt = stmt.where(
                Transaction.tags.any(func.lower(Tag.name) == filters.tag.strip().lower())
            )
        return stmt

    def list(
        self,
        filters: Optional[TransactionFilters] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[list[Transaction], int]:
        stmt = self._filtered(filters or TransactionFilters())
        total = self.session.scalar(
            select(func.count()).select_from(stmt.subquery())
        )
        page = (
            stmt.options(joinedload(Transaction.category), joinedload(Transaction.tags))
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .offset(offset)
            .limit(limit)
        )
        return list(self.session.scalars(page).unique()), int(total or 0)

    def all_matching(
        self, filters: Optional[TransactionFilters] = None
    ) -> list[Transaction]:
        stmt = (
            self._filtered(filters or TransactionFilters())
            .options(
                joinedload(Transaction.category),
                joinedload(Transaction.tags),
                joinedload(Transaction.account),
                joinedload(Transaction.to_account),
            )
            .order_by(Transaction.date, Transaction.id)
        )
        return list(self.session.scalars(stmt).unique())

    def recent(self, limit: Optional[int] = None) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.tags))
            .where(
                Transaction.user_id == self.user_id, Transaction.deleted_at.is_(None)
            )
            .order_by(Transaction.date.desc(), Transaction.id.desc())
            .limit(limit or get_settings().recent_limit)
        )
        return list(self.session.scalars(stmt).unique())

    def deleted(self, limit: int = 200) -> list[Transaction]:
        stmt = (
            select(Transaction)
            .options(joinedload(Transaction.category), joinedload(Transaction.tags))
            .where(
                Transaction.user_id == self.user_id, Transaction.deleted_at.isnot(None)
            )
            .order_by(Transaction.deleted_at.desc(), Transaction.id.desc())
            .limit(limit)
        )
        return list(self.session.scalars(stmt).unique())

    def find_duplicate(
        self, description: str, amount_cents: int, txn_date: date, account_id: int
    ) -> Optional[Transaction]:
        return self.session.scalar(
            select(Transaction)
            .where(
                Transaction.user_id == self.user_id,
                Transaction.deleted_at.is_(None),
                Transaction.description == description,
                Transaction.amount_cents == amount_cents,
                Transaction.date == txn_date,
                Transaction.account_id == account_id,
            )
            .limit(1)
        )


class BudgetService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.tracker = BudgetTracker(session, user_id)

    def get(self, budget_id: int) -> Budget:
        budget = self.session.scalar(
            select(Budget).where(
                Budget.id == budget_id,
                Budget.user_id == self.user_id,
                Budget.deleted_at.is_(None),
            )
        )
        if not budget:
            raise NotFound("Budget")
        return budget

    def _check_overlap(
        self,
        category_id: int,
        start: date,
        end: date,
        exclude_id: Optional[int] = None,
    ) -> None:
        stmt = select(Budget.id).where(
            Budget.user_id == self.user_id,
            Budget.deleted_at.is_(None),
            Budget.is_active.is_(True),
            Budget.category_id == category_id,
            Budget.period_start <= end,
            Budget.period_end >= start,
        )
        if exclude_id is not None:
            stmt = stmt.where(Budget.id != exclude_id)
        if self.session.scalar(stmt.limit(1)) is not None:
            raise ValidationFailed(
                "A budget already exists for this category in the specified period"
            )

    @staticmethod
    def _check_period(start: date, end: date) -> None:
        if end < start:
            raise ValidationFailed(
                "Budget period end must not be before its start", field="period_end"
            )

    def create(self, data: BudgetIn) -> Budget:
        self._check_period(data.period_start, data.period_end)
        with atomic(self.session):
            category = CategoryService(self.session, self.user_id).get(data.category_id)
            if category.category_type != CategoryType.expense:
                raise ValidationFailed(
                    "Budgets can only track expense categories", field="category_id"
                )
            self._check_overlap(category.id, data.period_start, data.period_end)
            budget = Budget(
                user_id=self.user_id,
                category_id=category.id,
                name=_clean_name(data.name, "Budget name"),
                amount_cents=to_cents(data.amount),
                spent_cents=0,
                period_start=data.period_start,
                period_end=data.period_end,
            )
            self.session.add(budget)
            self.session.flush()
            self.tracker.recompute(budget.id)
            record_audit(
                self.session,
                self.user_id,
                budget,
                "create",
                new_values=snapshot(
                    budget, ("category_id", "amount_cents", "period_start", "period_end")
                ),
            )
        return budget

    def update(self, budget_id: int, patch: BudgetPatch) -> Budget:
        values = patch.provided()
        _require(values, "name", "amount", "period_start", "period_end", "is_active")
        with atomic(self.session):
            budget = self.get(budget_id)
            old = snapshot(budget, BUDGET_FIELDS)
            if "name" in values:
                budget.name = _clean_name(values["name"], "Budget name")
            if "amount" in values:
                budget.amount_cents = to_cents(values["amount"])
            for field in ("period_start", "period_end", "is_active"):
                if field in values:
                    setattr(budget, field, values[field])
            self._check_period(budget.period_start, budget.period_end)
            if budget.is_active:
                self._check_overlap(
                    budget.category_id,
                    budget.period_start,
                    budget.period_end,
                    exclude_id=budget.id,
                )
            self.session.flush()
            self.tracker.recompute(budget.id)
            record_audit(
                self.session,
                self.user_id,
                budget,
                "update",
                old_values=old,
                new_values=snapshot(budget, BUDGET_FIELDS),
            )
        return budget

    def list(self, include_inactive: bool = False) -> list[Budget]:
        stmt = (
            select(Budget)
            .join(Category, Category.id == Budget.category_id)
            .where(
                Budget.user_id == self.user_id,
                Budget.deleted_at.is_(None),
                Category.deleted_at.is_(None),
            )
            .order_by(Budget.period_start.desc(), Budget.id)
        )
        if not include_inactive:
            stmt = stmt.where(Budget.is_active.is_(True))
        return list(self.session.scalars(stmt))

    def active_overlapping(self, start: date, end: date) -> list[Budget]:
        stmt = (
            select(Budget)
            .join(Category, Category.id == Budget.category_id)
            .where(
                Budget.user_id == self.user_id,
                Budget.deleted_at.is_(None),
                Budget.is_active.is_(True),
                Category.deleted_at.is_(None),
                Budget.period_start <= end,
                Budget.period_end >= start,
            )
            .order_by(Budget.period_start, Budget.id)
        )
        return list(self.session.scalars(stmt))

    def soft_delete(self, budget_id: int) -> None:
        with atomic(self.session):
            budget = self.get(budget_id)
            budget.deleted_at = datetime.utcnow()
            record_audit(self.session, self.user_id, budget, "delete")


class SavingsGoalService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.tracker = GoalTracker(session, user_id)

    def get(self, goal_id: int) -> SavingsGoal:
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

    def list(self, status: Optional[GoalStatus] = None) -> list[SavingsGoal]:
        stmt = (
            select(SavingsGoal)
            .where(
                SavingsGoal.user_id == self.user_id, SavingsGoal.deleted_at.is_(None)
            )
            .order_by(
                SavingsGoal.target_date.is_(None),
                SavingsGoal.target_date,
                SavingsGoal.id,
            )
        )
        if status:
            stmt = stmt.where(SavingsGoal.status == status)
        return list(self.session.scalars(stmt))

    def create(self, data: SavingsGoalIn) -> SavingsGoal:
        with atomic(self.session):
            account = AccountService(self.session, self.user_id).get(data.account_id)
            goal = SavingsGoal(
                user_id=self.user_id,
                account_id=account.id,
                name=_clean_name(data.name, "Goal name"),
                description=data.description,
                target_amount_cents=to_cents(data.target_amount),
                current_amount_cents=0,
                target_date=data.target_date,
                status=GoalStatus.active,
            )
            self.session.add(goal)
            self.session.flush()
            record_audit(
                self.session,
                self.user_id,
                goal,
                "create",
                new_values=snapshot(goal, ("account_id", "name", "target_amount_cents")),
            )
        return goal

    def update(self, goal_id: int, patch: SavingsGoalPatch) -> SavingsGoal:
        values = patch.provided()
        _require(values, "name", "target_amount", "status")
        fields = ("name", "description", "target_amount_cents", "target_date", "status")
        with atomic(self.session):
            goal = self.get(goal_id)
            old = snapshot(goal, fields)
            if "name" in values:
                goal.name = _clean_name(values["name"], "Goal name")
            if "description" in values:
                goal.description = values["description"]
            if "target_amount" in values:
                goal.target_amount_cents = to_cents(values["target_amount"])
            if "target_date" in values:
                goal.target_date = values["target_date"]
            status = values.get("status")
            if status is not None and status != goal.status:
                if status not in GOAL_TRANSITIONS[goal.status]:
                    raise ValidationFailed(
                        f"Cannot change goal status from {goal.status.value} to {status.value}",
                        field="status",
                    )
                goal.status = status
            self.tracker.recompute(goal.id)
            record_audit(
                self.session,
                self.user_id,
                goal,
                "update",
                old_values=old,
                new_values=snapshot(goal, fields),
            )
        return goal

    def contribute(self, goal_id: int, data: ContributionIn) -> SavingsGoal:
        delta = to_cents(data.amount)
        with atomic(self.session):
            old = snapshot(self.get(goal_id), ("current_amount_cents", "status"))
            goal = self.tracker.apply_contribution(goal_id, delta, note=data.note)
            record_audit(
                self.session,
                self.user_id,
                goal,
                "contribute",
                old_values=old,
                new_values=snapshot(goal, ("current_amount_cents", "status")),
            )
        return goal

    def soft_delete(self, goal_id: int) -> None:
        with atomic(self.session):
            goal = self.get(goal_id)
            goal.deleted_at = datetime.utcnow()
            record_audit(self.session, self.user_id, goal, "delete")


RULE_FIELDS = (
    "account_id",
    "to_account_id",
    "category_id",
    "transaction_type",
    "amount_cents",
    "description",
    "frequency",
    "interval_count",
    "start_date",
    "end_date",
    "next_occurrence",
    "is_active",
)


class RecurringRuleService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def get(self, rule_id: int) -> RecurringRule:
        rule = self.session.scalar(
            select(RecurringRule).where(
                RecurringRule.id == rule_id,
                RecurringRule.user_id == self.user_id,
                RecurringRule.deleted_at.is_(None),
            )
        )
        if not rule:
            raise NotFound("Recurring rule")
        return rule

    def list(self, include_inactive: bool = True) -> list[RecurringRule]:
        stmt = (
            select(RecurringRule)
            .where(
                RecurringRule.user_id == self.user_id,
                RecurringRule.deleted_at.is_(None),
            )
            .order_by(RecurringRule.next_occurrence, RecurringRule.id)
        )
        if not include_inactive:
            stmt = stmt.where(RecurringRule.is_active.is_(True))
        return list(self.session.scalars(stmt))

    @staticmethod
    def _check_dates(start: date, end: Optional[date]) -> None:
        if end is not None and end < start:
            raise ValidationFailed(
                "End date must not be before start date", field="end_date"
            )

    def create(self, data: RecurringRuleIn) -> RecurringRule:
        amount_cents = to_cents(data.amount)
        self._check_dates(data.start_date, data.end_date)
        with atomic(self.session):
            TransactionService(self.session, self.user_id, hooks=()).validate(
                transaction_type=data.transaction_type,
                amount_cents=amount_cents,
                account_id=data.account_id,
                to_account_id=data.to_account_id,
                category_id=data.category_id,
            )
            rule = RecurringRule(
                user_id=self.user_id,
                account_id=data.account_id,
                to_account_id=data.to_account_id,
                category_id=data.category_id,
                transaction_type=data.transaction_type,
                amount_cents=amount_cents,
                description=_clean_name(data.description, "Description"),
                frequency=data.frequency,
                interval_count=data.interval_count,
                start_date=data.start_date,
                end_date=data.end_date,
                next_occurrence=data.start_date,
                is_active=True,
            )
            self.session.add(rule)
            self.session.flush()
            record_audit(
                self.session,
                self.user_id,
                rule,
                "create",
                new_values=snapshot(rule, RULE_FIELDS),
            )
        return rule

    def update(self, rule_id: int, patch: RecurringRulePatch) -> RecurringRule:
        values = patch.provided()
        _require(
            values, "amount", "description", "frequency", "interval_count", "is_active"
        )
        with atomic(self.session):
            rule = self.get(rule_id)
            old = snapshot(rule, RULE_FIELDS)
            if "amount" in values:
                rule.amount_cents = to_cents(values["amount"])
            if "description" in values:
                rule.description = _clean_name(values["description"], "Description")
            for field in ("frequency", "interval_count", "end_date", "is_active"):
                if field in values:
                    setattr(rule, field, values[field])
            self._check_dates(rule.start_date, rule.end_date)
            self.session.flush()
            record_audit(
                self.session,
                self.user_id,
                rule,
                "update",
                old_values=old,
                new_values=snapshot(rule, RULE_FIELDS),
            )
        return rule

    def soft_delete(self, rule_id: int) -> None:
        with atomic(self.session):
            rule = self.get(rule_id)
            rule.deleted_at = datetime.utcnow()
            rule.is_active = False
            record_audit(self.session, self.user_id, rule, "delete")
