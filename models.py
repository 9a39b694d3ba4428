import datetime as dt
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    Column,
    Date,
    DateTime,
    Enum as SAEnum,
    ForeignKey,
    Index,
    Integer,
    String,
    Table,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from database import Base
from money import from_cents


class TransactionType(str, Enum):
    income = "income"
    expense = "expense"
    transfer = "transfer"


class CategoryType(str, Enum):
    income = "income"
    expense = "expense"


class AccountType(str, Enum):
    checking = "checking"
    savings = "savings"
    credit = "credit"
    cash = "cash"
    investment = "investment"


class RecurringFrequency(str, Enum):
    daily = "daily"
    weekly = "weekly"
    monthly = "monthly"
    quarterly = "quarterly"
    yearly = "yearly"


class GoalStatus(str, Enum):
    active = "active"
    completed = "completed"
    paused = "paused"


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class Profile(Base, TimestampMixin):
    """Per-user preferences: the currency new accounts default to and the
    timezone that decides which calendar day is "today" for that user."""

    __tablename__ = "profiles"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False, unique=True)
    display_name: Mapped[str] = mapped_column(String(100), nullable=False)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="IDR")
    locale: Mapped[str] = mapped_column(String(20), nullable=False, default="id-ID")
    timezone: Mapped[str] = mapped_column(
        String(64), nullable=False, default="Asia/Jakarta"
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)


class Account(Base, TimestampMixin):
    __tablename__ = "accounts"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    account_type: Mapped[AccountType] = mapped_column(
        SAEnum(AccountType), nullable=False
    )
    balance_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    initial_balance_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    color: Mapped[Optional[str]] = mapped_column(String(9))
    icon: Mapped[Optional[str]] = mapped_column(String(50))
    is_default: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    savings_goals: Mapped[list["SavingsGoal"]] = relationship(
        "SavingsGoal", back_populates="account"
    )

    __table_args__ = (Index("ix_accounts_user", "user_id", "deleted_at"),)

    @property
    def balance(self) -> Decimal:
        return from_cents(self.balance_cents)

    @property
    def initial_balance(self) -> Decimal:
        return from_cents(self.initial_balance_cents)


class Category(Base, TimestampMixin):
    __tablename__ = "categories"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(100), nullable=False)
    category_type: Mapped[CategoryType] = mapped_column(
        SAEnum(CategoryType), nullable=False
    )
    parent_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    color: Mapped[Optional[str]] = mapped_column(String(9))
    icon: Mapped[Optional[str]] = mapped_column(String(50))
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    parent: Mapped[Optional["Category"]] = relationship(
        "Category", remote_side="Category.id"
    )
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="category"
    )

    __table_args__ = (Index("ix_categories_user_type", "user_id", "category_type"),)


class Tag(Base, TimestampMixin):
    __tablename__ = "tags"
    __table_args__ = (UniqueConstraint("user_id", "name", name="uq_tag_user_name"),)

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    name: Mapped[str] = mapped_column(String(50), nullable=False)

    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", secondary="transaction_tags", back_populates="tags"
    )


transaction_tags = Table(
    "transaction_tags",
    Base.metadata,
    Column("transaction_id", Integer, ForeignKey("transactions.id"), primary_key=True),
    Column("tag_id", Integer, ForeignKey("tags.id"), primary_key=True),
)


class Transaction(Base, TimestampMixin):
    __tablename__ = "transactions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    to_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    transaction_type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text)
    receipt_url: Mapped[Optional[str]] = mapped_column(String(500))
    date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    recurring_rule_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("recurring_rules.id")
    )
    occurrence_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    savings_goal_id: Mapped[Optional[int]] = mapped_column(
        ForeignKey("savings_goals.id")
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    account: Mapped["Account"] = relationship("Account", foreign_keys=[account_id])
    to_account: Mapped[Optional["Account"]] = relationship(
        "Account", foreign_keys=[to_account_id]
    )
    category: Mapped[Optional["Category"]] = relationship(
        "Category", back_populates="transactions"
    )
    recurring_rule: Mapped[Optional["RecurringRule"]] = relationship(
        "RecurringRule", back_populates="transactions"
    )
    tags: Mapped[list["Tag"]] = relationship(
        "Tag", secondary="transaction_tags", back_populates="transactions"
    )

    __table_args__ = (
        UniqueConstraint(
            "recurring_rule_id",
            "occurrence_date",
            name="uq_txn_rule_occurrence",
        ),
        Index("ix_transactions_user_date", "user_id", "date"),
        Index("ix_transactions_user_category_date", "user_id", "category_id", "date"),
        Index("ix_transactions_account", "account_id", "deleted_at"),
        Index("ix_transactions_to_account", "to_account_id", "deleted_at"),
        CheckConstraint("amount_cents > 0", name="ck_transactions_amount_positive"),
    )

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)

    @property
    def tag_names(self) -> list[str]:
        return sorted(tag.name for tag in self.tags)


class Budget(Base, TimestampMixin):
    __tablename__ = "budgets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    category_id: Mapped[int] = mapped_column(
        ForeignKey("categories.id"), nullable=False
    )
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    spent_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    period_start: Mapped[dt.date] = mapped_column(Date, nullable=False)
    period_end: Mapped[dt.date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    category: Mapped["Category"] = relationship("Category")

    __table_args__ = (
        CheckConstraint("amount_cents > 0", name="ck_budget_amount_positive"),
        CheckConstraint("period_end >= period_start", name="ck_budget_period_order"),
        Index("ix_budget_user_category", "user_id", "category_id"),
    )

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)

    @property
    def spent(self) -> Decimal:
        return from_cents(self.spent_cents)


class RecurringRule(Base, TimestampMixin):
    __tablename__ = "recurring_rules"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    to_account_id: Mapped[Optional[int]] = mapped_column(ForeignKey("accounts.id"))
    category_id: Mapped[Optional[int]] = mapped_column(ForeignKey("categories.id"))
    transaction_type: Mapped[TransactionType] = mapped_column(
        SAEnum(TransactionType), nullable=False
    )
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    description: Mapped[str] = mapped_column(String(200), nullable=False)
    frequency: Mapped[RecurringFrequency] = mapped_column(
        SAEnum(RecurringFrequency), nullable=False
    )
    interval_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    start_date: Mapped[dt.date] = mapped_column(Date, nullable=False)
    end_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    next_occurrence: Mapped[dt.date] = mapped_column(Date, nullable=False)
    is_active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    category: Mapped[Optional["Category"]] = relationship("Category")
    transactions: Mapped[list["Transaction"]] = relationship(
        "Transaction", back_populates="recurring_rule"
    )

    __table_args__ = (
        CheckConstraint("interval_count > 0", name="ck_rule_interval_positive"),
        CheckConstraint("amount_cents > 0", name="ck_rule_amount_positive"),
        Index("ix_rules_due", "is_active", "next_occurrence"),
    )

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)


class SavingsGoal(Base, TimestampMixin):
    __tablename__ = "savings_goals"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    account_id: Mapped[int] = mapped_column(ForeignKey("accounts.id"), nullable=False)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    description: Mapped[Optional[str]] = mapped_column(Text)
    target_amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    current_amount_cents: Mapped[int] = mapped_column(
        Integer, nullable=False, default=0
    )
    target_date: Mapped[Optional[dt.date]] = mapped_column(Date)
    status: Mapped[GoalStatus] = mapped_column(
        SAEnum(GoalStatus), nullable=False, default=GoalStatus.active
    )
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    account: Mapped["Account"] = relationship("Account", back_populates="savings_goals")
    contributions: Mapped[list["GoalContribution"]] = relationship(
        "GoalContribution", back_populates="goal"
    )

    __table_args__ = (
        CheckConstraint("target_amount_cents > 0", name="ck_goal_target_positive"),
    )

    @property
    def target_amount(self) -> Decimal:
        return from_cents(self.target_amount_cents)

    @property
    def current_amount(self) -> Decimal:
        return from_cents(self.current_amount_cents)


class GoalContribution(Base, TimestampMixin):
    __tablename__ = "goal_contributions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    goal_id: Mapped[int] = mapped_column(
        ForeignKey("savings_goals.id"), nullable=False
    )
    # Signed: withdrawals from the goal are negative.
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    note: Mapped[Optional[str]] = mapped_column(String(200))
    deleted_at: Mapped[Optional[datetime]] = mapped_column(DateTime)

    goal: Mapped["SavingsGoal"] = relationship(
        "SavingsGoal", back_populates="contributions"
    )

    __table_args__ = (
        CheckConstraint("amount_cents <> 0", name="ck_contribution_nonzero"),
    )

    @property
    def amount(self) -> Decimal:
        return from_cents(self.amount_cents)


class AuditLog(Base):
    __tablename__ = "audit_log"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    user_id: Mapped[int] = mapped_column(Integer, nullable=False)
    entity_type: Mapped[str] = mapped_column(String(40), nullable=False)
    entity_id: Mapped[int] = mapped_column(Integer, nullable=False)
    action: Mapped[str] = mapped_column(String(20), nullable=False)
    old_values: Mapped[Optional[dict]] = mapped_column(JSON)
    new_values: Mapped[Optional[dict]] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )

    __table_args__ = (
        Index("ix_audit_entity", "entity_type", "entity_id"),
    )
