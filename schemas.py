import datetime as dt
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, computed_field

from models import (
    AccountType,
    CategoryType,
    GoalStatus,
    RecurringFrequency,
    TransactionType,
)
from money import ZERO, percentage
from trackers import BudgetBand, budget_status

Amount = Decimal


class PatchModel(BaseModel):
    """Partial update payload.

    Fields the caller omitted are absent from ``provided()``; fields sent as
    ``null`` are present with ``None``. The two mean different things.
    """

    model_config = ConfigDict(extra="forbid")

    def provided(self) -> dict[str, Any]:
        return self.model_dump(exclude_unset=True)

    def has(self, field: str) -> bool:
        return field in self.model_fields_set


EMAIL_PATTERN = r"^[^@\s]+@[^@\s]+\.[^@\s]+$"


class ProfileIn(BaseModel):
    display_name: str = Field(..., min_length=1, max_length=100)
    email: str = Field(..., max_length=255, pattern=EMAIL_PATTERN)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    locale: Optional[str] = Field(default=None, min_length=2, max_length=20)
    timezone: Optional[str] = Field(default=None, min_length=1, max_length=64)


class ProfilePatch(PatchModel):
    display_name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    locale: Optional[str] = Field(default=None, min_length=2, max_length=20)
    timezone: Optional[str] = Field(default=None, min_length=1, max_length=64)


class AccountIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    account_type: AccountType
    initial_balance: Amount = Field(default=ZERO, max_digits=15, decimal_places=2)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=50)
    is_default: bool = False


class AccountPatch(PatchModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=50)
    is_default: Optional[bool] = None


class CategoryIn(BaseModel):
    name: str = Field(..., min_length=1, max_length=100)
    category_type: CategoryType
    parent_id: Optional[int] = None
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=50)


class CategoryPatch(PatchModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=100)
    color: Optional[str] = Field(default=None, max_length=9)
    icon: Optional[str] = Field(default=None, max_length=50)


class TransactionIn(BaseModel):
    account_id: int
    to_account_id: Optional[int] = None
    category_id: Optional[int] = None
    transaction_type: TransactionType
    amount: Amount = Field(..., gt=0, max_digits=15, decimal_places=2)
    description: str = Field(..., min_length=1, max_length=200)
    notes: Optional[str] = None
    receipt_url: Optional[str] = Field(default=None, max_length=500)
    date: dt.date
    tags: list[str] = Field(default_factory=list)
    savings_goal_id: Optional[int] = None


class TransactionPatch(PatchModel):
    account_id: Optional[int] = None
    to_account_id: Optional[int] = None
    category_id: Optional[int] = None
    transaction_type: Optional[TransactionType] = None
    amount: Optional[Amount] = Field(default=None, gt=0, max_digits=15, decimal_places=2)
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    notes: Optional[str] = None
    receipt_url: Optional[str] = Field(default=None, max_length=500)
    date: Optional[dt.date] = None
    tags: Optional[list[str]] = None
    savings_goal_id: Optional[int] = None


class BudgetIn(BaseModel):
    category_id: int
    name: str = Field(..., min_length=1, max_length=120)
    amount: Amount = Field(..., gt=0, max_digits=15, decimal_places=2)
    period_start: dt.date
    period_end: dt.date


class BudgetPatch(PatchModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    amount: Optional[Amount] = Field(default=None, gt=0, max_digits=15, decimal_places=2)
    period_start: Optional[dt.date] = None
    period_end: Optional[dt.date] = None
    is_active: Optional[bool] = None


class RecurringRuleIn(BaseModel):
    account_id: int
    to_account_id: Optional[int] = None
    category_id: Optional[int] = None
    transaction_type: TransactionType
    amount: Amount = Field(..., gt=0, max_digits=15, decimal_places=2)
    description: str = Field(..., min_length=1, max_length=200)
    frequency: RecurringFrequency
    interval_count: int = Field(default=1, gt=0)
    start_date: dt.date
    end_date: Optional[dt.date] = None


class RecurringRulePatch(PatchModel):
    amount: Optional[Amount] = Field(default=None, gt=0, max_digits=15, decimal_places=2)
    description: Optional[str] = Field(default=None, min_length=1, max_length=200)
    frequency: Optional[RecurringFrequency] = None
    interval_count: Optional[int] = Field(default=None, gt=0)
    end_date: Optional[dt.date] = None
    is_active: Optional[bool] = None


class SavingsGoalIn(BaseModel):
    account_id: int
    name: str = Field(..., min_length=1, max_length=120)
    description: Optional[str] = None
    target_amount: Amount = Field(..., gt=0, max_digits=15, decimal_places=2)
    target_date: Optional[dt.date] = None


class SavingsGoalPatch(PatchModel):
    name: Optional[str] = Field(default=None, min_length=1, max_length=120)
    description: Optional[str] = None
    target_amount: Optional[Amount] = Field(
        default=None, gt=0, max_digits=15, decimal_places=2
    )
    target_date: Optional[dt.date] = None
    status: Optional[GoalStatus] = None


class ContributionIn(BaseModel):
    amount: Amount = Field(..., max_digits=15, decimal_places=2)
    note: Optional[str] = Field(default=None, max_length=200)


class ImportRowIn(BaseModel):
    """One externally sourced row; business validation happens per row."""

    model_config = ConfigDict(extra="ignore")

    date: Any = None
    description: Any = None
    amount: Any = None
    type: Any = None
    category: Any = None
    account: Any = None
    to_account: Any = None


class ImportRequest(BaseModel):
    rows: Optional[list[ImportRowIn]] = None
    default_account_id: Optional[int] = None


class ProfileOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    display_name: str
    email: str
    currency: str
    locale: str
    timezone: str
    created_at: datetime
    updated_at: datetime


class DemoDataOut(BaseModel):
    success: bool
    message: str


class AccountOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    account_type: AccountType
    balance: Amount
    initial_balance: Amount
    currency: str
    color: Optional[str]
    icon: Optional[str]
    is_default: bool
    created_at: datetime
    updated_at: datetime


class CategoryOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    name: str
    category_type: CategoryType
    parent_id: Optional[int]
    color: Optional[str]
    icon: Optional[str]


class TransactionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    to_account_id: Optional[int]
    category_id: Optional[int]
    transaction_type: TransactionType
    amount: Amount
    description: str
    notes: Optional[str]
    receipt_url: Optional[str]
    date: dt.date
    recurring_rule_id: Optional[int]
    savings_goal_id: Optional[int]
    tags: list[str] = Field(
        default_factory=list, validation_alias=AliasChoices("tag_names", "tags")
    )
    created_at: datetime
    updated_at: datetime


class TransactionPage(BaseModel):
    items: list[TransactionOut]
    total: int
    limit: int
    offset: int


class BudgetOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    category_id: int
    name: str
    amount: Amount
    spent: Amount
    period_start: dt.date
    period_end: dt.date
    is_active: bool

    @computed_field
    @property
    def remaining(self) -> Amount:
        return self.amount - self.spent

    @computed_field
    @property
    def percentage_used(self) -> Amount:
        return percentage(self.spent, self.amount)

    @computed_field
    @property
    def status(self) -> BudgetBand:
        return budget_status(self.amount, self.spent)


class RecurringRuleOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    to_account_id: Optional[int]
    category_id: Optional[int]
    transaction_type: TransactionType
    amount: Amount
    description: str
    frequency: RecurringFrequency
    interval_count: int
    start_date: dt.date
    end_date: Optional[dt.date]
    next_occurrence: dt.date
    is_active: bool


class SavingsGoalOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: int
    account_id: int
    name: str
    description: Optional[str]
    target_amount: Amount
    current_amount: Amount
    target_date: Optional[dt.date]
    status: GoalStatus

    @computed_field
    @property
    def progress(self) -> Amount:
        return min(percentage(self.current_amount, self.target_amount), Decimal("100.00"))


class ImportResultOut(BaseModel):
    imported: int
    skipped: int
    errors: list[str]


class AccountBalance(BaseModel):
    account_id: int
    account_name: str
    currency: str
    balance: Amount


class CategoryExpense(BaseModel):
    category_id: Optional[int]
    category_name: str
    amount: Amount
    percentage: Amount


class BudgetStatusLine(BaseModel):
    budget_id: int
    budget_name: str
    allocated: Amount
    spent: Amount
    remaining: Amount
    percentage_used: Amount
    status: BudgetBand


class FinancialSummary(BaseModel):
    start_date: dt.date
    end_date: dt.date
    total_income: Amount
    total_expenses: Amount
    net_income: Amount
    account_balances: list[AccountBalance]
    expense_by_category: list[CategoryExpense]
    budget_status: list[BudgetStatusLine]


class DashboardOut(BaseModel):
    accounts: list[AccountOut]
    recent_transactions: list[TransactionOut]
    monthly_budgets: list[BudgetOut]
    savings_goals: list[SavingsGoalOut]
    monthly_income: Amount
    monthly_expenses: Amount
    net_worth: Amount
