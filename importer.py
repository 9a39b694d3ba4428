"""Bulk import of externally sourced transaction rows.

Rows are checked one at a time and posted through ``TransactionService`` so an
imported row moves balances, budgets and goals exactly like manual entry. Each
accepted row commits on its own, which lets row N see row N-1 when checking for
duplicates.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import date
from decimal import Decimal
from enum import Enum
from typing import Any, Iterable, Mapping, Optional, Union

from pydantic import ValidationError
from rapidfuzz.distance import Levenshtein
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from csv_utils import parse_date
from errors import LedgerError, NotFound, ValidationFailed
from models import Account, CategoryType, TransactionType
from money import to_cents, to_decimal
from schemas import ImportRowIn, TransactionIn
from services import AccountService, CategoryService, TransactionService

logger = logging.getLogger(__name__)

# Suggest an existing category when the typed name is this close to it.
SUGGESTION_MAX_DISTANCE = 2


class ImportIssue(str, Enum):
    no_data = "no_data"
    bad_default_account = "bad_default_account"
    missing_fields = "missing_fields"
    invalid_date = "invalid_date"
    invalid_amount = "invalid_amount"
    invalid_type = "invalid_type"
    account_not_found = "account_not_found"
    no_account = "no_account"
    category_not_found = "category_not_found"
    duplicate = "duplicate"
    rejected = "rejected"


@dataclass(frozen=True)
class RowIssue:
    row: Optional[int]
    issue: ImportIssue
    message: str
    imported: bool = False


@dataclass
class ImportResult:
    imported: int = 0
    skipped: int = 0
    issues: list[RowIssue] = field(default_factory=list)

    @property
    def errors(self) -> list[str]:
        return [issue.message for issue in self.issues]

    def skip(self, row: int, issue: ImportIssue, detail: str) -> None:
        self.skipped += 1
        self.issues.append(RowIssue(row, issue, f"Row {row}: {detail}"))


class RowSkipped(Exception):
    def __init__(self, issue: ImportIssue, detail: str) -> None:
        super().__init__(detail)
        self.issue = issue
        self.detail = detail


@dataclass(frozen=True)
class PreparedRow:
    data: TransactionIn
    warning: Optional[str] = None


def _text(value: Any) -> Optional[str]:
    if value is None:
        return None
    text = value.strip() if isinstance(value, str) else str(value)
    return text or None


def _blank(value: Any) -> bool:
    return value is None or (isinstance(value, str) and not value.strip())


class ImportService:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id
        self.accounts = AccountService(session, user_id)
        self.categories = CategoryService(session, user_id)
        self.transactions = TransactionService(session, user_id)

    def _suggest_category(self, category_type: CategoryType, name: str) -> Optional[str]:
        wanted = name.lower()
        best: Optional[str] = None
        best_distance: Optional[int] = None
        for category in self.categories.list_all(category_type):
            dist = int(Levenshtein.distance(wanted, category.name.lower()))
            if best_distance is None or dist < best_distance:
                best_distance = dist
                best = category.name
        if best_distance is not None and best_distance <= SUGGESTION_MAX_DISTANCE:
            return best
        return None

    def _resolve_account(self, name: str) -> Account:
        account = self.accounts.find_by_name(name)
        if not account:
            raise RowSkipped(ImportIssue.account_not_found, f"Account not found: {name}")
        return account

    def _prepare(
        self, row: ImportRowIn, default_account_id: Optional[int]
    ) -> PreparedRow:
        description = _text(row.description)
        type_raw = _text(row.type)
        if _blank(row.date) or not description or _blank(row.amount) or not type_raw:
            raise RowSkipped(
                ImportIssue.missing_fields,
                "Missing required fields (date, description, amount, or type)",
            )

        try:
            txn_date: date = parse_date(row.date)
        except ValueError:
            raise RowSkipped(
                ImportIssue.invalid_date, f"Invalid date format: {row.date}"
            ) from None

        try:
            amount: Decimal = to_decimal(row.amount, exact=True)
        except ValidationFailed as exc:
            if exc.field == "amount":
                raise RowSkipped(ImportIssue.invalid_amount, exc.message) from None
            amount = Decimal(0)
        if amount <= 0:
            raise RowSkipped(
                ImportIssue.invalid_amount, "Amount must be a positive number"
            )

        try:
            txn_type = TransactionType(type_raw.lower())
        except ValueError:
            raise RowSkipped(
                ImportIssue.invalid_type, f"Invalid transaction type: {type_raw}"
            ) from None

        account_name = _text(row.account)
        if account_name:
            account_id = self._resolve_account(account_name).id
        elif default_account_id is not None:
            account_id = default_account_id
        else:
            raise RowSkipped(
                ImportIssue.no_account,
                "No account specified and no default account provided",
            )

        to_account_id = None
        to_account_name = _text(row.to_account)
        if txn_type == TransactionType.transfer and to_account_name:
            to_account_id = self._resolve_account(to_account_name).id

        category_id = None
        warning = None
        category_name = _text(row.category)
        if category_name:
            category = None
            category_type = None
            if txn_type != TransactionType.transfer:
                category_type = CategoryType(txn_type.value)
                category = self.categories.find_by_name(category_type, category_name)
            if category:
                category_id = category.id
            else:
                warning = (
                    f"Category not found: {category_name} - "
                    "transaction imported without category"
                )
                suggestion = (
                    self._suggest_category(category_type, category_name)
                    if category_type
                    else None
                )
                if suggestion:
                    warning += f" (did you mean '{suggestion}'?)"

        if self.transactions.find_duplicate(
            description, to_cents(amount), txn_date, account_id
        ):
            raise RowSkipped(
                ImportIssue.duplicate, "Potential duplicate transaction skipped"
            )

        try:
            data = TransactionIn(
                account_id=account_id,
                to_account_id=to_account_id,
                category_id=category_id,
                transaction_type=txn_type,
                amount=amount,
                description=description,
                date=txn_date,
            )
        except ValidationError as exc:
            first = exc.errors()[0]
            field_name = ".".join(str(part) for part in first["loc"])
            raise RowSkipped(
                ImportIssue.rejected, f"Invalid {field_name}: {first['msg']}"
            ) from None
        return PreparedRow(data, warning)

    def import_rows(
        self,
        rows: Optional[Iterable[Union[ImportRowIn, Mapping[str, Any]]]],
        default_account_id: Optional[int] = None,
    ) -> ImportResult:
        result = ImportResult()
        batch = list(rows or [])
        if not batch:
            result.issues.append(
                RowIssue(None, ImportIssue.no_data, "No transaction data provided")
            )
            return result

        if default_account_id is not None:
            try:
                self.accounts.get(default_account_id)
            except NotFound:
                result.issues.append(
                    RowIssue(
                        None,
                        ImportIssue.bad_default_account,
                        "Default account not found or does not belong to user",
                    )
                )
                return result

        for index, raw in enumerate(batch, start=1):
            try:
                row = (
                    raw if isinstance(raw, ImportRowIn) else ImportRowIn.model_validate(raw)
                )
                prepared = self._prepare(row, default_account_id)
                self.transactions.create(prepared.data)
            except RowSkipped as skipped:
                result.skip(index, skipped.issue, skipped.detail)
                continue
            except ValidationError:
                result.skip(index, ImportIssue.rejected, "Row is not a set of fields")
                continue
            except LedgerError as exc:
                result.skip(index, ImportIssue.rejected, exc.message)
                continue
            except SQLAlchemyError:
                logger.exception(
                    f"import_aborted: user_id={self.user_id} row={index} "
                    f"imported={result.imported}"
                )
                raise

            result.imported += 1
            if prepared.warning:
                result.issues.append(
                    RowIssue(
                        index,
                        ImportIssue.category_not_found,
                        f"Row {index}: {prepared.warning}",
                        imported=True,
                    )
                )

        logger.info(
            f"import_finished: user_id={self.user_id} imported={result.imported} "
            f"skipped={result.skipped} errors={len(result.issues)}"
        )
        return result
