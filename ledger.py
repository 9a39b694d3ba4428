"""Balance engine.

Every live transaction contributes a signed effect to one account (income,
expense) or two accounts (transfer). An account's balance is its initial
balance plus the effects of its live transactions. Mutations apply or reverse
whole effects; an update is always reverse(old) followed by apply(new), never
a computed difference, and locks the accounts of both sides in one pass.
"""

from __future__ import annotations

import datetime as dt
from dataclasses import dataclass
from typing import Optional, Protocol, Sequence

from sqlalchemy import case, func, select
from sqlalchemy.orm import Session

from errors import NotFound, ValidationFailed
from models import Account, Transaction, TransactionType


@dataclass(frozen=True)
class LedgerEntry:
    """Snapshot of the ledger-relevant fields of one transaction."""

    transaction_id: Optional[int]
    user_id: int
    transaction_type: TransactionType
    amount_cents: int
    account_id: int
    to_account_id: Optional[int]
    category_id: Optional[int]
    date: dt.date
    savings_goal_id: Optional[int] = None

    @classmethod
    def of(cls, txn: Transaction) -> "LedgerEntry":
        return cls(
            transaction_id=txn.id,
            user_id=txn.user_id,
            transaction_type=txn.transaction_type,
            amount_cents=txn.amount_cents,
            account_id=txn.account_id,
            to_account_id=txn.to_account_id,
            category_id=txn.category_id,
            date=txn.date,
            savings_goal_id=txn.savings_goal_id,
        )

    @property
    def account_ids(self) -> tuple[int, ...]:
        if self.transaction_type == TransactionType.transfer and self.to_account_id:
            return (self.account_id, self.to_account_id)
        return (self.account_id,)


class LedgerHook(Protocol):
    """Runs inside the unit of work after balances have moved.

    ``entries`` holds every snapshot touched by the operation: the old state
    of an updated or deleted transaction and the new state of a created or
    updated one.
    """

    def on_ledger_change(self, entries: Sequence[LedgerEntry]) -> None: ...


def effects(entry: LedgerEntry) -> list[tuple[int, int]]:
    """Signed (account_id, delta_cents) pairs caused by one transaction."""
    amount = entry.amount_cents
    if entry.transaction_type == TransactionType.income:
        return [(entry.account_id, amount)]
    if entry.transaction_type == TransactionType.expense:
        return [(entry.account_id, -amount)]
    if not entry.to_account_id or entry.to_account_id == entry.account_id:
        raise ValidationFailed("Transfer requires a distinct destination account")
    return [(entry.account_id, -amount), (entry.to_account_id, amount)]


class BalanceEngine:
    def __init__(self, session: Session, user_id: int) -> None:
        self.session = session
        self.user_id = user_id

    def _lock_accounts(self, account_ids: Sequence[int]) -> dict[int, Account]:
        # Ascending id order so two writers never wait on each other in a cycle.
        ids = sorted(set(account_ids))
        stmt = (
            select(Account)
            .where(
                Account.id.in_(ids),
                Account.user_id == self.user_id,
                Account.deleted_at.is_(None),
            )
            .order_by(Account.id)
            .with_for_update()
            .execution_options(populate_existing=True)
        )
        accounts = {acc.id: acc for acc in self.session.scalars(stmt)}
        missing = [account_id for account_id in ids if account_id not in accounts]
        if missing:
            raise NotFound("Account")
        return accounts

    def _post(self, deltas: Sequence[tuple[int, int]]) -> None:
        # One lock pass over every touched account, even for an update that
        # moves a transaction between accounts.
        accounts = self._lock_accounts([account_id for account_id, _ in deltas])
        for account_id, delta in deltas:
            accounts[account_id].balance_cents += delta
        self.session.flush()

    def apply(self, entry: LedgerEntry) -> None:
        self._post(effects(entry))

    def reverse(self, entry: LedgerEntry) -> None:
        self._post([(account_id, -delta) for account_id, delta in effects(entry)])

    def replace(self, old: LedgerEntry, new: LedgerEntry) -> None:
        """Reverse ``old`` and apply ``new`` under a single set of row locks."""
        reversed_old = [(account_id, -delta) for account_id, delta in effects(old)]
        self._post(reversed_old + effects(new))

    def live_effect_total(self, account_id: int) -> int:
        """Sum of live transaction effects on one account, straight from rows."""
        outgoing = case(
            (Transaction.transaction_type == TransactionType.income, Transaction.amount_cents),
            else_=-Transaction.amount_cents,
        )
        source_total = self.session.execute(
            select(func.coalesce(func.sum(outgoing), 0)).where(
                Transaction.user_id == self.user_id,
                Transaction.deleted_at.is_(None),
                Transaction.account_id == account_id,
            )
        ).scalar_one()
        incoming_total = self.session.execute(
            select(func.coalesce(func.sum(Transaction.amount_cents), 0)).where(
                Transaction.user_id == self.user_id,
                Transaction.deleted_at.is_(None),
                Transaction.transaction_type == TransactionType.transfer,
                Transaction.to_account_id == account_id,
            )
        ).scalar_one()
        return int(source_total or 0) + int(incoming_total or 0)

    def recalculate(self, account_id: int) -> Account:
        """Rebuild a balance from its initial value and live transactions."""
        account = self._lock_accounts([account_id])[account_id]
        account.balance_cents = account.initial_balance_cents + self.live_effect_total(
            account_id
        )
        self.session.flush()
        return account
