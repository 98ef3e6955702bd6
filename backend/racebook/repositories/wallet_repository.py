"""Wallet balance and audit-trail persistence.

Balances change only through ``debit`` and ``credit``; each call appends one
``wallet_transactions`` row carrying the resulting balance.
"""

from __future__ import annotations

from collections.abc import Sequence

from sqlalchemy import select
from sqlalchemy.orm import Session

from racebook.core.errors import INSUFFICIENT_FUNDS, InvariantViolation, WagerRejected
from racebook.domain.models import WalletTransactionKind
from racebook.models import WalletAccount, WalletTransaction


class WalletRepository:
    def __init__(self, session: Session) -> None:
        self._session = session

    # ------------------------------------------------------------------
    # Accounts

    def open_account(self, user_id: str, *, balance: int = 0) -> WalletAccount:
        if balance < 0:
            raise InvariantViolation(f"opening balance for {user_id} cannot be negative")
        record = WalletAccount(user_id=user_id, balance=balance)
        self._session.add(record)
        self._session.flush()
        return record

    def get_account(self, user_id: str, *, for_update: bool = False) -> WalletAccount | None:
        stmt = select(WalletAccount).where(WalletAccount.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        return self._session.execute(stmt).scalars().first()

    def get_balance(self, user_id: str) -> int | None:
        account = self.get_account(user_id)
        return account.balance if account else None

    def lock_or_open(self, user_id: str) -> WalletAccount:
        account = self.get_account(user_id, for_update=True)
        if account is None:
            account = self.open_account(user_id)
        return account

    # ------------------------------------------------------------------
    # Mutations

    def debit(
        self,
        account: WalletAccount,
        amount: int,
        *,
        market_id: str | None = None,
        wager_id: str | None = None,
    ) -> int:
        if amount <= 0:
            raise InvariantViolation(f"debit amount must be positive, got {amount}")
        if account.balance < amount:
            raise WagerRejected(
                "Insufficient balance.",
                code=INSUFFICIENT_FUNDS,
                details={"balance": account.balance, "required": amount},
            )
        account.balance -= amount
        self._record(account, WalletTransactionKind.WAGER, -amount, market_id=market_id, wager_id=wager_id)
        return account.balance

    def credit(
        self,
        account: WalletAccount,
        amount: int,
        *,
        kind: WalletTransactionKind,
        market_id: str | None = None,
        wager_id: str | None = None,
    ) -> int:
        if amount <= 0:
            raise InvariantViolation(f"credit amount must be positive, got {amount}")
        account.balance += amount
        self._record(account, kind, amount, market_id=market_id, wager_id=wager_id)
        return account.balance

    def _record(
        self,
        account: WalletAccount,
        kind: WalletTransactionKind,
        amount: int,
        *,
        market_id: str | None,
        wager_id: str | None,
    ) -> None:
        self._session.add(
            WalletTransaction(
                user_id=account.user_id,
                kind=kind.value,
                amount=amount,
                balance_after=account.balance,
                market_id=market_id,
                wager_id=wager_id,
            )
        )
        self._session.flush()

    # ------------------------------------------------------------------
    # Queries

    def list_transactions(self, user_id: str) -> Sequence[WalletTransaction]:
        stmt = (
            select(WalletTransaction)
            .where(WalletTransaction.user_id == user_id)
            .order_by(WalletTransaction.id)
        )
        return self._session.execute(stmt).scalars().all()
