from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable

from sqlalchemy import func, select, update
from sqlalchemy.engine import Connection

from ledger.db import accounts
from ledger.errors import AccountNotFound
from ledger.repositories import Account, account_from_row

logger = logging.getLogger(__name__)

CENTS = Decimal("0.01")


@dataclass(frozen=True)
class BalanceDelta:
    account_id: int
    amount: Decimal

    def reversed(self) -> "BalanceDelta":
        return BalanceDelta(account_id=self.account_id, amount=-self.amount)


def quantize_money(value: Decimal) -> Decimal:
    return value.quantize(CENTS, rounding=ROUND_HALF_UP)


class AccountBalanceLedger:
    """Guarded balance writes.

    Never opens a database transaction: every method runs on the caller's
    connection, inside the caller's all-or-nothing scope.
    """

    def lock_accounts(
        self, conn: Connection, user_id: int, account_ids: Iterable[int | None]
    ) -> dict[int, Account]:
        ids = sorted({account_id for account_id in account_ids if account_id is not None})
        if not ids:
            return {}
        rows = conn.execute(
            select(accounts)
            .where(accounts.c.user_id == user_id, accounts.c.id.in_(ids))
            .order_by(accounts.c.id.asc())
            .with_for_update()
        ).mappings().all()
        return {row["id"]: account_from_row(row) for row in rows}

    def write_balance(
        self, conn: Connection, user_id: int, account_id: int, new_balance: Decimal
    ) -> None:
        result = conn.execute(
            update(accounts)
            .where(accounts.c.id == account_id, accounts.c.user_id == user_id)
            .values(current_balance=new_balance, updated_at=func.now())
        )
        if result.rowcount == 0:
            raise AccountNotFound(account_id)

    def apply_delta(
        self, conn: Connection, user_id: int, account_id: int, delta: Decimal
    ) -> Decimal:
        locked = self.lock_accounts(conn, user_id, [account_id])
        account = locked.get(account_id)
        if account is None:
            raise AccountNotFound(account_id)
        new_balance = quantize_money(account.current_balance + delta)
        self.write_balance(conn, user_id, account_id, new_balance)
        logger.debug(
            "Account %s balance %s -> %s (delta %s)",
            account_id,
            account.current_balance,
            new_balance,
            delta,
        )
        return new_balance

    def apply_deltas(
        self, conn: Connection, user_id: int, deltas: Iterable[BalanceDelta]
    ) -> dict[int, Decimal]:
        deltas = list(deltas)
        self.lock_accounts(conn, user_id, [delta.account_id for delta in deltas])
        balances: dict[int, Decimal] = {}
        for delta in deltas:
            balances[delta.account_id] = self.apply_delta(conn, user_id, delta.account_id, delta.amount)
        return balances
