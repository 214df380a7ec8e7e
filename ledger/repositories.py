"""
Persistence collaborators of the ledger.

Every lookup filters by owner. A row that exists but belongs to someone else
is reported exactly like a missing row.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import date
from decimal import Decimal

from sqlalchemy import func, insert, select, update
from sqlalchemy.engine import Connection
from sqlalchemy.exc import IntegrityError

from ledger.db import (
    accounts,
    categories,
    debt_details,
    exchange_rates,
    supported_currencies,
    user_settings,
    users,
)
from ledger.errors import (
    ConflictError,
    RateNotFound,
    UnsupportedCurrency,
    UserNotFound,
    ValidationError,
)

logger = logging.getLogger(__name__)

ACCOUNT_CATEGORIES = {"asset", "liability"}
CATEGORY_TYPES = {"income", "expense"}
ZERO = Decimal("0")


@dataclass(frozen=True)
class Account:
    id: int
    user_id: int
    name: str
    account_category: str
    currency: str
    initial_balance: Decimal
    current_balance: Decimal
    account_type_id: int | None = None

    @property
    def is_liability(self) -> bool:
        return self.account_category == "liability"


@dataclass(frozen=True)
class DebtDetails:
    account_id: int
    original_amount: Decimal
    interest_rate: Decimal = ZERO
    due_date: date | None = None


@dataclass(frozen=True)
class Category:
    id: int
    user_id: int
    name: str
    type: str


@dataclass(frozen=True)
class UserSettings:
    user_id: int
    primary_currency: str
    anchor_currency: str


def _coerce_decimal(value: Decimal | int | float | str | None) -> Decimal:
    if value is None:
        return ZERO
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))


def account_from_row(row) -> Account:
    return Account(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        account_category=row["account_category"],
        currency=row["currency"],
        initial_balance=_coerce_decimal(row["initial_balance"]),
        current_balance=_coerce_decimal(row["current_balance"]),
        account_type_id=row["account_type_id"],
    )


class SupportedCurrencyRegistry:
    def is_supported(self, conn: Connection, code: str) -> bool:
        found = conn.execute(
            select(supported_currencies.c.code).where(supported_currencies.c.code == code)
        ).first()
        return found is not None

    def list_codes(self, conn: Connection) -> list[str]:
        return list(
            conn.execute(
                select(supported_currencies.c.code).order_by(supported_currencies.c.code.asc())
            ).scalars()
        )


class UserSettingsRepository:
    def create_user(
        self,
        conn: Connection,
        email: str,
        anchor_currency: str = "USD",
        primary_currency: str | None = None,
    ) -> int:
        """Create a user with its settings row and the anchor's own rate of 1."""
        primary = primary_currency or anchor_currency
        try:
            user_id = conn.execute(
                insert(users).values(email=email.strip().lower()).returning(users.c.id)
            ).scalar_one()
        except IntegrityError as exc:
            raise ConflictError("Email already exists.") from exc
        conn.execute(
            insert(user_settings).values(
                user_id=user_id,
                primary_currency=primary,
                anchor_currency=anchor_currency,
            )
        )
        conn.execute(
            insert(exchange_rates).values(
                user_id=user_id,
                currency_code=anchor_currency,
                rate_to_anchor=Decimal("1"),
            )
        )
        logger.info("Created user %s with anchor currency %s", user_id, anchor_currency)
        return user_id

    def get(
        self,
        conn: Connection,
        user_id: int,
        for_update: bool = False,
        for_share: bool = False,
    ) -> UserSettings:
        """Read the settings row, optionally locking it exclusively or shared."""
        stmt = select(user_settings).where(user_settings.c.user_id == user_id)
        if for_update:
            stmt = stmt.with_for_update()
        elif for_share:
            stmt = stmt.with_for_update(read=True)
        row = conn.execute(stmt).mappings().first()
        if not row:
            raise UserNotFound(user_id)
        return UserSettings(
            user_id=row["user_id"],
            primary_currency=row["primary_currency"],
            anchor_currency=row["anchor_currency"],
        )

    def exists(self, conn: Connection, user_id: int) -> bool:
        return conn.execute(select(users.c.id).where(users.c.id == user_id)).first() is not None

    def update_currencies(
        self,
        conn: Connection,
        user_id: int,
        primary_currency: str | None = None,
        anchor_currency: str | None = None,
    ) -> None:
        values = {}
        if primary_currency is not None:
            values["primary_currency"] = primary_currency
        if anchor_currency is not None:
            values["anchor_currency"] = anchor_currency
        if not values:
            return
        result = conn.execute(
            update(user_settings)
            .where(user_settings.c.user_id == user_id)
            .values(**values, updated_at=func.now())
        )
        if result.rowcount == 0:
            raise UserNotFound(user_id)


class AccountRepository:
    def __init__(self, currency_registry: SupportedCurrencyRegistry | None = None) -> None:
        self.currency_registry = currency_registry or SupportedCurrencyRegistry()

    def get(self, conn: Connection, user_id: int, account_id: int | None) -> Account | None:
        if account_id is None:
            return None
        row = conn.execute(
            select(accounts).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        ).mappings().first()
        return account_from_row(row) if row else None

    def list(self, conn: Connection, user_id: int) -> list[Account]:
        rows = conn.execute(
            select(accounts).where(accounts.c.user_id == user_id).order_by(accounts.c.name.asc())
        ).mappings().all()
        return [account_from_row(row) for row in rows]

    def get_debt_details(self, conn: Connection, user_id: int, account_id: int) -> DebtDetails | None:
        row = conn.execute(
            select(debt_details)
            .select_from(debt_details.join(accounts, debt_details.c.account_id == accounts.c.id))
            .where(debt_details.c.account_id == account_id, accounts.c.user_id == user_id)
        ).mappings().first()
        if not row:
            return None
        return DebtDetails(
            account_id=row["account_id"],
            original_amount=_coerce_decimal(row["original_amount"]),
            interest_rate=_coerce_decimal(row["interest_rate"]),
            due_date=row["due_date"],
        )

    def create(
        self,
        conn: Connection,
        user_id: int,
        name: str,
        currency: str,
        account_category: str = "asset",
        initial_balance: Decimal | int | str = ZERO,
        account_type_id: int | None = None,
        interest_rate: Decimal | None = None,
        due_date: date | None = None,
        original_amount: Decimal | None = None,
    ) -> Account:
        """Create an account; liabilities get their debt details in the same scope."""
        name = name.strip()
        currency = currency.strip().upper()
        if not name:
            raise ValidationError("Account name required.")
        if account_category not in ACCOUNT_CATEGORIES:
            raise ValidationError("Account category must be 'asset' or 'liability'.")
        if not self.currency_registry.is_supported(conn, currency):
            raise UnsupportedCurrency(currency)
        settings = UserSettingsRepository().get(conn, user_id)
        if currency != settings.anchor_currency:
            has_rate = conn.execute(
                select(exchange_rates.c.id).where(
                    exchange_rates.c.user_id == user_id,
                    exchange_rates.c.currency_code == currency,
                )
            ).first()
            if not has_rate:
                raise RateNotFound(currency)

        balance = _coerce_decimal(initial_balance)
        if account_category == "liability" and balance > ZERO:
            balance = -balance

        try:
            row = conn.execute(
                insert(accounts)
                .values(
                    user_id=user_id,
                    name=name,
                    account_category=account_category,
                    currency=currency,
                    initial_balance=balance,
                    current_balance=balance,
                    account_type_id=account_type_id,
                )
                .returning(*accounts.c)
            ).mappings().one()
        except IntegrityError as exc:
            raise ConflictError("An account with that name already exists.") from exc

        if account_category == "liability":
            debt_amount = _coerce_decimal(original_amount) if original_amount is not None else abs(balance)
            if debt_amount <= ZERO:
                raise ValidationError("Debt original amount must be greater than zero.")
            rate = _coerce_decimal(interest_rate)
            if rate < ZERO:
                raise ValidationError("Interest rate cannot be negative.")
            conn.execute(
                insert(debt_details).values(
                    account_id=row["id"],
                    interest_rate=rate,
                    due_date=due_date,
                    original_amount=debt_amount,
                )
            )
        logger.info("Created %s account %s for user %s", account_category, row["id"], user_id)
        return account_from_row(row)


class CategoryRepository:
    def get(self, conn: Connection, user_id: int, category_id: int | None) -> Category | None:
        if category_id is None:
            return None
        row = conn.execute(
            select(categories).where(categories.c.id == category_id, categories.c.user_id == user_id)
        ).mappings().first()
        if not row:
            return None
        return Category(id=row["id"], user_id=row["user_id"], name=row["name"], type=row["type"])

    def create(self, conn: Connection, user_id: int, name: str, category_type: str) -> Category:
        name = name.strip()
        if not name:
            raise ValidationError("Category name required.")
        if category_type not in CATEGORY_TYPES:
            raise ValidationError("Category type must be 'income' or 'expense'.")
        try:
            category_id = conn.execute(
                insert(categories)
                .values(user_id=user_id, name=name, type=category_type)
                .returning(categories.c.id)
            ).scalar_one()
        except IntegrityError as exc:
            raise ConflictError("Category already exists.") from exc
        return Category(id=category_id, user_id=user_id, name=name, type=category_type)
