from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Mapping

from sqlalchemy import delete, func, insert, or_, select, update
from sqlalchemy.engine import Connection, Engine

from ledger.balance_ledger import AccountBalanceLedger, BalanceDelta, quantize_money
from ledger.currency_conversion import CurrencyConversionService
from ledger.db import accounts, categories, transaction_scope, transactions
from ledger.errors import (
    AccountNotFound,
    CategoryNotFound,
    CategoryTypeMismatch,
    ConversionUnavailable,
    InvalidAmount,
    InvalidDebtTarget,
    RateNotFound,
    StructuralError,
    TransactionNotFound,
    ValidationError,
)
from ledger.repositories import (
    Account,
    AccountRepository,
    Category,
    CategoryRepository,
    UserSettingsRepository,
)

logger = logging.getLogger(__name__)

TRANSACTION_TYPES = ("income", "expense", "transfer", "debt_payment")
TRANSFER_LIKE_TYPES = {"transfer", "debt_payment"}
CATEGORY_MATCHED_TYPES = {"income", "expense"}
UPDATABLE_FIELDS = {
    "type",
    "amount",
    "transaction_date",
    "category_id",
    "from_account_id",
    "to_account_id",
    "description",
}
DEFAULT_PAGE_SIZE = 50
MAX_PAGE_SIZE = 500
ZERO = Decimal("0")

from_account = accounts.alias("from_account")
to_account = accounts.alias("to_account")


@dataclass(frozen=True)
class TransactionData:
    type: str
    amount: Decimal
    transaction_date: date | None = None
    category_id: int | None = None
    from_account_id: int | None = None
    to_account_id: int | None = None
    description: str | None = None


@dataclass(frozen=True)
class ValidatedTransaction:
    data: TransactionData
    from_account: Account | None
    to_account: Account | None
    category: Category | None

    @property
    def currency_code(self) -> str:
        """Currency of the account the amount is denominated in."""
        if self.data.type == "income":
            return self.to_account.currency
        return self.from_account.currency


@dataclass(frozen=True)
class TransactionRecord:
    id: int
    user_id: int
    type: str
    amount: Decimal
    currency_code: str
    transaction_date: date
    description: str | None = None
    category_id: int | None = None
    from_account_id: int | None = None
    to_account_id: int | None = None
    category_name: str | None = None
    category_type: str | None = None
    from_account_name: str | None = None
    from_account_currency: str | None = None
    to_account_name: str | None = None
    to_account_currency: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None


@dataclass(frozen=True)
class TransactionListItem:
    transaction: TransactionRecord
    original_amount: Decimal
    original_currency: str
    converted_amount: Decimal
    primary_currency: str
    conversion_rate: Decimal
    is_converted: bool


@dataclass(frozen=True)
class TransactionFilters:
    start_date: date | None = None
    end_date: date | None = None
    type: str | None = None
    account_id: int | None = None
    category_id: int | None = None
    limit: int = DEFAULT_PAGE_SIZE
    offset: int = 0


@dataclass(frozen=True)
class TransactionPage:
    items: list[TransactionListItem] = field(default_factory=list)
    total_count: int = 0


@dataclass(frozen=True)
class TransactionSummary:
    total_income: Decimal
    total_expenses: Decimal
    net_balance: Decimal
    primary_currency: str


class TransactionEngine:
    """Records, edits and deletes financial movements and keeps balances in step.

    Each mutating call is one atomic unit: validation, balance deltas, the
    balance writes and the row itself either all land or none do.
    """

    def __init__(
        self,
        engine: Engine,
        conversion_service: CurrencyConversionService,
        balance_ledger: AccountBalanceLedger | None = None,
        account_repository: AccountRepository | None = None,
        category_repository: CategoryRepository | None = None,
        settings_repository: UserSettingsRepository | None = None,
    ) -> None:
        self.engine = engine
        self.conversion_service = conversion_service
        self.balance_ledger = balance_ledger or AccountBalanceLedger()
        self.account_repository = account_repository or AccountRepository()
        self.category_repository = category_repository or CategoryRepository()
        self.settings_repository = settings_repository or UserSettingsRepository()

    def create(
        self, user_id: int, data: TransactionData, conn: Connection | None = None
    ) -> TransactionRecord:
        with transaction_scope(self.engine, conn) as scope:
            validated = self.validate(scope, user_id, data)
            deltas = self._balance_deltas(scope, user_id, validated)
            self.balance_ledger.apply_deltas(scope, user_id, deltas)
            payload = validated.data
            transaction_id = scope.execute(
                insert(transactions)
                .values(
                    user_id=user_id,
                    type=payload.type,
                    amount=payload.amount,
                    currency_code=validated.currency_code,
                    transaction_date=payload.transaction_date,
                    category_id=payload.category_id,
                    from_account_id=payload.from_account_id,
                    to_account_id=payload.to_account_id,
                    description=payload.description,
                )
                .returning(transactions.c.id)
            ).scalar_one()
            record = self._fetch_record(scope, user_id, transaction_id)
        logger.info(
            "Created %s transaction %s of %s %s for user %s",
            record.type,
            record.id,
            record.amount,
            record.currency_code,
            user_id,
        )
        return record

    def update(
        self,
        user_id: int,
        transaction_id: int,
        patch: Mapping[str, Any],
        conn: Connection | None = None,
    ) -> TransactionRecord:
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Unknown transaction fields: {', '.join(sorted(unknown))}")

        with transaction_scope(self.engine, conn) as scope:
            original = self._load_for_update(scope, user_id, transaction_id)
            merged = replace(original, **dict(patch))
            self.balance_ledger.lock_accounts(
                scope,
                user_id,
                [
                    original.from_account_id,
                    original.to_account_id,
                    merged.from_account_id,
                    merged.to_account_id,
                ],
            )
            validated = self.validate(scope, user_id, merged)

            original_validated = self._accounts_of(scope, user_id, original)
            reversal = [delta.reversed() for delta in self._balance_deltas(scope, user_id, original_validated)]
            self.balance_ledger.apply_deltas(scope, user_id, reversal)
            self.balance_ledger.apply_deltas(
                scope, user_id, self._balance_deltas(scope, user_id, validated)
            )

            payload = validated.data
            scope.execute(
                update(transactions)
                .where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
                .values(
                    type=payload.type,
                    amount=payload.amount,
                    currency_code=validated.currency_code,
                    transaction_date=payload.transaction_date,
                    category_id=payload.category_id,
                    from_account_id=payload.from_account_id,
                    to_account_id=payload.to_account_id,
                    description=payload.description,
                    updated_at=func.now(),
                )
            )
            record = self._fetch_record(scope, user_id, transaction_id)
        logger.info("Updated transaction %s for user %s", transaction_id, user_id)
        return record

    def delete(self, user_id: int, transaction_id: int, conn: Connection | None = None) -> None:
        with transaction_scope(self.engine, conn) as scope:
            original = self._load_for_update(scope, user_id, transaction_id)
            original_validated = self._accounts_of(scope, user_id, original)
            reversal = [delta.reversed() for delta in self._balance_deltas(scope, user_id, original_validated)]
            self.balance_ledger.apply_deltas(scope, user_id, reversal)
            scope.execute(
                delete(transactions).where(
                    transactions.c.id == transaction_id, transactions.c.user_id == user_id
                )
            )
        logger.info("Deleted transaction %s for user %s", transaction_id, user_id)

    def get(self, user_id: int, transaction_id: int, conn: Connection | None = None) -> TransactionRecord:
        with transaction_scope(self.engine, conn) as scope:
            return self._fetch_record(scope, user_id, transaction_id)

    def list(
        self,
        user_id: int,
        filters: TransactionFilters | None = None,
        conn: Connection | None = None,
    ) -> TransactionPage:
        filters = filters or TransactionFilters()
        conditions = self._filter_conditions(user_id, filters)
        limit = min(max(filters.limit, 1), MAX_PAGE_SIZE)
        offset = max(filters.offset, 0)

        with transaction_scope(self.engine, conn) as scope:
            total_count = scope.execute(
                select(func.count()).select_from(transactions).where(*conditions)
            ).scalar_one()
            rows = scope.execute(
                self._record_select()
                .where(*conditions)
                .order_by(transactions.c.transaction_date.desc(), transactions.c.id.desc())
                .limit(limit)
                .offset(offset)
            ).mappings().all()
            primary_currency = self.settings_repository.get(scope, user_id).primary_currency

            items = []
            for row in rows:
                record = _record_from_row(row)
                converted_amount, rate, is_converted = self._to_primary(
                    scope, user_id, record, primary_currency
                )
                items.append(
                    TransactionListItem(
                        transaction=record,
                        original_amount=record.amount,
                        original_currency=record.currency_code,
                        converted_amount=converted_amount,
                        primary_currency=primary_currency,
                        conversion_rate=rate,
                        is_converted=is_converted,
                    )
                )
        return TransactionPage(items=items, total_count=int(total_count or 0))

    def summarize(
        self,
        user_id: int,
        filters: TransactionFilters | None = None,
        conn: Connection | None = None,
    ) -> TransactionSummary:
        """Income and expense totals in the primary currency; transfers are neutral."""
        filters = filters or TransactionFilters()
        conditions = self._filter_conditions(user_id, filters)
        total_income = ZERO
        total_expenses = ZERO
        with transaction_scope(self.engine, conn) as scope:
            primary_currency = self.settings_repository.get(scope, user_id).primary_currency
            rows = scope.execute(
                self._record_select().where(
                    *conditions, transactions.c.type.in_(tuple(CATEGORY_MATCHED_TYPES))
                )
            ).mappings().all()
            for row in rows:
                record = _record_from_row(row)
                converted_amount, _, _ = self._to_primary(scope, user_id, record, primary_currency)
                if record.type == "income":
                    total_income += converted_amount
                else:
                    total_expenses += converted_amount
        total_income = quantize_money(total_income)
        total_expenses = quantize_money(total_expenses)
        return TransactionSummary(
            total_income=total_income,
            total_expenses=total_expenses,
            net_balance=total_income - total_expenses,
            primary_currency=primary_currency,
        )

    def validate(self, conn: Connection, user_id: int, data: TransactionData) -> ValidatedTransaction:
        """Amount, structure and ownership checks shared by create, update and schedules."""
        data = _normalize_data(data)
        _check_structure(data)

        locked = self.balance_ledger.lock_accounts(
            conn, user_id, [data.from_account_id, data.to_account_id]
        )
        source = None
        if data.from_account_id is not None:
            source = locked.get(data.from_account_id)
            if source is None:
                raise AccountNotFound(data.from_account_id)
        destination = None
        if data.to_account_id is not None:
            destination = locked.get(data.to_account_id)
            if destination is None:
                raise AccountNotFound(data.to_account_id)

        if data.type == "debt_payment" and not destination.is_liability:
            raise InvalidDebtTarget(destination.id)

        category = None
        if data.category_id is not None:
            category = self.category_repository.get(conn, user_id, data.category_id)
            if category is None:
                raise CategoryNotFound(data.category_id)
            if data.type in CATEGORY_MATCHED_TYPES and category.type != data.type:
                raise CategoryTypeMismatch(category.type, data.type)

        return ValidatedTransaction(
            data=data, from_account=source, to_account=destination, category=category
        )

    def _balance_deltas(
        self, conn: Connection, user_id: int, validated: ValidatedTransaction
    ) -> list[BalanceDelta]:
        data = validated.data
        amount = data.amount
        if data.type == "income":
            return [BalanceDelta(validated.to_account.id, amount)]
        if data.type == "expense":
            return [BalanceDelta(validated.from_account.id, -amount)]

        source = validated.from_account
        destination = validated.to_account
        if source.currency == destination.currency:
            received = amount
        else:
            received = self._converted_transfer_amount(conn, user_id, amount, source, destination)
        return [
            BalanceDelta(source.id, -amount),
            BalanceDelta(destination.id, received),
        ]

    def _converted_transfer_amount(
        self,
        conn: Connection,
        user_id: int,
        amount: Decimal,
        source: Account,
        destination: Account,
    ) -> Decimal:
        self.settings_repository.get(conn, user_id, for_share=True)
        try:
            result = self.conversion_service.convert(
                amount, source.currency, destination.currency, user_id, conn=conn
            )
        except RateNotFound as exc:
            raise ConversionUnavailable(source.currency, destination.currency) from exc
        return quantize_money(result.converted_amount)

    def _to_primary(
        self,
        conn: Connection,
        user_id: int,
        record: TransactionRecord,
        primary_currency: str,
    ) -> tuple[Decimal, Decimal, bool]:
        try:
            result = self.conversion_service.convert(
                record.amount, record.currency_code, primary_currency, user_id, conn=conn
            )
        except (RateNotFound, ValidationError) as exc:
            logger.warning(
                "Could not convert transaction %s from %s to %s: %s",
                record.id,
                record.currency_code,
                primary_currency,
                exc,
            )
            return record.amount, Decimal("1"), False
        return result.converted_amount, result.rate, result.is_converted

    def _load_for_update(self, conn: Connection, user_id: int, transaction_id: int) -> TransactionData:
        row = conn.execute(
            select(transactions)
            .where(transactions.c.id == transaction_id, transactions.c.user_id == user_id)
            .with_for_update()
        ).mappings().first()
        if not row:
            raise TransactionNotFound(transaction_id)
        return TransactionData(
            type=row["type"],
            amount=_coerce_decimal(row["amount"]),
            transaction_date=row["transaction_date"],
            category_id=row["category_id"],
            from_account_id=row["from_account_id"],
            to_account_id=row["to_account_id"],
            description=row["description"],
        )

    def _accounts_of(self, conn: Connection, user_id: int, data: TransactionData) -> ValidatedTransaction:
        """Resolve the accounts a stored transaction touched, without re-running its rules."""
        locked = self.balance_ledger.lock_accounts(
            conn, user_id, [data.from_account_id, data.to_account_id]
        )
        source = locked.get(data.from_account_id) if data.from_account_id is not None else None
        destination = locked.get(data.to_account_id) if data.to_account_id is not None else None
        if data.from_account_id is not None and source is None:
            raise AccountNotFound(data.from_account_id)
        if data.to_account_id is not None and destination is None:
            raise AccountNotFound(data.to_account_id)
        return ValidatedTransaction(data=data, from_account=source, to_account=destination, category=None)

    def _fetch_record(self, conn: Connection, user_id: int, transaction_id: int) -> TransactionRecord:
        row = conn.execute(
            self._record_select().where(
                transactions.c.id == transaction_id, transactions.c.user_id == user_id
            )
        ).mappings().first()
        if not row:
            raise TransactionNotFound(transaction_id)
        return _record_from_row(row)

    @staticmethod
    def _record_select():
        return select(
            transactions,
            categories.c.name.label("category_name"),
            categories.c.type.label("category_type"),
            from_account.c.name.label("from_account_name"),
            from_account.c.currency.label("from_account_currency"),
            to_account.c.name.label("to_account_name"),
            to_account.c.currency.label("to_account_currency"),
        ).select_from(
            transactions.outerjoin(categories, transactions.c.category_id == categories.c.id)
            .outerjoin(from_account, transactions.c.from_account_id == from_account.c.id)
            .outerjoin(to_account, transactions.c.to_account_id == to_account.c.id)
        )

    @staticmethod
    def _filter_conditions(user_id: int, filters: TransactionFilters) -> list:
        conditions = [transactions.c.user_id == user_id]
        if filters.start_date is not None:
            conditions.append(transactions.c.transaction_date >= filters.start_date)
        if filters.end_date is not None:
            conditions.append(transactions.c.transaction_date <= filters.end_date)
        if filters.type is not None:
            txn_type = filters.type.strip().lower()
            if txn_type not in TRANSACTION_TYPES:
                raise ValidationError("Invalid transaction type.")
            conditions.append(transactions.c.type == txn_type)
        if filters.account_id is not None:
            conditions.append(
                or_(
                    transactions.c.from_account_id == filters.account_id,
                    transactions.c.to_account_id == filters.account_id,
                )
            )
        if filters.category_id is not None:
            conditions.append(transactions.c.category_id == filters.category_id)
        return conditions


def _normalize_data(data: TransactionData) -> TransactionData:
    txn_type = (data.type or "").strip().lower()
    if txn_type not in TRANSACTION_TYPES:
        raise ValidationError("Invalid transaction type.")
    try:
        amount = quantize_money(_coerce_decimal(data.amount))
    except (InvalidOperation, TypeError) as exc:
        raise InvalidAmount(None) from exc
    if amount <= ZERO:
        raise InvalidAmount(amount)
    description = data.description.strip() if data.description else None
    return replace(
        data,
        type=txn_type,
        amount=amount,
        transaction_date=data.transaction_date or date.today(),
        description=description or None,
    )


def _check_structure(data: TransactionData) -> None:
    has_source = data.from_account_id is not None
    has_destination = data.to_account_id is not None
    if data.type == "income":
        if has_source or not has_destination:
            raise StructuralError(
                data.type, "Income requires a destination account and no source account."
            )
    elif data.type == "expense":
        if not has_source or has_destination:
            raise StructuralError(
                data.type, "Expenses require a source account and no destination account."
            )
    else:
        if not has_source or not has_destination:
            raise StructuralError(data.type, "Both source and destination accounts are required.")
        if data.from_account_id == data.to_account_id:
            raise StructuralError(data.type, "Source and destination accounts must differ.")


def _record_from_row(row) -> TransactionRecord:
    return TransactionRecord(
        id=row["id"],
        user_id=row["user_id"],
        type=row["type"],
        amount=_coerce_decimal(row["amount"]),
        currency_code=row["currency_code"],
        transaction_date=row["transaction_date"],
        description=row["description"],
        category_id=row["category_id"],
        from_account_id=row["from_account_id"],
        to_account_id=row["to_account_id"],
        category_name=row["category_name"],
        category_type=row["category_type"],
        from_account_name=row["from_account_name"],
        from_account_currency=row["from_account_currency"],
        to_account_name=row["to_account_name"],
        to_account_currency=row["to_account_currency"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _coerce_decimal(value: Decimal | int | float | str) -> Decimal:
    if isinstance(value, Decimal):
        return value
    return Decimal(str(value))
