from __future__ import annotations

import logging
from calendar import monthrange
from dataclasses import dataclass, field, replace
from datetime import date, datetime, time, timedelta
from decimal import Decimal
from typing import Any, Mapping

from sqlalchemy import delete, func, insert, select, update
from sqlalchemy.engine import Connection, Engine

from ledger.db import accounts, categories, scheduled_transactions, transaction_scope
from ledger.errors import ScheduledTransactionNotFound, ValidationError
from ledger.transactions import TRANSACTION_TYPES, TransactionData, TransactionEngine

logger = logging.getLogger(__name__)

FREQUENCIES = ("once", "daily", "weekly", "monthly")
DAILY_DAYS = 1
WEEKLY_DAYS = 7
DEFAULT_START_TIME = time(9, 0)
UPDATABLE_FIELDS = {
    "transaction_type",
    "amount",
    "description",
    "category_id",
    "source_account_id",
    "destination_account_id",
    "frequency",
    "start_date",
    "start_time",
    "end_date",
    "end_time",
}
SCHEDULE_FIELDS = {"frequency", "start_date", "start_time"}

source_account = accounts.alias("source_account")
destination_account = accounts.alias("destination_account")


@dataclass(frozen=True)
class ScheduledTransactionData:
    transaction_type: str
    amount: Decimal
    description: str
    frequency: str
    start_date: date
    start_time: time | None = None
    end_date: date | None = None
    end_time: time | None = None
    category_id: int | None = None
    source_account_id: int | None = None
    destination_account_id: int | None = None


@dataclass(frozen=True)
class ScheduledTransaction:
    id: int
    user_id: int
    transaction_type: str
    amount: Decimal
    currency_code: str
    description: str
    frequency: str
    start_date: date
    start_time: time
    next_run_date: datetime | None
    is_active: bool
    end_date: date | None = None
    end_time: time | None = None
    category_id: int | None = None
    source_account_id: int | None = None
    destination_account_id: int | None = None
    category_name: str | None = None
    source_account_name: str | None = None
    destination_account_name: str | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    def as_data(self) -> ScheduledTransactionData:
        return ScheduledTransactionData(
            transaction_type=self.transaction_type,
            amount=self.amount,
            description=self.description,
            frequency=self.frequency,
            start_date=self.start_date,
            start_time=self.start_time,
            end_date=self.end_date,
            end_time=self.end_time,
            category_id=self.category_id,
            source_account_id=self.source_account_id,
            destination_account_id=self.destination_account_id,
        )


@dataclass(frozen=True)
class ScheduleRun:
    scheduled_id: int
    transaction_id: int | None = None
    next_run_date: datetime | None = None
    is_active: bool = True
    error: str | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None and self.transaction_id is not None


@dataclass(frozen=True)
class SweepReport:
    due: int = 0
    runs: list[ScheduleRun] = field(default_factory=list)

    @property
    def created(self) -> int:
        return sum(1 for run in self.runs if run.succeeded)

    @property
    def failed(self) -> int:
        return sum(1 for run in self.runs if run.error is not None)


def first_run_date(start_date: date, start_time: time | None, frequency: str) -> datetime:
    """First occurrence as a naive local datetime; for ``once`` it is the only one."""
    _validate_frequency(frequency)
    return datetime.combine(start_date, start_time or DEFAULT_START_TIME)


def next_run_date(current: datetime, frequency: str, anchor_day: int | None = None) -> datetime | None:
    """Occurrence after ``current``, or None when the schedule does not repeat.

    Monthly schedules land on ``anchor_day`` (the start day) clamped to the
    month's length, so a schedule started on the 31st fires on the last day
    of shorter months and returns to the 31st afterwards.
    """
    normalized = _validate_frequency(frequency)
    if normalized == "once":
        return None
    if normalized == "daily":
        return current + timedelta(days=DAILY_DAYS)
    if normalized == "weekly":
        return current + timedelta(days=WEEKLY_DAYS)
    next_day = _add_months(current.date(), 1, anchor_day or current.day)
    return datetime.combine(next_day, current.time())


def end_of_window(end_date: date | None, end_time: time | None) -> datetime | None:
    if end_date is None:
        return None
    return datetime.combine(end_date, end_time or time.max)


def _add_months(start_date: date, months: int, anchor_day: int) -> date:
    total_month = start_date.month - 1 + months
    year = start_date.year + total_month // 12
    month = total_month % 12 + 1
    last_day = monthrange(year, month)[1]
    day = min(anchor_day, last_day)
    return date(year, month, day)


def _validate_frequency(frequency: str | None) -> str:
    normalized = (frequency or "").strip().lower()
    if normalized not in FREQUENCIES:
        raise ValidationError("Frequency must be one of: once, daily, weekly, monthly.")
    return normalized


class ScheduledTransactionService:
    """CRUD for transaction templates and the sweep that materializes them.

    Templates never touch balances themselves. Only ``materialize_due`` does,
    through the transaction engine, one atomic scope per schedule.
    """

    first_run_date = staticmethod(first_run_date)
    next_run_date = staticmethod(next_run_date)

    def __init__(self, engine: Engine, transaction_engine: TransactionEngine) -> None:
        self.engine = engine
        self.transaction_engine = transaction_engine

    def create(
        self, user_id: int, data: ScheduledTransactionData, conn: Connection | None = None
    ) -> ScheduledTransaction:
        with transaction_scope(self.engine, conn) as scope:
            data, currency_code = self._validate(scope, user_id, data)
            first_run = first_run_date(data.start_date, data.start_time, data.frequency)
            scheduled_id = scope.execute(
                insert(scheduled_transactions)
                .values(
                    user_id=user_id,
                    currency_code=currency_code,
                    next_run_date=first_run,
                    is_active=True,
                    **_column_values(data),
                )
                .returning(scheduled_transactions.c.id)
            ).scalar_one()
            record = self._fetch(scope, user_id, scheduled_id)
        logger.info(
            "Created %s scheduled transaction %s for user %s, first run %s",
            record.frequency,
            record.id,
            user_id,
            record.next_run_date,
        )
        return record

    def update(
        self,
        user_id: int,
        scheduled_id: int,
        patch: Mapping[str, Any],
        conn: Connection | None = None,
    ) -> ScheduledTransaction:
        """Edit a template; changing frequency, start date or start time restarts it."""
        unknown = set(patch) - UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(
                f"Unknown scheduled transaction fields: {', '.join(sorted(unknown))}"
            )
        with transaction_scope(self.engine, conn) as scope:
            existing = self._fetch(scope, user_id, scheduled_id, for_update=True)
            merged = replace(existing.as_data(), **dict(patch))
            data, currency_code = self._validate(scope, user_id, merged)
            values = {
                "currency_code": currency_code,
                "updated_at": func.now(),
                **_column_values(data),
            }
            if SCHEDULE_FIELDS & set(patch):
                values["next_run_date"] = first_run_date(
                    data.start_date, data.start_time, data.frequency
                )
            scope.execute(
                update(scheduled_transactions)
                .where(
                    scheduled_transactions.c.id == scheduled_id,
                    scheduled_transactions.c.user_id == user_id,
                )
                .values(**values)
            )
            record = self._fetch(scope, user_id, scheduled_id)
        logger.info("Updated scheduled transaction %s for user %s", scheduled_id, user_id)
        return record

    def delete(self, user_id: int, scheduled_id: int, conn: Connection | None = None) -> None:
        with transaction_scope(self.engine, conn) as scope:
            result = scope.execute(
                delete(scheduled_transactions).where(
                    scheduled_transactions.c.id == scheduled_id,
                    scheduled_transactions.c.user_id == user_id,
                )
            )
            if result.rowcount == 0:
                raise ScheduledTransactionNotFound(scheduled_id)
        logger.info("Deleted scheduled transaction %s for user %s", scheduled_id, user_id)

    def get(self, user_id: int, scheduled_id: int, conn: Connection | None = None) -> ScheduledTransaction:
        with transaction_scope(self.engine, conn) as scope:
            return self._fetch(scope, user_id, scheduled_id)

    def list(
        self,
        user_id: int,
        is_active: bool | None = None,
        transaction_type: str | None = None,
        conn: Connection | None = None,
    ) -> list[ScheduledTransaction]:
        stmt = self._record_select().where(scheduled_transactions.c.user_id == user_id)
        if is_active is not None:
            stmt = stmt.where(scheduled_transactions.c.is_active == is_active)
        if transaction_type is not None:
            normalized = transaction_type.strip().lower()
            if normalized not in TRANSACTION_TYPES:
                raise ValidationError("Invalid transaction type.")
            stmt = stmt.where(scheduled_transactions.c.transaction_type == normalized)
        stmt = stmt.order_by(
            scheduled_transactions.c.next_run_date.asc(), scheduled_transactions.c.id.asc()
        )
        with transaction_scope(self.engine, conn) as scope:
            rows = scope.execute(stmt).mappings().all()
        return [_record_from_row(row) for row in rows]

    def toggle(
        self,
        user_id: int,
        scheduled_id: int,
        now: datetime | None = None,
        conn: Connection | None = None,
    ) -> ScheduledTransaction:
        """Pause an active template or reactivate an inactive one.

        A reactivated recurring template resumes at its first occurrence not
        earlier than ``now``; a one-off keeps its date and fires on the next
        sweep if that date has passed. Templates whose end window is over
        cannot be reactivated.
        """
        now = now or datetime.now()
        with transaction_scope(self.engine, conn) as scope:
            existing = self._fetch(scope, user_id, scheduled_id, for_update=True)
            values: dict[str, Any] = {"is_active": not existing.is_active, "updated_at": func.now()}
            if not existing.is_active:
                values["next_run_date"] = self._resume_date(existing, now)
            scope.execute(
                update(scheduled_transactions)
                .where(
                    scheduled_transactions.c.id == scheduled_id,
                    scheduled_transactions.c.user_id == user_id,
                )
                .values(**values)
            )
            record = self._fetch(scope, user_id, scheduled_id)
        logger.info(
            "Scheduled transaction %s is now %s",
            scheduled_id,
            "active" if record.is_active else "paused",
        )
        return record

    def materialize_due(self, now: datetime | None = None) -> SweepReport:
        """Fire every active template whose next run is due.

        Each template fires in its own atomic scope. A failing template is
        logged and left untouched so it is retried on the next sweep, and its
        siblings still fire.
        """
        now = now or datetime.now()
        with self.engine.begin() as conn:
            due_ids = list(
                conn.execute(
                    select(scheduled_transactions.c.id)
                    .where(
                        scheduled_transactions.c.is_active.is_(True),
                        scheduled_transactions.c.next_run_date <= now,
                    )
                    .order_by(
                        scheduled_transactions.c.next_run_date.asc(),
                        scheduled_transactions.c.id.asc(),
                    )
                ).scalars()
            )
        logger.info("Found %s scheduled transactions due at %s", len(due_ids), now)

        runs: list[ScheduleRun] = []
        for scheduled_id in due_ids:
            try:
                run = self._materialize_one(scheduled_id, now)
            except Exception as exc:
                logger.exception("Scheduled transaction %s failed to run", scheduled_id)
                run = ScheduleRun(scheduled_id=scheduled_id, error=str(exc))
            if run is not None:
                runs.append(run)
        report = SweepReport(due=len(due_ids), runs=runs)
        logger.info(
            "Sweep finished: %s created, %s failed, %s due",
            report.created,
            report.failed,
            report.due,
        )
        return report

    def _materialize_one(self, scheduled_id: int, now: datetime) -> ScheduleRun | None:
        with self.engine.begin() as conn:
            row = conn.execute(
                select(scheduled_transactions)
                .where(scheduled_transactions.c.id == scheduled_id)
                .with_for_update(skip_locked=True)
            ).mappings().first()
            # Another sweep may hold the row, or may already have fired it.
            if not row or not row["is_active"] or row["next_run_date"] is None:
                return None
            if row["next_run_date"] > now:
                return None

            record = self.transaction_engine.create(
                row["user_id"],
                TransactionData(
                    type=row["transaction_type"],
                    amount=row["amount"],
                    transaction_date=now.date(),
                    category_id=row["category_id"],
                    from_account_id=row["source_account_id"],
                    to_account_id=row["destination_account_id"],
                    description=row["description"],
                ),
                conn=conn,
            )

            following = next_run_date(
                row["next_run_date"], row["frequency"], row["start_date"].day
            )
            window_end = end_of_window(row["end_date"], row["end_time"])
            if following is not None and (window_end is None or following <= window_end):
                values = {"next_run_date": following, "updated_at": func.now()}
                is_active = True
            else:
                values = {"is_active": False, "updated_at": func.now()}
                is_active = False
            conn.execute(
                update(scheduled_transactions)
                .where(scheduled_transactions.c.id == scheduled_id)
                .values(**values)
            )
        logger.info(
            "Scheduled transaction %s created transaction %s; next run %s",
            scheduled_id,
            record.id,
            following if is_active else "none, deactivated",
        )
        return ScheduleRun(
            scheduled_id=scheduled_id,
            transaction_id=record.id,
            next_run_date=following if is_active else None,
            is_active=is_active,
        )

    def _validate(
        self, conn: Connection, user_id: int, data: ScheduledTransactionData
    ) -> tuple[ScheduledTransactionData, str]:
        frequency = _validate_frequency(data.frequency)
        description = (data.description or "").strip()
        if not description:
            raise ValidationError("Description is required.")
        if data.start_date is None:
            raise ValidationError("Start date is required.")
        start_time = data.start_time or DEFAULT_START_TIME

        if data.end_date is not None and data.end_date <= data.start_date:
            raise ValidationError("End date must be after the start date.")

        validated = self.transaction_engine.validate(
            conn,
            user_id,
            TransactionData(
                type=data.transaction_type,
                amount=data.amount,
                transaction_date=data.start_date,
                category_id=data.category_id,
                from_account_id=data.source_account_id,
                to_account_id=data.destination_account_id,
                description=description,
            ),
        )
        normalized = replace(
            data,
            transaction_type=validated.data.type,
            amount=validated.data.amount,
            description=description,
            frequency=frequency,
            start_time=start_time,
        )
        return normalized, validated.currency_code

    @staticmethod
    def _resume_date(existing: ScheduledTransaction, now: datetime) -> datetime:
        resume_at = existing.next_run_date or first_run_date(
            existing.start_date, existing.start_time, existing.frequency
        )
        if existing.frequency != "once":
            while resume_at < now:
                resume_at = next_run_date(resume_at, existing.frequency, existing.start_date.day)
        window_end = end_of_window(existing.end_date, existing.end_time)
        if window_end is not None and resume_at > window_end:
            raise ValidationError("The schedule's end date has passed; it cannot be reactivated.")
        return resume_at

    def _fetch(
        self,
        conn: Connection,
        user_id: int,
        scheduled_id: int,
        for_update: bool = False,
    ) -> ScheduledTransaction:
        if for_update:
            locked = conn.execute(
                select(scheduled_transactions.c.id)
                .where(
                    scheduled_transactions.c.id == scheduled_id,
                    scheduled_transactions.c.user_id == user_id,
                )
                .with_for_update()
            ).first()
            if not locked:
                raise ScheduledTransactionNotFound(scheduled_id)
        row = conn.execute(
            self._record_select().where(
                scheduled_transactions.c.id == scheduled_id,
                scheduled_transactions.c.user_id == user_id,
            )
        ).mappings().first()
        if not row:
            raise ScheduledTransactionNotFound(scheduled_id)
        return _record_from_row(row)

    @staticmethod
    def _record_select():
        return select(
            scheduled_transactions,
            categories.c.name.label("category_name"),
            source_account.c.name.label("source_account_name"),
            destination_account.c.name.label("destination_account_name"),
        ).select_from(
            scheduled_transactions.outerjoin(
                categories, scheduled_transactions.c.category_id == categories.c.id
            )
            .outerjoin(
                source_account, scheduled_transactions.c.source_account_id == source_account.c.id
            )
            .outerjoin(
                destination_account,
                scheduled_transactions.c.destination_account_id == destination_account.c.id,
            )
        )


def _column_values(data: ScheduledTransactionData) -> dict[str, Any]:
    return {
        "transaction_type": data.transaction_type,
        "amount": data.amount,
        "description": data.description,
        "category_id": data.category_id,
        "source_account_id": data.source_account_id,
        "destination_account_id": data.destination_account_id,
        "frequency": data.frequency,
        "start_date": data.start_date,
        "start_time": data.start_time,
        "end_date": data.end_date,
        "end_time": data.end_time,
    }


def _record_from_row(row) -> ScheduledTransaction:
    amount = row["amount"]
    return ScheduledTransaction(
        id=row["id"],
        user_id=row["user_id"],
        transaction_type=row["transaction_type"],
        amount=amount if isinstance(amount, Decimal) else Decimal(str(amount)),
        currency_code=row["currency_code"],
        description=row["description"],
        frequency=row["frequency"],
        start_date=row["start_date"],
        start_time=row["start_time"],
        next_run_date=row["next_run_date"],
        is_active=bool(row["is_active"]),
        end_date=row["end_date"],
        end_time=row["end_time"],
        category_id=row["category_id"],
        source_account_id=row["source_account_id"],
        destination_account_id=row["destination_account_id"],
        category_name=row["category_name"],
        source_account_name=row["source_account_name"],
        destination_account_name=row["destination_account_name"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )
