import unittest
from datetime import date, datetime, time
from decimal import Decimal

from sqlalchemy import delete, func, select

from ledger.currency_conversion import CurrencyConversionService
from ledger.db import create_db_engine, exchange_rates, init_db, transactions
from ledger.errors import (
    AccountNotFound,
    ScheduledTransactionNotFound,
    StructuralError,
    ValidationError,
)
from ledger.repositories import AccountRepository, UserSettingsRepository
from ledger.scheduled_transactions import (
    ScheduledTransactionData,
    ScheduledTransactionService,
    end_of_window,
    first_run_date,
    next_run_date,
)
from ledger.transactions import TransactionEngine

NOW = datetime(2026, 10, 19, 12, 0)


class RunDateTests(unittest.TestCase):
    def test_first_run_combines_date_and_time(self) -> None:
        self.assertEqual(
            first_run_date(date(2026, 11, 1), time(8, 30), "once"),
            datetime(2026, 11, 1, 8, 30),
        )

    def test_first_run_defaults_to_nine_am(self) -> None:
        self.assertEqual(first_run_date(date(2026, 11, 1), None, "daily"), datetime(2026, 11, 1, 9, 0))

    def test_advances_by_frequency(self) -> None:
        current = datetime(2026, 10, 19, 9, 0)

        self.assertEqual(next_run_date(current, "daily"), datetime(2026, 10, 20, 9, 0))
        self.assertEqual(next_run_date(current, "weekly"), datetime(2026, 10, 26, 9, 0))
        self.assertEqual(next_run_date(current, "monthly"), datetime(2026, 11, 19, 9, 0))
        self.assertIsNone(next_run_date(current, "once"))

    def test_monthly_clamps_to_month_end_and_returns_to_anchor_day(self) -> None:
        february = next_run_date(datetime(2027, 1, 31, 9, 0), "monthly", 31)
        march = next_run_date(february, "monthly", 31)

        self.assertEqual(february, datetime(2027, 2, 28, 9, 0))
        self.assertEqual(march, datetime(2027, 3, 31, 9, 0))

    def test_monthly_crosses_year_boundary(self) -> None:
        self.assertEqual(
            next_run_date(datetime(2026, 12, 15, 9, 0), "monthly", 15),
            datetime(2027, 1, 15, 9, 0),
        )

    def test_unknown_frequency(self) -> None:
        with self.assertRaises(ValidationError):
            next_run_date(NOW, "yearly")

    def test_end_of_window_defaults_to_end_of_day(self) -> None:
        self.assertIsNone(end_of_window(None, None))
        self.assertEqual(end_of_window(date(2026, 10, 20), None), datetime.combine(date(2026, 10, 20), time.max))
        self.assertEqual(end_of_window(date(2026, 10, 20), time(10, 0)), datetime(2026, 10, 20, 10, 0))


class ScheduledTransactionServiceTestCase(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_db_engine("sqlite://")
        init_db(self.engine)
        self.conversion = CurrencyConversionService(self.engine)
        self.transaction_engine = TransactionEngine(self.engine, self.conversion)
        self.service = ScheduledTransactionService(self.engine, self.transaction_engine)
        self.account_repository = AccountRepository()
        with self.engine.begin() as conn:
            settings = UserSettingsRepository()
            self.user_id = settings.create_user(conn, "owner@example.com")
            self.other_user_id = settings.create_user(conn, "other@example.com")
        self.conversion.upsert_rate(self.user_id, "EUR", Decimal("1.1"))
        with self.engine.begin() as conn:
            create = self.account_repository.create
            self.checking = create(conn, self.user_id, "Checking", "USD", initial_balance=Decimal("1000"))
            self.savings = create(conn, self.user_id, "Savings", "USD")
            self.euros = create(conn, self.user_id, "Euros", "EUR", initial_balance=Decimal("100"))

    def tearDown(self) -> None:
        self.engine.dispose()

    def balance(self, account_id: int) -> Decimal:
        with self.engine.begin() as conn:
            return self.account_repository.get(conn, self.user_id, account_id).current_balance

    def remove_rate_row(self, currency: str) -> None:
        with self.engine.begin() as conn:
            conn.execute(
                delete(exchange_rates).where(
                    exchange_rates.c.user_id == self.user_id,
                    exchange_rates.c.currency_code == currency,
                )
            )

    def transaction_count(self) -> int:
        with self.engine.begin() as conn:
            return conn.execute(select(func.count()).select_from(transactions)).scalar_one()

    def rent(self, **overrides) -> ScheduledTransactionData:
        values = {
            "transaction_type": "expense",
            "amount": Decimal("250"),
            "description": "Rent",
            "frequency": "monthly",
            "start_date": date(2026, 9, 19),
            "start_time": time(23, 0),
            "source_account_id": self.checking.id,
        }
        values.update(overrides)
        return ScheduledTransactionData(**values)


class ScheduledTransactionCrudTests(ScheduledTransactionServiceTestCase):
    def test_create_sets_first_run_and_currency(self) -> None:
        record = self.service.create(self.user_id, self.rent(source_account_id=self.euros.id))

        self.assertTrue(record.is_active)
        self.assertEqual(record.next_run_date, datetime(2026, 9, 19, 23, 0))
        self.assertEqual(record.currency_code, "EUR")
        self.assertEqual(record.source_account_name, "Euros")
        self.assertEqual(self.balance(self.euros.id), Decimal("100"))

    def test_create_validates_like_transactions(self) -> None:
        with self.assertRaises(StructuralError):
            self.service.create(self.user_id, self.rent(destination_account_id=self.savings.id))
        with self.assertRaises(ValidationError):
            self.service.create(self.user_id, self.rent(frequency="hourly"))
        with self.assertRaises(ValidationError):
            self.service.create(self.user_id, self.rent(description="  "))
        with self.assertRaises(ValidationError):
            self.service.create(self.user_id, self.rent(end_date=date(2026, 9, 1)))
        with self.assertRaises(AccountNotFound):
            self.service.create(self.other_user_id, self.rent())

    def test_update_recomputes_next_run_when_schedule_changes(self) -> None:
        record = self.service.create(self.user_id, self.rent())

        described = self.service.update(self.user_id, record.id, {"description": "Flat rent"})
        self.assertEqual(described.next_run_date, record.next_run_date)
        self.assertEqual(described.description, "Flat rent")

        moved = self.service.update(self.user_id, record.id, {"start_date": date(2026, 11, 1), "frequency": "weekly"})
        self.assertEqual(moved.next_run_date, datetime(2026, 11, 1, 23, 0))
        self.assertEqual(moved.frequency, "weekly")

    def test_end_date_must_follow_start_date(self) -> None:
        with self.assertRaises(ValidationError):
            self.service.create(self.user_id, self.rent(end_date=date(2026, 9, 19)))
        with self.assertRaises(ValidationError):
            self.service.create(
                self.user_id,
                self.rent(frequency="once", end_date=date(2026, 9, 19), end_time=time(23, 30)),
            )

        record = self.service.create(self.user_id, self.rent(end_date=date(2026, 9, 20)))
        with self.assertRaises(ValidationError):
            self.service.update(self.user_id, record.id, {"end_date": date(2026, 9, 19)})
        self.assertEqual(self.service.get(self.user_id, record.id).end_date, date(2026, 9, 20))

    def test_update_rejects_unknown_fields(self) -> None:
        record = self.service.create(self.user_id, self.rent())

        with self.assertRaises(ValidationError):
            self.service.update(self.user_id, record.id, {"is_active": False})

    def test_list_get_delete_are_owner_scoped(self) -> None:
        record = self.service.create(self.user_id, self.rent())
        self.service.create(
            self.user_id,
            self.rent(transaction_type="income", source_account_id=None, destination_account_id=self.savings.id),
        )

        self.assertEqual(len(self.service.list(self.user_id)), 2)
        self.assertEqual(len(self.service.list(self.user_id, transaction_type="income")), 1)
        self.assertEqual(self.service.list(self.other_user_id), [])
        with self.assertRaises(ScheduledTransactionNotFound):
            self.service.get(self.other_user_id, record.id)
        with self.assertRaises(ScheduledTransactionNotFound):
            self.service.delete(self.other_user_id, record.id)

        self.service.delete(self.user_id, record.id)
        with self.assertRaises(ScheduledTransactionNotFound):
            self.service.get(self.user_id, record.id)

    def test_toggle_pauses_and_resumes_at_next_future_occurrence(self) -> None:
        record = self.service.create(self.user_id, self.rent(frequency="daily", start_date=date(2026, 10, 1)))

        paused = self.service.toggle(self.user_id, record.id, now=NOW)
        self.assertFalse(paused.is_active)
        self.assertEqual(len(self.service.list(self.user_id, is_active=True)), 0)

        resumed = self.service.toggle(self.user_id, record.id, now=NOW)
        self.assertTrue(resumed.is_active)
        self.assertEqual(resumed.next_run_date, datetime(2026, 10, 19, 23, 0))

    def test_toggle_refuses_reactivation_after_end_window(self) -> None:
        record = self.service.create(
            self.user_id,
            self.rent(frequency="daily", start_date=date(2026, 10, 1), end_date=date(2026, 10, 5)),
        )
        self.service.toggle(self.user_id, record.id, now=NOW)

        with self.assertRaises(ValidationError):
            self.service.toggle(self.user_id, record.id, now=NOW)
        self.assertFalse(self.service.get(self.user_id, record.id).is_active)


class MaterializeDueTests(ScheduledTransactionServiceTestCase):
    def test_monthly_schedule_fires_once_per_due_occurrence(self) -> None:
        record = self.service.create(self.user_id, self.rent())

        report = self.service.materialize_due(NOW)

        self.assertEqual(report.created, 1)
        self.assertEqual(self.transaction_count(), 1)
        self.assertEqual(self.balance(self.checking.id), Decimal("750"))
        refreshed = self.service.get(self.user_id, record.id)
        self.assertEqual(refreshed.next_run_date, datetime(2026, 10, 19, 23, 0))
        self.assertTrue(refreshed.is_active)

        second = self.service.materialize_due(NOW)

        self.assertEqual(second.due, 0)
        self.assertEqual(self.transaction_count(), 1)

    def test_materialized_transaction_uses_sweep_date(self) -> None:
        self.service.create(self.user_id, self.rent())

        report = self.service.materialize_due(NOW)

        created = self.transaction_engine.get(self.user_id, report.runs[0].transaction_id)
        self.assertEqual(created.transaction_date, NOW.date())
        self.assertEqual(created.description, "Rent")
        self.assertEqual(created.type, "expense")

    def test_once_schedule_fires_once_and_deactivates(self) -> None:
        record = self.service.create(self.user_id, self.rent(frequency="once"))

        self.service.materialize_due(NOW)
        refreshed = self.service.get(self.user_id, record.id)
        self.assertFalse(refreshed.is_active)

        later = self.service.materialize_due(datetime(2027, 1, 1))
        self.assertEqual(later.due, 0)
        self.assertEqual(self.transaction_count(), 1)

    def test_schedule_deactivates_when_next_run_leaves_end_window(self) -> None:
        record = self.service.create(
            self.user_id,
            self.rent(
                frequency="daily",
                start_date=date(2026, 10, 17),
                start_time=time(9, 0),
                end_date=date(2026, 10, 18),
            ),
        )

        self.service.materialize_due(datetime(2026, 10, 17, 10, 0))
        self.assertTrue(self.service.get(self.user_id, record.id).is_active)

        self.service.materialize_due(datetime(2026, 10, 18, 10, 0))
        refreshed = self.service.get(self.user_id, record.id)
        self.assertFalse(refreshed.is_active)
        self.assertEqual(self.transaction_count(), 2)

    def test_missed_occurrences_catch_up_one_per_sweep(self) -> None:
        record = self.service.create(
            self.user_id,
            self.rent(frequency="daily", start_date=date(2026, 10, 16), start_time=time(9, 0)),
        )

        self.service.materialize_due(NOW)

        self.assertEqual(self.transaction_count(), 1)
        self.assertEqual(
            self.service.get(self.user_id, record.id).next_run_date,
            datetime(2026, 10, 17, 9, 0),
        )

    def test_failing_schedule_does_not_block_siblings(self) -> None:
        broken = self.service.create(
            self.user_id,
            self.rent(
                transaction_type="transfer",
                source_account_id=self.euros.id,
                destination_account_id=self.savings.id,
                start_date=date(2026, 9, 1),
            ),
        )
        healthy = self.service.create(self.user_id, self.rent())
        self.remove_rate_row("EUR")

        report = self.service.materialize_due(NOW)

        self.assertEqual(report.due, 2)
        self.assertEqual(report.created, 1)
        self.assertEqual(report.failed, 1)
        self.assertEqual(self.balance(self.euros.id), Decimal("100"))
        self.assertEqual(self.balance(self.checking.id), Decimal("750"))
        broken_after = self.service.get(self.user_id, broken.id)
        self.assertTrue(broken_after.is_active)
        self.assertEqual(broken_after.next_run_date, broken.next_run_date)
        self.assertEqual(
            self.service.get(self.user_id, healthy.id).next_run_date,
            datetime(2026, 10, 19, 23, 0),
        )

    def test_paused_schedule_is_not_fired(self) -> None:
        record = self.service.create(self.user_id, self.rent())
        self.service.toggle(self.user_id, record.id, now=NOW)

        report = self.service.materialize_due(NOW)

        self.assertEqual(report.due, 0)
        self.assertEqual(self.transaction_count(), 0)


if __name__ == "__main__":
    unittest.main()
