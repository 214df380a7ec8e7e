import unittest
from decimal import Decimal

from ledger.balance_ledger import AccountBalanceLedger, BalanceDelta, quantize_money
from ledger.db import create_db_engine, init_db
from ledger.errors import AccountNotFound, ConflictError, RateNotFound
from ledger.repositories import AccountRepository, UserSettingsRepository


class AccountBalanceLedgerTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_db_engine("sqlite://")
        init_db(self.engine)
        self.ledger = AccountBalanceLedger()
        self.accounts = AccountRepository()
        with self.engine.begin() as conn:
            settings = UserSettingsRepository()
            self.user_id = settings.create_user(conn, "owner@example.com")
            self.other_user_id = settings.create_user(conn, "other@example.com")
            self.checking = self.accounts.create(conn, self.user_id, "Checking", "USD", initial_balance=Decimal("500"))
            self.savings = self.accounts.create(conn, self.user_id, "Savings", "USD", initial_balance=Decimal("20"))

    def tearDown(self) -> None:
        self.engine.dispose()

    def balance(self, account_id: int, user_id: int | None = None) -> Decimal:
        with self.engine.begin() as conn:
            return self.accounts.get(conn, user_id or self.user_id, account_id).current_balance

    def test_apply_delta_adds_and_returns_new_balance(self) -> None:
        with self.engine.begin() as conn:
            new_balance = self.ledger.apply_delta(conn, self.user_id, self.checking.id, Decimal("-100.25"))

        self.assertEqual(new_balance, Decimal("399.75"))
        self.assertEqual(self.balance(self.checking.id), Decimal("399.75"))

    def test_apply_deltas_touches_every_account(self) -> None:
        with self.engine.begin() as conn:
            self.ledger.apply_deltas(
                conn,
                self.user_id,
                [BalanceDelta(self.checking.id, Decimal("-50")), BalanceDelta(self.savings.id, Decimal("50"))],
            )

        self.assertEqual(self.balance(self.checking.id), Decimal("450"))
        self.assertEqual(self.balance(self.savings.id), Decimal("70"))

    def test_reversed_delta_restores_balance(self) -> None:
        delta = BalanceDelta(self.savings.id, Decimal("12.34"))
        with self.engine.begin() as conn:
            self.ledger.apply_deltas(conn, self.user_id, [delta])
            self.ledger.apply_deltas(conn, self.user_id, [delta.reversed()])

        self.assertEqual(self.balance(self.savings.id), Decimal("20"))

    def test_write_balance_requires_owned_account(self) -> None:
        with self.assertRaises(AccountNotFound):
            with self.engine.begin() as conn:
                self.ledger.write_balance(conn, self.other_user_id, self.checking.id, Decimal("1"))

        self.assertEqual(self.balance(self.checking.id), Decimal("500"))

    def test_failure_rolls_back_earlier_deltas(self) -> None:
        with self.assertRaises(AccountNotFound):
            with self.engine.begin() as conn:
                self.ledger.apply_delta(conn, self.user_id, self.checking.id, Decimal("-10"))
                self.ledger.apply_delta(conn, self.user_id, 9999, Decimal("10"))

        self.assertEqual(self.balance(self.checking.id), Decimal("500"))

    def test_lock_accounts_filters_by_owner(self) -> None:
        with self.engine.begin() as conn:
            locked = self.ledger.lock_accounts(conn, self.other_user_id, [self.checking.id, None])

        self.assertEqual(locked, {})

    def test_quantize_money_rounds_half_up(self) -> None:
        self.assertEqual(quantize_money(Decimal("1.005")), Decimal("1.01"))
        self.assertEqual(quantize_money(Decimal("27.400000")), Decimal("27.40"))


class AccountRepositoryTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_db_engine("sqlite://")
        init_db(self.engine)
        self.accounts = AccountRepository()
        with self.engine.begin() as conn:
            self.user_id = UserSettingsRepository().create_user(conn, "debts@example.com")

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_liability_balance_is_stored_negative_with_debt_details(self) -> None:
        with self.engine.begin() as conn:
            loan = self.accounts.create(
                conn,
                self.user_id,
                "Car loan",
                "usd",
                account_category="liability",
                initial_balance=Decimal("8000"),
                interest_rate=Decimal("6.5"),
            )
            details = self.accounts.get_debt_details(conn, self.user_id, loan.id)

        self.assertEqual(loan.current_balance, Decimal("-8000"))
        self.assertTrue(loan.is_liability)
        self.assertEqual(details.original_amount, Decimal("8000"))
        self.assertEqual(details.interest_rate, Decimal("6.5"))

    def test_duplicate_account_name_conflicts(self) -> None:
        with self.engine.begin() as conn:
            self.accounts.create(conn, self.user_id, "Wallet", "USD")
        with self.assertRaises(ConflictError):
            with self.engine.begin() as conn:
                self.accounts.create(conn, self.user_id, "Wallet", "USD")

    def test_foreign_currency_account_requires_rate(self) -> None:
        with self.assertRaises(RateNotFound):
            with self.engine.begin() as conn:
                self.accounts.create(conn, self.user_id, "Euro wallet", "EUR")


if __name__ == "__main__":
    unittest.main()
