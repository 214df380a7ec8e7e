import unittest
from decimal import Decimal

from ledger.currency_conversion import (
    ConversionRequest,
    CurrencyConversionService,
    convert_amount,
)
from ledger.db import create_db_engine, init_db
from ledger.errors import (
    CannotDeleteAnchorRate,
    InvalidAmount,
    InvalidRate,
    RateInUse,
    RateNotFound,
    UnsupportedCurrency,
    ValidationError,
)
from ledger.repositories import AccountRepository, UserSettingsRepository
from ledger.transactions import TransactionData, TransactionEngine


class ConvertAmountTests(unittest.TestCase):
    def setUp(self) -> None:
        self.rates = {
            "USD": Decimal("1"),
            "EUR": Decimal("2"),
            "JPY": Decimal("0.5"),
        }

    def test_same_currency_returns_original_amount(self) -> None:
        result = convert_amount(Decimal("12.50"), "USD", "usd", self.rates)

        self.assertEqual(result.converted_amount, Decimal("12.50"))
        self.assertEqual(result.rate, Decimal("1"))
        self.assertFalse(result.is_converted)

    def test_same_currency_needs_no_rates(self) -> None:
        result = convert_amount(Decimal("3"), "CLP", "CLP", {})

        self.assertEqual(result.converted_amount, Decimal("3"))

    def test_conversion_goes_through_anchor(self) -> None:
        result = convert_amount(Decimal("10"), "EUR", "JPY", self.rates)

        self.assertEqual(result.converted_amount, Decimal("40"))
        self.assertEqual(result.rate, Decimal("4"))
        self.assertTrue(result.is_converted)

    def test_normalizes_currency_codes(self) -> None:
        result = convert_amount(Decimal("6"), " eur ", "jpy", self.rates)

        self.assertEqual(result.converted_amount, Decimal("24"))
        self.assertEqual(result.from_currency, "EUR")
        self.assertEqual(result.to_currency, "JPY")

    def test_rounds_to_six_decimals(self) -> None:
        result = convert_amount(Decimal("1"), "USD", "NIO", {"USD": Decimal("1"), "NIO": Decimal("0.0274")})

        self.assertEqual(result.converted_amount, Decimal("36.496350"))

    def test_missing_currency_raises(self) -> None:
        with self.assertRaises(RateNotFound) as ctx:
            convert_amount(Decimal("5"), "USD", "CAD", self.rates)

        self.assertEqual(ctx.exception.currency, "CAD")

    def test_rejects_malformed_currency(self) -> None:
        with self.assertRaises(ValidationError):
            convert_amount(Decimal("5"), "US", "EUR", self.rates)


class CurrencyConversionServiceTests(unittest.TestCase):
    def setUp(self) -> None:
        self.engine = create_db_engine("sqlite://")
        init_db(self.engine)
        with self.engine.begin() as conn:
            self.user_id = UserSettingsRepository().create_user(conn, "rates@example.com", anchor_currency="USD")
        self.service = CurrencyConversionService(self.engine)
        self.service.upsert_rate(self.user_id, "EUR", Decimal("1.1"))
        self.service.upsert_rate(self.user_id, "NIO", Decimal("0.0274"))

    def tearDown(self) -> None:
        self.engine.dispose()

    def test_conversion_identity(self) -> None:
        for currency in ("USD", "EUR", "NIO", "GBP"):
            result = self.service.convert(Decimal("123.45"), currency, currency, self.user_id)
            self.assertEqual(result.converted_amount, Decimal("123.45"))

    def test_anchor_rate_is_created_with_the_user(self) -> None:
        rates = {rate.currency_code: rate.rate_to_anchor for rate in self.service.get_user_rates(self.user_id)}

        self.assertEqual(rates["USD"], Decimal("1"))
        self.assertEqual(sorted(rates), ["EUR", "NIO", "USD"])

    def test_conversion_composes_through_anchor(self) -> None:
        amount = Decimal("100")
        direct = self.service.convert(amount, "EUR", "NIO", self.user_id)
        to_anchor = self.service.convert(amount, "EUR", "USD", self.user_id)
        via_anchor = self.service.convert(to_anchor.converted_amount, "USD", "NIO", self.user_id)

        self.assertAlmostEqual(direct.converted_amount, via_anchor.converted_amount, delta=Decimal("0.000001"))

    def test_nio_to_usd(self) -> None:
        result = self.service.convert(Decimal("1000"), "NIO", "USD", self.user_id)

        self.assertEqual(result.converted_amount, Decimal("27.4"))

    def test_missing_rate_raises(self) -> None:
        with self.assertRaises(RateNotFound):
            self.service.convert(Decimal("5"), "USD", "JPY", self.user_id)

    def test_negative_amount_rejected(self) -> None:
        with self.assertRaises(InvalidAmount):
            self.service.convert(Decimal("-1"), "USD", "EUR", self.user_id)

    def test_upsert_updates_existing_rate(self) -> None:
        self.service.upsert_rate(self.user_id, "eur", Decimal("1.25"))

        result = self.service.convert(Decimal("4"), "EUR", "USD", self.user_id)
        self.assertEqual(result.converted_amount, Decimal("5"))

    def test_upsert_rejects_non_positive_rate(self) -> None:
        with self.assertRaises(InvalidRate):
            self.service.upsert_rate(self.user_id, "EUR", Decimal("0"))

    def test_upsert_rejects_unregistered_currency(self) -> None:
        with self.assertRaises(UnsupportedCurrency):
            self.service.upsert_rate(self.user_id, "XYZ", Decimal("2"))

    def test_anchor_rate_must_stay_one(self) -> None:
        with self.assertRaises(InvalidRate):
            self.service.upsert_rate(self.user_id, "USD", Decimal("2"))

    def test_delete_rate(self) -> None:
        self.service.delete_rate(self.user_id, "EUR")

        with self.assertRaises(RateNotFound):
            self.service.convert(Decimal("1"), "EUR", "USD", self.user_id)
        with self.assertRaises(RateNotFound):
            self.service.delete_rate(self.user_id, "EUR")

    def test_rate_used_by_an_account_cannot_be_deleted(self) -> None:
        with self.engine.begin() as conn:
            create = AccountRepository().create
            cordobas = create(conn, self.user_id, "Cordobas", "NIO", initial_balance=Decimal("1000"))
            checking = create(conn, self.user_id, "Checking", "USD")
        transactions = TransactionEngine(self.engine, self.service)
        record = transactions.create(
            self.user_id,
            TransactionData(
                type="transfer",
                amount=Decimal("500"),
                from_account_id=cordobas.id,
                to_account_id=checking.id,
            ),
        )

        with self.assertRaises(RateInUse) as ctx:
            self.service.delete_rate(self.user_id, "nio")

        self.assertEqual(ctx.exception.currency, "NIO")
        rates = {rate.currency_code for rate in self.service.get_user_rates(self.user_id)}
        self.assertIn("NIO", rates)
        transactions.delete(self.user_id, record.id)
        with self.engine.begin() as conn:
            accounts = AccountRepository()
            self.assertEqual(accounts.get(conn, self.user_id, cordobas.id).current_balance, Decimal("1000"))
            self.assertEqual(accounts.get(conn, self.user_id, checking.id).current_balance, Decimal("0"))

    def test_anchor_rate_cannot_be_deleted(self) -> None:
        with self.assertRaises(CannotDeleteAnchorRate):
            self.service.delete_rate(self.user_id, "USD")

    def test_convert_many_reports_failures_per_item(self) -> None:
        results = self.service.convert_many(
            [
                ConversionRequest(Decimal("10"), "EUR", "USD", self.user_id),
                ConversionRequest(Decimal("10"), "JPY", "USD", self.user_id),
            ]
        )

        self.assertTrue(results[0].success)
        self.assertEqual(results[0].converted_amount, Decimal("11"))
        self.assertFalse(results[1].success)
        self.assertEqual(results[1].converted_amount, Decimal("10"))

    def test_set_primary_currency_requires_rate(self) -> None:
        self.assertEqual(self.service.set_primary_currency(self.user_id, "eur"), "EUR")

        with self.assertRaises(RateNotFound):
            self.service.set_primary_currency(self.user_id, "JPY")

    def test_set_anchor_currency_rebases_rates(self) -> None:
        before = self.service.convert(Decimal("100"), "EUR", "NIO", self.user_id)

        rates = {rate.currency_code: rate.rate_to_anchor for rate in self.service.set_anchor_currency(self.user_id, "EUR")}

        self.assertEqual(rates["EUR"], Decimal("1"))
        self.assertAlmostEqual(rates["USD"], Decimal("1") / Decimal("1.1"), delta=Decimal("0.00000001"))
        after = self.service.convert(Decimal("100"), "EUR", "NIO", self.user_id)
        self.assertAlmostEqual(before.converted_amount, after.converted_amount, delta=Decimal("0.01"))
        with self.assertRaises(CannotDeleteAnchorRate):
            self.service.delete_rate(self.user_id, "EUR")


if __name__ == "__main__":
    unittest.main()
