from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Iterable, Mapping

from sqlalchemy import delete, func, select, update
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.engine import Connection, Engine

from ledger.db import accounts, exchange_rates, transaction_scope
from ledger.errors import (
    CannotDeleteAnchorRate,
    InvalidAmount,
    InvalidRate,
    RateInUse,
    RateNotFound,
    UnsupportedCurrency,
    ValidationError,
)
from ledger.repositories import SupportedCurrencyRegistry, UserSettingsRepository

logger = logging.getLogger(__name__)

ONE = Decimal("1")
CONVERSION_QUANT = Decimal("0.000001")
RATE_QUANT = Decimal("0.00000001")


@dataclass(frozen=True)
class ConversionResult:
    original_amount: Decimal
    converted_amount: Decimal
    from_currency: str
    to_currency: str
    rate: Decimal
    is_converted: bool
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None


@dataclass(frozen=True)
class ConversionRequest:
    amount: Decimal
    from_currency: str
    to_currency: str
    user_id: int


@dataclass(frozen=True)
class ExchangeRate:
    currency_code: str
    rate_to_anchor: Decimal
    updated_at: datetime | None = None


def convert_amount(
    amount: Decimal | int | float | str,
    source_currency: str,
    target_currency: str,
    rates: Mapping[str, Decimal],
) -> ConversionResult:
    """Convert through the anchor currency.

    Rates are expressed as anchor-currency units per 1 unit of the currency,
    so ``amount * rate[source]`` is the anchor value and dividing by
    ``rate[target]`` lands in the target currency.
    """
    normalized_source = normalize_currency(source_currency)
    normalized_target = normalize_currency(target_currency)
    coerced_amount = _coerce_amount(amount)

    if normalized_source == normalized_target:
        return ConversionResult(
            original_amount=coerced_amount,
            converted_amount=coerced_amount,
            from_currency=normalized_source,
            to_currency=normalized_target,
            rate=ONE,
            is_converted=False,
        )

    source_rate = rates.get(normalized_source)
    if source_rate is None:
        raise RateNotFound(normalized_source)
    target_rate = rates.get(normalized_target)
    if target_rate is None:
        raise RateNotFound(normalized_target)

    amount_in_anchor = coerced_amount * _coerce_amount(source_rate)
    converted = amount_in_anchor / _coerce_amount(target_rate)
    direct_rate = _coerce_amount(source_rate) / _coerce_amount(target_rate)
    return ConversionResult(
        original_amount=coerced_amount,
        converted_amount=converted.quantize(CONVERSION_QUANT, rounding=ROUND_HALF_UP),
        from_currency=normalized_source,
        to_currency=normalized_target,
        rate=direct_rate.quantize(CONVERSION_QUANT, rounding=ROUND_HALF_UP),
        is_converted=True,
    )


class CurrencyConversionService:
    """Per-user exchange rates and conversions through the user's anchor currency.

    Every public method accepts an optional ``conn``. When given, the work joins
    the caller's atomic scope; otherwise a scope of its own is opened.
    """

    def __init__(
        self,
        engine: Engine,
        currency_registry: SupportedCurrencyRegistry | None = None,
        settings_repository: UserSettingsRepository | None = None,
    ) -> None:
        self.engine = engine
        self.currency_registry = currency_registry or SupportedCurrencyRegistry()
        self.settings_repository = settings_repository or UserSettingsRepository()

    def _scope(self, conn: Connection | None):
        return transaction_scope(self.engine, conn)

    def convert(
        self,
        amount: Decimal | int | float | str,
        from_currency: str,
        to_currency: str,
        user_id: int,
        conn: Connection | None = None,
    ) -> ConversionResult:
        coerced_amount = _coerce_amount(amount)
        if coerced_amount < 0:
            raise InvalidAmount(coerced_amount)
        source = normalize_currency(from_currency)
        target = normalize_currency(to_currency)
        if source == target:
            return convert_amount(coerced_amount, source, target, {})

        with self._scope(conn) as scope:
            rates = self._fetch_rates(scope, user_id, [source, target])
        result = convert_amount(coerced_amount, source, target, rates)
        logger.debug(
            "Converted %s %s to %s %s at %s for user %s",
            result.original_amount,
            source,
            result.converted_amount,
            target,
            result.rate,
            user_id,
        )
        return result

    def convert_many(
        self,
        requests: Iterable[ConversionRequest],
        conn: Connection | None = None,
    ) -> list[ConversionResult]:
        results: list[ConversionResult] = []
        with self._scope(conn) as scope:
            for request in requests:
                try:
                    results.append(
                        self.convert(
                            request.amount,
                            request.from_currency,
                            request.to_currency,
                            request.user_id,
                            conn=scope,
                        )
                    )
                except (RateNotFound, ValidationError) as exc:
                    logger.warning("Conversion of %s %s failed: %s", request.amount, request.from_currency, exc)
                    amount = _coerce_amount(request.amount)
                    results.append(
                        ConversionResult(
                            original_amount=amount,
                            converted_amount=amount,
                            from_currency=request.from_currency,
                            to_currency=request.to_currency,
                            rate=ONE,
                            is_converted=False,
                            error=str(exc),
                        )
                    )
        return results

    def get_user_rates(self, user_id: int, conn: Connection | None = None) -> list[ExchangeRate]:
        with self._scope(conn) as scope:
            rows = scope.execute(
                select(
                    exchange_rates.c.currency_code,
                    exchange_rates.c.rate_to_anchor,
                    exchange_rates.c.updated_at,
                )
                .where(exchange_rates.c.user_id == user_id)
                .order_by(exchange_rates.c.currency_code.asc())
            ).mappings().all()
        return [
            ExchangeRate(
                currency_code=row["currency_code"],
                rate_to_anchor=_coerce_amount(row["rate_to_anchor"]),
                updated_at=row["updated_at"],
            )
            for row in rows
        ]

    def upsert_rate(
        self,
        user_id: int,
        currency: str,
        rate: Decimal | int | float | str,
        conn: Connection | None = None,
    ) -> ExchangeRate:
        normalized = normalize_currency(currency)
        coerced_rate = _coerce_amount(rate)
        if coerced_rate <= 0:
            raise InvalidRate(normalized, coerced_rate)

        with self._scope(conn) as scope:
            if not self.currency_registry.is_supported(scope, normalized):
                raise UnsupportedCurrency(normalized)
            settings = self.settings_repository.get(scope, user_id, for_update=True)
            if normalized == settings.anchor_currency and coerced_rate != ONE:
                raise InvalidRate(
                    normalized,
                    coerced_rate,
                    reason=f"The anchor currency ({normalized}) always has a rate of 1.",
                )
            insert_factory = pg_insert if scope.dialect.name == "postgresql" else sqlite_insert
            stmt = insert_factory(exchange_rates).values(
                user_id=user_id,
                currency_code=normalized,
                rate_to_anchor=coerced_rate,
            )
            stmt = stmt.on_conflict_do_update(
                index_elements=["user_id", "currency_code"],
                set_={"rate_to_anchor": coerced_rate, "updated_at": func.now()},
            )
            scope.execute(stmt)
        logger.info("Set %s rate to %s for user %s", normalized, coerced_rate, user_id)
        return ExchangeRate(currency_code=normalized, rate_to_anchor=coerced_rate)

    def delete_rate(self, user_id: int, currency: str, conn: Connection | None = None) -> None:
        normalized = normalize_currency(currency)
        with self._scope(conn) as scope:
            settings = self.settings_repository.get(scope, user_id, for_update=True)
            if normalized == settings.anchor_currency:
                raise CannotDeleteAnchorRate(normalized)
            in_use = scope.execute(
                select(accounts.c.id)
                .where(accounts.c.user_id == user_id, accounts.c.currency == normalized)
                .limit(1)
            ).first()
            if in_use is not None:
                raise RateInUse(normalized)
            result = scope.execute(
                delete(exchange_rates).where(
                    exchange_rates.c.user_id == user_id,
                    exchange_rates.c.currency_code == normalized,
                )
            )
            if result.rowcount == 0:
                raise RateNotFound(normalized)
        logger.info("Deleted %s rate for user %s", normalized, user_id)

    def set_primary_currency(self, user_id: int, currency: str, conn: Connection | None = None) -> str:
        normalized = normalize_currency(currency)
        with self._scope(conn) as scope:
            if not self.currency_registry.is_supported(scope, normalized):
                raise UnsupportedCurrency(normalized)
            settings = self.settings_repository.get(scope, user_id, for_update=True)
            if settings.primary_currency == normalized:
                return normalized
            self._fetch_rates(scope, user_id, [normalized])
            self.settings_repository.update_currencies(scope, user_id, primary_currency=normalized)
        logger.info("Primary currency of user %s is now %s", user_id, normalized)
        return normalized

    def set_anchor_currency(
        self, user_id: int, currency: str, conn: Connection | None = None
    ) -> list[ExchangeRate]:
        """Move the anchor to another currency, rebasing every stored rate.

        Each rate is divided by the new anchor's current rate, so every
        pairwise conversion stays the same and the new anchor ends at exactly 1.
        """
        normalized = normalize_currency(currency)
        with self._scope(conn) as scope:
            if not self.currency_registry.is_supported(scope, normalized):
                raise UnsupportedCurrency(normalized)
            settings = self.settings_repository.get(scope, user_id, for_update=True)
            if settings.anchor_currency != normalized:
                new_anchor_rate = self._fetch_rates(scope, user_id, [normalized])[normalized]
                for stored in self.get_user_rates(user_id, conn=scope):
                    if stored.currency_code == normalized:
                        rebased = ONE
                    else:
                        rebased = (stored.rate_to_anchor / new_anchor_rate).quantize(
                            RATE_QUANT, rounding=ROUND_HALF_UP
                        )
                    scope.execute(
                        update(exchange_rates)
                        .where(
                            exchange_rates.c.user_id == user_id,
                            exchange_rates.c.currency_code == stored.currency_code,
                        )
                        .values(rate_to_anchor=rebased, updated_at=func.now())
                    )
                self.settings_repository.update_currencies(scope, user_id, anchor_currency=normalized)
                logger.info(
                    "Anchor currency of user %s moved from %s to %s",
                    user_id,
                    settings.anchor_currency,
                    normalized,
                )
            return self.get_user_rates(user_id, conn=scope)

    def _fetch_rates(self, conn: Connection, user_id: int, currencies: list[str]) -> dict[str, Decimal]:
        rows = conn.execute(
            select(exchange_rates.c.currency_code, exchange_rates.c.rate_to_anchor).where(
                exchange_rates.c.user_id == user_id,
                exchange_rates.c.currency_code.in_(currencies),
            )
        ).all()
        rates = {code: _coerce_amount(rate) for code, rate in rows}
        for code in currencies:
            if code not in rates:
                raise RateNotFound(code)
        return rates


def normalize_currency(value: str) -> str:
    normalized = (value or "").strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValidationError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _coerce_amount(amount: Decimal | int | float | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    return Decimal(str(amount))
