from __future__ import annotations

from decimal import Decimal


class LedgerError(Exception):
    """Base class for every failure the ledger reports to its callers."""


class ValidationError(LedgerError):
    """Raised for malformed or out-of-range input."""


class InvalidAmount(ValidationError):
    def __init__(self, amount: Decimal | None) -> None:
        self.amount = amount
        super().__init__("Amount must be greater than zero.")


class InvalidRate(ValidationError):
    def __init__(self, currency: str, rate: Decimal | None, reason: str | None = None) -> None:
        self.currency = currency
        self.rate = rate
        super().__init__(reason or "Exchange rate must be greater than zero.")


class UnsupportedCurrency(ValidationError):
    def __init__(self, currency: str) -> None:
        self.currency = currency
        super().__init__(f"Unsupported currency: {currency}")


class CannotDeleteAnchorRate(ValidationError):
    def __init__(self, currency: str) -> None:
        self.currency = currency
        super().__init__(f"The anchor currency rate ({currency}) cannot be deleted.")


class StructuralError(LedgerError):
    """Wrong account/category combination for a transaction type."""

    def __init__(self, transaction_type: str | None, reason: str) -> None:
        self.transaction_type = transaction_type
        self.reason = reason
        super().__init__(reason)


class CategoryTypeMismatch(StructuralError):
    def __init__(self, category_type: str, transaction_type: str) -> None:
        self.category_type = category_type
        super().__init__(
            transaction_type,
            f"Category of type '{category_type}' cannot be used for a {transaction_type} transaction.",
        )


class InvalidDebtTarget(StructuralError):
    def __init__(self, account_id: int) -> None:
        self.account_id = account_id
        super().__init__("debt_payment", "Debt payments must target a liability account.")


class NotFoundError(LedgerError):
    """Missing or not owned; both cases look the same to the caller."""

    entity = "Resource"

    def __init__(self, entity_id: int | str | None = None) -> None:
        self.entity_id = entity_id
        super().__init__(f"{self.entity} not found.")


class AccountNotFound(NotFoundError):
    entity = "Account"


class CategoryNotFound(NotFoundError):
    entity = "Category"


class TransactionNotFound(NotFoundError):
    entity = "Transaction"


class ScheduledTransactionNotFound(NotFoundError):
    entity = "Scheduled transaction"


class UserNotFound(NotFoundError):
    entity = "User"


class RateNotFound(NotFoundError):
    entity = "Exchange rate"

    def __init__(self, currency: str) -> None:
        self.currency = currency
        super().__init__(currency)
        self.args = (f"No exchange rate configured for {currency}.",)


class ConversionUnavailable(LedgerError):
    def __init__(self, source_currency: str, target_currency: str) -> None:
        self.source_currency = source_currency
        self.target_currency = target_currency
        super().__init__(
            f"Cannot convert from {source_currency} to {target_currency}. "
            "Check the configured exchange rates."
        )


class ConflictError(LedgerError):
    """Raised when a uniqueness constraint would be violated."""


class RateInUse(ConflictError):
    def __init__(self, currency: str) -> None:
        self.currency = currency
        super().__init__(
            f"The {currency} exchange rate cannot be deleted while accounts use that currency."
        )
