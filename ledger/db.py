from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import (
    Boolean,
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    Time,
    UniqueConstraint,
    create_engine,
    func,
    insert,
    select,
)
from sqlalchemy.engine import Connection, Engine
from sqlalchemy.pool import StaticPool

SUPPORTED_CURRENCIES = [
    ("USD", "US Dollar", "$"),
    ("EUR", "Euro", "€"),
    ("NIO", "Nicaraguan Córdoba", "C$"),
    ("JPY", "Japanese Yen", "¥"),
    ("GBP", "Pound Sterling", "£"),
    ("MXN", "Mexican Peso", "$"),
    ("CAD", "Canadian Dollar", "C$"),
    ("AUD", "Australian Dollar", "A$"),
    ("CHF", "Swiss Franc", "CHF"),
    ("CNY", "Chinese Yuan", "¥"),
    ("BRL", "Brazilian Real", "R$"),
    ("ARS", "Argentine Peso", "$"),
    ("CLP", "Chilean Peso", "$"),
    ("COP", "Colombian Peso", "$"),
    ("PEN", "Peruvian Sol", "S/"),
]

metadata = MetaData()

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

user_settings = Table(
    "user_settings",
    metadata,
    Column("user_id", Integer, ForeignKey("users.id"), primary_key=True),
    Column("primary_currency", String(3), nullable=False),
    Column("anchor_currency", String(3), nullable=False),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

supported_currencies = Table(
    "supported_currencies",
    metadata,
    Column("code", String(3), primary_key=True),
    Column("name", String(50), nullable=False),
    Column("symbol", String(5), nullable=False),
)

categories = Table(
    "categories",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "name", "type", name="uq_categories_user_name_type"),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("account_category", String(20), nullable=False, server_default="asset"),
    Column("currency", String(3), nullable=False),
    Column("initial_balance", Numeric(18, 2), nullable=False, server_default="0"),
    Column("current_balance", Numeric(18, 2), nullable=False, server_default="0"),
    Column("account_type_id", Integer),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "name", name="uq_accounts_user_name"),
)

debt_details = Table(
    "debt_details",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", Integer, ForeignKey("accounts.id", ondelete="CASCADE"), nullable=False, unique=True),
    Column("interest_rate", Numeric(5, 2), nullable=False, server_default="0"),
    Column("due_date", Date),
    Column("original_amount", Numeric(18, 2), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

exchange_rates = Table(
    "exchange_rates",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("currency_code", String(3), ForeignKey("supported_currencies.code"), nullable=False),
    Column("rate_to_anchor", Numeric(18, 8), nullable=False),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
    UniqueConstraint("user_id", "currency_code", name="uq_exchange_rates_user_currency"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("type", String(20), nullable=False),
    Column("amount", Numeric(18, 2), nullable=False),
    Column("currency_code", String(3), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("from_account_id", Integer, ForeignKey("accounts.id")),
    Column("to_account_id", Integer, ForeignKey("accounts.id")),
    Column("transaction_date", Date, nullable=False),
    Column("description", String(500)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)

scheduled_transactions = Table(
    "scheduled_transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("transaction_type", String(20), nullable=False),
    Column("amount", Numeric(18, 2), nullable=False),
    Column("currency_code", String(3), nullable=False),
    Column("description", String(500), nullable=False),
    Column("category_id", Integer, ForeignKey("categories.id")),
    Column("source_account_id", Integer, ForeignKey("accounts.id", ondelete="CASCADE")),
    Column("destination_account_id", Integer, ForeignKey("accounts.id", ondelete="CASCADE")),
    Column("frequency", String(20), nullable=False),
    Column("start_date", Date, nullable=False),
    Column("start_time", Time, nullable=False),
    Column("end_date", Date),
    Column("end_time", Time),
    Column("next_run_date", DateTime, index=True),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
    Column("updated_at", DateTime, nullable=False, server_default=func.now()),
)


def create_db_engine(database_url: str) -> Engine:
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    if database_url in {"sqlite://", "sqlite:///:memory:"}:
        return create_engine(database_url, connect_args=connect_args, poolclass=StaticPool)
    return create_engine(database_url, connect_args=connect_args)


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)
    with engine.begin() as conn:
        existing = set(conn.execute(select(supported_currencies.c.code)).scalars().all())
        missing = [
            {"code": code, "name": name, "symbol": symbol}
            for code, name, symbol in SUPPORTED_CURRENCIES
            if code not in existing
        ]
        if missing:
            conn.execute(insert(supported_currencies), missing)


@contextmanager
def transaction_scope(engine: Engine, conn: Connection | None = None) -> Iterator[Connection]:
    """Join the caller's atomic scope when ``conn`` is given, else open one."""
    if conn is not None:
        yield conn
        return
    with engine.begin() as own_conn:
        yield own_conn
