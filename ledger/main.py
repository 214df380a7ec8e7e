import logging
from dataclasses import asdict
from datetime import date, datetime, time
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Header, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel

from ledger.config import configure_logging, load_settings
from ledger.currency_conversion import (
    ConversionRequest,
    ConversionResult,
    CurrencyConversionService,
    normalize_currency,
)
from ledger.db import create_db_engine, init_db
from ledger.errors import ConflictError, LedgerError, NotFoundError
from ledger.repositories import Account, AccountRepository, UserSettingsRepository
from ledger.scheduled_transactions import (
    FREQUENCIES,
    ScheduledTransaction,
    ScheduledTransactionData,
    ScheduledTransactionService,
)
from ledger.scheduler import Scheduler
from ledger.transactions import (
    MAX_PAGE_SIZE,
    TRANSACTION_TYPES,
    TransactionData,
    TransactionEngine,
    TransactionFilters,
    TransactionRecord,
)

settings = load_settings()
configure_logging(settings.log_level)
logger = logging.getLogger(__name__)

app = FastAPI()

app.add_middleware(
    CORSMiddleware,
    allow_origins=[settings.frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

engine = create_db_engine(settings.database_url)
settings_repository = UserSettingsRepository()
account_repository = AccountRepository()
conversion_service = CurrencyConversionService(engine, settings_repository=settings_repository)
transaction_engine = TransactionEngine(
    engine,
    conversion_service,
    account_repository=account_repository,
    settings_repository=settings_repository,
)
scheduled_service = ScheduledTransactionService(engine, transaction_engine)
scheduler = Scheduler(scheduled_service, interval_seconds=settings.scheduler_interval_seconds)


@app.on_event("startup")
def startup() -> None:
    init_db(engine)
    if settings.scheduler_enabled:
        scheduler.start()


@app.on_event("shutdown")
def shutdown() -> None:
    scheduler.stop()


class UserPayload(BaseModel):
    email: str
    anchor_currency: str | None = None
    primary_currency: str | None = None

    @classmethod
    def validate_payload(cls, payload: "UserPayload") -> "UserPayload":
        payload.email = payload.email.strip().lower()
        if not payload.email:
            raise ValueError("Email required.")
        payload.anchor_currency = normalize_currency(
            payload.anchor_currency or settings.anchor_currency
        )
        if payload.primary_currency:
            payload.primary_currency = normalize_currency(payload.primary_currency)
        return payload


class UserResponse(BaseModel):
    id: int
    email: str
    primary_currency: str
    anchor_currency: str


class AccountPayload(BaseModel):
    name: str
    currency: str
    account_category: str = "asset"
    initial_balance: Decimal = Decimal("0")
    account_type_id: int | None = None
    interest_rate: Decimal | None = None
    due_date: date | None = None
    original_amount: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "AccountPayload") -> "AccountPayload":
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Account name required.")
        payload.currency = normalize_currency(payload.currency)
        payload.account_category = payload.account_category.strip().lower()
        if payload.account_category not in {"asset", "liability"}:
            raise ValueError("Account category must be 'asset' or 'liability'.")
        return payload


class DebtDetailsResponse(BaseModel):
    original_amount: Decimal
    interest_rate: Decimal
    due_date: date | None = None


class AccountResponse(BaseModel):
    id: int
    user_id: int
    name: str
    account_category: str
    currency: str
    initial_balance: Decimal
    current_balance: Decimal
    account_type_id: int | None = None
    debt_details: DebtDetailsResponse | None = None


class TransactionPayload(BaseModel):
    type: str
    amount: Decimal
    transaction_date: date | None = None
    category_id: int | None = None
    from_account_id: int | None = None
    to_account_id: int | None = None
    description: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.type = payload.type.strip().lower()
        if payload.type not in TRANSACTION_TYPES:
            raise ValueError("Invalid transaction type.")
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        payload.description = payload.description.strip() if payload.description else None
        return payload


class TransactionUpdatePayload(BaseModel):
    type: str | None = None
    amount: Decimal | None = None
    transaction_date: date | None = None
    category_id: int | None = None
    from_account_id: int | None = None
    to_account_id: int | None = None
    description: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionUpdatePayload") -> dict:
        """Only the fields the client sent; explicit nulls clear a field."""
        patch = payload.model_dump(exclude_unset=True)
        if "type" in patch:
            if patch["type"] is None or patch["type"].strip().lower() not in TRANSACTION_TYPES:
                raise ValueError("Invalid transaction type.")
            patch["type"] = patch["type"].strip().lower()
        if "amount" in patch and (patch["amount"] is None or patch["amount"] <= 0):
            raise ValueError("Amount must be greater than zero.")
        if "transaction_date" in patch and patch["transaction_date"] is None:
            raise ValueError("Transaction date cannot be empty.")
        return patch


class TransactionResponse(BaseModel):
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


class TransactionListItemResponse(TransactionResponse):
    original_amount: Decimal
    original_currency: str
    converted_amount: Decimal
    primary_currency: str
    conversion_rate: Decimal
    is_converted: bool


class TransactionListResponse(BaseModel):
    items: list[TransactionListItemResponse]
    total_count: int


class TransactionSummaryResponse(BaseModel):
    total_income: Decimal
    total_expenses: Decimal
    net_balance: Decimal
    primary_currency: str


class ExchangeRatePayload(BaseModel):
    currency_code: str
    rate_to_anchor: Decimal

    @classmethod
    def validate_payload(cls, payload: "ExchangeRatePayload") -> "ExchangeRatePayload":
        payload.currency_code = normalize_currency(payload.currency_code)
        if payload.rate_to_anchor <= 0:
            raise ValueError("Exchange rate must be greater than zero.")
        return payload


class ExchangeRateResponse(BaseModel):
    currency_code: str
    rate_to_anchor: Decimal
    updated_at: datetime | None = None


class ConversionPayload(BaseModel):
    amount: Decimal
    from_currency: str
    to_currency: str

    @classmethod
    def validate_payload(cls, payload: "ConversionPayload") -> "ConversionPayload":
        payload.from_currency = normalize_currency(payload.from_currency)
        payload.to_currency = normalize_currency(payload.to_currency)
        if payload.amount < 0:
            raise ValueError("Amount cannot be negative.")
        return payload


class BatchConversionPayload(BaseModel):
    conversions: list[ConversionPayload]


class ConversionResponse(BaseModel):
    original_amount: Decimal
    converted_amount: Decimal
    from_currency: str
    to_currency: str
    rate: Decimal
    is_converted: bool
    error: str | None = None


class CurrencySettingsPayload(BaseModel):
    primary_currency: str | None = None
    anchor_currency: str | None = None

    @classmethod
    def validate_payload(cls, payload: "CurrencySettingsPayload") -> "CurrencySettingsPayload":
        if not payload.primary_currency and not payload.anchor_currency:
            raise ValueError("Primary or anchor currency required.")
        if payload.primary_currency:
            payload.primary_currency = normalize_currency(payload.primary_currency)
        if payload.anchor_currency:
            payload.anchor_currency = normalize_currency(payload.anchor_currency)
        return payload


class CurrencySettingsResponse(BaseModel):
    primary_currency: str
    anchor_currency: str
    rates: list[ExchangeRateResponse]


class ScheduledTransactionPayload(BaseModel):
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

    @classmethod
    def validate_payload(cls, payload: "ScheduledTransactionPayload") -> "ScheduledTransactionPayload":
        payload.transaction_type = payload.transaction_type.strip().lower()
        if payload.transaction_type not in TRANSACTION_TYPES:
            raise ValueError("Invalid transaction type.")
        payload.frequency = payload.frequency.strip().lower()
        if payload.frequency not in FREQUENCIES:
            raise ValueError("Frequency must be one of: once, daily, weekly, monthly.")
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        payload.description = payload.description.strip()
        if not payload.description:
            raise ValueError("Description is required.")
        if payload.end_date is not None and payload.end_date <= payload.start_date:
            raise ValueError("End date must be after the start date.")
        return payload


class ScheduledTransactionUpdatePayload(BaseModel):
    transaction_type: str | None = None
    amount: Decimal | None = None
    description: str | None = None
    frequency: str | None = None
    start_date: date | None = None
    start_time: time | None = None
    end_date: date | None = None
    end_time: time | None = None
    category_id: int | None = None
    source_account_id: int | None = None
    destination_account_id: int | None = None

    @classmethod
    def validate_payload(cls, payload: "ScheduledTransactionUpdatePayload") -> dict:
        patch = payload.model_dump(exclude_unset=True)
        for required in ("transaction_type", "amount", "description", "frequency", "start_date"):
            if required in patch and patch[required] is None:
                raise ValueError(f"{required} cannot be empty.")
        if "amount" in patch and patch["amount"] <= 0:
            raise ValueError("Amount must be greater than zero.")
        return patch


class ScheduledTransactionResponse(BaseModel):
    id: int
    user_id: int
    transaction_type: str
    amount: Decimal
    currency_code: str
    description: str
    frequency: str
    start_date: date
    start_time: time
    next_run_date: datetime | None = None
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


class SchedulerStatusResponse(BaseModel):
    is_running: bool
    has_active_timer: bool


class ScheduleRunResponse(BaseModel):
    scheduled_id: int
    transaction_id: int | None = None
    next_run_date: datetime | None = None
    is_active: bool
    error: str | None = None


class SweepResponse(BaseModel):
    started: bool
    due: int = 0
    created: int = 0
    failed: int = 0
    runs: list[ScheduleRunResponse] = []


def to_http_exception(exc: LedgerError) -> HTTPException:
    if isinstance(exc, NotFoundError):
        return HTTPException(status_code=404, detail=str(exc))
    if isinstance(exc, ConflictError):
        return HTTPException(status_code=409, detail=str(exc))
    return HTTPException(status_code=400, detail=str(exc))


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        if not settings_repository.exists(conn, user_id):
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def build_account_response(conn, account: Account) -> AccountResponse:
    debt = None
    if account.is_liability:
        details = account_repository.get_debt_details(conn, account.user_id, account.id)
        if details:
            debt = DebtDetailsResponse(
                original_amount=details.original_amount,
                interest_rate=details.interest_rate,
                due_date=details.due_date,
            )
    return AccountResponse(
        id=account.id,
        user_id=account.user_id,
        name=account.name,
        account_category=account.account_category,
        currency=account.currency,
        initial_balance=account.initial_balance,
        current_balance=account.current_balance,
        account_type_id=account.account_type_id,
        debt_details=debt,
    )


def build_transaction_response(record: TransactionRecord) -> TransactionResponse:
    return TransactionResponse(**asdict(record))


def build_scheduled_response(record: ScheduledTransaction) -> ScheduledTransactionResponse:
    return ScheduledTransactionResponse(**asdict(record))


def build_conversion_response(result: ConversionResult) -> ConversionResponse:
    return ConversionResponse(
        original_amount=result.original_amount,
        converted_amount=result.converted_amount,
        from_currency=result.from_currency,
        to_currency=result.to_currency,
        rate=result.rate,
        is_converted=result.is_converted,
        error=result.error,
    )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/users", response_model=UserResponse)
def create_user(payload: UserPayload) -> UserResponse:
    try:
        payload = UserPayload.validate_payload(payload)
    except (ValueError, LedgerError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        with engine.begin() as conn:
            user_id = settings_repository.create_user(
                conn,
                payload.email,
                anchor_currency=payload.anchor_currency,
                primary_currency=payload.primary_currency,
            )
            user_settings = settings_repository.get(conn, user_id)
    except LedgerError as exc:
        raise to_http_exception(exc) from exc
    return UserResponse(
        id=user_id,
        email=payload.email,
        primary_currency=user_settings.primary_currency,
        anchor_currency=user_settings.anchor_currency,
    )


@app.get("/accounts", response_model=list[AccountResponse])
def list_accounts(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[AccountResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        return [
            build_account_response(conn, account)
            for account in account_repository.list(conn, user_id)
        ]


@app.get("/accounts/{account_id}", response_model=AccountResponse)
def get_account(
    account_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        account = account_repository.get(conn, user_id, account_id)
        if account is None:
            raise HTTPException(status_code=404, detail="Account not found.")
        return build_account_response(conn, account)


@app.post("/accounts", response_model=AccountResponse)
def create_account(
    payload: AccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = AccountPayload.validate_payload(payload)
    except (ValueError, LedgerError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        with engine.begin() as conn:
            account = account_repository.create(
                conn,
                user_id,
                name=payload.name,
                currency=payload.currency,
                account_category=payload.account_category,
                initial_balance=payload.initial_balance,
                account_type_id=payload.account_type_id,
                interest_rate=payload.interest_rate,
                due_date=payload.due_date,
                original_amount=payload.original_amount,
            )
            return build_account_response(conn, account)
    except LedgerError as exc:
        raise to_http_exception(exc) from exc


@app.get("/transactions", response_model=TransactionListResponse)
def list_transactions(
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    type: str | None = Query(None),
    account_id: int | None = Query(None),
    category_id: int | None = Query(None),
    limit: int = Query(50, ge=1, le=MAX_PAGE_SIZE),
    offset: int = Query(0, ge=0),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionListResponse:
    user_id = get_user_id(x_user_id)
    filters = TransactionFilters(
        start_date=start_date,
        end_date=end_date,
        type=type,
        account_id=account_id,
        category_id=category_id,
        limit=limit,
        offset=offset,
    )
    try:
        page = transaction_engine.list(user_id, filters)
    except LedgerError as exc:
        raise to_http_exception(exc) from exc
    return TransactionListResponse(
        items=[
            TransactionListItemResponse(
                **asdict(item.transaction),
                original_amount=item.original_amount,
                original_currency=item.original_currency,
                converted_amount=item.converted_amount,
                primary_currency=item.primary_currency,
                conversion_rate=item.conversion_rate,
                is_converted=item.is_converted,
            )
            for item in page.items
        ],
        total_count=page.total_count,
    )


@app.get("/transactions/summary", response_model=TransactionSummaryResponse)
def summarize_transactions(
    start_date: date | None = Query(None),
    end_date: date | None = Query(None),
    account_id: int | None = Query(None),
    category_id: int | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionSummaryResponse:
    user_id = get_user_id(x_user_id)
    filters = TransactionFilters(
        start_date=start_date,
        end_date=end_date,
        account_id=account_id,
        category_id=category_id,
    )
    try:
        summary = transaction_engine.summarize(user_id, filters)
    except LedgerError as exc:
        raise to_http_exception(exc) from exc
    return TransactionSummaryResponse(**asdict(summary))


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        record = transaction_engine.get(user_id, transaction_id)
    except LedgerError as exc:
        raise to_http_exception(exc) from exc
    return build_transaction_response(record)


@app.post("/transactions", response_model=TransactionResponse)
def create_transaction(
    payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except (ValueError, LedgerError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        record = transaction_engine.create(
            user_id,
            TransactionData(
                type=payload.type,
                amount=payload.amount,
                transaction_date=payload.transaction_date,
                category_id=payload.category_id,
                from_account_id=payload.from_account_id,
                to_account_id=payload.to_account_id,
                description=payload.description,
            ),
        )
    except LedgerError as exc:
        raise to_http_exception(exc) from exc
    return build_transaction_response(record)


@app.put("/transactions/{transaction_id}", response_model=TransactionResponse)
def update_transaction(
    transaction_id: int,
    payload: TransactionUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        patch = TransactionUpdatePayload.validate_payload(payload)
    except (ValueError, LedgerError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        record = transaction_engine.update(user_id, transaction_id, patch)
    except LedgerError as exc:
        raise to_http_exception(exc) from exc
    return build_transaction_response(record)


@app.delete("/transactions/{transaction_id}")
def delete_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        transaction_engine.delete(user_id, transaction_id)
    except LedgerError as exc:
        raise to_http_exception(exc) from exc
    return {"status": "deleted"}


@app.get("/exchange-rates", response_model=list[ExchangeRateResponse])
def list_exchange_rates(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ExchangeRateResponse]:
    user_id = get_user_id(x_user_id)
    return [ExchangeRateResponse(**asdict(rate)) for rate in conversion_service.get_user_rates(user_id)]


@app.put("/exchange-rates", response_model=ExchangeRateResponse)
def upsert_exchange_rate(
    payload: ExchangeRatePayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ExchangeRateResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ExchangeRatePayload.validate_payload(payload)
    except (ValueError, LedgerError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        rate = conversion_service.upsert_rate(user_id, payload.currency_code, payload.rate_to_anchor)
    except LedgerError as exc:
        raise to_http_exception(exc) from exc
    return ExchangeRateResponse(**asdict(rate))


@app.delete("/exchange-rates/{currency_code}")
def delete_exchange_rate(
    currency_code: str, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        conversion_service.delete_rate(user_id, currency_code)
    except LedgerError as exc:
        raise to_http_exception(exc) from exc
    return {"status": "deleted"}


@app.post("/currencies/convert", response_model=ConversionResponse)
def convert_currency(
    payload: ConversionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ConversionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ConversionPayload.validate_payload(payload)
    except (ValueError, LedgerError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        result = conversion_service.convert(
            payload.amount, payload.from_currency, payload.to_currency, user_id
        )
    except LedgerError as exc:
        raise to_http_exception(exc) from exc
    return build_conversion_response(result)


@app.post("/currencies/convert/batch", response_model=list[ConversionResponse])
def convert_currency_batch(
    payload: BatchConversionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> list[ConversionResponse]:
    user_id = get_user_id(x_user_id)
    requests = [
        ConversionRequest(
            amount=item.amount,
            from_currency=item.from_currency,
            to_currency=item.to_currency,
            user_id=user_id,
        )
        for item in payload.conversions
    ]
    return [build_conversion_response(result) for result in conversion_service.convert_many(requests)]


@app.get("/settings/currency", response_model=CurrencySettingsResponse)
def get_currency_settings(
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> CurrencySettingsResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        user_settings = settings_repository.get(conn, user_id)
        rates = conversion_service.get_user_rates(user_id, conn=conn)
    return CurrencySettingsResponse(
        primary_currency=user_settings.primary_currency,
        anchor_currency=user_settings.anchor_currency,
        rates=[ExchangeRateResponse(**asdict(rate)) for rate in rates],
    )


@app.put("/settings/currency", response_model=CurrencySettingsResponse)
def update_currency_settings(
    payload: CurrencySettingsPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CurrencySettingsResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CurrencySettingsPayload.validate_payload(payload)
    except (ValueError, LedgerError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        with engine.begin() as conn:
            if payload.anchor_currency:
                conversion_service.set_anchor_currency(user_id, payload.anchor_currency, conn=conn)
            if payload.primary_currency:
                conversion_service.set_primary_currency(user_id, payload.primary_currency, conn=conn)
            user_settings = settings_repository.get(conn, user_id)
            rates = conversion_service.get_user_rates(user_id, conn=conn)
    except LedgerError as exc:
        raise to_http_exception(exc) from exc
    return CurrencySettingsResponse(
        primary_currency=user_settings.primary_currency,
        anchor_currency=user_settings.anchor_currency,
        rates=[ExchangeRateResponse(**asdict(rate)) for rate in rates],
    )


@app.get("/scheduled-transactions", response_model=list[ScheduledTransactionResponse])
def list_scheduled_transactions(
    is_active: bool | None = Query(None),
    transaction_type: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[ScheduledTransactionResponse]:
    user_id = get_user_id(x_user_id)
    try:
        records = scheduled_service.list(
            user_id, is_active=is_active, transaction_type=transaction_type
        )
    except LedgerError as exc:
        raise to_http_exception(exc) from exc
    return [build_scheduled_response(record) for record in records]


@app.get("/scheduled-transactions/scheduler/status", response_model=SchedulerStatusResponse)
def scheduler_status(x_user_id: str | None = Header(None, alias="x-user-id")) -> SchedulerStatusResponse:
    get_user_id(x_user_id)
    return SchedulerStatusResponse(**scheduler.status())


@app.post("/scheduled-transactions/scheduler/run", response_model=SweepResponse)
def run_scheduler(x_user_id: str | None = Header(None, alias="x-user-id")) -> SweepResponse:
    get_user_id(x_user_id)
    report = scheduler.trigger()
    if report is None:
        return SweepResponse(started=False)
    return SweepResponse(
        started=True,
        due=report.due,
        created=report.created,
        failed=report.failed,
        runs=[
            ScheduleRunResponse(
                scheduled_id=run.scheduled_id,
                transaction_id=run.transaction_id,
                next_run_date=run.next_run_date,
                is_active=run.is_active,
                error=run.error,
            )
            for run in report.runs
        ],
    )


@app.get("/scheduled-transactions/{scheduled_id}", response_model=ScheduledTransactionResponse)
def get_scheduled_transaction(
    scheduled_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ScheduledTransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        record = scheduled_service.get(user_id, scheduled_id)
    except LedgerError as exc:
        raise to_http_exception(exc) from exc
    return build_scheduled_response(record)


@app.post("/scheduled-transactions", response_model=ScheduledTransactionResponse)
def create_scheduled_transaction(
    payload: ScheduledTransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ScheduledTransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = ScheduledTransactionPayload.validate_payload(payload)
    except (ValueError, LedgerError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        record = scheduled_service.create(
            user_id, ScheduledTransactionData(**payload.model_dump())
        )
    except LedgerError as exc:
        raise to_http_exception(exc) from exc
    return build_scheduled_response(record)


@app.put("/scheduled-transactions/{scheduled_id}", response_model=ScheduledTransactionResponse)
def update_scheduled_transaction(
    scheduled_id: int,
    payload: ScheduledTransactionUpdatePayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> ScheduledTransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        patch = ScheduledTransactionUpdatePayload.validate_payload(payload)
    except (ValueError, LedgerError) as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    try:
        record = scheduled_service.update(user_id, scheduled_id, patch)
    except LedgerError as exc:
        raise to_http_exception(exc) from exc
    return build_scheduled_response(record)


@app.patch("/scheduled-transactions/{scheduled_id}/toggle", response_model=ScheduledTransactionResponse)
def toggle_scheduled_transaction(
    scheduled_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> ScheduledTransactionResponse:
    user_id = get_user_id(x_user_id)
    try:
        record = scheduled_service.toggle(user_id, scheduled_id)
    except LedgerError as exc:
        raise to_http_exception(exc) from exc
    return build_scheduled_response(record)


@app.delete("/scheduled-transactions/{scheduled_id}")
def delete_scheduled_transaction(
    scheduled_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> dict:
    user_id = get_user_id(x_user_id)
    try:
        scheduled_service.delete(user_id, scheduled_id)
    except LedgerError as exc:
        raise to_http_exception(exc) from exc
    return {"status": "deleted"}
