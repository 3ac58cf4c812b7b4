import logging
import os
from datetime import date, datetime, timezone
from decimal import Decimal
from pathlib import Path

import bcrypt
from fastapi import FastAPI, File, Form, Header, HTTPException, Query, UploadFile
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import FileResponse
from pydantic import BaseModel
from sqlalchemy import (
    Column,
    Date,
    DateTime,
    ForeignKey,
    Integer,
    MetaData,
    Numeric,
    String,
    Table,
    UniqueConstraint,
    create_engine,
    func,
    insert,
    or_,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError

from bubob.ledger import balance_totals, expected_balance, group_by_day, signed_amount, top_accounts
from bubob.month_range import (
    DEFAULT_TIMEZONE,
    current_month_token,
    format_month_token,
    from_storage,
    load_timezone,
    parse_month_value,
    resolve_day_range,
    resolve_month,
    resolve_month_or_current,
    to_storage,
)
from bubob.photo_storage import DEFAULT_MAX_BYTES, LocalPhotoStore, PhotoTooLarge
from bubob.plan_engine import Plan, Transaction, evaluate_plan, summarize

logging.basicConfig(level=os.getenv("LOG_LEVEL", "INFO").upper())
logger = logging.getLogger(__name__)

app = FastAPI(title="bubob finance")

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./bubob.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)
metadata = MetaData()

REPORTING_TZ = load_timezone(os.getenv("REPORTING_TIMEZONE", DEFAULT_TIMEZONE))
PHOTO_STORE = LocalPhotoStore(
    root=Path(os.getenv("PHOTO_STORAGE_DIR", "./photos")),
    public_base_url=os.getenv("PUBLIC_BASE_URL", "http://localhost:8000"),
    max_bytes=int(os.getenv("PHOTO_MAX_BYTES", str(DEFAULT_MAX_BYTES))),
)

HISTORY_LIMIT = 500
RECENT_LIMIT = 8
ZERO = Decimal("0")

DEFAULT_ACCOUNTS = [
    {"name": "Cash", "type": "cash"},
    {"name": "E-Wallet", "type": "ewallet"},
]

DEFAULT_CATEGORIES = [
    {"name": "Makan", "type": "expense"},
    {"name": "Transport", "type": "expense"},
    {"name": "Belanja", "type": "expense"},
    {"name": "Tagihan", "type": "expense"},
    {"name": "Pulsa/Internet", "type": "expense"},
    {"name": "Paylater", "type": "expense"},
    {"name": "Kesehatan", "type": "expense"},
    {"name": "Lainnya", "type": "expense"},
    {"name": "Gaji", "type": "income"},
    {"name": "Bonus", "type": "income"},
    {"name": "Transfer Masuk", "type": "income"},
]

users = Table(
    "users",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("email", String(255), unique=True, nullable=False),
    Column("hashed_password", String(255), nullable=False),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

accounts = Table(
    "accounts",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False),
    Column("opening_balance", Numeric(14, 2), nullable=False, server_default="0"),
    Column("balance", Numeric(14, 2), nullable=False, server_default="0"),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
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

transactions = Table(
    "transactions",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id"), nullable=False),
    Column("type", String(20), nullable=False),
    Column("category", String(255)),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("note", String(500)),
    Column("occurred_at", DateTime, nullable=False, index=True),
    Column("photo_url", String(1000)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

plans = Table(
    "plans",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("user_id", Integer, ForeignKey("users.id"), nullable=False),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False),
    Column("amount", Numeric(14, 2), nullable=False),
    Column("period", String(20), nullable=False, server_default="monthly"),
    Column("start_month", Date, nullable=False),
    Column("account_id", Integer, ForeignKey("accounts.id")),
    Column("category", String(255)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)


@app.on_event("startup")
def init_db() -> None:
    metadata.create_all(engine)


class CredentialsPayload(BaseModel):
    email: str
    password: str


class UserResponse(BaseModel):
    id: int
    email: str
    created_at: datetime | None = None


class TransactionType:
    values = {"income", "expense"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid transaction type.")
        return normalized


class AccountType:
    values = {"cash", "ewallet", "other"}
    aliases = {"e-wallet": "ewallet", "wallet": "ewallet"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        normalized = cls.aliases.get(normalized, normalized)
        if normalized not in cls.values:
            raise ValueError("Invalid account type.")
        return normalized


class PlanType:
    values = {"expense_limit", "saving_goal"}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid plan type.")
        return normalized


class AccountPayload(BaseModel):
    name: str
    type: str
    opening_balance: Decimal | None = None

    @classmethod
    def validate_payload(cls, payload: "AccountPayload") -> "AccountPayload":
        payload.type = AccountType.validate(payload.type)
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Account name required.")
        return payload


class AccountResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    opening_balance: Decimal
    balance: Decimal
    created_at: datetime | None = None


class CategoryPayload(BaseModel):
    name: str
    type: str

    @classmethod
    def validate_payload(cls, payload: "CategoryPayload") -> "CategoryPayload":
        payload.type = TransactionType.validate(payload.type)
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Category name required.")
        return payload


class CategoryResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    created_at: datetime | None = None


class TransactionPayload(BaseModel):
    account_id: int
    type: str
    amount: Decimal
    category: str | None = None
    note: str | None = None
    occurred_at: datetime | None = None
    photo_url: str | None = None

    @classmethod
    def validate_payload(cls, payload: "TransactionPayload") -> "TransactionPayload":
        payload.type = TransactionType.validate(payload.type)
        if payload.amount <= 0:
            raise ValueError("Amount must be greater than zero.")
        payload.category = payload.category.strip() if payload.category else None
        payload.category = payload.category or None
        payload.note = payload.note.strip() if payload.note else None
        payload.note = payload.note or None
        payload.photo_url = payload.photo_url.strip() if payload.photo_url else None
        return payload


class TransactionResponse(BaseModel):
    id: int
    user_id: int
    account_id: int
    type: str
    amount: Decimal
    category: str | None = None
    note: str | None = None
    occurred_at: datetime
    photo_url: str | None = None
    created_at: datetime | None = None


class TransactionCreateResponse(TransactionResponse):
    account_balance: Decimal


class TransactionDayGroupResponse(BaseModel):
    date: date
    income: Decimal
    spent: Decimal
    transactions: list[TransactionResponse]


class PhotoResponse(BaseModel):
    path: str
    url: str
    content_type: str
    size: int


class PlanPayload(BaseModel):
    name: str
    type: str
    amount: Decimal
    period: str = "monthly"
    start_month: str | date | None = None
    account_id: int | None = None
    category: str | None = None

    @classmethod
    def validate_payload(cls, payload: "PlanPayload") -> "PlanPayload":
        payload.type = PlanType.validate(payload.type)
        payload.name = payload.name.strip()
        if not payload.name:
            raise ValueError("Plan name required.")
        if payload.amount <= 0:
            raise ValueError("Target amount must be greater than zero.")
        payload.period = payload.period.strip().lower()
        if payload.period != "monthly":
            raise ValueError("Unsupported period. Use 'monthly'.")
        if isinstance(payload.start_month, date):
            payload.start_month = payload.start_month.replace(day=1)
        elif payload.start_month:
            payload.start_month = parse_month_value(payload.start_month)
        else:
            payload.start_month = None
        payload.category = payload.category.strip() if payload.category else None
        payload.category = payload.category or None
        return payload


class PlanResponse(BaseModel):
    id: int
    user_id: int
    name: str
    type: str
    amount: Decimal
    period: str
    start_month: str
    account_id: int | None = None
    category: str | None = None
    created_at: datetime | None = None


class PlanProgressResponse(BaseModel):
    plan_id: int
    name: str
    type: str
    amount: Decimal
    account_id: int | None = None
    category: str | None = None
    month: str
    start: datetime
    end: datetime
    active: bool
    spent: Decimal
    income: Decimal
    net: Decimal
    ratio: Decimal
    display_ratio: Decimal
    percent: int
    status: str
    warning: bool
    warning_message: str | None = None


class PlanDetailResponse(BaseModel):
    progress: PlanProgressResponse
    transactions: list[TransactionResponse]


class SetupResponse(BaseModel):
    accounts_created: int
    categories_created: int


class DashboardResponse(BaseModel):
    total_balance: Decimal
    cash_balance: Decimal
    ewallet_balance: Decimal
    top_accounts: list[AccountResponse]
    recent_transactions: list[TransactionResponse]


def hash_password(password: str) -> str:
    return bcrypt.hashpw(password.encode("utf-8"), bcrypt.gensalt()).decode("utf-8")


def verify_password(password: str, hashed_password: str) -> bool:
    return bcrypt.checkpw(password.encode("utf-8"), hashed_password.encode("utf-8"))


def get_user_id(x_user_id: str | None = Header(None)) -> int:
    if not x_user_id:
        raise HTTPException(status_code=401, detail="Missing user identity.")
    try:
        user_id = int(x_user_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail="Invalid user identity.") from exc
    with engine.begin() as conn:
        result = conn.execute(select(users.c.id).where(users.c.id == user_id))
        if not result.first():
            raise HTTPException(status_code=404, detail="User not found.")
    return user_id


def ensure_account(conn, user_id: int, account_id: int) -> None:
    account_exists = conn.execute(
        select(accounts.c.id).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
    ).first()
    if not account_exists:
        raise HTTPException(status_code=404, detail="Account not found.")


def ensure_default_accounts(conn, user_id: int) -> int:
    existing = conn.execute(
        select(accounts.c.id).where(accounts.c.user_id == user_id).limit(1)
    ).first()
    if existing:
        return 0
    conn.execute(
        insert(accounts),
        [
            {**account, "user_id": user_id, "opening_balance": ZERO, "balance": ZERO}
            for account in DEFAULT_ACCOUNTS
        ],
    )
    return len(DEFAULT_ACCOUNTS)


def ensure_default_categories(conn, user_id: int) -> int:
    existing = conn.execute(
        select(categories.c.id).where(categories.c.user_id == user_id).limit(1)
    ).first()
    if existing:
        return 0
    conn.execute(
        insert(categories),
        [{**category, "user_id": user_id} for category in DEFAULT_CATEGORIES],
    )
    return len(DEFAULT_CATEGORIES)


def account_in_use(conn, user_id: int, account_id: int) -> bool:
    txn_match = conn.execute(
        select(transactions.c.id)
        .where(transactions.c.user_id == user_id, transactions.c.account_id == account_id)
        .limit(1)
    ).first()
    if txn_match:
        return True
    plan_match = conn.execute(
        select(plans.c.id)
        .where(plans.c.user_id == user_id, plans.c.account_id == account_id)
        .limit(1)
    ).first()
    return bool(plan_match)


def escape_like(value: str) -> str:
    return value.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def fetch_transactions(
    conn,
    user_id: int,
    *,
    start: datetime | None = None,
    end: datetime | None = None,
    account_id: int | None = None,
    category: str | None = None,
    txn_type: str | None = None,
    search: str | None = None,
    limit: int | None = None,
) -> list:
    conditions = [transactions.c.user_id == user_id]
    if start is not None:
        conditions.append(transactions.c.occurred_at >= to_storage(start, REPORTING_TZ))
    if end is not None:
        conditions.append(transactions.c.occurred_at <= to_storage(end, REPORTING_TZ))
    if account_id is not None:
        conditions.append(transactions.c.account_id == account_id)
    if category:
        conditions.append(transactions.c.category == category)
    if txn_type:
        conditions.append(transactions.c.type == txn_type)
    if search:
        pattern = f"%{escape_like(search)}%"
        conditions.append(
            or_(
                transactions.c.category.ilike(pattern, escape="\\"),
                transactions.c.note.ilike(pattern, escape="\\"),
            )
        )
    stmt = (
        select(transactions)
        .where(*conditions)
        .order_by(transactions.c.occurred_at.desc(), transactions.c.id.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    return conn.execute(stmt).mappings().all()


def fetch_plans(conn, user_id: int) -> list:
    return conn.execute(
        select(plans)
        .where(plans.c.user_id == user_id)
        .order_by(plans.c.created_at.desc(), plans.c.id.desc())
    ).mappings().all()


def insert_transaction(conn, user_id: int, payload: TransactionPayload) -> tuple:
    """Insert a transaction and apply its signed delta to the account balance.

    Both statements run on ``conn`` so they commit or roll back together.
    """
    ensure_account(conn, user_id, payload.account_id)
    occurred_at = payload.occurred_at or datetime.now(timezone.utc)
    row = conn.execute(
        insert(transactions)
        .values(
            user_id=user_id,
            account_id=payload.account_id,
            type=payload.type,
            category=payload.category,
            amount=payload.amount,
            note=payload.note,
            occurred_at=to_storage(occurred_at, REPORTING_TZ),
            photo_url=payload.photo_url,
        )
        .returning(*transactions.c)
    ).mappings().first()
    if not row:
        raise HTTPException(status_code=500, detail="Failed to create transaction.")

    delta = signed_amount(payload.type, payload.amount)
    balance = conn.execute(
        update(accounts)
        .where(accounts.c.id == payload.account_id, accounts.c.user_id == user_id)
        .values(balance=accounts.c.balance + delta)
        .returning(accounts.c.balance)
    ).scalar_one()
    logger.info(
        "Transaction %s on account %s applied delta %s", row["id"], payload.account_id, delta
    )
    return row, balance


def account_response(row) -> AccountResponse:
    return AccountResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        type=row["type"],
        opening_balance=row["opening_balance"],
        balance=row["balance"],
        created_at=row["created_at"],
    )


def category_response(row) -> CategoryResponse:
    return CategoryResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        type=row["type"],
        created_at=row["created_at"],
    )


def transaction_response(row) -> TransactionResponse:
    return TransactionResponse(
        id=row["id"],
        user_id=row["user_id"],
        account_id=row["account_id"],
        type=row["type"],
        amount=row["amount"],
        category=row["category"],
        note=row["note"],
        occurred_at=from_storage(row["occurred_at"], REPORTING_TZ),
        photo_url=row["photo_url"],
        created_at=row["created_at"],
    )


def plan_response(row) -> PlanResponse:
    return PlanResponse(
        id=row["id"],
        user_id=row["user_id"],
        name=row["name"],
        type=row["type"],
        amount=row["amount"],
        period=row["period"],
        start_month=format_month_token(row["start_month"]),
        account_id=row["account_id"],
        category=row["category"],
        created_at=row["created_at"],
    )


def to_engine_transaction(row) -> Transaction:
    return Transaction(
        amount=row["amount"],
        type=row["type"],
        account_id=row["account_id"],
        category=row["category"],
    )


def build_plan_progress(
    plan_row, txn_items: list[Transaction], month: str, start: datetime, end: datetime
) -> PlanProgressResponse:
    plan = Plan(
        plan_type=plan_row["type"],
        amount=plan_row["amount"],
        account_id=plan_row["account_id"],
        category=plan_row["category"],
    )
    result = evaluate_plan(plan, txn_items)
    return PlanProgressResponse(
        plan_id=plan_row["id"],
        name=plan_row["name"],
        type=plan_row["type"],
        amount=plan_row["amount"],
        account_id=plan_row["account_id"],
        category=plan_row["category"],
        month=month,
        start=start,
        end=end,
        active=start.date() >= plan_row["start_month"],
        spent=result.spent,
        income=result.income,
        net=result.net,
        ratio=result.ratio,
        display_ratio=result.display_ratio,
        percent=result.percent,
        status=result.status,
        warning=result.warning,
        warning_message=result.warning_message,
    )


def load_history(
    user_id: int,
    txn_type: str | None,
    from_date: str | None,
    to_date: str | None,
    q: str | None,
    account_id: int | None,
    category: str | None,
    limit: int,
) -> list:
    try:
        normalized_type = None
        if txn_type and txn_type.strip().lower() != "all":
            normalized_type = TransactionType.validate(txn_type)
        start, end = resolve_day_range(from_date, to_date, REPORTING_TZ)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    search = q.strip() if q else None
    with engine.begin() as conn:
        return fetch_transactions(
            conn,
            user_id,
            start=start,
            end=end,
            account_id=account_id,
            category=category.strip() if category else None,
            txn_type=normalized_type,
            search=search or None,
            limit=limit,
        )


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.post("/auth/signup", response_model=UserResponse)
def signup(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password required.")
    hashed_password = hash_password(payload.password)

    stmt = (
        insert(users)
        .values(email=email, hashed_password=hashed_password)
        .returning(users.c.id, users.c.email, users.c.created_at)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Email already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create user.")
    logger.info("Created user %s", row["id"])
    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.post("/auth/login", response_model=UserResponse)
def login(payload: CredentialsPayload) -> UserResponse:
    email = payload.email.strip().lower()
    with engine.begin() as conn:
        row = conn.execute(select(users).where(users.c.email == email)).mappings().first()

    if not row or not verify_password(payload.password, row["hashed_password"]):
        logger.warning("Failed login for %s", email)
        raise HTTPException(status_code=401, detail="Invalid credentials.")

    return UserResponse(id=row["id"], email=row["email"], created_at=row["created_at"])


@app.post("/setup", response_model=SetupResponse)
def setup(x_user_id: str | None = Header(None, alias="x-user-id")) -> SetupResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        accounts_created = ensure_default_accounts(conn, user_id)
        categories_created = ensure_default_categories(conn, user_id)
    logger.info(
        "Setup for user %s created %d accounts and %d categories",
        user_id,
        accounts_created,
        categories_created,
    )
    return SetupResponse(
        accounts_created=accounts_created, categories_created=categories_created
    )


@app.get("/accounts", response_model=list[AccountResponse])
def list_accounts(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[AccountResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = conn.execute(
            select(accounts)
            .where(accounts.c.user_id == user_id)
            .order_by(accounts.c.name.asc(), accounts.c.id.asc())
        ).mappings().all()
    return [account_response(row) for row in rows]


@app.post("/accounts", response_model=AccountResponse)
def create_account(
    payload: AccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = AccountPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    opening_balance = payload.opening_balance if payload.opening_balance is not None else ZERO
    stmt = (
        insert(accounts)
        .values(
            user_id=user_id,
            name=payload.name,
            type=payload.type,
            opening_balance=opening_balance,
            balance=opening_balance,
        )
        .returning(*accounts.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create account.")
    return account_response(row)


@app.put("/accounts/{account_id}", response_model=AccountResponse)
def update_account(
    account_id: int, payload: AccountPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = AccountPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    # opening_balance is fixed at creation; balance only moves through transactions
    stmt = (
        update(accounts)
        .where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        .values(name=payload.name, type=payload.type)
        .returning(*accounts.c)
    )
    with engine.begin() as conn:
        row = conn.execute(stmt).mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Account not found.")
    return account_response(row)


@app.delete("/accounts/{account_id}")
def delete_account(account_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        ensure_account(conn, user_id, account_id)
        if account_in_use(conn, user_id, account_id):
            raise HTTPException(status_code=409, detail="Account is in use.")
        conn.execute(
            accounts.delete().where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        )
    return {"status": "deleted"}


@app.post("/accounts/{account_id}/reconcile", response_model=AccountResponse)
def reconcile_account(
    account_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> AccountResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        account = conn.execute(
            select(accounts).where(accounts.c.id == account_id, accounts.c.user_id == user_id)
        ).mappings().first()
        if not account:
            raise HTTPException(status_code=404, detail="Account not found.")
        txn_rows = conn.execute(
            select(transactions.c.type, transactions.c.amount).where(
                transactions.c.user_id == user_id,
                transactions.c.account_id == account_id,
            )
        ).all()
        balance = expected_balance(account["opening_balance"], txn_rows)
        row = conn.execute(
            update(accounts)
            .where(accounts.c.id == account_id, accounts.c.user_id == user_id)
            .values(balance=balance)
            .returning(*accounts.c)
        ).mappings().first()
    if account["balance"] != row["balance"]:
        logger.warning(
            "Account %s balance drifted from %s to %s", account_id, account["balance"], row["balance"]
        )
    return account_response(row)


@app.get("/categories", response_model=list[CategoryResponse])
def list_categories(
    category_type: str | None = Query(None, alias="type"),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[CategoryResponse]:
    user_id = get_user_id(x_user_id)
    conditions = [categories.c.user_id == user_id]
    if category_type:
        try:
            conditions.append(categories.c.type == TransactionType.validate(category_type))
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
    with engine.begin() as conn:
        ensure_default_categories(conn, user_id)
        rows = conn.execute(
            select(categories)
            .where(*conditions)
            .order_by(categories.c.type.asc(), categories.c.id.asc())
        ).mappings().all()
    return [category_response(row) for row in rows]


@app.post("/categories", response_model=CategoryResponse)
def create_category(
    payload: CategoryPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> CategoryResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = CategoryPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    stmt = (
        insert(categories)
        .values(user_id=user_id, name=payload.name, type=payload.type)
        .returning(*categories.c)
    )
    try:
        with engine.begin() as conn:
            row = conn.execute(stmt).mappings().first()
    except IntegrityError as exc:
        raise HTTPException(status_code=409, detail="Category already exists.") from exc

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create category.")
    return category_response(row)


@app.get("/transactions", response_model=list[TransactionResponse])
def list_transactions(
    txn_type: str | None = Query(None, alias="type"),
    from_date: str | None = Query(None, alias="from"),
    to_date: str | None = Query(None, alias="to"),
    q: str | None = None,
    account_id: int | None = None,
    category: str | None = None,
    limit: int = Query(HISTORY_LIMIT, ge=1, le=HISTORY_LIMIT),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionResponse]:
    user_id = get_user_id(x_user_id)
    rows = load_history(user_id, txn_type, from_date, to_date, q, account_id, category, limit)
    return [transaction_response(row) for row in rows]


@app.get("/transactions/by-day", response_model=list[TransactionDayGroupResponse])
def list_transactions_by_day(
    txn_type: str | None = Query(None, alias="type"),
    from_date: str | None = Query(None, alias="from"),
    to_date: str | None = Query(None, alias="to"),
    q: str | None = None,
    account_id: int | None = None,
    category: str | None = None,
    limit: int = Query(HISTORY_LIMIT, ge=1, le=HISTORY_LIMIT),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[TransactionDayGroupResponse]:
    user_id = get_user_id(x_user_id)
    rows = load_history(user_id, txn_type, from_date, to_date, q, account_id, category, limit)
    groups = group_by_day(rows, REPORTING_TZ, key=lambda row: row["occurred_at"])
    response: list[TransactionDayGroupResponse] = []
    for day, day_rows in groups:
        totals = summarize(to_engine_transaction(row) for row in day_rows)
        response.append(
            TransactionDayGroupResponse(
                date=day,
                income=totals.income,
                spent=totals.spent,
                transactions=[transaction_response(row) for row in day_rows],
            )
        )
    return response


@app.get("/transactions/{transaction_id}", response_model=TransactionResponse)
def get_transaction(
    transaction_id: int, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(transactions).where(
                transactions.c.id == transaction_id, transactions.c.user_id == user_id
            )
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Transaction not found.")
    return transaction_response(row)


@app.post("/transactions", response_model=TransactionCreateResponse)
def create_transaction(
    payload: TransactionPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> TransactionCreateResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = TransactionPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        row, balance = insert_transaction(conn, user_id, payload)

    return TransactionCreateResponse(
        **transaction_response(row).model_dump(),
        account_balance=balance,
    )


@app.post("/photos", response_model=PhotoResponse)
async def upload_photo(
    account_id: int = Form(...),
    file: UploadFile = File(...),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> PhotoResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        ensure_account(conn, user_id, account_id)

    # read at most one byte past the limit
    contents = await file.read(PHOTO_STORE.max_bytes + 1)
    try:
        stored = PHOTO_STORE.save(
            user_id, account_id, file.filename, contents, file.content_type
        )
    except PhotoTooLarge as exc:
        logger.warning("Rejected photo upload from user %s: %s", user_id, exc)
        raise HTTPException(status_code=413, detail=str(exc)) from exc
    except ValueError as exc:
        logger.warning("Rejected photo upload from user %s: %s", user_id, exc)
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except FileExistsError as exc:
        raise HTTPException(status_code=409, detail="Photo already exists.") from exc

    return PhotoResponse(
        path=stored.path,
        url=stored.url,
        content_type=stored.content_type,
        size=stored.size,
    )


@app.get("/photos/{object_path:path}")
def get_photo(object_path: str) -> FileResponse:
    try:
        target = PHOTO_STORE.resolve(object_path)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if not target.is_file():
        raise HTTPException(status_code=404, detail="Photo not found.")
    return FileResponse(target, media_type=PHOTO_STORE.media_type(object_path))


@app.get("/plans", response_model=list[PlanResponse])
def list_plans(x_user_id: str | None = Header(None, alias="x-user-id")) -> list[PlanResponse]:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        rows = fetch_plans(conn, user_id)
    return [plan_response(row) for row in rows]


@app.post("/plans", response_model=PlanResponse)
def create_plan(
    payload: PlanPayload, x_user_id: str | None = Header(None, alias="x-user-id")
) -> PlanResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = PlanPayload.validate_payload(payload)
        start_month = payload.start_month or parse_month_value(
            current_month_token(datetime.now(timezone.utc), REPORTING_TZ)
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        if payload.account_id is not None:
            ensure_account(conn, user_id, payload.account_id)
        row = conn.execute(
            insert(plans)
            .values(
                user_id=user_id,
                name=payload.name,
                type=payload.type,
                amount=payload.amount,
                period=payload.period,
                start_month=start_month,
                account_id=payload.account_id,
                category=payload.category,
            )
            .returning(*plans.c)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=500, detail="Failed to create plan.")
    logger.info("Created plan %s for user %s", row["id"], user_id)
    return plan_response(row)


@app.get("/plans/progress", response_model=list[PlanProgressResponse])
def plans_progress(
    month: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> list[PlanProgressResponse]:
    user_id = get_user_id(x_user_id)
    try:
        month, start, end = resolve_month_or_current(month, REPORTING_TZ)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    with engine.begin() as conn:
        plan_rows = fetch_plans(conn, user_id)
        if not plan_rows:
            return []
        txn_rows = fetch_transactions(conn, user_id, start=start, end=end)

    txn_items = [to_engine_transaction(row) for row in txn_rows]
    return [build_plan_progress(row, txn_items, month, start, end) for row in plan_rows]


@app.get("/plans/{plan_id}", response_model=PlanResponse)
def get_plan(plan_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> PlanResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        row = conn.execute(
            select(plans).where(plans.c.id == plan_id, plans.c.user_id == user_id)
        ).mappings().first()
    if not row:
        raise HTTPException(status_code=404, detail="Plan not found.")
    return plan_response(row)


@app.get("/plans/{plan_id}/detail", response_model=PlanDetailResponse)
def plan_detail(
    plan_id: int,
    month: str | None = Query(None),
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> PlanDetailResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        plan_row = conn.execute(
            select(plans).where(plans.c.id == plan_id, plans.c.user_id == user_id)
        ).mappings().first()
        if not plan_row:
            raise HTTPException(status_code=404, detail="Plan not found.")
        month = month or format_month_token(plan_row["start_month"])
        try:
            start, end = resolve_month(month, REPORTING_TZ)
        except ValueError as exc:
            raise HTTPException(status_code=400, detail=str(exc)) from exc
        txn_rows = fetch_transactions(
            conn,
            user_id,
            start=start,
            end=end,
            account_id=plan_row["account_id"],
            category=plan_row["category"],
        )

    txn_items = [to_engine_transaction(row) for row in txn_rows]
    return PlanDetailResponse(
        progress=build_plan_progress(plan_row, txn_items, month, start, end),
        transactions=[transaction_response(row) for row in txn_rows],
    )


@app.put("/plans/{plan_id}", response_model=PlanResponse)
def update_plan(
    plan_id: int,
    payload: PlanPayload,
    x_user_id: str | None = Header(None, alias="x-user-id"),
) -> PlanResponse:
    user_id = get_user_id(x_user_id)
    try:
        payload = PlanPayload.validate_payload(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc

    values = {
        "name": payload.name,
        "type": payload.type,
        "amount": payload.amount,
        "period": payload.period,
        "account_id": payload.account_id,
        "category": payload.category,
    }
    if payload.start_month is not None:
        values["start_month"] = payload.start_month

    with engine.begin() as conn:
        if payload.account_id is not None:
            ensure_account(conn, user_id, payload.account_id)
        row = conn.execute(
            update(plans)
            .where(plans.c.id == plan_id, plans.c.user_id == user_id)
            .values(**values)
            .returning(*plans.c)
        ).mappings().first()

    if not row:
        raise HTTPException(status_code=404, detail="Plan not found.")
    logger.info("Updated plan %s for user %s", plan_id, user_id)
    return plan_response(row)


@app.delete("/plans/{plan_id}")
def delete_plan(plan_id: int, x_user_id: str | None = Header(None, alias="x-user-id")) -> dict:
    user_id = get_user_id(x_user_id)
    stmt = plans.delete().where(plans.c.id == plan_id, plans.c.user_id == user_id)
    with engine.begin() as conn:
        result = conn.execute(stmt)
        if result.rowcount == 0:
            raise HTTPException(status_code=404, detail="Plan not found.")
    logger.info("Deleted plan %s for user %s", plan_id, user_id)
    return {"status": "deleted"}


@app.get("/dashboard", response_model=DashboardResponse)
def dashboard(x_user_id: str | None = Header(None, alias="x-user-id")) -> DashboardResponse:
    user_id = get_user_id(x_user_id)
    with engine.begin() as conn:
        account_rows = conn.execute(
            select(accounts)
            .where(accounts.c.user_id == user_id)
            .order_by(accounts.c.name.asc(), accounts.c.id.asc())
        ).mappings().all()
        recent_rows = fetch_transactions(conn, user_id, limit=RECENT_LIMIT)

    totals = balance_totals(account_rows)
    return DashboardResponse(
        total_balance=totals.total,
        cash_balance=totals.cash,
        ewallet_balance=totals.ewallet,
        top_accounts=[account_response(row) for row in top_accounts(account_rows)],
        recent_transactions=[transaction_response(row) for row in recent_rows],
    )
