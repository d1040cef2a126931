import logging
import os
from datetime import date, datetime
from decimal import Decimal

from fastapi import FastAPI, HTTPException, Query
from fastapi.middleware.cors import CORSMiddleware
from pydantic import BaseModel, ConfigDict
from sqlalchemy import create_engine

from finboard.currency_conversion import (
    CompositeRateProvider,
    FrankfurterRateProvider,
    ProviderRateSource,
    StaticRateProvider,
    normalize_currency,
)
from finboard.dashboard import DashboardUnavailable, get_dashboard_data, get_holdings_with_prices
from finboard.months import month_key
from finboard.store import SqlPriceSource, SqlRecordStore, init_db

logging.basicConfig(level=logging.INFO)
logger = logging.getLogger(__name__)

app = FastAPI()

frontend_origin = os.getenv("FRONTEND_ORIGIN", "http://localhost:3000")
app.add_middleware(
    CORSMiddleware,
    allow_origins=[frontend_origin],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

database_url = os.getenv("DATABASE_URL", "sqlite:///./finboard.db")
connect_args = {}
if database_url.startswith("sqlite"):
    connect_args = {"check_same_thread": False}

engine = create_engine(database_url, connect_args=connect_args)


def get_system_default_currency() -> str:
    raw = os.getenv("DEFAULT_CURRENCY", "USD")
    try:
        return normalize_currency(raw)
    except ValueError:
        return "USD"


SYSTEM_DEFAULT_CURRENCY = get_system_default_currency()
STORE = SqlRecordStore(engine)
PRICE_SOURCE = SqlPriceSource(engine)
RATE_SOURCE = ProviderRateSource(
    CompositeRateProvider(
        primary=FrankfurterRateProvider(),
        fallback=StaticRateProvider(),
    )
)


@app.on_event("startup")
def startup() -> None:
    init_db(engine)


class ApiModel(BaseModel):
    model_config = ConfigDict(from_attributes=True)


class AccountResponse(ApiModel):
    id: str
    name: str
    currency: str
    default_income_goal: Decimal | None = None
    default_income_goal_currency: str | None = None


class CategoryResponse(ApiModel):
    id: str
    name: str
    type: str
    archived: bool


class TransactionResponse(ApiModel):
    id: str
    account_id: str
    category_id: str
    type: str
    amount: Decimal
    currency: str
    date: date
    month: date
    description: str | None = None


class TransactionDisplayResponse(ApiModel):
    transaction: TransactionResponse
    converted_amount: Decimal
    display_currency: str


class RecurringTemplateResponse(ApiModel):
    id: str
    account_id: str
    category_id: str
    type: str
    amount: Decimal
    day_of_month: int
    is_active: bool
    start_month: date | None = None
    end_month: date | None = None
    currency: str | None = None
    description: str | None = None


class CategoryRemainingResponse(ApiModel):
    id: str
    name: str
    planned: Decimal
    actual: Decimal
    remaining: Decimal


class StatBreakdownResponse(ApiModel):
    type: str
    income: Decimal | None = None
    expense: Decimal | None = None
    net: Decimal | None = None
    actual_income: Decimal | None = None
    actual_expense: Decimal | None = None
    remaining_budgeted_expense: Decimal | None = None
    income_source: str | None = None
    projected: Decimal | None = None
    total_planned: Decimal | None = None
    total_actual: Decimal | None = None
    total_remaining: Decimal | None = None
    categories: list[CategoryRemainingResponse] | None = None
    planned_income: Decimal | None = None
    planned_expense: Decimal | None = None
    target: Decimal | None = None


class MonetaryStatResponse(ApiModel):
    label: str
    amount: Decimal
    variant: str
    helper: str
    breakdown: StatBreakdownResponse | None = None


class BudgetSummaryResponse(ApiModel):
    budget_id: str
    account_id: str
    account_name: str | None = None
    category_id: str
    category_name: str
    category_type: str | None = None
    planned: Decimal
    actual: Decimal
    remaining: Decimal
    month: str
    currency: str


class ComparisonResponse(ApiModel):
    previous_month: str
    previous_net: Decimal
    change: Decimal


class HistoryPointResponse(ApiModel):
    month: str
    income: Decimal
    expense: Decimal
    net: Decimal


class IncomeGoalResponse(ApiModel):
    amount: Decimal
    currency: str
    is_default: bool
    source: str


class DashboardResponse(ApiModel):
    month: str
    preferred_currency: str
    stats: list[MonetaryStatResponse]
    budgets: list[BudgetSummaryResponse]
    comparison: ComparisonResponse
    history: list[HistoryPointResponse]
    accounts: list[AccountResponse]
    categories: list[CategoryResponse]
    transactions: list[TransactionDisplayResponse]
    recurring_templates: list[RecurringTemplateResponse]
    actual_income: Decimal
    monthly_income_goal: IncomeGoalResponse
    exchange_rate_last_update: datetime | None = None


class HoldingResponse(ApiModel):
    id: str
    account_id: str
    account_name: str | None = None
    category_id: str
    category_name: str | None = None
    symbol: str
    quantity: Decimal
    average_cost: Decimal
    currency: str
    notes: str | None = None
    current_price: Decimal | None = None
    change_percent: Decimal | None = None
    market_value: Decimal
    cost_basis: Decimal
    gain_loss: Decimal
    gain_loss_percent: Decimal
    price_age: datetime | None = None
    is_stale: bool
    current_price_converted: Decimal | None = None
    market_value_converted: Decimal
    cost_basis_converted: Decimal
    gain_loss_converted: Decimal


def resolve_preferred_currency(value: str | None) -> str:
    if not value:
        return SYSTEM_DEFAULT_CURRENCY
    return normalize_currency(value)


@app.get("/health")
def health() -> dict:
    return {"status": "ok"}


@app.get("/dashboard", response_model=DashboardResponse)
async def dashboard(
    account_id: str = Query(...),
    month: str | None = Query(None),
    currency: str | None = Query(None),
) -> DashboardResponse:
    try:
        preferred_currency = resolve_preferred_currency(currency)
        report = await get_dashboard_data(
            STORE,
            RATE_SOURCE,
            account_id,
            month or month_key(date.today()),
            preferred_currency,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except DashboardUnavailable as exc:
        logger.warning("Dashboard unavailable for account %s: %s", account_id, exc.__cause__)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return DashboardResponse.model_validate(report)


@app.get("/holdings", response_model=list[HoldingResponse])
async def holdings(
    account_id: str | None = Query(None),
    currency: str | None = Query(None),
) -> list[HoldingResponse]:
    try:
        preferred_currency = resolve_preferred_currency(currency)
        valuations = await get_holdings_with_prices(
            STORE,
            PRICE_SOURCE,
            RATE_SOURCE,
            preferred_currency=preferred_currency,
            account_id=account_id,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except DashboardUnavailable as exc:
        logger.warning("Holdings unavailable: %s", exc.__cause__)
        raise HTTPException(status_code=503, detail=str(exc)) from exc
    return [HoldingResponse.model_validate(valuation) for valuation in valuations]
