from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
import logging
from typing import Iterable, Mapping, Optional

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
    UniqueConstraint,
    and_,
    func,
    select,
)
from sqlalchemy.engine import Engine
from sqlalchemy.exc import SQLAlchemyError

from finboard.currency_conversion import normalize_currency
from finboard.models import (
    Account,
    AccountDefaults,
    Budget,
    Category,
    Holding,
    MonthlyIncomeGoal,
    RecurringTemplate,
    Transaction,
    TransactionType,
)
from finboard.months import month_start
from finboard.stock_prices import (
    STOCK_PRICE_MAX_AGE_HOURS,
    PriceQuote,
    PriceSourceUnavailable,
    build_quote,
    normalize_symbol,
)

logger = logging.getLogger(__name__)

metadata = MetaData()

accounts = Table(
    "accounts",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36)),
    Column("name", String(255), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("default_income_goal", Numeric(12, 2)),
    Column("default_income_goal_currency", String(3)),
    Column("created_at", DateTime, nullable=False, server_default=func.now()),
)

categories = Table(
    "categories",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("user_id", String(36)),
    Column("name", String(255), nullable=False),
    Column("type", String(20), nullable=False),
    Column("archived", Boolean, nullable=False, server_default="0"),
)

transactions = Table(
    "transactions",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("account_id", String(36), ForeignKey("accounts.id"), nullable=False),
    Column("category_id", String(36), ForeignKey("categories.id"), nullable=False),
    Column("type", String(20), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("date", Date, nullable=False),
    Column("month", Date, nullable=False),
    Column("description", String(500)),
    Column("deleted_at", DateTime),
)

budgets = Table(
    "budgets",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("account_id", String(36), ForeignKey("accounts.id"), nullable=False),
    Column("category_id", String(36), ForeignKey("categories.id"), nullable=False),
    Column("month", Date, nullable=False),
    Column("planned", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    UniqueConstraint("account_id", "category_id", "month", name="uq_budgets_account_category_month"),
)

recurring_templates = Table(
    "recurring_templates",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("account_id", String(36), ForeignKey("accounts.id"), nullable=False),
    Column("category_id", String(36), ForeignKey("categories.id"), nullable=False),
    Column("type", String(20), nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3)),
    Column("day_of_month", Integer, nullable=False),
    Column("is_active", Boolean, nullable=False, server_default="1"),
    Column("start_month", Date),
    Column("end_month", Date),
    Column("description", String(500)),
)

monthly_income_goals = Table(
    "monthly_income_goals",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("account_id", String(36), ForeignKey("accounts.id"), nullable=False),
    Column("month", Date, nullable=False),
    Column("amount", Numeric(12, 2), nullable=False),
    Column("currency", String(3), nullable=False),
    UniqueConstraint("account_id", "month", name="uq_monthly_income_goals_account_month"),
)

holdings = Table(
    "holdings",
    metadata,
    Column("id", String(36), primary_key=True),
    Column("account_id", String(36), ForeignKey("accounts.id"), nullable=False),
    Column("category_id", String(36), ForeignKey("categories.id"), nullable=False),
    Column("symbol", String(50), nullable=False),
    Column("quantity", Numeric(18, 8), nullable=False),
    Column("average_cost", Numeric(12, 5), nullable=False),
    Column("currency", String(3), nullable=False),
    Column("notes", String(500)),
    Column("deleted_at", DateTime),
)

stock_prices = Table(
    "stock_prices",
    metadata,
    Column("id", Integer, primary_key=True, autoincrement=True),
    Column("symbol", String(50), nullable=False),
    Column("price", Numeric(18, 4), nullable=False),
    Column("change_percent", Numeric(10, 4)),
    Column("currency", String(3), nullable=False, server_default="USD"),
    Column("fetched_at", DateTime, nullable=False),
    Column("source", String(50)),
)


def init_db(engine: Engine) -> None:
    metadata.create_all(engine)


def coerce_decimal(value: Decimal | int | str | None) -> Optional[Decimal]:
    if value is None:
        return None
    return value if isinstance(value, Decimal) else Decimal(str(value))


class SqlRecordStore:
    """Read-only record store over the ledger tables."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    def list_accounts(self, user_id: str | None = None) -> list[Account]:
        stmt = select(accounts).order_by(accounts.c.name.asc())
        if user_id is not None:
            stmt = stmt.where(accounts.c.user_id == user_id)
        rows = self._fetch(stmt)
        return [_account_from_row(row) for row in rows]

    def list_categories(
        self, user_id: str | None = None, include_archived: bool = False
    ) -> list[Category]:
        stmt = select(categories).order_by(categories.c.name.asc())
        if user_id is not None:
            stmt = stmt.where(categories.c.user_id == user_id)
        if not include_archived:
            stmt = stmt.where(categories.c.archived.is_(False))
        rows = self._fetch(stmt)
        return [_category_from_row(row) for row in rows]

    def list_transactions(
        self,
        start_month: date,
        end_month: date,
        account_id: str | None = None,
        type: str | None = None,
    ) -> list[Transaction]:
        stmt = (
            select(transactions)
            .where(
                transactions.c.month >= month_start(start_month),
                transactions.c.month <= month_start(end_month),
                transactions.c.deleted_at.is_(None),
            )
            .order_by(transactions.c.date.desc(), transactions.c.id.asc())
        )
        if account_id is not None:
            stmt = stmt.where(transactions.c.account_id == account_id)
        if type is not None:
            stmt = stmt.where(transactions.c.type == TransactionType.validate(type))
        rows = self._fetch(stmt)
        return [_transaction_from_row(row) for row in rows]

    def list_budgets(self, account_id: str, month: date) -> list[Budget]:
        stmt = (
            select(
                budgets,
                categories.c.name.label("category_name"),
                categories.c.type.label("category_type"),
            )
            .select_from(budgets.outerjoin(categories, budgets.c.category_id == categories.c.id))
            .where(
                budgets.c.account_id == account_id,
                budgets.c.month == month_start(month),
            )
        )
        rows = self._fetch(stmt)
        return [_budget_from_row(row) for row in rows]

    def list_recurring_templates(self, account_id: str) -> list[RecurringTemplate]:
        stmt = (
            select(recurring_templates)
            .where(recurring_templates.c.account_id == account_id)
            .order_by(recurring_templates.c.day_of_month.asc())
        )
        rows = self._fetch(stmt)
        return [_template_from_row(row) for row in rows]

    def get_monthly_income_goal(self, account_id: str, month: date) -> Optional[MonthlyIncomeGoal]:
        stmt = select(monthly_income_goals).where(
            monthly_income_goals.c.account_id == account_id,
            monthly_income_goals.c.month == month_start(month),
        )
        rows = self._fetch(stmt)
        if not rows:
            return None
        row = rows[0]
        return MonthlyIncomeGoal(
            account_id=row["account_id"],
            month=row["month"],
            amount=coerce_decimal(row["amount"]),
            currency=normalize_currency(row["currency"]),
        )

    def get_account_defaults(self, account_id: str) -> Optional[AccountDefaults]:
        stmt = select(
            accounts.c.currency,
            accounts.c.default_income_goal,
            accounts.c.default_income_goal_currency,
        ).where(accounts.c.id == account_id)
        rows = self._fetch(stmt)
        if not rows:
            return None
        row = rows[0]
        return AccountDefaults(
            default_income_goal=coerce_decimal(row["default_income_goal"]),
            currency=normalize_currency(row["default_income_goal_currency"] or row["currency"]),
        )

    def list_holdings(self, account_id: str | None = None) -> list[Holding]:
        stmt = (
            select(holdings)
            .where(holdings.c.deleted_at.is_(None))
            .order_by(holdings.c.symbol.asc())
        )
        if account_id is not None:
            stmt = stmt.where(holdings.c.account_id == account_id)
        rows = self._fetch(stmt)
        return [_holding_from_row(row) for row in rows]

    def _fetch(self, stmt) -> list[Mapping]:
        with self.engine.begin() as conn:
            rows = conn.execute(stmt).mappings().all()
        logger.debug("Fetched %d rows", len(rows))
        return rows


class SqlPriceSource:
    """Latest cached quote per symbol, read in a single query."""

    def __init__(self, engine: Engine, max_age_hours: float = STOCK_PRICE_MAX_AGE_HOURS) -> None:
        self.engine = engine
        self.max_age_hours = max_age_hours

    def load_prices(
        self, symbols: Iterable[str], now: datetime | None = None
    ) -> dict[str, PriceQuote]:
        wanted = sorted({normalize_symbol(symbol) for symbol in symbols})
        if not wanted:
            return {}
        symbol_key = func.upper(stock_prices.c.symbol)
        latest = (
            select(
                symbol_key.label("symbol_key"),
                func.max(stock_prices.c.fetched_at).label("latest_fetched_at"),
            )
            .where(symbol_key.in_(wanted))
            .group_by(symbol_key)
            .subquery()
        )
        stmt = (
            select(stock_prices)
            .join(
                latest,
                and_(
                    symbol_key == latest.c.symbol_key,
                    stock_prices.c.fetched_at == latest.c.latest_fetched_at,
                ),
            )
            .order_by(stock_prices.c.id.desc())
        )
        try:
            with self.engine.begin() as conn:
                rows = conn.execute(stmt).mappings().all()
        except SQLAlchemyError as exc:
            raise PriceSourceUnavailable("Stock price cache unavailable") from exc

        cache: dict[str, PriceQuote] = {}
        # Rows sharing the latest timestamp: the most recently inserted wins.
        for row in rows:
            symbol = normalize_symbol(row["symbol"])
            if symbol in cache:
                continue
            cache[symbol] = build_quote(
                price=coerce_decimal(row["price"]),
                change_percent=coerce_decimal(row["change_percent"]),
                fetched_at=row["fetched_at"],
                now=now,
                max_age_hours=self.max_age_hours,
            )
        logger.debug("Loaded %d of %d requested quotes", len(cache), len(wanted))
        return cache


def _account_from_row(row: Mapping) -> Account:
    goal_currency = row["default_income_goal_currency"]
    return Account(
        id=row["id"],
        name=row["name"],
        currency=normalize_currency(row["currency"]),
        default_income_goal=coerce_decimal(row["default_income_goal"]),
        default_income_goal_currency=normalize_currency(goal_currency) if goal_currency else None,
    )


def _category_from_row(row: Mapping) -> Category:
    return Category(
        id=row["id"],
        name=row["name"],
        type=TransactionType.validate(row["type"]),
        archived=bool(row["archived"]),
    )


def _transaction_from_row(row: Mapping) -> Transaction:
    txn_date = row["date"]
    month = row["month"] or month_start(txn_date)
    if month != month_start(txn_date):
        raise ValueError(f"Transaction {row['id']} month does not match its date.")
    return Transaction(
        id=row["id"],
        account_id=row["account_id"],
        category_id=row["category_id"],
        type=TransactionType.validate(row["type"]),
        amount=coerce_decimal(row["amount"]),
        currency=normalize_currency(row["currency"]),
        date=txn_date,
        month=month,
        description=row["description"],
    )


def _budget_from_row(row: Mapping) -> Budget:
    category_type = row.get("category_type")
    return Budget(
        id=row["id"],
        account_id=row["account_id"],
        category_id=row["category_id"],
        month=month_start(row["month"]),
        planned=coerce_decimal(row["planned"]),
        currency=normalize_currency(row["currency"]),
        category_name=row.get("category_name"),
        category_type=TransactionType.validate(category_type) if category_type else None,
    )


def _template_from_row(row: Mapping) -> RecurringTemplate:
    currency = row["currency"]
    return RecurringTemplate(
        id=row["id"],
        account_id=row["account_id"],
        category_id=row["category_id"],
        type=TransactionType.validate(row["type"]),
        amount=coerce_decimal(row["amount"]),
        day_of_month=row["day_of_month"],
        is_active=bool(row["is_active"]),
        start_month=row["start_month"],
        end_month=row["end_month"],
        currency=normalize_currency(currency) if currency else None,
        description=row["description"],
    )


def _holding_from_row(row: Mapping) -> Holding:
    return Holding(
        id=row["id"],
        account_id=row["account_id"],
        category_id=row["category_id"],
        symbol=row["symbol"],
        quantity=coerce_decimal(row["quantity"]),
        average_cost=coerce_decimal(row["average_cost"]),
        currency=normalize_currency(row["currency"]),
        notes=row["notes"],
    )
