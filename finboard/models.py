from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Optional

INCOME = "income"
EXPENSE = "expense"


class TransactionType:
    values = {INCOME, EXPENSE}

    @classmethod
    def validate(cls, value: str) -> str:
        normalized = value.strip().lower()
        if normalized not in cls.values:
            raise ValueError("Invalid transaction type.")
        return normalized


@dataclass(frozen=True)
class Account:
    id: str
    name: str
    currency: str
    default_income_goal: Optional[Decimal] = None
    default_income_goal_currency: Optional[str] = None


@dataclass(frozen=True)
class AccountDefaults:
    default_income_goal: Optional[Decimal]
    currency: str


@dataclass(frozen=True)
class Category:
    id: str
    name: str
    type: str
    archived: bool = False


@dataclass(frozen=True)
class Transaction:
    id: str
    account_id: str
    category_id: str
    type: str
    amount: Decimal
    currency: str
    date: date
    month: date
    description: Optional[str] = None


@dataclass(frozen=True)
class Budget:
    id: str
    account_id: str
    category_id: str
    month: date
    planned: Decimal
    currency: str
    category_name: Optional[str] = None
    category_type: Optional[str] = None


@dataclass(frozen=True)
class RecurringTemplate:
    id: str
    account_id: str
    category_id: str
    type: str
    amount: Decimal
    day_of_month: int
    is_active: bool = True
    start_month: Optional[date] = None
    end_month: Optional[date] = None
    currency: Optional[str] = None
    description: Optional[str] = None


@dataclass(frozen=True)
class MonthlyIncomeGoal:
    account_id: str
    month: date
    amount: Decimal
    currency: str


@dataclass(frozen=True)
class Holding:
    id: str
    account_id: str
    category_id: str
    symbol: str
    quantity: Decimal
    average_cost: Decimal
    currency: str
    notes: Optional[str] = None
