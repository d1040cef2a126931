from __future__ import annotations

from dataclasses import dataclass
from datetime import date
from decimal import Decimal
from typing import Iterator, Sequence

from finboard.currency_conversion import RateCache, convert_amount, normalize_currency
from finboard.models import EXPENSE, INCOME, Transaction
from finboard.months import month_key, month_start, shift_month

HISTORY_MONTHS = 6
ZERO = Decimal("0")


@dataclass(frozen=True)
class MonthlyHistoryPoint:
    month: str
    income: Decimal
    expense: Decimal
    net: Decimal


class HistoryWindow:
    """The ``months`` months ending at ``end_month``, oldest first.

    Every iteration recomputes each month from the full transaction set, so
    the window can be walked any number of times and never skips a month.
    """

    def __init__(
        self,
        transactions: Sequence[Transaction],
        end_month: date,
        preferred_currency: str,
        rates: RateCache,
        months: int = HISTORY_MONTHS,
    ) -> None:
        if months < 1:
            raise ValueError("History window must cover at least one month.")
        self.transactions = transactions
        self.end_month = month_start(end_month)
        self.preferred_currency = normalize_currency(preferred_currency)
        self.rates = rates
        self.width = months

    def months(self) -> list[date]:
        return [shift_month(self.end_month, -offset) for offset in range(self.width - 1, -1, -1)]

    def __len__(self) -> int:
        return self.width

    def __iter__(self) -> Iterator[MonthlyHistoryPoint]:
        for month in self.months():
            yield self._point_for(month)

    def _point_for(self, month: date) -> MonthlyHistoryPoint:
        income = ZERO
        expense = ZERO
        for txn in self.transactions:
            if month_start(txn.month) != month:
                continue
            amount = convert_amount(txn.amount, txn.currency, self.preferred_currency, self.rates)
            if txn.type == INCOME:
                income += amount
            elif txn.type == EXPENSE:
                expense += amount
        return MonthlyHistoryPoint(
            month=month_key(month),
            income=income,
            expense=expense,
            net=income - expense,
        )


def build_history(
    transactions: Sequence[Transaction],
    end_month: date,
    preferred_currency: str,
    rates: RateCache,
    months: int = HISTORY_MONTHS,
) -> list[MonthlyHistoryPoint]:
    return list(HistoryWindow(transactions, end_month, preferred_currency, rates, months=months))
