from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal
import os
from typing import Iterable, Mapping, Optional

STOCK_PRICE_MAX_AGE_HOURS = float(os.getenv("STOCK_PRICE_MAX_AGE_HOURS", "24"))


class PriceSourceUnavailable(RuntimeError):
    """Raised when the price source cannot be queried."""


@dataclass(frozen=True)
class PriceQuote:
    price: Decimal
    change_percent: Optional[Decimal]
    fetched_at: datetime
    is_stale: bool
    hours_since_update: float


PriceCache = Mapping[str, PriceQuote]


def build_quote(
    price: Decimal,
    change_percent: Optional[Decimal],
    fetched_at: datetime,
    now: Optional[datetime] = None,
    max_age_hours: float = STOCK_PRICE_MAX_AGE_HOURS,
) -> PriceQuote:
    if fetched_at.tzinfo is None:
        fetched_at = fetched_at.replace(tzinfo=timezone.utc)
    current = now or datetime.now(timezone.utc)
    hours_since_update = (current - fetched_at).total_seconds() / 3600
    return PriceQuote(
        price=price,
        change_percent=change_percent,
        fetched_at=fetched_at,
        is_stale=hours_since_update > max_age_hours,
        hours_since_update=hours_since_update,
    )


def normalize_symbol(symbol: str) -> str:
    return symbol.strip().upper()


@dataclass(frozen=True)
class StaticPriceSource:
    """In-memory quotes keyed by symbol, matched case-insensitively."""

    quotes: Mapping[str, PriceQuote] = None

    def __post_init__(self) -> None:
        normalized = {normalize_symbol(symbol): quote for symbol, quote in (self.quotes or {}).items()}
        object.__setattr__(self, "quotes", normalized)

    def load_prices(self, symbols: Iterable[str]) -> dict[str, PriceQuote]:
        wanted = {normalize_symbol(symbol) for symbol in symbols}
        return {symbol: self.quotes[symbol] for symbol in wanted if symbol in self.quotes}
