from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from decimal import ROUND_HALF_UP, Decimal
import json
import logging
import os
import time
from typing import Iterable, Mapping
from urllib.error import HTTPError, URLError
from urllib.request import urlopen

logger = logging.getLogger(__name__)

MONEY_QUANTUM = Decimal("0.01")
FX_CACHE_TTL_SECONDS = int(os.getenv("FX_CACHE_TTL_SECONDS", str(12 * 60 * 60)))

DEFAULT_RATES: dict[str, Decimal] = {
    "USD": Decimal("1"),
    "EUR": Decimal("0.92"),
    "GBP": Decimal("0.79"),
    "JPY": Decimal("147.50"),
    "CAD": Decimal("1.34"),
    "AUD": Decimal("1.52"),
    "NZD": Decimal("1.64"),
    "CHF": Decimal("0.88"),
    "SEK": Decimal("10.45"),
}


class RateProviderUnavailable(RuntimeError):
    """Raised when a rate provider cannot fetch live rates."""


@dataclass(frozen=True)
class RateCache:
    """Exchange rates for one report, keyed by ``"FROM:TO"``.

    Built once per call for the full set of currencies the report touches,
    identity pairs included. A lookup for a pair that was never loaded raises
    ``KeyError``.
    """

    rates: Mapping[str, Decimal]
    as_of: datetime | None = None

    def rate(self, source_currency: str, target_currency: str) -> Decimal:
        return self.rates[rate_key(source_currency, target_currency)]

    @property
    def currencies(self) -> set[str]:
        return {key.split(":", 1)[0] for key in self.rates}


@dataclass(frozen=True)
class StaticRateProvider:
    """Deterministic, in-memory FX rates.

    Rates are expressed as target currency per 1 USD.
    """

    rates: Mapping[str, Decimal] = None

    def __post_init__(self) -> None:
        object.__setattr__(self, "rates", dict(self.rates or DEFAULT_RATES))

    def get_rate(self, currency: str, date: date | str | None = None) -> Decimal:
        normalized = normalize_currency(currency)
        try:
            return self.rates[normalized]
        except KeyError as exc:
            raise ValueError(f"Unsupported currency: {normalized}") from exc


@dataclass(frozen=True)
class CachedRates:
    rates: Mapping[str, Decimal]
    expires_at: float | None


@dataclass
class FrankfurterRateProvider:
    base_currency: str = "USD"
    base_url: str = "https://api.frankfurter.app"
    cache_ttl_seconds: int = FX_CACHE_TTL_SECONDS
    _cache: dict[tuple[str, str], CachedRates] = field(default_factory=dict)

    def get_rate(self, currency: str, date: date | str | None = None) -> Decimal:
        normalized = normalize_currency(currency)
        base_currency = normalize_currency(self.base_currency)
        if normalized == base_currency:
            return Decimal("1")

        date_key = _normalize_rate_date(date)
        rates = self._get_rates(base_currency, date_key)
        try:
            return rates[normalized]
        except KeyError as exc:
            raise ValueError(f"Unsupported currency: {normalized}") from exc

    def _get_rates(self, base_currency: str, date_key: str | None) -> Mapping[str, Decimal]:
        cache_key = (base_currency, date_key or "latest")
        cached = self._cache.get(cache_key)
        now = time.monotonic()
        if cached and (cached.expires_at is None or cached.expires_at > now):
            return cached.rates

        rates = self._fetch_rates(base_currency, date_key)
        expires_at = None
        if date_key is None:
            expires_at = now + self.cache_ttl_seconds
        self._cache[cache_key] = CachedRates(rates=rates, expires_at=expires_at)
        return rates

    def _fetch_rates(self, base_currency: str, date_key: str | None) -> Mapping[str, Decimal]:
        endpoint = date_key or "latest"
        url = f"{self.base_url}/{endpoint}?from={base_currency}"
        logger.debug("Fetching FX rates from %s", url)
        try:
            with urlopen(url, timeout=8) as response:
                payload = json.load(response)
        except (HTTPError, URLError, TimeoutError, json.JSONDecodeError) as exc:
            raise RateProviderUnavailable("Frankfurter API unavailable") from exc

        rates = payload.get("rates")
        if not isinstance(rates, dict):
            raise RateProviderUnavailable("Frankfurter response missing rates")

        parsed = {normalize_currency(code): Decimal(str(value)) for code, value in rates.items()}
        parsed[base_currency] = Decimal("1")
        return parsed


@dataclass(frozen=True)
class CompositeRateProvider:
    primary: StaticRateProvider | FrankfurterRateProvider
    fallback: StaticRateProvider

    def get_rate(self, currency: str, date: date | str | None = None) -> Decimal:
        try:
            return self.primary.get_rate(currency, date=date)
        except RateProviderUnavailable:
            logger.warning("Live FX rates unavailable, using static rate for %s", currency)
            return self.fallback.get_rate(currency, date=date)


RateProvider = StaticRateProvider | FrankfurterRateProvider | CompositeRateProvider


@dataclass(frozen=True)
class ProviderRateSource:
    """Rate source that builds a ``RateCache`` from a USD-based provider."""

    provider: RateProvider

    def load_rates(self, currencies: Iterable[str], date: date | str | None = None) -> RateCache:
        return load_rates(currencies, rate_provider=self.provider, date=date)


def load_rates(
    currencies: Iterable[str],
    rate_provider: RateProvider | None = None,
    date: date | str | None = None,
) -> RateCache:
    """Load every pair between ``currencies`` in one pass.

    With ``date`` the provider is asked for that day's rates and ``as_of``
    is that day; otherwise the latest rates, stamped with the load time.
    """
    provider = rate_provider or StaticRateProvider()
    rate_date = _normalize_rate_date(date)
    normalized = sorted({normalize_currency(currency) for currency in currencies})
    usd_rates = {currency: provider.get_rate(currency, date=rate_date) for currency in normalized}

    rates: dict[str, Decimal] = {}
    for source in normalized:
        for target in normalized:
            if source == target:
                rates[rate_key(source, target)] = Decimal("1")
            else:
                rates[rate_key(source, target)] = usd_rates[target] / usd_rates[source]
    logger.debug(
        "Loaded %d FX pairs for %s as of %s", len(rates), ",".join(normalized), rate_date or "latest"
    )
    if rate_date is None:
        as_of = datetime.now(timezone.utc)
    else:
        as_of = datetime.strptime(rate_date, "%Y-%m-%d").replace(tzinfo=timezone.utc)
    return RateCache(rates=rates, as_of=as_of)


def convert_amount(
    amount: Decimal | int | str,
    source_currency: str,
    target_currency: str,
    rates: RateCache,
) -> Decimal:
    """Convert through a preloaded cache, rounding the converted value to cents."""
    normalized_source = normalize_currency(source_currency)
    normalized_target = normalize_currency(target_currency)
    coerced_amount = _coerce_amount(amount)

    if normalized_source == normalized_target:
        return coerced_amount

    rate = rates.rate(normalized_source, normalized_target)
    return round_money(coerced_amount * rate)


def round_money(value: Decimal) -> Decimal:
    return _coerce_amount(value).quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def rate_key(source_currency: str, target_currency: str) -> str:
    return f"{source_currency}:{target_currency}"


def normalize_currency(value: str) -> str:
    normalized = value.strip().upper()
    if len(normalized) != 3 or not normalized.isalpha():
        raise ValueError("Currency must be a 3-letter ISO 4217 code.")
    return normalized


def _coerce_amount(amount: Decimal | int | str) -> Decimal:
    if isinstance(amount, Decimal):
        return amount
    if isinstance(amount, float):
        raise TypeError("Monetary amounts must not be floats.")
    return Decimal(str(amount))


def _normalize_rate_date(value: date | str | None) -> str | None:
    if value is None:
        return None
    if isinstance(value, date):
        return value.isoformat()
    try:
        parsed = datetime.strptime(value, "%Y-%m-%d").date()
    except ValueError as exc:
        raise ValueError("Date must be in YYYY-MM-DD format.") from exc
    return parsed.isoformat()
