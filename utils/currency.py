from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal
from typing import Any, Dict

# Catalog prices are stored in EUR. Same static table as the intake form so
# the summary page and the Stripe session agree.
FALLBACK_RATES: Dict[str, float] = {
    "EUR": 1.0,
    "USD": 1.10,
    "GBP": 0.85,
    "CAD": 1.50,
    "AUD": 1.65,
    "CHF": 0.95,
    "JPY": 165.0,
    "CNY": 7.80,
}

SYMBOLS: Dict[str, str] = {
    "EUR": "€",
    "USD": "$",
    "GBP": "£",
    "CAD": "C$",
    "AUD": "A$",
    "CHF": "CHF ",
    "JPY": "¥",
    "CNY": "¥",
}

ZERO_DECIMAL_CURRENCIES = frozenset({"JPY"})
DEFAULT_CURRENCY = "EUR"


def normalize_currency(value: Any) -> str:
    if value is None or not str(value).strip():
        return DEFAULT_CURRENCY
    currency = str(value).strip().upper()
    if currency not in FALLBACK_RATES:
        valid = ", ".join(FALLBACK_RATES.keys())
        raise ValueError(f"Unsupported currency '{currency}'. Valid currencies: {valid}")
    return currency


def _round_half_up(amount: float, places: int) -> float:
    quantum = Decimal(1).scaleb(-places)
    return float(Decimal(str(amount)).quantize(quantum, rounding=ROUND_HALF_UP))


def convert_from_eur(amount_eur: float, currency: str) -> float:
    if not amount_eur or currency == DEFAULT_CURRENCY:
        return amount_eur or 0.0
    rate = FALLBACK_RATES.get(currency, 1.0)
    if currency in ZERO_DECIMAL_CURRENCIES:
        return _round_half_up(amount_eur * rate, 0)
    return _round_half_up(amount_eur * rate, 2)


def to_minor_units(amount: float, currency: str) -> int:
    """Convert a major-unit amount into the integer unit Stripe expects."""
    value = Decimal(str(amount))
    if currency not in ZERO_DECIMAL_CURRENCIES:
        value = value * 100
    return int(value.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def from_minor_units(amount: int | None, currency: str) -> float:
    if not amount:
        return 0.0
    if currency in ZERO_DECIMAL_CURRENCIES:
        return float(amount)
    return amount / 100


def format_amount(amount: float, currency: str) -> str:
    symbol = SYMBOLS.get(currency, f"{currency} ")
    if currency in ZERO_DECIMAL_CURRENCIES or currency == "CNY":
        return f"{symbol}{int(_round_half_up(amount, 0))}"
    return f"{symbol}{amount:.2f}"
