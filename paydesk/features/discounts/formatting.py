"""Display formatting for money, discounts and billing intervals."""
from decimal import Decimal
from typing import Optional

from babel.numbers import format_currency as babel_format_currency

from paydesk.core.config import settings
from paydesk.models.promo import PromoCode


def _babel_locale(locale: Optional[str]) -> str:
    # Accept BCP 47 tags ("en-US") as well as POSIX ones ("en_US")
    return (locale or settings.DEFAULT_LOCALE).replace("-", "_")


def format_currency(amount: int, currency: str = "USD", locale: Optional[str] = None) -> str:
    """Render an amount in minor units, e.g. ``format_currency(1050, "USD") == "$10.50"``."""
    major = Decimal(amount) / Decimal(100)
    return babel_format_currency(major, currency.upper(), locale=_babel_locale(locale))


def format_discount(promo_code: PromoCode, locale: Optional[str] = None) -> str:
    if not promo_code.valid:
        return "Invalid"
    if promo_code.discount_type == "percentage":
        value = promo_code.discount_value
        shown = int(value) if float(value).is_integer() else value
        return f"{shown}% off"
    currency = promo_code.currency or settings.DEFAULT_CURRENCY
    return f"{format_currency(int(promo_code.discount_value), currency, locale)} off"


_INTERVAL_ADVERBS = {
    "day": "daily",
    "week": "weekly",
    "month": "monthly",
    "year": "yearly",
}


def format_plan_interval(interval: str, interval_count: int = 1) -> str:
    """Adverb for a single interval ("monthly"), else "every 3 months"."""
    if interval_count == 1 and interval in _INTERVAL_ADVERBS:
        return _INTERVAL_ADVERBS[interval]
    return f"every {interval_count} {interval}s"
