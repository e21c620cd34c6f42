"""Locale-aware money and date formatting for rendered documents."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any

import structlog

LOGGER = structlog.get_logger(__name__)


@dataclass(frozen=True, slots=True)
class LocaleConventions:
    decimal_separator: str
    group_separator: str
    currency_pattern: str
    date_format: str
    language: str


_LOCALES: dict[str, LocaleConventions] = {
    "de-DE": LocaleConventions(",", ".", "{amount} {symbol}", "%d.%m.%Y", "de"),
    "de-AT": LocaleConventions(",", ".", "{symbol} {amount}", "%d.%m.%Y", "de"),
    "de-CH": LocaleConventions(".", "’", "{symbol} {amount}", "%d.%m.%Y", "de"),
    "en-US": LocaleConventions(".", ",", "{symbol}{amount}", "%m/%d/%Y", "en"),
    "en-GB": LocaleConventions(".", ",", "{symbol}{amount}", "%d/%m/%Y", "en"),
}
_DEFAULT_LOCALE = "de-DE"

_CURRENCY_SYMBOLS = {"EUR": "€", "USD": "$", "GBP": "£", "CHF": "CHF"}


def conventions_for(locale: str | None) -> LocaleConventions:
    """Return the conventions for ``locale``, falling back by language."""

    if locale in _LOCALES:
        return _LOCALES[locale]
    language = (locale or "").split("-")[0].split("_")[0].lower()
    for candidate in _LOCALES.values():
        if candidate.language == language:
            return candidate
    return _LOCALES[_DEFAULT_LOCALE]


def _group_digits(digits: str, separator: str) -> str:
    groups = []
    while len(digits) > 3:
        groups.insert(0, digits[-3:])
        digits = digits[:-3]
    groups.insert(0, digits)
    return separator.join(groups)


def format_decimal(value: Any, locale: str | None = None, places: int = 2) -> str:
    """Format a number with grouping and a fixed number of fractional digits."""

    conventions = conventions_for(locale)
    quantum = Decimal(1).scaleb(-places)
    amount = Decimal(str(value or 0)).quantize(quantum, rounding=ROUND_HALF_UP)
    sign = "-" if amount < 0 else ""
    integral, _, fraction = f"{abs(amount):f}".partition(".")
    text = _group_digits(integral, conventions.group_separator)
    if places:
        text = f"{text}{conventions.decimal_separator}{fraction}"
    return f"{sign}{text}"


def format_money(value: Any, currency: str = "EUR", locale: str | None = None) -> str:
    """Format ``value`` as a two-decimal currency amount, e.g. ``1.234,56 €``."""

    conventions = conventions_for(locale)
    text = format_decimal(value, locale)
    sign = ""
    if text.startswith("-"):
        sign, text = "-", text[1:]
    symbol = _CURRENCY_SYMBOLS.get(currency.upper(), currency.upper())
    return sign + conventions.currency_pattern.format(amount=text, symbol=symbol)


def format_percent(value: Any, locale: str | None = None) -> str:
    """Format a tax rate without trailing zeros (``19``, ``7,5``)."""

    conventions = conventions_for(locale)
    try:
        rate = Decimal(str(value)).normalize()
    except (InvalidOperation, ValueError):
        return str(value)
    text = f"{rate:f}"
    return text.replace(".", conventions.decimal_separator)


def format_date(value: Any, locale: str | None = None) -> str:
    """Format a date for print; never raises, returns ``""`` for bad input."""

    if value is None or value == "":
        return ""
    try:
        if isinstance(value, datetime):
            parsed: date = value.date()
        elif isinstance(value, date):
            parsed = value
        else:
            parsed = datetime.fromisoformat(str(value)).date()
        return parsed.strftime(conventions_for(locale).date_format)
    except (TypeError, ValueError, OverflowError) as exc:
        LOGGER.debug("date_format_failed", value=repr(value), error=str(exc))
        return ""


__all__ = [
    "LocaleConventions",
    "conventions_for",
    "format_date",
    "format_decimal",
    "format_money",
    "format_percent",
]
