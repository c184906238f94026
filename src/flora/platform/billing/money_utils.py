"""
Money and currency utilities using py-moneyed and Babel.

Renewal amounts are stored and charged in minor units (cents); these helpers
convert them to Money objects and format them for customer-facing messages.
"""

from decimal import Decimal
from typing import Any

from babel import Locale
from babel.core import UnknownLocaleError
from babel.numbers import format_currency, get_currency_precision
from moneyed import Currency, Money, get_currency
from moneyed.classes import CurrencyDoesNotExist

# Default locale for formatting
DEFAULT_LOCALE = "en_AU"
DEFAULT_CURRENCY = "AUD"


class MoneyHandler:
    """Central handler for money operations with proper error handling."""

    def __init__(
        self, default_currency: str = DEFAULT_CURRENCY, default_locale: str = DEFAULT_LOCALE
    ) -> None:
        self.default_currency = self._validate_currency(default_currency)
        self.default_locale = self._validate_locale(default_locale)

    def _validate_currency(self, currency_code: str) -> Currency:
        """Validate and return Currency object."""
        try:
            return get_currency(currency_code.upper())
        except CurrencyDoesNotExist:
            raise ValueError(f"Invalid currency code: {currency_code}")

    def _validate_locale(self, locale_code: str) -> str:
        """Validate locale code."""
        try:
            Locale.parse(locale_code)
            return locale_code
        except (UnknownLocaleError, ValueError):
            return DEFAULT_LOCALE

    def money_from_minor_units(self, minor_units: int, currency: str | None = None) -> Money:
        """Create Money from minor units (e.g., cents)."""
        validated_currency = self._validate_currency(currency or self.default_currency.code)
        precision = get_currency_precision(validated_currency.code)
        amount = Decimal(minor_units) / Decimal(10**precision)
        return Money(amount=amount, currency=validated_currency)

    def format_money(self, money: Money, locale: str | None = None, **kwargs: Any) -> str:
        """Format Money object with locale-aware formatting."""
        validated_locale = self._validate_locale(locale or self.default_locale)

        try:
            return format_currency(
                number=money.amount, currency=money.currency.code, locale=validated_locale, **kwargs
            )
        except (TypeError, ValueError):
            # Fallback to simple formatting if locale issues
            return f"{money.currency.code} {money.amount}"


# Global instance for convenience
money_handler = MoneyHandler()


def format_cents(amount_cents: int, currency: str | None = None, locale: str | None = None) -> str:
    """Format an amount in minor units, e.g. ``format_cents(4000, "AUD") == "$40.00"``."""
    money = money_handler.money_from_minor_units(amount_cents, currency)
    return money_handler.format_money(money, locale)


__all__ = ["MoneyHandler", "money_handler", "format_cents"]
