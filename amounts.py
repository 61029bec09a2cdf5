"""Exact money values for the receipt allocation form.

Amounts are held as integers in the currency's minor unit (pence for GBP),
so sums never pass through floating point.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

# ISO code -> number of minor-unit digits
CURRENCY_EXPONENTS = {"GBP": 2, "USD": 2, "EUR": 2, "JPY": 0}
CURRENCY_SYMBOLS = {"GBP": "£", "USD": "$", "EUR": "€", "JPY": "¥"}
_SYMBOL_CODES = {symbol: code for code, symbol in CURRENCY_SYMBOLS.items()}
_MAX_WHOLE_DIGITS = 30

_LITERAL_RE = re.compile(
    r"""
    ^(?P<sign>[-+])?
    (?P<prefix>[A-Za-z]{3}(?=[\s\d.])|[£$€¥])?\s*
    (?P<inner_sign>[-+])?
    (?P<number>\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?|\.\d+)
    (?:\s*(?P<suffix>[A-Za-z]{3}))?$
    """,
    re.VERBOSE | re.ASCII,
)


class AmountError(ValueError):
    """Base class for money errors surfaced to the form."""


class CurrencyMismatchError(AmountError):
    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"Currency mismatch: expected {expected}, got {actual}")


class MalformedAmountError(AmountError):
    def __init__(self, text: str, reason: str = "is not a valid amount"):
        self.text = text
        self.reason = reason
        super().__init__(f"{text!r} {reason}")


def _exponent(currency: str) -> int:
    try:
        return CURRENCY_EXPONENTS[currency]
    except KeyError:
        raise MalformedAmountError(currency, "is not a supported currency") from None


@dataclass(frozen=True, slots=True)
class Money:
    """An amount in minor units plus its ISO currency code."""

    amount: int
    currency: str

    @classmethod
    def zero(cls, currency: str) -> Money:
        return cls(0, currency)

    def _check_currency(self, other: Money) -> None:
        if other.currency != self.currency:
            raise CurrencyMismatchError(self.currency, other.currency)

    def add(self, other: Money) -> Money:
        self._check_currency(other)
        return Money(self.amount + other.amount, self.currency)

    def subtract(self, other: Money) -> Money:
        self._check_currency(other)
        return Money(self.amount - other.amount, self.currency)

    __add__ = add
    __sub__ = subtract

    def is_zero(self) -> bool:
        return self.amount == 0

    def _digits(self) -> str:
        exp = CURRENCY_EXPONENTS.get(self.currency, 2)
        major, minor = divmod(abs(self.amount), 10**exp)
        if exp:
            return f"{major:,}.{minor:0{exp}d}"
        return f"{major:,}"

    def to_input(self) -> str:
        """Plain number for a text input, e.g. ``100.00`` (no symbol or grouping)."""
        return ("-" if self.amount < 0 else "") + self._digits().replace(",", "")

    def __str__(self) -> str:
        sign = "-" if self.amount < 0 else ""
        symbol = CURRENCY_SYMBOLS.get(self.currency)
        if symbol:
            return f"{sign}{symbol}{self._digits()}"
        return f"{sign}{self.currency} {self._digits()}"


def parse_money(text: str, default_currency: str) -> Money:
    """Parse a money literal such as ``100``, ``1,250.50``, ``£10.00`` or ``USD 5``.

    Text without a currency marker is read in ``default_currency``. Raises
    :class:`MalformedAmountError` for anything else, including more decimal
    places than the currency's minor unit allows.
    """

    raw = text
    text = (text or "").strip()
    match = _LITERAL_RE.match(text)
    if not match:
        raise MalformedAmountError(raw)
    if match["sign"] and match["inner_sign"]:
        raise MalformedAmountError(raw)
    if match["prefix"] and match["suffix"]:
        raise MalformedAmountError(raw)

    marker = match["prefix"] or match["suffix"]
    if marker is None:
        currency = default_currency
    elif marker in _SYMBOL_CODES:
        currency = _SYMBOL_CODES[marker]
    else:
        currency = marker.upper()
    exp = _exponent(currency)

    # exact integer conversion
    whole, _, frac = match["number"].replace(",", "").partition(".")
    if len(whole.lstrip("0")) > _MAX_WHOLE_DIGITS:
        raise MalformedAmountError(raw, "is too large")
    if len(frac.rstrip("0")) > exp:
        raise MalformedAmountError(raw, f"has more than {exp} decimal places")
    frac = frac[:exp].ljust(exp, "0")
    minor = int(whole or "0") * 10**exp + int(frac or "0")
    if (match["sign"] or match["inner_sign"]) == "-":
        minor = -minor
    return Money(minor, currency)
