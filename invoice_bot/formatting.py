"""Formatting helpers for amounts, quantities, dates and text wrapping."""

from __future__ import annotations

import math
from datetime import datetime
from decimal import ROUND_HALF_UP, Decimal
from typing import Any, List, Optional, Protocol

from dateutil import parser as dateutil_parser

DEFAULT_CURRENCY_SYMBOLS = {
    "USD": "$",
    "EUR": "€",
    "GBP": "£",
}

# Digits after the decimal point in the gateway's smallest unit.
CURRENCY_EXPONENTS = {
    "XTR": 0,
    "JPY": 0,
    "KRW": 0,
    "VND": 0,
}
DEFAULT_CURRENCY_EXPONENT = 2


class TextWidthProvider(Protocol):
    def text_width(self, text: str, size: int, bold: bool = False) -> float:
        ...


def currency_symbol(currency: str, unicode: bool = True) -> str:
    code = currency.upper()
    symbol = DEFAULT_CURRENCY_SYMBOLS.get(code)
    if symbol is None:
        return f"{code} "
    if not unicode and not symbol.isascii():
        return f"{code} "
    return symbol


def _cents(amount: float) -> Decimal:
    return Decimal(repr(float(amount))).quantize(Decimal("0.01"), rounding=ROUND_HALF_UP)


def fmt_money(amount: float, symbol: str) -> str:
    return f"{symbol}{_cents(amount):,.2f}"


def round_money(amount: float) -> str:
    """Round to two decimals, half up, as shown on the rendered document."""
    return f"{_cents(amount):.2f}"


def currency_exponent(currency: str) -> int:
    return CURRENCY_EXPONENTS.get(currency.upper(), DEFAULT_CURRENCY_EXPONENT)


def fits_minor_units(amount: float, currency: str) -> bool:
    """True if the displayed amount is a whole number of the currency's smallest unit."""
    cents = _cents(amount)
    return cents == cents.quantize(Decimal(1).scaleb(-currency_exponent(currency)))


def to_minor_units(amount: float, currency: str) -> int:
    exponent = currency_exponent(currency)
    scaled = Decimal(repr(float(amount))) * (Decimal(10) ** exponent)
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def fmt_qty(qty: Any) -> str:
    try:
        quantity = float(qty)
        if quantity.is_integer():
            return str(int(quantity))
        return str(quantity)
    except Exception:
        return str(qty)


def finite_number(value: Any) -> Optional[float]:
    """Return ``value`` as a finite float, or None if it is not one."""
    if isinstance(value, bool):
        return None
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    return number if math.isfinite(number) else None


def fmt_date(value: datetime) -> str:
    """Format a datetime as 'Mar 14, 2025'."""
    return value.strftime("%b %d, %Y")


def parse_timestamp(raw: Optional[str]) -> Optional[datetime]:
    if raw is None:
        return None
    return dateutil_parser.isoparse(raw)


def split_lines(text: str) -> List[str]:
    if not text:
        return []
    return [line for line in text.split("\n") if line.strip() != ""]


def wrap_text(
    fonts_obj: TextWidthProvider,
    text: str,
    max_width: float,
    font_size: int,
    bold: bool = False,
) -> List[str]:
    def line_width(value: str) -> float:
        return fonts_obj.text_width(value, font_size, bold=bold)

    def wrap_paragraph(paragraph: str) -> List[str]:
        words = paragraph.split()
        if not words:
            return [paragraph]

        lines: List[str] = []
        current = ""
        for word in words:
            candidate = word if not current else f"{current} {word}"
            if line_width(candidate) <= max_width:
                current = candidate
                continue

            if current:
                lines.append(current)
                current = word
                continue

            # a single word wider than the column is split by character
            chunk = ""
            for char in word:
                candidate_chunk = chunk + char
                if chunk and line_width(candidate_chunk) > max_width:
                    lines.append(chunk)
                    chunk = char
                else:
                    chunk = candidate_chunk
            current = chunk

        if current:
            lines.append(current)
        return lines

    result: List[str] = []
    for paragraph in text.split("\n"):
        result.extend(wrap_paragraph(paragraph))
    return result if result else [text]
