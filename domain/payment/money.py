"""
金额换算与展示（最小货币单位 <-> 显示文本）
"""
from __future__ import annotations

from decimal import Decimal, ROUND_HALF_UP

from domain.payment.entity import CurrencyCode, parse_currency


# Zero-decimal currencies; everything else uses two decimals
_EXPONENT = {CurrencyCode.JPY: 0}

# en-US rendering of the currency symbol
_SYMBOL = {
    CurrencyCode.USD: "$",
    CurrencyCode.EUR: "€",
    CurrencyCode.GBP: "£",
    CurrencyCode.CAD: "CA$",
    CurrencyCode.AUD: "A$",
    CurrencyCode.JPY: "¥",
    CurrencyCode.CHF: "CHF ",
    CurrencyCode.INR: "₹",
}


def currency_exponent(currency: str | CurrencyCode) -> int:
    return _EXPONENT.get(parse_currency(currency), 2)


def to_major_units(amount_minor: int, currency: str | CurrencyCode) -> Decimal:
    exponent = currency_exponent(currency)
    return (Decimal(amount_minor) / (Decimal(10) ** exponent)).quantize(
        Decimal(1).scaleb(-exponent)
    )


def to_minor_units(amount: Decimal, currency: str | CurrencyCode) -> int:
    exponent = currency_exponent(currency)
    scaled = Decimal(amount) * (Decimal(10) ** exponent)
    return int(scaled.quantize(Decimal(1), rounding=ROUND_HALF_UP))


def format_amount(amount_minor: int, currency: str | CurrencyCode) -> str:
    """Render minor units as en-US currency text, e.g. 1000/USD -> "$10.00"."""
    code = parse_currency(currency)
    exponent = currency_exponent(code)
    value = to_major_units(amount_minor, code)
    sign = "-" if value < 0 else ""
    body = f"{abs(value):,.{exponent}f}"
    return f"{sign}{_SYMBOL[code]}{body}"
