from __future__ import annotations

from decimal import Decimal


def format_eur(value: str | Decimal) -> str:
    """Format an amount the Spanish way: 1.234,56 €."""
    d = Decimal(value)
    formatted = f"{d:,.2f}".replace(",", "X").replace(".", ",").replace("X", ".")
    return f"{formatted} €"


def format_rate(value: str | Decimal) -> str:
    """Format a percentage rate: 21 %, 5,5 %."""
    d = Decimal(value).normalize()
    text = format(d, "f").replace(".", ",")
    return f"{text} %"
