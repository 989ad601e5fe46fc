"""IVA computation.

Line bases are rounded individually, taxes are rounded once per rate group.
Everything uses ``ROUND_HALF_EVEN`` at two decimals.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass
from datetime import date
from decimal import ROUND_DOWN, ROUND_HALF_EVEN, Decimal

from facturador.models.invoice import DraftLine, InvoiceLine, TaxBreakdown, TaxClass, TaxGroup
from facturador.services.exceptions import InvalidLineError, UnknownTaxRateError

CENT = Decimal("0.01")
HUNDRED = Decimal("100")


def round2(value: Decimal) -> Decimal:
    return value.quantize(CENT, rounding=ROUND_HALF_EVEN)


@dataclass(frozen=True)
class RatePeriod:
    tax_class: TaxClass
    rate: Decimal  # percent
    valid_from: date
    valid_to: date | None = None  # inclusive

    def covers(self, on: date) -> bool:
        return self.valid_from <= on and (self.valid_to is None or on <= self.valid_to)


@dataclass(frozen=True)
class RateTable:
    """Time-versioned mapping from TaxClass to rate."""

    periods: tuple[RatePeriod, ...]

    def rate_for(self, tax_class: TaxClass, on: date) -> Decimal:
        """Return the rate in force for *tax_class* on *on*; the latest start date wins."""
        candidates = [p for p in self.periods if p.tax_class == tax_class and p.covers(on)]
        if not candidates:
            raise UnknownTaxRateError(tax_class.value, on)
        return max(candidates, key=lambda p: p.valid_from).rate

    @classmethod
    def from_dict(cls, d: dict) -> RateTable:
        """Build from tax_rates.yaml: ``{"rates": [{"class", "rate", "from", "to"?}]}``."""
        periods = []
        for item in d.get("rates", []):
            valid_to = item.get("to")
            periods.append(
                RatePeriod(
                    tax_class=TaxClass(item["class"]),
                    rate=Decimal(str(item["rate"])),
                    valid_from=_as_date(item["from"]),
                    valid_to=_as_date(valid_to) if valid_to else None,
                )
            )
        return cls(periods=tuple(periods))


def _as_date(value: object) -> date:
    # PyYAML already parses unquoted ISO dates
    if isinstance(value, date):
        return value
    return date.fromisoformat(str(value))


_RDL_20_2012 = date(2012, 9, 1)

DEFAULT_RATE_TABLE = RateTable(
    periods=(
        RatePeriod(TaxClass.GENERAL, Decimal("21.00"), _RDL_20_2012),
        RatePeriod(TaxClass.REDUCED, Decimal("10.00"), _RDL_20_2012),
        RatePeriod(TaxClass.SUPER_REDUCED, Decimal("4.00"), _RDL_20_2012),
        RatePeriod(TaxClass.MEDICAL, Decimal("4.00"), _RDL_20_2012),
    )
)


@dataclass(frozen=True)
class TaxResult:
    lines: tuple[InvoiceLine, ...]
    breakdown: TaxBreakdown


def _validate(index: int, line: DraftLine) -> None:
    if not line.description or not line.description.strip():
        raise InvalidLineError(f"Line {index + 1}: description is empty", index)
    if not line.quantity.is_finite() or line.quantity <= 0:
        raise InvalidLineError(f"Line {index + 1}: quantity must be positive, got {line.quantity}", index)
    if not line.unit_price.is_finite() or line.unit_price < 0:
        raise InvalidLineError(
            f"Line {index + 1}: unit price must not be negative, got {line.unit_price}", index
        )


def compute(lines: Sequence[DraftLine], rate_table: RateTable, issue_date: date) -> TaxResult:
    """Compute per-line amounts and the per-rate breakdown for a draft.

    Line taxes start truncated to the cent; the cents still missing to reach
    the group tax go one each to the lines with the largest remainders.
    """
    if not lines:
        raise InvalidLineError("Invoice has no lines")

    rates: list[Decimal] = []
    bases: list[Decimal] = []
    for i, line in enumerate(lines):
        _validate(i, line)
        rates.append(rate_table.rate_for(line.tax_class, issue_date))
        bases.append(round2(line.quantity * line.unit_price))

    # dict keeps first-seen order, which keeps the breakdown deterministic
    members: dict[Decimal, list[int]] = {}
    for i, rate in enumerate(rates):
        members.setdefault(rate, []).append(i)

    exact = [b * r / HUNDRED for b, r in zip(bases, rates, strict=True)]
    line_tax: list[Decimal] = [e.quantize(CENT, rounding=ROUND_DOWN) for e in exact]
    groups = []
    for rate, idx in members.items():
        group_base = sum((bases[i] for i in idx), Decimal("0.00"))
        group_tax = round2(group_base * rate / HUNDRED)
        missing = int((group_tax - sum((line_tax[i] for i in idx), Decimal("0.00"))) / CENT)
        # 0 <= missing <= len(idx); ties go to the earlier line
        for i in sorted(idx, key=lambda i: (line_tax[i] - exact[i], i))[:missing]:
            line_tax[i] += CENT
        groups.append(TaxGroup(rate=rate, base=group_base, tax=group_tax))

    computed = tuple(
        InvoiceLine(
            description=line.description.strip(),
            quantity=line.quantity,
            unit_price=line.unit_price,
            tax_class=line.tax_class,
            rate=rates[i],
            base=bases[i],
            tax=line_tax[i],
        )
        for i, line in enumerate(lines)
    )
    return TaxResult(lines=computed, breakdown=TaxBreakdown(groups=tuple(groups)))
