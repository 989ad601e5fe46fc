from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import date
from decimal import Decimal
from enum import StrEnum

from facturador.models.counterparty import Counterparty
from facturador.models.issuer import Issuer


class TaxClass(StrEnum):
    """Closed set of IVA classifications a line can carry."""

    GENERAL = "general"
    REDUCED = "reduced"
    SUPER_REDUCED = "super_reduced"
    MEDICAL = "medical"


class InvoiceType(StrEnum):
    """Verifactu TipoFactura."""

    COMPLETE = "F1"
    CORRECTIVE = "R1"


class InvoiceStatus(StrEnum):
    DRAFT = "DRAFT"
    NUMBERED = "NUMBERED"
    SUBMITTED = "SUBMITTED"
    FAILED = "FAILED"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    REJECTED = "REJECTED"
    EXPORTED = "EXPORTED"
    VOIDED = "VOIDED"


# Status only moves to an equal or higher rank; FAILED and SUBMITTED share a
# rank so retries can flip between them.
_STATUS_RANK = {
    InvoiceStatus.DRAFT: 0,
    InvoiceStatus.NUMBERED: 1,
    InvoiceStatus.SUBMITTED: 2,
    InvoiceStatus.FAILED: 2,
    InvoiceStatus.ACKNOWLEDGED: 3,
    InvoiceStatus.REJECTED: 3,
    InvoiceStatus.EXPORTED: 4,
}


@dataclass(frozen=True)
class DraftLine:
    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_class: TaxClass = TaxClass.GENERAL

    @classmethod
    def from_dict(cls, d: dict) -> DraftLine:
        return cls(
            description=str(d["description"]),
            quantity=Decimal(str(d.get("quantity", "1"))),
            unit_price=Decimal(str(d["unit_price"])),
            tax_class=TaxClass(d.get("tax_class", TaxClass.GENERAL.value)),
        )


@dataclass(frozen=True)
class InvoiceDraft:
    """Unnumbered invoice as submitted by the caller."""

    issuer: Issuer
    counterparty: Counterparty
    issue_date: date
    lines: tuple[DraftLine, ...]
    due_date: date | None = None
    invoice_type: InvoiceType = InvoiceType.COMPLETE
    corrects: str | None = None
    correction_reason: str | None = None
    notes: str | None = None


@dataclass(frozen=True)
class InvoiceLine:
    description: str
    quantity: Decimal
    unit_price: Decimal
    tax_class: TaxClass
    rate: Decimal  # percent in force at issuance, e.g. Decimal("21.00")
    base: Decimal
    tax: Decimal

    @property
    def total(self) -> Decimal:
        return self.base + self.tax

    def to_dict(self) -> dict:
        return {
            "description": self.description,
            "quantity": str(self.quantity),
            "unit_price": str(self.unit_price),
            "tax_class": self.tax_class.value,
            "rate": f"{self.rate:.2f}",
            "base": f"{self.base:.2f}",
            "tax": f"{self.tax:.2f}",
            "total": f"{self.total:.2f}",
        }

    @classmethod
    def from_dict(cls, d: dict) -> InvoiceLine:
        return cls(
            description=d["description"],
            quantity=Decimal(d["quantity"]),
            unit_price=Decimal(d["unit_price"]),
            tax_class=TaxClass(d["tax_class"]),
            rate=Decimal(d["rate"]),
            base=Decimal(d["base"]),
            tax=Decimal(d["tax"]),
        )


@dataclass(frozen=True)
class TaxGroup:
    rate: Decimal
    base: Decimal
    tax: Decimal

    def to_dict(self) -> dict:
        return {"rate": f"{self.rate:.2f}", "base": f"{self.base:.2f}", "tax": f"{self.tax:.2f}"}

    @classmethod
    def from_dict(cls, d: dict) -> TaxGroup:
        return cls(rate=Decimal(d["rate"]), base=Decimal(d["base"]), tax=Decimal(d["tax"]))


@dataclass(frozen=True)
class TaxBreakdown:
    groups: tuple[TaxGroup, ...]

    @property
    def base(self) -> Decimal:
        return sum((g.base for g in self.groups), Decimal("0.00"))

    @property
    def tax(self) -> Decimal:
        return sum((g.tax for g in self.groups), Decimal("0.00"))

    @property
    def total(self) -> Decimal:
        return self.base + self.tax

    def to_dict(self) -> dict:
        return {
            "groups": [g.to_dict() for g in self.groups],
            "base": f"{self.base:.2f}",
            "tax": f"{self.tax:.2f}",
            "total": f"{self.total:.2f}",
        }

    @classmethod
    def from_dict(cls, d: dict) -> TaxBreakdown:
        return cls(groups=tuple(TaxGroup.from_dict(g) for g in d["groups"]))


@dataclass(frozen=True)
class Invoice:
    id: str
    issuer: Issuer
    counterparty: Counterparty
    issue_date: date
    lines: tuple[InvoiceLine, ...]
    breakdown: TaxBreakdown
    status: InvoiceStatus = InvoiceStatus.DRAFT
    due_date: date | None = None
    invoice_type: InvoiceType = InvoiceType.COMPLETE
    currency: str = "EUR"
    notes: str | None = None

    # Corrections reference the original by invoice number
    corrects: str | None = None
    correction_reason: str | None = None

    # Assigned by the ledger transaction
    sequence_number: int | None = None
    invoice_number: str | None = None
    chain_hash: str | None = None

    # Set after issuance
    authority_reference: str | None = None
    authority_timestamp: str | None = None
    facturae_document_path: str | None = None
    void_reason: str | None = None

    @property
    def fiscal_year(self) -> int:
        return self.issue_date.year

    @property
    def is_numbered(self) -> bool:
        return self.sequence_number is not None and self.chain_hash is not None

    def advance(self, status: InvoiceStatus, **changes) -> Invoice:
        """Return a copy moved to *status*; lower-ranked statuses are ignored.

        Fields in *changes* are applied regardless, so a late acknowledgement
        still records its reference on an already exported invoice.
        """
        if self.status == InvoiceStatus.VOIDED:
            return replace(self, **changes)
        if status != InvoiceStatus.VOIDED and _STATUS_RANK[status] < _STATUS_RANK[self.status]:
            return replace(self, **changes)
        return replace(self, status=status, **changes)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "issuer": self.issuer.to_dict(),
            "counterparty": self.counterparty.to_dict(),
            "issue_date": self.issue_date.isoformat(),
            "due_date": self.due_date.isoformat() if self.due_date else None,
            "lines": [line.to_dict() for line in self.lines],
            "breakdown": self.breakdown.to_dict(),
            "status": self.status.value,
            "invoice_type": self.invoice_type.value,
            "currency": self.currency,
            "notes": self.notes,
            "corrects": self.corrects,
            "correction_reason": self.correction_reason,
            "sequence_number": self.sequence_number,
            "invoice_number": self.invoice_number,
            "chain_hash": self.chain_hash,
            "authority_reference": self.authority_reference,
            "authority_timestamp": self.authority_timestamp,
            "facturae_document_path": self.facturae_document_path,
            "void_reason": self.void_reason,
        }

    @classmethod
    def from_dict(cls, d: dict) -> Invoice:
        return cls(
            id=d["id"],
            issuer=Issuer.from_dict(d["issuer"]),
            counterparty=Counterparty.from_dict(d["counterparty"]),
            issue_date=date.fromisoformat(d["issue_date"]),
            due_date=date.fromisoformat(d["due_date"]) if d.get("due_date") else None,
            lines=tuple(InvoiceLine.from_dict(x) for x in d["lines"]),
            breakdown=TaxBreakdown.from_dict(d["breakdown"]),
            status=InvoiceStatus(d["status"]),
            invoice_type=InvoiceType(d.get("invoice_type", "F1")),
            currency=d.get("currency", "EUR"),
            notes=d.get("notes"),
            corrects=d.get("corrects"),
            correction_reason=d.get("correction_reason"),
            sequence_number=d.get("sequence_number"),
            invoice_number=d.get("invoice_number"),
            chain_hash=d.get("chain_hash"),
            authority_reference=d.get("authority_reference"),
            authority_timestamp=d.get("authority_timestamp"),
            facturae_document_path=d.get("facturae_document_path"),
            void_reason=d.get("void_reason"),
        )
