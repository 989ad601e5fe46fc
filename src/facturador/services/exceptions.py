from __future__ import annotations


class FacturadorError(Exception):
    """Base class for every error raised by the issuance engine."""


class ValidationError(FacturadorError):
    """Rejected synchronously, before any sequence number is consumed."""


class InvalidLineError(ValidationError):
    def __init__(self, message: str, index: int | None = None) -> None:
        super().__init__(message)
        self.index = index


class UnknownTaxRateError(ValidationError):
    def __init__(self, tax_class: str, on: object) -> None:
        super().__init__(f"No {tax_class} IVA rate in force on {on}")
        self.tax_class = tax_class
        self.on = on


class ExportValidationError(ValidationError):
    """Invoice is not numbered/chained (or was voided), so it cannot be exported."""


class InvoiceStateError(ValidationError):
    """Requested lifecycle change is not allowed in the invoice's current state."""


class AllocationConflictError(FacturadorError):
    """The issuer ledger could not be serialized; safe to retry."""


class ChainIntegrityError(FacturadorError):
    """Stored chain does not replay; issuance for the issuer must halt."""

    def __init__(
        self,
        issuer_id: str,
        message: str,
        fiscal_year: int | None = None,
        sequence_number: int | None = None,
    ) -> None:
        where = ""
        if sequence_number is not None:
            where = f" at {fiscal_year}/{sequence_number}"
        super().__init__(f"Chain integrity failure for {issuer_id}{where}: {message}")
        self.issuer_id = issuer_id
        self.fiscal_year = fiscal_year
        self.sequence_number = sequence_number
        self.reason = message


class LedgerCorruptError(ChainIntegrityError):
    """Ledger file cannot be parsed."""


class IssuerHaltedError(ChainIntegrityError):
    """Issuer was halted by an earlier integrity failure and not yet resumed."""


class AuthorityUnavailableError(FacturadorError):
    """Transient failure talking to the tax authority (network, timeout, 5xx, 429)."""


class AuthorityRejectError(FacturadorError):
    """The authority definitively rejected the record."""

    def __init__(self, message: str, code: str | None = None, response: dict | None = None) -> None:
        super().__init__(message)
        self.code = code
        self.response = response or {}
