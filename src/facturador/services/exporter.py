"""Facturae export for numbered invoices.

Output lives under ``<facturae_dir>/<issuer>/`` with a name derived only from
the invoice, so exporting the same invoice twice rewrites the same file with
the same bytes.
"""

from __future__ import annotations

import logging
import os
from collections.abc import Callable
from pathlib import Path

from facturador.config import BillingSettings, get_cert_password, get_cert_path, get_facturae_dir
from facturador.models.invoice import Invoice, InvoiceStatus
from facturador.services.exceptions import ExportValidationError
from facturador.services.facturae_builder import build_facturae, to_bytes
from facturador.services.xml_signer import sign_facturae
from facturador.utils.certificate import load_pfx

logger = logging.getLogger(__name__)

Credentials = Callable[[], tuple[str, str]]


def _default_credentials() -> tuple[str, str]:
    return get_cert_path(), get_cert_password()


def export_filename(invoice: Invoice, signed: bool = False) -> str:
    """e.g. B12345678_2025_000001_20250314.xml (.xsig when signed)."""
    suffix = "xsig" if signed else "xml"
    return (
        f"{invoice.issuer.nif}_{invoice.fiscal_year}_{invoice.sequence_number:06d}_"
        f"{invoice.issue_date:%Y%m%d}.{suffix}"
    )


def _write_atomic(path: Path, data: bytes) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_name(path.name + ".tmp")
    tmp.write_bytes(data)
    os.replace(tmp, path)


class FacturaeExporter:
    def __init__(
        self,
        settings: BillingSettings,
        *,
        output_dir: Path | None = None,
        credentials: Credentials | None = None,
    ) -> None:
        self.settings = settings
        self.output_dir = output_dir or get_facturae_dir(settings.env, settings)
        self.sign = settings.sign_facturae
        self._credentials = credentials or _default_credentials

    def validate(self, invoice: Invoice) -> None:
        if not invoice.is_numbered or invoice.invoice_number is None:
            raise ExportValidationError(f"Invoice {invoice.id} is not numbered and chained")
        if invoice.status == InvoiceStatus.VOIDED:
            raise ExportValidationError(f"{invoice.invoice_number} was voided")
        if self.settings.export_requires_ack and invoice.authority_reference is None:
            raise ExportValidationError(
                f"{invoice.invoice_number} has no authority acknowledgement yet"
            )
        if not invoice.counterparty.has_address:
            raise ExportValidationError(
                f"Counterparty {invoice.counterparty.nif} needs a full address for Facturae"
            )

    def render(self, invoice: Invoice) -> bytes:
        """Serialized Facturae document (signed when configured)."""
        document = build_facturae(invoice)
        if self.sign:
            pfx_path, password = self._credentials()
            key_pem, cert_pem, _ = load_pfx(pfx_path, password)
            document = sign_facturae(document, key_pem, cert_pem)
        return to_bytes(document)

    def path_for(self, invoice: Invoice) -> Path:
        return self.output_dir / invoice.issuer.nif / export_filename(invoice, self.sign)

    def export(self, invoice: Invoice) -> Path:
        """Write the Facturae document for *invoice* and return its path."""
        self.validate(invoice)
        data = self.render(invoice)
        path = self.path_for(invoice)
        _write_atomic(path, data)
        logger.info("Exported %s to %s", invoice.invoice_number, path)
        return path
