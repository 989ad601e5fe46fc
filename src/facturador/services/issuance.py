"""Invoice issuance: draft in, numbered and chained invoice out.

Taxes are computed before the ledger lock is taken; number allocation, chain
append, invoice persistence and creation of the submission record then commit
in one ledger transaction. Submission and export run afterwards on a worker
pool and never undo a numbered invoice.
"""

from __future__ import annotations

import logging
import uuid
from concurrent.futures import Future, ThreadPoolExecutor
from datetime import date, datetime
from pathlib import Path
from typing import Any

from facturador.config import MADRID, BillingSettings, load_settings, load_tax_rates
from facturador.models.invoice import (
    DraftLine,
    Invoice,
    InvoiceDraft,
    InvoiceStatus,
    InvoiceType,
)
from facturador.models.submission import SubmissionRecord
from facturador.services import chain, tax_engine
from facturador.services.exceptions import (
    AllocationConflictError,
    ChainIntegrityError,
    InvoiceStateError,
    IssuerHaltedError,
    ValidationError,
)
from facturador.services.exporter import FacturaeExporter
from facturador.services.submission import SubmissionCoordinator, Transport, new_record
from facturador.services.tax_engine import DEFAULT_RATE_TABLE, RateTable
from facturador.utils import ledger, sequence

logger = logging.getLogger(__name__)


def _log_background_failure(future: Future) -> None:
    exc = future.exception()
    if exc is not None:
        logger.error("Background task failed", exc_info=exc)


def default_rate_table() -> RateTable:
    data = load_tax_rates()
    return RateTable.from_dict(data) if data else DEFAULT_RATE_TABLE


class InvoiceIssuanceOrchestrator:
    def __init__(
        self,
        settings: BillingSettings | None = None,
        *,
        rate_table: RateTable | None = None,
        transport: Transport | None = None,
        coordinator: SubmissionCoordinator | None = None,
        exporter: FacturaeExporter | None = None,
    ) -> None:
        self.settings = settings or load_settings()
        self.env = self.settings.env
        self.rate_table = rate_table or default_rate_table()
        self.exporter = exporter or FacturaeExporter(self.settings)
        self.coordinator = coordinator or SubmissionCoordinator(self.settings, transport=transport)
        if self.coordinator.on_acknowledged is None:
            self.coordinator.on_acknowledged = self._on_acknowledged
        self._pool = ThreadPoolExecutor(
            max_workers=self.settings.workers, thread_name_prefix="facturador"
        )

    def _txn(self, issuer_id: str):
        return ledger.transaction(issuer_id, self.env, self.settings.lock_timeout)

    # --- issuance ---

    def issue(self, draft: InvoiceDraft, *, dispatch: bool = True) -> Invoice:
        """Number and chain *draft*; schedule its submission.

        Raises ValidationError subclasses before anything is persisted,
        AllocationConflictError once the retry budget is spent and
        ChainIntegrityError (after halting the issuer) if the chain is broken.
        """
        if draft.invoice_type == InvoiceType.CORRECTIVE and not draft.corrects:
            raise InvoiceStateError("A corrective invoice must reference the invoice it corrects")
        result = tax_engine.compute(draft.lines, self.rate_table, draft.issue_date)

        issuer_id = draft.issuer.nif
        attempts = max(1, self.settings.allocation_retries)
        for attempt in range(1, attempts + 1):
            try:
                invoice = self._number(draft, result)
                break
            except AllocationConflictError:
                if attempt == attempts:
                    raise
                logger.warning(
                    "Ledger conflict for %s, retrying (%d/%d)", issuer_id, attempt, attempts
                )
            except IssuerHaltedError:
                raise
            except ChainIntegrityError as exc:
                ledger.halt(issuer_id, exc, self.env)
                raise

        logger.info(
            "Issued %s for %s: total %s",
            invoice.invoice_number,
            invoice.counterparty.nif,
            invoice.breakdown.total,
        )
        if dispatch:
            self.dispatch(invoice)
        if not self.settings.export_requires_ack:
            self._export_quietly(issuer_id, invoice.id)
        return invoice

    def _number(self, draft: InvoiceDraft, result: tax_engine.TaxResult) -> Invoice:
        issuer_id = draft.issuer.nif
        with self._txn(issuer_id) as state:
            halted = state.get("halted")
            if halted:
                raise IssuerHaltedError(
                    issuer_id,
                    f"halted since {halted['at']}: {halted['reason']}",
                    halted.get("fiscal_year"),
                    halted.get("sequence_number"),
                )
            chain.verify_tail(state)
            if draft.corrects and not any(
                inv.get("invoice_number") == draft.corrects for inv in state["invoices"].values()
            ):
                raise InvoiceStateError(f"Unknown invoice {draft.corrects} for {issuer_id}")

            year = draft.issue_date.year
            seq = sequence.allocate(issuer_id, year, state=state)
            invoice = Invoice(
                id=str(uuid.uuid4()),
                issuer=draft.issuer,
                counterparty=draft.counterparty,
                issue_date=draft.issue_date,
                due_date=draft.due_date,
                lines=result.lines,
                breakdown=result.breakdown,
                invoice_type=draft.invoice_type,
                notes=draft.notes,
                corrects=draft.corrects,
                correction_reason=draft.correction_reason,
                sequence_number=seq,
                invoice_number=sequence.format_invoice_number(draft.issuer.serie, year, seq),
            )
            entry = chain.append(state, chain.snapshot_of(invoice))
            invoice = invoice.advance(InvoiceStatus.NUMBERED, chain_hash=entry.entry_hash)
            record = new_record(invoice)
            state["invoices"][invoice.id] = invoice.to_dict()
            state["submissions"][record.idempotency_key] = record.to_dict()
        return invoice

    def issue_async(self, draft: InvoiceDraft) -> Future[Invoice]:
        return self._pool.submit(self.issue, draft)

    def issue_correction(
        self,
        issuer_id: str,
        invoice_id: str,
        lines: list[DraftLine],
        reason: str,
        issue_date: date | None = None,
    ) -> Invoice:
        """Issue an R1 invoice replacing *invoice_id*; the original stays untouched."""
        original = self.get_invoice(issuer_id, invoice_id)
        if not original.is_numbered:
            raise InvoiceStateError(f"Invoice {invoice_id} was never numbered")
        draft = InvoiceDraft(
            issuer=original.issuer,
            counterparty=original.counterparty,
            issue_date=issue_date or datetime.now(MADRID).date(),
            lines=tuple(lines),
            invoice_type=InvoiceType.CORRECTIVE,
            corrects=original.invoice_number,
            correction_reason=reason,
        )
        return self.issue(draft)

    # --- follow-up work ---

    def dispatch(self, invoice: Invoice) -> Future[SubmissionRecord]:
        """Submit *invoice* on the worker pool."""
        record = new_record(invoice)
        future = self._pool.submit(self.coordinator.submit, record.issuer_id, record.idempotency_key)
        future.add_done_callback(_log_background_failure)
        return future

    def _on_acknowledged(self, issuer_id: str, invoice_id: str) -> None:
        if self.settings.export_requires_ack:
            self._export_quietly(issuer_id, invoice_id)

    def _export_quietly(self, issuer_id: str, invoice_id: str) -> Path | None:
        try:
            return self.export(issuer_id, invoice_id)
        except ValidationError:
            logger.error("Automatic export of %s failed", invoice_id, exc_info=True)
            return None

    def export(self, issuer_id: str, invoice_id: str) -> Path:
        invoice = self.get_invoice(issuer_id, invoice_id)
        path = self.exporter.export(invoice)
        with self._txn(issuer_id) as state:
            current = Invoice.from_dict(state["invoices"][invoice_id])
            state["invoices"][invoice_id] = current.advance(
                InvoiceStatus.EXPORTED, facturae_document_path=str(path)
            ).to_dict()
        return path

    def void(self, issuer_id: str, invoice_id: str, reason: str) -> Invoice:
        self.coordinator.cancel(issuer_id, invoice_id, reason)
        return self.get_invoice(issuer_id, invoice_id)

    # --- queries ---

    def verify(self, issuer_id: str) -> int:
        """Replay the chain; a mismatch halts the issuer."""
        try:
            return chain.verify_chain(issuer_id, self.env)
        except ChainIntegrityError as exc:
            ledger.halt(issuer_id, exc, self.env)
            raise

    def get_invoice(self, issuer_id: str, invoice_id: str) -> Invoice:
        raw = ledger.load(issuer_id, self.env)["invoices"].get(invoice_id)
        if raw is None:
            raise KeyError(f"Unknown invoice {invoice_id} for {issuer_id}")
        return Invoice.from_dict(raw)

    def list_invoices(self, issuer_id: str) -> list[Invoice]:
        invoices = [Invoice.from_dict(i) for i in ledger.load(issuer_id, self.env)["invoices"].values()]
        return sorted(invoices, key=lambda i: (i.fiscal_year, i.sequence_number or 0))

    def status(self) -> list[dict[str, Any]]:
        """Per-issuer summary for operators."""
        summary = []
        for issuer_id in ledger.list_ledgers(self.env):
            state = ledger.load(issuer_id, self.env)
            counts: dict[str, int] = {}
            for raw in state["submissions"].values():
                counts[raw["status"]] = counts.get(raw["status"], 0) + 1
            summary.append({
                "issuer_id": issuer_id,
                "entries": len(state["chain"]),
                "counters": dict(state["counters"]),
                "submissions": counts,
                "halted": state.get("halted"),
            })
        return summary

    def shutdown(self, wait: bool = True) -> None:
        self._pool.shutdown(wait=wait)
