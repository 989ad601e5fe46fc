"""Delivery of chain entries to the tax authority.

State machine per record::

    PENDING -> SENT -> ACKNOWLEDGED | REJECTED
               SENT -> FAILED -> PENDING (when next_retry_at is due)

Every transition is persisted in the issuer ledger before and after the
network call, so a crash mid-flight leaves a SENT record that is picked up
again once ``sent_timeout`` elapses. The idempotency key makes that resend
safe on the authority side.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from datetime import datetime, timedelta
from typing import Any

from facturador.config import MADRID, BillingSettings, get_cert_password, get_cert_path
from facturador.models.chain import ChainEntry
from facturador.models.invoice import Invoice, InvoiceStatus
from facturador.models.submission import Operation, SubmissionRecord, SubmissionStatus
from facturador.services.aeat_client import build_record, simulate_ack, submit_record
from facturador.services.exceptions import (
    AllocationConflictError,
    AuthorityRejectError,
    AuthorityUnavailableError,
    InvoiceStateError,
    LedgerCorruptError,
)
from facturador.services.http_retry import RetryPolicy, next_retry_at
from facturador.utils import ledger
from facturador.utils.record_id import idempotency_key

logger = logging.getLogger(__name__)

Transport = Callable[[dict[str, Any], str], dict[str, Any]]
AckCallback = Callable[[str, str], object]


def _now() -> datetime:
    return datetime.now(MADRID)


def _iso(moment: datetime) -> str:
    return moment.isoformat(timespec="seconds")


def new_record(invoice: Invoice) -> SubmissionRecord:
    """PENDING record for a freshly chained invoice."""
    if invoice.sequence_number is None:
        raise InvoiceStateError(f"Invoice {invoice.id} has no sequence number to submit")
    return SubmissionRecord(
        idempotency_key=idempotency_key(invoice.issuer.nif, invoice.fiscal_year, invoice.sequence_number),
        issuer_id=invoice.issuer.nif,
        fiscal_year=invoice.fiscal_year,
        sequence_number=invoice.sequence_number,
        invoice_id=invoice.id,
    )


def _find_entry(state: dict[str, Any], fiscal_year: int, sequence_number: int) -> ChainEntry:
    for raw in state.get("chain", []):
        if raw["fiscal_year"] == fiscal_year and raw["sequence_number"] == sequence_number:
            return ChainEntry.from_dict(raw)
    raise KeyError(f"No chain entry {fiscal_year}/{sequence_number} for {state['issuer_id']}")


class SubmissionCoordinator:
    """Owns every SubmissionRecord mutation after creation."""

    def __init__(
        self,
        settings: BillingSettings,
        *,
        transport: Transport | None = None,
        on_acknowledged: AckCallback | None = None,
        clock: Callable[[], datetime] = _now,
    ) -> None:
        self.settings = settings
        self.env = settings.env
        self.policy = RetryPolicy.from_settings(settings)
        self.on_acknowledged = on_acknowledged
        self._transport = transport or self._default_transport
        self._clock = clock

    def _default_transport(self, payload: dict[str, Any], key: str) -> dict[str, Any]:
        if self.settings.simulate and self.env == "pruebas":
            return simulate_ack(payload)
        return submit_record(payload, key, get_cert_path(), get_cert_password(), self.env)

    def _txn(self, issuer_id: str):
        return ledger.transaction(issuer_id, self.env, self.settings.lock_timeout)

    # --- single record ---

    def submit(self, issuer_id: str, key: str) -> SubmissionRecord:
        """Send one PENDING record and persist the outcome.

        Records in any other state are returned untouched. Transport
        failures are recorded, never raised.
        """
        claimed = self._claim(issuer_id, key)
        if claimed is None:
            return self.get(issuer_id, key)
        record, payload = claimed

        try:
            ack = self._transport(payload, key)
        except AuthorityRejectError as exc:
            return self._reject(issuer_id, key, exc)
        except AuthorityUnavailableError as exc:
            return self._fail(issuer_id, key, str(exc))

        record = self._acknowledge(issuer_id, key, ack)
        if self.on_acknowledged is not None and record.status == SubmissionStatus.ACKNOWLEDGED:
            self.on_acknowledged(issuer_id, record.invoice_id)
        return record

    def _claim(self, issuer_id: str, key: str) -> tuple[SubmissionRecord, dict[str, Any]] | None:
        with self._txn(issuer_id) as state:
            record = SubmissionRecord.from_dict(state["submissions"][key])
            if record.status != SubmissionStatus.PENDING:
                logger.debug("Skipping %s %s in state %s", issuer_id, key, record.status)
                return None
            entry = _find_entry(state, record.fiscal_year, record.sequence_number)
            invoice = Invoice.from_dict(state["invoices"][record.invoice_id])
            payload = build_record(entry, invoice, record)

            at = _iso(self._clock())
            record = record.transition(
                SubmissionStatus.SENT,
                at,
                attempts=record.attempts + 1,
                sent_at=at,
                next_retry_at=None,
            )
            state["submissions"][key] = record.to_dict()
            state["invoices"][invoice.id] = invoice.advance(InvoiceStatus.SUBMITTED).to_dict()
        logger.info(
            "Submitting %s %s (attempt %d)", issuer_id, entry.invoice_number, record.attempts
        )
        return record, payload

    def _acknowledge(self, issuer_id: str, key: str, ack: dict[str, Any]) -> SubmissionRecord:
        with self._txn(issuer_id) as state:
            record = SubmissionRecord.from_dict(state["submissions"][key])
            if record.status == SubmissionStatus.ACKNOWLEDGED:
                return record
            at = _iso(self._clock())
            record = record.transition(
                SubmissionStatus.ACKNOWLEDGED,
                at,
                external_reference=ack["reference"],
                acknowledged_at=ack.get("timestamp") or at,
                last_error=None,
                error_code=None,
            )
            state["submissions"][key] = record.to_dict()
            invoice = Invoice.from_dict(state["invoices"][record.invoice_id])
            state["invoices"][invoice.id] = invoice.advance(
                InvoiceStatus.ACKNOWLEDGED,
                authority_reference=record.external_reference,
                authority_timestamp=record.acknowledged_at,
            ).to_dict()
        if ack.get("duplicate"):
            logger.info("Authority already had %s %s; reference %s", issuer_id, key, ack["reference"])
        else:
            logger.info("Acknowledged %s %s; reference %s", issuer_id, key, ack["reference"])
        return record

    def _reject(self, issuer_id: str, key: str, exc: AuthorityRejectError) -> SubmissionRecord:
        with self._txn(issuer_id) as state:
            record = SubmissionRecord.from_dict(state["submissions"][key])
            if record.status in SubmissionStatus.terminal():
                logger.warning(
                    "Ignoring late rejection of %s %s, already %s", issuer_id, key, record.status
                )
                return record
            record = record.transition(
                SubmissionStatus.REJECTED,
                _iso(self._clock()),
                last_error=str(exc),
                error_code=exc.code,
            )
            state["submissions"][key] = record.to_dict()
            invoice = Invoice.from_dict(state["invoices"][record.invoice_id])
            state["invoices"][invoice.id] = invoice.advance(InvoiceStatus.REJECTED).to_dict()
        logger.error(
            "Authority rejected %s %s (%s): %s; issue a correcting invoice",
            issuer_id,
            key,
            exc.code,
            exc,
        )
        return record

    def _fail(self, issuer_id: str, key: str, error: str) -> SubmissionRecord:
        with self._txn(issuer_id) as state:
            record = SubmissionRecord.from_dict(state["submissions"][key])
            if record.status in SubmissionStatus.terminal():
                logger.warning(
                    "Ignoring late failure of %s %s, already %s", issuer_id, key, record.status
                )
                return record
            now = self._clock()
            retry_at = next_retry_at(record.attempts, self.policy, now)
            record = record.transition(
                SubmissionStatus.FAILED,
                _iso(now),
                last_error=error,
                next_retry_at=_iso(retry_at) if retry_at else None,
            )
            state["submissions"][key] = record.to_dict()
            invoice = Invoice.from_dict(state["invoices"][record.invoice_id])
            state["invoices"][invoice.id] = invoice.advance(InvoiceStatus.FAILED).to_dict()
        if record.is_exhausted:
            logger.error(
                "Submission %s %s FAILED after %d attempts, needs operator: %s",
                issuer_id,
                key,
                record.attempts,
                error,
            )
        else:
            logger.warning(
                "Submission %s %s failed (attempt %d), retry at %s: %s",
                issuer_id,
                key,
                record.attempts,
                record.next_retry_at,
                error,
            )
        return record

    # --- scheduling ---

    def _collect_due(self, issuer_id: str, now: datetime) -> list[str]:
        """Reschedule stale SENT and due FAILED records; return PENDING keys in chain order."""
        stale_before = now - timedelta(seconds=self.settings.sent_timeout)
        due: list[SubmissionRecord] = []
        with self._txn(issuer_id) as state:
            for key, raw in state.get("submissions", {}).items():
                record = SubmissionRecord.from_dict(raw)
                if record.status == SubmissionStatus.SENT and record.sent_at:
                    if datetime.fromisoformat(record.sent_at) <= stale_before:
                        # resend right away, unless that was the last allowed attempt
                        exhausted = next_retry_at(record.attempts, self.policy, now) is None
                        logger.warning(
                            "Recovering stranded SENT record %s %s (attempt %d%s)",
                            issuer_id,
                            key,
                            record.attempts,
                            ", retries exhausted" if exhausted else "",
                        )
                        record = record.transition(
                            SubmissionStatus.FAILED,
                            _iso(now),
                            last_error="no response recorded before timeout",
                            next_retry_at=None if exhausted else _iso(now),
                        )
                        invoice = Invoice.from_dict(state["invoices"][record.invoice_id])
                        state["invoices"][invoice.id] = invoice.advance(InvoiceStatus.FAILED).to_dict()
                if (
                    record.status == SubmissionStatus.FAILED
                    and record.next_retry_at
                    and datetime.fromisoformat(record.next_retry_at) <= now
                ):
                    record = record.transition(SubmissionStatus.PENDING, _iso(now))
                state["submissions"][key] = record.to_dict()
                if record.status == SubmissionStatus.PENDING:
                    due.append(record)
        due.sort(key=lambda r: (r.fiscal_year, r.sequence_number))
        return [r.idempotency_key for r in due]

    def process_due(self, now: datetime | None = None) -> list[SubmissionRecord]:
        """One scheduler pass over every issuer ledger."""
        now = now or self._clock()
        results = []
        for issuer_id in ledger.list_ledgers(self.env):
            try:
                keys = self._collect_due(issuer_id, now)
            except (AllocationConflictError, LedgerCorruptError):
                logger.error("Skipping submissions for %s this pass", issuer_id, exc_info=True)
                continue
            for key in keys:
                results.append(self.submit(issuer_id, key))
        if results:
            logger.info("Processed %d due submissions", len(results))
        return results

    # --- operator surface ---

    def get(self, issuer_id: str, key: str) -> SubmissionRecord:
        state = ledger.load(issuer_id, self.env)
        return SubmissionRecord.from_dict(state["submissions"][key])

    def records(self, issuer_id: str) -> list[SubmissionRecord]:
        state = ledger.load(issuer_id, self.env)
        records = [SubmissionRecord.from_dict(r) for r in state.get("submissions", {}).values()]
        return sorted(records, key=lambda r: (r.fiscal_year, r.sequence_number))

    def failures(self, issuer_id: str | None = None) -> list[SubmissionRecord]:
        """Exhausted FAILED and REJECTED records, which need a human."""
        issuers = [issuer_id] if issuer_id else ledger.list_ledgers(self.env)
        return [
            r
            for i in issuers
            for r in self.records(i)
            if r.is_exhausted or r.status == SubmissionStatus.REJECTED
        ]

    def requeue(self, issuer_id: str, key: str) -> SubmissionRecord:
        """Give an exhausted record a fresh retry budget. REJECTED records stay terminal."""
        with self._txn(issuer_id) as state:
            record = SubmissionRecord.from_dict(state["submissions"][key])
            if not record.is_exhausted:
                raise InvoiceStateError(
                    f"Only exhausted FAILED submissions can be requeued, {key} is {record.status}"
                )
            record = record.transition(SubmissionStatus.PENDING, _iso(self._clock()), attempts=0)
            state["submissions"][key] = record.to_dict()
        logger.warning("Operator requeued %s %s", issuer_id, key)
        return record

    def cancel(self, issuer_id: str, invoice_id: str, reason: str) -> SubmissionRecord:
        """Void an invoice whose record was never sent.

        The chain entry stays; the record is reported as a cancellation.
        """
        if not reason.strip():
            raise InvoiceStateError("A reason is required to void an invoice")
        with self._txn(issuer_id) as state:
            raw = state["invoices"].get(invoice_id)
            if raw is None:
                raise KeyError(f"Unknown invoice {invoice_id} for {issuer_id}")
            invoice = Invoice.from_dict(raw)
            if invoice.sequence_number is None:
                raise InvoiceStateError(f"Invoice {invoice_id} was never numbered")
            key = idempotency_key(issuer_id, invoice.fiscal_year, invoice.sequence_number)
            record = SubmissionRecord.from_dict(state["submissions"][key])
            if record.status != SubmissionStatus.PENDING or record.attempts:
                raise InvoiceStateError(
                    f"{invoice.invoice_number} was already sent ({record.status}); "
                    "issue a correcting invoice instead"
                )
            record = record.transition(
                SubmissionStatus.PENDING, _iso(self._clock()), operation=Operation.CANCEL
            )
            state["submissions"][key] = record.to_dict()
            state["invoices"][invoice_id] = invoice.advance(
                InvoiceStatus.VOIDED, void_reason=reason
            ).to_dict()
        logger.warning("Voided %s %s: %s", issuer_id, invoice.invoice_number, reason)
        return record
