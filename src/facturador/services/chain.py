"""Verifactu-style hash chain.

Every numbered invoice gets one entry:

    content_hash = SHA256(canonical snapshot)
    entry_hash   = SHA256(content_hash || previous entry_hash)

The first entry of an issuer links to ``GENESIS_HASH``. Entries are appended
inside the same ledger transaction that allocated the sequence number.
"""

from __future__ import annotations

import hashlib
import json
import logging
from collections.abc import Iterable
from datetime import datetime
from typing import Any

from facturador.config import MADRID
from facturador.models.chain import ChainEntry
from facturador.models.invoice import Invoice
from facturador.services.exceptions import ChainIntegrityError
from facturador.utils import ledger

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64

# Order is part of the hash; never reorder, only append new fields at the end
CANONICAL_FIELDS = (
    "issuer_id",
    "counterparty_id",
    "counterparty_name",
    "issue_date",
    "fiscal_year",
    "sequence_number",
    "invoice_number",
    "invoice_type",
    "corrects",
    "base",
    "tax",
    "total",
    "lines",
)


def snapshot_of(invoice: Invoice) -> dict[str, Any]:
    """Extract the immutable fields that the chain protects."""
    if invoice.sequence_number is None or invoice.invoice_number is None:
        raise ValueError("Invoice must be numbered before it can be chained")
    return {
        "issuer_id": invoice.issuer.nif,
        "counterparty_id": invoice.counterparty.nif,
        "counterparty_name": invoice.counterparty.full_name,
        "issue_date": invoice.issue_date.isoformat(),
        "fiscal_year": invoice.fiscal_year,
        "sequence_number": invoice.sequence_number,
        "invoice_number": invoice.invoice_number,
        "invoice_type": invoice.invoice_type.value,
        "corrects": invoice.corrects,
        "base": f"{invoice.breakdown.base:.2f}",
        "tax": f"{invoice.breakdown.tax:.2f}",
        "total": f"{invoice.breakdown.total:.2f}",
        "lines": [line.description for line in invoice.lines],
    }


def canonical_bytes(snapshot: dict[str, Any]) -> bytes:
    """Deterministic UTF-8 encoding: compact JSON array of [field, value] pairs."""
    pairs = [[name, snapshot[name]] for name in CANONICAL_FIELDS]
    return json.dumps(pairs, ensure_ascii=False, separators=(",", ":")).encode("utf-8")


def content_hash(snapshot: dict[str, Any]) -> str:
    return hashlib.sha256(canonical_bytes(snapshot)).hexdigest().upper()


def entry_hash(content: str, previous: str) -> str:
    return hashlib.sha256(f"{content}{previous}".encode("ascii")).hexdigest().upper()


def _last_per_year(entries: Iterable[dict[str, Any]]) -> dict[int, int]:
    last: dict[int, int] = {}
    for e in entries:
        last[int(e["fiscal_year"])] = int(e["sequence_number"])
    return last


def append(
    state: dict[str, Any],
    snapshot: dict[str, Any],
    *,
    now: datetime | None = None,
) -> ChainEntry:
    """Append the entry for *snapshot* to the ledger *state* held by the caller.

    The snapshot's sequence number must be the one just allocated for its
    fiscal year, which keeps exactly one entry per chain position.
    """
    issuer_id = state["issuer_id"]
    year = int(snapshot["fiscal_year"])
    seq = int(snapshot["sequence_number"])
    if snapshot["issuer_id"] != issuer_id:
        raise ValueError(f"Snapshot issuer {snapshot['issuer_id']} does not own ledger {issuer_id}")

    chain: list[dict[str, Any]] = state.setdefault("chain", [])
    expected = _last_per_year(chain).get(year, 0) + 1
    allocated = int(state.get("counters", {}).get(str(year), 0))
    if seq != expected or seq != allocated:
        raise ChainIntegrityError(
            issuer_id,
            f"chain position {seq} does not follow {expected - 1} (counter at {allocated})",
            year,
            seq,
        )

    previous = chain[-1]["entry_hash"] if chain else GENESIS_HASH
    content = content_hash(snapshot)
    entry = ChainEntry(
        issuer_id=issuer_id,
        fiscal_year=year,
        sequence_number=seq,
        invoice_number=snapshot["invoice_number"],
        snapshot=snapshot,
        content_hash=content,
        previous_hash=previous,
        entry_hash=entry_hash(content, previous),
        timestamp=(now or datetime.now(MADRID)).isoformat(timespec="seconds"),
    )
    chain.append(entry.to_dict())
    logger.info("Chained %s %s -> %s…", issuer_id, entry.invoice_number, entry.entry_hash[:12])
    return entry


def _check_entry(issuer_id: str, entry: ChainEntry, previous: str) -> None:
    where = (entry.fiscal_year, entry.sequence_number)
    if entry.previous_hash != previous:
        raise ChainIntegrityError(issuer_id, "previous hash does not match predecessor", *where)
    if content_hash(entry.snapshot) != entry.content_hash:
        raise ChainIntegrityError(issuer_id, "content hash does not match snapshot", *where)
    if entry_hash(entry.content_hash, entry.previous_hash) != entry.entry_hash:
        raise ChainIntegrityError(issuer_id, "entry hash does not match", *where)


def verify_tail(state: dict[str, Any]) -> None:
    """Recheck the last entry before extending the chain."""
    chain = state.get("chain", [])
    if not chain:
        return
    last = ChainEntry.from_dict(chain[-1])
    previous = chain[-2]["entry_hash"] if len(chain) > 1 else GENESIS_HASH
    _check_entry(state["issuer_id"], last, previous)


def verify_entries(
    issuer_id: str,
    entries: Iterable[ChainEntry],
    invoices: dict[str, dict[str, Any]] | None = None,
) -> int:
    """Replay *entries* in stored order; return how many were verified.

    When *invoices* (ledger invoice records) is given, each numbered invoice
    must also agree with the snapshot its entry carries.
    """
    by_number = {}
    for record in (invoices or {}).values():
        if record.get("invoice_number"):
            by_number[record["invoice_number"]] = record

    previous = GENESIS_HASH
    last_seq: dict[int, int] = {}
    count = 0
    for entry in entries:
        where = (entry.fiscal_year, entry.sequence_number)
        if entry.issuer_id != issuer_id or entry.snapshot.get("issuer_id") != issuer_id:
            raise ChainIntegrityError(issuer_id, "entry belongs to another issuer", *where)
        expected = last_seq.get(entry.fiscal_year, 0) + 1
        if entry.sequence_number != expected:
            raise ChainIntegrityError(
                issuer_id, f"out of order, expected sequence {expected}", *where
            )
        if entry.snapshot.get("sequence_number") != entry.sequence_number:
            raise ChainIntegrityError(issuer_id, "snapshot sequence differs from entry", *where)
        _check_entry(issuer_id, entry, previous)

        record = by_number.get(entry.invoice_number)
        if record is not None:
            if record.get("chain_hash") != entry.entry_hash:
                raise ChainIntegrityError(issuer_id, "invoice chain hash differs from entry", *where)
            if snapshot_of(Invoice.from_dict(record)) != entry.snapshot:
                raise ChainIntegrityError(issuer_id, "invoice record differs from snapshot", *where)

        last_seq[entry.fiscal_year] = entry.sequence_number
        previous = entry.entry_hash
        count += 1
    return count


def verify_chain(issuer_id: str, env: str = ledger.DEFAULT_ENV) -> int:
    """Replay the stored chain of *issuer_id*, raising ChainIntegrityError at the first mismatch."""
    state = ledger.load(issuer_id, env)
    entries = (ChainEntry.from_dict(e) for e in state.get("chain", []))
    count = verify_entries(issuer_id, entries, state.get("invoices"))
    logger.info("Verified %d chain entries for %s", count, issuer_id)
    return count


def last_entry(state: dict[str, Any]) -> ChainEntry | None:
    chain = state.get("chain", [])
    return ChainEntry.from_dict(chain[-1]) if chain else None
